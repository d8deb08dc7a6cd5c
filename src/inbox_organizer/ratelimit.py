import logging
import time
from typing import Callable

from .state_store import LAST_API_CALL_TIME, StateStore
from .util import now_ms

logger = logging.getLogger(__name__)


class RateLimiter:
    """Minimum spacing between outbound classification calls.

    The timestamp of the last call lives in the state store, so the spacing
    holds across separate invocations as well as within one batch.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        min_spacing_ms: int = 500,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.min_spacing_ms = min_spacing_ms
        self.clock = clock
        self.sleep = sleep

    def wait(self) -> int:
        """Sleep until the minimum spacing has passed; returns the delay in ms."""
        last = self.store.get(LAST_API_CALL_TIME, 0)
        try:
            last_ms = int(last)
        except (TypeError, ValueError):
            last_ms = 0
        remaining = self.min_spacing_ms - (self.clock() - last_ms)
        if remaining <= 0:
            return 0
        logger.debug("Rate limiting: sleeping %d ms before the next call.", remaining)
        self.sleep(remaining / 1000)
        return remaining

    def mark(self) -> None:
        self.store.set(LAST_API_CALL_TIME, self.clock())
