import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from .state_store import StateStore
from .util import now_ms

logger = logging.getLogger(__name__)

TRIGGERS_KEY = "scheduler.triggers"

HANDLER_PROCESS_FILES = "process_files"
HANDLER_START_SCAN = "start_scan"
HANDLER_CONTINUE_SCAN = "continue_scan"


@dataclass(frozen=True)
class Trigger:
    id: str
    handler: str
    run_at_ms: int
    interval_ms: Optional[int]

    @property
    def recurring(self) -> bool:
        return self.interval_ms is not None


@dataclass(frozen=True)
class TriggerRun:
    trigger: Trigger
    ok: bool
    error: Optional[str] = None


def _trigger_from_dict(raw: Dict[str, Any]) -> Optional[Trigger]:
    try:
        interval = raw.get("interval_ms")
        return Trigger(
            id=str(raw["id"]),
            handler=str(raw["handler"]),
            run_at_ms=int(raw["run_at_ms"]),
            interval_ms=int(interval) if interval is not None else None,
        )
    except (KeyError, TypeError, ValueError):
        return None


class Scheduler:
    """Time-based triggers persisted in the state store.

    One-shot triggers are removed before their handler runs; recurring
    triggers are advanced past ``now``. Handlers are looked up by name so a
    trigger survives process restarts.
    """

    def __init__(self, store: StateStore, *, clock: Callable[[], int] = now_ms) -> None:
        self._store = store
        self._clock = clock

    def list_triggers(self) -> List[Trigger]:
        raw = self._store.get(TRIGGERS_KEY, [])
        if not isinstance(raw, list):
            return []
        triggers = []
        for item in raw:
            if isinstance(item, dict):
                trigger = _trigger_from_dict(item)
                if trigger is not None:
                    triggers.append(trigger)
        return triggers

    def _save(self, triggers: List[Trigger]) -> None:
        self._store.set(TRIGGERS_KEY, [asdict(trigger) for trigger in triggers])

    def schedule_once(self, handler: str, after_seconds: float) -> str:
        trigger = Trigger(
            id=f"trg_{uuid.uuid4().hex}",
            handler=handler,
            run_at_ms=self._clock() + int(after_seconds * 1000),
            interval_ms=None,
        )
        self._save([*self.list_triggers(), trigger])
        return trigger.id

    def schedule_recurring(self, handler: str, interval_seconds: float) -> str:
        """Register ``handler`` every ``interval_seconds``, replacing older recurrences."""
        interval_ms = int(interval_seconds * 1000)
        if interval_ms <= 0:
            raise ValueError("interval_seconds must be positive")
        existing = self.list_triggers()
        kept = [
            trigger
            for trigger in existing
            if not (trigger.recurring and trigger.handler == handler)
        ]
        if len(kept) != len(existing):
            logger.info("Replaced existing recurring trigger for '%s'.", handler)
        trigger = Trigger(
            id=f"trg_{uuid.uuid4().hex}",
            handler=handler,
            run_at_ms=self._clock() + interval_ms,
            interval_ms=interval_ms,
        )
        self._save([*kept, trigger])
        return trigger.id

    def cancel(self, trigger_id: Optional[str]) -> bool:
        if not trigger_id:
            return False
        triggers = self.list_triggers()
        kept = [trigger for trigger in triggers if trigger.id != trigger_id]
        if len(kept) == len(triggers):
            return False
        self._save(kept)
        return True

    def cancel_handler(self, handler: str) -> int:
        triggers = self.list_triggers()
        kept = [trigger for trigger in triggers if trigger.handler != handler]
        removed = len(triggers) - len(kept)
        if removed:
            self._save(kept)
        return removed

    def is_active(self, trigger_id: Optional[str]) -> bool:
        if not trigger_id:
            return False
        return any(trigger.id == trigger_id for trigger in self.list_triggers())

    def due(self) -> List[Trigger]:
        now = self._clock()
        return sorted(
            (trigger for trigger in self.list_triggers() if trigger.run_at_ms <= now),
            key=lambda trigger: trigger.run_at_ms,
        )

    def run_due(self, handlers: Dict[str, Callable[[], Any]]) -> List[TriggerRun]:
        runs: List[TriggerRun] = []
        for trigger in self.due():
            if not self._consume(trigger):
                logger.debug("Trigger %s was removed before it ran.", trigger.id)
                continue
            handler = handlers.get(trigger.handler)
            if handler is None:
                logger.warning("No handler registered for trigger '%s'.", trigger.handler)
                runs.append(TriggerRun(trigger=trigger, ok=False, error="unknown handler"))
                continue
            try:
                handler()
            except Exception as exc:  # noqa: BLE001 - scheduler must keep running
                logger.exception("Trigger '%s' (%s) failed.", trigger.handler, trigger.id)
                runs.append(TriggerRun(trigger=trigger, ok=False, error=str(exc)))
                continue
            runs.append(TriggerRun(trigger=trigger, ok=True))
        return runs

    def _consume(self, trigger: Trigger) -> bool:
        """Retire or advance ``trigger``; False when it is no longer scheduled."""
        triggers = self.list_triggers()
        updated: List[Trigger] = []
        now = self._clock()
        found = False
        for existing in triggers:
            if existing.id != trigger.id:
                updated.append(existing)
                continue
            found = True
            if existing.interval_ms is None:
                continue
            run_at = existing.run_at_ms
            while run_at <= now:
                run_at += existing.interval_ms
            updated.append(
                Trigger(
                    id=existing.id,
                    handler=existing.handler,
                    run_at_ms=run_at,
                    interval_ms=existing.interval_ms,
                )
            )
        self._save(updated)
        return found
