import argparse
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .backends import HttpBackend, create_backend
from .blacklist import BlacklistFilter
from .config import (
    SUPPORTED_PLATFORMS,
    ConfigError,
    OrganizerSettings,
    config_path,
    load_config,
    settings_from_config,
)
from .credentials import CredentialStore
from .file_store import LocalFileStore
from .indexer import (
    STATUS_FAILED,
    FolderIndexer,
    ScanProgress,
    describe_scan_state,
    reset_scan_state,
)
from .launchd import DEFAULT_LOG_DIR, JOB_DAEMON, JOBS, render_launchd_plist, resolve_program_path
from .locks import AdvisoryLock
from .logs import configure_logging
from .pipeline import SKIP_ERROR, OrganizationPipeline, RunSummary
from .ratelimit import RateLimiter
from .scheduler import (
    HANDLER_CONTINUE_SCAN,
    HANDLER_PROCESS_FILES,
    HANDLER_START_SCAN,
    Scheduler,
)
from .state_store import StateStore
from .util import ensure_dir, now_ms

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: OrganizerSettings
    store: StateStore
    files: LocalFileStore
    scheduler: Scheduler
    indexer: FolderIndexer
    credentials: CredentialStore
    pipeline: OrganizationPipeline

    def handlers(self) -> Dict[str, Any]:
        return {
            HANDLER_PROCESS_FILES: self.pipeline.run,
            HANDLER_START_SCAN: self.indexer.start_scan,
            HANDLER_CONTINUE_SCAN: self.indexer.continue_scan,
        }

    def close(self) -> None:
        self.store.close()


def build_runtime(
    settings: OrganizerSettings, *, credentials: Optional[CredentialStore] = None
) -> Runtime:
    ensure_dir(settings.state_dir)
    store = StateStore(settings.db_path)
    files = LocalFileStore(settings.file_store_root)
    scheduler = Scheduler(store)
    indexer = FolderIndexer(
        store,
        files,
        scheduler,
        source_folder_name=settings.source_folder_name,
        blacklist=BlacklistFilter(settings.blacklisted_paths),
        max_runtime_seconds=settings.max_runtime_seconds,
        folder_batch_size=settings.folder_batch_size,
        continuation_delay_seconds=settings.continuation_delay_seconds,
    )
    credentials = credentials or CredentialStore()

    def backend_factory(api_key: Optional[str]) -> HttpBackend:
        return create_backend(
            settings.ai_platform,
            model=settings.model_for_platform(),
            api_key=api_key,
            ollama_base_url=settings.ollama_base_url,
            timeout=settings.request_timeout_seconds,
            log_path=settings.ai_log_path,
        )

    pipeline = OrganizationPipeline(
        store=store,
        files=files,
        scheduler=scheduler,
        indexer=indexer,
        credentials=credentials,
        backend_factory=backend_factory,
        platform=settings.ai_platform,
        lock=AdvisoryLock(settings.lock_path, owner=f"pid-{os.getpid()}"),
        rate_limiter=RateLimiter(store, min_spacing_ms=settings.min_api_call_spacing_ms),
        source_folder_name=settings.source_folder_name,
        batch_size=settings.batch_size,
        max_file_size_bytes=settings.max_file_size_bytes,
        stall_threshold_ms=settings.stall_threshold_ms,
        lock_timeout_ms=settings.lock_timeout_ms,
        file_delay_ms=settings.file_delay_ms,
    )
    return Runtime(
        settings=settings,
        store=store,
        files=files,
        scheduler=scheduler,
        indexer=indexer,
        credentials=credentials,
        pipeline=pipeline,
    )


def _load_runtime() -> Runtime:
    return build_runtime(settings_from_config(load_config()))


def _print_scan_progress(progress: ScanProgress) -> None:
    print(f"Scan {progress.status}: {progress.folders_processed} folder(s) processed.")
    if progress.folders_remaining:
        print(f"{progress.folders_remaining} folder(s) remain; continuation {progress.continuation_id}.")
    if progress.error:
        print(f"Error: {progress.error}")


def _print_run_summary(summary: RunSummary) -> None:
    if summary.stall_reset:
        print("Stalled folder scan was reset.")
    if summary.skipped:
        print(f"Run skipped: {summary.skipped}")
        return
    for outcome in summary.outcomes:
        target = ""
        if outcome.destination:
            target = f" -> {outcome.destination}/{outcome.new_name or outcome.name}"
        print(f"[{outcome.kind}] {outcome.name}{target}")
    print(
        f"{summary.moved} moved, {summary.errors} error(s), "
        f"{summary.processed} processed in {summary.elapsed_seconds:.2f}s."
    )


def cmd_process(_: argparse.Namespace) -> int:
    runtime = _load_runtime()
    try:
        summary = runtime.pipeline.run()
    finally:
        runtime.close()
    _print_run_summary(summary)
    return 1 if summary.skipped == SKIP_ERROR else 0


def cmd_index_start(_: argparse.Namespace) -> int:
    runtime = _load_runtime()
    try:
        progress = runtime.indexer.start_scan()
    finally:
        runtime.close()
    _print_scan_progress(progress)
    return 1 if progress.status == STATUS_FAILED else 0


def cmd_index_continue(_: argparse.Namespace) -> int:
    runtime = _load_runtime()
    try:
        progress = runtime.indexer.continue_scan()
    finally:
        runtime.close()
    _print_scan_progress(progress)
    return 1 if progress.status == STATUS_FAILED else 0


def cmd_index_status(_: argparse.Namespace) -> int:
    runtime = _load_runtime()
    try:
        info = describe_scan_state(runtime.store, runtime.scheduler, now=now_ms())
    finally:
        runtime.close()
    print(json.dumps(info, indent=2))
    return 0


def cmd_index_reset(_: argparse.Namespace) -> int:
    runtime = _load_runtime()
    try:
        stray = reset_scan_state(runtime.store, runtime.scheduler)
    finally:
        runtime.close()
    print("Scan state reset.")
    if stray:
        print(f"Removed {stray} stray continuation trigger(s).")
    return 0


def cmd_daemon(args: argparse.Namespace) -> int:
    runtime = _load_runtime()
    poll = float(args.poll_seconds)
    handlers = runtime.handlers()
    logger.info("Daemon started; polling every %.1fs.", poll)
    try:
        while True:
            runs = runtime.scheduler.run_due(handlers)
            if args.once:
                for run in runs:
                    status = "ok" if run.ok else f"failed: {run.error}"
                    print(f"{run.trigger.handler} ({run.trigger.id}): {status}")
                if not runs:
                    print("no due triggers")
                break
            if not runs:
                time.sleep(poll)
    except KeyboardInterrupt:
        print("Daemon stopped.")
    finally:
        runtime.close()
    return 0


def cmd_set_key(args: argparse.Namespace) -> int:
    store = CredentialStore()
    if not store.set(args.platform, args.key):
        print("Refusing to store an empty or placeholder API key.")
        return 1
    print(f"Stored {args.platform} API key in {store.path}")
    return 0


def cmd_setup(args: argparse.Namespace) -> int:
    runtime = _load_runtime()
    settings = runtime.settings
    try:
        for platform, key in (("gemini", args.gemini_key), ("openai", args.openai_key)):
            if key and runtime.credentials.set(platform, key):
                print(f"Stored {platform} API key.")
        runtime.scheduler.schedule_recurring(
            HANDLER_PROCESS_FILES, settings.file_processing_interval_minutes * 60
        )
        runtime.scheduler.schedule_recurring(
            HANDLER_START_SCAN, settings.folder_cache_refresh_hours * 3600
        )
        print(
            f"Registered triggers: process every {settings.file_processing_interval_minutes} "
            f"minute(s), folder refresh every {settings.folder_cache_refresh_hours} hour(s)."
        )
        if args.skip_scan:
            progress = None
        else:
            progress = runtime.indexer.start_scan()
    finally:
        runtime.close()
    if progress is not None:
        _print_scan_progress(progress)
    print("Setup complete. Run 'inbox-organizer daemon' to keep the triggers firing.")
    return 0


def cmd_config(_: argparse.Namespace) -> int:
    cfg = load_config()
    print(f"Config: {config_path()}")
    for key, value in cfg.items():
        print(f"{key}: {value}")
    root = Path(str(cfg["file_store_root"])).expanduser()
    print(f"file_store_root_exists: {root.exists()}")
    return 0


def cmd_print_plist(args: argparse.Namespace) -> int:
    settings = settings_from_config(load_config())
    program = resolve_program_path(args.program)
    if program is None:
        print("Unable to resolve program path. Use --program to specify a binary.")
        return 1
    log_dir = Path(args.log_dir).expanduser().resolve() if args.log_dir else DEFAULT_LOG_DIR
    plist_text = render_launchd_plist(
        program=program,
        job=args.job,
        settings=settings,
        label=args.label,
        log_dir=log_dir,
    )
    print(plist_text, end="")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inbox-organizer",
        description="Classify files dropped in an inbox folder and file them away",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override (DEBUG, INFO, WARNING, ERROR)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    process = sub.add_parser("process", help="Process one batch of files from the source folder")
    process.set_defaults(func=cmd_process)

    index = sub.add_parser("index", help="Folder cache maintenance")
    index_sub = index.add_subparsers(dest="index_command", required=True)
    index_start = index_sub.add_parser("start", help="Start a fresh folder scan")
    index_start.set_defaults(func=cmd_index_start)
    index_continue = index_sub.add_parser("continue", help="Resume a checkpointed folder scan")
    index_continue.set_defaults(func=cmd_index_continue)
    index_status = index_sub.add_parser("status", help="Show scan state and folder cache info")
    index_status.set_defaults(func=cmd_index_status)
    index_reset = index_sub.add_parser("reset", help="Clear scan state and continuation triggers")
    index_reset.set_defaults(func=cmd_index_reset)

    daemon = sub.add_parser("daemon", help="Run due scheduler triggers in a loop")
    daemon.add_argument("--once", action="store_true", help="Run a single iteration")
    daemon.add_argument(
        "--poll-seconds",
        type=float,
        default=5.0,
        help="Polling interval when no trigger is due",
    )
    daemon.set_defaults(func=cmd_daemon)

    setup = sub.add_parser("setup", help="Store keys, register triggers and start a scan")
    setup.add_argument("--gemini-key", default=None, help="Gemini API key")
    setup.add_argument("--openai-key", default=None, help="OpenAI API key")
    setup.add_argument("--skip-scan", action="store_true", help="Do not start a folder scan")
    setup.set_defaults(func=cmd_setup)

    set_key = sub.add_parser("set-key", help="Store an API key")
    set_key.add_argument("platform", choices=[p for p in SUPPORTED_PLATFORMS if p != "ollama"])
    set_key.add_argument("key", help="API key value")
    set_key.set_defaults(func=cmd_set_key)

    cfg = sub.add_parser("config", help="Show configuration")
    cfg.set_defaults(func=cmd_config)

    plist = sub.add_parser("print-plist", help="Print a LaunchAgent plist")
    plist.add_argument("--job", choices=JOBS, default=JOB_DAEMON, help="Entry point to schedule")
    plist.add_argument("--label", default=None, help="LaunchAgent label")
    plist.add_argument(
        "--program",
        default=None,
        help="Path to the inbox-organizer binary (defaults to PATH lookup)",
    )
    plist.add_argument(
        "--log-dir",
        default=None,
        help="Directory for StandardOutPath/StandardErrorPath (defaults to /tmp)",
    )
    plist.set_defaults(func=cmd_print_plist)

    return parser


def _configure_logging(level_override: Optional[str]) -> None:
    try:
        cfg = load_config()
    except (OSError, ValueError):
        cfg = {}
    level = level_override or cfg.get("log_level") or "INFO"
    log_file = cfg.get("log_file")
    configure_logging(level, log_file=Path(log_file).expanduser() if log_file else None)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    try:
        return args.func(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
