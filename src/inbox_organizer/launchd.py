import plistlib
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import OrganizerSettings

DEFAULT_LAUNCHD_LABEL = "com.inbox-organizer"
DEFAULT_LOG_DIR = Path("/tmp")

JOB_DAEMON = "daemon"
JOB_PROCESS = "process"
JOB_INDEX = "index"
JOBS = (JOB_DAEMON, JOB_PROCESS, JOB_INDEX)

_JOB_ARGUMENTS = {
    JOB_DAEMON: ["daemon"],
    JOB_PROCESS: ["process"],
    JOB_INDEX: ["index", "start"],
}


def resolve_program_path(raw: Optional[str]) -> Optional[Path]:
    if raw:
        path = Path(raw).expanduser()
        if path.exists():
            return path.resolve()
        return None
    detected = shutil.which("inbox-organizer")
    if detected:
        return Path(detected).resolve()
    argv0 = Path(sys.argv[0]).expanduser()
    if argv0.exists():
        return argv0.resolve()
    return None


def job_schedule(job: str, settings: OrganizerSettings) -> Dict[str, Any]:
    """launchd timing keys for a job.

    The folder refresh runs daily at midnight when its interval is exactly one
    day; other intervals (including multi-day ones, which a calendar entry
    cannot express) become a fixed ``StartInterval``.
    """
    if job == JOB_PROCESS:
        return {"StartInterval": settings.file_processing_interval_minutes * 60}
    if job == JOB_INDEX:
        hours = settings.folder_cache_refresh_hours
        if hours == 24:
            return {"StartCalendarInterval": {"Hour": 0, "Minute": 0}}
        return {"StartInterval": hours * 3600}
    return {}


def render_launchd_plist(
    *,
    program: Path,
    job: str,
    settings: OrganizerSettings,
    label: Optional[str] = None,
    log_dir: Optional[Path] = DEFAULT_LOG_DIR,
) -> str:
    if job not in _JOB_ARGUMENTS:
        raise ValueError(f"Unknown job: {job} (expected one of {', '.join(JOBS)})")
    args: List[str] = [str(program), *_JOB_ARGUMENTS[job]]
    is_daemon = job == JOB_DAEMON
    payload: Dict[str, Any] = {
        "Label": label or f"{DEFAULT_LAUNCHD_LABEL}.{job}",
        "ProgramArguments": args,
        "RunAtLoad": is_daemon,
        "KeepAlive": is_daemon,
    }
    payload.update(job_schedule(job, settings))
    if log_dir is not None:
        payload["StandardOutPath"] = str(log_dir / f"inbox-organizer.{job}.out")
        payload["StandardErrorPath"] = str(log_dir / f"inbox-organizer.{job}.err")
    payload["EnvironmentVariables"] = {
        "INBOX_ORGANIZER_STATE_DIR": str(settings.state_dir),
        "INBOX_ORGANIZER_FILE_STORE_ROOT": str(settings.file_store_root),
    }
    return plistlib.dumps(payload, fmt=plistlib.FMT_XML, sort_keys=False).decode("utf-8")
