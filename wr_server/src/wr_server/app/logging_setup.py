"""
Logging for the workspace reconciler (wr_server).

Every record carries the workspace id and reconcile stage it was emitted
under (`ws=` / `stage=` in the output, "-" outside a reconcile). The context
is held in contextvars and set with `log_context(...)`; the resource graph
copies it into its worker threads so concurrent volume stages are tagged too.

Output goes to a RotatingFileHandler (always, DEBUG and above) placed at the
first writable location of:
  WR_LOG_FILE, <log_dir>/<name>, WR_LOG_DIR/<name>, the package directory,
  ~/.workspace_reconciler/logs/<name>, <tmp>/workspace_reconciler/logs/<name>
plus an optional stdout handler at the configured level.

Environment variables (optional):
- WR_LOG_FILE, WR_LOG_DIR, WR_LOG_NAME (default "<service_name>.log")
- WR_LOG_MAX_BYTES (default 10MB), WR_LOG_BACKUP_COUNT (default 10)
- WR_LOG_LEVEL, falling back to LOG_LEVEL (default INFO)
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.handlers
import os
import sys
import tempfile
from pathlib import Path
from typing import Iterator, List, Optional, Union

APP_LOGGER_NAME = "workspace_reconciler"

_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 10
_FILE_FORMAT = (
    "%(asctime)s %(levelname)s [wr_server] ws=%(workspace)s stage=%(stage)s "
    "%(name)s %(threadName)s %(filename)s:%(lineno)d - %(message)s"
)
_CONSOLE_FORMAT = "%(asctime)s %(levelname)s [wr_server] ws=%(workspace)s stage=%(stage)s %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers kept at INFO under DEBUG, otherwise WARNING
_CHATTY_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi", "httpx", "urllib3", "docker")
# Always WARNING
_QUIET_LOGGERS = ("urllib3.connectionpool", "asyncio", "concurrent.futures")

_workspace_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("wr_log_workspace", default=None)
_stage_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("wr_log_stage", default=None)

_active_paths: set[str] = set()


# ----------------------------
# Reconcile context
# ----------------------------

@contextlib.contextmanager
def log_context(workspace: Optional[str] = None, stage: Optional[str] = None) -> Iterator[None]:
    """
    Tag records emitted inside the block with a workspace id and/or stage.
    Arguments left as None keep the enclosing value.
    """
    tokens = []
    if workspace is not None:
        tokens.append((_workspace_var, _workspace_var.set(workspace)))
    if stage is not None:
        tokens.append((_stage_var, _stage_var.set(stage)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_context() -> dict:
    return {"workspace": _workspace_var.get(), "stage": _stage_var.get()}


class ReconcileContextFilter(logging.Filter):
    """
    Handler filter that stamps `workspace` and `stage` onto every record.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "workspace"):
            record.workspace = _workspace_var.get() or "-"
        if not hasattr(record, "stage"):
            record.stage = _stage_var.get() or "-"
        return True


# ----------------------------
# Handlers
# ----------------------------

def _level(value: Optional[Union[int, str]]) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip():
        found = logging.getLevelName(value.strip().upper())
        if isinstance(found, int):
            return found
    return logging.INFO


def _log_file_candidates(service_name: str, log_dir: Optional[Union[str, Path]]) -> List[Path]:
    name = (os.getenv("WR_LOG_NAME") or f"{service_name}.log").strip()
    out: List[Path] = []
    if os.getenv("WR_LOG_FILE"):
        out.append(Path(os.environ["WR_LOG_FILE"]).expanduser())
    for directory in (log_dir, os.getenv("WR_LOG_DIR")):
        if directory:
            out.append(Path(directory).expanduser() / name)
    out.append(Path(__file__).resolve().parents[1] / name)
    out.append(Path.home() / ".workspace_reconciler" / "logs" / name)
    out.append(Path(tempfile.gettempdir()) / "workspace_reconciler" / "logs" / name)
    return out


def resolve_log_path(service_name: str, log_dir: Optional[Union[str, Path]] = None) -> Path:
    """
    First candidate whose directory can be created and whose file can be
    opened for append. Raises RuntimeError listing every failure otherwise.
    """
    failures: List[str] = []
    for candidate in _log_file_candidates(service_name, log_dir):
        try:
            candidate.parent.mkdir(parents=True, exist_ok=True)
            with open(candidate, mode="a", encoding="utf-8"):
                pass
        except OSError as exc:
            failures.append(f"{candidate}: {exc.__class__.__name__}: {exc}")
            continue
        return candidate
    raise RuntimeError("No writable log location for wr_server: " + ("; ".join(failures) or "no candidates"))


def configure_third_party_loggers(base_level: int) -> None:
    chatty_level = logging.INFO if base_level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(
    service_name: str = APP_LOGGER_NAME,
    *,
    level: Optional[Union[int, str]] = None,
    log_dir: Optional[Union[str, Path]] = None,
    console: bool = False,
) -> Path:
    """
    Attach the rotating file handler (once per path) and, when requested, a
    stdout handler to the root logger. Returns the log file path.
    """
    base_level = _level(level if level is not None else (os.getenv("WR_LOG_LEVEL") or os.getenv("LOG_LEVEL")))
    max_bytes = int(os.getenv("WR_LOG_MAX_BYTES") or _MAX_BYTES)
    backups = int(os.getenv("WR_LOG_BACKUP_COUNT") or _BACKUP_COUNT)
    log_path = resolve_log_path(service_name, log_dir)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    context_filter = ReconcileContextFilter()

    key = str(log_path.resolve())
    if key not in _active_paths:
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path,
            maxBytes=max(1, max_bytes),
            backupCount=max(1, backups),
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(context_filter)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATEFMT))
        root.addHandler(file_handler)
        _active_paths.add(key)

    if console and not any(getattr(h, "_wr_console", False) for h in root.handlers):
        stream_handler = logging.StreamHandler(stream=sys.stdout)
        stream_handler.setLevel(base_level)
        stream_handler.addFilter(context_filter)
        stream_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt=_DATEFMT))
        stream_handler._wr_console = True  # type: ignore[attr-defined]
        root.addHandler(stream_handler)

    logging.getLogger(APP_LOGGER_NAME).setLevel(base_level)
    configure_third_party_loggers(base_level)
    logging.getLogger(APP_LOGGER_NAME).info(
        "Logging to %s (level=%s, backups=%d)", log_path, logging.getLevelName(base_level), backups
    )
    return log_path


def initialize_from_env(service_name: str = APP_LOGGER_NAME) -> Path:
    """
    Startup entry point: file handler plus stdout.
    """
    return setup_logging(service_name=service_name, console=True)


__all__ = [
    "APP_LOGGER_NAME",
    "log_context",
    "current_context",
    "ReconcileContextFilter",
    "resolve_log_path",
    "configure_third_party_loggers",
    "setup_logging",
    "initialize_from_env",
]
