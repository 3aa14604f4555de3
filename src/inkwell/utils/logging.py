"""Logging setup for Inkwell: rotating log file, run-scoped records, secret masking.

Several orchestration runs may share one event loop, so every record carries
the id of the run that emitted it (``-`` outside a run). Secrets registered
through :func:`setup_logging` or :func:`register_secret` never reach a handler
verbatim.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Iterable, Iterator

__all__ = [
    "setup_logging",
    "resolve_level",
    "run_context",
    "current_run_id",
    "register_secret",
    "get_log_path",
]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(run_id)s | %(name)s | %(message)s"
_DEFAULT_LOG_DIR = Path.home() / ".inkwell" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_NO_RUN = "-"

_RUN_ID: contextvars.ContextVar[str] = contextvars.ContextVar("inkwell_run_id", default=_NO_RUN)
_SECRETS: set[str] = set()
_LOG_PATH: Path | None = None


class RunContextFilter(logging.Filter):
    """Stamp ``run_id`` on each record and mask registered secrets."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _RUN_ID.get()
        if _SECRETS:
            message = record.getMessage()
            masked = message
            for secret in _SECRETS:
                masked = masked.replace(secret, _mask(secret))
            if masked != message:
                record.msg, record.args = masked, None
        return True


def setup_logging(
    level: int | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    secrets: Iterable[str] = (),
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the rotating file handler (and a console handler) on the root logger.

    Args:
        level: Root level; defaults to :func:`resolve_level`.
        log_dir: Directory for ``inkwell.log``; ``INKWELL_LOG_DIR`` is used next.
        console: Also log to stderr.
        secrets: Values masked in every record, typically the API key.
        force: Reconfigure even when logging was already set up.

    Returns:
        Path of the active log file.
    """

    global _LOG_PATH
    for secret in secrets:
        register_secret(secret)
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    level = resolve_level() if level is None else level
    target_dir = Path(log_dir or os.environ.get("INKWELL_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "inkwell.log"

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(RunContextFilter())

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    quiet_level = max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    _LOG_PATH = log_path
    return log_path


def resolve_level(*, debug: bool = False) -> int:
    """Pick the root level: ``debug`` wins, then ``INKWELL_LOG_LEVEL``, then INFO."""

    if debug:
        return logging.DEBUG
    name = os.environ.get("INKWELL_LOG_LEVEL", "").strip().upper()
    if not name:
        return logging.INFO
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


@contextlib.contextmanager
def run_context(run_id: str) -> Iterator[str]:
    """Tag records emitted inside the block (and its awaited calls) with ``run_id``."""

    token = _RUN_ID.set(run_id)
    try:
        yield run_id
    finally:
        _RUN_ID.reset(token)


def current_run_id() -> str | None:
    run_id = _RUN_ID.get()
    return None if run_id == _NO_RUN else run_id


def register_secret(value: str | None) -> None:
    """Mask ``value`` in later records; values under 8 characters are ignored."""

    stripped = (value or "").strip()
    if len(stripped) >= 8:
        _SECRETS.add(stripped)


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _mask(secret: str) -> str:
    return f"{secret[:3]}***{secret[-2:]}"
