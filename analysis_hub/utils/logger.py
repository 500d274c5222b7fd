"""Structured logging for the analysis hub.

Each process start creates a fresh timestamped log file.
``analysis_hub.log`` always contains the current run.
Only the 10 most recent log files are kept.

Every record carries the correlation id of the message being handled
(``-`` outside of one). Bus handlers run in their own tasks, so
``bind_correlation_id`` only affects the handler that calls it.
"""

import logging
import sys
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path

from analysis_hub.config import settings

_MAX_LOG_FILES = 10

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


class CorrelationIdFilter(logging.Filter):
    """Stamps ``record.correlation_id`` from the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        return True


def bind_correlation_id(correlation_id: str) -> None:
    """Tag every log line of the current task with *correlation_id*."""
    correlation_id_var.set(correlation_id)


def _prune_old_logs(logs_dir: Path) -> None:
    """Delete oldest log files if we exceed _MAX_LOG_FILES."""
    log_files = sorted(
        logs_dir.glob("analysis_hub_*.log"), key=lambda p: p.stat().st_mtime,
    )
    excess = len(log_files) - _MAX_LOG_FILES
    if excess > 0:
        for old in log_files[:excess]:
            try:
                old.unlink()
            except OSError:
                pass


def _handler(handler: logging.Handler, level: int, fmt: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(fmt)
    handler.addFilter(CorrelationIdFilter())
    return handler


def _setup_logger(name: str = "analysis_hub") -> logging.Logger:
    """Create a logger that writes to both console and a fresh per-run file."""
    log = logging.getLogger(name)
    log.setLevel(logging.DEBUG)

    # Prevent duplicate handlers on reimport
    if log.handlers:
        return log

    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(name)s [%(correlation_id)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log.addHandler(_handler(logging.StreamHandler(sys.stdout), logging.INFO, fmt))

    # ── Per-run timestamped log file ──
    logs_dir = settings.LOGS_DIR
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        run_log = logs_dir / f"analysis_hub_{timestamp}.log"
        log.addHandler(_handler(
            logging.FileHandler(run_log, encoding="utf-8"), logging.DEBUG, fmt,
        ))

        # Stable name always mirrors the current run
        log.addHandler(_handler(
            logging.FileHandler(logs_dir / "analysis_hub.log", mode="w", encoding="utf-8"),
            logging.DEBUG, fmt,
        ))
    except OSError:
        log.warning("File logging unavailable in %s, console only", logs_dir)
        return log

    _prune_old_logs(logs_dir)

    log.info("Log started: %s", run_log.name)
    return log


logger = _setup_logger()
