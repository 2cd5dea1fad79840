"""
Logging configuration for gradetags.

Configures the root logger once per process. Console output is split so
that INFO/DEBUG go to stdout and WARNING and above go to stderr; an
optional rotating file handler writes one file per context (api, cli).
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone

from gradetags.config import settings

STANDARD_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured_context: str | None = None


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _MaxLevelFilter(logging.Filter):
    """Pass records strictly below a level."""

    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def _build_formatter() -> logging.Formatter:
    if settings.log_format == "json":
        return JsonFormatter()
    return logging.Formatter(fmt=STANDARD_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(context: str = "cli") -> None:
    """
    Configure root logging for a process.

    Safe to call more than once; only the first call per context installs
    handlers.

    Args:
        context: Name of the hosting process ("api" or "cli"); used as the
            log file name.

    Raises:
        PermissionError: If file logging is enabled and the log directory
            cannot be created.
    """
    global _configured_context

    if _configured_context == context:
        return

    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = _build_formatter()

    if settings.log_console_enabled:
        if settings.log_to_stdout:
            stdout_handler = logging.StreamHandler(sys.stdout)
            stdout_handler.setFormatter(formatter)
            stdout_handler.addFilter(_MaxLevelFilter(logging.WARNING))
            root.addHandler(stdout_handler)
        if settings.log_to_stderr:
            stderr_handler = logging.StreamHandler(sys.stderr)
            stderr_handler.setFormatter(formatter)
            stderr_handler.setLevel(logging.WARNING)
            root.addHandler(stderr_handler)

    if settings.log_file_enabled:
        log_dir = settings.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{context}.log",
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # SQLAlchemy is chatty at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _configured_context = context
    logging.getLogger(__name__).debug(f"Logging configured for context={context}")
