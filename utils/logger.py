from __future__ import annotations

import logging
import logging.config
from pathlib import Path

LOG_FILE_NAME = "gmail_archiver.log"
REQUEST_TRACE_LOGGER = "services.http_client"


def configure_logging(log_dir: Path, level: str = "INFO", trace_requests: bool = False) -> Path:
    """Send archive logs to stderr and a rotating file under ``log_dir``.

    ``trace_requests`` turns on the per-attempt request trace regardless of
    ``level``. Only the file gets the trace; the console keeps ``level``.
    Returns the log file path.
    """

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_FILE_NAME
    level = level.upper()

    loggers = {
        # httpx logs every request at INFO; the request trace covers that.
        "httpx": {"level": "WARNING"},
        "httpcore": {"level": "WARNING"},
    }
    if trace_requests:
        loggers[REQUEST_TRACE_LOGGER] = {"level": "DEBUG"}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "file": {"format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s"},
                "console": {"format": "%(levelname)s | %(message)s"},
            },
            "handlers": {
                "file": {
                    "class": "logging.handlers.RotatingFileHandler",
                    "formatter": "file",
                    "filename": str(log_path),
                    "maxBytes": 1_000_000,
                    "backupCount": 3,
                    "encoding": "utf-8",
                    "level": "DEBUG",
                },
                "stderr": {
                    "class": "logging.StreamHandler",
                    "formatter": "console",
                    "stream": "ext://sys.stderr",
                    "level": level,
                },
            },
            "loggers": loggers,
            "root": {"handlers": ["file", "stderr"], "level": level},
        }
    )
    logging.getLogger(__name__).debug("Logging to %s at %s", log_path, level)
    return log_path
