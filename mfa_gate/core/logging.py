"""
Logging setup for the MFA gate.

Console logging always; a rotating file handler when MFAGATE_LOG_FILE is set.
"""
import logging
import logging.config
import logging.handlers
from pathlib import Path

from .config import Settings, get_settings

_configured = False


def configure_logging(settings: Settings | None = None) -> None:
    """Configure console + optional file logging once per process."""
    global _configured
    if _configured:
        return

    settings = settings or get_settings()
    log_level = settings.log_level.upper()

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": log_level,
        },
    }
    if settings.log_file:
        log_file = Path(settings.log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": log_level,
            "filename": str(log_file),
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
        }

    handler_names = list(handlers)
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            }
        },
        "handlers": handlers,
        "root": {
            "handlers": handler_names,
            "level": log_level,
        },
        "loggers": {
            "uvicorn.access": {
                "handlers": handler_names,
                "level": log_level,
                "propagate": False,
            },
            "uvicorn.error": {
                "handlers": handler_names,
                "level": log_level,
                "propagate": False,
            },
        },
    })
    _configured = True
