import logging
import logging.config
from pathlib import Path
from typing import Optional

from config import settings


def build_logging_config(level: str = "INFO", log_file: Optional[str] = None) -> dict:
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": level,
        },
    }
    active = ["console"]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "filename": str(log_file),
            "maxBytes": 5 * 1024 * 1024,  # 5 MB
            "backupCount": 5,
            "encoding": "utf-8",
            "level": level,
        }
        active.append("file")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            },
        },
        "handlers": handlers,
        "loggers": {
            "uvicorn": {"handlers": active, "level": level, "propagate": False},
            "uvicorn.error": {"handlers": active, "level": level, "propagate": False},
            "uvicorn.access": {"handlers": active, "level": "WARNING", "propagate": False},
            "pymongo": {"handlers": active, "level": "WARNING", "propagate": False},
        },
        "root": {"handlers": active, "level": level},
    }


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    logging.config.dictConfig(
        build_logging_config(level or settings.LOG_LEVEL, log_file or settings.LOG_FILE or None)
    )
