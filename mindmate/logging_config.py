# mindmate/logging_config.py
import logging
import logging.config
from pathlib import Path

from mindmate import config

BASE_DIR = Path(__file__).resolve().parent.parent
LOG_DIR = BASE_DIR / "logs"

LOG_FILE = LOG_DIR / "app.log"
# background sync and notification passes, one line per user/task step
JOBS_LOG_FILE = LOG_DIR / "jobs.log"

APP_LEVEL = config.settings.LOG_LEVEL
JOBS_LEVEL = config.settings.JOBS_LOG_LEVEL

JOB_LOGGERS = (
    "mindmate.services.task_sync",
    "mindmate.services.notifications",
    "mindmate.services.push",
)


def _rotating(filename: Path, formatter: str, level: str) -> dict:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": formatter,
        "filename": str(filename),
        "maxBytes": 5 * 1024 * 1024,  # 5 MB
        "backupCount": 5,
        "encoding": "utf-8",
        "level": level,
    }


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,

    "formatters": {
        "standard": {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        },
        # the loop runs on its own thread, cron passes on request threads
        "jobs": {
            "format": "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s",
        },
        "access": {
            "format": "%(asctime)s | %(levelname)s | uvicorn.access | %(message)s",
        },
    },

    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": APP_LEVEL,
        },
        "file": _rotating(LOG_FILE, "standard", APP_LEVEL),
        "access_file": _rotating(LOG_FILE, "access", "INFO"),
        "jobs_file": _rotating(JOBS_LOG_FILE, "jobs", JOBS_LEVEL),
    },

    "loggers": {
        "uvicorn": {"handlers": ["console", "file"], "level": "INFO", "propagate": False},
        "uvicorn.error": {"handlers": ["console", "file"], "level": "INFO", "propagate": False},
        "uvicorn.access": {"handlers": ["access_file"], "level": "INFO", "propagate": False},
        "mindmate": {"handlers": ["console", "file"], "level": APP_LEVEL, "propagate": False},
        # job loggers get their own file next to the console
        **{
            name: {"handlers": ["jobs_file", "console"], "level": JOBS_LEVEL, "propagate": False}
            for name in JOB_LOGGERS
        },
        "googleapiclient.discovery_cache": {"level": "ERROR"},
        "pywebpush": {"level": "WARNING"},
    },

    "root": {
        "handlers": ["console", "file"],
        "level": APP_LEVEL,
    },
}


def setup_logging() -> None:
    LOG_DIR.mkdir(exist_ok=True)
    logging.config.dictConfig(LOGGING_CONFIG)
    logging.getLogger("mindmate").info(
        "Logging initialized (app=%s, jobs=%s -> %s)", APP_LEVEL, JOBS_LEVEL, JOBS_LOG_FILE.name
    )
