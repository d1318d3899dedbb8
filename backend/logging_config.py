"""
Logging configuration for the API server and the standalone worker
"""
import logging.config
import os
from typing import Optional

APP_LOGGERS = ("app", "queue", "worker", "pipeline", "broadcaster", "media_analysis", "stores", "errors", "request")


def configure_logging(level: Optional[str] = None):
    """Configure logging for the application"""
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    config = {
        "version": 1,
        "disable_existing_loggers": False,  # keep library loggers (werkzeug, engineio) alive
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            name: {"handlers": ["default"], "level": level, "propagate": False}
            for name in APP_LOGGERS
        },
        "root": {"handlers": ["default"], "level": "WARNING"},
    }

    logging.config.dictConfig(config)
