"""Logging configuration setup."""

from __future__ import annotations

import logging.config
from typing import Any

LOG_FORMAT = "%(asctime)s - %(name)25s:%(lineno)-4d - %(levelname)-7s - %(message)s"


def build_log_config(level: str = "INFO") -> dict[str, Any]:
    """Return a ``dictConfig`` mapping that sends everything to stderr.

    Service loggers run at ``level``; third-party loggers stay at WARNING
    through the root logger.
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "simple": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "simple",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "pickup_audit": {"level": level.upper()},
            # librdkafka chatter is only interesting when debugging
            "confluent_kafka": {"level": "WARNING"},
        },
        "root": {"handlers": ["console"], "level": "WARNING"},
    }


def configure_logging(level: str = "INFO") -> None:
    """Install the service logging configuration."""
    logging.config.dictConfig(build_log_config(level))
