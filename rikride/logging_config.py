"""
Logging Configuration
Configures the root logger once at import time
"""

import logging.config

from rikride import config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = config.LOG_LEVEL) -> None:
    """Apply the application logging configuration"""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"level": level.upper(), "handlers": ["console"]},
            # Keep third-party noise down
            "loggers": {
                "httpx": {"level": "WARNING"},
                "pymongo": {"level": "WARNING"},
            },
        }
    )


configure_logging()
