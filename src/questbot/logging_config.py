import logging
import logging.config
import os
import sys
import tempfile
from pathlib import Path

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("QUESTBOT_LOG_FILE", str(Path(tempfile.gettempdir()) / "questbot.log"))


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "questbot": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file"],
            "propagate": False,  # questbot logs stop here, not at root
        },
        # Libraries are chatty at INFO
        "fastapi": {
            "level": "INFO",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "uvicorn.access": {
            "level": "WARNING",  # one line per request otherwise
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "httpx": {
            "level": "WARNING",  # logs every faucet and captcha request at INFO
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "httpcore": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "cosmpy": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "grpc": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
    },
    # Everything else
    "root": {
        "level": "WARNING",
        "handlers": ["console", "file"],
    },
}


def setup_logging():
    """Apply the logging configuration."""
    logging.config.dictConfig(LOGGING_CONFIG)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")


def wallet_tag(wallet_index: int) -> str:
    """Operator-facing prefix; wallets are shown 1-based."""
    return f"[wallet {wallet_index + 1}]"
