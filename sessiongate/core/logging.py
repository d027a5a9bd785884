from __future__ import annotations

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from sessiongate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Install one stdout handler on the root logger; repeated calls replace it.
    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        # Extras passed via logger.*(..., extra={...}) become top-level keys.
        handler.setFormatter(
            JsonFormatter(
                _LOG_FORMAT,
                rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level.upper())
    # Keep HTTP client chatter out of application logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
