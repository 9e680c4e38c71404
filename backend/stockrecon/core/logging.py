"""Logging setup - JSON lines in production, human-readable in dev."""

import json
import logging
import sys
from typing import Optional

from stockrecon.core.config import Settings, settings as default_settings

HUMAN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    def format(self, record):
        return json.dumps({
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        })


def configure_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Install a single root handler according to *settings*.

    Existing root handlers are cleared first, so calling this more than once
    never duplicates output.
    """
    settings = settings or default_settings

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    root_logger.handlers.clear()

    if settings.debug:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(HUMAN_FORMAT))
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())

    root_logger.addHandler(handler)
    return root_logger
