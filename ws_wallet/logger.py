"""JSON-line logging for ws-wallet.

One stdout handler lives on the ``ws_wallet`` package logger; module loggers
obtained through :func:`get_logger` propagate to it.
"""

from __future__ import annotations

import json
import logging
import sys
import time

ROOT_LOGGER = "ws_wallet"


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object on a single line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def get_logger(name: str = ROOT_LOGGER, level: int | str | None = None) -> logging.Logger:
    """Return ``name``'s logger, installing the package handler on first use."""
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        root.setLevel(logging.INFO)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger
