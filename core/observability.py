"""Logging setup for the ``chatrelay`` logger tree.

``configure_logging`` is idempotent: it installs a single stream handler
(text or JSON lines, per ``logging.format``) and sets the level from
``logging.level``. Module loggers are ``chatrelay.<component>``.
"""
from __future__ import annotations

import json
import logging

from core.config.schemas.observability import LoggingConfig

ROOT_LOGGER = "chatrelay"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data = {
            "ts": round(record.created, 3),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False)


def configure_logging(cfg: LoggingConfig | None = None) -> logging.Logger:
    cfg = cfg or LoggingConfig()
    logger = logging.getLogger(ROOT_LOGGER)
    handler = next(
        (
            h for h in logger.handlers
            if getattr(h, "_chatrelay_handler", False)
        ),
        None,
    )
    if handler is None:
        handler = logging.StreamHandler()
        handler._chatrelay_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    if cfg.format == "json":
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    logger.setLevel(_LEVELS.get(cfg.level, logging.INFO))
    return logger


__all__ = ["configure_logging", "JsonLineFormatter", "ROOT_LOGGER"]
