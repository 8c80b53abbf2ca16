"""
Structured logging for the server.

Log records are written one JSON object per line to a rotating file. Callers
usually pass a dict as the message (``logger.info({"event": "...", ...})``);
its keys are merged into the JSON record. Sensitive keys are redacted.
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from k8s_cluster_mcp.settings import Settings, get_settings

ROOT_LOGGER = "k8s_cluster_mcp"

# Sensitive data keys for log redaction
SENSITIVE_KEYS = {"api_key", "token", "password", "secret", "credential", "keyfile", "key_file"}


class JsonFormatter(logging.Formatter):
    def format(self, record):
        base = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
        }
        msg = record.msg
        if isinstance(msg, dict):
            base.update({k: _serialize(v) for k, v in msg.items()})
        else:
            base["message"] = record.getMessage()
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def _serialize(value):
    # Exceptions are logged by type and message, never by repr of internals
    if isinstance(value, BaseException):
        return {"name": type(value).__name__, "message": str(value)}
    return value


def redact_value(val: str) -> str:
    if not isinstance(val, str):
        return val
    if len(val) <= 8:
        return "***"
    return val[:4] + "***" + val[-4:]


def redact_dict(d: dict) -> dict:
    red = {}
    for k, v in d.items():
        lk = str(k).lower()
        if lk in SENSITIVE_KEYS:
            red[k] = redact_value(str(v))
        elif isinstance(v, dict):
            red[k] = redact_dict(v)
        elif isinstance(v, list):
            red[k] = [redact_dict(x) if isinstance(x, dict) else x for x in v]
        else:
            red[k] = v
    return red


def configure_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Attach the rotating JSON handler to the package logger (once)"""
    settings = settings or get_settings()
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, settings.log_level, logging.INFO))
    if not logger.handlers:
        os.makedirs(settings.log_dir, exist_ok=True)
        log_path = os.path.join(settings.log_dir, "mcp_server.log")
        handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    if name.startswith(ROOT_LOGGER):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
