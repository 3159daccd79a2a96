from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pythonjsonlogger import jsonlogger

from stockfeed.config import LogConfig

# Publisher, consumer and valuation each log from their own thread.
_JSON_FIELDS = "%(asctime)s %(levelname)s %(name)s %(threadName)s %(message)s"
_JSON_RENAMES = {"asctime": "ts", "levelname": "level", "name": "logger", "threadName": "thread"}
_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"


def _formatter(json_logs: bool) -> logging.Formatter:
    if json_logs:
        return jsonlogger.JsonFormatter(fmt=_JSON_FIELDS, rename_fields=_JSON_RENAMES)
    return logging.Formatter(_TEXT_FORMAT)


def setup_logging(cfg: LogConfig) -> None:
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    # Each CLI command calls this; drop what an earlier call installed.
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()

    log_path = Path(cfg.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _formatter(cfg.json_logs)

    handlers: list[logging.Handler] = [
        RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8"),
        logging.StreamHandler(),
    ]
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
