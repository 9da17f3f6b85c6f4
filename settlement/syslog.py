import json
import logging
import os
import sys
import time

from .models import LogLevel, LogSource, SystemLog


_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: datetime, level, logger, message and the audit source."""

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, object] = {
            "datetime": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("src", "entity_id"):
            if hasattr(record, key):
                log_record[key] = getattr(record, key)
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, ensure_ascii=False)


def setup_logger(name: str = "settlement", level: str | None = None, stream=None) -> logging.Logger:
    if level is None:
        level = os.getenv("SETTLEMENT_LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class AuditLog:
    """Writes every state change both to the process logger and to the stored system log."""

    def __init__(self, storage, name: str):
        self._storage = storage
        self._logger = get_logger(name)

    def _emit(self, lvl: LogLevel, src: LogSource, msg: str, entity_id: str | None) -> SystemLog:
        entry = SystemLog(ts=int(time.time() * 1000), lvl=lvl, src=src, msg=msg)
        self._storage.append_log(entry)
        self._logger.log(_PY_LEVELS[lvl], msg, extra={"src": src.value, "entity_id": entity_id})
        return entry

    def info(self, src: LogSource, msg: str, entity_id: str | None = None) -> SystemLog:
        return self._emit(LogLevel.INFO, src, msg, entity_id)

    def warn(self, src: LogSource, msg: str, entity_id: str | None = None) -> SystemLog:
        return self._emit(LogLevel.WARN, src, msg, entity_id)

    def error(self, src: LogSource, msg: str, entity_id: str | None = None) -> SystemLog:
        return self._emit(LogLevel.ERROR, src, msg, entity_id)
