import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


_CONFIGURED_LOGGERS: set[str] = set()

DEFAULT_LOGGER_NAME = "fusionrec"
_JSON_LINE_FORMAT = "%(levelname)s:     %(message)s"
_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _json_enabled() -> bool:
    return os.getenv("LOG_JSON", "1") not in ("0", "false", "False")


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Stdout logger for `name`, configured once from LOG_LEVEL / LOG_FORMAT / LOG_JSON."""
    logger = logging.getLogger(name or DEFAULT_LOGGER_NAME)
    if logger.name in _CONFIGURED_LOGGERS:
        return logger

    logger.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
    fmt = os.getenv("LOG_FORMAT") or (_JSON_LINE_FORMAT if _json_enabled() else _PLAIN_FORMAT)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)
    # records from fusionrec.* modules reach this handler; stop them there
    logger.propagate = False

    _CONFIGURED_LOGGERS.add(logger.name)
    return logger


class Logger:
    """Structured logger for request-level events.

    Fields passed at construction (``Logger("engine", component="mmr")``) are
    attached to every record. With LOG_JSON=1 each record is a JSON line with
    ``ts`` and ``event`` keys; otherwise ``event | k=v ...``.
    """

    def __init__(self, name: Optional[str] = None, **context: Any):
        self._name = name or DEFAULT_LOGGER_NAME
        self._log = get_logger(self._name)
        self._json = _json_enabled()
        self._context: Dict[str, Any] = dict(context)

    def bind(self, **context: Any) -> "Logger":
        child = Logger.__new__(Logger)
        child._name = self._name
        child._log = self._log
        child._json = self._json
        child._context = {**self._context, **context}
        return child

    def _emit(self, level: int, msg: str, exc_info: bool = False, **kv: Any) -> None:
        if not self._log.isEnabledFor(level):
            return
        fields = {**self._context, **kv}
        if self._json:
            payload: Dict[str, Any] = {"ts": datetime.now(timezone.utc).isoformat(), "event": msg}
            payload.update(fields)
            line = json.dumps(payload, ensure_ascii=False, default=str)
        elif fields:
            line = f"{msg} | " + " ".join(f"{k}={v}" for k, v in fields.items())
        else:
            line = msg
        self._log.log(level, line, exc_info=exc_info)

    def info(self, msg: str, **kv: Any) -> None:
        self._emit(logging.INFO, msg, **kv)

    def warn(self, msg: str, **kv: Any) -> None:
        self._emit(logging.WARNING, msg, **kv)

    warning = warn

    def error(self, msg: str, exc_info: bool = False, **kv: Any) -> None:
        self._emit(logging.ERROR, msg, exc_info=exc_info, **kv)

    def debug(self, msg: str, **kv: Any) -> None:
        self._emit(logging.DEBUG, msg, **kv)
