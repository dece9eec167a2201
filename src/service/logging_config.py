from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")
vehicle_id: ContextVar[str] = ContextVar("vehicle_id", default="")

# client libraries that log every connection attempt while backends are down
NOISY_LOGGERS = ("aiokafka", "httpx", "httpcore", "sqlalchemy.engine")


def get_correlation_id() -> str:
    cid = correlation_id.get()
    if not cid:
        cid = uuid.uuid4().hex[:12]
        correlation_id.set(cid)
    return cid


@contextmanager
def vehicle_log_context(vid: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``vid``."""
    token = vehicle_id.set(vid)
    try:
        yield
    finally:
        vehicle_id.reset(token)


class VehicleContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get("")
        record.vehicle_id = vehicle_id.get("")
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or correlation_id.get(""),
        }
        vid = getattr(record, "vehicle_id", None) or vehicle_id.get("")
        if vid:
            entry["vehicle_id"] = vid
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra_data"):
            entry["data"] = record.extra_data
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(VehicleContextFilter())
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(name)s] [%(vehicle_id)s] %(message)s"
        ))
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))
