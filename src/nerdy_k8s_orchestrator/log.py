from __future__ import annotations

import logging
from typing import Any, MutableMapping

from .models import Record

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # The kubernetes client logs every request at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class ObjectLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"{self.extra['kind']} {self.extra['object']}: {msg}", kwargs


def object_logger(logger: logging.Logger, record: Record) -> ObjectLoggerAdapter:
    return ObjectLoggerAdapter(logger, {"kind": record.KIND.kind, "object": record.display_name})
