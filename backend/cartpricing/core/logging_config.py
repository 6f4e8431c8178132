from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "request_id", "service"}

TEXT_FORMAT = "%(asctime)s %(levelname)s %(service)s %(name)s rid=%(request_id)s %(message)s"


class RequestIdFilter(logging.Filter):
    """Stamp each record with the current request id and the service name."""

    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx_var.get() or "-"
        record.service = self.service
        return True


def _plain(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    # UUIDs, datetimes and enums end up here.
    return str(value)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields such as cart_id are lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        document: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": getattr(record, "service", None),
            "level": record.levelname.lower(),
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "event": record.getMessage(),
        }
        document.update(
            {key: _plain(value) for key, value in vars(record).items() if key not in _STANDARD_ATTRS and not key.startswith("_")}
        )
        if record.exc_info:
            document["exc"] = self.formatException(record.exc_info)
        return json.dumps(document, ensure_ascii=False, default=str)


def configure_logging(json_logs: bool = False, *, level: str = "INFO", service: str = "cartpricing") -> None:
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter(service))
    handler.setFormatter(JsonFormatter() if json_logs else logging.Formatter(TEXT_FORMAT))
    logging.basicConfig(level=level.upper(), handlers=[handler], force=True)
