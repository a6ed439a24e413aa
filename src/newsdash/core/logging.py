from __future__ import annotations

import contextvars
import json
import logging
import os
import time
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

SERVICE_NAME = "newsdash"

# Fields bound for the current request or stream session, e.g. request_id.
_bound: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar(
    "newsdash_log_context", default={}
)

_configured = False


def bind_context(**fields: Any) -> contextvars.Token:
    merged = dict(_bound.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    return _bound.set(merged)


def reset_context(token: contextvars.Token) -> None:
    _bound.reset(token)


def current_context() -> dict[str, Any]:
    return dict(_bound.get())


class ContextFilter(logging.Filter):
    """Stamps the bound context onto every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "context"):
            record.context = current_context()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "ts": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(getattr(record, "context", None) or {})
        event = getattr(record, "event", None)
        if event:
            payload["event"] = event
        payload.update(getattr(record, "fields", None) or {})
        if record.exc_info:
            exc_type, exc, _ = record.exc_info
            payload["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc) if exc else None,
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(payload, default=str, ensure_ascii=True)


def configure_logging(level: str | None = None) -> None:
    global _configured  # noqa: PLW0603
    if _configured:
        return
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved = logging.getLevelName(level_name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(ContextFilter())

    root = logging.getLogger(SERVICE_NAME)
    root.setLevel(resolved)
    root.handlers = [handler]
    root.propagate = False

    # the provider client logs every request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    present = {k: v for k, v in fields.items() if v is not None}
    logger.log(level, event, extra={"event": event, "fields": present})


def log_exception(logger: logging.Logger, event: str, **fields: Any) -> None:
    present = {k: v for k, v in fields.items() if v is not None}
    logger.exception(event, extra={"event": event, "fields": present})


class RequestContextMiddleware:
    """
    Binds a request id for the lifetime of each HTTP request and echoes it back.

    Implemented as plain ASGI so the id stays bound while a streaming body is being
    produced.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get("x-request-id") or uuid.uuid4().hex
        token = bind_context(request_id=request_id)

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).append("x-request-id", request_id)
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        except Exception:
            log_exception(
                get_logger(__name__),
                "http.request.error",
                method=scope.get("method"),
                path=scope.get("path"),
            )
            raise
        finally:
            reset_context(token)


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
