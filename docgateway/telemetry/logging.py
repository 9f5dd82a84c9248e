"""structlog setup for the gateway.

Production renders one JSON object per line; dev and test get the coloured
console renderer. Anything bound through contextvars (request_id, caller_id,
source_address) is merged into every line logged while a request is served.

Vehicle identifiers are personal data in most dealer jurisdictions. The
``mask_vehicle_identifiers`` processor runs before rendering and replaces
any 17-character VIN-shaped token in a string value with its masked form,
so a full identifier never reaches the log stream even if a caller puts one
in free text.

Example (production):
    {"event": "documentation.served", "level": "info",
     "logger": "docgateway.services.documentation",
     "timestamp": "2026-10-17T10:30:45.123456Z",
     "request_id": "req_4f1c09d2a8b7e6c5", "caller_id": "tech-0042",
     "identifier_suffix": "3456", "cache_served": true}
"""

from __future__ import annotations

import logging
import re
import sys
import uuid
from collections.abc import MutableMapping
from typing import Any

import structlog
from structlog.types import Processor

REQUEST_ID_HEADER = b"x-request-id"

# VINs never contain I, O or Q
_VIN_PATTERN = re.compile(r"\b[A-HJ-NPR-Z0-9]{17}\b", re.IGNORECASE)

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("uvicorn.access", "LiteLLM", "httpx")


def _mask(match: re.Match[str]) -> str:
    token = match.group(0)
    return "*" * 13 + token[-4:]


def mask_vehicle_identifiers(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) >= 17:
            event_dict[key] = _VIN_PATTERN.sub(_mask, value)
    return event_dict


def configure_logging(*, json_logs: bool = False, log_level: str = "INFO") -> None:
    """Install the structlog pipeline and route stdlib logging to stdout.

    Args:
        json_logs: JSON lines (production) instead of the console renderer
        log_level: Minimum level name, e.g. "INFO" or "DEBUG"
    """
    level = logging.getLevelName(log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        mask_vehicle_identifiers,
    ]
    if json_logs:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(exception_formatter=structlog.dev.RichTracebackFormatter())
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _incoming_request_id(scope: dict[str, Any]) -> str | None:
    for name, value in scope.get("headers", ()):
        if name == REQUEST_ID_HEADER:
            return value.decode("latin-1")[:64] or None
    return None


class RequestIdMiddleware:
    """Correlates log lines and responses with a request id.

    Honours a caller-supplied X-Request-ID, otherwise mints ``req_<hex>``.
    The id starts a fresh structlog context for the request and is echoed
    back as a response header.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        request_id = _incoming_request_id(scope) or f"req_{uuid.uuid4().hex[:16]}"
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        header = (REQUEST_ID_HEADER, request_id.encode("latin-1"))

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                message["headers"] = [*message.get("headers", ()), header]
            await send(message)

        await self.app(scope, receive, send_wrapper)


def bind_caller_context(caller_id: str, source_address: str) -> None:
    """Attach the caller's claimed identity and address to this request's logs."""
    structlog.contextvars.bind_contextvars(caller_id=caller_id, source_address=source_address)
