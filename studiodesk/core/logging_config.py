import logging
import sys

import structlog

from ..config import settings
from ..request_context import company_slug_ctx, request_id_ctx

_CONTACT_KEYS = ("phone", "email", "recipient", "to")


def mask_contact_processor(logger, method_name, event_dict):
    """Masks client phone numbers and emails in log events."""
    for key in _CONTACT_KEYS:
        value = event_dict.get(key)
        if not value:
            continue
        text = str(value)
        if "@" in text:
            local, _, domain = text.partition("@")
            event_dict[key] = f"{local[:1]}***@{domain}"
        else:
            event_dict[key] = f"{text[:3]}***{text[-2:]}" if len(text) > 5 else "***"
    return event_dict


def add_request_context(logger, method_name, event_dict):
    """Tags events logged while serving a request with its id and tenant."""
    request_id = request_id_ctx.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    company_slug = company_slug_ctx.get()
    if company_slug:
        event_dict.setdefault("company_slug", company_slug)
    return event_dict


def setup_logging(level: str | None = None) -> None:
    resolved = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=resolved)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_request_context,
            structlog.processors.add_log_level,
            mask_contact_processor,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolved),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Request access lines come from the studiodesk.http JSON logger instead.
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.get_logger("studiodesk").info("logging_initialized", level=logging.getLevelName(resolved))
