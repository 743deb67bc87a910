from contextvars import ContextVar

request_id_ctx: ContextVar[str | None] = ContextVar("request_id_ctx", default=None)
company_slug_ctx: ContextVar[str | None] = ContextVar("company_slug_ctx", default=None)
