import time
import uuid
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import router
from .api_booking import router as booking_router
from .api_calendar import router as calendar_router
from .api_reminders import router as reminders_router
from .config import settings
from .core.logging_config import setup_logging
from .db import SessionLocal, init_db
from .errors import error_body, install_error_handlers
from .observability import configure_logging, emit_json_log, readiness_checks
from .request_context import company_slug_ctx, request_id_ctx

_MAINTENANCE_BYPASS_PREFIXES = (
    "/health",
    "/ping",
    "/docs",
    "/redoc",
    "/openapi.json",
)
_READ_ONLY_BYPASS_PREFIXES = ("/api/appointments/confirm/",)


def _read_app_version() -> str:
    version_file = Path(__file__).resolve().parents[1] / "VERSION"
    try:
        value = version_file.read_text(encoding="utf-8").strip()
        return value or "0.1.0"
    except OSError:
        return "0.1.0"


init_db()
configure_logging()
setup_logging()

app = FastAPI(
    title="StudioDesk",
    description="Booking, availability and studio management API for tattoo and beauty studios",
    version=_read_app_version(),
)
app.state.session_local = SessionLocal
install_error_handlers(app)


@app.middleware("http")
async def maintenance_mode_middleware(request: Request, call_next):
    path = request.url.path or ""
    method = request.method.upper()
    retry_after = str(max(1, int(settings.MAINTENANCE_RETRY_AFTER_SECONDS)))

    if bool(settings.MAINTENANCE_MODE):
        if not any(path.startswith(prefix) for prefix in _MAINTENANCE_BYPASS_PREFIXES):
            return JSONResponse(
                status_code=503,
                content=error_body("Service temporarily unavailable: maintenance mode"),
                headers={"Retry-After": retry_after},
            )

    if bool(settings.MAINTENANCE_READ_ONLY):
        if method not in {"GET", "HEAD", "OPTIONS"} and not path.startswith(_READ_ONLY_BYPASS_PREFIXES):
            return JSONResponse(
                status_code=503,
                content=error_body("Service is in read-only mode"),
                headers={"Retry-After": retry_after},
            )
    return await call_next(request)


def _access_record(request: Request, request_id: str, company_slug: str | None, started: float) -> dict:
    return {
        "event": "http_request",
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
        "company_slug": company_slug,
        "store_id": request.query_params.get("storeId"),
    }


@app.middleware("http")
async def request_observability_middleware(request: Request, call_next):
    request_id = (request.headers.get("x-request-id") or "").strip() or str(uuid.uuid4())
    company_slug = (request.headers.get("x-company-slug") or "").strip().lower() or None
    request_token = request_id_ctx.set(request_id)
    company_token = company_slug_ctx.set(company_slug)
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception as exc:
        record = _access_record(request, request_id, company_slug, started)
        emit_json_log({**record, "level": "error", "status_code": 500, "error": str(exc)})
        return JSONResponse(
            status_code=500,
            content=error_body("Internal server error"),
            headers={"X-Request-ID": request_id},
        )
    finally:
        request_id_ctx.reset(request_token)
        company_slug_ctx.reset(company_token)

    record = _access_record(request, request_id, company_slug, started)
    emit_json_log({**record, "level": "info", "status_code": int(response.status_code)})
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.get("/ping")
def ping():
    return {"ok": True}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    ok, checks = readiness_checks(app.state.session_local)
    if ok:
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


app.include_router(router)
app.include_router(booking_router)
app.include_router(calendar_router)
app.include_router(reminders_router)
