import json
import logging
from datetime import datetime, timezone

import redis
from sqlalchemy import text

from .config import settings

_logger = logging.getLogger("studiodesk.http")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def configure_logging() -> None:
    """Plain JSON lines for the per-request access log."""
    if _logger.handlers:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    _logger.addHandler(handler)
    _logger.setLevel(logging.INFO)
    _logger.propagate = False


def emit_json_log(payload: dict) -> None:
    record = {"service": "studiodesk", **payload}
    record.setdefault("ts", utc_now_naive().isoformat() + "Z")
    level = logging.ERROR if record.get("level") == "error" else logging.INFO
    _logger.log(level, json.dumps(record, ensure_ascii=True, default=str))


def redis_client() -> redis.Redis | None:
    redis_url = (settings.REDIS_URL or "").strip()
    if not redis_url:
        return None
    return redis.from_url(redis_url, decode_responses=True, socket_timeout=2)


def readiness_checks(session_factory) -> tuple[bool, dict]:
    """Database is required; redis only when REDIS_URL is set."""
    checks = {"db": "ok", "redis": "skipped"}
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        checks["db"] = "error"

    client = redis_client()
    if client is not None:
        try:
            client.ping()
            checks["redis"] = "ok"
        except redis.RedisError:
            checks["redis"] = "error"
        finally:
            client.close()

    return all(value != "error" for value in checks.values()), checks
