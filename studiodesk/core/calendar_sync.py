from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..models import Appointment, CalendarConnection, CalendarEventLink, utc_now_naive
from .calendar_providers import (
    BusyInterval,
    CalendarEvent,
    CalendarFactory,
    CalendarProviderError,
    build_calendar_provider,
)

logger = structlog.get_logger("studiodesk.calendar_sync")


def enabled_connections(
    db: Session,
    artist_id: str,
    providers: list[str] | None = None,
) -> list[CalendarConnection]:
    q = select(CalendarConnection).where(
        CalendarConnection.artist_id == artist_id,
        CalendarConnection.sync_enabled.is_(True),
    )
    if providers:
        q = q.where(CalendarConnection.provider.in_(providers))
    return list(db.scalars(q.order_by(CalendarConnection.provider.asc())))


def collect_external_busy(
    db: Session,
    artist_id: str,
    start: datetime,
    end: datetime,
    factory: CalendarFactory = build_calendar_provider,
) -> tuple[dict[str, list[BusyInterval]], dict[str, str]]:
    """Busy intervals per provider plus per-provider errors.

    A failing provider is logged and reported, never raised: availability
    must still be computable from local appointments alone.
    """
    busy: dict[str, list[BusyInterval]] = {}
    errors: dict[str, str] = {}
    if not settings.CALENDAR_SYNC_ENABLED:
        return busy, errors
    for connection in enabled_connections(db, artist_id):
        try:
            provider = factory(connection)
            busy[connection.provider] = provider.list_busy_intervals(start, end)
        except CalendarProviderError as exc:
            logger.warning(
                "calendar_busy_fetch_failed",
                artist_id=artist_id,
                provider=connection.provider,
                error=str(exc),
            )
            errors[connection.provider] = str(exc)
    return busy, errors


def appointment_to_event(appointment: Appointment) -> CalendarEvent:
    service_name = appointment.service.name if appointment.service else "Appointment"
    client = appointment.client
    title = f"{service_name} - {client.name}" if client else service_name
    lines = [f"Appointment {appointment.id}", f"Status: {appointment.status}"]
    if appointment.notes:
        lines.append(appointment.notes)
    return CalendarEvent(
        title=title,
        start=appointment.start_time,
        end=appointment.end_time,
        description="\n".join(lines),
        location=appointment.store.name if appointment.store else None,
        attendees=[client.email] if client and client.email else [],
        uid=appointment.id,
    )


def _get_link(db: Session, appointment_id: str, provider: str) -> CalendarEventLink | None:
    return db.scalar(
        select(CalendarEventLink).where(
            CalendarEventLink.appointment_id == appointment_id,
            CalendarEventLink.provider == provider,
        )
    )


def sync_appointment(
    db: Session,
    appointment: Appointment,
    action: str,
    factory: CalendarFactory = build_calendar_provider,
    providers: list[str] | None = None,
) -> list[dict]:
    """Push one appointment to every enabled calendar of its artist."""
    if action not in ("create", "update", "delete"):
        raise ValueError(f"unsupported sync action: {action}")

    event = appointment_to_event(appointment)
    results = []
    for connection in enabled_connections(db, appointment.artist_id, providers):
        link = _get_link(db, appointment.id, connection.provider)
        result = {"provider": connection.provider, "success": False, "external_event_id": None, "error": None}
        try:
            provider = factory(connection)
            if action == "delete":
                if link is not None:
                    provider.delete_event(link.external_event_id)
                    db.delete(link)
            elif action == "update" and link is not None:
                link.external_event_id = provider.update_event(link.external_event_id, event)
                result["external_event_id"] = link.external_event_id
            else:
                external_id = provider.create_event(event)
                if link is None:
                    link = CalendarEventLink(
                        appointment_id=appointment.id,
                        provider=connection.provider,
                        external_event_id=external_id,
                    )
                    db.add(link)
                else:
                    link.external_event_id = external_id
                result["external_event_id"] = external_id
            connection.last_synced_at = utc_now_naive()
            result["success"] = True
        except CalendarProviderError as exc:
            logger.warning(
                "calendar_sync_failed",
                appointment_id=appointment.id,
                provider=connection.provider,
                action=action,
                error=str(exc),
            )
            result["error"] = str(exc)
        results.append(result)

    db.commit()
    logger.info(
        "calendar_sync_done",
        appointment_id=appointment.id,
        action=action,
        ok=sum(1 for r in results if r["success"]),
        failed=sum(1 for r in results if not r["success"]),
    )
    return results


def linked_events(db: Session, appointment_id: str) -> dict[str, str]:
    rows = db.scalars(
        select(CalendarEventLink).where(CalendarEventLink.appointment_id == appointment_id)
    )
    return {row.provider: row.external_event_id for row in rows}


def list_connections(db: Session, artist_id: str) -> list[CalendarConnection]:
    return list(
        db.scalars(
            select(CalendarConnection)
            .where(CalendarConnection.artist_id == artist_id)
            .order_by(CalendarConnection.provider.asc())
        )
    )


def save_connection(db: Session, fields: dict) -> CalendarConnection:
    """Create or replace the artist's connection for one provider."""
    connection = db.scalar(
        select(CalendarConnection).where(
            CalendarConnection.artist_id == fields["artist_id"],
            CalendarConnection.provider == fields["provider"],
        )
    )
    if connection is None:
        connection = CalendarConnection(artist_id=fields["artist_id"], provider=fields["provider"])
        db.add(connection)
    connection.calendar_id = fields.get("calendar_id")
    connection.access_token = fields.get("access_token")
    connection.username = fields.get("username")
    connection.password = fields.get("password")
    connection.sync_enabled = bool(fields.get("sync_enabled", True))
    db.commit()
    db.refresh(connection)
    logger.info("calendar_connected", artist_id=connection.artist_id, provider=connection.provider)
    return connection


def get_connection(db: Session, connection_id: str) -> CalendarConnection | None:
    return db.scalar(select(CalendarConnection).where(CalendarConnection.id == connection_id))


def delete_connection(db: Session, connection: CalendarConnection) -> None:
    db.delete(connection)
    db.commit()
    logger.info("calendar_disconnected", artist_id=connection.artist_id, provider=connection.provider)
