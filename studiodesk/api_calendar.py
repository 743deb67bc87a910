from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .api import Clock, as_utc, bad_request, get_calendar_factory, get_clock, get_current_company, utc_query_value
from .core.availability import calendar_window, check_interval
from .core.calendar_providers import CalendarFactory
from .core.calendar_sync import (
    delete_connection,
    get_connection,
    linked_events,
    list_connections,
    save_connection,
    sync_appointment,
)
from .core.timezones import store_zone, to_utc_naive
from .db import get_db
from .models import CalendarConnection, Company
from .schemas import (
    CalendarAvailabilityOut,
    CalendarCheckIn,
    CalendarCheckOut,
    CalendarConnectionCreate,
    CalendarConnectionOut,
    CalendarSyncIn,
    CalendarSyncOut,
    CalendarSyncStatusOut,
)
from .services import require_appointment, require_artist

router = APIRouter(prefix="/api/calendar", tags=["calendar"])

DEFAULT_WINDOW_DAYS = 7
MAX_WINDOW_DAYS = 62


def _to_connection_out(connection: CalendarConnection) -> CalendarConnectionOut:
    return CalendarConnectionOut(
        id=connection.id,
        artist_id=connection.artist_id,
        provider=connection.provider,
        calendar_id=connection.calendar_id,
        sync_enabled=bool(connection.sync_enabled),
        last_synced_at=as_utc(connection.last_synced_at),
    )


def _busy_utc(items: list[dict]) -> list[dict]:
    return [{**item, "start": as_utc(item["start"]), "end": as_utc(item["end"])} for item in items]


@router.get("/connections", response_model=list[CalendarConnectionOut])
def get_connections(
    artist_id: str = Query(..., alias="artistId", min_length=1),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    artist = require_artist(db, company.id, artist_id)
    return [_to_connection_out(c) for c in list_connections(db, artist.id)]


@router.post("/connections", response_model=CalendarConnectionOut, status_code=status.HTTP_201_CREATED)
def post_connection(
    payload: CalendarConnectionCreate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    artist = require_artist(db, company.id, payload.artist_id)
    fields = payload.model_dump()
    fields["artist_id"] = artist.id
    return _to_connection_out(save_connection(db, fields))


@router.delete("/connections/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    connection = get_connection(db, connection_id)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Calendar connection not found")
    # Scope check: the artist must belong to the current company.
    require_artist(db, company.id, connection.artist_id)
    delete_connection(db, connection)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/availability", response_model=CalendarAvailabilityOut)
def get_calendar_availability(
    artist_id: str = Query(..., alias="artistId", min_length=1),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    duration: Optional[int] = Query(None, gt=0, le=720),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
    factory: CalendarFactory = Depends(get_calendar_factory),
):
    artist = require_artist(db, company.id, artist_id)
    now_utc = clock().astimezone(timezone.utc).replace(tzinfo=None)
    start = utc_query_value(start_date) or now_utc
    end = utc_query_value(end_date) or start + timedelta(days=DEFAULT_WINDOW_DAYS)
    if end <= start:
        raise HTTPException(status_code=400, detail="endDate must be after startDate")
    if end - start > timedelta(days=MAX_WINDOW_DAYS):
        raise HTTPException(status_code=400, detail=f"Window cannot exceed {MAX_WINDOW_DAYS} days")

    window = calendar_window(db, artist=artist, start_utc=start, end_utc=end, duration=duration, factory=factory)
    window["start_date"] = as_utc(window["start_date"])
    window["end_date"] = as_utc(window["end_date"])
    window["external"] = {provider: _busy_utc(items) for provider, items in window["external"].items()}
    window["local"] = _busy_utc(window["local"])
    window["free"] = _busy_utc(window["free"])
    return window


@router.post("/availability/check", response_model=CalendarCheckOut)
def post_availability_check(
    payload: CalendarCheckIn,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
    factory: CalendarFactory = Depends(get_calendar_factory),
):
    artist = require_artist(db, company.id, payload.artist_id)
    tz = store_zone(artist.store.timezone)
    result = check_interval(
        db,
        artist=artist,
        start_utc=to_utc_naive(payload.start_time, tz),
        end_utc=to_utc_naive(payload.end_time, tz),
        tz=tz,
        now=clock(),
        factory=factory,
    )
    conflicts = result["conflicts"]
    conflicts["external"] = {provider: _busy_utc(items) for provider, items in conflicts["external"].items()}
    conflicts["local"] = _busy_utc(conflicts["local"])
    return result


@router.post("/sync", response_model=CalendarSyncOut)
def post_sync(
    payload: CalendarSyncIn,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    factory: CalendarFactory = Depends(get_calendar_factory),
):
    appointment = require_appointment(db, company.id, payload.appointment_id)
    try:
        results = sync_appointment(db, appointment, payload.action, factory=factory, providers=payload.providers)
    except ValueError as exc:
        raise bad_request(exc) from exc
    return CalendarSyncOut(appointment_id=appointment.id, action=payload.action, results=results)


@router.get("/sync", response_model=CalendarSyncStatusOut)
def get_sync_status(
    appointment_id: str = Query(..., alias="appointmentId", min_length=1),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    appointment = require_appointment(db, company.id, appointment_id)
    return CalendarSyncStatusOut(
        appointment_id=appointment.id,
        events=linked_events(db, appointment.id),
        connections=[_to_connection_out(c) for c in list_connections(db, appointment.artist_id)],
    )
