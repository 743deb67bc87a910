from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..models import NON_BLOCKING_STATUSES, Appointment, Artist, ArtistAbsence
from .calendar_providers import BusyInterval, CalendarFactory, build_calendar_provider
from .calendar_sync import collect_external_busy
from .schedule import WeeklySchedule, load_stored_schedule, slots_for_day
from .slots import Interval, TimeSlot, free_windows, parse_hhmm, resolve_availability
from .timezones import local_day_bounds_utc, local_now, utc_naive_to_local

NOT_WORKING_MESSAGE = "Artist is not available on this day"
RECOMMENDATION_LIMIT = 3


def find_conflicts(
    db: Session,
    artist_id: str,
    start: datetime,
    end: datetime,
    exclude_appointment_id: str | None = None,
) -> list[Appointment]:
    """Blocking appointments of the artist overlapping ``[start, end)`` (naive UTC)."""
    q = select(Appointment).where(
        Appointment.artist_id == artist_id,
        Appointment.status.not_in(NON_BLOCKING_STATUSES),
        Appointment.start_time < end,
        Appointment.end_time > start,
    )
    if exclude_appointment_id:
        q = q.where(Appointment.id != exclude_appointment_id)
    return list(db.scalars(q.order_by(Appointment.start_time.asc())))


def find_absences(db: Session, artist_id: str, start: datetime, end: datetime) -> list[ArtistAbsence]:
    """Recorded absences of the artist overlapping ``[start, end)`` (naive UTC)."""
    q = select(ArtistAbsence).where(
        ArtistAbsence.artist_id == artist_id,
        ArtistAbsence.start_date < end,
        ArtistAbsence.end_date > start,
    )
    return list(db.scalars(q.order_by(ArtistAbsence.start_date.asc())))


def artist_is_busy(
    db: Session,
    artist_id: str,
    start: datetime,
    end: datetime,
    exclude_appointment_id: str | None = None,
) -> bool:
    if find_absences(db, artist_id, start, end):
        return True
    return bool(find_conflicts(db, artist_id, start, end, exclude_appointment_id=exclude_appointment_id))


def _absence_out(absence: ArtistAbsence) -> dict:
    return _busy_out(absence.start_date, absence.end_date, f"Absence: {absence.absence_type}")


def external_busy_as_intervals(external: dict[str, list[BusyInterval]]) -> list[Interval]:
    return [Interval(b.start, b.end) for intervals in external.values() for b in intervals]


@dataclass
class DayAvailability:
    slots: list[TimeSlot]
    message: str | None = None
    external_errors: dict[str, str] = field(default_factory=dict)


def _to_local(intervals: list[Interval], tz: ZoneInfo) -> list[Interval]:
    return [Interval(utc_naive_to_local(i.start, tz), utc_naive_to_local(i.end, tz)) for i in intervals]


def artist_day_availability(
    db: Session,
    *,
    artist: Artist,
    service_duration: int,
    day: date,
    tz: ZoneInfo,
    now: datetime,
    factory: CalendarFactory = build_calendar_provider,
    schedule: WeeklySchedule | None = None,
) -> DayAvailability:
    schedule = schedule if schedule is not None else load_stored_schedule(artist.schedule_json, artist.id)
    candidates = slots_for_day(schedule, day, service_duration, settings.SLOT_STEP_MINUTES)
    if not candidates:
        day_schedule = schedule.for_day(day)
        message = NOT_WORKING_MESSAGE if day_schedule is None or not day_schedule.is_bookable else None
        return DayAvailability(slots=[], message=message)

    day_start_utc, day_end_utc = local_day_bounds_utc(day, tz)
    appointments = find_conflicts(db, artist.id, day_start_utc, day_end_utc)
    absences = find_absences(db, artist.id, day_start_utc, day_end_utc)
    external, errors = collect_external_busy(db, artist.id, day_start_utc, day_end_utc, factory)

    busy = [Interval(a.start_time, a.end_time) for a in appointments]
    busy.extend(Interval(a.start_date, a.end_date) for a in absences)
    busy.extend(external_busy_as_intervals(external))

    slots = resolve_availability(candidates, _to_local(busy, tz), local_now(now, tz))
    return DayAvailability(slots=slots, external_errors=errors)


def fits_working_hours(
    schedule: WeeklySchedule,
    start_local: datetime,
    end_local: datetime,
) -> tuple[bool, str | None]:
    if start_local.date() != end_local.date():
        return False, "Interval must fit within one day"
    day_schedule = schedule.for_day(start_local.date())
    if day_schedule is None or not day_schedule.is_bookable:
        return False, NOT_WORKING_MESSAGE
    work_start = datetime.combine(start_local.date(), parse_hhmm(day_schedule.start_time))
    work_end = datetime.combine(start_local.date(), parse_hhmm(day_schedule.end_time))
    if start_local < work_start or end_local > work_end:
        return False, "Interval exceeds artist working hours"
    for break_start, break_end in day_schedule.break_pairs():
        blocked = Interval(
            datetime.combine(start_local.date(), parse_hhmm(break_start)),
            datetime.combine(start_local.date(), parse_hhmm(break_end)),
        )
        if blocked.overlaps(start_local, end_local):
            return False, "Interval overlaps an artist break"
    return True, None


def _busy_out(start: datetime, end: datetime, title: str | None = None) -> dict:
    return {"start": start, "end": end, "title": title}


def check_interval(
    db: Session,
    *,
    artist: Artist,
    start_utc: datetime,
    end_utc: datetime,
    tz: ZoneInfo,
    now: datetime,
    factory: CalendarFactory = build_calendar_provider,
) -> dict:
    """Can ``[start_utc, end_utc)`` be booked for the artist? Recommends alternatives when not."""
    local_conflicts = find_conflicts(db, artist.id, start_utc, end_utc)
    absences = find_absences(db, artist.id, start_utc, end_utc)
    external, errors = collect_external_busy(db, artist.id, start_utc, end_utc, factory)
    external_conflicts = {
        provider: [_busy_out(b.start, b.end, b.title) for b in intervals if b.start < end_utc and b.end > start_utc]
        for provider, intervals in external.items()
    }
    external_conflicts = {k: v for k, v in external_conflicts.items() if v}

    schedule = load_stored_schedule(artist.schedule_json, artist.id)
    start_local = utc_naive_to_local(start_utc, tz)
    end_local = utc_naive_to_local(end_utc, tz)
    in_hours, _ = fits_working_hours(schedule, start_local, end_local)

    available = not local_conflicts and not absences and not external_conflicts and in_hours
    recommendations: list[dict] = []
    if not available:
        duration = max(1, int((end_utc - start_utc).total_seconds() // 60))
        day = artist_day_availability(
            db,
            artist=artist,
            service_duration=duration,
            day=start_local.date(),
            tz=tz,
            now=now,
            factory=factory,
            schedule=schedule,
        )
        for slot in day.slots:
            if slot.available and slot.start != start_local:
                recommendations.append(
                    {"time": slot.time, "available": True, "datetime": slot.start.replace(tzinfo=tz)}
                )
            if len(recommendations) >= RECOMMENDATION_LIMIT:
                break

    return {
        "available": available,
        "conflicts": {
            "external": external_conflicts,
            "local": [
                _busy_out(a.start_time, a.end_time, a.service.name if a.service else None)
                for a in local_conflicts
            ]
            + [_absence_out(a) for a in absences],
            "business_hours": not in_hours,
        },
        "recommendations": recommendations,
        "errors": errors,
    }


def calendar_window(
    db: Session,
    *,
    artist: Artist,
    start_utc: datetime,
    end_utc: datetime,
    duration: int | None = None,
    factory: CalendarFactory = build_calendar_provider,
) -> dict:
    """Busy data for an arbitrary window, and free gaps of at least ``duration`` minutes."""
    appointments = find_conflicts(db, artist.id, start_utc, end_utc)
    absences = find_absences(db, artist.id, start_utc, end_utc)
    external, errors = collect_external_busy(db, artist.id, start_utc, end_utc, factory)

    free: list[dict] = []
    if duration:
        busy = [Interval(a.start_time, a.end_time) for a in appointments]
        busy.extend(Interval(a.start_date, a.end_date) for a in absences)
        busy.extend(external_busy_as_intervals(external))
        minimum = timedelta(minutes=int(duration))
        free = [
            {"start": gap.start, "end": gap.end}
            for gap in free_windows(Interval(start_utc, end_utc), busy)
            if gap.end - gap.start >= minimum
        ]

    return {
        "artist_id": artist.id,
        "start_date": start_utc,
        "end_date": end_utc,
        "external": {
            provider: [_busy_out(b.start, b.end, b.title) for b in intervals]
            for provider, intervals in external.items()
        },
        "local": [
            _busy_out(a.start_time, a.end_time, a.service.name if a.service else None)
            for a in appointments
        ]
        + [_absence_out(a) for a in absences],
        "free": free,
        "errors": errors,
    }
