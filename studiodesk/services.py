import json
from datetime import datetime, timezone

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.availability import DayAvailability, artist_day_availability, artist_is_busy
from .core.calendar_providers import CalendarFactory, build_calendar_provider
from .core.reminders import cancel_appointment_reminders, schedule_appointment_reminders
from .core.schedule import dump_schedule, parse_schedule
from .core.timezones import store_zone, to_utc_naive
from .errors import BookingConflictError, NotFoundError
from .models import (
    NON_BLOCKING_STATUSES,
    Appointment,
    Artist,
    ArtistAbsence,
    Client,
    Company,
    Service,
    Store,
)

logger = structlog.get_logger("studiodesk.services")

ARTIST_BUSY_MESSAGE = "Artist is not available for the selected time slot"
NO_ARTIST_MESSAGE = "No artists available for the selected time slot"


def _dump_json(value) -> str:
    return json.dumps(value if value is not None else {}, ensure_ascii=True, sort_keys=True)


def load_json(raw: str | None, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("stored_json_invalid", sample=raw[:80])
        return default


def paginate(db: Session, q, page: int, limit: int) -> tuple[list, int]:
    total = int(db.execute(select(func.count()).select_from(q.order_by(None).subquery())).scalar_one() or 0)
    rows = db.execute(q.offset((page - 1) * limit).limit(limit)).scalars().all()
    return list(rows), total


# Companies


def get_or_create_company(db: Session, slug: str, name: str | None = None) -> Company:
    normalized_slug = slug.strip().lower()
    company = db.execute(select(Company).where(Company.slug == normalized_slug)).scalar_one_or_none()
    if company:
        return company

    company = Company(slug=normalized_slug, name=(name or normalized_slug).strip())
    db.add(company)
    try:
        db.commit()
    except IntegrityError:
        # Another request created it first.
        db.rollback()
        return db.execute(select(Company).where(Company.slug == normalized_slug)).scalar_one()
    db.refresh(company)
    return company


def update_company(db: Session, company: Company, fields: dict) -> Company:
    if "name" in fields and fields["name"]:
        company.name = fields["name"].strip()
    if "subscription" in fields and fields["subscription"]:
        company.subscription = fields["subscription"]
    if "settings" in fields and fields["settings"] is not None:
        company.settings_json = _dump_json(fields["settings"])
    db.commit()
    db.refresh(company)
    return company


# Stores


def _stores_query(company_id: str):
    return select(Store).where(Store.company_id == company_id)


def list_stores(db: Session, company_id: str, page: int, limit: int) -> tuple[list[Store], int]:
    return paginate(db, _stores_query(company_id).order_by(Store.name.asc()), page, limit)


def get_store(db: Session, company_id: str, store_id: str) -> Store | None:
    return db.execute(_stores_query(company_id).where(Store.id == store_id)).scalar_one_or_none()


def require_store(db: Session, company_id: str, store_id: str) -> Store:
    store = get_store(db, company_id, store_id)
    if store is None:
        raise NotFoundError("Store")
    return store


def create_store(db: Session, company_id: str, name: str, timezone: str, business_hours: dict) -> Store:
    store = Store(
        company_id=company_id,
        name=name.strip(),
        timezone=timezone,
        business_hours_json=_dump_json(business_hours),
    )
    db.add(store)
    db.commit()
    db.refresh(store)
    logger.info("store_created", store_id=store.id, company_id=company_id)
    return store


def update_store(db: Session, store: Store, fields: dict) -> Store:
    if fields.get("name"):
        store.name = fields["name"].strip()
    if fields.get("timezone"):
        store.timezone = fields["timezone"]
    if fields.get("business_hours") is not None:
        store.business_hours_json = _dump_json(fields["business_hours"])
    db.commit()
    db.refresh(store)
    return store


def delete_store(db: Session, store: Store) -> None:
    db.delete(store)
    db.commit()
    logger.info("store_deleted", store_id=store.id)


# Artists


def _artists_query(company_id: str):
    return select(Artist).join(Store, Store.id == Artist.store_id).where(Store.company_id == company_id)


def list_artists(
    db: Session,
    company_id: str,
    store_id: str | None,
    page: int,
    limit: int,
    include_inactive: bool = False,
) -> tuple[list[Artist], int]:
    q = _artists_query(company_id)
    if store_id:
        q = q.where(Artist.store_id == store_id)
    if not include_inactive:
        q = q.where(Artist.is_active.is_(True))
    return paginate(db, q.order_by(Artist.name.asc()), page, limit)


def get_artist(db: Session, company_id: str, artist_id: str) -> Artist | None:
    return db.execute(_artists_query(company_id).where(Artist.id == artist_id)).scalar_one_or_none()


def require_artist(db: Session, company_id: str, artist_id: str) -> Artist:
    artist = get_artist(db, company_id, artist_id)
    if artist is None:
        raise NotFoundError("Artist")
    return artist


def create_artist(db: Session, company_id: str, fields: dict) -> Artist:
    store = require_store(db, company_id, fields["store_id"])
    artist = Artist(
        store_id=store.id,
        name=fields["name"].strip(),
        email=fields.get("email"),
        specialties_json=json.dumps(fields.get("specialties") or []),
        schedule_json=dump_schedule(parse_schedule(fields.get("schedule") or {})),
        commission=float(fields.get("commission", 0.5)),
        is_active=bool(fields.get("is_active", True)),
    )
    db.add(artist)
    db.commit()
    db.refresh(artist)
    logger.info("artist_created", artist_id=artist.id, store_id=store.id)
    return artist


def update_artist(db: Session, artist: Artist, fields: dict) -> Artist:
    if fields.get("name"):
        artist.name = fields["name"].strip()
    if "email" in fields:
        artist.email = fields["email"]
    if fields.get("specialties") is not None:
        artist.specialties_json = json.dumps(fields["specialties"])
    if fields.get("schedule") is not None:
        artist.schedule_json = dump_schedule(parse_schedule(fields["schedule"]))
    if fields.get("commission") is not None:
        artist.commission = float(fields["commission"])
    if fields.get("is_active") is not None:
        artist.is_active = bool(fields["is_active"])
    db.commit()
    db.refresh(artist)
    return artist


def archive_artist(db: Session, artist: Artist) -> Artist:
    artist.is_active = False
    db.commit()
    db.refresh(artist)
    logger.info("artist_archived", artist_id=artist.id)
    return artist


# Artist absences


def _absences_query(company_id: str):
    return (
        select(ArtistAbsence)
        .join(Artist, Artist.id == ArtistAbsence.artist_id)
        .join(Store, Store.id == Artist.store_id)
        .where(Store.company_id == company_id)
    )


def create_absence(db: Session, company_id: str, fields: dict) -> ArtistAbsence:
    """Record a period the artist cannot be booked; naive datetimes are store wall time."""
    artist = require_artist(db, company_id, fields["artist_id"])
    tz = store_zone(artist.store.timezone)
    start = to_utc_naive(fields["start_date"], tz)
    end = to_utc_naive(fields["end_date"], tz)
    if end <= start:
        raise ValueError("End date must be after start date")
    absence = ArtistAbsence(
        artist_id=artist.id,
        start_date=start,
        end_date=end,
        absence_type=fields.get("type") or "personal",
        reason=(fields.get("reason") or "").strip() or None,
    )
    db.add(absence)
    db.commit()
    db.refresh(absence)
    logger.info(
        "artist_absence_created",
        absence_id=absence.id,
        artist_id=artist.id,
        absence_type=absence.absence_type,
    )
    return absence


def list_absences(
    db: Session,
    company_id: str,
    artist_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[ArtistAbsence]:
    q = _absences_query(company_id)
    if artist_id:
        q = q.where(ArtistAbsence.artist_id == artist_id)
    if start is not None:
        q = q.where(ArtistAbsence.end_date > start)
    if end is not None:
        q = q.where(ArtistAbsence.start_date < end)
    return list(db.execute(q.order_by(ArtistAbsence.start_date.asc())).scalars().all())


def require_absence(db: Session, company_id: str, absence_id: str) -> ArtistAbsence:
    absence = db.execute(_absences_query(company_id).where(ArtistAbsence.id == absence_id)).scalar_one_or_none()
    if absence is None:
        raise NotFoundError("Absence")
    return absence


def approve_absence(db: Session, absence: ArtistAbsence, approved_by: str | None, now: datetime) -> ArtistAbsence:
    if absence.approved:
        raise ValueError("Absence is already approved")
    absence.approved = True
    absence.approved_by = approved_by
    absence.approved_at = now.astimezone(timezone.utc).replace(tzinfo=None) if now.tzinfo else now
    db.commit()
    db.refresh(absence)
    logger.info("artist_absence_approved", absence_id=absence.id, artist_id=absence.artist_id)
    return absence


def delete_absence(db: Session, absence: ArtistAbsence) -> None:
    db.delete(absence)
    db.commit()
    logger.info("artist_absence_deleted", absence_id=absence.id)


# Services


def _services_query(company_id: str):
    return select(Service).join(Store, Store.id == Service.store_id).where(Store.company_id == company_id)


def list_services(
    db: Session, company_id: str, store_id: str | None, category: str | None, page: int, limit: int
) -> tuple[list[Service], int]:
    q = _services_query(company_id)
    if store_id:
        q = q.where(Service.store_id == store_id)
    if category:
        q = q.where(Service.category == category)
    return paginate(db, q.order_by(Service.name.asc()), page, limit)


def get_service(db: Session, company_id: str, service_id: str) -> Service | None:
    return db.execute(_services_query(company_id).where(Service.id == service_id)).scalar_one_or_none()


def create_service(db: Session, company_id: str, fields: dict) -> Service:
    store = require_store(db, company_id, fields["store_id"])
    service = Service(
        store_id=store.id,
        name=fields["name"].strip(),
        description=fields.get("description"),
        duration=int(fields["duration"]),
        price=float(fields["price"]),
        category=fields.get("category") or "OTHER",
        requires_consent=bool(fields.get("requires_consent", True)),
    )
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


def update_service(db: Session, service: Service, fields: dict) -> Service:
    for key in ("name", "description", "duration", "price", "category", "requires_consent"):
        if key in fields and fields[key] is not None:
            setattr(service, key, fields[key])
    db.commit()
    db.refresh(service)
    return service


def delete_service(db: Session, service: Service) -> None:
    used = db.execute(
        select(func.count()).select_from(Appointment).where(Appointment.service_id == service.id)
    ).scalar_one()
    if used:
        raise ValueError("Service has appointments and cannot be deleted")
    db.delete(service)
    db.commit()


# Clients


def _clients_query(company_id: str):
    return select(Client).join(Store, Store.id == Client.store_id).where(Store.company_id == company_id)


def list_clients(
    db: Session, company_id: str, store_id: str | None, search: str | None, page: int, limit: int
) -> tuple[list[Client], int]:
    q = _clients_query(company_id)
    if store_id:
        q = q.where(Client.store_id == store_id)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        q = q.where(or_(Client.name.ilike(pattern), Client.email.ilike(pattern), Client.phone.ilike(pattern)))
    return paginate(db, q.order_by(Client.name.asc()), page, limit)


def get_client(db: Session, company_id: str, client_id: str) -> Client | None:
    return db.execute(_clients_query(company_id).where(Client.id == client_id)).scalar_one_or_none()


def _find_client_by_email(db: Session, store_id: str, email: str) -> Client | None:
    return db.execute(
        select(Client).where(Client.store_id == store_id, Client.email == email.strip().lower())
    ).scalar_one_or_none()


def _apply_client_fields(client: Client, fields: dict) -> None:
    for key in ("name", "phone", "birth_date", "is_minor", "image_rights", "source", "loyalty_points"):
        if key in fields and fields[key] is not None:
            value = fields[key]
            setattr(client, key, value.strip() if isinstance(value, str) else value)
    if fields.get("email"):
        client.email = fields["email"].strip().lower()
    if fields.get("guardian_info") is not None:
        client.guardian_info_json = _dump_json(fields["guardian_info"])
    if fields.get("medical_info") is not None:
        client.medical_info_json = _dump_json(fields["medical_info"])


def create_client(db: Session, company_id: str, fields: dict) -> Client:
    store = require_store(db, company_id, fields["store_id"])
    if _find_client_by_email(db, store.id, fields["email"]):
        raise ValueError("Client with this email already exists")
    client = Client(store_id=store.id)
    _apply_client_fields(client, fields)
    db.add(client)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("Client with this email already exists") from exc
    db.refresh(client)
    return client


def update_client(db: Session, client: Client, fields: dict) -> Client:
    if fields.get("email") and fields["email"].strip().lower() != client.email:
        if _find_client_by_email(db, client.store_id, fields["email"]):
            raise ValueError("Client with this email already exists")
    _apply_client_fields(client, fields)
    if client.is_minor and not client.guardian_info_json:
        raise ValueError("Guardian information is required for minors")
    db.commit()
    db.refresh(client)
    return client


def set_communication_preferences(db: Session, client: Client, fields: dict) -> Client:
    client.preferred_channel = fields["preferred_channel"]
    client.preferred_language = fields["preferred_language"]
    client.reminders_enabled = bool(fields["reminders_enabled"])
    client.birthday_greetings = bool(fields.get("birthday_greetings", True))
    client.post_care_followup = bool(fields.get("post_care_followup", True))
    db.commit()
    db.refresh(client)
    return client


def _resolve_booking_client(db: Session, store_id: str, data: dict) -> Client:
    client = _find_client_by_email(db, store_id, data["email"])
    if client is None:
        client = Client(store_id=store_id, source=data.get("source") or "online_booking")
        db.add(client)
    _apply_client_fields(client, {k: v for k, v in data.items() if k != "source"})
    db.flush()
    return client


# Appointments


def _appointments_query(company_id: str):
    return select(Appointment).join(Store, Store.id == Appointment.store_id).where(Store.company_id == company_id)


def get_appointment(db: Session, company_id: str, appointment_id: str) -> Appointment | None:
    return db.execute(
        _appointments_query(company_id).where(Appointment.id == appointment_id)
    ).scalar_one_or_none()


def require_appointment(db: Session, company_id: str, appointment_id: str) -> Appointment:
    appointment = get_appointment(db, company_id, appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment")
    return appointment


def _filtered_appointments(
    company_id: str,
    store_id: str | None = None,
    artist_id: str | None = None,
    client_id: str | None = None,
    status: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
):
    q = _appointments_query(company_id)
    if store_id:
        q = q.where(Appointment.store_id == store_id)
    if artist_id:
        q = q.where(Appointment.artist_id == artist_id)
    if client_id:
        q = q.where(Appointment.client_id == client_id)
    if status:
        q = q.where(Appointment.status == status)
    if start is not None:
        q = q.where(Appointment.start_time >= start)
    if end is not None:
        q = q.where(Appointment.start_time <= end)
    return q


def list_appointments(db: Session, company_id: str, filters: dict, page: int, limit: int):
    q = _filtered_appointments(company_id, **filters).order_by(Appointment.start_time.asc())
    return paginate(db, q, page, limit)


def appointments_for_stats(db: Session, company_id: str, filters: dict) -> list[Appointment]:
    return list(db.execute(_filtered_appointments(company_id, **filters)).scalars().all())


def _lock_artist(db: Session, artist_id: str) -> Artist | None:
    # SQLite already holds the writer lock (BEGIN IMMEDIATE); elsewhere this
    # row lock serializes bookings per artist.
    return db.execute(select(Artist).where(Artist.id == artist_id).with_for_update()).scalar_one_or_none()


def _insert_appointment(db: Session, now: datetime, **fields) -> Appointment:
    appointment = Appointment(status="SCHEDULED", **fields)
    db.add(appointment)
    db.flush()
    schedule_appointment_reminders(db, appointment, now)
    return appointment


def _commit_appointment(db: Session, appointment: Appointment) -> Appointment:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("Appointment could not be saved") from exc
    db.refresh(appointment)
    return appointment


def reserve_appointment(
    db: Session,
    *,
    store_id: str,
    client_id: str,
    artist_id: str,
    service_id: str,
    start: datetime,
    end: datetime,
    price: float,
    now: datetime,
    deposit: float | None = None,
    notes: str | None = None,
) -> Appointment:
    """Lock the artist, re-check for overlaps and insert in one transaction."""
    if end <= start:
        raise ValueError("End time must be after start time")
    if _lock_artist(db, artist_id) is None:
        raise NotFoundError("Artist")
    if artist_is_busy(db, artist_id, start, end):
        db.rollback()
        raise BookingConflictError(ARTIST_BUSY_MESSAGE)
    appointment = _insert_appointment(
        db,
        now,
        store_id=store_id,
        client_id=client_id,
        artist_id=artist_id,
        service_id=service_id,
        start_time=start,
        end_time=end,
        price=float(price),
        deposit=deposit,
        notes=notes,
    )
    _commit_appointment(db, appointment)
    logger.info("appointment_reserved", appointment_id=appointment.id, artist_id=artist_id)
    return appointment


def create_appointment(db: Session, company_id: str, fields: dict, now: datetime) -> Appointment:
    client = get_client(db, company_id, fields["client_id"])
    if client is None:
        raise NotFoundError("Client")
    artist = require_artist(db, company_id, fields["artist_id"])
    service = get_service(db, company_id, fields["service_id"])
    if service is None:
        raise NotFoundError("Service")
    if artist.store_id != client.store_id or service.store_id != client.store_id:
        raise ValueError("Client, artist and service must belong to the same store")
    if not artist.is_active:
        raise ValueError("Artist is not active")

    tz = store_zone(artist.store.timezone)
    return reserve_appointment(
        db,
        store_id=client.store_id,
        client_id=client.id,
        artist_id=artist.id,
        service_id=service.id,
        start=to_utc_naive(fields["start_time"], tz),
        end=to_utc_naive(fields["end_time"], tz),
        price=fields["price"],
        deposit=fields.get("deposit"),
        notes=fields.get("notes"),
        now=now,
    )


def update_appointment(db: Session, appointment: Appointment, fields: dict, now: datetime) -> Appointment:
    tz = store_zone(appointment.store.timezone)
    previous_status = appointment.status
    previous_window = (appointment.artist_id, appointment.start_time, appointment.end_time)

    if fields.get("artist_id") and fields["artist_id"] != appointment.artist_id:
        artist = db.execute(select(Artist).where(Artist.id == fields["artist_id"])).scalar_one_or_none()
        if artist is None:
            raise NotFoundError("Artist")
        if artist.store_id != appointment.store_id:
            raise ValueError("Artist does not belong to the appointment store")
        appointment.artist_id = artist.id
    if fields.get("service_id") and fields["service_id"] != appointment.service_id:
        service = db.execute(select(Service).where(Service.id == fields["service_id"])).scalar_one_or_none()
        if service is None:
            raise NotFoundError("Service")
        if service.store_id != appointment.store_id:
            raise ValueError("Service does not belong to the appointment store")
        appointment.service_id = service.id
    if fields.get("start_time") is not None:
        appointment.start_time = to_utc_naive(fields["start_time"], tz)
    if fields.get("end_time") is not None:
        appointment.end_time = to_utc_naive(fields["end_time"], tz)
    if appointment.end_time <= appointment.start_time:
        raise ValueError("End time must be after start time")
    for key in ("price", "deposit", "notes"):
        if key in fields and fields[key] is not None:
            setattr(appointment, key, fields[key])
    if fields.get("status"):
        appointment.status = fields["status"]

    window_changed = previous_window != (appointment.artist_id, appointment.start_time, appointment.end_time)
    reopened = previous_status in NON_BLOCKING_STATUSES and appointment.status not in NON_BLOCKING_STATUSES
    if appointment.status not in NON_BLOCKING_STATUSES and (window_changed or reopened):
        _lock_artist(db, appointment.artist_id)
        db.flush()
        if artist_is_busy(
            db,
            appointment.artist_id,
            appointment.start_time,
            appointment.end_time,
            exclude_appointment_id=appointment.id,
        ):
            db.rollback()
            raise BookingConflictError(ARTIST_BUSY_MESSAGE)
        schedule_appointment_reminders(db, appointment, now)
    elif appointment.status in NON_BLOCKING_STATUSES and previous_status not in NON_BLOCKING_STATUSES:
        cancel_appointment_reminders(db, appointment.id, now)

    _commit_appointment(db, appointment)
    logger.info(
        "appointment_updated",
        appointment_id=appointment.id,
        status=appointment.status,
        rescheduled=window_changed,
    )
    return appointment


def cancel_appointment(db: Session, appointment: Appointment, reason: str | None, now: datetime) -> Appointment:
    if appointment.status == "CANCELLED":
        raise ValueError("Appointment is already cancelled")
    if appointment.status == "COMPLETED":
        raise ValueError("Completed appointments cannot be cancelled")
    appointment.status = "CANCELLED"
    if reason:
        note = f"Cancelled: {reason.strip()}"
        appointment.notes = f"{appointment.notes}\n{note}" if appointment.notes else note
    cancel_appointment_reminders(db, appointment.id, now)
    db.commit()
    db.refresh(appointment)
    logger.info("appointment_cancelled", appointment_id=appointment.id)
    return appointment


def complete_appointment(db: Session, appointment: Appointment, now: datetime) -> Appointment:
    if appointment.status in NON_BLOCKING_STATUSES:
        raise ValueError(f"Cannot complete an appointment with status {appointment.status}")
    appointment.status = "COMPLETED"
    cancel_appointment_reminders(db, appointment.id, now, reason="Appointment completed")
    db.commit()
    db.refresh(appointment)
    logger.info("appointment_completed", appointment_id=appointment.id)
    return appointment


# Public availability and booking


def _public_lookup(db: Session, store_id: str, service_id: str) -> tuple[Store, Service]:
    store = db.execute(select(Store).where(Store.id == store_id)).scalar_one_or_none()
    if store is None:
        raise NotFoundError("Store")
    service = db.execute(select(Service).where(Service.id == service_id)).scalar_one_or_none()
    if service is None or service.store_id != store.id:
        raise NotFoundError("Service")
    return store, service


def get_availability(
    db: Session,
    *,
    store_id: str,
    service_id: str,
    artist_id: str,
    day,
    now: datetime,
    factory: CalendarFactory = build_calendar_provider,
) -> tuple[Store, Service, Artist, DayAvailability]:
    store, service = _public_lookup(db, store_id, service_id)
    artist = db.execute(select(Artist).where(Artist.id == artist_id)).scalar_one_or_none()
    if artist is None or artist.store_id != store.id or not artist.is_active:
        raise NotFoundError("Artist")
    result = artist_day_availability(
        db,
        artist=artist,
        service_duration=int(service.duration),
        day=day,
        tz=store_zone(store.timezone),
        now=now,
        factory=factory,
    )
    return store, service, artist, result


def _pick_artist(db: Session, store: Store, artist_id: str | None, start: datetime, end: datetime) -> Artist:
    if artist_id:
        artist = _lock_artist(db, artist_id)
        if artist is None:
            raise NotFoundError("Artist")
        if artist.store_id != store.id:
            raise ValueError("Artist does not belong to the specified store")
        if not artist.is_active:
            raise ValueError("Artist is not active")
        if artist_is_busy(db, artist.id, start, end):
            raise BookingConflictError(ARTIST_BUSY_MESSAGE)
        return artist

    candidates = db.execute(
        select(Artist)
        .where(Artist.store_id == store.id, Artist.is_active.is_(True))
        .order_by(Artist.created_at.asc(), Artist.id.asc())
        .with_for_update()
    ).scalars().all()
    for artist in candidates:
        if not artist_is_busy(db, artist.id, start, end):
            return artist
    raise BookingConflictError(NO_ARTIST_MESSAGE)


def book_appointment(db: Session, payload: dict, now: datetime) -> Appointment:
    """Public booking: pick an artist, resolve the client and reserve atomically."""
    store = db.execute(select(Store).where(Store.id == payload["store_id"])).scalar_one_or_none()
    if store is None:
        raise NotFoundError("Store")
    tz = store_zone(store.timezone)
    start = to_utc_naive(payload["start_time"], tz)
    end = to_utc_naive(payload["end_time"], tz)
    if end <= start:
        raise ValueError("End time must be after start time")

    service = db.execute(select(Service).where(Service.id == payload["service_id"])).scalar_one_or_none()
    if service is None:
        raise NotFoundError("Service")
    if service.store_id != store.id:
        raise ValueError("Service does not belong to the specified store")

    try:
        artist = _pick_artist(db, store, payload.get("artist_id"), start, end)
    except (BookingConflictError, ValueError, NotFoundError):
        db.rollback()
        raise

    client = _resolve_booking_client(db, store.id, payload["client_data"])
    appointment = _insert_appointment(
        db,
        now,
        store_id=store.id,
        client_id=client.id,
        artist_id=artist.id,
        service_id=service.id,
        start_time=start,
        end_time=end,
        price=float(payload["price"]),
        notes=payload.get("notes"),
    )
    _commit_appointment(db, appointment)
    logger.info(
        "booking_created",
        appointment_id=appointment.id,
        store_id=store.id,
        artist_id=artist.id,
        auto_assigned=not payload.get("artist_id"),
    )
    return appointment
