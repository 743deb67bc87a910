import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .config import settings
from .core.calendar_providers import CalendarFactory, build_calendar_provider
from .core.commissions import appointment_stats, artist_performance, calculate_commission, store_commissions
from .core.messaging import MessageSender, build_message_sender
from .db import get_db
from .models import Appointment, Artist, ArtistAbsence, Client, Company, Service, Store
from .schemas import (
    AbsenceApprove,
    AbsenceCreate,
    AbsenceOut,
    AppointmentCancel,
    AppointmentCreate,
    AppointmentOut,
    AppointmentStatsOut,
    AppointmentUpdate,
    ArtistCreate,
    ArtistOut,
    ArtistUpdate,
    ClientCreate,
    ClientOut,
    ClientUpdate,
    CommissionOut,
    CommunicationPreferences,
    CompanyOut,
    CompanyUpdate,
    Page,
    PaginationMeta,
    PerformanceOut,
    ServiceCreate,
    ServiceOut,
    ServiceUpdate,
    StoreCommissionsOut,
    StoreCreate,
    StoreOut,
    StoreUpdate,
)
from .services import (
    appointments_for_stats,
    approve_absence,
    archive_artist,
    cancel_appointment,
    complete_appointment,
    create_absence,
    create_appointment,
    create_artist,
    create_client,
    create_service,
    create_store,
    delete_absence,
    delete_service,
    delete_store,
    get_artist,
    get_client,
    get_or_create_company,
    get_service,
    get_store,
    list_absences,
    list_appointments,
    list_artists,
    list_clients,
    list_services,
    list_stores,
    load_json,
    require_absence,
    require_appointment,
    set_communication_preferences,
    update_appointment,
    update_artist,
    update_client,
    update_company,
    update_service,
    update_store,
)

router = APIRouter(prefix="/api")

Clock = Callable[[], datetime]


def system_now() -> datetime:
    return datetime.now(timezone.utc)


def get_clock() -> Clock:
    return system_now


def get_calendar_factory() -> CalendarFactory:
    return build_calendar_provider


def get_message_sender() -> MessageSender:
    return build_message_sender()


def _resolve_company(db: Session, company_slug: Optional[str]) -> Company:
    slug = (company_slug or settings.DEFAULT_COMPANY_SLUG).strip().lower()
    company_name = settings.DEFAULT_COMPANY_NAME if slug == settings.DEFAULT_COMPANY_SLUG else slug
    return get_or_create_company(db, slug=slug, name=company_name)


def get_current_company(
    db: Session = Depends(get_db),
    x_company_slug: Optional[str] = Header(default=None),
) -> Company:
    return _resolve_company(db, x_company_slug)


def bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def page_of(items: list, total: int, page: int, limit: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "items": items,
        "pagination": PaginationMeta(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    }


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def utc_query_value(value: datetime | None) -> datetime | None:
    """Query-string datetimes: naive values are UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def default_period(start: datetime | None, end: datetime | None, now: datetime) -> tuple[datetime, datetime]:
    end_value = utc_query_value(end) or now.astimezone(timezone.utc).replace(tzinfo=None)
    start_value = utc_query_value(start) or (end_value - timedelta(days=30))
    if end_value < start_value:
        raise HTTPException(status_code=400, detail="endDate must be after startDate")
    return start_value, end_value


def _to_company_out(company: Company) -> CompanyOut:
    return CompanyOut(
        id=company.id,
        slug=company.slug,
        name=company.name,
        subscription=company.subscription,
        settings=load_json(company.settings_json, {}),
    )


def _to_store_out(store: Store) -> StoreOut:
    return StoreOut(
        id=store.id,
        company_id=store.company_id,
        name=store.name,
        timezone=store.timezone,
        business_hours=load_json(store.business_hours_json, {}),
        created_at=as_utc(store.created_at),
    )


def _to_artist_out(artist: Artist) -> ArtistOut:
    return ArtistOut(
        id=artist.id,
        store_id=artist.store_id,
        name=artist.name,
        email=artist.email,
        specialties=load_json(artist.specialties_json, []),
        schedule=load_json(artist.schedule_json, {}),
        commission=float(artist.commission),
        is_active=bool(artist.is_active),
    )


def _to_absence_out(absence: ArtistAbsence) -> AbsenceOut:
    return AbsenceOut(
        id=absence.id,
        artist_id=absence.artist_id,
        start_date=as_utc(absence.start_date),
        end_date=as_utc(absence.end_date),
        type=absence.absence_type,
        reason=absence.reason,
        approved=bool(absence.approved),
        approved_by=absence.approved_by,
        approved_at=as_utc(absence.approved_at),
    )


def _to_service_out(service: Service) -> ServiceOut:
    return ServiceOut(
        id=service.id,
        store_id=service.store_id,
        name=service.name,
        description=service.description,
        duration=int(service.duration),
        price=float(service.price),
        category=service.category,
        requires_consent=bool(service.requires_consent),
    )


def _to_client_out(client: Client) -> ClientOut:
    return ClientOut(
        id=client.id,
        store_id=client.store_id,
        name=client.name,
        email=client.email,
        phone=client.phone,
        birth_date=client.birth_date,
        is_minor=bool(client.is_minor),
        guardian_info=load_json(client.guardian_info_json, None),
        medical_info=load_json(client.medical_info_json, None),
        image_rights=bool(client.image_rights),
        source=client.source,
        loyalty_points=int(client.loyalty_points or 0),
        preferred_channel=client.preferred_channel,
        preferred_language=client.preferred_language,
        reminders_enabled=bool(client.reminders_enabled),
        birthday_greetings=bool(client.birthday_greetings),
        post_care_followup=bool(client.post_care_followup),
    )


def to_appointment_out(a: Appointment) -> AppointmentOut:
    return AppointmentOut(
        id=a.id,
        store_id=a.store_id,
        client_id=a.client_id,
        artist_id=a.artist_id,
        service_id=a.service_id,
        start_time=as_utc(a.start_time),
        end_time=as_utc(a.end_time),
        status=a.status,
        notes=a.notes,
        price=float(a.price),
        deposit=float(a.deposit) if a.deposit is not None else None,
        client_name=a.client.name if a.client else None,
        artist_name=a.artist.name if a.artist else None,
        service_name=a.service.name if a.service else None,
    )


def _fields(payload) -> dict:
    return payload.model_dump(exclude_unset=True)


# Company


@router.get("/company", response_model=CompanyOut)
def read_company(company: Company = Depends(get_current_company)):
    return _to_company_out(company)


@router.patch("/company", response_model=CompanyOut)
def patch_company(
    payload: CompanyUpdate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    return _to_company_out(update_company(db, company, _fields(payload)))


# Stores


@router.get("/stores", response_model=Page[StoreOut])
def get_stores(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=100),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    rows, total = list_stores(db, company.id, page, limit)
    return page_of([_to_store_out(s) for s in rows], total, page, limit)


@router.post("/stores", response_model=StoreOut, status_code=status.HTTP_201_CREATED)
def post_store(
    payload: StoreCreate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    store = create_store(db, company.id, payload.name, payload.timezone, payload.business_hours)
    return _to_store_out(store)


def _store_or_404(db: Session, company: Company, store_id: str) -> Store:
    store = get_store(db, company.id, store_id)
    if not store:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    return store


@router.get("/stores/{store_id}", response_model=StoreOut)
def get_store_by_id(
    store_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    return _to_store_out(_store_or_404(db, company, store_id))


@router.patch("/stores/{store_id}", response_model=StoreOut)
def patch_store(
    store_id: str,
    payload: StoreUpdate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    store = _store_or_404(db, company, store_id)
    return _to_store_out(update_store(db, store, _fields(payload)))


@router.delete("/stores/{store_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_store(
    store_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    delete_store(db, _store_or_404(db, company, store_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/stores/{store_id}/commissions", response_model=StoreCommissionsOut)
def get_store_commissions(
    store_id: str,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    store = _store_or_404(db, company, store_id)
    start, end = default_period(start_date, end_date, clock())
    return store_commissions(db, store.id, start, end)


# Artists


@router.get("/artists", response_model=Page[ArtistOut])
def get_artists(
    store_id: Optional[str] = Query(None, alias="storeId"),
    include_inactive: bool = Query(False, alias="includeInactive"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=100),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    rows, total = list_artists(db, company.id, store_id, page, limit, include_inactive=include_inactive)
    return page_of([_to_artist_out(a) for a in rows], total, page, limit)


@router.post("/artists", response_model=ArtistOut, status_code=status.HTTP_201_CREATED)
def post_artist(
    payload: ArtistCreate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    try:
        artist = create_artist(db, company.id, payload.model_dump())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return _to_artist_out(artist)


@router.get("/artists/absences", response_model=list[AbsenceOut])
def get_absences(
    artist_id: Optional[str] = Query(None, alias="artistId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    rows = list_absences(db, company.id, artist_id, utc_query_value(start_date), utc_query_value(end_date))
    return [_to_absence_out(a) for a in rows]


@router.post("/artists/absences", response_model=AbsenceOut, status_code=status.HTTP_201_CREATED)
def post_absence(
    payload: AbsenceCreate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    try:
        absence = create_absence(db, company.id, payload.model_dump())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return _to_absence_out(absence)


@router.post("/artists/absences/{absence_id}/approve", response_model=AbsenceOut)
def post_approve_absence(
    absence_id: str,
    payload: AbsenceApprove,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    absence = require_absence(db, company.id, absence_id)
    try:
        absence = approve_absence(db, absence, payload.approved_by, clock())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return _to_absence_out(absence)


@router.delete("/artists/absences/{absence_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_absence(
    absence_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    delete_absence(db, require_absence(db, company.id, absence_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _artist_or_404(db: Session, company: Company, artist_id: str) -> Artist:
    artist = get_artist(db, company.id, artist_id)
    if not artist:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Artist not found")
    return artist


@router.get("/artists/{artist_id}", response_model=ArtistOut)
def get_artist_by_id(
    artist_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    return _to_artist_out(_artist_or_404(db, company, artist_id))


@router.patch("/artists/{artist_id}", response_model=ArtistOut)
def patch_artist(
    artist_id: str,
    payload: ArtistUpdate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    artist = _artist_or_404(db, company, artist_id)
    try:
        artist = update_artist(db, artist, _fields(payload))
    except ValueError as exc:
        raise bad_request(exc) from exc
    return _to_artist_out(artist)


@router.delete("/artists/{artist_id}", response_model=ArtistOut)
def remove_artist(
    artist_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    return _to_artist_out(archive_artist(db, _artist_or_404(db, company, artist_id)))


@router.get("/artists/{artist_id}/commission", response_model=CommissionOut)
def get_artist_commission(
    artist_id: str,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    artist = _artist_or_404(db, company, artist_id)
    start, end = default_period(start_date, end_date, clock())
    return calculate_commission(db, artist, start, end)


@router.get("/artists/{artist_id}/performance", response_model=PerformanceOut)
def get_artist_performance(
    artist_id: str,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    artist = _artist_or_404(db, company, artist_id)
    start, end = default_period(start_date, end_date, clock())
    return artist_performance(db, artist, start, end)


# Services


@router.get("/services", response_model=Page[ServiceOut])
def get_services(
    store_id: Optional[str] = Query(None, alias="storeId"),
    category: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=100),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    rows, total = list_services(db, company.id, store_id, category, page, limit)
    return page_of([_to_service_out(s) for s in rows], total, page, limit)


@router.post("/services", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
def post_service(
    payload: ServiceCreate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    return _to_service_out(create_service(db, company.id, payload.model_dump()))


def _service_or_404(db: Session, company: Company, service_id: str) -> Service:
    service = get_service(db, company.id, service_id)
    if not service:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return service


@router.get("/services/{service_id}", response_model=ServiceOut)
def get_service_by_id(
    service_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    return _to_service_out(_service_or_404(db, company, service_id))


@router.patch("/services/{service_id}", response_model=ServiceOut)
def patch_service(
    service_id: str,
    payload: ServiceUpdate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    service = _service_or_404(db, company, service_id)
    return _to_service_out(update_service(db, service, _fields(payload)))


@router.delete("/services/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_service(
    service_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    service = _service_or_404(db, company, service_id)
    try:
        delete_service(db, service)
    except ValueError as exc:
        raise bad_request(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Clients


@router.get("/clients", response_model=Page[ClientOut])
def get_clients(
    store_id: Optional[str] = Query(None, alias="storeId"),
    search: Optional[str] = Query(None, max_length=120),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=100),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    rows, total = list_clients(db, company.id, store_id, search, page, limit)
    return page_of([_to_client_out(c) for c in rows], total, page, limit)


@router.post("/clients", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
def post_client(
    payload: ClientCreate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    try:
        client = create_client(db, company.id, payload.model_dump())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return _to_client_out(client)


def _client_or_404(db: Session, company: Company, client_id: str) -> Client:
    client = get_client(db, company.id, client_id)
    if not client:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return client


@router.get("/clients/{client_id}", response_model=ClientOut)
def get_client_by_id(
    client_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    return _to_client_out(_client_or_404(db, company, client_id))


@router.patch("/clients/{client_id}", response_model=ClientOut)
def patch_client(
    client_id: str,
    payload: ClientUpdate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    client = _client_or_404(db, company, client_id)
    try:
        client = update_client(db, client, _fields(payload))
    except ValueError as exc:
        raise bad_request(exc) from exc
    return _to_client_out(client)


@router.put("/clients/{client_id}/communication-preferences", response_model=ClientOut)
def put_communication_preferences(
    client_id: str,
    payload: CommunicationPreferences,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    client = _client_or_404(db, company, client_id)
    return _to_client_out(set_communication_preferences(db, client, payload.model_dump()))


# Appointments


@router.get("/appointments", response_model=Page[AppointmentOut])
def get_appointments(
    store_id: Optional[str] = Query(None, alias="storeId"),
    artist_id: Optional[str] = Query(None, alias="artistId"),
    client_id: Optional[str] = Query(None, alias="clientId"),
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=100),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    filters = {
        "store_id": store_id,
        "artist_id": artist_id,
        "client_id": client_id,
        "status": status_filter.upper() if status_filter else None,
        "start": utc_query_value(start_date),
        "end": utc_query_value(end_date),
    }
    rows, total = list_appointments(db, company.id, filters, page, limit)
    return page_of([to_appointment_out(a) for a in rows], total, page, limit)


@router.post("/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def post_appointment(
    payload: AppointmentCreate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    try:
        appointment = create_appointment(db, company.id, payload.model_dump(), clock())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return to_appointment_out(appointment)


@router.get("/appointments/stats", response_model=AppointmentStatsOut)
def get_appointment_stats(
    store_id: Optional[str] = Query(None, alias="storeId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    filters = {
        "store_id": store_id,
        "start": utc_query_value(start_date),
        "end": utc_query_value(end_date),
    }
    return appointment_stats(appointments_for_stats(db, company.id, filters))


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def get_appointment_by_id(
    appointment_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    return to_appointment_out(require_appointment(db, company.id, appointment_id))


@router.patch("/appointments/{appointment_id}", response_model=AppointmentOut)
def patch_appointment(
    appointment_id: str,
    payload: AppointmentUpdate,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    appointment = require_appointment(db, company.id, appointment_id)
    fields = _fields(payload)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        appointment = update_appointment(db, appointment, fields, clock())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return to_appointment_out(appointment)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
def post_cancel_appointment(
    appointment_id: str,
    payload: Optional[AppointmentCancel] = None,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    appointment = require_appointment(db, company.id, appointment_id)
    reason = payload.reason if payload else None
    try:
        appointment = cancel_appointment(db, appointment, reason, clock())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return to_appointment_out(appointment)


@router.post("/appointments/{appointment_id}/complete", response_model=AppointmentOut)
def post_complete_appointment(
    appointment_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    appointment = require_appointment(db, company.id, appointment_id)
    try:
        appointment = complete_appointment(db, appointment, clock())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return to_appointment_out(appointment)
