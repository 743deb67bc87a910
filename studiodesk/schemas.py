import json
from datetime import date, datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, validator
from pydantic.alias_generators import to_camel

from .core.schedule import parse_schedule
from .core.timezones import is_valid_timezone

T = TypeVar("T")

CATEGORY_PATTERN = r"^(TATTOO|PIERCING|LASER|MICROBLADING|OTHER)$"
STATUS_PATTERN = r"^(SCHEDULED|CONFIRMED|IN_PROGRESS|COMPLETED|CANCELLED|NO_SHOW)$"
PROVIDER_PATTERN = r"^(google|microsoft|apple)$"
ABSENCE_TYPE_PATTERN = r"^(vacation|sick|personal|training)$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _decode_json_object(value, message: str):
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(message) from exc
    if not isinstance(value, dict):
        raise ValueError(message)
    return value


class PaginationMeta(ApiModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class Page(ApiModel, Generic[T]):
    items: list[T]
    pagination: PaginationMeta


# Company / store


class CompanyOut(ApiModel):
    id: str
    slug: str
    name: str
    subscription: str
    settings: dict = Field(default_factory=dict)


class CompanyUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=2, max_length=255)
    subscription: str | None = Field(default=None, pattern=r"^(basic|pro|enterprise)$")
    settings: dict | None = None


class StoreCreate(ApiModel):
    name: str = Field(min_length=2, max_length=255)
    timezone: str = "Europe/Madrid"
    business_hours: dict = Field(default_factory=dict)

    @validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        if not is_valid_timezone(value):
            raise ValueError(f"unknown timezone: {value}")
        return value


class StoreUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=2, max_length=255)
    timezone: str | None = None
    business_hours: dict | None = None

    @validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is not None and not is_valid_timezone(value):
            raise ValueError(f"unknown timezone: {value}")
        return value


class StoreOut(ApiModel):
    id: str
    company_id: str
    name: str
    timezone: str
    business_hours: dict = Field(default_factory=dict)
    created_at: datetime


# Artists


def _validate_schedule_payload(value):
    if value is None:
        return None
    # Raises ScheduleError (a ValueError) with the offending field.
    parse_schedule(value)
    return value


class ArtistCreate(ApiModel):
    store_id: str = Field(min_length=1)
    name: str = Field(min_length=2, max_length=120)
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    specialties: list[str] = Field(default_factory=list)
    schedule: dict = Field(default_factory=dict)
    commission: float = Field(default=0.5, ge=0, le=1)
    is_active: bool = True

    @validator("schedule")
    @classmethod
    def validate_schedule(cls, value: dict) -> dict:
        return _validate_schedule_payload(value)


class ArtistUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    specialties: list[str] | None = None
    schedule: dict | None = None
    commission: float | None = Field(default=None, ge=0, le=1)
    is_active: bool | None = None

    @validator("schedule")
    @classmethod
    def validate_schedule(cls, value: dict | None) -> dict | None:
        return _validate_schedule_payload(value)


class ArtistOut(ApiModel):
    id: str
    store_id: str
    name: str
    email: str | None = None
    specialties: list[str] = Field(default_factory=list)
    schedule: dict = Field(default_factory=dict)
    commission: float
    is_active: bool


class ArtistSummary(ApiModel):
    id: str
    name: str


class AbsenceCreate(ApiModel):
    artist_id: str = Field(min_length=1)
    start_date: datetime
    end_date: datetime
    type: str = Field(default="personal", pattern=ABSENCE_TYPE_PATTERN)
    reason: str | None = Field(default=None, max_length=500)


class AbsenceApprove(ApiModel):
    approved_by: str | None = Field(default=None, max_length=120)


class AbsenceOut(ApiModel):
    id: str
    artist_id: str
    start_date: datetime
    end_date: datetime
    type: str
    reason: str | None = None
    approved: bool
    approved_by: str | None = None
    approved_at: datetime | None = None


# Services


class ServiceCreate(ApiModel):
    store_id: str = Field(min_length=1)
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=2000)
    duration: int = Field(gt=0, le=720)
    price: float = Field(gt=0)
    category: str = Field(default="OTHER", pattern=CATEGORY_PATTERN)
    requires_consent: bool = True


class ServiceUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=2000)
    duration: int | None = Field(default=None, gt=0, le=720)
    price: float | None = Field(default=None, gt=0)
    category: str | None = Field(default=None, pattern=CATEGORY_PATTERN)
    requires_consent: bool | None = None


class ServiceOut(ApiModel):
    id: str
    store_id: str
    name: str
    description: str | None = None
    duration: int
    price: float
    category: str
    requires_consent: bool


class ServiceSummary(ApiModel):
    id: str
    name: str
    duration: int
    price: float


# Clients


class GuardianInfo(ApiModel):
    name: str = Field(min_length=1, max_length=120)
    email: str = Field(pattern=EMAIL_PATTERN)
    phone: str = Field(min_length=1, max_length=40)
    relationship: str = Field(pattern=r"^(parent|guardian|other)$")
    id_document: str = Field(min_length=1, max_length=60)


class MedicalInfo(ApiModel):
    allergies: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=2000)


class ClientFields(ApiModel):
    name: str = Field(min_length=2, max_length=120)
    email: str = Field(pattern=EMAIL_PATTERN)
    phone: str = Field(min_length=7, max_length=40)
    birth_date: date | None = None
    is_minor: bool = False
    guardian_info: GuardianInfo | None = None
    medical_info: MedicalInfo | None = None
    image_rights: bool = False
    source: str | None = Field(default=None, max_length=60)

    @validator("guardian_info", pre=True)
    @classmethod
    def decode_guardian_info(cls, value):
        return _decode_json_object(value, "Invalid guardian information")

    @validator("medical_info", pre=True)
    @classmethod
    def decode_medical_info(cls, value):
        return _decode_json_object(value, "Invalid medical information")

    @validator("guardian_info", always=True)
    @classmethod
    def require_guardian_for_minors(cls, value, values: dict):
        if values.get("is_minor") and value is None:
            raise ValueError("Guardian information is required for minors")
        return value


class ClientCreate(ClientFields):
    store_id: str = Field(min_length=1)


class ClientUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    phone: str | None = Field(default=None, min_length=7, max_length=40)
    birth_date: date | None = None
    is_minor: bool | None = None
    guardian_info: GuardianInfo | None = None
    medical_info: MedicalInfo | None = None
    image_rights: bool | None = None
    loyalty_points: int | None = Field(default=None, ge=0)

    @validator("guardian_info", pre=True)
    @classmethod
    def decode_guardian_info(cls, value):
        return _decode_json_object(value, "Invalid guardian information")

    @validator("medical_info", pre=True)
    @classmethod
    def decode_medical_info(cls, value):
        return _decode_json_object(value, "Invalid medical information")


class CommunicationPreferences(ApiModel):
    preferred_channel: str = Field(default="email", pattern=r"^(email|whatsapp)$")
    preferred_language: str = Field(default="es", pattern=r"^(es|ca|en)$")
    reminders_enabled: bool = True
    birthday_greetings: bool = True
    post_care_followup: bool = True


class ClientOut(ApiModel):
    id: str
    store_id: str
    name: str
    email: str
    phone: str
    birth_date: date | None = None
    is_minor: bool
    guardian_info: GuardianInfo | None = None
    medical_info: MedicalInfo | None = None
    image_rights: bool
    source: str | None = None
    loyalty_points: int
    preferred_channel: str
    preferred_language: str
    reminders_enabled: bool
    birthday_greetings: bool = True
    post_care_followup: bool = True


# Availability / bookings


class SlotOut(ApiModel):
    time: str
    available: bool
    datetime: datetime


class AvailabilityOut(ApiModel):
    slots: list[SlotOut]
    artist: ArtistSummary
    service: ServiceSummary
    date: date
    message: str | None = None


class BookingCreate(ApiModel):
    store_id: str = Field(min_length=1)
    service_id: str = Field(min_length=1)
    artist_id: str | None = None
    start_time: datetime
    end_time: datetime
    price: float = Field(gt=0)
    notes: str | None = Field(default=None, max_length=2000)
    client_data: ClientFields


class BookingOut(ApiModel):
    appointment_id: str
    client_id: str
    artist_id: str
    message: str


# Appointments


class AppointmentCreate(ApiModel):
    client_id: str = Field(min_length=1)
    artist_id: str = Field(min_length=1)
    service_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    price: float = Field(gt=0)
    deposit: float | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=2000)

    @validator("end_time")
    @classmethod
    def validate_end_after_start(cls, value: datetime, values: dict):
        start_time = values.get("start_time")
        if start_time and value <= start_time:
            raise ValueError("End time must be after start time")
        return value


class AppointmentUpdate(ApiModel):
    artist_id: str | None = None
    service_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    status: str | None = Field(default=None, pattern=STATUS_PATTERN)
    price: float | None = Field(default=None, gt=0)
    deposit: float | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=2000)


class AppointmentCancel(ApiModel):
    reason: str | None = Field(default=None, max_length=500)


class AppointmentOut(ApiModel):
    id: str
    store_id: str
    client_id: str
    artist_id: str
    service_id: str
    start_time: datetime
    end_time: datetime
    status: str
    notes: str | None = None
    price: float
    deposit: float | None = None
    client_name: str | None = None
    artist_name: str | None = None
    service_name: str | None = None


class AppointmentStatsOut(ApiModel):
    total: int
    completed: int
    cancelled: int
    no_show: int
    revenue: float
    average_value: float
    completion_rate: float


# Commissions


class CommissionLine(ApiModel):
    appointment_id: str
    client_name: str
    service_name: str
    appointment_date: datetime
    service_price: float
    commission_rate: float
    commission_amount: float


class CommissionOut(ApiModel):
    artist_id: str
    artist_name: str
    period_start: datetime
    period_end: datetime
    total_revenue: float
    commission_rate: float
    commission_amount: float
    appointment_count: int
    average_service_price: float
    breakdown: list[CommissionLine] = Field(default_factory=list)


class StoreCommissionsOut(ApiModel):
    store_id: str
    period_start: datetime
    period_end: datetime
    total_revenue: float
    total_commission: float
    artists: list[CommissionOut]


class ServicePerformance(ApiModel):
    service_id: str
    service_name: str
    appointment_count: int
    total_revenue: float
    average_price: float


class MonthlyTrend(ApiModel):
    month: str
    appointment_count: int
    revenue: float
    commission: float


class PerformanceOut(ApiModel):
    artist_id: str
    artist_name: str
    period_start: datetime
    period_end: datetime
    total_appointments: int
    completed: int
    cancelled: int
    no_show: int
    completion_rate: float
    total_revenue: float
    average_service_price: float
    commission_earned: float
    client_retention_rate: float
    top_services: list[ServicePerformance] = Field(default_factory=list)
    monthly_trends: list[MonthlyTrend] = Field(default_factory=list)


# Reminders / confirmations


class ReminderOut(ApiModel):
    id: str
    appointment_id: str | None = None
    client_id: str
    reminder_type: str
    scheduled_for: datetime
    sent: bool
    sent_at: datetime | None = None
    error: str | None = None
    retry_count: int


class CommunicationScheduleOut(ApiModel):
    scheduled: int


class ReminderCancelOut(ApiModel):
    appointment_id: str
    cancelled: int


class ReminderProcessOut(ApiModel):
    processed: int
    sent: int
    skipped: int
    failed: int


class ReminderTypeStats(ApiModel):
    scheduled: int = 0
    sent: int = 0
    failed: int = 0


class ReminderStatsOut(ApiModel):
    total_scheduled: int
    total_sent: int
    total_failed: int
    success_rate: float
    by_type: dict[str, ReminderTypeStats] = Field(default_factory=dict)


class ConfirmationOut(ApiModel):
    appointment_id: str
    status: str
    confirmed: bool
    confirmed_at: datetime | None = None
    expires_at: datetime
    start_time: datetime
    artist_name: str | None = None
    service_name: str | None = None
    message: str | None = None


class ConfirmationCheckOut(ApiModel):
    valid: bool
    error: str | None = None
    confirmation: ConfirmationOut | None = None


# Calendar


class CalendarConnectionCreate(ApiModel):
    artist_id: str = Field(min_length=1)
    provider: str = Field(pattern=PROVIDER_PATTERN)
    calendar_id: str | None = Field(default=None, max_length=500)
    access_token: str | None = None
    username: str | None = Field(default=None, max_length=160)
    password: str | None = Field(default=None, max_length=255)
    sync_enabled: bool = True

    @validator("access_token", always=True)
    @classmethod
    def require_token_for_rest_providers(cls, value: str | None, values: dict):
        if values.get("provider") in ("google", "microsoft") and not value:
            raise ValueError("accessToken is required for google and microsoft")
        return value

    @validator("password", always=True)
    @classmethod
    def require_caldav_fields(cls, value: str | None, values: dict):
        if values.get("provider") == "apple" and not values.get("calendar_id"):
            raise ValueError("calendarId (CalDAV calendar URL) is required for apple")
        return value


class CalendarConnectionOut(ApiModel):
    id: str
    artist_id: str
    provider: str
    calendar_id: str | None = None
    sync_enabled: bool
    last_synced_at: datetime | None = None


class BusyIntervalOut(ApiModel):
    start: datetime
    end: datetime
    title: str | None = None


class FreeWindowOut(ApiModel):
    start: datetime
    end: datetime


class CalendarAvailabilityOut(ApiModel):
    artist_id: str
    start_date: datetime
    end_date: datetime
    external: dict[str, list[BusyIntervalOut]] = Field(default_factory=dict)
    local: list[BusyIntervalOut] = Field(default_factory=list)
    free: list[FreeWindowOut] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)


class CalendarCheckIn(ApiModel):
    artist_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime

    @validator("end_time")
    @classmethod
    def validate_end_after_start(cls, value: datetime, values: dict):
        start_time = values.get("start_time")
        if start_time and value <= start_time:
            raise ValueError("End time must be after start time")
        return value


class CalendarConflicts(ApiModel):
    external: dict[str, list[BusyIntervalOut]] = Field(default_factory=dict)
    local: list[BusyIntervalOut] = Field(default_factory=list)
    business_hours: bool = False


class CalendarCheckOut(ApiModel):
    available: bool
    conflicts: CalendarConflicts
    recommendations: list[SlotOut] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)


class CalendarSyncIn(ApiModel):
    appointment_id: str = Field(min_length=1)
    action: str = Field(pattern=r"^(create|update|delete)$")
    providers: list[str] | None = None


class ProviderSyncResult(ApiModel):
    provider: str
    success: bool
    external_event_id: str | None = None
    error: str | None = None


class CalendarSyncOut(ApiModel):
    appointment_id: str
    action: str
    results: list[ProviderSyncResult]


class CalendarSyncStatusOut(ApiModel):
    appointment_id: str
    events: dict[str, str] = Field(default_factory=dict)
    connections: list[CalendarConnectionOut] = Field(default_factory=list)
