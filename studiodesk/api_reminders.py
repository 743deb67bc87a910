from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .api import Clock, as_utc, bad_request, get_clock, get_current_company, get_message_sender, page_of, utc_query_value
from .config import settings
from .core.communications import schedule_birthday_greetings, schedule_post_care_followups
from .core.messaging import MessageSender
from .core.reminders import (
    cancel_appointment_reminders,
    confirm_appointment,
    inspect_confirmation,
    list_reminders,
    process_pending_reminders,
    reminder_stats,
)
from .db import get_db
from .models import AppointmentConfirmation, Company, ReminderSchedule
from .schemas import (
    CommunicationScheduleOut,
    ConfirmationCheckOut,
    ConfirmationOut,
    Page,
    ReminderCancelOut,
    ReminderOut,
    ReminderProcessOut,
    ReminderStatsOut,
)
from .services import require_appointment

router = APIRouter(prefix="/api", tags=["reminders"])


def _to_reminder_out(row: ReminderSchedule) -> ReminderOut:
    return ReminderOut(
        id=row.id,
        appointment_id=row.appointment_id,
        client_id=row.client_id,
        reminder_type=row.reminder_type,
        scheduled_for=as_utc(row.scheduled_for),
        sent=bool(row.sent),
        sent_at=as_utc(row.sent_at),
        error=row.error,
        retry_count=int(row.retry_count or 0),
    )


def _to_confirmation_out(confirmation: AppointmentConfirmation, message: str | None = None) -> ConfirmationOut:
    appointment = confirmation.appointment
    return ConfirmationOut(
        appointment_id=appointment.id,
        status=appointment.status,
        confirmed=bool(confirmation.confirmed),
        confirmed_at=as_utc(confirmation.confirmed_at),
        expires_at=as_utc(confirmation.expires_at),
        start_time=as_utc(appointment.start_time),
        artist_name=appointment.artist.name if appointment.artist else None,
        service_name=appointment.service.name if appointment.service else None,
        message=message,
    )


@router.get("/reminders", response_model=Page[ReminderOut])
def get_reminders(
    store_id: Optional[str] = Query(None, alias="storeId"),
    pending: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=100),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    rows, total = list_reminders(db, company.id, store_id, pending_only=pending, page=page, limit=limit)
    return page_of([_to_reminder_out(r) for r in rows], total, page, limit)


@router.post("/reminders/process", response_model=ReminderProcessOut)
def post_process_reminders(
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
    sender: MessageSender = Depends(get_message_sender),
):
    return process_pending_reminders(db, clock(), sender)


@router.get("/reminders/stats", response_model=ReminderStatsOut)
def get_reminder_stats(
    store_id: Optional[str] = Query(None, alias="storeId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    return reminder_stats(db, company.id, store_id, utc_query_value(start_date), utc_query_value(end_date))


@router.post("/reminders/{appointment_id}/cancel", response_model=ReminderCancelOut)
def post_cancel_reminders(
    appointment_id: str,
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    appointment = require_appointment(db, company.id, appointment_id)
    cancelled = cancel_appointment_reminders(db, appointment.id, clock())
    db.commit()
    return ReminderCancelOut(appointment_id=appointment.id, cancelled=cancelled)


@router.get("/appointments/confirm/{token}", response_model=ConfirmationCheckOut)
def check_confirmation(
    token: str,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    valid, error, confirmation = inspect_confirmation(db, token, clock())
    return ConfirmationCheckOut(
        valid=valid,
        error=error,
        confirmation=_to_confirmation_out(confirmation) if confirmation is not None else None,
    )


@router.post("/appointments/confirm/{token}", response_model=ConfirmationOut)
def post_confirmation(
    token: str,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    try:
        confirmation = confirm_appointment(db, token, clock())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return _to_confirmation_out(confirmation, message="Appointment confirmed")


@router.post("/communications/schedule-birthday-greetings", response_model=CommunicationScheduleOut)
def post_schedule_birthday_greetings(
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    return schedule_birthday_greetings(db, clock(), company_id=company.id)


@router.post("/communications/schedule-post-care-followups", response_model=CommunicationScheduleOut)
def post_schedule_post_care_followups(
    db: Session = Depends(get_db),
    company: Company = Depends(get_current_company),
    clock: Clock = Depends(get_clock),
):
    return schedule_post_care_followups(db, clock(), company_id=company.id)
