import secrets
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..config import settings
from ..models import (
    APPOINTMENT_REMINDER_TYPES,
    REMINDER_TYPES,
    Appointment,
    AppointmentConfirmation,
    Client,
    ReminderSchedule,
    Store,
)
from .communications import birthday_variables
from .messaging import MessageSender, OutboundMessage, render_reminder
from .timezones import as_utc_naive, store_zone, utc_naive_to_local

logger = structlog.get_logger("studiodesk.reminders")

REMINDER_OFFSETS = {
    "confirmation": timedelta(hours=48),
    "24h": timedelta(hours=24),
    "2h": timedelta(hours=2),
}
SKIP_STATUSES = ("CANCELLED", "COMPLETED", "NO_SHOW")


def _existing_reminders(db: Session, appointment_id: str) -> dict[str, ReminderSchedule]:
    rows = db.scalars(select(ReminderSchedule).where(ReminderSchedule.appointment_id == appointment_id))
    return {row.reminder_type: row for row in rows}


def schedule_appointment_reminders(
    db: Session,
    appointment: Appointment,
    now: datetime,
) -> list[ReminderSchedule]:
    """Create or move the reminders of one appointment. The caller commits."""
    now_utc = as_utc_naive(now)
    existing = _existing_reminders(db, appointment.id)
    scheduled: list[ReminderSchedule] = []
    for reminder_type in APPOINTMENT_REMINDER_TYPES:
        due_at = appointment.start_time - REMINDER_OFFSETS[reminder_type]
        row = existing.get(reminder_type)
        if due_at <= now_utc:
            if row is not None and not row.sent:
                db.delete(row)
            continue
        if row is None:
            row = ReminderSchedule(
                appointment_id=appointment.id,
                client_id=appointment.client_id,
                reminder_type=reminder_type,
            )
            db.add(row)
        row.scheduled_for = due_at
        row.sent = False
        row.sent_at = None
        row.error = None
        row.retry_count = 0
        scheduled.append(row)
    return scheduled


def cancel_appointment_reminders(
    db: Session,
    appointment_id: str,
    now: datetime,
    reason: str = "Appointment cancelled",
) -> int:
    """Close every unsent reminder of the appointment. The caller commits."""
    now_utc = as_utc_naive(now)
    rows = db.scalars(
        select(ReminderSchedule).where(
            ReminderSchedule.appointment_id == appointment_id,
            ReminderSchedule.sent.is_(False),
        )
    ).all()
    for row in rows:
        row.sent = True
        row.sent_at = now_utc
        row.error = reason
    return len(rows)


def issue_confirmation(db: Session, appointment: Appointment, now: datetime) -> AppointmentConfirmation:
    now_utc = as_utc_naive(now)
    current = db.scalar(
        select(AppointmentConfirmation)
        .where(
            AppointmentConfirmation.appointment_id == appointment.id,
            AppointmentConfirmation.confirmed.is_(False),
            AppointmentConfirmation.expires_at > now_utc,
        )
        .order_by(AppointmentConfirmation.created_at.desc())
    )
    if current is not None:
        return current
    confirmation = AppointmentConfirmation(
        appointment_id=appointment.id,
        token=secrets.token_urlsafe(24),
        expires_at=appointment.start_time - timedelta(hours=int(settings.CONFIRMATION_EXPIRY_HOURS_BEFORE)),
    )
    db.add(confirmation)
    db.flush()
    return confirmation


def message_variables(appointment: Appointment) -> dict:
    tz = store_zone(appointment.store.timezone if appointment.store else None)
    local_start = utc_naive_to_local(appointment.start_time, tz)
    return {
        "clientName": appointment.client.name,
        "serviceName": appointment.service.name,
        "artistName": appointment.artist.name,
        "storeName": appointment.store.name if appointment.store else "",
        "appointmentDate": local_start.strftime("%d/%m/%Y"),
        "appointmentTime": local_start.strftime("%H:%M"),
        "price": f"{appointment.price:.2f}",
        "deposit": f"{(appointment.deposit or 0):.2f}",
    }


def _build_message(reminder: ReminderSchedule, variables: dict) -> OutboundMessage:
    client = reminder.client
    channel = client.preferred_channel if client.preferred_channel in ("email", "whatsapp") else "email"
    recipient = client.phone if channel == "whatsapp" else client.email
    language = client.preferred_language or settings.DEFAULT_MESSAGE_LANGUAGE
    subject, body = render_reminder(reminder.reminder_type, language, variables)
    return OutboundMessage(
        channel=channel,
        recipient=recipient,
        subject=subject,
        body=body,
        language=language,
        reminder_type=reminder.reminder_type,
        metadata={
            "appointmentId": reminder.appointment_id,
            "clientId": reminder.client_id,
            "reminderId": reminder.id,
        },
    )


def _close(reminder: ReminderSchedule, now_utc: datetime, note: str | None = None) -> None:
    reminder.sent = True
    reminder.sent_at = now_utc
    reminder.error = note


def _skip_reason(reminder: ReminderSchedule) -> str | None:
    client = reminder.client
    if reminder.reminder_type == "birthday":
        return None if client.birthday_greetings else "Client opted out of birthday greetings"
    appointment = reminder.appointment
    if reminder.reminder_type == "post_care":
        if appointment.status != "COMPLETED":
            return "Appointment not completed"
        return None if client.post_care_followup else "Client opted out of post-care follow-ups"
    if appointment.status in SKIP_STATUSES:
        return "Appointment cancelled or completed"
    if not client.reminders_enabled:
        return "Client opted out of reminders"
    return None


def _send_one(db: Session, reminder: ReminderSchedule, now_utc: datetime, sender: MessageSender) -> str:
    reason = _skip_reason(reminder)
    if reason:
        _close(reminder, now_utc, reason)
        return "skipped"

    if reminder.reminder_type == "birthday":
        variables = birthday_variables(reminder.client, now_utc)
    else:
        variables = message_variables(reminder.appointment)
    if reminder.reminder_type == "confirmation":
        confirmation = issue_confirmation(db, reminder.appointment, now_utc)
        variables["confirmationToken"] = confirmation.token
        variables["confirmationUrl"] = f"{settings.APP_PUBLIC_URL.rstrip('/')}/confirm/{confirmation.token}"

    sender.send(_build_message(reminder, variables))
    _close(reminder, now_utc)
    return "sent"


def process_pending_reminders(db: Session, now: datetime, sender: MessageSender) -> dict:
    """Send every due reminder once; failures are retried later up to the retry limit."""
    now_utc = as_utc_naive(now)
    max_retries = int(settings.REMINDER_MAX_RETRIES)
    due = db.scalars(
        select(ReminderSchedule)
        .where(
            ReminderSchedule.sent.is_(False),
            ReminderSchedule.scheduled_for <= now_utc,
            ReminderSchedule.retry_count < max_retries,
        )
        .order_by(ReminderSchedule.scheduled_for.asc())
    ).all()

    summary = {"processed": 0, "sent": 0, "skipped": 0, "failed": 0}
    for reminder in due:
        summary["processed"] += 1
        try:
            outcome = _send_one(db, reminder, now_utc, sender)
            db.commit()
            summary[outcome] += 1
        except Exception as exc:
            db.rollback()
            reminder.retry_count = int(reminder.retry_count or 0) + 1
            reminder.error = str(exc)[:500]
            if reminder.retry_count < max_retries:
                reminder.scheduled_for = now_utc + timedelta(minutes=int(settings.REMINDER_RETRY_DELAY_MINUTES))
            db.commit()
            summary["failed"] += 1
            logger.warning(
                "reminder_send_failed",
                reminder_id=reminder.id,
                appointment_id=reminder.appointment_id,
                client_id=reminder.client_id,
                reminder_type=reminder.reminder_type,
                retry_count=reminder.retry_count,
                error=str(exc),
            )

    logger.info("reminders_processed", **summary)
    return summary


def _confirmation_problem(confirmation: AppointmentConfirmation | None, now_utc: datetime) -> str | None:
    if confirmation is None:
        return "Invalid confirmation token"
    if confirmation.confirmed:
        return "Appointment already confirmed"
    if now_utc > confirmation.expires_at:
        return "Confirmation token expired"
    return None


def get_confirmation(db: Session, token: str) -> AppointmentConfirmation | None:
    return db.scalar(select(AppointmentConfirmation).where(AppointmentConfirmation.token == token))


def inspect_confirmation(
    db: Session, token: str, now: datetime
) -> tuple[bool, str | None, AppointmentConfirmation | None]:
    confirmation = get_confirmation(db, token)
    problem = _confirmation_problem(confirmation, as_utc_naive(now))
    return problem is None, problem, confirmation


def confirm_appointment(db: Session, token: str, now: datetime) -> AppointmentConfirmation:
    now_utc = as_utc_naive(now)
    confirmation = get_confirmation(db, token)
    problem = _confirmation_problem(confirmation, now_utc)
    if problem:
        raise ValueError(problem)
    appointment = confirmation.appointment
    if appointment.status in ("CANCELLED", "NO_SHOW", "COMPLETED"):
        raise ValueError(f"Appointment is {appointment.status.lower()}")

    confirmation.confirmed = True
    confirmation.confirmed_at = now_utc
    appointment.status = "CONFIRMED"
    db.commit()
    db.refresh(confirmation)
    logger.info("appointment_confirmed", appointment_id=appointment.id)
    return confirmation


def _company_reminders_query(company_id: str, store_id: str | None = None):
    q = (
        select(ReminderSchedule)
        .join(Client, Client.id == ReminderSchedule.client_id)
        .join(Store, Store.id == Client.store_id)
        .where(Store.company_id == company_id)
    )
    if store_id:
        q = q.where(Client.store_id == store_id)
    return q


def list_reminders(
    db: Session,
    company_id: str,
    store_id: str | None = None,
    pending_only: bool = False,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[ReminderSchedule], int]:
    q = _company_reminders_query(company_id, store_id)
    if pending_only:
        q = q.where(ReminderSchedule.sent.is_(False))
    total = int(db.scalar(select(func.count()).select_from(q.subquery())) or 0)
    rows = db.scalars(
        q.order_by(ReminderSchedule.scheduled_for.asc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return list(rows), total


def reminder_stats(
    db: Session,
    company_id: str,
    store_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict:
    q = _company_reminders_query(company_id, store_id)
    if start is not None:
        q = q.where(ReminderSchedule.created_at >= start)
    if end is not None:
        q = q.where(ReminderSchedule.created_at <= end)
    rows = db.scalars(q).all()

    by_type = {t: {"scheduled": 0, "sent": 0, "failed": 0} for t in REMINDER_TYPES}
    total_sent = 0
    total_failed = 0
    for row in rows:
        bucket = by_type.setdefault(row.reminder_type, {"scheduled": 0, "sent": 0, "failed": 0})
        bucket["scheduled"] += 1
        if row.sent and not row.error:
            bucket["sent"] += 1
            total_sent += 1
        if row.error:
            bucket["failed"] += 1
            total_failed += 1

    total = len(rows)
    return {
        "total_scheduled": total,
        "total_sent": total_sent,
        "total_failed": total_failed,
        "success_rate": round((total_sent / total) * 100, 2) if total else 0.0,
        "by_type": by_type,
    }
