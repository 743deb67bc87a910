from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..models import Appointment, Client, ReminderSchedule, Store
from .timezones import as_utc_naive, local_day_bounds_utc, local_now, store_zone, to_utc_naive

logger = structlog.get_logger("studiodesk.communications")


def birthday_in_year(birth_date: date, year: int) -> date:
    try:
        return birth_date.replace(year=year)
    except ValueError:
        # 29 February outside leap years.
        return date(year, 2, 28)


def next_birthday(birth_date: date, today: date) -> date:
    birthday = birthday_in_year(birth_date, today.year)
    if birthday < today:
        birthday = birthday_in_year(birth_date, today.year + 1)
    return birthday


def birthday_variables(client: Client, now: datetime) -> dict:
    store = client.store
    today = local_now(now, store_zone(store.timezone if store else None)).date()
    age = today.year - client.birth_date.year if client.birth_date else 0
    return {
        "clientName": client.name,
        "storeName": store.name if store else "",
        "age": str(age),
        "loyaltyPoints": str(int(client.loyalty_points or 0)),
    }


def _birthday_already_queued(db: Session, client_id: str, start_utc: datetime, end_utc: datetime) -> bool:
    return (
        db.scalar(
            select(ReminderSchedule.id).where(
                ReminderSchedule.client_id == client_id,
                ReminderSchedule.reminder_type == "birthday",
                ReminderSchedule.scheduled_for >= start_utc,
                ReminderSchedule.scheduled_for < end_utc,
            )
        )
        is not None
    )


def schedule_birthday_greetings(db: Session, now: datetime, company_id: str | None = None) -> dict:
    """Queue one greeting per client for birthdays in the lookahead window.

    A greeting goes out at BIRTHDAY_GREETING_HOUR store time on the birthday, or at
    once when that hour has already passed today.
    """
    now_utc = as_utc_naive(now)
    lookahead = int(settings.BIRTHDAY_LOOKAHEAD_DAYS)
    send_at = time(hour=min(max(int(settings.BIRTHDAY_GREETING_HOUR), 0), 23))

    q = (
        select(Client)
        .join(Store, Store.id == Client.store_id)
        .where(Client.birth_date.is_not(None), Client.birthday_greetings.is_(True))
    )
    if company_id:
        q = q.where(Store.company_id == company_id)

    scheduled = 0
    for client in db.scalars(q).all():
        tz = store_zone(client.store.timezone)
        today = local_now(now_utc, tz).date()
        birthday = next_birthday(client.birth_date, today)
        if (birthday - today).days > lookahead:
            continue
        day_start_utc, day_end_utc = local_day_bounds_utc(birthday, tz)
        if _birthday_already_queued(db, client.id, day_start_utc, day_end_utc):
            continue
        due_at = max(to_utc_naive(datetime.combine(birthday, send_at), tz), now_utc)
        db.add(ReminderSchedule(client_id=client.id, reminder_type="birthday", scheduled_for=due_at))
        scheduled += 1

    db.commit()
    if scheduled:
        logger.info("birthday_greetings_scheduled", company_id=company_id, scheduled=scheduled)
    return {"scheduled": scheduled}


def schedule_post_care_followups(db: Session, now: datetime, company_id: str | None = None) -> dict:
    """Queue a follow-up POST_CARE_FOLLOWUP_HOURS after each recently completed appointment."""
    now_utc = as_utc_naive(now)
    delay = timedelta(hours=int(settings.POST_CARE_FOLLOWUP_HOURS))
    since = now_utc - timedelta(days=int(settings.POST_CARE_LOOKBACK_DAYS))

    queued = select(ReminderSchedule.appointment_id).where(
        ReminderSchedule.reminder_type == "post_care",
        ReminderSchedule.appointment_id.is_not(None),
    )
    q = (
        select(Appointment)
        .join(Client, Client.id == Appointment.client_id)
        .join(Store, Store.id == Appointment.store_id)
        .where(
            Appointment.status == "COMPLETED",
            Appointment.end_time >= since,
            Client.post_care_followup.is_(True),
            Appointment.id.not_in(queued),
        )
    )
    if company_id:
        q = q.where(Store.company_id == company_id)

    scheduled = 0
    for appointment in db.scalars(q.order_by(Appointment.end_time.asc())).all():
        db.add(
            ReminderSchedule(
                appointment_id=appointment.id,
                client_id=appointment.client_id,
                reminder_type="post_care",
                scheduled_for=max(appointment.end_time + delay, now_utc),
            )
        )
        scheduled += 1

    db.commit()
    if scheduled:
        logger.info("post_care_followups_scheduled", company_id=company_id, scheduled=scheduled)
    return {"scheduled": scheduled}
