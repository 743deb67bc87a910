from collections import defaultdict
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Appointment, Artist

TOP_SERVICES_LIMIT = 5


def _round(value: float) -> float:
    return round(float(value), 2)


def _appointments_in_period(
    db: Session,
    artist_id: str,
    start: datetime,
    end: datetime,
    status: str | None = None,
) -> list[Appointment]:
    q = select(Appointment).where(
        Appointment.artist_id == artist_id,
        Appointment.start_time >= start,
        Appointment.start_time <= end,
    )
    if status:
        q = q.where(Appointment.status == status)
    return list(db.scalars(q.order_by(Appointment.start_time.asc())))


def calculate_commission(db: Session, artist: Artist, start: datetime, end: datetime) -> dict:
    """Commission owed to an artist for the completed appointments of a period."""
    appointments = _appointments_in_period(db, artist.id, start, end, status="COMPLETED")
    rate = float(artist.commission or 0.0)
    total_revenue = sum(float(a.price) for a in appointments)
    count = len(appointments)
    return {
        "artist_id": artist.id,
        "artist_name": artist.name,
        "period_start": start,
        "period_end": end,
        "total_revenue": _round(total_revenue),
        "commission_rate": rate,
        "commission_amount": _round(total_revenue * rate),
        "appointment_count": count,
        "average_service_price": _round(total_revenue / count) if count else 0.0,
        "breakdown": [
            {
                "appointment_id": a.id,
                "client_name": a.client.name,
                "service_name": a.service.name,
                "appointment_date": a.start_time,
                "service_price": float(a.price),
                "commission_rate": rate,
                "commission_amount": _round(float(a.price) * rate),
            }
            for a in appointments
        ],
    }


def store_commissions(db: Session, store_id: str, start: datetime, end: datetime) -> dict:
    artists = db.scalars(select(Artist).where(Artist.store_id == store_id).order_by(Artist.name.asc())).all()
    rows = [calculate_commission(db, artist, start, end) for artist in artists]
    rows.sort(key=lambda r: r["commission_amount"], reverse=True)
    return {
        "store_id": store_id,
        "period_start": start,
        "period_end": end,
        "total_revenue": _round(sum(r["total_revenue"] for r in rows)),
        "total_commission": _round(sum(r["commission_amount"] for r in rows)),
        "artists": rows,
    }


def artist_performance(db: Session, artist: Artist, start: datetime, end: datetime) -> dict:
    appointments = _appointments_in_period(db, artist.id, start, end)
    completed = [a for a in appointments if a.status == "COMPLETED"]
    rate = float(artist.commission or 0.0)
    revenue = sum(float(a.price) for a in completed)

    visits_per_client: dict[str, int] = defaultdict(int)
    for a in appointments:
        visits_per_client[a.client_id] += 1
    returning = sum(1 for n in visits_per_client.values() if n > 1)

    per_service: dict[str, dict] = {}
    per_month: dict[str, dict] = {}
    for a in completed:
        svc = per_service.setdefault(
            a.service_id,
            {"service_id": a.service_id, "service_name": a.service.name, "appointment_count": 0, "total_revenue": 0.0},
        )
        svc["appointment_count"] += 1
        svc["total_revenue"] += float(a.price)

        month = per_month.setdefault(a.start_time.strftime("%Y-%m"), {"appointment_count": 0, "revenue": 0.0})
        month["appointment_count"] += 1
        month["revenue"] += float(a.price)

    top_services = sorted(per_service.values(), key=lambda s: s["total_revenue"], reverse=True)
    for svc in top_services:
        svc["average_price"] = _round(svc["total_revenue"] / svc["appointment_count"])
        svc["total_revenue"] = _round(svc["total_revenue"])

    total = len(appointments)
    return {
        "artist_id": artist.id,
        "artist_name": artist.name,
        "period_start": start,
        "period_end": end,
        "total_appointments": total,
        "completed": len(completed),
        "cancelled": sum(1 for a in appointments if a.status == "CANCELLED"),
        "no_show": sum(1 for a in appointments if a.status == "NO_SHOW"),
        "completion_rate": _round(len(completed) / total * 100) if total else 0.0,
        "total_revenue": _round(revenue),
        "average_service_price": _round(revenue / len(completed)) if completed else 0.0,
        "commission_earned": _round(revenue * rate),
        "client_retention_rate": _round(returning / len(visits_per_client) * 100) if visits_per_client else 0.0,
        "top_services": top_services[:TOP_SERVICES_LIMIT],
        "monthly_trends": [
            {
                "month": month,
                "appointment_count": data["appointment_count"],
                "revenue": _round(data["revenue"]),
                "commission": _round(data["revenue"] * rate),
            }
            for month, data in sorted(per_month.items())
        ],
    }


def appointment_stats(appointments: list[Appointment]) -> dict:
    total = len(appointments)
    completed = [a for a in appointments if a.status == "COMPLETED"]
    revenue = sum(float(a.price) for a in completed)
    return {
        "total": total,
        "completed": len(completed),
        "cancelled": sum(1 for a in appointments if a.status == "CANCELLED"),
        "no_show": sum(1 for a in appointments if a.status == "NO_SHOW"),
        "revenue": _round(revenue),
        "average_value": _round(revenue / len(completed)) if completed else 0.0,
        "completion_rate": _round(len(completed) / total * 100) if total else 0.0,
    }
