from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .api import Clock, bad_request, get_calendar_factory, get_clock
from .core.calendar_providers import CalendarFactory
from .core.timezones import store_zone
from .db import get_db
from .schemas import ArtistSummary, AvailabilityOut, BookingCreate, BookingOut, ServiceSummary, SlotOut
from .services import book_appointment, get_availability

router = APIRouter(prefix="/api", tags=["public"])


@router.get("/availability", response_model=AvailabilityOut)
def read_availability(
    store_id: str = Query(..., alias="storeId", min_length=1),
    service_id: str = Query(..., alias="serviceId", min_length=1),
    artist_id: str = Query(..., alias="artistId", min_length=1),
    day: date = Query(..., alias="date"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    factory: CalendarFactory = Depends(get_calendar_factory),
):
    store, service, artist, result = get_availability(
        db,
        store_id=store_id,
        service_id=service_id,
        artist_id=artist_id,
        day=day,
        now=clock(),
        factory=factory,
    )
    tz = store_zone(store.timezone)
    return AvailabilityOut(
        slots=[
            SlotOut(time=slot.time, available=slot.available, datetime=slot.start.replace(tzinfo=tz))
            for slot in result.slots
        ],
        artist=ArtistSummary(id=artist.id, name=artist.name),
        service=ServiceSummary(
            id=service.id,
            name=service.name,
            duration=int(service.duration),
            price=float(service.price),
        ),
        date=day,
        message=result.message,
    )


@router.post("/bookings", response_model=BookingOut)
def create_booking(
    payload: BookingCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    try:
        appointment = book_appointment(db, payload.model_dump(), clock())
    except ValueError as exc:
        raise bad_request(exc) from exc
    return BookingOut(
        appointment_id=appointment.id,
        client_id=appointment.client_id,
        artist_id=appointment.artist_id,
        message="Appointment booked successfully",
    )
