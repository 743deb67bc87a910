import threading
from datetime import datetime

from sqlalchemy import select

from studiodesk.errors import BookingConflictError
from studiodesk.models import Appointment
from studiodesk.services import book_appointment


def _race(studio, payloads):
    barrier = threading.Barrier(len(payloads))
    outcomes = []
    lock = threading.Lock()

    def worker(payload):
        barrier.wait()
        with studio.SessionLocal() as db:
            try:
                appointment = book_appointment(db, payload, studio.now)
                result = ("ok", appointment.artist_id)
            except BookingConflictError as exc:
                result = ("conflict", str(exc))
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(p,)) for p in payloads]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


def _payload(store_id, service_id, artist_id, email, start_hour=11):
    return {
        "store_id": store_id,
        "service_id": service_id,
        "artist_id": artist_id,
        "start_time": datetime(2030, 1, 7, start_hour, 0),
        "end_time": datetime(2030, 1, 7, start_hour + 1, 0),
        "price": 100.0,
        "notes": None,
        "client_data": {"name": f"Client {email}", "email": email, "phone": "+34600123456"},
    }


def test_concurrent_overlapping_bookings_only_one_wins(studio):
    store, artist, service = studio.seed()
    payloads = [
        _payload(store["id"], service["id"], artist["id"], f"racer{i}@example.com") for i in range(4)
    ]

    outcomes = _race(studio, payloads)

    assert len(outcomes) == 4
    assert sum(1 for kind, _ in outcomes if kind == "ok") == 1
    assert sum(1 for kind, _ in outcomes if kind == "conflict") == 3

    with studio.SessionLocal() as db:
        rows = db.execute(select(Appointment).where(Appointment.artist_id == artist["id"])).scalars().all()
        assert len(rows) == 1


def test_concurrent_auto_assigned_bookings_spread_across_artists(studio):
    store, first_artist, service = studio.seed()
    second_artist = studio.create_artist(store["id"], name="Pau")
    payloads = [
        _payload(store["id"], service["id"], None, f"walkin{i}@example.com") for i in range(3)
    ]

    outcomes = _race(studio, payloads)

    winners = sorted(artist_id for kind, artist_id in outcomes if kind == "ok")
    assert winners == sorted([first_artist["id"], second_artist["id"]])
    assert [message for kind, message in outcomes if kind == "conflict"] == [
        "No artists available for the selected time slot"
    ]
