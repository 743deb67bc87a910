from sqlalchemy import select

from studiodesk.models import Appointment, Client


def test_booking_creates_client_and_appointment(studio):
    store, artist, service = studio.seed()

    response = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], artist["id"])
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["artistId"] == artist["id"]
    assert body["message"] == "Appointment booked successfully"

    appointment = studio.client.get(f"/api/appointments/{body['appointmentId']}").json()
    assert appointment["clientId"] == body["clientId"]
    assert appointment["status"] == "SCHEDULED"
    # 11:00 in Madrid is stored and returned as 10:00 UTC.
    assert appointment["startTime"] == "2030-01-07T10:00:00Z"
    assert appointment["endTime"] == "2030-01-07T11:00:00Z"
    assert appointment["clientName"] == "Marc Soler"


def test_returning_client_is_matched_by_email(studio):
    store, artist, service = studio.seed()

    first = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], artist["id"])
    ).json()
    second = studio.client.post(
        "/api/bookings",
        json=studio.booking_payload(
            store["id"], service["id"], artist["id"],
            start="2030-01-08T11:00:00", end="2030-01-08T12:00:00", email="MARC@example.com",
        ),
    ).json()
    assert first["clientId"] == second["clientId"]

    with studio.SessionLocal() as db:
        clients = db.execute(select(Client)).scalars().all()
        assert len(clients) == 1
        assert clients[0].source == "online_booking"


def test_double_booking_same_artist_is_rejected(studio):
    store, artist, service = studio.seed()
    payload = studio.booking_payload(store["id"], service["id"], artist["id"])
    assert studio.client.post("/api/bookings", json=payload).status_code == 200

    overlapping = studio.booking_payload(
        store["id"], service["id"], artist["id"],
        start="2030-01-07T11:30:00", end="2030-01-07T12:30:00", email="other@example.com",
    )
    response = studio.client.post("/api/bookings", json=overlapping)
    assert response.status_code == 400
    assert response.json() == {"error": "Artist is not available for the selected time slot"}

    adjacent = studio.booking_payload(
        store["id"], service["id"], artist["id"],
        start="2030-01-07T12:00:00", end="2030-01-07T13:00:00", email="other@example.com",
    )
    assert studio.client.post("/api/bookings", json=adjacent).status_code == 200

    with studio.SessionLocal() as db:
        assert len(db.execute(select(Appointment)).scalars().all()) == 2


def test_auto_assignment_picks_first_free_artist(studio):
    store, first_artist, service = studio.seed()
    second_artist = studio.create_artist(store["id"], name="Pau")

    picked = []
    for email in ("a@example.com", "b@example.com"):
        response = studio.client.post(
            "/api/bookings", json=studio.booking_payload(store["id"], service["id"], email=email)
        )
        assert response.status_code == 200, response.text
        picked.append(response.json()["artistId"])
    assert picked == [first_artist["id"], second_artist["id"]]

    full = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], email="c@example.com")
    )
    assert full.status_code == 400
    assert full.json()["error"] == "No artists available for the selected time slot"


def test_minor_requires_guardian_information(studio):
    store, artist, service = studio.seed()

    response = studio.client.post(
        "/api/bookings",
        json=studio.booking_payload(store["id"], service["id"], artist["id"], isMinor=True),
    )
    assert response.status_code == 400
    details = response.json()["details"]
    assert any("Guardian information is required for minors" in d["message"] for d in details)

    guardian = {
        "name": "Jordi Soler",
        "email": "jordi@example.com",
        "phone": "+34600000001",
        "relationship": "parent",
        "idDocument": "12345678Z",
    }
    accepted = studio.client.post(
        "/api/bookings",
        json=studio.booking_payload(store["id"], service["id"], artist["id"], isMinor=True, guardianInfo=guardian),
    )
    assert accepted.status_code == 200, accepted.text
    client = studio.client.get(f"/api/clients/{accepted.json()['clientId']}").json()
    assert client["isMinor"] is True
    assert client["guardianInfo"]["idDocument"] == "12345678Z"


def test_medical_info_must_match_schema(studio):
    store, artist, service = studio.seed()

    bad = studio.client.post(
        "/api/bookings",
        json=studio.booking_payload(store["id"], service["id"], artist["id"], medicalInfo="{not json"),
    )
    assert bad.status_code == 400
    assert any("Invalid medical information" in d["message"] for d in bad.json()["details"])

    good = studio.client.post(
        "/api/bookings",
        json=studio.booking_payload(
            store["id"], service["id"], artist["id"],
            medicalInfo='{"allergies": ["latex"], "medications": [], "conditions": []}',
        ),
    )
    assert good.status_code == 200, good.text


def test_booking_validation_errors(studio):
    store, artist, service = studio.seed()
    other_store = studio.create_store(name="Second Studio")
    other_artist = studio.create_artist(other_store["id"], name="Pau")
    other_service = studio.create_service(other_store["id"])

    reversed_times = studio.client.post(
        "/api/bookings",
        json=studio.booking_payload(
            store["id"], service["id"], artist["id"], start="2030-01-07T12:00:00", end="2030-01-07T11:00:00"
        ),
    )
    assert reversed_times.json() == {"error": "End time must be after start time"}

    foreign_service = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], other_service["id"], artist["id"])
    )
    assert foreign_service.status_code == 400
    assert foreign_service.json()["error"] == "Service does not belong to the specified store"

    foreign_artist = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], other_artist["id"])
    )
    assert foreign_artist.status_code == 400
    assert foreign_artist.json()["error"] == "Artist does not belong to the specified store"

    missing_artist = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], "missing")
    )
    assert missing_artist.status_code == 404

    missing_store = studio.client.post(
        "/api/bookings", json=studio.booking_payload("missing", service["id"], artist["id"])
    )
    assert missing_store.json() == {"error": "Store not found"}


def test_aware_times_are_converted_to_utc(studio):
    store, artist, service = studio.seed()
    body = studio.client.post(
        "/api/bookings",
        json=studio.booking_payload(
            store["id"], service["id"], artist["id"], start="2030-01-07T15:00:00Z", end="2030-01-07T16:00:00Z"
        ),
    ).json()
    appointment = studio.client.get(f"/api/appointments/{body['appointmentId']}").json()
    assert appointment["startTime"] == "2030-01-07T15:00:00Z"
