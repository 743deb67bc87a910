from datetime import datetime, timezone


def availability(studio, store, artist, service, day="2030-01-07"):
    return studio.client.get(
        "/api/availability",
        params={"storeId": store["id"], "serviceId": service["id"], "artistId": artist["id"], "date": day},
    )


def test_availability_lists_working_day_slots(studio):
    store, artist, service = studio.seed()

    response = availability(studio, store, artist, service)
    assert response.status_code == 200
    body = response.json()
    assert [s["time"] for s in body["slots"]] == [
        "10:00", "10:30", "11:00", "11:30", "12:00", "12:30", "13:00",
        "15:00", "15:30", "16:00", "16:30", "17:00",
    ]
    assert all(s["available"] for s in body["slots"])
    assert body["slots"][0]["datetime"] == "2030-01-07T10:00:00+01:00"
    assert body["artist"] == {"id": artist["id"], "name": "Nora"}
    assert body["service"]["duration"] == 60
    assert body["date"] == "2030-01-07"
    assert body["message"] is None


def test_booked_interval_marks_overlapping_slots(studio):
    store, artist, service = studio.seed()
    booked = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], artist["id"])
    )
    assert booked.status_code == 200, booked.text

    slots = {s["time"]: s["available"] for s in availability(studio, store, artist, service).json()["slots"]}
    assert slots["10:00"] is True
    assert slots["10:30"] is False
    assert slots["11:00"] is False
    assert slots["11:30"] is False
    assert slots["12:00"] is True


def test_cancelled_appointments_do_not_block(studio):
    store, artist, service = studio.seed()
    booked = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], artist["id"])
    ).json()
    cancelled = studio.client.post(f"/api/appointments/{booked['appointmentId']}/cancel", json={"reason": "sick"})
    assert cancelled.status_code == 200

    slots = availability(studio, store, artist, service).json()["slots"]
    assert all(s["available"] for s in slots)


def test_past_slots_are_dropped_for_today(studio):
    store, artist, service = studio.seed()
    # 10:15 UTC is 11:15 in Madrid.
    studio.now = datetime(2030, 1, 7, 10, 15, tzinfo=timezone.utc)

    slots = availability(studio, store, artist, service).json()["slots"]
    assert slots[0]["time"] == "11:30"


def test_day_off_returns_message(studio):
    store, artist, service = studio.seed()

    body = availability(studio, store, artist, service, day="2030-01-06").json()
    assert body["slots"] == []
    assert body["message"] == "Artist is not available on this day"


def test_invalid_parameters_are_rejected(studio):
    store, artist, service = studio.seed()

    missing = studio.client.get("/api/availability", params={"storeId": store["id"], "serviceId": service["id"]})
    assert missing.status_code == 400
    assert missing.json()["error"] == "Invalid parameters"
    fields = {d["field"] for d in missing.json()["details"]}
    assert {"artistId", "date"} <= fields

    bad_date = availability(studio, store, artist, service, day="2030-13-45")
    assert bad_date.status_code == 400


def test_unknown_or_foreign_entities_are_not_found(studio):
    store, artist, service = studio.seed()
    other_store = studio.create_store(name="Second Studio")
    other_artist = studio.create_artist(other_store["id"], name="Pau")

    assert availability(studio, {"id": "missing"}, artist, service).json() == {"error": "Store not found"}
    assert availability(studio, store, artist, {"id": "missing"}).status_code == 404

    foreign = availability(studio, store, other_artist, service)
    assert foreign.status_code == 404
    assert foreign.json()["error"] == "Artist not found"


def test_archived_artist_is_not_bookable(studio):
    store, artist, service = studio.seed()
    assert studio.client.delete(f"/api/artists/{artist['id']}").json()["isActive"] is False

    assert availability(studio, store, artist, service).status_code == 404
