import json
from datetime import datetime

import httpx
import pytest

from studiodesk.core.calendar_providers import (
    AppleCalendarProvider,
    BusyInterval,
    CalendarEvent,
    CalendarProviderError,
    GoogleCalendarProvider,
    InMemoryCalendarProvider,
    MicrosoftCalendarProvider,
    parse_remote_datetime,
)

WINDOW = (datetime(2030, 1, 7, 0, 0), datetime(2030, 1, 8, 0, 0))

ICS_FEED = b"""BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Test//EN
BEGIN:VEVENT
UID:busy-1
SUMMARY:Dentist
DTSTART:20300107T080000Z
DTEND:20300107T090000Z
END:VEVENT
BEGIN:VEVENT
UID:free-1
SUMMARY:Reminder only
TRANSP:TRANSPARENT
DTSTART:20300107T100000Z
DTEND:20300107T110000Z
END:VEVENT
BEGIN:VEVENT
UID:later
SUMMARY:Next week
DTSTART:20300114T080000Z
DTEND:20300114T090000Z
END:VEVENT
END:VCALENDAR
"""


def test_parse_remote_datetime_variants():
    assert parse_remote_datetime("2030-01-07T10:00:00Z") == datetime(2030, 1, 7, 10, 0)
    assert parse_remote_datetime("2030-01-07T10:00:00.0000000") == datetime(2030, 1, 7, 10, 0)
    assert parse_remote_datetime("2030-01-07T11:00:00+01:00") == datetime(2030, 1, 7, 10, 0)


def test_google_free_busy_is_parsed():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "calendars": {
                    "primary": {"busy": [{"start": "2030-01-07T10:00:00Z", "end": "2030-01-07T11:30:00Z"}]}
                }
            },
        )

    provider = GoogleCalendarProvider("token-123", transport=httpx.MockTransport(handler))
    busy = provider.list_busy_intervals(*WINDOW)

    assert busy == [BusyInterval(datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 11, 30))]
    assert seen["auth"] == "Bearer token-123"
    assert seen["body"]["timeMin"] == "2030-01-07T00:00:00Z"
    assert seen["body"]["items"] == [{"id": "primary"}]


def test_google_errors_become_provider_errors():
    provider = GoogleCalendarProvider(
        "expired", transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "auth"}))
    )
    with pytest.raises(CalendarProviderError) as excinfo:
        provider.list_busy_intervals(*WINDOW)
    assert excinfo.value.provider == "google"
    assert "401" in str(excinfo.value)


def test_google_create_event_posts_utc_times():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "evt-9"})

    provider = GoogleCalendarProvider("t", calendar_id="studio@example.com", transport=httpx.MockTransport(handler))
    event_id = provider.create_event(
        CalendarEvent(title="Tattoo - Laia", start=datetime(2030, 1, 7, 10), end=datetime(2030, 1, 7, 11))
    )
    assert event_id == "evt-9"
    assert "/calendars/studio" in captured["url"]
    assert captured["url"].endswith("/events")
    assert captured["body"]["start"] == {"dateTime": "2030-01-07T10:00:00Z", "timeZone": "UTC"}


def test_microsoft_calendar_view_skips_free_events():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/me/calendarView")
        return httpx.Response(
            200,
            json={
                "value": [
                    {
                        "id": "a",
                        "subject": "Supplier call",
                        "showAs": "busy",
                        "start": {"dateTime": "2030-01-07T09:00:00.0000000", "timeZone": "UTC"},
                        "end": {"dateTime": "2030-01-07T09:30:00.0000000", "timeZone": "UTC"},
                    },
                    {
                        "id": "b",
                        "subject": "Lunch idea",
                        "showAs": "free",
                        "start": {"dateTime": "2030-01-07T12:00:00.0000000", "timeZone": "UTC"},
                        "end": {"dateTime": "2030-01-07T13:00:00.0000000", "timeZone": "UTC"},
                    },
                ]
            },
        )

    provider = MicrosoftCalendarProvider("t", transport=httpx.MockTransport(handler))
    busy = provider.list_busy_intervals(*WINDOW)
    assert busy == [
        BusyInterval(datetime(2030, 1, 7, 9), datetime(2030, 1, 7, 9, 30), title="Supplier call", external_id="a")
    ]


def test_apple_feed_keeps_opaque_events_in_window():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=ICS_FEED, headers={"Content-Type": "text/calendar"})

    provider = AppleCalendarProvider(
        "https://caldav.example.com/cal/nora", username="nora", password="secret",
        transport=httpx.MockTransport(handler),
    )
    busy = provider.list_busy_intervals(*WINDOW)
    assert [(b.external_id, b.start, b.end) for b in busy] == [
        ("busy-1", datetime(2030, 1, 7, 8), datetime(2030, 1, 7, 9))
    ]


def test_apple_create_event_puts_ics_resource():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["body"] = request.content
        return httpx.Response(201)

    provider = AppleCalendarProvider("https://caldav.example.com/cal/nora", transport=httpx.MockTransport(handler))
    uid = provider.create_event(
        CalendarEvent(title="Tattoo", start=datetime(2030, 1, 7, 10), end=datetime(2030, 1, 7, 11), uid="appt-1")
    )
    assert uid == "appt-1"
    assert captured["method"] == "PUT"
    assert captured["url"] == "https://caldav.example.com/cal/nora/appt-1.ics"
    assert b"DTSTART:20300107T100000Z" in captured["body"]


def _connect_google(studio, artist_id, busy=None, fail=False):
    studio.calendars["google"] = InMemoryCalendarProvider("google", busy=busy or [], fail=fail)
    response = studio.client.post(
        "/api/calendar/connections",
        json={"artistId": artist_id, "provider": "google", "accessToken": "token"},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_connection_validation_and_listing(studio):
    store, artist, service = studio.seed()

    missing_token = studio.client.post(
        "/api/calendar/connections", json={"artistId": artist["id"], "provider": "google"}
    )
    assert missing_token.status_code == 400

    missing_url = studio.client.post(
        "/api/calendar/connections", json={"artistId": artist["id"], "provider": "apple", "username": "nora"}
    )
    assert missing_url.status_code == 400

    connection = _connect_google(studio, artist["id"])
    assert "accessToken" not in connection

    listed = studio.client.get("/api/calendar/connections", params={"artistId": artist["id"]}).json()
    assert [c["provider"] for c in listed] == ["google"]

    assert studio.client.delete(f"/api/calendar/connections/{connection['id']}").status_code == 204
    assert studio.client.get("/api/calendar/connections", params={"artistId": artist["id"]}).json() == []


def test_external_busy_blocks_public_slots(studio):
    store, artist, service = studio.seed()
    # 12:00-13:00 Madrid.
    _connect_google(studio, artist["id"], busy=[BusyInterval(datetime(2030, 1, 7, 11), datetime(2030, 1, 7, 12))])

    slots = studio.client.get(
        "/api/availability",
        params={"storeId": store["id"], "serviceId": service["id"], "artistId": artist["id"], "date": "2030-01-07"},
    ).json()["slots"]
    blocked = [s["time"] for s in slots if not s["available"]]
    assert blocked == ["11:30", "12:00", "12:30"]


def test_failing_provider_degrades_to_local_availability(studio):
    store, artist, service = studio.seed()
    _connect_google(studio, artist["id"], fail=True)

    response = studio.client.get(
        "/api/availability",
        params={"storeId": store["id"], "serviceId": service["id"], "artistId": artist["id"], "date": "2030-01-07"},
    )
    assert response.status_code == 200
    assert all(s["available"] for s in response.json()["slots"])

    window = studio.client.get(
        "/api/calendar/availability",
        params={"artistId": artist["id"], "startDate": "2030-01-07T00:00:00", "endDate": "2030-01-08T00:00:00"},
    ).json()
    assert window["errors"] == {"google": "google: provider unavailable"}


def test_availability_check_reports_conflicts_and_recommendations(studio):
    store, artist, service = studio.seed()
    _connect_google(studio, artist["id"], busy=[BusyInterval(datetime(2030, 1, 7, 11), datetime(2030, 1, 7, 12))])

    clash = studio.client.post(
        "/api/calendar/availability/check",
        json={"artistId": artist["id"], "startTime": "2030-01-07T12:00:00", "endTime": "2030-01-07T13:00:00"},
    ).json()
    assert clash["available"] is False
    assert clash["conflicts"]["businessHours"] is False
    assert clash["conflicts"]["external"]["google"][0]["start"] == "2030-01-07T11:00:00Z"
    assert [r["time"] for r in clash["recommendations"]] == ["10:00", "10:30", "11:00"]

    free = studio.client.post(
        "/api/calendar/availability/check",
        json={"artistId": artist["id"], "startTime": "2030-01-07T15:00:00", "endTime": "2030-01-07T16:00:00"},
    ).json()
    assert free["available"] is True
    assert free["recommendations"] == []

    after_hours = studio.client.post(
        "/api/calendar/availability/check",
        json={"artistId": artist["id"], "startTime": "2030-01-07T19:00:00", "endTime": "2030-01-07T20:00:00"},
    ).json()
    assert after_hours["available"] is False
    assert after_hours["conflicts"]["businessHours"] is True


def test_calendar_window_lists_busy_and_free_gaps(studio):
    store, artist, service = studio.seed()
    _connect_google(studio, artist["id"], busy=[BusyInterval(datetime(2030, 1, 7, 11), datetime(2030, 1, 7, 12))])
    studio.client.post("/api/bookings", json=studio.booking_payload(store["id"], service["id"], artist["id"]))

    window = studio.client.get(
        "/api/calendar/availability",
        params={
            "artistId": artist["id"],
            "startDate": "2030-01-07T08:00:00",
            "endDate": "2030-01-07T14:00:00",
            "duration": 60,
        },
    ).json()
    assert [b["start"] for b in window["local"]] == ["2030-01-07T10:00:00Z"]
    assert [b["start"] for b in window["external"]["google"]] == ["2030-01-07T11:00:00Z"]
    assert window["free"] == [
        {"start": "2030-01-07T08:00:00Z", "end": "2030-01-07T10:00:00Z"},
        {"start": "2030-01-07T12:00:00Z", "end": "2030-01-07T14:00:00Z"},
    ]


def test_sync_pushes_and_removes_events(studio):
    store, artist, service = studio.seed()
    _connect_google(studio, artist["id"])
    booked = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], artist["id"])
    ).json()
    appointment_id = booked["appointmentId"]

    created = studio.client.post(
        "/api/calendar/sync", json={"appointmentId": appointment_id, "action": "create"}
    ).json()
    assert created["results"] == [
        {"provider": "google", "success": True, "externalEventId": appointment_id, "error": None}
    ]
    event = studio.calendars["google"].events[appointment_id]
    assert event.title == "Fine line tattoo - Marc Soler"
    assert event.start == datetime(2030, 1, 7, 10)

    status = studio.client.get("/api/calendar/sync", params={"appointmentId": appointment_id}).json()
    assert status["events"] == {"google": appointment_id}
    assert status["connections"][0]["lastSyncedAt"] is not None

    studio.client.post("/api/calendar/sync", json={"appointmentId": appointment_id, "action": "delete"})
    assert studio.calendars["google"].events == {}
    status = studio.client.get("/api/calendar/sync", params={"appointmentId": appointment_id}).json()
    assert status["events"] == {}


def test_sync_failure_is_reported_per_provider(studio):
    store, artist, service = studio.seed()
    _connect_google(studio, artist["id"], fail=True)
    booked = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], artist["id"])
    ).json()

    result = studio.client.post(
        "/api/calendar/sync", json={"appointmentId": booked["appointmentId"], "action": "create"}
    ).json()
    assert result["results"][0]["success"] is False
    assert result["results"][0]["error"] == "google: provider unavailable"
