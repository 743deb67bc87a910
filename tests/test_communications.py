from datetime import date, datetime, timezone

from studiodesk.core.communications import birthday_in_year, next_birthday
from studiodesk.core.messaging import render_reminder


def _client_with_birthday(studio, store_id, birth_date, email, name="Anna Vidal", headers=None):
    response = studio.client.post(
        "/api/clients",
        json={"storeId": store_id, "name": name, "email": email, "phone": "+34600333444", "birthDate": birth_date},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def _pending(studio, reminder_type):
    items = studio.client.get("/api/reminders", params={"pending": True, "limit": 100}).json()["items"]
    return [r for r in items if r["reminderType"] == reminder_type]


def test_leap_day_birthdays_fall_back_to_february_28():
    assert birthday_in_year(date(1992, 2, 29), 2031) == date(2031, 2, 28)
    assert birthday_in_year(date(1992, 2, 29), 2032) == date(2032, 2, 29)
    assert next_birthday(date(1990, 1, 1), date(2030, 1, 2)) == date(2031, 1, 1)
    assert next_birthday(date(1990, 1, 2), date(2030, 1, 2)) == date(2030, 1, 2)


def test_birthday_greetings_are_scheduled_once_per_birthday(studio):
    store = studio.create_store()
    today = _client_with_birthday(studio, store["id"], "1990-01-01", "anna@example.com")
    soon = _client_with_birthday(studio, store["id"], "1985-01-03", "jordi@example.com", name="Jordi Mas")
    _client_with_birthday(studio, store["id"], "1990-03-01", "later@example.com", name="Later Client")

    other = {"X-Company-Slug": "other-studio"}
    other_store = studio.create_store(name="Other Studio", headers=other)
    _client_with_birthday(studio, other_store["id"], "1990-01-01", "elsewhere@example.com", headers=other)

    response = studio.client.post("/api/communications/schedule-birthday-greetings")
    assert response.status_code == 200
    assert response.json() == {"scheduled": 2}
    assert studio.client.post("/api/communications/schedule-birthday-greetings").json() == {"scheduled": 0}

    pending = _pending(studio, "birthday")
    # 10:00 in Madrid on the birthday.
    assert [(r["clientId"], r["scheduledFor"]) for r in pending] == [
        (today["id"], "2030-01-01T09:00:00Z"),
        (soon["id"], "2030-01-03T09:00:00Z"),
    ]
    assert all(r["appointmentId"] is None for r in pending)


def test_birthday_greeting_is_delivered_through_the_reminder_queue(studio):
    store = studio.create_store()
    _client_with_birthday(studio, store["id"], "1990-01-01", "anna@example.com")
    studio.client.post("/api/communications/schedule-birthday-greetings")

    studio.now = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)
    summary = studio.client.post("/api/reminders/process").json()
    assert summary == {"processed": 1, "sent": 1, "skipped": 0, "failed": 0}

    message = studio.sender.messages[0]
    assert message.reminder_type == "birthday"
    assert message.recipient == "anna@example.com"
    assert message.subject == "¡Feliz cumpleaños, Anna Vidal!"
    assert "Black Lotus Tattoo" in message.body
    assert "0 puntos" in message.body
    assert message.metadata["appointmentId"] is None

    stats = studio.client.get("/api/reminders/stats").json()
    assert stats["byType"]["birthday"] == {"scheduled": 1, "sent": 1, "failed": 0}


def test_birthday_opt_out_is_respected(studio):
    store = studio.create_store()
    client = _client_with_birthday(studio, store["id"], "1990-01-01", "anna@example.com")
    studio.client.post("/api/communications/schedule-birthday-greetings")

    prefs = studio.client.put(
        f"/api/clients/{client['id']}/communication-preferences",
        json={"preferredChannel": "email", "preferredLanguage": "ca", "birthdayGreetings": False},
    )
    assert prefs.status_code == 200
    assert prefs.json()["birthdayGreetings"] is False

    studio.now = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)
    summary = studio.client.post("/api/reminders/process").json()
    assert summary["skipped"] == 1
    assert studio.sender.messages == []
    reminders = studio.client.get("/api/reminders").json()["items"]
    assert reminders[0]["error"] == "Client opted out of birthday greetings"

    # Opted-out clients are not queued again next year.
    studio.now = datetime(2030, 12, 30, 8, 0, tzinfo=timezone.utc)
    assert studio.client.post("/api/communications/schedule-birthday-greetings").json() == {"scheduled": 0}


def test_post_care_followup_after_completed_appointment(studio):
    store, artist, service = studio.seed()
    done = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], artist["id"])
    ).json()
    pending_visit = studio.client.post(
        "/api/bookings",
        json=studio.booking_payload(
            store["id"], service["id"], artist["id"],
            start="2030-01-07T15:00:00", end="2030-01-07T16:00:00", email="other@example.com",
        ),
    )
    assert pending_visit.status_code == 200, pending_visit.text
    assert studio.client.post(f"/api/appointments/{done['appointmentId']}/complete").status_code == 200

    studio.now = datetime(2030, 1, 7, 12, 0, tzinfo=timezone.utc)
    scheduled = studio.client.post("/api/communications/schedule-post-care-followups")
    assert scheduled.json() == {"scheduled": 1}
    assert studio.client.post("/api/communications/schedule-post-care-followups").json() == {"scheduled": 0}

    followup = _pending(studio, "post_care")
    assert [(r["appointmentId"], r["scheduledFor"]) for r in followup] == [
        (done["appointmentId"], "2030-01-09T11:00:00Z")
    ]

    # Only the follow-up is due; the completed visit's reminders were closed.
    studio.now = datetime(2030, 1, 9, 11, 0, tzinfo=timezone.utc)
    studio.client.post(f"/api/appointments/{pending_visit.json()['appointmentId']}/cancel")
    summary = studio.client.post("/api/reminders/process").json()
    assert summary == {"processed": 1, "sent": 1, "skipped": 0, "failed": 0}

    message = studio.sender.messages[0]
    assert message.reminder_type == "post_care"
    assert message.recipient == "marc@example.com"
    assert message.subject == "¿Qué tal tu Fine line tattoo?"
    assert "07/01/2030" in message.body
    assert "Nora" in message.body


def test_post_care_followup_respects_client_preference(studio):
    store, artist, service = studio.seed()
    booked = studio.client.post(
        "/api/bookings", json=studio.booking_payload(store["id"], service["id"], artist["id"])
    ).json()
    studio.client.put(
        f"/api/clients/{booked['clientId']}/communication-preferences",
        json={"postCareFollowup": False},
    )
    studio.client.post(f"/api/appointments/{booked['appointmentId']}/complete")

    studio.now = datetime(2030, 1, 7, 12, 0, tzinfo=timezone.utc)
    assert studio.client.post("/api/communications/schedule-post-care-followups").json() == {"scheduled": 0}


def test_message_templates_cover_every_language():
    variables = {"clientName": "Laia", "serviceName": "Piercing", "artistName": "Nora",
                 "appointmentDate": "07/01/2030", "storeName": "Black Lotus", "loyaltyPoints": "12"}
    for reminder_type in ("birthday", "post_care"):
        for language in ("es", "ca", "en"):
            subject, body = render_reminder(reminder_type, language, variables)
            assert "{{" not in subject + body
    assert render_reminder("birthday", "en", variables)[0] == "Happy birthday, Laia!"
    assert render_reminder("post_care", "ca", variables)[0] == "Com va el teu Piercing?"
