import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Importing studiodesk.main creates the default engine; keep it out of the working tree.
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'studiodesk-test.db'}")
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from studiodesk.api import get_calendar_factory, get_clock, get_message_sender, router  # noqa: E402
from studiodesk.api_booking import router as booking_router  # noqa: E402
from studiodesk.api_calendar import router as calendar_router  # noqa: E402
from studiodesk.api_reminders import router as reminders_router  # noqa: E402
from studiodesk.core.calendar_providers import NullCalendarProvider  # noqa: E402
from studiodesk.core.messaging import MessageDeliveryError, MessageSender  # noqa: E402
from studiodesk.db import build_engine, build_session_factory, get_db, init_db  # noqa: E402
from studiodesk.errors import install_error_handlers  # noqa: E402

# Tuesday; Monday 2030-01-07 is the usual booking day (Europe/Madrid is UTC+1 in January).
FIXED_NOW = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)

WORKDAY = {
    "isWorking": True,
    "startTime": "10:00",
    "endTime": "18:00",
    "breaks": [{"startTime": "14:00", "endTime": "15:00"}],
}
WEEK_SCHEDULE = {
    "monday": WORKDAY,
    "tuesday": WORKDAY,
    "wednesday": WORKDAY,
    "thursday": WORKDAY,
    "friday": WORKDAY,
    "saturday": {"isWorking": False},
}


class RecordingSender(MessageSender):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []

    def send(self, message) -> None:
        if self.fail:
            raise MessageDeliveryError("gateway down")
        self.messages.append(message)


class Studio:
    """Test app wired to a private SQLite file with a controllable clock."""

    def __init__(self, tmp_path):
        self.engine = build_engine(f"sqlite:///{tmp_path / 'test_studiodesk.db'}")
        self.SessionLocal = build_session_factory(self.engine)
        init_db(self.engine)

        self.now = FIXED_NOW
        self.calendars = {}
        self.sender = RecordingSender()

        app = FastAPI()
        install_error_handlers(app)
        app.include_router(router)
        app.include_router(booking_router)
        app.include_router(calendar_router)
        app.include_router(reminders_router)

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_clock] = lambda: (lambda: self.now)
        app.dependency_overrides[get_calendar_factory] = lambda: self.calendar_for
        app.dependency_overrides[get_message_sender] = lambda: self.sender
        self.client = TestClient(app)

    def calendar_for(self, connection):
        return self.calendars.get(connection.provider) or NullCalendarProvider()

    def create_store(self, name="Black Lotus Tattoo", tz="Europe/Madrid", headers=None):
        response = self.client.post("/api/stores", json={"name": name, "timezone": tz}, headers=headers)
        assert response.status_code == 201, response.text
        return response.json()

    def create_artist(self, store_id, name="Nora", schedule=None, commission=0.5, headers=None):
        response = self.client.post(
            "/api/artists",
            json={
                "storeId": store_id,
                "name": name,
                "schedule": WEEK_SCHEDULE if schedule is None else schedule,
                "commission": commission,
            },
            headers=headers,
        )
        assert response.status_code == 201, response.text
        return response.json()

    def create_service(self, store_id, name="Fine line tattoo", duration=60, price=100.0):
        response = self.client.post(
            "/api/services",
            json={"storeId": store_id, "name": name, "duration": duration, "price": price, "category": "TATTOO"},
        )
        assert response.status_code == 201, response.text
        return response.json()

    def create_client(self, store_id, email="laia@example.com", name="Laia Puig"):
        response = self.client.post(
            "/api/clients",
            json={"storeId": store_id, "name": name, "email": email, "phone": "+34600111222"},
        )
        assert response.status_code == 201, response.text
        return response.json()

    def create_appointment(self, client_id, artist_id, service_id, start, end, price=100.0):
        return self.client.post(
            "/api/appointments",
            json={
                "clientId": client_id,
                "artistId": artist_id,
                "serviceId": service_id,
                "startTime": start,
                "endTime": end,
                "price": price,
            },
        )

    def seed(self):
        store = self.create_store()
        artist = self.create_artist(store["id"])
        service = self.create_service(store["id"])
        return store, artist, service

    @staticmethod
    def booking_payload(
        store_id,
        service_id,
        artist_id=None,
        start="2030-01-07T11:00:00",
        end="2030-01-07T12:00:00",
        email="marc@example.com",
        **client_overrides,
    ):
        client_data = {"name": "Marc Soler", "email": email, "phone": "+34600999888"}
        client_data.update(client_overrides)
        payload = {
            "storeId": store_id,
            "serviceId": service_id,
            "startTime": start,
            "endTime": end,
            "price": 100,
            "clientData": client_data,
        }
        if artist_id:
            payload["artistId"] = artist_id
        return payload


@pytest.fixture
def studio(tmp_path):
    harness = Studio(tmp_path)
    yield harness
    harness.engine.dispose()
