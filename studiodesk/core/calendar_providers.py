"""External calendar adapters.

Every provider speaks naive UTC datetimes at this boundary. Network and
protocol failures surface as ``CalendarProviderError``; callers decide
whether to degrade or fail.
"""

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Callable

import httpx
import structlog
from icalendar import Calendar, Event

from ..config import settings

logger = structlog.get_logger("studiodesk.calendar")

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


class CalendarProviderError(RuntimeError):
    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime
    title: str | None = None
    external_id: str | None = None


@dataclass
class CalendarEvent:
    title: str
    start: datetime
    end: datetime
    description: str | None = None
    location: str | None = None
    attendees: list[str] = field(default_factory=list)
    uid: str | None = None


def _to_utc_naive(value) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    raise ValueError(f"unsupported calendar time value: {value!r}")


def parse_remote_datetime(raw: str) -> datetime:
    """RFC 3339 / Graph timestamps ('Z' suffix, up to 7 fractional digits)."""
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r".\1", text)
    return _to_utc_naive(datetime.fromisoformat(text))


def _rfc3339(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z"


def _overlaps(interval: BusyInterval, start: datetime, end: datetime) -> bool:
    return interval.start < end and interval.end > start


class CalendarProvider(ABC):
    name = "base"

    @abstractmethod
    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        raise NotImplementedError

    @abstractmethod
    def create_event(self, event: CalendarEvent) -> str:
        raise NotImplementedError

    @abstractmethod
    def update_event(self, external_id: str, event: CalendarEvent) -> str:
        raise NotImplementedError

    @abstractmethod
    def delete_event(self, external_id: str) -> None:
        raise NotImplementedError


class NullCalendarProvider(CalendarProvider):
    name = "null"

    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        return []

    def create_event(self, event: CalendarEvent) -> str:
        return event.uid or str(uuid.uuid4())

    def update_event(self, external_id: str, event: CalendarEvent) -> str:
        return external_id

    def delete_event(self, external_id: str) -> None:
        return None


class InMemoryCalendarProvider(CalendarProvider):
    """Keeps events in a dict; handy for tests and local development."""

    def __init__(self, name: str = "memory", busy: list[BusyInterval] | None = None, fail: bool = False):
        self.name = name
        self.busy = list(busy or [])
        self.events: dict[str, CalendarEvent] = {}
        self.fail = fail

    def _check(self) -> None:
        if self.fail:
            raise CalendarProviderError(self.name, "provider unavailable")

    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        self._check()
        out = [b for b in self.busy if _overlaps(b, start, end)]
        for external_id, event in self.events.items():
            candidate = BusyInterval(event.start, event.end, event.title, external_id)
            if _overlaps(candidate, start, end):
                out.append(candidate)
        return sorted(out, key=lambda b: b.start)

    def create_event(self, event: CalendarEvent) -> str:
        self._check()
        external_id = event.uid or str(uuid.uuid4())
        self.events[external_id] = event
        return external_id

    def update_event(self, external_id: str, event: CalendarEvent) -> str:
        self._check()
        if external_id not in self.events:
            raise CalendarProviderError(self.name, f"event {external_id} not found")
        self.events[external_id] = event
        return external_id

    def delete_event(self, external_id: str) -> None:
        self._check()
        self.events.pop(external_id, None)


class _HttpCalendarProvider(CalendarProvider):
    def __init__(
        self,
        base_url: str,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout if timeout is not None else settings.CALENDAR_HTTP_TIMEOUT_SECONDS)
        self.transport = transport

    def _headers(self) -> dict:
        return {}

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, headers=headers, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            raise CalendarProviderError(
                self.name, f"{method} {url} returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise CalendarProviderError(self.name, f"{method} {url} failed: {exc}") from exc


class GoogleCalendarProvider(_HttpCalendarProvider):
    name = "google"

    def __init__(self, access_token: str, calendar_id: str | None = None, base_url: str | None = None, **kwargs):
        super().__init__(base_url or settings.GOOGLE_CALENDAR_API_URL, **kwargs)
        self.access_token = access_token
        self.calendar_id = calendar_id or "primary"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _events_url(self, external_id: str | None = None) -> str:
        url = f"{self.base_url}/calendars/{self.calendar_id}/events"
        return f"{url}/{external_id}" if external_id else url

    def _event_body(self, event: CalendarEvent) -> dict:
        body = {
            "summary": event.title,
            "start": {"dateTime": _rfc3339(event.start), "timeZone": "UTC"},
            "end": {"dateTime": _rfc3339(event.end), "timeZone": "UTC"},
        }
        if event.description:
            body["description"] = event.description
        if event.location:
            body["location"] = event.location
        if event.attendees:
            body["attendees"] = [{"email": email} for email in event.attendees]
        return body

    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        response = self._request(
            "POST",
            f"{self.base_url}/freeBusy",
            json={
                "timeMin": _rfc3339(start),
                "timeMax": _rfc3339(end),
                "items": [{"id": self.calendar_id}],
            },
        )
        calendars = response.json().get("calendars", {})
        entry = calendars.get(self.calendar_id) or {}
        if entry.get("errors"):
            reason = entry["errors"][0].get("reason", "unknown")
            raise CalendarProviderError(self.name, f"freeBusy error: {reason}")
        return [
            BusyInterval(parse_remote_datetime(item["start"]), parse_remote_datetime(item["end"]))
            for item in entry.get("busy", [])
        ]

    def create_event(self, event: CalendarEvent) -> str:
        response = self._request("POST", self._events_url(), json=self._event_body(event))
        return str(response.json()["id"])

    def update_event(self, external_id: str, event: CalendarEvent) -> str:
        response = self._request("PATCH", self._events_url(external_id), json=self._event_body(event))
        return str(response.json().get("id", external_id))

    def delete_event(self, external_id: str) -> None:
        self._request("DELETE", self._events_url(external_id))


class MicrosoftCalendarProvider(_HttpCalendarProvider):
    name = "microsoft"

    def __init__(self, access_token: str, calendar_id: str | None = None, base_url: str | None = None, **kwargs):
        super().__init__(base_url or settings.MICROSOFT_GRAPH_API_URL, **kwargs)
        self.access_token = access_token
        self.calendar_id = calendar_id

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Prefer": 'outlook.timezone="UTC"',
        }

    def _calendar_root(self) -> str:
        if self.calendar_id:
            return f"{self.base_url}/me/calendars/{self.calendar_id}"
        return f"{self.base_url}/me"

    def _event_body(self, event: CalendarEvent) -> dict:
        body = {
            "subject": event.title,
            "start": {"dateTime": event.start.replace(microsecond=0).isoformat(), "timeZone": "UTC"},
            "end": {"dateTime": event.end.replace(microsecond=0).isoformat(), "timeZone": "UTC"},
        }
        if event.description:
            body["body"] = {"contentType": "text", "content": event.description}
        if event.location:
            body["location"] = {"displayName": event.location}
        if event.attendees:
            body["attendees"] = [
                {"emailAddress": {"address": email}, "type": "required"} for email in event.attendees
            ]
        return body

    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        response = self._request(
            "GET",
            f"{self._calendar_root()}/calendarView",
            params={
                "startDateTime": _rfc3339(start),
                "endDateTime": _rfc3339(end),
                "$select": "id,subject,start,end,showAs",
            },
        )
        out = []
        for item in response.json().get("value", []):
            if str(item.get("showAs", "busy")).lower() == "free":
                continue
            out.append(
                BusyInterval(
                    parse_remote_datetime(item["start"]["dateTime"]),
                    parse_remote_datetime(item["end"]["dateTime"]),
                    title=item.get("subject"),
                    external_id=item.get("id"),
                )
            )
        return out

    def create_event(self, event: CalendarEvent) -> str:
        response = self._request("POST", f"{self._calendar_root()}/events", json=self._event_body(event))
        return str(response.json()["id"])

    def update_event(self, external_id: str, event: CalendarEvent) -> str:
        self._request("PATCH", f"{self.base_url}/me/events/{external_id}", json=self._event_body(event))
        return external_id

    def delete_event(self, external_id: str) -> None:
        self._request("DELETE", f"{self.base_url}/me/events/{external_id}")


class AppleCalendarProvider(_HttpCalendarProvider):
    """CalDAV collection: read the ICS feed, write one ``.ics`` resource per event."""

    name = "apple"

    def __init__(self, calendar_url: str, username: str | None = None, password: str | None = None, **kwargs):
        super().__init__(calendar_url, **kwargs)
        self.auth = (username, password) if username else None

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self.auth:
            kwargs.setdefault("auth", self.auth)
        return super()._request(method, url, **kwargs)

    def _resource_url(self, external_id: str) -> str:
        return f"{self.base_url}/{external_id}.ics"

    def _to_ics(self, uid: str, event: CalendarEvent) -> bytes:
        cal = Calendar()
        cal.add("prodid", "-//StudioDesk//Appointments//EN")
        cal.add("version", "2.0")
        vevent = Event()
        vevent.add("uid", uid)
        vevent.add("summary", event.title)
        vevent.add("dtstart", event.start.replace(tzinfo=timezone.utc))
        vevent.add("dtend", event.end.replace(tzinfo=timezone.utc))
        vevent.add("dtstamp", datetime.now(timezone.utc))
        if event.description:
            vevent.add("description", event.description)
        if event.location:
            vevent.add("location", event.location)
        for email in event.attendees:
            vevent.add("attendee", f"mailto:{email}")
        cal.add_component(vevent)
        return cal.to_ical()

    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        response = self._request("GET", self.base_url, headers={"Accept": "text/calendar"})
        try:
            cal = Calendar.from_ical(response.content)
        except ValueError as exc:
            raise CalendarProviderError(self.name, f"invalid ICS payload: {exc}") from exc

        out = []
        for component in cal.walk("VEVENT"):
            if str(component.get("transp", "OPAQUE")).upper() == "TRANSPARENT":
                continue
            dtstart = component.get("dtstart")
            dtend = component.get("dtend")
            if dtstart is None or dtend is None:
                continue
            interval = BusyInterval(
                _to_utc_naive(dtstart.dt),
                _to_utc_naive(dtend.dt),
                title=str(component.get("summary")) if component.get("summary") else None,
                external_id=str(component.get("uid")) if component.get("uid") else None,
            )
            if _overlaps(interval, start, end):
                out.append(interval)
        return sorted(out, key=lambda b: b.start)

    def create_event(self, event: CalendarEvent) -> str:
        uid = event.uid or str(uuid.uuid4())
        self._request(
            "PUT",
            self._resource_url(uid),
            content=self._to_ics(uid, event),
            headers={"Content-Type": "text/calendar; charset=utf-8", "If-None-Match": "*"},
        )
        return uid

    def update_event(self, external_id: str, event: CalendarEvent) -> str:
        self._request(
            "PUT",
            self._resource_url(external_id),
            content=self._to_ics(external_id, event),
            headers={"Content-Type": "text/calendar; charset=utf-8"},
        )
        return external_id

    def delete_event(self, external_id: str) -> None:
        self._request("DELETE", self._resource_url(external_id))


CalendarFactory = Callable[..., CalendarProvider]


def build_calendar_provider(connection) -> CalendarProvider:
    """Provider for a stored ``CalendarConnection`` row."""
    if connection.provider == "google":
        return GoogleCalendarProvider(connection.access_token or "", calendar_id=connection.calendar_id)
    if connection.provider == "microsoft":
        return MicrosoftCalendarProvider(connection.access_token or "", calendar_id=connection.calendar_id)
    if connection.provider == "apple":
        if not connection.calendar_id:
            raise CalendarProviderError("apple", "missing CalDAV calendar URL")
        return AppleCalendarProvider(
            connection.calendar_id,
            username=connection.username,
            password=connection.password,
        )
    logger.warning("calendar_provider_unknown", provider=connection.provider)
    return NullCalendarProvider()
