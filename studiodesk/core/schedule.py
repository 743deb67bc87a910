import json
from datetime import date

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, validator

from .slots import MAX_SLOT_STEP_MINUTES, TimeSlot, generate_time_slots

logger = structlog.get_logger("studiodesk.schedule")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class ScheduleError(ValueError):
    pass


class BreakPeriod(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_time: str = Field(alias="startTime", pattern=HHMM_PATTERN)
    end_time: str = Field(alias="endTime", pattern=HHMM_PATTERN)

    @validator("end_time")
    @classmethod
    def validate_end_after_start(cls, value: str, values: dict):
        start_time = values.get("start_time")
        if start_time and value <= start_time:
            raise ValueError("break endTime must be after startTime")
        return value


class DaySchedule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_working: bool = Field(default=False, alias="isWorking")
    start_time: str | None = Field(default=None, alias="startTime", pattern=HHMM_PATTERN)
    end_time: str | None = Field(default=None, alias="endTime", pattern=HHMM_PATTERN)
    breaks: list[BreakPeriod] = Field(default_factory=list)

    @validator("end_time")
    @classmethod
    def validate_end_after_start(cls, value: str | None, values: dict):
        start_time = values.get("start_time")
        if value and start_time and value <= start_time:
            raise ValueError("endTime must be after startTime")
        return value

    @property
    def is_bookable(self) -> bool:
        return bool(self.is_working and self.start_time and self.end_time)

    def break_pairs(self) -> list[tuple[str, str]]:
        return [(b.start_time, b.end_time) for b in self.breaks]


class WeeklySchedule(BaseModel):
    monday: DaySchedule | None = None
    tuesday: DaySchedule | None = None
    wednesday: DaySchedule | None = None
    thursday: DaySchedule | None = None
    friday: DaySchedule | None = None
    saturday: DaySchedule | None = None
    sunday: DaySchedule | None = None

    def for_day(self, day: date) -> DaySchedule | None:
        return getattr(self, WEEKDAYS[day.weekday()])


def parse_schedule(raw) -> WeeklySchedule:
    """Strict parse used when a schedule is written."""
    if raw is None:
        return WeeklySchedule()
    payload = raw
    if isinstance(raw, str):
        try:
            payload = json.loads(raw or "{}")
        except json.JSONDecodeError as exc:
            raise ScheduleError(f"schedule is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ScheduleError("schedule must be an object keyed by weekday")
    unknown = sorted(set(payload) - set(WEEKDAYS))
    if unknown:
        raise ScheduleError(f"unknown weekday keys: {', '.join(unknown)}")
    try:
        return WeeklySchedule.model_validate(payload)
    except ValidationError as exc:
        raise ScheduleError(str(exc)) from exc


def dump_schedule(schedule: WeeklySchedule) -> str:
    return json.dumps(
        schedule.model_dump(by_alias=True, exclude_none=True),
        ensure_ascii=True,
        sort_keys=True,
    )


def load_stored_schedule(raw: str | None, artist_id: str | None = None) -> WeeklySchedule:
    """Lenient parse for the read path.

    Each weekday is validated on its own: a malformed day is logged and reads
    as "not working" while the rest of the week stays bookable.
    """
    if not raw:
        return WeeklySchedule()
    try:
        payload = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError as exc:
        logger.warning("artist_schedule_invalid", artist_id=artist_id, error=exc.msg)
        return WeeklySchedule()
    if not isinstance(payload, dict):
        logger.warning("artist_schedule_invalid", artist_id=artist_id, error="schedule is not an object")
        return WeeklySchedule()

    days = {}
    for weekday in WEEKDAYS:
        entry = payload.get(weekday)
        if entry is None:
            continue
        try:
            days[weekday] = DaySchedule.model_validate(entry)
        except ValidationError as exc:
            logger.warning("artist_schedule_invalid", artist_id=artist_id, day=weekday, error=str(exc))
    return WeeklySchedule(**days)


def slots_for_day(
    schedule: WeeklySchedule,
    day: date,
    service_duration: int,
    max_step: int = MAX_SLOT_STEP_MINUTES,
) -> list[TimeSlot]:
    day_schedule = schedule.for_day(day)
    if day_schedule is None or not day_schedule.is_bookable:
        return []
    return generate_time_slots(
        day,
        day_schedule.start_time,
        day_schedule.end_time,
        service_duration=service_duration,
        breaks=day_schedule.break_pairs(),
        max_step=max_step,
    )
