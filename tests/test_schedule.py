from datetime import date

import pytest

from studiodesk.core.schedule import ScheduleError, load_stored_schedule, parse_schedule, slots_for_day

MONDAY = date(2030, 1, 7)
SUNDAY = date(2030, 1, 6)


def test_parse_schedule_accepts_camel_case_days():
    schedule = parse_schedule(
        {
            "monday": {
                "isWorking": True,
                "startTime": "10:00",
                "endTime": "14:00",
                "breaks": [{"startTime": "12:00", "endTime": "12:30"}],
            }
        }
    )
    monday = schedule.for_day(MONDAY)
    assert monday.is_bookable
    assert monday.break_pairs() == [("12:00", "12:30")]
    assert schedule.for_day(SUNDAY) is None


@pytest.mark.parametrize(
    "raw",
    [
        {"monday": {"isWorking": True, "startTime": "25:00", "endTime": "18:00"}},
        {"monday": {"isWorking": True, "startTime": "18:00", "endTime": "10:00"}},
        {"monday": {"isWorking": True, "startTime": "10:00", "endTime": "18:00",
                    "breaks": [{"startTime": "15:00", "endTime": "14:00"}]}},
        {"funday": {"isWorking": True}},
        "not json",
        ["monday"],
    ],
)
def test_parse_schedule_rejects_invalid_input(raw):
    with pytest.raises(ScheduleError):
        parse_schedule(raw)


def test_day_without_hours_is_not_bookable():
    schedule = parse_schedule({"monday": {"isWorking": True}, "tuesday": {"isWorking": False}})
    assert slots_for_day(schedule, MONDAY, 60) == []
    assert slots_for_day(schedule, date(2030, 1, 8), 60) == []


def test_stored_garbage_reads_as_not_working():
    schedule = load_stored_schedule('{"monday": {"isWorking": true, "startTime": "nine"}}', artist_id="a-1")
    assert schedule.for_day(MONDAY) is None
    assert slots_for_day(schedule, MONDAY, 60) == []


def test_one_malformed_stored_day_does_not_close_the_week():
    raw = (
        '{"monday": {"isWorking": true, "startTime": "10:00", "endTime": "12:00"},'
        ' "tuesday": {"isWorking": true, "startTime": "9", "endTime": "18:00"}}'
    )
    schedule = load_stored_schedule(raw, artist_id="a-2")
    assert [s.time for s in slots_for_day(schedule, MONDAY, 60)] == ["10:00", "10:30", "11:00"]
    assert schedule.for_day(date(2030, 1, 8)) is None


def test_slots_for_day_applies_breaks():
    schedule = parse_schedule(
        {
            "monday": {
                "isWorking": True,
                "startTime": "10:00",
                "endTime": "13:00",
                "breaks": [{"startTime": "11:00", "endTime": "11:30"}],
            }
        }
    )
    assert [s.time for s in slots_for_day(schedule, MONDAY, 30)] == ["10:00", "10:30", "11:30", "12:00", "12:30"]


def test_artist_write_rejects_invalid_schedule(studio):
    store = studio.create_store()
    response = studio.client.post(
        "/api/artists",
        json={
            "storeId": store["id"],
            "name": "Nora",
            "schedule": {"monday": {"isWorking": True, "startTime": "18:00", "endTime": "09:00"}},
        },
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Invalid parameters"
    assert body["details"][0]["field"].startswith("schedule")


def test_artist_schedule_round_trips_through_api(studio):
    store = studio.create_store()
    artist = studio.create_artist(store["id"])
    assert artist["schedule"]["monday"]["startTime"] == "10:00"
    assert artist["schedule"]["monday"]["breaks"] == [{"startTime": "14:00", "endTime": "15:00"}]
    assert "sunday" not in artist["schedule"]
