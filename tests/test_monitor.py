import datetime as dt
import logging

import crud
import monitor
from monitor import check_for_alerts, next_reminder_due
from detention import policy_for

UTC = dt.timezone.utc
T0 = dt.datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def at(minutes, seconds=0):
    return T0 + dt.timedelta(minutes=minutes, seconds=seconds)


async def _tick(session_factory, recorder, minutes, seconds=0):
    return await check_for_alerts(now=at(minutes, seconds), session_factory=session_factory, notify=recorder)


async def _types(db, driver_id):
    return [a.type for a in await crud.list_alerts(db, driver_id)]


async def test_regular_warning_fires_once(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "regular")

    assert await _tick(session_factory, recorder, 89) == []
    created = await _tick(session_factory, recorder, 90)
    assert [a.type for a in created] == ["warning"]
    assert created[0].message == "John Smith will enter detention in 30 minutes (Regular stop)"

    assert await _tick(session_factory, recorder, 105) == []
    assert await _types(db, driver.id) == ["warning"]


async def test_no_warning_for_stop_types_without_window(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "rail")
    for m in range(0, 60, 5):
        assert await _tick(session_factory, recorder, m) == []


async def test_detention_entry_fires_exactly_once(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "regular")

    created = await _tick(session_factory, recorder, 120)
    assert [a.type for a in created] == ["critical"]
    assert created[0].message == "John Smith has entered detention (Regular stop)"

    assert await _tick(session_factory, recorder, 120, 10) == []
    assert await _tick(session_factory, recorder, 121) == []
    assert (await _types(db, driver.id)).count("critical") == 1


async def test_reminder_after_31_minute_gap(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "regular")
    await _tick(session_factory, recorder, 120)

    created = await _tick(session_factory, recorder, 151)
    assert [a.type for a in created] == ["reminder"]
    assert created[0].message == "John Smith still in detention for 31 minutes (Regular stop)"

    assert await _tick(session_factory, recorder, 151, 10) == []
    assert await _tick(session_factory, recorder, 152) == []


async def test_reminders_follow_cadence(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "regular")
    for m in range(120, 215):
        await _tick(session_factory, recorder, m)

    reminders = [a for a in await crud.list_alerts(db, driver.id) if a.type == "reminder"]
    # detention minutes 30, 60 and 90
    assert [a.message.split(" for ")[1].split(" ")[0] for a in reminders] == ["30", "60", "90"]


async def test_rail_reminder_due_at_twenty_minutes(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "rail")

    assert [a.type for a in await _tick(session_factory, recorder, 60)] == ["critical"]
    assert await _tick(session_factory, recorder, 65) == []
    assert await _tick(session_factory, recorder, 79) == []
    created = await _tick(session_factory, recorder, 80)
    assert [a.type for a in created] == ["reminder"]
    assert "(Rail stop)" in created[0].message


async def test_late_start_waits_for_next_reminder_slot(db, session_factory, driver, recorder):
    # evaluator was down: first look is 45 minutes into detention
    await crud.set_appointment(db, driver.id, T0, "regular")
    created = await _tick(session_factory, recorder, 165)
    assert [a.type for a in created] == ["critical"]

    for m in range(166, 300):
        await _tick(session_factory, recorder, m)

    reminders = [a for a in await crud.list_alerts(db, driver.id) if a.type == "reminder"]
    minutes = [int(a.message.split(" for ")[1].split(" ")[0]) for a in reminders]
    assert minutes == [60, 90, 120, 150]


async def test_new_appointment_gets_fresh_dedup_key(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "no-billing")
    await _tick(session_factory, recorder, 15)

    await crud.reset_appointment(db, driver.id)
    second = at(60)
    await crud.set_appointment(db, driver.id, second, "no-billing")

    created = await check_for_alerts(now=at(75), session_factory=session_factory, notify=recorder)
    assert [a.type for a in created] == ["critical"]
    assert (await _types(db, driver.id)).count("critical") == 2


async def test_departed_drivers_are_skipped(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "regular")
    await crud.record_departure(db, driver.id, at(100))
    assert await _tick(session_factory, recorder, 200) == []


async def test_created_alerts_are_broadcast(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "multi-stop")
    created = await _tick(session_factory, recorder, 45)
    assert [a.type for a in created] == ["warning"]
    assert recorder.calls == [(created[0], "John Smith")]


async def test_one_failing_driver_does_not_abort_tick(db, session_factory, driver, recorder, monkeypatch, caplog):
    other = await crud.create_driver(db, "Ana Lopez", "T-202")
    await crud.set_appointment(db, driver.id, T0, "regular")
    await crud.set_appointment(db, other.id, T0, "regular")

    original = crud.list_alerts

    async def flaky(session, driver_id=None, unread_only=False):
        if driver_id == driver.id:
            raise RuntimeError("boom")
        return await original(session, driver_id, unread_only)

    monkeypatch.setattr(crud, "list_alerts", flaky)
    caplog.set_level(logging.ERROR)

    created = await _tick(session_factory, recorder, 125)
    assert [(a.driver_id, a.type) for a in created] == [(other.id, "critical")]
    assert any("ERROR evaluating driver" in rec.message for rec in caplog.records)


def test_next_reminder_due_tracks_last_slot():
    policy = policy_for("regular")
    start = at(120)

    class _R:
        def __init__(self, minute):
            self.timestamp = start + dt.timedelta(minutes=minute)

    assert next_reminder_due(policy, start, []) == 30
    assert next_reminder_due(policy, start, [_R(31)]) == 60
    assert next_reminder_due(policy, start, [_R(95)]) == 120
    assert next_reminder_due(policy_for("multi-stop"), start, []) == monitor.REMINDER_INTERVAL_MINUTES

    # tolerance window of a slot still open, then skipped once passed
    assert next_reminder_due(policy, start, [], 31) == 30
    assert next_reminder_due(policy, start, [], 32) == 60
    assert next_reminder_due(policy, start, [_R(60)], 125) == 150


async def test_alerts_of_reset_appointment_stay_as_history(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "no-billing")
    await _tick(session_factory, recorder, 20)
    await crud.reset_appointment(db, driver.id)

    assert await _tick(session_factory, recorder, 21) == []
    assert await _types(db, driver.id) == ["critical"]


async def test_missed_slot_is_not_caught_up(db, session_factory, driver, recorder):
    await crud.set_appointment(db, driver.id, T0, "rail")
    await _tick(session_factory, recorder, 60)

    # slot at detention minute 20 missed, next open slot is 50
    assert await _tick(session_factory, recorder, 85) == []
    assert await _tick(session_factory, recorder, 109) == []
    created = await _tick(session_factory, recorder, 110)
    assert [a.type for a in created] == ["reminder"]
    assert "for 50 minutes" in created[0].message
