# app/monitor.py
import datetime as dt
from dataclasses import dataclass
from typing import List, Optional

from database import AsyncSessionLocal
from models import Alert
from detention import (
    to_dt,
    policy_for,
    minutes_between,
    StopPolicy,
    REMINDER_INTERVAL_MINUTES,
    REMINDER_MIN_SPACING_MINUTES,
    REMINDER_TOLERANCE_MINUTES,
    UTC,
)
from errors import InvalidTimeInput
from alerts import send_alert
import crud

from logging_config import get_logger


logger = get_logger("monitor", "monitor.log")


# =====================================================================
# Helpers: alert history for one appointment
# =====================================================================
def _same_appointment(alert: Alert, appointment: dt.datetime) -> bool:
    try:
        return to_dt(alert.appointment_time) == appointment
    except InvalidTimeInput:
        return False


def next_reminder_due(
    policy: StopPolicy,
    detention_start: dt.datetime,
    reminders: List[Alert],
    detention_minutes: Optional[int] = None,
) -> int:
    """
    Detention minute of the next reminder slot not sent yet.

    Slots start at the stop type's reminder offset (default cadence when the
    policy has none) and repeat every REMINDER_INTERVAL_MINUTES. Given the
    current detention minute, slots whose tolerance window has already passed
    are skipped, never caught up.
    """
    first = policy.reminder_after_start_minutes or REMINDER_INTERVAL_MINUTES
    due = first
    if reminders:
        last_sent = max(to_dt(a.timestamp) for a in reminders)
        last_minute = minutes_between(detention_start, last_sent)
        if last_minute >= first:
            slots_done = (last_minute - first) // REMINDER_INTERVAL_MINUTES + 1
            due = first + slots_done * REMINDER_INTERVAL_MINUTES

    if detention_minutes is not None and detention_minutes > due + REMINDER_TOLERANCE_MINUTES:
        missed = detention_minutes - REMINDER_TOLERANCE_MINUTES - due
        due += -(-missed // REMINDER_INTERVAL_MINUTES) * REMINDER_INTERVAL_MINUTES
    return due


def _has_recent_reminder(reminders: List[Alert], now: dt.datetime) -> bool:
    window = dt.timedelta(minutes=REMINDER_MIN_SPACING_MINUTES)
    return any(now - to_dt(a.timestamp) < window for a in reminders)


@dataclass(frozen=True)
class ActiveAppointment:
    driver_id: int
    driver_name: str
    appointment_time: object
    stop_type: Optional[str]


# =====================================================================
# Per-driver evaluation
# =====================================================================
async def evaluate_driver(db, appt: ActiveAppointment, now: dt.datetime, notify=send_alert) -> List[Alert]:
    """
    Decide which alerts the current tick owes this driver and persist them.
    De-duplication keys on (driver, appointment_time).
    """
    appointment = to_dt(appt.appointment_time)
    if appointment is None:
        raise InvalidTimeInput(f"Driver {appt.driver_id} has no appointment time")

    driver_id, name = appt.driver_id, appt.driver_name
    policy = policy_for(appt.stop_type)
    threshold = policy.detention_threshold_minutes
    label = policy.label
    minutes_since = minutes_between(appointment, now)

    history = [a for a in await crud.list_alerts(db, driver_id) if _same_appointment(a, appointment)]
    warnings = [a for a in history if a.type == "warning"]
    criticals = [a for a in history if a.type == "critical"]
    reminders = [a for a in history if a.type == "reminder"]

    created: List[Alert] = []

    # --------------------- Pre-detention warning ----------------------
    if policy.warning_before_minutes > 0 and threshold - policy.warning_before_minutes <= minutes_since < threshold:
        if warnings:
            logger.debug(f"[evaluate_driver] driver={driver_id} warning already sent")
        else:
            created.append(await crud.create_alert(
                db,
                driver_id,
                "warning",
                f"{name} will enter detention in {threshold - minutes_since} minutes ({label} stop)",
                appointment,
                timestamp=now,
            ))

    # --------------------- Detention entered / reminders ----------------------
    if minutes_since >= threshold:
        detention_minutes = minutes_since - threshold

        if not criticals:
            created.append(await crud.create_alert(
                db,
                driver_id,
                "critical",
                f"{name} has entered detention ({label} stop)",
                appointment,
                timestamp=now,
            ))
        else:
            detention_start = appointment + dt.timedelta(minutes=threshold)
            due = next_reminder_due(policy, detention_start, reminders, detention_minutes)

            if due <= detention_minutes <= due + REMINDER_TOLERANCE_MINUTES and not _has_recent_reminder(reminders, now):
                logger.info(
                    f"[evaluate_driver] Reminder for {name}: {detention_minutes} minutes in detention (due at {due})"
                )
                created.append(await crud.create_alert(
                    db,
                    driver_id,
                    "reminder",
                    f"{name} still in detention for {detention_minutes} minutes ({label} stop)",
                    appointment,
                    timestamp=now,
                ))

    for alert in created:
        await notify(alert, name)

    return created


# =====================================================================
# MAIN EVALUATOR (one tick over every active appointment)
# =====================================================================
async def check_for_alerts(now: Optional[dt.datetime] = None, session_factory=None, notify=send_alert) -> List[Alert]:
    now = to_dt(now) or dt.datetime.now(UTC)
    session_factory = session_factory or AsyncSessionLocal
    created: List[Alert] = []

    async with session_factory() as db:
        rows = await crud.get_drivers_with_appointments(db)
        # plain values: a rollback below expires ORM rows for the rest of the tick
        active = [
            ActiveAppointment(driver.id, driver.name, location.appointment_time, location.stop_type)
            for driver, location in rows
        ]
        logger.info(f"[check_for_alerts] Evaluating {len(active)} active appointments at {now.isoformat()}")

        for appt in active:
            try:
                created.extend(await evaluate_driver(db, appt, now, notify=notify))
            except Exception as e:
                logger.exception(
                    f"[check_for_alerts] ERROR evaluating driver {appt.driver_id} / {appt.driver_name}: {e}"
                )
                await db.rollback()

    if created:
        logger.info(f"[check_for_alerts] Created {len(created)} alerts")
    return created
