# app/detention.py
"""
Stop-type policy, detention clock and final detention arithmetic.

Pure functions only: plain values in, plain values out. The alert monitor,
the departure path in crud and the HTTP listing all render detention through
this module so the numbers never drift between them.
"""
import datetime as dt
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from errors import InvalidTimeInput
from logging_config import get_logger

logger = get_logger("detention", "detention.log")

UTC = dt.timezone.utc

# ----- detention constants -----
DETENTION_RATE_PER_MINUTE = 1.25
REMINDER_INTERVAL_MINUTES = 30      # cadence of "still in detention" reminders
REMINDER_MIN_SPACING_MINUTES = 25   # never two reminders closer than this
REMINDER_TOLERANCE_MINUTES = 1      # a slot stays open this many minutes (poll granularity)
DEFAULT_STOP_TYPE = "regular"

STATUS_ACTIVE = "active"            # standby, no appointment being tracked
STATUS_AT_STOP = "at-stop"
STATUS_WARNING = "warning"
STATUS_DETENTION = "detention"
STATUS_COMPLETED = "completed"


@dataclass(frozen=True)
class StopPolicy:
    detention_threshold_minutes: int
    warning_before_minutes: int        # 0 = no pre-detention warning
    reminder_after_start_minutes: int  # 0 = default reminder cadence
    label: str


STOP_POLICIES = {
    "regular":    StopPolicy(120, 30, 30, "Regular"),
    "multi-stop": StopPolicy(60, 15, 0, "Multi-Stop"),
    "rail":       StopPolicy(60, 0, 20, "Rail"),
    "no-billing": StopPolicy(15, 0, 20, "No Billing"),
    "drop-hook":  StopPolicy(30, 0, 30, "Drop/Hook"),
}
STOP_TYPES = tuple(STOP_POLICIES)


def policy_for(stop_type: Optional[str]) -> StopPolicy:
    """Unknown or missing stop types get the regular policy."""
    return STOP_POLICIES.get(stop_type or DEFAULT_STOP_TYPE, STOP_POLICIES[DEFAULT_STOP_TYPE])


def is_valid_stop_type(stop_type) -> bool:
    return stop_type in STOP_POLICIES


def stop_type_label(stop_type: Optional[str]) -> str:
    return policy_for(stop_type).label


# =====================================================================
# Time helpers
# =====================================================================
def to_dt(v):
    """
    Normalise a datetime or ISO string to an aware UTC datetime.
    Naive values are taken as UTC (that is how they are stored).
    """
    if v is None:
        return None

    if isinstance(v, dt.datetime):
        return v.replace(tzinfo=UTC) if v.tzinfo is None else v.astimezone(UTC)

    if isinstance(v, str):
        s = v.strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt_obj = dt.datetime.fromisoformat(s)
        except ValueError as e:
            raise InvalidTimeInput(f"Unparsable time {v!r}") from e
        return dt_obj.replace(tzinfo=UTC) if dt_obj.tzinfo is None else dt_obj.astimezone(UTC)

    raise InvalidTimeInput(f"Unsupported time value {v!r}")


_CLOCK_RE = re.compile(r"^(?:.*T)?(\d{1,2}):(\d{2})$")


def parse_time_input(value, tz_offset_minutes=0, now=None) -> dt.datetime:
    """
    Parse a time coming from a dispatcher form.

    A bare wall-clock value ("14:30", or "2024-05-01T14:30" from a time
    picker) is placed on today's UTC date after shifting by the browser's
    timezone offset (minutes, positive west of UTC, as JS getTimezoneOffset).
    Anything else must be a full ISO-8601 instant.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidTimeInput("Time is required")

    if isinstance(value, dt.datetime):
        return to_dt(value)

    text = str(value).strip()
    m = _CLOCK_RE.match(text)
    if not m:
        parsed = to_dt(text)
        if parsed is None:
            raise InvalidTimeInput("Time is required")
        return parsed

    hours, minutes = int(m.group(1)), int(m.group(2))
    if hours > 23 or minutes > 59:
        raise InvalidTimeInput(f"Invalid clock time {value!r}")
    try:
        offset = int(tz_offset_minutes or 0)
    except (TypeError, ValueError) as e:
        raise InvalidTimeInput(f"Invalid timezone offset {tz_offset_minutes!r}") from e

    now = to_dt(now) or dt.datetime.now(UTC)
    total = (hours * 60 + minutes + offset) % (24 * 60)
    midnight = dt.datetime.combine(now.date(), dt.time.min, tzinfo=UTC)
    return midnight + dt.timedelta(minutes=total)


def format_clock(total_seconds: int, suffix: str = "") -> str:
    total_seconds = max(0, int(total_seconds))
    hours, rem = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s{suffix}"
    return f"{minutes}m {seconds}s{suffix}"


def format_minutes(total_minutes: int, suffix: str = "") -> str:
    hours, minutes = divmod(max(0, int(total_minutes)), 60)
    if hours > 0:
        return f"{hours}h {minutes}m{suffix}"
    return f"{minutes}m{suffix}"


def format_cost(cost: float) -> str:
    return f"${cost:,.2f}"


# =====================================================================
# Detention clock
# =====================================================================
@dataclass(frozen=True)
class DetentionSnapshot:
    """
    Rendered state of one appointment at one instant.

    elapsed_or_remaining_minutes / elapsed_seconds describe the interval shown
    in `duration`: detention elapsed when in detention, time left before
    detention in the at-stop and warning states.
    """
    status: str
    duration: str
    elapsed_or_remaining_minutes: int = 0
    elapsed_seconds: int = 0
    detention_minutes: int = 0
    detention_cost: float = 0.0
    detention_start_time: Optional[dt.datetime] = None
    time_to_detention: str = ""
    error: Optional[str] = None

    @property
    def is_in_detention(self) -> bool:
        return self.status == STATUS_DETENTION

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "duration": self.duration,
            "elapsedOrRemainingMinutes": self.elapsed_or_remaining_minutes,
            "elapsedSeconds": self.elapsed_seconds,
            "detentionMinutes": self.detention_minutes,
            "detentionCost": self.detention_cost,
            "detentionCostDisplay": format_cost(self.detention_cost),
            "detentionStartTime": self.detention_start_time.isoformat() if self.detention_start_time else None,
            "timeToDetention": self.time_to_detention,
            "isInDetention": self.is_in_detention,
            "error": self.error,
        }


def detention_start_time(appointment_time, stop_type) -> dt.datetime:
    appointment = to_dt(appointment_time)
    if appointment is None:
        raise InvalidTimeInput("Appointment time is required")
    return appointment + dt.timedelta(minutes=policy_for(stop_type).detention_threshold_minutes)


def _detention_snapshot(start: dt.datetime, elapsed: dt.timedelta) -> DetentionSnapshot:
    secs = int(elapsed.total_seconds())
    minutes = secs // 60
    return DetentionSnapshot(
        status=STATUS_DETENTION,
        duration=format_clock(secs, " detention"),
        elapsed_or_remaining_minutes=minutes,
        elapsed_seconds=secs,
        detention_minutes=minutes,
        detention_cost=minutes * DETENTION_RATE_PER_MINUTE,
        detention_start_time=start,
    )


def _completed_snapshot(start, final_minutes, final_cost) -> DetentionSnapshot:
    # Departed loads only show the frozen values written at departure.
    if final_minutes and final_minutes > 0:
        cost = final_cost if final_cost is not None else final_minutes * DETENTION_RATE_PER_MINUTE
        return DetentionSnapshot(
            status=STATUS_DETENTION,
            duration=format_minutes(final_minutes, " detention (completed)"),
            elapsed_or_remaining_minutes=final_minutes,
            elapsed_seconds=final_minutes * 60,
            detention_minutes=final_minutes,
            detention_cost=cost,
            detention_start_time=start,
        )
    return DetentionSnapshot(status=STATUS_COMPLETED, duration="Completed", detention_start_time=start)


def evaluate(
    appointment_time,
    stop_type: Optional[str] = None,
    departure_time=None,
    now=None,
    final_detention_minutes: Optional[int] = None,
    final_detention_cost: Optional[float] = None,
) -> DetentionSnapshot:
    try:
        appointment = to_dt(appointment_time)
        departure = to_dt(departure_time)
        now = to_dt(now) or dt.datetime.now(UTC)
    except InvalidTimeInput as e:
        logger.warning(
            f"[evaluate] Invalid time input appointment={appointment_time!r} "
            f"departure={departure_time!r}: {e}"
        )
        return DetentionSnapshot(
            status=STATUS_ACTIVE,
            duration="Standby (Invalid appointment time)",
            error="invalid_time",
        )

    if appointment is None:
        return DetentionSnapshot(status=STATUS_ACTIVE, duration="Standby")

    policy = policy_for(stop_type)
    start = appointment + dt.timedelta(minutes=policy.detention_threshold_minutes)

    if departure is not None:
        return _completed_snapshot(start, final_detention_minutes, final_detention_cost)

    if now >= start:
        return _detention_snapshot(start, now - start)

    remaining = start - now
    if remaining <= dt.timedelta(0):
        # clock skew right at the boundary
        return _detention_snapshot(start, abs(remaining))

    secs = int(remaining.total_seconds())
    countdown = format_clock(secs, " to detention")
    warning_at = start - dt.timedelta(minutes=policy.warning_before_minutes)
    in_warning = policy.warning_before_minutes > 0 and now >= warning_at

    return DetentionSnapshot(
        status=STATUS_WARNING if in_warning else STATUS_AT_STOP,
        duration=countdown,
        elapsed_or_remaining_minutes=secs // 60,
        elapsed_seconds=secs,
        detention_start_time=start,
        time_to_detention=countdown,
    )


# =====================================================================
# Final detention (departure)
# =====================================================================
def compute_final_detention(appointment_time, stop_type, departure_time) -> Tuple[int, float]:
    """
    Whole minutes between detention start and departure, and their cost.
    Departures at or before detention start yield (0, 0.0).
    """
    start = detention_start_time(appointment_time, stop_type)
    departure = to_dt(departure_time)
    if departure is None:
        raise InvalidTimeInput("Departure time is required")

    if departure > start:
        minutes = int((departure - start).total_seconds() // 60)
    else:
        minutes = 0
    return minutes, minutes * DETENTION_RATE_PER_MINUTE


def minutes_between(earlier: dt.datetime, later: dt.datetime) -> int:
    """Floored whole minutes from `earlier` to `later` (negative if reversed)."""
    return int((later - earlier).total_seconds() // 60)
