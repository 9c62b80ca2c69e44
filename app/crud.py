from typing import List, Optional, Tuple
import datetime as dt

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func

from models import Driver, DriverLocation, Alert
from detention import (
    to_dt,
    compute_final_detention,
    is_valid_stop_type,
    DEFAULT_STOP_TYPE,
    UTC,
)
from errors import (
    DriverNotFound,
    LocationNotFound,
    NoActiveAppointment,
    OrderingViolation,
    DepartureAlreadyRecorded,
    UnknownStopType,
    InvalidTimeInput,
)
from logging_config import get_logger

logger = get_logger("crud", "crud.log")

ALERT_TYPES = ("warning", "critical", "reminder")


# =====================================================================
# Drivers & locations
# =====================================================================
async def create_driver(db: AsyncSession, name: str, truck_number: str, dispatcher: Optional[str] = None) -> Driver:
    driver = Driver(name=name, truck_number=truck_number, dispatcher=dispatcher, is_active=True)
    db.add(driver)
    await db.commit()
    await db.refresh(driver)
    logger.info(f"Created driver id={driver.id} name={driver.name} truck={driver.truck_number}")
    return driver


async def get_driver(db: AsyncSession, driver_id: int) -> Driver:
    driver = await db.get(Driver, driver_id)
    if not driver:
        raise DriverNotFound(f"Driver {driver_id} not found")
    return driver


async def get_driver_location(db: AsyncSession, driver_id: int, *, for_update: bool = False) -> Optional[DriverLocation]:
    """
    Always read through to the database; identity-map copies may predate a commit
    made elsewhere on the same driver.
    """
    q = (
        select(DriverLocation)
        .where(DriverLocation.driver_id == driver_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        q = q.with_for_update()
    res = await db.execute(q)
    return res.scalar_one_or_none()


async def list_drivers_with_locations(db: AsyncSession) -> List[Tuple[Driver, Optional[DriverLocation]]]:
    res = await db.execute(
        select(Driver, DriverLocation)
        .outerjoin(DriverLocation, DriverLocation.driver_id == Driver.id)
        .where(Driver.is_active == True)
        .order_by(Driver.id)
    )
    return [(d, loc) for d, loc in res.all()]


async def get_drivers_with_appointments(db: AsyncSession) -> List[Tuple[Driver, DriverLocation]]:
    """Drivers with an appointment set and no departure recorded yet."""
    res = await db.execute(
        select(Driver, DriverLocation)
        .join(DriverLocation, DriverLocation.driver_id == Driver.id)
        .where(
            DriverLocation.appointment_time.isnot(None),
            DriverLocation.departure_time.is_(None),
        )
        .order_by(Driver.id)
    )
    return [(d, loc) for d, loc in res.all()]


async def set_appointment(db: AsyncSession, driver_id: int, appointment_time, stop_type: Optional[str] = None) -> DriverLocation:
    """Start a new appointment cycle: departure and final values are cleared."""
    await get_driver(db, driver_id)
    appointment = to_dt(appointment_time)
    if appointment is None:
        raise InvalidTimeInput("Appointment time is required")
    if stop_type is not None and not is_valid_stop_type(stop_type):
        raise UnknownStopType(f"Unknown stop type {stop_type!r}")

    loc = await get_driver_location(db, driver_id)
    if loc is None:
        loc = DriverLocation(driver_id=driver_id, location="Unknown Location", stop_type=DEFAULT_STOP_TYPE)
        db.add(loc)

    loc.appointment_time = appointment
    loc.departure_time = None
    loc.final_detention_minutes = None
    loc.final_detention_cost = None
    if stop_type is not None:
        loc.stop_type = stop_type
    loc.timestamp = dt.datetime.now(UTC)

    await db.commit()
    await db.refresh(loc)
    logger.info(f"[appointment] driver={driver_id} appointment={appointment.isoformat()} stop_type={loc.stop_type}")
    return loc


async def set_stop_type(db: AsyncSession, driver_id: int, stop_type: str) -> DriverLocation:
    if not is_valid_stop_type(stop_type):
        raise UnknownStopType(f"Unknown stop type {stop_type!r}")

    loc = await get_driver_location(db, driver_id)
    if loc is None:
        await get_driver(db, driver_id)
        loc = DriverLocation(driver_id=driver_id, location="Unknown Location")
        db.add(loc)
    elif loc.final_detention_minutes is not None:
        raise DepartureAlreadyRecorded(
            f"Driver {driver_id} is already finalized; reset before changing the stop type"
        )

    loc.stop_type = stop_type
    await db.commit()
    await db.refresh(loc)
    logger.info(f"[stop_type] driver={driver_id} stop_type={stop_type}")
    return loc


async def finalize_detention(db: AsyncSession, driver_id: int) -> Tuple[int, float]:
    """
    Freeze final detention for the current appointment cycle.

    Reads appointment, stop type and departure back from the database, so the
    departure must already be committed. A finalized row is returned as-is.
    """
    loc = await get_driver_location(db, driver_id, for_update=True)
    if loc is None:
        raise LocationNotFound(f"Driver {driver_id} has no location record")
    if loc.appointment_time is None:
        raise NoActiveAppointment(f"Driver {driver_id} has no appointment")
    if loc.departure_time is None:
        raise NoActiveAppointment(f"Driver {driver_id} has no committed departure time")

    if loc.final_detention_minutes is not None:
        logger.info(
            f"[finalize] driver={driver_id} already finalized "
            f"minutes={loc.final_detention_minutes} cost={loc.final_detention_cost}"
        )
        return loc.final_detention_minutes, loc.final_detention_cost

    minutes, cost = compute_final_detention(loc.appointment_time, loc.stop_type, loc.departure_time)
    loc.final_detention_minutes = minutes
    loc.final_detention_cost = cost
    await db.commit()

    logger.info(
        f"[finalize] driver={driver_id} stop_type={loc.stop_type} "
        f"appointment={to_dt(loc.appointment_time)} departure={to_dt(loc.departure_time)} "
        f"minutes={minutes} cost={cost}"
    )
    return minutes, cost


async def record_departure(db: AsyncSession, driver_id: int, departure_time) -> DriverLocation:
    """
    Persist the departure, then finalize from the committed row.
    The two writes are separate commits on purpose: finalization must never
    see the pre-departure row.
    """
    departure = to_dt(departure_time)
    if departure is None:
        raise InvalidTimeInput("Departure time is required")

    loc = await get_driver_location(db, driver_id, for_update=True)
    if loc is None:
        raise LocationNotFound(f"Driver {driver_id} has no location record")
    if loc.appointment_time is None:
        raise NoActiveAppointment(f"Driver {driver_id} has no appointment")
    if loc.final_detention_minutes is not None:
        raise DepartureAlreadyRecorded(f"Departure already recorded for driver {driver_id}")

    appointment = to_dt(loc.appointment_time)
    if departure < appointment:
        raise OrderingViolation(
            f"Departure {departure.isoformat()} is earlier than appointment {appointment.isoformat()}"
        )

    # 1) departure first
    loc.departure_time = departure
    await db.commit()
    logger.info(f"[departure] driver={driver_id} departure={departure.isoformat()} committed")

    # 2) then final detention from the stored row
    await finalize_detention(db, driver_id)

    loc = await get_driver_location(db, driver_id)
    return loc


async def update_location(db: AsyncSession, driver_id: int, location: str) -> DriverLocation:
    """Where the truck is right now; appointment, departure and finals are left alone."""
    loc = await get_driver_location(db, driver_id)
    if loc is None:
        await get_driver(db, driver_id)
        loc = DriverLocation(driver_id=driver_id, stop_type=DEFAULT_STOP_TYPE)
        db.add(loc)

    loc.location = location
    loc.timestamp = dt.datetime.now(UTC)
    await db.commit()
    await db.refresh(loc)
    logger.info(f"[location] driver={driver_id} location={location}")
    return loc


async def reset_appointment(db: AsyncSession, driver_id: int) -> DriverLocation:
    loc = await get_driver_location(db, driver_id)
    if loc is None:
        await get_driver(db, driver_id)
        loc = DriverLocation(driver_id=driver_id, location="Unknown Location")
        db.add(loc)

    loc.appointment_time = None
    loc.departure_time = None
    loc.stop_type = DEFAULT_STOP_TYPE
    loc.final_detention_minutes = None
    loc.final_detention_cost = None
    await db.commit()
    await db.refresh(loc)
    logger.info(f"[reset] driver={driver_id} appointment cleared")
    return loc


# =====================================================================
# Alerts
# =====================================================================
async def create_alert(db: AsyncSession, driver_id: int, type: str, message: str, appointment_time, timestamp=None) -> Alert:
    if type not in ALERT_TYPES:
        raise ValueError(f"Unknown alert type {type!r}")

    alert = Alert(
        driver_id=driver_id,
        type=type,
        message=message,
        is_read=False,
        timestamp=to_dt(timestamp) or dt.datetime.now(UTC),
        appointment_time=to_dt(appointment_time),
    )
    db.add(alert)
    await db.commit()
    await db.refresh(alert)
    logger.info(f"[alert] Created {type} alert id={alert.id} driver={driver_id}: {message}")
    return alert


async def list_alerts(db: AsyncSession, driver_id: Optional[int] = None, unread_only: bool = False) -> List[Alert]:
    q = select(Alert)
    if driver_id is not None:
        q = q.where(Alert.driver_id == driver_id)
    if unread_only:
        q = q.where(Alert.is_read == False)
    res = await db.execute(q.order_by(Alert.timestamp, Alert.id))
    return list(res.scalars().all())


async def mark_alert_read(db: AsyncSession, alert_id: int) -> bool:
    res = await db.execute(update(Alert).where(Alert.id == alert_id).values(is_read=True))
    await db.commit()
    return (res.rowcount or 0) > 0


async def mark_all_alerts_read(db: AsyncSession) -> int:
    res = await db.execute(update(Alert).where(Alert.is_read == False).values(is_read=True))
    await db.commit()
    return res.rowcount or 0


async def clear_read_alerts(db: AsyncSession) -> int:
    res = await db.execute(delete(Alert).where(Alert.is_read == True))
    await db.commit()
    logger.info(f"[alert] Cleared {res.rowcount} read alerts")
    return res.rowcount or 0


async def clear_all_alerts(db: AsyncSession) -> int:
    res = await db.execute(delete(Alert))
    await db.commit()
    logger.info(f"[alert] Cleared all alert history ({res.rowcount} rows)")
    return res.rowcount or 0


async def clear_driver_alerts(db: AsyncSession, driver_id: int) -> int:
    res = await db.execute(delete(Alert).where(Alert.driver_id == driver_id))
    await db.commit()
    return res.rowcount or 0


async def cleanup_orphaned_alerts(db: AsyncSession) -> int:
    """Manual maintenance: drop alerts of drivers that no longer have an appointment."""
    res = await db.execute(
        select(Alert.driver_id)
        .outerjoin(DriverLocation, DriverLocation.driver_id == Alert.driver_id)
        .where(DriverLocation.appointment_time.is_(None))
        .group_by(Alert.driver_id)
    )
    removed = 0
    for (driver_id,) in res.all():
        removed += await clear_driver_alerts(db, driver_id)
    if removed:
        logger.info(f"[alert] Removed {removed} orphaned alerts")
    return removed


async def count_alerts(db: AsyncSession) -> int:
    res = await db.execute(select(func.count(Alert.id)))
    return res.scalar_one()
