import datetime as dt
from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from detention import (
    evaluate,
    compute_final_detention,
    parse_time_input,
    to_dt,
    is_valid_stop_type,
    format_cost,
    DEFAULT_STOP_TYPE,
    UTC,
)
from errors import DetentionError, UnknownStopType, OrderingViolation
from alerts import alert_to_dict
from reports import detention_report
import crud
from logging_config import get_logger

router = APIRouter(prefix="/api")
logger = get_logger("webhook", "webhook.log")


def _http_error(e: DetentionError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


def _iso(v):
    v = to_dt(v)
    return v.isoformat() if v else None


def location_to_dict(loc) -> dict:
    if loc is None:
        return None
    return {
        "driverId": loc.driver_id,
        "location": loc.location,
        "appointmentTime": _iso(loc.appointment_time),
        "departureTime": _iso(loc.departure_time),
        "stopType": loc.stop_type,
        "finalDetentionMinutes": loc.final_detention_minutes,
        "finalDetentionCost": loc.final_detention_cost,
    }


def driver_to_dict(driver, loc, now=None) -> dict:
    if loc is None:
        snapshot = evaluate(None, now=now)
    else:
        snapshot = evaluate(
            loc.appointment_time,
            loc.stop_type,
            loc.departure_time,
            now=now,
            final_detention_minutes=loc.final_detention_minutes,
            final_detention_cost=loc.final_detention_cost,
        )
    return {
        "id": driver.id,
        "name": driver.name,
        "truckNumber": driver.truck_number,
        "dispatcher": driver.dispatcher,
        "currentLocation": location_to_dict(loc),
        **snapshot.to_dict(),
    }


# ---------------------------------------------------
#                   DRIVERS
# ---------------------------------------------------
@router.get("/drivers")
async def list_drivers(db: AsyncSession = Depends(get_db)):
    now = dt.datetime.now(UTC)
    rows = await crud.list_drivers_with_locations(db)
    return [driver_to_dict(d, loc, now) for d, loc in rows]


@router.post("/drivers", status_code=201)
async def add_driver(payload: dict, db: AsyncSession = Depends(get_db)):
    name = (payload.get("name") or "").strip()
    truck_number = (payload.get("truckNumber") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Driver name is required")
    if not truck_number:
        raise HTTPException(status_code=400, detail="Truck number is required")

    driver = await crud.create_driver(db, name, truck_number, payload.get("dispatcher"))
    return driver_to_dict(driver, None)


@router.post("/drivers/{driver_id}/appointment")
async def set_appointment(driver_id: int, payload: dict, db: AsyncSession = Depends(get_db)):
    try:
        appointment = parse_time_input(payload.get("appointmentTime"), payload.get("timezoneOffsetMinutes"))
        loc = await crud.set_appointment(db, driver_id, appointment, payload.get("stopType"))
    except DetentionError as e:
        raise _http_error(e)

    logger.info(f"Appointment set for driver {driver_id}: {appointment.isoformat()}")
    return location_to_dict(loc)


@router.patch("/drivers/{driver_id}/stop-type")
async def set_stop_type(driver_id: int, payload: dict, db: AsyncSession = Depends(get_db)):
    try:
        loc = await crud.set_stop_type(db, driver_id, payload.get("stopType"))
    except DetentionError as e:
        raise _http_error(e)
    return location_to_dict(loc)


@router.post("/drivers/{driver_id}/departure")
async def record_departure(driver_id: int, payload: dict, db: AsyncSession = Depends(get_db)):
    try:
        departure = parse_time_input(payload.get("departureTime"), payload.get("timezoneOffsetMinutes"))
        loc = await crud.record_departure(db, driver_id, departure)
    except DetentionError as e:
        logger.info(f"Departure rejected for driver {driver_id}: {e}")
        raise _http_error(e)

    logger.info(
        f"Departure recorded for driver {driver_id}: minutes={loc.final_detention_minutes} "
        f"cost={loc.final_detention_cost}"
    )
    return location_to_dict(loc)


@router.patch("/drivers/{driver_id}/location")
async def update_location(driver_id: int, payload: dict, db: AsyncSession = Depends(get_db)):
    location = (payload.get("location") or "").strip()
    if not location:
        raise HTTPException(status_code=400, detail="Location is required")
    try:
        loc = await crud.update_location(db, driver_id, location)
    except DetentionError as e:
        raise _http_error(e)
    return location_to_dict(loc)


@router.post("/drivers/{driver_id}/reset")
async def reset_driver(driver_id: int, db: AsyncSession = Depends(get_db)):
    try:
        loc = await crud.reset_appointment(db, driver_id)
    except DetentionError as e:
        raise _http_error(e)
    return location_to_dict(loc)


# ---------------------------------------------------
#              DETENTION CALCULATOR
# ---------------------------------------------------
@router.post("/detention/calculate")
async def calculate_detention(payload: dict):
    stop_type = payload.get("stopType") or DEFAULT_STOP_TYPE
    if not is_valid_stop_type(stop_type):
        raise _http_error(UnknownStopType(f"Unknown stop type {stop_type!r}"))

    try:
        appointment = parse_time_input(payload.get("appointmentTime"), payload.get("timezoneOffsetMinutes"))
        departure = None
        if payload.get("departureTime"):
            departure = parse_time_input(payload.get("departureTime"), payload.get("timezoneOffsetMinutes"))
        now = to_dt(payload.get("now"))
    except DetentionError as e:
        raise _http_error(e)

    if departure is not None and departure < appointment:
        raise _http_error(OrderingViolation(
            f"Departure {departure.isoformat()} is earlier than appointment {appointment.isoformat()}"
        ))

    final_minutes = final_cost = None
    if departure is not None:
        final_minutes, final_cost = compute_final_detention(appointment, stop_type, departure)

    snapshot = evaluate(
        appointment,
        stop_type,
        departure,
        now=now,
        final_detention_minutes=final_minutes,
        final_detention_cost=final_cost,
    )
    result = snapshot.to_dict()
    if final_minutes is not None:
        result["finalDetentionMinutes"] = final_minutes
        result["finalDetentionCost"] = final_cost
        result["finalDetentionCostDisplay"] = format_cost(final_cost)
    return result


# ---------------------------------------------------
#                   ALERTS
# ---------------------------------------------------
@router.get("/alerts")
async def get_alerts(driver_id: int = None, unread: bool = False, db: AsyncSession = Depends(get_db)):
    alerts = await crud.list_alerts(db, driver_id=driver_id, unread_only=unread)
    return [alert_to_dict(a) for a in alerts]


@router.post("/alerts/mark-all-read")
async def mark_all_read(db: AsyncSession = Depends(get_db)):
    count = await crud.mark_all_alerts_read(db)
    return {"success": True, "count": count}


@router.post("/alerts/clear-all")
async def clear_all(db: AsyncSession = Depends(get_db)):
    count = await crud.clear_all_alerts(db)
    return {"success": True, "count": count, "message": "All alert history cleared"}


@router.delete("/alerts/orphaned")
async def clear_orphaned(db: AsyncSession = Depends(get_db)):
    count = await crud.cleanup_orphaned_alerts(db)
    return {"success": True, "count": count, "message": "Alerts of drivers without an appointment cleared"}


@router.delete("/alerts/clear-history")
async def clear_history(db: AsyncSession = Depends(get_db)):
    count = await crud.clear_read_alerts(db)
    return {"success": True, "count": count, "message": "Read alert history cleared"}


@router.post("/alerts/{alert_id}/read")
async def mark_read(alert_id: int, db: AsyncSession = Depends(get_db)):
    if not await crud.mark_alert_read(db, alert_id):
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"success": True}


# ---------------------------------------------------
#                   REPORTS
# ---------------------------------------------------
@router.get("/reports/detention")
async def detention_csv(since: str = None, db: AsyncSession = Depends(get_db)):
    try:
        since_dt = to_dt(since)
    except DetentionError as e:
        raise _http_error(e)
    df = await detention_report(db, since=since_dt)
    return Response(content=df.to_csv(index=False), media_type="text/csv")
