import asyncio
import inspect
import json
import time
from typing import Callable, List, Optional

import redis

from config import REDIS_URL, ALERT_STREAM, ALERT_STREAM_ENABLED, ALERT_STREAM_MAXLEN
from detention import to_dt
from logging_config import get_logger

# Redis connection (binary mode)
r = redis.from_url(REDIS_URL, decode_responses=False)

logger = get_logger("alerts", "alerts.log")

_subscribers: List[Callable] = []


def subscribe(callback: Callable) -> None:
    """Register an in-process observer; it receives the broadcast payload dict."""
    if callback not in _subscribers:
        _subscribers.append(callback)


def unsubscribe(callback: Callable) -> None:
    if callback in _subscribers:
        _subscribers.remove(callback)


def alert_to_dict(alert) -> dict:
    ts = to_dt(alert.timestamp)
    appt = to_dt(alert.appointment_time)
    return {
        "id": alert.id,
        "driverId": alert.driver_id,
        "type": alert.type,
        "message": alert.message,
        "isRead": bool(alert.is_read),
        "timestamp": ts.isoformat() if ts else None,
        "appointmentTime": appt.isoformat() if appt else None,
    }


async def publish_to_stream(payload: dict) -> None:
    json_str = json.dumps(payload, ensure_ascii=False)
    await asyncio.get_event_loop().run_in_executor(
        None,
        lambda: r.xadd(
            ALERT_STREAM,
            {"ts": time.time(), "data": json_str},
            maxlen=ALERT_STREAM_MAXLEN,
            approximate=True,
        ),
    )


async def send_alert(alert, driver_name: Optional[str] = None) -> None:
    """
    Fire-and-forget broadcast of a freshly created alert.
    Delivery failures are logged and never propagate into the alert tick.
    """
    payload = {"type": "alert", "driverName": driver_name, "alert": alert_to_dict(alert)}

    for callback in list(_subscribers):
        try:
            result = callback(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"[send_alert] Subscriber {callback!r} failed for alert id={alert.id}")

    if ALERT_STREAM_ENABLED:
        try:
            await publish_to_stream(payload)
            logger.info(f"[send_alert] Alert id={alert.id} published to stream {ALERT_STREAM}")
        except Exception:
            logger.exception(f"[send_alert] Failed to publish alert id={alert.id} to {ALERT_STREAM}")
