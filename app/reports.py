import argparse
import asyncio
import datetime as dt
import os

import pandas as pd
import pytz
from sqlalchemy import select

from database import AsyncSessionLocal
from models import Driver, DriverLocation
from detention import to_dt, stop_type_label, format_cost
from config import REPORT_TIMEZONE, REPORT_DIR
from logging_config import get_logger

logger = get_logger("reports", "reports.log")

LOCAL_TZ = pytz.timezone(REPORT_TIMEZONE)

REPORT_COLUMNS = [
    "driver_id", "driver", "truck_number", "dispatcher", "stop_type",
    "appointment_local", "departure_local", "detention_minutes", "detention_cost", "detention_cost_display",
]


def _local(v):
    v = to_dt(v)
    return v.astimezone(LOCAL_TZ).strftime("%Y-%m-%d %H:%M") if v else None


async def detention_report(db, since=None) -> pd.DataFrame:
    """
    Finalized appointments (departure recorded), newest departure first.
    `since` filters on departure time.
    """
    q = (
        select(Driver, DriverLocation)
        .join(DriverLocation, DriverLocation.driver_id == Driver.id)
        .where(
            DriverLocation.departure_time.isnot(None),
            DriverLocation.final_detention_minutes.isnot(None),
        )
    )
    if since is not None:
        q = q.where(DriverLocation.departure_time >= to_dt(since))

    res = await db.execute(q)
    rows = []
    for driver, loc in res.all():
        cost = float(loc.final_detention_cost or 0)
        rows.append({
            "driver_id": driver.id,
            "driver": driver.name,
            "truck_number": driver.truck_number,
            "dispatcher": driver.dispatcher,
            "stop_type": stop_type_label(loc.stop_type),
            "departure_utc": to_dt(loc.departure_time),
            "appointment_local": _local(loc.appointment_time),
            "departure_local": _local(loc.departure_time),
            "detention_minutes": int(loc.final_detention_minutes),
            "detention_cost": cost,
            "detention_cost_display": format_cost(cost),
        })

    if not rows:
        return pd.DataFrame(columns=REPORT_COLUMNS)

    df = pd.DataFrame(rows).sort_values("departure_utc", ascending=False)
    return df[REPORT_COLUMNS].reset_index(drop=True)


async def write_detention_report(path=None, since=None) -> pd.DataFrame:
    if path is None:
        os.makedirs(REPORT_DIR, exist_ok=True)
        stamp = dt.datetime.now(LOCAL_TZ).strftime("%Y%m%d")
        path = os.path.join(REPORT_DIR, f"detention_{stamp}.csv")

    async with AsyncSessionLocal() as db:
        df = await detention_report(db, since=since)

    df.to_csv(path, index=False)
    logger.info(f"Detention report written to {path} ({len(df)} rows)")
    return df


def parse_args():
    p = argparse.ArgumentParser(description="Export finalized detention as CSV.")
    p.add_argument("--out", default=None, help="Output CSV path (defaults to REPORT_DIR/detention_<date>.csv)")
    p.add_argument("--since", default=None, help="Only departures at or after this ISO time")
    return p.parse_args()


if __name__ == "__main__":
    args = parse_args()
    asyncio.run(write_detention_report(args.out, since=args.since))
