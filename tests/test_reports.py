import datetime as dt

import pytest

import crud
from reports import detention_report, REPORT_COLUMNS

UTC = dt.timezone.utc
T0 = dt.datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


async def test_empty_report_keeps_columns(db, driver):
    await crud.set_appointment(db, driver.id, T0)
    df = await detention_report(db)
    assert df.empty
    assert list(df.columns) == REPORT_COLUMNS


async def test_report_lists_finalized_only(db, driver):
    other = await crud.create_driver(db, "Ana Lopez", "T-202")
    late = await crud.create_driver(db, "Raj Patel", "T-303")

    await crud.set_appointment(db, driver.id, T0, "regular")
    await crud.record_departure(db, driver.id, T0 + dt.timedelta(minutes=150))
    await crud.set_appointment(db, late.id, T0, "rail")
    await crud.record_departure(db, late.id, T0 + dt.timedelta(minutes=200))
    await crud.set_appointment(db, other.id, T0, "regular")

    df = await detention_report(db)
    assert list(df["driver"]) == ["Raj Patel", "John Smith"]
    assert list(df["detention_minutes"]) == [140, 30]
    assert df.loc[1, "detention_cost"] == pytest.approx(37.5)
    assert df.loc[0, "stop_type"] == "Rail"
    # America/Chicago is UTC-6 in early March
    assert df.loc[1, "appointment_local"] == "2026-03-02 03:00"

    recent = await detention_report(db, since=T0 + dt.timedelta(minutes=180))
    assert list(recent["driver"]) == ["Raj Patel"]
