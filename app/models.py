from sqlalchemy import (BigInteger, Boolean, Column, Integer, Text, DateTime, ForeignKey, Double)
from database import Base
from sqlalchemy.sql import func

class Driver(Base):
    __tablename__ = "drivers"
    id           = Column(Integer, primary_key=True, index=True)
    name         = Column(Text, nullable=False)
    truck_number = Column(Text, nullable=False)
    dispatcher   = Column(Text)
    is_active    = Column(Boolean, default=True, nullable=False)
    created_at   = Column(DateTime(timezone=True), server_default=func.now())


class DriverLocation(Base):
    __tablename__ = "driver_locations"
    id               = Column(Integer, primary_key=True, index=True)
    driver_id        = Column(Integer, ForeignKey("drivers.id"), unique=True, index=True, nullable=False)
    location         = Column(Text, default="Unknown Location", nullable=False)
    appointment_time = Column(DateTime(timezone=True))
    departure_time   = Column(DateTime(timezone=True))
    stop_type        = Column(Text, default="regular", nullable=False)  # regular / multi-stop / rail / no-billing / drop-hook
    final_detention_minutes = Column(Integer)   # frozen at departure
    final_detention_cost    = Column(Double)    # final minutes * rate
    timestamp        = Column(DateTime(timezone=True), server_default=func.now())


class Alert(Base):
    __tablename__ = "alerts"
    id               = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, index=True)
    driver_id        = Column(Integer, ForeignKey("drivers.id"), index=True, nullable=False)
    type             = Column(Text, nullable=False)   # warning / critical / reminder
    message          = Column(Text, nullable=False)
    is_read          = Column(Boolean, default=False, nullable=False)
    timestamp        = Column(DateTime(timezone=True), nullable=False)
    appointment_time = Column(DateTime(timezone=True))  # appointment this alert belongs to
