"""Availability model definitions."""

from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, Time
from therapy_backend.database import Base


class Availability(Base):
    """Represents a bookable window for a therapist.

    One-off slots carry a ``date``; recurring slots leave it NULL and set
    ``day_of_week`` (0 = Sunday ... 6 = Saturday).
    """
    __tablename__ = "availability"

    id = Column(Integer, primary_key=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    date = Column(Date)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_recurring = Column(Boolean, default=False, nullable=False)
    day_of_week = Column(Integer)
