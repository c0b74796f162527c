import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(50), default="homeowner", nullable=False)  # homeowner, provider, admin
    created_at = Column(DateTime, server_default=func.now())

    bookings = relationship("Booking", back_populates="requester")


class Booking(Base):
    """
    A service booking. Parent bookings carry the service description a recurring
    schedule stamps out; generated occurrences are bookings tagged with the
    schedule that produced them.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        # At most one live occurrence per schedule and calendar date
        Index(
            "uq_bookings_schedule_occurrence_date",
            "recurrence_schedule_id",
            "occurrence_date",
            unique=True,
            postgresql_where=text("occurrence_date IS NOT NULL AND status != 'cancelled'"),
            sqlite_where=text("occurrence_date IS NOT NULL AND status != 'cancelled'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(
        String(36), unique=True, nullable=False, index=True, default=generate_public_id
    )

    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    property_id = Column(Integer, nullable=True)
    service_id = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)

    # Scheduling (naive UTC)
    scheduled_start = Column(DateTime, nullable=False, index=True)
    scheduled_end = Column(DateTime, nullable=True)

    # Status workflow: pending → scheduled → in_progress → completed, or cancelled
    status = Column(String(50), default="scheduled", nullable=False, index=True)

    # Recurrence linkage
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurrence_schedule_id = Column(Integer, nullable=True, index=True)
    # Set on generated occurrences only; the parent is never owned by its occurrences
    recurrence_parent_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)
    occurrence_date = Column(Date, nullable=True)  # Local calendar date in the schedule's zone

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    requester = relationship("User", back_populates="bookings")
    offers = relationship("Offer", back_populates="booking")


class Offer(Base):
    """A provider's bid on a booking; an accepted one is copied onto generated occurrences"""

    __tablename__ = "offers"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    price = Column(Float, nullable=False)
    estimated_hours = Column(Float, nullable=True)
    description = Column(Text, nullable=True)
    status = Column(String(50), default="pending", nullable=False)  # pending, accepted, declined

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    booking = relationship("Booking", back_populates="offers")


class Notification(Base):
    """In-app notification row written by the database notifier"""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    audience = Column(String(20), default="user", nullable=False)  # user, operators
    kind = Column(String(100), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
