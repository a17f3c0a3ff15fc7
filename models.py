"""ORM model definitions describing the reservation schema."""

from sqlalchemy import (Boolean, Column, Date, DateTime, Enum, ForeignKey, Index,
                        Integer, String, Text, Time)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone
from typing import Optional
import enum

Base = declarative_base()


def utcnow() -> datetime:
    """Default clock: the current instant, timezone-aware in UTC."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores instants as naive UTC and hands them back timezone-aware.

    Keeps comparisons consistent on backends without native timezone support.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class ReservationStatus(str, enum.Enum):
    """Enumerated reservation lifecycle states persisted in the database."""
    ONHOLD = 'ONHOLD'
    CONFIRMED = 'CONFIRMED'
    CANCELLED = 'CANCELLED'
    COMPLETED = 'COMPLETED'
    NO_SHOW = 'NO_SHOW'


TERMINAL_STATUSES = frozenset({
    ReservationStatus.CANCELLED,
    ReservationStatus.COMPLETED,
    ReservationStatus.NO_SHOW,
})

# Statuses that occupy time on a resource; ONHOLD only while unexpired.
BLOCKING_STATUSES = (ReservationStatus.CONFIRMED, ReservationStatus.COMPLETED)


class CancelReason(str, enum.Enum):
    EXPIRED = 'EXPIRED'
    EXPLICIT = 'EXPLICIT'


class BookingType(str, enum.Enum):
    FULL_DAY = 'FULL_DAY'
    HALF_DAY_AM = 'HALF_DAY_AM'
    HALF_DAY_PM = 'HALF_DAY_PM'
    HOURLY = 'HOURLY'


class RecurrencePattern(str, enum.Enum):
    DAILY = 'DAILY'
    WEEKLY = 'WEEKLY'


class Resource(Base):
    __tablename__ = 'resources'

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)
    max_booking_duration = Column(Integer)  # minutes
    created_at = Column(UTCDateTime, default=utcnow)

    windows = relationship('OperatingWindow', back_populates='resource', cascade='all, delete-orphan')
    reservations = relationship('Reservation', back_populates='resource', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "max_booking_duration": self.max_booking_duration,
        }


class OperatingWindow(Base):
    __tablename__ = 'operating_windows'

    id = Column(Integer, primary_key=True)
    resource_id = Column(Integer, ForeignKey('resources.id', ondelete='CASCADE'), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)

    resource = relationship('Resource', back_populates='windows')

    __table_args__ = (
        Index('idx_windows_resource_date', 'resource_id', 'date'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "date": self.date.isoformat(),
            "start_time": self.start_time.isoformat(timespec='minutes'),
            "end_time": self.end_time.isoformat(timespec='minutes'),
            "is_available": self.is_available,
        }


class RecurringSeries(Base):
    __tablename__ = 'recurring_series'

    id = Column(Integer, primary_key=True)
    resource_id = Column(Integer, ForeignKey('resources.id', ondelete='CASCADE'), nullable=False)
    requester_id = Column(String, nullable=False)
    pattern = Column(Enum(RecurrencePattern, name='recurrence_pattern_enum'), nullable=False)
    days_of_week = Column(String, nullable=False)  # comma separated, 0=Monday
    first_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    reason = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)

    # Membership is a non-owning back-reference; detaching a member only clears its pointer.
    reservations = relationship('Reservation', back_populates='series')

    def to_dict(self):
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "requester_id": self.requester_id,
            "pattern": self.pattern.value,
            "days_of_week": [int(d) for d in self.days_of_week.split(',') if d],
            "first_date": self.first_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "start_time": self.start_time.isoformat(timespec='minutes'),
            "end_time": self.end_time.isoformat(timespec='minutes'),
            "reason": self.reason,
        }


class Reservation(Base):
    __tablename__ = 'reservations'

    id = Column(Integer, primary_key=True)
    resource_id = Column(Integer, ForeignKey('resources.id', ondelete='CASCADE'), nullable=False)
    requester_id = Column(String, nullable=False)
    start_instant = Column(UTCDateTime, nullable=False)
    end_instant = Column(UTCDateTime, nullable=False)
    status = Column(Enum(ReservationStatus, name='reservation_status_enum'),
                    default=ReservationStatus.ONHOLD, nullable=False)
    booking_type = Column(Enum(BookingType, name='booking_type_enum'),
                          default=BookingType.HOURLY, nullable=False)
    reason = Column(Text)
    notes = Column(Text)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime)
    hold_expires_at = Column(UTCDateTime)
    cancel_reason = Column(Enum(CancelReason, name='cancel_reason_enum'))
    recurring_series_id = Column(Integer, ForeignKey('recurring_series.id', ondelete='SET NULL'))

    resource = relationship('Resource', back_populates='reservations')
    series = relationship('RecurringSeries', back_populates='reservations')

    __table_args__ = (
        Index('idx_reservations_resource_start', 'resource_id', 'start_instant'),
        Index('idx_reservations_status', 'status'),
        Index('idx_reservations_hold_expires', 'hold_expires_at',
              postgresql_where=status == ReservationStatus.ONHOLD),
        Index('idx_reservations_requester', 'requester_id'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired_hold(self, now: datetime) -> bool:
        return (self.status == ReservationStatus.ONHOLD
                and self.hold_expires_at is not None
                and self.hold_expires_at <= now)

    def occupies(self, now: datetime) -> bool:
        """True if this reservation blocks its interval at ``now``."""
        if self.status == ReservationStatus.ONHOLD:
            return not self.is_expired_hold(now)
        return self.status in BLOCKING_STATUSES

    def to_dict(self, now: Optional[datetime] = None):
        """Serialize; given ``now``, a hold past its TTL is reported as the expired cancellation it is."""
        status, cancel_reason, hold_expires_at = self.status, self.cancel_reason, self.hold_expires_at
        if now is not None and self.is_expired_hold(now):
            status, cancel_reason, hold_expires_at = (
                ReservationStatus.CANCELLED, CancelReason.EXPIRED, None)
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "requester_id": self.requester_id,
            "start": self.start_instant.isoformat(),
            "end": self.end_instant.isoformat(),
            "status": status.value,
            "booking_type": self.booking_type.value,
            "reason": self.reason,
            "notes": self.notes,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "hold_expires_at": hold_expires_at.isoformat() if hold_expires_at else None,
            "cancel_reason": cancel_reason.value if cancel_reason else None,
            "recurring_series_id": self.recurring_series_id,
        }
