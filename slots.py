"""Availability timeline: operating hours reconciled with occupying reservations."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional, Sequence, Tuple
import enum

from errors import ErrorKind, Result, failure
from models import OperatingWindow, Reservation, utcnow

Interval = Tuple[datetime, datetime]


class SlotStatus(str, enum.Enum):
    AVAILABLE = 'AVAILABLE'
    BOOKED = 'BOOKED'


@dataclass
class Slot:
    start: datetime
    end: datetime
    status: SlotStatus
    booking_ref: Optional[Dict[str, Any]] = None

    def to_dict(self):
        return {
            "start": self.start.astimezone(timezone.utc).isoformat(),
            "end": self.end.astimezone(timezone.utc).isoformat(),
            "status": self.status.value,
            "booking_ref": self.booking_ref,
        }


def day_bounds(day: date, tz: tzinfo) -> Interval:
    return (datetime.combine(day, time.min, tzinfo=tz),
            datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz))


def _subtract(interval: Interval, blocked: Sequence[Interval]) -> List[Interval]:
    pieces = [interval]
    for b_start, b_end in blocked:
        next_pieces = []
        for start, end in pieces:
            if b_end <= start or b_start >= end:
                next_pieces.append((start, end))
                continue
            if start < b_start:
                next_pieces.append((start, b_start))
            if b_end < end:
                next_pieces.append((b_end, end))
        pieces = next_pieces
    return pieces


def bookable_intervals(windows: Sequence[OperatingWindow], tz: tzinfo) -> List[Interval]:
    """Turn one date's operating windows into ordered, disjoint bookable intervals.

    Overlapping available windows are merged; abutting ones stay separate.
    Windows flagged unavailable are carved out of whatever they cover.
    Zero-length windows are ignored.
    """
    def as_interval(w):
        return (datetime.combine(w.date, w.start_time, tzinfo=tz),
                datetime.combine(w.date, w.end_time, tzinfo=tz))

    available = sorted(as_interval(w) for w in windows if w.is_available and w.start_time < w.end_time)
    blocked = [as_interval(w) for w in windows if not w.is_available and w.start_time < w.end_time]

    merged: List[Interval] = []
    for start, end in available:
        if merged and start < merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))

    intervals = []
    for interval in merged:
        intervals.extend(_subtract(interval, blocked))
    return intervals


def booking_ref(reservation: Reservation) -> Dict[str, Any]:
    return {
        "id": reservation.id,
        "requester_id": reservation.requester_id,
        "status": reservation.status.value,
    }


def build_slots(intervals: Sequence[Interval], reservations: Sequence[Reservation]) -> List[Slot]:
    """Walk each interval emitting AVAILABLE gaps and BOOKED spans clipped to the interval.

    ``reservations`` must already be filtered to occupying ones and sorted by
    (start, id).
    """
    slots: List[Slot] = []
    for window_start, window_end in intervals:
        if window_start >= window_end:
            continue
        cursor = window_start
        for reservation in reservations:
            if reservation.end_instant <= window_start or reservation.start_instant >= window_end:
                continue
            start = max(reservation.start_instant, window_start, cursor)
            end = min(reservation.end_instant, window_end)
            if start > cursor:
                slots.append(Slot(cursor, start, SlotStatus.AVAILABLE))
            if end > start:
                slots.append(Slot(start, end, SlotStatus.BOOKED, booking_ref(reservation)))
            cursor = max(cursor, end)
        if cursor < window_end:
            slots.append(Slot(cursor, window_end, SlotStatus.AVAILABLE))
    return slots


class SlotGenerator:
    """Single source of truth for what a resource looks like on a given date."""

    def __init__(self, db, settings, clock=utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock

    def generate(self, resource_id: int, day: date) -> Result:
        resource = self.db.get_resource(resource_id)
        if resource is None:
            return failure(ErrorKind.NOT_FOUND, "resource not found")
        if not resource.is_active:
            return True, []

        tz = self.settings.tzinfo
        intervals = bookable_intervals(self.db.get_operating_windows(resource_id, day), tz)
        if not intervals:
            return True, []

        day_start, day_end = day_bounds(day, tz)
        reservations = self.db.occupying_reservations(resource_id, day_start, day_end, self.clock())
        return True, [slot.to_dict() for slot in build_slots(intervals, reservations)]
