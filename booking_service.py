"""Two-phase hold -> confirm reservation protocol on top of the reservation store."""

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional
import logging

from errors import ErrorKind, ResourceBusy, Result, failure
from models import (Reservation, ReservationStatus, BookingType, CancelReason, utcnow)
from slots import bookable_intervals, day_bounds

logger = logging.getLogger(__name__)


class BookingService:
    """State machine for a reservation's lifecycle.

    NONE -> ONHOLD -> CONFIRMED | CANCELLED, and CONFIRMED -> COMPLETED |
    NO_SHOW | CANCELLED. Terminal states never transition again. Every
    operation returns ``(True, reservation_dict)`` or a typed failure.
    """

    def __init__(self, db, settings, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock

    def localize(self, value: datetime) -> datetime:
        """Interpret naive datetimes in the configured booking timezone; return UTC."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.settings.tzinfo)
        return value.astimezone(timezone.utc)

    # Phase one

    def hold(
        self,
        resource_id: int,
        requester_id: str,
        start: datetime,
        end: datetime,
        booking_type: BookingType = BookingType.HOURLY,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        recurring_series_id: Optional[int] = None,
    ) -> Result:
        """Reserve [start, end) for HOLD_TTL pending confirmation."""
        if not requester_id:
            return failure(ErrorKind.VALIDATION_ERROR, "requester_id is required")
        start, end = self.localize(start), self.localize(end)
        if start >= end:
            return failure(ErrorKind.VALIDATION_ERROR, "start must be before end")

        resource = self.db.get_resource(resource_id)
        if resource is None:
            return failure(ErrorKind.NOT_FOUND, "resource not found")
        if not resource.is_active:
            return failure(ErrorKind.INACTIVE, "resource is not active")
        if resource.max_booking_duration and end - start > timedelta(minutes=resource.max_booking_duration):
            return failure(
                ErrorKind.VALIDATION_ERROR,
                f"booking exceeds the maximum of {resource.max_booking_duration} minutes",
            )
        if self.settings.enforce_operating_hours and not self._within_operating_hours(resource_id, start, end):
            return failure(ErrorKind.VALIDATION_ERROR, "interval is outside the resource's operating hours")

        candidate = Reservation(
            resource_id=resource_id,
            requester_id=requester_id,
            start_instant=start,
            end_instant=end,
            status=ReservationStatus.ONHOLD,
            booking_type=booking_type,
            reason=reason,
            notes=notes,
            recurring_series_id=recurring_series_id,
        )
        ok, result = self.db.try_insert(candidate, self.clock, self.settings.hold_ttl)
        if not ok:
            logger.info(f"Hold rejected on resource {resource_id}: {result['error']}")
            return ok, result

        logger.info(f"Hold created: resource={resource_id}, reservation_id={result.id}")
        return True, result.to_dict()

    def _within_operating_hours(self, resource_id: int, start: datetime, end: datetime) -> bool:
        tz = self.settings.tzinfo
        local_day = start.astimezone(tz).date()
        if end > day_bounds(local_day, tz)[1]:
            return False
        intervals = bookable_intervals(self.db.get_operating_windows(resource_id, local_day), tz)
        return any(w_start <= start and end <= w_end for w_start, w_end in intervals)

    # Transitions on an existing reservation

    def _with_reservation(self, reservation_id: int, action) -> Result:
        """Run ``action(reservation, now, just_expired)`` inside the resource's critical section.

        An ONHOLD reservation past its TTL is cancelled first, so actions only
        ever see the reservation's real state.
        """
        existing = self.db.get_reservation(reservation_id)
        if existing is None:
            return failure(ErrorKind.NOT_FOUND, "reservation not found")

        try:
            with self.db.locked_session(existing.resource_id) as (session, _):
                reservation = session.query(Reservation).filter_by(id=reservation_id).with_for_update().first()
                if reservation is None:
                    return failure(ErrorKind.NOT_FOUND, "reservation not found")
                now = self.clock()
                just_expired = reservation.is_expired_hold(now)
                if just_expired:
                    reservation.status = ReservationStatus.CANCELLED
                    reservation.cancel_reason = CancelReason.EXPIRED
                    reservation.hold_expires_at = None
                    reservation.updated_at = now
                    logger.info(f"Hold expired on access: reservation_id={reservation_id}")
                return action(reservation, now, just_expired)
        except ResourceBusy:
            return failure(ErrorKind.BUSY, "resource is busy, retry shortly")

    def confirm(self, reservation_id: int) -> Result:
        def action(reservation, now, just_expired):
            if just_expired:
                return failure(ErrorKind.EXPIRED, "hold expired before confirmation")
            if reservation.status != ReservationStatus.ONHOLD:
                return failure(ErrorKind.INVALID_STATE,
                               f"cannot confirm a {reservation.status.value} reservation")
            reservation.status = ReservationStatus.CONFIRMED
            reservation.hold_expires_at = None
            reservation.updated_at = now
            logger.info(f"Reservation confirmed: reservation_id={reservation.id}")
            return True, reservation.to_dict()

        return self._with_reservation(reservation_id, action)

    def cancel(self, reservation_id: int, required_status: Optional[ReservationStatus] = None) -> Result:
        """Explicit cancellation of a hold or a confirmed reservation."""
        def action(reservation, now, just_expired):
            if reservation.is_terminal:
                return failure(ErrorKind.INVALID_STATE,
                               f"reservation is already {reservation.status.value}")
            if required_status is not None and reservation.status != required_status:
                return failure(ErrorKind.INVALID_STATE,
                               f"expected {required_status.value}, found {reservation.status.value}")
            reservation.status = ReservationStatus.CANCELLED
            reservation.cancel_reason = CancelReason.EXPLICIT
            reservation.hold_expires_at = None
            reservation.updated_at = now
            logger.info(f"Reservation cancelled: reservation_id={reservation.id}")
            return True, reservation.to_dict()

        return self._with_reservation(reservation_id, action)

    def cancel_hold(self, reservation_id: int) -> Result:
        return self.cancel(reservation_id, ReservationStatus.ONHOLD)

    def cancel_confirmed(self, reservation_id: int) -> Result:
        return self.cancel(reservation_id, ReservationStatus.CONFIRMED)

    def _mark(self, reservation_id: int, target: ReservationStatus) -> Result:
        def action(reservation, now, just_expired):
            if reservation.status != ReservationStatus.CONFIRMED:
                return failure(ErrorKind.INVALID_STATE,
                               f"only confirmed reservations can become {target.value}")
            if now < reservation.end_instant:
                return failure(ErrorKind.INVALID_STATE, "reservation has not ended yet")
            reservation.status = target
            reservation.updated_at = now
            logger.info(f"Reservation {reservation.id} marked {target.value}")
            return True, reservation.to_dict()

        return self._with_reservation(reservation_id, action)

    def mark_completed(self, reservation_id: int) -> Result:
        return self._mark(reservation_id, ReservationStatus.COMPLETED)

    def mark_no_show(self, reservation_id: int) -> Result:
        return self._mark(reservation_id, ReservationStatus.NO_SHOW)

    def update_details(self, reservation_id: int, reason: Optional[str] = None,
                       notes: Optional[str] = None) -> Result:
        def action(reservation, now, just_expired):
            if reservation.is_terminal:
                return failure(ErrorKind.INVALID_STATE,
                               f"cannot edit a {reservation.status.value} reservation")
            if reason is not None:
                reservation.reason = reason
            if notes is not None:
                reservation.notes = notes
            reservation.updated_at = now
            return True, reservation.to_dict()

        return self._with_reservation(reservation_id, action)

    def detach(self, reservation_id: int) -> Result:
        """Remove a reservation from its recurring series; the reservation itself is untouched."""
        def action(reservation, now, just_expired):
            if reservation.recurring_series_id is None:
                return failure(ErrorKind.INVALID_STATE, "reservation is not part of a recurring series")
            reservation.recurring_series_id = None
            reservation.updated_at = now
            return True, reservation.to_dict()

        return self._with_reservation(reservation_id, action)

    # Reads

    def get_reservation(self, reservation_id: int) -> Result:
        reservation = self.db.get_reservation(reservation_id)
        if reservation is None:
            return failure(ErrorKind.NOT_FOUND, "reservation not found")
        now = self.clock()
        if reservation.is_expired_hold(now):
            self.db.expire_holds(now, resource_id=reservation.resource_id)
            reservation = self.db.get_reservation(reservation_id)
        return True, reservation.to_dict(now)

    def list_reservations(
        self,
        requester_id: Optional[str] = None,
        resource_id: Optional[int] = None,
        status: Optional[ReservationStatus] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Result:
        if page < 1 or not 1 <= limit <= 100:
            return failure(ErrorKind.VALIDATION_ERROR, "page must be >= 1 and limit between 1 and 100")
        if start_date and end_date and start_date > end_date:
            return failure(ErrorKind.VALIDATION_ERROR, "start_date must not be after end_date")

        now = self.clock()
        self.db.expire_holds(now, resource_id=resource_id)
        tz = self.settings.tzinfo
        items, total = self.db.list_reservations(
            requester_id=requester_id,
            resource_id=resource_id,
            statuses=[status] if status else None,
            start=day_bounds(start_date, tz)[0] if start_date else None,
            end=day_bounds(end_date, tz)[1] if end_date else None,
            page=page,
            limit=limit,
            now=now,
        )
        return True, self._page(items, total, page, limit, now)

    def upcoming(self, requester_id: str, page: int = 1, limit: int = 20) -> Result:
        """Active reservations of a requester that have not ended yet."""
        now = self.clock()
        self.db.expire_holds(now)
        items, total = self.db.list_reservations(
            requester_id=requester_id,
            statuses=[ReservationStatus.ONHOLD, ReservationStatus.CONFIRMED],
            start=now,
            page=page,
            limit=limit,
            now=now,
        )
        return True, self._page(items, total, page, limit, now)

    def history(self, requester_id: str, page: int = 1, limit: int = 20) -> Result:
        """Reservations of a requester that started in the past, newest first."""
        now = self.clock()
        self.db.expire_holds(now)
        items, total = self.db.list_reservations(
            requester_id=requester_id,
            end=now,
            page=page,
            limit=limit,
            newest_first=True,
            now=now,
        )
        return True, self._page(items, total, page, limit, now)

    @staticmethod
    def _page(items, total, page, limit, now):
        return {
            "items": [r.to_dict(now) for r in items],
            "total": total,
            "page": page,
            "limit": limit,
        }

    def sweep_expired(self) -> Result:
        return True, {"count": self.db.expire_holds(self.clock())}
