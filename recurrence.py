"""Expansion of one recurring request into dated holds, with partial success."""

from datetime import date, datetime, time, timedelta
from typing import FrozenSet, Iterable, List, Optional, Tuple
import logging

from errors import ErrorKind, Result, failure
from models import BookingType, RecurrencePattern, utcnow

logger = logging.getLogger(__name__)

# Monday=0 .. Friday=4; weekends are never part of a series.
WEEKDAYS = frozenset(range(5))


def recurrence_days(
    pattern: RecurrencePattern,
    first_date: date,
    days_of_week: Optional[Iterable[int]] = None,
) -> Tuple[Optional[FrozenSet[int]], Optional[str]]:
    """Map a pattern (and optional explicit weekday list) onto the canonical weekday set.

    Returns ``(days, None)`` or ``(None, error_message)``.
    """
    if days_of_week is None:
        if pattern == RecurrencePattern.DAILY:
            return WEEKDAYS, None
        return frozenset({first_date.weekday()}), None

    if pattern != RecurrencePattern.WEEKLY:
        return None, "days_of_week is only accepted with the WEEKLY pattern"
    values = list(days_of_week)
    if not values or any(not isinstance(d, int) or isinstance(d, bool) or not 0 <= d <= 6 for d in values):
        return None, "days_of_week must be a non-empty list of integers 0 (Monday) to 6 (Sunday)"
    days = frozenset(values)
    if first_date.weekday() not in days:
        return None, "first_date does not fall on one of days_of_week"
    return days, None


def candidate_dates(first_date: date, end_date: date, days: FrozenSet[int]) -> List[date]:
    """Every date in [first_date, end_date] whose weekday is in ``days``, weekends removed."""
    wanted = days & WEEKDAYS
    dates = []
    current = first_date
    while current <= end_date:
        if current.weekday() in wanted:
            dates.append(current)
        current += timedelta(days=1)
    return dates


class RecurrenceExpander:
    """Creates one hold per candidate date, all tagged with the same series id.

    A failing date never aborts the loop: it is reported in ``failed`` next to
    the holds that did succeed. Holds are left unconfirmed for the caller.
    """

    def __init__(self, bookings, db, settings, clock=utcnow):
        self.bookings = bookings
        self.db = db
        self.settings = settings
        self.clock = clock

    def expand(
        self,
        resource_id: int,
        requester_id: str,
        first_date: date,
        end_date: date,
        pattern: RecurrencePattern,
        start_time: time,
        end_time: time,
        days_of_week: Optional[Iterable[int]] = None,
        booking_type: BookingType = BookingType.HOURLY,
        reason: Optional[str] = None,
    ) -> Result:
        if not requester_id:
            return failure(ErrorKind.VALIDATION_ERROR, "requester_id is required")
        if first_date > end_date:
            return failure(ErrorKind.VALIDATION_ERROR, "first_date must not be after end_date")
        if (end_date - first_date).days > self.settings.max_recurrence_days:
            return failure(
                ErrorKind.VALIDATION_ERROR,
                f"recurrence may span at most {self.settings.max_recurrence_days} days",
            )
        if start_time >= end_time:
            return failure(ErrorKind.VALIDATION_ERROR, "start_time must be before end_time")

        days, error = recurrence_days(pattern, first_date, days_of_week)
        if error:
            return failure(ErrorKind.VALIDATION_ERROR, error)
        dates = candidate_dates(first_date, end_date, days)
        if not dates:
            return failure(ErrorKind.VALIDATION_ERROR, "recurrence produces no weekday dates")

        resource = self.db.get_resource(resource_id)
        if resource is None:
            return failure(ErrorKind.NOT_FOUND, "resource not found")
        if not resource.is_active:
            return failure(ErrorKind.INACTIVE, "resource is not active")

        series = self.db.create_series(
            resource_id=resource_id,
            requester_id=requester_id,
            pattern=pattern,
            days_of_week=','.join(str(d) for d in sorted(days)),
            first_date=first_date,
            end_date=end_date,
            start_time=start_time,
            end_time=end_time,
            reason=reason,
            created_at=self.clock(),
        )

        created, failed = self._hold_dates(series, dates, booking_type)
        logger.info(
            f"Recurring series {series.id} on resource {resource_id}: "
            f"{len(created)} held, {len(failed)} failed"
        )
        return True, {"series_id": series.id, "created": created, "failed": failed}

    def _hold_dates(self, series, dates, booking_type):
        """One hold per date; failures are collected, never raised."""
        tz = self.settings.tzinfo
        created, failed = [], []
        for day in dates:
            ok, result = self.bookings.hold(
                series.resource_id,
                series.requester_id,
                datetime.combine(day, series.start_time, tzinfo=tz),
                datetime.combine(day, series.end_time, tzinfo=tz),
                booking_type=booking_type,
                reason=series.reason,
                recurring_series_id=series.id,
            )
            if ok:
                created.append(result)
            else:
                failed.append({
                    "date": day.isoformat(),
                    "error": result["error"],
                    "message": result["message"],
                })
        return created, failed

    def get_series(self, series_id: int) -> Result:
        series = self.db.get_series(series_id)
        if series is None:
            return failure(ErrorKind.NOT_FOUND, "recurring series not found")
        now = self.clock()
        self.db.expire_holds(now, resource_id=series.resource_id)
        payload = series.to_dict()
        payload["reservations"] = [r.to_dict(now) for r in self.db.series_members(series_id)]
        return True, payload

    def _cancel_members(self, members):
        cancelled, busy = 0, []
        for member in members:
            ok, result = self.bookings.cancel(member.id)
            if ok:
                cancelled += 1
            elif result["error"] == ErrorKind.BUSY.value:
                busy.append(member.id)
        return cancelled, busy

    def _future_members(self, series_id: int):
        """Active members that have not started yet."""
        now = self.clock()
        return [m for m in self.db.series_members(series_id)
                if not m.is_terminal and not m.is_expired_hold(now) and m.start_instant > now]

    def cancel_series(self, series_id: int) -> Result:
        """Cancel every future active member; started or terminal members are left alone."""
        series = self.db.get_series(series_id)
        if series is None:
            return failure(ErrorKind.NOT_FOUND, "recurring series not found")

        cancelled, busy = self._cancel_members(self._future_members(series_id))
        logger.info(f"Recurring series {series_id}: {cancelled} reservations cancelled")
        return True, {"series_id": series_id, "cancelled_count": cancelled, "busy_ids": busy}

    def update_series(
        self,
        series_id: int,
        end_date: Optional[date] = None,
        reason: Optional[str] = None,
    ) -> Result:
        """Move a series' end date and/or change its reason.

        Shortening cancels the future members that fall after the new end
        date. Extending holds the added dates, reporting failures per date the
        same way ``expand`` does. A new reason is copied onto future members.
        """
        series = self.db.get_series(series_id)
        if series is None:
            return failure(ErrorKind.NOT_FOUND, "recurring series not found")
        if end_date is None and reason is None:
            return failure(ErrorKind.VALIDATION_ERROR, "nothing to update: provide end_date or reason")
        if end_date is not None:
            if end_date < series.first_date:
                return failure(ErrorKind.VALIDATION_ERROR, "end_date must not be before first_date")
            if (end_date - series.first_date).days > self.settings.max_recurrence_days:
                return failure(
                    ErrorKind.VALIDATION_ERROR,
                    f"recurrence may span at most {self.settings.max_recurrence_days} days",
                )

        old_end = series.end_date
        fields = {}
        if end_date is not None:
            fields["end_date"] = end_date
        if reason is not None:
            fields["reason"] = reason
        series = self.db.update_series(series_id, **fields)

        tz = self.settings.tzinfo
        future = self._future_members(series_id)
        cancelled, busy = 0, []
        if end_date is not None and end_date < old_end:
            dropped = [m for m in future if m.start_instant.astimezone(tz).date() > end_date]
            future = [m for m in future if m.start_instant.astimezone(tz).date() <= end_date]
            cancelled, busy = self._cancel_members(dropped)

        if reason is not None:
            for member in future:
                self.bookings.update_details(member.id, reason=reason)

        created, failed = [], []
        if end_date is not None and end_date > old_end:
            members = self.db.series_members(series_id)
            booking_type = members[0].booking_type if members else BookingType.HOURLY
            days = frozenset(int(d) for d in series.days_of_week.split(',') if d)
            dates = candidate_dates(old_end + timedelta(days=1), end_date, days)
            created, failed = self._hold_dates(series, dates, booking_type)

        logger.info(
            f"Recurring series {series_id} updated: {cancelled} cancelled, "
            f"{len(created)} held, {len(failed)} failed"
        )
        payload = series.to_dict()
        payload.update({
            "created": created,
            "failed": failed,
            "cancelled_count": cancelled,
            "busy_ids": busy,
        })
        return True, payload
