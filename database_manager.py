"""Database coordination layer: the reservation store and its no-overlap guarantee."""

from sqlalchemy import and_, create_engine, or_, text
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.exc import IntegrityError, OperationalError
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union
import logging

from errors import ErrorKind, ResourceBusy, Result, failure
from locking import ResourceLocks
from models import (Base, Resource, OperatingWindow, Reservation, RecurringSeries,
                    ReservationStatus, CancelReason, BLOCKING_STATUSES)

logger = logging.getLogger(__name__)


def occupying_filter(now: datetime):
    """SQL predicate for reservations that block time at ``now``.

    Expired holds are excluded even before the sweeper has cancelled them.
    """
    return or_(
        Reservation.status.in_(BLOCKING_STATUSES),
        and_(Reservation.status == ReservationStatus.ONHOLD, Reservation.hold_expires_at > now),
    )


def status_filter(statuses: Iterable[ReservationStatus], now: datetime):
    """SQL predicate matching reservations by the status a reader would see at ``now``.

    A hold past its TTL counts as CANCELLED whether or not it was swept yet.
    """
    expired_hold = and_(Reservation.status == ReservationStatus.ONHOLD, Reservation.hold_expires_at <= now)
    clauses = []
    for status in statuses:
        if status == ReservationStatus.ONHOLD:
            clauses.append(and_(Reservation.status == ReservationStatus.ONHOLD, Reservation.hold_expires_at > now))
        elif status == ReservationStatus.CANCELLED:
            clauses.append(or_(Reservation.status == ReservationStatus.CANCELLED, expired_hold))
        else:
            clauses.append(Reservation.status == status)
    return or_(*clauses)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval overlap; abutting intervals do not overlap."""
    return a_start < b_end and b_start < a_end


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and transactional flows."""

    def __init__(self, database_url: str, lock_timeout: float = 5.0):
        if database_url.startswith('sqlite'):
            engine_kwargs = {"connect_args": {"check_same_thread": False}}
        else:
            engine_kwargs = {
                "pool_size": 20,
                "max_overflow": 40,
                "pool_pre_ping": True,  # Reconnect if connection lost
                "pool_recycle": 3600,   # Recycle connections after 1 hour
            }
        self.engine = create_engine(database_url, echo=False, **engine_kwargs)
        # Objects stay readable after commit so callers can serialize them.
        self.session_factory = scoped_session(sessionmaker(bind=self.engine, expire_on_commit=False))
        self.lock_timeout = lock_timeout
        self.locks = ResourceLocks(lock_timeout)

        # Create tables
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    @contextmanager
    def locked_session(self, resource_id: int):
        """Critical section for one resource: process lock, then a row lock on the resource.

        Yields ``(session, resource)``; ``resource`` is None when it does not exist.
        Raises ResourceBusy if either lock cannot be taken in time.
        """
        with self.locks.acquire(resource_id):
            try:
                with self.get_session() as session:
                    if self.engine.dialect.name == 'postgresql':
                        # Bound the row-lock wait so cross-process contention surfaces as busy
                        session.execute(text(f"SET LOCAL lock_timeout = '{int(self.lock_timeout * 1000)}ms'"))
                    resource = session.query(Resource).filter_by(id=resource_id).with_for_update().first()
                    yield session, resource
            except OperationalError as e:
                logger.warning(f"Database lock contention on resource {resource_id}: {e}")
                raise ResourceBusy(resource_id) from e

    # Resources and operating hours (seeded by external collaborators)

    def initialize_resource(
        self,
        resource_id: int,
        name: Optional[str] = None,
        is_active: bool = True,
        max_booking_duration: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """Create a bookable resource if it does not already exist."""
        try:
            with self.get_session() as session:
                if session.query(Resource).filter_by(id=resource_id).first():
                    return False, "resource already exists"
                session.add(Resource(
                    id=resource_id,
                    name=name,
                    is_active=is_active,
                    max_booking_duration=max_booking_duration,
                ))
                return True, f"resource {resource_id} initialized"
        except IntegrityError as e:
            return False, f"database integrity error: {str(e)}"

    def get_resource(self, resource_id: int) -> Optional[Resource]:
        with self.get_session() as session:
            return session.query(Resource).filter_by(id=resource_id).first()

    def set_resource_active(self, resource_id: int, is_active: bool) -> Optional[Resource]:
        with self.get_session() as session:
            resource = session.query(Resource).filter_by(id=resource_id).first()
            if resource:
                resource.is_active = is_active
            return resource

    def add_operating_window(
        self,
        resource_id: int,
        day: date,
        start_time: time,
        end_time: time,
        is_available: bool = True,
    ) -> Result:
        if start_time >= end_time:
            return failure(ErrorKind.VALIDATION_ERROR, "start_time must be before end_time")
        with self.get_session() as session:
            if not session.query(Resource).filter_by(id=resource_id).first():
                return failure(ErrorKind.NOT_FOUND, "resource not found")
            window = OperatingWindow(
                resource_id=resource_id,
                date=day,
                start_time=start_time,
                end_time=end_time,
                is_available=is_available,
            )
            session.add(window)
            session.flush()
            return True, window.to_dict()

    def get_operating_windows(self, resource_id: int, day: date) -> List[OperatingWindow]:
        with self.get_session() as session:
            return session.query(OperatingWindow).filter(
                OperatingWindow.resource_id == resource_id,
                OperatingWindow.date == day,
            ).order_by(OperatingWindow.start_time, OperatingWindow.id).all()

    # Reservations

    def _occupying_overlaps(self, session, resource_id: int, start: datetime, end: datetime, now: datetime):
        return session.query(Reservation).filter(
            Reservation.resource_id == resource_id,
            Reservation.start_instant < end,
            Reservation.end_instant > start,
            occupying_filter(now),
        ).order_by(Reservation.start_instant, Reservation.id)

    def try_insert(
        self,
        candidate: Reservation,
        clock: Callable[[], datetime],
        hold_ttl: Optional[timedelta] = None,
    ) -> Tuple[bool, Union[Reservation, Dict]]:
        """Insert ``candidate`` only if it overlaps no occupying reservation on its resource.

        The overlap check and the insert run inside one per-resource critical
        section, so two racing candidates can never both be accepted. ``clock``
        is read once the section is entered; with ``hold_ttl`` the candidate's
        timestamps and hold expiry are stamped from that reading.
        """
        if candidate.start_instant >= candidate.end_instant:
            return failure(ErrorKind.VALIDATION_ERROR, "start must be before end")

        try:
            with self.locked_session(candidate.resource_id) as (session, resource):
                if resource is None:
                    return failure(ErrorKind.NOT_FOUND, "resource not found")
                if not resource.is_active:
                    return failure(ErrorKind.INACTIVE, "resource is not active")

                now = clock()
                if hold_ttl is not None:
                    candidate.created_at = candidate.updated_at = now
                    candidate.hold_expires_at = now + hold_ttl

                conflicts = self._occupying_overlaps(
                    session, candidate.resource_id,
                    candidate.start_instant, candidate.end_instant, now,
                ).all()
                if conflicts:
                    return failure(
                        ErrorKind.CONFLICT,
                        "slot is already held or booked",
                        conflicting_ids=[r.id for r in conflicts],
                    )

                session.add(candidate)
                session.flush()
                return True, candidate
        except ResourceBusy:
            return failure(ErrorKind.BUSY, "resource is busy, retry shortly")

    def get_reservation(self, reservation_id: int) -> Optional[Reservation]:
        with self.get_session() as session:
            return session.query(Reservation).filter_by(id=reservation_id).first()

    def occupying_reservations(
        self,
        resource_id: int,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> List[Reservation]:
        """Reservations blocking any part of [start, end), ordered by start then id."""
        with self.get_session() as session:
            return self._occupying_overlaps(session, resource_id, start, end, now).all()

    def list_reservations(
        self,
        requester_id: Optional[str] = None,
        resource_id: Optional[int] = None,
        statuses: Optional[Iterable[ReservationStatus]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
        newest_first: bool = False,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Reservation], int]:
        """Filtered, paginated listing; returns ``(items, total_count)``.

        With ``now``, status filters see expired holds as CANCELLED.
        """
        with self.get_session() as session:
            query = session.query(Reservation)
            if requester_id is not None:
                query = query.filter(Reservation.requester_id == requester_id)
            if resource_id is not None:
                query = query.filter(Reservation.resource_id == resource_id)
            if statuses and now is not None:
                query = query.filter(status_filter(statuses, now))
            elif statuses:
                query = query.filter(Reservation.status.in_(list(statuses)))
            if start is not None:
                query = query.filter(Reservation.end_instant > start)
            if end is not None:
                query = query.filter(Reservation.start_instant < end)

            total = query.count()
            if newest_first:
                query = query.order_by(Reservation.start_instant.desc(), Reservation.id.desc())
            else:
                query = query.order_by(Reservation.start_instant, Reservation.id)
            items = query.offset((page - 1) * limit).limit(limit).all()
            return items, total

    def expire_holds(self, now: datetime, resource_id: Optional[int] = None) -> int:
        """Cancel every hold whose TTL has elapsed, one resource critical section at a time.

        Idempotent: only rows still ONHOLD are touched, so a second pass finds nothing.
        Resources whose lock is contended are skipped until the next pass.
        """
        with self.get_session() as session:
            query = session.query(Reservation.resource_id).filter(
                Reservation.status == ReservationStatus.ONHOLD,
                Reservation.hold_expires_at <= now,
            )
            if resource_id is not None:
                query = query.filter(Reservation.resource_id == resource_id)
            resource_ids = sorted({row[0] for row in query.distinct().all()})

        count = 0
        for rid in resource_ids:
            try:
                with self.locked_session(rid) as (session, _):
                    count += session.query(Reservation).filter(
                        Reservation.resource_id == rid,
                        Reservation.status == ReservationStatus.ONHOLD,
                        Reservation.hold_expires_at <= now,
                    ).update(
                        {
                            Reservation.status: ReservationStatus.CANCELLED,
                            Reservation.cancel_reason: CancelReason.EXPIRED,
                            Reservation.hold_expires_at: None,
                            Reservation.updated_at: now,
                        },
                        synchronize_session=False,
                    )
            except ResourceBusy:
                logger.warning(f"Skipped expiry on busy resource {rid}")

        if count > 0:
            logger.info(f"Cancelled {count} expired holds")
        return count

    # Recurring series

    def create_series(self, **fields) -> RecurringSeries:
        with self.get_session() as session:
            series = RecurringSeries(**fields)
            session.add(series)
            session.flush()
            return series

    def get_series(self, series_id: int) -> Optional[RecurringSeries]:
        with self.get_session() as session:
            return session.query(RecurringSeries).filter_by(id=series_id).first()

    def update_series(self, series_id: int, **fields) -> Optional[RecurringSeries]:
        with self.get_session() as session:
            series = session.query(RecurringSeries).filter_by(id=series_id).first()
            if series:
                for name, value in fields.items():
                    setattr(series, name, value)
            return series

    def series_members(self, series_id: int) -> List[Reservation]:
        with self.get_session() as session:
            return session.query(Reservation).filter(
                Reservation.recurring_series_id == series_id,
            ).order_by(Reservation.start_instant, Reservation.id).all()

    def health_check(self) -> Dict:
        """Report database connectivity and resource count; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                resource_count = session.query(Resource).count()
                return {
                    "status": "healthy",
                    "database": "connected",
                    "resources": resource_count,
                }
        except OperationalError as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e),
            }
