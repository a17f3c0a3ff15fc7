"""HTTP entrypoint for the desk reservation backend."""

from flask import Blueprint, Flask, current_app, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
import logging
import atexit
import signal
from datetime import date, datetime, time
from typing import Any, Dict, Optional, Tuple

from booking_service import BookingService
from database_manager import DatabaseManager
from errors import ErrorKind, HTTP_STATUS
from models import BookingType, RecurrencePattern, ReservationStatus, utcnow
from recurrence import RecurrenceExpander
from settings import Settings
from slots import SlotGenerator
from sweeper import ExpirySweeper

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)


class Engine:
    """Everything a request handler needs, wired once per application."""

    def __init__(self, settings: Settings, db: DatabaseManager, clock=utcnow):
        self.settings = settings
        self.db = db
        self.bookings = BookingService(db, settings, clock)
        self.slots = SlotGenerator(db, settings, clock)
        self.recurrence = RecurrenceExpander(self.bookings, db, settings, clock)
        self.sweeper = ExpirySweeper(db, settings.sweep_interval_seconds, clock)


def engine() -> Engine:
    return current_app.extensions['reservation_engine']


# Request parsing helpers

def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": ErrorKind.VALIDATION_ERROR.value, "message": message}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def require_json_object() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[Any, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    if not request.is_json:
        return None, bad_request("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def _parse(parser, raw: Any, field: str, expected: str):
    if not isinstance(raw, str) or not raw.strip():
        return None, bad_request(f"{field} must be {expected}")
    try:
        return parser(raw.strip()), None
    except ValueError:
        return None, bad_request(f"{field} must be {expected}")


def parse_date(raw: Any, field: str):
    return _parse(date.fromisoformat, raw, field, "a date in YYYY-MM-DD format")


def parse_time(raw: Any, field: str):
    return _parse(time.fromisoformat, raw, field, "a time in HH:MM format")


def _parse_iso_instant(value: str) -> datetime:
    # fromisoformat only learned the Z suffix in Python 3.11
    if value[-1:] in ('Z', 'z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


def parse_instant(raw: Any, field: str):
    return _parse(_parse_iso_instant, raw, field, "an ISO 8601 date-time")


def parse_enum(enum_cls, raw: Any, field: str, default=None):
    if raw is None and default is not None:
        return default, None
    try:
        return enum_cls(raw), None
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        return None, bad_request(f"{field} must be one of: {allowed}")


def parse_resource_id(raw: Any):
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        return None, bad_request("resource_id must be a positive integer")
    return raw, None


def optional_text(data: Dict[str, Any], field: str):
    value = data.get(field)
    if value is not None and not isinstance(value, str):
        return None, bad_request(f"{field} must be a string")
    return value, None


def pagination():
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 20, type=int)
    return page, limit


def respond(result, success_status: int = 200):
    """Translate an engine ``(ok, payload)`` result into an HTTP response."""
    ok, payload = result
    if ok:
        return jsonify(payload), success_status
    kind = ErrorKind(payload["error"])
    response = jsonify(payload)
    response.status_code = HTTP_STATUS[kind]
    if kind == ErrorKind.BUSY:
        response.headers['Retry-After'] = '1'
    return response


# Resources and operating hours

@api.route('/resources', methods=['POST'])
def create_resource():
    """Register a bookable resource."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    resource_id, error = parse_resource_id(data.get('id'))
    if error:
        return error
    name, error = optional_text(data, 'name')
    if error:
        return error
    is_active = data.get('is_active', True)
    if not isinstance(is_active, bool):
        return bad_request("is_active must be a boolean")
    max_duration = data.get('max_booking_duration')
    if max_duration is not None and (isinstance(max_duration, bool) or not isinstance(max_duration, int)
                                     or max_duration < 1):
        return bad_request("max_booking_duration must be a positive number of minutes")

    success, message = engine().db.initialize_resource(resource_id, name, is_active, max_duration)
    if success:
        logger.info(f"Initialized resource {resource_id}")
        return jsonify({"message": message, "resource": engine().db.get_resource(resource_id).to_dict()}), 201
    return jsonify({"error": ErrorKind.CONFLICT.value, "message": message}), 409


@api.route('/resources/<int:resource_id>', methods=['PATCH'])
def update_resource(resource_id):
    """Toggle a resource's active flag."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    is_active = data.get('is_active')
    if not isinstance(is_active, bool):
        return bad_request("is_active must be a boolean")

    resource = engine().db.set_resource_active(resource_id, is_active)
    if resource is None:
        return jsonify({"error": ErrorKind.NOT_FOUND.value, "message": "resource not found"}), 404
    return jsonify(resource.to_dict())


@api.route('/resources/<int:resource_id>/windows', methods=['POST'])
def add_operating_window(resource_id):
    """Declare an operating window for a resource on one date."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    day, error = parse_date(data.get('date'), 'date')
    if error:
        return error
    start_time, error = parse_time(data.get('start_time'), 'start_time')
    if error:
        return error
    end_time, error = parse_time(data.get('end_time'), 'end_time')
    if error:
        return error
    is_available = data.get('is_available', True)
    if not isinstance(is_available, bool):
        return bad_request("is_available must be a boolean")

    return respond(engine().db.add_operating_window(resource_id, day, start_time, end_time, is_available), 201)


@api.route('/resources/<int:resource_id>/windows', methods=['GET'])
def list_operating_windows(resource_id):
    day, error = parse_date(request.args.get('date'), 'date')
    if error:
        return error
    windows = engine().db.get_operating_windows(resource_id, day)
    return jsonify([w.to_dict() for w in windows])


@api.route('/resources/<int:resource_id>/slots', methods=['GET'])
def get_slots(resource_id):
    """Return the availability timeline of a resource for one date."""
    day, error = parse_date(request.args.get('date'), 'date')
    if error:
        return error
    return respond(engine().slots.generate(resource_id, day))


# Reservations

@api.route('/reservations/hold', methods=['POST'])
def hold_reservation():
    """Place a temporary hold on an interval (step one of booking)."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    resource_id, error = parse_resource_id(data.get('resource_id'))
    if error:
        return error
    requester_id = data.get('requester_id')
    if not isinstance(requester_id, str) or not requester_id.strip():
        return bad_request("requester_id must be a non-empty string")
    start, error = parse_instant(data.get('start'), 'start')
    if error:
        return error
    end, error = parse_instant(data.get('end'), 'end')
    if error:
        return error
    booking_type, error = parse_enum(BookingType, data.get('booking_type'), 'booking_type', BookingType.HOURLY)
    if error:
        return error
    reason, error = optional_text(data, 'reason')
    if error:
        return error
    notes, error = optional_text(data, 'notes')
    if error:
        return error

    bookings = engine().bookings
    ok, result = bookings.hold(resource_id, requester_id.strip(), start, end,
                               booking_type=booking_type, reason=reason, notes=notes)
    if not ok and result["error"] == ErrorKind.CONFLICT.value:
        # What the requester saw is stale; hand back the current timeline.
        local_day = bookings.localize(start).astimezone(engine().settings.tzinfo).date()
        slots_ok, slots = engine().slots.generate(resource_id, local_day)
        if slots_ok:
            result["slots"] = slots
    return respond((ok, result), 201)


@api.route('/reservations/<int:reservation_id>/confirm', methods=['PATCH'])
def confirm_reservation(reservation_id):
    """Convert an active hold into a confirmed reservation (step two)."""
    return respond(engine().bookings.confirm(reservation_id))


@api.route('/reservations/<int:reservation_id>', methods=['DELETE'])
def cancel_reservation(reservation_id):
    ok, result = engine().bookings.cancel(reservation_id)
    if ok:
        return jsonify({"message": "reservation cancelled", "reservation": result}), 200
    return respond((ok, result))


@api.route('/reservations/<int:reservation_id>/complete', methods=['PATCH'])
def complete_reservation(reservation_id):
    return respond(engine().bookings.mark_completed(reservation_id))


@api.route('/reservations/<int:reservation_id>/no-show', methods=['PATCH'])
def no_show_reservation(reservation_id):
    return respond(engine().bookings.mark_no_show(reservation_id))


@api.route('/reservations/<int:reservation_id>', methods=['GET'])
def get_reservation(reservation_id):
    return respond(engine().bookings.get_reservation(reservation_id))


@api.route('/reservations/<int:reservation_id>', methods=['PUT'])
def update_reservation(reservation_id):
    """Edit the free-text fields of a reservation."""
    data, error_response = require_json_object()
    if error_response:
        return error_response
    reason, error = optional_text(data, 'reason')
    if error:
        return error
    notes, error = optional_text(data, 'notes')
    if error:
        return error
    return respond(engine().bookings.update_details(reservation_id, reason=reason, notes=notes))


@api.route('/reservations/<int:reservation_id>/detach', methods=['DELETE'])
def detach_reservation(reservation_id):
    ok, result = engine().bookings.detach(reservation_id)
    if ok:
        return jsonify({"message": "reservation detached", "reservation": result}), 200
    return respond((ok, result))


@api.route('/reservations', methods=['GET'])
def list_reservations():
    args = request.args
    status = None
    if 'status' in args:
        status, error = parse_enum(ReservationStatus, args['status'], 'status')
        if error:
            return error
    start_date = end_date = None
    if 'start_date' in args:
        start_date, error = parse_date(args['start_date'], 'start_date')
        if error:
            return error
    if 'end_date' in args:
        end_date, error = parse_date(args['end_date'], 'end_date')
        if error:
            return error
    page, limit = pagination()

    return respond(engine().bookings.list_reservations(
        requester_id=args.get('requester_id'),
        resource_id=args.get('resource_id', type=int),
        status=status,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    ))


def _requester_listing(method):
    requester_id = request.args.get('requester_id', '').strip()
    if not requester_id:
        return bad_request("requester_id query parameter is required")
    page, limit = pagination()
    if page < 1 or not 1 <= limit <= 100:
        return bad_request("page must be >= 1 and limit between 1 and 100")
    return respond(method(requester_id, page=page, limit=limit))


@api.route('/reservations/upcoming', methods=['GET'])
def upcoming_reservations():
    return _requester_listing(engine().bookings.upcoming)


@api.route('/reservations/history', methods=['GET'])
def reservation_history():
    return _requester_listing(engine().bookings.history)


@api.route('/reservations/sweep-expired', methods=['POST'])
def sweep_expired():
    """Administrative trigger for the expiry sweep."""
    return respond(engine().bookings.sweep_expired())


# Recurring series

@api.route('/recurring', methods=['POST'])
def create_recurring():
    """Expand a recurring request into one hold per weekday date."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    resource_id, error = parse_resource_id(data.get('resource_id'))
    if error:
        return error
    requester_id = data.get('requester_id')
    if not isinstance(requester_id, str) or not requester_id.strip():
        return bad_request("requester_id must be a non-empty string")
    first_date, error = parse_date(data.get('first_date'), 'first_date')
    if error:
        return error
    end_date, error = parse_date(data.get('end_date'), 'end_date')
    if error:
        return error
    pattern, error = parse_enum(RecurrencePattern, data.get('pattern'), 'pattern')
    if error:
        return error
    start_time, error = parse_time(data.get('start_time'), 'start_time')
    if error:
        return error
    end_time, error = parse_time(data.get('end_time'), 'end_time')
    if error:
        return error
    days_of_week = data.get('days_of_week')
    if days_of_week is not None and not isinstance(days_of_week, list):
        return bad_request("days_of_week must be a list of integers")
    booking_type, error = parse_enum(BookingType, data.get('booking_type'), 'booking_type', BookingType.HOURLY)
    if error:
        return error
    reason, error = optional_text(data, 'reason')
    if error:
        return error

    return respond(engine().recurrence.expand(
        resource_id, requester_id.strip(), first_date, end_date, pattern,
        start_time, end_time,
        days_of_week=days_of_week,
        booking_type=booking_type,
        reason=reason,
    ), 201)


@api.route('/recurring/<int:series_id>', methods=['GET'])
def get_recurring(series_id):
    return respond(engine().recurrence.get_series(series_id))


@api.route('/recurring/<int:series_id>', methods=['DELETE'])
def cancel_recurring(series_id):
    return respond(engine().recurrence.cancel_series(series_id))


@api.route('/recurring/<int:series_id>', methods=['PUT'])
def update_recurring(series_id):
    """Change a series' end date or reason."""
    data, error_response = require_json_object()
    if error_response:
        return error_response
    end_date = None
    if data.get('end_date') is not None:
        end_date, error = parse_date(data['end_date'], 'end_date')
        if error:
            return error
    reason, error = optional_text(data, 'reason')
    if error:
        return error
    return respond(engine().recurrence.update_series(series_id, end_date=end_date, reason=reason))


@api.route('/health', methods=['GET'])
def health_check():
    """Expose the database connectivity and resource count."""
    return jsonify(engine().db.health_check())


def create_app(settings: Optional[Settings] = None, clock=utcnow, start_sweeper: Optional[bool] = None) -> Flask:
    """Application factory; ``gunicorn 'app:create_app()'`` in production."""
    settings = settings or Settings.from_env()
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not configured")

    app = Flask(__name__)
    CORS(app)

    db = DatabaseManager(settings.database_url, settings.lock_timeout_seconds)
    reservation_engine = Engine(settings, db, clock)
    app.extensions['reservation_engine'] = reservation_engine
    app.register_blueprint(api)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"error": e.name.lower().replace(' ', '_'), "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify({"error": "internal_error", "message": "internal server error"}), 500

    if start_sweeper is None:
        start_sweeper = settings.run_sweeper
    if start_sweeper:
        # Kick off expiry in a dedicated daemon so it never blocks HTTP traffic
        reservation_engine.sweeper.start()
        atexit.register(reservation_engine.sweeper.stop)

    return app


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    settings = Settings.from_env()
    app = create_app(settings)
    sweeper = app.extensions['reservation_engine'].sweeper

    def stop_background_sweeper(*args):
        """Signal handler to terminate the sweeper gracefully."""
        sweeper.stop()
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, stop_background_sweeper)

    logger.info(f"""
    ================================
    DESK RESERVATION ENGINE
    ================================
    Hold TTL: {settings.hold_ttl_seconds}s
    Timezone: {settings.timezone}
    Concurrency: per-resource lock + SELECT FOR UPDATE
    ================================
    """)

    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)
