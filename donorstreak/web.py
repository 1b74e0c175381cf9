import logging

from flask import Flask, jsonify, request, session

from donorstreak.config import load_config
from donorstreak.errors import DonorStreakError, ValidationError
from donorstreak.models import PENDING, DONATION_STATUSES, parse_date
from donorstreak.notifications import SnsNotifier
from donorstreak.services import (
    BookingService, DonationService, UserService, admin_dashboard, donor_dashboard,
)
from donorstreak.store import DynamoStore


def _limit_to_dict(decision):
    data = {'allowed': decision.allowed, 'year': decision.year, 'counted': decision.counted}
    if not decision.allowed:
        data['reason'] = decision.reason
        data['retry_after_seconds'] = int(decision.retry_after.total_seconds())
        data['retry_message'] = decision.retry_message
    return data


def _items(records):
    return [r.to_item() for r in records]


def _form():
    data = request.get_json(silent=True)
    if data is None:
        return request.form
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _date_arg(value, field):
    try:
        return parse_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format.")


def create_app(config=None, store=None, notifier=None, clock=None):
    """Flask application factory"""
    settings = load_config(config)
    logging.basicConfig(level=settings['LOG_LEVEL'])

    app = Flask(__name__)
    app.secret_key = settings['SECRET_KEY']
    app.config.update(settings)

    store = store or DynamoStore(region=settings['AWS_REGION'], prefix=settings['TABLE_PREFIX'])
    notifier = notifier or SnsNotifier(settings['SNS_TOPIC_ARN'], region=settings['AWS_REGION'])
    clock_kwargs = {'clock': clock} if clock else {}

    donations = DonationService(store, notifier, limit=settings['ANNUAL_LIMIT'], **clock_kwargs)
    bookings = BookingService(store, notifier, transactional=settings['BOOKING_TRANSACTIONS'],
                              **clock_kwargs)
    users = UserService(store)
    app.extensions['donorstreak'] = {'donations': donations, 'bookings': bookings, 'users': users}

    def current_session():
        # The auth provider signs the caller in and leaves their id here.
        return users.load_session(session.get('user_id'))

    @app.errorhandler(DonorStreakError)
    def handle_error(e):
        return jsonify(e.to_dict()), e.status_code

    # --- PUBLIC ROUTES ---

    @app.route('/api/hospitals')
    def hospitals():
        return jsonify(_items(store.list_hospitals()))

    @app.route('/api/register', methods=['POST'])
    def register():
        data = _form()
        user = users.register_donor(session.get('user_id'), data.get('email'), data.get('name'),
                                    data.get('role', 'donor'))
        return jsonify(user.to_item()), 201

    @app.route('/logout')
    def logout():
        session.clear()
        return jsonify({'message': 'Signed out.'})

    # --- DONOR FEATURES ---

    @app.route('/api/donations', methods=['GET', 'POST'])
    def donations_view():
        caller = current_session()
        if request.method == 'GET':
            return jsonify(_items(donations.list_donations(caller)))
        data = _form()
        donation = donations.submit(caller, data.get('hospital'), data.get('bloodType'),
                                    data.get('date'), donor_id=data.get('donorId'))
        return jsonify(donation.to_item()), 201

    @app.route('/api/donations/limit')
    def donation_limit():
        caller = current_session()
        candidate = request.args.get('date')
        candidate = _date_arg(candidate, 'date') if candidate else None
        decision = donations.check_limit(caller, candidate, request.args.get('donorId'))
        return jsonify(_limit_to_dict(decision))

    @app.route('/api/streaks')
    def streaks():
        caller = current_session()
        return jsonify({'streaks': donations.available_streaks(caller, request.args.get('donorId'))})

    @app.route('/api/appointments', methods=['GET', 'POST'])
    def appointments_view():
        caller = current_session()
        if request.method == 'GET':
            return jsonify(_items(bookings.list_appointments(caller)))
        data = _form()
        cached = data.get('streaks')
        if cached is not None:
            try:
                cached = int(cached)
            except (TypeError, ValueError):
                raise ValidationError("streaks must be a whole number.")
        appointment = bookings.book(caller, data.get('hospitalId'), data.get('date'),
                                    cached_streaks=cached)
        return jsonify({'appointmentId': appointment.id, **appointment.to_item()}), 201

    @app.route('/api/dashboard')
    def dashboard():
        caller = current_session()
        data = donor_dashboard(caller, donations, bookings)
        return jsonify({
            'donations': _items(data['donations']),
            'appointments': _items(data['appointments']),
            'streaks': data['streaks'],
            'limit': _limit_to_dict(data['limit']),
            'milestone': data['milestone'],
        })

    @app.route('/api/notifications/milestone/ack', methods=['POST'])
    def acknowledge_milestone():
        donations.acknowledge_milestone(current_session())
        return jsonify({'message': 'Notification cleared.'})

    # --- ADMIN FEATURES ---

    @app.route('/api/admin/dashboard')
    def admin_dashboard_view():
        data = admin_dashboard(current_session(), donations, users)
        return jsonify({key: _items(value) for key, value in data.items()})

    @app.route('/api/admin/donations')
    def admin_donations():
        status = request.args.get('status', PENDING)
        if status not in DONATION_STATUSES:
            raise ValidationError(f"Unknown status {status!r}.")
        return jsonify(_items(donations.list_by_status(current_session(), status)))

    @app.route('/api/admin/donations/<donation_id>/approve', methods=['POST'])
    def approve_donation(donation_id):
        donation = donations.approve(current_session(), donation_id)
        return jsonify({'message': 'Donation approved successfully.', **donation.to_item()})

    @app.route('/api/admin/donations/<donation_id>/reject', methods=['POST'])
    def reject_donation(donation_id):
        donation = donations.reject(current_session(), donation_id)
        return jsonify({'message': 'Donation rejected successfully.', **donation.to_item()})

    @app.route('/api/admin/users/<user_id>/toggle', methods=['POST'])
    def toggle_user(user_id):
        user = users.toggle_user_status(current_session(), user_id)
        state = 'enabled' if user.is_active else 'disabled'
        return jsonify({'message': f"User status {state} successfully.", **user.to_item()})

    return app
