"""Donation lifecycle, appointment booking and account administration.

Every operation takes an explicit :class:`~donorstreak.models.Session` for the
caller. The annual limit and streak rules come from :mod:`donorstreak.policy`
and are applied here the same way on every path.
"""
import logging
import uuid
from dataclasses import replace
from datetime import datetime

from donorstreak.errors import (
    InsufficientStreaks, InvalidTransition, LimitExceeded, NotFound, PartialFailure,
    PermissionDenied, RepositoryError, Unauthenticated, ValidationError,
)
from donorstreak.models import (
    ADMIN, APPROVED, BLOOD_TYPES, DONOR, LEGACY_BLOOD_TYPES, PENDING, REJECTED, USED,
    Appointment, AppUser, Donation, Session, can_transition, parse_date,
)
from donorstreak.notifications import milestone_message, reconciliation_message
from donorstreak.policy import (
    ANNUAL_LIMIT, available_streaks, can_accept_donation, donations_in_year, streak_order,
    year_bounds,
)

logger = logging.getLogger(__name__)

COUNTED_STATUSES = (APPROVED, USED)
# approvals for one donor that lose the version race are recounted this many times
APPROVAL_ATTEMPTS = 3


def require_active(session):
    if session is None:
        raise Unauthenticated("User not authenticated. Please log in.")
    if not session.is_active:
        raise PermissionDenied("This account has been disabled.")


def require_admin(session, action="perform this action"):
    require_active(session)
    if not session.is_admin:
        logger.warning("Non-admin %s attempted to %s", session.user_id, action)
        raise PermissionDenied(f"You do not have permission to {action}.")


def _as_date(value, field):
    try:
        return parse_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format.")


class DonationService:
    """Submit, approve and reject donations; report limits and streaks."""

    def __init__(self, store, notifier=None, limit=ANNUAL_LIMIT, clock=datetime.now):
        self.store = store
        self.notifier = notifier
        self.limit = limit
        self.clock = clock

    def _counted_in_year(self, donor_id, year):
        return self.store.query_donations(
            donor_id=donor_id, date_range=year_bounds(year), statuses=COUNTED_STATUSES)

    def check_limit(self, session, candidate_date=None, donor_id=None):
        require_active(session)
        donor_id = donor_id or session.user_id
        if donor_id != session.user_id and not session.is_admin:
            raise PermissionDenied("You can only check your own donation limit.")
        candidate_date = candidate_date or self.clock().date()
        existing = self._counted_in_year(donor_id, candidate_date.year)
        return can_accept_donation(donor_id, candidate_date, existing, now=self.clock(), limit=self.limit)

    def available_streaks(self, session, donor_id=None):
        require_active(session)
        donor_id = donor_id or session.user_id
        if donor_id != session.user_id and not session.is_admin:
            raise PermissionDenied("You can only view your own streaks.")
        return available_streaks(donor_id, self.store.query_donations(donor_id=donor_id, statuses=[APPROVED]))

    def submit(self, session, hospital, blood_type, donation_date, donor_id=None):
        require_active(session)
        donor_id = donor_id or session.user_id
        if donor_id != session.user_id:
            require_admin(session, "log donations for other donors")
            donor = self.store.get_user(donor_id)
            if donor is None:
                raise NotFound(f"Donor {donor_id} not found.")
            if not donor.is_active:
                raise PermissionDenied(f"Donor {donor_id} is disabled.")

        hospital = (hospital or '').strip()
        if not hospital:
            raise ValidationError("Hospital must not be empty.")
        if blood_type in LEGACY_BLOOD_TYPES:
            logger.warning("Accepting legacy blood type %r for donor %s", blood_type, donor_id)
        elif blood_type not in BLOOD_TYPES:
            raise ValidationError(f"Blood type must be one of {', '.join(BLOOD_TYPES)}.")
        donation_date = _as_date(donation_date, "Donation date")
        today = self.clock().date()
        if donation_date > today:
            raise ValidationError("Donation date cannot be in the future.")

        # Advisory only: approval re-checks against the donation's own year.
        decision = self.check_limit(session, today, donor_id)
        if not decision.allowed:
            logger.warning("Donor %s submitted with %d counted donations in %d",
                           donor_id, decision.counted, decision.year)
            raise LimitExceeded(decision.reason, decision.year, decision.retry_after,
                                retry_message=decision.retry_message)

        donation = Donation(
            id=str(uuid.uuid4()),
            donor_id=donor_id,
            hospital=hospital,
            blood_type=blood_type,
            date=donation_date,
            status=PENDING,
        )
        self.store.create_donation(donation)
        logger.info("Submitted donation %s for donor %s", donation.id, donor_id)
        return donation

    def _for_transition(self, donation_id, new_status):
        donation = self.store.get_donation(donation_id)
        if not can_transition(donation.status, new_status):
            raise InvalidTransition(
                f"Donation {donation_id} is {donation.status} and cannot become {new_status}.")
        return donation

    def approve(self, session, donation_id):
        require_admin(session, "approve donations")
        donation = self._for_transition(donation_id, APPROVED)

        for _ in range(APPROVAL_ATTEMPTS):
            # Read the version before counting; the write only lands if it is unchanged.
            donor = self.store.get_user(donation.donor_id)
            if donor is None:
                raise NotFound(f"Donor {donation.donor_id} not found.")
            others = [d for d in self._counted_in_year(donation.donor_id, donation.date.year)
                      if d.id != donation.id]
            decision = can_accept_donation(donation.donor_id, donation.date, others,
                                           now=self.clock(), limit=self.limit)
            if not decision.allowed:
                logger.warning("Cannot approve %s: donor %s already has %d donations in %d",
                               donation_id, donation.donor_id, decision.counted, decision.year)
                raise LimitExceeded(decision.reason, decision.year, decision.retry_after,
                                    retry_message=decision.retry_message)
            if self.store.approve_donation(donation_id, donation.donor_id, donor.approval_version):
                break
            logger.info("Another approval for donor %s landed first; recounting", donation.donor_id)
        else:
            raise RepositoryError(
                f"Donation {donation_id} could not be approved: donor {donation.donor_id} "
                "is being approved concurrently. Try again.")

        logger.info("Approved donation %s for donor %s", donation_id, donation.donor_id)
        try:
            self.check_milestone(donation.donor_id)
        except RepositoryError as e:
            logger.error("Milestone check after approving %s failed: %s", donation_id, e)
        return replace(donation, status=APPROVED)

    def reject(self, session, donation_id):
        require_admin(session, "reject donations")
        donation = self._for_transition(donation_id, REJECTED)
        self.store.update_status(donation_id, PENDING, REJECTED)
        logger.info("Rejected donation %s for donor %s", donation_id, donation.donor_id)
        return replace(donation, status=REJECTED)

    def list_donations(self, session):
        require_active(session)
        donations = self.store.query_donations(donor_id=session.user_id)
        return sorted(donations, key=lambda d: d.date, reverse=True)

    def list_by_status(self, session, status=PENDING):
        require_admin(session, "review donations")
        return sorted(self.store.query_donations(statuses=[status]), key=lambda d: d.date)

    def check_milestone(self, donor_id):
        """Notify the donor once when this year's counted donations reach the limit.

        The flag is only set after the message goes out, so a failed send is
        retried on the next check.
        """
        year = self.clock().year
        counted = donations_in_year(donor_id, year, self._counted_in_year(donor_id, year))
        if len(counted) < self.limit:
            return False
        user = self.store.get_user(donor_id)
        if user is None or user.has_notified_four_donations:
            return False
        if self.notifier is None or not self.notifier.send(
                "Donation Milestone", milestone_message(year, streak_order(counted))):
            logger.warning("Milestone notice for donor %s was not delivered; will retry", donor_id)
            return False
        self.store.set_milestone_flag(donor_id, True)
        logger.info("Donor %s reached %d donations in %d", donor_id, len(counted), year)
        return True

    def acknowledge_milestone(self, session):
        require_active(session)
        self.store.set_milestone_flag(session.user_id, False)


class BookingService:
    """Book appointments by spending one streak (one approved donation) each."""

    def __init__(self, store, notifier=None, transactional=True, clock=datetime.now):
        self.store = store
        self.notifier = notifier
        self.transactional = transactional
        self.clock = clock

    def book(self, session, hospital_id, appointment_date, cached_streaks=None):
        require_active(session)
        donor_id = session.user_id
        if not hospital_id:
            raise ValidationError("Please select a hospital.")
        appointment_date = _as_date(appointment_date, "Appointment date")
        if appointment_date < self.clock().date():
            raise ValidationError("Appointment date cannot be in the past.")
        if cached_streaks is not None and cached_streaks < 1:
            raise InsufficientStreaks(
                f"You need at least one streak to book an appointment. Current streaks: {cached_streaks}")

        hospital = self.store.get_hospital(hospital_id)
        # Re-read at booking time; the caller's streak count may be stale.
        candidates = streak_order(self.store.query_donations(donor_id=donor_id, statuses=[APPROVED]))
        if not candidates:
            raise InsufficientStreaks("No approved donations available to use as streaks.")

        appointment = Appointment(
            id=str(uuid.uuid4()),
            donor_id=donor_id,
            hospital_id=hospital.id,
            hospital_name=hospital.name,
            hospital_address=hospital.address,
            date=appointment_date,
        )
        if self.transactional:
            return self._book_atomically(appointment, candidates)
        return self._book_in_two_steps(appointment, candidates)

    def _book_atomically(self, appointment, candidates):
        for donation in candidates:
            if self.store.book_with_donation(appointment, donation.id):
                logger.info("Booked appointment %s using donation %s", appointment.id, donation.id)
                return appointment
            logger.info("Donation %s was spent concurrently, trying the next one", donation.id)
        raise InsufficientStreaks("No approved donations available to use as streaks.")

    def _book_in_two_steps(self, appointment, candidates):
        self.store.create_appointment(appointment)
        reason = "no approved donation left to mark used"
        for donation in candidates:
            try:
                self.store.update_status(donation.id, APPROVED, USED)
            except InvalidTransition:
                logger.info("Donation %s was spent concurrently, trying the next one", donation.id)
                continue
            except RepositoryError as e:
                reason = e.message
                return self._partial_failure(appointment, donation.id, reason)
            logger.info("Booked appointment %s using donation %s", appointment.id, donation.id)
            return appointment
        return self._partial_failure(appointment, None, reason)

    def _partial_failure(self, appointment, donation_id, reason):
        logger.error("Partial booking needs reconciliation: appointment=%s donor=%s donation=%s: %s",
                     appointment.id, appointment.donor_id, donation_id, reason)
        if self.notifier is not None:
            self.notifier.send("Booking Reconciliation Needed",
                               reconciliation_message(appointment, donation_id, reason))
        raise PartialFailure(
            "Appointment booked, but failed to update streaks: " + reason,
            appointment_id=appointment.id,
            donation_id=donation_id,
        )

    def list_appointments(self, session):
        require_active(session)
        return sorted(self.store.list_appointments(session.user_id), key=lambda a: a.date)


class UserService:

    def __init__(self, store):
        self.store = store

    def load_session(self, user_id):
        if not user_id:
            raise Unauthenticated("User not authenticated. Please log in.")
        user = self.store.get_user(user_id)
        if user is None:
            raise Unauthenticated("User not authenticated. Please log in.")
        return Session.for_user(user)

    def register_donor(self, user_id, email, name, role=DONOR):
        if role != DONOR:
            raise PermissionDenied("Only donors can create accounts.")
        if not user_id:
            raise Unauthenticated("User not authenticated. Please log in.")
        email = (email or '').strip()
        if '@' not in email:
            raise ValidationError("A valid email address is required.")
        user = AppUser(id=user_id, email=email, name=(name or '').strip())
        self.store.create_user(user)
        logger.info("Registered donor %s", user_id)
        return user

    def list_users(self, session):
        require_admin(session, "list users")
        return sorted(self.store.list_users(), key=lambda u: u.name)

    def toggle_user_status(self, session, user_id):
        require_admin(session, "toggle user status")
        if user_id == session.user_id:
            logger.warning("Admin %s attempted to toggle their own status", user_id)
            raise PermissionDenied("You cannot toggle your own account status.")
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found.")
        self.store.set_user_active(user_id, user.is_active, not user.is_active)
        logger.info("Toggled user %s to isActive=%s", user_id, not user.is_active)
        return replace(user, is_active=not user.is_active)


def donor_dashboard(session, donations, bookings):
    """Everything the donor home screen shows, in one read."""
    mine = donations.list_donations(session)
    decision = donations.check_limit(session)
    try:
        donations.check_milestone(session.user_id)
    except RepositoryError as e:
        logger.error("Milestone check for %s failed: %s", session.user_id, e)
    user = donations.store.get_user(session.user_id)
    return {
        'donations': mine,
        'appointments': bookings.list_appointments(session),
        'streaks': available_streaks(session.user_id, mine),
        'limit': decision,
        'milestone': bool(user and user.has_notified_four_donations),
    }


def admin_dashboard(session, donations, users):
    everyone = users.list_users(session)
    return {
        'users': everyone,
        'pending': donations.list_by_status(session, PENDING),
        'active_donors': [u for u in everyone if u.is_active and u.role != ADMIN],
        'hospitals': donations.store.list_hospitals(),
    }
