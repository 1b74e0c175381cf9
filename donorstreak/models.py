"""Canonical records for the users, donations, hospitals and appointments tables.

Every table item goes through ``from_item``/``to_item`` so that field names,
date formats and status values are decided in one place.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"

PENDING = 'pending'
APPROVED = 'approved'
REJECTED = 'rejected'
USED = 'used'
DONATION_STATUSES = (PENDING, APPROVED, REJECTED, USED)

# Legal moves only; rejected and used are terminal.
TRANSITIONS = {
    PENDING: (APPROVED, REJECTED),
    APPROVED: (USED,),
    REJECTED: (),
    USED: (),
}

BOOKED = 'booked'

DONOR = 'donor'
ADMIN = 'admin'
ROLES = (DONOR, ADMIN)

BLOOD_TYPES = ('A+', 'A-', 'B+', 'B-', 'AB+', 'AB-', 'O+', 'O-')
# Older clients stored these without the Rh sign; still accepted on input.
LEGACY_BLOOD_TYPES = ('A', 'B')


def format_date(value):
    return value.strftime(DATE_FORMAT)


def parse_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value)[:10], DATE_FORMAT).date()


def can_transition(current, new):
    return new in TRANSITIONS.get(current, ())


def counts_toward_limit(donation):
    return donation.status in (APPROVED, USED)


def is_streak(donation):
    return donation.status == APPROVED


@dataclass(frozen=True)
class Donation:
    id: str
    donor_id: str
    hospital: str
    blood_type: str
    date: date
    status: str = PENDING

    @classmethod
    def from_item(cls, item):
        if item.get('status') not in DONATION_STATUSES:
            raise ValueError(f"unknown donation status {item.get('status')!r}")
        return cls(
            id=item['id'],
            donor_id=item['donorId'],
            hospital=item['hospital'],
            blood_type=item['bloodType'],
            date=parse_date(item['date']),
            status=item['status'],
        )

    def to_item(self):
        return {
            'id': self.id,
            'donorId': self.donor_id,
            'hospital': self.hospital,
            'bloodType': self.blood_type,
            'date': format_date(self.date),
            'status': self.status,
        }


@dataclass(frozen=True)
class Appointment:
    id: str
    donor_id: str
    hospital_id: str
    hospital_name: str
    hospital_address: str
    date: date
    status: str = BOOKED

    @classmethod
    def from_item(cls, item):
        return cls(
            id=item['id'],
            donor_id=item['donorId'],
            hospital_id=item['hospitalId'],
            hospital_name=item['hospitalName'],
            hospital_address=item['hospitalAddress'],
            date=parse_date(item['date']),
            status=item['status'],
        )

    def to_item(self):
        return {
            'id': self.id,
            'donorId': self.donor_id,
            'hospitalId': self.hospital_id,
            'hospitalName': self.hospital_name,
            'hospitalAddress': self.hospital_address,
            'date': format_date(self.date),
            'status': self.status,
        }


@dataclass(frozen=True)
class AppUser:
    id: str
    email: str
    name: str
    role: str = DONOR
    is_active: bool = True
    streaks: int = 0
    has_notified_four_donations: bool = False
    # bumped by every approval; guards the annual count against racing approvals
    approval_version: int = 0

    @classmethod
    def from_item(cls, item):
        if item.get('role') not in ROLES:
            raise ValueError(f"unknown role {item.get('role')!r}")
        return cls(
            id=item['id'],
            email=item['email'],
            name=item['name'],
            role=item['role'],
            is_active=bool(item.get('isActive', True)),
            # DynamoDB hands numbers back as Decimal
            streaks=int(item.get('streaks', 0)),
            has_notified_four_donations=bool(item.get('hasNotifiedFourDonations', False)),
            approval_version=int(item.get('approvalVersion', 0)),
        )

    def to_item(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'role': self.role,
            'isActive': self.is_active,
            'streaks': self.streaks,
            'hasNotifiedFourDonations': self.has_notified_four_donations,
            'approvalVersion': self.approval_version,
        }


@dataclass(frozen=True)
class Hospital:
    id: str
    name: str
    address: str

    @classmethod
    def from_item(cls, item):
        return cls(id=item['id'], name=item['name'], address=item['address'])

    def to_item(self):
        return {'id': self.id, 'name': self.name, 'address': self.address}


@dataclass(frozen=True)
class Session:
    """The signed-in caller, passed explicitly into every service call."""
    user_id: str
    role: str
    is_active: bool = True

    @property
    def is_admin(self):
        return self.role == ADMIN

    @classmethod
    def for_user(cls, user):
        return cls(user_id=user.id, role=user.role, is_active=user.is_active)


def decode_all(items, decoder):
    """Decode table items, skipping (and logging) the ones that don't fit."""
    records = []
    for item in items:
        try:
            records.append(decoder(item))
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Failed to decode item %s: %s", item.get('id'), e)
    return records
