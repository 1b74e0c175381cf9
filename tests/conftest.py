import os
from datetime import date, datetime

import boto3
import pytest
from moto import mock_aws

# Mock Credentials (Must be set BEFORE any boto3 client is created)
os.environ['AWS_ACCESS_KEY_ID'] = 'testing'
os.environ['AWS_SECRET_ACCESS_KEY'] = 'testing'
os.environ['AWS_SECURITY_TOKEN'] = 'testing'
os.environ['AWS_SESSION_TOKEN'] = 'testing'
os.environ['AWS_DEFAULT_REGION'] = 'us-east-1'

from donorstreak.models import ADMIN, DONOR, AppUser, Donation, Session
from donorstreak.services import BookingService, DonationService, UserService
from donorstreak.store import DynamoStore, create_tables
from init_db import seed_hospitals

NOW = datetime(2026, 3, 1, 9, 30)


def fixed_clock():
    return NOW


class RecordingNotifier:

    def __init__(self):
        self.sent = []

    def send(self, subject, message):
        self.sent.append((subject, message))
        return True


@pytest.fixture
def aws():
    with mock_aws():
        yield


@pytest.fixture
def store(aws):
    dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
    create_tables(dynamodb)
    store = DynamoStore(dynamodb=dynamodb)
    seed_hospitals(store)
    store.create_user(AppUser(id='donor1', email='donor1@example.com', name='Dana Donor'))
    store.create_user(AppUser(id='donor2', email='donor2@example.com', name='Sam Second'))
    store.create_user(AppUser(id='admin1', email='admin@example.com', name='Alex Admin', role=ADMIN))
    return store


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def donor():
    return Session(user_id='donor1', role=DONOR)


@pytest.fixture
def admin():
    return Session(user_id='admin1', role=ADMIN)


@pytest.fixture
def donations(store, notifier):
    return DonationService(store, notifier, clock=fixed_clock)


@pytest.fixture
def bookings(store, notifier):
    return BookingService(store, notifier, clock=fixed_clock)


@pytest.fixture
def users(store):
    return UserService(store)


@pytest.fixture
def add_donation(store):
    """Write a donation straight to the table, bypassing the lifecycle."""
    counter = {'n': 0}

    def _add(status, when, donor_id='donor1', hospital='City Hospital', blood_type='O+'):
        counter['n'] += 1
        donation = Donation(
            id=f"don-{counter['n']:03d}",
            donor_id=donor_id,
            hospital=hospital,
            blood_type=blood_type,
            date=date.fromisoformat(when),
            status=status,
        )
        store.create_donation(donation)
        return donation

    return _add
