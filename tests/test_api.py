import pytest

from donorstreak.errors import RepositoryError
from donorstreak.web import create_app


@pytest.fixture
def app(store, notifier, donations):
    app = create_app({'SECRET_KEY': 'testing', 'LOG_LEVEL': 'WARNING'},
                     store=store, notifier=notifier, clock=donations.clock)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def sign_in(client, user_id):
    with client.session_transaction() as sess:
        sess['user_id'] = user_id


def test_requests_without_session_are_unauthenticated(client):
    res = client.get('/api/streaks')
    assert res.status_code == 401
    assert res.get_json()['error'] == 'Unauthenticated'


def test_hospitals_are_public(client):
    res = client.get('/api/hospitals')
    assert res.status_code == 200
    assert sorted(h['name'] for h in res.get_json()) == [
        'City Hospital', 'General Medical Center', 'Hope Clinic']


def test_donation_to_appointment_flow(client):
    sign_in(client, 'donor1')
    res = client.post('/api/donations', json={
        'hospital': 'City Hospital', 'bloodType': 'O-', 'date': '2026-02-01'})
    assert res.status_code == 201
    donation_id = res.get_json()['id']
    assert res.get_json()['status'] == 'pending'

    sign_in(client, 'admin1')
    pending = client.get('/api/admin/donations').get_json()
    assert [d['id'] for d in pending] == [donation_id]
    res = client.post(f'/api/admin/donations/{donation_id}/approve')
    assert res.status_code == 200
    assert res.get_json()['status'] == 'approved'

    sign_in(client, 'donor1')
    assert client.get('/api/streaks').get_json() == {'streaks': 1}
    res = client.post('/api/appointments', json={
        'hospitalId': 'hospital3', 'date': '2026-03-15', 'streaks': 1})
    assert res.status_code == 201
    body = res.get_json()
    assert body['appointmentId'] == body['id']
    assert body['hospitalName'] == 'Hope Clinic'
    assert client.get('/api/streaks').get_json() == {'streaks': 0}

    res = client.post('/api/appointments', json={'hospitalId': 'hospital3', 'date': '2026-03-16'})
    assert res.status_code == 409
    assert res.get_json()['error'] == 'InsufficientStreaks'

    assert [d['status'] for d in client.get('/api/donations').get_json()] == ['used']
    assert len(client.get('/api/appointments').get_json()) == 1


def test_donor_cannot_approve(client, add_donation):
    pending = add_donation('pending', '2026-01-01')
    sign_in(client, 'donor1')
    res = client.post(f'/api/admin/donations/{pending.id}/approve')
    assert res.status_code == 403
    assert res.get_json()['error'] == 'PermissionDenied'


def test_approval_over_the_limit_reports_countdown(client, store, add_donation):
    for month in range(1, 5):
        add_donation('approved', f'2025-0{month}-01')
    pending = add_donation('pending', '2025-06-01')
    sign_in(client, 'admin1')
    res = client.post(f'/api/admin/donations/{pending.id}/approve')
    assert res.status_code == 409
    body = res.get_json()
    assert body['error'] == 'LimitExceeded'
    assert body['year'] == 2025
    assert 'January 1st, 2026' in body['message']
    assert store.get_donation(pending.id).status == 'pending'


def test_reject_endpoint(client, store, add_donation):
    pending = add_donation('pending', '2026-01-01')
    sign_in(client, 'admin1')
    res = client.post(f'/api/admin/donations/{pending.id}/reject')
    assert res.status_code == 200
    assert store.get_donation(pending.id).status == 'rejected'
    res = client.post(f'/api/admin/donations/{pending.id}/reject')
    assert res.status_code == 409
    assert res.get_json()['error'] == 'InvalidTransition'


def test_limit_endpoint(client, add_donation):
    for day in range(1, 5):
        add_donation('approved', f'2026-01-{day:02d}')
    sign_in(client, 'donor1')
    body = client.get('/api/donations/limit').get_json()
    assert body['allowed'] is False
    assert body['counted'] == 4
    assert 'January 1st, 2027' in body['reason']
    assert client.get('/api/donations/limit?date=2025-05-05').get_json()['allowed'] is True
    assert client.get('/api/donations/limit?date=May').status_code == 400


def test_invalid_submission_is_a_bad_request(client):
    sign_in(client, 'donor1')
    res = client.post('/api/donations', json={
        'hospital': 'City Hospital', 'bloodType': 'Z', 'date': '2026-02-01'})
    assert res.status_code == 400
    assert res.get_json()['error'] == 'ValidationError'


def test_donor_dashboard_and_milestone(client, notifier, add_donation):
    for day in range(1, 5):
        add_donation('approved', f'2026-01-{day:02d}')
    sign_in(client, 'donor1')
    body = client.get('/api/dashboard').get_json()
    assert body['streaks'] == 4
    assert len(body['donations']) == 4
    assert body['appointments'] == []
    assert body['limit']['allowed'] is False
    assert body['milestone'] is True
    assert len(notifier.sent) == 1

    assert client.post('/api/notifications/milestone/ack').status_code == 200
    assert client.get('/api/dashboard').get_json()['milestone'] is True
    assert len(notifier.sent) == 2


def test_admin_dashboard(client, store, add_donation):
    add_donation('pending', '2026-01-01')
    add_donation('approved', '2026-01-02')
    sign_in(client, 'admin1')
    body = client.get('/api/admin/dashboard').get_json()
    assert len(body['users']) == 3
    assert [d['status'] for d in body['pending']] == ['pending']
    assert sorted(u['id'] for u in body['active_donors']) == ['donor1', 'donor2']
    assert len(body['hospitals']) == 3


def test_toggle_endpoint(client):
    sign_in(client, 'admin1')
    res = client.post('/api/admin/users/donor2/toggle')
    assert res.status_code == 200
    assert res.get_json()['message'] == 'User status disabled successfully.'
    assert client.post('/api/admin/users/admin1/toggle').status_code == 403

    sign_in(client, 'donor2')
    assert client.get('/api/streaks').status_code == 403


def test_register_and_logout(client, store):
    sign_in(client, 'fresh')
    res = client.post('/api/register', json={'email': 'fresh@example.com', 'name': 'Fresh'})
    assert res.status_code == 201
    assert store.get_user('fresh').email == 'fresh@example.com'
    assert client.get('/api/streaks').get_json() == {'streaks': 0}

    client.get('/logout')
    assert client.get('/api/streaks').status_code == 401


def test_store_failures_are_service_unavailable(client, store, monkeypatch):
    def down(**kwargs):
        raise RepositoryError("Failed to read Donations: timeout")

    sign_in(client, 'donor1')
    monkeypatch.setattr(store, 'query_donations', down)
    res = client.get('/api/donations')
    assert res.status_code == 503
    assert res.get_json()['message'] == "Failed to read Donations: timeout"


@pytest.mark.parametrize('path, body', [
    ('/api/donations', []),
    ('/api/donations', 'City Hospital'),
    ('/api/appointments', [{'hospitalId': 'hospital1'}]),
    ('/api/register', 7),
])
def test_json_body_must_be_an_object(client, store, path, body):
    sign_in(client, 'donor1')
    res = client.post(path, json=body)
    assert res.status_code == 400
    assert res.get_json()['error'] == 'ValidationError'
    assert store.query_donations(donor_id='donor1') == []


def test_limit_responses_carry_the_countdown_text(client, add_donation):
    for day in range(1, 5):
        add_donation('approved', f'2026-01-{day:02d}')
    sign_in(client, 'donor1')
    assert client.get('/api/donations/limit').get_json()['retry_message'] == (
        "9 months, 30 days, 14 hours, 30 minutes")
    res = client.post('/api/donations', json={
        'hospital': 'City Hospital', 'bloodType': 'O-', 'date': '2026-02-01'})
    assert res.status_code == 409
    assert res.get_json()['retry_message'] == "9 months, 30 days, 14 hours, 30 minutes"
