import pytest
from fastapi.testclient import TestClient

from cgi_studio_api.main import create_app
from cgi_studio_api.security import create_access_token
from cgi_studio_api.services import billing
from cgi_studio_shared.models import GenerationJob

PROJECT = {
    'title': 'Desk lamp',
    'description': 'warm evening light',
    'content_type': 'image',
    'product_image_url': 'https://cdn.example.com/lamp.png',
    'scene_image_url': 'https://cdn.example.com/room.jpg',
}


class RecordingDispatcher:
    def __init__(self, recovery=None, fail_processing=False):
        self.processing_calls = 0
        self.recovery_calls = []
        self.recovery = recovery
        self.fail_processing = fail_processing

    def trigger_processing(self):
        self.processing_calls += 1
        if self.fail_processing:
            raise ConnectionError('broker down')
        return f'task-{self.processing_calls}'

    def trigger_recovery(self, account_id, *, timeout):
        self.recovery_calls.append(account_id)
        if isinstance(self.recovery, Exception):
            raise self.recovery
        return self.recovery or {'message': 'No projects found for recovery', 'recovered': 0, 'total': 0, 'results': []}


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client(database, dispatcher):
    return TestClient(create_app(database=database, dispatcher=dispatcher))


def _auth(account_id):
    return {'Authorization': f'Bearer {create_access_token(account_id=account_id)}'}


def test_healthz(client):
    response = client.get('/healthz')
    assert response.status_code == 200
    assert response.json()['data'] == {'status': 'ok', 'database': 'ok'}
    assert response.headers['x-request-id']


def test_requires_token(client):
    response = client.get('/api/v2/projects')
    assert response.status_code == 401
    assert response.json()['message'] == 'missing_token'

    response = client.get('/api/v2/projects', headers={'Authorization': 'Bearer not-a-jwt'})
    assert response.status_code == 401
    assert response.json()['message'] == 'invalid_token'


def test_submit_project_queues_and_dispatches(client, dispatcher, make_account):
    account_id = make_account(credits=10)
    headers = _auth(account_id)

    response = client.post('/api/v2/projects', json=PROJECT, headers=headers)

    assert response.status_code == 200
    data = response.json()['data']
    assert data['project']['status'] == 'pending'
    assert data['project']['creditsUsed'] == 2
    assert data['dispatched'] is True
    assert dispatcher.processing_calls == 1

    status = client.get(f"/api/v2/projects/{data['project']['id']}/status", headers=headers).json()['data']
    assert status['jobId'] == data['jobId']
    assert status['jobStatus'] == 'pending'

    job = client.get(f"/api/v2/jobs/{data['jobId']}/status", headers=headers).json()['data']
    assert job['status'] == 'pending'

    wallet = client.get('/api/v2/wallet', headers=headers).json()['data']
    assert wallet == {'balanceCredits': 8, 'isAdmin': False}
    ledger = client.get('/api/v2/wallet/ledger', headers=headers).json()['data']
    assert [row['deltaCredits'] for row in ledger] == [-2]


def test_submit_survives_dispatch_failure(database, make_account):
    account_id = make_account(credits=10)
    client = TestClient(create_app(database=database, dispatcher=RecordingDispatcher(fail_processing=True)))

    response = client.post('/api/v2/projects', json=PROJECT, headers=_auth(account_id))

    assert response.status_code == 200
    assert response.json()['data']['dispatched'] is False
    with database.session_scope() as db:
        assert db.query(GenerationJob).filter(GenerationJob.status == 'pending').count() == 1


def test_submit_rejects_two_scenes(client, dispatcher, make_account):
    account_id = make_account(credits=10)
    body = dict(PROJECT, scene_video_url='https://cdn.example.com/room.mp4')

    response = client.post('/api/v2/projects', json=body, headers=_auth(account_id))

    assert response.status_code == 422
    assert response.json()['code'] == 'validation_error'
    assert dispatcher.processing_calls == 0


def test_submit_without_credits(client, make_account):
    account_id = make_account(credits=1)

    response = client.post('/api/v2/projects', json=PROJECT, headers=_auth(account_id))

    assert response.status_code == 402
    assert response.json()['code'] == 'insufficient_credits'
    assert client.get('/api/v2/projects', headers=_auth(account_id)).json()['data'] == []


def test_projects_are_private(client, make_account):
    owner = make_account(credits=10)
    other = make_account(credits=10)
    project_id = client.post('/api/v2/projects', json=PROJECT, headers=_auth(owner)).json()['data']['project']['id']

    response = client.get(f'/api/v2/projects/{project_id}', headers=_auth(other))

    assert response.status_code == 404
    assert response.json()['code'] == 'project_not_found'
    assert client.get(f'/api/v2/projects/{project_id}', headers=_auth(owner)).status_code == 200


def test_trigger_processing_and_costs(client, dispatcher, make_account):
    account_id = make_account(credits=10)
    headers = _auth(account_id)

    response = client.post('/api/v2/jobs/process', headers=headers)
    assert response.json()['data'] == {'taskId': 'task-1'}

    costs = client.get('/api/v2/actual-costs', headers=headers).json()['data']
    assert costs['projectCount'] == 0
    assert costs['totalCostUSD'] == '0.0000'


def test_recover_projects(database, make_account):
    account_id = make_account(credits=10)
    summary = {'message': 'Recovery complete: 1/1 projects recovered', 'recovered': 1, 'total': 1, 'results': []}
    dispatcher = RecordingDispatcher(recovery=summary)
    client = TestClient(create_app(database=database, dispatcher=dispatcher))

    response = client.post('/api/v2/projects/recover', headers=_auth(account_id))

    assert response.status_code == 200
    assert response.json()['data']['recovered'] == 1
    assert dispatcher.recovery_calls == [account_id]


def test_recover_timeout(database, make_account):
    account_id = make_account(credits=10)
    client = TestClient(create_app(database=database, dispatcher=RecordingDispatcher(recovery=TimeoutError('recovery_timeout'))))

    response = client.post('/api/v2/projects/recover', headers=_auth(account_id))

    assert response.status_code == 504


def test_packages(client):
    packages = client.get('/api/v2/billing/packages').json()['data']
    assert {p['id']: p['credits'] for p in packages} == {'tester': 100, 'starter': 250, 'pro': 550, 'business': 1200}


def test_webhook_credits_once(client, make_account, read_balance, monkeypatch):
    account_id = make_account(credits=0)
    event = {
        'type': 'payment_intent.succeeded',
        'data': {
            'object': {
                'id': 'pi_123',
                'amount': 2500,
                'metadata': {'accountId': account_id, 'packageId': 'starter', 'credits': '250'},
            }
        },
    }
    monkeypatch.setattr(billing, 'construct_event', lambda payload, signature: event)

    first = client.post('/api/v2/billing/webhook', content=b'{}', headers={'stripe-signature': 'sig'})
    second = client.post('/api/v2/billing/webhook', content=b'{}', headers={'stripe-signature': 'sig'})

    assert first.json()['data']['status'] == 'completed'
    assert first.json()['data']['creditsAdded'] == 250
    assert second.json()['data']['status'] == 'already_processed'
    assert read_balance(account_id) == 250


def test_webhook_bad_signature(client, monkeypatch):
    def _reject(payload, signature):
        raise billing.WebhookError('invalid_signature')

    monkeypatch.setattr(billing, 'construct_event', _reject)

    response = client.post('/api/v2/billing/webhook', content=b'{}')

    assert response.status_code == 400
    assert response.json()['message'] == 'invalid_signature'


def test_webhook_ignores_other_events(client, monkeypatch):
    monkeypatch.setattr(billing, 'construct_event', lambda payload, signature: {'type': 'charge.refunded', 'data': {'object': {}}})

    response = client.post('/api/v2/billing/webhook', content=b'{}')

    assert response.status_code == 200
    assert response.json()['message'] == 'ignored'
