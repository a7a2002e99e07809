"""Bot HTTP API tests through httpx.AsyncClient + ASGITransport."""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from cadence.api import create_app
from cadence.config import Settings
from cadence.errors import UpstreamDeliveryError

from .conftest import LOGS_TOKEN

AUTH = {'x-logs-token': LOGS_TOKEN}


@pytest_asyncio.fixture
async def client(db, service, settings):
    app = create_app(db, service, settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://bot') as c:
        yield c


@pytest.mark.asyncio
async def test_health_needs_no_token(client):
    resp = await client.get('/health')
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['uptimeSeconds'] >= 0
    assert body['timestamp'].endswith('+00:00')


@pytest.mark.asyncio
@pytest.mark.parametrize('headers', [{}, {'x-logs-token': 'wrong'}])
async def test_protected_endpoints_reject_bad_token(client, headers):
    resp = await client.post('/add-task', json={}, headers=headers)
    assert resp.status_code == 401
    assert resp.json() == {'error': 'Unauthorized'}


@pytest.mark.asyncio
async def test_unset_token_fails_closed(db, service, tmp_path):
    app = create_app(db, service, Settings(db_path=str(tmp_path / 'x.db'), logs_token=None))
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://bot') as c:
        resp = await c.get('/stats', headers={'x-logs-token': ''})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_add_task(client, db, scheduler):
    resp = await client.post('/add-task', headers=AUTH, json={
        'content': 'standup', 'channel_id': '100', 'user_id': 'u1', 'time': '09:00', 'days': [1, 2, 3],
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body['message'] == 'Task added'
    row = await db.get_item('task', body['id'])
    assert row['days'] == '1,2,3'
    assert ('task', body['id']) in scheduler


@pytest.mark.asyncio
async def test_add_reminder(client, scheduler):
    resp = await client.post('/add-reminder', headers=AUTH, json={
        'content': 'water', 'channel_id': '100', 'user_id': 'u1', 'time': '10:00',
    })
    assert resp.status_code == 200
    assert ('reminder', resp.json()['id']) in scheduler


@pytest.mark.asyncio
async def test_add_task_with_bad_time(client, db):
    resp = await client.post('/add-task', headers=AUTH, json={
        'content': 'standup', 'channel_id': '100', 'user_id': 'u1', 'time': '9am',
    })
    assert resp.status_code == 400
    assert 'HH:MM' in resp.json()['error']
    assert await db.list_active('task') == []


@pytest.mark.asyncio
async def test_invalid_json_body(client):
    resp = await client.post('/add-reminder', headers={**AUTH, 'content-type': 'application/json'}, content=b'{nope')
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Invalid JSON body'}


@pytest.mark.asyncio
async def test_send_once(client, db, sender):
    resp = await client.post('/send-once', headers=AUTH, json={'content': 'hello', 'channel_id': '100'})
    assert resp.status_code == 200
    assert resp.json()['message_id'] == '1001'
    assert sender.sent == [('100', 'hello')]


@pytest.mark.asyncio
async def test_send_once_failure_is_logged(client, db, sender):
    sender.fail_with = UpstreamDeliveryError('Channel 100 not found')

    resp = await client.post('/send-once', headers=AUTH, json={'content': 'hello', 'channel_id': '100'})

    assert resp.status_code == 502
    body = resp.json()
    assert body['error'] == 'Channel 100 not found'
    entry = await db.get_send_log(body['log_id'])
    assert entry['kind'] == 'send_once'
    assert entry['status'] == 'failed'


@pytest.mark.asyncio
async def test_retry_endpoint(client, db, delivery, sender):
    tid = await db.create_task('standup', '100', 'u1', '09:00')
    sender.fail_with = UpstreamDeliveryError('boom')
    failed = await delivery.deliver_item('task', await db.get_item('task', tid))
    sender.fail_with = None

    resp = await client.post(f'/retry/{failed.log_id}', headers=AUTH)

    assert resp.status_code == 200
    body = resp.json()
    assert body['message'] == 'Retry sent successfully'
    assert body['result']['status'] == 'success'
    assert body['result']['log_id'] != failed.log_id


@pytest.mark.asyncio
async def test_retry_errors_map_to_status(client, db):
    orphan = await db.append_send_log('task', status='failed')
    assert (await client.post(f'/retry/{orphan}', headers=AUTH)).status_code == 400
    assert (await client.post('/retry/999', headers=AUTH)).status_code == 404
    assert (await client.post('/retry/abc', headers=AUTH)).status_code == 400


@pytest.mark.asyncio
async def test_rotate_logs(client, db, now):
    await db.append_send_log('task', status='success')
    now.advance(days=10)

    resp = await client.post('/rotate-logs', headers=AUTH, json={'maxAge': 7})

    assert resp.status_code == 200
    assert resp.json() == {'message': 'Log rotation completed', 'archivedRecords': 1, 'maxAgeDays': 7}
    page = await db.query_logs()
    assert [e['kind'] for e in page.logs] == ['activity:logs_rotated']
    assert page.logs[0]['metadata'] == {'maxAgeDays': 7, 'archivedRecords': 1}


@pytest.mark.asyncio
async def test_rotate_logs_defaults_and_validation(client):
    resp = await client.post('/rotate-logs', headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()['maxAgeDays'] == 30

    resp = await client.post('/rotate-logs', headers=AUTH, json={'maxAgeDays': -5})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_stats(client, db):
    await db.create_task('standup', '100', 'u1', '09:00')
    resp = await client.get('/stats', headers=AUTH)
    assert resp.status_code == 200
    body = resp.json()
    assert body['activeTasks'] == 1
    assert 'uptimeSeconds' in body
    assert 'timestamp' in body
