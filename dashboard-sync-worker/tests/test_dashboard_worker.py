import pytest
from aiohttp.test_utils import TestClient, TestServer

from fakes import FakeClient, fake_session

from dashboard import Dashboard
from dashboard_worker import build_app, new_worker_state, parse_args
from remote_client import RemoteError


def build_client():
    client = FakeClient()
    client.add_user('u1', **{'whatsapp:name': 'Alice', 'whatsapp:userId': '+15550001'})
    client.add_conversation('c1', updated=10)
    client.add_message('c1', 'm1', 1, user_id='u1')
    client.add_message('c1', 'm2', 2, direction='outgoing', user_id='bot-user')
    return client


async def started_dashboard(client):
    dashboard = Dashboard(fake_session(client), hide_empty=True, view_options={'retry_delay': 0})
    await dashboard.start(poll=False)
    return dashboard


def test_parse_args_defaults_and_flags():
    args = parse_args(['--once', '--show-empty', '--port', '9000'])
    assert args.once and args.show_empty
    assert args.port == 9000


@pytest.mark.asyncio
async def test_health_while_starting_and_after_failure():
    state = new_worker_state()
    async with TestClient(TestServer(build_app(state))) as http:
        response = await http.get('/health')
        assert response.status == 200
        assert (await response.json())['status'] == 'starting'

        response = await http.get('/conversations')
        assert response.status == 503

        state['status'] = 'error'
        response = await http.get('/health')
        assert response.status == 503


@pytest.mark.asyncio
async def test_status_and_listing_routes():
    dashboard = await started_dashboard(build_client())
    async with TestClient(TestServer(build_app(new_worker_state(dashboard)))) as http:
        health = await (await http.get('/health')).json()
        assert health['status'] == 'healthy'
        assert health['conversations'] == 1

        status = await (await http.get('/status')).json()
        assert status['dashboard']['bot_name'] == 'Support Bot'
        assert status['dashboard']['footer'] == 'no more conversations'

        listing = await (await http.get('/conversations')).json()
        assert listing['version'] == dashboard.engine.version
        assert [c['user_name'] for c in listing['conversations']] == ['Alice']
        assert listing['has_more'] is False

        detail = await (await http.get('/conversations/c1')).json()
        assert [m['id'] for m in detail['messages']] == ['m1', 'm2']
        assert (await http.get('/conversations/nope')).status == 404

        contacts = await (await http.get('/contacts', params={'search': 'ali'})).json()
        assert [c['phone'] for c in contacts['contacts']] == ['+15550001']
    await dashboard.logout()


@pytest.mark.asyncio
async def test_reply_and_notice_routes():
    client = build_client()
    dashboard = await started_dashboard(client)
    async with TestClient(TestServer(build_app(new_worker_state(dashboard)))) as http:
        opened = await (await http.post('/conversations/c1/open')).json()
        assert opened['display_name'] == 'Alice'
        assert opened['header'] == 'start of the conversation'

        response = await http.post('/conversations/c1/messages', json={'text': 'Thanks!'})
        assert response.status == 200
        body = await response.json()
        assert body['message']['user_id'] == 'bot-user'
        assert body['message']['preview'] == 'Thanks!'

        assert (await http.post('/conversations/c1/messages', json={})).status == 400

        response = await http.post('/messages', json={'conversation_id': 'c1', 'text': 'hi'})
        assert response.status == 400
        notices = (await response.json())['notices']
        assert notices[-1]['text'] == 'Please fill in all fields'

        client.fail('delete_conversation', RemoteError('HTTP 500'))
        response = await http.delete('/conversations/c1')
        assert response.status == 502

        notice_id = (await (await http.get('/notices')).json())['notices'][-1]['id']
        assert (await http.delete(f'/notices/{notice_id}')).status == 200
        assert (await http.delete(f'/notices/{notice_id}')).status == 404

        response = await http.delete('/conversations/c1')
        assert (await response.json())['deleted'] is True
        assert (await (await http.get('/conversations')).json())['conversations'] == []
    await dashboard.logout()


@pytest.mark.asyncio
async def test_refresh_and_load_more_routes():
    client = build_client()
    dashboard = await started_dashboard(client)
    async with TestClient(TestServer(build_app(new_worker_state(dashboard)))) as http:
        client.add_conversation('c2', updated=20)
        client.add_message('c2', 'm3', 3, user_id='u1')

        refreshed = await (await http.post('/refresh')).json()
        assert refreshed['changed'] is True
        assert refreshed['sync']['cycles_changed'] == 2

        more = await (await http.post('/conversations/load-more')).json()
        assert more['appended'] == 0
        assert more['footer'] == 'no more conversations'
    await dashboard.logout()
