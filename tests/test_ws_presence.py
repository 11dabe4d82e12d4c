"""Presence channel tests through the ASGI app.

All sockets are opened from the one entered ``api_client`` so they share its
event loop; each user's session cookie is passed explicitly.
"""

import pytest
from starlette.testclient import WebSocketDenialResponse

from chatdesk import main
from conftest import TEST_PASSWORD


@pytest.fixture
def session_headers(api_client, make_user):
    def _headers(username):
        make_user(username)
        resp = api_client.post('/api/login', json={'username': username, 'password': TEST_PASSWORD})
        assert resp.status_code == 200
        name = main.settings.session_cookie_name
        return {'Cookie': f'{name}={resp.cookies[name]}'}

    return _headers


def _join(ws, user_id, thread_id='t1'):
    ws.send_json({'type': 'join', 'userId': user_id, 'threadId': thread_id, 'domain': 'law'})


def test_ws_requires_authentication(api_client):
    with pytest.raises(WebSocketDenialResponse) as excinfo:
        with api_client.websocket_connect('/ws', headers={'Cookie': 'theme=dark'}):
            pass
    assert excinfo.value.status_code == 401
    assert excinfo.value.json() == {'error': 'Authentication required'}
    assert main.presence.records() == []


def test_ws_rejects_forged_cookie(api_client):
    with pytest.raises(WebSocketDenialResponse):
        with api_client.websocket_connect('/ws', headers={'Cookie': f'{main.settings.session_cookie_name}=forged'}):
            pass
    assert main.presence.channel_count == 0


def test_ws_presence_round_trip(api_client, session_headers):
    alice = session_headers('alice')
    bob = session_headers('bob')

    with api_client.websocket_connect('/ws', headers=alice) as ws_a:
        assert ws_a.receive_json() == {'type': 'connection', 'status': 'connected'}
        _join(ws_a, 'tab-a')
        joined = ws_a.receive_json()
        assert joined['type'] == 'user_joined'
        assert joined['userId'] == 'tab-a'
        assert isinstance(joined['timestamp'], int)

        with api_client.websocket_connect('/ws', headers=bob) as ws_b:
            assert ws_b.receive_json()['type'] == 'connection'
            _join(ws_b, 'tab-b')
            assert ws_b.receive_json()['userId'] == 'tab-b'
            peer_joined = ws_a.receive_json()
            assert peer_joined['type'] == 'user_joined'
            assert peer_joined['userId'] == 'tab-b'

            ws_b.send_json({'type': 'typing', 'userId': 'tab-b', 'threadId': 't1', 'isTyping': True})
            assert ws_a.receive_json() == {'type': 'typing', 'userId': 'tab-b', 'isTyping': True}
            assert ws_b.receive_json() == {'type': 'typing', 'userId': 'tab-b', 'isTyping': True}

            record = main.presence.get('tab-b')
            assert record is not None
            assert record.thread_id == 't1'
            assert record.is_typing is True

        left = ws_a.receive_json()
        assert left['type'] == 'user_left'
        assert left['userId'] == 'tab-b'
        assert main.presence.get('tab-b') is None


def test_ws_explicit_leave_and_malformed_frames(api_client, session_headers):
    alice = session_headers('alice')
    with api_client.websocket_connect('/ws', headers=alice) as ws_a:
        with api_client.websocket_connect('/ws', headers=alice) as ws_b:
            ws_a.receive_json()
            ws_b.receive_json()
            _join(ws_a, 'tab-a')
            ws_a.receive_json()
            _join(ws_b, 'tab-b')
            ws_a.receive_json()
            ws_b.receive_json()

            ws_b.send_json({'type': 'leave', 'userId': 'tab-b', 'threadId': 't1'})
            assert ws_a.receive_json()['type'] == 'user_left'
            assert main.presence.thread_members('t1') == ['tab-a']

            # Malformed frames are dropped and the channel keeps working.
            ws_a.send_text('not json')
            ws_a.send_json({'type': 'typing', 'userId': 'tab-a', 'threadId': 't1', 'isTyping': False})
            assert ws_a.receive_json() == {'type': 'typing', 'userId': 'tab-a', 'isTyping': False}
