import asyncio
import json

import pytest

from chatdesk.errors import PersistenceError
from chatdesk.relay import (
    SAVE_ERROR_MESSAGE,
    STALLED_ERROR_MESSAGE,
    UPSTREAM_ERROR_MESSAGE,
    CompletionRelay,
    sse_event,
)

from conftest import FakeCompletionClient


def _decode(frames):
    events = []
    for frame in frames:
        assert frame.startswith('data: ') and frame.endswith('\n\n')
        events.append(json.loads(frame[len('data: '):-2]))
    return events


async def _collect(relay, turn, messages):
    return [frame async for frame in relay.stream(turn, messages)]


def _accept(relay, user_id, content='Summarize this contract', **kwargs):
    return relay.accept_turn(thread_id='t1', domain='law', content=content, user_id=user_id, **kwargs)


def test_sse_event_keeps_unicode():
    assert sse_event({'content': 'naïve'}) == 'data: {"content": "naïve"}\n\n'


def test_accept_turn_builds_history_for_caller_only(store):
    alice = store.create_user('alice', 'x')['id']
    bob = store.create_user('bob', 'x')['id']
    store.append_turn('t1', 'law', 'user', 'bob was here', None, bob)
    store.append_turn('t1', 'law', 'user', 'earlier question', None, alice)
    store.append_turn('t1', 'law', 'assistant', 'earlier answer', None, alice)

    relay = CompletionRelay(store, FakeCompletionClient())
    turn, messages = _accept(relay, alice, sub_feature='contracts', metadata={'practiceArea': 'Corporate Law'})

    assert messages[0]['role'] == 'system'
    assert 'contract law' in messages[0]['content']
    assert [m['content'] for m in messages[1:]] == ['earlier question', 'earlier answer', 'Summarize this contract']
    stored = store.get_turn(turn.user_turn_id)
    assert stored['role'] == 'user'
    assert stored['metadata'] == {'practiceArea': 'Corporate Law'}


@pytest.mark.asyncio
async def test_stream_persists_exact_concatenation(store):
    user_id = store.create_user('alice', 'x')['id']
    fake = FakeCompletionClient(fragments=['Based ', 'on ', 'the ', 'contract...'])
    relay = CompletionRelay(store, fake)
    turn, messages = _accept(relay, user_id, sub_feature='contracts')

    events = _decode(await _collect(relay, turn, messages))

    assert events[:4] == [{'content': 'Based '}, {'content': 'on '}, {'content': 'the '}, {'content': 'contract...'}]
    assert events[-1]['done'] is True
    assert len(events) == 5
    saved = store.get_turn(events[-1]['messageId'])
    assert saved['role'] == 'assistant'
    assert saved['content'] == 'Based on the contract...'
    assert saved['sub_feature_id'] == 'contracts'
    assert saved['user_id'] == user_id
    assert fake.closed is True


@pytest.mark.asyncio
async def test_upstream_failure_emits_single_error_and_keeps_user_turn(store):
    user_id = store.create_user('alice', 'x')['id']
    relay = CompletionRelay(store, FakeCompletionClient(fragments=['Partial ', 'answer'], fail_at=1))
    turn, messages = _accept(relay, user_id)

    events = _decode(await _collect(relay, turn, messages))

    assert events == [{'content': 'Partial '}, {'error': UPSTREAM_ERROR_MESSAGE}]
    roles = [t['role'] for t in store.list_turns('t1')]
    assert roles == ['user']


@pytest.mark.asyncio
async def test_stalled_upstream_times_out(store):
    user_id = store.create_user('alice', 'x')['id']
    fake = FakeCompletionClient(fragments=['Thinking'], stall_at=1)
    relay = CompletionRelay(store, fake, idle_timeout=0.05)
    turn, messages = _accept(relay, user_id)

    events = _decode(await _collect(relay, turn, messages))

    assert events == [{'content': 'Thinking'}, {'error': STALLED_ERROR_MESSAGE}]
    assert [t['role'] for t in store.list_turns('t1')] == ['user']
    assert fake.closed is True


@pytest.mark.asyncio
async def test_pacing_splits_words_without_changing_text(store):
    user_id = store.create_user('alice', 'x')['id']
    relay = CompletionRelay(
        store,
        FakeCompletionClient(fragments=['Based on  the', ' contract...']),
        pacing_seconds=0.001,
    )
    turn, messages = _accept(relay, user_id)

    events = _decode(await _collect(relay, turn, messages))
    pieces = [e['content'] for e in events if 'content' in e]

    assert len(pieces) > 2
    assert ''.join(pieces) == 'Based on  the contract...'
    assert store.get_turn(events[-1]['messageId'])['content'] == 'Based on  the contract...'


@pytest.mark.asyncio
async def test_final_save_failure_becomes_error_event(store, monkeypatch):
    user_id = store.create_user('alice', 'x')['id']
    relay = CompletionRelay(store, FakeCompletionClient(fragments=['ok']))
    turn, messages = _accept(relay, user_id)

    def _fail(*args, **kwargs):
        raise PersistenceError('Database operation failed')

    monkeypatch.setattr(store, 'append_turn', _fail)
    events = _decode(await _collect(relay, turn, messages))
    assert events == [{'content': 'ok'}, {'error': SAVE_ERROR_MESSAGE}]


@pytest.mark.asyncio
async def test_client_disconnect_closes_upstream_without_saving(store):
    user_id = store.create_user('alice', 'x')['id']
    fake = FakeCompletionClient(fragments=['first ', 'second ', 'third'])
    relay = CompletionRelay(store, fake)
    turn, messages = _accept(relay, user_id)

    stream = relay.stream(turn, messages)
    first = await stream.__anext__()
    assert json.loads(first[len('data: '):]) == {'content': 'first '}
    await stream.aclose()

    assert fake.closed is True
    assert [t['role'] for t in store.list_turns('t1')] == ['user']


@pytest.mark.asyncio
async def test_cancellation_propagates(store):
    user_id = store.create_user('alice', 'x')['id']
    fake = FakeCompletionClient(fragments=['never'], stall_at=0)
    relay = CompletionRelay(store, fake, idle_timeout=0)
    turn, messages = _accept(relay, user_id)

    async def _consume():
        return await _collect(relay, turn, messages)

    task = asyncio.create_task(_consume())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert fake.closed is True
    assert [t['role'] for t in store.list_turns('t1')] == ['user']
