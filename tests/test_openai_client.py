import dataclasses
from types import SimpleNamespace

import pytest

from chatdesk.config import Settings
from chatdesk.errors import CompletionError
from chatdesk.openai_client import (
    OfflineCompletionClient,
    OpenAICompletionClient,
    get_completion_client,
    split_words,
)


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeStream:
    def __init__(self, chunks, error=None):
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._chunks:
            return self._chunks.pop(0)
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self, stream=None, response=None):
        self.stream = stream
        self.response = response
        self.kwargs = []

    async def create(self, **kwargs):
        self.kwargs.append(kwargs)
        if kwargs.get('stream'):
            return self.stream
        return self.response


def _client_with(completions):
    client = OpenAICompletionClient('sk-test', model='gpt-4o')
    client._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return client


def test_split_words_preserves_text():
    assert split_words('Based on  the contract...') == ['Based ', 'on  ', 'the ', 'contract...']
    assert ''.join(split_words(' leading and trailing ')) == ' leading and trailing '


@pytest.mark.asyncio
async def test_openai_stream_yields_deltas_and_closes():
    stream = FakeStream([_chunk('Based '), _chunk(None), SimpleNamespace(choices=[]), _chunk('on it')])
    completions = FakeCompletions(stream=stream)
    client = _client_with(completions)

    pieces = [p async for p in client.stream_chat([{'role': 'user', 'content': 'hi'}])]

    assert pieces == ['Based ', 'on it']
    assert stream.closed is True
    assert completions.kwargs[0]['stream'] is True
    assert completions.kwargs[0]['model'] == 'gpt-4o'


@pytest.mark.asyncio
async def test_openai_stream_errors_become_completion_errors():
    stream = FakeStream([_chunk('partial')], error=RuntimeError('connection reset'))
    client = _client_with(FakeCompletions(stream=stream))

    received = []
    with pytest.raises(CompletionError):
        async for piece in client.stream_chat([{'role': 'user', 'content': 'hi'}]):
            received.append(piece)
    assert received == ['partial']
    assert stream.closed is True


@pytest.mark.asyncio
async def test_missing_key_raises_completion_error():
    client = OpenAICompletionClient(None)
    with pytest.raises(CompletionError):
        async for _ in client.stream_chat([]):
            pass


@pytest.mark.asyncio
async def test_describe_image_sends_data_uri():
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content='A cat'))])
    completions = FakeCompletions(response=response)
    client = _client_with(completions)

    assert await client.describe_image('AAAA', 'image/png') == 'A cat'
    content = completions.kwargs[0]['messages'][0]['content']
    assert content[1]['image_url']['url'] == 'data:image/png;base64,AAAA'


@pytest.mark.asyncio
async def test_offline_client_is_deterministic():
    client = OfflineCompletionClient()
    messages = [{'role': 'user', 'content': 'hello'}]
    first = ''.join([p async for p in client.stream_chat(messages)])
    second = ''.join([p async for p in client.stream_chat(messages)])
    assert first == second
    assert first.startswith('Offline response (')


def test_get_completion_client_honours_offline_flag():
    settings = Settings()
    assert isinstance(get_completion_client(dataclasses.replace(settings, use_offline_model=True)), OfflineCompletionClient)
    assert isinstance(get_completion_client(settings), OpenAICompletionClient)
