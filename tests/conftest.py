import asyncio
import inspect
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the chatdesk package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('ENVIRONMENT', 'development')
os.environ.setdefault('SESSION_SECRET', 'test-session-secret')
os.environ.setdefault('USE_OFFLINE_MODEL', '1')
os.environ.setdefault('CHATDESK_DATABASE_URL', 'sqlite://')

from chatdesk import auth, main  # noqa: E402
from chatdesk.errors import CompletionError  # noqa: E402
from chatdesk.presence import PresenceBroadcaster  # noqa: E402
from chatdesk.session_gate import SessionValidator  # noqa: E402
from chatdesk.storage import ChatStore  # noqa: E402

TEST_PASSWORD = 'secret-pw'


try:
    import pytest_asyncio  # type: ignore  # noqa: F401
except ImportError:

    @pytest.hookimpl(tryfirst=True)
    def pytest_pyfunc_call(pyfuncitem):
        """Run ``async def`` tests via ``asyncio.run`` when pytest-asyncio is missing."""

        if inspect.iscoroutinefunction(pyfuncitem.obj):
            testargs = {
                name: pyfuncitem.funcargs[name]
                for name in pyfuncitem._fixtureinfo.argnames
            }
            asyncio.run(pyfuncitem.obj(**testargs))
            return True
        return None


@dataclass
class FakeCompletionClient:
    """Scripted stand-in for the model provider.

    ``fail_at`` raises :class:`CompletionError` before yielding that index;
    ``stall_at`` sleeps forever before yielding that index.  Either may equal
    ``len(fragments)`` to fail or stall after the last fragment.
    """

    fragments: List[str] = field(default_factory=lambda: ['Hello ', 'there.'])
    fail_at: Optional[int] = None
    stall_at: Optional[int] = None
    calls: List[List[Dict[str, Any]]] = field(default_factory=list)
    images: List[tuple] = field(default_factory=list)
    closed: bool = False

    async def stream_chat(self, messages):
        self.calls.append([dict(m) for m in messages])
        try:
            for index in range(len(self.fragments) + 1):
                if self.fail_at == index:
                    raise CompletionError('upstream exploded')
                if self.stall_at == index:
                    await asyncio.sleep(3600)
                if index < len(self.fragments):
                    yield self.fragments[index]
        finally:
            self.closed = True

    async def describe_image(self, content_b64: str, mime_type: str) -> str:
        self.images.append((content_b64, mime_type))
        return f'An image of a signed contract ({mime_type})'


def make_store() -> ChatStore:
    engine = sa.create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
        future=True,
    )
    store = ChatStore(engine)
    store.create_schema()
    return store


@pytest.fixture
def store() -> Iterator[ChatStore]:
    """Return a store backed by an isolated in-memory SQLite database."""

    chat_store = make_store()
    yield chat_store
    chat_store.engine.dispose()


@pytest.fixture
def fake_llm() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def app_env(monkeypatch: pytest.MonkeyPatch, store: ChatStore, fake_llm: FakeCompletionClient):
    """Point the application module at the test store and fake model."""

    monkeypatch.setattr(main, 'chat_store', store)
    monkeypatch.setattr(main, 'session_validator', SessionValidator(store, main.settings))
    monkeypatch.setattr(main, 'completion_client', fake_llm)
    monkeypatch.setattr(main, 'presence', PresenceBroadcaster(queue_size=main.settings.presence_queue_size))
    return main


@pytest.fixture
def api_client(app_env) -> Iterator[TestClient]:
    """Return an anonymous FastAPI test client bound to the isolated database."""

    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def make_user(store: ChatStore) -> Callable[..., Dict[str, Any]]:
    def _make(username: str, *, is_admin: bool = False, password: str = TEST_PASSWORD) -> Dict[str, Any]:
        return auth.register_user(store, username, password, is_admin=is_admin)

    return _make


@pytest.fixture
def login_client(app_env, make_user) -> Iterator[Callable[..., TestClient]]:
    """Factory returning test clients that hold a session cookie for a new user."""

    clients: List[TestClient] = []

    def _login(username: str, *, is_admin: bool = False) -> TestClient:
        make_user(username, is_admin=is_admin)
        client = TestClient(main.app)
        resp = client.post('/api/login', json={'username': username, 'password': TEST_PASSWORD})
        assert resp.status_code == 200, resp.text
        clients.append(client)
        return client

    yield _login
    for client in clients:
        client.close()


@pytest.fixture
def user_client(login_client) -> TestClient:
    return login_client('alice')


@pytest.fixture
def admin_client(login_client) -> TestClient:
    return login_client('root', is_admin=True)
