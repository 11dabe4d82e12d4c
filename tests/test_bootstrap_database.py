import importlib.util
from pathlib import Path

import sqlalchemy as sa

from chatdesk.storage import ChatStore

SCRIPT = Path(__file__).resolve().parents[1] / 'scripts' / 'bootstrap_database.py'


def _load_script():
    spec = importlib.util.spec_from_file_location('bootstrap_database', SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_bootstrap_creates_schema_and_admin(tmp_path, capsys):
    script = _load_script()
    url = f"sqlite:///{tmp_path / 'chatdesk.db'}"

    assert script.main(['--database-url', url, '--admin-username', 'boss', '--admin-password', 'hunter22']) == 0
    assert 'boss' in capsys.readouterr().out

    store = ChatStore(sa.create_engine(url, future=True))
    admin = store.get_user_by_username('boss')
    assert admin is not None
    assert admin['is_admin'] == 1

    # Running again is a no-op for the existing account.
    assert script.main(['--database-url', url, '--admin-username', 'boss', '--admin-password', 'hunter22']) == 0
    assert 'already exists' in capsys.readouterr().out


def test_bootstrap_can_skip_admin(tmp_path):
    script = _load_script()
    url = f"sqlite:///{tmp_path / 'empty.db'}"
    assert script.main(['--database-url', url, '--skip-admin']) == 0
    store = ChatStore(sa.create_engine(url, future=True))
    assert store.get_user_by_username('admin') is None
