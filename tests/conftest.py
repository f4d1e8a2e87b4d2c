import sys
import os

import pytest

# Add project root to sys.path so tests can import top-level modules like 'storage', 'pipeline', 'normalize', etc.
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from storage.db import Database  # noqa: E402
from normalize.models import MonitoredProject  # noqa: E402


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / 'mirror.db'))
    yield database
    database.close()


@pytest.fixture
def user_db(db):
    """Database with user u1 monitoring project 42 and holding a fresh token."""
    db.add_user('u1', 'u1@example.com')
    db.add_monitored_project(MonitoredProject('u1', '42', 'Backend', 'group/backend'))
    db.save_account('u1', 'tok-u1', 'refresh-u1', None)
    return db
