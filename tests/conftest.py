import os
import sys
import uuid
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SHARED = ROOT / 'packages' / 'shared_py'
WORKER = ROOT / 'services' / 'worker'
API = ROOT / 'services' / 'api'

for path in (SHARED, WORKER, API):
    value = str(path)
    if value not in sys.path:
        sys.path.insert(0, value)

os.environ.setdefault('ENABLE_METRICS', 'false')
os.environ.setdefault('ENABLE_MOCK_PIPELINE', 'true')
os.environ.setdefault('REFUND_ON_FAILURE', 'true')
os.environ.setdefault('JWT_SECRET', 'test-secret')

from cgi_studio_shared.db import Database  # noqa: E402
from cgi_studio_shared.models import Account  # noqa: E402
from cgi_studio_shared.projects import ProjectSubmission, submit_project  # noqa: E402


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'studio.db'}")
    db.init_schema()
    yield db
    db.dispose()


@pytest.fixture
def make_account(database):
    def _make(credits: int = 50, is_admin: bool = False) -> str:
        with database.session_scope() as db:
            account = Account(email=f'{uuid.uuid4().hex[:10]}@example.com', credits=credits, is_admin=is_admin)
            db.add(account)
            db.flush()
            return account.id

    return _make


@pytest.fixture
def read_balance(database):
    def _read(account_id: str) -> int:
        with database.session_scope() as db:
            return int(db.get(Account, account_id).credits)

    return _read


@pytest.fixture
def submit(database):
    def _submit(account_id: str, **overrides):
        values = {
            'title': 'Desk lamp',
            'description': 'warm evening light',
            'content_type': 'image',
            'product_image_url': 'https://cdn.example.com/lamp.png',
            'scene_image_url': 'https://cdn.example.com/room.jpg',
        }
        values.update(overrides)
        with database.session_scope() as db:
            project, job_id = submit_project(db, account_id=account_id, submission=ProjectSubmission(**values))
            return project.id, job_id

    return _submit
