import pytest

from cgi_studio_worker import worker_app
from cgi_studio_worker.worker_app import DatabaseNotOpenError, current_database


@pytest.fixture
def worker_database(database, monkeypatch):
    monkeypatch.setattr(worker_app.Database, 'from_settings', classmethod(lambda cls, settings=None: database))
    monkeypatch.setitem(worker_app._state, 'database', None)
    return database


def test_database_is_never_built_on_demand(worker_database):
    with pytest.raises(DatabaseNotOpenError):
        current_database()
    assert worker_app._state['database'] is None


def test_process_signals_open_and_close_the_database(worker_database):
    worker_app._on_worker_process_init()
    assert current_database() is worker_database

    worker_app._on_worker_process_shutdown()
    with pytest.raises(DatabaseNotOpenError):
        current_database()
