import logging

from celery import Celery
from celery.signals import worker_init, worker_process_init, worker_process_shutdown
from prometheus_client import start_http_server

from cgi_studio_shared.config import get_settings
from cgi_studio_shared.db import Database

logger = logging.getLogger(__name__)

settings = get_settings()
worker_app = Celery('cgi_studio_worker', broker=settings.redis_url, backend=settings.redis_url)
worker_app.conf.task_routes = {
    'cgi_studio_worker.process_next_job': {'queue': 'pipeline'},
    'cgi_studio_worker.recover_projects': {'queue': 'recovery'},
}
worker_app.conf.beat_schedule = {
    'process-pending-jobs-every-30s': {
        'task': 'cgi_studio_worker.process_next_job',
        'schedule': 30.0,
    }
}
worker_app.conf.result_expires = 3600

_state: dict = {'database': None}


class DatabaseNotOpenError(RuntimeError):
    pass


def open_database() -> Database:
    if _state['database'] is not None:
        _state['database'].dispose()
    database = Database.from_settings(settings)
    if settings.auto_init_db:
        database.init_schema()
    _state['database'] = database
    return database


def close_database() -> None:
    if _state['database'] is not None:
        _state['database'].dispose()
        _state['database'] = None


def current_database() -> Database:
    if _state['database'] is None:
        raise DatabaseNotOpenError('worker database is not open; it is opened by the worker process signals')
    return _state['database']


@worker_init.connect
def _on_worker_init(**kwargs) -> None:
    logging.getLogger('cgi_studio_worker').setLevel(settings.log_level.upper())
    open_database()
    if settings.enable_metrics:
        try:
            start_http_server(settings.worker_metrics_port)
        except OSError as exc:
            logger.warning('worker metrics server not started port=%s error=%s', settings.worker_metrics_port, exc)


@worker_process_init.connect
def _on_worker_process_init(**kwargs) -> None:
    # Forked children must not reuse the parent's pooled connections.
    if _state['database'] is not None:
        _state['database'].engine.dispose(close=False)
        _state['database'] = None
    open_database()


@worker_process_shutdown.connect
def _on_worker_process_shutdown(**kwargs) -> None:
    close_database()


import cgi_studio_worker.tasks  # noqa: E402,F401
