from __future__ import annotations

from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError

from cgi_studio_shared.config import get_settings

settings = get_settings()
celery_app = Celery('cgi_studio_api', broker=settings.redis_url, backend=settings.redis_url)


class CeleryDispatcher:
    """Hands work to the worker fleet; the API never runs the pipeline itself."""

    def __init__(self, app: Celery | None = None) -> None:
        self._app = app or celery_app

    def trigger_processing(self) -> str:
        return self._app.send_task('cgi_studio_worker.process_next_job').id

    def trigger_recovery(self, account_id: str, *, timeout: float) -> dict:
        result = self._app.send_task('cgi_studio_worker.recover_projects', args=[account_id])
        try:
            return result.get(timeout=timeout)
        except CeleryTimeoutError as exc:
            raise TimeoutError('recovery_timeout') from exc
