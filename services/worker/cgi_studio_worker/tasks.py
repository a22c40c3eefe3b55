from __future__ import annotations

from celery.utils.log import get_task_logger

from cgi_studio_shared.config import get_settings
from cgi_studio_shared.db import Database
from cgi_studio_shared.scheduler import claim_next

from .capabilities import GenerationCapabilities
from .executor import JobExecutor
from .providers import build_capabilities
from .recovery import recover_projects as scan_for_recovery
from .worker_app import current_database, worker_app

logger = get_task_logger(__name__)
settings = get_settings()


def trigger_processing(database: Database, capabilities: GenerationCapabilities, *, retry_limit: int = 3, refund_on_failure: bool = True) -> dict:
    """Claim the next pending job and run it to a terminal state."""
    with database.session_scope() as db:
        job = claim_next(db, retry_limit=retry_limit)
        job_id = job.id if job is not None else None
    if job_id is None:
        return {'message': 'No pending jobs', 'jobId': None}
    logger.info('job claimed job_id=%s', job_id)
    outcome = JobExecutor(database, capabilities, refund_on_failure=refund_on_failure).run(job_id)
    return {'message': f'Job {outcome.status}', **outcome.as_dict()}


@worker_app.task(name='cgi_studio_worker.process_next_job')
def process_next_job() -> dict:
    return trigger_processing(
        current_database(),
        build_capabilities(settings),
        retry_limit=settings.claim_retry_limit,
        refund_on_failure=settings.refund_on_failure,
    )


@worker_app.task(name='cgi_studio_worker.recover_projects')
def recover_projects(account_id: str) -> dict:
    summary = scan_for_recovery(current_database(), account_id=account_id, capabilities=build_capabilities(settings))
    logger.info('recovery finished account_id=%s recovered=%s total=%s', account_id, summary.recovered, summary.total)
    return summary.as_dict()
