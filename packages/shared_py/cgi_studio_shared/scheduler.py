from __future__ import annotations

import datetime as dt
import logging
from typing import Any

from sqlalchemy import asc, desc, select, update
from sqlalchemy.orm import Session

from .job_store import create_job
from .models import GenerationJob, utcnow

logger = logging.getLogger(__name__)


def enqueue(
    db: Session,
    *,
    project_id: str,
    account_id: str,
    payload: dict[str, Any],
    priority: int,
) -> str:
    job = create_job(db, project_id=project_id, account_id=account_id, payload=payload, priority=priority)
    return job.id


def next_pending(db: Session, *, now: dt.datetime | None = None) -> GenerationJob | None:
    """Highest priority first, then oldest. Jobs scheduled in the future are skipped."""
    now = now or utcnow()
    stmt = (
        select(GenerationJob)
        .where(GenerationJob.status == 'pending', GenerationJob.scheduled_for <= now)
        .order_by(desc(GenerationJob.priority), asc(GenerationJob.created_at))
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def claim(db: Session, job_id: str) -> bool:
    """Move a job from pending to processing in one conditional UPDATE.

    The row count decides the winner: concurrent callers racing on the same
    job see exactly one ``True``. The caller commits.
    """
    now = utcnow()
    result = db.execute(
        update(GenerationJob)
        .where(GenerationJob.id == job_id, GenerationJob.status == 'pending')
        .values(
            status='processing',
            started_at=now,
            updated_at=now,
            attempts=GenerationJob.attempts + 1,
            status_message='Claimed by worker',
        )
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    if not claimed:
        logger.info('claim lost job_id=%s', job_id)
    return claimed


def claim_next(db: Session, *, retry_limit: int = 3) -> GenerationJob | None:
    """Claim the next eligible job, moving past jobs another worker took first."""
    for _ in range(max(1, int(retry_limit))):
        job = next_pending(db)
        if job is None:
            return None
        if claim(db, job.id):
            db.refresh(job)
            return job
    return None
