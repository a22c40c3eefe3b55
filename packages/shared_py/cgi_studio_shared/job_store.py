from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import desc, select, update
from sqlalchemy.orm import Session

from .errors import JobNotFoundError
from .models import GenerationJob, utcnow

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({'id', 'payload', 'project_id', 'account_id', 'job_type', 'created_at'})


def create_job(
    db: Session,
    *,
    project_id: str,
    account_id: str,
    payload: dict[str, Any],
    priority: int = 0,
    job_type: str = 'cgi_generation',
    max_attempts: int = 3,
) -> GenerationJob:
    job = GenerationJob(
        project_id=project_id,
        account_id=account_id,
        job_type=job_type,
        status='pending',
        priority=int(priority),
        attempts=0,
        max_attempts=int(max_attempts),
        progress=0,
        payload=dict(payload),
        scheduled_for=utcnow(),
    )
    db.add(job)
    db.flush()
    logger.info('job created job_id=%s project_id=%s priority=%s', job.id, project_id, job.priority)
    return job


def get_job(db: Session, job_id: str) -> GenerationJob:
    job = db.get(GenerationJob, job_id)
    if job is None:
        raise JobNotFoundError(f'job {job_id} not found')
    return job


def get_job_by_project(db: Session, project_id: str) -> GenerationJob | None:
    stmt = select(GenerationJob).where(GenerationJob.project_id == project_id).order_by(desc(GenerationJob.created_at)).limit(1)
    return db.execute(stmt).scalars().first()


def update_job(db: Session, job_id: str, **fields: Any) -> None:
    blocked = _IMMUTABLE_FIELDS.intersection(fields)
    if blocked:
        raise ValueError(f'immutable job fields: {sorted(blocked)}')
    if 'progress' in fields:
        fields['progress'] = max(0, min(100, int(fields['progress'])))
    fields['updated_at'] = utcnow()
    result = db.execute(update(GenerationJob).where(GenerationJob.id == job_id).values(**fields))
    if result.rowcount == 0:
        raise JobNotFoundError(f'job {job_id} not found')


def mark_job_completed(db: Session, job_id: str, result: dict[str, Any]) -> None:
    update_job(
        db,
        job_id,
        status='completed',
        progress=100,
        status_message='Completed',
        result=dict(result),
        error_message=None,
        completed_at=utcnow(),
    )


def mark_job_failed(db: Session, job_id: str, error_message: str) -> None:
    update_job(
        db,
        job_id,
        status='failed',
        status_message='Failed',
        error_message=error_message,
        completed_at=utcnow(),
    )


def job_status_view(job: GenerationJob) -> dict[str, Any]:
    return {
        'jobId': job.id,
        'projectId': job.project_id,
        'status': job.status,
        'progress': int(job.progress),
        'statusMessage': job.status_message,
        'errorMessage': job.error_message,
        'attempts': int(job.attempts),
        'result': job.result,
        'createdAt': job.created_at.isoformat() if job.created_at else None,
        'startedAt': job.started_at.isoformat() if job.started_at else None,
        'completedAt': job.completed_at.isoformat() if job.completed_at else None,
    }
