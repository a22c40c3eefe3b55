from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import Counter
from sqlalchemy import or_, select

from cgi_studio_shared import job_store
from cgi_studio_shared.db import Database
from cgi_studio_shared.models import Project
from cgi_studio_shared.projects import update_project

from .capabilities import GenerationCapabilities

logger = logging.getLogger(__name__)

RECOVERY_TOTAL = Counter('cgi_studio_worker_recovery_total', 'Recovery checks by outcome', ['status'])

RECOVERABLE_STATUSES = ('failed', 'processing')


@dataclass
class RecoverySummary:
    total: int = 0
    recovered: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        if self.total == 0:
            message = 'No projects found for recovery'
        else:
            message = f'Recovery complete: {self.recovered}/{self.total} projects recovered'
        return {'message': message, 'recovered': self.recovered, 'total': self.total, 'results': self.results}


@dataclass(frozen=True)
class RecoveryCandidate:
    project_id: str
    title: str
    include_audio: bool
    video_task_id: str | None
    audio_task_id: str | None
    output_video_url: str | None


def find_candidates(db, account_id: str) -> list[RecoveryCandidate]:
    stmt = select(Project).where(
        Project.account_id == account_id,
        Project.status.in_(RECOVERABLE_STATUSES),
        or_(Project.video_task_id.is_not(None), Project.audio_task_id.is_not(None)),
    )
    return [
        RecoveryCandidate(
            project_id=p.id,
            title=p.title,
            include_audio=bool(p.include_audio),
            video_task_id=p.video_task_id,
            audio_task_id=p.audio_task_id,
            output_video_url=p.output_video_url,
        )
        for p in db.execute(stmt).scalars()
    ]


def _check_project(candidate: RecoveryCandidate, capabilities: GenerationCapabilities) -> str | None:
    """Returns the recovered output URL, or None when nothing is ready yet."""
    video_url = candidate.output_video_url
    recovered = None
    if candidate.video_task_id and not candidate.output_video_url:
        snapshot = capabilities.get_task(candidate.video_task_id)
        if snapshot.is_completed:
            video_url = recovered = snapshot.video_url
    if candidate.audio_task_id and candidate.include_audio and video_url:
        snapshot = capabilities.get_task(candidate.audio_task_id)
        if snapshot.is_completed:
            recovered = snapshot.video_url
    return recovered


def _apply_recovery(db, candidate: RecoveryCandidate, video_url: str) -> bool:
    project = db.get(Project, candidate.project_id)
    if project is None or project.status not in RECOVERABLE_STATUSES:
        return False
    update_project(db, candidate.project_id, status='completed', output_video_url=video_url, progress=100, error_message=None)
    job = job_store.get_job_by_project(db, candidate.project_id)
    if job is not None and job.status != 'completed':
        result = dict(job.result or {})
        result.update({'outputImageUrl': project.output_image_url, 'outputVideoUrl': video_url, 'recovered': True})
        job_store.mark_job_completed(db, job.id, result)
    return True


def recover_projects(database: Database, *, account_id: str, capabilities: GenerationCapabilities) -> RecoverySummary:
    """Complete projects whose external tasks finished after the worker gave up.

    Provider checks run outside any transaction. One project's error is
    recorded in its result row and never stops the scan.
    """
    with database.session_scope() as db:
        candidates = find_candidates(db, account_id)

    summary = RecoverySummary(total=len(candidates))
    for candidate in candidates:
        row = {'projectId': candidate.project_id, 'title': candidate.title}
        try:
            video_url = _check_project(candidate, capabilities)
            if video_url is None:
                summary.results.append({**row, 'status': 'still_processing_or_failed'})
                RECOVERY_TOTAL.labels(status='pending').inc()
                continue
            with database.session_scope() as db:
                applied = _apply_recovery(db, candidate, video_url)
        except Exception as exc:  # noqa: BLE001
            summary.results.append({**row, 'status': 'recovery_failed', 'error': str(exc)})
            RECOVERY_TOTAL.labels(status='error').inc()
            logger.warning('recovery check failed project_id=%s error=%s', candidate.project_id, exc)
            continue
        if not applied:
            summary.results.append({**row, 'status': 'skipped'})
            RECOVERY_TOTAL.labels(status='skipped').inc()
            logger.info('recovery skipped, project changed during scan project_id=%s', candidate.project_id)
            continue
        summary.recovered += 1
        summary.results.append({**row, 'status': 'recovered', 'videoUrl': video_url})
        RECOVERY_TOTAL.labels(status='recovered').inc()
        logger.info('project recovered project_id=%s video_url=%s', candidate.project_id, video_url)
    return summary
