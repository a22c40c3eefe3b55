from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy import desc, select, update
from sqlalchemy.orm import Session

from .errors import InvalidSubmissionError, ProjectNotFoundError
from .job_store import get_job_by_project
from .ledger import debit, get_account, project_debit_key
from .models import Project, new_id, utcnow
from .pricing import ALLOWED_VIDEO_DURATIONS, DEFAULT_VIDEO_DURATION, credits_for_content_type, millicents_to_usd, priority_for_content_type
from .scheduler import enqueue

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({'id', 'account_id', 'content_type', 'product_image_url', 'scene_image_url', 'scene_video_url', 'created_at'})


def _is_http_url(value: str) -> bool:
    return value.startswith('http://') or value.startswith('https://')


class ProjectSubmission(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(default='', max_length=4000)
    content_type: Literal['image', 'video']
    product_image_url: str
    scene_image_url: str | None = None
    scene_video_url: str | None = None
    video_duration_seconds: int = DEFAULT_VIDEO_DURATION
    include_audio: bool = False

    @field_validator('product_image_url', 'scene_image_url', 'scene_video_url')
    @classmethod
    def _check_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        if not _is_http_url(value):
            raise ValueError('media reference must be an http(s) URL')
        return value

    @field_validator('video_duration_seconds')
    @classmethod
    def _check_duration(cls, value: int) -> int:
        if value not in ALLOWED_VIDEO_DURATIONS:
            raise ValueError(f'video duration must be one of {ALLOWED_VIDEO_DURATIONS}')
        return value

    @model_validator(mode='after')
    def _check_scene(self) -> 'ProjectSubmission':
        if not self.product_image_url:
            raise ValueError('product image is required')
        if bool(self.scene_image_url) == bool(self.scene_video_url):
            raise ValueError('provide exactly one of scene image or scene video')
        if self.content_type == 'image' and self.include_audio:
            self.include_audio = False
        return self

    def job_payload(self) -> dict[str, Any]:
        return {
            'title': self.title,
            'description': self.description,
            'contentType': self.content_type,
            'productImageUrl': self.product_image_url,
            'sceneImageUrl': self.scene_image_url,
            'sceneVideoUrl': self.scene_video_url,
            'videoDurationSeconds': self.video_duration_seconds,
            'includeAudio': self.include_audio,
        }


def submit_project(db: Session, *, account_id: str, submission: ProjectSubmission) -> tuple[Project, str]:
    """Debit, create the project and enqueue its job in the caller's transaction.

    Raises before anything is persisted when the account cannot pay.
    """
    if bool(submission.scene_image_url) == bool(submission.scene_video_url):
        raise InvalidSubmissionError('provide exactly one of scene image or scene video')
    account = get_account(db, account_id)
    credits_needed = credits_for_content_type(submission.content_type)
    project_id = new_id()

    if not account.is_admin:
        debit(
            db,
            account_id=account_id,
            amount=credits_needed,
            idempotency_key=project_debit_key(project_id),
            description=f'{submission.content_type}_generation',
            metadata_json={'projectId': project_id},
        )

    project = Project(
        id=project_id,
        account_id=account_id,
        title=submission.title,
        description=submission.description,
        content_type=submission.content_type,
        product_image_url=submission.product_image_url,
        scene_image_url=submission.scene_image_url,
        scene_video_url=submission.scene_video_url,
        video_duration_seconds=submission.video_duration_seconds,
        include_audio=submission.include_audio,
        status='pending',
        progress=0,
        credits_used=credits_needed,
    )
    db.add(project)
    db.flush()

    job_id = enqueue(
        db,
        project_id=project.id,
        account_id=account_id,
        payload=submission.job_payload(),
        priority=priority_for_content_type(submission.content_type),
    )
    logger.info('project submitted project_id=%s job_id=%s content_type=%s', project.id, job_id, project.content_type)
    return project, job_id


def get_project(db: Session, project_id: str, *, account_id: str | None = None) -> Project:
    project = db.get(Project, project_id)
    if project is None or (account_id is not None and project.account_id != account_id):
        raise ProjectNotFoundError(f'project {project_id} not found')
    return project


def list_projects(db: Session, account_id: str, limit: int = 100) -> list[Project]:
    stmt = select(Project).where(Project.account_id == account_id).order_by(desc(Project.created_at)).limit(limit)
    return list(db.execute(stmt).scalars())


def update_project(db: Session, project_id: str, **fields: Any) -> None:
    blocked = _IMMUTABLE_FIELDS.intersection(fields)
    if blocked:
        raise ValueError(f'immutable project fields: {sorted(blocked)}')
    if 'progress' in fields:
        fields['progress'] = max(0, min(100, int(fields['progress'])))
    fields['updated_at'] = utcnow()
    result = db.execute(update(Project).where(Project.id == project_id).values(**fields))
    if result.rowcount == 0:
        raise ProjectNotFoundError(f'project {project_id} not found')


def project_view(project: Project) -> dict[str, Any]:
    return {
        'id': project.id,
        'title': project.title,
        'description': project.description,
        'contentType': project.content_type,
        'productImageUrl': project.product_image_url,
        'sceneImageUrl': project.scene_image_url,
        'sceneVideoUrl': project.scene_video_url,
        'videoDurationSeconds': int(project.video_duration_seconds),
        'includeAudio': bool(project.include_audio),
        'status': project.status,
        'progress': int(project.progress),
        'enhancedPrompt': project.enhanced_prompt,
        'outputImageUrl': project.output_image_url,
        'outputVideoUrl': project.output_video_url,
        'creditsUsed': int(project.credits_used),
        'actualCostMillicents': int(project.actual_cost_millicents),
        'errorMessage': project.error_message,
        'createdAt': project.created_at.isoformat() if project.created_at else None,
        'updatedAt': project.updated_at.isoformat() if project.updated_at else None,
    }


def get_project_status(db: Session, project_id: str, *, account_id: str | None = None) -> dict[str, Any]:
    project = get_project(db, project_id, account_id=account_id)
    job = get_job_by_project(db, project.id)
    return {
        'projectId': project.id,
        'status': project.status,
        'progress': int(project.progress),
        'outputImageUrl': project.output_image_url,
        'outputVideoUrl': project.output_video_url,
        'errorMessage': project.error_message,
        'jobId': job.id if job else None,
        'jobStatus': job.status if job else None,
        'statusMessage': job.status_message if job else None,
    }


def cost_summary(db: Session, account_id: str) -> dict[str, Any]:
    projects = list_projects(db, account_id, limit=1000)
    total = sum(int(p.actual_cost_millicents) for p in projects)
    return {
        'totalCostMillicents': total,
        'totalCostUSD': str(millicents_to_usd(total)),
        'projectCount': len(projects),
        'breakdown': {
            'imageProjects': sum(1 for p in projects if p.content_type == 'image'),
            'videoProjects': sum(1 for p in projects if p.content_type == 'video'),
        },
        'projects': [
            {
                'id': p.id,
                'title': p.title,
                'contentType': p.content_type,
                'status': p.status,
                'actualCostMillicents': int(p.actual_cost_millicents),
                'actualCostUSD': str(millicents_to_usd(p.actual_cost_millicents)),
                'createdAt': p.created_at.isoformat() if p.created_at else None,
            }
            for p in projects
        ],
    }
