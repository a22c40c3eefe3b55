from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import Counter, Histogram

from cgi_studio_shared import job_store, ledger
from cgi_studio_shared.db import Database
from cgi_studio_shared.errors import JobNotClaimedError
from cgi_studio_shared.pricing import millicents_to_usd, stage_cost
from cgi_studio_shared.projects import get_project, update_project

from .capabilities import GenerationCapabilities, MediaRef, VideoPromptParts
from .prompts import DEFAULT_NEGATIVE_PROMPT

logger = logging.getLogger(__name__)

PIPELINE_TOTAL = Counter('cgi_studio_worker_pipeline_total', 'Pipeline runs', ['status', 'content_type'])
PIPELINE_DURATION = Histogram('cgi_studio_worker_pipeline_duration_seconds', 'Pipeline duration seconds', ['content_type'])
PROVIDER_COST = Counter('cgi_studio_worker_provider_cost_total', 'Provider cost accrued, 1/1000 USD', ['stage'])
DEGRADED_STAGES = Counter('cgi_studio_worker_degraded_stages_total', 'Optional stages skipped after an error', ['stage'])


class VideoStageError(RuntimeError):
    pass


@dataclass(frozen=True)
class JobPayload:
    content_type: str
    product_image_url: str
    scene_image_url: str | None
    scene_video_url: str | None
    description: str = ''
    video_duration_seconds: int = 5
    include_audio: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'JobPayload':
        content_type = str(data.get('contentType') or '')
        if content_type not in ('image', 'video'):
            raise ValueError(f'unsupported content type {content_type!r}')
        product = str(data.get('productImageUrl') or '')
        if not product:
            raise ValueError('job payload has no product image')
        return cls(
            content_type=content_type,
            product_image_url=product,
            scene_image_url=data.get('sceneImageUrl') or None,
            scene_video_url=data.get('sceneVideoUrl') or None,
            description=str(data.get('description') or ''),
            video_duration_seconds=int(data.get('videoDurationSeconds') or 5),
            include_audio=bool(data.get('includeAudio')) and content_type == 'video',
        )

    @property
    def product(self) -> MediaRef:
        return MediaRef(url=self.product_image_url, kind='image')

    @property
    def scene(self) -> MediaRef:
        if self.scene_image_url:
            return MediaRef(url=self.scene_image_url, kind='image')
        if self.scene_video_url:
            return MediaRef(url=self.scene_video_url, kind='video')
        raise ValueError('job payload has no scene reference')


@dataclass
class PipelineRun:
    job_id: str
    project_id: str
    account_id: str
    raw_payload: dict[str, Any]
    payload: JobPayload | None = None
    stage: str = 'load'
    cost_millicents: int = 0

    @property
    def content_type(self) -> str:
        return str(self.raw_payload.get('contentType') or 'unknown')

    def accrue(self, cost_key: str) -> None:
        amount = stage_cost(cost_key)
        self.cost_millicents += amount
        PROVIDER_COST.labels(stage=cost_key).inc(amount)


@dataclass
class ExecutionOutcome:
    job_id: str
    project_id: str
    status: str
    cost_millicents: int
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            'jobId': self.job_id,
            'projectId': self.project_id,
            'status': self.status,
            'costMillicents': self.cost_millicents,
            'result': self.result,
            'error': self.error,
        }


class JobExecutor:
    """Drives one claimed job through the generation stages.

    Every checkpoint commits the Project and Job rows together so progress is
    visible to pollers while the run is still going.
    """

    def __init__(self, database: Database, capabilities: GenerationCapabilities, *, refund_on_failure: bool = True) -> None:
        self._database = database
        self._capabilities = capabilities
        self._refund_on_failure = refund_on_failure

    def run(self, job_id: str) -> ExecutionOutcome:
        started = time.perf_counter()
        with self._database.session_scope() as db:
            job = job_store.get_job(db, job_id)
            if job.status != 'processing':
                raise JobNotClaimedError(f'job {job_id} is {job.status}, not claimed for processing')
            run = PipelineRun(job_id=job.id, project_id=job.project_id, account_id=job.account_id, raw_payload=dict(job.payload or {}))

        try:
            result = self._execute(run)
        except Exception as exc:  # noqa: BLE001
            logger.exception('pipeline failed job_id=%s project_id=%s stage=%s', run.job_id, run.project_id, run.stage)
            message = self._fail(run, exc)
            PIPELINE_TOTAL.labels(status='failed', content_type=run.content_type).inc()
            return ExecutionOutcome(job_id=run.job_id, project_id=run.project_id, status='failed', cost_millicents=run.cost_millicents, error=message)
        finally:
            PIPELINE_DURATION.labels(content_type=run.content_type).observe(max(0.0, time.perf_counter() - started))

        PIPELINE_TOTAL.labels(status='completed', content_type=run.content_type).inc()
        logger.info('pipeline done job_id=%s project_id=%s cost=%s', run.job_id, run.project_id, run.cost_millicents)
        return ExecutionOutcome(job_id=run.job_id, project_id=run.project_id, status='completed', cost_millicents=run.cost_millicents, result=result)

    def _execute(self, run: PipelineRun) -> dict[str, Any]:
        payload = run.payload = JobPayload.from_dict(run.raw_payload)
        caps = self._capabilities
        self._checkpoint(run, progress=10, message='Starting CGI processing', project_status='processing')

        run.stage = 'enhance_prompt'
        self._checkpoint(run, progress=25, message='Enhancing prompt', project_status='enhancing_prompt')
        video_parts: VideoPromptParts | None = None
        try:
            if payload.content_type == 'video':
                video_parts = caps.enhance_video_prompt(
                    product=payload.product,
                    scene=payload.scene,
                    description=payload.description,
                    duration_seconds=payload.video_duration_seconds,
                )
                enhanced_prompt = video_parts.video_prompt
                image_prompt = video_parts.scene_prompt or enhanced_prompt
            else:
                enhanced_prompt = image_prompt = caps.enhance_prompt(product=payload.product, scene=payload.scene, description=payload.description)
        finally:
            run.accrue('prompt_enhancement')
        self._checkpoint(run, progress=50, message='Prompt enhanced', project_fields={'enhanced_prompt': enhanced_prompt})

        run.stage = 'synthesize_image'
        self._checkpoint(run, progress=60, message='Generating image', project_status='generating_image')
        try:
            image = caps.synthesize_image(product=payload.product, scene=payload.scene, prompt=image_prompt)
        finally:
            run.accrue('image_generation')
        self._checkpoint(run, progress=75, message='Image generated', project_fields={'output_image_url': image.url})

        if video_parts is None:
            return self._finish(run, image_url=image.url, video_url=None)

        run.stage = 'derive_video_direction'
        self._checkpoint(run, progress=78, message='Analyzing generated image', project_status='generating_video')
        video_prompt = video_parts.motion_prompt or enhanced_prompt
        audio_prompt = video_prompt
        try:
            direction = caps.derive_video_direction(
                image=image,
                description=payload.description,
                duration_seconds=payload.video_duration_seconds,
                include_audio=payload.include_audio,
            )
        except Exception as exc:  # noqa: BLE001
            DEGRADED_STAGES.labels(stage=run.stage).inc()
            logger.warning('video direction skipped job_id=%s project_id=%s error=%s', run.job_id, run.project_id, exc)
        else:
            if direction.direction:
                video_prompt = f'{video_prompt}\n\nCamera and Production: {direction.direction}'
            if direction.audio_prompt:
                audio_prompt = direction.audio_prompt
        finally:
            run.accrue('video_analysis')

        run.stage = 'synthesize_video'
        negative_prompt = (video_parts.negative_prompt or DEFAULT_NEGATIVE_PROMPT).strip()
        if not negative_prompt:
            raise VideoStageError('Video generation failed: negative prompt is empty')
        self._checkpoint(run, progress=80, message='Generating video')
        try:
            video = caps.synthesize_video(
                image_url=image.url,
                prompt=video_prompt,
                duration_seconds=payload.video_duration_seconds,
                negative_prompt=negative_prompt,
                on_task_id=lambda task_id: self._record_task_id(run, 'video_task_id', task_id),
            )
        except Exception as exc:
            raise VideoStageError(f'Video generation failed: {exc}') from exc
        finally:
            run.accrue('video_generation')
        video_url = video.video_url
        self._checkpoint(
            run,
            progress=95,
            message='Video generated',
            project_fields={'output_video_url': video_url, 'video_task_id': video.task_id, 'task_details': video.details},
        )

        if payload.include_audio:
            run.stage = 'add_audio'
            try:
                video_url = caps.add_audio(
                    video_task_id=video.task_id,
                    prompt=audio_prompt,
                    on_task_id=lambda task_id: self._record_task_id(run, 'audio_task_id', task_id),
                )
            except Exception as exc:  # noqa: BLE001
                DEGRADED_STAGES.labels(stage=run.stage).inc()
                logger.warning('audio skipped, keeping silent video job_id=%s project_id=%s error=%s', run.job_id, run.project_id, exc)
            else:
                self._checkpoint(run, progress=98, message='Audio added', project_fields={'output_video_url': video_url})

        return self._finish(run, image_url=image.url, video_url=video_url)

    def _checkpoint(
        self,
        run: PipelineRun,
        *,
        progress: int,
        message: str,
        project_status: str | None = None,
        project_fields: dict[str, Any] | None = None,
    ) -> None:
        fields = dict(project_fields or {})
        if project_status:
            fields['status'] = project_status
        fields['progress'] = progress
        fields['actual_cost_millicents'] = run.cost_millicents
        with self._database.session_scope() as db:
            update_project(db, run.project_id, **fields)
            job_store.update_job(db, run.job_id, progress=progress, status_message=message)

    def _record_task_id(self, run: PipelineRun, field_name: str, task_id: str) -> None:
        with self._database.session_scope() as db:
            update_project(db, run.project_id, **{field_name: task_id})
        logger.info('external task recorded project_id=%s %s=%s', run.project_id, field_name, task_id)

    def _finish(self, run: PipelineRun, *, image_url: str, video_url: str | None) -> dict[str, Any]:
        run.stage = 'finalize'
        result = {
            'outputImageUrl': image_url,
            'outputVideoUrl': video_url,
            'totalCost': run.cost_millicents,
            'costInUSD': str(millicents_to_usd(run.cost_millicents)),
        }
        with self._database.session_scope() as db:
            update_project(
                db,
                run.project_id,
                status='completed',
                progress=100,
                output_image_url=image_url,
                output_video_url=video_url,
                actual_cost_millicents=run.cost_millicents,
                error_message=None,
            )
            job_store.mark_job_completed(db, run.job_id, result)
        return result

    def _fail(self, run: PipelineRun, exc: Exception) -> str:
        message = str(exc) or exc.__class__.__name__
        with self._database.session_scope() as db:
            update_project(db, run.project_id, status='failed', error_message=message, actual_cost_millicents=run.cost_millicents)
            job_store.mark_job_failed(db, run.job_id, message)
        if self._refund_on_failure:
            try:
                with self._database.session_scope() as db:
                    ledger.refund_project(db, get_project(db, run.project_id), reason=message)
            except Exception:  # noqa: BLE001
                logger.exception('refund failed job_id=%s project_id=%s', run.job_id, run.project_id)
        return message
