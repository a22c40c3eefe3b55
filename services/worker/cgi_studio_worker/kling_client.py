from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from cgi_studio_shared.config import Settings, get_settings

from .capabilities import TaskIdCallback, TaskSnapshot, VideoResult
from .provider_errors import ProviderRequestError, ProviderResponseError, ProviderStillProcessingError, ProviderTaskFailedError

logger = logging.getLogger(__name__)

COMPLETED_STATUSES = frozenset({'completed', 'success', 'succeed', 'succeeded'})
FAILED_STATUSES = frozenset({'failed', 'error'})
PROCESSING_STATUSES = frozenset({'pending', 'processing', 'running', 'staged', 'queued'})


@dataclass(frozen=True)
class WrappedSubmission:
    """``{"code": 200, "data": {"task_id": ...}}`` and its nested-task cousin."""

    task_id: str


@dataclass(frozen=True)
class DirectSubmission:
    """``{"task_id": ...}`` at the top level."""

    task_id: str


@dataclass(frozen=True)
class ErrorEnvelope:
    code: Any
    message: str


SubmissionResponse = WrappedSubmission | DirectSubmission | ErrorEnvelope


def _as_task_id(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int)) and str(value).strip():
        return str(value).strip()
    return None


def _decode_json_text(body: Any) -> Any:
    if isinstance(body, str):
        try:
            return json.loads(body)
        except ValueError as exc:
            raise ProviderResponseError(code='kling_invalid_json', message=f'unparseable provider body: {body[:120]}') from exc
    return body


def decode_submission(body: Any) -> SubmissionResponse:
    """Map a task-creation reply onto one known variant or raise."""
    body = _decode_json_text(body)
    if not isinstance(body, dict):
        raise ProviderResponseError(code='kling_unrecognized_response', message=f'unexpected submission body type {type(body).__name__}')

    data = body.get('data')
    if isinstance(data, dict):
        task_id = _as_task_id(data.get('task_id')) or _as_task_id(data.get('taskId'))
        task = data.get('task')
        if task_id is None and isinstance(task, dict):
            task_id = _as_task_id(task.get('task_id')) or _as_task_id(task.get('id'))
        if task_id is None:
            task_id = _as_task_id(data.get('id'))
        if task_id is not None:
            return WrappedSubmission(task_id=task_id)

    task_id = _as_task_id(body.get('task_id')) or _as_task_id(body.get('taskId'))
    if task_id is not None:
        return DirectSubmission(task_id=task_id)

    code = body.get('code')
    if (code is not None and code not in (0, 200)) or body.get('error'):
        message = body.get('message') or body.get('error')
        if isinstance(message, dict):
            message = message.get('message') or json.dumps(message)
        return ErrorEnvelope(code=code, message=str(message or f'provider code {code}'))

    raise ProviderResponseError(code='kling_unrecognized_response', message=f'no task id in submission keys={sorted(body)}')


def task_id_from_submission(body: Any) -> str:
    decoded = decode_submission(body)
    if isinstance(decoded, ErrorEnvelope):
        raise ProviderRequestError(code='kling_submission_rejected', message=f'provider rejected task: {decoded.message}')
    return decoded.task_id


def _extract_video_url(output: Any) -> str | None:
    if isinstance(output, str) and output.startswith('http'):
        return output
    if not isinstance(output, dict):
        return None
    url = output.get('video_url') or output.get('video')
    if isinstance(url, str) and url:
        return url
    works = output.get('works')
    if isinstance(works, list) and works and isinstance(works[0], dict):
        video = works[0].get('video')
        if isinstance(video, dict):
            return video.get('resource_without_watermark') or video.get('resource') or None
    return None


def decode_task_status(body: Any, task_id: str) -> TaskSnapshot:
    body = _decode_json_text(body)
    if not isinstance(body, dict):
        raise ProviderResponseError(code='kling_unrecognized_status', message='status body is not an object', task_id=task_id)
    task = body.get('data') if isinstance(body.get('data'), dict) else body
    raw_status = str(task.get('status') or body.get('status') or '').strip().lower()

    if raw_status in COMPLETED_STATUSES:
        status = 'completed'
    elif raw_status in FAILED_STATUSES:
        status = 'failed'
    elif raw_status in PROCESSING_STATUSES:
        status = 'processing'
    else:
        status = 'unknown'

    error = task.get('error')
    if isinstance(error, dict):
        error = error.get('message') or error.get('raw_message') or None
    return TaskSnapshot(
        task_id=task_id,
        status=status,
        video_url=_extract_video_url(task.get('output')),
        error=str(error) if error else None,
        raw=body,
    )


class KlingClient:
    """PiAPI front for Kling video generation and the sound add-on.

    Long waits are a single sleep followed by a single status check.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = 'https://api.piapi.ai',
        timeout_seconds: float = 60,
        video_wait_seconds: float = 240,
        audio_wait_seconds: float = 180,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip('/')
        self._timeout_seconds = max(2.0, float(timeout_seconds))
        self.video_wait_seconds = float(video_wait_seconds)
        self.audio_wait_seconds = float(audio_wait_seconds)
        self._session = session
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> 'KlingClient':
        settings = settings or get_settings()
        return cls(
            api_key=settings.kling_api_key,
            base_url=settings.kling_base_url,
            timeout_seconds=settings.kling_timeout_seconds,
            video_wait_seconds=settings.video_wait_seconds,
            audio_wait_seconds=settings.audio_wait_seconds,
        )

    def _request(self, method: str, path: str, *, json_body: dict[str, Any] | None = None) -> Any:
        client = self._session if self._session else requests
        try:
            response = client.request(
                method=method,
                url=f'{self._base_url}{path}',
                json=json_body,
                headers={'X-API-Key': self._api_key, 'Content-Type': 'application/json'},
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderRequestError(code='kling_unreachable', message=f'Kling request failed: {exc}') from exc
        if response.status_code >= 400:
            raise ProviderRequestError(code='kling_http_error', message=f'Kling HTTP {response.status_code}: {str(response.text or "")[:300]}')
        try:
            return response.json()
        except ValueError:
            return str(response.text or '')

    def submit_task(self, task_type: str, task_input: dict[str, Any]) -> str:
        body = self._request('POST', '/api/v1/task', json_body={'model': 'kling', 'task_type': task_type, 'input': task_input})
        task_id = task_id_from_submission(body)
        logger.info('kling task submitted task_type=%s task_id=%s', task_type, task_id)
        return task_id

    def get_task(self, task_id: str) -> TaskSnapshot:
        return decode_task_status(self._request('GET', f'/api/v1/task/{task_id}'), task_id)

    def await_task(self, task_id: str, *, wait_seconds: float) -> TaskSnapshot:
        self._sleep(wait_seconds)
        snapshot = self.get_task(task_id)
        if snapshot.status == 'completed':
            if not snapshot.video_url:
                raise ProviderResponseError(code='kling_missing_output', message='task completed without a video url', task_id=task_id)
            return snapshot
        if snapshot.status == 'failed':
            raise ProviderTaskFailedError(code='kling_task_failed', message=f'Kling task failed: {snapshot.error or "unknown error"}', task_id=task_id)
        if snapshot.status == 'processing':
            raise ProviderStillProcessingError(
                code='kling_still_processing',
                message=f'Kling task still processing after {int(wait_seconds)}s',
                task_id=task_id,
            )
        raise ProviderResponseError(code='kling_unknown_status', message='task status not recognized', task_id=task_id)

    def synthesize_video(
        self,
        *,
        image_url: str,
        prompt: str,
        duration_seconds: int,
        negative_prompt: str,
        on_task_id: TaskIdCallback,
    ) -> VideoResult:
        if not (image_url.startswith('http://') or image_url.startswith('https://')):
            raise ValueError(f'image reference must be an http(s) URL, got {image_url[:60]!r}')
        task_id = self.submit_task(
            'video_generation',
            {
                'prompt': prompt,
                'image_url': image_url,
                'duration': int(duration_seconds),
                'aspect_ratio': '16:9',
                'mode': 'std',
                'cfg_scale': 0.5,
                'negative_prompt': negative_prompt,
            },
        )
        on_task_id(task_id)
        snapshot = self.await_task(task_id, wait_seconds=self.video_wait_seconds)
        return VideoResult(video_url=str(snapshot.video_url), task_id=task_id, details=snapshot.raw)

    def add_audio(self, *, video_task_id: str, prompt: str, on_task_id: TaskIdCallback) -> str:
        # The sound endpoint derives audio from the origin task; the prompt is only logged.
        logger.info('kling sound requested origin_task_id=%s prompt=%s', video_task_id, prompt[:80])
        task_id = self.submit_task('sound', {'origin_task_id': video_task_id})
        on_task_id(task_id)
        snapshot = self.await_task(task_id, wait_seconds=self.audio_wait_seconds)
        return str(snapshot.video_url)
