from __future__ import annotations

import base64
import hashlib
import logging

from cgi_studio_shared.config import Settings, get_settings
from cgi_studio_shared.oss_storage import BlobStoreError, OssBlobStore

from .capabilities import GeneratedImage, MediaRef, TaskIdCallback, TaskSnapshot, VideoDirection, VideoPromptParts, VideoResult
from .gemini_client import GeminiClient
from .kling_client import KlingClient
from .prompts import DEFAULT_NEGATIVE_PROMPT, IMAGE_PROMPT_FALLBACK

logger = logging.getLogger(__name__)

# 1x1 transparent PNG
_MOCK_PNG = base64.b64decode('iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII=')


def _digest(*parts: str) -> str:
    return hashlib.sha1('|'.join(parts).encode('utf-8')).hexdigest()[:16]


class MockCapabilities:
    """Deterministic providers for local runs and tests. No network."""

    base_url = 'https://mock.cgi-studio.local'

    def enhance_prompt(self, *, product: MediaRef, scene: MediaRef, description: str) -> str:
        return IMAGE_PROMPT_FALLBACK.format(description=description).strip()

    def enhance_video_prompt(self, *, product: MediaRef, scene: MediaRef, description: str, duration_seconds: int) -> VideoPromptParts:
        return VideoPromptParts(
            scene_prompt=f'Product placed naturally in the scene. {description}'.strip(),
            motion_prompt=f'Slow {duration_seconds}-second push-in toward the product',
            negative_prompt=DEFAULT_NEGATIVE_PROMPT,
        )

    def synthesize_image(self, *, product: MediaRef, scene: MediaRef, prompt: str) -> GeneratedImage:
        key = _digest(product.url, scene.url, prompt)
        return GeneratedImage(url=f'{self.base_url}/images/{key}.png', mime_type='image/png', data=_MOCK_PNG)

    def derive_video_direction(self, *, image: GeneratedImage, description: str, duration_seconds: int, include_audio: bool) -> VideoDirection:
        return VideoDirection(
            direction=f'Smooth {duration_seconds}-second orbit ending on a hero shot of the product',
            audio_prompt='soft ambient room tone' if include_audio else '',
        )

    def synthesize_video(
        self,
        *,
        image_url: str,
        prompt: str,
        duration_seconds: int,
        negative_prompt: str,
        on_task_id: TaskIdCallback,
    ) -> VideoResult:
        task_id = f'mock-video-{_digest(image_url, prompt)}'
        on_task_id(task_id)
        return VideoResult(
            video_url=f'{self.base_url}/videos/{task_id}.mp4',
            task_id=task_id,
            details={'task_id': task_id, 'status': 'completed', 'duration': duration_seconds},
        )

    def add_audio(self, *, video_task_id: str, prompt: str, on_task_id: TaskIdCallback) -> str:
        task_id = f'mock-audio-{_digest(video_task_id)}'
        on_task_id(task_id)
        return f'{self.base_url}/videos/{task_id}.mp4'

    def get_task(self, task_id: str) -> TaskSnapshot:
        return TaskSnapshot(task_id=task_id, status='completed', video_url=f'{self.base_url}/videos/{task_id}.mp4')


class ProviderCapabilities:
    """Gemini for prompts and stills, Kling for motion and sound, OSS for publishing stills."""

    def __init__(self, *, gemini: GeminiClient, kling: KlingClient, blob_store: OssBlobStore | None) -> None:
        self.gemini = gemini
        self.kling = kling
        self.blob_store = blob_store

    def enhance_prompt(self, *, product: MediaRef, scene: MediaRef, description: str) -> str:
        return self.gemini.enhance_prompt(product=product, scene=scene, description=description)

    def enhance_video_prompt(self, *, product: MediaRef, scene: MediaRef, description: str, duration_seconds: int) -> VideoPromptParts:
        return self.gemini.enhance_video_prompt(product=product, scene=scene, description=description, duration_seconds=duration_seconds)

    def synthesize_image(self, *, product: MediaRef, scene: MediaRef, prompt: str) -> GeneratedImage:
        data, mime_type = self.gemini.generate_image(product=product, scene=scene, prompt=prompt)
        if self.blob_store is None:
            raise BlobStoreError('blob_store_not_configured')
        key = self.blob_store.upload_bytes(data, mime_type=mime_type, object_prefix='cgi-images')
        return GeneratedImage(url=self.blob_store.public_url(key), mime_type=mime_type, data=data)

    def derive_video_direction(self, *, image: GeneratedImage, description: str, duration_seconds: int, include_audio: bool) -> VideoDirection:
        if image.data:
            encoded, mime_type = base64.b64encode(image.data).decode('ascii'), image.mime_type
        else:
            encoded, mime_type = self.gemini.load_media(MediaRef(url=image.url))
        return self.gemini.derive_video_direction(
            image_data=encoded,
            mime_type=mime_type,
            description=description,
            duration_seconds=duration_seconds,
            include_audio=include_audio,
        )

    def synthesize_video(
        self,
        *,
        image_url: str,
        prompt: str,
        duration_seconds: int,
        negative_prompt: str,
        on_task_id: TaskIdCallback,
    ) -> VideoResult:
        return self.kling.synthesize_video(
            image_url=image_url,
            prompt=prompt,
            duration_seconds=duration_seconds,
            negative_prompt=negative_prompt,
            on_task_id=on_task_id,
        )

    def add_audio(self, *, video_task_id: str, prompt: str, on_task_id: TaskIdCallback) -> str:
        return self.kling.add_audio(video_task_id=video_task_id, prompt=prompt, on_task_id=on_task_id)

    def get_task(self, task_id: str) -> TaskSnapshot:
        return self.kling.get_task(task_id)


def build_capabilities(settings: Settings | None = None):
    settings = settings or get_settings()
    if settings.enable_mock_pipeline or not settings.gemini_api_key or not settings.kling_api_key:
        logger.info('using mock generation providers')
        return MockCapabilities()
    return ProviderCapabilities(
        gemini=GeminiClient.from_settings(settings),
        kling=KlingClient.from_settings(settings),
        blob_store=OssBlobStore.from_settings(settings),
    )
