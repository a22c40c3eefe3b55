from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

TaskIdCallback = Callable[[str], None]


@dataclass(frozen=True)
class MediaRef:
    url: str
    kind: str = 'image'


@dataclass(frozen=True)
class VideoPromptParts:
    scene_prompt: str
    motion_prompt: str
    negative_prompt: str
    combined_prompt: str = ''

    @property
    def video_prompt(self) -> str:
        return self.combined_prompt or f'{self.scene_prompt}\n\nMOTION: {self.motion_prompt}'.strip()


@dataclass(frozen=True)
class GeneratedImage:
    url: str
    mime_type: str = 'image/png'
    data: bytes = b''


@dataclass(frozen=True)
class VideoDirection:
    direction: str
    audio_prompt: str = ''


@dataclass(frozen=True)
class VideoResult:
    video_url: str
    task_id: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskSnapshot:
    task_id: str
    status: str
    video_url: str | None = None
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status == 'completed' and bool(self.video_url)


class GenerationCapabilities(Protocol):
    def enhance_prompt(self, *, product: MediaRef, scene: MediaRef, description: str) -> str: ...

    def enhance_video_prompt(self, *, product: MediaRef, scene: MediaRef, description: str, duration_seconds: int) -> VideoPromptParts: ...

    def synthesize_image(self, *, product: MediaRef, scene: MediaRef, prompt: str) -> GeneratedImage: ...

    def derive_video_direction(self, *, image: GeneratedImage, description: str, duration_seconds: int, include_audio: bool) -> VideoDirection: ...

    def synthesize_video(
        self,
        *,
        image_url: str,
        prompt: str,
        duration_seconds: int,
        negative_prompt: str,
        on_task_id: TaskIdCallback,
    ) -> VideoResult: ...

    def add_audio(self, *, video_task_id: str, prompt: str, on_task_id: TaskIdCallback) -> str: ...

    def get_task(self, task_id: str) -> TaskSnapshot: ...
