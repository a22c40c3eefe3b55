from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any

import requests
from openai import OpenAI

from cgi_studio_shared.config import Settings, get_settings

from .capabilities import MediaRef, VideoDirection, VideoPromptParts
from .prompts import (
    AUDIO_HINT,
    DEFAULT_NEGATIVE_PROMPT,
    IMAGE_PROMPT_FALLBACK,
    IMAGE_PROMPT_TEMPLATE,
    IMAGE_SYNTHESIS_TEMPLATE,
    VIDEO_DIRECTION_TEMPLATE,
    VIDEO_PROMPT_TEMPLATE,
)
from .provider_errors import ProviderRequestError, ProviderResponseError

logger = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r'\{[\s\S]*\}')


def _field_from_text(text: str, name: str) -> str:
    match = re.search(name + r'[\'"]\s*:\s*[\'"]([^\'"]*)[\'"]', text)
    return match.group(1) if match else ''


def parse_video_prompt_reply(text: str) -> VideoPromptParts:
    """Read the JSON block of a video-prompt reply, scraping fields when it is malformed."""
    text = str(text or '').strip()
    try:
        match = _JSON_BLOCK.search(text)
        if match is None:
            raise ValueError('no JSON object in reply')
        data = json.loads(match.group(0))
        if not isinstance(data, dict):
            raise ValueError('reply JSON is not an object')
    except ValueError as exc:
        logger.warning('video prompt reply not valid JSON, scraping fields: %s', exc)
        data = {
            'imageScenePrompt': _field_from_text(text, 'imageScenePrompt'),
            'videoMotionPrompt': _field_from_text(text, 'videoMotionPrompt'),
            'combinedVideoPrompt': _field_from_text(text, 'combinedVideoPrompt') or text,
            'qualityNegativePrompt': '',
        }
    return VideoPromptParts(
        scene_prompt=str(data.get('imageScenePrompt') or ''),
        motion_prompt=str(data.get('videoMotionPrompt') or ''),
        negative_prompt=str(data.get('qualityNegativePrompt') or DEFAULT_NEGATIVE_PROMPT),
        combined_prompt=str(data.get('combinedVideoPrompt') or text),
    )


def parse_video_direction_reply(text: str, *, duration_seconds: int) -> VideoDirection:
    text = str(text or '').strip()
    try:
        match = _JSON_BLOCK.search(text)
        data = json.loads(match.group(0)) if match else None
    except ValueError:
        data = None
    if not isinstance(data, dict):
        logger.warning('video direction reply not valid JSON, using raw text')
        return VideoDirection(direction=text)
    camera = data.get('motionInstructions') or f'Smooth {duration_seconds}-second camera movement showcasing the product with cinematic flow'
    motion = data.get('combinedVideoPrompt') or data.get('videoMotionPrompt') or ''
    direction = f'{motion}\n\nCamera: {camera}'.strip() if motion else str(camera)
    return VideoDirection(direction=direction, audio_prompt=str(data.get('audioPrompt') or ''))


def extract_inline_image(body: Any) -> tuple[bytes, str]:
    """Pull the first inline image out of a generateContent reply."""
    candidates = body.get('candidates') if isinstance(body, dict) else None
    if not isinstance(candidates, list) or not candidates:
        feedback = body.get('promptFeedback') if isinstance(body, dict) else None
        raise ProviderResponseError(code='gemini_no_candidates', message=f'image model returned no candidates: {feedback}')
    parts = ((candidates[0] or {}).get('content') or {}).get('parts') or []
    for part in parts:
        inline = part.get('inlineData') or part.get('inline_data') if isinstance(part, dict) else None
        if isinstance(inline, dict) and inline.get('data'):
            mime_type = inline.get('mimeType') or inline.get('mime_type') or 'image/png'
            return base64.b64decode(inline['data']), str(mime_type)
    raise ProviderResponseError(code='gemini_no_image', message='image model reply contained no image part')


class GeminiClient:
    """Prompt work goes through the OpenAI-compatible endpoint; image output needs the native API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        openai_base_url: str,
        text_model: str,
        image_model: str,
        timeout_seconds: float = 120,
        session: requests.Session | None = None,
        openai_client: OpenAI | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip('/')
        self._text_model = text_model
        self._image_model = image_model
        self._timeout = (10, max(10.0, float(timeout_seconds)))
        self._session = session
        self._openai = openai_client or OpenAI(api_key=api_key, base_url=openai_base_url, timeout=float(timeout_seconds))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> 'GeminiClient':
        settings = settings or get_settings()
        return cls(
            api_key=settings.gemini_api_key,
            base_url=settings.gemini_base_url,
            openai_base_url=settings.gemini_openai_base_url,
            text_model=settings.gemini_text_model,
            image_model=settings.gemini_image_model,
            timeout_seconds=settings.gemini_timeout_seconds,
        )

    def _http(self):
        return self._session if self._session else requests

    def load_media(self, ref: MediaRef) -> tuple[str, str]:
        """Download a media reference; returns (base64 data, mime type)."""
        try:
            response = self._http().get(ref.url, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ProviderRequestError(code='media_unreachable', message=f'could not load {ref.kind} media: {exc}') from exc
        if response.status_code >= 400:
            raise ProviderRequestError(code='media_http_error', message=f'{ref.kind} media HTTP {response.status_code}')
        mime_type = str(response.headers.get('content-type') or '').split(';')[0].strip()
        if not mime_type or mime_type == 'application/octet-stream':
            mime_type = 'video/mp4' if ref.kind == 'video' else 'image/jpeg'
        return base64.b64encode(response.content).decode('ascii'), mime_type

    def _image_part(self, ref: MediaRef) -> dict:
        data, mime_type = self.load_media(ref)
        return {'type': 'image_url', 'image_url': {'url': f'data:{mime_type};base64,{data}'}}

    def _chat(self, content: list[dict], *, temperature: float = 0.4) -> str:
        completion = self._openai.chat.completions.create(
            model=self._text_model,
            temperature=temperature,
            messages=[{'role': 'user', 'content': content}],
        )
        return str(completion.choices[0].message.content or '').strip()

    def enhance_prompt(self, *, product: MediaRef, scene: MediaRef, description: str) -> str:
        content = [{'type': 'text', 'text': IMAGE_PROMPT_TEMPLATE.format(description=description)}, self._image_part(product)]
        if scene.kind == 'image':
            content.append(self._image_part(scene))
        text = self._chat(content)
        return text or IMAGE_PROMPT_FALLBACK.format(description=description)

    def enhance_video_prompt(self, *, product: MediaRef, scene: MediaRef, description: str, duration_seconds: int) -> VideoPromptParts:
        content = [
            {'type': 'text', 'text': VIDEO_PROMPT_TEMPLATE.format(description=description, duration=duration_seconds)},
            self._image_part(product),
        ]
        if scene.kind == 'image':
            content.append(self._image_part(scene))
        return parse_video_prompt_reply(self._chat(content))

    def derive_video_direction(self, *, image_data: str, mime_type: str, description: str, duration_seconds: int, include_audio: bool) -> VideoDirection:
        text = VIDEO_DIRECTION_TEMPLATE.format(
            duration=duration_seconds,
            description=description,
            audio_hint=AUDIO_HINT if include_audio else '',
        )
        content = [
            {'type': 'image_url', 'image_url': {'url': f'data:{mime_type};base64,{image_data}'}},
            {'type': 'text', 'text': text},
        ]
        return parse_video_direction_reply(self._chat(content), duration_seconds=duration_seconds)

    def generate_image(self, *, product: MediaRef, scene: MediaRef, prompt: str) -> tuple[bytes, str]:
        parts: list[dict] = [{'text': IMAGE_SYNTHESIS_TEMPLATE.format(prompt=prompt)}]
        for ref in (product, scene):
            data, mime_type = self.load_media(ref)
            parts.append({'inline_data': {'mime_type': mime_type, 'data': data}})
        body = {
            'contents': [{'role': 'user', 'parts': parts}],
            'generationConfig': {'responseModalities': ['TEXT', 'IMAGE']},
        }
        url = f'{self._base_url}/models/{self._image_model}:generateContent'
        try:
            response = self._http().post(
                url,
                json=body,
                headers={'x-goog-api-key': self._api_key, 'Content-Type': 'application/json'},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ProviderRequestError(code='gemini_unreachable', message=f'Gemini request failed: {exc}') from exc
        if response.status_code >= 400:
            raise ProviderRequestError(code='gemini_http_error', message=f'Gemini HTTP {response.status_code}: {str(response.text or "")[:300]}')
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderResponseError(code='gemini_invalid_json', message='Gemini returned a non-JSON body') from exc
        return extract_inline_image(payload)
