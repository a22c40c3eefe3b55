from __future__ import annotations

import datetime as dt
import uuid

import oss2

from .config import Settings, get_settings

_SUFFIX_BY_MIME = {
    'image/png': '.png',
    'image/jpeg': '.jpg',
    'image/webp': '.webp',
    'video/mp4': '.mp4',
}


class BlobStoreError(RuntimeError):
    pass


class OssBlobStore:
    """Publishes generated media to an OSS bucket and hands back public URLs."""

    def __init__(self, *, access_key_id: str, access_key_secret: str, bucket: str, endpoint: str) -> None:
        if not endpoint.startswith('http://') and not endpoint.startswith('https://'):
            endpoint = f'https://{endpoint}'
        self._endpoint = endpoint
        self._bucket_name = bucket
        self._bucket = oss2.Bucket(oss2.Auth(access_key_id, access_key_secret), endpoint, bucket)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> 'OssBlobStore | None':
        settings = settings or get_settings()
        if not (settings.oss_access_key_id and settings.oss_access_key_secret and settings.oss_bucket and settings.oss_endpoint):
            return None
        return cls(
            access_key_id=settings.oss_access_key_id,
            access_key_secret=settings.oss_access_key_secret,
            bucket=settings.oss_bucket,
            endpoint=settings.oss_endpoint,
        )

    def upload_bytes(self, data: bytes, *, mime_type: str, object_prefix: str = 'generated') -> str:
        if not data:
            raise BlobStoreError('empty_upload')
        suffix = _SUFFIX_BY_MIME.get(mime_type, '.bin')
        key = f"{object_prefix}/{dt.datetime.now(dt.timezone.utc).strftime('%Y%m%d')}/{uuid.uuid4().hex}{suffix}"
        self._bucket.put_object(key, data, headers={'Content-Type': mime_type})
        return key

    def public_url(self, object_key: str) -> str:
        if not object_key:
            return ''
        host = self._endpoint.replace('https://', '').replace('http://', '')
        return f'https://{self._bucket_name}.{host}/{object_key}'
