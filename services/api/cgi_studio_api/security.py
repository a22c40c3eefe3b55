from __future__ import annotations

import datetime as dt
import uuid

from jose import JWTError, jwt

from cgi_studio_shared.config import get_settings

settings = get_settings()


def create_access_token(*, account_id: str, expires_minutes: int | None = None) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    exp = now + dt.timedelta(minutes=expires_minutes or settings.jwt_exp_minutes)
    payload = {'sub': account_id, 'jti': uuid.uuid4().hex, 'iat': int(now.timestamp()), 'exp': int(exp.timestamp())}
    return jwt.encode(payload, settings.jwt_secret, algorithm='HS256')


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=['HS256'])
    except JWTError as exc:
        raise ValueError('invalid_token') from exc
