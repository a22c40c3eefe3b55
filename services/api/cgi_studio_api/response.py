from __future__ import annotations

from typing import Any

from fastapi import Request

from cgi_studio_shared.errors import InsufficientCreditsError, InvalidPackageError, InvalidSubmissionError, JobNotClaimedError, NotFoundError, StudioError

_STATUS_BY_ERROR: tuple[tuple[type[StudioError], int], ...] = (
    (NotFoundError, 404),
    (InsufficientCreditsError, 402),
    (InvalidPackageError, 400),
    (InvalidSubmissionError, 400),
    (JobNotClaimedError, 409),
)


def request_id_of(request: Request) -> str:
    return str(getattr(request.state, 'request_id', ''))


def status_code_for(exc: StudioError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def ok(*, request_id: str, data: Any, message: str = 'ok') -> dict:
    return {
        'requestId': request_id,
        'code': 'ok',
        'message': message,
        'data': data,
    }


def fail(*, request_id: str, code: str, message: str, data: Any = None) -> dict:
    return {
        'requestId': request_id,
        'code': code,
        'message': message,
        'data': data,
    }
