from __future__ import annotations

import re
import time
from typing import Callable

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

HTTP_REQUESTS_TOTAL = Counter(
    'cgi_studio_http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status_code'],
)
HTTP_REQUEST_DURATION = Histogram(
    'cgi_studio_http_request_duration_seconds',
    'HTTP request duration seconds',
    ['method', 'path'],
)

_ID_SEGMENT = re.compile(r'^/api/v2/(projects|jobs)/([^/]+)(/status)?$')
_FIXED_PROJECT_PATHS = {'/api/v2/projects/recover'}


def _normalize_path(path: str) -> str:
    if not path:
        return '/'
    if path in _FIXED_PROJECT_PATHS:
        return path
    match = _ID_SEGMENT.match(path)
    if match is None or match.group(2) == 'process':
        return path
    resource, _, suffix = match.groups()
    placeholder = '{project_id}' if resource == 'projects' else '{job_id}'
    return f'/api/v2/{resource}/{placeholder}{suffix or ""}'


async def metrics_middleware(request: Request, call_next: Callable):
    start = time.perf_counter()
    path = _normalize_path(request.url.path)
    response = await call_next(request)
    duration = max(0.0, time.perf_counter() - start)
    HTTP_REQUEST_DURATION.labels(method=request.method, path=path).observe(duration)
    HTTP_REQUESTS_TOTAL.labels(method=request.method, path=path, status_code=str(response.status_code)).inc()
    return response


def metrics_response() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
