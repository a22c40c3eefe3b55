from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cgi_studio_shared.config import get_settings
from cgi_studio_shared.db import Database
from cgi_studio_shared.errors import StudioError

from .celery_client import CeleryDispatcher
from .metrics import metrics_middleware, metrics_response
from .response import fail, request_id_of, status_code_for
from .routers import billing, health, jobs, projects, wallet

logger = logging.getLogger(__name__)
settings = get_settings()


def create_app(*, database: Database | None = None, dispatcher=None) -> FastAPI:
    logging.getLogger('cgi_studio_api').setLevel(settings.log_level.upper())
    app = FastAPI(title=settings.app_name, version='2.0.0')
    app.state.database = database
    app.state.owns_database = database is None
    app.state.dispatcher = dispatcher or CeleryDispatcher()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=['*'],
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    @app.middleware('http')
    async def request_context_middleware(request: Request, call_next):
        request.state.request_id = uuid.uuid4().hex
        response = await call_next(request)
        response.headers['x-request-id'] = request.state.request_id
        return response

    if settings.enable_metrics:
        app.middleware('http')(metrics_middleware)

    @app.exception_handler(StudioError)
    async def studio_exception_handler(request: Request, exc: StudioError):
        status_code = status_code_for(exc)
        payload = fail(request_id=request_id_of(request), code=exc.code, message=exc.message, data={'statusCode': status_code})
        return JSONResponse(status_code=status_code, content=payload)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        payload = fail(
            request_id=request_id_of(request),
            code='http_error',
            message=str(exc.detail),
            data={'statusCode': exc.status_code},
        )
        return JSONResponse(status_code=exc.status_code, content=payload)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        payload = fail(
            request_id=request_id_of(request),
            code='validation_error',
            message='request_validation_failed',
            data={'errors': [{'loc': list(e.get('loc', ())), 'msg': str(e.get('msg', ''))} for e in exc.errors()]},
        )
        return JSONResponse(status_code=422, content=payload)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception('unhandled error request_id=%s path=%s', request_id_of(request), request.url.path)
        payload = fail(request_id=request_id_of(request), code='internal_error', message=str(exc))
        return JSONResponse(status_code=500, content=payload)

    @app.on_event('startup')
    def startup_event() -> None:
        if app.state.database is None:
            app.state.database = Database.from_settings(settings)
        if settings.auto_init_db:
            app.state.database.init_schema()

    @app.on_event('shutdown')
    def shutdown_event() -> None:
        if app.state.owns_database and app.state.database is not None:
            app.state.database.dispose()
            app.state.database = None

    app.include_router(health.router)
    app.include_router(projects.router)
    app.include_router(jobs.router)
    app.include_router(wallet.router)
    app.include_router(billing.router)

    @app.get('/metrics')
    def metrics():
        return metrics_response()

    return app


app = create_app()
