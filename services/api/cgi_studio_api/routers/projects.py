from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from cgi_studio_shared.config import get_settings
from cgi_studio_shared.db import Database
from cgi_studio_shared.projects import ProjectSubmission, cost_summary, get_project, get_project_status, list_projects, project_view, submit_project

from ..deps import get_current_account_id, get_database, get_dispatcher
from ..response import ok, request_id_of

logger = logging.getLogger(__name__)
router = APIRouter(prefix='/api/v2', tags=['projects'])
settings = get_settings()


@router.post('/projects')
def create_project(
    payload: ProjectSubmission,
    request: Request,
    account_id: str = Depends(get_current_account_id),
    database: Database = Depends(get_database),
    dispatcher=Depends(get_dispatcher),
):
    with database.session_scope() as db:
        project, job_id = submit_project(db, account_id=account_id, submission=payload)
        data = {'project': project_view(project), 'jobId': job_id}

    # The beat sweep drains pending jobs, so a broker hiccup only delays the run.
    try:
        dispatcher.trigger_processing()
        data['dispatched'] = True
    except Exception as exc:  # noqa: BLE001
        logger.warning('processing trigger failed job_id=%s error=%s', job_id, exc)
        data['dispatched'] = False
    return ok(request_id=request_id_of(request), data=data, message='queued')


@router.get('/projects')
def get_projects(request: Request, account_id: str = Depends(get_current_account_id), database: Database = Depends(get_database)):
    with database.session_scope() as db:
        return ok(request_id=request_id_of(request), data=[project_view(row) for row in list_projects(db, account_id)])


@router.post('/projects/recover')
def recover_projects(request: Request, account_id: str = Depends(get_current_account_id), dispatcher=Depends(get_dispatcher)):
    try:
        summary = dispatcher.trigger_recovery(account_id, timeout=settings.recovery_timeout_seconds)
    except TimeoutError as exc:
        raise HTTPException(status_code=504, detail='recovery_timeout') from exc
    return ok(request_id=request_id_of(request), data=summary, message=summary.get('message', 'ok'))


@router.get('/projects/{project_id}')
def get_project_detail(project_id: str, request: Request, account_id: str = Depends(get_current_account_id), database: Database = Depends(get_database)):
    with database.session_scope() as db:
        project = get_project(db, project_id, account_id=account_id)
        return ok(request_id=request_id_of(request), data=project_view(project))


@router.get('/projects/{project_id}/status')
def get_project_status_route(project_id: str, request: Request, account_id: str = Depends(get_current_account_id), database: Database = Depends(get_database)):
    with database.session_scope() as db:
        return ok(request_id=request_id_of(request), data=get_project_status(db, project_id, account_id=account_id))


@router.get('/actual-costs')
def get_actual_costs(request: Request, account_id: str = Depends(get_current_account_id), database: Database = Depends(get_database)):
    with database.session_scope() as db:
        return ok(request_id=request_id_of(request), data=cost_summary(db, account_id))
