from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from cgi_studio_shared.db import Database
from cgi_studio_shared.errors import JobNotFoundError
from cgi_studio_shared.job_store import get_job, job_status_view

from ..deps import get_current_account_id, get_database, get_dispatcher
from ..response import ok, request_id_of

router = APIRouter(prefix='/api/v2/jobs', tags=['jobs'])


@router.post('/process')
def process_jobs(request: Request, account_id: str = Depends(get_current_account_id), dispatcher=Depends(get_dispatcher)):
    task_id = dispatcher.trigger_processing()
    return ok(request_id=request_id_of(request), data={'taskId': task_id}, message='processing_triggered')


@router.get('/{job_id}/status')
def get_job_status(job_id: str, request: Request, account_id: str = Depends(get_current_account_id), database: Database = Depends(get_database)):
    with database.session_scope() as db:
        job = get_job(db, job_id)
        if job.account_id != account_id:
            raise JobNotFoundError(f'job {job_id} not found')
        return ok(request_id=request_id_of(request), data=job_status_view(job))
