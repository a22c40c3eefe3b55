from fastapi import APIRouter, Depends, Request
from sqlalchemy import text

from cgi_studio_shared.db import Database

from ..deps import get_database
from ..response import ok, request_id_of

router = APIRouter()


@router.get('/healthz')
def healthz(request: Request, database: Database = Depends(get_database)):
    with database.session_scope() as db:
        db.execute(text('SELECT 1'))
    return ok(request_id=request_id_of(request), data={'status': 'ok', 'database': 'ok'})
