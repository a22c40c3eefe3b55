from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from cgi_studio_shared.db import Database
from cgi_studio_shared.models import Account

from .security import decode_token

auth_scheme = HTTPBearer(auto_error=False)


def get_database(request: Request) -> Database:
    database = getattr(request.app.state, 'database', None)
    if database is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail='database_not_ready')
    return database


def get_dispatcher(request: Request):
    return request.app.state.dispatcher


def get_current_account_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(auth_scheme),
    database: Database = Depends(get_database),
) -> str:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='missing_token')
    try:
        payload = decode_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='invalid_token') from exc
    account_id = str(payload.get('sub') or '').strip()
    if not account_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='invalid_token')
    with database.session_scope() as db:
        if db.get(Account, account_id) is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='account_not_found')
    return account_id
