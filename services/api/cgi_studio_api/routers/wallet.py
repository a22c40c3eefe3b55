from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from cgi_studio_shared.db import Database
from cgi_studio_shared.ledger import get_account, list_entries

from ..deps import get_current_account_id, get_database
from ..response import ok, request_id_of

router = APIRouter(prefix='/api/v2/wallet', tags=['wallet'])


@router.get('')
def get_wallet(request: Request, account_id: str = Depends(get_current_account_id), database: Database = Depends(get_database)):
    with database.session_scope() as db:
        account = get_account(db, account_id)
        return ok(
            request_id=request_id_of(request),
            data={
                'balanceCredits': int(account.credits),
                'isAdmin': bool(account.is_admin),
            },
        )


@router.get('/ledger')
def get_wallet_ledger(request: Request, account_id: str = Depends(get_current_account_id), database: Database = Depends(get_database)):
    with database.session_scope() as db:
        rows = list_entries(db, account_id, limit=200)
        return ok(
            request_id=request_id_of(request),
            data=[
                {
                    'id': item.id,
                    'entryType': item.entry_type,
                    'deltaCredits': int(item.delta_credits),
                    'balanceAfter': int(item.balance_after),
                    'description': item.description,
                    'createdAt': item.created_at.isoformat(),
                }
                for item in rows
            ],
        )
