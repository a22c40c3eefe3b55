from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from cgi_studio_shared.db import Database
from cgi_studio_shared.errors import InvalidPackageError
from cgi_studio_shared.pricing import CREDIT_PACKAGES, get_package

from ..deps import get_current_account_id, get_database
from ..response import ok, request_id_of
from ..schemas import PurchaseCreditsRequest
from ..services import billing

router = APIRouter(prefix='/api/v2/billing', tags=['billing'])


@router.get('/packages')
def list_packages(request: Request):
    return ok(
        request_id=request_id_of(request),
        data=[
            {'id': p.package_id, 'name': p.name, 'credits': p.credits, 'priceCents': p.price_cents}
            for p in CREDIT_PACKAGES.values()
        ],
    )


@router.post('/purchase-credits')
def purchase_credits(
    payload: PurchaseCreditsRequest,
    request: Request,
    account_id: str = Depends(get_current_account_id),
    database: Database = Depends(get_database),
):
    package = get_package(payload.package_id)
    if package is None:
        raise InvalidPackageError(f'unknown package {payload.package_id}')
    try:
        with database.session_scope() as db:
            data = billing.create_payment_intent(db, account_id=account_id, package=package)
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return ok(request_id=request_id_of(request), data=data, message='payment_intent_created')


@router.post('/webhook')
async def billing_webhook(request: Request, database: Database = Depends(get_database)):
    body = await request.body()
    try:
        event = billing.construct_event(body, request.headers.get('stripe-signature', ''))
    except billing.WebhookError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with database.session_scope() as db:
            confirmation = billing.handle_event(db, event)
    except billing.WebhookError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if confirmation is None:
        return ok(request_id=request_id_of(request), data={'received': True}, message='ignored')
    return ok(
        request_id=request_id_of(request),
        data={
            'received': True,
            'status': confirmation.status,
            'paymentReference': confirmation.payment_reference,
            'creditsAdded': confirmation.credits_added,
        },
        message=confirmation.status,
    )
