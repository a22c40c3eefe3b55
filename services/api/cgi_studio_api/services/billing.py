from __future__ import annotations

import logging
from typing import Any

import stripe
from sqlalchemy.orm import Session

from cgi_studio_shared.config import get_settings
from cgi_studio_shared.ledger import PaymentConfirmation, confirm_payment, create_pending_transaction
from cgi_studio_shared.pricing import CreditPackage

logger = logging.getLogger(__name__)
settings = get_settings()


class WebhookError(ValueError):
    pass


def create_payment_intent(db: Session, *, account_id: str, package: CreditPackage) -> dict[str, Any]:
    if not settings.stripe_secret_key:
        raise RuntimeError('stripe_not_configured')
    stripe.api_key = settings.stripe_secret_key
    intent = stripe.PaymentIntent.create(
        amount=package.price_cents,
        currency='usd',
        metadata={
            'accountId': account_id,
            'packageId': package.package_id,
            'credits': str(package.credits),
        },
    )
    create_pending_transaction(db, account_id=account_id, package_id=package.package_id, payment_reference=intent['id'])
    logger.info('payment intent created account_id=%s package=%s intent=%s', account_id, package.package_id, intent['id'])
    return {'clientSecret': intent['client_secret'], 'paymentIntentId': intent['id']}


def construct_event(payload: bytes, signature: str) -> Any:
    if not settings.stripe_webhook_secret:
        raise WebhookError('webhook_not_configured')
    try:
        return stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
    except ValueError as exc:
        raise WebhookError('invalid_payload') from exc
    except stripe.SignatureVerificationError as exc:
        raise WebhookError('invalid_signature') from exc


def handle_event(db: Session, event: Any) -> PaymentConfirmation | None:
    """Apply a verified billing event. Only successful payment intents move credits."""
    if event['type'] != 'payment_intent.succeeded':
        logger.info('billing event ignored type=%s', event['type'])
        return None
    intent = event['data']['object']
    metadata = dict(intent.get('metadata') or {})
    account_id = str(metadata.get('accountId') or '')
    if not account_id:
        raise WebhookError('missing_account_metadata')
    return confirm_payment(
        db,
        account_id=account_id,
        package_id=str(metadata.get('packageId') or ''),
        credits=int(metadata.get('credits') or 0),
        amount_cents=int(intent.get('amount') or 0),
        payment_reference=str(intent['id']),
    )
