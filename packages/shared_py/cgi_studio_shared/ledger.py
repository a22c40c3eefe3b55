from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import desc, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import AccountNotFoundError, InsufficientCreditsError, InvalidPackageError
from .models import Account, CreditLedgerEntry, CreditTransaction, Project, utcnow
from .pricing import get_package

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentConfirmation:
    status: str
    payment_reference: str
    credits_added: int
    balance: int | None = None


def get_account(db: Session, account_id: str) -> Account:
    account = db.get(Account, account_id)
    if account is None:
        raise AccountNotFoundError(f'account {account_id} not found')
    return account


def get_balance(db: Session, account_id: str) -> int:
    value = db.execute(select(Account.credits).where(Account.id == account_id)).scalar_one_or_none()
    if value is None:
        raise AccountNotFoundError(f'account {account_id} not found')
    return int(value)


def find_entry(db: Session, idempotency_key: str) -> CreditLedgerEntry | None:
    return db.execute(select(CreditLedgerEntry).where(CreditLedgerEntry.idempotency_key == idempotency_key)).scalars().first()


def _append_entry(
    db: Session,
    *,
    account_id: str,
    entry_type: str,
    delta_credits: int,
    idempotency_key: str,
    description: str,
    metadata_json: dict[str, Any] | None,
) -> CreditLedgerEntry:
    entry = CreditLedgerEntry(
        account_id=account_id,
        entry_type=entry_type,
        delta_credits=int(delta_credits),
        balance_after=get_balance(db, account_id),
        idempotency_key=idempotency_key,
        description=description,
        metadata_json=metadata_json or {},
    )
    db.add(entry)
    db.flush()
    return entry


def debit(
    db: Session,
    *,
    account_id: str,
    amount: int,
    idempotency_key: str,
    description: str = 'debit',
    metadata_json: dict[str, Any] | None = None,
) -> CreditLedgerEntry:
    """Take ``amount`` credits in one conditional UPDATE; never drives a balance negative."""
    if int(amount) <= 0:
        raise ValueError('debit amount must be positive')
    existing = find_entry(db, idempotency_key)
    if existing is not None:
        return existing

    result = db.execute(
        update(Account)
        .where(Account.id == account_id, Account.credits >= int(amount))
        .values(credits=Account.credits - int(amount), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        get_account(db, account_id)
        raise InsufficientCreditsError(f'account {account_id} has fewer than {amount} credits')
    return _append_entry(
        db,
        account_id=account_id,
        entry_type='debit',
        delta_credits=-int(amount),
        idempotency_key=idempotency_key,
        description=description,
        metadata_json=metadata_json,
    )


def credit(
    db: Session,
    *,
    account_id: str,
    amount: int,
    idempotency_key: str,
    entry_type: str = 'topup',
    description: str = 'credit',
    metadata_json: dict[str, Any] | None = None,
) -> CreditLedgerEntry:
    if int(amount) <= 0:
        raise ValueError('credit amount must be positive')
    existing = find_entry(db, idempotency_key)
    if existing is not None:
        return existing

    result = db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(credits=Account.credits + int(amount), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise AccountNotFoundError(f'account {account_id} not found')
    return _append_entry(
        db,
        account_id=account_id,
        entry_type=entry_type,
        delta_credits=int(amount),
        idempotency_key=idempotency_key,
        description=description,
        metadata_json=metadata_json,
    )


def list_entries(db: Session, account_id: str, limit: int = 100) -> list[CreditLedgerEntry]:
    stmt = select(CreditLedgerEntry).where(CreditLedgerEntry.account_id == account_id).order_by(desc(CreditLedgerEntry.created_at)).limit(limit)
    return list(db.execute(stmt).scalars())


def project_debit_key(project_id: str) -> str:
    return f'project:{project_id}:debit'


def project_refund_key(project_id: str) -> str:
    return f'project:{project_id}:refund'


def refund_project(db: Session, project: Project, *, reason: str) -> CreditLedgerEntry | None:
    """Return a failed project's credits once.

    Nothing comes back when the provider already accepted a video task (the
    attempt stays billable and recoverable) or when no debit was taken.
    """
    if project.video_task_id:
        logger.info('refund skipped project_id=%s reason=video_task_recorded', project.id)
        return None
    charged = find_entry(db, project_debit_key(project.id))
    if charged is None or charged.delta_credits >= 0:
        return None
    entry = credit(
        db,
        account_id=project.account_id,
        amount=-int(charged.delta_credits),
        idempotency_key=project_refund_key(project.id),
        entry_type='refund',
        description='project_refund',
        metadata_json={'projectId': project.id, 'reason': reason[:500]},
    )
    logger.info('refund issued project_id=%s credits=%s', project.id, entry.delta_credits)
    return entry


def create_pending_transaction(db: Session, *, account_id: str, package_id: str, payment_reference: str) -> CreditTransaction:
    package = get_package(package_id)
    if package is None:
        raise InvalidPackageError(f'unknown package {package_id}')
    row = CreditTransaction(
        account_id=account_id,
        package_id=package.package_id,
        credits=package.credits,
        amount_cents=package.price_cents,
        payment_reference=payment_reference,
        status='pending',
    )
    db.add(row)
    db.flush()
    return row


def confirm_payment(
    db: Session,
    *,
    account_id: str,
    package_id: str,
    credits: int,
    amount_cents: int,
    payment_reference: str,
) -> PaymentConfirmation:
    """Grant a purchased package exactly once per payment reference."""
    package = get_package(package_id)
    if package is None or int(credits) != package.credits or int(amount_cents) != package.price_cents:
        raise InvalidPackageError(f'package mismatch for {package_id}')
    account = get_account(db, account_id)

    now = utcnow()
    flipped = db.execute(
        update(CreditTransaction)
        .where(CreditTransaction.payment_reference == payment_reference, CreditTransaction.status != 'completed')
        .values(status='completed', processed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount == 0:
        exists = db.execute(select(CreditTransaction.id).where(CreditTransaction.payment_reference == payment_reference)).first()
        if exists is not None:
            logger.info('payment already processed reference=%s', payment_reference)
            return PaymentConfirmation(status='already_processed', payment_reference=payment_reference, credits_added=0)
        try:
            with db.begin_nested():
                db.add(
                    CreditTransaction(
                        account_id=account_id,
                        package_id=package.package_id,
                        credits=package.credits,
                        amount_cents=package.price_cents,
                        payment_reference=payment_reference,
                        status='completed',
                        processed_at=now,
                    )
                )
        except IntegrityError:
            logger.info('payment already processed reference=%s', payment_reference)
            return PaymentConfirmation(status='already_processed', payment_reference=payment_reference, credits_added=0)

    if account.is_admin:
        logger.info('admin account not credited account_id=%s reference=%s', account_id, payment_reference)
        return PaymentConfirmation(status='completed', payment_reference=payment_reference, credits_added=0, balance=get_balance(db, account_id))

    credit(
        db,
        account_id=account_id,
        amount=package.credits,
        idempotency_key=f'payment:{payment_reference}',
        entry_type='topup',
        description=f'package:{package.package_id}',
        metadata_json={'paymentReference': payment_reference, 'amountCents': package.price_cents},
    )
    logger.info('payment confirmed account_id=%s reference=%s credits=%s', account_id, payment_reference, package.credits)
    return PaymentConfirmation(
        status='completed',
        payment_reference=payment_reference,
        credits_added=package.credits,
        balance=get_balance(db, account_id),
    )
