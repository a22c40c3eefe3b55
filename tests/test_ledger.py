import pytest

from cgi_studio_shared.errors import InsufficientCreditsError, InvalidPackageError
from cgi_studio_shared.ledger import confirm_payment, create_pending_transaction, credit, debit, find_entry, list_entries, refund_project
from cgi_studio_shared.models import CreditTransaction
from cgi_studio_shared.projects import get_project, update_project


def test_debit_records_balance_after(database, make_account, read_balance):
    account_id = make_account(credits=12)
    with database.session_scope() as db:
        entry = debit(db, account_id=account_id, amount=10, idempotency_key='k1')
        assert entry.delta_credits == -10
        assert entry.balance_after == 2
    assert read_balance(account_id) == 2


def test_debit_never_goes_negative(database, make_account, read_balance):
    account_id = make_account(credits=3)
    with database.session_scope() as db:
        with pytest.raises(InsufficientCreditsError):
            debit(db, account_id=account_id, amount=10, idempotency_key='k2')
    assert read_balance(account_id) == 3


def test_repeated_idempotency_key_moves_balance_once(database, make_account, read_balance):
    account_id = make_account(credits=20)
    with database.session_scope() as db:
        first = debit(db, account_id=account_id, amount=5, idempotency_key='same')
        second = debit(db, account_id=account_id, amount=5, idempotency_key='same')
        assert first.id == second.id
        credit(db, account_id=account_id, amount=7, idempotency_key='topup-1')
        credit(db, account_id=account_id, amount=7, idempotency_key='topup-1')
    assert read_balance(account_id) == 22
    with database.session_scope() as db:
        assert len(list_entries(db, account_id)) == 2


def test_confirm_payment_is_idempotent(database, make_account, read_balance):
    account_id = make_account(credits=0)
    with database.session_scope() as db:
        first = confirm_payment(db, account_id=account_id, package_id='tester', credits=100, amount_cents=1000, payment_reference='pi_1')
    with database.session_scope() as db:
        second = confirm_payment(db, account_id=account_id, package_id='tester', credits=100, amount_cents=1000, payment_reference='pi_1')
    assert first.status == 'completed'
    assert first.credits_added == 100
    assert second.status == 'already_processed'
    assert second.credits_added == 0
    assert read_balance(account_id) == 100


def test_confirm_payment_completes_pending_transaction(database, make_account, read_balance):
    account_id = make_account(credits=5)
    with database.session_scope() as db:
        create_pending_transaction(db, account_id=account_id, package_id='starter', payment_reference='pi_2')
    with database.session_scope() as db:
        result = confirm_payment(db, account_id=account_id, package_id='starter', credits=250, amount_cents=2500, payment_reference='pi_2')
        assert result.balance == 255
    with database.session_scope() as db:
        rows = db.query(CreditTransaction).filter(CreditTransaction.payment_reference == 'pi_2').all()
        assert len(rows) == 1
        assert rows[0].status == 'completed'
        assert rows[0].processed_at is not None
    assert read_balance(account_id) == 255


def test_confirm_payment_rejects_package_mismatch(database, make_account, read_balance):
    account_id = make_account(credits=0)
    with database.session_scope() as db:
        with pytest.raises(InvalidPackageError):
            confirm_payment(db, account_id=account_id, package_id='pro', credits=9999, amount_cents=5000, payment_reference='pi_3')
        with pytest.raises(InvalidPackageError):
            confirm_payment(db, account_id=account_id, package_id='gold', credits=100, amount_cents=1000, payment_reference='pi_4')
    assert read_balance(account_id) == 0


def test_admin_payment_is_recorded_without_credit(database, make_account, read_balance):
    account_id = make_account(credits=0, is_admin=True)
    with database.session_scope() as db:
        result = confirm_payment(db, account_id=account_id, package_id='tester', credits=100, amount_cents=1000, payment_reference='pi_5')
    assert result.status == 'completed'
    assert result.credits_added == 0
    assert read_balance(account_id) == 0


def test_refund_returns_debit_once(database, make_account, submit, read_balance):
    account_id = make_account(credits=10)
    project_id, _ = submit(account_id)
    assert read_balance(account_id) == 8
    with database.session_scope() as db:
        project = get_project(db, project_id)
        assert refund_project(db, project, reason='image failed') is not None
        refund_project(db, project, reason='image failed')
    assert read_balance(account_id) == 10


def test_refund_skipped_once_video_task_exists(database, make_account, submit, read_balance):
    account_id = make_account(credits=10)
    project_id, _ = submit(account_id, content_type='video')
    with database.session_scope() as db:
        update_project(db, project_id, video_task_id='task-9')
    with database.session_scope() as db:
        assert refund_project(db, get_project(db, project_id), reason='video failed') is None
        assert find_entry(db, f'project:{project_id}:refund') is None
    assert read_balance(account_id) == 0
