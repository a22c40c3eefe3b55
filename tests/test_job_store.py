import pytest

from cgi_studio_shared.errors import JobNotFoundError
from cgi_studio_shared.job_store import create_job, get_job, get_job_by_project, job_status_view, mark_job_completed, mark_job_failed, update_job


def test_submitted_job_starts_pending_with_payload_snapshot(database, make_account, submit):
    account_id = make_account()
    project_id, job_id = submit(account_id, description='on the oak desk')
    with database.session_scope() as db:
        job = get_job(db, job_id)
        assert job.status == 'pending'
        assert job.attempts == 0
        assert job.progress == 0
        assert job.priority == 1
        assert job.project_id == project_id
        assert job.payload['description'] == 'on the oak desk'
        assert job.payload['sceneVideoUrl'] is None
        assert get_job_by_project(db, project_id).id == job_id


def test_missing_job_raises(database):
    with database.session_scope() as db:
        with pytest.raises(JobNotFoundError):
            get_job(db, 'nope')
        with pytest.raises(JobNotFoundError):
            update_job(db, 'nope', progress=10)


def test_update_job_keeps_payload_immutable_and_clamps_progress(database, make_account, submit):
    account_id = make_account()
    _, job_id = submit(account_id)
    with database.session_scope() as db:
        before = get_job(db, job_id).updated_at
        with pytest.raises(ValueError):
            update_job(db, job_id, payload={})
        update_job(db, job_id, progress=140, status_message='Working')
    with database.session_scope() as db:
        job = get_job(db, job_id)
        assert job.progress == 100
        assert job.status_message == 'Working'
        assert job.updated_at >= before


def test_terminal_transitions(database, make_account, submit):
    account_id = make_account()
    project_id, done_id = submit(account_id)
    with database.session_scope() as db:
        failed_id = create_job(db, project_id=project_id, account_id=account_id, payload={'contentType': 'image'}).id
        mark_job_completed(db, done_id, {'outputImageUrl': 'https://x/y.png'})
        mark_job_failed(db, failed_id, 'boom')
    with database.session_scope() as db:
        done = get_job(db, done_id)
        assert done.status == 'completed'
        assert done.progress == 100
        assert done.result == {'outputImageUrl': 'https://x/y.png'}
        assert done.completed_at is not None
        failed = get_job(db, failed_id)
        assert failed.status == 'failed'
        assert failed.error_message == 'boom'
        view = job_status_view(failed)
        assert view['status'] == 'failed'
        assert view['errorMessage'] == 'boom'
