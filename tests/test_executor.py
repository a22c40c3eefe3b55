import pytest

from cgi_studio_shared import ledger
from cgi_studio_shared.errors import JobNotClaimedError
from cgi_studio_shared.job_store import get_job
from cgi_studio_shared.models import GenerationJob, Project
from cgi_studio_shared.projects import get_project_status
from cgi_studio_shared.scheduler import claim

from cgi_studio_worker.capabilities import VideoPromptParts
from cgi_studio_worker.executor import JobExecutor
from cgi_studio_worker.providers import MockCapabilities
from cgi_studio_worker.tasks import trigger_processing

VIDEO = {
    'content_type': 'video',
    'scene_image_url': None,
    'scene_video_url': 'https://cdn.example.com/room.mp4',
    'include_audio': True,
}


def _project(database, project_id):
    with database.session_scope() as db:
        project = db.get(Project, project_id)
        db.expunge(project)
        return project


def _job(database, job_id):
    with database.session_scope() as db:
        job = db.get(GenerationJob, job_id)
        db.expunge(job)
        return job


def test_nothing_pending(database):
    assert trigger_processing(database, MockCapabilities()) == {'message': 'No pending jobs', 'jobId': None}


def test_image_job_completes(database, make_account, submit, read_balance):
    account_id = make_account(credits=10)
    project_id, job_id = submit(account_id)

    response = trigger_processing(database, MockCapabilities())

    assert response['message'] == 'Job completed'
    assert response['jobId'] == job_id
    assert response['costMillicents'] == 41
    project = _project(database, project_id)
    assert project.status == 'completed'
    assert project.progress == 100
    assert project.enhanced_prompt
    assert project.output_image_url.startswith('https://mock.cgi-studio.local/images/')
    assert project.output_video_url is None
    assert project.actual_cost_millicents == 41
    job = _job(database, job_id)
    assert job.status == 'completed'
    assert job.attempts == 1
    assert job.result == {
        'outputImageUrl': project.output_image_url,
        'outputVideoUrl': None,
        'totalCost': 41,
        'costInUSD': '0.0410',
    }
    assert read_balance(account_id) == 8


def test_image_failure_refunds_and_keeps_cost(database, make_account, submit, read_balance):
    class BrokenImage(MockCapabilities):
        def synthesize_image(self, **kwargs):
            raise RuntimeError('image model unavailable')

    account_id = make_account(credits=10)
    project_id, job_id = submit(account_id)

    response = trigger_processing(database, BrokenImage())

    assert response['status'] == 'failed'
    assert response['error'] == 'image model unavailable'
    project = _project(database, project_id)
    assert project.status == 'failed'
    assert project.error_message == 'image model unavailable'
    assert project.actual_cost_millicents == 41
    assert _job(database, job_id).status == 'failed'
    assert read_balance(account_id) == 10


def test_refund_can_be_disabled(database, make_account, submit, read_balance):
    class BrokenPrompt(MockCapabilities):
        def enhance_prompt(self, **kwargs):
            raise RuntimeError('quota exceeded')

    account_id = make_account(credits=10)
    project_id, _ = submit(account_id)

    trigger_processing(database, BrokenPrompt(), refund_on_failure=False)

    assert _project(database, project_id).actual_cost_millicents == 2
    assert read_balance(account_id) == 8


def test_video_job_with_audio(database, make_account, submit):
    account_id = make_account(credits=10)
    project_id, job_id = submit(account_id, **VIDEO)

    response = trigger_processing(database, MockCapabilities())

    assert response['status'] == 'completed'
    assert response['costMillicents'] == 304
    assert response['result']['costInUSD'] == '0.3040'
    project = _project(database, project_id)
    assert project.video_task_id.startswith('mock-video-')
    assert project.audio_task_id.startswith('mock-audio-')
    assert project.output_video_url.endswith(f'{project.audio_task_id}.mp4')
    assert project.task_details['status'] == 'completed'
    assert _job(database, job_id).result['outputVideoUrl'] == project.output_video_url


def test_video_prompt_carries_direction(database, make_account, submit):
    seen = {}

    class Recording(MockCapabilities):
        def enhance_video_prompt(self, **kwargs):
            return VideoPromptParts(
                scene_prompt='Lamp on an oak desk by the window',
                motion_prompt='Steam curls from the mug',
                negative_prompt='blurry',
                combined_prompt='Lamp on an oak desk, steam curls from the mug',
            )

        def synthesize_video(self, **kwargs):
            seen.update(kwargs)
            return super().synthesize_video(**kwargs)

    account_id = make_account(credits=10)
    submit(account_id, **VIDEO)
    trigger_processing(database, Recording())

    assert seen['prompt'].startswith('Steam curls from the mug\n\nCamera and Production: Smooth 5-second orbit')
    assert 'oak desk' not in seen['prompt']
    assert seen['negative_prompt'] == 'blurry'
    assert seen['duration_seconds'] == 5


def test_audio_failure_keeps_silent_video(database, make_account, submit):
    class BrokenAudio(MockCapabilities):
        def add_audio(self, *, video_task_id, prompt, on_task_id):
            on_task_id('audio-77')
            raise RuntimeError('sound task failed')

    account_id = make_account(credits=10)
    project_id, _ = submit(account_id, **VIDEO)

    response = trigger_processing(database, BrokenAudio())

    assert response['status'] == 'completed'
    project = _project(database, project_id)
    assert project.audio_task_id == 'audio-77'
    assert project.output_video_url.endswith(f'{project.video_task_id}.mp4')


def test_direction_failure_is_not_fatal(database, make_account, submit):
    class BrokenDirection(MockCapabilities):
        def derive_video_direction(self, **kwargs):
            raise RuntimeError('vision model timeout')

    account_id = make_account(credits=10)
    project_id, _ = submit(account_id, **VIDEO)

    response = trigger_processing(database, BrokenDirection())

    assert response['status'] == 'completed'
    assert response['costMillicents'] == 304
    assert _project(database, project_id).status == 'completed'


def test_video_failure_after_task_id_keeps_task_and_credits(database, make_account, submit, read_balance):
    class StalledVideo(MockCapabilities):
        def synthesize_video(self, *, on_task_id, **kwargs):
            on_task_id('task-123')
            raise TimeoutError('still rendering')

    account_id = make_account(credits=10)
    project_id, job_id = submit(account_id, **VIDEO)

    response = trigger_processing(database, StalledVideo())

    assert response['status'] == 'failed'
    project = _project(database, project_id)
    assert project.status == 'failed'
    assert project.video_task_id == 'task-123'
    assert project.error_message.startswith('Video generation failed')
    assert project.actual_cost_millicents == 304
    assert project.output_image_url
    assert _job(database, job_id).error_message.startswith('Video generation failed')
    assert read_balance(account_id) == 0


def test_blank_negative_prompt_stops_before_video(database, make_account, submit, read_balance):
    calls = []

    class BlankNegative(MockCapabilities):
        def enhance_video_prompt(self, **kwargs):
            return VideoPromptParts(scene_prompt='scene', motion_prompt='motion', negative_prompt='   ')

        def synthesize_video(self, **kwargs):
            calls.append(kwargs)
            return super().synthesize_video(**kwargs)

    account_id = make_account(credits=10)
    project_id, _ = submit(account_id, **VIDEO)

    response = trigger_processing(database, BlankNegative())

    assert response['status'] == 'failed'
    assert calls == []
    project = _project(database, project_id)
    assert project.error_message.startswith('Video generation failed')
    assert project.actual_cost_millicents == 44
    assert read_balance(account_id) == 10


def test_progress_is_visible_while_running(database, make_account, submit):
    observed = {}

    class Observing(MockCapabilities):
        def synthesize_image(self, **kwargs):
            with database.session_scope() as db:
                observed.update(get_project_status(db, project_id))
            return super().synthesize_image(**kwargs)

    account_id = make_account(credits=10)
    project_id, job_id = submit(account_id)

    trigger_processing(database, Observing())

    assert observed['status'] == 'generating_image'
    assert observed['progress'] == 60
    assert observed['jobStatus'] == 'processing'
    assert observed['statusMessage'] == 'Generating image'


def test_video_prompt_falls_back_to_enhanced_prompt(database, make_account, submit):
    seen = {}

    class NoMotion(MockCapabilities):
        def enhance_video_prompt(self, **kwargs):
            return VideoPromptParts(scene_prompt='scene', motion_prompt='', negative_prompt='blurry', combined_prompt='whole prompt')

        def synthesize_video(self, **kwargs):
            seen.update(kwargs)
            return super().synthesize_video(**kwargs)

    account_id = make_account(credits=10)
    submit(account_id, **VIDEO)
    trigger_processing(database, NoMotion())

    assert seen['prompt'].startswith('whole prompt\n\nCamera and Production: ')


def test_executor_runs_a_claimed_job_directly(database, make_account, submit):
    account_id = make_account(credits=10)
    _, job_id = submit(account_id)
    with database.session_scope() as db:
        assert claim(db, job_id)

    outcome = JobExecutor(database, MockCapabilities()).run(job_id)

    assert outcome.status == 'completed'
    with database.session_scope() as db:
        job = get_job(db, job_id)
        assert job.progress == 100
        assert job.attempts == 1
        assert job.started_at is not None


def test_unclaimed_job_is_refused(database, make_account, submit):
    calls = []

    class Counting(MockCapabilities):
        def enhance_prompt(self, **kwargs):
            calls.append(kwargs)
            return super().enhance_prompt(**kwargs)

    account_id = make_account(credits=10)
    project_id, job_id = submit(account_id)

    with pytest.raises(JobNotClaimedError):
        JobExecutor(database, Counting()).run(job_id)

    assert calls == []
    assert _job(database, job_id).status == 'pending'
    assert _project(database, project_id).status == 'pending'


def test_finished_job_is_not_run_twice(database, make_account, submit):
    account_id = make_account(credits=10)
    project_id, job_id = submit(account_id)
    with database.session_scope() as db:
        claim(db, job_id)
    executor = JobExecutor(database, MockCapabilities())
    assert executor.run(job_id).status == 'completed'

    with pytest.raises(JobNotClaimedError):
        executor.run(job_id)

    assert _project(database, project_id).actual_cost_millicents == 41
    assert _job(database, job_id).status == 'completed'


def test_refund_error_still_leaves_job_failed(database, make_account, submit, read_balance, monkeypatch):
    class BrokenImage(MockCapabilities):
        def synthesize_image(self, **kwargs):
            raise RuntimeError('image model unavailable')

    def _refund_down(db, project, *, reason):
        raise RuntimeError('ledger unavailable')

    monkeypatch.setattr(ledger, 'refund_project', _refund_down)
    account_id = make_account(credits=10)
    project_id, job_id = submit(account_id)

    response = trigger_processing(database, BrokenImage())

    assert response['status'] == 'failed'
    assert response['error'] == 'image model unavailable'
    assert _job(database, job_id).status == 'failed'
    project = _project(database, project_id)
    assert project.status == 'failed'
    assert project.actual_cost_millicents == 41
    assert read_balance(account_id) == 8
