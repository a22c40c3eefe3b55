from __future__ import annotations


class StudioError(Exception):
    """Base class for domain errors. ``code`` is the snake_case detail the API returns."""

    code = 'studio_error'

    def __init__(self, message: str = '') -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFoundError(StudioError):
    code = 'not_found'


class AccountNotFoundError(NotFoundError):
    code = 'account_not_found'


class ProjectNotFoundError(NotFoundError):
    code = 'project_not_found'


class JobNotFoundError(NotFoundError):
    code = 'job_not_found'


class InsufficientCreditsError(StudioError):
    code = 'insufficient_credits'


class InvalidPackageError(StudioError):
    code = 'invalid_package'


class InvalidSubmissionError(StudioError):
    code = 'invalid_submission'


class JobNotClaimedError(StudioError):
    code = 'job_not_claimed'
