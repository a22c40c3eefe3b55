from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False)
class ProviderError(Exception):
    code: str
    message: str
    task_id: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)


class ProviderRequestError(ProviderError):
    """Transport failure or non-2xx reply."""


class ProviderResponseError(ProviderError):
    """The reply parsed but matches no known shape."""


class ProviderTaskFailedError(ProviderError):
    """The provider reports the task as failed."""


class ProviderStillProcessingError(ProviderError):
    """The task was not terminal after the bounded wait."""
