from __future__ import annotations


class ForemanError(RuntimeError):
    """Base class for orchestration engine failures."""


class ProviderError(ForemanError):
    """Raised when a content provider call fails or returns an unusable payload."""

    def __init__(self, message: str, *, call: str | None = None) -> None:
        super().__init__(message)
        self.call = call


class RepositoryError(ForemanError):
    """Raised when a file repository operation fails."""


class TestRunnerError(ForemanError):
    """Raised when the test runner cannot produce results."""

    __test__ = False


class StateError(ForemanError):
    """Raised when local state operations fail."""


class EngineBusyError(ForemanError):
    """Raised when a run is started while another one is still active."""


class RoadmapError(ForemanError):
    """Raised when a roadmap payload cannot be loaded."""
