from typing import Optional


class OrchestratorError(Exception):
    """Base class for recoverable orchestrator failures."""


class AlreadyRunningError(OrchestratorError):
    def __init__(self, run_id: Optional[str]) -> None:
        self.run_id = run_id
        super().__init__(
            "A run is already active. Stop it first to start a new one."
        )


class WorkerDispatchError(OrchestratorError):
    """The worker execution context could not be created."""


class SuggestionApiError(OrchestratorError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class StoreUnavailableError(OrchestratorError):
    """The durable state store cannot be reached; nothing can be trusted."""
