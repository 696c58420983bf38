"""Exception taxonomy for the milestone orchestrator."""


class OrchestratorError(Exception):
    """Base class for every error the orchestrator raises on purpose."""


class NotFound(OrchestratorError, LookupError):
    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind.capitalize()} not found: {entity_id}")


class CycleError(OrchestratorError):
    """Raised when a dependency edge would make the graph cyclic."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class InvalidTransition(OrchestratorError):
    pass


class NoWorkAvailable(OrchestratorError):
    def __init__(self, message: str = "No ready task available", retry_after: float = 10.0):
        self.retry_after = retry_after
        super().__init__(message)


class UnknownWorker(OrchestratorError, LookupError):
    def __init__(self, worker_id: str, reason: str = "not registered"):
        self.worker_id = worker_id
        super().__init__(f"Unknown worker {worker_id}: {reason}")


class MigrationInProgress(OrchestratorError):
    """Writes are quiesced; the caller should retry shortly."""

    def __init__(self, message: str = "Storage migration in progress", retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


class RestoreInProgress(MigrationInProgress):
    def __init__(self, message: str = "Checkpoint restore in progress", retry_after: float = 1.0):
        super().__init__(message, retry_after)


class CheckpointNotFound(OrchestratorError, LookupError):
    def __init__(self, checkpoint_id: int):
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint not found: {checkpoint_id}")


class VerificationFailure(OrchestratorError):
    """Migrated records do not match the source tier."""


class ConfigError(ValueError):
    pass
