from __future__ import annotations


class MigrationError(RuntimeError):
    """Base class for every condition that aborts a migration run."""


class ValidationError(MigrationError):
    """Raised when user input is rejected before any cluster call."""


class PreconditionError(MigrationError):
    """Raised when the namespace is not in a state that can be migrated."""


class SafetyGateError(MigrationError):
    """Raised when a volume's reclaim policy could not be confirmed as Retain."""

    def __init__(self, *, volume_name: str, observed_policy: str | None) -> None:
        super().__init__(
            f"PersistentVolume '{volume_name}' did not change to Retain "
            f"(observed reclaim policy: {observed_policy or 'unset'}). Stopping to protect data."
        )
        self.volume_name = volume_name
        self.observed_policy = observed_policy


class ConversionError(MigrationError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class ClusterApiError(MigrationError):
    """Raised when a Kubernetes API call fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class WaitTimeoutError(MigrationError):
    """Raised when a polling loop exceeds its deadline."""


class WaitCancelledError(MigrationError):
    """Raised when a polling loop is cancelled by the operator."""


class ArtifactError(MigrationError):
    """Raised when a backup, snapshot or run directory cannot be written."""

    def __init__(self, *, path: object, reason: str) -> None:
        super().__init__(f"Cannot write {path}: {reason}")
        self.path = path
