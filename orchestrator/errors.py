# orchestrator/errors.py


class OrchestratorError(RuntimeError):
    """Base error. Carries the profile and the phase it failed in, when known."""

    def __init__(self, message, profile=None, phase=None):
        super().__init__(message)
        self.message = message
        self.profile = profile
        self.phase = phase

    def __str__(self):
        prefix = []
        if self.profile:
            prefix.append(f"profile={self.profile}")
        if self.phase:
            prefix.append(f"phase={self.phase}")
        if not prefix:
            return self.message
        return f"[{' '.join(prefix)}] {self.message}"


class ConfigError(OrchestratorError):
    pass


class LockHeld(OrchestratorError):
    """The conditional write lost: someone else holds an unexpired lease."""


class LockTimeout(OrchestratorError):
    pass


class ProviderError(OrchestratorError):
    """A cloud provider call failed. The botocore error is kept as __cause__."""


class ResourceNotFound(OrchestratorError):
    pass


class ErrorState(OrchestratorError):
    def __init__(self, message, status=None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status


class WaitTimeout(OrchestratorError):
    pass


class CleanupWarning(OrchestratorError):
    """Stale artifact removal failed. Logged, never propagated to the caller."""
