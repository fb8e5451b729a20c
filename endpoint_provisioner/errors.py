# file: errors.py

from typing import List, Optional


class ProvisionerError(Exception):
    """Base class for every error raised by the provisioner."""


class MissingDependency(ProvisionerError):
    """A step needs a role that no earlier step produces and state does not hold."""

    def __init__(self, role: str, step: Optional[str] = None):
        self.role = role
        self.step = step
        if step:
            message = f"Step '{step}' depends on '{role}', which is neither recorded nor produced earlier"
        else:
            message = f"Role '{role}' is not recorded in state"
        super().__init__(message)


class DependencyCycle(ProvisionerError):
    """The declared steps cannot be ordered."""

    def __init__(self, steps: List[str]):
        self.steps = steps
        super().__init__(f"Dependency cycle between steps: {', '.join(steps)}")


class ProviderError(ProvisionerError):
    """The cloud provider rejected a call, timed out, or returned something unusable."""

    def __init__(
        self,
        operation: str,
        message: str,
        code: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.operation = operation
        self.code = code
        self.cause = cause
        detail = f"{operation} failed"
        if code:
            detail += f" ({code})"
        super().__init__(f"{detail}: {message}")


class CorruptState(ProvisionerError):
    """The persisted state document cannot be read. Needs manual repair."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"State file {path} is unreadable: {reason}")


class ConfirmationDenied(ProvisionerError):
    """A destructive command was not confirmed."""
