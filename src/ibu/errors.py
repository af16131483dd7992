"""Exception types raised by the agent's services."""

from typing import Optional


class AdmissionRejectedError(ValueError):
    """A spec update violates an immutability rule."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class InvalidTransitionError(ValueError):
    """The requested stage is not reachable from the current one."""

    def __init__(self, current, desired):
        super().__init__(
            f"Transition from {current.value} to {desired.value} is not allowed"
        )
        self.current = current
        self.desired = desired


class ResourceNotFoundError(LookupError):
    """A `get` against the cluster API returned not-found."""


class AccessorError(RuntimeError):
    """A cluster API call failed for a reason other than not-found."""


class SchemaIncompatibilityError(ValueError):
    """A persisted seed record carries an unsupported version tag."""


class SeedVersionMismatchError(ValueError):
    """The seed image was built from a different OCP version than requested."""


class CommandError(RuntimeError):
    """An external command exited non-zero."""

    def __init__(self, command: list[str], returncode: int, stderr: str = ""):
        super().__init__(
            f"Command {' '.join(command)!r} failed: "
            f"exit code {returncode}, stderr: {stderr.strip()}"
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class GatherError(RuntimeError):
    """A fatal step aborted cluster configuration gathering."""

    def __init__(self, step: str, cause: Optional[Exception] = None):
        super().__init__(f"Failed to gather {step}: {cause}")
        self.step = step


class RestoreError(RuntimeError):
    """A fatal step aborted the seed identity restore."""
