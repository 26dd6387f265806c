"""Error taxonomy shared by every hatchery component."""

from typing import Optional


class HatcheryError(Exception):
    """Base class for all hatchery errors."""

    kind = "error"


class TransportError(HatcheryError):
    """Network or authentication failure talking to a remote endpoint.

    Retryable: callers decide how many times.
    """

    kind = "transport"


class ApiError(HatcheryError):
    """The hypervisor rejected a request."""

    kind = "api"

    def __init__(self, code: int, message: str):
        super().__init__(f"API error {code}: {message}")
        self.code = code
        self.message = message


class NotFoundError(ApiError):
    """The requested container does not exist."""


class InvalidTransitionError(ApiError):
    """The requested lifecycle transition is not legal from the current state."""

    def __init__(self, message: str):
        super().__init__(409, message)


class NotReady(HatcheryError):
    """A readiness probe's condition is not true yet (retryable)."""


class ProbeFailed(HatcheryError):
    """A readiness probe hit a condition that will not resolve by waiting."""

    kind = "probe"


class PollTimeout(HatcheryError):
    """A readiness condition never became true within the attempt limit."""

    kind = "timeout"

    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException] = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Timed out waiting for {description} after {attempts} attempts{detail}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error


class ConfigurationError(HatcheryError):
    """A configuration stage, or the declared configuration itself, is invalid or failed."""

    kind = "configuration"


class IdentityError(ConfigurationError):
    """A host identity was requested or registered with the wrong capability."""


class RemoteCommandError(ConfigurationError):
    """A command run over SSH exited non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        message = f"Command {command!r} exited with {exit_code}"
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
