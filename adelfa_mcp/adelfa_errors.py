"""Exceptions raised by the Adelfa session engine."""


class AdelfaError(Exception):
    """Base class for session errors."""
    pass


class StartupError(AdelfaError):
    """The assistant process failed to spawn or never became ready."""
    pass


class CommandRejected(AdelfaError):
    """The assistant reported an error for one command."""

    def __init__(self, command: str, message: str):
        super().__init__(message)
        self.command = command
        self.message = message


class ProtocolTimeout(CommandRejected):
    """No reply terminator arrived within the command timeout."""

    def __init__(self, command: str, timeout: float):
        super().__init__(command, f"Command timed out after {timeout:g}s")
        self.timeout = timeout


class ProcessExited(AdelfaError):
    """The assistant's output stream closed."""
    pass


class ChannelDesynced(ProcessExited):
    """A timed-out command never finished, so replies can no longer be matched to commands.

    The session must be restarted.
    """
    pass


class QueueCleared(AdelfaError):
    """Operation was dropped because the session was torn down."""

    def __init__(self, message: str = "Queue cleared"):
        super().__init__(message)


class UsageError(AdelfaError):
    """Programming-contract violation by the caller."""
    pass


class ChannelBusy(UsageError):
    pass


class AlreadyRunning(UsageError):
    pass


class InvariantViolation(AssertionError):
    """Session history stopped matching document order."""
    pass
