"""Exception types shared across winnodectl."""
from typing import Optional


class WinNodeError(Exception):
    """Base class for all winnodectl errors."""
    pass


class AuthenticationError(WinNodeError):
    """The instance rejected our SSH credentials. Never retried."""
    pass


class TransientError(WinNodeError):
    """A remote or network failure that may succeed on a later attempt."""
    pass


class CommandError(TransientError):
    """A remote command exited with a non-zero status."""

    def __init__(self, command: str, output: str, exit_status: int):
        self.command = command
        self.output = output
        self.exit_status = exit_status
        super().__init__(f"command exited with status {exit_status}: {output.strip()}")


class RetryError(TransientError):
    """A bounded poll ran out of attempts or time."""
    pass


class ConfigurationError(WinNodeError):
    """Invalid input that will not succeed when retried unchanged."""
    pass


class SecretNotFoundError(ConfigurationError):
    """A secret the operator depends on is missing."""
    pass


class ReconcileError(WinNodeError):
    """Error surfaced by a reconcile, carrying a machine-readable reason."""

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)


def format_error_chain(err: Optional[BaseException]) -> str:
    """Render an exception and its causes as ``outer: inner: root``."""
    parts = []
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        text = str(err)
        if text and (not parts or text not in parts[-1]):
            parts.append(text)
        err = err.__cause__
    return ": ".join(parts)
