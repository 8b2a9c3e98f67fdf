"""
Keeper Errors — error taxonomy shared by the cache, resolver and codec.

Every error carries an ``ErrorCode`` so callers can branch on the condition
without string matching. Each concrete class also derives from the closest
builtin exception, so ``except ValueError`` keeps working for bad input.

Security Note:
    Decryption failures never say which recipient slot failed to match,
    and malformed vs tampered ciphertext share one error.
"""
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Error conditions surfaced by public operations."""

    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


class KeeperError(Exception):
    """Base class for all keybase_keeper errors."""

    code: ErrorCode = ErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        username: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.username = username
        self.operation = operation

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.username:
            context.append(f"username={self.username}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class InvalidArgument(KeeperError, ValueError):
    """Malformed or empty input, corrupted ciphertext, bad configuration."""

    code = ErrorCode.INVALID_ARGUMENT


class NotFound(KeeperError, LookupError):
    """No matching decryption key, or the resolver reports an unknown user."""

    code = ErrorCode.NOT_FOUND


class DeadlineExceeded(KeeperError, TimeoutError):
    """Timeout or caller cancellation."""

    code = ErrorCode.DEADLINE_EXCEEDED


class Unavailable(KeeperError, ConnectionError):
    """Transient resolver failure after exhausting retries."""

    code = ErrorCode.UNAVAILABLE


class InternalError(KeeperError, RuntimeError):
    """Persistence I/O failure or corrupt on-disk snapshot."""

    code = ErrorCode.INTERNAL
