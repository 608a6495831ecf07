"""
Error taxonomy for reconciliation.

Every failure surfaced by the waiter, dispatcher or orchestrator is a
ReconcileError subclass carrying its classification and, when known, the
last observed state of the remote object.
"""

import asyncio
from enum import Enum
from typing import Any, FrozenSet, Iterable, Optional

import aiohttp


class ErrorClass(Enum):
    """Whether retrying the failed call may succeed."""

    TRANSIENT = "transient"
    FATAL = "fatal"


# HTTP statuses that signal throttling or a temporarily unavailable service
TRANSIENT_HTTP_STATUSES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})

TRANSIENT_ERROR_CODES: FrozenSet[str] = frozenset(
    {
        "ThrottlingException",
        "Throttling",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "ServiceUnavailableException",
    }
)


class ReconcileError(Exception):
    """Base class for all reconciliation failures."""

    classification: ErrorClass = ErrorClass.FATAL

    def __init__(self, message: str, observed: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.observed = observed

    @property
    def is_transient(self) -> bool:
        return self.classification is ErrorClass.TRANSIENT


class TransientProbeError(ReconcileError):
    """A status probe failed in a way that is expected to clear up."""

    classification = ErrorClass.TRANSIENT


class FatalProbeError(ReconcileError):
    """A status probe failed and retrying will not help."""


class TransientMutationError(ReconcileError):
    """A mutating call failed but is safe to resubmit."""

    classification = ErrorClass.TRANSIENT

    def __init__(
        self, message: str, observed: Optional[Any] = None, attempts: int = 1
    ):
        super().__init__(message, observed)
        self.attempts = attempts


class FatalMutationError(ReconcileError):
    """A mutating call was rejected (validation, conflict, missing resource)."""

    def __init__(
        self,
        message: str,
        observed: Optional[Any] = None,
        attempts: int = 1,
        not_found: bool = False,
    ):
        super().__init__(message, observed)
        self.attempts = attempts
        self.not_found = not_found


class UnexpectedStatusError(ReconcileError):
    """The remote object reached a status outside the pending and target sets."""

    def __init__(
        self,
        status: Optional[str],
        expected: Iterable[str] = (),
        observed: Optional[Any] = None,
        message: Optional[str] = None,
    ):
        self.status = status
        self.expected = sorted(expected)
        if message is None:
            message = (
                f"unexpected state '{status}', wanted target "
                f"'{', '.join(self.expected)}'"
            )
        super().__init__(message, observed)


class WaitTimeoutError(ReconcileError):
    """The timeout elapsed before the remote object converged."""

    def __init__(self, timeout: float, observed: Optional[Any] = None):
        self.timeout = timeout
        last = getattr(observed, "status", None)
        message = f"timeout while waiting for state to converge ({timeout:g}s)"
        if last:
            message += f", last state: '{last}'"
        super().__init__(message, observed)


class ReconcileCancelledError(ReconcileError):
    """The caller gave up on the operation before it finished."""

    def __init__(self, message: str = "operation cancelled", observed=None):
        super().__init__(message, observed)


def _error_code(error: BaseException) -> Optional[str]:
    for attr in ("code", "error_code"):
        code = getattr(error, attr, None)
        if isinstance(code, str):
            return code
    return None


def classify_error(error: BaseException) -> ErrorClass:
    """
    Default error classifier.

    Network failures, timeouts and throttling are transient; everything
    else is fatal.

    Args:
        error: The exception raised by a probe or mutation call.

    Returns:
        ErrorClass.TRANSIENT or ErrorClass.FATAL.
    """
    if isinstance(error, ReconcileError):
        return error.classification

    if isinstance(error, aiohttp.ClientResponseError):
        if error.status in TRANSIENT_HTTP_STATUSES:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL

    if isinstance(
        error,
        (
            asyncio.TimeoutError,
            TimeoutError,
            ConnectionError,
            aiohttp.ClientConnectionError,
            aiohttp.ServerTimeoutError,
        ),
    ):
        return ErrorClass.TRANSIENT

    if _error_code(error) in TRANSIENT_ERROR_CODES:
        return ErrorClass.TRANSIENT

    return ErrorClass.FATAL
