"""
Mutation Dispatcher - Issue create/update/delete calls against a remote API.

Each dispatch sends exactly one mutating call and classifies any failure as
transient (safe to resubmit) or fatal. dispatch_with_retry() layers a
bounded retry loop with exponential backoff over transient failures.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import aiohttp
from jsonschema import Draft7Validator

from errors import (
    ErrorClass,
    FatalMutationError,
    ReconcileCancelledError,
    ReconcileError,
    TransientMutationError,
    classify_error,
)
from waiter import sleep_or_cancel

logger = logging.getLogger(__name__)


class MutationAction(Enum):
    """Kinds of mutating calls the orchestrator issues."""

    CREATE = "create"
    UPDATE = "update"
    DISABLE = "disable"
    DELETE = "delete"


@dataclass(frozen=True)
class MutationRequest:
    """Desired attributes plus the identifying key of the target resource."""

    kind: str
    key: str
    action: MutationAction
    attributes: Mapping[str, Any] = field(default_factory=dict)
    group: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(
            self, "attributes", MappingProxyType(dict(self.attributes))
        )

    def describe(self) -> str:
        label = f"{self.action.value} {self.kind} ({self.key})"
        if self.group:
            label += f" [{self.group}]"
        return label


@dataclass
class MutationOutcome:
    """What a successful mutating call reported back."""

    identifier: Optional[str] = None
    initial_status: Optional[str] = None
    attempts: int = 1
    response: Any = None


MutateResult = Union[None, str, Mapping[str, Any], MutationOutcome]
Mutator = Callable[[MutationRequest], Awaitable[MutateResult]]


def _normalize(result: MutateResult) -> MutationOutcome:
    if result is None:
        return MutationOutcome()
    if isinstance(result, MutationOutcome):
        return result
    if isinstance(result, str):
        return MutationOutcome(initial_status=result)
    if isinstance(result, Mapping):
        return MutationOutcome(
            identifier=result.get("identifier"),
            initial_status=result.get("status"),
            response=result,
        )
    return MutationOutcome(response=result)


class MutationDispatcher:
    """
    Sends mutating calls for one resource kind.

    Args:
        mutate: Async callable performing the remote call for a request.
        classify: Error classifier; defaults to errors.classify_error.
        schema: Optional JSON schema the request attributes must satisfy.
            Only applied to CREATE and UPDATE requests.
    """

    def __init__(
        self,
        mutate: Mutator,
        classify: Optional[Callable[[BaseException], ErrorClass]] = None,
        schema: Optional[Dict[str, Any]] = None,
    ):
        self.mutate = mutate
        self.classify = classify or classify_error
        self.schema = schema

    def _validate(self, request: MutationRequest) -> None:
        if self.schema is None:
            return
        if request.action not in (MutationAction.CREATE, MutationAction.UPDATE):
            return
        validator = Draft7Validator(
            self.schema, format_checker=Draft7Validator.FORMAT_CHECKER
        )
        errors = []
        for error in sorted(
            validator.iter_errors(dict(request.attributes)),
            key=lambda e: [str(p) for p in e.absolute_path],
        ):
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            errors.append(f"{path}: {error.message}")
        if errors:
            raise FatalMutationError("invalid attributes: " + "; ".join(errors))

    async def dispatch(self, request: MutationRequest) -> MutationOutcome:
        """
        Send a single mutating call.

        Raises:
            TransientMutationError: The call failed but may be resubmitted.
            FatalMutationError: The call was rejected or validation failed.
        """
        self._validate(request)

        logger.info(f"Dispatching {request.describe()}")
        try:
            result = await self.mutate(request)
        except ReconcileError:
            raise
        except Exception as e:
            if self.classify(e) is ErrorClass.TRANSIENT:
                raise TransientMutationError(
                    f"{request.describe()} failed: {e}"
                ) from e
            raise FatalMutationError(
                f"{request.describe()} failed: {e}",
                not_found=_looks_like_not_found(e),
            ) from e

        outcome = _normalize(result)
        logger.debug(
            f"{request.describe()} accepted: identifier={outcome.identifier}, "
            f"status={outcome.initial_status}"
        )
        return outcome


def _looks_like_not_found(error: BaseException) -> bool:
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status == 404
    if getattr(error, "status", None) == 404:
        return True
    code = getattr(error, "code", None) or getattr(error, "error_code", None)
    return isinstance(code, str) and "NotFound" in code


def backoff_delay(
    attempt: int, base_delay: float, max_delay: float, jitter_factor: float
) -> float:
    """
    Exponential backoff capped at max_delay with ±jitter_factor jitter.

    Args:
        attempt: Zero-based number of failed attempts so far.
    """
    delay = min(base_delay * (2 ** min(attempt, 10)), max_delay)
    return max(delay * (1 + (random.random() * 2 - 1) * jitter_factor), 0)


async def dispatch_with_retry(
    dispatcher: MutationDispatcher,
    request: MutationRequest,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter_factor: float = 0.1,
    cancel_event: Optional[asyncio.Event] = None,
) -> MutationOutcome:
    """
    Dispatch a request, resubmitting transient failures.

    Args:
        dispatcher: The dispatcher for the request's resource kind.
        request: The mutation to send.
        max_attempts: Ceiling on the number of calls, including the first.
        base_delay: Backoff base delay in seconds.
        max_delay: Backoff cap in seconds.
        jitter_factor: Jitter applied to each backoff delay.
        cancel_event: Optional event that stops further attempts.

    Returns:
        The MutationOutcome of the successful attempt.

    Raises:
        FatalMutationError: On the first fatal failure.
        TransientMutationError: When every attempt failed transiently.
        ReconcileCancelledError: When cancelled between attempts.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise ReconcileCancelledError(f"{request.describe()} cancelled")

        attempt += 1
        try:
            outcome = await dispatcher.dispatch(request)
        except TransientMutationError as e:
            e.attempts = attempt
            if attempt >= max_attempts:
                logger.error(
                    f"{request.describe()} still failing after {attempt} "
                    f"attempt(s): {e}"
                )
                raise

            delay = backoff_delay(attempt - 1, base_delay, max_delay, jitter_factor)
            logger.warning(
                f"{request.describe()} failed transiently "
                f"(attempt {attempt}/{max_attempts}), retrying in {delay:.1f}s"
            )
            if await sleep_or_cancel(delay, cancel_event):
                raise ReconcileCancelledError(
                    f"{request.describe()} cancelled"
                ) from e
            continue
        except FatalMutationError as e:
            e.attempts = attempt
            raise

        outcome.attempts = attempt
        return outcome
