"""
Convergence Waiter - Poll a remote object until its status converges.

Given a status prober and a WaitSpec, the waiter repeatedly probes the
remote system until the observed status reaches a target status, turns
into something unrecoverable, the timeout elapses, or the caller cancels.
All waiting happens with asyncio so many waits can be outstanding at once.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, Optional, Union

from errors import (
    ErrorClass,
    FatalProbeError,
    ReconcileCancelledError,
    ReconcileError,
    TransientProbeError,
    UnexpectedStatusError,
    WaitTimeoutError,
    classify_error,
)

logger = logging.getLogger(__name__)

# Bounds for the BACKOFF poll policy
BACKOFF_INITIAL_INTERVAL = 0.1
BACKOFF_MAX_INTERVAL = 10.0


class PollPolicy(Enum):
    """How the delay between probes evolves during one wait."""

    FIXED = "fixed"
    BACKOFF = "backoff"


class Outcome(Enum):
    """Terminal outcome of a wait or reconciliation operation."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ObservedState:
    """The remote object as last fetched, with its status label."""

    obj: Any = None
    status: Optional[str] = None
    exists: bool = True

    @classmethod
    def absent(cls, status: Optional[str] = None) -> "ObservedState":
        """Build the observation for an object the remote system no longer has."""
        return cls(obj=None, status=status, exists=False)


@dataclass(frozen=True)
class PollOutcome:
    """Result of one probe: either an observation or an error, never both."""

    observed: Optional[ObservedState] = None
    error: Optional[BaseException] = None

    def __post_init__(self):
        if (self.observed is None) == (self.error is None):
            raise ValueError("PollOutcome needs exactly one of observed or error")

    @classmethod
    def observation(cls, observed: ObservedState) -> "PollOutcome":
        return cls(observed=observed)

    @classmethod
    def failure(cls, error: BaseException) -> "PollOutcome":
        return cls(error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None


def _as_status_set(statuses: Union[str, Iterable[str]]) -> FrozenSet[str]:
    if isinstance(statuses, str):
        return frozenset({statuses})
    return frozenset(statuses)


@dataclass(frozen=True)
class WaitSpec:
    """
    Immutable description of one convergence wait.

    Durations are in seconds. ``pending`` statuses keep the wait going,
    ``target`` statuses end it successfully. With ``deletion_aware`` set,
    an absent object counts as having reached the target.
    """

    pending: FrozenSet[str]
    target: FrozenSet[str]
    timeout: float
    delay: float = 0.0
    poll_interval: float = 10.0
    min_poll_interval: float = 0.0
    poll_policy: PollPolicy = PollPolicy.FIXED
    deletion_aware: bool = False
    not_found_checks: int = 0
    max_transient_errors: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "pending", _as_status_set(self.pending))
        object.__setattr__(self, "target", _as_status_set(self.target))
        object.__setattr__(self, "poll_policy", PollPolicy(self.poll_policy))

        if not self.target:
            raise ValueError("WaitSpec needs at least one target status")
        overlap = self.pending & self.target
        if overlap:
            raise ValueError(
                f"Statuses cannot be both pending and target: {sorted(overlap)}"
            )
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        for name in ("delay", "poll_interval", "min_poll_interval"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if self.not_found_checks < 0:
            raise ValueError("not_found_checks cannot be negative")
        if self.max_transient_errors is not None and self.max_transient_errors < 0:
            raise ValueError("max_transient_errors cannot be negative")

    def first_interval(self) -> float:
        """Delay before the second probe."""
        if self.poll_policy is PollPolicy.BACKOFF:
            return max(self.min_poll_interval, BACKOFF_INITIAL_INTERVAL)
        return max(self.poll_interval, self.min_poll_interval)

    def next_interval(self, current: float) -> float:
        """Delay to use after ``current`` for the following probe."""
        if self.poll_policy is PollPolicy.BACKOFF:
            ceiling = max(self.poll_interval, self.min_poll_interval)
            return max(min(current * 2, ceiling), self.min_poll_interval)
        return current


@dataclass
class ReconciliationResult:
    """Terminal result of a wait or of a whole reconciliation operation."""

    outcome: Outcome
    observed: Optional[ObservedState] = None
    error: Optional[ReconcileError] = None
    probes: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def classification(self) -> Optional[ErrorClass]:
        if self.error is None:
            return None
        return self.error.classification

    @classmethod
    def success(cls, observed: ObservedState, probes: int = 0):
        return cls(Outcome.SUCCESS, observed=observed, probes=probes)

    @classmethod
    def timeout(cls, timeout: float, observed: Optional[ObservedState], probes=0):
        return cls(
            Outcome.TIMEOUT,
            observed=observed,
            error=WaitTimeoutError(timeout, observed),
            probes=probes,
        )

    @classmethod
    def failed(cls, error: ReconcileError, observed=None, probes: int = 0):
        if error.observed is None:
            error.observed = observed
        return cls(Outcome.FAILED, observed=observed, error=error, probes=probes)

    @classmethod
    def cancelled(cls, observed: Optional[ObservedState] = None, probes: int = 0):
        return cls(
            Outcome.CANCELLED,
            observed=observed,
            error=ReconcileCancelledError("wait cancelled", observed),
            probes=probes,
        )

    def raise_for_outcome(self) -> None:
        """Raise the attached error unless the outcome is SUCCESS."""
        if self.outcome is not Outcome.SUCCESS and self.error is not None:
            raise self.error


Prober = Callable[[], Awaitable[Optional[ObservedState]]]
Classifier = Callable[[BaseException], ErrorClass]


def _is_cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


async def sleep_or_cancel(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """
    Sleep for ``delay`` seconds unless the cancel event fires first.

    Returns:
        True if the sleep was interrupted by cancellation.
    """
    if cancel_event is None:
        await asyncio.sleep(max(delay, 0))
        return False
    if cancel_event.is_set():
        return True
    if delay <= 0:
        await asyncio.sleep(0)
        return cancel_event.is_set()

    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def probe_once(prober: Prober) -> PollOutcome:
    """Invoke the prober a single time and wrap the result."""
    try:
        observed = await prober()
    except Exception as e:
        return PollOutcome.failure(e)

    if observed is None:
        observed = ObservedState.absent()
    return PollOutcome.observation(observed)


async def wait_for_state(
    prober: Prober,
    spec: WaitSpec,
    classify: Optional[Classifier] = None,
    cancel_event: Optional[asyncio.Event] = None,
    initial: Optional[ObservedState] = None,
) -> ReconciliationResult:
    """
    Block until the prober reports a target status.

    Args:
        prober: Async callable returning the current ObservedState. Must not
            mutate remote state.
        spec: Pending/target statuses and timing for this wait.
        classify: Error classifier for probe exceptions. Defaults to
            errors.classify_error.
        cancel_event: Optional event; once set the wait stops before the
            next probe and returns a CANCELLED result.
        initial: State reported by the mutation that started this wait.
            It stands in as the last observation until a probe succeeds,
            and a status outside the pending and target sets fails the
            wait without probing.

    Returns:
        ReconciliationResult with outcome SUCCESS, TIMEOUT, FAILED or
        CANCELLED and the last observed state.
    """
    classify = classify or classify_error
    loop = asyncio.get_running_loop()
    deadline = loop.time() + spec.timeout

    last_observed: Optional[ObservedState] = initial
    probes = 0
    transient_errors = 0
    absences = 0
    interval = spec.first_interval()

    if (
        initial is not None
        and initial.exists
        and initial.status is not None
        and initial.status not in spec.pending | spec.target
    ):
        failure = UnexpectedStatusError(initial.status, spec.target, initial)
        logger.error(f"Mutation reported {failure.message}")
        return ReconciliationResult.failed(failure, initial, probes)

    if spec.delay > 0:
        logger.debug(f"Waiting {spec.delay:g}s before first probe")
        if await sleep_or_cancel(spec.delay, cancel_event):
            return ReconciliationResult.cancelled(last_observed, probes)

    while True:
        if probes > 0 and loop.time() >= deadline:
            logger.warning(
                f"Timed out after {spec.timeout:g}s waiting for "
                f"{sorted(spec.target)}, last status: "
                f"{last_observed.status if last_observed else None}"
            )
            return ReconciliationResult.timeout(spec.timeout, last_observed, probes)

        if _is_cancelled(cancel_event):
            return ReconciliationResult.cancelled(last_observed, probes)

        poll = await probe_once(prober)
        probes += 1

        if _is_cancelled(cancel_event):
            if poll.observed is not None:
                last_observed = poll.observed
            logger.info(f"Wait cancelled after {probes} probe(s)")
            return ReconciliationResult.cancelled(last_observed, probes)

        if poll.is_error:
            error = poll.error
            if classify(error) is ErrorClass.FATAL:
                logger.error(f"Probe failed permanently: {error}")
                failure = FatalProbeError(str(error), last_observed)
                failure.__cause__ = error
                return ReconciliationResult.failed(failure, last_observed, probes)

            transient_errors += 1
            logger.debug(f"Transient probe error ({transient_errors}): {error}")
            if (
                spec.max_transient_errors is not None
                and transient_errors > spec.max_transient_errors
            ):
                failure = TransientProbeError(
                    f"giving up after {transient_errors} consecutive transient "
                    f"probe errors: {error}",
                    last_observed,
                )
                failure.__cause__ = error
                logger.error(failure.message)
                return ReconciliationResult.failed(failure, last_observed, probes)
        else:
            transient_errors = 0
            observed = poll.observed
            last_observed = observed
            logger.debug(
                f"Probe {probes}: status={observed.status} exists={observed.exists}"
            )

            if not observed.exists:
                if spec.deletion_aware:
                    terminal = ObservedState.absent(sorted(spec.target)[0])
                    logger.info(f"Resource gone after {probes} probe(s)")
                    return ReconciliationResult.success(terminal, probes)

                absences += 1
                if absences > spec.not_found_checks:
                    failure = UnexpectedStatusError(
                        None,
                        spec.target,
                        observed,
                        message=(
                            f"resource disappeared while waiting for "
                            f"'{', '.join(sorted(spec.target))}'"
                        ),
                    )
                    logger.error(failure.message)
                    return ReconciliationResult.failed(failure, observed, probes)
            else:
                absences = 0
                if observed.status in spec.target:
                    logger.info(
                        f"Reached status {observed.status} after {probes} probe(s)"
                    )
                    return ReconciliationResult.success(observed, probes)

                if observed.status not in spec.pending:
                    failure = UnexpectedStatusError(
                        observed.status, spec.target, observed
                    )
                    logger.error(failure.message)
                    return ReconciliationResult.failed(failure, observed, probes)

        remaining = deadline - loop.time()
        if await sleep_or_cancel(min(interval, max(remaining, 0)), cancel_event):
            return ReconciliationResult.cancelled(last_observed, probes)
        interval = spec.next_interval(interval)
