"""
Reconciliation Orchestrator - Create/Read/Update/Delete drivers.

Each operation dispatches the mutations a resource kind needs, waits for
the remote object to converge after each one, and reports the outcome with
diagnostics. A failed, timed out or cancelled step aborts the rest of the
operation; mutations already applied are never rolled back.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from config import Config, TimeoutConfig
from dispatcher import (
    MutationAction,
    MutationOutcome,
    MutationRequest,
    dispatch_with_retry,
)
from errors import (
    ErrorClass,
    FatalMutationError,
    FatalProbeError,
    ReconcileCancelledError,
    ReconcileError,
    TransientProbeError,
    UnexpectedStatusError,
)
from events import EventBus, EventType, OperationEvent
from kinds.base import ResourceKind
from waiter import (
    ObservedState,
    Outcome,
    ReconciliationResult,
    probe_once,
    wait_for_state,
)

logger = logging.getLogger(__name__)


class OperationPhase(Enum):
    """Phases an operation moves through."""

    REQUESTED = "requested"
    DISPATCHED = "dispatched"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


_PHASE_FOR_OUTCOME = {
    Outcome.SUCCESS: OperationPhase.SUCCEEDED,
    Outcome.TIMEOUT: OperationPhase.TIMED_OUT,
    Outcome.FAILED: OperationPhase.FAILED,
    Outcome.CANCELLED: OperationPhase.CANCELLED,
}

# Step labels used in diagnostic summaries, keyed by mutation action
_DISPATCH_STEPS = {
    MutationAction.CREATE: "creating",
    MutationAction.UPDATE: "updating",
    MutationAction.DISABLE: "disabling",
    MutationAction.DELETE: "deleting",
}
_WAIT_STEPS = {
    MutationAction.CREATE: "waiting for creation of",
    MutationAction.UPDATE: "waiting for update of",
    MutationAction.DISABLE: "waiting for disabling of",
    MutationAction.DELETE: "waiting for deletion of",
}


class Severity(Enum):
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Diagnostic:
    """A user-facing message attached to an operation report."""

    severity: Severity
    summary: str
    detail: str = ""


@dataclass
class OperationReport:
    """Everything an operation did, and how it ended."""

    operation: str
    kind: str
    key: str
    phase: OperationPhase = OperationPhase.REQUESTED
    step: str = ""
    identifier: Optional[str] = None
    result: Optional[ReconciliationResult] = None
    mutations: List[str] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    duration_seconds: float = 0.0
    no_op: bool = False

    @property
    def outcome(self) -> Optional[Outcome]:
        return self.result.outcome if self.result else None

    @property
    def ok(self) -> bool:
        return self.result is not None and self.result.ok

    @property
    def observed(self) -> Optional[ObservedState]:
        return self.result.observed if self.result else None

    @property
    def has_errors(self) -> bool:
        return any(d.severity is Severity.ERROR for d in self.diagnostics)

    def add_error(self, summary: str, detail: str = "") -> None:
        self.diagnostics.append(Diagnostic(Severity.ERROR, summary, detail))

    def add_warning(self, summary: str, detail: str = "") -> None:
        self.diagnostics.append(Diagnostic(Severity.WARNING, summary, detail))


def _result_from_error(
    error: ReconcileError, observed: Optional[ObservedState] = None
) -> ReconciliationResult:
    observed = observed or error.observed
    if isinstance(error, ReconcileCancelledError):
        return ReconciliationResult(
            Outcome.CANCELLED, observed=observed, error=error
        )
    return ReconciliationResult.failed(error, observed)


class Reconciler:
    """
    Drives create, read, update and delete operations for one resource kind.

    Holds only configuration; every operation builds its own requests,
    wait specs and report, so one Reconciler may run many operations
    concurrently.

    Args:
        kind: The resource kind to operate on.
        config: Timeouts and retry settings; defaults to Config.default().
        event_bus: Optional bus receiving progress events.
        cancel_event: Optional shared event; once set, in-flight waits and
            retries stop and operations end CANCELLED.
    """

    def __init__(
        self,
        kind: ResourceKind,
        config: Optional[Config] = None,
        event_bus: Optional[EventBus] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.kind = kind
        self.config = config or Config.default()
        self.timeouts: TimeoutConfig = self.config.timeouts.with_overrides(
            self.config.kinds.get_kind_config(kind.name)
        )
        self.cancel_event = cancel_event or asyncio.Event()
        self._event_bus = event_bus

    # Operations

    async def create(self, key: str, desired: Mapping[str, Any]) -> OperationReport:
        """
        Create a resource and wait until it reaches a ready status.

        Args:
            key: Identifier used for the request; replaced by the identifier
                the API returns, if any, for probing.
            desired: Desired attributes.
        """
        report = OperationReport("create", self.kind.name, key)
        start_time = time.monotonic()

        try:
            request = MutationRequest(
                self.kind.name, key, MutationAction.CREATE, desired
            )
            outcome = await self._dispatch(report, request)
            if outcome.identifier:
                report.identifier = outcome.identifier
            result = await self._wait(
                report, outcome.identifier or key, MutationAction.CREATE, outcome
            )
        except ReconcileError as e:
            result = _result_from_error(e)
        except Exception as e:
            result = self._unexpected(report, e)

        return await self._finish(report, result, start_time)

    async def read(self, key: str) -> OperationReport:
        """
        Probe a resource once.

        A missing resource is not an error: the report succeeds with an
        absent observed state and a warning so the caller can drop it from
        its records.
        """
        report = OperationReport("read", self.kind.name, key)
        start_time = time.monotonic()
        report.step = "reading"

        if self.cancel_event.is_set():
            return await self._finish(
                report, ReconciliationResult.cancelled(), start_time
            )

        poll = await probe_once(self.kind.probe_factory(key))
        if poll.is_error:
            result = ReconciliationResult.failed(
                self._probe_failure(poll.error), probes=1
            )
        else:
            result = ReconciliationResult.success(poll.observed, probes=1)
            if not poll.observed.exists:
                report.add_warning(
                    f"{self.kind.name} ({key}) not found",
                    "resource not found, removing from state",
                )

        return await self._finish(report, result, start_time)

    async def update(
        self,
        key: str,
        desired: Mapping[str, Any],
        observed: Mapping[str, Any],
    ) -> OperationReport:
        """
        Apply the differences between desired and last-observed attributes.

        One update is dispatched per mutation group, in the kind's declared
        group order, each followed by a convergence wait. With nothing to
        change the current status is still confirmed to be a target status.
        """
        report = OperationReport("update", self.kind.name, key)
        start_time = time.monotonic()

        try:
            report.step = "planning update of"
            groups = self.kind.compute_diff(desired, observed)

            if not groups:
                logger.info(f"No changes needed for {self.kind.name} {key}")
                report.no_op = True
                result = await self._confirm_status(report, key)
            else:
                result = None
                for group in groups:
                    request = MutationRequest(
                        self.kind.name,
                        key,
                        MutationAction.UPDATE,
                        group.changes,
                        group=group.name,
                    )
                    outcome = await self._dispatch(report, request)
                    result = await self._wait(
                        report, key, MutationAction.UPDATE, outcome
                    )
                    if not result.ok:
                        logger.warning(
                            f"Aborting update of {self.kind.name} {key} after "
                            f"group '{group.name}': {result.outcome.value}"
                        )
                        break
        except ReconcileError as e:
            result = _result_from_error(e)
        except Exception as e:
            result = self._unexpected(report, e)

        return await self._finish(report, result, start_time)

    async def delete(self, key: str) -> OperationReport:
        """
        Delete a resource and wait until it is gone.

        Kinds that must leave an active state first are disabled, and the
        disabled status confirmed, before the delete call is sent.
        """
        report = OperationReport("delete", self.kind.name, key)
        start_time = time.monotonic()

        try:
            result = None
            if self.kind.requires_disable:
                result = await self._disable(report, key)

            if result is None or result.ok:
                outcome = None
                try:
                    outcome = await self._dispatch(
                        report,
                        MutationRequest(self.kind.name, key, MutationAction.DELETE),
                    )
                except FatalMutationError as e:
                    if not e.not_found:
                        raise
                    logger.info(f"{self.kind.name} {key} already deleted")

                result = await self._wait(
                    report, key, MutationAction.DELETE, outcome
                )
        except ReconcileError as e:
            result = _result_from_error(e)
        except Exception as e:
            result = self._unexpected(report, e)

        return await self._finish(report, result, start_time)

    # Steps

    async def _disable(self, report: OperationReport, key: str):
        """Disable before deletion. Returns None if the resource is already gone."""
        request = MutationRequest(
            self.kind.name,
            key,
            MutationAction.DISABLE,
            self.kind.disable_attributes,
        )
        try:
            outcome = await self._dispatch(report, request)
        except FatalMutationError as e:
            if not e.not_found:
                raise
            logger.info(f"{self.kind.name} {key} not found while disabling")
            return None

        return await self._wait(report, key, MutationAction.DISABLE, outcome)

    async def _dispatch(
        self, report: OperationReport, request: MutationRequest
    ) -> MutationOutcome:
        report.step = _DISPATCH_STEPS[request.action]
        dispatch = self.config.dispatch

        outcome = await dispatch_with_retry(
            self.kind.dispatcher(request.action),
            request,
            max_attempts=dispatch.max_attempts,
            base_delay=dispatch.retry_base_delay,
            max_delay=dispatch.retry_max_delay,
            jitter_factor=dispatch.retry_jitter_factor,
            cancel_event=self.cancel_event,
        )

        report.mutations.append(request.describe())
        await self._set_phase(report, OperationPhase.DISPATCHED)
        await self._publish(
            report,
            EventType.MUTATION_DISPATCHED,
            {
                "action": request.action.value,
                "group": request.group,
                "attempts": outcome.attempts,
                "identifier": outcome.identifier,
            },
        )
        return outcome

    async def _wait(
        self,
        report: OperationReport,
        key: str,
        action: MutationAction,
        outcome: Optional[MutationOutcome] = None,
    ) -> ReconciliationResult:
        report.step = _WAIT_STEPS[action]
        await self._set_phase(report, OperationPhase.WAITING)
        spec = self.kind.wait_spec(action, self.timeouts, self.config.waiter)

        # A status reported by the mutating call seeds the wait
        initial = None
        if outcome is not None and outcome.initial_status is not None:
            initial = ObservedState(
                obj=outcome.response, status=outcome.initial_status
            )

        return await wait_for_state(
            self.kind.probe_factory(key),
            spec,
            classify=self.kind.classify,
            cancel_event=self.cancel_event,
            initial=initial,
        )

    async def _confirm_status(
        self, report: OperationReport, key: str
    ) -> ReconciliationResult:
        """Single probe checking that an unchanged resource is in a target status."""
        report.step = "confirming status of"
        spec = self.kind.wait_spec(
            MutationAction.UPDATE, self.timeouts, self.config.waiter
        )
        if self.cancel_event.is_set():
            return ReconciliationResult.cancelled()

        poll = await probe_once(self.kind.probe_factory(key))
        if poll.is_error:
            return ReconciliationResult.failed(
                self._probe_failure(poll.error), probes=1
            )

        observed = poll.observed
        if observed.exists and observed.status in spec.target:
            return ReconciliationResult.success(observed, probes=1)

        if not observed.exists:
            error = UnexpectedStatusError(
                None,
                spec.target,
                observed,
                message="resource not found while confirming status",
            )
        else:
            error = UnexpectedStatusError(observed.status, spec.target, observed)
        return ReconciliationResult.failed(error, observed, probes=1)

    def _probe_failure(self, error: BaseException) -> ReconcileError:
        if isinstance(error, ReconcileError):
            return error
        if self.kind.classify(error) is ErrorClass.TRANSIENT:
            failure = TransientProbeError(str(error))
        else:
            failure = FatalProbeError(str(error))
        failure.__cause__ = error
        return failure

    def _unexpected(self, report: OperationReport, error: Exception):
        logger.error(
            f"Unexpected error {report.step or 'in'} {self.kind.name} "
            f"{report.key}: {error}",
            exc_info=True,
        )
        failure = ReconcileError(f"unexpected error: {error}")
        failure.__cause__ = error
        return ReconciliationResult.failed(failure)

    # Reporting

    async def _finish(
        self,
        report: OperationReport,
        result: ReconciliationResult,
        start_time: float,
    ) -> OperationReport:
        report.result = result
        report.duration_seconds = time.monotonic() - start_time
        subject = f"{report.step} {self.kind.name} ({report.key})".strip()

        if result.outcome is Outcome.SUCCESS:
            logger.info(
                f"{report.operation} {self.kind.name} {report.key} succeeded "
                f"in {report.duration_seconds:.1f}s"
            )
        elif result.outcome is Outcome.TIMEOUT:
            report.add_error(subject, str(result.error))
            report.add_warning(
                f"{self.kind.name} ({report.key}) may still converge",
                "the operation timed out; the remote system may finish the "
                "change later and the operation can be resubmitted",
            )
            logger.warning(f"{subject}: {result.error}")
        elif result.outcome is Outcome.CANCELLED:
            report.add_error(subject, str(result.error or "operation cancelled"))
            logger.warning(f"{subject}: cancelled")
        else:
            report.add_error(subject, str(result.error))
            logger.error(f"{subject}: {result.error}")

        await self._set_phase(report, _PHASE_FOR_OUTCOME[result.outcome])
        await self._publish(
            report,
            EventType.COMPLETED,
            {
                "outcome": result.outcome.value,
                "status": result.observed.status if result.observed else None,
                "error": str(result.error) if result.error else None,
                "duration_seconds": report.duration_seconds,
            },
        )
        return report

    async def _set_phase(self, report: OperationReport, phase: OperationPhase) -> None:
        report.phase = phase
        await self._publish(report, EventType.PHASE_CHANGED, {"step": report.step})

    async def _publish(
        self,
        report: OperationReport,
        event_type: EventType,
        detail: Dict[str, Any],
    ) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            OperationEvent(
                event_type=event_type,
                operation=report.operation,
                kind=report.kind,
                key=report.key,
                phase=report.phase.value,
                detail=detail,
            )
        )
