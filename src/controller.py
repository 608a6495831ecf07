"""
Controller - Run many reconciliation operations concurrently.

Operations for different resources run as independent asyncio tasks,
bounded by a semaphore. Stopping the controller cancels in-flight waits,
which end with a CANCELLED outcome rather than a timeout.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import Config
from errors import ReconcileError
from events import EventBus
from kinds.registry import KindRegistry
from orchestrator import OperationPhase, OperationReport, Reconciler
from waiter import ReconciliationResult

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

OPERATIONS = ("create", "read", "update", "delete")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging the way the controller logs everywhere."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT
    )


@dataclass
class Operation:
    """One requested reconciliation operation."""

    kind: str
    action: str
    key: str
    desired: Dict[str, Any] = field(default_factory=dict)
    observed: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.action not in OPERATIONS:
            raise ValueError(
                f"Unknown operation: {self.action}. "
                f"Expected one of: {', '.join(OPERATIONS)}"
            )


class Controller:
    """
    Dispatches operations to per-kind reconcilers.

    Args:
        registry: Resource kinds available to operations.
        config: Controller, timeout and retry configuration.
        event_bus: Optional bus receiving progress events from every
            reconciler.
    """

    def __init__(
        self,
        registry: KindRegistry,
        config: Optional[Config] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.registry = registry
        self.config = config or Config.default()
        self.max_concurrent_reconciles = (
            self.config.controller.max_concurrent_reconciles
        )
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False
        self._event_bus = event_bus
        self._shutdown_event = asyncio.Event()

    def reconciler_for(self, kind_name: str) -> Reconciler:
        """
        Build a reconciler for a registered kind.

        Raises:
            ValueError: If the kind is not registered
        """
        return Reconciler(
            self.registry.get(kind_name),
            config=self.config,
            event_bus=self._event_bus,
            cancel_event=self._shutdown_event,
        )

    async def run_operation(self, operation: Operation) -> OperationReport:
        """Run a single operation once a concurrency slot is free."""
        async with self.semaphore:
            if self._shutdown_event.is_set():
                return self._cancelled_report(operation)

            reconciler = self.reconciler_for(operation.kind)
            logger.info(
                f"Starting {operation.action} of {operation.kind} {operation.key}"
            )

            if operation.action == "create":
                return await reconciler.create(operation.key, operation.desired)
            if operation.action == "read":
                return await reconciler.read(operation.key)
            if operation.action == "update":
                return await reconciler.update(
                    operation.key, operation.desired, operation.observed
                )
            return await reconciler.delete(operation.key)

    async def run(self, operations: List[Operation]) -> List[OperationReport]:
        """
        Run operations concurrently and collect one report per operation.

        Reports come back in the same order as ``operations``. An operation
        that raises (for example, for an unknown kind) yields a FAILED
        report instead of aborting the others.
        """
        self.running = True
        start_time = time.monotonic()

        try:
            results = await asyncio.gather(
                *(self.run_operation(op) for op in operations),
                return_exceptions=True,
            )
        finally:
            self.running = False

        reports = []
        for operation, result in zip(operations, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    f"Error running {operation.action} of {operation.kind} "
                    f"{operation.key}: {result}",
                    exc_info=result,
                )
                result = self._failed_report(operation, result)
            reports.append(result)

        succeeded = sum(1 for r in reports if r.ok)
        logger.info(
            f"Ran {len(reports)} operation(s) in "
            f"{time.monotonic() - start_time:.1f}s: {succeeded} succeeded, "
            f"{len(reports) - succeeded} did not"
        )
        return reports

    async def stop(self) -> None:
        """Cancel all in-flight and queued operations."""
        logger.info("Stopping controller")
        self._shutdown_event.set()

    @property
    def stopped(self) -> bool:
        return self._shutdown_event.is_set()

    def _cancelled_report(self, operation: Operation) -> OperationReport:
        report = OperationReport(operation.action, operation.kind, operation.key)
        report.result = ReconciliationResult.cancelled()
        report.phase = OperationPhase.CANCELLED
        report.add_error(
            f"{operation.action} {operation.kind} ({operation.key})",
            "controller stopped before the operation started",
        )
        return report

    def _failed_report(
        self, operation: Operation, error: BaseException
    ) -> OperationReport:
        if not isinstance(error, ReconcileError):
            wrapped = ReconcileError(str(error))
            wrapped.__cause__ = error
            error = wrapped
        report = OperationReport(operation.action, operation.kind, operation.key)
        report.result = ReconciliationResult.failed(error)
        report.phase = OperationPhase.FAILED
        report.add_error(
            f"{operation.action} {operation.kind} ({operation.key})", str(error)
        )
        return report
