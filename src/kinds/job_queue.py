"""
Job Queue resource kind.

Manages a batch job queue through any client object exposing the four
coroutines of JobQueueClient. Queues must be disabled and back in VALID
status before the remote API accepts their deletion.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol

from config import TimeoutConfig, WaiterConfig
from dispatcher import MutationAction, MutationOutcome, MutationRequest
from errors import FatalMutationError, FatalProbeError
from kinds.base import (
    FieldGroup,
    MutationGroup,
    ResourceKind,
    diff_attributes,
)
from waiter import ObservedState, PollPolicy, Prober, WaitSpec

logger = logging.getLogger(__name__)

KIND_NAME = "JobQueue"

# Queue statuses reported by the remote API
STATUS_CREATING = "CREATING"
STATUS_UPDATING = "UPDATING"
STATUS_DELETING = "DELETING"
STATUS_DELETED = "DELETED"
STATUS_VALID = "VALID"
STATUS_INVALID = "INVALID"

# Desired queue states
STATE_ENABLED = "ENABLED"
STATE_DISABLED = "DISABLED"

JOB_QUEUE_GROUPS = [
    FieldGroup("compute_environments", ("compute_environments",)),
    FieldGroup("priority", ("priority",)),
    FieldGroup("state", ("state",)),
    FieldGroup("scheduling_policy_arn", ("scheduling_policy_arn",)),
]

JOB_QUEUE_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {
            "type": "string",
            "pattern": "^[0-9A-Za-z][0-9A-Za-z_-]{0,127}$",
        },
        "compute_environments": {"type": "array", "items": {"type": "string"}},
        "priority": {"type": "integer"},
        "state": {"type": "string", "enum": [STATE_ENABLED, STATE_DISABLED]},
        "scheduling_policy_arn": {"type": ["string", "null"]},
        "tags": {"type": "object", "additionalProperties": {"type": "string"}},
    },
}


class JobQueueClient(Protocol):
    """Subset of the batch API used by this kind. Must be task-safe."""

    async def describe_job_queues(self, job_queues: List[str]) -> List[Dict[str, Any]]:
        ...

    async def create_job_queue(self, **params: Any) -> Dict[str, Any]:
        ...

    async def update_job_queue(self, **params: Any) -> Dict[str, Any]:
        ...

    async def delete_job_queue(self, job_queue: str) -> Dict[str, Any]:
        ...


def expand_compute_environment_order(arns: List[str]) -> List[Dict[str, Any]]:
    return [
        {"order": i, "compute_environment": arn} for i, arn in enumerate(arns)
    ]


def flatten_compute_environment_order(order: List[Dict[str, Any]]) -> List[str]:
    ordered = sorted(order or [], key=lambda item: item.get("order", 0))
    return [item["compute_environment"] for item in ordered]


def job_queue_attributes(detail: Mapping[str, Any]) -> Dict[str, Any]:
    """Map a queue description onto the attributes the diff compares."""
    return {
        "arn": detail.get("job_queue_arn"),
        "name": detail.get("job_queue_name"),
        "compute_environments": flatten_compute_environment_order(
            detail.get("compute_environment_order", [])
        ),
        "priority": detail.get("priority"),
        "scheduling_policy_arn": detail.get("scheduling_policy_arn"),
        "state": detail.get("state"),
    }


async def find_job_queue_by_name(
    client: JobQueueClient, name: str
) -> Optional[Dict[str, Any]]:
    """Describe one queue by name or ARN; None if it does not exist."""
    queues = await client.describe_job_queues(job_queues=[name])

    if not queues:
        return None
    if len(queues) > 1:
        raise FatalProbeError(f"Multiple job queues with name {name}")
    return queues[0]


def diff_job_queue(
    desired: Mapping[str, Any], observed: Mapping[str, Any]
) -> List[MutationGroup]:
    """Diff with the queue's one extra rule: a scheduling policy cannot be removed."""
    if observed.get("scheduling_policy_arn") and not desired.get(
        "scheduling_policy_arn", observed.get("scheduling_policy_arn")
    ):
        raise FatalMutationError("cannot remove the fair share scheduling policy")
    return diff_attributes(desired, observed, JOB_QUEUE_GROUPS, {"name"})


def _update_params(changes: Mapping[str, Any]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    if "compute_environments" in changes:
        params["compute_environment_order"] = expand_compute_environment_order(
            list(changes["compute_environments"])
        )
    for name in ("priority", "state", "scheduling_policy_arn"):
        if name in changes:
            params[name] = changes[name]
    return params


def build_job_queue_kind(
    client: JobQueueClient,
    delay: float = 30.0,
    min_poll_interval: float = 10.0,
    poll_interval: float = 10.0,
    disable_delay: float = 10.0,
    disable_min_poll_interval: float = 3.0,
) -> ResourceKind:
    """
    Build the JobQueue resource kind around a batch API client.

    The timing defaults match what the remote API needs between a
    mutation and the status reflecting it.
    """

    def probe_factory(key: str) -> Prober:
        async def probe() -> ObservedState:
            detail = await find_job_queue_by_name(client, key)
            if detail is None:
                return ObservedState.absent(STATUS_DELETED)
            return ObservedState(obj=detail, status=detail.get("status"))

        return probe

    async def create(request: MutationRequest) -> MutationOutcome:
        attrs = request.attributes
        params: Dict[str, Any] = {
            "job_queue_name": attrs.get("name", request.key),
            "priority": attrs.get("priority"),
            "state": attrs.get("state", STATE_ENABLED),
            "compute_environment_order": expand_compute_environment_order(
                list(attrs.get("compute_environments", []))
            ),
        }
        if attrs.get("scheduling_policy_arn"):
            params["scheduling_policy_arn"] = attrs["scheduling_policy_arn"]
        if attrs.get("tags"):
            params["tags"] = dict(attrs["tags"])

        response = await client.create_job_queue(**params)
        return MutationOutcome(
            identifier=response.get("job_queue_arn"), response=response
        )

    async def update(request: MutationRequest) -> Dict[str, Any]:
        return await client.update_job_queue(
            job_queue=request.key, **_update_params(request.attributes)
        )

    async def disable(request: MutationRequest) -> Dict[str, Any]:
        return await client.update_job_queue(
            job_queue=request.key, state=request.attributes["state"]
        )

    async def delete(request: MutationRequest) -> Dict[str, Any]:
        return await client.delete_job_queue(job_queue=request.key)

    def wait_spec_factory(
        action: MutationAction,
        timeouts: TimeoutConfig,
        waiter: Optional[WaiterConfig] = None,
    ) -> WaitSpec:
        # Only the transient error ceiling comes from the configured waiter
        timeout = timeouts.for_operation(action.value)
        max_transient_errors = waiter.max_transient_errors if waiter else None
        if action is MutationAction.CREATE:
            return WaitSpec(
                pending={STATUS_CREATING, STATUS_UPDATING},
                target={STATUS_VALID},
                timeout=timeout,
                delay=delay,
                min_poll_interval=min_poll_interval,
                poll_interval=poll_interval,
                poll_policy=PollPolicy.BACKOFF,
                max_transient_errors=max_transient_errors,
            )
        if action is MutationAction.UPDATE:
            return WaitSpec(
                pending={STATUS_UPDATING},
                target={STATUS_VALID},
                timeout=timeout,
                delay=delay,
                min_poll_interval=min_poll_interval,
                poll_interval=poll_interval,
                poll_policy=PollPolicy.BACKOFF,
                max_transient_errors=max_transient_errors,
            )
        if action is MutationAction.DISABLE:
            return WaitSpec(
                pending={STATUS_UPDATING},
                target={STATUS_VALID},
                timeout=timeout,
                delay=disable_delay,
                min_poll_interval=disable_min_poll_interval,
                poll_interval=poll_interval,
                poll_policy=PollPolicy.BACKOFF,
                max_transient_errors=max_transient_errors,
            )
        return WaitSpec(
            pending={STATE_DISABLED, STATUS_DELETING},
            target={STATUS_DELETED},
            timeout=timeout,
            delay=delay,
            min_poll_interval=min_poll_interval,
            poll_interval=poll_interval,
            poll_policy=PollPolicy.BACKOFF,
            deletion_aware=True,
            max_transient_errors=max_transient_errors,
        )

    return ResourceKind(
        name=KIND_NAME,
        probe_factory=probe_factory,
        create=create,
        update=update,
        delete=delete,
        disable=disable,
        disable_attributes={"state": STATE_DISABLED},
        wait_spec_factory=wait_spec_factory,
        groups=list(JOB_QUEUE_GROUPS),
        immutable_fields=frozenset({"name"}),
        diff=diff_job_queue,
        schema=JOB_QUEUE_SCHEMA,
    )
