"""Pytest configuration and fixtures."""

import pytest

from config import Config, DispatchConfig, TimeoutConfig
from kinds.job_queue import build_job_queue_kind
from waiter import ObservedState

GONE = object()


class ScriptedProber:
    """Async prober replaying a scripted sequence; the last entry repeats.

    Entries may be a status string, an ObservedState, None (absent object)
    or an exception instance to raise.
    """

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    async def __call__(self):
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, BaseException):
            raise item
        if item is None:
            return ObservedState.absent()
        if isinstance(item, ObservedState):
            return item
        return ObservedState(obj={"status": item}, status=item)


class FakeApiError(Exception):
    """Error shaped like a cloud SDK client error, carrying an error code."""

    def __init__(self, code, message=""):
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code


class FakeJobQueueClient:
    """In-memory batch API.

    Each mutation queues the statuses later describe calls will report, one
    per call, so tests control how a queue converges.
    """

    ARN_PREFIX = "arn:aws:batch:us-east-1:123456789012:job-queue/"

    def __init__(self):
        self.queues = {}
        self.transitions = {}
        self.calls = []
        self.failures = {}
        self.after_create = ["CREATING", "VALID"]
        self.after_update = ["UPDATING", "VALID"]
        self.after_delete = ["DELETING", GONE]

    def fail(self, method, *errors):
        """Make the next calls to ``method`` raise ``errors`` in order."""
        self.failures.setdefault(method, []).extend(errors)

    def add_queue(self, name, status="VALID", **attrs):
        detail = {
            "job_queue_name": name,
            "job_queue_arn": self.ARN_PREFIX + name,
            "priority": 1,
            "state": "ENABLED",
            "status": status,
            "compute_environment_order": [],
        }
        detail.update(attrs)
        self.queues[name] = detail
        return detail

    def count(self, method):
        return sum(1 for call in self.calls if call[0] == method)

    def _maybe_fail(self, method):
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _lookup(self, name_or_arn):
        name = name_or_arn
        if name_or_arn.startswith(self.ARN_PREFIX):
            name = name_or_arn[len(self.ARN_PREFIX):]
        return self.queues.get(name)

    async def describe_job_queues(self, job_queues):
        self.calls.append(("describe", job_queues[0]))
        self._maybe_fail("describe")

        queue = self._lookup(job_queues[0])
        if queue is None:
            return []

        steps = self.transitions.get(queue["job_queue_name"])
        if steps:
            status = steps.pop(0) if len(steps) > 1 else steps[0]
            if status is GONE:
                del self.queues[queue["job_queue_name"]]
                return []
            queue["status"] = status
        return [dict(queue)]

    async def create_job_queue(self, **params):
        self.calls.append(("create", params))
        self._maybe_fail("create")

        name = params["job_queue_name"]
        detail = self.add_queue(
            name,
            status="CREATING",
            priority=params.get("priority"),
            state=params.get("state"),
            compute_environment_order=params.get("compute_environment_order", []),
        )
        if params.get("scheduling_policy_arn"):
            detail["scheduling_policy_arn"] = params["scheduling_policy_arn"]
        self.transitions[name] = list(self.after_create)
        return {"job_queue_arn": detail["job_queue_arn"], "job_queue_name": name}

    async def update_job_queue(self, job_queue, **params):
        self.calls.append(("update", dict(params, job_queue=job_queue)))
        self._maybe_fail("update")

        queue = self._lookup(job_queue)
        if queue is None:
            raise FakeApiError("ResourceNotFoundException", job_queue)
        queue.update(params)
        self.transitions[queue["job_queue_name"]] = list(self.after_update)
        return {"job_queue_arn": queue["job_queue_arn"]}

    async def delete_job_queue(self, job_queue):
        self.calls.append(("delete", job_queue))
        self._maybe_fail("delete")

        queue = self._lookup(job_queue)
        if queue is None:
            raise FakeApiError("ResourceNotFoundException", job_queue)
        self.transitions[queue["job_queue_name"]] = list(self.after_delete)
        return {}


@pytest.fixture
def make_prober():
    """Factory for scripted probers."""
    return ScriptedProber


@pytest.fixture
def fake_client():
    return FakeJobQueueClient()


@pytest.fixture
def job_queue_kind(fake_client):
    """JobQueue kind with timings shrunk for tests."""
    return build_job_queue_kind(
        fake_client,
        delay=0,
        min_poll_interval=0,
        poll_interval=0.01,
        disable_delay=0,
        disable_min_poll_interval=0,
    )


@pytest.fixture
def fast_config():
    """Default configuration with short retry backoff."""
    config = Config.default()
    config.timeouts = TimeoutConfig(
        create_timeout=5, update_timeout=5, delete_timeout=5
    )
    config.dispatch = DispatchConfig(
        max_attempts=3,
        retry_base_delay=0.001,
        retry_max_delay=0.01,
        retry_jitter_factor=0,
    )
    return config


@pytest.fixture
def sample_job_queue():
    """Desired attributes for a job queue."""
    return {
        "name": "q1",
        "priority": 1,
        "state": "ENABLED",
        "compute_environments": [
            "arn:aws:batch:us-east-1:123456789012:compute-environment/ce1"
        ],
    }
