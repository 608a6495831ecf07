"""
Resource Kind - Per-kind behavior consumed by the reconciler.

A ResourceKind bundles everything the reconciler needs to manage one type
of remote resource: how to probe it, how to mutate it, which statuses to
wait for after each mutation, and how to diff desired against observed
attributes into ordered mutation groups.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from config import TimeoutConfig, WaiterConfig
from dispatcher import MutationAction, MutationDispatcher, Mutator
from errors import ErrorClass, FatalMutationError, classify_error
from waiter import PollPolicy, Prober, WaitSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldGroup:
    """Attributes the remote API updates together in one call."""

    name: str
    fields: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, "fields", tuple(self.fields))


@dataclass(frozen=True)
class MutationGroup:
    """Changes belonging to one FieldGroup, ready to dispatch."""

    name: str
    changes: Mapping[str, Any]

    def __post_init__(self):
        object.__setattr__(self, "changes", MappingProxyType(dict(self.changes)))


DiffFunction = Callable[[Mapping[str, Any], Mapping[str, Any]], List[MutationGroup]]
WaitSpecFactory = Callable[
    [MutationAction, TimeoutConfig, Optional[WaiterConfig]], WaitSpec
]


def _comparable(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_comparable(item) for item in value]
    if isinstance(value, Mapping):
        return {key: _comparable(item) for key, item in value.items()}
    return value


def _differs(desired: Any, observed: Any) -> bool:
    return _comparable(desired) != _comparable(observed)


def diff_attributes(
    desired: Mapping[str, Any],
    observed: Mapping[str, Any],
    groups: Sequence[FieldGroup],
    immutable_fields: Iterable[str] = (),
) -> List[MutationGroup]:
    """
    Compute the mutation groups needed to move observed towards desired.

    Only fields present in ``desired`` are compared. Groups come back in
    the order they are declared in ``groups``.

    Raises:
        FatalMutationError: An immutable field differs; the resource must
            be replaced rather than updated.
    """
    for name in sorted(immutable_fields):
        if name in desired and _differs(desired[name], observed.get(name)):
            raise FatalMutationError(
                f"cannot change '{name}' from {observed.get(name)!r} to "
                f"{desired[name]!r}: requires replacement"
            )

    mutations = []
    for group in groups:
        changes = {
            name: desired[name]
            for name in group.fields
            if name in desired and _differs(desired[name], observed.get(name))
        }
        if changes:
            mutations.append(MutationGroup(group.name, changes))
    return mutations


def make_wait_spec_factory(
    statuses: Mapping[MutationAction, Tuple[Iterable[str], Iterable[str]]],
    waiter: Optional[WaiterConfig] = None,
    deletion_aware: Iterable[MutationAction] = (MutationAction.DELETE,),
) -> WaitSpecFactory:
    """
    Build a WaitSpecFactory from a status table and default poll timing.

    Args:
        statuses: (pending, target) statuses for each mutation action.
        waiter: Poll timing fixed for this kind. When omitted, the timing
            passed to the factory is used, falling back to WaiterConfig().
        deletion_aware: Actions for which absence counts as the target.
    """
    fixed_waiter = waiter
    deletion_aware = frozenset(deletion_aware)

    def factory(
        action: MutationAction,
        timeouts: TimeoutConfig,
        waiter: Optional[WaiterConfig] = None,
    ) -> WaitSpec:
        waiter = fixed_waiter or waiter or WaiterConfig()
        if action not in statuses:
            raise ValueError(f"No wait statuses declared for {action.value}")
        pending, target = statuses[action]
        return WaitSpec(
            pending=frozenset(pending),
            target=frozenset(target),
            timeout=timeouts.for_operation(action.value),
            delay=waiter.delay,
            poll_interval=waiter.poll_interval,
            min_poll_interval=waiter.min_poll_interval,
            poll_policy=PollPolicy(waiter.poll_policy),
            deletion_aware=action in deletion_aware,
            max_transient_errors=waiter.max_transient_errors,
        )

    return factory


@dataclass
class ResourceKind:
    """
    Behavior for one resource kind.

    Attributes:
        name: Unique kind name used as the registry key.
        probe_factory: Builds a status prober for a resource key.
        create, update, delete: Mutation callables.
        wait_spec_factory: WaitSpec for each mutation action.
        disable: Optional mutation run before delete for kinds that must
            leave an active state first.
        disable_attributes: Attributes sent with the disable mutation.
        groups: Mutable field groups in the order updates are issued.
        immutable_fields: Fields whose change requires replacement.
        diff: Custom diff; defaults to diff_attributes over ``groups``.
        classify: Error classifier for probes and mutations.
        schema: Optional JSON schema for create/update attributes.
    """

    name: str
    probe_factory: Callable[[str], Prober]
    create: Mutator
    update: Mutator
    delete: Mutator
    wait_spec_factory: WaitSpecFactory
    disable: Optional[Mutator] = None
    disable_attributes: Dict[str, Any] = field(default_factory=dict)
    groups: List[FieldGroup] = field(default_factory=list)
    immutable_fields: FrozenSet[str] = frozenset()
    diff: Optional[DiffFunction] = None
    classify: Callable[[BaseException], ErrorClass] = classify_error
    schema: Optional[Dict[str, Any]] = None

    @property
    def requires_disable(self) -> bool:
        return self.disable is not None

    def wait_spec(
        self,
        action: MutationAction,
        timeouts: TimeoutConfig,
        waiter: Optional[WaiterConfig] = None,
    ) -> WaitSpec:
        return self.wait_spec_factory(action, timeouts, waiter)

    def compute_diff(
        self, desired: Mapping[str, Any], observed: Mapping[str, Any]
    ) -> List[MutationGroup]:
        if self.diff is not None:
            return list(self.diff(desired, observed))
        return diff_attributes(desired, observed, self.groups, self.immutable_fields)

    def dispatcher(self, action: MutationAction) -> MutationDispatcher:
        """Dispatcher wired to the mutation callable for ``action``."""
        mutate = {
            MutationAction.CREATE: self.create,
            MutationAction.UPDATE: self.update,
            MutationAction.DISABLE: self.disable,
            MutationAction.DELETE: self.delete,
        }[action]
        if mutate is None:
            raise ValueError(f"Resource kind {self.name} has no {action.value} step")
        return MutationDispatcher(mutate, classify=self.classify, schema=self.schema)
