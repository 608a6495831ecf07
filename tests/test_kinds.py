"""Unit tests for the kinds package - diffing, wait specs and the registry."""

import logging
from unittest.mock import AsyncMock

import pytest

from config import TimeoutConfig, WaiterConfig
from dispatcher import MutationAction, MutationDispatcher
from errors import FatalMutationError
from kinds import (
    FieldGroup,
    KindRegistry,
    MutationGroup,
    ResourceKind,
    diff_attributes,
    make_wait_spec_factory,
)
from waiter import PollPolicy

GROUPS = [
    FieldGroup("size", ("min_size", "max_size")),
    FieldGroup("labels", ("labels",)),
]

STATUSES = {
    MutationAction.CREATE: ({"CREATING"}, {"ACTIVE"}),
    MutationAction.UPDATE: ({"UPDATING"}, {"ACTIVE"}),
    MutationAction.DELETE: ({"DELETING"}, {"DELETED"}),
}


def make_kind(name="NodePool", **overrides):
    params = {
        "name": name,
        "probe_factory": lambda key: AsyncMock(),
        "create": AsyncMock(),
        "update": AsyncMock(),
        "delete": AsyncMock(),
        "wait_spec_factory": make_wait_spec_factory(STATUSES),
        "groups": GROUPS,
        "immutable_fields": frozenset({"name"}),
    }
    params.update(overrides)
    return ResourceKind(**params)


# ==================== diff_attributes tests ====================


class TestDiffAttributes:
    """Tests for grouping attribute changes."""

    def test_no_changes(self):
        observed = {"min_size": 1, "max_size": 3, "labels": {"a": "b"}}
        assert diff_attributes(dict(observed), observed, GROUPS) == []

    def test_groups_follow_declared_order(self):
        desired = {"labels": {"team": "x"}, "max_size": 5}
        observed = {"min_size": 1, "max_size": 3, "labels": {}}

        groups = diff_attributes(desired, observed, GROUPS)

        assert [g.name for g in groups] == ["size", "labels"]
        assert dict(groups[0].changes) == {"max_size": 5}
        assert dict(groups[1].changes) == {"labels": {"team": "x"}}

    def test_only_desired_fields_compared(self):
        observed = {"min_size": 1, "max_size": 3}
        assert diff_attributes({"min_size": 1}, observed, GROUPS) == []

    def test_fields_outside_groups_ignored(self):
        assert diff_attributes({"color": "red"}, {}, GROUPS) == []

    def test_immutable_change_requires_replacement(self):
        with pytest.raises(FatalMutationError, match="requires replacement"):
            diff_attributes({"name": "new"}, {"name": "old"}, GROUPS, {"name"})

    def test_immutable_unchanged_is_fine(self):
        groups = diff_attributes(
            {"name": "same", "min_size": 2},
            {"name": "same", "min_size": 1},
            GROUPS,
            {"name"},
        )
        assert [g.name for g in groups] == ["size"]

    def test_tuple_and_list_compare_equal(self):
        desired = {"labels": ("a", ("b", "c"))}
        observed = {"labels": ["a", ["b", "c"]]}
        assert diff_attributes(desired, observed, GROUPS) == []

    def test_nested_sequences_in_mappings_compare_equal(self):
        desired = {"labels": {"zones": ("a", "b")}}
        observed = {"labels": {"zones": ["a", "b"]}}
        assert diff_attributes(desired, observed, GROUPS) == []

    def test_sequence_order_still_matters(self):
        groups = diff_attributes({"labels": ("b", "a")}, {"labels": ["a", "b"]}, GROUPS)
        assert dict(groups[0].changes) == {"labels": ("b", "a")}

    def test_immutable_tuple_matching_list_is_unchanged(self):
        groups = diff_attributes(
            {"name": ("x", "y"), "min_size": 2},
            {"name": ["x", "y"], "min_size": 1},
            GROUPS,
            {"name"},
        )
        assert [g.name for g in groups] == ["size"]

    def test_mutation_group_is_read_only(self):
        group = MutationGroup("size", {"min_size": 1})
        with pytest.raises(TypeError):
            group.changes["min_size"] = 2


# ==================== make_wait_spec_factory tests ====================


class TestWaitSpecFactory:
    def test_uses_operation_timeout_and_waiter_timing(self):
        waiter = WaiterConfig(
            delay=1, poll_interval=4, min_poll_interval=2, poll_policy="backoff"
        )
        factory = make_wait_spec_factory(STATUSES, waiter)
        timeouts = TimeoutConfig(create_timeout=60, update_timeout=30)

        spec = factory(MutationAction.UPDATE, timeouts)

        assert spec.pending == {"UPDATING"}
        assert spec.target == {"ACTIVE"}
        assert spec.timeout == 30
        assert spec.delay == 1
        assert spec.poll_interval == 4
        assert spec.min_poll_interval == 2
        assert spec.poll_policy is PollPolicy.BACKOFF
        assert spec.deletion_aware is False

    def test_delete_is_deletion_aware(self):
        factory = make_wait_spec_factory(STATUSES)
        spec = factory(MutationAction.DELETE, TimeoutConfig(delete_timeout=90))
        assert spec.deletion_aware is True
        assert spec.timeout == 90

    def test_waiter_passed_at_call_time_used(self):
        factory = make_wait_spec_factory(STATUSES)
        waiter = WaiterConfig(delay=3, poll_interval=7, max_transient_errors=2)

        spec = factory(MutationAction.CREATE, TimeoutConfig(), waiter)

        assert spec.delay == 3
        assert spec.poll_interval == 7
        assert spec.max_transient_errors == 2

    def test_fixed_waiter_wins_over_call_time_waiter(self):
        factory = make_wait_spec_factory(STATUSES, WaiterConfig(delay=1))

        spec = factory(
            MutationAction.CREATE, TimeoutConfig(), WaiterConfig(delay=9)
        )

        assert spec.delay == 1

    def test_defaults_without_any_waiter(self):
        spec = make_wait_spec_factory(STATUSES)(MutationAction.CREATE, TimeoutConfig())
        assert spec.delay == WaiterConfig().delay

    def test_undeclared_action(self):
        factory = make_wait_spec_factory(STATUSES)
        with pytest.raises(ValueError, match="disable"):
            factory(MutationAction.DISABLE, TimeoutConfig())


# ==================== ResourceKind tests ====================


class TestResourceKind:
    def test_default_diff(self):
        kind = make_kind()
        groups = kind.compute_diff({"min_size": 2}, {"min_size": 1})
        assert [g.name for g in groups] == ["size"]

    def test_custom_diff(self):
        custom = [MutationGroup("everything", {"x": 1})]
        kind = make_kind(diff=lambda desired, observed: custom)
        assert kind.compute_diff({}, {}) == custom

    def test_requires_disable(self):
        assert make_kind().requires_disable is False
        assert make_kind(disable=AsyncMock()).requires_disable is True

    def test_dispatcher_wires_mutation(self):
        kind = make_kind(schema={"type": "object"})
        dispatcher = kind.dispatcher(MutationAction.DELETE)
        assert isinstance(dispatcher, MutationDispatcher)
        assert dispatcher.mutate is kind.delete
        assert dispatcher.schema == {"type": "object"}

    def test_dispatcher_missing_disable(self):
        with pytest.raises(ValueError, match="no disable step"):
            make_kind().dispatcher(MutationAction.DISABLE)


# ==================== KindRegistry tests ====================


class TestKindRegistry:
    """Tests for the explicit kind registry."""

    def test_register_and_get(self):
        registry = KindRegistry()
        kind = make_kind()
        registry.register(kind)

        assert registry.get("NodePool") is kind
        assert registry.has("NodePool")
        assert registry.list_kinds() == ["NodePool"]

    def test_init_with_kinds(self):
        registry = KindRegistry([make_kind("A"), make_kind("B")])
        assert registry.list_kinds() == ["A", "B"]

    def test_unknown_kind(self):
        registry = KindRegistry([make_kind("A")])
        with pytest.raises(ValueError, match="Unknown resource kind: Z"):
            registry.get("Z")

    def test_unknown_kind_lists_available(self):
        registry = KindRegistry([make_kind("A"), make_kind("B")])
        with pytest.raises(ValueError, match="Available kinds: A, B"):
            registry.get("Z")

    def test_empty_registry(self):
        registry = KindRegistry()
        assert registry.has("A") is False
        with pytest.raises(ValueError, match="none"):
            registry.get("A")

    def test_overwrite_warns(self, caplog):
        registry = KindRegistry([make_kind("A")])
        replacement = make_kind("A")

        with caplog.at_level(logging.WARNING):
            registry.register(replacement)

        assert registry.get("A") is replacement
        assert "Overwriting existing resource kind: A" in caplog.text

    def test_invalid_schema_rejected(self):
        registry = KindRegistry()
        with pytest.raises(ValueError, match="NodePool' has an invalid schema"):
            registry.register(make_kind(schema={"type": "not-a-type"}))
        assert registry.has("NodePool") is False

    def test_valid_schema_accepted(self):
        registry = KindRegistry()
        schema = {
            "type": "object",
            "properties": {"min_size": {"type": "integer", "minimum": 0}},
            "required": ["min_size"],
        }
        registry.register(make_kind(schema=schema))
        assert registry.has("NodePool")

    def test_invalid_nested_schema_rejected(self):
        registry = KindRegistry()
        schema = {"type": "object", "properties": {"labels": {"type": 5}}}
        with pytest.raises(ValueError, match="invalid schema"):
            registry.register(make_kind(schema=schema))

    def test_registries_are_independent(self):
        first = KindRegistry([make_kind("A")])
        second = KindRegistry()
        assert first.has("A")
        assert not second.has("A")
