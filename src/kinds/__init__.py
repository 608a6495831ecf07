"""
Resource kinds package.

A resource kind bundles the probe, mutations, wait specs and diff for one
type of remote resource. Kinds are collected in an explicit KindRegistry.
"""

from kinds.base import (
    FieldGroup,
    MutationGroup,
    ResourceKind,
    diff_attributes,
    make_wait_spec_factory,
)
from kinds.registry import KindRegistry

__all__ = [
    "FieldGroup",
    "MutationGroup",
    "ResourceKind",
    "diff_attributes",
    "make_wait_spec_factory",
    "KindRegistry",
]
