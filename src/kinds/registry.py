"""
Kind Registry - Explicit mapping from resource kind name to behavior.

Build one registry at process start and pass it to the controller; there is
no module-level instance.
"""

import logging
from typing import Dict, List, Optional

from jsonschema import Draft7Validator, SchemaError

from kinds.base import ResourceKind

logger = logging.getLogger(__name__)


class KindRegistry:
    """Registry of resource kinds keyed by name."""

    def __init__(self, kinds: Optional[List[ResourceKind]] = None):
        self._kinds: Dict[str, ResourceKind] = {}
        for kind in kinds or []:
            self.register(kind)

    def register(self, kind: ResourceKind) -> None:
        """
        Register a resource kind.

        Args:
            kind: The ResourceKind to register

        Raises:
            ValueError: If the kind declares an invalid JSON schema
        """
        if kind.schema is not None:
            try:
                Draft7Validator.check_schema(kind.schema)
            except SchemaError as e:
                raise ValueError(
                    f"Resource kind '{kind.name}' has an invalid schema: {e.message}"
                ) from e

        if kind.name in self._kinds:
            logger.warning(f"Overwriting existing resource kind: {kind.name}")

        self._kinds[kind.name] = kind
        logger.info(f"Registered resource kind: {kind.name}")

    def get(self, name: str) -> ResourceKind:
        """
        Get a registered resource kind.

        Raises:
            ValueError: If the kind name is not registered
        """
        if name not in self._kinds:
            available = ", ".join(self._kinds.keys()) or "none"
            raise ValueError(
                f"Unknown resource kind: {name}. Available kinds: {available}"
            )
        return self._kinds[name]

    def has(self, name: str) -> bool:
        """Check if a resource kind is registered."""
        return name in self._kinds

    def list_kinds(self) -> List[str]:
        """List all registered kind names."""
        return list(self._kinds.keys())
