"""
Configuration module for the convergence controller.

Loads configuration from environment variables. Timeouts and poll timing
are defaults; resource kinds may override them per kind via KIND_CONFIGS.
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class TimeoutConfig:
    """Per-operation time budgets in seconds."""

    create_timeout: float = 600.0
    update_timeout: float = 600.0
    delete_timeout: float = 600.0

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            create_timeout=float(os.getenv("CREATE_TIMEOUT", "600")),
            update_timeout=float(os.getenv("UPDATE_TIMEOUT", "600")),
            delete_timeout=float(os.getenv("DELETE_TIMEOUT", "600")),
        )

    def for_operation(self, operation: str) -> float:
        """
        Timeout for an operation name.

        Disabling a resource happens as part of deletion, so it shares the
        delete budget.
        """
        if operation == "create":
            return self.create_timeout
        if operation == "update":
            return self.update_timeout
        if operation in ("disable", "delete"):
            return self.delete_timeout
        raise ValueError(f"Unknown operation: {operation}")

    def with_overrides(self, overrides: Dict[str, Any]) -> "TimeoutConfig":
        """Return a copy with any matching keys from overrides applied."""
        names = {f.name for f in dataclasses.fields(self)}
        changes = {k: float(v) for k, v in overrides.items() if k in names}
        return dataclasses.replace(self, **changes)


@dataclass
class WaiterConfig:
    """Default poll timing for convergence waits."""

    delay: float = 30.0
    poll_interval: float = 10.0
    min_poll_interval: float = 10.0
    poll_policy: str = "fixed"
    max_transient_errors: Optional[int] = None

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        max_transient = os.getenv("WAIT_MAX_TRANSIENT_ERRORS")
        return cls(
            delay=float(os.getenv("WAIT_DELAY", "30")),
            poll_interval=float(os.getenv("WAIT_POLL_INTERVAL", "10")),
            min_poll_interval=float(os.getenv("WAIT_MIN_POLL_INTERVAL", "10")),
            poll_policy=os.getenv("WAIT_POLL_POLICY", "fixed").lower(),
            max_transient_errors=int(max_transient) if max_transient else None,
        )


@dataclass
class DispatchConfig:
    """Retry ceiling and backoff for transient mutation failures."""

    max_attempts: int = 3
    retry_base_delay: float = 1.0  # seconds
    retry_max_delay: float = 30.0  # seconds
    retry_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_attempts=int(os.getenv("DISPATCH_MAX_ATTEMPTS", "3")),
            retry_base_delay=float(os.getenv("DISPATCH_RETRY_BASE_DELAY", "1")),
            retry_max_delay=float(os.getenv("DISPATCH_RETRY_MAX_DELAY", "30")),
            retry_jitter_factor=float(
                os.getenv("DISPATCH_RETRY_JITTER_FACTOR", "0.1")
            ),
        )


@dataclass
class ControllerConfig:
    """Concurrency and logging for the controller."""

    max_concurrent_reconciles: int = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class KindConfig:
    """Per-kind configuration overrides keyed by resource kind name."""

    kind_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        kind_configs = {}
        if os.getenv("KIND_CONFIGS"):
            try:
                kind_configs = json.loads(os.getenv("KIND_CONFIGS"))
            except json.JSONDecodeError:
                logger.warning("Ignoring KIND_CONFIGS: not valid JSON")

        return cls(kind_configs=kind_configs)

    def get_kind_config(self, kind_name: str) -> Dict[str, Any]:
        """Get configuration overrides for a specific resource kind."""
        return self.kind_configs.get(kind_name, {})


@dataclass
class Config:
    """Main configuration object."""

    timeouts: TimeoutConfig
    waiter: WaiterConfig
    dispatch: DispatchConfig
    controller: ControllerConfig
    kinds: KindConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            timeouts=TimeoutConfig.from_env(),
            waiter=WaiterConfig.from_env(),
            dispatch=DispatchConfig.from_env(),
            controller=ControllerConfig.from_env(),
            kinds=KindConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            timeouts=TimeoutConfig(),
            waiter=WaiterConfig(),
            dispatch=DispatchConfig(),
            controller=ControllerConfig(),
            kinds=KindConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
