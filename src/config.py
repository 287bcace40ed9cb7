"""
Configuration module for the reconciliation engine.

Loads configuration from environment variables. Provider-specific settings
come from the providers themselves (``Provider.load_config_from_env``),
overridden by ``PROVIDER_CONFIGS`` and the document's ``providers`` block.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATE_BACKENDS = ("local", "memory", "postgres")


@dataclass
class StateConfig:
    """State store backend selection."""

    backend: str = "local"
    path: str = "converge.state.json"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("CONVERGE_STATE_BACKEND", "local").lower()
        if backend not in STATE_BACKENDS:
            raise ValueError(
                f"CONVERGE_STATE_BACKEND must be one of {', '.join(STATE_BACKENDS)}, "
                f"got '{backend}'"
            )
        return cls(
            backend=backend,
            path=os.getenv("CONVERGE_STATE_PATH", "converge.state.json"),
        )


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration (postgres state backend)."""

    host: str = "localhost"
    port: int = 5432
    database: str = "converge"
    user: str = "converge"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 1
    max_pool_size: int = 10

    @classmethod
    def from_env(cls, require_password: bool = False):
        """
        Load from environment variables.

        Args:
            require_password: Fail if DB_PASSWORD is unset (postgres backend)
        """
        password = os.getenv("DB_PASSWORD", "")
        if require_password and not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set when "
                "CONVERGE_STATE_BACKEND=postgres. Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "converge"),
            user=os.getenv("DB_USER", "converge"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class ExecutorConfig:
    """Plan execution configuration."""

    parallelism: int = 10
    max_attempts: int = 3
    entry_timeout: Optional[float] = 300.0  # seconds per provider call
    run_timeout: Optional[float] = None  # seconds for the whole run

    # Exponential backoff configuration for retryable provider errors
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 30.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    def __post_init__(self):
        if self.parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            parallelism=int(os.getenv("CONVERGE_PARALLELISM", "10")),
            max_attempts=int(os.getenv("CONVERGE_MAX_ATTEMPTS", "3")),
            entry_timeout=_optional_float(os.getenv("CONVERGE_ENTRY_TIMEOUT", "300")),
            run_timeout=_optional_float(os.getenv("CONVERGE_RUN_TIMEOUT", "")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "30")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""

    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(log_level=os.getenv("LOG_LEVEL", "INFO").upper())


@dataclass
class ProviderConfig:
    """Provider system configuration."""

    # List of enabled provider names (empty = use all registered providers)
    enabled_providers: List[str] = field(default_factory=list)

    # Provider-specific configurations keyed by provider name
    provider_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_str = os.getenv("ENABLED_PROVIDERS", "")
        enabled = [p.strip() for p in enabled_str.split(",") if p.strip()]

        # Load provider configs from JSON environment variable
        provider_configs = {}
        if os.getenv("PROVIDER_CONFIGS"):
            try:
                provider_configs = json.loads(os.getenv("PROVIDER_CONFIGS"))
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid PROVIDER_CONFIGS: {e}")

        return cls(enabled_providers=enabled, provider_configs=provider_configs)

    def get_provider_config(self, provider_name: str) -> Dict[str, Any]:
        """Get configuration for a specific provider."""
        return self.provider_configs.get(provider_name, {})


@dataclass
class Config:
    """Main configuration object."""

    state: StateConfig
    database: DatabaseConfig
    executor: ExecutorConfig
    logging: LoggingConfig
    providers: ProviderConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        state = StateConfig.from_env()
        return cls(
            state=state,
            database=DatabaseConfig.from_env(
                require_password=state.backend == "postgres"
            ),
            executor=ExecutorConfig.from_env(),
            logging=LoggingConfig.from_env(),
            providers=ProviderConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            state=StateConfig(),
            database=DatabaseConfig(),
            executor=ExecutorConfig(),
            logging=LoggingConfig(),
            providers=ProviderConfig(),
        )


def _optional_float(value: str) -> Optional[float]:
    """Parse a timeout; empty or non-positive means no timeout."""
    if not value:
        return None
    parsed = float(value)
    return parsed if parsed > 0 else None


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
