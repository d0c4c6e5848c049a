"""
Configuration module for the Kratix platform control plane.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "kratix"
    user: str = "kratix"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "kratix"),
            user=os.getenv("DB_USER", "kratix"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Reconciliation manager configuration."""

    max_concurrent_reconciles: int = 5
    resync_interval: int = 300  # seconds

    # Exponential backoff for reconciliations that raise
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "300")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class PlatformConfig:
    """Where the platform provisions what it owns, and with which images."""

    platform_namespace: str = "kratix-platform-system"
    platform_service_account: str = "kratix-platform-controller-manager"
    work_namespace: str = "default"
    pipeline_namespace: str = "default"
    work_creator_image: str = "syntasso/kratix-platform-work-creator:dev"
    pipeline_reader_image: str = "syntasso/kratix-platform-pipeline-reader:dev"
    platform_api_url: str = "http://kratix-platform:8000"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        defaults = cls()
        return cls(
            platform_namespace=os.getenv(
                "PLATFORM_NAMESPACE", defaults.platform_namespace
            ),
            platform_service_account=os.getenv(
                "PLATFORM_SERVICE_ACCOUNT", defaults.platform_service_account
            ),
            work_namespace=os.getenv("WORK_NAMESPACE", defaults.work_namespace),
            pipeline_namespace=os.getenv(
                "PIPELINE_NAMESPACE", defaults.pipeline_namespace
            ),
            work_creator_image=os.getenv(
                "WORK_CREATOR_IMAGE", defaults.work_creator_image
            ),
            pipeline_reader_image=os.getenv(
                "PIPELINE_READER_IMAGE", defaults.pipeline_reader_image
            ),
            platform_api_url=os.getenv("PLATFORM_API_URL", defaults.platform_api_url),
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    platform: PlatformConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            platform=PlatformConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            platform=PlatformConfig(),
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
