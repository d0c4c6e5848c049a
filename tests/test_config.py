"""Unit tests for config.py - Configuration management."""

import os
import pytest
from unittest.mock import patch

import config
from config import (
    APIConfig,
    Config,
    ControllerConfig,
    DatabaseConfig,
    PlatformConfig,
    get_config,
    load_config,
    reset_config,
)


@pytest.fixture(autouse=True)
def clean_config():
    reset_config()
    yield
    reset_config()


class TestDatabaseConfig:
    """Tests for DatabaseConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = DatabaseConfig()
        assert cfg.host == "localhost"
        assert cfg.port == 5432
        assert cfg.database == "kratix"
        assert cfg.user == "kratix"
        assert cfg.password == ""
        assert cfg.min_pool_size == 5
        assert cfg.max_pool_size == 20

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "DB_HOST": "envhost",
            "DB_PORT": "5434",
            "DB_NAME": "envdb",
            "DB_USER": "envuser",
            "DB_PASSWORD": "envpassword",
            "DB_MIN_POOL_SIZE": "3",
            "DB_MAX_POOL_SIZE": "15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = DatabaseConfig.from_env()
            assert cfg.host == "envhost"
            assert cfg.port == 5434
            assert cfg.database == "envdb"
            assert cfg.user == "envuser"
            assert cfg.password == "envpassword"
            assert cfg.min_pool_size == 3
            assert cfg.max_pool_size == 15

    def test_from_env_missing_password_raises(self):
        """Test that missing password raises ValueError."""
        with patch.dict(os.environ, {"DB_PASSWORD": ""}, clear=True):
            with pytest.raises(ValueError, match="DB_PASSWORD"):
                DatabaseConfig.from_env()

    def test_password_not_in_repr(self):
        cfg = DatabaseConfig(password="hunter2")
        assert "hunter2" not in repr(cfg)


class TestControllerConfig:
    """Tests for ControllerConfig class."""

    def test_default_values(self):
        cfg = ControllerConfig()
        assert cfg.max_concurrent_reconciles == 5
        assert cfg.resync_interval == 300
        assert cfg.backoff_base_delay == 1.0
        assert cfg.backoff_max_delay == 300.0
        assert cfg.backoff_jitter_factor == 0.1

    def test_from_env(self):
        env_vars = {
            "MAX_CONCURRENT_RECONCILES": "8",
            "RESYNC_INTERVAL": "60",
            "BACKOFF_BASE_DELAY": "0.5",
            "BACKOFF_MAX_DELAY": "30",
            "BACKOFF_JITTER_FACTOR": "0",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = ControllerConfig.from_env()
        assert cfg.max_concurrent_reconciles == 8
        assert cfg.resync_interval == 60
        assert cfg.backoff_base_delay == 0.5
        assert cfg.backoff_max_delay == 30.0
        assert cfg.backoff_jitter_factor == 0.0


class TestAPIConfig:
    """Tests for APIConfig class."""

    def test_default_values(self):
        cfg = APIConfig()
        assert cfg.host == "0.0.0.0"
        assert cfg.port == 8000
        assert cfg.log_level == "INFO"

    def test_from_env(self):
        env_vars = {"API_HOST": "127.0.0.1", "API_PORT": "9000", "LOG_LEVEL": "DEBUG"}
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = APIConfig.from_env()
        assert cfg.host == "127.0.0.1"
        assert cfg.port == 9000
        assert cfg.log_level == "DEBUG"


class TestPlatformConfig:
    """Tests for PlatformConfig class."""

    def test_default_values(self):
        cfg = PlatformConfig()
        assert cfg.platform_namespace == "kratix-platform-system"
        assert cfg.platform_service_account == "kratix-platform-controller-manager"
        assert cfg.work_namespace == "default"
        assert cfg.pipeline_namespace == "default"
        assert cfg.work_creator_image.startswith("syntasso/kratix-platform-work-creator")
        assert cfg.pipeline_reader_image.startswith("syntasso/kratix-platform-pipeline-reader")

    def test_from_env_overrides(self):
        env_vars = {
            "PLATFORM_NAMESPACE": "platform",
            "WORK_NAMESPACE": "works",
            "PIPELINE_NAMESPACE": "pipelines",
            "WORK_CREATOR_IMAGE": "local/wc:1",
            "PLATFORM_API_URL": "http://localhost:8000",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = PlatformConfig.from_env()
        assert cfg.platform_namespace == "platform"
        assert cfg.work_namespace == "works"
        assert cfg.pipeline_namespace == "pipelines"
        assert cfg.work_creator_image == "local/wc:1"
        assert cfg.platform_api_url == "http://localhost:8000"

    def test_from_env_keeps_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = PlatformConfig.from_env()
        assert cfg == PlatformConfig()


class TestConfig:
    """Tests for the top-level Config and the singleton accessors."""

    def test_default(self):
        cfg = Config.default()
        assert isinstance(cfg.database, DatabaseConfig)
        assert isinstance(cfg.controller, ControllerConfig)
        assert isinstance(cfg.api, APIConfig)
        assert isinstance(cfg.platform, PlatformConfig)

    def test_from_env(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "pw", "API_PORT": "8100"}, clear=True):
            cfg = Config.from_env()
        assert cfg.database.password == "pw"
        assert cfg.api.port == 8100

    def test_load_config_is_singleton(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "pw"}, clear=True):
            first = load_config()
            second = get_config()
        assert first is second

    def test_reset_config(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "pw"}, clear=True):
            load_config()
            reset_config()
            assert config.config is None
