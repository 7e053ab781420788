"""
Tests for configuration management.
"""

import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from certs_monitor.config import Config, create_example_config, load_config


class TestConfig:
    """Test configuration model."""

    def test_default_config(self):
        """Test default configuration values."""
        config = Config()

        assert config.database_url.startswith("sqlite+aiosqlite://")
        assert config.check_interval == "10m"
        assert config.check_concurrency == 3
        assert config.heartbeat_period == "14d"
        assert config.outbox_batch_size == 10
        assert config.outbox_max_attempts == 15
        assert config.port == 3200
        assert config.bind_address == "127.0.0.1"
        assert config.log_level == "INFO"
        assert config.dry_run is False

    def test_duration_parsing(self):
        """Test duration parsing."""
        config = Config(check_interval="5m", heartbeat_period="7d", probe_timeout="3s")

        assert config.check_interval_seconds == 300
        assert config.heartbeat_period_seconds == 7 * 86400
        assert config.probe_timeout_seconds == 3
        assert config.check_stale_threshold_seconds == 6 * 3600
        assert config.outbox_max_delay_seconds == 20 * 60

    @pytest.mark.parametrize("value", ["invalid", "10", "5 m", "1w", "-3s"])
    def test_invalid_duration(self, value):
        """Test invalid duration format."""
        with pytest.raises(ValueError):
            Config(check_interval=value)

    def test_invalid_log_level(self):
        """Test invalid log level."""
        with pytest.raises(ValueError):
            Config(log_level="INVALID")

    def test_log_level_normalized(self):
        assert Config(log_level="debug").log_level == "DEBUG"

    def test_port_validation(self):
        """Test port validation."""
        with pytest.raises(ValueError):
            Config(port=0)

        with pytest.raises(ValueError):
            Config(port=70000)

    def test_concurrency_validation(self):
        with pytest.raises(ValueError):
            Config(check_concurrency=0)

    def test_website_url(self):
        """Test trailing slashes are stripped from the website URL."""
        config = Config(website_url="https://certs.example/")
        assert config.website_url == "https://certs.example"
        assert config.settings_url("abc123") == "https://certs.example/?token=abc123"

        with pytest.raises(ValueError):
            Config(website_url="certs.example")

    def test_allowed_ips_validation(self):
        """Test invalid entries are dropped and localhost is always allowed."""
        config = Config(allowed_ips=["10.0.0.0/8", "192.168.1.1", "not-an-ip"])
        assert config.allowed_ips == ["10.0.0.0/8", "192.168.1.1", "127.0.0.1", "::1"]


class TestLoadConfig:
    """Test configuration loading."""

    def test_load_from_file(self):
        """Test loading configuration from YAML file."""
        config_data = {
            "database_url": "postgresql+asyncpg://certs:secret@db:5432/certs",
            "check_interval": "1m",
            "outbox_batch_size": 25,
            "smtp_host": "smtp.example.com",
        }

        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            yaml.dump(config_data, f)
            config_path = f.name

        try:
            config = load_config(config_path)

            assert config.database_url == "postgresql+asyncpg://certs:secret@db:5432/certs"
            assert config.check_interval_seconds == 60
            assert config.outbox_batch_size == 25
            assert config.smtp_host == "smtp.example.com"
        finally:
            os.unlink(config_path)

    def test_load_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/config.yaml")

    def test_load_without_file(self):
        config = load_config(None)
        assert isinstance(config, Config)

    def test_environment_overrides(self):
        """Test environment variables take precedence over the file."""
        env = {
            "CERTS_MONITOR_CHECK_CONCURRENCY": "8",
            "CERTS_MONITOR_DRY_RUN": "true",
            "CERTS_MONITOR_SMTP_PASSWORD": "hunter2",
            "CERTS_MONITOR_ALLOWED_IPS": "127.0.0.1, 10.0.0.0/8",
        }

        with patch.dict(os.environ, env):
            config = load_config(None)

        assert config.check_concurrency == 8
        assert config.dry_run is True
        assert config.smtp_password == "hunter2"
        assert config.allowed_ips == ["127.0.0.1", "10.0.0.0/8", "::1"]

    def test_invalid_environment_value_ignored(self):
        with patch.dict(os.environ, {"CERTS_MONITOR_PORT": "not-a-number"}):
            config = load_config(None)

        assert config.port == 3200


class TestExampleConfig:
    """Test example configuration generation."""

    def test_example_config_loads(self, tmp_path):
        output = tmp_path / "config.example.yaml"
        create_example_config(str(output))

        assert output.exists()
        config = load_config(str(output))
        assert config.database_url.startswith("postgresql+asyncpg://")
        assert config.heartbeat_interval == "24h"

    def test_example_config_is_yaml(self, tmp_path):
        output = Path(tmp_path) / "example.yaml"
        create_example_config(str(output))

        data = yaml.safe_load(output.read_text(encoding="utf-8"))
        assert data["outbox_max_attempts"] == 15
