"""
Unit tests for configuration loading and validation.

Tests strict validation, provider catalog merging and section defaults.
"""

import os
import shutil
import tempfile
from datetime import timedelta

import pytest
import yaml

from image_relay.config.loader import (
    OrchestrationConfig,
    ProviderDescriptor,
    RelaySettings,
    load_settings,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_no_path_returns_defaults(self):
        settings = load_settings(None)
        assert settings.api_url == "http://127.0.0.1:8787"
        assert settings.orchestration.max_attempts == 10
        assert settings.orchestration.exhaustion_reset is None
        assert settings.history.ttl == timedelta(hours=24)
        assert settings.history.max_items == 200

    def test_valid_config_loads_correctly(self):
        config_path = self._write_config({
            "api_url": "https://relay.example.com/",
            "timeout_seconds": 30,
            "orchestration": {
                "max_attempts": 5,
                "transient_retries": 2,
                "transient_backoff_seconds": 0,
                "exhaustion_reset_hours": 24,
            },
            "history": {"db_path": "data/relay.db", "ttl_hours": 12, "max_items": 50},
            "upscale": {"enabled": True, "scale": 2},
            "llm": {"optimize_provider": "deepseek", "optimize_model": "deepseek-chat"},
            "defaults": {"provider": "gitee", "model": "flux-schnell", "steps": 4},
        })

        settings = load_settings(config_path)

        assert settings.api_url == "https://relay.example.com"
        assert settings.timeout_seconds == 30.0
        assert settings.orchestration.max_attempts == 5
        assert settings.orchestration.transient_retries == 2
        assert settings.orchestration.exhaustion_reset == timedelta(hours=24)
        assert settings.history.db_path == "data/relay.db"
        assert settings.history.ttl == timedelta(hours=12)
        assert settings.upscale.enabled is True
        assert settings.upscale.scale == 2
        assert settings.llm.optimize_provider == "deepseek"
        assert settings.llm.translate_model == "openai-fast"
        assert settings.defaults.provider == "gitee"
        assert settings.defaults.width == 1024

    def test_default_provider_catalog(self):
        settings = load_settings(None)
        assert settings.provider("huggingface").requires_auth is False
        assert settings.provider("gitee").requires_auth is True
        assert settings.provider("gitee-llm").credential_pool == "gitee"
        assert settings.provider("deepseek").credential_pool == "deepseek"

    def test_custom_provider_extends_catalog(self):
        config_path = self._write_config({
            "providers": {
                "a1": {"requires_auth": True, "auth_header": "X-A1-Token"},
                "huggingface": {
                    "display_name": "HF",
                    "requires_auth": True,
                    "auth_header": "X-HF-Token",
                },
            }
        })

        settings = load_settings(config_path)

        assert settings.provider("a1") == ProviderDescriptor(
            id="a1", display_name="a1", requires_auth=True, auth_header="X-A1-Token", credential_pool="a1"
        )
        assert settings.provider("huggingface").requires_auth is True
        assert "gitee" in settings.providers

    def test_unknown_provider_lookup(self):
        with pytest.raises(KeyError, match="Unknown provider: nope"):
            RelaySettings().provider("nope")

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_settings(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("orchestration: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_settings(config_path)

    def test_empty_file(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_settings(config_path)

    def test_non_dict_root(self):
        config_path = self._write_config(["a", "b"])
        with pytest.raises(ValueError, match="root must be a dictionary"):
            load_settings(config_path)

    def test_unknown_top_level_key(self):
        config_path = self._write_config({"budget": {"daily": 1}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_settings(config_path)

    def test_unknown_section_key(self):
        config_path = self._write_config({"orchestration": {"max_attempt": 3}})
        with pytest.raises(ValueError, match="Unknown keys in orchestration"):
            load_settings(config_path)

    @pytest.mark.parametrize("section, values, message", [
        ("orchestration", {"max_attempts": "ten"}, "must be an integer"),
        ("orchestration", {"max_attempts": 0}, "max_attempts must be > 0"),
        ("orchestration", {"transient_retries": -1}, "transient_retries must be >= 0"),
        ("orchestration", {"exhaustion_reset_hours": 0}, "exhaustion_reset_hours must be > 0"),
        ("history", {"max_items": 0}, "max_items must be > 0"),
        ("history", {"ttl_hours": "1d"}, "must be a number"),
        ("upscale", {"enabled": "yes"}, "must be a boolean"),
        ("upscale", {"scale": 1}, "scale must be >= 2"),
        ("defaults", {"width": 0}, "width and height must be > 0"),
        ("defaults", {"model": None}, "cannot be null"),
    ])
    def test_invalid_section_values(self, section, values, message):
        config_path = self._write_config({section: values})
        with pytest.raises(ValueError, match=message):
            load_settings(config_path)

    def test_nullable_keys_accept_null(self):
        config_path = self._write_config({
            "orchestration": {"exhaustion_reset_hours": None},
            "llm": {"translate_model": None},
        })
        settings = load_settings(config_path)
        assert settings.orchestration.exhaustion_reset_hours is None
        assert settings.llm.translate_model is None

    def test_reference_to_unknown_provider(self):
        config_path = self._write_config({"upscale": {"provider": "nope"}})
        with pytest.raises(ValueError, match="'upscale.provider' refers to unknown provider 'nope'"):
            load_settings(config_path)

    def test_provider_missing_required_fields(self):
        config_path = self._write_config({"providers": {"a1": {"auth_header": "X"}}})
        with pytest.raises(ValueError, match="Missing required 'requires_auth'"):
            load_settings(config_path)

        config_path = self._write_config({"providers": {"a1": {"requires_auth": False}}})
        with pytest.raises(ValueError, match="Missing required 'auth_header'"):
            load_settings(config_path)


class TestOrchestrationConfig:
    """Test orchestration dataclass validation."""

    def test_defaults(self):
        config = OrchestrationConfig()
        assert config.transient_retries == 1
        assert config.transient_backoff_seconds == 0.5

    def test_negative_backoff(self):
        with pytest.raises(ValueError, match="transient_backoff_seconds must be >= 0"):
            OrchestrationConfig(transient_backoff_seconds=-1)
