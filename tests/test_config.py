"""
Unit tests for configuration loading and validation.

Tests strict validation, defaults and the settings providers.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from glucose_insight.config.loader import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_TIME_ZONE,
    AnalysisSettings,
    FileSettingsProvider,
    StaticSettingsProvider,
    load_config,
)
from glucose_insight.core.pricing import DEFAULT_PRICING_TABLE
from glucose_insight.storage.db import DEFAULT_DB_PATH


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_path = self._write_config({
            "analysis": {
                "api_key": "sk-test",
                "model": "gpt-4o",
                "max_tokens": 1024,
                "time_zone": "UTC",
            },
            "pricing": {"my-model": {"input": 1.5, "output": 3}},
            "database": "custom.db",
        })
        config = load_config(config_path)

        assert config.analysis.api_key == "sk-test"
        assert config.analysis.model == "gpt-4o"
        assert config.analysis.max_tokens == 1024
        assert config.analysis.time_zone == "UTC"
        assert config.analysis.is_configured
        assert config.database == "custom.db"

        custom = config.pricing.lookup("my-model")
        assert custom.input_per_million == Decimal("1.5")
        assert custom.output_per_million == Decimal("3")
        assert config.pricing.lookup("gpt-4o-mini") is not None

    def test_defaults_applied(self):
        """Missing optional keys fall back to defaults."""
        config = load_config(self._write_config({"analysis": {}}))

        assert config.analysis.api_key is None
        assert not config.analysis.is_configured
        assert config.analysis.model == DEFAULT_MODEL
        assert config.analysis.max_tokens == DEFAULT_MAX_TOKENS
        assert config.analysis.time_zone == DEFAULT_TIME_ZONE
        assert config.pricing is DEFAULT_PRICING_TABLE
        assert config.database == DEFAULT_DB_PATH

    def test_api_key_from_environment(self, monkeypatch):
        """api_key_env is used when api_key is absent."""
        monkeypatch.setenv("GI_TEST_KEY", "sk-env")
        config = load_config(self._write_config({"analysis": {"api_key_env": "GI_TEST_KEY"}}))
        assert config.analysis.api_key == "sk-env"

    def test_explicit_api_key_wins_over_environment(self, monkeypatch):
        """An inline api_key takes precedence."""
        monkeypatch.setenv("GI_TEST_KEY", "sk-env")
        config = load_config(self._write_config({
            "analysis": {"api_key": "sk-file", "api_key_env": "GI_TEST_KEY"},
        }))
        assert config.analysis.api_key == "sk-file"

    def test_missing_file_raises_error(self):
        """Test that missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config("/nonexistent/config.yaml")

    def test_empty_config_raises_error(self):
        """Test that empty config file raises ValueError."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_config(config_path)

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises YAMLError."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("analysis: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_unknown_top_level_keys_raise_error(self):
        """Unknown top-level keys are rejected."""
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(self._write_config({"analysis": {}, "budget": {}}))

    def test_unknown_analysis_keys_raise_error(self):
        """Unknown analysis keys are rejected."""
        with pytest.raises(ValueError, match="Unknown keys in analysis"):
            load_config(self._write_config({"analysis": {"temperature": 0.2}}))

    @pytest.mark.parametrize("max_tokens", [0, -5, "many", True])
    def test_invalid_max_tokens_raises_error(self, max_tokens):
        """max_tokens must be a positive integer."""
        with pytest.raises(ValueError, match="max_tokens"):
            load_config(self._write_config({"analysis": {"max_tokens": max_tokens}}))

    def test_empty_model_raises_error(self):
        """An empty model name is rejected."""
        with pytest.raises(ValueError, match="model"):
            load_config(self._write_config({"analysis": {"model": "  "}}))

    def test_negative_price_raises_error(self):
        """Pricing overrides must not be negative."""
        with pytest.raises(ValueError, match=">= 0"):
            load_config(self._write_config({"pricing": {"m": {"input": -1, "output": 1}}}))

    def test_partial_price_raises_error(self):
        """Both input and output prices are required."""
        with pytest.raises(ValueError, match="Missing required 'output'"):
            load_config(self._write_config({"pricing": {"m": {"input": 1}}}))

    def test_unknown_price_keys_raise_error(self):
        """Unknown keys inside a pricing entry are rejected."""
        with pytest.raises(ValueError, match="Unknown keys in pricing.m"):
            load_config(self._write_config({"pricing": {"m": {"input": 1, "output": 1, "cached": 0.5}}}))

    def test_invalid_database_raises_error(self):
        """database must be a non-empty string."""
        with pytest.raises(ValueError, match="'database'"):
            load_config(self._write_config({"database": ""}))

    def test_non_mapping_config_raises_error(self):
        """A YAML list at the top level is rejected."""
        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(self._write_config(["analysis"]))


class TestAnalysisSettings:
    """Test AnalysisSettings."""

    @pytest.mark.parametrize("key,expected", [(None, False), ("", False), ("  ", False), ("sk-1", True)])
    def test_is_configured(self, key, expected):
        """Only a non-blank key counts as configured."""
        assert AnalysisSettings(api_key=key).is_configured is expected

    def test_repr_hides_key(self):
        """The API key never appears in repr output."""
        assert "sk-secret" not in repr(AnalysisSettings(api_key="sk-secret"))


class TestSettingsProviders:
    """Test settings providers."""

    @pytest.mark.asyncio
    async def test_static_provider(self):
        """The static provider returns its snapshot."""
        settings = AnalysisSettings(api_key="k")
        assert await StaticSettingsProvider(settings).current_analysis_settings() is settings

    @pytest.mark.asyncio
    async def test_file_provider_sees_edits(self, tmp_path):
        """Each call re-reads the file."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"analysis": {"model": "gpt-4o"}}), encoding="utf-8")
        provider = FileSettingsProvider(str(path))

        first = await provider.current_analysis_settings()
        path.write_text(yaml.dump({"analysis": {"model": "gpt-4.1", "api_key": "k"}}), encoding="utf-8")
        second = await provider.current_analysis_settings()

        assert first.model == "gpt-4o"
        assert not first.is_configured
        assert second.model == "gpt-4.1"
        assert second.is_configured
