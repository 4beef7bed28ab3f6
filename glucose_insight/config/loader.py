"""
Configuration management and loading.

Handles analysis settings, pricing overrides and the database location.
"""

import asyncio
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from glucose_insight.core.pricing import DEFAULT_PRICING_TABLE, ModelPricing, PricingTable
from glucose_insight.storage.db import DEFAULT_DB_PATH

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIME_ZONE = "Europe/Warsaw"


@dataclass(frozen=True)
class AnalysisSettings:
    """Read-only snapshot of the settings the analyzer needs."""
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    max_tokens: int = DEFAULT_MAX_TOKENS
    time_zone: str = DEFAULT_TIME_ZONE

    def __post_init__(self):
        """Validate model and token budget."""
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")

    @property
    def is_configured(self) -> bool:
        """True when an API key is present."""
        return bool(self.api_key and self.api_key.strip())

    def __repr__(self) -> str:
        # Keep the key out of logs and tracebacks
        key = "***" if self.is_configured else None
        return (
            f"AnalysisSettings(api_key={key!r}, model={self.model!r}, "
            f"max_tokens={self.max_tokens!r}, time_zone={self.time_zone!r})"
        )


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)
    pricing: PricingTable = DEFAULT_PRICING_TABLE
    database: str = DEFAULT_DB_PATH


def load_config(path: str) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys
    are rejected rather than ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'analysis', 'pricing', 'database'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    analysis_data = raw_config.get('analysis', {}) or {}
    if not isinstance(analysis_data, dict):
        raise ValueError("'analysis' must be a dictionary")
    analysis = _parse_analysis_settings(analysis_data)

    pricing_data = raw_config.get('pricing', {}) or {}
    if not isinstance(pricing_data, dict):
        raise ValueError("'pricing' must be a dictionary")
    overrides = {
        str(model): _parse_model_pricing(data, f"pricing.{model}")
        for model, data in pricing_data.items()
    }
    pricing = DEFAULT_PRICING_TABLE.merged(overrides) if overrides else DEFAULT_PRICING_TABLE

    database = raw_config.get('database', DEFAULT_DB_PATH)
    if not isinstance(database, str) or not database.strip():
        raise ValueError("'database' must be a non-empty string")

    return AppConfig(analysis=analysis, pricing=pricing, database=database)


def _parse_analysis_settings(data: Dict[str, Any]) -> AnalysisSettings:
    """Parse and validate the analysis section.

    Args:
        data: Analysis configuration data

    Returns:
        Validated AnalysisSettings

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'api_key', 'api_key_env', 'model', 'max_tokens', 'time_zone'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in analysis: {unknown_keys}")

    api_key = data.get('api_key')
    if api_key is not None and not isinstance(api_key, str):
        raise ValueError("'api_key' in analysis must be a string")

    # Fall back to the environment so keys can stay out of the file
    api_key_env = data.get('api_key_env')
    if not api_key and api_key_env:
        if not isinstance(api_key_env, str):
            raise ValueError("'api_key_env' in analysis must be a string")
        api_key = os.environ.get(api_key_env)

    model = data.get('model', DEFAULT_MODEL)
    if not isinstance(model, str):
        raise ValueError("'model' in analysis must be a string")

    max_tokens = data.get('max_tokens', DEFAULT_MAX_TOKENS)
    if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0:
        raise ValueError("'max_tokens' in analysis must be a positive integer")

    time_zone = data.get('time_zone', DEFAULT_TIME_ZONE)
    if not isinstance(time_zone, str) or not time_zone.strip():
        raise ValueError("'time_zone' in analysis must be a non-empty string")

    return AnalysisSettings(
        api_key=api_key,
        model=model,
        max_tokens=max_tokens,
        time_zone=time_zone,
    )


def _parse_model_pricing(data: Any, path: str) -> ModelPricing:
    """Parse one pricing override of the form ``{input: x, output: y}``."""
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {'input', 'output'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    prices = {}
    for key in ('input', 'output'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        raw = data[key]
        if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
            raise ValueError(f"'{key}' in {path} must be a number")
        try:
            value = Decimal(str(raw))
        except InvalidOperation:
            raise ValueError(f"'{key}' in {path} must be a number")
        if value < 0:
            raise ValueError(f"'{key}' in {path} must be >= 0")
        prices[key] = value

    return ModelPricing(
        input_per_million=prices['input'],
        output_per_million=prices['output'],
    )


class StaticSettingsProvider:
    """Settings provider that always returns the same snapshot."""

    def __init__(self, settings: AnalysisSettings):
        self._settings = settings

    async def current_analysis_settings(self) -> AnalysisSettings:
        return self._settings


class FileSettingsProvider:
    """Settings provider that re-reads the YAML file on every call.

    Edits to the file take effect on the next analysis without a restart.
    """

    def __init__(self, path: str):
        self.path = path

    async def current_analysis_settings(self) -> AnalysisSettings:
        config = await asyncio.to_thread(load_config, self.path)
        return config.analysis
