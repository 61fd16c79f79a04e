"""Configuration loader with 3-tier parameter precedence."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from ..errors import ConfigurationError
from .defaults import (
    DefaultConfig,
    InitiationParams,
    LifecycleParams,
    LoggingParams,
    ReconciliationParams,
    TransportParams,
    VerificationParams,
    get_default_config,
)
from .validation import ConfigValidator

CONFIG_FILE_NAME = "cardlink.yaml"

_SECTIONS = {
    "reconciliation": ReconciliationParams,
    "verification": VerificationParams,
    "transport": TransportParams,
    "initiation": InitiationParams,
    "lifecycle": LifecycleParams,
    "logging": LoggingParams,
}


@dataclass(frozen=True)
class ConfigLoader:
    """Manages configuration loading with 3-tier precedence."""

    config_dir: Path
    defaults: DefaultConfig

    @classmethod
    def create(cls, config_dir: Optional[Path] = None) -> "ConfigLoader":
        """Create a ConfigLoader instance."""
        if config_dir is None:
            config_dir = Path(__file__).parent.parent.parent / "config"

        return cls(
            config_dir=Path(config_dir),
            defaults=get_default_config(),
        )

    def load_file_config(self) -> dict[str, Any]:
        """Load deployment overrides from the YAML config file."""
        config_file = self.config_dir / CONFIG_FILE_NAME

        if not config_file.exists():
            return {}

        with open(config_file) as f:
            file_config = yaml.safe_load(f)

        return file_config or {}

    def merge_config(self, overrides: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Merge configuration with 3-tier precedence.

        Priority order:
        1. Per-call overrides (highest priority)
        2. YAML config file
        3. Global defaults (lowest priority)
        """
        config = self._dataclass_to_dict(self.defaults)

        config = self._deep_merge(config, self.load_file_config())

        if overrides:
            config = self._deep_merge(config, overrides)

        return config

    def load(self, overrides: Optional[dict[str, Any]] = None) -> DefaultConfig:
        """Merge, validate and build the typed configuration."""
        merged = self.merge_config(overrides)

        errors = ConfigValidator.validate_config(merged)
        if errors:
            messages = [f"{err.field}: {err.message} (got: {err.value!r})" for err in errors]
            raise ConfigurationError(
                "Invalid card link configuration: " + "; ".join(messages),
                errors=errors
            )

        return self._dict_to_config(merged)

    def _dict_to_config(self, merged: dict[str, Any]) -> DefaultConfig:
        """Build typed dataclasses from a merged dictionary, ignoring unknown keys."""
        sections = {}
        for name, params_cls in _SECTIONS.items():
            values = merged.get(name) or {}
            known = {
                key: value for key, value in values.items()
                if key in params_cls.__dataclass_fields__
            }
            sections[name] = params_cls(**known)
        return DefaultConfig(**sections)

    def _dataclass_to_dict(self, obj: Any) -> dict[str, Any]:
        """Convert nested dataclasses to dictionary."""
        if hasattr(obj, '__dataclass_fields__'):
            result = {}
            for field_name in obj.__dataclass_fields__:
                value = getattr(obj, field_name)
                if hasattr(value, '__dataclass_fields__'):
                    result[field_name] = self._dataclass_to_dict(value)
                elif isinstance(value, dict):
                    result[field_name] = dict(value)
                else:
                    result[field_name] = value
            return result
        return obj  # type: ignore[no-any-return]

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
