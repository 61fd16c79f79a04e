"""Configuration validation utilities."""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    value: Any


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConfigValidator:
    """Validates configuration parameters."""

    @staticmethod
    def validate_reconciliation_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate reconciliation poller parameters."""
        errors = []

        for name in ("poll_interval", "verify_interval", "timeout_budget"):
            if name in params:
                value = params[name]
                if not _is_number(value) or value <= 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a positive number of seconds",
                        value=value
                    ))

        if "max_consecutive_failures" in params:
            value = params["max_consecutive_failures"]
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                errors.append(ValidationError(
                    field="max_consecutive_failures",
                    message="Must be a non-negative integer",
                    value=value
                ))

        # The budget has to leave room for at least one tick
        poll_interval = params.get("poll_interval")
        timeout_budget = params.get("timeout_budget")
        if (_is_number(poll_interval) and _is_number(timeout_budget)
                and 0 < timeout_budget < poll_interval):
            errors.append(ValidationError(
                field="timeout_budget",
                message="Must be at least poll_interval",
                value=timeout_budget
            ))

        return errors

    @staticmethod
    def validate_verification_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate verification client parameters."""
        errors = []

        if "timeout_seconds" in params:
            value = params["timeout_seconds"]
            if not _is_number(value) or value <= 0:
                errors.append(ValidationError(
                    field="timeout_seconds",
                    message="Must be a positive number",
                    value=value
                ))

        return errors

    @staticmethod
    def validate_transport_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate backend transport parameters."""
        errors = []

        if "base_url" in params:
            value = params["base_url"]
            if not isinstance(value, str) or not value.startswith(("http://", "https://")):
                errors.append(ValidationError(
                    field="base_url",
                    message="Must be an http(s) URL",
                    value=value
                ))

        if "request_timeout_seconds" in params:
            value = params["request_timeout_seconds"]
            if not _is_number(value) or value <= 0:
                errors.append(ValidationError(
                    field="request_timeout_seconds",
                    message="Must be a positive number",
                    value=value
                ))

        for name in ("max_retries", "backoff_base_ms"):
            if name in params:
                value = params[name]
                if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a non-negative integer",
                        value=value
                    ))

        if "headers" in params and not isinstance(params["headers"], dict):
            errors.append(ValidationError(
                field="headers",
                message="Must be a mapping of header names to values",
                value=params["headers"]
            ))

        return errors

    @staticmethod
    def validate_logging_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate logging parameters."""
        errors = []

        if "level" in params:
            value = params["level"]
            if not isinstance(value, str) or value.upper() not in (
                    "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
                errors.append(ValidationError(
                    field="level",
                    message="Must be a standard logging level name",
                    value=value
                ))

        return errors

    @staticmethod
    def validate_config(config: dict[str, Any]) -> list[ValidationError]:
        """Validate complete configuration."""
        errors = []

        if "reconciliation" in config:
            errors.extend(ConfigValidator.validate_reconciliation_params(config["reconciliation"]))

        if "verification" in config:
            errors.extend(ConfigValidator.validate_verification_params(config["verification"]))

        if "transport" in config:
            errors.extend(ConfigValidator.validate_transport_params(config["transport"]))

        if "logging" in config:
            errors.extend(ConfigValidator.validate_logging_params(config["logging"]))

        return errors
