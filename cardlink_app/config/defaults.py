"""Default configuration parameters for the card link engine."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ReconciliationParams:
    """Reconciliation poller parameters."""
    poll_interval: float = 3.0                  # Seconds between snapshot fetches
    verify_interval: float = 15.0               # Min seconds between verification nudges
    timeout_budget: float = 180.0               # Absolute budget from session creation
    max_consecutive_failures: int = 5           # Fetch failures tolerated in a row


@dataclass(frozen=True)
class VerificationParams:
    """Verification client parameters."""
    timeout_seconds: float = 5.0                # Own budget, independent of the poller


@dataclass(frozen=True)
class TransportParams:
    """Backend HTTP transport parameters."""
    base_url: str = "http://localhost:8000"
    api_prefix: str = "/api/v1"
    request_timeout_seconds: float = 8.0
    max_retries: int = 2                        # Retries of network/5xx failures
    backoff_base_ms: int = 400                  # Doubled per attempt, plus jitter
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class InitiationParams:
    """Link session initiation parameters."""
    ensure_customer: bool = True                # Best-effort customer upsert first
    default_email: Optional[str] = None


@dataclass(frozen=True)
class LifecycleParams:
    """Host lifecycle handling parameters."""
    resume_ensures_polling: bool = True         # Resume may start an idle poller


@dataclass(frozen=True)
class LoggingParams:
    """Logging parameters."""
    level: str = "INFO"
    format_json: bool = False


@dataclass(frozen=True)
class DefaultConfig:
    """Complete default configuration."""
    reconciliation: ReconciliationParams
    verification: VerificationParams
    transport: TransportParams
    initiation: InitiationParams
    lifecycle: LifecycleParams
    logging: LoggingParams


def get_default_config() -> DefaultConfig:
    """Get the default configuration instance."""
    return DefaultConfig(
        reconciliation=ReconciliationParams(),
        verification=VerificationParams(),
        transport=TransportParams(),
        initiation=InitiationParams(),
        lifecycle=LifecycleParams(),
        logging=LoggingParams(),
    )
