"""
Pydantic settings for the resilience and audit core.

This module provides centralized configuration management with:
- Required secrets validation at startup (fail-fast)
- Type-safe access to breaker, retry and audit tuning values
- Sensible defaults for single-instance development
- Singleton pattern for consistent access
"""

from typing import Dict, Literal

from pydantic import computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Core settings loaded from environment variables.

    Required secrets will raise ValidationError if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars not in schema
    )

    # ==========================================
    # Required Secrets - fail fast if missing
    # ==========================================
    audit_hash_secret: str

    # ==========================================
    # Deployment
    # ==========================================
    environment: str = "dev"

    # ==========================================
    # Circuit Breaker Configuration
    # ==========================================
    failure_threshold: int = 5
    recovery_timeout_ms: int = 30_000
    monitoring_window_ms: int = 60_000
    successes_to_close: int = 3
    call_timeout_ms: int = 30_000
    circuit_state_backend: Literal["memory", "valkey"] = "memory"
    # JSON, times in seconds: {"inference": {"failure_threshold": 8, "recovery_timeout": 45}}
    circuit_overrides: Dict[str, Dict[str, float]] = {}

    # ==========================================
    # Retry Configuration
    # ==========================================
    max_retries: int = 3
    base_delay_ms: int = 1_000
    max_delay_ms: int = 30_000

    # ==========================================
    # Valkey/Redis Configuration
    # ==========================================
    valkey_host: str = "valkey"
    valkey_port: int = 6379

    # ==========================================
    # Audit Ledger Configuration
    # ==========================================
    database_url: str = "sqlite:///./carebridge_audit.db"
    audit_retention_years: int = 7
    audit_archive_backend: Literal["filesystem", "s3"] = "filesystem"
    audit_archive_path: str = "./compliance-archive"
    audit_archive_timeout_ms: int = 5_000
    compliance_bucket: str = ""
    aws_region: str = "eu-west-1"
    kms_key_id: str = ""
    local_master_key: str = ""

    # ==========================================
    # Error Responses and Logging
    # ==========================================
    detailed_logging_enabled: bool = False
    log_level: str = "INFO"
    log_json: bool = True

    # ==========================================
    # Validators
    # ==========================================
    @field_validator("audit_hash_secret")
    @classmethod
    def validate_audit_hash_secret(cls, v: str) -> str:
        """Hash secret must be at least 32 characters to resist dictionary attacks."""
        if len(v) < 32:
            raise ValueError("AUDIT_HASH_SECRET must be at least 32 characters")
        return v

    @field_validator("failure_threshold", "successes_to_close")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("circuit_overrides")
    @classmethod
    def validate_circuit_overrides(cls, v: Dict[str, Dict[str, float]]) -> Dict[str, Dict[str, float]]:
        """Only breaker tuning fields may be overridden; counts stay integers."""
        allowed = {"failure_threshold", "recovery_timeout", "monitoring_window", "successes_to_close", "call_timeout"}
        counts = {"failure_threshold", "successes_to_close"}
        for name, values in v.items():
            unknown = set(values) - allowed
            if unknown:
                raise ValueError(f"unknown circuit override fields for {name}: {sorted(unknown)}")
            for key in counts & set(values):
                values[key] = int(values[key])
        return v

    @field_validator("max_retries", "audit_retention_years")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    # ==========================================
    # Computed Properties
    # ==========================================
    @computed_field
    @property
    def valkey_url(self) -> str:
        """Construct Valkey/Redis connection URL."""
        return f"redis://{self.valkey_host}:{self.valkey_port}"

    @property
    def recovery_timeout(self) -> float:
        return self.recovery_timeout_ms / 1000

    @property
    def monitoring_window(self) -> float:
        return self.monitoring_window_ms / 1000

    @property
    def call_timeout(self) -> float:
        return self.call_timeout_ms / 1000

    @property
    def base_delay(self) -> float:
        return self.base_delay_ms / 1000

    @property
    def max_delay(self) -> float:
        return self.max_delay_ms / 1000

    @property
    def audit_archive_timeout(self) -> float:
        return self.audit_archive_timeout_ms / 1000


# ==========================================
# Singleton Access
# ==========================================
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the singleton Settings instance.

    Returns:
        Settings: The core settings

    Raises:
        ValidationError: If required settings are missing or invalid
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """
    Reset the settings singleton (for testing purposes).
    """
    global _settings
    _settings = None
