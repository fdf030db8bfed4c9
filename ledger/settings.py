"""
Loyalty Ledger Settings

Configuration management using pydantic settings.
Loads from environment variables (and an optional .env file):
- RUN_ADDRESS: host:port the HTTP server binds to (default: localhost:8080)
- DATABASE_URI: PostgreSQL DSN; when unset the in-memory store is used
- ACCRUAL_SYSTEM_ADDRESS: base URL of the accrual authority; empty disables polling
- ACCRUAL_TIMEOUT: per-pass request deadline in seconds (default: 10)
- ACCRUAL_WORKERS: max concurrent accrual lookups per pass (default: 10)
- ACCRUAL_TICK_SKEW: added to the timeout to form the poll interval (default: 0.12)
- LOG_LEVEL: loguru level name (default: INFO)
- AUTH_SECRET: token signing secret; a random one is generated when unset
- TOKEN_TTL: token lifetime in seconds (default: 3600)
"""

from typing import Optional

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    run_address: str = "localhost:8080"
    database_uri: Optional[str] = None

    accrual_system_address: Optional[str] = "http://localhost:8081"
    accrual_timeout: float = Field(default=10.0, gt=0)
    accrual_workers: int = Field(default=10, gt=0)
    accrual_tick_skew: float = Field(default=0.12, ge=0)

    log_level: str = "INFO"

    auth_secret: Optional[str] = None
    token_ttl: int = Field(default=3600, gt=0)

    @field_validator("run_address")
    @classmethod
    def _check_run_address(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError("run_address must look like host:port")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @computed_field
    @property
    def host(self) -> str:
        return self.run_address.rpartition(":")[0] or "0.0.0.0"

    @computed_field
    @property
    def port(self) -> int:
        return int(self.run_address.rpartition(":")[2])

    @computed_field
    @property
    def poll_interval(self) -> float:
        """Seconds between reconciliation ticks."""
        return self.accrual_timeout + self.accrual_tick_skew
