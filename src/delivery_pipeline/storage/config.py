"""Outcome store settings (DELIVERY_STORAGE_ prefix).

Only the password is required:

    DELIVERY_STORAGE_POSTGRES_PASSWORD=secret
    DELIVERY_STORAGE_POSTGRES_HOST=db.internal
"""

from __future__ import annotations

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigOutcomeStorage(BaseSettings):
    """Connection, table and pool settings for OutcomeStore."""

    model_config = SettingsConfigDict(
        env_prefix="DELIVERY_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    postgres_host: str = "localhost"
    postgres_port: int = Field(default=5432, ge=1, le=65535)
    postgres_database: str = "notifications"
    postgres_user: str = "postgres"
    postgres_password: SecretStr

    # Interpolated into DDL and queries, hence the identifier pattern
    table_name: str = Field(default="delivery_outcomes", pattern=r"^[a-z_][a-z0-9_]*$")

    # One pool shared by every channel worker
    pool_min_size: int = Field(default=2, ge=1, le=100)
    pool_max_size: int = Field(default=10, ge=1, le=100)
    query_timeout_seconds: int = Field(default=30, ge=1, le=300)

    @model_validator(mode="after")
    def _check_pool(self) -> ConfigOutcomeStorage:
        if self.pool_max_size < self.pool_min_size:
            raise ValueError("pool_max_size must be >= pool_min_size")
        return self

    def _dsn(self, password: str) -> str:
        return (
            f"postgresql://{self.postgres_user}:{password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_database}"
        )

    @property
    def dsn(self) -> str:
        return self._dsn(self.postgres_password.get_secret_value())

    @property
    def dsn_safe(self) -> str:
        """DSN with the password masked, for logs and error details."""
        return self._dsn("***")

    def __repr__(self) -> str:
        return f"ConfigOutcomeStorage(dsn={self.dsn_safe!r})"
