"""Tests for ConfigOutcomeStorage."""

from __future__ import annotations

import pytest
from pydantic import SecretStr, ValidationError

from delivery_pipeline.storage import ConfigOutcomeStorage


class TestConfigOutcomeStorage:
    def test_dsn(self) -> None:
        config = ConfigOutcomeStorage(postgres_password=SecretStr("pw"))

        assert config.dsn == "postgresql://postgres:pw@localhost:5432/notifications"
        assert "pw" not in config.dsn_safe
        assert "pw" not in repr(config)

    def test_password_required(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DELIVERY_STORAGE_POSTGRES_PASSWORD", raising=False)

        with pytest.raises(ValidationError):
            ConfigOutcomeStorage()  # type: ignore[call-arg]

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DELIVERY_STORAGE_POSTGRES_HOST", "db.internal")
        monkeypatch.setenv("DELIVERY_STORAGE_POSTGRES_PASSWORD", "secret")
        monkeypatch.setenv("DELIVERY_STORAGE_TABLE_NAME", "outcomes_v2")

        config = ConfigOutcomeStorage()  # type: ignore[call-arg]

        assert config.postgres_host == "db.internal"
        assert config.postgres_password.get_secret_value() == "secret"
        assert config.table_name == "outcomes_v2"

    def test_table_name_must_be_identifier(self) -> None:
        with pytest.raises(ValidationError):
            ConfigOutcomeStorage(
                postgres_password=SecretStr("pw"), table_name="outcomes; DROP TABLE x"
            )

    def test_pool_bounds_validated(self) -> None:
        with pytest.raises(ValidationError, match="pool_max_size"):
            ConfigOutcomeStorage(
                postgres_password=SecretStr("pw"), pool_min_size=5, pool_max_size=2
            )
