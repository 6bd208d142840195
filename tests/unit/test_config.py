"""Unit tests for Settings."""

import os

import pytest
from pydantic import ValidationError

from services.shared.config import Settings, get_settings


@pytest.fixture
def no_app_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Hide any APP_* variables set in the developer's shell."""
    for name in [k for k in os.environ if k.upper().startswith("APP_")]:
        monkeypatch.delenv(name)


class TestDefaults:
    def test_service_identity(self, no_app_env: None) -> None:
        settings = Settings(_env_file=None)

        assert settings.service_name == "invoice-reconciliation-engine"
        assert settings.service_version == "0.1.0"
        assert settings.environment == "development"
        assert settings.log_level == "INFO"

    def test_validation_policy(self, no_app_env: None) -> None:
        settings = Settings(_env_file=None)

        assert settings.amount_tolerance == 2.0
        assert settings.vat_rate_tolerance == 1.0
        assert settings.vat_inconsistent_blocks_approval is False

    def test_calendar_heuristics(self, no_app_env: None) -> None:
        settings = Settings(_env_file=None)

        assert settings.bs_detection_threshold == 2050
        assert (settings.plausible_bs_year_min, settings.plausible_bs_year_max) == (2070, 2095)


class TestEnvironmentOverrides:
    def test_prefixed_variables(self, no_app_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APP_ENVIRONMENT", "production")
        monkeypatch.setenv("APP_AMOUNT_TOLERANCE", "0.5")
        monkeypatch.setenv("APP_VAT_INCONSISTENT_BLOCKS_APPROVAL", "true")
        monkeypatch.setenv("APP_DATABASE_URL", "postgresql://reconcile@db/invoices")

        settings = Settings(_env_file=None)

        assert settings.environment == "production"
        assert settings.amount_tolerance == 0.5
        assert settings.vat_inconsistent_blocks_approval is True
        assert settings.database_url == "postgresql://reconcile@db/invoices"

    def test_lowercase_names(self, no_app_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("app_log_level", "DEBUG")

        assert Settings(_env_file=None).log_level == "DEBUG"

    def test_unprefixed_variables_ignored(
        self, no_app_env: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("AMOUNT_TOLERANCE", "9")

        assert Settings(_env_file=None).amount_tolerance == 2.0


@pytest.mark.parametrize(
    "field, value",
    [("amount_tolerance", -1), ("vat_rate_tolerance", -0.5), ("merge_conflict_retries", 0)],
)
def test_out_of_range_values_rejected(field: str, value: float) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})


def test_get_settings() -> None:
    settings = get_settings()

    assert isinstance(settings, Settings)
    assert settings.merge_conflict_retries >= 1
