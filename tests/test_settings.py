from datetime import timedelta
from decimal import Decimal

import pytest

from station_reconciler.config.settings import (
    Settings,
    parse_price_tiers,
    validate_settings,
)
from station_reconciler.core.exceptions import ConfigurationError
from station_reconciler.services.reconciliation import ReconciliationPolicy


def test_defaults_are_valid():
    settings = validate_settings(Settings(_env_file=None))

    assert settings.grace_period_sec == 120
    assert settings.auto_close_overdue is False
    assert settings.min_available_charge == 60


def test_price_tiers_from_environment(monkeypatch):
    monkeypatch.setenv("PRICE_TIER_ALLOWANCES", '{"0.5": 3600, "2": 86400}')

    settings = Settings(_env_file=None)

    assert parse_price_tiers(settings.price_tier_allowances) == {
        Decimal("0.5"): 3600,
        Decimal("2"): 86400,
    }


@pytest.mark.parametrize(
    "tiers",
    [{"abc": 3600}, {"0": 3600}, {"-1": 3600}, {"NaN": 3600}, {"1": 0}],
)
def test_invalid_price_tiers(tiers):
    with pytest.raises(ConfigurationError):
        parse_price_tiers(tiers)


@pytest.mark.parametrize(
    "overrides",
    [
        {"reconcile_interval_sec": 0},
        {"fetch_concurrency": 0},
        {"fetch_deadline_sec": -1},
        {"grace_period_sec": -5},
        {"ledger_write_retries": 0},
        {"min_available_charge": 101},
        {"price_tier_allowances": {"1": -10}},
    ],
)
def test_validate_settings_rejects(overrides):
    with pytest.raises(ConfigurationError):
        validate_settings(Settings(_env_file=None, **overrides))


def test_zero_grace_period_allowed():
    assert validate_settings(Settings(_env_file=None, grace_period_sec=0))


def test_policy_from_settings(settings):
    policy = ReconciliationPolicy.from_settings(settings)

    assert policy.grace_period == timedelta(seconds=120)
    assert policy.allowance_for(Decimal("0.50")) == timedelta(hours=2)
    assert policy.allowance_for(Decimal("1.00")) == timedelta(hours=12)
    assert policy.allowance_for(Decimal("3")) is None
