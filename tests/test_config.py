"""
Tests for environment-based configuration
"""

from decimal import Decimal

from loan_servicing import config as config_module
from loan_servicing.config import ServicingConfig, get_config, reload_config
from loan_servicing.currency import Money, Currency
from loan_servicing.installments import PenaltyPolicy, PenaltyKind


class TestServicingConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("SERVICING_CURRENCY", raising=False)
        settings = ServicingConfig(_env_file=None)
        assert settings.currency == "MXN"
        assert settings.payment_frequency == "weekly"
        assert settings.penalty_kind == "tiered"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SERVICING_LOCK_TIMEOUT_SECONDS", "0.5")
        monkeypatch.setenv("SERVICING_PENALTY_KIND", "flat")
        settings = ServicingConfig(_env_file=None)
        assert settings.lock_timeout_seconds == 0.5
        assert settings.penalty_kind == "flat"

    def test_reload_replaces_global(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("SERVICING_API_PORT", "9001")
        try:
            reloaded = reload_config()
            assert reloaded.api_port == 9001
            assert get_config() is reloaded
        finally:
            config_module.config = original


class TestPenaltyPolicyFromConfig:

    def test_tiered_default(self):
        policy = PenaltyPolicy.from_config(ServicingConfig(_env_file=None), Currency.MXN)
        assert policy.kind == PenaltyKind.TIERED
        assert policy.compute(Money(Decimal('105.58'), Currency.MXN)) == Money(Decimal('50.00'), Currency.MXN)
        assert policy.compute(Money(Decimal('600.00'), Currency.MXN)) == Money(Decimal('60.00'), Currency.MXN)

    def test_percentage(self):
        settings = ServicingConfig(_env_file=None, penalty_kind="percentage", penalty_rate="0.05")
        policy = PenaltyPolicy.from_config(settings, Currency.MXN)
        assert policy.compute(Money(Decimal('105.58'), Currency.MXN)) == Money(Decimal('5.28'), Currency.MXN)
