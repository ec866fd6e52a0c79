# tests/test_config.py
"""
Tests for environment configuration loading.
"""
from decimal import Decimal

import pytest

from config import Config, ConfigurationError


class TestConfigFromEnv:

    def test_defaults(self, monkeypatch):
        for name in ("MATRIX_WIDTH", "COMMISSION_LEVELS", "COMPLIANCE_MODE", "TIER_CONFIG"):
            monkeypatch.delenv(name, raising=False)

        Config.initialize_from_env()

        assert Config.get(Config.MATRIX_WIDTH) == 3
        assert Config.get(Config.MATRIX_MAX_LEVELS) == 7
        assert Config.get(Config.COMMISSION_LEVELS) == 5
        assert Config.get(Config.MIN_COMMISSION) == Decimal("100")
        assert Config.get(Config.COMPLIANCE_MODE) == "review"
        assert Config.get(Config.TIER_CONFIG) is None

    def test_values_parsed(self, monkeypatch):
        monkeypatch.setenv("MATRIX_WIDTH", "5")
        monkeypatch.setenv("MIN_COMMISSION", "50.5")
        monkeypatch.setenv("COMPLIANCE_MODE", "ABORT")
        monkeypatch.setenv("PERFORMANCE_BANDS", "[[7, 1.1], [9, 1.3]]")
        monkeypatch.setenv("TIER_CONFIG", '{"basic": {"order": 1, "levelRates": [10]}}')

        Config.initialize_from_env()

        assert Config.get(Config.MATRIX_WIDTH) == 5
        assert Config.get(Config.MIN_COMMISSION) == Decimal("50.5")
        assert Config.get(Config.COMPLIANCE_MODE) == "abort"
        assert Config.get(Config.PERFORMANCE_BANDS) == [
            (Decimal("9"), Decimal("1.3")),
            (Decimal("7"), Decimal("1.1")),
        ]
        assert Config.get(Config.TIER_CONFIG)["basic"]["levelRates"] == [10]

    @pytest.mark.parametrize("name,value", [
        ("MATRIX_WIDTH", "0"),
        ("COMMISSION_LEVELS", "abc"),
        ("COMPLIANCE_MODE", "truncate"),
        ("MIN_COMMISSION", "-1"),
        ("PERFORMANCE_BANDS", "[[7]]"),
        ("TIER_CONFIG", "{not json"),
    ])
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigurationError):
            Config.initialize_from_env()

    def test_runtime_override_and_reset(self):
        Config.set(Config.COMMISSION_LEVELS, 7)
        assert Config.get(Config.COMMISSION_LEVELS) == 7

        Config.reset()
        assert Config.get(Config.COMMISSION_LEVELS) == 5
