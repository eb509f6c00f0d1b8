"""Tests for environment-driven engine configuration."""

from pathlib import Path

import pytest

from stipend.config import DEFAULT_NETWORK, DEFAULT_PAY_TO, EngineConfig


def test_defaults_live_under_home(tmp_path):
    config = EngineConfig.from_env({"STIPEND_HOME": str(tmp_path)})

    assert config.db_path == tmp_path / "stipend.sqlite3"
    assert config.audit_path == tmp_path / "audit.jsonl"
    assert config.settlement_mode == "inline"
    assert config.settlement_confirmation is False
    assert config.budget_utc_offset_hours == 3
    assert config.pay_to == DEFAULT_PAY_TO
    assert config.network == DEFAULT_NETWORK
    assert not config.mobile_money_configured
    assert config.redis_url is None


def test_overrides():
    config = EngineConfig.from_env(
        {
            "STIPEND_HOME": "/srv/stipend",
            "STIPEND_DB_PATH": "/data/ledger.db",
            "STIPEND_SETTLEMENT_MODE": " Queued ",
            "STIPEND_SETTLEMENT_CONFIRMATION": "yes",
            "STIPEND_BUDGET_UTC_OFFSET_HOURS": "-5",
            "STIPEND_HTTP_TIMEOUT": "2.5",
            "MOBILE_MONEY_API_URL": "https://api.example.test",
            "MOBILE_MONEY_API_KEY": "k",
            "REDIS_URL": "redis://localhost:6379/0",
        }
    )

    assert config.db_path == Path("/data/ledger.db")
    assert config.audit_path == Path("/srv/stipend/audit.jsonl")
    assert config.settlement_mode == "queued"
    assert config.settlement_confirmation is True
    assert config.budget_utc_offset_hours == -5
    assert config.http_timeout == 2.5
    assert config.mobile_money_configured
    assert config.redis_url == "redis://localhost:6379/0"


@pytest.mark.parametrize(
    "env,message",
    [
        ({"STIPEND_SETTLEMENT_MODE": "batch"}, "Invalid settlement mode"),
        ({"STIPEND_BUDGET_UTC_OFFSET_HOURS": "three"}, "must be an integer"),
        ({"STIPEND_BUDGET_UTC_OFFSET_HOURS": "20"}, "Invalid UTC offset"),
        ({"STIPEND_HTTP_TIMEOUT": "soon"}, "must be a number"),
    ],
)
def test_invalid_values(tmp_path, env, message):
    with pytest.raises(ValueError, match=message):
        EngineConfig.from_env({"STIPEND_HOME": str(tmp_path), **env})
