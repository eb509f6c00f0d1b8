"""
Engine configuration.

Everything is read from the environment once, at startup, by
`EngineConfig.from_env()`. Connections built from this config are fail-soft:
missing mobile-money credentials select the demo channel and a missing
REDIS_URL selects the SQLite idempotency store.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


logger = logging.getLogger(__name__)

STIPEND_HOME_ENV = "STIPEND_HOME"
STIPEND_DB_PATH_ENV = "STIPEND_DB_PATH"
STIPEND_AUDIT_PATH_ENV = "STIPEND_AUDIT_PATH"
STIPEND_SETTLEMENT_MODE_ENV = "STIPEND_SETTLEMENT_MODE"
STIPEND_SETTLEMENT_CONFIRMATION_ENV = "STIPEND_SETTLEMENT_CONFIRMATION"
STIPEND_BUDGET_UTC_OFFSET_ENV = "STIPEND_BUDGET_UTC_OFFSET_HOURS"
STIPEND_PAY_TO_ENV = "STIPEND_PAY_TO"
STIPEND_NETWORK_ENV = "STIPEND_NETWORK"
STIPEND_ASSET_ENV = "STIPEND_ASSET"
STIPEND_CATALOG_PATH_ENV = "STIPEND_CATALOG_PATH"
STIPEND_DEMO_EXCHANGE_RATE_ENV = "STIPEND_DEMO_EXCHANGE_RATE"
STIPEND_HTTP_TIMEOUT_ENV = "STIPEND_HTTP_TIMEOUT"
MOBILE_MONEY_API_URL_ENV = "MOBILE_MONEY_API_URL"
MOBILE_MONEY_API_KEY_ENV = "MOBILE_MONEY_API_KEY"
WEBHOOK_BASE_URL_ENV = "WEBHOOK_BASE_URL"
REDIS_URL_ENV = "REDIS_URL"

DEFAULT_HOME = Path.home() / ".stipend"
DEFAULT_NETWORK = "eip155:8453"
# USDC on Base mainnet
DEFAULT_ASSET = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
DEFAULT_PAY_TO = "0x0000000000000000000000000000000000000000"
DEFAULT_UTC_OFFSET_HOURS = 3
DEFAULT_DEMO_EXCHANGE_RATE = "130"
DEFAULT_HTTP_TIMEOUT = 15.0

SETTLEMENT_MODES = ("inline", "queued")

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Resolved runtime settings for one engine instance."""

    home: Path = DEFAULT_HOME
    db_path: Optional[Path] = None
    audit_path: Optional[Path] = None
    settlement_mode: str = "inline"
    settlement_confirmation: bool = False
    budget_utc_offset_hours: int = DEFAULT_UTC_OFFSET_HOURS
    pay_to: str = DEFAULT_PAY_TO
    network: str = DEFAULT_NETWORK
    asset: str = DEFAULT_ASSET
    catalog_path: Optional[Path] = None
    demo_exchange_rate: str = DEFAULT_DEMO_EXCHANGE_RATE
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    mobile_money_api_url: Optional[str] = None
    mobile_money_api_key: Optional[str] = None
    webhook_base_url: Optional[str] = None
    redis_url: Optional[str] = None

    def __post_init__(self):
        self.home = Path(self.home)
        if self.db_path is None:
            self.db_path = self.home / "stipend.sqlite3"
        if self.audit_path is None:
            self.audit_path = self.home / "audit.jsonl"
        if self.settlement_mode not in SETTLEMENT_MODES:
            raise ValueError(
                f"Invalid settlement mode: {self.settlement_mode} "
                f"(expected one of {', '.join(SETTLEMENT_MODES)})"
            )
        if not -12 <= self.budget_utc_offset_hours <= 14:
            raise ValueError(f"Invalid UTC offset: {self.budget_utc_offset_hours}")

    @property
    def mobile_money_configured(self) -> bool:
        return bool(self.mobile_money_api_url and self.mobile_money_api_key)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        home = Path(env.get(STIPEND_HOME_ENV) or DEFAULT_HOME)

        pay_to = env.get(STIPEND_PAY_TO_ENV)
        if not pay_to:
            logger.warning("%s not set; challenges will name the zero address", STIPEND_PAY_TO_ENV)
            pay_to = DEFAULT_PAY_TO

        offset_raw = env.get(STIPEND_BUDGET_UTC_OFFSET_ENV)
        try:
            offset = int(offset_raw) if offset_raw else DEFAULT_UTC_OFFSET_HOURS
        except ValueError as exc:
            raise ValueError(f"{STIPEND_BUDGET_UTC_OFFSET_ENV} must be an integer") from exc

        timeout_raw = env.get(STIPEND_HTTP_TIMEOUT_ENV)
        try:
            http_timeout = float(timeout_raw) if timeout_raw else DEFAULT_HTTP_TIMEOUT
        except ValueError as exc:
            raise ValueError(f"{STIPEND_HTTP_TIMEOUT_ENV} must be a number") from exc

        db_path = env.get(STIPEND_DB_PATH_ENV)
        audit_path = env.get(STIPEND_AUDIT_PATH_ENV)
        catalog_path = env.get(STIPEND_CATALOG_PATH_ENV)

        return cls(
            home=home,
            db_path=Path(db_path) if db_path else None,
            audit_path=Path(audit_path) if audit_path else None,
            settlement_mode=(env.get(STIPEND_SETTLEMENT_MODE_ENV) or "inline").strip().lower(),
            settlement_confirmation=(
                (env.get(STIPEND_SETTLEMENT_CONFIRMATION_ENV) or "").strip().lower() in _TRUTHY
            ),
            budget_utc_offset_hours=offset,
            pay_to=pay_to,
            network=env.get(STIPEND_NETWORK_ENV) or DEFAULT_NETWORK,
            asset=env.get(STIPEND_ASSET_ENV) or DEFAULT_ASSET,
            catalog_path=Path(catalog_path) if catalog_path else None,
            demo_exchange_rate=env.get(STIPEND_DEMO_EXCHANGE_RATE_ENV) or DEFAULT_DEMO_EXCHANGE_RATE,
            http_timeout=http_timeout,
            mobile_money_api_url=env.get(MOBILE_MONEY_API_URL_ENV) or None,
            mobile_money_api_key=env.get(MOBILE_MONEY_API_KEY_ENV) or None,
            webhook_base_url=env.get(WEBHOOK_BASE_URL_ENV) or None,
            redis_url=env.get(REDIS_URL_ENV) or None,
        )
