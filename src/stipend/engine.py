"""
Engine wiring.

Builds every component from one `EngineConfig` and shares the store, the
clock and the audit trail between them. The HTTP app and the CLI both work
through an `Engine`.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .audit import AuditTrail
from .catalog import MerchantCatalog, StaticCatalog
from .challenge import PaymentChallengeProtocol
from .channels import DemoChannel, MobileMoneyClient
from .config import EngineConfig
from .db import Database
from .funding import FundingDesk
from .idempotency import IdempotencyGate, build_store
from .ledger import BudgetLedger
from .reconciler import (
    FundingConfirmationReconciler,
    Reconciler,
    SettlementConfirmationHandler,
)
from .settlement import (
    InlineSettlementDispatcher,
    QueuedSettlementDispatcher,
    SettlementDispatcher,
    Settler,
)
from .transactions import TransactionLog


logger = logging.getLogger(__name__)


class Engine:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        channel=None,
        catalog: Optional[MerchantCatalog] = None,
        clock: Optional[Callable[[], float]] = None,
        idempotency_store=None,
    ):
        self.config = config or EngineConfig.from_env()
        cfg = self.config

        self.db = Database(cfg.db_path, clock=clock)
        self.audit = AuditTrail(cfg.audit_path, clock=clock)
        self.ledger = BudgetLedger(self.db, utc_offset_hours=cfg.budget_utc_offset_hours)
        self.transactions = TransactionLog(self.db)

        if catalog is None:
            catalog = StaticCatalog.from_file(cfg.catalog_path) if cfg.catalog_path else StaticCatalog()
        self.catalog = catalog

        if channel is None:
            channel = self._build_channel()
        self.channel = channel

        self.settler = Settler(
            self.ledger,
            self.transactions,
            self.channel,
            audit=self.audit,
            await_confirmation=cfg.settlement_confirmation,
        )
        self.dispatcher: SettlementDispatcher = (
            QueuedSettlementDispatcher(self.settler)
            if cfg.settlement_mode == "queued"
            else InlineSettlementDispatcher(self.settler)
        )
        self.protocol = PaymentChallengeProtocol(
            self.catalog,
            self.ledger,
            self.transactions,
            self.dispatcher,
            pay_to=cfg.pay_to,
            network=cfg.network,
            asset=cfg.asset,
            audit=self.audit,
        )
        self.funding = FundingDesk(self.db, self.channel, cfg.pay_to, audit=self.audit)
        store = idempotency_store or build_store(self.db, cfg.redis_url)
        self.reconciler = Reconciler(
            self.db, self.transactions, audit=self.audit, idempotency=store
        )
        self.webhook_handlers = {
            handler.provider: handler
            for handler in (
                FundingConfirmationReconciler(self.db, audit=self.audit),
                SettlementConfirmationHandler(
                    self.db, self.ledger, self.transactions, audit=self.audit
                ),
            )
        }
        self.gate = IdempotencyGate(store, audit=self.audit)

        logger.info(
            "Engine ready: db=%s settlement=%s%s channel=%s",
            cfg.db_path,
            cfg.settlement_mode,
            "+confirm" if cfg.settlement_confirmation else "",
            type(self.channel).__name__,
        )

    def _build_channel(self):
        cfg = self.config
        if cfg.mobile_money_configured:
            return MobileMoneyClient(
                cfg.mobile_money_api_url,
                cfg.mobile_money_api_key,
                timeout=cfg.http_timeout,
                webhook_base_url=cfg.webhook_base_url,
            )
        logger.warning("Mobile-money credentials not set; using the demo channel")
        return DemoChannel(rate=cfg.demo_exchange_rate)

    def close(self) -> None:
        self.dispatcher.close()
        close = getattr(self.channel, "close", None)
        if close is not None:
            close()
