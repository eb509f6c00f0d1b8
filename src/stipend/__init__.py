"""
Stipend: budgeted autonomous spending for AI agents.

A sender funds an escrow, authorizes an agent with a daily cap in one
category, and the agent pays merchants through a 402 challenge flow:
Sender sets bounds → Agent spends within them → Merchant is paid out → Full audit trail.
"""

__version__ = "0.1.0"

from .audit import AuditTrail, EventType
from .catalog import CatalogItem, Merchant, StaticCatalog
from .challenge import Order, PaymentChallengeProtocol, ProtocolResult, parse_proof
from .channels import DemoChannel, MobileMoneyClient
from .config import EngineConfig
from .db import Database
from .engine import Engine
from .funding import FundingDesk
from .idempotency import IdempotencyGate, RedisIdempotencyStore, SQLiteIdempotencyStore
from .ledger import AgentAuthorization, BudgetLedger, BudgetResult, Reason, ValidationResult
from .reconciler import FundingConfirmationReconciler, Reconciler, SettlementConfirmationHandler
from .settlement import InlineSettlementDispatcher, QueuedSettlementDispatcher, Settler
from .states import AuthorizationStatus, EscrowStatus, FundingStatus, SpendStatus
from .transactions import SpendTransaction, TransactionLog

__all__ = [
    "Database", "EngineConfig", "Engine",
    "BudgetLedger", "AgentAuthorization", "BudgetResult", "ValidationResult", "Reason",
    "TransactionLog", "SpendTransaction",
    "PaymentChallengeProtocol", "Order", "ProtocolResult", "parse_proof",
    "Settler", "InlineSettlementDispatcher", "QueuedSettlementDispatcher",
    "FundingDesk", "FundingConfirmationReconciler", "SettlementConfirmationHandler", "Reconciler",
    "IdempotencyGate", "SQLiteIdempotencyStore", "RedisIdempotencyStore",
    "StaticCatalog", "Merchant", "CatalogItem",
    "MobileMoneyClient", "DemoChannel",
    "AuthorizationStatus", "SpendStatus", "FundingStatus", "EscrowStatus",
    "AuditTrail", "EventType",
]
