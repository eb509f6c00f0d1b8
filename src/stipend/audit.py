"""
Event journal for spend decisions, compensations and webhook handling.

Entries are appended to a JSONL file; each one carries an HMAC over its
payload and the previous entry's hash, so an edited or deleted line breaks
the chain on the next read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .db import ensure_private_dir, ensure_private_file


AUDIT_HMAC_KEY_ENV = "STIPEND_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    AUTHORIZATION_CREATED = "authorization_created"
    AUTHORIZATION_STATUS_CHANGED = "authorization_status_changed"
    SPEND_DENIED = "spend_denied"
    SPEND_AUTHORIZED = "spend_authorized"
    SETTLEMENT_SUBMITTED = "settlement_submitted"
    SETTLEMENT_COMPLETED = "settlement_completed"
    SETTLEMENT_FAILED = "settlement_failed"
    COMPENSATION_APPLIED = "compensation_applied"
    ESCROW_CREATED = "escrow_created"
    ESCROW_ACTIVATED = "escrow_activated"
    FUNDING_INITIATED = "funding_initiated"
    FUNDING_FAILED = "funding_failed"
    FUNDING_TIMEOUT = "funding_timeout"
    WEBHOOK_DUPLICATE = "webhook_duplicate"
    WEBHOOK_REJECTED = "webhook_rejected"


class AuditChainError(RuntimeError):
    """The journal no longer verifies against its hash chain."""


@dataclass
class AuditEvent:
    """A single journal entry."""

    event_type: str
    timestamp: float
    authorization_id: Optional[str] = None
    agent: Optional[str] = None
    escrow_id: Optional[str] = None
    tx_id: Optional[str] = None
    external_code: Optional[str] = None
    amount_minor: Optional[int] = None
    merchant: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only journal, safe to share between request threads."""

    def __init__(
        self,
        path: Path,
        key_path: Optional[Path] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.path = Path(path)
        self.key_path = key_path or self.path.parent / "secrets" / "audit_hmac.key"
        self.clock = clock or time.time
        self._lock = threading.Lock()

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)

        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_HMAC_KEY_ENV)
        if env_key:
            return env_key.encode()
        ensure_private_dir(self.key_path.parent)
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                last = json.loads(line).get("event_hash", "")
        return last

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        authorization_id: Optional[str] = None,
        agent: Optional[str] = None,
        escrow_id: Optional[str] = None,
        tx_id: Optional[str] = None,
        external_code: Optional[str] = None,
        amount_minor: Optional[int] = None,
        merchant: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": self.clock(),
            "authorization_id": authorization_id,
            "agent": agent,
            "escrow_id": escrow_id,
            "tx_id": tx_id,
            "external_code": external_code,
            "amount_minor": amount_minor,
            "merchant": merchant,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}

        with self._lock:
            prev_hash = self._last_hash
            current_hash = self._event_hash(payload, prev_hash)
            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=current_hash,
            )
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._last_hash = current_hash
        return event

    def verify(self) -> int:
        """Walk the whole chain; return the number of entries or raise AuditChainError."""
        return len(self._read_all())

    def _read_all(self) -> list[dict]:
        entries: list[dict] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)
                payload = {
                    k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}
                }
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise AuditChainError(f"Audit chain broken at line {lineno}: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                    raise AuditChainError(f"Audit chain broken at line {lineno}: event hash mismatch")
                expected_prev = event_hash
                entries.append(raw)
        return entries

    def read_events(
        self,
        authorization_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        for raw in self._read_all():
            if authorization_id and raw.get("authorization_id") != authorization_id:
                continue
            if event_type and raw.get("event_type") != event_type.value:
                continue
            events.append(
                AuditEvent(**{k: v for k, v in raw.items() if k in AuditEvent.__dataclass_fields__})
            )
        return events[-limit:]

    def summary(self, authorization_id: Optional[str] = None) -> dict:
        events = self.read_events(authorization_id=authorization_id, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        failures = [e for e in events if not e.success]
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": len(failures),
            "last_event": events[-1].to_json() if events else None,
        }
