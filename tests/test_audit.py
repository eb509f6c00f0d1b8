"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from stipend.audit import AuditChainError, AuditTrail, EventType


def _trail(tmp_path, **kwargs):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
        **kwargs,
    )


def test_audit_hash_chain_detects_tampering(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.SPEND_AUTHORIZED, authorization_id="a-1", amount_minor=385)
    trail.log(EventType.SETTLEMENT_COMPLETED, authorization_id="a-1", tx_id="tx-1")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount_minor"] = 999_999
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(AuditChainError, match="Audit chain broken at line 1"):
        trail.read_events()


def test_deleted_entry_breaks_chain(tmp_path):
    trail = _trail(tmp_path)
    for i in range(3):
        trail.log(EventType.SPEND_DENIED, agent="0xagent", success=False, reason=f"r{i}")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    del lines[1]
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(AuditChainError, match="previous hash mismatch"):
        trail.verify()


def test_chain_continues_across_instances(tmp_path):
    _trail(tmp_path).log(EventType.ESCROW_CREATED, escrow_id="e-1", amount_minor=10_000)
    reopened = _trail(tmp_path)
    reopened.log(EventType.ESCROW_ACTIVATED, escrow_id="e-1")

    assert reopened.verify() == 2


def test_filters_and_limit(tmp_path):
    trail = _trail(tmp_path, clock=lambda: 1_700_000_000.0)
    trail.log(EventType.SPEND_AUTHORIZED, authorization_id="a-1", amount_minor=100)
    trail.log(EventType.SPEND_AUTHORIZED, authorization_id="a-2", amount_minor=200)
    trail.log(EventType.SPEND_DENIED, authorization_id="a-1", success=False, reason="BudgetExceeded")

    assert [e.amount_minor for e in trail.read_events(authorization_id="a-1")] == [100, None]
    denied = trail.read_events(event_type=EventType.SPEND_DENIED)
    assert len(denied) == 1
    assert denied[0].event_type == "spend_denied"
    assert denied[0].timestamp == 1_700_000_000.0
    assert len(trail.read_events(limit=2)) == 2

    summary = trail.summary()
    assert summary["total_events"] == 3
    assert summary["by_type"] == {"spend_authorized": 2, "spend_denied": 1}
    assert summary["failures"] == 1


def test_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("STIPEND_AUDIT_HMAC_KEY", "shared-key")
    trail = _trail(tmp_path)
    trail.log(EventType.WEBHOOK_DUPLICATE, external_code="ABC")

    assert not (tmp_path / "secret" / "audit_hmac.key").exists()
    assert _trail(tmp_path).verify() == 1


def test_key_file_is_private(tmp_path, monkeypatch):
    monkeypatch.delenv("STIPEND_AUDIT_HMAC_KEY", raising=False)
    _trail(tmp_path)
    key_path = tmp_path / "secret" / "audit_hmac.key"

    assert key_path.stat().st_mode & 0o777 == 0o600
    assert (tmp_path / "audit.jsonl").stat().st_mode & 0o777 == 0o600
