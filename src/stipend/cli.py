"""
Stipend CLI: operator tooling for escrows, agent authorizations and the server.

Commands:
    stipend serve          Run the HTTP server
    stipend escrow create  Create an escrow directly (legacy path)
    stipend escrow show    Show an escrow and its category balances
    stipend authorize      Authorize an agent against an escrow
    stipend authorizations List agent authorizations
    stipend auth-status    Pause, resume or revoke an authorization
    stipend budget         Show today's budget for an authorization
    stipend transactions   List recent spend transactions
    stipend audit          View or verify the audit trail
    stipend reconcile      Time out stale funding requests, report stuck spends
"""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Optional

import click

from .audit import AuditChainError, EventType
from .config import EngineConfig
from .engine import Engine
from .errors import StipendError
from .money import format_minor, price_to_minor
from .states import AuthorizationStatus, EscrowStatus


def _engine(ctx: click.Context) -> Engine:
    if ctx.obj is None:
        ctx.obj = {}
    engine = ctx.obj.get("engine")
    if engine is None:
        try:
            engine = Engine(EngineConfig.from_env())
        except (ValueError, StipendError) as e:
            click.echo(f"❌ Invalid configuration: {e}", err=True)
            sys.exit(1)
        ctx.obj["engine"] = engine
        ctx.call_on_close(engine.close)
    return engine


def _parse_allocations(values: tuple[str, ...]) -> list[dict]:
    allocations = []
    for raw in values:
        name, sep, amount = raw.partition("=")
        if not sep or not name.strip() or not amount.strip():
            raise click.BadParameter(f"expected NAME=USD, got {raw!r}", param_hint="--category")
        allocations.append({"name": name.strip().lower(), "amount_usd": amount.strip()})
    return allocations


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """Stipend: budgeted autonomous spending for AI agents."""
    ctx.ensure_object(dict)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8402, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int):
    """Run the HTTP server."""
    import uvicorn

    from .app import create_app

    engine = _engine(ctx)
    click.echo(f"🚀 Stipend listening on http://{host}:{port}")
    click.echo(f"   Settlement: {engine.config.settlement_mode}")
    click.echo(f"   Database:   {engine.config.db_path}")
    uvicorn.run(create_app(engine), host=host, port=port)


@main.group("escrow")
def escrow_group():
    """Escrow operations."""
    pass


@escrow_group.command("create")
@click.option("--sender", required=True, help="Sender identifier")
@click.option("--recipient", required=True, help="Recipient identifier")
@click.option("--total", "total_usd", required=True, help="Total amount (USD)")
@click.option("--category", "categories", multiple=True, required=True,
              help="Category allocation as NAME=USD (repeatable)")
@click.option("--memo", default=None, help="Free-text memo")
@click.option("--active", is_flag=True, default=False,
              help="Create already funded instead of pending_deposit")
@click.pass_context
def escrow_create(
    ctx: click.Context,
    sender: str,
    recipient: str,
    total_usd: str,
    categories: tuple[str, ...],
    memo: Optional[str],
    active: bool,
):
    """Create an escrow and its spending categories."""
    engine = _engine(ctx)
    try:
        escrow = engine.funding.create_escrow(
            sender_id=sender,
            recipient=recipient,
            total_minor=price_to_minor(total_usd),
            categories=_parse_allocations(categories),
            memo=memo,
            status=EscrowStatus.ACTIVE if active else EscrowStatus.PENDING_DEPOSIT,
        )
    except (ValueError, StipendError) as e:
        click.echo(f"❌ Failed to create escrow: {e}", err=True)
        sys.exit(1)

    click.echo(f"✅ Escrow created: {escrow.escrow_id}")
    click.echo(f"   Status:     {escrow.status.value}")
    click.echo(f"   Total:      {format_minor(escrow.total_minor)}")
    for cat in escrow.categories:
        click.echo(f"   - {cat.name:<12} {format_minor(cat.allocated_minor)}")


@escrow_group.command("show")
@click.argument("escrow_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON")
@click.pass_context
def escrow_show(ctx: click.Context, escrow_id: str, as_json: bool):
    """Show an escrow and its category balances."""
    escrow = _engine(ctx).funding.get_escrow(escrow_id)
    if escrow is None:
        click.echo(f"❌ Escrow not found: {escrow_id}", err=True)
        sys.exit(1)
    if as_json:
        click.echo(json.dumps(escrow.to_dict(), indent=2))
        return

    click.echo(f"💰 Escrow {escrow.escrow_id} ({escrow.status.value})")
    click.echo(f"   Recipient:  {escrow.recipient}")
    click.echo(f"   Remaining:  {format_minor(escrow.remaining_minor)} of {format_minor(escrow.total_minor)}")
    for cat in escrow.categories:
        click.echo(
            f"   - {cat.name:<12} {format_minor(cat.remaining_minor)} of {format_minor(cat.allocated_minor)}"
        )


@main.command()
@click.option("--escrow", "escrow_id", required=True, help="Escrow ID")
@click.option("--agent", required=True, help="Agent wallet address")
@click.option("--daily-limit", required=True, help="Daily spending cap (USD)")
@click.option("--category", required=True, help="Allowed spending category")
@click.pass_context
def authorize(ctx: click.Context, escrow_id: str, agent: str, daily_limit: str, category: str):
    """Authorize an agent to spend against an escrow."""
    engine = _engine(ctx)
    try:
        auth = engine.ledger.create_authorization(
            escrow_id=escrow_id,
            agent=agent,
            max_daily_minor=price_to_minor(daily_limit),
            allowed_category=category,
        )
    except (ValueError, StipendError) as e:
        click.echo(f"❌ Failed to authorize agent: {e}", err=True)
        sys.exit(1)

    engine.audit.log(
        EventType.AUTHORIZATION_CREATED,
        authorization_id=auth.authorization_id,
        agent=auth.agent,
        escrow_id=escrow_id,
        amount_minor=auth.max_daily_minor,
        details={"category": auth.allowed_category},
    )
    click.echo(f"✅ Authorization created: {auth.authorization_id}")
    click.echo(f"   Agent:      {auth.agent}")
    click.echo(f"   Daily cap:  {format_minor(auth.max_daily_minor)}")
    click.echo(f"   Category:   {auth.allowed_category}")


@main.command("authorizations")
@click.option("--agent", default=None, help="Filter by agent wallet")
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON")
@click.pass_context
def list_authorizations(ctx: click.Context, agent: Optional[str], as_json: bool):
    """List agent authorizations."""
    engine = _engine(ctx)
    try:
        auths = engine.ledger.list_authorizations(agent)
    except StipendError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if as_json:
        click.echo(json.dumps([a.to_dict() for a in auths], indent=2))
        return
    if not auths:
        click.echo("No authorizations found.")
        return

    for auth in auths:
        status = "🟢" if auth.status is AuthorizationStatus.ACTIVE else "⚪"
        click.echo(
            f"  {status} {auth.authorization_id} {auth.agent} "
            f"{auth.allowed_category:<12} {format_minor(auth.max_daily_minor)}/day ({auth.status.value})"
        )


@main.command("auth-status")
@click.argument("authorization_id")
@click.argument(
    "status",
    type=click.Choice([s.value for s in AuthorizationStatus], case_sensitive=False),
)
@click.pass_context
def auth_status(ctx: click.Context, authorization_id: str, status: str):
    """Move an authorization to STATUS (active, paused, revoked, expired)."""
    engine = _engine(ctx)
    before = engine.ledger.get_authorization(authorization_id)
    try:
        auth = engine.ledger.set_status(authorization_id, AuthorizationStatus(status.lower()))
    except StipendError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    engine.audit.log(
        EventType.AUTHORIZATION_STATUS_CHANGED,
        authorization_id=auth.authorization_id,
        agent=auth.agent,
        details={"from": before.status.value if before else None, "to": auth.status.value},
    )
    click.echo(f"✅ Authorization {auth.authorization_id} is now {auth.status.value}")


@main.command()
@click.argument("authorization_id")
@click.pass_context
def budget(ctx: click.Context, authorization_id: str):
    """Show today's budget for an authorization."""
    engine = _engine(ctx)
    try:
        summary = engine.ledger.summary(authorization_id)
    except StipendError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    click.echo(f"📊 Budget for {summary['authorization_id']}")
    click.echo(f"   Agent:        {summary['agent']}")
    click.echo(f"   Status:       {summary['status']}")
    click.echo(f"   Category:     {summary['category']}")
    click.echo(f"   Spent today:  {summary['spent_today']} of {summary['daily_limit']}")
    click.echo(f"   Remaining:    {summary['remaining']}")
    click.echo(f"   Utilization:  {summary['utilization']}")


@main.command()
@click.option("--authorization", "authorization_id", default=None, help="Filter by authorization")
@click.option("--limit", type=int, default=20, help="Number of transactions")
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON")
@click.pass_context
def transactions(ctx: click.Context, authorization_id: Optional[str], limit: int, as_json: bool):
    """List recent spend transactions."""
    engine = _engine(ctx)
    txs = engine.transactions.recent(authorization_id=authorization_id, limit=limit)
    if as_json:
        click.echo(json.dumps([tx.to_dict() for tx in txs], indent=2))
        return
    if not txs:
        click.echo("No transactions found.")
        return

    for tx in txs:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(tx.created_at))
        status = "✅" if tx.status.value == "completed" else (
            "❌" if tx.status.value in ("failed", "rejected") else "⏳"
        )
        code = f" [{tx.external_code}]" if tx.external_code else ""
        reason = f" ({tx.failure_reason})" if tx.failure_reason else ""
        click.echo(
            f"  {ts} {status} {tx.status.value:<10} {format_minor(tx.amount_minor)} "
            f"→ {tx.merchant_name}{code}{reason}"
        )


@main.command()
@click.option("--authorization", "authorization_id", default=None, help="Filter by authorization")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--verify", "verify_chain", is_flag=True, default=False,
              help="Verify the hash chain instead of listing events")
@click.pass_context
def audit(ctx: click.Context, authorization_id: Optional[str], limit: int, verify_chain: bool):
    """View the audit trail."""
    trail = _engine(ctx).audit
    if verify_chain:
        try:
            count = trail.verify()
        except AuditChainError as e:
            click.echo(f"❌ Audit chain broken: {e}", err=True)
            sys.exit(1)
        click.echo(f"✅ Audit chain intact ({count} events)")
        return

    events = trail.read_events(authorization_id=authorization_id, limit=limit)
    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_minor(event.amount_minor)}" if event.amount_minor else ""
        merchant = f" → {event.merchant}" if event.merchant else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{merchant}{reason}")


@main.command()
@click.option("--max-age", type=int, default=3600, show_default=True,
              help="Age in seconds after which a pending request is stale")
@click.pass_context
def reconcile(ctx: click.Context, max_age: int):
    """Time out stale funding requests and report stuck spends."""
    engine = _engine(ctx)
    report = engine.reconciler.sweep(max_age)
    click.echo(f"🧹 Timed out {len(report.timed_out_intents)} intent(s), "
               f"{len(report.timed_out_topups)} top-up(s), "
               f"purged {report.purged_keys} expired webhook key(s)")
    for code in report.timed_out_intents + report.timed_out_topups:
        click.echo(f"   - {code}")
    if report.stuck_spends:
        click.echo(f"⚠️  {len(report.stuck_spends)} spend(s) need attention:")
        for tx in report.stuck_spends:
            click.echo(f"   - {tx.tx_id} {tx.status.value} {format_minor(tx.amount_minor)}")
        sys.exit(2)


if __name__ == "__main__":
    main()
