"""
CLI interface for ConsensusAI accounting.

Provides command-line access to usage recording, subscriptions, quotas
and invoices.
"""

import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from consensus_billing.config.loader import load_billing_config
from consensus_billing.config.logger import setup_logging
from consensus_billing.core.accounting import Accounting, build_accounting
from consensus_billing.core.aggregates import Period
from consensus_billing.core.pricing import calculate_message_cost
from consensus_billing.core.tiers import (
    UNLIMITED,
    calculate_yearly_savings,
    parse_tier,
)
from consensus_billing.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML config (defaults to $CONSENSUS_BILLING_CONFIG)"
    ),
):
    """ConsensusAI usage and billing CLI."""
    setup_logging()
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("ConsensusAI Billing - Use --help to see available commands")


def _accounting(ctx: typer.Context) -> Accounting:
    config_path = (ctx.obj or {}).get("config_path")
    return build_accounting(load_billing_config(config_path))


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount) -> str:
    return f"${float(amount):,.2f}"


def _format_limit(value: int) -> str:
    return "Unlimited" if value == UNLIMITED else f"{value:,}"


@app.command()
def init(ctx: typer.Context):
    """Initialize the accounting database."""
    try:
        config = load_billing_config((ctx.obj or {}).get("config_path"))
        initialize_schema(config.storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def tiers(ctx: typer.Context):
    """List subscription tiers with their limits and prices."""
    try:
        table_config = load_billing_config((ctx.obj or {}).get("config_path")).tier_table()
    except Exception as e:
        _fail(e)

    table = Table(title="Subscription Tiers")
    table.add_column("Tier")
    table.add_column("Monthly", justify="right")
    table.add_column("Annual", justify="right")
    table.add_column("Msgs/month", justify="right")
    table.add_column("Trial", justify="right")
    for config in table_config.all():
        name = f"{config.name} [yellow]★[/]" if config.popular else config.name
        table.add_row(
            name,
            _format_currency(config.pricing.monthly_price),
            _format_currency(config.pricing.annual_price),
            _format_limit(config.limits.messages_per_month),
            f"{config.pricing.free_trial_days}d",
        )
    console.print(table)
    for config in table_config.all():
        savings = calculate_yearly_savings(config)
        if savings > 0:
            console.print(f"{config.name}: annual billing saves {_format_currency(savings)}")
    sys.exit(EXIT_CODE_PASS)


@app.command("record-message")
def record_message(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User the message is billed to"),
    model: str = typer.Option(..., "--model", "-m", help="Model that answered"),
    tokens: int = typer.Option(..., "--tokens", "-t", help="Total tokens used"),
    cost: Optional[float] = typer.Option(
        None,
        "--cost",
        help="Actual cost; priced from the token count when omitted"
    ),
    tier: str = typer.Option("starter", "--tier", help="Tier the message is billed under"),
):
    """Record one chat message."""
    try:
        accounting = _accounting(ctx)
        if cost is None:
            cost = calculate_message_cost(parse_tier(tier), model, tokens)
        event = accounting.tracker.record_message(user_id, model, tokens, cost, tier=tier)
    except Exception as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Recorded message {event.event_id} "
        f"({event.tokens_used:,} tokens, {_format_currency(event.actual_cost)})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("record-debate")
def record_debate(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User the debate is billed to"),
    model: str = typer.Option(..., "--model", "-m", help="Model used for the debate"),
    tokens: int = typer.Option(..., "--tokens", "-t", help="Total tokens used"),
    cost: Optional[float] = typer.Option(
        None,
        "--cost",
        help="Actual cost; priced from the token count when omitted"
    ),
    rounds: int = typer.Option(2, "--rounds", "-r", help="Debate rounds"),
    personas: int = typer.Option(3, "--personas", "-p", help="Personas taking part"),
    topic: Optional[str] = typer.Option(None, "--topic", help="Debate topic"),
    tier: str = typer.Option("starter", "--tier", help="Tier the debate is billed under"),
):
    """Record one completed debate."""
    try:
        accounting = _accounting(ctx)
        if cost is None:
            cost = calculate_message_cost(parse_tier(tier), model, tokens)
        event = accounting.tracker.record_debate(
            user_id, model, tokens, cost,
            tier=tier, rounds=rounds, personas=personas, topic=topic,
        )
    except Exception as e:
        _fail(e)
    category = event.metadata.get("category")
    suffix = f" ({category})" if category else ""
    console.print(f"[green]✓[/] Recorded debate {event.event_id}{suffix}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def summary(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to summarise"),
    period: str = typer.Option("monthly", "--period", help="daily or monthly"),
):
    """Show a user's usage for the current day or month."""
    try:
        aggregate = _accounting(ctx).tracker.get_usage_summary(user_id, Period(period))
    except Exception as e:
        _fail(e)

    table = Table(title=f"Usage for {user_id} ({aggregate.period})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Tier", aggregate.tier.value)
    table.add_row("Messages", f"{aggregate.message_count:,}")
    table.add_row("Debates", f"{aggregate.debate_count:,}")
    table.add_row("Exports", f"{aggregate.export_count:,}")
    table.add_row("API calls", f"{aggregate.api_call_count:,}")
    table.add_row("Tokens", f"{aggregate.total_tokens:,}")
    table.add_row("Total cost", f"${aggregate.total_cost}")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def subscribe(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User subscribing"),
    tier: str = typer.Argument(..., help="starter, professional, boardroom or enterprise"),
    cycle: str = typer.Option("monthly", "--cycle", help="monthly or annual"),
    trial_days: Optional[int] = typer.Option(
        None,
        "--trial-days",
        help="Trial length in days (defaults to the tier's free trial)"
    ),
):
    """Create a subscription for a user."""
    try:
        subscription = _accounting(ctx).billing.create_subscription(
            user_id, tier, cycle, trial_days
        )
    except Exception as e:
        _fail(e)
    console.print(
        f"[green]✓[/] {subscription.subscription_id}: {subscription.tier.value} "
        f"({subscription.billing_cycle.value}), status {subscription.status.value}"
    )
    if subscription.trial_end is not None:
        console.print(f"Trial ends {subscription.trial_end:%Y-%m-%d}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def quota(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to check"),
    enforced: bool = typer.Option(
        False,
        "--enforced",
        "-e",
        help="Exit with error code if the quota is exceeded"
    ),
):
    """Check a user's monthly message quota."""
    try:
        decision = _accounting(ctx).billing.check_quota(user_id)
    except Exception as e:
        _fail(e)

    verdict = "[green]ALLOWED[/]" if decision.allowed else "[red]DENIED[/]"
    status = decision.status.value if decision.status else "none"
    console.print(f"\n[bold]Quota:[/bold] {verdict} ({decision.reason})")
    console.print(f"Tier: {decision.tier.value}, status: {status}")
    console.print(
        f"Messages this month: {decision.message_count:,} / {_format_limit(decision.limit)}"
    )
    if decision.overage:
        console.print(
            f"Overage: {decision.overage:,} messages, "
            f"{_format_currency(decision.overage_charge)}"
        )
    if enforced and not decision.allowed:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def cancel(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User whose subscription to cancel"),
    at_period_end: bool = typer.Option(
        False,
        "--at-period-end",
        help="Keep the subscription until the current period ends"
    ),
    reason: Optional[str] = typer.Option(None, "--reason", help="Cancellation reason"),
):
    """Cancel a user's subscription."""
    try:
        subscription = _accounting(ctx).billing.cancel(user_id, at_period_end, reason)
    except Exception as e:
        _fail(e)
    if at_period_end:
        console.print(
            f"[green]✓[/] Subscription ends {subscription.current_period_end:%Y-%m-%d}"
        )
    else:
        console.print("[green]✓[/] Subscription canceled")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def invoice(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to invoice"),
    period_id: Optional[str] = typer.Option(
        None,
        "--period-id",
        help="Billing period to invoice (defaults to the latest)"
    ),
):
    """Generate an invoice for a user's billing period."""
    try:
        billing = _accounting(ctx).billing
        if period_id is None:
            history = billing.get_billing_history(user_id)
            if not history.billing_periods:
                raise ValueError(f"No billing periods for user {user_id}")
            period_id = history.billing_periods[0].period_id
        issued = billing.generate_invoice(period_id)
    except Exception as e:
        _fail(e)

    table = Table(title=f"Invoice {issued.invoice_id}")
    table.add_column("Item")
    table.add_column("Qty", justify="right")
    table.add_column("Amount", justify="right")
    for item in issued.items:
        table.add_row(item.description, str(item.quantity), _format_currency(item.total_price))
    table.add_row("Subtotal", "", _format_currency(issued.subtotal))
    table.add_row("Taxes", "", _format_currency(issued.taxes))
    table.add_row("[bold]Total[/bold]", "", f"[bold]{_format_currency(issued.total)}[/bold]")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
