"""
CLI interface for AI Route Guard.

Provides command-line access to routing, forecasting and governance.
"""

import sqlite3
import sys
from datetime import date, datetime, timedelta
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_route_guard.config.loader import EngineConfig, load_engine_config
from ai_route_guard.core.adjustments import BudgetState
from ai_route_guard.core.engine import ForecastReport, RoutingEngine
from ai_route_guard.core.forecast import RiskLevel, compute_budget_risk
from ai_route_guard.core.governance import GovernanceError, GovernanceService
from ai_route_guard.core.scorer import NoAvailableProvider
from ai_route_guard.storage.db import DEFAULT_DB_PATH
from ai_route_guard.storage.models import ArmKey
from ai_route_guard.storage.repository import RoutingRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_RISK_STYLE = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
}

_state = {"db_path": DEFAULT_DB_PATH, "config_path": None}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(
        DEFAULT_DB_PATH,
        "--db",
        envvar="AI_ROUTE_GUARD_DB",
        help="Path to the routing database"
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML file overriding engine settings"
    ),
):
    """AI Route Guard CLI."""
    _state["db_path"] = db
    _state["config_path"] = config
    if ctx.invoked_subcommand is None:
        console.print("AI Route Guard - Use --help to see available commands")


def _engine() -> RoutingEngine:
    config_path = _state["config_path"]
    config = load_engine_config(config_path) if config_path else EngineConfig()
    return RoutingEngine(RoutingRepository(_state["db_path"]), config)


def _governance(engine: RoutingEngine) -> GovernanceService:
    return GovernanceService(
        engine.repository, engine.store, engine=engine, config=engine.config.scorer
    )


def _fail(error: Exception) -> None:
    """Print an error and exit with the failure code."""
    if isinstance(error, sqlite3.OperationalError) and "no such table" in str(error).lower():
        console.print("[red]Error:[/] database is not initialized. Run `ai-route-guard init` first.")
    else:
        console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


def _risk(level: RiskLevel) -> str:
    return f"[{_RISK_STYLE[level]}]{level.value}[/]"


@app.command()
def init():
    """Initialize the AI Route Guard database."""
    try:
        initialize_schema(_state["db_path"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(
    scope: Optional[str] = typer.Option(None, "--scope", "-s", help="Only show one scope"),
):
    """Show every provider arm with its posteriors and moving averages."""
    try:
        arms = RoutingRepository(_state["db_path"]).list_arms(scope=scope, active_only=False)
    except Exception as e:
        _fail(e)

    if not arms:
        console.print("\n[bold yellow]No provider arms recorded yet[/]")
        console.print("Route some calls through the SDK to start learning.\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Provider arms")
    for column in ("Scope", "Arm", "Alpha", "Beta", "Samples", "Latency ms", "Success", "Quality", "Active"):
        table.add_column(column)
    for arm in arms:
        table.add_row(
            arm.key.scope,
            arm.arm_id,
            f"{arm.ts_alpha:.2f}",
            f"{arm.ts_beta:.2f}",
            str(arm.sample_count),
            f"{arm.ewma_latency_ms:,.0f}",
            f"{arm.ewma_success_rate:.1%}",
            f"{arm.ewma_quality:.2f}",
            "yes" if arm.active else "no",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def forecast(
    scope: str = typer.Option("global", "--scope", "-s", help="Routing scope"),
    as_of: Optional[str] = typer.Option(None, "--date", "-d", help="Last day of history (YYYY-MM-DD)"),
    budget: Optional[float] = typer.Option(
        None,
        "--budget",
        "-b",
        help="Also classify the projection against this budget (nothing is saved)"
    ),
):
    """
    Recompute the cost forecast and SLA drift of a scope.

    Publishes the resulting adjustments: cost weight boost, provider
    penalties and posterior decay.
    """
    try:
        day = date.fromisoformat(as_of) if as_of else None
        engine = _engine()
        report = engine.recompute_forecast(scope, day)
    except Exception as e:
        _fail(e)

    _display_forecast(report)
    if budget is not None:
        what_if = compute_budget_risk(
            report.forecast.projected_monthly_cost, budget, engine.config.forecast
        )
        console.print(f"Budget risk against {_format_currency(budget)}: {_risk(what_if)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def route(
    candidates: List[str] = typer.Argument(..., help="Candidate arms as provider::model"),
    scope: str = typer.Option("global", "--scope", "-s", help="Routing scope"),
):
    """Rank candidate providers for one request without calling them."""
    try:
        engine = _engine()
        decision = engine.route(candidates, scope)
        snapshot = engine.snapshot(scope)
    except NoAvailableProvider as e:
        console.print(f"[red]No provider available:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        _fail(e)

    console.print(f"[bold]Selected:[/bold] {decision.selected} ({decision.strategy.value})")
    if snapshot.budget_state != BudgetState.NO_CONFIG:
        console.print(
            f"Budget: {snapshot.budget_state.value} "
            f"({_format_currency(snapshot.month_to_date_cost)} of "
            f"{_format_currency(snapshot.monthly_budget)} this month)"
        )
    if decision.diversity_triggered:
        console.print("[yellow]Diversity guard active:[/] one arm took nearly all recent calls")
    table = Table()
    for column in ("Rank", "Arm", "Score", "Quality", "Latency", "Stability", "Cost", "Confidence", "Penalty"):
        table.add_column(column)
    for rank, s in enumerate(decision.breakdown, start=1):
        table.add_row(
            str(rank),
            s.arm_id,
            f"{s.final_score:.4f}",
            f"{s.quality:.2f}",
            f"{s.latency_score:.2f}",
            f"{s.stability:.2f}",
            f"{s.cost_score:.2f}",
            f"{s.confidence:.2f}",
            f"x{s.penalty_multiplier:.2f}" if s.penalty_multiplier < 1 else "-",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def penalties(
    scope: Optional[str] = typer.Option(None, "--scope", "-s", help="Only show one scope"),
):
    """List penalties that are still in effect."""
    try:
        engine = _engine()
        active = _governance(engine).list_penalties(scope)
    except Exception as e:
        _fail(e)

    if not active:
        console.print("No active penalties")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Active penalties")
    for column in ("ID", "Scope", "Arm", "Multiplier", "Reason", "Source", "Expires"):
        table.add_column(column)
    for p in active:
        table.add_row(
            p.penalty_id, p.scope, p.arm_id, f"{p.multiplier:.2f}", p.reason, p.source,
            p.expires_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def audit(
    scope: Optional[str] = typer.Option(None, "--scope", "-s", help="Only show one scope"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
):
    """Show the most recent governance actions."""
    try:
        entries = RoutingRepository(_state["db_path"]).audit_log(limit=limit, scope=scope)
    except Exception as e:
        _fail(e)

    if not entries:
        console.print("No governance actions recorded")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Governance audit log")
    for column in ("Time", "Action", "Actor", "Scope"):
        table.add_column(column)
    for entry in entries:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"), entry.action, entry.actor_id, entry.scope or "-"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("switch-strategy")
def switch_strategy(
    scope: str = typer.Argument(..., help="Routing scope"),
    strategy: str = typer.Argument(..., help="hybrid, cost_aware or thompson"),
    actor: str = typer.Option("cli", "--actor", help="Recorded in the audit log"),
):
    """Change the routing strategy of a scope."""
    try:
        engine = _engine()
        _governance(engine).switch_strategy(scope, strategy, actor)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Scope {scope} now routes with {strategy}")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-posterior")
def reset_posterior(
    arm_id: str = typer.Argument(..., help="Arm as provider::model"),
    scope: str = typer.Option("global", "--scope", "-s", help="Routing scope"),
    actor: str = typer.Option("cli", "--actor", help="Recorded in the audit log"),
):
    """Reset an arm's posteriors to neutral priors."""
    try:
        engine = _engine()
        _governance(engine).reset_posterior(ArmKey.parse(arm_id, scope), actor)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Posterior of {arm_id} reset")
    sys.exit(EXIT_CODE_PASS)


@app.command("apply-penalty")
def apply_penalty(
    arm_id: str = typer.Argument(..., help="Arm as provider::model"),
    scope: str = typer.Option("global", "--scope", "-s", help="Routing scope"),
    minutes: int = typer.Option(10, "--minutes", "-m", help="Penalty duration"),
    reason: str = typer.Option("manual", "--reason", "-r", help="Why the arm is penalized"),
    multiplier: Optional[float] = typer.Option(None, "--multiplier", help="Score multiplier in (0, 1]"),
    actor: str = typer.Option("cli", "--actor", help="Recorded in the audit log"),
):
    """Temporarily dampen an arm's routing score."""
    try:
        engine = _engine()
        penalty = _governance(engine).apply_penalty(
            ArmKey.parse(arm_id, scope), minutes, reason, actor, multiplier=multiplier
        )
    except Exception as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Penalty {penalty.penalty_id} on {arm_id} until "
        f"{penalty.expires_at.strftime('%Y-%m-%d %H:%M')}"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("clear-penalty")
def clear_penalty(
    penalty_id: str = typer.Argument(..., help="Penalty ID"),
    actor: str = typer.Option("cli", "--actor", help="Recorded in the audit log"),
):
    """Remove a penalty before it expires."""
    try:
        engine = _engine()
        _governance(engine).clear_penalty(penalty_id, actor)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Penalty {penalty_id} cleared")
    sys.exit(EXIT_CODE_PASS)


@app.command("update-budget")
def update_budget(
    scope: str = typer.Argument(..., help="Routing scope"),
    amount: float = typer.Argument(..., help="Monthly budget"),
    mode: Optional[str] = typer.Option(
        None, "--mode", help="Routing mode: performance, balanced or cost_saver"
    ),
    actor: str = typer.Option("cli", "--actor", help="Recorded in the audit log"),
):
    """Set the monthly budget of a scope."""
    try:
        engine = _engine()
        updated = _governance(engine).update_budget(scope, amount, actor, routing_mode=mode)
    except Exception as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Budget of {scope} set to {_format_currency(updated.monthly_budget)} "
        f"({updated.routing_mode})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def aggregate(
    day: Optional[str] = typer.Option(None, "--date", "-d", help="Day to aggregate (default: yesterday)"),
):
    """Roll one day of recorded calls into cost and performance history."""
    try:
        target = date.fromisoformat(day) if day else (datetime.now() - timedelta(days=1)).date()
        totals = _engine().aggregate_daily(target)
    except Exception as e:
        _fail(e)

    if not totals:
        console.print(f"No calls recorded on {target.isoformat()}")
        sys.exit(EXIT_CODE_PASS)
    for scope, cost in sorted(totals.items()):
        console.print(f"{scope}: {_format_currency(cost)}")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _display_forecast(report: ForecastReport):
    """Display a forecast report in a clean, financial format."""
    f = report.forecast
    sla = report.sla
    adj = report.adjustments
    console.print(f"\n[bold]Forecast for {report.scope}[/bold] (as of {report.as_of.isoformat()})")
    console.print("-" * 40)
    console.print(f"Burn rate: {_format_currency(f.burn_rate)}/day")
    console.print(f"Projected monthly cost: {_format_currency(f.projected_monthly_cost)}")
    console.print(f"Smoothed daily cost: {_format_currency(f.smoothed_daily_cost)}")
    console.print(f"Budget risk: {_risk(f.budget_risk)}")
    console.print(f"Latency drift: {sla.latency_drift:+.1%}")
    console.print(f"Error rate trend: {sla.error_rate_trend:+.1%}")
    console.print(f"SLA risk: {_risk(sla.sla_risk_level)}")
    console.print(f"Drift score: {sla.performance_drift_score:.2f}")
    console.print(f"Overall risk: {_risk(report.overall_risk)}")
    console.print(
        f"\nAdjustments: cost weight x{adj.cost_weight_multiplier:.3f}, "
        f"provider penalty x{adj.provider_penalty:.2f}, "
        f"exploration {'on' if adj.exploration_boost else 'off'}"
    )
    if report.decayed_arms:
        console.print(f"Decayed posteriors of {report.decayed_arms} arms")
    for penalty in report.auto_penalties:
        console.print(f"[yellow]Penalized[/] {penalty.arm_id} ({penalty.reason})")


if __name__ == "__main__":
    app()
