"""
CLI interface for Feature Gate.

Provides operator access to flags, tenant overrides, kill switches and
ad-hoc evaluation.
"""

import logging
import os
import sys
from datetime import datetime
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from feature_gate.config.loader import EvaluatorConfig, load_evaluator_config
from feature_gate.core.analytics import UsageAnalyticsEngine
from feature_gate.core.context import EvaluationContext
from feature_gate.core.evaluator import EvaluationReason, FeatureFlagEvaluator
from feature_gate.core.rollout import RolloutEngine
from feature_gate.storage.db import DB_PATH_ENV_VAR, DEFAULT_DB_PATH
from feature_gate.storage.models import FlagDefinition
from feature_gate.storage.repository import FlagRepository, FlagStoreError

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_PATH_ENV_VAR = "FEATURE_GATE_CONFIG"


class _State:
    db_path: str = DEFAULT_DB_PATH


state = _State()


def get_repository() -> FlagRepository:
    return FlagRepository(state.db_path)


def _load_config(config_path: Optional[str]) -> EvaluatorConfig:
    path = config_path or os.environ.get(CONFIG_PATH_ENV_VAR)
    if not path:
        return EvaluatorConfig.default()
    return load_evaluator_config(path)


def _fail(error: Exception) -> None:
    if isinstance(error, FlagStoreError) and "no such table" in str(error).lower():
        console.print("[red]Error:[/] database is not initialized")
        console.print("Run `feature-gate init` to create the flag tables")
    else:
        console.print(f"[red]Error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", envvar=DB_PATH_ENV_VAR, help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Feature Gate CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    state.db_path = db
    if ctx.invoked_subcommand is None:
        console.print("Feature Gate - Use --help to see available commands")


@app.command()
def init():
    """Initialize the Feature Gate database."""
    try:
        get_repository().initialize_schema()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("create-flag")
def create_flag(
    key: str = typer.Argument(..., help="Flag key"),
    description: str = typer.Option("", "--description", "-d"),
    enabled: bool = typer.Option(False, "--enabled/--disabled", help="Default value for tenants without an override"),
    owner: str = typer.Option("", "--owner", "-o"),
    expires_at: Optional[datetime] = typer.Option(None, "--expires", help="Expiry date, ISO-8601"),
):
    """Create a new feature flag."""
    try:
        flag = FlagDefinition(
            key=key,
            description=description,
            default_enabled=enabled,
            owner=owner,
            created_at=datetime.now(),
            expires_at=expires_at,
        )
        get_repository().create_flag(flag)
        console.print(f"[green]✓[/] Created flag [bold]{key}[/] (default {'on' if enabled else 'off'})")
        sys.exit(EXIT_CODE_PASS)
    except (FlagStoreError, ValueError) as e:
        _fail(e)


@app.command("update-flag")
def update_flag(
    key: str = typer.Argument(..., help="Flag key"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    enabled: Optional[bool] = typer.Option(None, "--enabled/--disabled"),
    owner: Optional[str] = typer.Option(None, "--owner", "-o"),
    expires_at: Optional[datetime] = typer.Option(None, "--expires"),
):
    """Update fields of an existing flag."""
    try:
        flag = get_repository().update_flag(
            key,
            description=description,
            default_enabled=enabled,
            owner=owner,
            expires_at=expires_at,
        )
        console.print(f"[green]✓[/] Updated flag [bold]{flag.key}[/]")
        sys.exit(EXIT_CODE_PASS)
    except FlagStoreError as e:
        _fail(e)


@app.command("list-flags")
def list_flags():
    """List all flags with their defaults and kill switch state."""
    try:
        repository = get_repository()
        flags = repository.list_flags()
        global_switch = repository.get_kill_switch()

        if global_switch is not None and global_switch.enabled:
            console.print(f"[bold red]Global kill switch engaged:[/] {global_switch.reason}")

        if not flags:
            console.print("\n[dim]No flags defined.[/]")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title="Feature Flags")
        table.add_column("Key", style="bold")
        table.add_column("Default")
        table.add_column("Kill Switch")
        table.add_column("Owner")
        table.add_column("Expires")
        table.add_column("Description")

        for flag in flags:
            switch = repository.get_kill_switch(flag.key)
            engaged = switch is not None and switch.enabled
            table.add_row(
                flag.key,
                "[green]on[/]" if flag.default_enabled else "off",
                "[red]engaged[/]" if engaged else "-",
                flag.owner or "-",
                flag.expires_at.date().isoformat() if flag.expires_at else "-",
                flag.description,
            )

        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except FlagStoreError as e:
        _fail(e)


@app.command("set-override")
def set_override(
    tenant: str = typer.Argument(..., help="Tenant ID"),
    flag: str = typer.Argument(..., help="Flag key"),
    enabled: bool = typer.Option(..., "--enable/--disable", help="Value forced for the tenant"),
    updated_by: str = typer.Option("cli", "--by", help="Operator recorded on the override"),
):
    """Force a flag on or off for one tenant."""
    try:
        get_repository().set_tenant_override(tenant, flag, enabled, updated_by)
        state_label = "[green]on[/]" if enabled else "[red]off[/]"
        console.print(f"[green]✓[/] {flag} is {state_label} for tenant {tenant}")
        sys.exit(EXIT_CODE_PASS)
    except FlagStoreError as e:
        _fail(e)


@app.command("remove-override")
def remove_override(
    tenant: str = typer.Argument(..., help="Tenant ID"),
    flag: str = typer.Argument(..., help="Flag key"),
):
    """Remove a tenant override so the tenant falls back to normal evaluation."""
    try:
        if get_repository().remove_tenant_override(tenant, flag):
            console.print(f"[green]✓[/] Removed override of {flag} for tenant {tenant}")
        else:
            console.print(f"[yellow]No override of {flag} for tenant {tenant}[/]")
        sys.exit(EXIT_CODE_PASS)
    except FlagStoreError as e:
        _fail(e)


@app.command("list-overrides")
def list_overrides(flag: str = typer.Argument(..., help="Flag key")):
    """List tenant overrides for a flag."""
    try:
        overrides = get_repository().list_tenant_overrides(flag)
        if not overrides:
            console.print(f"\n[dim]No tenant overrides for {flag}.[/]")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title=f"Overrides for {flag}")
        table.add_column("Tenant", style="bold")
        table.add_column("Value")
        table.add_column("Updated")
        table.add_column("By")
        for override in overrides:
            table.add_row(
                override.tenant_id,
                "[green]on[/]" if override.enabled else "[red]off[/]",
                override.updated_at.strftime("%Y-%m-%d %H:%M"),
                override.updated_by,
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except FlagStoreError as e:
        _fail(e)


@app.command("kill-switch")
def kill_switch(
    activate: bool = typer.Option(..., "--activate/--deactivate", help="Engage or release the switch"),
    flag: Optional[str] = typer.Option(None, "--flag", "-f", help="Flag key; omit for the global switch"),
    reason: str = typer.Option("", "--reason", "-r"),
    activated_by: str = typer.Option("cli", "--by"),
):
    """Engage or release an emergency kill switch."""
    try:
        get_repository().set_kill_switch(flag, activate, reason, activated_by)
        scope = f"flag {flag}" if flag else "all flags"
        if activate:
            console.print(f"[bold red]Kill switch engaged[/] for {scope}")
        else:
            console.print(f"[green]✓[/] Kill switch released for {scope}")
        console.print("[dim]Running evaluators pick this up on their next evaluation.[/]")
        sys.exit(EXIT_CODE_PASS)
    except FlagStoreError as e:
        _fail(e)


@app.command()
def evaluate(
    tenant: str = typer.Argument(..., help="Tenant ID"),
    flag: str = typer.Argument(..., help="Flag key"),
    user: Optional[str] = typer.Option(None, "--user", "-u"),
    region: Optional[str] = typer.Option(None, "--region"),
    cohort: Optional[str] = typer.Option(None, "--cohort"),
    segments: Optional[List[str]] = typer.Option(None, "--segment", "-s", help="User segment, repeatable"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Evaluator YAML config"),
):
    """Evaluate a flag for a tenant and show which rule decided it."""
    try:
        config = _load_config(config_path)
        evaluator = FeatureFlagEvaluator(get_repository(), config=config)
        context = EvaluationContext(
            tenant_id=tenant,
            user_id=user,
            region=region,
            user_cohort=cohort,
            metadata={"segments": list(segments)} if segments else {},
        )
        result = evaluator.evaluate(tenant, flag, context)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(e)
        return

    if result.reason is EvaluationReason.STORE_ERROR:
        console.print("[red]Error:[/] flag store could not be read; fail-safe value is off")
        console.print("Run `feature-gate init` if the database has not been created")
        sys.exit(EXIT_CODE_FAIL)

    value = "[bold green]ENABLED[/]" if result.enabled else "[bold red]DISABLED[/]"
    console.print(f"\n[bold]Flag:[/bold] {flag}")
    console.print(f"[bold]Tenant:[/bold] {tenant}")
    console.print(f"[bold]Result:[/bold] {value}")
    console.print(f"[bold]Reason:[/bold] {result.reason.value}")
    if result.variant is not None:
        console.print(f"[bold]Variant:[/bold] {result.variant.variant_name} ({result.variant.variant_id})")
    sys.exit(EXIT_CODE_PASS)


@app.command("rollout-status")
def rollout_status(
    flag: str = typer.Argument(..., help="Flag key"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Evaluator YAML config"),
):
    """Show where a flag's rollout stands on its schedule."""
    try:
        config = _load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(e)
        return

    rollout = config.rollouts.get(flag)
    if rollout is None:
        _fail(ValueError(f"No rollout configured for flag '{flag}'"))
        return

    metrics = RolloutEngine().rollout_metrics(rollout)
    console.print(f"\n[bold]Rollout: {flag}[/bold]")
    console.print(f"Current percentage: {metrics.current_percentage:.2f}%")
    if rollout.is_phased:
        console.print(f"Ramp: {rollout.initial_percentage:.0f}% -> {rollout.percentage:.0f}%")
        console.print(f"Phase: {metrics.current_phase}/{metrics.phases} ({metrics.progress:.0%} of window)")
        hours = metrics.time_to_next_phase_ms / 3_600_000
        console.print(f"Next phase in: {hours:.1f}h")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def analytics(
    flag: str = typer.Argument(..., help="Flag key"),
    tenant: str = typer.Option("demo-tenant", "--tenant", "-t"),
    users: int = typer.Option(200, "--users", "-n", help="Number of synthetic users to evaluate"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Evaluator YAML config"),
):
    """Evaluate a flag for a batch of synthetic users and report usage analytics."""
    if users <= 0:
        _fail(ValueError("--users must be > 0"))
    try:
        config = _load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(e)
        return

    engine = UsageAnalyticsEngine(history_limit=config.analytics.history_limit)
    evaluator = FeatureFlagEvaluator(get_repository(), analytics=engine, config=config)
    regions = ["us-east-1", "us-west-2", "eu-west-1"]

    for i in range(users):
        context = EvaluationContext(
            tenant_id=tenant,
            user_id=f"user-{i}",
            region=regions[i % len(regions)],
        )
        evaluator.evaluate(tenant, flag, context)
    evaluator.dispatcher.drain()

    _display_analytics(flag, engine)
    sys.exit(EXIT_CODE_PASS)


def _display_analytics(flag: str, engine: UsageAnalyticsEngine):
    """Display metrics, forecast and recommendations for one flag."""
    metrics = engine.get_metrics(flag)
    if metrics is None:
        console.print("\n[dim]No evaluations recorded.[/]")
        return

    console.print(f"\n[bold]Usage Analytics: {flag}[/bold]")
    console.print("-" * 40)
    console.print(f"Evaluations: {metrics.evaluation_count:,}")
    console.print(f"Enabled rate: {metrics.enabled_rate * 100:.1f}%")
    console.print(f"Avg response time: {metrics.avg_response_time:.3f}ms")
    console.print(f"Error rate: {metrics.error_rate * 100:.1f}%")
    console.print(f"Unique users: {metrics.unique_users:,}")

    forecast = engine.predict_load(flag)
    console.print("\n[bold]Forecast (24h)[/bold]")
    console.print(f"Predicted load: {forecast.predicted_load:,.1f}")
    console.print(f"Confidence: {forecast.confidence:.2f}")
    console.print(f"Trend: {forecast.trend.value}")

    recommendations = engine.generate_optimization_recommendations(flag)
    if recommendations:
        table = Table(title="Recommendations")
        table.add_column("Priority")
        table.add_column("Type")
        table.add_column("Description")
        table.add_column("Action")
        for rec in recommendations:
            table.add_row(rec.priority.name, rec.type.value, rec.description, rec.implementation)
        console.print(table)
    else:
        console.print("\n[dim]No recommendations.[/]")


if __name__ == "__main__":
    app()
