"""CLI interface for the WBS orchestrator."""

import warnings

# Suppress DeprecationWarnings from the Smartsheet SDK only (not all libraries)
warnings.filterwarnings("ignore", category=DeprecationWarning, module=r"smartsheet\b")

import asyncio
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from .config import AppConfig, load_config
from .errors import WbsError
from .service import WbsService
from .sync import PortfolioSyncResult

app = typer.Typer(
    name="wbs-orchestrator",
    help="Provision and synchronise project WBS sheets in Smartsheet",
    no_args_is_help=True,
)
webhook_app = typer.Typer(help="Manage the portfolio sheet webhook", no_args_is_help=True)
app.add_typer(webhook_app, name="webhook")
console = Console()

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config file"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]


def get_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from file and environment."""
    try:
        return load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(1) from None


def run_async(coro: Any) -> Any:
    """Run an async function synchronously."""
    return asyncio.run(coro)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    import logging

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def run_service(coro: Any) -> Any:
    """Run a service coroutine, printing domain errors and exiting 1."""
    try:
        return run_async(coro)
    except WbsError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1) from None


def _display_portfolio_result(title: str, result: PortfolioSyncResult) -> None:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green")
    for label, value in (
        ("Rows checked", result.checked),
        ("Processed", result.processed),
        ("Projects created", result.created),
        ("Provisioned", result.provisioned),
        ("Skipped", result.skipped),
        ("Workspaces unlinked", result.unlinked),
        ("Pruned", result.pruned),
    ):
        table.add_row(label, str(value))
    console.print(table)

    for row in result.rows:
        prov = row.provisioning
        if prov is None or prov.skipped:
            continue
        for warning in prov.warnings:
            console.print(f"[yellow]⚠ {row.project_code}: {warning}[/yellow]")

    if result.errors:
        console.print(f"\n[red]Errors ({len(result.errors)}):[/red]")
        for error in result.errors:
            console.print(f"  [red]• {error.item}: {error.message}[/red]")
        raise typer.Exit(1)
    console.print(f"\n[green]✓ {result.outcome.value.title()}[/green]")


@app.command()
def verify(config_path: ConfigOption = None, verbose: VerboseOption = False) -> None:
    """Verify the Smartsheet token and the configured sheet and folders."""
    setup_logging(verbose)
    service = WbsService(get_config(config_path))

    console.print("[bold]Verifying Smartsheet access...[/bold]\n")
    results = run_async(service.verify_connection())

    table = Table(title="Connection Status")
    table.add_column("Check", style="cyan")
    table.add_column("Status", style="green")
    for check, ok in results.items():
        status = "[green]✓ OK[/green]" if ok else "[red]✗ Failed[/red]"
        table.add_row(check.replace("_", " ").title(), status)
    console.print(table)

    if not all(results.values()):
        raise typer.Exit(1)


@app.command()
def poll(config_path: ConfigOption = None, verbose: VerboseOption = False) -> None:
    """Reprocess portfolio rows updated since their last sync (webhook fallback)."""
    setup_logging(verbose)
    service = WbsService(get_config(config_path))
    result = run_service(service.poll())
    _display_portfolio_result("Portfolio Poll", result)


@app.command(name="provision-check")
def provision_check(
    verify_existing: Annotated[
        bool,
        typer.Option("--verify", help="Confirm provisioned sheets still exist"),
    ] = False,
    prune: Annotated[
        bool,
        typer.Option("--prune", help="Soft-delete projects no longer in the portfolio"),
    ] = False,
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Provision a WBS workspace for every approved project that lacks one.

    Examples:

        # Provision new projects
        wbs-orchestrator provision-check

        # Also re-provision projects whose WBS sheet was deleted
        wbs-orchestrator provision-check --verify
    """
    setup_logging(verbose)
    service = WbsService(get_config(config_path))
    result = run_service(service.check_new_projects(verify_existing=verify_existing, prune=prune))
    _display_portfolio_result("Provisioning Check", result)


@app.command()
def sync(
    project: Annotated[str, typer.Argument(help="Project id or code")],
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Pull a project's WBS sheet into the local cache."""
    setup_logging(verbose)
    service = WbsService(get_config(config_path))
    result = run_service(service.sync_from_remote(project))

    console.print(
        f"[bold]{project}[/bold]: {result.imported} imported, {result.updated} updated, "
        f"{result.unchanged} unchanged, {result.removed} removed"
    )
    if result.errors:
        for error in result.errors:
            console.print(f"  [red]• {error}[/red]")
        raise typer.Exit(1)


@app.command(name="clear-cache")
def clear_cache(
    project: Annotated[
        str | None,
        typer.Argument(help="Project id or code (all projects when omitted)"),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
    config_path: ConfigOption = None,
) -> None:
    """Delete cached WBS items; the next sync reloads them from Smartsheet."""
    service = WbsService(get_config(config_path))
    if project is None and not yes:
        typer.confirm("Clear cached items of ALL projects?", abort=True)
    try:
        removed = service.clear_cache(project)
    except WbsError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1) from None
    console.print(f"[green]✓ Cleared {removed} cached item(s)[/green]")
    console.print(f"[dim]Database: {service.store.db_path}[/dim]")


@app.command()
def status(config_path: ConfigOption = None) -> None:
    """Show cached projects and their provisioning state."""
    service = WbsService(get_config(config_path))
    stats = service.get_stats()

    console.print(f"[bold]Database:[/bold] {stats.db_path}")
    size_mb = round(stats.db_size_bytes / (1024 * 1024), 2)
    console.print(
        f"[bold]Projects:[/bold] {stats.projects} ({stats.provisioned} provisioned), "
        f"[bold]items:[/bold] {stats.items}, [bold]size:[/bold] {size_mb} MB\n"
    )

    projects = service.list_projects()
    if not projects:
        console.print("[dim]No projects cached yet.[/dim]")
        return

    table = Table(title="Projects")
    table.add_column("Code", style="cyan")
    table.add_column("Title")
    table.add_column("Approval", style="blue")
    table.add_column("WBS Sheet", style="dim")
    table.add_column("Last Synced", style="blue")
    for project in projects:
        table.add_row(
            project.code,
            project.title,
            project.approval_status.value.replace("_", " "),
            str(project.workspace.sheet_id) if project.workspace else "-",
            project.last_synced_at.strftime("%Y-%m-%d %H:%M") if project.last_synced_at else "Never",
        )
    console.print(table)


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to listen on")] = 8000,
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Run the HTTP API (WBS editor backend and webhook receiver)."""
    from .web import run_web

    setup_logging(verbose)
    config = get_config(config_path)
    console.print(f"[cyan]Serving on http://{host}:{port}[/cyan]")
    run_web(config, host=host, port=port)


@webhook_app.command("setup")
def webhook_setup(
    callback_url: Annotated[
        str | None,
        typer.Option("--url", help="Callback URL (defaults to the configured one)"),
    ] = None,
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Create and enable the portfolio sheet webhook."""
    setup_logging(verbose)
    service = WbsService(get_config(config_path))
    hook = run_service(service.setup_webhook(callback_url))
    console.print(f"[green]✓ Webhook {hook.id} ({hook.status or 'enabled'})[/green]")
    console.print(f"[dim]Callback: {hook.callback_url}[/dim]")


@webhook_app.command("list")
def webhook_list(config_path: ConfigOption = None) -> None:
    """List webhooks owned by the token's user."""
    service = WbsService(get_config(config_path))
    hooks = run_service(service.list_webhooks())
    if not hooks:
        console.print("[dim]No webhooks.[/dim]")
        return

    table = Table(title="Webhooks")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Sheet")
    table.add_column("Enabled")
    table.add_column("Status")
    table.add_column("Callback")
    for hook in hooks:
        table.add_row(
            str(hook.id),
            hook.name,
            str(hook.scope_object_id),
            "[green]yes[/green]" if hook.enabled else "[red]no[/red]",
            hook.status or "-",
            hook.callback_url or "-",
        )
    console.print(table)


@webhook_app.command("delete")
def webhook_delete(
    webhook_id: Annotated[int, typer.Argument(help="Webhook ID")],
    config_path: ConfigOption = None,
) -> None:
    """Delete a webhook."""
    service = WbsService(get_config(config_path))
    run_service(service.delete_webhook(webhook_id))
    console.print(f"[green]✓ Webhook {webhook_id} deleted[/green]")


if __name__ == "__main__":
    app()
