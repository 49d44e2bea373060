"""InsightX CLI — primary user interface.

Usage:
    insightx status                   # Show data dir, LLM and last run
    insightx analyze                  # Mine new browsing activity for insights
    insightx insights                 # List current insights
    insightx act <insight-id>         # Execute an insight's action
    insightx complete <insight-id>    # Mark an insight as done
    insightx workflows                # List saved workflows
    insightx save-workflow <id>       # Promote a workflow insight
    insightx run-workflow <id>        # Reopen a saved workflow's tabs
"""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

console = Console()


def _manager(user: str):
    from insightx.config import load_config
    from insightx.lifecycle import InsightsManager

    config = load_config()
    config.ensure_data_dir()
    return InsightsManager.from_config(user, config)


def _print_result(result) -> None:
    if result.success:
        console.print(f"[green]{result.message or 'Done.'}[/green]")
    else:
        console.print(f"[red]{result.error}[/red]")


@click.group()
@click.version_option()
@click.option("--user", envvar="INSIGHTX_USER", default="default", show_default=True, help="User id")
@click.pass_context
def cli(ctx: click.Context, user: str) -> None:
    """InsightX: Notice what you keep doing. Finish what you started."""
    ctx.obj = {"user": user}


# ── STATUS ────────────────────────────────────────────────────


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show current InsightX status."""
    from insightx.config import load_config
    from insightx.storage import UserStore

    config = load_config()
    user = ctx.obj["user"]
    store = UserStore(config.data_dir, user)

    console.print("\n[bold]InsightX Status[/bold]\n")
    console.print(f"  User:            {user}")
    console.print(f"  Data Dir:        {store.user_dir}")
    console.print(f"  LLM Provider:    {config.llm_provider}")
    console.print(f"  LLM Model:       {config.llm_model}")

    has_key = bool(config.anthropic_api_key or config.openai_api_key) or config.llm_provider == "ollama"
    if has_key:
        console.print("  API Key:         [green]Configured[/green]")
    else:
        console.print("  API Key:         [yellow]Not set[/yellow] (set ANTHROPIC_API_KEY or OPENAI_API_KEY)")

    metadata = store.load_metadata()
    if metadata:
        console.print(f"  Last Run Up To:  {metadata.last_generation_timestamp:%Y-%m-%d %H:%M}")
        console.print(f"  Generated:       {metadata.total_insights_generated} insights")
        console.print(f"  Completed:       {metadata.total_insights_acted_upon}")
    else:
        console.print("  Last Run:        [dim]never[/dim]")

    insights = store.load_insights()
    console.print(f"  Open Insights:   {sum(1 for i in insights if i.is_open)}")
    console.print(f"  Saved Workflows: {len(store.load_workflows())}")
    console.print(f"  Version:         {_get_version()}")
    console.print()


# ── ANALYZE ───────────────────────────────────────────────────


@cli.command()
@click.pass_context
def analyze(ctx: click.Context) -> None:
    """Mine activity recorded since the last run."""
    manager = _manager(ctx.obj["user"])
    console.print(f"Analyzing with {manager.config.llm_provider}/{manager.config.llm_model}...")

    insights = asyncio.run(manager.analyze())

    console.print(f"\n[green]Analysis complete.[/green] {len(insights)} insights.")
    _show_insights_table(insights)


# ── INSIGHTS ──────────────────────────────────────────────────


@cli.command()
@click.option("--all", "show_all", is_flag=True, help="Include completed insights")
@click.option("--report", "as_report", is_flag=True, help="Plain-text report instead of a table")
@click.pass_context
def insights(ctx: click.Context, show_all: bool, as_report: bool) -> None:
    """List current insights."""
    from insightx.inference.reporter import format_insights_report

    manager = _manager(ctx.obj["user"])
    items = asyncio.run(manager.get_insights())

    if as_report:
        console.print(format_insights_report(items), markup=False, highlight=False)
        return
    if not show_all:
        items = [i for i in items if i.is_open]
    if not items:
        console.print("[yellow]No open insights. Run 'insightx analyze' after some browsing.[/yellow]")
        return
    _show_insights_table(items)


@cli.command()
@click.argument("insight_id")
@click.pass_context
def act(ctx: click.Context, insight_id: str) -> None:
    """Execute an insight's action (open tabs, resume, set a reminder)."""
    manager = _manager(ctx.obj["user"])
    _print_result(asyncio.run(manager.execute_insight_action(insight_id)))


@cli.command()
@click.argument("insight_id")
@click.pass_context
def complete(ctx: click.Context, insight_id: str) -> None:
    """Mark an insight as completed."""
    manager = _manager(ctx.obj["user"])
    _print_result(asyncio.run(manager.mark_completed(insight_id)))


# ── WORKFLOWS ─────────────────────────────────────────────────


@cli.command()
@click.pass_context
def workflows(ctx: click.Context) -> None:
    """List saved workflows, most recently used first."""
    from insightx.inference.reporter import format_workflows_report
    from insightx.workflows import WorkflowAutomation

    automation = WorkflowAutomation(_manager(ctx.obj["user"]))
    console.print(format_workflows_report(automation.get_saved_workflows()), markup=False, highlight=False)


@cli.command("save-workflow")
@click.argument("insight_id")
@click.option("--name", default=None, help="Custom workflow name")
@click.pass_context
def save_workflow(ctx: click.Context, insight_id: str, name: str | None) -> None:
    """Promote a detected workflow insight to a saved workflow."""
    from insightx.workflows import WorkflowAutomation

    automation = WorkflowAutomation(_manager(ctx.obj["user"]))
    result = asyncio.run(automation.save_workflow_as_agent(insight_id, name))
    if result.success and result.workflow:
        console.print(f"[green]Saved '{result.workflow.name}'[/green] ({result.workflow.id})")
    else:
        _print_result(result)


@cli.command("run-workflow")
@click.argument("workflow_id")
@click.pass_context
def run_workflow(ctx: click.Context, workflow_id: str) -> None:
    """Open every tab of a saved workflow."""
    from insightx.workflows import WorkflowAutomation

    automation = WorkflowAutomation(_manager(ctx.obj["user"]))
    _print_result(automation.execute_workflow(workflow_id))


@cli.command("rename-workflow")
@click.argument("workflow_id")
@click.argument("new_name")
@click.pass_context
def rename_workflow(ctx: click.Context, workflow_id: str, new_name: str) -> None:
    """Rename a saved workflow."""
    from insightx.workflows import WorkflowAutomation

    automation = WorkflowAutomation(_manager(ctx.obj["user"]))
    _print_result(automation.rename_workflow(workflow_id, new_name))


@cli.command("delete-workflow")
@click.argument("workflow_id")
@click.pass_context
def delete_workflow(ctx: click.Context, workflow_id: str) -> None:
    """Delete a saved workflow."""
    from insightx.workflows import WorkflowAutomation

    automation = WorkflowAutomation(_manager(ctx.obj["user"]))
    _print_result(automation.delete_workflow(workflow_id))


# ── Helpers ───────────────────────────────────────────────────


def _show_insights_table(items: list) -> None:
    """Display insights as a Rich table."""
    if not items:
        return

    table = Table(title="Proactive Insights")
    table.add_column("Type", style="cyan")
    table.add_column("Title", style="white", max_width=45)
    table.add_column("Status", style="white")
    table.add_column("Score", style="yellow", justify="right")
    table.add_column("Id", style="dim", max_width=40)

    status_colors = {
        "pending": "white",
        "in_progress": "yellow",
        "completed": "green",
    }

    for i in sorted(items, key=lambda i: i.relevance_score, reverse=True):
        color = status_colors.get(i.status.value, "white")
        table.add_row(
            i.type.value,
            i.title[:45],
            f"[{color}]{i.status.value}[/{color}]",
            f"{i.relevance_score:.2f}",
            i.id,
        )

    console.print(table)


def _get_version() -> str:
    try:
        from insightx import __version__
        return __version__
    except ImportError:
        return "unknown"


if __name__ == "__main__":
    cli()
