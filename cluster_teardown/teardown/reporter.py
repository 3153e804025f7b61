"""Teardown plan and result formatting and display."""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..models.teardown_result import TeardownOutcome, TeardownResult
from .planner import DeletionPlan


class TeardownReporter:
    """Format and display deletion plans and teardown results."""

    def __init__(self, console: Optional[Console] = None):
        """Initialize teardown reporter.

        Args:
            console: Rich console instance (creates new one if not provided)
        """
        self.console = console or Console()

    def display_plan(self, plan: DeletionPlan, cluster_name: str) -> None:
        """Display a dry-run deletion plan.

        Args:
            plan: Plan produced by DryRunReporter
            cluster_name: Cluster the plan belongs to
        """
        self.console.print()
        self.console.print(
            Panel(
                f"[bold]Deletion Plan[/bold]\n"
                f"Cluster: {cluster_name}\n"
                f"Resources: {plan.total_resources} in {len(plan.passes)} passes",
                style="cyan",
            )
        )
        self.console.print()

        if plan.is_empty:
            self.console.print("[green]✓ No resources found for cluster[/green]", style="bold")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Pass", justify="right", style="yellow", width=6)
        table.add_column("Type", style="cyan")
        table.add_column("Name", style="white")
        table.add_column("ID", style="dim")

        for planned in plan.passes:
            for entry in planned.entries:
                table.add_row(
                    str(planned.number),
                    str(entry.get("type", "")),
                    str(entry.get("name", "")),
                    str(entry.get("id", "")),
                )

        self.console.print(table)

        if plan.blocked:
            self.console.print()
            self.console.print(f"[bold red]Blocked ({len(plan.blocked)})[/bold red] - would never become deletable")
            for entry in plan.blocked:
                blockers = ", ".join(entry.get("blocked_by", [])) or "(none)"
                self.console.print(f"  {entry.get('type')}:{entry.get('id')} blocked by {blockers}")

        if plan.skipped:
            self.console.print()
            self.console.print(f"[bold yellow]Shared ({len(plan.skipped)})[/bold yellow] - will not be deleted")
            for entry in plan.skipped:
                self.console.print(f"  {entry.get('type')}:{entry.get('id')}")

        self.console.print()

    def display_result(self, result: TeardownResult) -> None:
        """Display the result of a live teardown run.

        Every residual resource is listed with its last error, or with the
        residual keys still blocking it when it was never attempted.
        """
        self._display_summary(result)

        if len(result.residual) == 0:
            if result.outcome == TeardownOutcome.COMPLETED:
                self.console.print("[green]✓ Deleted all resources[/green]", style="bold")
            return

        table = Table(title="Remaining Resources", show_header=True, header_style="bold red")
        table.add_column("Resource", style="cyan")
        table.add_column("Reason", style="white")

        for key in sorted(result.residual.keys()):
            error = result.errors.get(key)
            if error is not None:
                reason = f"[red]{error.cause}[/red]"
            else:
                blockers = result.blockers_of(key)
                reason = f"blocked by {', '.join(blockers)}" if blockers else "not attempted"
            table.add_row(key, reason)

        self.console.print(table)
        self.console.print()

    def _display_summary(self, result: TeardownResult) -> None:
        """Display summary statistics."""
        table = Table(title="Summary", show_header=True, header_style="bold magenta")
        table.add_column("Status", style="cyan", width=15)
        table.add_column("Count", justify="right", style="yellow", width=10)

        table.add_row("Deleted", f"[green]{len(result.deleted_keys)}[/green]")
        if result.skipped:
            table.add_row("Shared", str(len(result.skipped)))
        if len(result.residual) > 0:
            table.add_row("Remaining", f"[red]{len(result.residual)}[/red]")
        table.add_row("━" * 15, "━" * 10, style="dim")
        table.add_row("[bold]Passes", f"[bold]{len(result.passes)}")
        table.add_row("[bold]Outcome", f"[bold]{result.outcome.value}")

        self.console.print()
        self.console.print(table)
        self.console.print()
