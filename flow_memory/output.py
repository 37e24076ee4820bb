"""Terminal output formatting with rich."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from flow_memory.utils import truncate

# Global console instance - auto-detects TTY
console = Console()


def print_error(message: str) -> None:
    """Print error message in red."""
    console.print(f"[red]Error:[/red] {escape(message)}")


def print_success(message: str) -> None:
    """Print success message in green."""
    console.print(f"[green]{message}[/green]")


def print_warning(message: str) -> None:
    """Print warning message in yellow."""
    console.print(f"[yellow]{escape(message)}[/yellow]")


def format_relevance(relevance: int) -> Text:
    """Format a 0-100 relevance score with color based on value.

    Args:
        relevance: Relevance from 0 to 100

    Returns:
        Rich Text object with colored score
    """
    if relevance >= 70:
        color = "green"
    elif relevance >= 40:
        color = "yellow"
    else:
        color = "red"
    return Text(f"{relevance}%", style=color)


def create_stats_table(title: str = "Memory Statistics") -> Table:
    """Create a styled table for statistics.

    Args:
        title: Table title

    Returns:
        Rich Table object
    """
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    return table


def print_fact(item: dict) -> None:
    """Print a recalled or listed fact on one line."""
    scope = "[blue]team[/blue]" if item.get("scope") == "team" else "[dim]local[/dim]"
    model = f" [magenta]({escape(item['model'])})[/magenta]" if item.get("model") else ""
    relevance = ""
    if "relevance" in item:
        relevance = f" {format_relevance(item['relevance']).markup}"
    console.print(
        f"[dim]{item['id']}[/dim]: [bold]{escape(truncate(item['fact'], 100))}[/bold] "
        f"[cyan]\\[{item['category']}][/cyan] {scope}{model}{relevance}"
    )


def print_proposal(proposal: dict) -> None:
    """Print a proposal with its tally."""
    tally = proposal.get("tally") or {}
    origin = " [dim](remote)[/dim]" if proposal.get("source") == "remote" else ""
    console.print(
        f"[dim]{proposal['id']}[/dim]{origin}: [bold]{escape(truncate(proposal['rule'], 100))}[/bold] "
        f"[cyan]\\[{proposal['category']}][/cyan] "
        f"[green]+{tally.get('approve', 0)}[/green] [red]-{tally.get('reject', 0)}[/red]"
    )
    if proposal.get("rationale"):
        console.print(f"  [dim]{escape(proposal['rationale'])}[/dim]")
