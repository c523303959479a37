"""Output formatting for the studysync CLI."""

import json
import sys
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table


class OutputFormatter:
    """Routes CLI output to text, rich tables or JSON.

    In JSON mode only :meth:`output_json` writes to stdout; informational
    messages are suppressed. Errors always go to stderr.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console()

    def info(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            click.echo(message)

    def success(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            click.secho(message, fg="green")

    def warning(self, message: str) -> None:
        if not self.json_output:
            click.secho(f"Warning: {message}", fg="yellow", err=True)

    def error(self, message: str) -> None:
        click.secho(f"Error: {message}", fg="red", err=True)

    def print(self, message: str) -> None:
        """Print regardless of quiet mode (but not in JSON mode)."""
        if not self.json_output:
            click.echo(message)

    def output_json(self, data: Any) -> None:
        click.echo(json.dumps(data, indent=2, default=str))

    def output_table(
        self,
        rows: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Render rows as a table.

        Args:
            rows: One dict per row
            columns: Keys to show, in order
            headers: Optional display names per key
        """
        if self.json_output:
            self.output_json(rows)
            return
        if not rows:
            self.info("Nothing to show.")
            return

        headers = headers or {}
        table = Table(show_header=True, header_style="bold")
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in rows:
            values = [row.get(column) for column in columns]
            table.add_row(*("" if v is None else str(v) for v in values))
        self.console.print(table)

    def print_summary(self, title: str, items: list[tuple[str, Any]]) -> None:
        """Print a titled list of label/value pairs."""
        if self.quiet or self.json_output:
            return
        click.echo()
        click.secho(title, bold=True)
        click.echo("=" * len(title))
        width = max((len(label) for label, _ in items), default=0)
        for label, value in items:
            click.echo(f"  {label.ljust(width)}  {value}")

    @property
    def interactive(self) -> bool:
        """True when progress spinners may be shown."""
        return not (self.quiet or self.json_output) and sys.stderr.isatty()
