"""Main CLI entry point for invoiceml."""

import typer
from rich.console import Console

from invoiceml import __version__
from invoiceml.utils.config import get_settings
from invoiceml.utils.logging import configure_from_settings

from .commands import analyze

app = typer.Typer(
    name="invoiceml",
    help="📊 Machine learning analytics for invoice histories",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]invoiceml[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """
    invoiceml - revenue forecasting, customer segmentation and anomaly
    detection for invoice snapshots.
    """
    configure_from_settings(get_settings())


app.command("analyze")(analyze.analyze)
app.command("metrics")(analyze.metrics)
