"""Analytics commands."""

import json
import math
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from invoiceml.exceptions import InvoiceMLError
from invoiceml.ml.config import MLConfig, load_ml_config
from invoiceml.ml.metrics import assess_model_quality, calculate_metrics
from invoiceml.ml.records import load_invoices
from invoiceml.ml.session import (
    ANOMALY_STAGE,
    FORECAST_STAGE,
    SEGMENTATION_STAGE,
    AnalyticsReport,
    AnalyticsSession,
    TrainingProgress,
)
from invoiceml.utils.async_bridge import run_async

console = Console()

OUTPUT_FORMATS = ("rich", "json")

STAGE_LABELS = {
    FORECAST_STAGE: "📈 Revenue forecaster",
    SEGMENTATION_STAGE: "👥 Customer segmenter",
    ANOMALY_STAGE: "🔎 Anomaly detector",
}

QUALITY_STYLES = {
    "excellent": "bold green",
    "good": "green",
    "fair": "yellow",
    "poor": "red",
}


def _check_format(format_type: str) -> None:
    if format_type not in OUTPUT_FORMATS:
        console.print(f"[red]✗ Unknown format '{format_type}'. Use rich or json[/]")
        raise typer.Exit(1)


def _finite(value: Any) -> Any:
    """Replace NaN and infinities with None."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _finite(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_finite(item) for item in value]
    return value


def _print_json(payload: dict[str, Any]) -> None:
    typer.echo(json.dumps(_finite(payload), indent=2, default=str, allow_nan=False))


def analyze(
    path: Path = typer.Argument(
        ..., help="Invoice snapshot (JSON array or {'invoices': [...]})", exists=True
    ),
    days: int = typer.Option(30, "--days", "-d", min=1, help="Forecast horizon in days"),
    epochs: int = typer.Option(30, "--epochs", "-e", min=1, help="Forecaster training epochs"),
    segments: int = typer.Option(3, "--segments", "-k", min=2, help="Number of customer segments"),
    seed: int = typer.Option(42, "--seed", help="Seed for weights, shuffling and noise"),
    timeout: float | None = typer.Option(
        None, "--timeout", help="Per-model training timeout in seconds"
    ),
    labeling: str = typer.Option(
        "round_robin", "--labeling", help="Segment labels: round_robin or kmeans"
    ),
    strict: bool = typer.Option(False, "--strict", help="Stop at the first failing model"),
    format_type: str = typer.Option("rich", "--format", "-f", help="Output format: rich, json"),
) -> None:
    """
    Train the analytics models on an invoice snapshot and show the results.

    Example:
        invoiceml analyze invoices.json --days 30 --segments 3
    """
    _check_format(format_type)

    try:
        config = load_ml_config(
            seed=seed, training_timeout_seconds=timeout, segment_labeling=labeling
        )
    except InvoiceMLError as e:
        console.print(f"[red]✗ {escape(str(e))}[/]")
        raise typer.Exit(1)

    try:
        invoices = load_invoices(path)
    except InvoiceMLError as e:
        console.print(f"[red]✗ {escape(str(e))}[/]")
        raise typer.Exit(1)

    try:
        if format_type == "json":
            session = AnalyticsSession(invoices, config, strict=strict)
            report = run_async(session.run(days=days, epochs=epochs, k=segments))
        else:
            console.print(f"[cyan]📂 Loaded {len(invoices)} invoices from {path.name}[/]")
            report = _run_with_progress(invoices, config, strict, days, epochs, segments)
    except InvoiceMLError as e:
        console.print(f"[red]✗ {escape(str(e))}[/]")
        raise typer.Exit(1)

    if format_type == "json":
        _print_json(report.to_dict())
    else:
        _render_report(report)


def _run_with_progress(
    invoices: list,
    config: MLConfig,
    strict: bool,
    days: int,
    epochs: int,
    segments: int,
) -> AnalyticsReport:
    with Progress(
        TextColumn("{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=True,
    ) as progress:
        tasks = {
            stage: progress.add_task(label, total=100) for stage, label in STAGE_LABELS.items()
        }

        def on_progress(update: TrainingProgress) -> None:
            progress.update(tasks[update.model], completed=update.percent)

        session = AnalyticsSession(invoices, config, on_progress, strict=strict)
        return run_async(session.run(days=days, epochs=epochs, k=segments))


def _render_report(report: AnalyticsReport) -> None:
    if report.forecast is not None:
        table = Table(title="📈 Revenue Forecast", show_header=True)
        table.add_column("Day", style="cyan", justify="right")
        table.add_column("Revenue", justify="right")
        for day, value in enumerate(report.forecast, start=1):
            table.add_row(str(day), f"{value:,.2f}")
        table.add_row("[bold]Total[/bold]", f"[bold]{sum(report.forecast):,.2f}[/bold]")
        console.print(table)

    if report.evaluation is not None:
        table = Table(title="🎯 Forecaster Evaluation", show_header=True)
        table.add_column("Metric", style="cyan", width=20)
        table.add_column("Value", justify="right", width=15)
        evaluation = report.evaluation
        table.add_row("MAE", f"{evaluation.mae:,.2f}")
        table.add_row("RMSE", f"{evaluation.rmse:,.2f}")
        table.add_row("R²", f"{evaluation.r2:.3f}")
        table.add_row("MAPE", f"{evaluation.mape:.1f}%")
        table.add_row("Sequences", str(evaluation.sample_count))
        console.print(table)

    if report.quality is not None:
        _render_quality(report.quality.to_dict())

    if report.segment_summary:
        table = Table(title="👥 Customer Segments", show_header=True)
        table.add_column("Segment", style="cyan", justify="right")
        table.add_column("Customers", justify="right")
        table.add_column("Total spent", justify="right")
        table.add_column("Avg spent", justify="right")
        for row in report.segment_summary:
            table.add_row(
                str(row["segment"]),
                str(row["customer_count"]),
                f"{row['total_spent']:,.2f}",
                f"{row['avg_spent']:,.2f}",
            )
        console.print(table)

    if report.anomaly_summary is not None:
        summary = report.anomaly_summary
        console.print(
            f"\n[bold]🔎 Anomalies:[/bold] {summary['anomalies']} of {summary['total']} "
            f"invoices ({summary['anomaly_rate']:.1%})"
        )
        if summary["flagged"]:
            table = Table(show_header=True)
            table.add_column("Invoice", style="cyan")
            table.add_column("Total", justify="right")
            table.add_column("Error", justify="right")
            for row in summary["flagged"][:10]:
                table.add_row(
                    str(row["invoice_id"] or "-"),
                    f"{row['total']:,.2f}",
                    f"{row['reconstruction_error']:.3f}",
                )
            console.print(table)

    if report.errors:
        console.print("\n[yellow]Some models could not run:[/]")
        for stage, error in report.errors.items():
            console.print(f"  • {stage}: {escape(error)}")


def _render_quality(quality: dict[str, Any]) -> None:
    style = QUALITY_STYLES.get(quality["overall"], "white")
    lines = [
        f"Overall: [{style}]{quality['overall']}[/]",
        f"R² score: {quality['r2_score']}",
        f"Data quality: {quality['data_quality']}",
    ]
    if quality["recommendations"]:
        lines.append("")
        lines.extend(f"• {item}" for item in quality["recommendations"])
    console.print(Panel("\n".join(lines), title="[bold]Model Quality[/bold]", border_style=style))


def _parse_values(raw: str, option: str) -> list[float]:
    try:
        return [float(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise typer.BadParameter(f"{option} must be comma separated numbers")


def metrics(
    predictions: str = typer.Option(
        ..., "--predictions", "-p", help="Comma separated predicted values"
    ),
    actuals: str = typer.Option(..., "--actuals", "-a", help="Comma separated actual values"),
    sample_size: int | None = typer.Option(
        None, "--sample-size", "-n", help="Invoices behind the model (default: number of values)"
    ),
    format_type: str = typer.Option("rich", "--format", "-f", help="Output format: rich, json"),
) -> None:
    """
    Score predictions against actual values and assess the model.

    Example:
        invoiceml metrics --predictions 110,190 --actuals 100,200
    """
    _check_format(format_type)

    predicted = _parse_values(predictions, "--predictions")
    observed = _parse_values(actuals, "--actuals")

    try:
        result = calculate_metrics(predicted, observed)
    except InvoiceMLError as e:
        console.print(f"[red]✗ {escape(str(e))}[/]")
        raise typer.Exit(1)

    assessment = assess_model_quality(result, sample_size or len(observed))

    if format_type == "json":
        _print_json({"metrics": result.to_dict(), "quality": assessment.to_dict()})
        return

    table = Table(title="📊 Regression Metrics", show_header=True)
    table.add_column("Metric", style="cyan", width=20)
    table.add_column("Value", justify="right", width=15)
    table.add_row("MSE", f"{result.mse:,.4f}")
    table.add_row("RMSE", f"{result.rmse:,.4f}")
    table.add_row("MAE", f"{result.mae:,.4f}")
    table.add_row("R²", f"{result.r2:.4f}")
    table.add_row("MAPE", f"{result.mape:.2f}%")
    console.print(table)
    _render_quality(assessment.to_dict())
