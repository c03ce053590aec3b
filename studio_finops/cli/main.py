"""
CLI interface for studio-finops.

Provides command-line access to estimates, spend reports, the export
queue and the queue worker.
"""

import json
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from studio_finops.config.loader import AppConfig, build_object_store, load_config_or_default
from studio_finops.core.approval import ApprovalGate
from studio_finops.core.generation import GenerationService, make_generation_handler
from studio_finops.core.ledger import UsageLedger
from studio_finops.export.encoder import FFmpegEncoder
from studio_finops.export.options import ExportOptions
from studio_finops.export.queue import KIND_EXPORT, KIND_GENERATE, JobQueue, QueueUnavailableError
from studio_finops.export.worker import ExportWorker, make_export_handler
from studio_finops.log import configure_logging
from studio_finops.providers.registry import build_registry
from studio_finops.storage.assets import AssetOwnershipPipeline
from studio_finops.storage.repository import LedgerRepository, initialize_schema

app = typer.Typer()
export_app = typer.Typer(help="Enqueue exports and check their status.")
app.add_typer(export_app, name="export")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj["config"]


def _format_currency(amount: float) -> str:
    """Format currency with four decimals; per-item prices are fractions of a cent."""
    return f"${amount:,.4f}"


def _build_generation_service(config: AppConfig) -> GenerationService:
    return GenerationService(
        pricing=config.pricing,
        gate=ApprovalGate(config.approval_threshold),
        registry=build_registry(config.providers),
        assets=AssetOwnershipPipeline(build_object_store(config.storage)),
        ledger=UsageLedger(config.ledger_db_path),
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Log level (DEBUG, INFO, WARNING, ERROR)"
    ),
):
    """studio-finops CLI."""
    configure_logging(log_level)
    try:
        ctx.obj = {"config": load_config_or_default(config_path)}
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if ctx.invoked_subcommand is None:
        console.print("studio-finops - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger and job queue databases."""
    config = _config(ctx)
    try:
        initialize_schema(config.ledger_db_path)
        JobQueue(config.queue_db_path, config.lease_seconds).initialize_schema()
        console.print("[green]✓[/] Databases initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing databases:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def estimate(
    ctx: typer.Context,
    models: List[str] = typer.Argument(..., help="Model identifier(s) to price"),
    quantity: float = typer.Option(
        1.0,
        "--quantity",
        "-q",
        help="Number of items (or runs for per-duration models)"
    ),
):
    """
    Estimate spend for one or more models.

    With several models the table is ordered cheapest first and each row
    shows whether the approval gate would stop it.
    """
    config = _config(ctx)
    if quantity <= 0:
        console.print("[red]Error:[/] quantity must be > 0")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Cost Estimate")
    table.add_column("Model")
    table.add_column("Unit")
    table.add_column("Estimate", justify="right")
    table.add_column("Approval")

    for item in config.pricing.compare(models, quantity):
        priced = item.model_identifier in config.pricing
        needs_approval = item.estimated_amount > config.approval_threshold
        table.add_row(
            item.model_identifier if priced else f"{item.model_identifier} (default price)",
            item.unit,
            _format_currency(item.estimated_amount),
            "[yellow]required[/]" if needs_approval else "[green]not required[/]",
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def spend(ctx: typer.Context, project_id: str = typer.Argument(..., help="Project identifier")):
    """Show recorded spend for a project."""
    config = _config(ctx)
    try:
        summary = LedgerRepository(config.ledger_db_path).get_project_spend(project_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        console.print("Run `studio-finops init` to initialize the database")
        sys.exit(EXIT_CODE_FAIL)

    if summary["entry_count"] == 0:
        console.print(f"\n[bold yellow]No recorded spend for project {project_id}[/]\n")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"\n[bold]Project:[/bold] {project_id}")
    console.print("-" * 40)
    for action_type, amount in summary["by_action_type"].items():
        console.print(f"{action_type}: {_format_currency(amount)}")
    console.print(f"\n[bold]Total:[/bold] {_format_currency(summary['total_amount'])} "
                  f"across {summary['entry_count']} entries\n")
    sys.exit(EXIT_CODE_PASS)


@export_app.command("enqueue")
def export_enqueue(
    ctx: typer.Context,
    input_ref: str = typer.Argument(..., help="Source media path or URL"),
    output_ref: str = typer.Argument(..., help="Destination file path"),
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Owning project"),
    codec: str = typer.Option("h264", "--codec", help="h264, h265, prores or dnxhd"),
    quality: str = typer.Option("high", "--quality", help="low, medium, high or ultra"),
    audio_codec: str = typer.Option("aac", "--audio-codec", help="aac, mp3 or flac"),
    audio_bitrate_kbps: int = typer.Option(128, "--audio-bitrate", help="Audio bitrate in kbps"),
    video_bitrate_kbps: int = typer.Option(5000, "--video-bitrate", help="Video bitrate in kbps"),
    resolution: str = typer.Option("1080p", "--resolution", help="720p, 1080p, 2k or 4k"),
    frame_rate: int = typer.Option(30, "--frame-rate", help="24, 25, 30 or 60"),
    preset: str = typer.Option("medium", "--preset", help="Encoder speed preset"),
):
    """Queue a video export and print its job id."""
    config = _config(ctx)
    try:
        options = ExportOptions(
            codec=codec,
            quality=quality,
            audio_codec=audio_codec,
            audio_bitrate_kbps=audio_bitrate_kbps,
            video_bitrate_kbps=video_bitrate_kbps,
            resolution=resolution,
            frame_rate=frame_rate,
            preset=preset,
        )
        job_id = JobQueue(config.queue_db_path, config.lease_seconds).enqueue(
            input_ref, output_ref, options, project_id=project_id
        )
    except ValueError as e:
        console.print(f"[red]Invalid export options:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except QueueUnavailableError as e:
        console.print(f"[red]Job queue unavailable:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(job_id)
    sys.exit(EXIT_CODE_PASS)


@export_app.command("status")
def export_status(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id returned by enqueue"),
    as_json: bool = typer.Option(False, "--json", help="Print the status as JSON"),
):
    """Show the state and progress of a queued job."""
    config = _config(ctx)
    try:
        job_status = JobQueue(config.queue_db_path, config.lease_seconds).get_status(job_id)
    except KeyError:
        console.print(f"[red]Unknown job:[/] {job_id}")
        sys.exit(EXIT_CODE_FAIL)
    except QueueUnavailableError as e:
        console.print(f"[red]Job queue unavailable:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        console.print_json(json.dumps(job_status.to_dict()))
        sys.exit(EXIT_CODE_PASS)

    console.print(f"[bold]Job:[/bold] {job_id}")
    console.print(f"State: {job_status.state.value}")
    console.print(f"Progress: {job_status.progress_percent:.1f}%")
    if job_status.output_ref:
        console.print(f"Output: {job_status.output_ref}")
    if job_status.failure_reason:
        console.print(f"[red]Failure:[/] {job_status.failure_reason}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def worker(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Process at most one job and exit"),
    idle_sleep: float = typer.Option(1.0, "--idle-sleep", help="Seconds to wait when the queue is empty"),
    ffmpeg_binary: str = typer.Option("ffmpeg", "--ffmpeg", help="ffmpeg executable"),
):
    """Run a queue worker processing export and generation jobs one at a time."""
    config = _config(ctx)
    service = _build_generation_service(config)
    queue = JobQueue(config.queue_db_path, config.lease_seconds)
    job_worker = ExportWorker(
        queue,
        {
            KIND_EXPORT: make_export_handler(FFmpegEncoder(ffmpeg_binary)),
            KIND_GENERATE: make_generation_handler(service),
        },
        idle_sleep=idle_sleep,
    )

    try:
        if once:
            job = job_worker.run_once()
            if job is None:
                console.print("No waiting jobs")
            else:
                console.print(f"Job {job.id}: {job.state.value}")
        else:
            job_worker.run_forever()
    except QueueUnavailableError as e:
        console.print(f"[red]Job queue unavailable:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except KeyboardInterrupt:
        console.print("Worker stopped")
    finally:
        service.registry.close()
        service.assets.close()
    sys.exit(EXIT_CODE_PASS)


@app.command()
def providers(ctx: typer.Context):
    """List configured providers and whether they can be used."""
    config = _config(ctx)
    registry = build_registry(config.providers)

    rows = registry.status()
    if not rows:
        console.print("[yellow]No providers configured[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Providers")
    table.add_column("Capability")
    table.add_column("Provider")
    table.add_column("Priority", justify="right")
    table.add_column("Status")
    for row in rows:
        if row["available"]:
            state = "[green]available[/]"
        elif row["enabled"]:
            state = "[yellow]unavailable[/]"
        else:
            state = "[dim]disabled[/]"
        table.add_row(row["capability"], row["name"], str(row["priority"]), state)

    console.print(table)
    registry.close()
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
