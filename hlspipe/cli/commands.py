"""CLI commands for hlspipe using Typer and Rich.

Implements the CLI commands:
- process: Transcode every video under the source prefix to HLS
- ingest: Transcode videos fetched from http(s) URLs
- retry: Re-run one failed item
- upload-local: Push a local folder of videos to the source prefix
- progress: Show (or watch) the progress report
"""

from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from hlspipe import setup_logging
from hlspipe.config import load_settings, PipelineConfig, QualityProfile, Settings
from hlspipe.orchestrator.pipeline import BatchResult, FatalPipelineError, PipelineOrchestrator
from hlspipe.orchestrator.progress import CorruptStateError, ProgressStore
from hlspipe.orchestrator.state import stage_sequence
from hlspipe.reporting.report import ReportGenerator
from hlspipe.services.file_manager import WorkspaceManager
from hlspipe.services.object_store import (
    build_object_store,
    HttpSource,
    join_key,
    ObjectStore,
    ObjectStoreError,
)
from hlspipe.services.transcoder import FFmpegTranscoder, Transcoder, TranscoderUnavailableError

app = typer.Typer(name="hlspipe", help="Resumable batch transcoder from object storage to adaptive HLS")
console = Console()

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="YAML config file (default: ./config.yaml)")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


def make_transcoder(config: PipelineConfig) -> Transcoder:
    """Encoder used by every command; replaced in tests."""
    return FFmpegTranscoder.from_config(config)


def _load_settings(config: Optional[Path], verbose: bool) -> Settings:
    setup_logging(verbose)
    try:
        return load_settings(config)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{escape(str(e))}")
        raise typer.Exit(code=2)


def _open_store(settings: Settings) -> ProgressStore:
    store = ProgressStore(settings.paths.progress_file)
    try:
        store.load()
    except CorruptStateError as e:
        _print_corrupt(e)
        raise typer.Exit(code=2)
    return store


def _print_corrupt(error: CorruptStateError) -> None:
    console.print(f"[red]✗ Progress file is corrupt:[/red] {error.path}")
    console.print(f"[red]{escape(error.reason)}[/red]")
    console.print("[yellow]The file was left untouched. Repair or move it, then re-run.[/yellow]")


def _build_orchestrator(
    settings: Settings,
    store: ProgressStore,
    source: ObjectStore,
    qualities: list[QualityProfile],
    source_prefix: str = "",
) -> PipelineOrchestrator:
    reporter = ReportGenerator(console)

    def report(batch) -> None:
        console.print()
        console.print(reporter.build(batch, settings.paths.progress_file))

    return PipelineOrchestrator(
        store=store,
        source=source,
        destination=build_object_store(settings.storage),
        transcoder=make_transcoder(settings.pipeline),
        workspace=WorkspaceManager(settings.paths.tmp_dir),
        config=settings.pipeline,
        output_prefix=settings.storage.output_prefix,
        source_prefix=source_prefix,
        qualities=qualities,
        report_callback=report,
    )


def _run_batch(
    orchestrator: PipelineOrchestrator,
    keys: Optional[list[str]],
    force: bool,
    workers: Optional[int],
) -> BatchResult:
    """Run one batch under a status spinner, mapping fatal errors to exit codes."""
    try:
        with console.status("[bold green]Starting pipeline...") as status:
            def callback_wrapper(msg: str):
                status.update(f"[bold green]{msg}")

            orchestrator.progress_callback = callback_wrapper
            result = orchestrator.process_batch(keys, force=force, workers=workers)

    except FatalPipelineError as e:
        console.print()
        console.print(f"[red]✗ Pipeline aborted:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Pipeline interrupted. Re-run the same command to resume.[/yellow]")
        raise typer.Exit(code=130)

    console.print()
    console.print(
        f"[green]✓ {len(result.succeeded)} succeeded[/green], "
        f"[red]{len(result.failed)} failed[/red], "
        f"{len(result.skipped)} skipped"
    )
    for outcome in result.failed:
        console.print(f"  [red]✗[/red] {outcome.name}: {escape(outcome.error or '')}")
    return result


@app.command()
def process(
    key: Optional[List[str]] = typer.Option(None, "--key", "-k", help="Process only this source key (repeatable)"),
    force: bool = typer.Option(False, "--force", "-f", help="Reprocess items that already completed"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="Items processed in parallel"),
    config: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Transcode every video under the source prefix to multi-bitrate HLS.

    Resumes from the progress file: completed videos are skipped, failed and
    interrupted ones are re-attempted from scratch.
    """
    settings = _load_settings(config, verbose)
    store = _open_store(settings)

    console.print(
        f"[yellow]Source:[/yellow] {settings.storage.bucket}/{settings.storage.source_prefix}/  "
        f"[yellow]Output:[/yellow] {settings.storage.bucket}/{settings.storage.output_prefix}/"
    )
    orchestrator = _build_orchestrator(
        settings,
        store,
        source=build_object_store(settings.storage),
        qualities=settings.pipeline.qualities,
        source_prefix=settings.storage.source_prefix,
    )
    _run_batch(orchestrator, key or None, force, workers)


@app.command()
def ingest(
    urls: List[str] = typer.Argument(..., help="http(s) URLs of source videos"),
    force: bool = typer.Option(False, "--force", "-f", help="Reprocess items that already completed"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="Items processed in parallel"),
    config: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Transcode videos fetched over HTTP using the ingest quality ladder."""
    settings = _load_settings(config, verbose)
    store = _open_store(settings)

    source = HttpSource(timeout=settings.pipeline.download_timeout_seconds)
    try:
        orchestrator = _build_orchestrator(
            settings, store, source=source, qualities=settings.pipeline.ingest_qualities
        )
        _run_batch(orchestrator, urls, force, workers)
    finally:
        source.close()


@app.command()
def retry(
    name: str = typer.Argument(..., help="Item name as shown by 'hlspipe progress'"),
    config: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Re-run one item from scratch and count the retry."""
    settings = _load_settings(config, verbose)
    store = _open_store(settings)

    item = store.get_item(name)
    if item is None:
        console.print(f"[red]Error:[/red] No item named {name!r} in {settings.paths.progress_file}")
        raise typer.Exit(code=1)

    # Re-use whichever ladder the item was created with
    ingest_stages = stage_sequence(q.label for q in settings.pipeline.ingest_qualities)
    if list(item.steps) == ingest_stages:
        qualities = settings.pipeline.ingest_qualities
    else:
        qualities = settings.pipeline.qualities

    if "://" in item.key:
        source = HttpSource(timeout=settings.pipeline.download_timeout_seconds)
    else:
        source = build_object_store(settings.storage)

    orchestrator = _build_orchestrator(settings, store, source=source, qualities=qualities)

    try:
        orchestrator.transcoder.check_available()
    except TranscoderUnavailableError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    console.print(f"[yellow]Retrying:[/yellow] {name} (previous status: {item.status})")
    store.increment_retry(name)

    try:
        with console.status(f"[bold green]Retrying {name}...") as status:
            orchestrator.progress_callback = lambda msg: status.update(f"[bold green]{msg}")
            outcome = orchestrator.process_item(item.key, force=True)
    except FatalPipelineError as e:
        console.print(f"[red]✗ Pipeline aborted:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)
    finally:
        store.finalize_run()
        if isinstance(source, HttpSource):
            source.close()

    if outcome.success:
        console.print(f"[green]✓[/green] {name} completed ({outcome.artifact_count} files uploaded)")
    else:
        console.print(f"[red]✗ {name} failed again:[/red] {escape(outcome.error or '')}")
        raise typer.Exit(code=1)


@app.command(name="upload-local")
def upload_local(
    folder: Path = typer.Argument(Path("videos"), help="Local folder of .mp4 files"),
    config: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Upload every local .mp4 in a folder to the source prefix.

    A failed upload is reported and the remaining files are still attempted.
    """
    settings = _load_settings(config, verbose)

    if not folder.is_dir():
        console.print(f"[red]✗ Folder '{folder}' not found.[/red]")
        raise typer.Exit(code=1)

    files = sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() == ".mp4")
    if not files:
        console.print(f"[red]✗ No .mp4 files found in {folder}[/red]")
        raise typer.Exit(code=1)

    prefix = settings.storage.source_prefix
    store = build_object_store(settings.storage)
    console.print(f"[yellow]Uploading {len(files)} videos under '{prefix}/'...[/yellow]")

    failed = 0
    for path in files:
        object_key = join_key(prefix, path.name)
        size_mb = path.stat().st_size / 1e6
        try:
            with console.status(f"[bold green]Uploading {path.name}..."):
                with open(path, "rb") as stream:
                    store.put(object_key, stream, "video/mp4")
        except (ObjectStoreError, OSError) as e:
            failed += 1
            console.print(f"[red]✗ Failed to upload {path.name}:[/red] {escape(str(e))}")
            continue
        console.print(f"[green]✓[/green] Uploaded {object_key} ({size_mb:.2f} MB)")

    if failed:
        console.print(f"[red]{failed} of {len(files)} uploads failed[/red]")
        raise typer.Exit(code=1)
    console.print("[green]All uploads complete![/green]")


@app.command()
def progress(
    watch: bool = typer.Option(False, "--watch", "-w", help="Refresh the report until interrupted"),
    interval: float = typer.Option(3.0, "--interval", "-i", min=0.1, help="Seconds between refreshes"),
    file: Optional[Path] = typer.Option(None, "--file", help="Progress file (default: from config)"),
    config: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Show the progress report for the current batch."""
    settings = _load_settings(config, verbose)
    path = file or settings.paths.progress_file
    reporter = ReportGenerator(console)

    try:
        if watch:
            reporter.watch(path, interval=interval)
        else:
            reporter.show(path)
    except CorruptStateError as e:
        _print_corrupt(e)
        raise typer.Exit(code=2)
    except KeyboardInterrupt:
        console.print()
