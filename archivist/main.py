import threading
from pathlib import Path
from typing import Dict, List, Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from archivist.config.loader import load_config_or_default
from archivist.config.models import AppConfig, SubtitlePolicy
from archivist.domain.events import ScanCancelRequested
from archivist.domain.models import BatchResult, RenameItem, ScanProgress, ScanResult, ScanStatus
from archivist.exceptions import ArchivistError
from archivist.infrastructure.event_bus import EventBus
from archivist.infrastructure.ffprobe import FFprobeAdapter
from archivist.infrastructure.file_scanner import DirectoryWalker
from archivist.infrastructure.library_store import LibraryStore
from archivist.infrastructure.logging import setup_logging
from archivist.pipeline.file_ops import FileOpEngine
from archivist.pipeline.library_query import SORT_CHOICES, LibraryFilter, filter_records, sort_records
from archivist.pipeline.scan_scheduler import IncrementalScanScheduler, snapshot_from_library
from archivist.pipeline.subtitles import SubtitleAssociator

app = typer.Typer(help="Archivist - media library scanner and file manager")
console = Console()

DEFAULT_CONFIG_PATH = Path("conf/archivist.yaml")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML config (default: conf/archivist.yaml if present)")
LibraryOption = typer.Option(None, "--library", "-l", help="Library JSON file (overrides config)")
DebugOption = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging")


def _fail(message: str, code: int = 1) -> None:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


def _bootstrap(config_path: Optional[Path], library_path: Optional[Path], debug: bool):
    """Loads config, configures logging and opens the library store."""
    try:
        config = load_config_or_default(config_path or DEFAULT_CONFIG_PATH, required=config_path is not None)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        _fail(str(exc))

    if debug:
        config.general.debug = True
    if library_path is not None:
        config.general.library_path = str(library_path)

    store = LibraryStore(Path(config.general.library_path))
    log_path = Path(config.general.log_path).expanduser() if config.general.log_path else None
    setup_logging(store.path.parent, debug=config.general.debug, log_path=log_path, console=True)
    return config, store


def _build_file_ops(config: AppConfig) -> FileOpEngine:
    return FileOpEngine(SubtitleAssociator(
        extensions=config.subtitles.extensions,
        policy=config.subtitles.policy,
        modifiers=config.subtitles.modifiers,
    ))


def _print_batch(title: str, result: BatchResult) -> None:
    colour = typer.colors.GREEN if result.failed_count == 0 else typer.colors.YELLOW
    typer.secho(f"{title}: {result.success_count} succeeded, {result.failed_count} failed", fg=colour)
    for entry in result.errors:
        typer.secho(f"  {entry.path}: {entry.error}", fg=typer.colors.RED, err=True)


def format_size(size: float) -> str:
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}TB"


def format_duration(seconds: Optional[float]) -> str:
    if not seconds:
        return "-"
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}" if hours else f"{minutes}:{secs:02d}"


def _run_scan_with_progress(scheduler: IncrementalScanScheduler, bus: EventBus, directory: Path, prior) -> ScanResult:
    """Runs the scan on a worker thread so Ctrl+C here can cancel it cleanly."""
    outcome: Dict[str, object] = {}

    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TextColumn("[dim]{task.fields[current]}"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Discovering", total=None, current="")

        def on_progress(snapshot: ScanProgress) -> None:
            current = escape(snapshot.current_file.name) if snapshot.current_file else ""
            description = "Scanning" if snapshot.total_count is not None else "Discovering"
            if snapshot.is_terminal:
                description = snapshot.status.value.capitalize()
            progress.update(
                task,
                description=description,
                total=snapshot.total_count,
                completed=snapshot.processed_count,
                current=current,
            )

        def target() -> None:
            try:
                outcome["result"] = scheduler.scan(directory, prior=prior, progress_sink=on_progress)
            except Exception as exc:
                outcome["error"] = exc

        worker = threading.Thread(target=target, name="scan", daemon=True)
        worker.start()
        try:
            while worker.is_alive():
                worker.join(timeout=0.2)
        except KeyboardInterrupt:
            bus.publish(ScanCancelRequested())
            progress.update(task, description="Cancelling")
            worker.join()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


@app.command()
def scan(
    directory: Path = typer.Argument(..., help="Directory to scan for video files"),
    full: bool = typer.Option(False, "--full", help="Ignore the stored library and re-probe every file"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-j", min=1, help="Override concurrent ffprobe processes"),
    config_path: Optional[Path] = ConfigOption,
    library_path: Optional[Path] = LibraryOption,
    debug: bool = DebugOption,
):
    """Scan a directory and update the library (incremental unless --full)."""
    if not directory.is_dir():
        _fail(f"Directory does not exist: {directory}")

    config, store = _bootstrap(config_path, library_path, debug)
    if concurrency:
        config.scan.concurrency = concurrency

    try:
        prior = {} if full else snapshot_from_library(store.load())
    except ArchivistError as exc:
        _fail(str(exc))

    bus = EventBus()
    scheduler = IncrementalScanScheduler(
        walker=DirectoryWalker(config.scan.extensions),
        probe=FFprobeAdapter(
            ffprobe_path=config.general.ffprobe_path,
            kill_on_cancel=config.general.kill_probes_on_cancel,
        ),
        concurrency=config.scan.concurrency,
        event_bus=bus,
    )

    result = _run_scan_with_progress(scheduler, bus, directory.absolute(), prior)
    final = result.progress

    typer.echo(
        f"{final.status.value}: {len(result.records)} files, "
        f"{final.skipped_count} unchanged, {final.error_count} errors"
    )
    for entry in final.errors:
        typer.secho(f"  {entry.path}: {entry.error}", fg=typer.colors.RED, err=True)

    if final.status == ScanStatus.COMPLETED:
        try:
            store.save(result.records, scan_path=directory.absolute())
        except ArchivistError as exc:
            _fail(str(exc))
    elif final.status == ScanStatus.CANCELLED:
        typer.secho("Scan cancelled; library left unchanged.", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    else:
        _fail(final.error_message or "Scan failed")


@app.command("list")
def list_library(
    sort_by: str = typer.Option("filename", "--sort", help=f"Sort by one of: {', '.join(SORT_CHOICES)}"),
    desc: bool = typer.Option(False, "--desc", help="Sort descending"),
    resolution: List[str] = typer.Option([], "--resolution", help="4K, 1080p, 720p, SD, Unknown (repeatable)"),
    channels: List[str] = typer.Option([], "--channels", help="Mono, Stereo, 5.1, 7.1, Atmos (repeatable)"),
    language: List[str] = typer.Option([], "--language", help="Audio language tag (repeatable)"),
    codec: List[str] = typer.Option([], "--codec", help="Video codec (repeatable)"),
    min_mbps: Optional[float] = typer.Option(None, "--min-mbps", help="Minimum overall bitrate in Mbps"),
    max_mbps: Optional[float] = typer.Option(None, "--max-mbps", help="Maximum overall bitrate in Mbps"),
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Substring of filename or path"),
    config_path: Optional[Path] = ConfigOption,
    library_path: Optional[Path] = LibraryOption,
    debug: bool = DebugOption,
):
    """Show the stored library, filtered and sorted."""
    _, store = _bootstrap(config_path, library_path, debug)
    try:
        flt = LibraryFilter(
            resolutions=resolution,
            audio_channels=channels,
            audio_languages=language,
            video_codecs=codec,
            min_bitrate_mbps=min_mbps,
            max_bitrate_mbps=max_mbps,
            search=search,
        )
        records = sort_records(filter_records(store.load(), flt), sort_by, descending=desc)
    except (ValidationError, ValueError, ArchivistError) as exc:
        _fail(str(exc))

    table = Table(title=f"Library ({len(records)} files)")
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Video")
    table.add_column("Audio")
    table.add_column("Subs", justify="right")
    for record in records:
        video = ", ".join(f"{s.codec} {s.resolution}" for s in record.video_streams) or "-"
        audio = ", ".join(
            f"{s.codec} {s.channel_type}" + (f" [{s.language}]" if s.language else "")
            for s in record.audio_streams
        ) or "-"
        table.add_row(
            record.filename,
            format_size(record.size_bytes),
            format_duration(record.duration),
            video,
            audio,
            str(len(record.subtitle_streams)),
        )
    console.print(table)


@app.command()
def rename(
    old_path: Path = typer.Argument(..., help="Media file to rename"),
    new_path: Path = typer.Argument(..., help="New path (may be in another directory)"),
    subtitle_policy: Optional[SubtitlePolicy] = typer.Option(None, "--subtitle-policy", help="Which subtitles follow the file"),
    config_path: Optional[Path] = ConfigOption,
    library_path: Optional[Path] = LibraryOption,
    debug: bool = DebugOption,
):
    """Rename a media file together with its subtitle files."""
    config, store = _bootstrap(config_path, library_path, debug)
    if subtitle_policy is not None:
        config.subtitles.policy = subtitle_policy

    old_path, new_path = old_path.absolute(), new_path.absolute()
    try:
        outcome = _build_file_ops(config).rename_with_satellites(old_path, new_path)
    except OSError as exc:
        _fail(f"Rename failed: {exc}")

    typer.secho(f"Renamed: {old_path.name} -> {new_path.name}", fg=typer.colors.GREEN)
    for subtitle in outcome.renamed_subtitles:
        typer.echo(f"  subtitle: {subtitle.name}")
    for entry in outcome.failed_subtitles:
        typer.secho(f"  subtitle failed: {entry.path}: {entry.error}", fg=typer.colors.YELLOW, err=True)

    store.update_paths({old_path: new_path})


@app.command("rename-batch")
def rename_batch(
    mapping_file: Path = typer.Argument(..., help="YAML list of {old_path, new_path} entries"),
    config_path: Optional[Path] = ConfigOption,
    library_path: Optional[Path] = LibraryOption,
    debug: bool = DebugOption,
):
    """Rename many files from a YAML mapping file."""
    config, store = _bootstrap(config_path, library_path, debug)
    try:
        with open(mapping_file, "r") as f:
            data = yaml.safe_load(f) or []
        items = [RenameItem(**entry) for entry in data]
    except (OSError, yaml.YAMLError, TypeError, ValidationError) as exc:
        _fail(f"Invalid mapping file {mapping_file}: {exc}")

    result = _build_file_ops(config).batch_rename(items)
    _print_batch("Rename", result)

    failed = {entry.path for entry in result.errors}
    store.update_paths({item.old_path: item.new_path for item in items if item.old_path not in failed})
    if result.failed_count:
        raise typer.Exit(code=1)


@app.command()
def move(
    paths: List[Path] = typer.Argument(..., help="Files to move"),
    dest: Path = typer.Option(..., "--dest", "-d", help="Destination directory"),
    config_path: Optional[Path] = ConfigOption,
    library_path: Optional[Path] = LibraryOption,
    debug: bool = DebugOption,
):
    """Move files into a directory."""
    config, store = _bootstrap(config_path, library_path, debug)
    paths = [p.absolute() for p in paths]
    dest = dest.absolute()

    result = _build_file_ops(config).batch_move(paths, dest)
    _print_batch("Move", result)

    failed = {entry.path for entry in result.errors}
    store.update_paths({p: dest / p.name for p in paths if p not in failed})
    if result.failed_count:
        raise typer.Exit(code=1)


@app.command()
def delete(
    paths: List[Path] = typer.Argument(..., help="Files to delete"),
    delete_parent_folders: bool = typer.Option(False, "--delete-parent-folders", help="Also remove parent folders left empty"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config_path: Optional[Path] = ConfigOption,
    library_path: Optional[Path] = LibraryOption,
    debug: bool = DebugOption,
):
    """Delete files and drop them from the library."""
    config, store = _bootstrap(config_path, library_path, debug)
    paths = [p.absolute() for p in paths]
    if not yes:
        typer.confirm(f"Delete {len(paths)} file(s)?", abort=True)

    result = _build_file_ops(config).batch_delete(paths, delete_parent_folders=delete_parent_folders)
    _print_batch("Delete", result)
    if delete_parent_folders:
        typer.echo(f"Folders removed: {result.folders_deleted}")

    failed = {entry.path for entry in result.errors}
    store.remove_paths([p for p in paths if p not in failed])
    if result.failed_count:
        raise typer.Exit(code=1)


@app.command("rename-folder")
def rename_folder(
    old_path: Path = typer.Argument(..., help="Folder to rename"),
    new_path: Path = typer.Argument(..., help="New folder path"),
    config_path: Optional[Path] = ConfigOption,
    library_path: Optional[Path] = LibraryOption,
    debug: bool = DebugOption,
):
    """Rename a folder and re-point library records inside it."""
    config, store = _bootstrap(config_path, library_path, debug)
    old_path, new_path = old_path.absolute(), new_path.absolute()
    try:
        _build_file_ops(config).rename_folder(old_path, new_path)
    except OSError as exc:
        _fail(f"Rename failed: {exc}")

    renames = {}
    for record in store.load():
        try:
            relative = record.path.relative_to(old_path)
        except ValueError:
            continue
        renames[record.path] = new_path / relative
    store.update_paths(renames)
    typer.secho(f"Renamed folder: {old_path} -> {new_path}", fg=typer.colors.GREEN)


@app.command()
def clear(
    config_path: Optional[Path] = ConfigOption,
    library_path: Optional[Path] = LibraryOption,
    debug: bool = DebugOption,
):
    """Forget every record in the library."""
    _, store = _bootstrap(config_path, library_path, debug)
    store.clear()
    typer.echo("Library cleared.")


if __name__ == "__main__":
    app()
