import typer
import threading
from pathlib import Path
from typing import Optional, List
from rich.console import Console
from rich.table import Table
from vidsqueeze.config.loader import load_config
from vidsqueeze.config.models import AppConfig, VideoCodec
from vidsqueeze.domain.errors import CompressionError
from vidsqueeze.infrastructure.logging import setup_logging
from vidsqueeze.infrastructure.event_bus import EventBus
from vidsqueeze.infrastructure.file_scanner import FileScanner
from vidsqueeze.infrastructure.ffmpeg import FFmpegAdapter
from vidsqueeze.infrastructure.ffprobe import FFprobeAdapter
from vidsqueeze.pipeline.scheduler import QueueSummary, Scheduler
from vidsqueeze.pipeline.supervisor import ProcessSupervisor
from vidsqueeze.ui.reporter import ConsoleReporter

app = typer.Typer(help="vidsqueeze - batch video compression with ffmpeg")

DEFAULT_CONFIG_PATH = Path("conf/vidsqueeze.yaml")


def _load_app_config(config_path: Optional[Path]) -> AppConfig:
    # The default config file is optional; an explicit one must exist
    if config_path is None or (config_path == DEFAULT_CONFIG_PATH and not config_path.exists()):
        return AppConfig()
    return load_config(config_path)


@app.command()
def compress(
    paths: List[Path] = typer.Argument(..., help="Video files or directories to compress"),
    config_path: Optional[Path] = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML config"),
    codec: Optional[str] = typer.Option(None, "--codec", help="Video codec (h264, h265)"),
    crf: Optional[int] = typer.Option(None, "--crf", help="Constant rate factor (clamped to the codec's range)"),
    hw: Optional[bool] = typer.Option(None, "--hw/--no-hw", help="Prefer hardware encoders"),
    copy_audio: Optional[bool] = typer.Option(None, "--copy-audio/--encode-audio", help="Copy or re-encode audio (AAC)"),
    delete_originals: bool = typer.Option(False, "--delete-originals", help="Delete sources after successful compression"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", help="Number of concurrent compressions"),
    retries: Optional[int] = typer.Option(None, "--retries", help="Automatic retries for retryable failures"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Compress videos into MP4 next to their sources."""
    console = Console()
    try:
        config = _load_app_config(config_path)
        # Apply CLI overrides
        if codec:
            config.compression.set_codec(VideoCodec.parse(codec))
        if crf is not None:
            config.compression.set_quality(crf)
        if hw is not None:
            config.compression.use_hardware_acceleration = hw
        if copy_audio is not None:
            config.compression.copy_audio = copy_audio
        if delete_originals:
            config.compression.delete_originals = True
        if jobs is not None:
            config.queue.concurrency = max(1, min(8, jobs))
        if retries is not None:
            config.queue.max_retries = max(0, min(10, retries))
        if debug:
            config.general.debug = True
        if log_path:
            config.general.log_path = str(log_path)
    except (FileNotFoundError, ValueError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    log_path_value = Path(config.general.log_path) if config.general.log_path else None
    logger = setup_logging(Path.cwd(), debug=config.general.debug, log_path=log_path_value)
    logger.info(
        f"Config: codec={config.compression.codec.short_name}, crf={config.compression.crf}, "
        f"hw={config.compression.use_hardware_acceleration}, copy_audio={config.compression.copy_audio}, "
        f"jobs={config.queue.concurrency}, retries={config.queue.max_retries}"
    )

    try:
        ffmpeg = FFmpegAdapter.locate(config.general.ffmpeg_path)
    except CompressionError as exc:
        typer.secho(exc.describe(), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    if config.general.ffprobe_path:
        ffprobe = FFprobeAdapter(config.general.ffprobe_path)
    else:
        ffprobe = FFprobeAdapter.beside(ffmpeg.binary)

    bus = EventBus()
    supervisor = ProcessSupervisor(ffmpeg, ffprobe, grace_period_s=config.queue.cancel_grace_period_s)
    scheduler = Scheduler(config, bus, supervisor)
    reporter = ConsoleReporter(bus, console=console)

    scanner = FileScanner(
        extensions=config.general.extensions,
        min_size_bytes=config.general.min_size_bytes,
        output_suffix=config.general.output_suffix,
        recursive=config.general.recursive,
    )
    queued = sum(1 for video in scanner.scan(paths) if scheduler.enqueue(video))
    logger.info(f"Discovery finished: {queued} files queued from {len(paths)} paths")
    if queued == 0:
        typer.secho("No video files to compress.", fg=typer.colors.YELLOW)
        raise typer.Exit(code=0)

    result: List[QueueSummary] = []
    worker = threading.Thread(target=lambda: result.append(scheduler.run()), name="vidsqueeze-scheduler", daemon=True)
    interrupted = False
    with reporter:
        worker.start()
        while worker.is_alive():
            try:
                worker.join(timeout=0.2)
            except KeyboardInterrupt:
                if not interrupted:
                    interrupted = True
                    logger.info("Ctrl+C detected - stopping queue and cancelling active compressions")
                    console.print("[yellow]Stopping... active compressions are being cancelled[/yellow]")
                    scheduler.stop()

    summary = result[0] if result else scheduler.summary()
    if interrupted:
        typer.secho("\n✓ Compression stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    if summary.failed:
        raise typer.Exit(code=1)


@app.command()
def codecs():
    """List supported codecs and their quality ranges."""
    table = Table(title="Codecs")
    table.add_column("Codec")
    table.add_column("Encoder", no_wrap=True)
    table.add_column("Hardware")
    table.add_column("CRF range", justify="right")
    table.add_column("Default", justify="right")
    table.add_column("Description")
    for codec in VideoCodec:
        low, high = codec.recommended_quality_range
        table.add_row(
            codec.display_name,
            codec.ffmpeg_value,
            codec.hardware_encoder() or "-",
            f"{low}-{high}",
            str(codec.default_quality),
            codec.description,
        )
    Console().print(table)


if __name__ == "__main__":
    app()
