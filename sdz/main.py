import threading
import typer
from pathlib import Path
from typing import Optional
from sdz.config.loader import load_config
from sdz.config.models import AppConfig
from sdz.infrastructure.logging import setup_logging
from sdz.infrastructure.event_bus import EventBus
from sdz.domain.models import AdmissionDecision, TaskState
from sdz.pipeline.orchestrator import Orchestrator
from sdz.ui.console import ConsoleReporter

app = typer.Typer(help="SDZ (Slide Deep Zoom) - watch folders and convert slides to Deep Zoom tiles")

DEFAULT_CONFIG_PATH = Path("conf/sdz.yaml")


def _load(config_path: Optional[Path]) -> AppConfig:
    if config_path is not None:
        return load_config(config_path)
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return AppConfig()


def _apply_overrides(
    config: AppConfig,
    output: Optional[Path],
    concurrency: Optional[int],
    retries: Optional[int],
    remote_url: Optional[str],
    debug: bool,
    log_path: Optional[Path],
):
    if output is not None: config.watch.output_root = str(output)
    if concurrency: config.pool.max_concurrency = concurrency
    if retries is not None: config.pool.max_retries = retries
    if remote_url:
        config.remote.enabled = True
        config.remote.url = remote_url
    if debug: config.general.debug = True
    if log_path is not None: config.general.log_path = str(log_path)


@app.command()
def watch(
    watch_root: Optional[Path] = typer.Argument(None, help="Directory to watch for slides (optional if set in config)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory for .dzi files"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-j", min=1, help="Override max concurrent conversions"),
    retries: Optional[int] = typer.Option(None, "--retries", min=0, help="Override max retries per slide"),
    remote_url: Optional[str] = typer.Option(None, "--remote-url", help="Delegate conversions to a conversion server"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (default: <output>/conversion.log)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Watch a directory and convert every stable slide that appears in it."""
    try:
        config = _load(config_path)
        if watch_root is not None: config.watch.watch_root = str(watch_root)
        _apply_overrides(config, output, concurrency, retries, remote_url, debug, log_path)

        if not config.watch.watch_root:
            typer.secho("Error: no watch directory given (argument or watch.watch_root in config).", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        root = Path(config.watch.watch_root)
        if not root.is_dir():
            typer.secho(f"Error: watch directory does not exist: {root}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)

        bus = EventBus()
        orchestrator = Orchestrator(config, bus)
        logger = setup_logging(
            orchestrator.output_root,
            debug=config.general.debug,
            log_path=Path(config.general.log_path) if config.general.log_path else None,
        )
        logger.info(f"SDZ watch started: root={orchestrator.watch_root} output={orchestrator.output_root}")
        reporter = ConsoleReporter(bus, verbose=config.general.debug)

        orchestrator.start()
        typer.secho(f"Watching {orchestrator.watch_root} -> {orchestrator.output_root} (Ctrl+C to stop)", fg=typer.colors.CYAN)
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            typer.secho("\nStopping, cancelling running conversions...", fg=typer.colors.YELLOW)
            orchestrator.stop()
            bus.close()
            typer.secho(f"Stopped by user (Ctrl+C): {reporter.summary()}", fg=typer.colors.YELLOW)
            raise typer.Exit(code=130)

    except typer.Exit:
        raise

    except Exception as e:
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def convert(
    file: Path = typer.Argument(..., help="Slide file to convert"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory for .dzi files"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    retries: Optional[int] = typer.Option(None, "--retries", min=0, help="Override max retries"),
    remote_url: Optional[str] = typer.Option(None, "--remote-url", help="Delegate the conversion to a conversion server"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (default: <output>/conversion.log)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Convert a single slide and exit (0 on success, 1 on failure)."""
    if not file.is_file():
        typer.secho(f"Error: file not found: {file}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    orchestrator = None
    bus = None
    try:
        config = _load(config_path)
        _apply_overrides(config, output, None, retries, remote_url, debug, log_path)
        config.watch.watch_root = None
        if not config.watch.output_root:
            config.watch.output_root = str(file.absolute().parent / "dzi")
        # An explicit request is not a copy in progress
        config.watch.min_file_age_s = 0.0

        bus = EventBus()
        orchestrator = Orchestrator(config, bus)
        setup_logging(
            orchestrator.output_root,
            debug=config.general.debug,
            log_path=Path(config.general.log_path) if config.general.log_path else None,
        )
        ConsoleReporter(bus, verbose=config.general.debug)
        orchestrator.start(watch=False)

        receipt = orchestrator.submit(file)
        if receipt.decision == AdmissionDecision.ALREADY_CONVERTED:
            typer.secho(f"Already converted: {orchestrator.output_root / receipt.task_key}.dzi", fg=typer.colors.GREEN)
            return
        if not receipt.accepted:
            typer.secho(f"Error: {file} not accepted ({receipt.decision.value})", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)

        orchestrator.wait_idle()
        status = orchestrator.status(receipt.task_key)
        if status is None or status.state != TaskState.COMPLETED:
            raise typer.Exit(code=1)

    except KeyboardInterrupt:
        typer.secho("\nConversion stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)

    except typer.Exit:
        raise

    except Exception as e:
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    finally:
        if orchestrator is not None:
            orchestrator.stop()
        if bus is not None:
            bus.close()


if __name__ == "__main__":
    app()
