#!/usr/bin/env python3
"""Command line interface for PagePulse using Typer.

Progress events are written to stdout as JSON lines so they can be piped
into other tools; log output goes to stderr.
"""

import asyncio
import json
import logging
import signal
from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from pydantic import ValidationError
from typing_extensions import Annotated

from .. import __version__
from ..capture.config import ConfigurationError, PagePulseConfig, load_config
from ..models.batch import BatchItem, BatchSpec, ExecutionMode
from ..models.capture import CaptureSpec, RunKind
from ..models.events import BatchEventStatus, RunEventStatus
from ..service import CaptureService


class ExitCode(Enum):
    """Process exit codes."""
    SUCCESS = 0
    RUN_FAILED = 1
    CONFIG_ERROR = 2
    RUNTIME_ERROR = 3


app = typer.Typer(
    name="pagepulse",
    help="PagePulse - time-boxed browser capture runs",
    add_completion=False,
    rich_markup_mode="rich"
)


@app.callback()
def main():
    """
    PagePulse - time-boxed browser capture runs.

    Runs performance, cookie-consent, console-error and screenshot captures
    against one URL or a batch of URLs over a shared browser pool.
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"PagePulse CLI v{__version__}")


def _load(config_file: Optional[Path], env: Optional[str]) -> PagePulseConfig:
    try:
        return load_config(config_file, environment=env)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)


def _configure_logging(config: PagePulseConfig, log_level: Optional[str]) -> None:
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _install_cancel_handler(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        loop.add_signal_handler(signal.SIGTERM, cancel.set)
    except (NotImplementedError, RuntimeError):
        logging.getLogger(__name__).debug("Signal handlers not supported on this platform")


def read_batch_file(path: Path) -> List[BatchItem]:
    """Read ``url[,label]`` lines, skipping blanks and ``#`` comments."""
    items = []
    for line in path.read_text(encoding='utf-8').splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        url, _, label = line.partition(',')
        items.append(BatchItem(url=url.strip(), label=label.strip() or None))
    return items


async def _run_single(config: PagePulseConfig, spec: CaptureSpec) -> RunEventStatus:
    cancel = asyncio.Event()
    _install_cancel_handler(cancel)
    final = RunEventStatus.ERROR
    async with CaptureService.from_config(config) as service:
        async for event in service.start_run(spec, cancel):
            typer.echo(event.model_dump_json(exclude_none=True))
            if event.is_terminal:
                final = event.status
    return final


async def _run_batch(config: PagePulseConfig, spec: BatchSpec) -> Optional[BatchEventStatus]:
    cancel = asyncio.Event()
    _install_cancel_handler(cancel)
    final = None
    failed = 0
    async with CaptureService.from_config(config) as service:
        async for event in service.start_batch(spec, cancel):
            typer.echo(event.model_dump_json(exclude_none=True))
            if event.is_terminal:
                final = event.status
                failed = event.result.failed if event.result else 0
    if final == BatchEventStatus.BATCH_COMPLETE and failed:
        return None
    return final


@app.command()
def run(
    url: Annotated[
        str,
        typer.Argument(help="URL to capture")
    ],

    device: Annotated[
        str,
        typer.Option("--device", "-d", help="Device profile (desktop, desktop-hd, mobile, tablet)")
    ] = "desktop",

    kind: Annotated[
        RunKind,
        typer.Option("--kind", "-k", help="Run kind")
    ] = RunKind.PERFORMANCE,

    screenshots: Annotated[
        bool,
        typer.Option("--screenshots", help="Capture a screenshot sequence")
    ] = False,

    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to configuration file")
    ] = None,

    env: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Environment (development, staging, production, test)")
    ] = None,

    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Log level override")
    ] = None,
):
    """
    Capture a single URL and stream progress events as JSON lines.

    Exits with 0 only when the run completed.
    """
    config = _load(config_file, env)
    _configure_logging(config, log_level)

    try:
        spec = CaptureSpec(url=url, device_profile=device, run_kind=kind,
                           include_screenshots=screenshots)
    except ValidationError as e:
        typer.echo(f"Invalid run: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    try:
        final = asyncio.run(_run_single(config, spec))
    except Exception as e:
        typer.echo(f"Run error: {e}", err=True)
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)

    if final != RunEventStatus.COMPLETE:
        raise typer.Exit(code=ExitCode.RUN_FAILED.value)


@app.command()
def batch(
    urls_file: Annotated[
        Path,
        typer.Argument(help="File with one url[,label] per line")
    ],

    sequential: Annotated[
        bool,
        typer.Option("--sequential", help="Run items one at a time")
    ] = False,

    max_concurrency: Annotated[
        Optional[int],
        typer.Option("--max-concurrency", min=1, help="Items per parallel chunk")
    ] = None,

    device: Annotated[
        str,
        typer.Option("--device", "-d", help="Device profile for every item")
    ] = "desktop",

    kind: Annotated[
        RunKind,
        typer.Option("--kind", "-k", help="Run kind for every item")
    ] = RunKind.PERFORMANCE,

    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to configuration file")
    ] = None,

    env: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Environment (development, staging, production, test)")
    ] = None,

    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Log level override")
    ] = None,
):
    """
    Capture every URL in a file as one batch.

    Exits with 0 only when every item completed.
    """
    if not urls_file.exists():
        typer.echo(f"URL file not found: {urls_file}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    config = _load(config_file, env)
    _configure_logging(config, log_level)

    try:
        spec = BatchSpec(
            items=read_batch_file(urls_file),
            mode=ExecutionMode.SEQUENTIAL if sequential else ExecutionMode.BOUNDED_PARALLEL,
            max_concurrency=max_concurrency,
            device_profile=device,
            run_kind=kind,
        )
    except ValidationError as e:
        typer.echo(f"Invalid batch: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    try:
        final = asyncio.run(_run_batch(config, spec))
    except Exception as e:
        typer.echo(f"Batch error: {e}", err=True)
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)

    if final != BatchEventStatus.BATCH_COMPLETE:
        raise typer.Exit(code=ExitCode.RUN_FAILED.value)


@app.command(name="config-show")
def config_show(
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to configuration file")
    ] = None,

    env: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Environment to resolve")
    ] = None,
):
    """Print the effective configuration for an environment."""
    config = _load(config_file, env)
    try:
        effective = {
            'environment': config.environment,
            'log_level': config.log_level,
            'browser': config.get_browser_config().to_browser_options(),
            'pool': vars(config.get_pool_config()),
            'timeouts': vars(config.get_timeout_config()),
            'admission': vars(config.get_admission_config()),
            'orchestrator': vars(config.get_orchestrator_config()),
            'batch': vars(config.get_batch_config()),
            'persistence': config.get_persistence_settings(),
        }
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    typer.echo(yaml.safe_dump(json.loads(json.dumps(effective, default=str)), sort_keys=False))


def cli_main():
    """Console script entry point."""
    app()


if __name__ == "__main__":
    cli_main()
