"""Thin CLI wrapper for ubuntu_autoinstaller.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console

from ubuntu_autoinstaller import __version__
from ubuntu_autoinstaller.artifacts.store import ArtifactStore
from ubuntu_autoinstaller.builds.orchestrator import BuildOrchestrator
from ubuntu_autoinstaller.builds.plan import default_plan
from ubuntu_autoinstaller.builds.registry import BuildRegistry
from ubuntu_autoinstaller.builds.status import StatusReporter
from ubuntu_autoinstaller.config import Settings, get_settings, print_settings_json
from ubuntu_autoinstaller.db import open_catalog
from ubuntu_autoinstaller.log import configure_logging
from ubuntu_autoinstaller.types import BuildStatus
from ubuntu_autoinstaller.userdata.schema import (
    BuildRequest,
    BuildRequestError,
    validate_build_request,
)

app = typer.Typer(
    name="uai",
    help="Ubuntu Autoinstall ISO Builder - build unattended-install Ubuntu images",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ubuntu-autoinstaller version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Ubuntu Autoinstall ISO Builder - build unattended-install Ubuntu images."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Source cache:        {settings.source_cache_dir}")
        console.print(f"  Artifacts directory: {settings.artifacts_dir}")
        console.print(f"  Uploads directory:   {settings.uploads_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Ubuntu mirror:       {settings.ubuntu_mirror}")
        console.print(f"  Keyserver:           {settings.keyserver}")
        console.print(f"  Retention (hours):   {settings.retention_hours}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        build_timeout = settings.build_timeout or "none"
        console.print(f"  Build timeout:       {build_timeout}")
        console.print(f"  Command timeout:     {settings.command_timeout}")
        console.print(f"  Download timeout:    {settings.download_timeout}")


def _load_request(path: str) -> BuildRequest:
    """Load and validate a build request file, exiting on error."""
    file_path = Path(path)
    if not file_path.is_file():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(code=1)

    try:
        data = yaml.safe_load(file_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        console.print(f"[red]Invalid YAML in {path}:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None

    if not isinstance(data, dict):
        console.print("[red]Build request must be a mapping[/red]")
        raise typer.Exit(code=1)

    try:
        return validate_build_request(data)
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except BuildRequestError as e:
        console.print(f"[red]Validation failed:[/red] {e}", highlight=False)
        raise typer.Exit(code=1) from None


def _open_store(settings: Settings) -> tuple[Any, ArtifactStore]:
    engine, session_factory = open_catalog(settings.db_url)
    store = ArtifactStore(
        artifacts_dir=settings.artifacts_dir,
        uploads_dir=settings.uploads_dir,
        session_factory=session_factory,
        max_upload_bytes=settings.max_upload_bytes,
    )
    return engine, store


@app.command()
def validate(
    path: Annotated[str, typer.Argument(help="Path to build request YAML")],
) -> None:
    """Validate a build request file without building."""
    request = _load_request(path)
    source = request.source_iso or f"download ({request.code_name})"
    console.print("[green]✓ Valid build request[/green]")
    console.print(f"  Source:      {source}", markup=False)
    console.print(f"  Destination: {request.destination_iso}", markup=False)
    console.print(f"  Packages:    {len(request.packages)}")
    console.print(f"  HWE kernel:  {request.use_hwe_kernel}")


@app.command()
def build(
    path: Annotated[str, typer.Argument(help="Path to build request YAML")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output final status as JSON"),
    ] = False,
) -> None:
    """Build an autoinstall ISO in-process, streaming its log.

    Exits with code 1 when the build fails or is cancelled.
    """
    settings = get_settings()
    configure_logging(settings.log_level, rich=True)
    request = _load_request(path)

    engine, store = _open_store(settings)
    registry = BuildRegistry()
    orchestrator = BuildOrchestrator.from_settings(
        settings, registry, store, plan=default_plan(settings, store)
    )
    reporter = StatusReporter(registry, store)

    job = orchestrator.start(request)
    if not json_output:
        console.print(f"[blue]Started build {job.id}[/blue]")

    try:
        for line in reporter.iter_logs(job.id, poll_interval=0.2):
            if not json_output:
                console.print(line.format(), markup=False, highlight=False)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, cancelling build...[/yellow]")
        orchestrator.cancel(job.id)
    try:
        orchestrator.wait(job.id)
        view = reporter.get_status(job.id)
        artifact = (
            reporter.get_artifact(job.id)
            if view.status == BuildStatus.COMPLETED
            else None
        )
    finally:
        engine.dispose()

    if json_output:
        output: dict[str, Any] = {
            "build": view.model_dump(mode="json"),
            "artifact": None,
        }
        if artifact is not None:
            output["artifact"] = {
                "handle": artifact.handle,
                "filename": artifact.filename,
                "path": str(artifact.path),
                "size_bytes": artifact.size_bytes,
                "sha256": artifact.sha256,
            }
        console.print_json(json.dumps(output))
    elif artifact is not None:
        console.print()
        console.print("[green]✓ Build completed[/green]")
        console.print(f"  ISO:     {artifact.path}", markup=False)
        console.print(f"  SHA-256: {artifact.sha256}")
    else:
        console.print()
        console.print(f"[red]✗ Build {view.status.value}[/red]")
        if view.error is not None:
            step = f" at {view.error.step}" if view.error.step else ""
            console.print(f"  Error{step}: {view.error.message}", markup=False)

    if view.status != BuildStatus.COMPLETED:
        raise typer.Exit(code=1)


@app.command()
def sweep(
    max_age_hours: Annotated[
        float | None,
        typer.Option(
            "--max-age-hours",
            help="Remove artifacts and uploads older than this (default: retention_hours)",
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Remove stored artifacts and uploads past the retention period."""
    settings = get_settings()
    configure_logging(settings.log_level, rich=True)
    hours = max_age_hours if max_age_hours is not None else settings.retention_hours
    if hours <= 0:
        console.print("[red]--max-age-hours must be positive[/red]")
        raise typer.Exit(code=1)

    engine, store = _open_store(settings)
    try:
        # Uploads may still feed a build running in a server process.
        grace = (
            timedelta(seconds=settings.build_timeout)
            if settings.build_timeout is not None
            else None
        )
        removed = store.retention_sweep(timedelta(hours=hours), upload_grace=grace)
    finally:
        engine.dispose()

    if json_output:
        console.print_json(json.dumps({"removed": removed}))
    else:
        console.print(f"[green]Removed {len(removed)} item(s)[/green]")
        for handle in removed:
            console.print(f"  {handle}")


if __name__ == "__main__":
    app()
