# src/vmsync/cli.py
"""vmsync Command Line Interface.

Entry point for the vmsync CLI tool.
"""

from __future__ import annotations

import threading
from pathlib import Path

import typer
from pydantic import ValidationError

from vmsync import __version__
from vmsync.clients.ingest import IngestClient
from vmsync.clients.vsphere import VSphereDirectory
from vmsync.contracts.errors import SyncError
from vmsync.contracts.records import SnapshotResult
from vmsync.core.config import SyncSettings, describe_settings, load_settings
from vmsync.export.formatting import render_table, serialize_rows
from vmsync.export.snapshot import SnapshotExporter
from vmsync.sync import load_tag_map, run_sync, stop_on_signals

__all__ = ["app"]

app = typer.Typer(
    name="vmsync",
    help="vmsync: keep ingestion platform inventory in step with vSphere.",
    no_args_is_help=True,
)


def _show_version(value: bool) -> None:
    if value:
        typer.echo(f"vmsync version {__version__}")
        raise typer.Exit()


def _apply_env_file(env_file: Path | None) -> None:
    """Load VMSYNC_* overrides from a .env file without clobbering the real environment.

    With no explicit file, python-dotenv searches upwards from the working
    directory and a missing file is not an error.

    Raises:
        typer.Exit: If an explicit env_file does not exist
    """
    from dotenv import load_dotenv

    if env_file is None:
        load_dotenv(override=False)
    elif env_file.is_file():
        load_dotenv(env_file, override=False)
    else:
        typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=_show_version,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(False, "--no-dotenv", help="Do not read a .env file."),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Read VMSYNC_* overrides from this file instead of searching for .env.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Write logs to stderr as JSON lines."),
) -> None:
    """vmsync: keep ingestion platform inventory in step with vSphere."""
    from vmsync.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")
    if not no_dotenv:
        _apply_env_file(env_file)


def _print_settings(settings: SyncSettings) -> None:
    shown = describe_settings(settings)
    typer.echo("Settings loaded:")
    for section in ("vcenter", "ingest"):
        typer.echo(f" {section}:")
        for key, value in shown[section].items():
            if isinstance(value, dict):
                continue
            typer.echo(f"  {key}: {value}")
    typer.echo(f" insecure: {shown['insecure']}")


def _load_or_exit(settings_path: Path) -> SyncSettings:
    try:
        return load_settings(settings_path)
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings_path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        problems = [f"  - {'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()]
        typer.echo("Configuration errors in " + str(settings_path) + ":\n" + "\n".join(problems), err=True)
        raise typer.Exit(1) from None


_SETTINGS_OPTION = typer.Option(
    Path("settings.yaml"),
    "--settings",
    "-s",
    help="Settings file (YAML or JSON).",
)


@app.command()
def run(
    settings: Path = _SETTINGS_OPTION,
    subscribe: bool = typer.Option(False, "--subscribe", help="After the snapshot, follow renames and tag edits."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the snapshot payload instead of uploading it."),
) -> None:
    """Export the inventory snapshot, optionally following changes."""
    config = _load_or_exit(settings)
    _print_settings(config)

    try:
        directory = VSphereDirectory.connect(
            config.vcenter,
            insecure=config.insecure,
            page_size=config.export.event_page_size,
            poll_interval=config.export.poll_interval_seconds,
        )
    except SyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    client = IngestClient.from_settings(config.ingest, insecure=config.insecure)
    try:
        if dry_run:
            tag_map = load_tag_map(directory)
            rows = SnapshotExporter(directory, client, tag_map, segment=config.export.segment).collect(
                config.vcenter.datacenter
            )
            typer.echo(f"Instances with an address: {len(rows)}")
            typer.echo(render_table(rows))
            typer.echo("")
            typer.echo(serialize_rows(rows).decode("utf-8"), nl=False)
            return

        def _report(result: SnapshotResult) -> None:
            typer.echo(f"Instances exported: {result.rows_exported}")
            typer.echo(render_table(result.rows))
            typer.echo(f"Upload status: {result.upload_status}")
            if subscribe:
                typer.echo("Subscribing to instance events (Ctrl-C to stop)")

        with stop_on_signals(threading.Event()) as stop:
            run_sync(directory, directory, client, config, subscribe=subscribe, stop=stop, on_snapshot=_report)
    except SyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    finally:
        client.close()
        directory.close()


@app.command()
def validate(
    settings: Path = _SETTINGS_OPTION,
) -> None:
    """Validate a settings file without connecting anywhere."""
    config = _load_or_exit(settings)
    _print_settings(config)
    typer.echo("Settings valid.")
