"""drivesync CLI: run and inspect a personal drive server.

Commands:
    drivesync init [--dir DIR]         write drivesync.toml + data dirs
    drivesync serve [--host] [--port]  start the HTTP API
    drivesync reindex                  scan files and notes into the index
    drivesync tags                     list tags with note counts
    drivesync search QUERY             full-text note search
    drivesync state [--since MS]       dump sync state as JSON
    drivesync cleanup                  delete expired tokens and challenges
    drivesync keys                     count loaded authorized keys

All commands accept --config PATH; otherwise the lookup in drivesync.config
applies.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from drivesync.config import CONFIG_FILENAME, DriveConfig, data_dir, init_config, load_config
from drivesync.errors import DriveError
from drivesync.server import Drive, serve as _serve

_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg(ctx: click.Context) -> DriveConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except DriveError as exc:
        raise click.ClickException(str(exc)) from exc


def _open_drive(cfg: DriveConfig) -> Drive:
    try:
        return Drive.open(cfg)
    except DriveError as exc:
        raise click.ClickException(str(exc)) from exc


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="drivesync")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Path to {CONFIG_FILENAME}",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """drivesync: personal file and note drive with delta sync."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------------------------------------------------------------------------
# drivesync init / serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--dir", "root", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory for drivesync.toml (default: data dir)")
def init(root: Path | None) -> None:
    """Write a default drivesync.toml and create the data directories."""
    config_path = (root or data_dir()) / CONFIG_FILENAME
    try:
        init_config(config_path)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo(f"{CONFIG_FILENAME} already exists, skipping init")

    try:
        cfg = load_config(config_path)
    except DriveError as exc:
        raise click.ClickException(str(exc)) from exc
    cfg.ensure_dirs()
    click.echo(f"Files dir       : {cfg.storage.files_root}")
    click.echo(f"Notes dir       : {cfg.storage.notes_root}")
    click.echo(f"Database        : {cfg.storage.database}")
    click.echo(f"Authorized keys : {cfg.auth.authorized_keys}")


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Port (overrides config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the HTTP API until Ctrl+C."""
    cfg = _load_cfg(ctx)
    logging.basicConfig(level=cfg.log_level, format=_LOG_FORMAT)
    try:
        _serve(cfg, host, port)
    except (DriveError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc


# ---------------------------------------------------------------------------
# Index maintenance
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def reindex(ctx: click.Context) -> None:
    """Scan the files and notes roots into the index."""
    cfg = _load_cfg(ctx)
    drive = _open_drive(cfg)
    try:
        stats = drive.scan()
    finally:
        drive.close()
    for kind, s in stats.items():
        click.echo(
            f"{kind}: {s['new']} new, {s['updated']} updated, "
            f"{s['unchanged']} unchanged, {s['skipped']} skipped"
        )


@cli.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Delete expired tokens and challenges."""
    drive = _open_drive(_load_cfg(ctx))
    try:
        tokens = drive.auth.cleanup_expired()
        challenges = drive.auth.cleanup_expired_challenges()
    finally:
        drive.close()
    click.echo(f"Removed {tokens} tokens, {challenges} challenges")


@cli.command()
@click.pass_context
def keys(ctx: click.Context) -> None:
    """Show how many authorized keys load from the configured file."""
    cfg = _load_cfg(ctx)
    drive = _open_drive(cfg)
    try:
        n = drive.auth.load_authorized_keys()
    except DriveError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        drive.close()
    click.echo(f"{n} authorized keys in {cfg.auth.authorized_keys}")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def tags(ctx: click.Context) -> None:
    """List tags of live notes, most used first."""
    drive = _open_drive(_load_cfg(ctx))
    try:
        infos = drive.notes.get_tags()
    finally:
        drive.close()
    if not infos:
        click.echo("No tags")
        return
    for info in infos:
        click.echo(f"{info.count:5d}  {info.name}")


@cli.command()
@click.argument("query")
@click.option("--limit", "-n", default=20, show_default=True, help="Max results")
@click.pass_context
def search(ctx: click.Context, query: str, limit: int) -> None:
    """Full-text search over note titles and bodies."""
    drive = _open_drive(_load_cfg(ctx))
    try:
        result = drive.notes.list_notes(search=query, limit=limit)
    except DriveError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        drive.close()
    if not result.notes:
        click.echo("No results")
        return
    for item in result.notes:
        tag_str = f"  [{', '.join(item.tags)}]" if item.tags else ""
        click.echo(f"{item.id}  {item.title}{tag_str}")


@cli.command()
@click.option("--since", type=int, default=None, help="Cursor (ms) from a previous server_time")
@click.pass_context
def state(ctx: click.Context, since: int | None) -> None:
    """Print the sync state as JSON."""
    drive = _open_drive(_load_cfg(ctx))
    try:
        snapshot = drive.sync.get_sync_state(since)
    finally:
        drive.close()
    click.echo(json.dumps(snapshot.to_dict(), indent=2))
