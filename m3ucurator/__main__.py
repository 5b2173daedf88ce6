"""Click-based command line entry point for m3ucurator."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

import click

from . import __version__
from .adapters.m3u import ParseSession, fetch_playlist
from .errors import ConfigError, FatalError, IngestionError, ParseError
from .exporter import export_stats
from .logging_conf import configure_logging
from .pipeline import JobResult, export_options, load_job, run_job

HANDLED_ERRORS = (ConfigError, FatalError, IngestionError, ParseError)


@click.group(help="Curate M3U and Xtream catalogs into playlists and STRM libraries")
@click.version_option(__version__)
@click.option("--verbose", is_flag=True, help="Enable verbose logging output.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """
    Root CLI group configuring logging before subcommands execute.
    """

    configure_logging("DEBUG" if verbose else "INFO")
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command("groups")
@click.argument("playlist")
def cli_groups(playlist: str) -> None:
    """List the groups of a playlist file or URL with their entry counts."""

    try:
        with ParseSession().open(_read_playlist(playlist)) as session:
            counts = session.scan_groups()
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    for item in counts:
        click.echo(f"{item.name}\t{item.count}")


@cli.command("channels")
@click.argument("playlist")
@click.option("--group", "group_name", required=True, help="Group whose entries are listed.")
def cli_channels(playlist: str, group_name: str) -> None:
    """List the entries of one group of a playlist file or URL."""

    try:
        with ParseSession().open(_read_playlist(playlist)) as session:
            entries = session.group_entries(group_name)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    for entry in entries:
        click.echo(f"{entry.id}\t{entry.display_name}\t{entry.quality_tag or '-'}\t{entry.stream_uri}")


@cli.command("build")
@click.option("--config", "config_path", required=True, type=click.Path(path_type=Path, exists=True, dir_okay=False))
def cli_build(config_path: Path) -> None:
    """Synthesize the playlist configured in a job file."""

    _report(_run(config_path, playlist=True, vod=False))


@cli.command("export")
@click.option("--config", "config_path", required=True, type=click.Path(path_type=Path, exists=True, dir_okay=False))
def cli_export(config_path: Path) -> None:
    """Reconcile the STRM tree configured in a job file."""

    _report(_run(config_path, playlist=False, vod=True))


@cli.command("run")
@click.option("--config", "config_path", required=True, type=click.Path(path_type=Path, exists=True, dir_okay=False))
def cli_run(config_path: Path) -> None:
    """Build the playlist and reconcile the STRM tree of a job file."""

    _report(_run(config_path, playlist=True, vod=True))


@cli.command("stats")
@click.option("--config", "config_path", required=True, type=click.Path(path_type=Path, exists=True, dir_okay=False))
def cli_stats(config_path: Path) -> None:
    """Show pointer-file count and last export time of a job's STRM tree."""

    try:
        job = load_job(config_path)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not job.vod:
        raise click.ClickException(f"{config_path} has no 'vod' section")
    stats = export_stats(export_options(job).directory)
    click.echo(f"directory: {stats['directory']}")
    click.echo(f"files: {stats['total_files']}")
    click.echo(f"last export: {stats['last_export'] or 'never'}")


def _run(config_path: Path, *, playlist: bool, vod: bool) -> JobResult:
    try:
        return run_job(config_path, playlist=playlist, vod=vod)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc


def _report(result: JobResult) -> None:
    logger = logging.getLogger(__name__)
    logger.info("ingested %d entries", len(result.entries))
    if result.failed_sources:
        logger.warning("failed sources: %s", ", ".join(result.failed_sources))
    if result.playlist_path:
        click.echo(f"playlist: {result.playlist_path} ({result.playlist_entries} entries)")
    if result.export:
        summary = result.export
        click.echo(
            f"export: {summary.created} created, {summary.updated} updated, "
            f"{summary.deleted} deleted, {summary.errors} errors -> {summary.directory}"
        )


def _read_playlist(source: str) -> str:
    if source.startswith(("http://", "https://")):
        return fetch_playlist(source)
    path = Path(source)
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise ConfigError(f"cannot read playlist {path}: {exc}") from exc


def main(argv: Optional[Iterable[str]] = None) -> int:
    """
    Entry point returning an exit code for setuptools console scripts.
    """

    argv_list = list(argv if argv is not None else sys.argv[1:])
    try:
        cli.main(args=argv_list, prog_name="m3ucurator", standalone_mode=False)
    except click.ClickException as exc:
        exc.show()
        return 1
    except SystemExit as exc:
        return int(exc.code or 0)
    return 0


if __name__ == "__main__":
    sys.exit(main())
