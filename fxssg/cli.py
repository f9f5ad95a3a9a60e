"""Command-line interface for fxssg.

This module defines the CLI commands using Click framework.

Commands:
- build: Build pages and the edge script.
- routes: Rebuild without cleaning, then list every route the edge script serves.
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from . import __version__

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"
_LEVEL_COLORS = {"WARNING": "yellow", "ERROR": "red", "CRITICAL": "red"}


class ClickHandler(logging.Handler):
    """Logging handler that writes through click.echo to stderr."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            color = _LEVEL_COLORS.get(record.levelname)
            click.echo(click.style(message, fg=color) if color else message, err=True)
        except Exception:
            self.handleError(record)


def _configure_logging(verbose: bool) -> None:
    """Attach a single ClickHandler to the package logger."""
    package_logger = logging.getLogger("fxssg")
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(isinstance(h, ClickHandler) for h in package_logger.handlers):
        handler = ClickHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)


def _run_build(project: Path, output: Path | None, clean: bool):
    """Run a build and turn fatal errors into a clean exit."""
    from .build import BuildError, build_site

    try:
        return build_site(project, clean_output=clean, output_dir_override=output)
    except BuildError as exc:
        try:
            rel_path = exc.source_path.relative_to(project)
        except ValueError:
            rel_path = exc.source_path
        click.echo(click.style("Build failed:", fg="red", bold=True), err=True)
        click.echo(click.style(f"  Path: {rel_path}", fg="yellow"), err=True)
        click.echo(click.style(f"  Error: {exc.message}", fg="white"), err=True)
        raise SystemExit(1) from None


@click.group()
@click.version_option(version=__version__, prog_name="fxssg")
def cli():
    """FX static site generator."""


@cli.command()
@click.option(
    "--project",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root (defaults to the current directory)",
)
@click.option(
    "--output",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Write pages here instead of the configured output_dir",
)
@click.option("--no-clean", is_flag=True, help="Keep existing files in the output directory")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
def build(project: Path | None, output: Path | None, no_clean: bool, verbose: bool):
    """Build pages and the edge dispatch script."""
    _configure_logging(verbose)
    project_root = (project or Path.cwd()).resolve()
    result = _run_build(project_root, output, clean=not no_clean)
    click.echo(
        f"Built {len(result.pages)} pages and {len(result.fragments)} fragments "
        f"into {result.output_dir} (fingerprint {result.fingerprint})"
    )
    if result.skipped:
        click.echo(click.style(f"Skipped {len(result.skipped)} files", fg="yellow"))


@cli.command()
@click.option(
    "--project",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root (defaults to the current directory)",
)
def routes(project: Path | None):
    """List the routes served by the edge script.

    Runs a build without cleaning the output directory first, so existing
    files are kept and the pages and edge script are refreshed.
    """
    _configure_logging(False)
    logging.getLogger("fxssg").setLevel(logging.WARNING)
    project_root = (project or Path.cwd()).resolve()
    result = _run_build(project_root, None, clean=False)
    for name, route_key in result.fragments.items():
        click.echo(f"{route_key}\t{name}")


def main():
    """Entry point for the CLI application."""
    cli()
