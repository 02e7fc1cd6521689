# === NAVMAP v1 ===
# {
#   "module": "BuildCache.CachePull.cli",
#   "purpose": "Typer CLI for running cache pulls and inspecting settings",
#   "sections": [
#     {"id": "clicontext", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"},
#     {"id": "pull", "name": "pull", "anchor": "function-pull", "kind": "function"},
#     {"id": "settings-cmd", "name": "settings_cmd", "anchor": "function-settings-cmd", "kind": "function"},
#     {"id": "version-cmd", "name": "version_cmd", "anchor": "function-version-cmd", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command-line entry point for the cache pull step.

Exit codes:
    0: archive restored, pull skipped for an incompatible archive, or no
       cache URL configured.
    1: configuration error or an unrecoverable download, decode or
       extraction failure.

Example:
    $ cache-pull pull --stack-id osx-xcode-12.3.x
    $ cache-pull settings
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import typer
from rich.console import Console

from . import __version__
from .api import run_cache_pull
from .errors import CachePullError, ConfigError
from .logging_utils import redact_url, setup_logging
from .settings import CachePullSettings, load_settings

_console = Console()


class CliContext:
    """Shared state for one CLI invocation."""

    def __init__(self, verbosity: int = 0) -> None:
        self.verbosity = verbosity
        self.console = _console

    def log_debug(self, message: str) -> None:
        if self.verbosity >= 1:
            self.console.print(f"[dim]DEBUG: {message}[/dim]")


app = typer.Typer(
    name="cache-pull",
    help="Restore a published build cache into the local filesystem",
    no_args_is_help=True,
)

_context: Optional[CliContext] = None


def get_context() -> CliContext:
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


def _load(overrides: Dict[str, Any]) -> CachePullSettings:
    ctx = get_context()
    try:
        return load_settings(overrides)
    except ConfigError as exc:
        ctx.console.print(f"[red]✗ {exc}[/red]")
        raise typer.Exit(1)


@app.callback()
def main(
    verbosity: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Enable debug logging",
    ),
) -> None:
    """Cache pull CLI."""
    global _context
    _context = CliContext(verbosity=verbosity)


@app.command()
def pull(
    cache_api_url: Optional[str] = typer.Option(
        None, "--cache-api-url", help="Cache index URL, signed download URL or file:// path"
    ),
    stack_id: Optional[str] = typer.Option(
        None, "--stack-id", help="Current stack identifier; empty disables the stack check"
    ),
    no_fallback: bool = typer.Option(
        False, "--no-fallback", help="Fail instead of retrying from a downloaded copy"
    ),
) -> None:
    """Download, verify and extract the configured cache archive."""
    ctx = get_context()
    overrides: Dict[str, Any] = {"cache_api_url": cache_api_url, "stack_id": stack_id}
    if no_fallback:
        overrides["allow_fallback"] = False
    if ctx.verbosity:
        overrides["debug_mode"] = True
    settings = _load(overrides)

    logger = setup_logging(level=settings.log_level, log_dir=settings.log_dir)
    ctx.log_debug(f"Config hash: {settings.config_hash()}")
    ctx.log_debug(f"Cache URL: {redact_url(settings.cache_api_url)}")

    try:
        result = run_cache_pull(settings, logger=logger)
    except CachePullError as exc:
        ctx.console.print(f"[red]✗ Cache pull failed: {exc}[/red]")
        raise typer.Exit(1)

    if result is None:
        return
    if result.skipped:
        ctx.console.print("[yellow]Skipped cache pull: archive is not compatible[/yellow]")
    else:
        ctx.console.print(f"[green]✓ Done[/green] in {result.duration_sec:.1f}s")


@app.command("settings")
def settings_cmd() -> None:
    """Print the effective settings as JSON."""
    settings = _load({})
    payload = settings.model_dump(mode="json")
    payload["cache_api_url"] = redact_url(settings.cache_api_url)
    payload["config_hash"] = settings.config_hash()
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


@app.command("version")
def version_cmd() -> None:
    """Show version information."""
    get_context().console.print(f"[bold]cache-pull[/bold] version {__version__}")


__all__ = ["CliContext", "app", "get_context", "main"]
