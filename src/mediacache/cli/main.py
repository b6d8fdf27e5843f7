"""
CLI for the media cache.

Commands:
    mediacache preload [ID ...] - Download catalog assets into the cache
    mediacache stats - Show cache statistics
    mediacache evict ID - Remove every variant of an asset
    mediacache clear - Remove every cached asset
    mediacache config - Show current configuration
    mediacache version - Print version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mediacache import __version__
from mediacache.cli.progress import PreloadProgress, format_bytes
from mediacache.config import Settings, clear_settings_cache, get_settings
from mediacache.download.cancellation import CancellationToken
from mediacache.exceptions import ConfigurationError, UnknownAssetError
from mediacache.logging import setup_logging
from mediacache.manager import CacheManager
from mediacache.sources.catalog import ContentCatalog
from mediacache.types import PreloadEvent, PreloadEventType, PreloadResult, Variant

app = typer.Typer(
    name="mediacache",
    help="Media Cache - size-bounded local cache for remote video assets",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _load(catalog_path: Path | None, verbose: bool = False) -> tuple[Settings, ContentCatalog]:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'mediacache config' to see the current values."
        )
        raise typer.Exit(1)

    setup_logging(
        "DEBUG" if verbose else settings.LOG_LEVEL,
        settings.LOG_FILE,
        console_output=verbose,
    )

    path = catalog_path or settings.CATALOG_PATH
    if path is None:
        return settings, ContentCatalog()
    try:
        return settings, ContentCatalog.from_file(path)
    except ConfigurationError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


CatalogOption = Annotated[
    Optional[Path],
    typer.Option("--catalog", "-c", help="Content catalog JSON (default: CATALOG_PATH)"),
]


@app.command()
def preload(
    ids: Annotated[
        Optional[list[str]],
        typer.Argument(help="Logical asset IDs (default: every catalog asset)"),
    ] = None,
    variant: Annotated[
        Variant,
        typer.Option("--variant", "-q", help="Variant to fetch when IDs are given"),
    ] = Variant.MP4,
    catalog_path: CatalogOption = None,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log to the console")
    ] = False,
) -> None:
    """Download assets into the cache.

    Without IDs every catalog asset is preloaded (mp4 variants, or webm
    where an asset has no mp4). Already cached assets are served from
    the cache. Ctrl-C cancels the running download and skips the rest.
    """
    settings, catalog = _load(catalog_path, verbose)
    if not catalog.items:
        error_console.print("[yellow]The content catalog is empty.[/yellow]")
        raise typer.Exit(1)

    if ids:
        try:
            pairs = [catalog.source_for(logical_id, variant) for logical_id in ids]
        except UnknownAssetError as e:
            error_console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        sources = [source for source, _ in pairs]
        metadata = {source.id: meta for source, meta in pairs}
    else:
        sources = catalog.priority_sources()
        metadata = catalog.metadata_map()

    async def _run(progress: PreloadProgress) -> dict[str, PreloadResult]:
        token = CancellationToken()

        def on_event(event: PreloadEvent) -> None:
            if event.result:
                progress.record(event.result)

        async with CacheManager.from_settings(settings, catalog=catalog) as manager:
            manager.preloader.subscribe(
                on_event,
                [PreloadEventType.COMPLETE, PreloadEventType.CANCELLED, PreloadEventType.ERROR],
            )
            try:
                return await manager.preloader.preload_many(
                    sources, metadata, on_progress=progress.update, token=token
                )
            except asyncio.CancelledError:
                token.cancel("interrupted")
                raise

    console.print()
    try:
        with PreloadProgress(console, [s.id for s in sources]) as progress:
            results = asyncio.run(_run(progress))
            progress.mark_complete(cancelled=len(results) < len(sources))
    except KeyboardInterrupt:
        error_console.print("\n[yellow]Preload interrupted.[/yellow]")
        raise typer.Exit(130)

    succeeded = [r for r in results.values() if r.success]
    failed = [r for r in results.values() if not r.success and not r.cancelled]
    from_cache = sum(1 for r in succeeded if r.from_cache)
    total = sum(r.size_bytes for r in succeeded)

    console.print()
    console.print(
        Panel(
            f"[bold]Loaded:[/bold] {len(succeeded)} of {len(sources)}\n"
            f"[bold]From cache:[/bold] {from_cache}\n"
            f"[bold]Downloaded:[/bold] {len(succeeded) - from_cache}\n"
            f"[bold]Failed:[/bold] {len(failed)}\n"
            f"[bold]Size:[/bold] {format_bytes(total)}",
            title="[bold]Preload Summary[/bold]",
            border_style="red" if failed else "green",
        )
    )
    for result in failed:
        error_console.print(
            f"[red]{result.asset_id}[/red] failed during "
            f"{result.failed_stage.value if result.failed_stage else 'unknown'}: {result.error}"
        )
    console.print()
    if failed:
        raise typer.Exit(1)


@app.command()
def stats(catalog_path: CatalogOption = None) -> None:
    """Show cache statistics."""
    settings, catalog = _load(catalog_path)

    async def _run():
        async with CacheManager.from_settings(settings, catalog=catalog) as manager:
            return await manager.stats(), [
                (s.id, manager.handles.get(s.id)) for s in catalog.sources()
            ]

    manager_stats, assets = asyncio.run(_run())
    store_stats = manager_stats.store

    console.print()
    if not manager_stats.ready:
        console.print("[yellow]Persistent cache is unavailable.[/yellow]")

    table = Table(title="Cache", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    budget = settings.MAX_CACHE_BYTES
    table.add_row("Entries", f"{store_stats.entry_count} / {settings.MAX_ENTRY_COUNT}")
    table.add_row(
        "Size",
        f"{format_bytes(store_stats.total_bytes)} / {format_bytes(budget)} "
        f"({store_stats.total_bytes / budget:.0%})",
    )
    table.add_row(
        "Oldest entry",
        store_stats.oldest_cached_at.isoformat() if store_stats.oldest_cached_at else "-",
    )
    table.add_row(
        "Newest entry",
        store_stats.newest_cached_at.isoformat() if store_stats.newest_cached_at else "-",
    )
    table.add_row("Location", str(settings.db_path))
    console.print(table)

    if assets:
        console.print()
        asset_table = Table(title="Catalog", show_header=True)
        asset_table.add_column("Asset", style="cyan")
        asset_table.add_column("Cached")
        asset_table.add_column("Size", justify="right")
        for asset_id, handle in assets:
            asset_table.add_row(
                asset_id,
                "[green]yes[/green]" if handle else "[dim]no[/dim]",
                format_bytes(handle.size_bytes) if handle else "",
            )
        console.print(asset_table)
    console.print()


@app.command()
def evict(
    logical_id: Annotated[str, typer.Argument(help="Logical asset ID")],
    catalog_path: CatalogOption = None,
) -> None:
    """Remove every variant of an asset from the cache."""
    settings, catalog = _load(catalog_path)

    async def _run() -> bool:
        async with CacheManager.from_settings(settings, catalog=catalog) as manager:
            return await manager.evict(logical_id)

    if asyncio.run(_run()):
        console.print(f"Evicted [cyan]{logical_id}[/cyan]")
    else:
        console.print(f"[yellow]{logical_id} was not cached.[/yellow]")


@app.command()
def clear(
    yes: Annotated[
        bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")
    ] = False,
    catalog_path: CatalogOption = None,
) -> None:
    """Remove every cached asset."""
    settings, catalog = _load(catalog_path)
    if not yes:
        typer.confirm(f"Delete every entry in {settings.db_path}?", abort=True)

    async def _run() -> bool:
        async with CacheManager.from_settings(settings, catalog=catalog) as manager:
            return await manager.clear()

    if asyncio.run(_run()):
        console.print("[green]Cache cleared.[/green]")
    else:
        error_console.print("[red]Error:[/red] Cache could not be cleared.")
        raise typer.Exit(1)


@app.command()
def config() -> None:
    """Show current configuration."""
    console.print()
    console.print("[bold]Media Cache Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid.[/red]")
        error_console.print()
        error_console.print("Check MAX_CACHE_BYTES, MAX_ENTRY_COUNT and STORE_NAMESPACE")
        error_console.print("in the environment or your .env file.")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"media-cache version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
