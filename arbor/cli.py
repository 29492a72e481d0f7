"""arbor CLI: run scrapes and inspect the cache.

Usage:
    arbor run module.path:seed                  # Scrape, JSONL to stdout
    arbor run module.path:seed -o out.csv --format csv
    arbor run module.path:seed --driver async --workers 8
    arbor handlers module.path                  # List registered handlers
    arbor cache show KEY                        # Print a processed entry
    arbor cache show KEY --namespace raw        # Print a raw page
    arbor cache invalidate KEY                  # Delete an entry
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, TextIO

import click

from arbor.cache.store import CacheStore, FileSystemBackend, Namespace
from arbor.common.exceptions import CacheError, ScrapeError
from arbor.config import HttpOptions, ScrapeOptions
from arbor.driver.callbacks import (
    Record,
    drain,
    save_to_csv_file,
    save_to_jsonl_file,
)
from arbor.registry import HandlerRegistry, default_registry

cache_dir_option = click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("arbor-cache"),
    show_default=True,
    envvar="ARBOR_CACHE_DIR",
    help="Cache root directory.",
)


def import_object(path: str) -> Any:
    """Import an attribute from a ``module.path:attribute`` string.

    Raises:
        click.BadParameter: If the format is invalid or import fails.
    """
    if ":" not in path:
        raise click.BadParameter(
            f"Invalid path '{path}'. Expected format: 'module.path:attribute'"
        )

    module_path, attribute = path.rsplit(":", 1)
    module = import_module(module_path)
    try:
        return getattr(module, attribute)
    except AttributeError as e:
        raise click.BadParameter(
            f"Module '{module_path}' has no attribute '{attribute}'"
        ) from e


def import_module(module_path: str) -> Any:
    try:
        return importlib.import_module(module_path)
    except ImportError as e:
        raise click.BadParameter(
            f"Could not import module '{module_path}': {e}"
        ) from e


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@click.group()
@click.version_option(package_name="arbor")
def cli() -> None:
    """Structural scraping with a resumable cache."""


@cli.command()
@click.argument("seed")
@cache_dir_option
@click.option(
    "--registry",
    "registry_path",
    default=None,
    help="Handler registry as module.path:attribute "
    "(default: handlers registered with @arbor.handler).",
)
@click.option(
    "--driver",
    "driver_name",
    type=click.Choice(["sync", "async"]),
    default="sync",
    show_default=True,
    help="Depth-first sync driver or concurrent async driver.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=4,
    show_default=True,
    help="Concurrent workers (async driver).",
)
@click.option(
    "--no-processed-cache", is_flag=True, help="Disable the result cache."
)
@click.option("--no-raw-cache", is_flag=True, help="Disable the page cache.")
@click.option(
    "--update",
    is_flag=True,
    help="Refresh entries of handlers declared updatable.",
)
@click.option(
    "--retries",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Retries for failed fetches.",
)
@click.option(
    "--timeout",
    type=click.IntRange(min=1),
    default=5000,
    show_default=True,
    help="Socket timeout in milliseconds.",
)
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write records here instead of stdout.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["jsonl", "csv"]),
    default="jsonl",
    show_default=True,
)
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging.")
def run(
    seed: str,
    cache_dir: Path,
    registry_path: str | None,
    driver_name: str,
    workers: int,
    no_processed_cache: bool,
    no_raw_cache: bool,
    update: bool,
    retries: int,
    timeout: int,
    output: Path | None,
    output_format: str,
    verbose: bool,
) -> None:
    """Run a scrape and write the leaf records.

    SEED is a dotted import path in the form module.path:attribute naming a
    seed value or a function returning one. Importing the module registers
    its handlers.

    \b
    Examples:
        arbor run mysite.scraper:seed
        arbor run mysite.scraper:seed --driver async --workers 8
        arbor run mysite.scraper:seed -o cases.csv --format csv
    """
    _configure_logging(verbose)

    seed_value = import_object(seed)
    registry = _load_registry(registry_path)
    options = ScrapeOptions(
        cache_dir=cache_dir,
        processed_cache_enabled=not no_processed_cache,
        raw_cache_enabled=not no_raw_cache,
        update=update,
        retries=retries,
        num_workers=workers,
        http_options=HttpOptions(socket_timeout=timeout),
    )

    if output is None:
        count = _write_records(
            sys.stdout, output_format, registry, options, driver_name,
            seed_value,
        )
    else:
        with output.open("w", newline="") as f:
            count = _write_records(
                f, output_format, registry, options, driver_name, seed_value
            )
    click.echo(f"Wrote {count} record(s).", err=True)


def _load_registry(registry_path: str | None) -> HandlerRegistry:
    if registry_path is None:
        return default_registry
    registry = import_object(registry_path)
    if not isinstance(registry, HandlerRegistry):
        raise click.BadParameter(
            f"'{registry_path}' is not a HandlerRegistry"
        )
    return registry


def _write_records(
    stream: TextIO,
    output_format: str,
    registry: HandlerRegistry,
    options: ScrapeOptions,
    driver_name: str,
    seed: Any,
) -> int:
    callback: Callable[[Record], None] = (
        save_to_csv_file(stream)
        if output_format == "csv"
        else save_to_jsonl_file(stream)
    )
    try:
        if driver_name == "async":
            return asyncio.run(_run_async(registry, options, seed, callback))
        return _run_sync(registry, options, seed, callback)
    except ScrapeError as e:
        raise click.ClickException(e.message) from e


def _run_sync(
    registry: HandlerRegistry,
    options: ScrapeOptions,
    seed: Any,
    callback: Callable[[Record], None],
) -> int:
    from arbor.driver.sync_driver import SyncDriver

    driver = SyncDriver(registry=registry, options=options)
    return drain(driver.run(seed), callback)


async def _run_async(
    registry: HandlerRegistry,
    options: ScrapeOptions,
    seed: Any,
    callback: Callable[[Record], None],
) -> int:
    from arbor.driver.async_driver import AsyncDriver

    count = 0
    async for record in AsyncDriver(registry=registry, options=options).run(
        seed
    ):
        callback(record)
        count += 1
    return count


@cli.command("handlers")
@click.argument("module")
@click.option(
    "--registry",
    "registry_path",
    default=None,
    help="Registry as module.path:attribute (default: the global one).",
)
def list_handlers(module: str, registry_path: str | None) -> None:
    """List the handlers MODULE registers."""
    import_module(module)
    registry = _load_registry(registry_path)
    if not len(registry):
        click.echo("No handlers registered.")
        return
    for registered in registry.list_handlers():
        flags = " (updatable)" if registered.updatable else ""
        click.echo(f"{registered.identifier}: {registered.template}{flags}")


@cli.group()
def cache() -> None:
    """Inspect or invalidate cache entries."""


namespace_option = click.option(
    "--namespace",
    type=click.Choice([n.value for n in Namespace]),
    default=Namespace.PROCESSED.value,
    show_default=True,
)


def _open_store(cache_dir: Path, namespace: Namespace) -> CacheStore:
    backend = FileSystemBackend(cache_dir / namespace.value, namespace)
    if namespace is Namespace.RAW:
        return CacheStore(raw=backend)
    return CacheStore(processed=backend)


@cache.command("show")
@click.argument("key")
@cache_dir_option
@namespace_option
def cache_show(key: str, cache_dir: Path, namespace: str) -> None:
    """Print the entry stored under KEY."""
    ns = Namespace(namespace)
    store = _open_store(cache_dir, ns)
    try:
        value = store.get(ns, key)
    except CacheError as e:
        raise click.ClickException(e.message) from e
    if value is None:
        raise click.ClickException(f"No {ns.value} entry for '{key}'")

    if ns is Namespace.RAW:
        click.echo(json.dumps(value.metadata(), indent=2))
        click.echo(value.content.decode("utf-8", errors="replace"))
    else:
        click.echo(json.dumps(value, indent=2, ensure_ascii=False))


@cache.command("invalidate")
@click.argument("key")
@cache_dir_option
@namespace_option
def cache_invalidate(key: str, cache_dir: Path, namespace: str) -> None:
    """Delete the entry stored under KEY."""
    ns = Namespace(namespace)
    store = _open_store(cache_dir, ns)
    try:
        removed = store.delete(ns, key)
    except CacheError as e:
        raise click.ClickException(e.message) from e
    if removed:
        click.echo(f"Removed {ns.value} entry '{key}'.")
    else:
        click.echo(f"No {ns.value} entry for '{key}'.")


def main() -> None:
    """Entry point for the ``arbor`` console script."""
    cli()
