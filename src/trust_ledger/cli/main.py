# SPDX-License-Identifier: MPL-2.0
"""Main CLI entry point."""
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, NoReturn, Optional, TypeVar

import click

from trust_ledger.core.config import Settings
from trust_ledger.core.crypto import KeyPair
from trust_ledger.core.exceptions import TrustLedgerError
from trust_ledger.services.datasets import DatasetService, create_service
from trust_ledger.services.ledger import LedgerIndexer

T = TypeVar("T")


def build_indexer(settings: Settings, service: DatasetService) -> LedgerIndexer:
    return LedgerIndexer(
        service.ledger,
        service.db,
        poll_interval=settings.indexer_poll_interval,
        page_size=settings.indexer_page_size,
    )


def _fail(error: TrustLedgerError) -> NoReturn:
    click.echo(f"Error: {error.message}", err=True)
    sys.exit(1)


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except TrustLedgerError as e:
        _fail(e)


def _with_service(action: Callable[[DatasetService], Awaitable[T]], settings: Optional[Settings] = None) -> T:
    """Run ``action`` against a freshly wired service, exiting 1 on domain errors."""
    settings = settings or _load_settings()

    async def run() -> T:
        service = create_service(settings)
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(run())
    except TrustLedgerError as e:
        _fail(e)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()  # type: ignore[misc]
@click.option("--log-level", default="INFO", show_default=True, help="Logging level.")
def cli(log_level: str) -> None:
    """Trust ledger CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()  # type: ignore[misc]
def version() -> None:
    """Show version information."""
    from trust_ledger import __version__

    click.echo(f"Trust Ledger v{__version__}")


@cli.command()  # type: ignore[misc]
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--no-indexer", is_flag=True, help="Do not run the ledger indexer in-process.")
def serve(host: str, port: int, no_indexer: bool) -> None:
    """Serve the HTTP API."""
    import uvicorn

    from trust_ledger.api import create_app

    settings = _load_settings()
    try:
        service = create_service(settings)
    except TrustLedgerError as e:
        _fail(e)

    indexer = None if no_indexer else build_indexer(settings, service)
    uvicorn.run(create_app(service, indexer=indexer, settings=settings), host=host, port=port)


@cli.command()  # type: ignore[misc]
@click.option("--once", is_flag=True, help="Run a single indexing cycle and exit.")
def index(once: bool) -> None:
    """Project ledger events into the local database."""
    settings = _load_settings()

    async def action(service: DatasetService) -> None:
        indexer = build_indexer(settings, service)
        if once:
            stats = await indexer.run_once()
            _echo_json(stats.to_dict())
            return
        await indexer.start()
        try:
            await asyncio.Event().wait()
        finally:
            await indexer.stop()

    try:
        _with_service(action, settings)
    except KeyboardInterrupt:
        click.echo("Indexer stopped")


@cli.command()  # type: ignore[misc]
@click.argument("dataset_id")
@click.option("--integrity-check", is_flag=True, help="Re-verify the blob before scoring.")
@click.option("--preview", is_flag=True, help="Compute without publishing or storing.")
def score(dataset_id: str, integrity_check: bool, preview: bool) -> None:
    """Compute the trust score of a dataset."""

    async def action(service: DatasetService) -> Any:
        if preview:
            return service.preview_score(dataset_id)
        return await service.score_dataset(dataset_id, perform_integrity_check=integrity_check)

    _echo_json(_with_service(action).to_dict())


@cli.command()  # type: ignore[misc]
@click.argument("dataset_id")
@click.option("--limit", default=20, show_default=True, type=int)
def history(dataset_id: str, limit: int) -> None:
    """Show the trust score history of a dataset, newest first."""

    async def action(service: DatasetService) -> Any:
        service.get_dataset(dataset_id)
        return service.trust_history(dataset_id, limit)

    _echo_json(_with_service(action))


@cli.command()  # type: ignore[misc]
def keygen() -> None:
    """Generate an Ed25519 ledger signing key."""
    key_pair = KeyPair.generate()
    _echo_json({"private_key": key_pair.private_hex(), "public_key": key_pair.public_hex()})


if __name__ == "__main__":
    cli()
