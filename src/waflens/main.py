"""Command line entry point for waflens."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from waflens.config import Config, get_config, load_config, reset_config
from waflens.ingest.parser import IngestError
from waflens.ingest.results import UploadResult, UploadStatus
from waflens.ingest.service import IngestionService
from waflens.persistence import close_db, get_async_session, init_db
from waflens.persistence.blobs import LocalBlobStore

logger = structlog.get_logger()

console = Console()

STATUS_STYLES = {
    UploadStatus.SUCCESS: "green",
    UploadStatus.ALREADY_PROCESSED: "cyan",
    UploadStatus.NO_VALID_EVENTS: "yellow",
    UploadStatus.ERROR: "red",
}


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure stdlib logging and structlog.

    Args:
        level: Log level name.
        fmt: ``json`` for machine-readable lines, ``console`` for humans.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )

    renderer = (
        structlog.dev.ConsoleRenderer()
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def render_results(results: list[UploadResult]) -> Table:
    """Build a rich table summarizing per-file results."""
    table = Table(title="Upload results")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("ID", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Inserted", justify="right")
    table.add_column("Deduped", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Time range")

    for result in results:
        style = STATUS_STYLES.get(result.status, "white")
        time_range = (
            f"{result.time_range.earliest} .. {result.time_range.latest}"
            if result.time_range
            else "-"
        )
        table.add_row(
            result.filename,
            f"[{style}]{result.status.value}[/{style}]",
            str(result.file_id) if result.file_id is not None else "-",
            str(result.total),
            str(result.inserted),
            str(result.deduped),
            str(max(result.parse_errors, len(result.errors))),
            time_range,
        )
    return table


def _print_details(results: list[UploadResult]) -> None:
    for result in results:
        if result.note:
            console.print(f"[dim]{result.filename}: {result.note}[/dim]")
        for error in result.errors:
            console.print(f"[red]{result.filename}: {error}[/red]")


async def ingest_files(paths: list[Path], config: Config) -> list[UploadResult]:
    """Ingest files sequentially in one session, one result per file."""
    blob_store = LocalBlobStore(config.storage.blob_dir)
    results: list[UploadResult] = []
    async with get_async_session() as session:
        service = IngestionService(session, blob_store=blob_store, config=config)
        for path in paths:
            try:
                data = path.read_bytes()
                result = await service.ingest_file(path.name, data)
            except (IngestError, OSError) as e:
                logger.warning("upload_rejected", filename=path.name, error=str(e))
                result = UploadResult.failed(path.name, str(e))
            except SQLAlchemyError as e:
                logger.exception("upload_failed", filename=path.name)
                await session.rollback()
                result = UploadResult.failed(path.name, f"Storage error: {e}")
            except Exception as e:
                logger.exception("upload_failed", filename=path.name)
                await session.rollback()
                result = UploadResult.failed(path.name, f"Unexpected error: {e}")
            results.append(result)
    return results


async def reindex_file(
    config: Config,
    checksum: Optional[str] = None,
    file_id: Optional[int] = None,
) -> UploadResult:
    """Reindex one upload from its retained raw content."""
    blob_store = LocalBlobStore(config.storage.blob_dir)
    async with get_async_session() as session:
        service = IngestionService(session, blob_store=blob_store, config=config)
        return await service.reindex(checksum=checksum, file_id=file_id)


async def rebuild_rollups(config: Config) -> int:
    """Regenerate every rollup table."""
    async with get_async_session() as session:
        service = IngestionService(session, config=config)
        return await service.rebuild_rollups()


async def _run(coro):
    try:
        return await coro
    finally:
        await close_db()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="waflens",
        description="waflens - WAF security log ingestion and aggregation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to .env config file",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    ingest = commands.add_parser("ingest", help="Ingest WAF export files")
    ingest.add_argument("files", nargs="+", type=Path, help="JSON or NDJSON export files")

    reindex = commands.add_parser("reindex", help="Reprocess a file from retained raw content")
    target = reindex.add_mutually_exclusive_group(required=True)
    target.add_argument("--checksum", type=str, help="Content checksum of the upload")
    target.add_argument("--file-id", type=int, help="Upload id")

    commands.add_parser("rebuild-rollups", help="Regenerate rollup tables from all events")
    commands.add_parser("init-db", help="Create missing database tables")

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    serve.add_argument("--port", type=int, default=8000, help="Bind port")

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load config
    try:
        if args.config:
            load_config(Path(args.config))
            reset_config()
        config = get_config()
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        sys.exit(2)

    configure_logging("DEBUG" if args.debug else config.log_level, config.log_format)

    if args.command == "serve":
        import uvicorn

        uvicorn.run(
            "waflens.api.app:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            log_level="debug" if args.debug else "info",
        )
        return

    if args.command == "init-db":
        asyncio.run(_run(init_db()))
        console.print("[green]Database schema is up to date.[/green]")
        return

    if args.command == "rebuild-rollups":
        events = asyncio.run(_run(rebuild_rollups(config)))
        console.print(f"[green]Rollups rebuilt from {events} events.[/green]")
        return

    if args.command == "reindex":
        try:
            result = asyncio.run(
                _run(reindex_file(config, checksum=args.checksum, file_id=args.file_id))
            )
        except IngestError as e:
            console.print(f"[red]Reindex failed: {e}[/red]")
            sys.exit(1)
        console.print(render_results([result]))
        _print_details([result])
        return

    results = asyncio.run(_run(ingest_files(args.files, config)))
    console.print(render_results(results))
    _print_details(results)
    if any(result.status is UploadStatus.ERROR for result in results):
        sys.exit(1)


if __name__ == "__main__":
    main()
