"""Ingestion CLI script."""

import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import Optional

import httpx
import orjson
import typer
from pydantic import BaseModel
from tqdm import tqdm

from knowledge_ingest.core.config import settings
from knowledge_ingest.core.errors import CrawlConfigurationError, RequestValidationError
from knowledge_ingest.core.logging import setup_logging
from knowledge_ingest.core.schemas import (
    BatchWebPageIngestionRequest,
    MarkdownIngestionRequest,
    OpenApiIngestionRequest,
    SitemapIngestionRequest,
)
from knowledge_ingest.ingestion.processor import MarkdownProcessor
from knowledge_ingest.ingestion.storage import ChunkExporter
from knowledge_ingest.ingestion.workflows import IngestionService
from knowledge_ingest.vector.embeddings import get_embedding_provider
from knowledge_ingest.vector.qdrant_client import QdrantIndexStore, ensure_collection, get_client

setup_logging()
logger = logging.getLogger(__name__)

app = typer.Typer(help="Ingest markdown, web pages, sitemaps and OpenAPI specs into the knowledge index.")


def _read_url_file(url_file: Optional[str]) -> list[str]:
    if not url_file:
        return []
    p = Path(url_file)
    if not p.exists():
        logger.warning(f"URL file not found: {url_file}")
        return []
    out: list[str] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        out.append(line)
    return out


def _build_processor(dry_run: bool, collection_name: str) -> MarkdownProcessor:
    if dry_run:
        logger.info("Dry run: chunks will not be embedded or indexed")
        return MarkdownProcessor(collection_name=collection_name)

    embedder = get_embedding_provider()
    client = get_client()
    ensure_collection(client, collection_name, embedder.vector_size)
    return MarkdownProcessor(
        embedder=embedder,
        index_store=QdrantIndexStore(client, collection_name),
        collection_name=collection_name,
    )


def _new_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.scrape_timeout_s,
        follow_redirects=True,
        headers={"User-Agent": settings.sitemap.user_agent},
    )


def _print_result(result: BaseModel) -> None:
    typer.echo(orjson.dumps(result.model_dump(mode="json"), option=orjson.OPT_INDENT_2).decode())


async def _submit(request: BaseModel, processor: MarkdownProcessor) -> BaseModel:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    # First Ctrl-C stops scheduling new items and keeps finished results
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    try:
        async with _new_client() as client:
            service = IngestionService(client, markdown_processor=processor)
            return await service.submit(request, cancel_event)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


def _run(request: BaseModel, processor: MarkdownProcessor) -> None:
    try:
        result = asyncio.run(_submit(request, processor))
    except (RequestValidationError, CrawlConfigurationError) as e:
        logger.error(str(e))
        raise typer.Exit(code=2)

    _print_result(result)
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def sitemap(
    sitemap_url: str = typer.Argument(..., help="Absolute URL of the root sitemap"),
    max_pages: Optional[int] = typer.Option(None, help="Maximum number of pages to ingest"),
    max_depth: Optional[int] = typer.Option(None, help="Maximum sitemap index nesting to follow"),
    throttle_ms: Optional[int] = typer.Option(None, help="Delay after each page, in milliseconds"),
    respect_robots: bool = typer.Option(True, "--respect-robots/--ignore-robots", help="Honor robots.txt"),
    allowed_host: list[str] = typer.Option([], help="Host allowed to be ingested (repeatable)"),
    prefix: Optional[str] = typer.Option(None, help="Prefix for generated document ids"),
    tag: list[str] = typer.Option([], help="Tag added to every document (repeatable)"),
    collection_name: str = typer.Option(settings.collection_name, help="Qdrant collection name"),
    dry_run: bool = typer.Option(False, help="Chunk only, do not embed or index"),
):
    """Crawl a sitemap tree and ingest the pages it lists."""
    request = SitemapIngestionRequest(
        sitemap_url=sitemap_url,
        document_id_prefix=prefix,
        max_pages=max_pages,
        max_depth=max_depth,
        throttle_ms=throttle_ms,
        respect_robots_txt=respect_robots,
        allowed_hosts=allowed_host,
        tags=tag,
    )
    logger.info(f"Starting sitemap ingestion: {sitemap_url}")
    _run(request, _build_processor(dry_run, collection_name))


@app.command()
def pages(
    urls: Optional[list[str]] = typer.Argument(None, help="Page URLs to ingest"),
    url_file: Optional[str] = typer.Option(None, help="Path to a file containing URLs to ingest (one per line)"),
    max_concurrency: int = typer.Option(settings.batch.max_concurrency, min=1, max=10),
    throttle_ms: int = typer.Option(settings.batch.throttle_ms, min=0),
    tag: list[str] = typer.Option([], help="Tag added to every document (repeatable)"),
    collection_name: str = typer.Option(settings.collection_name, help="Qdrant collection name"),
    dry_run: bool = typer.Option(False, help="Chunk only, do not embed or index"),
):
    """Scrape and ingest a list of web pages."""
    targets = list(urls or []) + _read_url_file(url_file)

    # Deduplicate while preserving order
    seen: set[str] = set()
    deduped: list[str] = []
    for u in targets:
        if u not in seen:
            seen.add(u)
            deduped.append(u)

    request = BatchWebPageIngestionRequest(
        urls=deduped,
        max_concurrency=max_concurrency,
        throttle_ms=throttle_ms,
        tags=tag,
    )
    logger.info(f"Starting batch ingestion of {len(deduped)} URLs")
    _run(request, _build_processor(dry_run, collection_name))


@app.command()
def openapi(
    spec_source: str = typer.Argument(..., help="URL, file path or blob://container/name of the specification"),
    prefix: Optional[str] = typer.Option(None, help="Prefix for generated document ids"),
    tag: list[str] = typer.Option([], help="Tag added to every document (repeatable)"),
    collection_name: str = typer.Option(settings.collection_name, help="Qdrant collection name"),
    dry_run: bool = typer.Option(False, help="Chunk only, do not embed or index"),
):
    """Ingest every operation of an OpenAPI specification."""
    request = OpenApiIngestionRequest(spec_source=spec_source, document_id_prefix=prefix, tags=tag)
    logger.info(f"Starting OpenAPI ingestion: {spec_source}")
    _run(request, _build_processor(dry_run, collection_name))


@app.command()
def markdown(
    paths: list[Path] = typer.Argument(..., exists=True, help="Markdown files to ingest"),
    tag: list[str] = typer.Option([], help="Tag added to every document (repeatable)"),
    collection_name: str = typer.Option(settings.collection_name, help="Qdrant collection name"),
    export_dir: Optional[str] = typer.Option(None, help="Also write the chunks as JSONL below this directory"),
    dry_run: bool = typer.Option(False, help="Chunk only, do not embed or index"),
):
    """Chunk and ingest local markdown files."""
    processor = _build_processor(dry_run, collection_name)
    exporter = ChunkExporter(export_dir) if export_dir else None

    async def ingest_all() -> list:
        outcomes = []
        async with _new_client() as client:
            service = IngestionService(client, markdown_processor=processor)
            for path in tqdm(paths, desc="Ingesting markdown"):
                request = MarkdownIngestionRequest(
                    content=path.read_text(encoding="utf-8"),
                    title=path.stem,
                    tags=tag,
                    metadata={"path": str(path)},
                )
                outcome = await service.submit(request)
                if exporter and outcome.success:
                    exporter.save_chunks(outcome.document.chunks, outcome.document.document_id)
                outcomes.append(outcome)
        return outcomes

    outcomes = asyncio.run(ingest_all())
    failed = 0
    for path, outcome in zip(paths, outcomes):
        if outcome.success:
            typer.echo(f"{path}: {outcome.chunks_indexed} chunks ({outcome.document.document_id})")
        else:
            failed += 1
            typer.echo(f"{path}: {outcome.error.code.value}: {outcome.message}", err=True)

    logger.info(f"Ingestion complete: {len(outcomes) - failed} files, {failed} failed")
    if failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
