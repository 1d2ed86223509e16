"""Ingestion workflows: single documents, batches, sitemaps, blob folders and OpenAPI specs.

Batch-shaped workflows run their items through ``run_bounded``: at most
``max_concurrency`` items are in flight, each item keeps its slot through the
throttle delay, and a failing item becomes a failed outcome instead of
aborting its siblings. Setting the optional ``cancel_event`` stops the run;
items that had not finished are reported as failures and the aggregate is
flagged ``cancelled``.
"""

import asyncio
import logging
import re
import time
from pathlib import PurePosixPath
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar, Union

import httpx

from knowledge_ingest.core.config import settings
from knowledge_ingest.core.constants import HTML_EXTENSIONS, MARKDOWN_EXTENSIONS
from knowledge_ingest.core.errors import IngestionError, IngestionErrorCode, RequestValidationError
from knowledge_ingest.core.schemas import HtmlIngestionRequest, MarkdownIngestionRequest, WebPageIngestionRequest
from knowledge_ingest.core.utils import compute_document_id, format_iso8601, slugify_title
from knowledge_ingest.ingestion.crawler import SitemapCrawler
from knowledge_ingest.ingestion.models import IngestionMetadata, SitemapEntry, SitemapIngestionContext
from knowledge_ingest.ingestion.openapi import (
    OpenApiEndpoint,
    OpenApiEndpointDocument,
    OpenApiSpecError,
    OpenApiSpecification,
    OpenApiSpecLocator,
    OpenApiSpecParser,
    generate_markdown,
    split_endpoint,
)
from knowledge_ingest.ingestion.parse_html import split_frontmatter
from knowledge_ingest.ingestion.processor import HtmlProcessor, MarkdownProcessor
from knowledge_ingest.ingestion.requests import (
    BatchWebPageIngestion,
    BulkBlobIngestion,
    HtmlDocumentIngestion,
    IngestionRequest,
    MarkdownDocumentIngestion,
    OpenApiSpecificationIngestion,
    SitemapIngestion,
    WebPageIngestion,
    to_domain,
)
from knowledge_ingest.ingestion.results import (
    BatchWebPageIngestionResult,
    BlobIngestionResult,
    IngestionOutcome,
    OpenApiIngestionResult,
    PageIngestionOutcome,
    SitemapIngestionResult,
)
from knowledge_ingest.ingestion.robots import RobotsCache
from knowledge_ingest.ingestion.scraper import HtmlScraper
from knowledge_ingest.ingestion.sitemap import HttpSitemapFetcher
from knowledge_ingest.ingestion.storage import LocalBlobStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

CANCELLED_MESSAGE = "Ingestion was cancelled before this item completed."


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    fallback: Callable[[T, Optional[BaseException]], R],
    max_concurrency: int,
    throttle_ms: int = 0,
    cancel_event: Optional[asyncio.Event] = None,
) -> tuple[list[R], bool]:
    """Run ``worker`` over ``items`` with bounded concurrency.

    Results keep the order of ``items``. An item whose worker raised, or that
    never finished because the run was cancelled, gets ``fallback(item, exc)``.
    Returns the results and whether the run was cancelled.
    """
    results: list[Optional[R]] = [None] * len(items)
    errors: list[Optional[BaseException]] = [None] * len(items)
    semaphore = asyncio.Semaphore(max(1, max_concurrency))
    delay = max(0, throttle_ms) / 1000

    async def run_one(index: int, item: T) -> None:
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return
            try:
                results[index] = await worker(item)
            except Exception as e:
                errors[index] = e
            if delay:
                await asyncio.sleep(delay)

    tasks = [asyncio.ensure_future(run_one(i, item)) for i, item in enumerate(items)]
    all_done = asyncio.gather(*tasks, return_exceptions=True)
    stop = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
    try:
        if stop is not None:
            await asyncio.wait({all_done, stop}, return_when=asyncio.FIRST_COMPLETED)
            if not all_done.done():
                for task in tasks:
                    task.cancel()
        await all_done
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise
    finally:
        if stop is not None:
            stop.cancel()

    # Items with neither a result nor an error never ran to completion
    cancelled = any(r is None and e is None for r, e in zip(results, errors))
    for index, item in enumerate(items):
        if results[index] is None:
            results[index] = fallback(item, errors[index])
    return results, cancelled


def _failure(code: IngestionErrorCode, message: str, **details: Any) -> IngestionOutcome:
    return IngestionOutcome.from_failure(IngestionError(code=code, message=message, details=details), details)


def _page_fallback(url: str, exc: Optional[BaseException]) -> PageIngestionOutcome:
    if exc is None:
        return PageIngestionOutcome(
            url=url,
            success=False,
            error_code=IngestionErrorCode.UNKNOWN.value,
            error_message=CANCELLED_MESSAGE,
        )
    return PageIngestionOutcome(
        url=url,
        success=False,
        error_code=IngestionErrorCode.UNKNOWN.value,
        error_message=str(exc) or exc.__class__.__name__,
    )


async def ingest_page(
    scraper: HtmlScraper,
    html_processor: HtmlProcessor,
    url: str,
    metadata: IngestionMetadata,
    title_override: Optional[str] = None,
) -> IngestionOutcome:
    """Scrape one page and run it through the HTML processor.

    Every failure, including unexpected exceptions, comes back as a failed
    outcome carrying diagnostics.
    """
    started = time.perf_counter()
    try:
        page = await scraper.scrape(url)
    except httpx.TimeoutException as e:
        logger.warning(f"Timed out scraping {url}: {e}")
        return _failure(
            IngestionErrorCode.TIMEOUT,
            f"Timed out fetching '{url}'.",
            url=url,
            duration_s=round(time.perf_counter() - started, 3),
        )
    except httpx.HTTPError as e:
        logger.warning(f"Failed to scrape {url}: {e}")
        return _failure(
            IngestionErrorCode.SCRAPE_FAILED,
            f"Failed to scrape content from '{url}': {e}",
            url=url,
            duration_s=round(time.perf_counter() - started, 3),
        )
    except Exception as e:
        logger.error(f"Unexpected error scraping {url}: {e}", exc_info=True)
        return IngestionOutcome.from_failure(IngestionError.from_exception(IngestionErrorCode.UNKNOWN, e, url=url))

    if not page.is_success or not page.html_content.strip():
        logger.warning(f"Failed to scrape web page {url}. Status {page.status_code}")
        return _failure(
            IngestionErrorCode.SCRAPE_FAILED,
            f"Failed to scrape content from '{url}'. Status {page.status_code}",
            url=page.url,
            status_code=page.status_code,
            has_content=bool(page.html_content.strip()),
            duration_s=round(time.perf_counter() - started, 3),
        )

    scraped = time.perf_counter()
    try:
        outcome = await html_processor.process_page(page, metadata, title_override)
    except Exception as e:
        logger.error(f"Error ingesting page {url}: {e}", exc_info=True)
        return IngestionOutcome.from_failure(IngestionError.from_exception(IngestionErrorCode.UNKNOWN, e, url=url))

    diagnostics = {
        **outcome.diagnostics,
        "url": page.url,
        "status_code": page.status_code,
        "chunks_indexed": outcome.chunks_indexed,
        "ingestion_duration_s": round(time.perf_counter() - scraped, 3),
        "total_duration_s": round(time.perf_counter() - started, 3),
    }
    if not outcome.success:
        logger.warning(f"Web page ingestion failed for {url}: {outcome.message}")
    return outcome.model_copy(update={"diagnostics": diagnostics})


class WebPageIngestionWorkflow:
    """Scrape and ingest one web page."""

    def __init__(self, scraper: HtmlScraper, html_processor: HtmlProcessor):
        self.scraper = scraper
        self.html_processor = html_processor

    async def execute(self, request: WebPageIngestion) -> IngestionOutcome:
        logger.info(f"Ingesting web page {request.url}")
        return await ingest_page(
            self.scraper, self.html_processor, request.url, request.metadata, request.title_override
        )


class HtmlIngestionWorkflow:
    """Ingest inline HTML."""

    def __init__(self, html_processor: HtmlProcessor):
        self.html_processor = html_processor

    async def execute(self, request: HtmlDocumentIngestion) -> IngestionOutcome:
        return await self.html_processor.process_html(request.resource.content, request.metadata)


class MarkdownIngestionWorkflow:
    """Ingest inline markdown."""

    def __init__(self, markdown_processor: MarkdownProcessor):
        self.markdown_processor = markdown_processor

    async def execute(self, request: MarkdownDocumentIngestion) -> IngestionOutcome:
        return await self.markdown_processor.process(request.resource.content, request.metadata)


class BatchWebPageIngestionWorkflow:
    """Scrape and ingest a list of URLs with bounded concurrency."""

    def __init__(self, scraper: HtmlScraper, html_processor: HtmlProcessor):
        self.scraper = scraper
        self.html_processor = html_processor

    async def execute(
        self,
        request: BatchWebPageIngestion,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchWebPageIngestionResult:
        started = time.perf_counter()
        logger.info(
            f"Starting batch web page ingestion for {len(request.pages)} URLs "
            f"with max concurrency {request.max_concurrency}"
        )

        async def ingest(page: WebPageIngestion) -> PageIngestionOutcome:
            outcome = await ingest_page(self.scraper, self.html_processor, page.url, page.metadata)
            return PageIngestionOutcome.from_outcome(page.url, outcome)

        def fallback(page: WebPageIngestion, exc: Optional[BaseException]) -> PageIngestionOutcome:
            return _page_fallback(page.url, exc)

        results, cancelled = await run_bounded(
            request.pages,
            ingest,
            fallback,
            request.max_concurrency,
            request.throttle_ms,
            cancel_event,
        )

        result = BatchWebPageIngestionResult.aggregate(
            results,
            total_requested=len(request.pages),
            duration_s=time.perf_counter() - started,
            cancelled=cancelled,
        )
        logger.info(
            f"Batch web page ingestion completed. Succeeded: {result.total_succeeded}/"
            f"{result.total_requested}, Failed: {result.total_failed}"
        )
        return result


def sitemap_page_metadata(entry: SitemapEntry, metadata: IngestionMetadata) -> IngestionMetadata:
    """Per-page metadata carrying the sitemap entry's attributes."""
    tags = list(metadata.tags)
    if entry.change_frequency:
        tag = f"changefreq:{entry.change_frequency}"
        if tag.lower() not in (t.lower() for t in tags):
            tags.append(tag)

    custom = dict(metadata.custom_metadata)
    custom["sitemap.url"] = entry.location
    custom["sitemap.changeFrequency"] = entry.change_frequency or "unspecified"
    custom["sitemap.priority"] = entry.priority if entry.priority is not None else 0.0
    custom["sitemap.lastModified"] = format_iso8601(entry.last_modified)
    custom["sitemap.score"] = entry.heuristic_score

    return IngestionMetadata(
        document_id=compute_document_id(entry.location, metadata.document_id),
        title=None,
        source_type=metadata.source_type,
        source_uri=entry.location,
        tags=tuple(tags),
        custom_metadata=custom,
    )


class SitemapIngestionWorkflow:
    """Crawl a sitemap tree, then ingest the selected pages in priority order."""

    def __init__(
        self,
        crawler: SitemapCrawler,
        scraper: HtmlScraper,
        html_processor: HtmlProcessor,
        client: httpx.AsyncClient,
    ):
        self.crawler = crawler
        self.scraper = scraper
        self.html_processor = html_processor
        self.client = client

    def build_context(self, request: SitemapIngestion) -> SitemapIngestionContext:
        options = self.crawler.fetcher.options
        robots_cache = RobotsCache(self.client, options.user_agent, retries=options.fetch_retries)
        return SitemapIngestionContext(
            root_sitemap=request.sitemap_url,
            settings=request.settings,
            options=options,
            metadata=request.metadata,
            robots_cache=robots_cache,
        )

    async def execute(
        self,
        request: SitemapIngestion,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SitemapIngestionResult:
        """Run the crawl and ingestion.

        Raises CrawlConfigurationError when no allowed host can be resolved.
        """
        started = time.perf_counter()
        context = self.build_context(request)
        crawl = await self.crawler.discover(context, cancel_event)

        result = SitemapIngestionResult(
            sitemap_url=request.sitemap_url,
            total_discovered=crawl.total_discovered,
            total_filtered=crawl.total_filtered,
            total_selected=len(crawl.entries),
            sitemaps_fetched=crawl.sitemaps_fetched,
            errors=list(crawl.errors),
        )

        if crawl.root_failed:
            result.total_failed = 1
            result.duration_s = time.perf_counter() - started
            result.message = f"Sitemap {request.sitemap_url} could not be fetched."
            logger.warning(result.message)
            return result

        async def ingest(entry: SitemapEntry) -> PageIngestionOutcome:
            outcome = await ingest_page(
                self.scraper,
                self.html_processor,
                entry.location,
                sitemap_page_metadata(entry, request.metadata),
            )
            return PageIngestionOutcome.from_outcome(entry.location, outcome)

        def fallback(entry: SitemapEntry, exc: Optional[BaseException]) -> PageIngestionOutcome:
            return _page_fallback(entry.location, exc)

        results, cancelled = await run_bounded(
            crawl.entries,
            ingest,
            fallback,
            context.options.max_concurrency,
            context.throttle_ms,
            cancel_event,
        )

        result.results = results
        result.total_ingested = sum(1 for r in results if r.success)
        result.total_failed = sum(1 for r in results if not r.success)
        result.errors.extend(f"{r.url}: {r.error_message}" for r in results if not r.success)
        result.success = result.total_failed == 0
        result.cancelled = crawl.cancelled or cancelled
        result.duration_s = time.perf_counter() - started
        result.message = f"Ingested {result.total_ingested} of {result.total_selected} sitemap URLs."
        if result.cancelled:
            result.message += " Run was cancelled."

        logger.info(
            f"Sitemap ingestion completed for {request.sitemap_url}. "
            f"Ingested {result.total_ingested}/{result.total_selected} URLs."
        )
        return result


class BulkBlobIngestionWorkflow:
    """Ingest every markdown and HTML file below a blob path."""

    def __init__(
        self,
        storage: LocalBlobStorage,
        markdown_processor: MarkdownProcessor,
        html_processor: HtmlProcessor,
    ):
        self.storage = storage
        self.markdown_processor = markdown_processor
        self.html_processor = html_processor

    def _file_metadata(self, name: str, request: BulkBlobIngestion, source_type: str) -> IngestionMetadata:
        stem = PurePosixPath(name).stem
        container = request.resource.container_name
        return IngestionMetadata(
            document_id=slugify_title(stem),
            title=stem,
            source_type=source_type,
            source_uri=f"blob://{container}/{name}" if container else f"blob://{name}",
            tags=request.metadata.tags,
            custom_metadata={**request.metadata.custom_metadata, "blob.path": name},
        )

    async def _ingest_file(self, name: str, request: BulkBlobIngestion) -> IngestionOutcome:
        content = await asyncio.to_thread(self.storage.read_blob, name, request.resource.container_name)
        if PurePosixPath(name).suffix.lower() in MARKDOWN_EXTENSIONS:
            return await self.markdown_processor.process(
                content, self._file_metadata(name, request, "blob-markdown")
            )
        return await self.html_processor.process_html(content, self._file_metadata(name, request, "blob-html"))

    async def execute(self, request: BulkBlobIngestion) -> BlobIngestionResult:
        started = time.perf_counter()
        blob_path = request.resource.blob_path
        logger.info(f"Starting bulk ingestion for blob path {blob_path}")

        names = self.storage.list_blobs(blob_path, request.resource.container_name)
        supported = self.storage.filter_by_extensions(names, MARKDOWN_EXTENSIONS + HTML_EXTENSIONS)
        result = BlobIngestionResult(blob_path=blob_path, total_files=len(supported))
        if not supported:
            logger.warning(f"No supported files found in blob path {blob_path}")
            result.message = "No supported files found (.md, .markdown, .html, .htm)"
            result.duration_s = time.perf_counter() - started
            return result

        for name in supported:
            try:
                outcome = await self._ingest_file(name, request)
            except Exception as e:
                logger.error(f"Error processing file {name}: {e}", exc_info=True)
                result.errors.append(f"Error processing {name}: {e}")
                continue
            if outcome.success:
                result.files_processed += 1
                result.total_chunks_indexed += outcome.chunks_indexed
            else:
                result.errors.append(f"Failed to ingest {name}: {outcome.message}")

        result.success = result.files_processed == result.total_files
        result.duration_s = time.perf_counter() - started
        result.message = f"Processed {result.files_processed} of {result.total_files} files."
        logger.info(
            f"Completed bulk ingestion for {blob_path}. "
            f"Files processed: {result.files_processed}/{result.total_files}"
        )
        return result


def openapi_document_id(prefix: Optional[str], document: OpenApiEndpointDocument) -> str:
    """``{prefix}_{endpoint id}``, with ``_part{n}`` when the endpoint spans several segments."""
    base = f"{prefix}_{document.endpoint.id}" if prefix else document.endpoint.id
    if document.total_segments > 1:
        base = f"{base}_part{document.segment_index}"
    return re.sub(r"_{2,}", "_", base.replace(" ", "_"))


def openapi_segment_metadata(
    request: OpenApiSpecificationIngestion,
    spec: OpenApiSpecification,
    document: OpenApiEndpointDocument,
) -> IngestionMetadata:
    endpoint = document.endpoint
    title = f"{endpoint.method} {endpoint.path}"
    if document.total_segments > 1:
        title += f" (Part {document.segment_index}/{document.total_segments})"

    tags: list[str] = []
    for tag in list(request.metadata.tags) + endpoint.tags:
        if tag.strip() and tag.strip().lower() not in (t.lower() for t in tags):
            tags.append(tag.strip())

    custom = dict(request.metadata.custom_metadata)
    custom["openapi.method"] = endpoint.method
    custom["openapi.path"] = endpoint.path
    custom["openapi.specVersion"] = spec.version
    custom["openapi.specTitle"] = spec.title
    custom["openapi.segmentIndex"] = document.segment_index
    custom["openapi.segmentCount"] = document.total_segments
    if endpoint.operation_id:
        custom["openapi.operationId"] = endpoint.operation_id
    if endpoint.security:
        custom["openapi.security"] = list(endpoint.security)

    return IngestionMetadata(
        document_id=openapi_document_id(request.document_id_prefix, document),
        title=title,
        source_type=request.metadata.source_type,
        source_uri=spec.source_uri or request.metadata.source_uri,
        tags=tuple(tags),
        custom_metadata=custom,
    )


class OpenApiIngestionWorkflow:
    """Ingest each operation of an OpenAPI specification as one or more markdown documents.

    Endpoints are processed in document order. An endpoint counts as processed
    when all of its segments were ingested; a failing endpoint is recorded and
    the rest still run.
    """

    def __init__(
        self,
        locator: OpenApiSpecLocator,
        markdown_processor: MarkdownProcessor,
        parser: Optional[OpenApiSpecParser] = None,
        max_segment_length: Optional[int] = None,
    ):
        self.locator = locator
        self.markdown_processor = markdown_processor
        self.parser = parser or OpenApiSpecParser()
        self.max_segment_length = max_segment_length or settings.openapi.max_markdown_segment_length

    async def _ingest_endpoint(
        self,
        request: OpenApiSpecificationIngestion,
        spec: OpenApiSpecification,
        endpoint: OpenApiEndpoint,
    ) -> tuple[int, int, list[str]]:
        """Returns documents ingested, chunks indexed and error messages."""
        _, body = split_frontmatter(generate_markdown(spec, endpoint))
        documents = split_endpoint(endpoint, body, self.max_segment_length)

        ingested, chunks, errors = 0, 0, []
        for document in documents:
            metadata = openapi_segment_metadata(request, spec, document)
            outcome = await self.markdown_processor.process(document.markdown, metadata)
            if outcome.success:
                ingested += 1
                chunks += outcome.chunks_indexed
            else:
                errors.append(f"Failed to ingest {endpoint.method} {endpoint.path}: {outcome.message}")
        return ingested, chunks, errors

    async def execute(
        self,
        request: OpenApiSpecificationIngestion,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OpenApiIngestionResult:
        started = time.perf_counter()
        result = OpenApiIngestionResult(spec_source=request.spec_source)
        logger.info(f"Starting OpenAPI ingestion for {request.spec_source}")

        try:
            spec = self.parser.parse(await self.locator.locate(request.spec_source))
        except (OpenApiSpecError, OSError, httpx.HTTPError) as e:
            logger.error(f"Could not load OpenAPI specification {request.spec_source}: {e}")
            result.errors.append(str(e))
            result.message = f"OpenAPI specification {request.spec_source} could not be loaded."
            result.duration_s = time.perf_counter() - started
            return result

        result.spec_title = spec.title
        result.total_endpoints = len(spec.endpoints)
        if not spec.endpoints:
            logger.warning(f"No endpoints discovered in OpenAPI specification {request.spec_source}")
            result.errors.append("The specification did not contain any operations.")
            result.message = "No endpoints found in the OpenAPI specification."
            result.duration_s = time.perf_counter() - started
            return result

        for endpoint in spec.endpoints:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            try:
                ingested, chunks, errors = await self._ingest_endpoint(request, spec, endpoint)
            except Exception as e:
                logger.error(f"Error ingesting endpoint {endpoint.method} {endpoint.path}: {e}", exc_info=True)
                result.errors.append(f"Error ingesting {endpoint.method} {endpoint.path}: {e}")
                continue
            result.total_documents += ingested
            result.total_chunks_indexed += chunks
            if errors:
                result.errors.extend(errors)
            else:
                result.endpoints_processed += 1

        result.success = result.endpoints_processed == result.total_endpoints
        result.duration_s = time.perf_counter() - started
        result.message = (
            f"Ingested {result.endpoints_processed} of {result.total_endpoints} endpoints "
            f"with {result.total_chunks_indexed} chunks."
        )
        if result.cancelled:
            result.message += " Run was cancelled."
        logger.info(
            f"Completed OpenAPI ingestion for {request.spec_source}. "
            f"Endpoints processed: {result.endpoints_processed}/{result.total_endpoints}"
        )
        return result


WorkflowResult = Union[
    IngestionOutcome,
    BatchWebPageIngestionResult,
    SitemapIngestionResult,
    BlobIngestionResult,
    OpenApiIngestionResult,
]


class IngestionService:
    """Wires processors, fetchers and storage into the workflows and dispatches requests."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        markdown_processor: Optional[MarkdownProcessor] = None,
        storage: Optional[LocalBlobStorage] = None,
        scraper: Optional[HtmlScraper] = None,
        crawler: Optional[SitemapCrawler] = None,
    ):
        self.client = client
        self.markdown_processor = markdown_processor or MarkdownProcessor()
        self.html_processor = HtmlProcessor(self.markdown_processor)
        self.scraper = scraper or HtmlScraper(client=client)
        self.crawler = crawler or SitemapCrawler(HttpSitemapFetcher(client=client, options=settings.sitemap))
        self.storage = storage or LocalBlobStorage()

        self.web_page = WebPageIngestionWorkflow(self.scraper, self.html_processor)
        self.html = HtmlIngestionWorkflow(self.html_processor)
        self.markdown = MarkdownIngestionWorkflow(self.markdown_processor)
        self.batch = BatchWebPageIngestionWorkflow(self.scraper, self.html_processor)
        self.sitemap = SitemapIngestionWorkflow(self.crawler, self.scraper, self.html_processor, client)
        self.bulk = BulkBlobIngestionWorkflow(self.storage, self.markdown_processor, self.html_processor)
        self.openapi = OpenApiIngestionWorkflow(
            OpenApiSpecLocator(client, self.storage, retries=settings.openapi.fetch_retries),
            self.markdown_processor,
        )

    async def dispatch(
        self,
        request: IngestionRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WorkflowResult:
        """Route a domain request to its workflow by its ``kind`` tag."""
        if request.kind == "webpage":
            return await self.web_page.execute(request)
        if request.kind == "html":
            return await self.html.execute(request)
        if request.kind == "markdown":
            return await self.markdown.execute(request)
        if request.kind == "blob":
            return await self.bulk.execute(request)
        if request.kind == "batch":
            return await self.batch.execute(request, cancel_event)
        if request.kind == "sitemap":
            return await self.sitemap.execute(request, cancel_event)
        if request.kind == "openapi":
            return await self.openapi.execute(request, cancel_event)
        raise ValueError(f"Unknown request kind: {request.kind}")

    async def submit(self, transport_request: Any, cancel_event: Optional[asyncio.Event] = None) -> WorkflowResult:
        """Map a transport request and dispatch it.

        Validation failures of single-document requests come back as
        VALIDATION_FAILED outcomes; other request shapes re-raise them.
        """
        try:
            request = to_domain(transport_request)
        except RequestValidationError as e:
            logger.warning(f"Rejected {type(transport_request).__name__}: {e}")
            if _is_single_document(transport_request):
                return IngestionOutcome.from_failure(
                    IngestionError.from_exception(IngestionErrorCode.VALIDATION_FAILED, e)
                )
            raise
        return await self.dispatch(request, cancel_event)


def _is_single_document(transport_request: Any) -> bool:
    return isinstance(transport_request, (WebPageIngestionRequest, HtmlIngestionRequest, MarkdownIngestionRequest))

