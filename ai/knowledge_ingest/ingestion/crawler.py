"""Sitemap tree walk: discover, filter and prioritize page entries."""

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from knowledge_ingest.core.errors import CrawlConfigurationError
from knowledge_ingest.core.utils import is_http_url
from knowledge_ingest.ingestion.heuristics import ChangeFrequencyHeuristic
from knowledge_ingest.ingestion.models import SitemapEntry, SitemapFetchResult, SitemapIngestionContext
from knowledge_ingest.ingestion.robots import SitemapUrlFilterPolicy, resolve_allowed_hosts
from knowledge_ingest.ingestion.sitemap import HttpSitemapFetcher, XmlSitemapParser

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class SitemapCrawlResult(BaseModel):
    """Entries selected by a crawl, highest heuristic score first."""

    entries: list[SitemapEntry] = Field(default_factory=list)
    total_discovered: int = 0
    total_filtered: int = 0
    sitemaps_fetched: int = 0
    root_failed: bool = False
    cancelled: bool = False
    errors: list[str] = Field(default_factory=list)


class _CrawlState:
    def __init__(self, cancel_event: Optional[asyncio.Event] = None):
        self.cancel_event = cancel_event
        self.visited: set[str] = set()
        self.selected: dict[str, SitemapEntry] = {}
        self.result = SitemapCrawlResult()


def prioritize(entries: list[SitemapEntry]) -> list[SitemapEntry]:
    """Order by heuristic score, then most recently modified."""
    return sorted(
        entries,
        key=lambda e: (e.heuristic_score, e.last_modified or _OLDEST),
        reverse=True,
    )


class SitemapCrawler:
    """Walks a sitemap tree depth-first.

    Visited sitemap URLs are never fetched twice, child sitemaps deeper than
    ``max_depth`` are skipped and at most ``max_sitemap_documents`` documents
    are fetched. Entries are filtered before they count toward ``max_pages``;
    a failed child sitemap is recorded and its siblings are still walked.
    Setting ``cancel_event`` stops the walk before the next fetch or entry and
    abandons a fetch in flight; the entries selected so far are returned with
    ``cancelled`` set.
    """

    def __init__(
        self,
        fetcher: HttpSitemapFetcher,
        parser: Optional[XmlSitemapParser] = None,
        policy: Optional[SitemapUrlFilterPolicy] = None,
        heuristic: Optional[ChangeFrequencyHeuristic] = None,
    ):
        self.fetcher = fetcher
        self.parser = parser or XmlSitemapParser()
        self.policy = policy or SitemapUrlFilterPolicy()
        self.heuristic = heuristic or ChangeFrequencyHeuristic()

    async def discover(
        self,
        context: SitemapIngestionContext,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SitemapCrawlResult:
        if not is_http_url(context.root_sitemap):
            raise CrawlConfigurationError(f"Sitemap URL must be absolute http(s): {context.root_sitemap}")
        if not resolve_allowed_hosts(context):
            raise CrawlConfigurationError("No allowed hosts could be resolved for the crawl")

        state = _CrawlState(cancel_event)
        await self._walk(context.root_sitemap, 0, context, state)

        result = state.result
        result.entries = prioritize(list(state.selected.values()))
        logger.info(
            f"Sitemap crawl of {context.root_sitemap}: {result.sitemaps_fetched} sitemaps, "
            f"{result.total_discovered} entries discovered, {result.total_filtered} filtered, "
            f"{len(result.entries)} selected"
        )
        if result.cancelled:
            logger.warning(f"Sitemap crawl of {context.root_sitemap} was cancelled")
        return result

    async def _walk(
        self,
        sitemap_url: str,
        depth: int,
        context: SitemapIngestionContext,
        state: _CrawlState,
    ) -> None:
        if self._stopped(context, state) or sitemap_url in state.visited:
            return
        if state.result.sitemaps_fetched >= context.options.max_sitemap_documents:
            logger.warning(f"Sitemap document limit reached, skipping {sitemap_url}")
            return

        state.visited.add(sitemap_url)
        state.result.sitemaps_fetched += 1
        fetched = await self._fetch(sitemap_url, state)
        if fetched is None:
            return
        if not fetched.success:
            logger.warning(f"Skipping sitemap {sitemap_url}: {fetched.error}")
            state.result.errors.append(f"{sitemap_url}: {fetched.error}")
            if depth == 0:
                state.result.root_failed = True
            return

        parsed = self.parser.parse(sitemap_url, fetched.document.content)

        for child in parsed.child_sitemaps:
            if depth >= context.max_depth:
                logger.debug(f"Max depth {context.max_depth} reached, not following {child}")
                continue
            await self._walk(child, depth + 1, context, state)
            if self._stopped(context, state):
                return

        for entry in parsed.entries:
            if self._stopped(context, state):
                return
            state.result.total_discovered += 1
            if entry.location in state.selected:
                continue
            if not await self.policy.should_include(entry, context):
                state.result.total_filtered += 1
                continue
            state.selected[entry.location] = entry.with_score(self.heuristic.calculate_score(entry, context))

    async def _fetch(self, sitemap_url: str, state: _CrawlState) -> Optional[SitemapFetchResult]:
        """Fetch a sitemap, or return None when the crawl is cancelled first."""
        if state.cancel_event is None:
            return await self.fetcher.fetch(sitemap_url)

        fetch = asyncio.ensure_future(self.fetcher.fetch(sitemap_url))
        stop = asyncio.ensure_future(state.cancel_event.wait())
        try:
            await asyncio.wait({fetch, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            fetch.cancel()
            raise
        finally:
            stop.cancel()

        if fetch.done():
            return fetch.result()
        fetch.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await fetch
        logger.info(f"Abandoned fetch of {sitemap_url} after cancellation")
        state.result.cancelled = True
        return None

    @staticmethod
    def _stopped(context: SitemapIngestionContext, state: _CrawlState) -> bool:
        if state.cancel_event is not None and state.cancel_event.is_set():
            state.result.cancelled = True
            return True
        return len(state.selected) >= context.max_pages
