"""Async HTTP page scraper."""

import logging
from typing import Optional
from urllib.parse import urldefrag, urljoin

import httpx
from bs4 import BeautifulSoup
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from knowledge_ingest.core.config import settings
from knowledge_ingest.core.utils import is_http_url
from knowledge_ingest.ingestion.models import ScrapedPage
from knowledge_ingest.ingestion.parse_html import extract_metadata, extract_title

logger = logging.getLogger(__name__)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def is_transient_error(exc: BaseException) -> bool:
    """Transport failures, 5xx and 429 are retried; other HTTP errors are final."""
    if isinstance(exc, httpx.HTTPStatusError):
        return is_retryable_status(exc.response.status_code)
    return isinstance(exc, httpx.TransportError)


def retrying(attempts: int, max_wait: float = 10.0) -> AsyncRetrying:
    """Retry policy shared by page, sitemap and robots.txt fetches."""
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=max_wait),
        retry=retry_if_exception(is_transient_error),
        reraise=True,
    )


class HtmlScraper:
    """Fetches pages over HTTP and returns their HTML with basic metadata.

    Non-2xx responses come back as pages carrying the status code; transport
    errors (including timeouts) are raised after retries are exhausted.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: Optional[float] = None,
        retries: Optional[int] = None,
        user_agent: Optional[str] = None,
    ):
        self.retries = settings.scrape_retries if retries is None else retries
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout_s or settings.scrape_timeout_s,
            follow_redirects=True,
            headers={"User-Agent": user_agent or settings.sitemap.user_agent},
        )

    async def __aenter__(self) -> "HtmlScraper":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this scraper created it."""
        if self._owns_client:
            await self.client.aclose()

    async def _get(self, url: str) -> httpx.Response:
        async for attempt in retrying(self.retries + 1):
            with attempt:
                response = await self.client.get(url)
                if is_retryable_status(response.status_code):
                    response.raise_for_status()
                return response

    async def scrape(self, url: str) -> ScrapedPage:
        """Fetch a page and extract its title, links and meta tags."""
        try:
            response = await self._get(url)
        except httpx.HTTPStatusError as e:
            logger.warning(f"HTTP error for {url}: {e.response.status_code}")
            return ScrapedPage(url=url, status_code=e.response.status_code)

        final_url = str(response.url) or url
        if not response.is_success:
            logger.warning(f"HTTP error for {url}: {response.status_code}")
            return ScrapedPage(url=final_url, status_code=response.status_code)

        html = response.text
        soup = BeautifulSoup(html, "lxml")
        metadata = extract_metadata(soup)

        links = []
        for anchor in soup.find_all("a", href=True):
            link = urldefrag(urljoin(final_url, anchor["href"])).url
            if is_http_url(link) and link not in links:
                links.append(link)

        logger.info(f"Scraped {final_url} ({len(html)} chars, {len(links)} links)")
        return ScrapedPage(
            url=final_url,
            title=extract_title(soup, metadata),
            html_content=html,
            status_code=response.status_code,
            links=links,
            metadata=metadata,
        )

