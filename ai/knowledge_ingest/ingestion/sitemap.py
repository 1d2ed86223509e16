"""Sitemap fetching and parsing."""

import logging
import time
import zlib
from typing import Optional
from urllib.parse import urljoin
from xml.etree import ElementTree as ET

import httpx

from knowledge_ingest.core.config import SitemapOptions, settings
from knowledge_ingest.core.utils import parse_iso8601
from knowledge_ingest.ingestion.models import (
    SitemapDocument,
    SitemapEntry,
    SitemapFetchResult,
    SitemapParseResult,
)
from knowledge_ingest.ingestion.scraper import is_retryable_status, retrying

logger = logging.getLogger(__name__)

SITEMAP_ACCEPT = "application/xml, text/xml;q=0.9, text/plain;q=0.5"
GZIP_MAGIC = b"\x1f\x8b"


class SitemapTooLargeError(Exception):
    """Raised while reading a sitemap that exceeds the configured byte ceiling."""


def gunzip_limited(data: bytes, max_bytes: int) -> bytes:
    """Decompress gzip data, failing as soon as the output exceeds ``max_bytes``."""
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    out = bytearray()
    pending = data
    while pending and not decompressor.eof:
        out.extend(decompressor.decompress(pending, max_bytes + 1 - len(out)))
        if len(out) > max_bytes:
            raise SitemapTooLargeError(f"decompressed beyond {max_bytes} bytes")
        pending = decompressor.unconsumed_tail
    return bytes(out)


class HttpSitemapFetcher:
    """Retrieves sitemap documents with gzip handling and a size ceiling."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        options: Optional[SitemapOptions] = None,
    ):
        self.options = options or settings.sitemap
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.options.fetch_timeout_s,
            follow_redirects=True,
            headers={"User-Agent": self.options.user_agent},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def fetch(self, sitemap_url: str) -> SitemapFetchResult:
        """Fetch one sitemap document.

        Failures are returned, never raised: HTTP errors keep their status,
        timeouts map to 408 and oversized documents to 413. Transient errors
        are retried first.
        """
        started = time.perf_counter()
        try:
            async for attempt in retrying(self.options.fetch_retries):
                with attempt:
                    result = await self._fetch_once(sitemap_url)
        except httpx.TimeoutException as e:
            logger.warning(f"Timed out fetching sitemap {sitemap_url}: {e}")
            return SitemapFetchResult.from_failure(408, "Sitemap fetch timed out.")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"Failed to fetch sitemap {sitemap_url}. Status code {status}")
            return SitemapFetchResult.from_failure(status, f"Sitemap fetch failed with status {status}")
        except SitemapTooLargeError as e:
            logger.warning(f"Sitemap {sitemap_url} exceeded configured size limit: {e}")
            return SitemapFetchResult.from_failure(413, "Sitemap document exceeded configured size limit.")
        except Exception as e:
            logger.error(f"Unexpected error fetching sitemap {sitemap_url}: {e}", exc_info=True)
            return SitemapFetchResult.from_failure(None, str(e) or e.__class__.__name__)

        if result.success:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                f"Fetched sitemap {sitemap_url} ({len(result.document.content)} chars) in {elapsed_ms:.0f} ms"
            )
        return result

    async def _fetch_once(self, sitemap_url: str) -> SitemapFetchResult:
        max_bytes = self.options.max_sitemap_bytes
        async with self.client.stream("GET", sitemap_url, headers={"Accept": SITEMAP_ACCEPT}) as response:
            status = response.status_code
            if is_retryable_status(status):
                response.raise_for_status()
            if not response.is_success:
                logger.warning(f"Failed to fetch sitemap {sitemap_url}. Status code {status}")
                return SitemapFetchResult.from_failure(status, f"Sitemap fetch failed with status {status}")

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise SitemapTooLargeError(f"declared {declared} bytes")

            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise SitemapTooLargeError(f"read more than {max_bytes} bytes")

        raw = bytes(body)
        # .gz sitemaps served without Content-Encoding arrive still compressed
        if raw[:2] == GZIP_MAGIC:
            raw = gunzip_limited(raw, max_bytes)

        content = raw.decode("utf-8-sig", errors="replace")
        document = SitemapDocument(
            source_uri=sitemap_url,
            content=content,
            is_index="<sitemapindex" in content.lower(),
        )
        return SitemapFetchResult.from_success(document)


def _local_name(tag: str) -> str:
    """Element name without its namespace."""
    return tag.rsplit("}", 1)[-1].lower() if isinstance(tag, str) else ""


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    for child in element:
        if _local_name(child.tag) == name:
            text = (child.text or "").strip()
            return text or None
    return None


def _parse_priority(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        priority = float(value)
    except ValueError:
        return None
    return min(1.0, max(0.0, priority))


class XmlSitemapParser:
    """Parses urlset and sitemapindex documents, tolerant of namespaces."""

    def parse(self, source_uri: str, content: str) -> SitemapParseResult:
        if not content or not content.strip():
            return SitemapParseResult()

        try:
            root = ET.fromstring(content.strip())
        except ET.ParseError as e:
            logger.warning(f"Failed to parse sitemap XML from {source_uri}: {e}")
            return SitemapParseResult()

        root_name = _local_name(root.tag)
        if root_name == "sitemapindex":
            return SitemapParseResult(child_sitemaps=self._child_sitemaps(source_uri, root))
        if root_name == "urlset":
            return SitemapParseResult(entries=self._entries(source_uri, root))

        logger.warning(f"Unrecognized sitemap root <{root_name}> in {source_uri}")
        return SitemapParseResult()

    @staticmethod
    def _child_sitemaps(source_uri: str, root: ET.Element) -> list[str]:
        children: list[str] = []
        for element in root:
            if _local_name(element.tag) != "sitemap":
                continue
            loc = _child_text(element, "loc")
            if not loc:
                continue
            resolved = urljoin(source_uri, loc)
            if resolved not in children:
                children.append(resolved)
        return children

    @staticmethod
    def _entries(source_uri: str, root: ET.Element) -> list[SitemapEntry]:
        entries = []
        for element in root:
            if _local_name(element.tag) != "url":
                continue
            loc = _child_text(element, "loc")
            if not loc:
                continue
            changefreq = _child_text(element, "changefreq")
            entries.append(
                SitemapEntry(
                    location=urljoin(source_uri, loc),
                    last_modified=parse_iso8601(_child_text(element, "lastmod")),
                    change_frequency=changefreq.lower() if changefreq else None,
                    priority=_parse_priority(_child_text(element, "priority")),
                )
            )
        return entries
