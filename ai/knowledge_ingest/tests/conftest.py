"""Shared builders for ingestion tests."""

from typing import Optional

import numpy as np

from knowledge_ingest.core.config import SitemapOptions
from knowledge_ingest.core.errors import EmbeddingError, IndexingError
from knowledge_ingest.ingestion.models import (
    IngestionMetadata,
    SitemapDocument,
    SitemapFetchResult,
    SitemapIngestionContext,
    SitemapIngestionSettings,
)

SITEMAP_XMLNS = 'xmlns="http://www.sitemaps.org/schemas/sitemap/0.9"'


def urlset(*locations: str, changefreq: Optional[str] = None) -> str:
    entries = []
    for loc in locations:
        extra = f"<changefreq>{changefreq}</changefreq>" if changefreq else ""
        entries.append(f"<url><loc>{loc}</loc>{extra}</url>")
    return f'<?xml version="1.0" encoding="UTF-8"?><urlset {SITEMAP_XMLNS}>{"".join(entries)}</urlset>'


def sitemap_index(*locations: str) -> str:
    entries = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locations)
    return f'<?xml version="1.0" encoding="UTF-8"?><sitemapindex {SITEMAP_XMLNS}>{entries}</sitemapindex>'


def make_context(
    root: str = "https://example.com/sitemap.xml",
    robots_cache=None,
    metadata: Optional[IngestionMetadata] = None,
    options: Optional[SitemapOptions] = None,
    **overrides,
) -> SitemapIngestionContext:
    overrides.setdefault("respect_robots_txt", False)
    return SitemapIngestionContext(
        root_sitemap=root,
        settings=SitemapIngestionSettings(**overrides),
        options=options or SitemapOptions(fetch_retries=1, throttle_ms=0),
        metadata=metadata or IngestionMetadata(),
        robots_cache=robots_cache,
    )


class FakeSitemapFetcher:
    """Serves sitemap documents from a dict; unknown URLs fail with 404."""

    def __init__(self, documents: dict[str, str], options: Optional[SitemapOptions] = None):
        self.documents = documents
        self.options = options or SitemapOptions(fetch_retries=1, throttle_ms=0)
        self.calls: list[str] = []

    async def fetch(self, sitemap_url: str) -> SitemapFetchResult:
        self.calls.append(sitemap_url)
        content = self.documents.get(sitemap_url)
        if content is None:
            return SitemapFetchResult.from_failure(404, "Sitemap fetch failed with status 404")
        return SitemapFetchResult.from_success(
            SitemapDocument(source_uri=sitemap_url, content=content, is_index="<sitemapindex" in content)
        )


class FakeEmbedder:
    """Embedder returning constant vectors, or failing when asked to."""

    vector_size = 4

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> np.ndarray:
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("embedding model unavailable")
        return np.ones((len(texts), self.vector_size), dtype=np.float32)


class RecordingIndexStore:
    """Index store that records upserts, or fails when asked to."""

    collection_name = "test_collection"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.upserts: list[tuple[str, list, np.ndarray]] = []

    async def upsert(self, document_id: str, chunks, vectors: np.ndarray) -> None:
        if self.fail:
            raise IndexingError("collection is read-only")
        self.upserts.append((document_id, list(chunks), vectors))
