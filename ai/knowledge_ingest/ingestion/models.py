"""Data models for ingestion pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from knowledge_ingest.core.config import SitemapOptions
from knowledge_ingest.core.utils import utcnow

if TYPE_CHECKING:
    from knowledge_ingest.ingestion.robots import RobotsCache


class DocumentMetadata(BaseModel):
    """Metadata for an ingested document."""

    id: str
    title: str
    source_url: str = "manual"
    source_type: str = "manual"
    ingested_at: datetime = Field(default_factory=utcnow)
    last_modified: Optional[datetime] = None
    author: Optional[str] = None
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    custom_metadata: dict[str, Any] = Field(default_factory=dict)


class DocumentChunk(BaseModel):
    """Token-bounded span of a document, the unit that gets embedded."""

    model_config = ConfigDict(frozen=True)

    id: str
    parent_document_id: str
    chunk_index: int = Field(..., ge=0)
    title: Optional[str] = None
    content: str
    token_count: int
    start_position: int
    end_position: int
    metadata: DocumentMetadata

    @staticmethod
    def make_id(parent_document_id: str, chunk_index: int) -> str:
        """Chunk id derived from its parent and position."""
        return f"{parent_document_id}_chunk_{chunk_index}"


class ScrapedPage(BaseModel):
    """Model for scraped page data."""

    url: str
    title: str = "Untitled"
    html_content: str = ""
    status_code: int = 0
    links: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)
    scraped_at: datetime = Field(default_factory=utcnow)

    @property
    def is_success(self) -> bool:
        """Whether the page was fetched with a 2xx status."""
        return 200 <= self.status_code < 300


class IngestionMetadata(BaseModel):
    """Describes metadata that accompanies an ingestion request."""

    model_config = ConfigDict(frozen=True)

    document_id: Optional[str] = None
    title: Optional[str] = None
    source_type: str = "manual"
    source_uri: Optional[str] = None
    tags: tuple[str, ...] = ()
    custom_metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        document_id: Optional[str] = None,
        title: Optional[str] = None,
        source_type: Optional[str] = None,
        source_uri: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "IngestionMetadata":
        """Build metadata, replacing blank values with defaults and trimming tags."""
        return cls(
            document_id=document_id if document_id and document_id.strip() else None,
            title=title.strip() if title and title.strip() else None,
            source_type=source_type if source_type and source_type.strip() else "manual",
            source_uri=source_uri,
            tags=tuple(t.strip() for t in (tags or []) if t and t.strip()),
            custom_metadata=dict(metadata or {}),
        )


# Sitemaps


class SitemapEntry(BaseModel):
    """A single <url> entry of a sitemap."""

    model_config = ConfigDict(frozen=True)

    location: str
    last_modified: Optional[datetime] = None
    change_frequency: Optional[str] = None
    priority: Optional[float] = None
    heuristic_score: float = 0.0

    def with_score(self, score: float) -> "SitemapEntry":
        """Copy of the entry carrying a computed heuristic score."""
        return self.model_copy(update={"heuristic_score": score})


class SitemapDocument(BaseModel):
    """Raw sitemap document along with fetch provenance."""

    source_uri: str
    content: str
    is_index: bool
    retrieved_at: datetime = Field(default_factory=utcnow)


class SitemapFetchResult(BaseModel):
    """Outcome of fetching a sitemap: a document or an error, never both."""

    success: bool
    document: Optional[SitemapDocument] = None
    status_code: Optional[int] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def check_exclusive(self) -> "SitemapFetchResult":
        """A success carries a document, a failure carries an error."""
        if self.success and (self.document is None or self.error is not None):
            raise ValueError("successful fetch must carry a document and no error")
        if not self.success and (self.document is not None or not self.error):
            raise ValueError("failed fetch must carry an error and no document")
        return self

    @classmethod
    def from_success(cls, document: SitemapDocument) -> "SitemapFetchResult":
        return cls(success=True, document=document, status_code=200)

    @classmethod
    def from_failure(cls, status_code: Optional[int], message: str) -> "SitemapFetchResult":
        return cls(success=False, status_code=status_code, error=message)


class SitemapParseResult(BaseModel):
    """Parsed sitemap: page entries for a urlset, child sitemaps for an index."""

    entries: list[SitemapEntry] = Field(default_factory=list)
    child_sitemaps: list[str] = Field(default_factory=list)


class SitemapIngestionSettings(BaseModel):
    """Per-run overrides for sitemap ingestion."""

    model_config = ConfigDict(frozen=True)

    max_pages: Optional[int] = None
    max_depth: Optional[int] = None
    throttle_ms: Optional[int] = None
    respect_robots_txt: Optional[bool] = None
    allowed_hosts: tuple[str, ...] = ()


@dataclass(frozen=True)
class SitemapIngestionContext:
    """Read-only ambient state for one crawl invocation."""

    root_sitemap: str
    settings: SitemapIngestionSettings
    options: SitemapOptions
    metadata: IngestionMetadata
    robots_cache: Optional["RobotsCache"] = field(default=None, compare=False)

    @property
    def max_pages(self) -> int:
        return self.settings.max_pages if self.settings.max_pages is not None else self.options.max_pages

    @property
    def max_depth(self) -> int:
        depth = self.settings.max_depth if self.settings.max_depth is not None else self.options.max_depth
        return max(0, depth)

    @property
    def throttle_ms(self) -> int:
        return self.settings.throttle_ms if self.settings.throttle_ms is not None else self.options.throttle_ms

    @property
    def respect_robots_txt(self) -> bool:
        if self.settings.respect_robots_txt is not None:
            return self.settings.respect_robots_txt
        return self.options.respect_robots_txt
