"""Pydantic schemas for ingestion requests."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class WebPageIngestionRequest(BaseModel):
    """Scrape and ingest a single web page."""

    url: str = Field(..., description="Absolute http(s) URL of the page")
    document_id: Optional[str] = None
    title: Optional[str] = Field(None, description="Overrides the title inferred from the page")
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class HtmlIngestionRequest(BaseModel):
    """Ingest inline HTML content."""

    content: str
    document_id: Optional[str] = None
    title: Optional[str] = None
    source_url: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class MarkdownIngestionRequest(BaseModel):
    """Ingest inline Markdown content."""

    content: str
    document_id: Optional[str] = None
    title: Optional[str] = None
    source_url: Optional[str] = None
    source_type: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class BlobIngestionRequest(BaseModel):
    """Ingest every supported file below a blob path prefix."""

    blob_path: str
    container_name: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class BatchWebPageIngestionRequest(BaseModel):
    """Scrape and ingest a list of web pages."""

    urls: list[str] = Field(..., description="Absolute http(s) URLs to ingest")
    max_concurrency: Optional[int] = Field(None, ge=1, le=10)
    throttle_ms: Optional[int] = Field(None, ge=0)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SitemapIngestionRequest(BaseModel):
    """Crawl a sitemap tree and ingest the pages it lists."""

    sitemap_url: str
    document_id_prefix: Optional[str] = None
    max_pages: Optional[int] = Field(None, ge=1)
    max_depth: Optional[int] = Field(None, ge=0)
    throttle_ms: Optional[int] = Field(None, ge=0)
    respect_robots_txt: Optional[bool] = None
    allowed_hosts: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class OpenApiIngestionRequest(BaseModel):
    """Ingest every operation of an OpenAPI specification as its own document."""

    spec_source: str = Field(..., description="http(s) URL, local file path or blob://container/name")
    document_id_prefix: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
