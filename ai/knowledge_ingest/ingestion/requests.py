"""Domain ingestion requests and the transport-to-domain mapper.

Every aggregate pairs ``IngestionMetadata`` with exactly one resource variant;
``kind`` tags the variant so workflows can dispatch without isinstance chains.
"""

import uuid
from datetime import datetime
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from knowledge_ingest.core.config import settings
from knowledge_ingest.core.constants import (
    SOURCE_TYPE_BLOB,
    SOURCE_TYPE_HTML,
    SOURCE_TYPE_MARKDOWN,
    SOURCE_TYPE_OPENAPI,
    SOURCE_TYPE_SITEMAP,
    SOURCE_TYPE_WEBPAGE,
)
from knowledge_ingest.core.errors import RequestValidationError
from knowledge_ingest.core.schemas import (
    BatchWebPageIngestionRequest,
    BlobIngestionRequest,
    HtmlIngestionRequest,
    MarkdownIngestionRequest,
    OpenApiIngestionRequest,
    SitemapIngestionRequest,
    WebPageIngestionRequest,
)
from knowledge_ingest.core.utils import is_http_url, utcnow
from knowledge_ingest.ingestion.models import IngestionMetadata, SitemapIngestionSettings

# Resources


class WebPageResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["webpage"] = "webpage"
    url: str


class HtmlResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["html"] = "html"
    content: str
    source_uri: Optional[str] = None


class MarkdownResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["markdown"] = "markdown"
    content: str
    source_uri: Optional[str] = None


class BlobResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["blob"] = "blob"
    blob_path: str
    container_name: Optional[str] = None


class SitemapResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["sitemap"] = "sitemap"
    sitemap_url: str


class OpenApiResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["openapi"] = "openapi"
    spec_source: str
    source_uri: Optional[str] = None


IngestionResource = Annotated[
    Union[WebPageResource, HtmlResource, MarkdownResource, BlobResource, SitemapResource, OpenApiResource],
    Field(discriminator="kind"),
]


# Aggregates


class _Aggregate(BaseModel):
    model_config = ConfigDict(frozen=True)

    metadata: IngestionMetadata
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    requested_at: datetime = Field(default_factory=utcnow)


class WebPageIngestion(_Aggregate):
    kind: Literal["webpage"] = "webpage"
    resource: WebPageResource
    title_override: Optional[str] = None

    @property
    def url(self) -> str:
        return self.resource.url


class HtmlDocumentIngestion(_Aggregate):
    kind: Literal["html"] = "html"
    resource: HtmlResource


class MarkdownDocumentIngestion(_Aggregate):
    kind: Literal["markdown"] = "markdown"
    resource: MarkdownResource


class BulkBlobIngestion(_Aggregate):
    kind: Literal["blob"] = "blob"
    resource: BlobResource


class BatchWebPageIngestion(_Aggregate):
    kind: Literal["batch"] = "batch"
    pages: tuple[WebPageIngestion, ...]
    max_concurrency: int = Field(..., ge=1)
    throttle_ms: int = Field(0, ge=0)

    @property
    def urls(self) -> list[str]:
        return [page.url for page in self.pages]


class SitemapIngestion(_Aggregate):
    kind: Literal["sitemap"] = "sitemap"
    resource: SitemapResource
    settings: SitemapIngestionSettings = Field(default_factory=SitemapIngestionSettings)

    @property
    def sitemap_url(self) -> str:
        return self.resource.sitemap_url


class OpenApiSpecificationIngestion(_Aggregate):
    kind: Literal["openapi"] = "openapi"
    resource: OpenApiResource
    document_id_prefix: Optional[str] = None

    @property
    def spec_source(self) -> str:
        return self.resource.spec_source


IngestionRequest = Union[
    WebPageIngestion,
    HtmlDocumentIngestion,
    MarkdownDocumentIngestion,
    BulkBlobIngestion,
    BatchWebPageIngestion,
    SitemapIngestion,
    OpenApiSpecificationIngestion,
]


# Mapper


def _require_url(url: Optional[str], field_name: str = "url") -> str:
    value = (url or "").strip()
    if not is_http_url(value):
        raise RequestValidationError(f"Invalid {field_name} '{url}': an absolute http(s) URL is required")
    return value


def _optional_url(url: Optional[str]) -> Optional[str]:
    value = (url or "").strip()
    return value if is_http_url(value) else None


def _require_content(content: Optional[str]) -> str:
    if not content or not content.strip():
        raise RequestValidationError("Request content must not be empty.")
    return content


def _web_page(
    url: str,
    document_id: Optional[str],
    title: Optional[str],
    tags: list[str],
    metadata: dict[str, Any],
) -> WebPageIngestion:
    url = _require_url(url)
    return WebPageIngestion(
        metadata=IngestionMetadata.create(document_id, title, SOURCE_TYPE_WEBPAGE, url, tags, metadata),
        resource=WebPageResource(url=url),
        title_override=title if title and title.strip() else None,
    )


def map_web_page(request: WebPageIngestionRequest) -> WebPageIngestion:
    return _web_page(request.url, request.document_id, request.title, request.tags, request.metadata)


def map_html(request: HtmlIngestionRequest) -> HtmlDocumentIngestion:
    source_uri = _optional_url(request.source_url)
    return HtmlDocumentIngestion(
        metadata=IngestionMetadata.create(
            request.document_id, request.title, SOURCE_TYPE_HTML, source_uri, request.tags, request.metadata
        ),
        resource=HtmlResource(content=_require_content(request.content), source_uri=source_uri),
    )


def map_markdown(request: MarkdownIngestionRequest) -> MarkdownDocumentIngestion:
    source_uri = _optional_url(request.source_url)
    source_type = request.source_type if request.source_type and request.source_type.strip() else SOURCE_TYPE_MARKDOWN
    return MarkdownDocumentIngestion(
        metadata=IngestionMetadata.create(
            request.document_id, request.title, source_type, source_uri, request.tags, request.metadata
        ),
        resource=MarkdownResource(content=_require_content(request.content), source_uri=source_uri),
    )


def map_blob(request: BlobIngestionRequest) -> BulkBlobIngestion:
    if not request.blob_path or not request.blob_path.strip():
        raise RequestValidationError("Blob path must not be empty.")
    return BulkBlobIngestion(
        metadata=IngestionMetadata.create(
            None, request.blob_path, SOURCE_TYPE_BLOB, None, request.tags, request.metadata
        ),
        resource=BlobResource(blob_path=request.blob_path.strip(), container_name=request.container_name),
    )


def map_batch(request: BatchWebPageIngestionRequest) -> BatchWebPageIngestion:
    urls = [u.strip() for u in request.urls if u and u.strip()]
    if not urls:
        raise RequestValidationError("At least one URL is required.")
    if len(urls) > settings.batch.max_urls:
        raise RequestValidationError(f"At most {settings.batch.max_urls} URLs may be submitted per batch.")

    pages = tuple(_web_page(url, None, None, request.tags, request.metadata) for url in urls)
    return BatchWebPageIngestion(
        metadata=IngestionMetadata.create(None, None, SOURCE_TYPE_WEBPAGE, None, request.tags, request.metadata),
        pages=pages,
        max_concurrency=request.max_concurrency or settings.batch.max_concurrency,
        throttle_ms=request.throttle_ms if request.throttle_ms is not None else settings.batch.throttle_ms,
    )


def map_sitemap(request: SitemapIngestionRequest) -> SitemapIngestion:
    sitemap_url = _require_url(request.sitemap_url, "sitemap_url")
    return SitemapIngestion(
        metadata=IngestionMetadata.create(
            request.document_id_prefix, sitemap_url, SOURCE_TYPE_SITEMAP, None, request.tags, request.metadata
        ),
        resource=SitemapResource(sitemap_url=sitemap_url),
        settings=SitemapIngestionSettings(
            max_pages=request.max_pages,
            max_depth=request.max_depth,
            throttle_ms=request.throttle_ms,
            respect_robots_txt=request.respect_robots_txt,
            allowed_hosts=tuple(h.strip() for h in request.allowed_hosts if h and h.strip()),
        ),
    )


def map_openapi(request: OpenApiIngestionRequest) -> OpenApiSpecificationIngestion:
    spec_source = (request.spec_source or "").strip()
    if not spec_source:
        raise RequestValidationError("spec_source must not be empty.")
    metadata = IngestionMetadata.create(
        request.document_id_prefix,
        None,
        SOURCE_TYPE_OPENAPI,
        _optional_url(spec_source),
        request.tags,
        request.metadata,
    )
    return OpenApiSpecificationIngestion(
        metadata=metadata,
        resource=OpenApiResource(spec_source=spec_source, source_uri=metadata.source_uri),
        document_id_prefix=metadata.document_id.strip() if metadata.document_id else None,
    )


_MAPPERS: dict[type, Callable[[Any], IngestionRequest]] = {
    WebPageIngestionRequest: map_web_page,
    HtmlIngestionRequest: map_html,
    MarkdownIngestionRequest: map_markdown,
    BlobIngestionRequest: map_blob,
    BatchWebPageIngestionRequest: map_batch,
    SitemapIngestionRequest: map_sitemap,
    OpenApiIngestionRequest: map_openapi,
}


def to_domain(request: BaseModel) -> IngestionRequest:
    """Validate a transport request and map it to its domain aggregate.

    Raises RequestValidationError before any I/O when required fields are
    missing or malformed.
    """
    mapper = _MAPPERS.get(type(request))
    if mapper is None:
        raise RequestValidationError(f"Unsupported request type {type(request).__name__}")
    return mapper(request)
