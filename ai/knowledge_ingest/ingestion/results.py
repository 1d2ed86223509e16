"""Outcomes of single-document and batch ingestion runs."""

from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from knowledge_ingest.core.errors import IngestionError
from knowledge_ingest.ingestion.models import DocumentChunk


class DocumentProcessingMetrics(BaseModel):
    """Timing and size figures for one processed document."""

    duration_s: float = 0.0
    chunk_count: int = 0
    token_count: int = 0
    additional_properties: dict[str, Any] = Field(default_factory=dict)


class ProcessedDocument(BaseModel):
    """A document that was chunked and handed to the index."""

    document_id: str
    collection_name: str
    title: Optional[str] = None
    chunks: list[DocumentChunk] = Field(default_factory=list)
    metrics: DocumentProcessingMetrics = Field(default_factory=DocumentProcessingMetrics)


class IngestionOutcome(BaseModel):
    """Success with a processed document, or failure with an error."""

    success: bool
    document: Optional[ProcessedDocument] = None
    error: Optional[IngestionError] = None
    message: str = ""
    diagnostics: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_variant(self) -> "IngestionOutcome":
        """Exactly one of document/error is populated, matching ``success``."""
        if self.success != (self.document is not None) or self.success == (self.error is not None):
            raise ValueError("an outcome carries a document on success and an error on failure")
        return self

    @classmethod
    def from_success(
        cls,
        document: ProcessedDocument,
        message: Optional[str] = None,
        diagnostics: Optional[dict[str, Any]] = None,
    ) -> "IngestionOutcome":
        return cls(
            success=True,
            document=document,
            message=message or f"Document '{document.document_id}' ingested into '{document.collection_name}'.",
            diagnostics=diagnostics or {},
        )

    @classmethod
    def from_failure(
        cls,
        error: IngestionError,
        diagnostics: Optional[dict[str, Any]] = None,
    ) -> "IngestionOutcome":
        return cls(success=False, error=error, message=error.message, diagnostics=diagnostics or {})

    @property
    def chunks_indexed(self) -> int:
        return len(self.document.chunks) if self.document else 0


class PageIngestionOutcome(BaseModel):
    """Per-URL result inside a batch or sitemap run."""

    url: str
    success: bool
    title: Optional[str] = None
    document_id: Optional[str] = None
    chunks_indexed: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_outcome(cls, url: str, outcome: IngestionOutcome) -> "PageIngestionOutcome":
        if outcome.success:
            return cls(
                url=url,
                success=True,
                title=outcome.document.title,
                document_id=outcome.document.document_id,
                chunks_indexed=outcome.chunks_indexed,
            )
        return cls(
            url=url,
            success=False,
            error_code=outcome.error.code.value,
            error_message=outcome.error.message,
        )


class BatchWebPageIngestionResult(BaseModel):
    """Aggregate of a batch web page run; ``success`` only when nothing failed."""

    success: bool
    total_requested: int
    total_succeeded: int
    total_failed: int
    results: list[PageIngestionOutcome] = Field(default_factory=list)
    duration_s: float = 0.0
    cancelled: bool = False
    message: str = ""

    @classmethod
    def aggregate(
        cls,
        results: list[PageIngestionOutcome],
        total_requested: int,
        duration_s: float,
        cancelled: bool = False,
    ) -> "BatchWebPageIngestionResult":
        succeeded = sum(1 for r in results if r.success)
        failed = sum(1 for r in results if not r.success)
        message = f"Ingested {succeeded} of {total_requested} web pages."
        if cancelled:
            message += " Run was cancelled."
        return cls(
            success=failed == 0,
            total_requested=total_requested,
            total_succeeded=succeeded,
            total_failed=failed,
            results=results,
            duration_s=duration_s,
            cancelled=cancelled,
            message=message,
        )


class SitemapIngestionResult(BaseModel):
    """Aggregate of a sitemap-driven run."""

    sitemap_url: str
    success: bool = False
    total_discovered: int = 0
    total_filtered: int = 0
    total_selected: int = 0
    total_ingested: int = 0
    total_failed: int = 0
    sitemaps_fetched: int = 0
    results: list[PageIngestionOutcome] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_s: float = 0.0
    cancelled: bool = False
    message: str = ""


class BlobIngestionResult(BaseModel):
    """Aggregate of a bulk blob run."""

    blob_path: str
    success: bool = False
    total_files: int = 0
    files_processed: int = 0
    total_chunks_indexed: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_s: float = 0.0
    message: str = ""


class OpenApiIngestionResult(BaseModel):
    """Aggregate of an OpenAPI specification run; one endpoint may span several documents."""

    spec_source: str
    success: bool = False
    spec_title: Optional[str] = None
    endpoints_processed: int = 0
    total_endpoints: int = 0
    total_documents: int = 0
    total_chunks_indexed: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_s: float = 0.0
    cancelled: bool = False
    message: str = ""
