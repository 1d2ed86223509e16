"""Document processors: markdown and HTML to indexed chunks."""

import logging
import time
from datetime import date, datetime
from typing import Any, Optional

from knowledge_ingest.core.config import HtmlExtractionOptions, settings
from knowledge_ingest.core.constants import SOURCE_TYPE_HTML, SOURCE_TYPE_WEBPAGE
from knowledge_ingest.core.errors import IngestionError, IngestionErrorCode
from knowledge_ingest.core.utils import slugify_title
from knowledge_ingest.ingestion.chunker import SemanticChunker
from knowledge_ingest.ingestion.content_scorer import ContentScorer
from knowledge_ingest.ingestion.models import DocumentMetadata, IngestionMetadata, ScrapedPage
from knowledge_ingest.ingestion.parse_html import (
    convert_to_markdown,
    extract_title,
    normalize_html,
    select_main_content,
    split_frontmatter,
)
from knowledge_ingest.ingestion.results import DocumentProcessingMetrics, IngestionOutcome, ProcessedDocument

logger = logging.getLogger(__name__)

UNTITLED_HTML_DOCUMENT = "Untitled HTML Document"


def _plain(value: Any) -> Any:
    """YAML scalars such as dates become strings so metadata stays JSON-friendly."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return []


def merge_frontmatter(metadata: DocumentMetadata, front_matter: dict[str, Any]) -> None:
    """Apply frontmatter fields to document metadata in place.

    title, description, url and sourceType replace the request values when
    they are strings; a non-empty tag list replaces the request tags. Every
    key is also copied into the custom metadata.
    """
    title = front_matter.get("title")
    if isinstance(title, str) and title.strip():
        metadata.title = title.strip()
    if isinstance(front_matter.get("description"), str):
        metadata.description = front_matter["description"]
    if isinstance(front_matter.get("url"), str):
        metadata.source_url = front_matter["url"]
    if isinstance(front_matter.get("sourceType"), str):
        metadata.source_type = front_matter["sourceType"]
    if isinstance(front_matter.get("author"), str):
        metadata.author = front_matter["author"]

    tags = _string_list(front_matter.get("tags"))
    if tags:
        metadata.tags = tags

    for key, value in front_matter.items():
        metadata.custom_metadata[str(key)] = _plain(value)


def build_document_metadata(metadata: IngestionMetadata) -> DocumentMetadata:
    """Document metadata for a request, generating the id from the title when absent."""
    document_id = metadata.document_id or slugify_title(metadata.title)
    return DocumentMetadata(
        id=document_id,
        title=metadata.title or document_id,
        source_url=metadata.source_uri or "manual",
        source_type=metadata.source_type,
        tags=list(metadata.tags),
        custom_metadata=dict(metadata.custom_metadata),
    )


class MarkdownProcessor:
    """Chunks markdown, embeds the chunks and hands them to the index store.

    Without an embedder the processor only chunks, which is what dry runs and
    JSONL exports use. Failures come back as failed outcomes; cancellation
    propagates.
    """

    def __init__(
        self,
        chunker: Optional[SemanticChunker] = None,
        embedder=None,
        index_store=None,
        collection_name: Optional[str] = None,
    ):
        if index_store is not None and embedder is None:
            raise ValueError("an index store requires an embedder")
        self.chunker = chunker or SemanticChunker()
        self.embedder = embedder
        self.index_store = index_store
        self.collection_name = (
            collection_name or getattr(index_store, "collection_name", None) or settings.collection_name
        )

    async def process(self, content: str, metadata: IngestionMetadata) -> IngestionOutcome:
        started = time.perf_counter()
        document = build_document_metadata(metadata)

        front_matter, body = split_frontmatter(content)
        if front_matter:
            merge_frontmatter(document, front_matter)

        logger.info(f"Chunking document {document.id}. Length: {len(body)} characters")
        try:
            chunks = self.chunker.chunk_markdown(body, document.id, document)
        except Exception as e:
            logger.error(f"Chunking failed for document {document.id}: {e}", exc_info=True)
            return IngestionOutcome.from_failure(
                IngestionError.from_exception(IngestionErrorCode.PROCESSING_FAILED, e, document_id=document.id)
            )

        if not chunks:
            logger.warning(f"No chunks produced for document {document.id}")
            return IngestionOutcome.from_failure(
                IngestionError(
                    code=IngestionErrorCode.CONTENT_MISSING,
                    message="No content chunks produced.",
                    details={"document_id": document.id},
                )
            )

        if self.embedder is not None:
            try:
                vectors = await self.embedder.embed([chunk.content for chunk in chunks])
            except Exception as e:
                logger.warning(f"Embedding failed for document {document.id}: {e}")
                return IngestionOutcome.from_failure(
                    IngestionError.from_exception(
                        IngestionErrorCode.EXTERNAL_DEPENDENCY, e, document_id=document.id
                    )
                )

            if self.index_store is not None:
                logger.info(f"Uploading {len(chunks)} chunks for document {document.id}")
                try:
                    await self.index_store.upsert(document.id, chunks, vectors)
                except Exception as e:
                    logger.warning(f"Indexing failed for document {document.id}: {e}")
                    return IngestionOutcome.from_failure(
                        IngestionError.from_exception(
                            IngestionErrorCode.INDEXING_FAILED, e, document_id=document.id
                        )
                    )

        duration = time.perf_counter() - started
        metrics = DocumentProcessingMetrics(
            duration_s=duration,
            chunk_count=len(chunks),
            token_count=sum(chunk.token_count for chunk in chunks),
            additional_properties={"content_length": len(body)},
        )
        processed = ProcessedDocument(
            document_id=document.id,
            collection_name=self.collection_name,
            title=document.title,
            chunks=chunks,
            metrics=metrics,
        )
        return IngestionOutcome.from_success(
            processed,
            diagnostics={"duration_s": round(duration, 3), "chunk_count": len(chunks)},
        )


class HtmlProcessor:
    """Cleans HTML, keeps the main content and delegates to the markdown processor."""

    def __init__(
        self,
        markdown_processor: MarkdownProcessor,
        scorer: Optional[ContentScorer] = None,
        options: Optional[HtmlExtractionOptions] = None,
    ):
        self.markdown_processor = markdown_processor
        self.scorer = scorer or ContentScorer()
        self.options = options or settings.html

    def clean(self, page: ScrapedPage) -> ScrapedPage:
        """Page with its HTML reduced to the main content and its meta tags merged."""
        soup, metadata = normalize_html(page.html_content)
        content = select_main_content(soup, self.scorer, self.options)
        merged = {**metadata, **page.metadata}
        return page.model_copy(update={"html_content": str(content), "metadata": merged})

    def to_markdown(self, page: ScrapedPage, source_type: str) -> str:
        return convert_to_markdown(self.clean(page), source_type)

    async def _convert_and_process(
        self,
        page: ScrapedPage,
        metadata: IngestionMetadata,
        source_type: str,
    ) -> IngestionOutcome:
        try:
            markdown = self.to_markdown(page, source_type)
        except Exception as e:
            logger.error(f"HTML conversion failed for {page.url}: {e}", exc_info=True)
            return IngestionOutcome.from_failure(
                IngestionError.from_exception(IngestionErrorCode.PROCESSING_FAILED, e, url=page.url)
            )
        return await self.markdown_processor.process(markdown, metadata)

    async def process_html(self, content: str, metadata: IngestionMetadata) -> IngestionOutcome:
        """Ingest inline HTML; the title comes from the request, the markup, or a placeholder."""
        title = metadata.title
        if not title:
            try:
                soup, meta_tags = normalize_html(content)
                found = extract_title(soup, meta_tags)
            except Exception as e:
                logger.debug(f"Could not read a title from inline HTML: {e}")
                found = None
            title = found if found and found != "Untitled" else UNTITLED_HTML_DOCUMENT

        page = ScrapedPage(
            url=metadata.source_uri or "manual",
            title=title,
            html_content=content,
            status_code=200,
        )
        logger.info("Ingesting HTML content")
        return await self._convert_and_process(
            page,
            metadata.model_copy(update={"title": title, "source_type": SOURCE_TYPE_HTML}),
            SOURCE_TYPE_HTML,
        )

    async def process_page(
        self,
        page: ScrapedPage,
        metadata: IngestionMetadata,
        title_override: Optional[str] = None,
    ) -> IngestionOutcome:
        """Ingest a scraped web page."""
        if title_override:
            page = page.model_copy(update={"title": title_override})
        updated = metadata.model_copy(
            update={
                "title": title_override or page.title,
                "source_uri": page.url or metadata.source_uri,
                "source_type": SOURCE_TYPE_WEBPAGE,
            }
        )
        return await self._convert_and_process(page, updated, SOURCE_TYPE_WEBPAGE)
