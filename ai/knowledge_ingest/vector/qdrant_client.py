"""Qdrant client, collection management and the chunk index store."""

import asyncio
import logging
import uuid
from typing import Optional, Sequence

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    OptimizersConfigDiff,
    PointStruct,
    VectorParams,
)

from knowledge_ingest.core.config import settings
from knowledge_ingest.core.errors import IndexingError
from knowledge_ingest.core.logging import mask_url_credentials
from knowledge_ingest.core.utils import compute_content_hash, format_iso8601
from knowledge_ingest.ingestion.models import DocumentChunk

logger = logging.getLogger(__name__)


def get_client(url: Optional[str] = None, api_key: Optional[str] = None) -> QdrantClient:
    """Get Qdrant client instance."""
    url = url or settings.qdrant_url
    api_key = api_key or settings.qdrant_api_key or None

    logger.debug(f"Connecting to Qdrant at {mask_url_credentials(url)}")
    return QdrantClient(url=url, api_key=api_key)


def ensure_collection(client: QdrantClient, collection: str, vector_size: int) -> None:
    """Ensure Qdrant collection exists with proper configuration."""
    collections = client.get_collections().collections
    collection_names = [c.name for c in collections]

    if collection not in collection_names:
        logger.info(f"Creating collection: {collection}")
        client.create_collection(
            collection_name=collection,
            vectors_config=VectorParams(
                size=vector_size,
                distance=Distance.COSINE,
            ),
            optimizers_config=OptimizersConfigDiff(memmap_threshold=20000),
        )
        logger.info(f"Collection {collection} created with vector size {vector_size}")
    else:
        logger.info(f"Collection {collection} already exists")


def point_id(chunk_id: str) -> str:
    """Qdrant point ids must be UUIDs; derive a stable one from the chunk id."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, chunk_id))


def chunk_payload(chunk: DocumentChunk) -> dict:
    """Payload stored next to a chunk vector."""
    meta = chunk.metadata
    return {
        "chunk_id": chunk.id,
        "document_id": chunk.parent_document_id,
        "chunk_index": chunk.chunk_index,
        "title": chunk.title,
        "document_title": meta.title,
        "text": chunk.content,
        "tokens": chunk.token_count,
        "char_start": chunk.start_position,
        "char_end": chunk.end_position,
        "url": meta.source_url,
        "source_type": meta.source_type,
        "tags": list(meta.tags),
        "ingested_at": format_iso8601(meta.ingested_at),
        "metadata": meta.custom_metadata,
        "hash": compute_content_hash(chunk.content),
    }


class QdrantIndexStore:
    """Index store that replaces a document's chunks on every upsert."""

    def __init__(self, client: Optional[QdrantClient] = None, collection_name: Optional[str] = None):
        self.client = client or get_client()
        self.collection_name = collection_name or settings.collection_name

    def _upsert(self, document_id: str, chunks: Sequence[DocumentChunk], vectors: np.ndarray) -> None:
        # Stale chunks of a previous version of the document must not survive
        self.client.delete(
            collection_name=self.collection_name,
            points_selector=FilterSelector(
                filter=Filter(must=[FieldCondition(key="document_id", match=MatchValue(value=document_id))])
            ),
        )
        points = [
            PointStruct(id=point_id(chunk.id), vector=np.asarray(vector).tolist(), payload=chunk_payload(chunk))
            for chunk, vector in zip(chunks, vectors)
        ]
        self.client.upsert(collection_name=self.collection_name, points=points)

    async def upsert(self, document_id: str, chunks: Sequence[DocumentChunk], vectors: np.ndarray) -> None:
        """Write chunks with their vectors; failures surface as IndexingError."""
        if len(chunks) != len(vectors):
            raise IndexingError(f"Got {len(vectors)} vectors for {len(chunks)} chunks of {document_id}")
        try:
            await asyncio.to_thread(self._upsert, document_id, chunks, vectors)
        except Exception as e:
            logger.error(f"Upsert of {document_id} into {self.collection_name} failed: {e}")
            raise IndexingError(str(e)) from e
        logger.info(f"Upserted {len(chunks)} chunks of {document_id} to Qdrant")
