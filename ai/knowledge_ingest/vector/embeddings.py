"""Embedding provider abstraction."""

import asyncio
import logging

import numpy as np
from openai import OpenAI
from sentence_transformers import SentenceTransformer

from knowledge_ingest.core.config import settings
from knowledge_ingest.core.errors import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingProvider:
    """Abstract embedding provider."""

    def __init__(self):
        self.model_name = ""
        self.vector_size = 0

    def get_embeddings(self, texts: list[str]) -> np.ndarray:
        """Generate embeddings for a list of texts."""
        raise NotImplementedError

    def get_embedding(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""
        return self.get_embeddings([text])[0]

    async def embed(self, texts: list[str]) -> np.ndarray:
        """Embed texts off the event loop; failures surface as EmbeddingError."""
        if not texts:
            return np.zeros((0, self.vector_size), dtype=np.float32)
        try:
            return await asyncio.to_thread(self.get_embeddings, texts)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"{self.model_name or 'embedding provider'} failed: {e}") from e


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embedding provider."""

    def __init__(self):
        super().__init__()
        self.client = OpenAI(api_key=settings.openai_api_key)
        self.model_name = settings.openai_embed_model

        # Map model names to vector sizes
        model_sizes = {
            "text-embedding-3-small": 1536,
            "text-embedding-3-large": 3072,
            "text-embedding-ada-002": 1536,
        }
        self.vector_size = model_sizes.get(self.model_name, 1536)

    def get_embeddings(self, texts: list[str]) -> np.ndarray:
        """Generate embeddings using OpenAI API."""
        try:
            response = self.client.embeddings.create(
                model=self.model_name,
                input=texts,
            )
            embeddings = [item.embedding for item in response.data]
            return np.array(embeddings, dtype=np.float32)
        except Exception as e:
            logger.error(f"Error generating OpenAI embeddings: {e}")
            raise


class LocalEmbeddingProvider(EmbeddingProvider):
    """Local sentence-transformers embedding provider."""

    def __init__(self, model_name: str = ""):
        super().__init__()
        self.model_name = model_name or settings.local_embed_model
        logger.info(f"Loading local embedding model: {self.model_name}")
        self.model = SentenceTransformer(self.model_name)
        self.vector_size = self.model.get_sentence_embedding_dimension()

    def get_embeddings(self, texts: list[str]) -> np.ndarray:
        """Generate embeddings using local model."""
        try:
            embeddings = self.model.encode(texts, show_progress_bar=False, convert_to_numpy=True)
            return embeddings.astype(np.float32)
        except Exception as e:
            logger.error(f"Error generating local embeddings: {e}")
            raise


def get_embedding_provider() -> EmbeddingProvider:
    """Get configured embedding provider."""
    if settings.is_local_embeddings:
        return LocalEmbeddingProvider()
    if not settings.openai_api_key:
        logger.warning("OpenAI API key not set, falling back to local embeddings")
        return LocalEmbeddingProvider()
    return OpenAIEmbeddingProvider()
