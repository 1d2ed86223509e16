"""Application configuration using Pydantic Settings."""

from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from knowledge_ingest.core.constants import (
    DEFAULT_CHUNK_MAX,
    DEFAULT_CHUNK_MIN,
    DEFAULT_CHUNK_TARGET,
    DEFAULT_OVERLAP_RATIO,
)


class ChunkingOptions(BaseModel):
    """Token budgets used by the semantic chunker."""

    min_token_count: int = DEFAULT_CHUNK_MIN
    target_token_count: int = DEFAULT_CHUNK_TARGET
    max_token_count: int = DEFAULT_CHUNK_MAX
    overlap_percentage: float = Field(DEFAULT_OVERLAP_RATIO, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_bounds(self) -> "ChunkingOptions":
        """Enforce 0 < min < target < max."""
        if not 0 < self.min_token_count < self.target_token_count < self.max_token_count:
            raise ValueError("chunking bounds must satisfy 0 < min < target < max")
        return self


class SitemapOptions(BaseModel):
    """Defaults for sitemap-driven ingestion."""

    max_pages: int = 200
    max_depth: int = 2
    max_concurrency: int = 3
    throttle_ms: int = 250
    respect_robots_txt: bool = True
    user_agent: str = "KnowledgeIngestBot/1.0"
    fetch_timeout_s: float = 30.0
    fetch_retries: int = 3
    max_sitemap_bytes: int = 2_000_000
    max_sitemap_documents: int = 500
    recency_half_life_days: float = 30.0
    change_frequency_weight: float = 0.75


class HtmlExtractionOptions(BaseModel):
    """Thresholds for main-content selection."""

    min_confidence: float = 0.6
    max_link_density: float = 0.5
    min_text_length: int = 25


class BatchOptions(BaseModel):
    """Defaults for batch web page ingestion."""

    max_concurrency: int = 3
    throttle_ms: int = 0
    max_urls: int = 100


class OpenApiOptions(BaseModel):
    """Limits for OpenAPI specification ingestion."""

    max_markdown_segment_length: int = Field(8000, gt=0)
    fetch_retries: int = 2


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI
    openai_api_key: str = ""
    openai_embed_model: str = "text-embedding-3-small"

    # Embeddings Provider
    embeddings_provider: Literal["openai", "local"] = "openai"
    local_embed_model: str = "sentence-transformers/all-MiniLM-L6-v2"

    # Qdrant
    qdrant_url: str = "http://qdrant:6333"
    qdrant_api_key: str = ""
    collection_name: str = "knowledge_v1"

    # Scraping
    scrape_timeout_s: float = 30.0
    scrape_retries: int = 2

    # Ingestion
    chunking: ChunkingOptions = ChunkingOptions()
    sitemap: SitemapOptions = SitemapOptions()
    html: HtmlExtractionOptions = HtmlExtractionOptions()
    batch: BatchOptions = BatchOptions()
    openapi: OpenApiOptions = OpenApiOptions()

    # Blob storage (local filesystem root)
    blob_root: str = "data/blobs"

    # Logging
    log_level: str = "INFO"

    @property
    def is_local_embeddings(self) -> bool:
        """Check if using local embeddings."""
        return self.embeddings_provider == "local"


# Global settings instance
settings = Settings()
