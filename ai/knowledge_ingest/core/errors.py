"""Error taxonomy shared by processors and workflows."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class IngestionErrorCode(str, Enum):
    """Failure categories reported in ingestion outcomes."""

    UNKNOWN = "unknown"
    VALIDATION_FAILED = "validation_failed"
    SCRAPE_FAILED = "scrape_failed"
    CONTENT_MISSING = "content_missing"
    PROCESSING_FAILED = "processing_failed"
    INDEXING_FAILED = "indexing_failed"
    EXTERNAL_DEPENDENCY = "external_dependency"
    TIMEOUT = "timeout"


class IngestionError(BaseModel):
    """Structured failure carried by a failed outcome."""

    code: IngestionErrorCode
    message: str
    cause: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(
        cls,
        code: IngestionErrorCode,
        exc: BaseException,
        message: Optional[str] = None,
        **details: Any,
    ) -> "IngestionError":
        """Wrap an exception, keeping its repr as the cause."""
        return cls(
            code=code,
            message=message or str(exc) or exc.__class__.__name__,
            cause=repr(exc),
            details=details,
        )


class RequestValidationError(ValueError):
    """Raised when a transport request cannot be mapped to a domain request."""


class CrawlConfigurationError(RuntimeError):
    """Raised when a crawl cannot start because its configuration is unusable."""


class IndexingError(RuntimeError):
    """Raised by index stores when an upsert is rejected."""


class EmbeddingError(RuntimeError):
    """Raised by embedding providers when vectors cannot be produced."""
