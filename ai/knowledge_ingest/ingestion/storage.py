"""Storage utilities: filesystem blobs and JSONL chunk exports."""

import logging
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

import orjson

from knowledge_ingest.core.config import settings
from knowledge_ingest.core.utils import compute_content_hash
from knowledge_ingest.ingestion.models import DocumentChunk

logger = logging.getLogger(__name__)


class LocalBlobStorage:
    """Blob storage backed by a directory; containers are its subdirectories."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.blob_root)

    def _base(self, container_name: Optional[str] = None) -> Path:
        return self.root / container_name if container_name else self.root

    def _resolve(self, name: str, container_name: Optional[str] = None) -> Path:
        base = self._base(container_name).resolve()
        path = (base / name).resolve()
        if base != path and base not in path.parents:
            raise ValueError(f"Blob path escapes storage root: {name}")
        return path

    def list_blobs(self, prefix: str, container_name: Optional[str] = None) -> list[str]:
        """Names (relative, '/'-separated) of all files under a path prefix."""
        base = self._base(container_name)
        start = self._resolve(prefix.strip("/"), container_name) if prefix.strip("/") else base.resolve()
        if start.is_file():
            return [PurePosixPath(start.relative_to(base.resolve())).as_posix()]
        if not start.is_dir():
            logger.warning(f"Blob path not found: {start}")
            return []

        names = sorted(
            PurePosixPath(path.relative_to(base.resolve())).as_posix()
            for path in start.rglob("*")
            if path.is_file()
        )
        logger.debug(f"Found {len(names)} blobs under {start}")
        return names

    def read_blob(self, name: str, container_name: Optional[str] = None) -> str:
        return self._resolve(name, container_name).read_text(encoding="utf-8")

    @staticmethod
    def filter_by_extensions(names: Iterable[str], extensions: Iterable[str]) -> list[str]:
        allowed = {ext.lower() for ext in extensions}
        return [name for name in names if PurePosixPath(name).suffix.lower() in allowed]


class ChunkExporter:
    """Writes chunks to one JSONL file per document."""

    def __init__(self, base_dir: str = "data"):
        self.chunks_dir = Path(base_dir) / "chunks"
        self.chunks_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, document_id: str) -> Path:
        return self.chunks_dir / f"{compute_content_hash(document_id)[:16]}_chunks.jsonl"

    def save_chunks(self, chunks: list[DocumentChunk], document_id: str) -> str:
        """Save chunks to JSONL file."""
        filepath = self._path(document_id)
        with open(filepath, "wb") as f:
            for chunk in chunks:
                f.write(orjson.dumps(chunk.model_dump(mode="json")) + b"\n")

        logger.debug(f"Saved {len(chunks)} chunks to {filepath}")
        return str(filepath)

    def load_chunks(self, document_id: str) -> list[DocumentChunk]:
        """Load chunks for a document."""
        filepath = self._path(document_id)
        if not filepath.exists():
            return []

        chunks = []
        with open(filepath, "rb") as f:
            for line in f:
                if line.strip():
                    chunks.append(DocumentChunk.model_validate(orjson.loads(line)))
        return chunks
