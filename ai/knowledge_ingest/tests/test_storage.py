"""Tests for filesystem blob storage and JSONL chunk export."""

import pytest

from knowledge_ingest.ingestion.chunker import SemanticChunker
from knowledge_ingest.ingestion.models import DocumentMetadata
from knowledge_ingest.ingestion.storage import ChunkExporter, LocalBlobStorage


@pytest.fixture
def storage(tmp_path):
    docs = tmp_path / "docs"
    (docs / "nested").mkdir(parents=True)
    (docs / "a.md").write_text("# A", encoding="utf-8")
    (docs / "nested" / "b.HTML").write_text("<p>b</p>", encoding="utf-8")
    (docs / "c.txt").write_text("c", encoding="utf-8")
    return LocalBlobStorage(str(tmp_path))


def test_list_blobs_recurses(storage):
    """Listing a prefix returns every file below it, sorted, '/'-separated."""
    assert storage.list_blobs("docs") == ["docs/a.md", "docs/c.txt", "docs/nested/b.HTML"]
    assert storage.list_blobs("/docs/") == storage.list_blobs("docs")


def test_list_single_file_and_missing_path(storage):
    """A file prefix lists itself; a missing prefix lists nothing."""
    assert storage.list_blobs("docs/a.md") == ["docs/a.md"]
    assert storage.list_blobs("missing") == []


def test_filter_by_extensions_is_case_insensitive(storage):
    """Extension filtering ignores case."""
    names = storage.list_blobs("docs")
    assert storage.filter_by_extensions(names, (".md", ".html")) == ["docs/a.md", "docs/nested/b.HTML"]


def test_read_blob(storage):
    """Blobs are read as UTF-8 text."""
    assert storage.read_blob("docs/a.md") == "# A"


def test_paths_cannot_escape_root(storage):
    """Names resolving outside the storage root are rejected."""
    with pytest.raises(ValueError):
        storage.read_blob("../outside.md")
    with pytest.raises(ValueError):
        storage.list_blobs("../")


def test_chunk_export(tmp_path):
    """Exported chunks load back unchanged."""
    metadata = DocumentMetadata(id="doc", title="Doc", tags=["x"])
    chunks = SemanticChunker().chunk_markdown("# One\n\nFirst.\n\n# Two\n\nSecond.", "doc", metadata)
    exporter = ChunkExporter(str(tmp_path))

    path = exporter.save_chunks(chunks, "doc")

    assert path.endswith("_chunks.jsonl")
    assert exporter.load_chunks("doc") == chunks
    assert exporter.load_chunks("other") == []
