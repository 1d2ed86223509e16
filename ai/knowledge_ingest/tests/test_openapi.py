"""Tests for OpenAPI parsing, markdown rendering, splitting and ingestion."""

import asyncio

import httpx
import orjson
import pytest

from conftest import FakeEmbedder, RecordingIndexStore
from knowledge_ingest.core.errors import RequestValidationError
from knowledge_ingest.core.schemas import OpenApiIngestionRequest
from knowledge_ingest.ingestion.openapi import (
    OpenApiSpecDocument,
    OpenApiSpecError,
    OpenApiSpecLocator,
    OpenApiSpecParser,
    endpoint_id,
    generate_markdown,
    split_endpoint,
    split_markdown,
)
from knowledge_ingest.ingestion.parse_html import split_frontmatter
from knowledge_ingest.ingestion.processor import MarkdownProcessor
from knowledge_ingest.ingestion.requests import map_openapi
from knowledge_ingest.ingestion.storage import LocalBlobStorage
from knowledge_ingest.ingestion.workflows import IngestionService, OpenApiIngestionWorkflow

PETSTORE_YAML = """
openapi: 3.0.3
info:
  title: Petstore
  version: 2.1.0
servers:
  - url: https://api.example.com/v1
security:
  - apiKey: []
paths:
  /pets:
    parameters:
      - name: limit
        in: query
        description: Page size | max 100
        schema:
          type: integer
      - name: trace
        in: header
        schema:
          type: string
    get:
      operationId: listPets
      summary: List pets
      tags: [pets]
      parameters:
        - name: limit
          in: query
          required: true
          description: How many pets to return
          schema:
            type: integer
      responses:
        "200":
          description: A list of pets
          content:
            application/json:
              schema:
                type: array
                items:
                  $ref: "#/components/schemas/Pet"
    post:
      operationId: createPet
      tags: [pets, Admin]
      security:
        - oauth: [write]
      requestBody:
        required: true
        content:
          application/json:
            schema:
              $ref: "#/components/schemas/Pet"
            example:
              name: Rex
      responses:
        "201":
          description: Created
  /pets/{petId}:
    delete:
      description: Removes a pet.
      deprecated: true
      responses:
        "204":
          description: Deleted
components:
  schemas:
    Pet:
      type: object
      properties:
        name:
          type: string
        parent:
          $ref: "#/components/schemas/Pet"
"""

SWAGGER_JSON = {
    "swagger": "2.0",
    "info": {"title": "Legacy", "version": "1"},
    "host": "legacy.example.com",
    "basePath": "/api",
    "schemes": ["https"],
    "paths": {
        "/items": {
            "post": {
                "consumes": ["application/xml"],
                "parameters": [
                    {"name": "item", "in": "body", "required": True, "schema": {"type": "object"}},
                    {"name": "dry", "in": "query", "type": "boolean"},
                ],
                "responses": {"200": {"description": "OK", "schema": {"type": "string"}}},
            }
        }
    },
}


def parse(content: str, source: str = "petstore.yaml"):
    return OpenApiSpecParser().parse(OpenApiSpecDocument(source=source, content=content))


# Parsing


def test_endpoint_id():
    """Slashes and braces become underscores, trimmed at the ends."""
    assert endpoint_id("get", "/pets/{petId}") == "GET__pets__petId"
    assert endpoint_id("post", "/") == "POST"


def test_parse_yaml_specification():
    """Every path+method becomes an endpoint carrying the document's title and version."""
    spec = parse(PETSTORE_YAML)

    assert spec.title == "Petstore"
    assert spec.version == "2.1.0"
    assert spec.servers == ["https://api.example.com/v1"]
    assert [(e.method, e.path) for e in spec.endpoints] == [
        ("GET", "/pets"),
        ("POST", "/pets"),
        ("DELETE", "/pets/{petId}"),
    ]
    list_pets, create_pet, delete_pet = spec.endpoints
    assert list_pets.operation_id == "listPets"
    assert list_pets.servers == ["https://api.example.com/v1"]
    assert delete_pet.deprecated
    assert delete_pet.description == "Removes a pet."
    assert create_pet.tags == ["pets", "Admin"]


def test_operation_parameters_override_path_parameters():
    """Parameters merge by name and location, the operation's version winning."""
    list_pets = parse(PETSTORE_YAML).endpoints[0]

    by_name = {p["name"]: p for p in list_pets.parameters}
    assert sorted(by_name) == ["limit", "trace"]
    assert by_name["limit"]["required"] is True
    assert by_name["limit"]["description"] == "How many pets to return"


def test_security_falls_back_to_global_requirements():
    """Operations without their own security inherit the document's."""
    list_pets, create_pet, _ = parse(PETSTORE_YAML).endpoints

    assert list_pets.security == ["apiKey"]
    assert create_pet.security == ["oauth"]


def test_local_references_are_inlined():
    """$ref pointers are replaced by their targets; recursive ones stay references."""
    list_pets, create_pet, _ = parse(PETSTORE_YAML).endpoints

    item_schema = list_pets.responses["200"]["content"]["application/json"]["schema"]["items"]
    assert item_schema["type"] == "object"
    assert item_schema["properties"]["parent"] == {"$ref": "#/components/schemas/Pet"}
    body_schema = create_pet.request_body["content"]["application/json"]["schema"]
    assert body_schema["properties"]["name"] == {"type": "string"}


def test_parse_swagger_json():
    """Swagger 2.0 servers, body parameters and response schemas take the OpenAPI 3 shape."""
    spec = parse(orjson.dumps(SWAGGER_JSON).decode(), source="legacy.json")

    assert spec.title == "Legacy"
    assert spec.servers == ["https://legacy.example.com/api"]
    (endpoint,) = spec.endpoints
    assert [p["name"] for p in endpoint.parameters] == ["dry"]
    assert endpoint.request_body["required"] is True
    assert endpoint.request_body["content"] == {"application/xml": {"schema": {"type": "object"}}}
    assert endpoint.responses["200"]["content"] == {"application/json": {"schema": {"type": "string"}}}


def test_missing_info_uses_defaults():
    """Title and version fall back to defaults."""
    spec = parse("openapi: 3.0.0\npaths: {}\n")

    assert spec.title == "OpenAPI Specification"
    assert spec.version == "1.0"
    assert spec.endpoints == []


@pytest.mark.parametrize("content", ["", "   ", "{not json", "title: just yaml", "- a\n- b"])
def test_parse_rejects_non_specifications(content):
    """Empty, malformed and non-OpenAPI documents raise OpenApiSpecError."""
    with pytest.raises(OpenApiSpecError):
        parse(content)


# Markdown


def test_generate_markdown():
    """The endpoint page has frontmatter and one section per aspect of the operation."""
    spec = parse(PETSTORE_YAML)
    list_pets, create_pet, _ = spec.endpoints

    markdown = generate_markdown(spec, list_pets)
    front_matter, body = split_frontmatter(markdown)

    assert front_matter["title"] == "GET /pets"
    assert front_matter["operationId"] == "listPets"
    assert front_matter["sourceType"] == "openapi"
    assert front_matter["specTitle"] == "Petstore"
    assert front_matter["security"] == ["apiKey"]
    assert body.startswith("# GET /pets\n")
    assert "**Summary:** List pets" in body
    assert "## Servers\n\n- https://api.example.com/v1" in body
    assert "| limit | query | integer | Yes | How many pets to return |" in body
    assert "| trace | header | string | No |  |" in body
    assert "### 200 - A list of pets" in body
    assert "## Security\n\n- apiKey" in body

    create = generate_markdown(spec, create_pet)
    assert "## Request Body" in create
    assert "**Content-Type:** `application/json`" in create
    assert '"name": "Rex"' in create


def test_table_cells_escape_pipes():
    """Pipes inside cell text do not break the parameter table."""
    spec = parse(PETSTORE_YAML.replace("How many pets to return", "a | b"))

    markdown = generate_markdown(spec, spec.endpoints[0])

    assert "| a \\| b |" in markdown


# Splitting


def test_short_markdown_is_one_segment():
    """Pages within the limit are not split."""
    assert split_markdown("# Title\n\nBody.\n", 100) == ["# Title\n\nBody.\n"]


def test_split_on_headings_within_the_limit():
    """Segments start at ## headings, stay within the limit and keep all text."""
    sections = [f"## Section {i}\n\n" + ("word " * 30) + "\n\n" for i in range(6)]
    markdown = "# GET /pets\n\n" + "".join(sections)

    segments = split_markdown(markdown, 400)

    assert len(segments) > 1
    assert all(len(s) <= 400 for s in segments)
    assert all(s.startswith("##") for s in segments[1:])
    assert "".join(segments) == markdown


def test_oversized_section_is_cut_by_length():
    """A single section longer than the limit is cut into pieces."""
    markdown = "## Schema\n\n" + "x" * 950 + "\n"

    segments = split_markdown(markdown, 300)

    assert all(len(s) <= 300 for s in segments)
    assert "".join(segments) == markdown


def test_split_endpoint_numbers_segments():
    """Endpoint documents carry their position and the segment count."""
    endpoint = parse(PETSTORE_YAML).endpoints[0]
    markdown = "".join(f"## Part {i}\n\n" + "text " * 40 + "\n" for i in range(3))

    documents = split_endpoint(endpoint, markdown, 250)

    assert [d.segment_index for d in documents] == list(range(1, len(documents) + 1))
    assert {d.total_segments for d in documents} == {len(documents)}


def test_split_requires_positive_limit():
    """A non-positive limit is rejected."""
    with pytest.raises(ValueError):
        split_markdown("text", 0)


# Locating


def test_locate_blob_sources(tmp_path):
    """container:name and blob://container/name read from blob storage."""
    (tmp_path / "specs").mkdir()
    (tmp_path / "specs" / "api.yaml").write_text(PETSTORE_YAML, encoding="utf-8")

    async def run():
        async with httpx.AsyncClient() as client:
            locator = OpenApiSpecLocator(client, LocalBlobStorage(str(tmp_path)))
            return await locator.locate("specs:api.yaml"), await locator.locate("blob://specs/api.yaml")

    short, long = asyncio.run(run())

    assert short.content == PETSTORE_YAML
    assert long.source_uri == "blob://specs/api.yaml"


def test_locate_downloads_urls():
    """http(s) sources are downloaded; 4xx responses raise."""

    def handler(request):
        if request.url.path == "/openapi.yaml":
            return httpx.Response(200, text=PETSTORE_YAML)
        return httpx.Response(404)

    async def run(url):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await OpenApiSpecLocator(client, retries=0).locate(url)

    document = asyncio.run(run("https://api.example.com/openapi.yaml"))
    assert document.source_uri == "https://api.example.com/openapi.yaml"
    assert document.content == PETSTORE_YAML

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(run("https://api.example.com/missing.yaml"))


def test_locate_missing_source():
    """Sources that are neither URLs, files nor blob names raise FileNotFoundError."""

    async def run():
        async with httpx.AsyncClient() as client:
            return await OpenApiSpecLocator(client).locate("does/not/exist.yaml")

    with pytest.raises(FileNotFoundError):
        asyncio.run(run())


# Requests and workflow


def test_openapi_request_requires_source():
    """A blank spec source is rejected before any I/O."""
    with pytest.raises(RequestValidationError):
        map_openapi(OpenApiIngestionRequest(spec_source="  "))


def test_openapi_request_mapping():
    """Prefix, tags and source type are carried onto the aggregate."""
    transport = OpenApiIngestionRequest(
        spec_source="https://api.example.com/openapi.yaml", document_id_prefix="api", tags=["x"]
    )

    request = map_openapi(transport)

    assert request.kind == "openapi"
    assert request.document_id_prefix == "api"
    assert request.metadata.source_type == "openapi"
    assert request.metadata.source_uri == "https://api.example.com/openapi.yaml"
    assert request.metadata.tags == ("x",)


def run_openapi(tmp_path, content, max_segment_length=8000, cancel_event_factory=None, **request_fields):
    spec_file = tmp_path / "openapi.yaml"
    spec_file.write_text(content, encoding="utf-8")
    store = RecordingIndexStore()

    async def run():
        async with httpx.AsyncClient() as client:
            processor = MarkdownProcessor(embedder=FakeEmbedder(), index_store=store)
            workflow = OpenApiIngestionWorkflow(
                OpenApiSpecLocator(client, LocalBlobStorage(str(tmp_path))),
                processor,
                max_segment_length=max_segment_length,
            )
            request = map_openapi(OpenApiIngestionRequest(spec_source=str(spec_file), **request_fields))
            cancel_event = cancel_event_factory() if cancel_event_factory else None
            return await workflow.execute(request, cancel_event)

    return asyncio.run(run()), store


def test_openapi_workflow(tmp_path):
    """Each endpoint becomes a document with a prefixed id, merged tags and openapi metadata."""
    result, store = run_openapi(tmp_path, PETSTORE_YAML, document_id_prefix="pet store", tags=["API", "docs"])

    assert result.success
    assert result.spec_title == "Petstore"
    assert result.total_endpoints == 3
    assert result.endpoints_processed == 3
    assert result.total_documents == 3
    assert result.total_chunks_indexed >= 3
    assert result.errors == []
    assert [u[0] for u in store.upserts] == ["pet_store_GET_pets", "pet_store_POST_pets", "pet_store_DELETE_pets_petId"]

    _, chunks, _ = store.upserts[1]
    metadata = chunks[0].metadata
    assert metadata.title == "POST /pets"
    assert metadata.tags == ["API", "docs", "pets", "Admin"]
    assert metadata.source_type == "openapi"
    assert metadata.custom_metadata["openapi.method"] == "POST"
    assert metadata.custom_metadata["openapi.path"] == "/pets"
    assert metadata.custom_metadata["openapi.operationId"] == "createPet"
    assert metadata.custom_metadata["openapi.specVersion"] == "2.1.0"
    assert metadata.custom_metadata["openapi.segmentCount"] == 1


def test_openapi_workflow_splits_long_endpoints(tmp_path):
    """Endpoints longer than the segment limit become numbered parts."""
    result, store = run_openapi(tmp_path, PETSTORE_YAML, max_segment_length=200)

    assert result.success
    assert result.total_documents > result.total_endpoints
    ids = [u[0] for u in store.upserts]
    assert "GET_pets_part1" in ids
    assert "GET_pets_part2" in ids
    first = next(chunks for document_id, chunks, _ in store.upserts if document_id == "GET_pets_part1")
    assert first[0].metadata.title.startswith("GET /pets (Part 1/")


def test_openapi_workflow_without_endpoints(tmp_path):
    """A specification without operations does not succeed."""
    result, store = run_openapi(tmp_path, "openapi: 3.0.0\ninfo:\n  title: Empty\n  version: '1'\npaths: {}\n")

    assert not result.success
    assert result.total_endpoints == 0
    assert result.message == "No endpoints found in the OpenAPI specification."
    assert store.upserts == []


def test_openapi_workflow_unparseable_spec(tmp_path):
    """An unreadable specification is reported as a failed run."""
    result, store = run_openapi(tmp_path, "just: yaml\n")

    assert not result.success
    assert len(result.errors) == 1
    assert "could not be loaded" in result.message
    assert store.upserts == []


def test_openapi_workflow_cancelled(tmp_path):
    """A pre-set cancel event stops before the first endpoint."""

    def new_event():
        event = asyncio.Event()
        event.set()
        return event

    result, store = run_openapi(tmp_path, PETSTORE_YAML, cancel_event_factory=new_event)

    assert result.cancelled
    assert not result.success
    assert result.endpoints_processed == 0
    assert store.upserts == []


def test_service_dispatches_openapi_requests(tmp_path):
    """The service routes OpenAPI requests by their kind."""
    (tmp_path / "specs").mkdir()
    (tmp_path / "specs" / "api.yaml").write_text(PETSTORE_YAML, encoding="utf-8")

    async def run():
        async with httpx.AsyncClient() as client:
            service = IngestionService(client, storage=LocalBlobStorage(str(tmp_path)))
            return await service.submit(OpenApiIngestionRequest(spec_source="blob://specs/api.yaml"))

    result = asyncio.run(run())

    assert result.success
    assert result.endpoints_processed == 3
