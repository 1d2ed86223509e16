"""OpenAPI specifications: locating, parsing and rendering endpoints as markdown.

Each path+method pair becomes one endpoint document. Local ``$ref`` pointers
are inlined, Swagger 2.0 documents are read into the same shape as OpenAPI 3
ones, and long endpoint pages are split on ``##`` headings.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import orjson
import yaml
from pydantic import BaseModel, ConfigDict, Field

from knowledge_ingest.core.utils import is_http_url
from knowledge_ingest.ingestion.scraper import retrying
from knowledge_ingest.ingestion.storage import LocalBlobStorage

logger = logging.getLogger(__name__)

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")
DEFAULT_SPEC_TITLE = "OpenAPI Specification"
DEFAULT_SPEC_VERSION = "1.0"
MAX_REF_DEPTH = 32

_ENDPOINT_ID_CHARS = re.compile(r"[/{}]")


class OpenApiSpecError(ValueError):
    """Raised when a specification cannot be read as OpenAPI or Swagger."""


class OpenApiSpecDocument(BaseModel):
    """Raw specification text and where it came from."""

    model_config = ConfigDict(frozen=True)

    source: str
    content: str
    source_uri: Optional[str] = None


class OpenApiEndpoint(BaseModel):
    """A single operation of a specification."""

    id: str
    method: str
    path: str
    operation_id: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    parameters: list[dict[str, Any]] = Field(default_factory=list)
    request_body: Optional[dict[str, Any]] = None
    responses: dict[str, Any] = Field(default_factory=dict)
    security: list[str] = Field(default_factory=list)
    servers: list[str] = Field(default_factory=list)
    deprecated: bool = False


class OpenApiSpecification(BaseModel):
    """Parsed specification with its endpoints in document order."""

    title: str = DEFAULT_SPEC_TITLE
    version: str = DEFAULT_SPEC_VERSION
    source: str
    source_uri: Optional[str] = None
    servers: list[str] = Field(default_factory=list)
    endpoints: list[OpenApiEndpoint] = Field(default_factory=list)


class OpenApiEndpointDocument(BaseModel):
    """One markdown segment of an endpoint page."""

    endpoint: OpenApiEndpoint
    markdown: str
    segment_index: int = 1
    total_segments: int = 1


def endpoint_id(method: str, path: str) -> str:
    """``GET /pets/{id}`` becomes ``GET__pets__id``."""
    return f"{method.upper()}_{_ENDPOINT_ID_CHARS.sub('_', path)}".strip("_")


# Locating


class OpenApiSpecLocator:
    """Loads specification text from a URL, a local file or blob storage.

    Blob sources are written ``blob://container/name`` or ``container:name``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        storage: Optional[LocalBlobStorage] = None,
        retries: int = 2,
    ):
        self.client = client
        self.storage = storage or LocalBlobStorage()
        self.retries = retries

    async def locate(self, spec_source: str) -> OpenApiSpecDocument:
        source = spec_source.strip()
        if is_http_url(source):
            return OpenApiSpecDocument(source=source, content=await self._download(source), source_uri=source)

        path = Path(source).expanduser()
        if path.is_file():
            logger.info(f"Reading OpenAPI specification from file {path}")
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
            return OpenApiSpecDocument(source=source, content=content, source_uri=path.resolve().as_uri())

        blob = self._blob_location(source)
        if blob is not None:
            container, name = blob
            logger.info(f"Reading OpenAPI specification from blob {container}/{name}")
            content = await asyncio.to_thread(self.storage.read_blob, name, container)
            return OpenApiSpecDocument(source=source, content=content, source_uri=f"blob://{container}/{name}")

        raise FileNotFoundError(f"OpenAPI specification not found: {spec_source}")

    async def _download(self, url: str) -> str:
        logger.info(f"Downloading OpenAPI specification from {url}")
        async for attempt in retrying(self.retries + 1):
            with attempt:
                response = await self.client.get(url)
                response.raise_for_status()
                return response.text

    @staticmethod
    def _blob_location(source: str) -> Optional[tuple[str, str]]:
        if source.startswith("blob://"):
            parsed = urlparse(source)
            name = parsed.path.lstrip("/")
            return (parsed.netloc, name) if parsed.netloc and name else None
        if "://" not in source and ":" in source:
            container, _, name = source.partition(":")
            if container.strip() and name.strip():
                return container.strip(), name.strip().lstrip("/")
        return None


# Parsing


def _load(content: str) -> Any:
    text = content.lstrip("\ufeff").strip()
    if not text:
        raise OpenApiSpecError("Specification is empty")
    try:
        if text[0] in "{[":
            return orjson.loads(text)
        return yaml.safe_load(text)
    except (orjson.JSONDecodeError, yaml.YAMLError) as e:
        raise OpenApiSpecError(f"Specification could not be parsed: {e}") from e


def _pointer(root: dict[str, Any], ref: str) -> Any:
    node: Any = root
    for part in ref[2:].split("/"):
        part = part.replace("~1", "/").replace("~0", "~")
        if isinstance(node, dict) and part in node:
            node = node[part]
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            raise OpenApiSpecError(f"Unresolvable reference {ref}")
    return node


def resolve_refs(node: Any, root: dict[str, Any], chain: tuple[str, ...] = ()) -> Any:
    """Inline local ``$ref`` pointers; recursive references are left as they are."""
    if isinstance(node, list):
        return [resolve_refs(item, root, chain) for item in node]
    if not isinstance(node, dict):
        return node

    ref = node.get("$ref")
    if isinstance(ref, str) and ref.startswith("#/"):
        if ref in chain or len(chain) >= MAX_REF_DEPTH:
            return {"$ref": ref}
        target = resolve_refs(_pointer(root, ref), root, chain + (ref,))
        siblings = {k: v for k, v in node.items() if k != "$ref"}
        if siblings and isinstance(target, dict):
            return {**target, **resolve_refs(siblings, root, chain)}
        return target
    return {key: resolve_refs(value, root, chain) for key, value in node.items()}


def _security_names(requirements: Any) -> list[str]:
    names: list[str] = []
    for requirement in requirements or []:
        if not isinstance(requirement, dict):
            continue
        for name in requirement:
            if str(name) not in names:
                names.append(str(name))
    return names


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


class OpenApiSpecParser:
    """Reads OpenAPI 3 and Swagger 2.0 documents, in JSON or YAML, into endpoints."""

    def parse(self, document: OpenApiSpecDocument) -> OpenApiSpecification:
        raw = _load(document.content)
        if not isinstance(raw, dict) or not ("openapi" in raw or "swagger" in raw):
            raise OpenApiSpecError(f"{document.source} is not an OpenAPI or Swagger document")

        swagger2 = str(raw.get("swagger", "")).startswith("2")
        info = raw.get("info") if isinstance(raw.get("info"), dict) else {}
        servers = self._swagger_servers(raw) if swagger2 else self._servers(raw.get("servers"))
        global_security = raw.get("security")

        endpoints = []
        paths = raw.get("paths") if isinstance(raw.get("paths"), dict) else {}
        for path, path_item in paths.items():
            path_item = resolve_refs(path_item, raw)
            if not isinstance(path_item, dict):
                continue
            for method in HTTP_METHODS:
                operation = path_item.get(method)
                if not isinstance(operation, dict):
                    continue
                endpoints.append(
                    self._endpoint(str(path), method, path_item, operation, servers, global_security, swagger2, raw)
                )

        title = info.get("title")
        version = info.get("version")
        spec = OpenApiSpecification(
            title=str(title).strip() if title and str(title).strip() else DEFAULT_SPEC_TITLE,
            version=str(version).strip() if version is not None and str(version).strip() else DEFAULT_SPEC_VERSION,
            source=document.source,
            source_uri=document.source_uri,
            servers=servers,
            endpoints=endpoints,
        )
        logger.info(f"Parsed OpenAPI specification '{spec.title}' with {len(endpoints)} endpoints")
        return spec

    def _endpoint(
        self,
        path: str,
        method: str,
        path_item: dict[str, Any],
        operation: dict[str, Any],
        servers: list[str],
        global_security: Any,
        swagger2: bool,
        raw: dict[str, Any],
    ) -> OpenApiEndpoint:
        parameters = self._merge_parameters(path_item.get("parameters"), operation.get("parameters"))
        request_body = operation.get("requestBody") if isinstance(operation.get("requestBody"), dict) else None
        responses = operation.get("responses") if isinstance(operation.get("responses"), dict) else {}

        if swagger2:
            consumes = _string_list(operation.get("consumes") or raw.get("consumes")) or ["application/json"]
            produces = _string_list(operation.get("produces") or raw.get("produces")) or ["application/json"]
            body = next((p for p in parameters if p.get("in") == "body"), None)
            parameters = [p for p in parameters if p.get("in") != "body"]
            if body is not None:
                request_body = {
                    "description": body.get("description"),
                    "required": bool(body.get("required")),
                    "content": {consumes[0]: {"schema": body.get("schema", {})}},
                }
            responses = {
                code: self._swagger_response(response, produces[0]) for code, response in responses.items()
            }

        operation_servers = self._servers(operation.get("servers") or path_item.get("servers"))
        security = operation["security"] if "security" in operation else global_security
        return OpenApiEndpoint(
            id=endpoint_id(method, path),
            method=method.upper(),
            path=path,
            operation_id=operation.get("operationId"),
            summary=operation.get("summary") or path_item.get("summary"),
            description=operation.get("description") or path_item.get("description"),
            tags=_string_list(operation.get("tags")),
            parameters=parameters,
            request_body=request_body,
            responses={str(code): response for code, response in responses.items()},
            security=_security_names(security),
            servers=operation_servers or servers,
            deprecated=bool(operation.get("deprecated")),
        )

    @staticmethod
    def _merge_parameters(path_level: Any, operation_level: Any) -> list[dict[str, Any]]:
        """Operation parameters override path-level ones with the same name and location."""
        merged: dict[tuple[str, str], dict[str, Any]] = {}
        for parameter in list(path_level or []) + list(operation_level or []):
            if isinstance(parameter, dict) and parameter.get("name"):
                merged[(str(parameter["name"]), str(parameter.get("in", "")))] = parameter
        return list(merged.values())

    @staticmethod
    def _servers(servers: Any) -> list[str]:
        urls = []
        for server in servers or []:
            if isinstance(server, dict) and server.get("url"):
                urls.append(str(server["url"]))
        return urls

    @staticmethod
    def _swagger_servers(raw: dict[str, Any]) -> list[str]:
        host = raw.get("host")
        if not host:
            return []
        base_path = raw.get("basePath") or ""
        schemes = _string_list(raw.get("schemes")) or ["https"]
        return [f"{scheme}://{host}{base_path}" for scheme in schemes]

    @staticmethod
    def _swagger_response(response: Any, media_type: str) -> Any:
        if not isinstance(response, dict) or "schema" not in response:
            return response
        converted = {k: v for k, v in response.items() if k != "schema"}
        converted["content"] = {media_type: {"schema": response["schema"]}}
        return converted


# Markdown


def _json_block(value: Any) -> str:
    return "```json\n" + orjson.dumps(value, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS).decode() + "\n```"


def _cell(value: Any) -> str:
    return str(value if value is not None else "").replace("|", "\\|").replace("\n", " ").strip()


def _parameter_type(parameter: dict[str, Any]) -> str:
    schema = parameter.get("schema") if isinstance(parameter.get("schema"), dict) else {}
    kind = schema.get("type") or parameter.get("type") or "string"
    items = schema.get("items") or parameter.get("items")
    if kind == "array" and isinstance(items, dict) and items.get("type"):
        return f"array[{items['type']}]"
    return str(kind)


def _example(media: dict[str, Any]) -> Any:
    if "example" in media:
        return media["example"]
    examples = media.get("examples")
    if isinstance(examples, dict):
        for example in examples.values():
            if isinstance(example, dict) and "value" in example:
                return example["value"]
    return None


def generate_markdown(spec: OpenApiSpecification, endpoint: OpenApiEndpoint) -> str:
    """Render one endpoint as a markdown page with YAML frontmatter."""
    front_matter = {
        "title": f"{endpoint.method} {endpoint.path}",
        "operationId": endpoint.operation_id,
        "method": endpoint.method,
        "path": endpoint.path,
        "sourceType": "openapi",
        "tags": endpoint.tags,
        "version": spec.version,
        "source": spec.source_uri or spec.source,
        "specTitle": spec.title,
        "security": endpoint.security,
    }
    front_matter = {k: v for k, v in front_matter.items() if v not in (None, [])}
    lines = ["---", yaml.safe_dump(front_matter, sort_keys=False, allow_unicode=True).rstrip(), "---", ""]

    lines += [f"# {endpoint.method} {endpoint.path}", ""]
    if endpoint.summary:
        lines += [f"**Summary:** {endpoint.summary}", ""]
    if endpoint.deprecated:
        lines += ["**Deprecated:** this operation is deprecated.", ""]
    if endpoint.description:
        lines += ["## Description", "", endpoint.description.strip(), ""]

    if endpoint.servers:
        lines += ["## Servers", ""] + [f"- {url}" for url in endpoint.servers] + [""]

    if endpoint.parameters:
        lines += [
            "## Parameters",
            "",
            "| Name | In | Type | Required | Description |",
            "|------|----|------|----------|-------------|",
        ]
        for parameter in endpoint.parameters:
            required = "Yes" if parameter.get("required") else "No"
            lines.append(
                f"| {_cell(parameter.get('name'))} | {_cell(parameter.get('in'))} | "
                f"{_cell(_parameter_type(parameter))} | {required} | {_cell(parameter.get('description'))} |"
            )
        lines.append("")

    body = endpoint.request_body
    if body:
        lines += ["## Request Body", ""]
        if body.get("description"):
            lines += [str(body["description"]).strip(), ""]
        lines += [f"**Required:** {'Yes' if body.get('required') else 'No'}", ""]
        for media_type, media in (body.get("content") or {}).items():
            lines += [f"**Content-Type:** `{media_type}`", ""]
            if not isinstance(media, dict):
                continue
            if media.get("schema"):
                lines += ["### Schema", "", _json_block(media["schema"]), ""]
            example = _example(media)
            if example is not None:
                lines += ["### Example", "", _json_block(example), ""]

    if endpoint.responses:
        lines += ["## Responses", ""]
        for code, response in endpoint.responses.items():
            response = response if isinstance(response, dict) else {}
            description = str(response.get("description") or "").strip()
            lines += [f"### {code} - {description}" if description else f"### {code}", ""]
            for media_type, media in (response.get("content") or {}).items():
                if isinstance(media, dict) and media.get("schema"):
                    lines += [f"**Content-Type:** `{media_type}`", ""]
                    lines += ["#### Schema", "", _json_block(media["schema"]), ""]

    if endpoint.security:
        lines += ["## Security", ""] + [f"- {name}" for name in endpoint.security] + [""]

    return "\n".join(lines).rstrip() + "\n"


# Splitting


def _slice_by_length(text: str, max_length: int) -> list[str]:
    """Cut at line boundaries where possible, otherwise every ``max_length`` characters."""
    pieces: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if current and len(line) <= max_length < len(current) + len(line):
            pieces.append(current)
            current = ""
        current += line
        while len(current) > max_length:
            pieces.append(current[:max_length])
            current = current[max_length:]
    if current:
        pieces.append(current)
    return pieces


def split_markdown(markdown: str, max_length: int) -> list[str]:
    """Split an endpoint page into segments of at most ``max_length`` characters.

    Sections start at ``##`` headings and are packed greedily; a section longer
    than ``max_length`` on its own is cut by length.
    """
    if max_length <= 0:
        raise ValueError("max_length must be greater than zero")
    if len(markdown) <= max_length:
        return [markdown]

    # A heading without body text stays with the section that follows it
    sections: list[str] = []
    body_seen = False
    for line in markdown.splitlines(keepends=True):
        if not sections or (line.startswith("##") and body_seen):
            sections.append(line)
            body_seen = False
        else:
            sections[-1] += line
        if line.strip() and not line.startswith("#"):
            body_seen = True

    segments: list[str] = []
    current = ""
    for section in sections:
        if len(section) > max_length:
            if current:
                segments.append(current)
                current = ""
            segments.extend(_slice_by_length(section, max_length))
        elif len(current) + len(section) > max_length:
            segments.append(current)
            current = section
        else:
            current += section
    if current:
        segments.append(current)
    return [segment for segment in segments if segment.strip()]


def split_endpoint(endpoint: OpenApiEndpoint, markdown: str, max_length: int) -> list[OpenApiEndpointDocument]:
    segments = split_markdown(markdown, max_length)
    if len(segments) > 1:
        logger.info(
            f"Split markdown for {endpoint.method} {endpoint.path} into {len(segments)} segments "
            f"(length {len(markdown)})"
        )
    return [
        OpenApiEndpointDocument(endpoint=endpoint, markdown=segment, segment_index=i, total_segments=len(segments))
        for i, segment in enumerate(segments, start=1)
    ]
