"""robots.txt rules, a per-crawl cache and the sitemap URL filter policy."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

import httpx

from knowledge_ingest.core.errors import CrawlConfigurationError
from knowledge_ingest.core.utils import host_of, is_http_url
from knowledge_ingest.ingestion.models import SitemapEntry, SitemapIngestionContext
from knowledge_ingest.ingestion.scraper import is_retryable_status, retrying

logger = logging.getLogger(__name__)


def _agent_token(user_agent: str) -> str:
    """Product token of a User-Agent string ("Bot/1.0 (+url)" -> "bot")."""
    return re.split(r"[/\s]", user_agent.strip(), maxsplit=1)[0].lower() if user_agent else "*"


def _compile_rule(rule: str) -> re.Pattern:
    anchored = rule.endswith("$")
    body = rule[:-1] if anchored else rule
    pattern = ".*".join(re.escape(part) for part in body.split("*"))
    return re.compile(pattern + ("$" if anchored else ""))


@dataclass(frozen=True)
class RobotsRules:
    """Allow/Disallow rules for one user agent group."""

    allow: tuple[str, ...] = ()
    disallow: tuple[str, ...] = ()
    _compiled: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def allow_all(cls) -> "RobotsRules":
        return cls()

    @classmethod
    def parse(cls, content: str, user_agent: str) -> "RobotsRules":
        """Rules of the group naming our agent token, else the '*' group."""
        groups: dict[str, tuple[list[str], list[str]]] = {}
        agents: list[str] = []
        allow: list[str] = []
        disallow: list[str] = []
        in_rules = False

        def commit() -> None:
            for agent in agents:
                existing = groups.setdefault(agent, ([], []))
                existing[0].extend(allow)
                existing[1].extend(disallow)

        for raw_line in content.splitlines():
            line = raw_line.split("#", 1)[0].strip()
            if ":" not in line:
                continue
            directive, value = (part.strip() for part in line.split(":", 1))
            directive = directive.lower()

            if directive == "user-agent":
                # Consecutive user-agent lines share one group
                if in_rules:
                    commit()
                    agents, allow, disallow = [], [], []
                    in_rules = False
                agents.append(value.lower())
            elif directive == "allow":
                in_rules = True
                if value:
                    allow.append(value)
            elif directive == "disallow":
                in_rules = True
                if value:
                    disallow.append(value)
        commit()

        token = _agent_token(user_agent)
        selected = groups.get(token) or groups.get("*")
        if not selected:
            return cls.allow_all()
        return cls(allow=tuple(selected[0]), disallow=tuple(selected[1]))

    def _matches(self, rule: str, path: str) -> bool:
        compiled = self._compiled.get(rule)
        if compiled is None:
            compiled = self._compiled[rule] = _compile_rule(rule)
        return compiled.match(path) is not None

    def is_allowed(self, url: str) -> bool:
        """Longest matching rule wins; Allow wins ties."""
        if not self.disallow:
            return True
        parsed = urlparse(url)
        path = (parsed.path or "/") + (f"?{parsed.query}" if parsed.query else "")

        longest_allow = max((len(r) for r in self.allow if self._matches(r, path)), default=-1)
        longest_disallow = max((len(r) for r in self.disallow if self._matches(r, path)), default=-1)
        return longest_disallow <= longest_allow


class RobotsCache:
    """Per-host robots.txt rules shared by the concurrent items of one crawl.

    The first lookup for a host starts the fetch; concurrent lookups await the
    same task, so each host is fetched at most once. Unreachable or non-2xx
    robots.txt files allow everything.
    """

    def __init__(self, client: httpx.AsyncClient, user_agent: str, retries: int = 1):
        self.client = client
        self.user_agent = user_agent
        self.retries = retries
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    async def get_rules(self, url: str) -> RobotsRules:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}".lower()
        async with self._lock:
            task = self._tasks.get(origin)
            if task is None:
                task = asyncio.ensure_future(self._fetch(origin))
                self._tasks[origin] = task
        # One cancelled waiter must not cancel the shared fetch
        return await asyncio.shield(task)

    async def is_allowed(self, url: str) -> bool:
        rules = await self.get_rules(url)
        return rules.is_allowed(url)

    async def _fetch(self, origin: str) -> RobotsRules:
        robots_url = f"{origin}/robots.txt"
        try:
            async for attempt in retrying(self.retries):
                with attempt:
                    response = await self.client.get(robots_url)
                    if is_retryable_status(response.status_code):
                        response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug(f"Failed to download robots.txt for {origin}, assuming allow: {e}")
            return RobotsRules.allow_all()

        if not response.is_success:
            logger.debug(f"robots.txt for {origin} returned {response.status_code}, treating as allow all")
            return RobotsRules.allow_all()

        logger.debug(f"Fetched robots.txt for {origin}")
        return RobotsRules.parse(response.text, self.user_agent)


def _normalize_host(value: str) -> str:
    value = value.strip().lower()
    return host_of(value) if "://" in value else value.split("/", 1)[0].split(":", 1)[0]


def resolve_allowed_hosts(context: SitemapIngestionContext) -> tuple[str, ...]:
    """Explicit allowlist, else the metadata source host, else the root sitemap host."""
    explicit = tuple(h for h in (_normalize_host(h) for h in context.settings.allowed_hosts) if h)
    if explicit:
        return explicit
    source_uri = context.metadata.source_uri
    if source_uri and host_of(source_uri):
        return (host_of(source_uri),)
    root_host = host_of(context.root_sitemap)
    return (root_host,) if root_host else ()


class SitemapUrlFilterPolicy:
    """Decides whether a sitemap entry may be ingested.

    Both gates must pass: the entry's host is on the allowlist, and
    robots.txt does not disallow it (unless robots checks are off for the run).
    """

    async def should_include(self, entry: SitemapEntry, context: SitemapIngestionContext) -> bool:
        url = entry.location
        if not is_http_url(url):
            logger.debug(f"Skipping {url} because non-http(s) scheme was detected")
            return False

        host = host_of(url)
        if host not in resolve_allowed_hosts(context):
            logger.debug(f"Skipping {url} because host {host} is not within allowed hosts")
            return False

        if not context.respect_robots_txt:
            return True

        cache: Optional[RobotsCache] = context.robots_cache
        if cache is None:
            raise CrawlConfigurationError("robots.txt checks are enabled but no robots cache was provided")

        allowed = await cache.is_allowed(url)
        if not allowed:
            logger.debug(f"robots.txt disallowed {url}")
        return allowed
