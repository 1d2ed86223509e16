"""Tests for robots.txt rules, the robots cache and the URL filter policy."""

import asyncio

import httpx
import pytest

from conftest import make_context
from knowledge_ingest.core.errors import CrawlConfigurationError
from knowledge_ingest.ingestion.models import IngestionMetadata, SitemapEntry
from knowledge_ingest.ingestion.robots import (
    RobotsCache,
    RobotsRules,
    SitemapUrlFilterPolicy,
    resolve_allowed_hosts,
)

ROBOTS_TXT = """
# Example robots.txt
User-agent: *
Disallow: /private/
Allow: /private/public/
Disallow: /*.pdf$

User-agent: KnowledgeIngestBot
User-agent: OtherBot
Disallow: /bot-only/
"""


def test_rules_for_wildcard_group():
    """Unknown agents follow the '*' group; the longest rule wins."""
    rules = RobotsRules.parse(ROBOTS_TXT, "SomeCrawler/2.0")

    assert rules.is_allowed("https://example.com/")
    assert not rules.is_allowed("https://example.com/private/notes")
    assert rules.is_allowed("https://example.com/private/public/notes")
    assert not rules.is_allowed("https://example.com/files/report.pdf")
    assert rules.is_allowed("https://example.com/files/report.pdf.html")


def test_rules_for_named_group():
    """A group naming our product token replaces the '*' group."""
    rules = RobotsRules.parse(ROBOTS_TXT, "KnowledgeIngestBot/1.0 (+https://example.com/bot)")

    assert rules.is_allowed("https://example.com/private/notes")
    assert not rules.is_allowed("https://example.com/bot-only/page")


def test_allow_wins_ties():
    """Equally long Allow and Disallow rules resolve to allowed."""
    rules = RobotsRules.parse("User-agent: *\nDisallow: /page\nAllow: /page\n", "Bot")
    assert rules.is_allowed("https://example.com/page")


def test_empty_disallow_allows_everything():
    """An empty Disallow value does not block anything."""
    rules = RobotsRules.parse("User-agent: *\nDisallow:\n", "Bot")
    assert rules.is_allowed("https://example.com/anything")


def run_cache(handler, urls, retries=0):
    calls = []

    def counting(request):
        calls.append(str(request.url))
        return handler(request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(counting)) as client:
            cache = RobotsCache(client, "KnowledgeIngestBot/1.0", retries=retries)
            return await asyncio.gather(*(cache.is_allowed(url) for url in urls))

    return asyncio.run(run()), calls


def test_cache_fetches_each_host_once():
    """Concurrent lookups for one host share a single robots.txt fetch."""
    urls = [f"https://example.com/private/{i}" for i in range(5)] + ["https://other.example.org/a"]

    allowed, calls = run_cache(lambda request: httpx.Response(200, text="User-agent: *\nDisallow: /private/"), urls)

    assert allowed == [False] * 5 + [True]
    assert sorted(calls) == ["https://example.com/robots.txt", "https://other.example.org/robots.txt"]


def test_cache_missing_robots_allows_all():
    """A 404 robots.txt allows everything."""
    allowed, _ = run_cache(lambda request: httpx.Response(404), ["https://example.com/private/x"])
    assert allowed == [True]


def test_cache_unreachable_robots_allows_all():
    """Transport failures fetching robots.txt allow everything."""

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    allowed, calls = run_cache(handler, ["https://example.com/x"])

    assert allowed == [True]
    assert len(calls) == 1


class StaticRobotsCache:
    """Robots cache stand-in with fixed rules for every host."""

    def __init__(self, rules: RobotsRules):
        self.rules = rules

    async def is_allowed(self, url: str) -> bool:
        return self.rules.is_allowed(url)


def should_include(url, context):
    return asyncio.run(SitemapUrlFilterPolicy().should_include(SitemapEntry(location=url), context))


def test_policy_allows_root_host_by_default():
    """Without an allowlist only the root sitemap's host is accepted."""
    context = make_context()

    assert should_include("https://example.com/page", context)
    assert should_include("https://EXAMPLE.com/page", context)
    assert not should_include("https://evil.example.net/page", context)
    assert not should_include("https://sub.example.com/page", context)


def test_policy_rejects_non_http_urls():
    """Only absolute http(s) URLs pass."""
    context = make_context()

    assert not should_include("ftp://example.com/file", context)
    assert not should_include("/relative/path", context)


def test_policy_explicit_allowlist():
    """Explicit allowed hosts replace the defaults and are normalized."""
    context = make_context(allowed_hosts=("https://Docs.Example.com/guide", "blog.example.com:443"))

    assert resolve_allowed_hosts(context) == ("docs.example.com", "blog.example.com")
    assert should_include("https://docs.example.com/a", context)
    assert should_include("https://blog.example.com/b", context)
    assert not should_include("https://example.com/c", context)


def test_policy_uses_metadata_source_host():
    """The metadata source URI's host is used before the root sitemap host."""
    context = make_context(metadata=IngestionMetadata(source_uri="https://www.example.com/"))

    assert resolve_allowed_hosts(context) == ("www.example.com",)
    assert should_include("https://www.example.com/a", context)
    assert not should_include("https://example.com/a", context)


def test_policy_applies_robots_rules():
    """With robots checks on, disallowed URLs are rejected."""
    rules = RobotsRules.parse("User-agent: *\nDisallow: /private/", "Bot")
    context = make_context(robots_cache=StaticRobotsCache(rules), respect_robots_txt=True)

    assert should_include("https://example.com/public", context)
    assert not should_include("https://example.com/private/x", context)


def test_policy_skips_robots_when_disabled():
    """With robots checks off no cache is consulted."""
    context = make_context(respect_robots_txt=False)
    assert should_include("https://example.com/private/x", context)


def test_policy_requires_cache_when_robots_enabled():
    """Robots checks without a cache are a configuration error."""
    context = make_context(respect_robots_txt=True)

    with pytest.raises(CrawlConfigurationError):
        should_include("https://example.com/page", context)
