"""Tests for the sitemap tree walk."""

import asyncio

import pytest

from conftest import FakeSitemapFetcher, make_context, sitemap_index, urlset
from knowledge_ingest.core.config import SitemapOptions
from knowledge_ingest.core.errors import CrawlConfigurationError
from knowledge_ingest.ingestion.crawler import SitemapCrawler

ROOT = "https://example.com/sitemap.xml"


def discover(documents, **overrides):
    fetcher = FakeSitemapFetcher(documents)
    crawler = SitemapCrawler(fetcher)
    result = asyncio.run(crawler.discover(make_context(ROOT, **overrides)))
    return result, fetcher


def test_urlset_root():
    """A plain urlset root yields all its entries."""
    result, fetcher = discover({ROOT: urlset("https://example.com/a", "https://example.com/b")})

    assert sorted(e.location for e in result.entries) == ["https://example.com/a", "https://example.com/b"]
    assert result.total_discovered == 2
    assert result.total_filtered == 0
    assert result.sitemaps_fetched == 1
    assert fetcher.calls == [ROOT]


def test_cycles_are_fetched_once():
    """Sitemaps reachable through several paths are fetched only once."""
    documents = {
        ROOT: sitemap_index("https://example.com/a.xml", "https://example.com/b.xml"),
        "https://example.com/a.xml": urlset("https://example.com/1", "https://example.com/2"),
        "https://example.com/b.xml": sitemap_index(ROOT, "https://example.com/a.xml"),
    }

    result, fetcher = discover(documents, max_depth=5)

    assert sorted(fetcher.calls) == sorted(documents)
    assert sorted(e.location for e in result.entries) == ["https://example.com/1", "https://example.com/2"]


def test_depth_limit():
    """Child sitemaps deeper than max_depth are not fetched."""
    documents = {
        ROOT: sitemap_index("https://example.com/level1.xml"),
        "https://example.com/level1.xml": sitemap_index("https://example.com/level2.xml"),
        "https://example.com/level2.xml": urlset("https://example.com/deep"),
    }

    shallow, shallow_fetcher = discover(documents, max_depth=1)
    deep, _ = discover(documents, max_depth=2)
    root_only, root_fetcher = discover(documents, max_depth=0)

    assert shallow.entries == []
    assert shallow_fetcher.calls == [ROOT, "https://example.com/level1.xml"]
    assert [e.location for e in deep.entries] == ["https://example.com/deep"]
    assert root_fetcher.calls == [ROOT]
    assert root_only.entries == []


def test_max_pages_caps_selection():
    """No more than max_pages entries are selected."""
    locations = [f"https://example.com/page-{i}" for i in range(10)]

    result, _ = discover({ROOT: urlset(*locations)}, max_pages=3)

    assert len(result.entries) == 3
    assert result.total_discovered == 3


def test_filtered_entries_do_not_count_toward_max_pages():
    """Rejected entries are counted as filtered and leave room for accepted ones."""
    locations = [
        "https://elsewhere.example.net/x",
        "https://example.com/1",
        "https://elsewhere.example.net/y",
        "https://example.com/2",
        "https://example.com/3",
    ]

    result, _ = discover({ROOT: urlset(*locations)}, max_pages=3)

    assert sorted(e.location for e in result.entries) == [
        "https://example.com/1",
        "https://example.com/2",
        "https://example.com/3",
    ]
    assert result.total_filtered == 2
    assert result.total_discovered == 5


def test_duplicate_entries_are_selected_once():
    """A URL listed by two sitemaps is selected once."""
    documents = {
        ROOT: sitemap_index("https://example.com/a.xml", "https://example.com/b.xml"),
        "https://example.com/a.xml": urlset("https://example.com/shared", "https://example.com/a"),
        "https://example.com/b.xml": urlset("https://example.com/shared", "https://example.com/b"),
    }

    result, _ = discover(documents)

    locations = [e.location for e in result.entries]
    assert sorted(locations) == ["https://example.com/a", "https://example.com/b", "https://example.com/shared"]


def test_child_failure_is_isolated():
    """A failing child sitemap is recorded while its siblings are still walked."""
    documents = {
        ROOT: sitemap_index("https://example.com/missing.xml", "https://example.com/ok.xml"),
        "https://example.com/ok.xml": urlset("https://example.com/page"),
    }

    result, _ = discover(documents)

    assert [e.location for e in result.entries] == ["https://example.com/page"]
    assert not result.root_failed
    assert len(result.errors) == 1
    assert result.errors[0].startswith("https://example.com/missing.xml")


def test_root_failure():
    """A failing root sitemap is flagged and yields no entries."""
    result, _ = discover({})

    assert result.root_failed
    assert result.entries == []
    assert result.sitemaps_fetched == 1


def test_sitemap_document_limit():
    """At most max_sitemap_documents sitemaps are fetched."""
    children = [f"https://example.com/s{i}.xml" for i in range(5)]
    documents = {ROOT: sitemap_index(*children)}
    documents.update({child: urlset(f"{child}/page") for child in children})
    fetcher = FakeSitemapFetcher(documents)
    options = SitemapOptions(max_sitemap_documents=3)

    result = asyncio.run(SitemapCrawler(fetcher).discover(make_context(ROOT, options=options)))

    assert len(fetcher.calls) == 3
    assert result.sitemaps_fetched == 3


def test_entries_are_prioritized():
    """Selected entries come back highest heuristic score first."""
    content = """<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
      <url><loc>https://example.com/yearly</loc><changefreq>yearly</changefreq></url>
      <url><loc>https://example.com/hourly</loc><changefreq>hourly</changefreq></url>
      <url><loc>https://example.com/monthly</loc><changefreq>monthly</changefreq></url>
    </urlset>"""

    result, _ = discover({ROOT: content})

    assert [e.location for e in result.entries] == [
        "https://example.com/hourly",
        "https://example.com/monthly",
        "https://example.com/yearly",
    ]
    scores = [e.heuristic_score for e in result.entries]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.parametrize("root", ["ftp://example.com/sitemap.xml", "/sitemap.xml", "not a url"])
def test_invalid_root_is_a_configuration_error(root):
    """The root sitemap must be an absolute http(s) URL."""
    crawler = SitemapCrawler(FakeSitemapFetcher({}))

    with pytest.raises(CrawlConfigurationError):
        asyncio.run(crawler.discover(make_context(root)))


class CancellingFetcher(FakeSitemapFetcher):
    """Sets the cancel event on the given call, optionally hanging afterwards."""

    def __init__(self, documents, cancel_event, on_call=1, hang=False):
        super().__init__(documents)
        self.cancel_event = cancel_event
        self.on_call = on_call
        self.hang = hang

    async def fetch(self, sitemap_url):
        result = await super().fetch(sitemap_url)
        if len(self.calls) == self.on_call:
            self.cancel_event.set()
            if self.hang:
                await asyncio.sleep(10)
        return result


def index_with_children(count):
    children = [f"https://example.com/s{i}.xml" for i in range(count)]
    documents = {ROOT: sitemap_index(*children)}
    documents.update({child: urlset(f"{child}/page") for child in children})
    return documents


def test_cancel_during_discovery_stops_fetching():
    """Once cancelled, no further child sitemaps are fetched."""

    async def run():
        cancel_event = asyncio.Event()
        fetcher = CancellingFetcher(index_with_children(20), cancel_event)
        result = await SitemapCrawler(fetcher).discover(make_context(ROOT), cancel_event)
        return result, fetcher

    result, fetcher = asyncio.run(run())

    assert fetcher.calls == [ROOT]
    assert result.cancelled
    assert result.errors == []
    assert result.entries == []
    assert not result.root_failed


def test_cancel_abandons_fetch_in_flight():
    """A fetch still running when the event is set is abandoned."""

    async def run():
        cancel_event = asyncio.Event()
        fetcher = CancellingFetcher(index_with_children(5), cancel_event, on_call=2, hang=True)
        result = await asyncio.wait_for(SitemapCrawler(fetcher).discover(make_context(ROOT), cancel_event), 5)
        return result, fetcher

    result, fetcher = asyncio.run(run())

    assert len(fetcher.calls) == 2
    assert result.cancelled
    assert result.sitemaps_fetched == 2
    assert result.entries == []


def test_pre_set_cancel_fetches_nothing():
    """A crawl that starts cancelled fetches nothing."""

    async def run():
        cancel_event = asyncio.Event()
        cancel_event.set()
        fetcher = FakeSitemapFetcher({ROOT: urlset("https://example.com/a")})
        result = await SitemapCrawler(fetcher).discover(make_context(ROOT), cancel_event)
        return result, fetcher

    result, fetcher = asyncio.run(run())

    assert fetcher.calls == []
    assert result.cancelled
    assert result.sitemaps_fetched == 0
    assert not result.root_failed
