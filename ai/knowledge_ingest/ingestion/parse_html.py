"""HTML cleanup, main-content selection and markdown conversion."""

import logging
import re
from typing import Any, Optional

import html2text
import yaml
from bs4 import BeautifulSoup, Comment, Tag
from readability import Document

from knowledge_ingest.core.config import HtmlExtractionOptions, settings
from knowledge_ingest.core.constants import (
    CHROME_CLASS_NAMES,
    SOURCE_TYPE_WEBPAGE,
    STRUCTURAL_TAGS_TO_STRIP,
)
from knowledge_ingest.core.utils import format_iso8601, normalize_text
from knowledge_ingest.ingestion.content_scorer import ContentScorer
from knowledge_ingest.ingestion.models import ScrapedPage

logger = logging.getLogger(__name__)

FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
CANDIDATE_TAGS = ["article", "main", "section", "div", "td", "pre"]
MIN_ASIDE_TEXT = 100


def _inside_content(node: Tag) -> bool:
    """Whether the node sits inside <article>, <main> or role=main."""
    for parent in node.parents:
        if parent.name in ("article", "main"):
            return True
        if isinstance(parent, Tag) and (parent.get("role") or "").lower() == "main":
            return True
    return False


def _remove(node: Tag) -> None:
    if not node.decomposed:
        node.decompose()


def extract_metadata(soup: BeautifulSoup) -> dict[str, str]:
    """Collect <meta name=...> values and og:title."""
    metadata: dict[str, str] = {}
    for meta in soup.find_all("meta", attrs={"name": True}):
        name = (meta.get("name") or "").strip()
        content = (meta.get("content") or "").strip()
        if name and content:
            metadata[name] = content

    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title and (og_title.get("content") or "").strip():
        metadata["og:title"] = og_title["content"].strip()
    return metadata


def extract_title(soup: BeautifulSoup, metadata: Optional[dict[str, str]] = None) -> str:
    """Extract page title from metadata, <title> or the first <h1>."""
    metadata = metadata or {}
    for key in ("og:title", "title"):
        if metadata.get(key, "").strip():
            return metadata[key].strip()

    title_tag = soup.find("title")
    if title_tag and normalize_text(title_tag.get_text()):
        return normalize_text(title_tag.get_text())

    h1 = soup.find("h1")
    if h1 and normalize_text(h1.get_text()):
        return normalize_text(h1.get_text())
    return "Untitled"


def normalize_html(html: str) -> tuple[BeautifulSoup, dict[str, str]]:
    """Strip page chrome and collect metadata.

    Removes scripts, styles and <nav>, comments, page-level <header> (unless it
    holds headings) and <footer>, short <aside>s and elements carrying an exact
    chrome class name. Headers and footers inside article content are kept.
    """
    soup = BeautifulSoup(html or "", "lxml")
    original_length = len(str(soup))
    metadata = extract_metadata(soup)

    for tag in soup.find_all(list(STRUCTURAL_TAGS_TO_STRIP)):
        _remove(tag)

    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for header in soup.find_all("header"):
        if not header.decomposed and not _inside_content(header) and not header.find(HEADING_TAGS):
            _remove(header)

    for footer in soup.find_all("footer"):
        if not _inside_content(footer):
            _remove(footer)

    for aside in soup.find_all("aside"):
        if not aside.decomposed and len(aside.get_text().strip()) < MIN_ASIDE_TEXT:
            _remove(aside)

    for node in soup.find_all(class_=lambda c: c in CHROME_CLASS_NAMES):
        _remove(node)

    normalized_length = len(str(soup))
    logger.debug(f"HTML normalization: {original_length} -> {normalized_length} chars")
    if normalized_length < 100:
        logger.warning(
            f"HTML normalization left very little content ({normalized_length} chars, "
            f"originally {original_length})"
        )
    return soup, metadata


def select_main_content(
    soup: BeautifulSoup,
    scorer: Optional[ContentScorer] = None,
    options: Optional[HtmlExtractionOptions] = None,
) -> Tag:
    """Pick the subtree most likely to be the article body.

    The best-scoring candidate wins when its confidence clears the threshold;
    otherwise readability's summary is used, and finally the whole body.
    """
    scorer = scorer or ContentScorer()
    options = options or settings.html

    candidates = soup.find_all(CANDIDATE_TAGS) + soup.find_all(attrs={"role": "main"})
    best: Optional[Tag] = None
    best_score = float("-inf")
    for candidate in candidates:
        if len(candidate.get_text().strip()) < options.min_text_length:
            continue
        if scorer.calculate_link_density(candidate) > options.max_link_density:
            continue
        score = scorer.calculate_score(candidate)
        if score > best_score:
            best, best_score = candidate, score

    if best is not None and scorer.get_confidence_score(best) >= options.min_confidence:
        logger.debug(f"Selected <{best.name}> as main content (score={best_score:.1f})")
        return best

    try:
        summary = Document(str(soup)).summary(html_partial=True)
        summary_soup = BeautifulSoup(summary, "lxml")
        if summary_soup.get_text().strip():
            logger.debug("Using readability summary as main content")
            return summary_soup.body or summary_soup
    except Exception as e:
        logger.warning(f"Readability extraction failed: {e}")

    return soup.body or soup


def html_to_markdown(html: str) -> str:
    """Convert an HTML fragment to markdown."""
    converter = html2text.HTML2Text()
    converter.body_width = 0
    converter.ignore_links = False
    converter.ignore_images = True
    converter.ignore_emphasis = False
    converter.ignore_tables = False
    converter.skip_internal_links = True
    return converter.handle(html).strip()


def build_frontmatter(page: ScrapedPage, source_type: str = SOURCE_TYPE_WEBPAGE) -> str:
    """YAML frontmatter describing a scraped page."""
    data: dict[str, Any] = {
        "title": page.title,
        "url": page.url,
        "sourceType": source_type,
        "scrapedAt": format_iso8601(page.scraped_at),
    }
    for key in ("description", "author"):
        if page.metadata.get(key):
            data[key] = page.metadata[key]
    if page.metadata.get("keywords"):
        data["keywords"] = [k.strip() for k in page.metadata["keywords"].split(",") if k.strip()]
    for key, value in page.metadata.items():
        data.setdefault(key, value)

    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def convert_to_markdown(page: ScrapedPage, source_type: str = SOURCE_TYPE_WEBPAGE) -> str:
    """Render a cleaned page as markdown with YAML frontmatter."""
    body = html_to_markdown(page.html_content)
    logger.info(f"Converted {page.url} to markdown ({len(body)} chars)")
    return f"---\n{build_frontmatter(page, source_type)}---\n\n{body}"


def split_frontmatter(markdown: str) -> tuple[Optional[dict[str, Any]], str]:
    """Separate leading YAML frontmatter from the body."""
    match = FRONTMATTER_RE.match(markdown or "")
    if not match:
        return None, markdown
    try:
        front_matter = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse YAML frontmatter: {e}")
        return None, markdown
    if not isinstance(front_matter, dict):
        return None, markdown
    return front_matter, markdown[match.end():].lstrip()


def parse_frontmatter(markdown: str) -> Optional[dict[str, Any]]:
    """Frontmatter key/value map, or None when absent or malformed."""
    return split_frontmatter(markdown)[0]
