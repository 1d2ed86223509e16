"""Application constants."""

import re

# Chunking defaults
DEFAULT_CHUNK_MIN = 200
DEFAULT_CHUNK_TARGET = 400
DEFAULT_CHUNK_MAX = 500
DEFAULT_OVERLAP_RATIO = 0.1
CHARS_PER_TOKEN = 4
SEGMENT_SEPARATOR = "\n\n"
UNTITLED_SECTION = "Untitled"

# Sitemap change frequencies
CHANGE_FREQUENCY_WEIGHTS = {
    "always": 1.0,
    "hourly": 0.95,
    "daily": 0.85,
    "weekly": 0.7,
    "monthly": 0.5,
    "yearly": 0.25,
    "never": 0.1,
}
NEUTRAL_HEURISTIC_SCORE = 0.5

# Content scoring patterns (class/id)
NEGATIVE_CLASS_PATTERN = re.compile(
    r"combx|comment|community|disqus|menu|remark|rss|shoutbox|sidebar|nav|"
    r"sponsor|ad-break|ad-wrapper|advertisement|banner|breadcrumb|"
    r"agegate|pagination|pager|popup|promo|share|social|"
    r"cookie|gdpr|newsletter|subscribe|related-posts|recommended|"
    r"hidden|invisible|hide|removed",
    re.IGNORECASE,
)
POSITIVE_CLASS_PATTERN = re.compile(
    r"article|body|content|entry|hentry|h-entry|main|page|post|text|blog|story|prose",
    re.IGNORECASE,
)

# HTML chrome that is always stripped before conversion
STRUCTURAL_TAGS_TO_STRIP = ("script", "style", "noscript", "nav")
CHROME_CLASS_NAMES = (
    "navigation",
    "navbar",
    "nav-bar",
    "sidebar",
    "side-bar",
    "breadcrumb",
    "breadcrumbs",
    "menu",
    "nav-menu",
)

# Bulk ingestion
MARKDOWN_EXTENSIONS = (".md", ".markdown")
HTML_EXTENSIONS = (".html", ".htm")

# Source types
SOURCE_TYPE_WEBPAGE = "webpage"
SOURCE_TYPE_HTML = "html"
SOURCE_TYPE_MARKDOWN = "markdown"
SOURCE_TYPE_BLOB = "blob"
SOURCE_TYPE_SITEMAP = "sitemap"
SOURCE_TYPE_OPENAPI = "openapi"
