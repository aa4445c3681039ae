"""Keyword tables for content-sniffing dump categorization.

Kept in a standalone module so config.py can validate overrides without
importing the classifier.
"""

# Checked in this order; first category with any hit wins.
DEFAULT_CATEGORY_KEYWORDS: dict[str, list[str]] = {
    "query": ["select ", "insert ", "update ", "delete ", "query", "sql"],
    "request": ["request", "response", "http", "$_get", "$_post", "headers"],
    "job": ["job", "queue", "dispatch", "worker"],
    "view": ["view", "template", "blade", "twig"],
    "log": ["log", "error", "exception", "warning"],
}

# Marker comment the launcher script prepends to each dump.
SOURCE_INFO_RE = r"<!--\s*SOURCE_INFO:\s*([^>]+?)\s*-->"
SOURCE_TEXT_RE = r"^(.+?)\s+on\s+line\s+(\d+)$"

# Markup hints emitted by Symfony's HtmlDumper.
EXPANDABLE_MARKERS = ("sf-dump-toggle", "sf-dump-expanded", "sf-dump-compact")
DATA_TYPE_MARKERS: list[tuple[str, str]] = [
    ("sf-dump-str", "string"),
    ("sf-dump-num", "number"),
    ("sf-dump-const", "constant"),
    ("sf-dump-array", "array"),
    ("sf-dump-object", "object"),
    ("sf-dump-resource", "resource"),
]
