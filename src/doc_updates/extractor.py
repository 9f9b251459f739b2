"""Article extraction from raw "what's new" markdown.

Parses the YAML front matter block at the top of a document (title,
description, ms.date/date), falls back to the first heading for the title,
and normalizes dates to ISO YYYY-MM-DD. parse_article() never raises.

Also holds the path rules that decide which files are articles at all and
which product category they belong to.
"""

import logging
import re
from datetime import date, datetime
from pathlib import PurePosixPath

import yaml

from .models import ParsedArticle

logger = logging.getLogger("doc_updates.extractor")

__all__ = [
    "CATEGORY_KEYWORDS",
    "DEFAULT_CATEGORY",
    "WHATS_NEW_MARKERS",
    "infer_category",
    "is_whats_new_path",
    "normalize_date",
    "parse_article",
    "title_from_path",
]

# Path fragments identifying "what's new"-style documents
WHATS_NEW_MARKERS = (
    "whats-new",
    "what-s-new",
    "release-notes",
    "new-features",
    "updates",
)

# Accepted textual date formats, month-first for slashed dates (ms.date style)
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d")

DEFAULT_CATEGORY = "Power Platform"

# Path keyword -> category, checked in order when no repository rule matches
CATEGORY_KEYWORDS: dict[str, str] = {
    "power-platform": "Power Platform",
    "admin": "Power Platform Admin",
    "alm": "Power Platform ALM",
    "guidance": "Power Platform Guidance",
    "powerapps": "Power Apps",
    "canvas-apps": "Power Apps (Canvas)",
    "model-driven-apps": "Power Apps (Model-driven)",
    "cards-overview": "Power Apps Cards",
    "maker": "Power Apps Maker",
    "developer": "Power Apps Developer",
    "power-automate": "Power Automate",
    "desktop-flows": "Power Automate Desktop",
    "cloud-flows": "Power Automate Cloud",
    "process-mining": "Power Automate Process Mining",
    "power-bi": "Power BI",
    "paginated-reports": "Power BI Paginated Reports",
    "power-pages": "Power Pages",
    "dataverse": "Dataverse",
    "copilot-studio": "Copilot Studio",
    "power-virtual-agents": "Copilot Studio",
    "ai-builder": "AI Builder",
    "power-fx": "Power Fx",
    "powerquery": "Power Query",
    "power-query": "Power Query",
    "m365copilot": "Microsoft 365 Copilot",
    "copilot-extensibility": "Microsoft 365 Copilot",
    "copilot-connectors": "Copilot Connectors",
    "developer-tools": "Power Platform Developer Tools",
}

_FRONT_MATTER_RE = re.compile(r"\A\ufeff?---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_HEADING_RE = re.compile(r"^#[ \t]+(.+?)[ \t]*#*[ \t]*$", re.MULTILINE)
_SIMPLE_FIELD_RE = r"^{name}:[ \t]*[\"']?(.+?)[\"']?[ \t]*$"


def is_whats_new_path(path: str, base_path: str = "") -> bool:
    """Whether a repository path is an eligible "what's new" markdown file.

    Args:
        path: File path in the repository
        base_path: Repository docs sub-path ("" accepts any path)

    Returns:
        True for .md files under base_path whose path carries a marker
    """
    lower = path.lower()
    if not lower.endswith(".md"):
        return False
    if base_path and not (path == base_path or path.startswith(base_path.rstrip("/") + "/")):
        return False
    return any(marker in lower for marker in WHATS_NEW_MARKERS)


def infer_category(path: str, repo_name: str) -> str:
    """Infer the product category of an article.

    Repository-specific rules win, then the first CATEGORY_KEYWORDS entry
    found in the path, then DEFAULT_CATEGORY.
    """
    lower = path.lower()
    repo = repo_name.lower()

    if "powerapps" in repo:
        if "canvas" in lower:
            return "Power Apps (Canvas)"
        if "model-driven" in lower:
            return "Power Apps (Model-driven)"
        return "Power Apps"
    if "power-automate" in repo:
        if "desktop" in lower:
            return "Power Automate Desktop"
        if "process-mining" in lower:
            return "Power Automate Process Mining"
        return "Power Automate"
    if "powerbi" in repo:
        return "Power BI"
    if "power-pages" in repo:
        return "Power Pages"
    if "power-virtual-agents" in repo or "copilot-studio" in repo:
        return "Copilot Studio"
    if "ai-builder" in repo:
        return "AI Builder"

    for keyword, category in CATEGORY_KEYWORDS.items():
        if keyword in lower:
            return category
    return DEFAULT_CATEGORY


def title_from_path(path: str) -> str:
    """Filename-derived title used when a document yields none."""
    name = PurePosixPath(path).name
    return name or path or "Unknown"


def normalize_date(value: object) -> str | None:
    """Normalize a date value to ISO YYYY-MM-DD.

    Accepts date/datetime objects (YAML may already have parsed them) and
    the strings in DATE_FORMATS, optionally followed by a time part.
    Unparseable values yield None; nothing is ever guessed.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None

    text = value.strip().strip("\"'")
    if not text:
        return None
    # Drop a trailing time component ("2024-01-15T10:00:00Z", "01/15/2024 09:00")
    text = re.split(r"[T ]", text, maxsplit=1)[0]

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _split_front_matter(text: str) -> tuple[str | None, str]:
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return None, text
    return match.group(1), text[match.end():]


def _load_front_matter(block: str) -> dict:
    """Load front matter as YAML, falling back to line matching."""
    try:
        data = yaml.safe_load(block)
        if isinstance(data, dict):
            return data
    except yaml.YAMLError as e:
        logger.debug("Front matter is not valid YAML, using line matching: %s", e)

    fields: dict = {}
    for name in ("title", "description", "ms.date", "date"):
        match = re.search(_SIMPLE_FIELD_RE.format(name=re.escape(name)), block, re.MULTILINE)
        if match:
            fields[name] = match.group(1).strip()
    return fields


def _clean_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_article(raw: bytes | str) -> ParsedArticle:
    """Extract title, summary and effective date from a markdown document.

    Args:
        raw: Document bytes (decoded as UTF-8, invalid bytes replaced) or text

    Returns:
        ParsedArticle; fields the document does not provide are None.
    """
    try:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        block, body = _split_front_matter(text)

        title = summary = effective_date = None
        if block is not None:
            meta = _load_front_matter(block)
            title = _clean_text(meta.get("title"))
            summary = _clean_text(meta.get("description"))
            raw_date = meta.get("ms.date") or meta.get("date")
            effective_date = normalize_date(raw_date)
            if raw_date is not None and effective_date is None:
                logger.debug("Dropping unparseable date %r", raw_date)

        if title is None:
            heading = _HEADING_RE.search(body)
            if heading:
                title = _clean_text(heading.group(1))

        return ParsedArticle(title=title, summary=summary, effective_date=effective_date)
    except Exception as e:  # malformed input must never escalate
        logger.warning("Article parse failed, returning empty metadata: %s", e)
        return ParsedArticle()
