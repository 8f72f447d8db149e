"""Text extraction for uploaded knowledge base files.

Handles:
- Plain text
- Markdown (YAML frontmatter is stripped and returned as metadata)
- JSON and CSV exports
- HTML pages (script/style content dropped)
"""
import csv
import io
import json
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser
from pathlib import Path
from typing import Any, Dict, List, Tuple
import yaml
import structlog

from supportdesk.errors import ExtractionError

logger = structlog.get_logger()

FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)

SUPPORTED_EXTENSIONS = {".txt", ".md", ".markdown", ".json", ".csv", ".html", ".htm"}


@dataclass
class ExtractedDocument:
    """Text pulled out of a file plus any metadata found along the way."""

    text: str
    file_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def parse_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Split YAML frontmatter from markdown content.

    Returns:
        Tuple of (frontmatter_dict, content_without_frontmatter)
    """
    match = FRONTMATTER_PATTERN.match(content)
    if not match:
        return {}, content

    yaml_content = match.group(1)
    try:
        frontmatter = yaml.safe_load(yaml_content) or {}
        if not isinstance(frontmatter, dict):
            frontmatter = {}
    except yaml.YAMLError as e:
        logger.warning("frontmatter_parse_error", error=str(e), yaml_preview=yaml_content[:100])
        frontmatter = {}

    return frontmatter, content[match.end() :]


class _HTMLTextParser(HTMLParser):
    SKIPPED = {"script", "style", "noscript", "iframe", "nav", "footer", "header"}
    BLOCKS = {"p", "div", "section", "article", "li", "br", "h1", "h2", "h3", "h4", "h5", "h6", "tr"}

    def __init__(self):
        super().__init__()
        self.parts: List[str] = []
        self.title_parts: List[str] = []
        self._skip_depth = 0
        self._in_title = False

    def handle_starttag(self, tag, attrs):
        if tag == "title":
            self._in_title = True
        elif tag in self.SKIPPED:
            self._skip_depth += 1
        elif tag in self.BLOCKS:
            self.parts.append("\n\n")

    def handle_endtag(self, tag):
        if tag == "title":
            self._in_title = False
        elif tag in self.SKIPPED and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data):
        if self._in_title:
            self.title_parts.append(data)
        elif not self._skip_depth:
            self.parts.append(data)


def parse_html(html: str) -> Tuple[str, str]:
    """Split an HTML page into its title and readable body text.

    Scripts, styles and page chrome (nav, header, footer) are dropped.
    """
    parser = _HTMLTextParser()
    parser.feed(html)
    parser.close()
    text = "".join(parser.parts)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n\s*", "\n\n", text).strip()
    title = " ".join("".join(parser.title_parts).split())
    return title, text


def html_to_text(html: str) -> str:
    return parse_html(html)[1]


def _json_to_text(content: str) -> str:
    data = json.loads(content)
    return json.dumps(data, indent=2, ensure_ascii=False)


def _csv_to_text(content: str) -> str:
    rows = csv.reader(io.StringIO(content))
    return "\n".join(", ".join(cell.strip() for cell in row) for row in rows if row)


def extract_text(path: Path, filename: str = None) -> ExtractedDocument:
    """Extract plain text from a file.

    Args:
        path: File on disk
        filename: Original name used to pick the format (defaults to path name)

    Raises:
        ExtractionError: If the format is unsupported or the file can't be decoded
    """
    path = Path(path)
    suffix = Path(filename or path.name).suffix.lower()

    if suffix not in SUPPORTED_EXTENSIONS:
        raise ExtractionError(
            f"Unsupported file type: {suffix or 'none'}. "
            f"Supported formats: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.error("file_read_failed", path=str(path), error=str(e))
        raise ExtractionError(f"Failed to read {path.name}: {e}") from e

    metadata: Dict[str, Any] = {}
    try:
        if suffix in (".md", ".markdown"):
            metadata, text = parse_frontmatter(content)
            file_type = "text/markdown"
        elif suffix == ".json":
            text, file_type = _json_to_text(content), "application/json"
        elif suffix == ".csv":
            text, file_type = _csv_to_text(content), "text/csv"
        elif suffix in (".html", ".htm"):
            text, file_type = html_to_text(content), "text/html"
        else:
            text, file_type = content, "text/plain"
    except (ValueError, csv.Error) as e:
        raise ExtractionError(f"Failed to parse {path.name}: {e}") from e

    logger.info(
        "text_extracted",
        path=str(path),
        file_type=file_type,
        content_length=len(text),
    )

    return ExtractedDocument(text=text, file_type=file_type, metadata=metadata)
