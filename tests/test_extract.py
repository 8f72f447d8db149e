"""Tests for text extraction from uploaded files."""
import json

import pytest

from supportdesk.errors import ExtractionError
from supportdesk.rag.extract import extract_text, html_to_text, parse_frontmatter


def test_markdown_frontmatter_becomes_metadata(tmp_path):
    path = tmp_path / "guide.md"
    path.write_text("---\ntitle: Guide\ntags: [setup]\n---\n# Setup\n\nInstall the app.\n")

    document = extract_text(path)

    assert document.file_type == "text/markdown"
    assert document.metadata == {"title": "Guide", "tags": ["setup"]}
    assert document.text.startswith("# Setup")


def test_invalid_frontmatter_is_ignored():
    metadata, body = parse_frontmatter("---\n: [broken\n---\nBody\n")
    assert metadata == {}
    assert body == "Body\n"


def test_plain_text(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("Just text.")
    assert extract_text(path).text == "Just text."


def test_json_is_pretty_printed(tmp_path):
    path = tmp_path / "faq.json"
    path.write_text(json.dumps({"q": "Hours?", "a": "9 to 5"}))

    text = extract_text(path).text

    assert '"q": "Hours?"' in text


def test_csv_rows_become_lines(tmp_path):
    path = tmp_path / "prices.csv"
    path.write_text("plan,price\nbasic,10\npro,20\n")
    assert extract_text(path).text == "plan, price\nbasic, 10\npro, 20"


def test_html_scripts_dropped():
    html = "<html><head><script>var x = 1;</script></head><body><p>Hello</p><p>World</p></body></html>"
    assert html_to_text(html) == "Hello\n\nWorld"


def test_unsupported_extension_raises(tmp_path):
    path = tmp_path / "slides.pptx"
    path.write_bytes(b"binary")
    with pytest.raises(ExtractionError):
        extract_text(path)


def test_invalid_json_raises(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ExtractionError):
        extract_text(path)


def test_undecodable_file_raises(tmp_path):
    path = tmp_path / "latin1.txt"
    path.write_bytes("café".encode("latin-1"))
    with pytest.raises(ExtractionError):
        extract_text(path)
