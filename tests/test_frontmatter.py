"""Tests for the front matter normalizer."""

import datetime

import yaml
from hypothesis import given
from hypothesis import strategies as st

from hexo_sync.frontmatter import (
    NormalizeOptions,
    normalize_front_matter,
    split_front_matter,
)

NOW = datetime.datetime(2024, 3, 9, 8, 30, 0)


def _front_matter(content: str) -> dict:
    yaml_text, _ = split_front_matter(content)
    assert yaml_text is not None
    return yaml.safe_load(yaml_text)


def test_adds_date_and_title_to_bare_document() -> None:
    """Verifies that a post without front matter gets a complete header."""
    result = normalize_front_matter("Just some words.\n", "source/_posts/my-post.md", now=NOW)

    assert result.modified
    assert result.errors == []
    data = _front_matter(result.content)
    assert data == {"date": "2024-03-09 08:30:00", "title": "my-post"}
    assert result.content.endswith("\nJust some words.\n")
    assert "Added missing field 'title'" in result.warnings


def test_complete_document_is_returned_unchanged() -> None:
    """Verifies that a document with every field is left byte-for-byte intact."""
    raw = "---\ntitle: Hello\ndate: 2020-01-01 00:00:00\ntags: [a, b]\n---\n\nBody\n"

    result = normalize_front_matter(raw, "source/_posts/hello.md", now=NOW)

    assert not result.modified
    assert result.content == raw


def test_existing_fields_and_order_are_preserved() -> None:
    raw = "---\ntitle: Keep Me\ncustom: 1\n---\nBody\n"

    result = normalize_front_matter(raw, "x.md", now=NOW)

    assert result.modified
    assert list(_front_matter(result.content)) == ["title", "custom", "date"]
    assert result.content.endswith("---\nBody\n")


def test_empty_front_matter_block_is_filled_in_place() -> None:
    """Verifies that an empty `---` block is completed rather than duplicated."""
    result = normalize_front_matter("---\n---\nBody\n", "source/_posts/empty.md", now=NOW)

    assert result.modified
    assert result.content.count("---\n") == 2
    assert _front_matter(result.content) == {"date": "2024-03-09 08:30:00", "title": "empty"}
    assert result.content.endswith("---\nBody\n")


def test_malformed_yaml_is_reported() -> None:
    """Verifies that broken front matter yields an error and no rewrite."""
    raw = "---\ntitle: [unclosed\n---\nBody\n"

    result = normalize_front_matter(raw, "broken.md", now=NOW)

    assert not result.modified
    assert result.content == raw
    assert result.errors and "Malformed front matter" in result.errors[0]


def test_non_mapping_front_matter_is_reported() -> None:
    result = normalize_front_matter("---\n- a\n- b\n---\n", "list.md", now=NOW)

    assert result.errors == ["Front matter must be a mapping"]


def test_validation_of_list_fields() -> None:
    raw = "---\ntitle: T\ndate: 2020-01-01\ntags: notalist\n---\n"

    assert normalize_front_matter(raw, "t.md").errors == ["Field 'tags' must be a list"]
    relaxed = normalize_front_matter(raw, "t.md", NormalizeOptions(validate=False))
    assert relaxed.errors == []


def test_options_control_added_fields() -> None:
    """Verifies custom required fields and disabling the automatic date."""
    options = NormalizeOptions(auto_add_date=False, required_fields=("title", "categories"))

    result = normalize_front_matter("---\ntitle: T\n---\nBody\n", "c.md", options, now=NOW)

    assert _front_matter(result.content) == {"title": "T", "categories": []}


def test_custom_date_format() -> None:
    options = NormalizeOptions(date_format="%Y/%m/%d")

    result = normalize_front_matter("---\ntitle: T\n---\n", "d.md", options, now=NOW)

    assert _front_matter(result.content)["date"] == "2024/03/09"


@given(
    body=st.text().filter(lambda s: not s.startswith("---")),
    title=st.one_of(st.none(), st.text(min_size=1, max_size=40)),
)
def test_normalization_is_idempotent(body: str, title: str | None) -> None:
    """
    Property: Normalizing an already-normalized document never changes it again.
    """
    raw = body
    if title is not None:
        raw = "---\n" + yaml.safe_dump({"title": title}, allow_unicode=True) + "---\n" + body

    first = normalize_front_matter(raw, "source/_posts/post.md", now=NOW)
    if first.errors:
        return
    second = normalize_front_matter(first.content, "source/_posts/post.md", now=NOW)

    assert second.errors == []
    assert not second.modified
    assert second.content == first.content
