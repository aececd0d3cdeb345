from __future__ import annotations

import pytest

from greg.tools.web_utils import (
    absolute_url,
    extract_domain,
    extract_urls_from_text,
    is_private_host,
    normalize_url,
    truncate_text,
)


def test_extract_urls_full_and_bare():
    text = "see https://example.com/a, and www.site.org. Thanks"
    assert extract_urls_from_text(text) == ["https://example.com/a", "https://www.site.org/"]


def test_extract_urls_dedupes_in_order():
    text = "https://b.example.com/x then https://a.example.com/ then https://b.example.com/x"
    assert extract_urls_from_text(text) == ["https://b.example.com/x", "https://a.example.com/"]


@pytest.mark.parametrize(
    "text",
    [
        "open main.py and notes.md",
        "mail me at someone@example.com",
        "ftp://files.example.com/pub",
        "javascript:alert(1)",
        "",
    ],
)
def test_extract_urls_ignores_non_web(text):
    assert extract_urls_from_text(text) == []


@pytest.mark.parametrize(
    "text",
    [
        "https://example.com/a?b=1 and www.site.org",
        "(https://example.com/page) docs.python.org/3/library",
        "http://localhost.example.com:8080/x",
    ],
)
def test_extract_urls_is_idempotent(text):
    first = extract_urls_from_text(text)
    assert first
    assert extract_urls_from_text(" ".join(first)) == first
    assert all(url.startswith(("http://", "https://")) for url in first)


def test_normalize_url():
    assert normalize_url("Example.COM") == "https://example.com/"
    assert normalize_url("http://example.com:8080/a?b=1") == "http://example.com:8080/a?b=1"


@pytest.mark.parametrize("raw", ["", "   ", "javascript:alert(1)", "ftp://example.com/x", "mailto:a@b.com"])
def test_normalize_url_rejects(raw):
    with pytest.raises(ValueError):
        normalize_url(raw)


def test_absolute_url():
    assert absolute_url("https://a.com/dir/page", "../x") == "https://a.com/x"
    assert absolute_url("https://a.com/", "mailto:x@a.com") is None
    assert absolute_url("https://a.com/", "#top") is None


def test_extract_domain():
    assert extract_domain("https://www.Example.com/x") == "example.com"
    assert extract_domain("not a url") == ""


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("127.0.0.1", True),
        ("10.0.0.5", True),
        ("[::1]", True),
        ("printer.local", True),
        ("localhost", True),
        ("", True),
        ("example.com", False),
        ("93.184.216.34", False),
    ],
)
def test_is_private_host(host, expected):
    assert is_private_host(host) is expected


@pytest.mark.parametrize("max_chars", [0, 1, 2, 5, 17, 40, 200])
def test_truncate_text_never_exceeds_limit(max_chars):
    text = "The quick brown fox jumps over the lazy dog " * 3
    out, truncated = truncate_text(text, max_chars)
    assert len(out) <= max_chars
    assert truncated is (len(text) > max_chars)


def test_truncate_text_prefers_word_boundary():
    out, truncated = truncate_text("alpha beta gamma delta", 20)
    assert truncated
    assert out == "alpha beta gamma…"


def test_truncate_text_short_input_untouched():
    assert truncate_text("short", 10) == ("short", False)
