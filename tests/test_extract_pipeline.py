from __future__ import annotations

from greg.research_core.extract.feeds import (
    discover_feed_url,
    format_feed_entries,
    parse_feed,
    youtube_channel_feed_url,
)
from greg.research_core.extract.service import ExtractService, strip_stylesheets

ARTICLE_HTML = """<html lang="fr"><head>
<title>Tour Eiffel</title>
<meta name="description" content="Guide de la tour">
<meta property="og:site_name" content="Example">
<meta property="article:published_time" content="2026-01-02">
<link rel="canonical" href="/tour">
<link rel="stylesheet" href="/site.css">
<style>.hidden { display: none }</style>
<script type="application/ld+json">
{"@graph": [{"@type": "NewsArticle", "headline": "La tour", "author": [{"name": "Alice"}],
  "datePublished": "2025-12-31", "dateModified": "2026-01-05"}]}
</script>
<script type="application/ld+json">{not json</script>
</head><body>
<h1>Tour Eiffel</h1><h2>Histoire</h2>
<a href="/histoire">Histoire de la tour</a>
<a href="mailto:contact@example.com">Contact</a>
<a href="#top">Top</a>
</body></html>"""


def test_quality_scoring_flags_short_and_nav_noise():
    service = ExtractService()
    score, flags = service.score_quality("Main menu\nNavigation\nSign in")
    assert score < 0.55
    assert "too_short" in flags
    assert "low_variety" in flags


def test_extract_falls_back_to_readability_when_trafilatura_empty(monkeypatch):
    service = ExtractService()
    monkeypatch.setattr(service, "_extract_trafilatura", lambda *_: "")
    monkeypatch.setattr(
        service,
        "_extract_readability",
        lambda *_: " ".join(f"Recovered paragraph {i} about bridges, towers and rivers." for i in range(120)),
    )
    result = service.extract("<html><body>placeholder</body></html>")
    assert result.method == "readability"
    assert result.score >= 0.55
    assert "Recovered paragraph" in result.text


def test_extract_prefers_best_non_raw_when_all_low_quality(monkeypatch):
    service = ExtractService(quality_threshold=0.95)
    monkeypatch.setattr(service, "_extract_trafilatura", lambda *_: "short")
    monkeypatch.setattr(service, "_extract_readability", lambda *_: "")
    monkeypatch.setattr(service, "_extract_raw", lambda *_: "tiny")
    result = service.extract("<html><body>tiny</body></html>")
    assert result.method == "trafilatura"
    assert result.score < 0.95


def test_extract_uses_raw_when_nothing_else_has_text(monkeypatch):
    service = ExtractService()
    monkeypatch.setattr(service, "_extract_trafilatura", lambda *_: "")
    monkeypatch.setattr(service, "_extract_readability", lambda *_: "")
    result = service.extract("<html><body><script>var x = 1;</script><p>Only   raw text</p></body></html>")
    assert result.method == "raw"
    assert result.text == "Only raw text"


def test_strip_stylesheets():
    cleaned = strip_stylesheets(ARTICLE_HTML)
    assert "<style" not in cleaned
    assert "site.css" not in cleaned
    assert "canonical" in cleaned


def test_parse_collects_meta_facts_headings_and_links():
    page = ExtractService().parse(url="https://example.com/page", raw_html=ARTICLE_HTML)

    assert page.meta.title == "Tour Eiffel"
    assert page.meta.description == "Guide de la tour"
    assert page.meta.canonical == "https://example.com/tour"
    assert page.meta.site_name == "Example"
    assert page.meta.lang == "fr"
    assert page.headings == ["Tour Eiffel", "Histoire"]
    assert [(link.url, link.text) for link in page.links] == [("https://example.com/histoire", "Histoire de la tour")]

    facts = page.facts
    assert facts.types == ["NewsArticle"]
    assert facts.headline == "La tour"
    assert facts.author == "Alice"
    # meta tags win over JSON-LD
    assert facts.published == "2026-01-02"
    assert facts.modified == "2026-01-05"


def test_parse_limits_links():
    html = "<body>" + "".join(f'<a href="/p/{i}">Item {i}</a>' for i in range(10)) + "</body>"
    page = ExtractService().parse(url="https://example.com/", raw_html=html, max_links=3)
    assert [link.url for link in page.links] == [f"https://example.com/p/{i}" for i in range(3)]


def test_discover_feed_url():
    html = '<head><link rel="alternate" type="application/rss+xml" href="/feed.xml?a=1&amp;b=2"></head>'
    assert discover_feed_url("https://blog.example.com/posts/", html) == "https://blog.example.com/feed.xml?a=1&b=2"
    assert discover_feed_url("https://blog.example.com/", '<link rel="alternate" type="text/html" href="/en">') is None


def test_parse_atom_and_rss():
    atom = """<feed><entry><title>First &amp; best</title>
    <link rel="alternate" href="https://example.com/1"/><published>2026-01-01</published></entry>
    <entry><title></title><link href="https://example.com/2"/></entry></feed>"""
    rss = """<rss><channel><item><title><![CDATA[Episode 12]]></title>
    <link>https://example.com/ep12</link><pubDate>Mon, 05 Jan 2026</pubDate></item>
    <item><title>No link</title></item></channel></rss>"""

    entries = parse_feed(atom)
    assert [(e.title, e.url, e.published) for e in entries] == [("First & best", "https://example.com/1", "2026-01-01")]

    items = parse_feed(rss)
    assert [(i.title, i.url) for i in items] == [("Episode 12", "https://example.com/ep12")]
    assert format_feed_entries(["Feed URL: x"], "Latest entries (from feed):", items).splitlines() == [
        "Feed URL: x",
        "Latest entries (from feed):",
        "- Episode 12 (Mon, 05 Jan 2026): https://example.com/ep12",
    ]


def test_discover_feed_url_with_loose_markup():
    html = "<head><link rel='alternate nofollow' type=application/atom+xml href=/atom.xml></head>"
    assert discover_feed_url("https://blog.example.com/a/b", html) == "https://blog.example.com/atom.xml"


def test_youtube_atom_entry_title_is_not_shadowed_by_media_group():
    atom = """<?xml version="1.0" encoding="UTF-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom" xmlns:media="http://search.yahoo.com/mrss/">
      <title>Channel name</title>
      <entry>
        <title>Video title</title>
        <link rel="alternate" href="https://www.youtube.com/watch?v=abc"/>
        <published>2026-02-01T10:00:00+00:00</published>
        <media:group><media:title>Media title</media:title></media:group>
      </entry>
    </feed>"""

    entries = parse_feed(atom)

    assert [(e.title, e.url, e.published) for e in entries] == [
        ("Video title", "https://www.youtube.com/watch?v=abc", "2026-02-01T10:00:00+00:00")
    ]


def test_youtube_channel_feed_url():
    html = '{"channelId":"UCabcdefghijklmnop1234"}'
    assert (
        youtube_channel_feed_url("https://www.youtube.com/@somechannel", html)
        == "https://www.youtube.com/feeds/videos.xml?channel_id=UCabcdefghijklmnop1234"
    )
    assert youtube_channel_feed_url("https://www.youtube.com/watch?v=x", html) is None
    assert youtube_channel_feed_url("https://example.com/@somechannel", html) is None
