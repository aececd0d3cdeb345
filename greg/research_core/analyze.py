"""Per-URL extraction fallback chain."""
from __future__ import annotations

import re

from loguru import logger

from greg.research_core.extract.feeds import (
    discover_feed_url,
    format_feed_entries,
    parse_feed,
    youtube_channel_feed_url,
)
from greg.research_core.extract.service import ExtractService
from greg.research_core.models.interfaces import FetchResult, SourceDocument, SourceKind
from greg.research_core.scrape.service import ScrapeService, is_blocked_status, utc_now
from greg.tools.classify import classify_source
from greg.tools.web_utils import normalize_url, truncate_text

LOW_TEXT_CHARS = 240
FEED_MAX_ENTRIES = 12
YOUTUBE_MAX_ENTRIES = 8


def proxy_is_richer(original_len: int, proxy_len: int) -> bool:
    """Accept proxy text only when it is materially longer than what we already have."""
    threshold = 160 if original_len < 80 else max(600, original_len * 3)
    return proxy_len >= threshold


def _is_html(content_type: str) -> bool:
    lowered = (content_type or "").lower()
    return "text/html" in lowered or "application/xhtml" in lowered


class UrlAnalyzer:
    """Reduce one URL to a SourceDocument, trying several strategies in order."""

    def __init__(self, *, scraper: ScrapeService | None = None, extractor: ExtractService | None = None):
        self.scraper = scraper or ScrapeService()
        self.extractor = extractor or ExtractService()

    async def analyze(self, url: str, *, max_chars: int = 20000, max_links: int = 60) -> SourceDocument:
        normalized = normalize_url(url)
        fetched_at = utc_now()
        fetched = await self.scraper.fetch(normalized)
        doc = SourceDocument(
            requested_url=url,
            normalized_url=fetched.final_url or normalized,
            http_status=fetched.status_code,
            content_type=fetched.content_type,
            fetched_at=fetched_at,
            extraction_note=fetched.note,
        )

        proxy_tried = False
        if not fetched.body or is_blocked_status(fetched.status_code):
            reason = fetched.note or f"HTTP {fetched.status_code}"
            proxy_tried = True
            proxied = await self._via_proxy(doc, reason, max_chars)
            if proxied is not None:
                return proxied

        if not _is_html(fetched.content_type):
            if not proxy_tried:
                reason = f"non-HTML content-type: {fetched.content_type or 'unknown'}"
                proxied = await self._via_proxy(doc, reason, max_chars)
                if proxied is not None:
                    return proxied
            if not doc.extraction_note:
                doc.extraction_note = f"Non-HTML content-type ({fetched.content_type or 'unknown'}) ignored"
            doc.kind = classify_source(doc.normalized_url, content_type=doc.content_type)
            return doc

        if not fetched.body:
            return doc

        return await self._from_html(doc, fetched, max_chars=max_chars, max_links=max_links)

    async def _from_html(self, doc: SourceDocument, fetched: FetchResult, *, max_chars: int, max_links: int) -> SourceDocument:
        page = self.extractor.parse(url=doc.normalized_url, raw_html=fetched.body, max_links=max_links)
        meta = page.meta
        doc.title = meta.og_title or meta.title
        doc.description = meta.og_description or meta.description
        doc.site_name = meta.site_name
        doc.canonical_url = meta.canonical
        doc.og_image = meta.og_image
        doc.structured_facts = page.facts
        doc.kind = classify_source(
            doc.normalized_url,
            content_type=doc.content_type,
            structured_types=page.facts.types,
            og_type=meta.og_type,
            twitter_card=meta.twitter_card,
            title=doc.title,
        )

        doc.headings = page.headings
        doc.outbound_links = page.links

        candidate = self.extractor.extract(fetched.body)
        doc.body_text, doc.truncated = truncate_text(candidate.text, max_chars)
        doc.extracted_via = candidate.method

        # thinness uses the full extraction, not the truncated body
        text_len = len(candidate.text.strip())
        if text_len >= LOW_TEXT_CHARS:
            return doc

        if text_len > 0:
            proxy = await self.scraper.fetch_text_proxy(doc.normalized_url)
            if proxy is not None and proxy_is_richer(text_len, len(proxy.body.strip())):
                return self._apply_proxy(doc, proxy, "low extracted text", max_chars)

        # Structural fallbacks before giving up on a thin page.
        youtube = await self._youtube_channel(doc, fetched.body, max_chars)
        if youtube is not None:
            return youtube
        feed = await self._discovered_feed(doc, fetched.body, max_chars)
        if feed is not None:
            return feed
        if text_len == 0:
            proxied = await self._via_proxy(doc, "no extractable text", max_chars)
            if proxied is not None:
                return proxied
        return doc

    async def _via_proxy(self, doc: SourceDocument, reason: str, max_chars: int) -> SourceDocument | None:
        proxy = await self.scraper.fetch_text_proxy(doc.normalized_url)
        if proxy is None:
            return None
        return self._apply_proxy(doc, proxy, reason, max_chars)

    def _apply_proxy(self, doc: SourceDocument, proxy: FetchResult, reason: str, max_chars: int) -> SourceDocument:
        logger.debug(f"Using text proxy for {doc.normalized_url} ({reason})")
        text, truncated = truncate_text(proxy.body.strip(), max_chars)
        doc.http_status = proxy.status_code
        doc.content_type = f"{proxy.content_type or 'text/plain'} (via text proxy)"
        doc.extraction_note = f"Used text proxy ({reason})"
        doc.body_text = text
        doc.truncated = truncated
        doc.extracted_via = "text_proxy"
        if doc.title is None:
            title_match = re.search(r"^Title:\s*(.+)$", text, re.MULTILINE)
            doc.title = title_match.group(1).strip() if title_match else None
        if doc.kind is SourceKind.GENERIC:
            doc.kind = classify_source(doc.normalized_url, title=doc.title)
        return doc

    async def _youtube_channel(self, doc: SourceDocument, html: str, max_chars: int) -> SourceDocument | None:
        feed_url = youtube_channel_feed_url(doc.normalized_url, html)
        if not feed_url:
            return None
        result = await self.scraper.fetch_feed(feed_url)
        entries = parse_feed(result.body, YOUTUBE_MAX_ENTRIES) if result else []
        if not entries:
            return None
        text = format_feed_entries(
            [f"YouTube channel: {doc.normalized_url}", f"RSS feed: {feed_url}"],
            "Latest videos (from RSS):",
            entries,
        )
        return self._apply_feed(doc, result, text, "YouTube RSS", max_chars)

    async def _discovered_feed(self, doc: SourceDocument, html: str, max_chars: int) -> SourceDocument | None:
        feed_url = discover_feed_url(doc.normalized_url, html)
        if not feed_url:
            return None
        result = await self.scraper.fetch_feed(feed_url)
        entries = parse_feed(result.body, FEED_MAX_ENTRIES) if result else []
        if not entries:
            return None
        text = format_feed_entries(
            [f"Feed discovered from: {doc.normalized_url}", f"Feed URL: {feed_url}"],
            "Latest entries (from feed):",
            entries,
        )
        return self._apply_feed(doc, result, text, "RSS/Atom feed discovery", max_chars)

    def _apply_feed(self, doc: SourceDocument, result: FetchResult, text: str, label: str, max_chars: int) -> SourceDocument:
        doc.http_status = result.status_code
        doc.content_type = f"{result.content_type or 'application/xml'} ({label})"
        doc.extraction_note = f"Extracted via {label}"
        doc.body_text, doc.truncated = truncate_text(text, max_chars)
        doc.extracted_via = "feed"
        return doc
