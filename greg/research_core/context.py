"""Concurrent extraction of several URLs into one prompt-ready internal block."""
from __future__ import annotations

import asyncio

from loguru import logger

from greg.models.events import ProgressEvent
from greg.research_core.analyze import UrlAnalyzer
from greg.research_core.models.interfaces import SourceDocument, WebSearchResult
from greg.research_core.scrape.service import utc_now
from greg.tools.link_rank import rank_likely_item_links

INTERNAL_OPEN = "<internal_sources>"
INTERNAL_CLOSE = "</internal_sources>"
URL_SOURCES_HEADING = "## URL sources (server-extracted)"
NO_SOURCES_HEADING = "## Web verification (server note)"

URL_SOURCE_RULES = [
    "The following content was fetched by the server and reduced to essentials (no JS/CSS executed).",
    "Rules:",
    "- Treat these as the authoritative source for the URL(s) above.",
    "- Use them to answer the user's question.",
    "- In your final answer, include a short Sources section with the relevant URL(s).",
    "- If a specific fact is not present here, say you cannot verify it (do not guess).",
    "- Never copy/paste this block verbatim into the final answer; it is internal context.",
    "- Be thorough: produce a structured analysis (summary, key points, concrete facts, and a direct answer).",
    "- If the user asks to 'explore' the page, extract and list the most relevant items from the content (not just a vague summary).",
]

MANDATORY_NEXT_STEP = "\n".join(
    [
        "## Mandatory next step",
        "- You now have the sources you requested.",
        "- Do NOT emit <search_web ... /> again.",
        "- Answer the user immediately using the sources above.",
    ]
)

WORKERS = 3
LISTY_MIN_LINKS = 20
LISTY_MAX_TEXT = 900


def format_source_for_prompt(doc: SourceDocument) -> str:
    lines = [f"Source URL: {doc.requested_url}"]
    if doc.normalized_url and doc.normalized_url != doc.requested_url:
        lines.append(f"Normalized URL: {doc.normalized_url}")
    lines.append(f"Fetched at: {doc.fetched_at}")
    lines.append(f"HTTP status: {doc.http_status or '(no response)'}")
    if doc.content_type:
        lines.append(f"Content-Type: {doc.content_type}")
    if doc.extraction_note:
        lines.append(f"Fetch note: {doc.extraction_note}")
    lines.append(f"Kind: {doc.kind.value}")
    if doc.title:
        lines.append(f"Title: {doc.title}")
    if doc.description:
        lines.append(f"Description: {doc.description}")
    if doc.site_name:
        lines.append(f"Site: {doc.site_name}")
    facts = doc.structured_facts
    if facts.author:
        lines.append(f"Author: {facts.author}")
    if facts.published:
        lines.append(f"Published: {facts.published}")
    if facts.modified:
        lines.append(f"Modified: {facts.modified}")
    if facts.types:
        lines.append(f"Structured types: {', '.join(facts.types[:8])}")
    lines.append(f"Extracted length: {len(doc.body_text)}{' (truncated)' if doc.truncated else ''}")
    if doc.headings:
        lines.append("Headings:")
        lines.extend(f"- {h}" for h in doc.headings[:12])
    if doc.body_text:
        lines.append("Main text (extracted):")
        lines.append(doc.body_text)
    if doc.outbound_links:
        lines.append("Links (sample):")
        for link in doc.outbound_links[:20]:
            label = f"{link.text} - " if link.text else ""
            lines.append(f"- {label}{link.url}")
    return "\n".join(lines)


def wrap_url_sources(docs: list[SourceDocument]) -> str:
    parts = [f"\n---\n{format_source_for_prompt(doc)}" for doc in docs]
    return "\n".join([INTERNAL_OPEN, URL_SOURCES_HEADING, *URL_SOURCE_RULES, *parts, INTERNAL_CLOSE])


def build_no_sources_note(query: str, search: WebSearchResult | None = None) -> str:
    """Internal note injected when acquisition produced nothing usable."""
    lines = [
        INTERNAL_OPEN,
        NO_SOURCES_HEADING,
        f"- Query attempted: {query}",
        "- No verified sources are available for this answer.",
    ]
    if search is not None and search.diagnostics.blocked:
        lines.append("- The search engine blocked the request (bot challenge).")
    lines.extend(
        [
            "- Do NOT cite, invent or imply any source, URL or verification.",
            "- Answer from general knowledge only if safe, and state clearly that it could not be verified online.",
            "- Never copy/paste this block verbatim into the final answer; it is internal context.",
            INTERNAL_CLOSE,
        ]
    )
    return "\n".join(lines)


def failed_document(url: str, error: Exception) -> SourceDocument:
    return SourceDocument(
        requested_url=url,
        normalized_url=url,
        http_status=0,
        content_type="",
        fetched_at=utc_now(),
        extraction_note=str(error) or type(error).__name__,
    )


class ContextBuilder:
    """Runs the extraction chain over seed URLs with a small worker pool.

    Progress is published as ``ProgressEvent`` objects on ``events`` when given,
    so callers can relay them without the builder knowing about the transport.
    """

    def __init__(self, *, analyzer: UrlAnalyzer | None = None, workers: int = WORKERS):
        self.analyzer = analyzer or UrlAnalyzer()
        self.workers = max(int(workers), 1)

    async def collect(
        self,
        urls: list[str],
        *,
        max_urls: int = 3,
        seed_urls: int | None = None,
        max_chars_per_url: int = 8000,
        expand_item_links: bool = False,
        events: asyncio.Queue[ProgressEvent] | None = None,
    ) -> list[SourceDocument]:
        seeds = urls[: max(0, seed_urls if seed_urls is not None else max_urls)]
        if not seeds:
            return []
        docs = await self._analyze_all(seeds, max_chars_per_url, 80, events, offset=0, grand_total=len(seeds))

        remaining = max(0, max_urls - len(seeds))
        if expand_item_links and remaining > 0:
            extra = self._item_link_candidates(docs, remaining)
            if extra:
                total = len(seeds) + len(extra)
                docs += await self._analyze_all(extra, max_chars_per_url, 60, events, offset=len(seeds), grand_total=total)
        return docs

    async def build(self, urls: list[str], **kwargs) -> str | None:
        docs = await self.collect(urls, **kwargs)
        if not docs:
            return None
        return wrap_url_sources(docs)

    async def _analyze_all(
        self,
        urls: list[str],
        max_chars: int,
        max_links: int,
        events: asyncio.Queue[ProgressEvent] | None,
        *,
        offset: int,
        grand_total: int,
    ) -> list[SourceDocument]:
        results: list[SourceDocument | None] = [None] * len(urls)
        next_index = 0

        def publish(stage: str, i: int, url: str) -> None:
            if events is not None:
                events.put_nowait(ProgressEvent(stage=stage, index=offset + i + 1, total=grand_total, url=url))

        async def worker() -> None:
            nonlocal next_index
            while next_index < len(urls):
                i = next_index
                next_index += 1
                url = urls[i]
                publish("fetch", i, url)
                try:
                    doc = await self.analyzer.analyze(url, max_chars=max_chars, max_links=max_links)
                except Exception as exc:
                    logger.warning(f"URL analysis failed for {url}: {exc!r}")
                    doc = failed_document(url, exc)
                publish("extract", i, doc.normalized_url or url)
                results[i] = doc

        await asyncio.gather(*(worker() for _ in range(min(self.workers, len(urls)))))
        return [doc for doc in results if doc is not None]

    @staticmethod
    def _item_link_candidates(docs: list[SourceDocument], budget: int) -> list[str]:
        seen = {(d.normalized_url or d.requested_url).strip() for d in docs}
        candidates: list[str] = []
        for doc in docs:
            listy = len(doc.outbound_links) >= LISTY_MIN_LINKS and len(doc.body_text.strip()) < LISTY_MAX_TEXT
            if not listy:
                continue
            for ranked in rank_likely_item_links(doc.normalized_url or doc.requested_url, doc.outbound_links, 24):
                if len(candidates) >= budget * 3:
                    break
                if ranked.url in seen:
                    continue
                seen.add(ranked.url)
                candidates.append(ranked.url)
        return candidates[:budget]
