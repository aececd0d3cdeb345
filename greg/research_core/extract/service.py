from __future__ import annotations

import re
from dataclasses import dataclass, field

import trafilatura
from bs4 import BeautifulSoup
from readability import Document

from greg.research_core.extract.structured import extract_page_meta, extract_structured_facts
from greg.research_core.models.interfaces import Link, PageMeta, StructuredFacts
from greg.tools.web_utils import absolute_url

NAV_MARKERS = (
    "main menu",
    "navigation",
    "skip to",
    "cookie",
    "subscribe",
    "sign in",
)

_STYLE_RE = re.compile(r"<style\b[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_STYLESHEET_LINK_RE = re.compile(r"<link\b[^>]*rel=[\"']stylesheet[\"'][^>]*>", re.IGNORECASE)


def _normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def strip_stylesheets(html: str) -> str:
    return _STYLESHEET_LINK_RE.sub("", _STYLE_RE.sub("", html or ""))


@dataclass(slots=True)
class Candidate:
    method: str
    text: str
    score: float
    flags: list[str]


@dataclass(slots=True)
class ParsedPage:
    meta: PageMeta
    facts: StructuredFacts
    headings: list[str] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)


class ExtractService:
    """HTML parsing plus a main-content extraction chain with quality scoring."""

    def __init__(self, *, quality_threshold: float = 0.55):
        self.quality_threshold = quality_threshold

    def parse(self, *, url: str, raw_html: str, max_headings: int = 40, max_links: int = 60) -> ParsedPage:
        soup = BeautifulSoup(strip_stylesheets(raw_html), "html.parser")
        headings: list[str] = []
        for tag in soup.find_all(["h1", "h2", "h3"]):
            text = re.sub(r"\s+", " ", tag.get_text(" ", strip=True)).strip()
            if text:
                headings.append(text)
            if len(headings) >= max_headings:
                break

        links: list[Link] = []
        for anchor in soup.find_all("a", href=True):
            resolved = absolute_url(url, anchor["href"])
            if not resolved:
                continue
            label = re.sub(r"\s+", " ", anchor.get_text(" ", strip=True)).strip()
            links.append(Link(url=resolved, text=label or None))
            if len(links) >= max_links:
                break

        return ParsedPage(
            meta=extract_page_meta(soup, url),
            facts=extract_structured_facts(soup),
            headings=headings,
            links=links,
        )

    def extract(self, raw_html: str) -> Candidate:
        """Run trafilatura, then readability, then raw text; first good-enough result wins."""
        methods = [
            ("trafilatura", self._extract_trafilatura),
            ("readability", self._extract_readability),
            ("raw", self._extract_raw),
        ]
        cleaned = strip_stylesheets(raw_html)
        candidates: list[Candidate] = []

        for method, fn in methods:
            extracted = _normalize_text(fn(cleaned))
            score, flags = self.score_quality(extracted)
            candidate = Candidate(method=method, text=extracted, score=score, flags=flags)
            candidates.append(candidate)
            if extracted and score >= self.quality_threshold and method != "raw":
                return candidate

        with_text = [c for c in candidates if c.text and c.method != "raw"] or candidates
        return max(with_text, key=lambda item: item.score)

    def score_quality(self, text: str) -> tuple[float, list[str]]:
        flags: list[str] = []
        lowered = text.lower()
        text_len = len(text)
        if text_len < 240:
            flags.append("too_short")

        marker_hits = sum(lowered.count(marker) for marker in NAV_MARKERS)
        if marker_hits >= 4:
            flags.append("nav_heavy")

        unique_words = len(set(re.findall(r"[a-zA-ZÀ-ÿ]{3,}", lowered)))
        if unique_words < 80:
            flags.append("low_variety")

        length_score = min(text_len / 3000.0, 1.0)
        nav_penalty = min(marker_hits * 0.08, 0.5)
        variety_boost = min(unique_words / 500.0, 0.3)
        base = 0.2 + (0.6 * length_score) + variety_boost - nav_penalty
        score = max(0.0, min(base, 1.0))
        return score, flags

    def _extract_trafilatura(self, raw_html: str) -> str:
        extracted = trafilatura.extract(raw_html, output_format="txt", include_comments=False)
        return extracted if isinstance(extracted, str) else ""

    def _extract_readability(self, raw_html: str) -> str:
        try:
            summary_html = Document(raw_html).summary(html_partial=True)
        except (ValueError, TypeError):
            return ""
        soup = BeautifulSoup(summary_html, "html.parser")
        return soup.get_text("\n")

    def _extract_raw(self, raw_html: str) -> str:
        soup = BeautifulSoup(raw_html, "html.parser")
        for tag in soup(["script", "noscript", "template", "svg"]):
            tag.decompose()
        body = soup.body or soup
        return re.sub(r"\s+", " ", body.get_text(" "))
