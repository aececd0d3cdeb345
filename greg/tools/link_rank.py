from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

from greg.research_core.models.interfaces import Link

NAV_LABELS = {
    "home",
    "accueil",
    "about",
    "à propos",
    "contact",
    "login",
    "sign in",
    "signup",
    "sign up",
    "pricing",
    "terms",
    "privacy",
    "cookies",
    "search",
    "recherche",
}

_UTILITY_PATH_RE = re.compile(r"\b(login|signin|signup|register|privacy|terms|cookie|account|auth)\b", re.IGNORECASE)


@dataclass(slots=True)
class RankedLink:
    url: str
    text: str | None
    score: float


def looks_like_nav_label(text: str | None) -> bool:
    label = (text or "").strip().lower()
    return not label or label in NAV_LABELS


def score_link(source_host: str | None, url: str, label: str | None) -> float | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.hostname:
        return None

    score = 0.0
    if source_host and parts.hostname.lower() == source_host:
        score += 1.2
    segments = [s for s in parts.path.split("/") if s]
    if 2 <= len(segments) <= 5:
        score += 0.7
    if not segments:
        score -= 0.8
    if parts.query:
        score -= 0.25
    if _UTILITY_PATH_RE.search(parts.path):
        score -= 0.7
    label = (label or "").strip()
    if label and not looks_like_nav_label(label):
        score += 0.45
    if len(label) >= 16:
        score += 0.15
    return score


def rank_likely_item_links(source_url: str, links: list[Link], max_links: int = 24) -> list[RankedLink]:
    """Score outbound links of a listing page and return the most item-like ones first."""
    try:
        source_host = (urlsplit(source_url).hostname or "").lower() or None
    except ValueError:
        source_host = None

    ranked: list[RankedLink] = []
    seen: set[str] = set()
    for link in links:
        try:
            parts = urlsplit(link.url)
        except ValueError:
            continue
        normalized = urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))
        if normalized in seen:
            continue
        seen.add(normalized)
        score = score_link(source_host, normalized, link.text)
        if score is None:
            continue
        label = (link.text or "").strip()
        ranked.append(RankedLink(url=normalized, text=label or None, score=score))

    # stable sort keeps page order among ties
    ranked.sort(key=lambda item: item.score, reverse=True)
    return ranked[: max(0, max_links)]
