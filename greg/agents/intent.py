"""Cheap rule tables deciding whether a turn needs the web, and how to phrase the search."""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from greg.config import settings
from greg.models.schemas import ChatMessage
from greg.tools.image_search import looks_like_image_request
from greg.tools.web_utils import extract_urls_from_text, strip_diacritics

MIN_MEANINGFUL_MESSAGE = 8


class IntentTag(str, Enum):
    IMAGE = "image"
    TIME_SENSITIVE = "time_sensitive"
    LISTING = "listing"
    WEB_HINT = "web_hint"


@dataclass(frozen=True)
class Rule:
    tag: IntentTag
    pattern: re.Pattern[str]
    lang: str = "any"


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


# Evaluated top to bottom; every matching tag is reported once, in table order.
INTENT_RULES: tuple[Rule, ...] = (
    Rule(IntentTag.TIME_SENSITIVE, _rx(r"\b(horaires?|ouvert(e|s)?|ferm[ée](e|s)?|demain|aujourd'?hui|ce soir|cette semaine|ce week-?end)\b"), "fr"),
    Rule(IntentTag.TIME_SENSITIVE, _rx(r"\b(prix|tarifs?|actualit[ée]s?|actus?|derni[eè]re?s?|nouveaut[ée]s?|r[ée]cent(e|es|s)?|en ce moment|m[ée]t[ée]o|date de sortie)\b"), "fr"),
    Rule(IntentTag.TIME_SENSITIVE, _rx(r"\b(opening hours|open now|tomorrow|today|tonight|this week(end)?)\b"), "en"),
    Rule(IntentTag.TIME_SENSITIVE, _rx(r"\b(price|prices|pricing|latest|newest|recent|news|right now|weather|release date)\b"), "en"),
    Rule(IntentTag.TIME_SENSITIVE, _rx(r"\b(20[2-9]\d)\b")),
    Rule(IntentTag.LISTING, _rx(r"\b(offres? d'emploi|emplois?|postes?|recrutements?|stages?|alternances?|annonces?|offres?)\b"), "fr"),
    Rule(IntentTag.LISTING, _rx(r"\b(jobs?|job offers?|openings|vacancies|hiring|internships?|listings?|offers?)\b"), "en"),
    Rule(IntentTag.WEB_HINT, _rx(
        r"(\bsource(s)?\b|\bliens?\b|\burl\b|\binternet\b|\bweb\b|\bgoogle\b|\bsearch\b|\brecherche\b|\bv[ée]rifie\b|"
        r"\bverify\b|\bfact[-\s]?check\b|\bactu(alit[ée])?\b|\baujourd\b|\btoday\b|\blatest\b|\bcurrent\b|\bnews\b|"
        r"\bprix\b|\btarif\b|\bprice\b|\brelease\b|\bsorti\b)"
    )),
)

# (pattern, template); the first match rewrites the query.
_WHO_IS_RULES = (
    (_rx(r"^\s*(?:qui\s+est|c'est\s+qui)\s+(.+?)\s*\??\s*$"), "{subject} biographie"),
    (_rx(r"^\s*(?:who\s+is|who's|who\s+was)\s+(.+?)\s*\??\s*$"), "{subject} biography"),
)
_LATEST_VIDEO_RE = _rx(r"\b(derni[eè]re\s+vid[ée]o|latest\s+video|last\s+video|new(est)?\s+video)\b")
_VIDEO_PLATFORM_RE = _rx(r"\b(youtube|twitch|vimeo|tiktok|dailymotion)\b")
_VERSIONED_API_RE = _rx(r"\b(v?\d+(?:\.\d+)+)\b")
_API_WORDS_RE = _rx(r"\b(api|sdk|library|librairie|biblioth[eè]que|framework|package|module|endpoint|method|m[ée]thode|function|fonction)\b")
_DOCUMENTATION_RE = _rx(r"\b(docs?|documentation)\b")

QUERY_STOPWORDS = {
    "the", "and", "for", "with", "from", "this", "that", "what", "who", "how", "why", "when", "where",
    "is", "are", "was", "a", "an", "of", "to", "in", "on", "it", "me", "my", "you", "your", "please",
    "search", "find", "look", "web", "internet", "google",
    "au", "aux", "des", "de", "du", "la", "le", "les", "un", "une", "et", "pour", "avec", "sur", "dans",
    "est", "qui", "que", "quoi", "quel", "quelle", "comment", "pourquoi", "moi", "mon", "ma", "mes",
    "stp", "svp", "cherche", "recherche", "trouve",
}


def detect_intents(text: str, languages: tuple[str, ...] | None = None) -> list[IntentTag]:
    """Tags matched by ``text``; ``languages`` restricts the language-specific rules."""
    tags: list[IntentTag] = []
    if looks_like_image_request(text):
        tags.append(IntentTag.IMAGE)
    for rule in INTENT_RULES:
        if languages is not None and rule.lang != "any" and rule.lang not in languages:
            continue
        if rule.tag not in tags and rule.pattern.search(text or ""):
            tags.append(rule.tag)
    return tags


def needs_forced_search(text: str) -> bool:
    """Time-sensitive or listing phrasing: search before the model answers."""
    tags = detect_intents(text)
    return IntentTag.TIME_SENSITIVE in tags or IntentTag.LISTING in tags


def should_run_web_gate(text: str) -> bool:
    return IntentTag.WEB_HINT in detect_intents((text or "").lower())


def last_user_message(messages: list[ChatMessage]) -> str:
    """Latest user turn; a very short one ("ok", "go") defers to the previous meaningful turn."""
    users = [m.content for m in messages if m.role == "user"]
    if not users:
        return ""
    latest = users[-1]
    if len(latest.strip()) >= MIN_MEANINGFUL_MESSAGE:
        return latest
    for previous in reversed(users[:-1]):
        if previous != latest and len(previous.strip()) >= MIN_MEANINGFUL_MESSAGE:
            return previous
    return latest


def request_urls(latest: str, messages: list[ChatMessage]) -> list[str]:
    """URLs to analyze directly.

    URLs in the latest message always count. Otherwise the most recent URL of the
    conversation is reused, unless the new message asks for fresh or listed
    information, which calls for a search instead.
    """
    urls = extract_urls_from_text(latest)
    if urls:
        return urls
    if needs_forced_search(latest):
        return []
    history = extract_urls_from_text("\n\n".join(m.content for m in messages))
    return history[-1:]


def informative_tokens(text: str) -> list[str]:
    normalized = strip_diacritics((text or "").lower())
    words = re.findall(r"[a-z0-9]+(?:['’][a-z0-9]+)?", normalized)
    return [w for w in words if len(w) >= 2 and w not in QUERY_STOPWORDS]


def is_usable_query(query: str) -> bool:
    q = (query or "").strip()
    return len(q) >= settings.query_min_chars and len(informative_tokens(q)) >= settings.query_min_tokens


def validate_query(query: str, fallback: str) -> str:
    """Return ``query`` when it is informative enough, else the user's own words."""
    if is_usable_query(query):
        return query.strip()
    replacement = synthesize_search_query(fallback)
    return replacement or (query or "").strip()


def synthesize_search_query(text: str) -> str:
    """Rule-based rewrite of a user message into a web query.

    The user's wording is kept; rules only add framing such as a biography
    hint, a platform hint or "documentation".
    """
    q = re.sub(r"\s+", " ", text or "").strip()
    if not q:
        return ""
    for pattern, template in _WHO_IS_RULES:
        match = pattern.match(q)
        if match:
            return template.format(subject=match.group(1).strip())

    q = q.rstrip(" ?!.")
    if _LATEST_VIDEO_RE.search(q) and not _VIDEO_PLATFORM_RE.search(q):
        q = f"{q} YouTube"
    if _VERSIONED_API_RE.search(q) and _API_WORDS_RE.search(q) and not _DOCUMENTATION_RE.search(q):
        q = f"{q} documentation"
    return q
