from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import parse_qs, quote, urlsplit

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from greg.config import settings
from greg.research_core.models.interfaces import SearchHit, WebSearchDiagnostics, WebSearchResult
from greg.research_core.scrape.service import utc_now
from greg.tools.web_utils import BROWSER_USER_AGENT, is_valid_url

HTML_ENDPOINT = "https://html.duckduckgo.com/html/"
LITE_ENDPOINT = "https://lite.duckduckgo.com/lite/"
INSTANT_ANSWER_ENDPOINT = "https://api.duckduckgo.com/"
WIKIPEDIA_HOSTS = {"en": "en.wikipedia.org", "fr": "fr.wikipedia.org"}
ENGINE_DOMAIN = "duckduckgo.com"
WIKIPEDIA_MAX_URLS = 6

SERP_HEADERS = {
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "en,fr;q=0.9,*;q=0.8",
    "User-Agent": BROWSER_USER_AGENT,
}
API_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "GregServer/0.1",
}

RESULT_ANCHOR_CLASSES = ("result__a", "result__url", "result-link", "result__title")
MATCH_STOPWORDS = frozenset(
    "the and for with from this that what who how a an of to in on "
    "au aux des de du la le les un une et pour avec sur dans".split()
)
_CHALLENGE_RE = re.compile(r"\b(verify|captcha|bot)\b", re.IGNORECASE)
_TODAY_RE = re.compile(r"\b(today|aujourd(?:'|’)?hui|ce\s+jour|maintenant)\b", re.IGNORECASE)
_RECENT_RE = re.compile(
    r"\b(latest|new(est)?|recent|news|actu\w{0,10}|actualit[ée]s?|r[ée]cent(e|es)?|r[ée]cemment|"
    r"nouveau(x)?|nouveaut[ée]s?|dern(i[èe]re|ier|iers|i[eè]res)|mise\s+à\s+jour|update|yesterday|hier)\b",
    re.IGNORECASE,
)
_YEAR_RE = re.compile(r"\b20\d{2}\b")
_YESTERDAY_RE = re.compile(r"\b(yesterday|hier)\b")
_AGE_RE = re.compile(
    r"\b(\d{1,3})\s*(minutes?|min|heures?|hours?|jours?|days?|semaines?|weeks?|mois|months?|ans?|years?)\b"
)
# (unit prefix, seconds); first match wins
_AGE_UNITS = (
    ("min", 60),
    ("heure", 3600),
    ("hour", 3600),
    ("jour", 86400),
    ("day", 86400),
    ("semaine", 604800),
    ("week", 604800),
    ("mois", 2592000),
    ("month", 2592000),
    ("an", 31536000),
    ("year", 31536000),
)


@dataclass
class SerpPage:
    """Results scraped from one results page."""
    hits: list[SearchHit] = field(default_factory=list)
    result_count: int = 0
    blocked: bool = False
    status: int = 0

    @property
    def urls(self) -> list[str]:
        return [hit.url for hit in self.hits]


def infer_date_filter(query: str) -> str | None:
    """DuckDuckGo ``df`` value for recency-driven queries (d, w or y)."""
    q = (query or "").strip().lower()
    if not q:
        return None
    if _TODAY_RE.search(q):
        return "d"
    if _RECENT_RE.search(q):
        return "w"
    if _YEAR_RE.search(q):
        return "y"
    return None


def is_engine_host(url: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    return host == ENGINE_DOMAIN or host.endswith("." + ENGINE_DOMAIN)


def decode_redirect(url: str) -> str:
    """Unwrap ``duckduckgo.com/l/?uddg=...`` links to their target."""
    parts = urlsplit(url)
    if (parts.hostname or "").lower() != ENGINE_DOMAIN or not parts.path.startswith("/l/"):
        return url
    target = parse_qs(parts.query).get("uddg", [""])[0]
    return target if is_valid_url(target) else url


def _absolutize(href: str) -> str:
    if href.startswith("//"):
        return f"https:{href}"
    if href.startswith("/"):
        return f"https://{ENGINE_DOMAIN}{href}"
    return href


def _clean(text: str | None) -> str | None:
    cleaned = re.sub(r"\s+", " ", text or "").strip()
    return cleaned or None


def unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        value = value.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def parse_serp(html: str, max_urls: int, *, lite: bool = False) -> SerpPage:
    """Result anchors from a DuckDuckGo HTML or lite results page, deduplicated before the cap."""
    soup = BeautifulSoup(html or "", "html.parser")
    if lite:
        blocked = bool(_CHALLENGE_RE.search(html or "")) and not re.search(r"\bhref=\"https?://", html or "", re.IGNORECASE)
    else:
        blocked = bool(_CHALLENGE_RE.search(html or "")) and "result__a" not in (html or "")

    hits: list[SearchHit] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        if len(hits) >= max_urls:
            break
        raw = str(anchor["href"]).strip()
        if not lite:
            classes = " ".join(anchor.get("class") or []).lower()
            looks_like_result = any(name in classes for name in RESULT_ANCHOR_CLASSES)
            if not looks_like_result and "duckduckgo.com/l/" not in raw and "uddg=" not in raw:
                continue
        href = decode_redirect(_absolutize(raw))
        if not is_valid_url(href) or is_engine_host(href) or href in seen:
            continue
        seen.add(href)

        snippet = None
        container = anchor.find_parent("div", class_="result")
        if container is not None:
            snippet_tag = container.find(class_="result__snippet")
            snippet = _clean(snippet_tag.get_text(" ", strip=True)) if snippet_tag else None
        hits.append(
            SearchHit(
                url=href,
                title=_clean(anchor.get_text(" ", strip=True)),
                snippet=snippet,
                source="lite" if lite else "html",
            )
        )

    return SerpPage(hits=hits, result_count=len(hits), blocked=blocked)


def collect_instant_answer_urls(payload: dict) -> list[str]:
    """AbstractURL plus every FirstURL in RelatedTopics, walking nested Topics."""
    urls: list[str] = []
    abstract = payload.get("AbstractURL")
    if isinstance(abstract, str) and is_valid_url(abstract):
        urls.append(abstract)

    def walk(node) -> None:
        if not isinstance(node, dict):
            return
        first = node.get("FirstURL")
        if isinstance(first, str) and is_valid_url(first):
            urls.append(first)
        for child in node.get("Topics") or []:
            walk(child)

    related = payload.get("RelatedTopics")
    if isinstance(related, list):
        for item in related:
            walk(item)
    return unique(urls)


def tokenize_for_match(text: str) -> list[str]:
    raw = re.sub(r"[\W_]+", " ", (text or "").lower()).strip()
    return [w for w in raw.split() if len(w) >= 3 and w not in MATCH_STOPWORDS]


def parse_age_seconds(text: str) -> int | None:
    """Age hinted by phrases like "3 hours ago" or "il y a 2 jours"."""
    s = (text or "").lower()
    if not s.strip():
        return None
    if _YESTERDAY_RE.search(s):
        return 86400
    match = _AGE_RE.search(s)
    if not match:
        return None
    count = int(match.group(1))
    if count <= 0:
        return None
    unit = match.group(2)
    for prefix, seconds in _AGE_UNITS:
        if unit.startswith(prefix):
            return count * seconds
    return None


def score_hit(query: str, hit: SearchHit, *, year: int | None = None) -> float:
    """Query-token overlap, plus bonuses for fresh snippets and current-year mentions."""
    text = f"{hit.title or ''} {hit.snippet or ''}"
    haystack = f"{text} {hit.url}".lower()
    score = float(sum(1 for token in tokenize_for_match(query) if token in haystack))

    age = parse_age_seconds(text)
    if age is not None:
        score += max(0.0, 6 - math.log10(max(60, age)))

    year = year or datetime.now(timezone.utc).year
    if re.search(rf"\b{year}\b", haystack):
        score += 1.5
    if re.search(rf"\b{year - 1}\b", haystack):
        score += 0.8
    return score


def rank_hits(query: str, hits: list[SearchHit]) -> list[SearchHit]:
    """Stable sort by score, so ties keep provider order."""
    scored = [(score_hit(query, hit), i, hit) for i, hit in enumerate(hits)]
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [hit for _, _, hit in scored]


def wikipedia_host(ui_language: str | None) -> str:
    lang = (ui_language or "").strip().lower()[:2]
    return WIKIPEDIA_HOSTS.get(lang, WIKIPEDIA_HOSTS["en"])


async def search_wikipedia(
    client: httpx.AsyncClient,
    query: str,
    *,
    ui_language: str | None = None,
    max_urls: int = WIKIPEDIA_MAX_URLS,
    timeout_s: float = 5.0,
) -> list[SearchHit]:
    """Article hits from the Wikipedia search API, in the UI language (fr or en)."""
    q = (query or "").strip()
    if not q or max_urls <= 0:
        return []
    host = wikipedia_host(ui_language)
    params = {
        "action": "query",
        "list": "search",
        "srsearch": q,
        "utf8": "1",
        "format": "json",
        "srlimit": str(min(8, max(3, max_urls))),
    }
    try:
        response = await client.get(f"https://{host}/w/api.php", params=params, headers=API_HEADERS, timeout=timeout_s)
    except httpx.HTTPError as exc:
        logger.debug(f"Wikipedia search failed: {exc!r}")
        return []
    if response.status_code >= 400:
        return []
    try:
        payload = response.json()
    except ValueError:
        return []

    items = (payload.get("query") or {}).get("search") if isinstance(payload, dict) else None
    hits: list[SearchHit] = []
    for item in items if isinstance(items, list) else []:
        title = item.get("title") if isinstance(item, dict) else None
        if not isinstance(title, str) or not title.strip():
            continue
        snippet_html = item.get("snippet") if isinstance(item.get("snippet"), str) else ""
        snippet = _clean(BeautifulSoup(snippet_html, "html.parser").get_text(" ", strip=True))
        slug = re.sub(r"\s+", "_", title.strip())
        page_url = f"https://{host}/wiki/{quote(slug, safe='')}"
        hits.append(SearchHit(url=page_url, title=title.strip(), snippet=snippet, source="wikipedia"))
        if len(hits) >= max_urls:
            break
    return hits


async def _fetch_serp(
    client: httpx.AsyncClient,
    endpoint: str,
    query: str,
    *,
    max_urls: int,
    timeout_s: float,
    date_filter: str | None,
    lite: bool = False,
) -> SerpPage:
    params = {"q": query}
    if date_filter:
        params["df"] = date_filter
    try:
        response = await client.get(endpoint, params=params, headers=SERP_HEADERS, timeout=timeout_s)
    except httpx.HTTPError as exc:
        logger.debug(f"Search page request failed ({endpoint}): {exc!r}")
        return SerpPage()
    if response.status_code >= 400:
        return SerpPage(blocked=response.status_code in (403, 429), status=response.status_code)
    page = parse_serp(response.text, max_urls, lite=lite)
    page.status = response.status_code
    return page


async def _fetch_instant_answer(client: httpx.AsyncClient, query: str, *, timeout_s: float) -> tuple[list[str], int]:
    params = {"q": query, "format": "json", "no_redirect": "1", "no_html": "1", "skip_disambig": "0"}
    try:
        response = await client.get(INSTANT_ANSWER_ENDPOINT, params=params, headers=API_HEADERS, timeout=timeout_s)
    except httpx.HTTPError as exc:
        logger.debug(f"Instant answer request failed: {exc!r}")
        return [], 0
    if response.status_code >= 400:
        return [], response.status_code
    try:
        payload = response.json()
    except ValueError:
        return [], response.status_code
    if not isinstance(payload, dict):
        return [], response.status_code
    return collect_instant_answer_urls(payload), response.status_code


async def search_web_urls(
    query: str,
    *,
    max_urls: int | None = None,
    timeout_s: float | None = None,
    ui_language: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> WebSearchResult:
    """DuckDuckGo results, then Wikipedia articles ranked against the query, deduplicated and capped.

    Never raises for network failures: an empty result with diagnostics is returned instead.
    """
    q = (query or "").strip()
    if not q:
        return WebSearchResult(query=query, fetched_at=utc_now())

    max_urls = max(0, max_urls if max_urls is not None else settings.search_result_count)
    timeout_s = timeout_s if timeout_s is not None else settings.search_timeout_s

    if client is None:
        async with httpx.AsyncClient(follow_redirects=True) as owned:
            return await _search(owned, q, max_urls, timeout_s, ui_language)
    return await _search(client, q, max_urls, timeout_s, ui_language)


async def _search(
    client: httpx.AsyncClient,
    query: str,
    max_urls: int,
    timeout_s: float,
    ui_language: str | None,
) -> WebSearchResult:
    page_timeout = max(2.0, timeout_s * 0.75)
    date_filter = infer_date_filter(query)
    html, (ia_urls, ia_status), wiki = await asyncio.gather(
        _fetch_serp(client, HTML_ENDPOINT, query, max_urls=max_urls, timeout_s=page_timeout, date_filter=date_filter),
        _fetch_instant_answer(client, query, timeout_s=timeout_s),
        search_wikipedia(
            client,
            query,
            ui_language=ui_language,
            max_urls=min(WIKIPEDIA_MAX_URLS, max_urls),
            timeout_s=max(2.0, timeout_s * 0.7),
        ),
    )

    lite = SerpPage()
    used_lite = not html.urls or html.blocked
    if used_lite:
        lite = await _fetch_serp(
            client,
            LITE_ENDPOINT,
            query,
            max_urls=max_urls,
            timeout_s=page_timeout,
            date_filter=date_filter,
            lite=True,
        )

    # engine hits keep their order: results page, then instant answer
    by_url: dict[str, SearchHit] = {}
    for hit in [*html.hits, *lite.hits, *(SearchHit(url=u, source="instant_answer") for u in ia_urls)]:
        if hit.url not in by_url and not is_engine_host(hit.url) and len(by_url) < max_urls:
            by_url[hit.url] = hit
    # Wikipedia hits are ranked against the query and fill the remaining slots
    for hit in rank_hits(query, wiki):
        if hit.url not in by_url:
            by_url[hit.url] = hit

    hits = list(by_url.values())
    scraped_any = bool(html.urls or lite.urls)
    diagnostics = WebSearchDiagnostics(
        blocked=(html.blocked or lite.blocked) and not scraped_any,
        result_count=html.result_count + lite.result_count,
        html_status=html.status,
        instant_answer_status=ia_status,
        used_lite_fallback=used_lite,
        wikipedia_count=len(wiki),
    )
    urls = [hit.url for hit in hits][:max_urls]
    logger.info(
        f"Web search '{query[:80]}': {len(urls)} urls "
        f"(html={len(html.urls)}, lite={len(lite.urls)}, ia={len(ia_urls)}, wiki={len(wiki)}, "
        f"blocked={diagnostics.blocked})"
    )
    return WebSearchResult(query=query, fetched_at=utc_now(), urls=urls, results=hits, diagnostics=diagnostics)
