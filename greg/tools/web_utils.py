from __future__ import annotations

import ipaddress
import re
import unicodedata
from urllib.parse import urljoin, urlsplit, urlunsplit

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "User-Agent": BROWSER_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9,fr;q=0.8",
}

_FULL_URL_RE = re.compile(r"https?://[^\s<>\"'\)\]\x0b]+", re.IGNORECASE)
_BARE_DOMAIN_RE = re.compile(
    r"\b((?:www\.)?(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,24}(?:/[^\s<>\"'\)\]\x0b]*)?)",
    re.IGNORECASE,
)
_TRAILING_PUNCT_RE = re.compile(r"[.,;:!?\)\]]+$")
_NON_WEB_SCHEMES = {"mailto", "javascript", "data", "tel", "ftp", "file", "about", "blob"}

# "main.py" or "notes.md" in a chat message is a file name, not a site.
_FILE_LIKE_SUFFIXES = {
    "py", "js", "ts", "tsx", "jsx", "md", "txt", "json", "yml", "yaml", "toml", "lock",
    "sh", "css", "html", "htm", "csv", "log", "ini", "cfg", "exe", "dll", "zip", "png",
    "jpg", "jpeg", "gif", "svg", "pdf", "docx", "xlsx", "rs", "go", "java", "rb", "php",
}


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlsplit(url)
    except ValueError:
        return False
    return result.scheme in ("http", "https") and bool(result.netloc)


def normalize_url(raw: str) -> str:
    """Normalize user input to an absolute http(s) URL; bare domains get https.

    Raises ValueError for empty input or a non-web scheme.
    """
    value = (raw or "").strip()
    if not value:
        raise ValueError("Empty URL")
    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https") or not parts.netloc:
        if "://" in value or scheme in _NON_WEB_SCHEMES:
            raise ValueError("Only http/https URLs are supported")
        parts = urlsplit(f"https://{value}")
        scheme = "https"
    host = (parts.hostname or "").lower()
    if not host:
        raise ValueError(f"Invalid URL: {raw}")
    netloc = f"{host}:{parts.port}" if parts.port else host
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, parts.fragment))


def absolute_url(base_url: str, href: str) -> str | None:
    href = (href or "").strip()
    if not href or href.startswith(("javascript:", "mailto:", "tel:", "data:", "#")):
        return None
    try:
        resolved = urljoin(base_url, href)
    except ValueError:
        return None
    return resolved if is_valid_url(resolved) else None


def extract_domain(url: str) -> str:
    """Lower-cased host without a leading www."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def host_matches(host: str, domain: str) -> bool:
    host = (host or "").lower()
    return host == domain or host.endswith("." + domain)


def extract_urls_from_text(text: str) -> list[str]:
    """Find http(s) URLs and bare domains in free text, deduplicated in order of appearance."""
    text = text or ""
    found: list[str] = []
    seen: set[str] = set()
    spans: list[tuple[int, int]] = []

    def add(candidate: str) -> None:
        try:
            url = normalize_url(candidate)
        except ValueError:
            return
        if "." not in (urlsplit(url).hostname or ""):
            return
        if url not in seen:
            seen.add(url)
            found.append(url)

    for match in _FULL_URL_RE.finditer(text):
        spans.append(match.span())
        add(_TRAILING_PUNCT_RE.sub("", match.group(0)))

    for match in _BARE_DOMAIN_RE.finditer(text):
        start = match.start(1)
        if any(s <= start < e for s, e in spans):
            continue
        if start > 0 and text[start - 1] in "@/:.":
            continue
        raw = _TRAILING_PUNCT_RE.sub("", match.group(1))
        if "/" not in raw and not raw.lower().startswith("www."):
            suffix = raw.rsplit(".", 1)[-1].lower()
            if suffix in _FILE_LIKE_SUFFIXES:
                continue
        add(raw)

    return found


def is_private_host(host: str) -> bool:
    """True for loopback, link-local, private ranges and local-only names."""
    host = (host or "").strip().lower().strip("[]")
    if not host:
        return True
    if host == "localhost" or host.endswith((".localhost", ".local", ".internal", ".lan")):
        return True
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_multicast or ip.is_unspecified


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def truncate_text(text: str, max_chars: int) -> tuple[str, bool]:
    """Cut ``text`` to at most ``max_chars`` characters, ellipsis included.

    Prefers a whitespace boundary near the cut. Returns ``(text, truncated)``.
    """
    text = text or ""
    if max_chars <= 0:
        return "", bool(text)
    if len(text) <= max_chars:
        return text, False
    if max_chars == 1:
        return "…", True
    cut = text[: max_chars - 1]
    boundary = cut.rfind(" ")
    if boundary >= int(len(cut) * 0.8):
        cut = cut[:boundary]
    return cut.rstrip() + "…", True
