"""RSS/Atom discovery and YouTube channel feeds."""
from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Tag

from greg.tools.web_utils import absolute_url, is_valid_url

FEED_ACCEPT = "application/atom+xml,application/rss+xml,application/xml,text/xml;q=0.9,*/*;q=0.8"
YOUTUBE_FEED_URL = "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"
FEED_TYPE_MARKERS = ("rss", "atom", "xml")

_CHANNEL_ID_RES = (
    re.compile(r"\"channelId\"\s*:\s*\"(UC[0-9A-Za-z_-]{16,})\""),
    re.compile(r"\"externalId\"\s*:\s*\"(UC[0-9A-Za-z_-]{16,})\""),
)
_YOUTUBE_CHANNEL_PATH_RE = re.compile(r"^/(?:@[^/]+|channel/UC[0-9A-Za-z_-]+)(?:/|$)", re.IGNORECASE)


@dataclass(slots=True)
class FeedEntry:
    title: str
    url: str
    published: str | None = None


def _text(tag: Tag | None) -> str:
    if tag is None:
        return ""
    return re.sub(r"\s+", " ", tag.get_text(" ", strip=True)).strip()


def _rel_values(tag: Tag) -> list[str]:
    rel = tag.get("rel")
    if isinstance(rel, str):
        rel = rel.split()
    return [value.lower() for value in rel or []]


def discover_feed_url(page_url: str, html: str) -> str | None:
    """First ``<link rel="alternate">`` with an rss/atom/xml type."""
    soup = BeautifulSoup(html or "", "html.parser")
    for link in soup.find_all("link", href=True):
        if "alternate" not in _rel_values(link):
            continue
        kind = str(link.get("type") or "").lower()
        if not any(marker in kind for marker in FEED_TYPE_MARKERS):
            continue
        resolved = absolute_url(page_url, str(link["href"]).strip())
        if resolved:
            return resolved
    return None


def _atom_link(entry: Tag) -> str:
    fallback = ""
    for link in entry.find_all("link", recursive=False):
        href = str(link.get("href") or "").strip()
        if not href:
            continue
        rel = _rel_values(link)
        if not rel or "alternate" in rel:
            return href
        fallback = fallback or href
    return fallback


def parse_atom(soup: BeautifulSoup, max_entries: int) -> list[FeedEntry]:
    entries: list[FeedEntry] = []
    for entry in soup.find_all("entry"):
        title = _text(entry.find("title", recursive=False))
        published = _text(entry.find("published", recursive=False) or entry.find("updated", recursive=False)) or None
        link = _atom_link(entry)
        if not title or not is_valid_url(link):
            continue
        entries.append(FeedEntry(title=title, url=link, published=published))
        if len(entries) >= max_entries:
            break
    return entries


def parse_rss(soup: BeautifulSoup, max_entries: int) -> list[FeedEntry]:
    items: list[FeedEntry] = []
    for item in soup.find_all("item"):
        title = _text(item.find("title", recursive=False))
        published = _text(item.find("pubDate", recursive=False) or item.find("dc:date", recursive=False)) or None
        link = _text(item.find("link", recursive=False))
        if not title or not is_valid_url(link):
            continue
        items.append(FeedEntry(title=title, url=link, published=published))
        if len(items) >= max_entries:
            break
    return items


def parse_feed(xml: str, max_entries: int = 12) -> list[FeedEntry]:
    soup = BeautifulSoup(xml or "", "xml")
    return parse_atom(soup, max_entries) or parse_rss(soup, max_entries)


def youtube_channel_feed_url(page_url: str, html: str) -> str | None:
    """Feed URL for a YouTube channel page, when the channel id is present in the HTML."""
    parts = urlsplit(page_url)
    if (parts.hostname or "").lower() not in ("www.youtube.com", "youtube.com", "m.youtube.com"):
        return None
    if not _YOUTUBE_CHANNEL_PATH_RE.match(parts.path or "/"):
        return None
    for pattern in _CHANNEL_ID_RES:
        match = pattern.search(html or "")
        if match:
            return YOUTUBE_FEED_URL.format(channel_id=match.group(1))
    return None


def format_feed_entries(header_lines: list[str], heading: str, entries: list[FeedEntry]) -> str:
    lines = [*header_lines, heading]
    for entry in entries:
        when = f" ({entry.published})" if entry.published else ""
        lines.append(f"- {entry.title}{when}: {entry.url}")
    return "\n".join(lines)
