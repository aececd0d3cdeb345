"""Page metadata and JSON-LD facts."""
from __future__ import annotations

import json
from typing import Any

from bs4 import BeautifulSoup

from greg.research_core.models.interfaces import PageMeta, StructuredFacts
from greg.tools.web_utils import absolute_url

# Containers that hold nested entities worth visiting.
JSONLD_CONTAINERS = ("@graph", "mainEntity", "itemListElement")


def _as_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


class JsonLdVisitor:
    """Recursive-descent walk over JSON-LD: arrays, objects and their known containers.

    The first non-empty value wins for each fact; missing fields are ignored.
    """

    max_depth = 12

    def __init__(self) -> None:
        self.facts = StructuredFacts()

    def visit(self, node: Any, depth: int = 0) -> None:
        if depth > self.max_depth or node is None:
            return
        if isinstance(node, list):
            for item in node:
                self.visit(item, depth + 1)
        elif isinstance(node, dict):
            self.visit_object(node, depth)

    def visit_object(self, obj: dict[str, Any], depth: int) -> None:
        self._add_types(obj.get("@type"))
        facts = self.facts
        if facts.headline is None:
            facts.headline = _as_string(obj.get("headline")) or _as_string(obj.get("name"))
        if facts.author is None:
            facts.author = self.author_name(obj.get("author"))
        if facts.published is None:
            facts.published = _as_string(obj.get("datePublished")) or _as_string(obj.get("uploadDate"))
        if facts.modified is None:
            facts.modified = _as_string(obj.get("dateModified")) or _as_string(obj.get("dateUpdated"))
        for key in JSONLD_CONTAINERS:
            if obj.get(key):
                self.visit(obj[key], depth + 1)

    def _add_types(self, value: Any) -> None:
        if isinstance(value, str):
            value = value.strip()
            if value and value not in self.facts.types:
                self.facts.types.append(value)
        elif isinstance(value, list):
            for item in value:
                self._add_types(item)

    @classmethod
    def author_name(cls, author: Any) -> str | None:
        if isinstance(author, str):
            return _as_string(author)
        if isinstance(author, list):
            for item in author:
                name = cls.author_name(item)
                if name:
                    return name
            return None
        if isinstance(author, dict):
            return _as_string(author.get("name"))
        return None


def _meta(soup: BeautifulSoup, *, name: str | None = None, prop: str | None = None, itemprop: str | None = None) -> str | None:
    if prop:
        tag = soup.find("meta", attrs={"property": prop})
    elif itemprop:
        tag = soup.find("meta", attrs={"itemprop": itemprop})
    else:
        tag = soup.find("meta", attrs={"name": name})
    if tag is None:
        return None
    return _as_string(tag.get("content"))


def extract_structured_facts(soup: BeautifulSoup) -> StructuredFacts:
    """Meta/microdata dates and author take priority; JSON-LD fills the gaps."""
    visitor = JsonLdVisitor()
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text() or ""
        if not raw.strip():
            continue
        try:
            visitor.visit(json.loads(raw))
        except json.JSONDecodeError:
            continue
    ld = visitor.facts

    published = (
        _meta(soup, prop="article:published_time")
        or _meta(soup, prop="og:article:published_time")
        or _meta(soup, itemprop="datePublished")
        or _meta(soup, itemprop="uploadDate")
        or _meta(soup, name="date")
    )
    modified = (
        _meta(soup, prop="article:modified_time")
        or _meta(soup, prop="og:article:modified_time")
        or _meta(soup, itemprop="dateModified")
        or _meta(soup, name="last-modified")
    )
    author = _meta(soup, name="author") or _meta(soup, itemprop="author")

    return StructuredFacts(
        types=ld.types,
        headline=ld.headline,
        author=author or ld.author,
        published=published or ld.published,
        modified=modified or ld.modified,
    )


def extract_page_meta(soup: BeautifulSoup, base_url: str) -> PageMeta:
    title_tag = soup.find("title")
    title = _as_string(title_tag.get_text(" ", strip=True)) if title_tag else None
    canonical = None
    link = soup.find("link", rel=lambda v: v and "canonical" in (v if isinstance(v, list) else [v]))
    if link is not None and link.get("href"):
        canonical = absolute_url(base_url, link["href"])
    og_image = _meta(soup, prop="og:image")
    html_tag = soup.find("html")
    return PageMeta(
        title=title or _meta(soup, prop="og:title"),
        description=_meta(soup, name="description") or _meta(soup, prop="og:description"),
        canonical=canonical,
        site_name=_meta(soup, prop="og:site_name"),
        lang=_as_string(html_tag.get("lang")) if html_tag is not None else None,
        og_title=_meta(soup, prop="og:title"),
        og_description=_meta(soup, prop="og:description"),
        og_image=absolute_url(base_url, og_image) if og_image else None,
        og_type=_meta(soup, prop="og:type"),
        twitter_card=_meta(soup, name="twitter:card"),
    )
