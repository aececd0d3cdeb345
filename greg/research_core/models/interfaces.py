from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SourceKind(str, Enum):
    ARTICLE = "article"
    NEWS = "news"
    VIDEO = "video"
    LIVE = "live"
    PODCAST = "podcast"
    AUDIO = "audio"
    IMAGE = "image"
    GALLERY = "gallery"
    DOCUMENT = "document"
    DOCS = "docs"
    WIKI = "wiki"
    SOCIAL = "social"
    FORUM = "forum"
    REPO = "repo"
    PACKAGE = "package"
    DATASET = "dataset"
    PAPER = "paper"
    BOOK = "book"
    COURSE = "course"
    JOB = "job"
    EVENT = "event"
    RECIPE = "recipe"
    PRODUCT = "product"
    PRICING = "pricing"
    SUPPORT = "support"
    DOWNLOAD = "download"
    MAP = "map"
    TOOL = "tool"
    PROFILE = "profile"
    ORGANIZATION = "organization"
    GENERIC = "generic"


@dataclass(slots=True)
class FetchResult:
    url: str
    final_url: str
    status_code: int
    content_type: str
    body: str
    note: str | None = None


@dataclass(slots=True)
class StructuredFacts:
    types: list[str] = field(default_factory=list)
    headline: str | None = None
    author: str | None = None
    published: str | None = None
    modified: str | None = None


@dataclass(slots=True)
class PageMeta:
    title: str | None = None
    description: str | None = None
    canonical: str | None = None
    site_name: str | None = None
    lang: str | None = None
    og_title: str | None = None
    og_description: str | None = None
    og_image: str | None = None
    og_type: str | None = None
    twitter_card: str | None = None


@dataclass(slots=True)
class Link:
    url: str
    text: str | None = None


@dataclass(slots=True)
class SourceDocument:
    requested_url: str
    normalized_url: str
    http_status: int
    content_type: str
    fetched_at: str
    extraction_note: str | None = None
    title: str | None = None
    description: str | None = None
    site_name: str | None = None
    canonical_url: str | None = None
    og_image: str | None = None
    kind: SourceKind = SourceKind.GENERIC
    structured_facts: StructuredFacts = field(default_factory=StructuredFacts)
    headings: list[str] = field(default_factory=list)
    body_text: str = ""
    outbound_links: list[Link] = field(default_factory=list)
    truncated: bool = False
    extracted_via: str = "none"


@dataclass(slots=True)
class SearchHit:
    url: str
    title: str | None = None
    snippet: str | None = None
    source: str = "html"  # html | lite | instant_answer | wikipedia


@dataclass(slots=True)
class WebSearchDiagnostics:
    blocked: bool = False
    result_count: int = 0
    html_status: int = 0
    instant_answer_status: int = 0
    used_lite_fallback: bool = False
    wikipedia_count: int = 0


@dataclass(slots=True)
class WebSearchResult:
    query: str
    fetched_at: str
    urls: list[str] = field(default_factory=list)
    results: list[SearchHit] = field(default_factory=list)
    diagnostics: WebSearchDiagnostics = field(default_factory=WebSearchDiagnostics)


@dataclass(slots=True)
class ImageCandidate:
    image_url: str
    page_url: str | None = None
    title: str | None = None
    source: str = "unknown"  # ddg | openverse | wikipedia | commons


@dataclass(slots=True)
class ValidatedImage:
    image_url: str
    final_url: str
    content_type: str
    page_url: str | None = None
    title: str | None = None
    source: str = "unknown"
