"""Infer a SourceKind from content-type, structured data, URL shape and embed metadata."""
from __future__ import annotations

import re
from urllib.parse import urlsplit

from greg.research_core.models.interfaces import SourceKind

K = SourceKind

# Checked in order; first match wins.
CONTENT_TYPE_RULES: list[tuple[str, SourceKind]] = [
    ("image/", K.IMAGE),
    ("audio/", K.AUDIO),
    ("video/", K.VIDEO),
    ("application/pdf", K.DOCUMENT),
    ("application/epub", K.BOOK),
    ("application/json", K.DATASET),
]

# Schema.org types, matched by suffix since many pages use full type URLs.
SCHEMA_TYPE_RULES: list[tuple[tuple[str, ...], SourceKind]] = [
    (("VideoObject",), K.VIDEO),
    (("BroadcastEvent", "LiveBlogPosting"), K.LIVE),
    (("PodcastEpisode", "PodcastSeries"), K.PODCAST),
    (("AudioObject", "MusicRecording", "MusicAlbum"), K.AUDIO),
    (("ImageObject",), K.IMAGE),
    (("Recipe",), K.RECIPE),
    (("NewsArticle",), K.NEWS),
    (("ScholarlyArticle",), K.PAPER),
    (("Article", "BlogPosting", "TechArticle"), K.ARTICLE),
    (("Dataset",), K.DATASET),
    (("Book",), K.BOOK),
    (("Course", "CourseInstance"), K.COURSE),
    (("JobPosting",), K.JOB),
    (("Event",), K.EVENT),
    (("Product",), K.PRODUCT),
    (("SoftwareApplication", "WebApplication", "MobileApplication"), K.TOOL),
    (("FAQPage", "HowTo"), K.DOCS),
    (("QAPage", "DiscussionForumPosting"), K.FORUM),
    (("Person",), K.PROFILE),
    (("Organization",), K.ORGANIZATION),
]

EXTENSION_RULES: list[tuple[frozenset[str], SourceKind]] = [
    (frozenset({"jpg", "jpeg", "png", "gif", "webp", "avif", "svg"}), K.IMAGE),
    (frozenset({"mp3", "wav", "m4a", "aac", "ogg", "flac"}), K.AUDIO),
    (frozenset({"mp4", "webm", "mov", "mkv"}), K.VIDEO),
    (frozenset({"pdf"}), K.DOCUMENT),
    (frozenset({"zip", "rar", "7z", "tar", "gz", "bz2", "exe", "msi", "dmg", "pkg", "apk"}), K.DOWNLOAD),
]

# Exact hosts (www. stripped) and domain suffixes.
HOST_RULES: list[tuple[tuple[str, ...], SourceKind]] = [
    (("youtube.com", "youtu.be", "m.youtube.com", "vimeo.com", "player.vimeo.com", "tiktok.com"), K.VIDEO),
    (("reddit.com", "old.reddit.com", "x.com", "twitter.com", "bsky.app"), K.SOCIAL),
    (("news.ycombinator.com", "stackoverflow.com", "discord.com", "discourse.org"), K.FORUM),
    (("npmjs.com", "pypi.org", "rubygems.org", "crates.io"), K.PACKAGE),
    (("arxiv.org", "doi.org"), K.PAPER),
    (("zenodo.org", "kaggle.com", "data.world"), K.DATASET),
    (("maps.google.com", "openstreetmap.org"), K.MAP),
    (("wikipedia.org",), K.WIKI),
]
HOST_SUFFIX_RULES: list[tuple[tuple[str, ...], SourceKind]] = [
    ((".bsky.app",), K.SOCIAL),
    (("stackexchange.com",), K.FORUM),
    ((".acm.org", ".ieee.org"), K.PAPER),
    ((".data.gov",), K.DATASET),
    ((".wikipedia.org",), K.WIKI),
]

PATH_RULES: list[tuple[re.Pattern[str], SourceKind]] = [
    (re.compile(rf"(^|/)({words})(/|$)"), kind)
    for words, kind in [
        ("docs|documentation|guide|guides|manual|reference", K.DOCS),
        ("wiki", K.WIKI),
        ("blog|posts", K.ARTICLE),
        ("news", K.NEWS),
        ("jobs|careers", K.JOB),
        ("events", K.EVENT),
        ("pricing", K.PRICING),
        ("support|help|faq", K.SUPPORT),
        ("download|downloads|releases", K.DOWNLOAD),
        ("podcast|podcasts|episode|episodes", K.PODCAST),
        ("course|courses|learn", K.COURSE),
        ("dataset|datasets", K.DATASET),
        ("product|products|shop|store", K.PRODUCT),
        ("recipe|recipes", K.RECIPE),
    ]
]


def _from_content_type(content_type: str) -> SourceKind | None:
    for needle, kind in CONTENT_TYPE_RULES:
        if content_type.startswith(needle) or (needle.startswith("application/") and needle in content_type):
            return kind
    return None


def _from_schema_types(types: list[str]) -> SourceKind | None:
    lowered = [t.strip().lower() for t in types if t and t.strip()]
    for suffixes, kind in SCHEMA_TYPE_RULES:
        if any(t.endswith(s.lower()) for s in suffixes for t in lowered):
            return kind
    return None


def _from_url(url: str, title: str) -> SourceKind | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.hostname:
        return None
    host = parts.hostname.lower()
    if host.startswith("www."):
        host = host[4:]
    path = parts.path.lower()
    segments = [s for s in path.split("/") if s.strip()]

    ext_match = re.search(r"\.([a-z0-9]{2,6})$", path)
    if ext_match:
        ext = ext_match.group(1)
        for extensions, kind in EXTENSION_RULES:
            if ext in extensions:
                return kind

    if host in ("github.com", "gitlab.com"):
        return K.REPO if len(segments) >= 2 else K.GENERIC
    if host == "google.com" and segments[:1] == ["maps"]:
        return K.MAP
    for hosts, kind in HOST_RULES:
        if host in hosts:
            return kind
    for suffixes, kind in HOST_SUFFIX_RULES:
        if host.endswith(suffixes):
            return kind

    for pattern, kind in PATH_RULES:
        if pattern.search(path):
            return kind
    if "recipe" in title or "recette" in title:
        return K.RECIPE
    if "faq" in title:
        return K.DOCS
    return None


def _from_embed_meta(og_type: str, twitter_card: str, title: str) -> SourceKind | None:
    if "video" in og_type or twitter_card == "player":
        return K.VIDEO
    if "music" in og_type or "audio" in og_type:
        return K.AUDIO
    if "article" in og_type:
        return K.ARTICLE
    if "product" in og_type:
        return K.PRODUCT
    if "profile" in og_type:
        return K.PROFILE
    if twitter_card == "summary_large_image" and title:
        return K.ARTICLE
    return None


def classify_source(
    url: str,
    *,
    content_type: str | None = None,
    structured_types: list[str] | None = None,
    og_type: str | None = None,
    twitter_card: str | None = None,
    title: str | None = None,
) -> SourceKind:
    """Pick exactly one kind: content-type > structured data > URL/path > embed metadata > generic."""
    title_l = (title or "").lower()
    return (
        _from_content_type((content_type or "").lower())
        or _from_schema_types(structured_types or [])
        or _from_url(url, title_l)
        or _from_embed_meta((og_type or "").lower(), (twitter_card or "").lower(), title_l)
        or K.GENERIC
    )
