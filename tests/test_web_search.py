from __future__ import annotations

import json

import httpx
import pytest

from greg.research_core.models.interfaces import SearchHit
from greg.tools.web_search import (
    collect_instant_answer_urls,
    decode_redirect,
    infer_date_filter,
    parse_age_seconds,
    parse_serp,
    rank_hits,
    score_hit,
    search_web_urls,
    tokenize_for_match,
)

HTML_SERP = """<html><body>
<a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fwww.toureiffel.paris%2Ffr&rut=x">Tour Eiffel</a>
<a class="result__a" href="https://fr.wikipedia.org/wiki/Tour_Eiffel">Wikipedia</a>
<a class="result__url" href="https://fr.wikipedia.org/wiki/Tour_Eiffel">dup</a>
<a href="https://example.com/ad">not a result</a>
<a class="result__a" href="https://duckduckgo.com/settings">engine</a>
</body></html>"""

LITE_SERP = """<html><body><table>
<tr><td><a rel="nofollow" href="https://lite-result.example.org/page">Lite result</a></td></tr>
</table></body></html>"""

CHALLENGE = "<html><body>Please verify you are not a bot.</body></html>"

INSTANT_ANSWER = {
    "AbstractURL": "https://en.wikipedia.org/wiki/Eiffel_Tower",
    "RelatedTopics": [
        {"FirstURL": "https://duckduckgo.com/Champ_de_Mars"},
        {"Name": "Group", "Topics": [{"FirstURL": "https://www.toureiffel.paris/fr"}]},
    ],
}


def make_client(*, html=HTML_SERP, html_status=200, lite=LITE_SERP, ia=None, wiki=None, seen=None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        host = request.url.host
        if host == "html.duckduckgo.com":
            return httpx.Response(html_status, text=html)
        if host == "lite.duckduckgo.com":
            return httpx.Response(200, text=lite)
        if host == "api.duckduckgo.com":
            return httpx.Response(200, text=json.dumps(ia or {}))
        if host.endswith(".wikipedia.org"):
            return httpx.Response(200, text=json.dumps(wiki or {}))
        raise AssertionError(f"unexpected host {host}")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("weather paris today", "d"),
        ("horaires aujourd'hui", "d"),
        ("latest python release", "w"),
        ("actualités Lyon", "w"),
        ("budget 2026", "y"),
        ("eiffel tower height", None),
        ("", None),
    ],
)
def test_infer_date_filter(query, expected):
    assert infer_date_filter(query) == expected


def test_decode_redirect():
    wrapped = "https://duckduckgo.com/l/?uddg=https%3A%2F%2Fexample.com%2Fa&rut=1"
    assert decode_redirect(wrapped) == "https://example.com/a"
    assert decode_redirect("https://example.com/l/?uddg=x") == "https://example.com/l/?uddg=x"


def test_parse_serp_keeps_result_anchors_only():
    page = parse_serp(HTML_SERP, 10)
    assert page.urls == ["https://www.toureiffel.paris/fr", "https://fr.wikipedia.org/wiki/Tour_Eiffel"]
    assert not page.blocked


def test_parse_serp_detects_challenge():
    assert parse_serp(CHALLENGE, 10).blocked
    assert parse_serp(CHALLENGE, 10, lite=True).blocked
    assert not parse_serp(LITE_SERP, 10, lite=True).blocked


def test_collect_instant_answer_urls_walks_nested_topics():
    assert collect_instant_answer_urls(INSTANT_ANSWER) == [
        "https://en.wikipedia.org/wiki/Eiffel_Tower",
        "https://duckduckgo.com/Champ_de_Mars",
        "https://www.toureiffel.paris/fr",
    ]


@pytest.mark.asyncio
async def test_search_merges_dedupes_and_drops_engine_urls():
    async with make_client(ia=INSTANT_ANSWER) as client:
        result = await search_web_urls("Eiffel Tower", max_urls=10, client=client)

    assert result.urls == [
        "https://www.toureiffel.paris/fr",
        "https://fr.wikipedia.org/wiki/Tour_Eiffel",
        "https://en.wikipedia.org/wiki/Eiffel_Tower",
    ]
    assert [hit.source for hit in result.results] == ["html", "html", "instant_answer"]
    assert not any("duckduckgo.com" in url for url in result.urls)
    assert not result.diagnostics.used_lite_fallback
    assert result.diagnostics.html_status == 200


@pytest.mark.asyncio
async def test_search_caps_results():
    async with make_client(ia=INSTANT_ANSWER) as client:
        result = await search_web_urls("Eiffel Tower", max_urls=1, client=client)

    assert result.urls == ["https://www.toureiffel.paris/fr"]


@pytest.mark.asyncio
async def test_challenge_page_falls_back_to_lite():
    async with make_client(html=CHALLENGE) as client:
        result = await search_web_urls("Eiffel Tower", max_urls=5, client=client)

    assert result.urls == ["https://lite-result.example.org/page"]
    assert result.diagnostics.used_lite_fallback
    assert not result.diagnostics.blocked


@pytest.mark.asyncio
async def test_blocked_everywhere_is_reported():
    async with make_client(html_status=403, lite=CHALLENGE) as client:
        result = await search_web_urls("Eiffel Tower", max_urls=5, client=client)

    assert result.urls == []
    assert result.diagnostics.blocked
    assert result.diagnostics.html_status == 403


@pytest.mark.asyncio
async def test_recency_query_sends_date_filter():
    seen: list[httpx.Request] = []
    async with make_client(seen=seen) as client:
        await search_web_urls("latest news about the Mars rover", client=client)

    serp = [r for r in seen if r.url.host == "html.duckduckgo.com"][0]
    assert serp.url.params["df"] == "w"
    assert serp.url.params["q"] == "latest news about the Mars rover"


@pytest.mark.asyncio
async def test_empty_query_makes_no_request():
    seen: list[httpx.Request] = []
    async with make_client(seen=seen) as client:
        result = await search_web_urls("   ", client=client)

    assert result.urls == []
    assert seen == []


RICH_SERP = """<html><body>
<div class="result results_links"><div class="links_main result__body">
  <h2 class="result__title"><a class="result__a" href="https://a.example.com/">Mars rover news</a></h2>
  <a class="result__url" href="https://a.example.com/">a.example.com</a>
  <a class="result__snippet" href="https://a.example.com/">Perseverance found  new rocks.</a>
</div></div>
<div class="result results_links"><div class="links_main result__body">
  <h2 class="result__title"><a class="result__a" href="https://b.example.com/">Second</a></h2>
</div></div>
</body></html>"""

WIKI_FR = {
    "query": {
        "search": [
            {"title": "Tour Eiffel", "snippet": 'La <span class="searchmatch">tour</span> Eiffel est une tour'},
            {"title": "Champ-de-Mars (Paris)", "snippet": ""},
            {"snippet": "no title"},
        ]
    }
}


def test_parse_serp_dedupes_before_counting_and_keeps_titles():
    page = parse_serp(RICH_SERP, 2)

    assert page.urls == ["https://a.example.com/", "https://b.example.com/"]
    assert page.hits[0].title == "Mars rover news"
    assert page.hits[0].snippet == "Perseverance found new rocks."
    assert page.hits[1].snippet is None


def test_tokenize_for_match_drops_stopwords_and_short_words():
    assert tokenize_for_match("Les horaires de la Tour Eiffel, en 2026?") == ["horaires", "tour", "eiffel", "2026"]


@pytest.mark.parametrize(
    ("text", "seconds"),
    [
        ("published 3 hours ago", 3 * 3600),
        ("il y a 2 jours", 2 * 86400),
        ("updated yesterday", 86400),
        ("15 min ago", 15 * 60),
        ("no age here", None),
    ],
)
def test_parse_age_seconds(text, seconds):
    assert parse_age_seconds(text) == seconds


def test_score_hit_rewards_overlap_freshness_and_current_year():
    plain = SearchHit(url="https://x.example.com/a", title="Mars rover")
    fresh = SearchHit(url="https://x.example.com/b", title="Mars rover", snippet="2 hours ago")
    dated = SearchHit(url="https://x.example.com/c", title="Mars rover in 2026")

    assert score_hit("mars rover", plain, year=2026) == 2
    assert score_hit("mars rover", fresh, year=2026) > 2
    assert score_hit("mars rover", dated, year=2026) == 3.5
    assert score_hit("mars rover", dated, year=2027) == pytest.approx(2.8)


def test_rank_hits_is_stable_for_ties():
    hits = [
        SearchHit(url="https://one.example.com/", title="unrelated"),
        SearchHit(url="https://two.example.com/", title="other"),
        SearchHit(url="https://three.example.com/", title="Eiffel tower"),
    ]

    ranked = rank_hits("eiffel tower", hits)

    assert [hit.url for hit in ranked] == [
        "https://three.example.com/",
        "https://one.example.com/",
        "https://two.example.com/",
    ]


@pytest.mark.asyncio
async def test_wikipedia_still_answers_when_duckduckgo_is_blocked():
    seen: list[httpx.Request] = []
    async with make_client(html_status=403, lite=CHALLENGE, wiki=WIKI_FR, seen=seen) as client:
        result = await search_web_urls("tour Eiffel", max_urls=5, ui_language="fr", client=client)

    assert result.urls == [
        "https://fr.wikipedia.org/wiki/Tour_Eiffel",
        "https://fr.wikipedia.org/wiki/Champ-de-Mars_%28Paris%29",
    ]
    assert result.results[0].snippet == "La tour Eiffel est une tour"
    assert result.results[0].source == "wikipedia"
    assert result.diagnostics.blocked
    assert result.diagnostics.wikipedia_count == 2
    wiki_request = [r for r in seen if r.url.host == "fr.wikipedia.org"][0]
    assert wiki_request.url.params["srsearch"] == "tour Eiffel"
    assert wiki_request.url.params["srlimit"] == "5"


@pytest.mark.asyncio
async def test_wikipedia_defaults_to_english():
    seen: list[httpx.Request] = []
    async with make_client(seen=seen) as client:
        await search_web_urls("Eiffel Tower", max_urls=5, ui_language="de", client=client)

    assert any(r.url.host == "en.wikipedia.org" for r in seen)


WIKI_EN = {
    "query": {
        "search": [
            {"title": "Paris", "snippet": "Capital of France"},
            {"title": "Eiffel Tower", "snippet": "Already found by the instant answer"},
            {"title": "Gustave Eiffel", "snippet": "Engineer of the tower"},
        ]
    }
}


@pytest.mark.asyncio
async def test_wikipedia_hits_are_ranked_after_engine_hits():
    async with make_client(ia=INSTANT_ANSWER, wiki=WIKI_EN) as client:
        result = await search_web_urls("Eiffel Tower", max_urls=5, client=client)

    assert result.urls == [
        "https://www.toureiffel.paris/fr",
        "https://fr.wikipedia.org/wiki/Tour_Eiffel",
        "https://en.wikipedia.org/wiki/Eiffel_Tower",
        "https://en.wikipedia.org/wiki/Gustave_Eiffel",
        "https://en.wikipedia.org/wiki/Paris",
    ]
    assert [hit.source for hit in result.results][2:] == ["instant_answer", "wikipedia", "wikipedia"]
    assert result.diagnostics.wikipedia_count == 3
