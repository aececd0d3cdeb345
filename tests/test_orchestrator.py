from __future__ import annotations

import pytest

from greg.agents.continuation import AUTO_CONTINUE_USER, MANUAL_CONTINUE_USER
from greg.agents.orchestrator import RETRY_WITHOUT_TOOLS, ChatOrchestrator, LoopState
from greg.llm_client import ModelStreamError
from greg.models.schemas import ChatMessage, ChatRequest
from greg.research_core.context import ContextBuilder
from greg.services.i18n import t
from greg.services.streaming import StreamWriter
from tests.helpers import (
    FakeContextBuilder,
    FakeLLM,
    FakeSearch,
    drain,
    meta_payloads,
    search_result,
    visible_text,
)


def make_request(*contents: str, model: str = "openai/gpt-4o-mini", **kwargs) -> ChatRequest:
    roles = ["user", "assistant"]
    messages = [ChatMessage(role=roles[i % 2], content=c) for i, c in enumerate(contents)]
    return ChatRequest(model=model, messages=messages, **kwargs)


def make_orchestrator(llm: FakeLLM, search: FakeSearch | None = None, builder: FakeContextBuilder | None = None):
    return ChatOrchestrator(
        llm=llm,
        search=search or FakeSearch([]),
        context_builder=builder or FakeContextBuilder(),
    )


async def run_turn(orchestrator: ChatOrchestrator, request: ChatRequest, *, detailed: bool = False, lang: str = "en"):
    writer = StreamWriter(send_detailed_status=detailed)
    await orchestrator.run(request, writer, ui_language=lang)
    return await drain(writer)


def system_turns(call: dict) -> list[str]:
    return [m["content"] for m in call["messages"] if m["role"] == "system"]


@pytest.mark.asyncio
async def test_tool_request_runs_search_and_hides_tag():
    llm = FakeLLM(
        [
            ["<search_", 'web query="Eiffel ', 'Tower height" />'],
            ["The Eiffel Tower is 330 m tall."],
        ]
    )
    search = FakeSearch([search_result("Eiffel Tower height", ["https://example.com/eiffel"])])
    orchestrator = make_orchestrator(llm, search)

    frames = await run_turn(orchestrator, make_request("How tall is the Eiffel Tower?"))

    assert search.queries == ["Eiffel Tower height"]
    assert visible_text(frames) == "The Eiffel Tower is 330 m tall."
    assert not any("search_web" in frame for frame in frames)
    injected = system_turns(llm.calls[1])
    assert len(injected) == 1
    assert "## URL sources (server-extracted)" in injected[0]
    assert "https://example.com/eiffel" in injected[0]
    assert "## Mandatory next step" in injected[0]
    assert frames[-1] == "data: [DONE]\n\n"
    assert orchestrator.state is LoopState.DONE


@pytest.mark.asyncio
async def test_fourth_tool_request_hits_the_round_limit():
    llm = FakeLLM(
        [
            ['<search_web query="first query about towers" />'],
            ['<search_web query="second query about towers" />'],
            ['<search_web query="third query about towers" />'],
            ['<search_web query="fourth query about towers" />'],
        ]
    )
    search = FakeSearch(
        [search_result(f"q{i}", [f"https://example.com/{i}"]) for i in range(4)]
    )
    orchestrator = make_orchestrator(llm, search)

    frames = await run_turn(orchestrator, make_request("Tell me about famous towers"))

    assert len(search.queries) == 3
    assert len(llm.calls) == 4
    assert visible_text(frames).strip() == t("en", "warnings.tooManyWebSearches")
    assert len(system_turns(llm.calls[3])) == 3


@pytest.mark.asyncio
async def test_empty_tool_query_falls_back_to_user_message():
    llm = FakeLLM([["<search_web />"], ["Answer."]])
    search = FakeSearch([search_result("x", ["https://example.com/a"])])
    orchestrator = make_orchestrator(llm, search)

    await run_turn(orchestrator, make_request("who is Ada Lovelace?"))

    assert search.queries == ["Ada Lovelace biography"]


@pytest.mark.asyncio
async def test_schedule_question_forces_a_search_with_the_user_wording():
    llm = FakeLLM([["Le magasin ouvre à 9h."]])
    search = FakeSearch([search_result("horaires du magasin demain", ["https://example.com/magasin"])])
    orchestrator = make_orchestrator(llm, search)

    frames = await run_turn(orchestrator, make_request("horaires du magasin demain"), lang="fr")

    assert len(search.queries) == 1
    assert "horaires du magasin demain" in search.queries[0]
    assert "## URL sources (server-extracted)" in llm.calls[0]["system"]
    assert visible_text(frames) == "Le magasin ouvre à 9h."


@pytest.mark.asyncio
async def test_blocked_search_injects_no_sources_note():
    llm = FakeLLM([["I could not verify this online."]])
    search = FakeSearch([search_result("latest news about the Mars rover", [], blocked=True)])
    orchestrator = make_orchestrator(llm, search)

    frames = await run_turn(orchestrator, make_request("latest news about the Mars rover"))

    system = llm.calls[0]["system"]
    assert "## Web verification (server note)" in system
    assert "No verified sources are available" in system
    assert "blocked" in system
    assert "## URL sources (server-extracted)" not in system
    assert "http" not in visible_text(frames)
    assert frames[-1] == "data: [DONE]\n\n"


@pytest.mark.asyncio
async def test_empty_search_is_refined_once():
    llm = FakeLLM([["Done."]], completions=['{"query": "Mars rover mission news"}'])
    search = FakeSearch(
        [
            search_result("latest news about the Mars rover", []),
            search_result("Mars rover mission news", ["https://example.com/mars"]),
        ]
    )
    orchestrator = make_orchestrator(llm, search)

    await run_turn(orchestrator, make_request("latest news about the Mars rover"))

    assert search.queries[1] == "Mars rover mission news"
    assert llm.complete_calls[0]["caller"] == "query_refiner"
    assert "https://example.com/mars" in llm.calls[0]["system"]


@pytest.mark.asyncio
async def test_url_message_is_analyzed_and_progress_relayed():
    llm = FakeLLM([["Summary of the article."]])
    builder = FakeContextBuilder()
    orchestrator = make_orchestrator(llm, builder=builder)

    frames = await run_turn(
        orchestrator, make_request("Summarize https://example.com/article please"), detailed=True
    )

    assert builder.calls[0]["urls"] == ["https://example.com/article"]
    assert builder.calls[0]["expand_item_links"] is True
    joined = "".join(frames)
    assert "@phase:fetch 0/1" in joined
    assert "@phase:fetch 1/1 https://example.com/article" in joined
    assert "@phase:read 1/1 https://example.com/article" in joined
    assert "@phase:write" in joined
    assert joined.index("@phase:fetch 0/1") < joined.index("Summary of the article.")


@pytest.mark.asyncio
async def test_tool_request_after_sources_is_retried_without_tools():
    llm = FakeLLM([['<search_web query="more about the article" />'], ["Here is the summary."]])
    orchestrator = make_orchestrator(llm)

    frames = await run_turn(orchestrator, make_request("Summarize https://example.com/article please"))

    assert len(llm.calls) == 2
    assert llm.calls[1]["messages"][-1] == {"role": "system", "content": RETRY_WITHOUT_TOOLS}
    assert visible_text(frames) == "Here is the summary."


@pytest.mark.asyncio
async def test_model_that_keeps_requesting_search_gets_a_warning():
    llm = FakeLLM([['<search_web query="more about the article" />'], ['<search_web query="again please now" />']])
    orchestrator = make_orchestrator(llm)

    frames = await run_turn(orchestrator, make_request("Summarize https://example.com/article please"))

    assert visible_text(frames).strip() == t("en", "warnings.modelKeepsRequestingSearch")


@pytest.mark.asyncio
async def test_upstream_error_is_visible_and_stream_still_ends():
    llm = FakeLLM([ModelStreamError("OpenRouter error: 502")])
    orchestrator = make_orchestrator(llm)

    frames = await run_turn(orchestrator, make_request("Explain recursion to me"))

    assert "❌ OpenRouter error: 502" in visible_text(frames)
    assert frames[-1] == "data: [DONE]\n\n"
    assert orchestrator.state is LoopState.ABORTED


@pytest.mark.asyncio
async def test_title_is_sent_as_meta_and_empty_answer_warns():
    llm = FakeLLM([["<greg_title>Tour Eiffel</greg_title>"]])
    orchestrator = make_orchestrator(llm)

    frames = await run_turn(orchestrator, make_request("Explain recursion to me"))

    assert {"type": "title", "title": "Tour Eiffel"} in meta_payloads(frames)
    assert visible_text(frames).strip() == t("en", "warnings.emptyModelOutput")
    assert "greg_title" not in visible_text(frames)


@pytest.mark.asyncio
async def test_truncated_answer_on_paid_model_offers_continue():
    llm = FakeLLM([(["word " * 60 + "and then"], "length")])
    orchestrator = make_orchestrator(llm)

    frames = await run_turn(orchestrator, make_request("Explain recursion to me", model="openai/gpt-4o"))

    assert {"type": "continue", "available": True, "reason": "length"} in meta_payloads(frames)
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_free_model_continues_automatically():
    llm = FakeLLM([(["Part one " * 40], "length"), (["and part two."], "stop")])
    orchestrator = make_orchestrator(llm)

    frames = await run_turn(orchestrator, make_request("Explain recursion to me", model="meta/llama-3:free"))

    assert len(llm.calls) == 2
    assert llm.calls[1]["messages"][-1] == {"role": "user", "content": AUTO_CONTINUE_USER}
    assert "You were interrupted too early." in llm.calls[1]["messages"][-2]["content"]
    assert visible_text(frames).endswith("and part two.")
    assert meta_payloads(frames) == []


@pytest.mark.asyncio
async def test_manual_continuation_streams_directly():
    llm = FakeLLM([["the rest."]])
    search = FakeSearch([])
    orchestrator = make_orchestrator(llm, search)
    request = make_request(
        "latest news about the Mars rover",
        "The rover landed and then",
        continuation=True,
    )

    frames = await run_turn(orchestrator, request)

    assert search.queries == []
    messages = llm.calls[0]["messages"]
    assert messages[-1] == {"role": "user", "content": MANUAL_CONTINUE_USER}
    assert messages[-2]["content"].startswith("You are continuing an answer that stopped too early.")
    assert "The rover landed and then" in messages[-2]["content"]
    assert visible_text(frames) == "the rest."


@pytest.mark.asyncio
async def test_request_temperature_and_max_tokens_are_forwarded():
    llm = FakeLLM([["Ok."]])
    orchestrator = make_orchestrator(llm)

    await run_turn(orchestrator, make_request("Explain recursion to me", temperature=0.7, max_tokens=0))

    assert llm.calls[0]["temperature"] == 0.7
    assert llm.calls[0]["max_tokens"] is None
    assert "## Tool / action protocol (mandatory)" in llm.calls[0]["system"]


class ExplodingAnalyzer:
    async def analyze(self, url: str, *, max_chars: int, max_links: int):
        raise RuntimeError("lxml blew up")


@pytest.mark.asyncio
async def test_extractor_crash_becomes_a_failed_source_not_an_error():
    llm = FakeLLM([["I could not read that page."]])
    orchestrator = make_orchestrator(llm, builder=ContextBuilder(analyzer=ExplodingAnalyzer()))

    frames = await run_turn(orchestrator, make_request("Summarize https://example.com/article please"))

    assert "❌" not in visible_text(frames)
    assert visible_text(frames) == "I could not read that page."
    assert "Fetch note: lxml blew up" in llm.calls[0]["system"]
    assert orchestrator.state is LoopState.DONE
