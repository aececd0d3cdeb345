from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Literal

import openai
from loguru import logger

from greg.agents import intent
from greg.agents.continuation import (
    auto_continuation_messages,
    continuation_reason,
    last_assistant_text,
    manual_continuation_messages,
)
from greg.agents.prompts import build_system_prompt, with_tool_protocol
from greg.agents.tool_parser import ToolCallParser
from greg.agents.web_gate import decide_web_action, refine_web_query
from greg.config import settings
from greg.llm_client import ModelStreamError, OpenRouterClient, client as llm_client, get_model
from greg.models.events import Phase, ProgressEvent, StatusLevel, phase
from greg.models.schemas import ChatMessage, ChatRequest
from greg.research_core.context import (
    MANDATORY_NEXT_STEP,
    ContextBuilder,
    build_no_sources_note,
    wrap_url_sources,
)
from greg.research_core.models.interfaces import SourceDocument, WebSearchResult
from greg.research_core.scrape.service import utc_now
from greg.services.conversation_log import ConversationLog
from greg.services.i18n import normalize_ui_language, t
from greg.services.logger import log_tool_step
from greg.services.streaming import StreamWriter
from greg.tools.image_search import (
    ImageSearchService,
    build_image_context_block,
    build_image_search_query,
    desired_image_count,
    looks_like_image_request,
)
from greg.tools.web_search import search_web_urls

MAX_TURNS = 12
DEFAULT_TEMPERATURE = 0.2
SEARCH_ATTEMPTS = 2
RETRY_WITHOUT_TOOLS = (
    "IMPORTANT: You already have web sources in the system context. Do NOT output <search_web .../>. Answer the user now."
)

SearchFn = Callable[..., Awaitable[WebSearchResult]]


class LoopState(str, Enum):
    DECIDING = "deciding"
    STREAMING = "streaming"
    EXECUTING_TOOL = "executing_tool"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class StreamOutcome:
    kind: Literal["done", "tool", "empty_tool_ignored"]
    text: str = ""
    finish_reason: str | None = None
    query: str = ""


@dataclass
class Turn:
    """Per-request values shared by every step of one chat turn."""

    request: ChatRequest
    writer: StreamWriter
    model: str
    lang: str
    system_prompt: str
    conversation: list[ChatMessage]
    last_user_message: str
    log: ConversationLog

    @property
    def messages(self) -> list[dict[str, str]]:
        return [{"role": m.role, "content": m.content} for m in self.conversation]


class ChatOrchestrator:
    """Runs one chat turn: decide on web use, stream the model, execute its search requests.

    Flow:
      1. DECIDING: URLs, image requests, forced searches and the optional gatekeeper
         pick the context injected into the system prompt.
      2. STREAMING: the model output goes through ``ToolCallParser``.
      3. EXECUTING_TOOL: a ``<search_web>`` request runs a search and the sources
         are injected as a system turn, then back to STREAMING.

    Tool rounds are bounded by ``settings.max_tool_calls``; the whole loop by
    ``MAX_TURNS``. Everything visible goes through the ``StreamWriter``.
    """

    def __init__(
        self,
        *,
        llm: OpenRouterClient | None = None,
        context_builder: ContextBuilder | None = None,
        search: SearchFn | None = None,
        images: ImageSearchService | None = None,
        max_tool_calls: int | None = None,
    ):
        self.llm = llm or llm_client()
        self.context_builder = context_builder or ContextBuilder()
        self.search = search or search_web_urls
        self.images = images or ImageSearchService()
        self.max_tool_calls = max(int(max_tool_calls if max_tool_calls is not None else settings.max_tool_calls), 0)
        self.state = LoopState.DECIDING

    async def run(
        self,
        request: ChatRequest,
        writer: StreamWriter,
        *,
        ui_language: str | None = None,
        log: ConversationLog | None = None,
    ) -> None:
        """Stream the whole answer to ``writer`` and always finish with ``[DONE]``."""
        self.state = LoopState.DECIDING
        model = get_model(request.model)
        conversation = request.conversation
        turn = Turn(
            request=request,
            writer=writer,
            model=model,
            lang=normalize_ui_language(ui_language),
            system_prompt=with_tool_protocol(
                build_system_prompt(model, request.custom_instructions, request.personality)
            ),
            conversation=conversation,
            last_user_message=intent.last_user_message(conversation),
            log=log or ConversationLog(None, enabled=False),
        )
        turn.log("request.received", {"model": model, "messages": len(conversation), "continuation": request.continuation})
        writer.flush()
        try:
            if request.continuation:
                await self._respond(turn, turn.system_prompt, tools_enabled=False)
            else:
                context, tools_enabled = await self._prepare_context(turn)
                system_prompt = f"{turn.system_prompt}\n\n{context}" if context else turn.system_prompt
                await self._respond(turn, system_prompt, tools_enabled=tools_enabled)
            writer.write_done()
            self.state = LoopState.DONE
            turn.log("request.done")
        except asyncio.CancelledError:
            self.state = LoopState.ABORTED
            turn.log("request.aborted")
            raise
        except (ModelStreamError, openai.APIError) as exc:
            self._abort(turn, str(exc))
        except Exception as exc:
            logger.exception(f"Chat turn failed: {exc}")
            self._abort(turn, str(exc) or "Unknown error")
        finally:
            writer.close()

    def _abort(self, turn: Turn, message: str) -> None:
        self.state = LoopState.ABORTED
        turn.log("request.error", {"message": message})
        turn.writer.clear_status()
        turn.writer.write_delta(f"❌ {message}")
        turn.writer.write_done()

    # --- DECIDING ---

    async def _prepare_context(self, turn: Turn) -> tuple[str | None, bool]:
        """Context to inject before the first model call, and whether model tool calls stay enabled."""
        last = turn.last_user_message
        urls = intent.request_urls(last, turn.conversation)
        if urls:
            context = await self._url_context(turn, urls)
            if context:
                return context, False

        if looks_like_image_request(last):
            return await self._image_context(turn, urls), False

        query = ""
        if intent.needs_forced_search(last):
            query = intent.synthesize_search_query(last)
            turn.log("search.forced", {"query": query})
        elif settings.web_gate_enabled and intent.should_run_web_gate(last):
            decision = await decide_web_action(
                model=turn.model,
                system_prompt=turn.system_prompt,
                messages=turn.conversation,
                last_user_message=last,
                ui_language=turn.lang,
                llm=self.llm,
            )
            turn.log("gate.decision", {"action": decision.action, "query": decision.query})
            if decision.action == "search":
                query = intent.validate_query(decision.query, last)

        if query:
            turn.writer.brief_status_enabled = True
            turn.writer.write_status(t(turn.lang, "status.searching"), StatusLevel.BRIEF)
            return await self._search_context(turn, query), False
        return None, True

    async def _url_context(self, turn: Turn, urls: list[str]) -> str | None:
        writer = turn.writer
        count = min(len(urls), settings.url_max_urls)
        writer.brief_status_enabled = True
        writer.write_status(t(turn.lang, "status.analyzingSources", count=count), StatusLevel.BRIEF)
        writer.write_status(t(turn.lang, "status.detectedUrls", count=count), StatusLevel.DETAILED)
        writer.write_status(phase(Phase.FETCH, 0, count), StatusLevel.BRIEF)
        writer.write_status(phase(Phase.FETCH, 0, count), StatusLevel.DETAILED)

        docs = await self._collect(
            turn,
            urls,
            brief_fetch=True,
            max_urls=settings.url_max_urls,
            seed_urls=count,
            max_chars_per_url=settings.url_max_chars_per_url,
            expand_item_links=True,
        )
        writer.write_status(Phase.WRITE.value, StatusLevel.BRIEF)
        writer.write_status(Phase.WRITE.value, StatusLevel.DETAILED)
        turn.log("urls.analyzed", {"requested": urls[:count], "documents": len(docs)})
        return wrap_url_sources(docs) if docs else None

    async def _image_context(self, turn: Turn, page_urls: list[str]) -> str:
        last = turn.last_user_message
        query = build_image_search_query(last, turn.lang)
        count = desired_image_count(last)
        turn.writer.brief_status_enabled = True
        turn.writer.write_status(t(turn.lang, "status.findingImages"), StatusLevel.BRIEF)
        turn.writer.write_status(phase(Phase.SEARCH), StatusLevel.DETAILED)
        log_tool_step("image_search", "started", {"query": query, "count": count})

        outcome = await self.images.find_images(query, max_images=count, ui_language=turn.lang, page_urls=page_urls)
        log_tool_step(
            "image_search",
            "completed",
            {"query": query, "images": len(outcome.images), "probed": outcome.probed_count},
        )
        turn.log("images.found", {"query": query, "images": len(outcome.images)})
        turn.writer.write_status(Phase.WRITE.value, StatusLevel.DETAILED)
        if not outcome.images:
            return build_no_sources_note(query)
        return build_image_context_block(query, utc_now(), outcome.images, min(count, len(outcome.images)))

    # --- EXECUTING_TOOL ---

    async def _search_context(self, turn: Turn, query: str) -> str:
        """Search, refine once on an empty result, extract the hits.

        Never raises for acquisition failures: an internal "no verified sources"
        note is returned instead so the model does not invent citations.
        """
        writer = turn.writer
        self.state = LoopState.EXECUTING_TOOL
        writer.write_status(phase(Phase.SEARCH), StatusLevel.DETAILED)
        log_tool_step("web_search", "started", {"query": query})

        result = await self._search_with_refinement(turn, query)
        if not result.urls:
            log_tool_step("web_search", "empty", {"query": result.query, "blocked": result.diagnostics.blocked})
            turn.log("search.empty", {"query": result.query, "blocked": result.diagnostics.blocked})
            return build_no_sources_note(result.query, result)

        count = min(len(result.urls), settings.search_max_urls)
        writer.write_status(phase(Phase.FETCH, 0, count), StatusLevel.DETAILED)
        docs = await self._collect(
            turn,
            result.urls,
            brief_fetch=False,
            max_urls=settings.search_max_urls,
            max_chars_per_url=settings.search_max_chars_per_url,
        )
        writer.write_status(Phase.WRITE.value, StatusLevel.DETAILED)
        log_tool_step("web_search", "completed", {"query": result.query, "urls": len(result.urls), "documents": len(docs)})
        turn.log("search.done", {"query": result.query, "urls": result.urls})
        if not docs:
            return build_no_sources_note(result.query, result)
        return f"{wrap_url_sources(docs)}\n\n{MANDATORY_NEXT_STEP}"

    async def _search_with_refinement(self, turn: Turn, query: str) -> WebSearchResult:
        result = await self._run_search(turn, query)
        for _ in range(SEARCH_ATTEMPTS - 1):
            if result.urls:
                break
            refined = await refine_web_query(
                model=turn.model,
                system_prompt=turn.system_prompt,
                messages=turn.conversation,
                last_user_message=turn.last_user_message,
                previous_query=query,
                ui_language=turn.lang,
                llm=self.llm,
            )
            if not refined or refined == query:
                break
            turn.log("search.refined", {"previous": query, "query": refined})
            query = refined
            turn.writer.write_status(phase(Phase.SEARCH), StatusLevel.DETAILED)
            result = await self._run_search(turn, query)
        return result

    async def _run_search(self, turn: Turn, query: str) -> WebSearchResult:
        return await self.search(
            query, max_urls=settings.search_result_count, timeout_s=settings.search_timeout_s, ui_language=turn.lang
        )

    async def _collect(self, turn: Turn, urls: list[str], *, brief_fetch: bool, **kwargs: Any) -> list[SourceDocument]:
        """Run the context builder while relaying its progress events as statuses."""
        events: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()

        async def produce() -> list[SourceDocument]:
            try:
                return await self.context_builder.collect(urls, events=events, **kwargs)
            finally:
                events.put_nowait(None)

        task = asyncio.create_task(produce())
        try:
            while True:
                event = await events.get()
                if event is None:
                    break
                self._relay_progress(turn.writer, event, brief_fetch=brief_fetch)
            return await task
        finally:
            if not task.done():
                task.cancel()

    @staticmethod
    def _relay_progress(writer: StreamWriter, event: ProgressEvent, *, brief_fetch: bool) -> None:
        if event.stage == "fetch":
            status = phase(Phase.FETCH, event.index, event.total, event.url)
            if writer.send_detailed_status:
                writer.write_status(status, StatusLevel.DETAILED)
            elif brief_fetch:
                writer.write_status(status, StatusLevel.BRIEF)
        else:
            writer.write_status(phase(Phase.READ, event.index, event.total, event.url), StatusLevel.DETAILED)

    # --- STREAMING ---

    async def _respond(self, turn: Turn, system_prompt: str, *, tools_enabled: bool) -> None:
        continuation = turn.request.continuation
        base_messages = turn.messages
        full_text = last_assistant_text(turn.conversation) if continuation else ""
        injected: list[str] = []
        used = 0

        for _ in range(MAX_TURNS):
            messages = [*base_messages, *({"role": "system", "content": c} for c in injected)]
            if continuation:
                messages += manual_continuation_messages(full_text)
            allow_tools = not continuation and tools_enabled and used < self.max_tool_calls
            hard_stop = not continuation and tools_enabled and used >= self.max_tool_calls

            outcome = await self._stream_once(
                turn, system_prompt, messages, allow_tools=allow_tools, hard_stop=hard_stop, tools_enabled=tools_enabled
            )
            if outcome.kind == "empty_tool_ignored":
                await self._retry_without_tools(turn, system_prompt, messages)
                return
            if outcome.kind == "done":
                full_text += outcome.text
                await self._maybe_continue(turn, system_prompt, messages, outcome, full_text)
                return

            if used >= self.max_tool_calls:
                turn.log("tool.limit", {"used": used})
                turn.writer.write_delta(f"\n\n{t(turn.lang, 'warnings.tooManyWebSearches')}")
                return
            query = intent.validate_query(outcome.query, turn.last_user_message)
            if not query:
                turn.writer.write_delta(f"\n\n{t(turn.lang, 'warnings.searchWithoutQuery')}")
                return
            used += 1
            turn.log("tool.execute", {"requested": outcome.query, "query": query, "used": used})
            turn.writer.brief_status_enabled = True
            injected.append(await self._search_context(turn, query))

        turn.writer.write_delta(f"\n\n{t(turn.lang, 'warnings.tooManyActions')}")

    async def _stream_once(
        self,
        turn: Turn,
        system_prompt: str,
        messages: list[dict[str, str]],
        *,
        allow_tools: bool,
        hard_stop: bool,
        tools_enabled: bool,
        empty_warning: str = "warnings.emptyModelOutput",
    ) -> StreamOutcome:
        """One upstream call, forwarded through the tool-call parser."""
        self.state = LoopState.STREAMING
        request = turn.request
        writer = turn.writer
        parser = ToolCallParser(allow_tool_calls=allow_tools, hard_stop=hard_stop)
        temperature = request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE
        max_tokens = request.max_tokens if request.max_tokens and request.max_tokens > 0 else None

        async with self.llm.stream(
            model=turn.model,
            system=system_prompt,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            caller="chat",
        ) as stream:
            async for chunk in stream.chunks():
                visible = parser.feed(chunk.text)
                self._emit_title(writer, parser)
                if visible:
                    writer.write_delta(visible)
                if parser.detected:
                    break
            finish_reason = stream.finish_reason

        if parser.detected and parser.tool_request is not None:
            return StreamOutcome(kind="tool", query=parser.tool_request.query)

        flushed = parser.finish()
        self._emit_title(writer, parser)
        if flushed:
            writer.write_delta(flushed)
        if not parser.wrote_any_text and parser.ignored_disabled_tool and not tools_enabled:
            turn.log("tool.ignored", {})
            return StreamOutcome(kind="empty_tool_ignored")
        if not parser.wrote_non_whitespace:
            writer.write_delta(f"\n\n{t(turn.lang, empty_warning)}")
        return StreamOutcome(kind="done", text=parser.assistant_text, finish_reason=finish_reason)

    @staticmethod
    def _emit_title(writer: StreamWriter, parser: ToolCallParser) -> None:
        title = parser.take_title()
        if title:
            writer.write_meta({"type": "title", "title": title})

    async def _retry_without_tools(self, turn: Turn, system_prompt: str, messages: list[dict[str, str]]) -> None:
        """The model only asked for a search although sources were injected: insist once."""
        turn.log("tool.ignored.retry", {})
        retry = await self._stream_once(
            turn,
            system_prompt,
            [*messages, {"role": "system", "content": RETRY_WITHOUT_TOOLS}],
            allow_tools=False,
            hard_stop=True,
            tools_enabled=False,
            empty_warning="warnings.noUsableText",
        )
        if retry.kind == "tool":
            turn.writer.write_delta(f"\n\n{t(turn.lang, 'warnings.modelKeepsRequestingSearch')}")

    def _auto_continue_allowed(self, request: ChatRequest, model: str) -> bool:
        if not settings.auto_continue_enabled:
            return False
        if request.allow_auto_continue is not None:
            return request.allow_auto_continue
        return model.endswith(settings.free_model_suffix)

    async def _maybe_continue(
        self,
        turn: Turn,
        system_prompt: str,
        messages: list[dict[str, str]],
        outcome: StreamOutcome,
        full_text: str,
    ) -> None:
        reason = continuation_reason(outcome.finish_reason, full_text)
        if reason is None:
            return
        if not self._auto_continue_allowed(turn.request, turn.model):
            turn.log("completion.continue.available", {"reason": reason})
            turn.writer.write_meta({"type": "continue", "available": True, "reason": reason})
            return

        max_auto = 2 if reason == "length" else 1
        for used in range(1, max_auto + 1):
            turn.log("completion.continue.auto", {"reason": reason, "used": used})
            cont = await self._stream_once(
                turn,
                system_prompt,
                [*messages, *auto_continuation_messages(full_text)],
                allow_tools=False,
                hard_stop=False,
                tools_enabled=False,
            )
            if cont.kind != "done":
                return
            full_text += cont.text
            if cont.finish_reason != "length":
                return
