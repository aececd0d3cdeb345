"""Fakes and frame helpers shared by the test modules."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from greg.llm_client import StreamChunk
from greg.models.events import ProgressEvent
from greg.research_core.models.interfaces import SourceDocument, WebSearchResult
from greg.services.streaming import StreamWriter


class FakeStream:
    """Stands in for OpenRouterStream: yields scripted text chunks."""

    def __init__(self, chunks: list[str], finish_reason: str | None = "stop", error: Exception | None = None):
        self._chunks = chunks
        self._final_reason = finish_reason
        self._error = error
        self.finish_reason: str | None = None
        self.closed = False

    async def __aenter__(self) -> "FakeStream":
        if self._error is not None:
            raise self._error
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.closed = True

    async def chunks(self):
        for i, text in enumerate(self._chunks):
            last = i == len(self._chunks) - 1
            if last:
                self.finish_reason = self._final_reason
            yield StreamChunk(text=text, finish_reason=self._final_reason if last else None)


class FakeLLM:
    """Scripted OpenRouterClient: one entry of ``responses`` per streamed call.

    An entry is a list of chunks, a ``(chunks, finish_reason)`` tuple, or an
    exception raised when the stream opens.
    """

    def __init__(self, responses: list[Any], completions: list[str] | None = None):
        self.responses = list(responses)
        self.completions = list(completions or [])
        self.calls: list[dict[str, Any]] = []
        self.complete_calls: list[dict[str, Any]] = []

    def stream(self, *, model, system, messages, temperature=0.2, max_tokens=None, caller="chat"):
        self.calls.append(
            {"model": model, "system": system, "messages": messages, "temperature": temperature, "max_tokens": max_tokens}
        )
        response = self.responses.pop(0) if self.responses else [""]
        if isinstance(response, Exception):
            return FakeStream([], error=response)
        if isinstance(response, tuple):
            return FakeStream(response[0], response[1])
        return FakeStream(response)

    async def complete(self, **kwargs) -> str:
        self.complete_calls.append(kwargs)
        if not self.completions:
            return ""
        value = self.completions.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


@dataclass
class FakeContextBuilder:
    """Returns one document per requested URL, in order, and records progress events."""

    calls: list[dict[str, Any]] = field(default_factory=list)

    async def collect(self, urls, *, events=None, **kwargs):
        self.calls.append({"urls": list(urls), **kwargs})
        max_urls = kwargs.get("max_urls", len(urls))
        docs = []
        for i, url in enumerate(urls[:max_urls], start=1):
            if events is not None:
                events.put_nowait(ProgressEvent(stage="fetch", index=i, total=min(len(urls), max_urls), url=url))
                events.put_nowait(ProgressEvent(stage="extract", index=i, total=min(len(urls), max_urls), url=url))
            docs.append(
                SourceDocument(
                    requested_url=url,
                    normalized_url=url,
                    http_status=200,
                    content_type="text/html",
                    fetched_at="2026-01-01T00:00:00.000Z",
                    title=f"Page {i}",
                    body_text=f"Extracted text of {url}",
                )
            )
        return docs


class FakeSearch:
    def __init__(self, results: list[WebSearchResult]):
        self.results = list(results)
        self.queries: list[str] = []

    async def __call__(self, query: str, **kwargs) -> WebSearchResult:
        self.queries.append(query)
        if self.results:
            return self.results.pop(0)
        return WebSearchResult(query=query, fetched_at="2026-01-01T00:00:00.000Z")


def search_result(query: str, urls: list[str], *, blocked: bool = False) -> WebSearchResult:
    result = WebSearchResult(query=query, fetched_at="2026-01-01T00:00:00.000Z", urls=urls)
    result.diagnostics.blocked = blocked
    return result


async def drain(writer: StreamWriter) -> list[str]:
    """Wire frames written so far; the writer must already be closed."""
    return [frame.format() async for frame in writer]


def visible_text(frames: list[str]) -> str:
    """Concatenated answer text, without status markers, meta frames or [DONE]."""
    out = []
    for frame in frames:
        data = frame[len("data: ") :].strip()
        if data == "[DONE]":
            continue
        payload = json.loads(data)
        if "meta" in payload:
            continue
        content = payload["choices"][0]["delta"]["content"]
        if content.startswith("<greg_status"):
            continue
        out.append(content)
    return "".join(out)


def meta_payloads(frames: list[str]) -> list[dict[str, Any]]:
    out = []
    for frame in frames:
        data = frame[len("data: ") :].strip()
        if data != "[DONE]":
            payload = json.loads(data)
            if "meta" in payload:
                out.append(payload["meta"])
    return out

