"""OpenRouter client via the OpenAI-compatible SDK."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, AsyncIterator

import openai
from openai import AsyncOpenAI

from greg.config import settings
from greg.services.logger import log_llm_call


class ModelStreamError(RuntimeError):
    """Upstream model call failed (non-2xx, transport error or missing body)."""


@dataclass
class StreamChunk:
    text: str = ""
    finish_reason: str | None = None


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


class OpenRouterStream:
    """Async context manager over a streamed chat completion.

    Leaving the context closes the upstream response, which is how a caller
    abandons a stream early (e.g. once a tool tag is detected).
    """

    def __init__(self, stream_coro: Any, *, model: str, caller: str):
        self._stream_coro = stream_coro
        self._stream: Any | None = None
        self._model = model
        self._caller = caller
        self._started = 0.0
        self.usage = Usage()
        self.finish_reason: str | None = None

    async def __aenter__(self) -> "OpenRouterStream":
        self._started = time.perf_counter()
        try:
            self._stream = await self._stream_coro
        except openai.APIStatusError as exc:
            log_llm_call(self._model, self._caller, self._elapsed_ms(), status="error", error=str(exc))
            raise ModelStreamError(f"OpenRouter error: {exc.status_code}") from exc
        except openai.APIError as exc:
            log_llm_call(self._model, self._caller, self._elapsed_ms(), status="error", error=str(exc))
            raise ModelStreamError(f"OpenRouter error: {exc}") from exc
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stream is not None:
            await self._stream.close()
        log_llm_call(
            self._model,
            self._caller,
            self._elapsed_ms(),
            status="error" if exc else "success",
            error=str(exc) if exc else None,
            finish_reason=self.finish_reason,
            output_tokens=self.usage.output_tokens,
        )

    def _elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)

    async def chunks(self) -> AsyncIterator[StreamChunk]:
        if self._stream is None:
            return
        try:
            async for chunk in self._stream:
                usage = getattr(chunk, "usage", None)
                if usage:
                    self.usage = Usage(
                        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                    )
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                finish = getattr(choices[0], "finish_reason", None)
                if finish:
                    self.finish_reason = finish
                delta = getattr(choices[0], "delta", None)
                text = getattr(delta, "content", None) if delta else None
                if text or finish:
                    yield StreamChunk(text=text or "", finish_reason=finish)
        except openai.APIError as exc:
            raise ModelStreamError(f"OpenRouter stream interrupted: {exc}") from exc


class OpenRouterClient:
    def __init__(self, openai_client: Any):
        self._client = openai_client

    def stream(
        self,
        *,
        model: str,
        system: str,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int | None = None,
        caller: str = "chat",
    ) -> OpenRouterStream:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": system}, *messages],
            "temperature": temperature,
            "stream": True,
        }
        if max_tokens:
            kwargs["max_tokens"] = int(max_tokens)
        return OpenRouterStream(self._client.chat.completions.create(**kwargs), model=model, caller=caller)

    async def complete(
        self,
        *,
        model: str,
        system: str,
        messages: list[dict[str, str]],
        temperature: float = 0.0,
        max_tokens: int = 80,
        caller: str = "complete",
    ) -> str:
        """Non-streamed completion text. Raises ModelStreamError on upstream failure."""
        started = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=[{"role": "system", "content": system}, *messages],
                temperature=temperature,
                max_tokens=max_tokens,
                stream=False,
            )
        except openai.APIError as exc:
            log_llm_call(model, caller, int((time.perf_counter() - started) * 1000), status="error", error=str(exc))
            raise ModelStreamError(f"OpenRouter error: {exc}") from exc
        log_llm_call(model, caller, int((time.perf_counter() - started) * 1000), status="success")
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return str(getattr(choices[0].message, "content", "") or "")


def openrouter_headers() -> dict[str, str]:
    headers = {"X-Title": settings.openrouter_app_name}
    if settings.openrouter_site_url:
        headers["HTTP-Referer"] = settings.openrouter_site_url
    return headers


def get_client() -> OpenRouterClient:
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key or "missing",
        base_url=base_url,
        default_headers=openrouter_headers(),
    )
    return OpenRouterClient(openai_client)


def get_model(requested: str | None = None) -> str:
    return (requested or "").strip() or settings.default_model


_client: OpenRouterClient | None = None


def client() -> OpenRouterClient:
    """Get or create the shared LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
