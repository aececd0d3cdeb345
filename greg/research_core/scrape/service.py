from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import urlsplit, urlunsplit

import httpx
from loguru import logger

from greg.config import settings
from greg.research_core.extract.feeds import FEED_ACCEPT
from greg.research_core.models.interfaces import FetchResult
from greg.tools.web_utils import BROWSER_HEADERS

MAX_BODY_BYTES = 3_000_000
BLOCKED_STATUSES = {0, 403, 429}
TEXT_PROXY_ACCEPT = "text/plain,*/*;q=0.8"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_tls_hostname_mismatch(exc: Exception) -> bool:
    message = str(exc).lower()
    return "hostname mismatch" in message or "doesn't match" in message or "not valid for" in message


def with_www(url: str) -> str | None:
    parts = urlsplit(url)
    host = parts.hostname or ""
    if not host or host.startswith("www."):
        return None
    netloc = f"www.{host}:{parts.port}" if parts.port else f"www.{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def is_blocked_status(status_code: int) -> bool:
    return status_code in BLOCKED_STATUSES or status_code >= 500


class ScrapeService:
    """HTTP fetch layer: direct fetch with a www retry, plus the text-rendering proxy.

    A shared ``httpx.AsyncClient`` can be injected; otherwise one is opened per call.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float | None = None,
        text_proxy_base_url: str | None = None,
        text_proxy_timeout_s: float | None = None,
        max_body_bytes: int = MAX_BODY_BYTES,
    ):
        self._client = client
        self.timeout_s = timeout_s if timeout_s is not None else settings.fetch_timeout_s
        self.text_proxy_base_url = (
            text_proxy_base_url if text_proxy_base_url is not None else settings.text_proxy_base_url
        ).strip()
        self.text_proxy_timeout_s = min(
            text_proxy_timeout_s if text_proxy_timeout_s is not None else settings.text_proxy_timeout_s,
            15.0,
        )
        self.max_body_bytes = max(int(max_body_bytes), 1024)

    async def fetch(self, url: str) -> FetchResult:
        """Fetch ``url`` with browser-like headers. Never raises for network errors.

        Failures come back with ``status_code == 0`` and a ``note``.
        """
        try:
            return await self._get(url)
        except httpx.HTTPError as exc:
            retry_url = with_www(url) if is_tls_hostname_mismatch(exc) else None
            if retry_url:
                logger.debug(f"TLS hostname mismatch for {url}, retrying as {retry_url}")
                try:
                    return await self._get(retry_url)
                except httpx.HTTPError as retry_exc:
                    return FetchResult(url, retry_url, 0, "", "", note=_describe(retry_exc))
            return FetchResult(url, url, 0, "", "", note=_describe(exc))

    async def fetch_text_proxy(self, url: str) -> FetchResult | None:
        """Readable text rendition of ``url`` from the proxy, or None."""
        if not self.text_proxy_base_url:
            return None
        base = self.text_proxy_base_url
        target = base.format(url=url) if "{url}" in base else base.rstrip("/") + "/" + url
        try:
            result = await self._get(
                target,
                accept=TEXT_PROXY_ACCEPT,
                timeout_s=self.text_proxy_timeout_s,
            )
        except httpx.HTTPError as exc:
            logger.debug(f"Text proxy failed for {url}: {_describe(exc)}")
            return None
        if result.status_code >= 400 or not result.body.strip():
            return None
        return FetchResult(
            url=url,
            final_url=url,
            status_code=result.status_code,
            content_type=result.content_type or "text/plain",
            body=result.body,
        )

    async def fetch_feed(self, url: str) -> FetchResult | None:
        try:
            result = await self._get(
                url,
                accept=FEED_ACCEPT,
                timeout_s=min(self.timeout_s, 15.0),
            )
        except httpx.HTTPError as exc:
            logger.debug(f"Feed fetch failed for {url}: {_describe(exc)}")
            return None
        if result.status_code >= 400 or not result.body:
            return None
        return result

    async def _get(self, url: str, *, accept: str | None = None, timeout_s: float | None = None) -> FetchResult:
        headers = dict(BROWSER_HEADERS)
        if accept:
            headers["Accept"] = accept
        timeout = timeout_s or self.timeout_s
        if self._client is not None:
            return await self._stream_get(self._client, url, headers, timeout)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            return await self._stream_get(client, url, headers, timeout)

    async def _stream_get(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        timeout: float,
    ) -> FetchResult:
        async with client.stream("GET", url, headers=headers, timeout=timeout, follow_redirects=True) as response:
            chunks: list[bytes] = []
            size = 0
            async for chunk in response.aiter_bytes():
                chunks.append(chunk)
                size += len(chunk)
                if size >= self.max_body_bytes:
                    break
            raw = b"".join(chunks)[: self.max_body_bytes]
            encoding = response.charset_encoding or "utf-8"
            try:
                body = raw.decode(encoding, errors="replace")
            except LookupError:
                body = raw.decode("utf-8", errors="replace")
            note = f"Fetch returned HTTP {response.status_code}" if response.status_code >= 400 else None
            return FetchResult(
                url=url,
                final_url=str(response.url),
                status_code=int(response.status_code),
                content_type=response.headers.get("content-type", ""),
                body=body,
                note=note,
            )


def _describe(exc: Exception) -> str:
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__
