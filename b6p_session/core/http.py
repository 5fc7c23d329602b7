"""Thin async HTTP layer over httpx."""

from __future__ import annotations

from typing import Any, Mapping

import httpx

from b6p_session.config.schema import HttpConfig


def as_url(url: str | httpx.URL) -> httpx.URL:
    try:
        parsed = url if isinstance(url, httpx.URL) else httpx.URL(str(url).strip())
    except httpx.InvalidURL as exc:
        raise ValueError(f"invalid URL: {url}") from exc
    if parsed.scheme not in {"http", "https"} or not parsed.host:
        raise ValueError(f"not an absolute http(s) URL: {url}")
    return parsed


def origin_of(url: str | httpx.URL) -> str:
    """``scheme://host[:port]`` with default ports omitted."""
    parsed = as_url(url)
    return f"{parsed.scheme}://{parsed.netloc.decode('ascii')}"


class HttpClient:
    """Owns one ``httpx.AsyncClient``.

    Cookie handling belongs to the session manager, so the client's own jar is
    emptied after every exchange. Tests hand in an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        config: HttpConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or HttpConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                verify=self.config.verify_tls,
                headers={"User-Agent": self.config.user_agent},
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str | httpx.URL,
        *,
        headers: Mapping[str, str] | None = None,
        content: str | bytes | None = None,
        data: Mapping[str, Any] | None = None,
        json: Any | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            return await self.client.request(
                method.upper(),
                as_url(url),
                headers=httpx.Headers(headers or {}),
                content=content,
                data=data,
                json=json,
                params=params,
            )
        finally:
            self.client.cookies.clear()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
