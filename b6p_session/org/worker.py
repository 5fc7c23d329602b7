"""Resolve the tenant id ("U") served by a single host."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import httpx

from b6p_session.core.errors import B6PError, OrgLookupError
from b6p_session.core.http import as_url, origin_of
from b6p_session.core.logging import get_logger

if TYPE_CHECKING:
    from b6p_session.core.session import SessionManager


DEFAULT_APPINFO_PATH = "/appinfo/u"
VALID_HOST_RE = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)*[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)


class OrgWorker:
    """Asks one host which U it serves. The answer is memoised per instance."""

    def __init__(
        self,
        url: str | httpx.URL,
        session_manager: "SessionManager",
        *,
        appinfo_path: str = DEFAULT_APPINFO_PATH,
    ) -> None:
        try:
            self.url = as_url(url)
        except ValueError as exc:
            raise OrgLookupError(str(exc)) from exc
        self.session_manager = session_manager
        self.appinfo_path = appinfo_path
        self.logger = get_logger("b6p_session.org")
        self._u: str | None = None

    @property
    def host(self) -> str:
        return self.url.host

    @property
    def lookup_url(self) -> httpx.URL:
        return httpx.URL(f"{origin_of(self.url)}{self.appinfo_path}")

    async def get_u(self) -> str:
        if self._u is not None:
            return self._u
        lookup_url = self.lookup_url
        try:
            response = await self.session_manager.fetch(lookup_url)
        except (B6PError, httpx.HTTPError) as exc:
            self.logger.warning(
                "org lookup failed",
                extra={"service": "org", "payload": {"url": str(lookup_url), "error": str(exc)}},
            )
            raise OrgLookupError(f"error fetching org id from {lookup_url}: {exc}") from exc
        if not response.is_success:
            raise OrgLookupError(f"failed to fetch org id from {lookup_url}: status {response.status_code}")
        u = response.text.strip()
        if not u:
            raise OrgLookupError(f"empty org id returned by {lookup_url}")
        self._u = u
        return u

    async def verify_u(self, u: str) -> bool:
        return await self.get_u() == u

    @classmethod
    def from_host(
        cls,
        host: str,
        session_manager: "SessionManager",
        *,
        appinfo_path: str = DEFAULT_APPINFO_PATH,
    ) -> "OrgWorker":
        if not host or not VALID_HOST_RE.fullmatch(host):
            raise OrgLookupError(f"invalid host: {host!r}")
        return cls(f"https://{host}", session_manager, appinfo_path=appinfo_path)
