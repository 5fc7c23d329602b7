"""Persisted mapping from tenant id (U) to the hosts known to serve it."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import time
from typing import TYPE_CHECKING, Any, Callable, Mapping

import httpx

from b6p_session.config.schema import OrgCacheConfig
from b6p_session.core.errors import (
    B6PError,
    CacheIntegrityError,
    HelperEndpointError,
    ManagerNotInitializedError,
    OrgLookupError,
    OrgNotFoundError,
)
from b6p_session.core.http import as_url
from b6p_session.core.logging import get_logger
from b6p_session.core.store import KeyValueStore, PersistentMap
from b6p_session.org.worker import VALID_HOST_RE, OrgWorker

if TYPE_CHECKING:
    from b6p_session.core.session import SessionManager


ORG_CACHE_KEY = "u_cache"
GET_ANY_DOMAIN_ACTION = "getAnyDomain"


@dataclass(slots=True)
class OrgCacheElement:
    host: str
    last_access: float

    def to_dict(self) -> dict[str, Any]:
        return {"host": self.host, "lastAccess": self.last_access}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "OrgCacheElement":
        return cls(host=str(raw["host"]), last_access=float(raw.get("lastAccess", 0.0) or 0.0))


def _encode_elements(elements: list[OrgCacheElement]) -> list[dict[str, Any]]:
    return [element.to_dict() for element in elements]


def _decode_elements(raw: Any) -> list[OrgCacheElement]:
    if not isinstance(raw, list):
        return []
    return [OrgCacheElement.from_dict(item) for item in raw if isinstance(item, dict) and item.get("host")]


def host_of(url_or_host: str | httpx.URL) -> str:
    """Hostname from a URL, or a bare hostname validated as-is."""
    if isinstance(url_or_host, httpx.URL) or "://" in str(url_or_host):
        try:
            return as_url(url_or_host).host
        except ValueError as exc:
            raise OrgLookupError(str(exc)) from exc
    host = str(url_or_host).strip()
    if not host or not VALID_HOST_RE.fullmatch(host):
        raise OrgLookupError(f"invalid host: {host!r}")
    return host


class OrgCache:
    """U -> ordered host list, with the rule that a host belongs to at most one U.

    The rule is enforced opportunistically: ``add_host`` and
    ``get_any_base_url`` sweep for duplicates before touching the cache, and
    ``hard_validate_*`` re-checks every claim against the hosts themselves.
    """

    def __init__(
        self,
        store: KeyValueStore,
        session_manager: "SessionManager",
        config: OrgCacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or OrgCacheConfig()
        self.session_manager = session_manager
        self.logger = get_logger("b6p_session.org_cache")
        self._clock = clock
        self._entries: PersistentMap[list[OrgCacheElement]] = PersistentMap(
            store,
            ORG_CACHE_KEY,
            encode=_encode_elements,
            decode=_decode_elements,
        )
        self._cleanup_task: asyncio.Task[None] | None = None
        self._started = False

    async def start(self, *, schedule_cleanup: bool = True) -> None:
        if self._started:
            return
        await self._entries.load()
        self._started = True
        await self.cleanup_old_entries()
        if schedule_cleanup:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="b6p-org-cache-cleanup")

    async def shutdown(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._started = False

    def _require_started(self) -> None:
        if not self._started:
            raise ManagerNotInitializedError("OrgCache")

    # -- reads -------------------------------------------------------------

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        self._require_started()
        return {u: _encode_elements(elements) for u, elements in self._entries}

    def hosts_for(self, u: str) -> list[str]:
        self._require_started()
        return [element.host for element in self._entries.get(u) or []]

    def _lookup_cached(self, host: str) -> tuple[str, list[OrgCacheElement], OrgCacheElement] | None:
        for u, elements in self._entries:
            for element in elements:
                if element.host == host:
                    return u, elements, element
        return None

    # -- lookups -----------------------------------------------------------

    async def find_u(self, url_or_host: str | httpx.URL, cache_only: bool = False) -> str:
        self._require_started()
        host = host_of(url_or_host)
        hit = self._lookup_cached(host)
        if hit is not None:
            u, elements, element = hit
            element.last_access = self._clock()
            await self._entries.set(u, elements)
            return u
        if cache_only:
            raise OrgNotFoundError(host)

        if isinstance(url_or_host, httpx.URL) or "://" in str(url_or_host):
            worker = OrgWorker(url_or_host, self.session_manager, appinfo_path=self.config.appinfo_path)
        else:
            worker = OrgWorker.from_host(host, self.session_manager, appinfo_path=self.config.appinfo_path)
        u = await worker.get_u()
        await self.add_host(u, host)
        self.logger.info(
            "org resolved",
            extra={"service": "org_cache", "org_u": u, "payload": {"host": host}},
        )
        return u

    async def add_host(self, u: str, url_or_host: str | httpx.URL) -> None:
        self._require_started()
        host = host_of(url_or_host)
        await self.clean_duplicates(False)
        now = self._clock()

        updates: dict[str, list[OrgCacheElement]] = {}
        removals: list[str] = []
        # A fresh claim wins over a stale one held by another U.
        for other_u, elements in self._entries:
            if other_u == u or not any(element.host == host for element in elements):
                continue
            remaining = [element for element in elements if element.host != host]
            if remaining:
                updates[other_u] = remaining
            else:
                removals.append(other_u)
            self.logger.warning(
                "host moved between orgs",
                extra={"service": "org_cache", "org_u": u, "payload": {"host": host, "previous_u": other_u}},
            )

        elements = list(self._entries.get(u) or [])
        existing = next((element for element in elements if element.host == host), None)
        if existing is None:
            elements.append(OrgCacheElement(host=host, last_access=now))
        else:
            existing.last_access = now
        updates[u] = elements
        await self._entries.apply(updates, removals)

    async def get_any_base_url(self, u: str) -> httpx.URL:
        self._require_started()
        await self.clean_duplicates(True)
        elements = self._entries.get(u)
        if elements:
            return httpx.URL(f"https://{elements[0].host}")

        helper_url = httpx.URL(self.config.helper_url).copy_merge_params({"action": GET_ANY_DOMAIN_ACTION})
        try:
            response = await self.session_manager.fetch(helper_url)
        except (B6PError, httpx.HTTPError) as exc:
            raise HelperEndpointError(f"failed to reach helper endpoint {helper_url}: {exc}") from exc
        if not response.is_success:
            raise HelperEndpointError(
                f"failed to fetch any domain from helper: {response.status_code} {response.reason_phrase}"
            )
        try:
            org_url = str(response.json()["orgUrl"]).strip()
            host = host_of(org_url)
        except (ValueError, KeyError, TypeError, OrgLookupError) as exc:
            raise HelperEndpointError(f"malformed helper response: {exc}") from exc
        await self.add_host(u, host)
        return httpx.URL(f"https://{host}")

    # -- integrity ---------------------------------------------------------

    async def clean_duplicates(self, throw_if_duplicate_exists: bool) -> list[str]:
        """Find hosts claimed by more than one U.

        Raises ``CacheIntegrityError`` when asked to; otherwise drops every U
        that claims a contested host and returns the dropped Us.
        """
        self._require_started()
        seen: dict[str, str] = {}
        dropped: list[str] = []
        for u, elements in self._entries:
            if u in dropped:
                continue
            for element in elements:
                owner = seen.get(element.host)
                if owner is None or owner == u:
                    seen[element.host] = u
                    continue
                if throw_if_duplicate_exists:
                    raise CacheIntegrityError(element.host, [owner, u])
                claimants: list[str] = []
                while (hit := self._lookup_cached(element.host)) is not None:
                    claimant = hit[0]
                    await self._entries.delete(claimant)
                    claimants.append(claimant)
                dropped.extend(claimants)
                seen = {host: owner_u for host, owner_u in seen.items() if owner_u not in claimants}
                self.logger.warning(
                    "duplicate host in org cache, dropped claiming orgs",
                    extra={"service": "org_cache", "payload": {"host": element.host, "dropped": claimants}},
                )
                break
        return dropped

    async def hard_validate_u(self, u: str) -> list[str]:
        """Ask every cached host of ``u`` to confirm it; drop the ones that don't.

        Lookup errors propagate before anything is removed.
        """
        self._require_started()
        elements = list(self._entries.get(u) or [])
        failed: list[str] = []
        for element in elements:
            worker = OrgWorker.from_host(
                element.host,
                self.session_manager,
                appinfo_path=self.config.appinfo_path,
            )
            if not await worker.verify_u(u):
                failed.append(element.host)

        if not failed:
            return []
        current = self._entries.get(u) or []
        remaining = [element for element in current if element.host not in failed]
        if remaining:
            await self._entries.set(u, remaining)
        else:
            await self._entries.delete(u)
        self.logger.warning(
            "hosts removed after hard validation",
            extra={"service": "org_cache", "org_u": u, "payload": {"hosts": failed, "u_removed": not remaining}},
        )
        return failed

    async def hard_validate_all(self) -> dict[str, list[str]]:
        self._require_started()
        removed: dict[str, list[str]] = {}
        for u in self._entries.keys():
            failed = await self.hard_validate_u(u)
            if failed:
                removed[u] = failed
        return removed

    # -- eviction ----------------------------------------------------------

    async def cleanup_old_entries(self) -> int:
        self._require_started()
        now = self._clock()
        updates: dict[str, list[OrgCacheElement]] = {}
        removals: list[str] = []
        evicted = 0
        for u, elements in self._entries:
            kept = [element for element in elements if now - element.last_access < self.config.max_age_seconds]
            if len(kept) == len(elements):
                continue
            evicted += len(elements) - len(kept)
            if kept:
                updates[u] = kept
            else:
                removals.append(u)
        if updates or removals:
            await self._entries.apply(updates, removals)
            self.logger.info(
                "stale org cache entries evicted",
                extra={"service": "org_cache", "payload": {"hosts": evicted, "orgs_removed": removals}},
            )
        return evicted

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            try:
                await self.cleanup_old_entries()
            except Exception as exc:
                self.logger.error(
                    "org cache cleanup failed",
                    extra={"service": "org_cache", "payload": {"error": str(exc)}},
                )

    async def clear_cache(self) -> None:
        self._require_started()
        await self._entries.clear()
