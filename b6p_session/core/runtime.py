"""Wires config into a ready-to-use session manager and org cache."""

from __future__ import annotations

import time
from typing import Callable

import httpx

from b6p_session.config.schema import AppConfig
from b6p_session.core.credentials import BasicCredentialProvider, CredentialProvider
from b6p_session.core.http import HttpClient
from b6p_session.core.logging import EventLogger, NoticeHook, configure_logging, get_logger
from b6p_session.core.session import SessionManager
from b6p_session.core.store import KeyValueStore, open_store
from b6p_session.org.cache import OrgCache


class Runtime:
    """Owns the store, HTTP client, session manager and org cache.

    Components are created in ``start()`` because opening the store may need
    the event loop (Redis). Use as ``async with Runtime(config) as runtime``.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        store: KeyValueStore | None = None,
        credentials: CredentialProvider | None = None,
        notice_hook: NoticeHook | None = None,
        clock: Callable[[], float] = time.time,
        schedule_background: bool = True,
    ) -> None:
        self.config = config
        configure_logging(config.logging)
        self.logger = get_logger("b6p_session.runtime", level=config.logging.level)
        self.notices = EventLogger(
            logger=get_logger("b6p_session.notices", level=config.logging.level),
            service_name=config.logging.service_name,
            publish_hook=notice_hook,
        )
        self.credentials = credentials or BasicCredentialProvider.from_config(config.credentials)
        self.http = HttpClient(config.http, transport=transport)
        self._store = store
        self._clock = clock
        self._schedule_background = schedule_background
        self._session_manager: SessionManager | None = None
        self._org_cache: OrgCache | None = None

    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            raise RuntimeError("runtime must be started before use")
        return self._store

    @property
    def session_manager(self) -> SessionManager:
        if self._session_manager is None:
            raise RuntimeError("runtime must be started before use")
        return self._session_manager

    @property
    def org_cache(self) -> OrgCache:
        if self._org_cache is None:
            raise RuntimeError("runtime must be started before use")
        return self._org_cache

    async def start(self) -> None:
        if self._session_manager is not None:
            return
        if self._store is None:
            self._store = await open_store(self.config.store)
        session_manager = SessionManager(
            self._store,
            self.credentials,
            self.http,
            self.config.session,
            notices=self.notices,
            clock=self._clock,
        )
        org_cache = OrgCache(self._store, session_manager, self.config.org_cache, clock=self._clock)
        await session_manager.start(schedule_sweep=self._schedule_background)
        await org_cache.start(schedule_cleanup=self._schedule_background)
        self._session_manager = session_manager
        self._org_cache = org_cache
        self.logger.info(
            "runtime started",
            extra={"service": "runtime", "payload": {"store": self._store.backend}},
        )

    async def shutdown(self) -> None:
        org_cache, self._org_cache = self._org_cache, None
        session_manager, self._session_manager = self._session_manager, None
        if org_cache is not None:
            await org_cache.shutdown()
        if session_manager is not None:
            await session_manager.shutdown()
        await self.http.aclose()
        if self._store is not None:
            await self._store.close()

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
