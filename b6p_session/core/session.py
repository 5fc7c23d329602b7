"""Per-origin authenticated sessions with CSRF handling and bounded retry."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import re
import time
from typing import Any, Awaitable, Callable, Iterable, Mapping

import httpx

from b6p_session.config.schema import SessionConfig
from b6p_session.core.credentials import CredentialProvider
from b6p_session.core.errors import (
    CsrfTokenNotFoundError,
    HttpResponseError,
    ManagerNotInitializedError,
    RequestTimeoutError,
    RetryAttemptsExhaustedError,
    SessionConsistencyError,
    SessionDataMissingError,
    SessionError,
    SessionIdMissingError,
    SessionNotFoundError,
    UnauthorizedError,
)
from b6p_session.core.http import HttpClient, as_url, origin_of
from b6p_session.core.logging import EventLogger, get_logger
from b6p_session.core.store import KeyValueStore, PersistentMap


SESSIONS_KEY = "sessions"
JSESSIONID = "JSESSIONID"
INGRESSCOOKIE = "INGRESSCOOKIE"
HTTP_FORBIDDEN = 403
HTTP_BAD_REQUEST = 400

# Set-Cookie values folded into one header are comma separated; only split on
# commas that are followed by another name=value pair (Expires dates contain commas).
_FOLDED_COOKIE_SPLIT_RE = re.compile(r",(?=[^;]+=[^;])")


@dataclass(slots=True)
class Session:
    origin: str
    jsessionid: str | None = None
    ingress_cookie: str | None = None
    last_csrf_token: str | None = None
    last_touched: float = 0.0
    fresh: bool = True

    def is_valid(self, now: float, ttl_seconds: float) -> bool:
        return bool(self.jsessionid) and (now - self.last_touched) < ttl_seconds

    def cookie_header(self) -> str:
        return f"{JSESSIONID}={self.jsessionid}; {INGRESSCOOKIE}={self.ingress_cookie or ''}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "origin": self.origin,
            JSESSIONID: self.jsessionid,
            INGRESSCOOKIE: self.ingress_cookie,
            "lastCsrfToken": self.last_csrf_token,
            "lastTouched": self.last_touched,
            "fresh": self.fresh,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Session":
        return cls(
            origin=str(raw.get("origin", "")),
            jsessionid=raw.get(JSESSIONID) or None,
            ingress_cookie=raw.get(INGRESSCOOKIE) or None,
            last_csrf_token=raw.get("lastCsrfToken") or None,
            last_touched=float(raw.get("lastTouched", 0.0) or 0.0),
            fresh=bool(raw.get("fresh", False)),
        )


def parse_set_cookie(values: Iterable[str]) -> dict[str, str]:
    """Collect ``name=value`` pairs from Set-Cookie header values.

    Not an RFC 6265 parser: attributes such as ``Secure`` or ``Path`` are
    ignored and only the leading pair of each cookie is read.
    """
    cookies: dict[str, str] = {}
    for header_value in values:
        for cookie_string in _FOLDED_COOKIE_SPLIT_RE.split(header_value):
            first_part = cookie_string.split(";", 1)[0].strip()
            name, sep, value = first_part.partition("=")
            name = name.strip()
            value = value.strip()
            if sep and name and value:
                cookies[name] = value
    return cookies


class SessionManager:
    """Authenticated fetches keyed by origin.

    Lifecycle per origin::

        no session -> login -> active -> (expired | 403) -> no session

    ``fetch`` logs in transparently when there is no valid session and never
    retries. ``csrf_fetch`` adds the CSRF token handshake and a bounded retry
    loop on top of it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        credentials: CredentialProvider,
        http: HttpClient,
        config: SessionConfig | None = None,
        *,
        notices: EventLogger | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or SessionConfig()
        self.credentials = credentials
        self.http = http
        self.logger = get_logger("b6p_session.session")
        self.notices = notices or EventLogger(logger=self.logger, service_name="b6p-session")
        self._clock = clock
        self._sleep = sleep
        self._sessions: PersistentMap[Session] = PersistentMap(
            store,
            SESSIONS_KEY,
            encode=Session.to_dict,
            decode=Session.from_dict,
        )
        self._pending_logins: dict[str, asyncio.Future[None]] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        self._started = False

    # -- lifecycle ---------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, *, schedule_sweep: bool = True) -> None:
        if self._started:
            return
        await self._sessions.load()
        self._started = True
        if schedule_sweep:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="b6p-session-sweep")
        self.logger.info(
            "session manager started",
            extra={"service": "session", "payload": {"sessions": len(self._sessions)}},
        )

    async def shutdown(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for pending in list(self._pending_logins.values()):
            pending.cancel()
        self._pending_logins.clear()
        self._started = False

    def _require_started(self) -> None:
        if not self._started:
            raise ManagerNotInitializedError("SessionManager")

    # -- queries -----------------------------------------------------------

    def has_valid_session(self, origin: str | httpx.URL) -> bool:
        self._require_started()
        session = self._sessions.get(origin_of(origin))
        return session is not None and session.is_valid(self._clock(), self.config.ttl_seconds)

    def get_session(self, origin: str | httpx.URL) -> Session | None:
        self._require_started()
        session = self._sessions.get(origin_of(origin))
        return replace(session) if session is not None else None

    def describe_sessions(self) -> list[dict[str, Any]]:
        self._require_started()
        now = self._clock()
        return [
            {
                "origin": origin,
                "authenticated": bool(session.jsessionid),
                "has_ingress_cookie": bool(session.ingress_cookie),
                "has_csrf_token": bool(session.last_csrf_token),
                "age_seconds": round(max(0.0, now - session.last_touched), 3),
                "valid": session.is_valid(now, self.config.ttl_seconds),
                "fresh": session.fresh,
            }
            for origin, session in self._sessions
        ]

    async def clear_session(self, origin: str | httpx.URL) -> None:
        self._require_started()
        await self._sessions.delete(origin_of(origin))

    async def clear_all(self) -> None:
        self._require_started()
        await self._sessions.clear()

    # -- housekeeping ------------------------------------------------------

    async def sweep_expired(self) -> list[str]:
        self._require_started()
        now = self._clock()
        expired = [
            origin
            for origin, session in self._sessions
            if now - session.last_touched >= self.config.ttl_seconds
        ]
        if expired:
            await self._sessions.delete_many(expired)
            self.logger.debug(
                "expired sessions removed",
                extra={"service": "session", "payload": {"origins": expired}},
            )
        return expired

    async def _sweep_loop(self) -> None:
        delay = self.config.first_cleanup_delay_seconds
        while True:
            await asyncio.sleep(delay)
            try:
                await self.sweep_expired()
            except Exception as exc:
                self.logger.error(
                    "session sweep failed",
                    extra={"service": "session", "payload": {"error": str(exc)}},
                )
            delay = self.config.ttl_seconds

    # -- base fetch --------------------------------------------------------

    async def fetch(
        self,
        url: str | httpx.URL,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        content: str | bytes | None = None,
        data: Mapping[str, Any] | None = None,
        json: Any | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one request with the origin's session cookies, logging in first if needed."""
        self._require_started()
        target = as_url(url)
        origin = origin_of(target)
        session = self._valid_session(origin)
        if session is None:
            await self._ensure_login(origin)
            session = self._valid_session(origin)
            if session is None:
                raise SessionIdMissingError()

        request_headers = httpx.Headers(headers or {})
        request_headers["Cookie"] = session.cookie_header()
        response = await self.http.request(
            method,
            target,
            headers=request_headers,
            content=content,
            data=data,
            json=json,
            params=params,
        )
        return await self._process_response(response)

    def _valid_session(self, origin: str) -> Session | None:
        session = self._sessions.get(origin)
        if session is not None and session.is_valid(self._clock(), self.config.ttl_seconds):
            return session
        return None

    async def _ensure_login(self, origin: str) -> None:
        pending = self._pending_logins.get(origin)
        if pending is None:
            pending = asyncio.ensure_future(self._login(origin))
            self._pending_logins[origin] = pending

            def _forget(done: asyncio.Future[None], key: str = origin) -> None:
                if self._pending_logins.get(key) is done:
                    del self._pending_logins[key]
                # Waiters may all be gone; mark the failure as retrieved.
                if not done.cancelled():
                    done.exception()

            pending.add_done_callback(_forget)
        else:
            self.logger.debug(
                "joining in-flight login",
                extra={"service": "session", "origin": origin},
            )
        await asyncio.shield(pending)

    async def _login(self, origin: str) -> None:
        self.logger.info("performing login", extra={"service": "session", "origin": origin})
        response = await self.http.request(
            "POST",
            f"{origin}{self.config.login_path}",
            headers={
                "Authorization": await self.credentials.auth_header_value(),
                "Content-Type": "application/x-www-form-urlencoded",
            },
            content=await self.credentials.auth_login_body_value(),
        )
        self.logger.info(
            "login finished",
            extra={"service": "session", "origin": origin, "payload": {"status": response.status_code}},
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            raise HttpResponseError(
                f"HTTP Error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        await self._process_response(response, fresh=True)

    async def _process_response(self, response: httpx.Response, *, fresh: bool = False) -> httpx.Response:
        if response.status_code == HTTP_FORBIDDEN:
            raise UnauthorizedError(
                f"HTTP Error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        origin = origin_of(response.url)
        existing = self._sessions.get(origin)
        csrf_token = self._csrf_token_from(response.headers)
        set_cookie_values = response.headers.get_list("set-cookie")
        now = self._clock()

        if set_cookie_values:
            cookies = parse_set_cookie(set_cookie_values)
            jsessionid = cookies.get(JSESSIONID) or (existing.jsessionid if existing else None)
            if not jsessionid:
                raise SessionIdMissingError()
            session = Session(
                origin=origin,
                jsessionid=jsessionid,
                ingress_cookie=cookies.get(INGRESSCOOKIE) or (existing.ingress_cookie if existing else None),
                last_csrf_token=csrf_token or (existing.last_csrf_token if existing else None),
                last_touched=now,
                fresh=fresh,
            )
        else:
            if existing is None:
                raise SessionDataMissingError()
            session = replace(
                existing,
                last_touched=now,
                last_csrf_token=csrf_token or existing.last_csrf_token,
                fresh=fresh,
            )
        await self._sessions.set(origin, session)
        return response

    def _csrf_token_from(self, headers: httpx.Headers) -> str | None:
        name = self.config.csrf_header.lower()
        token = headers.get(name)
        if not token:
            # Some proxies re-case or duplicate the header; fall back to a scan.
            for key, value in headers.multi_items():
                if key.lower() == name and value:
                    token = value
        token = (token or "").strip()
        return token or None

    # -- CSRF protected fetch ----------------------------------------------

    async def csrf_fetch(
        self,
        url: str | httpx.URL,
        *,
        retries: int | None = None,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        content: str | bytes | None = None,
        data: Mapping[str, Any] | None = None,
        json: Any | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        """``fetch`` with a fresh CSRF token, retrying up to ``retries`` times.

        Retries happen on 403 (after dropping the session) and on other session
        or transport errors (after a fixed delay). Timeouts are terminal and
        session-consistency errors propagate untouched.
        """
        self._require_started()
        target = as_url(url)
        origin = origin_of(target)
        remaining = self.config.max_retries if retries is None else max(0, int(retries))
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._csrf_attempt(
                    target,
                    origin,
                    method=method,
                    headers=headers,
                    content=content,
                    data=data,
                    json=json,
                    params=params,
                )
            except Exception as exc:
                if not self._is_retry_candidate(exc):
                    raise
                if remaining <= 0:
                    self.logger.error(
                        "csrf fetch gave up",
                        extra={
                            "service": "session",
                            "origin": origin,
                            "payload": {"attempts": attempt, "error": self._describe_error(exc)},
                        },
                    )
                    raise RetryAttemptsExhaustedError(self._describe_error(exc)) from exc
                if isinstance(exc, httpx.TimeoutException):
                    raise RequestTimeoutError() from exc
                if isinstance(exc, UnauthorizedError):
                    await self._sessions.delete(origin)
                    self.notices.emit(
                        message="Session expired, attempting to re-authenticate...",
                        action="reauthenticate",
                        origin=origin,
                        outcome="unknown",
                        payload={"error": str(exc), "retries_left": remaining},
                    )
                else:
                    session = self._sessions.get(origin)
                    if session is not None:
                        session.last_csrf_token = None
                    await self._sessions.delete(origin)
                    self.notices.emit(
                        message=f"Request didn't work, retrying... ({remaining} attempts left)",
                        action="retry",
                        origin=origin,
                        outcome="unknown",
                        payload={"error": self._describe_error(exc), "retries_left": remaining},
                    )
                    await self._sleep(self.config.retry_delay_seconds)
                remaining -= 1

    async def _csrf_attempt(
        self,
        target: httpx.URL,
        origin: str,
        *,
        method: str,
        headers: Mapping[str, str] | None,
        content: str | bytes | None,
        data: Mapping[str, Any] | None,
        json: Any | None,
        params: Mapping[str, Any] | None,
    ) -> httpx.Response:
        if not self._sessions.has(origin):
            await self._sessions.set(origin, Session(origin=origin, last_touched=self._clock()))

        # TODO: reuse the cached token while it is fresh once the server's token lifetime is known.
        token_response = await self.fetch(f"{origin}{self.config.csrf_token_path}")
        if token_response.status_code >= HTTP_BAD_REQUEST:
            raise HttpResponseError(
                f"HTTP Error: {token_response.status_code} {token_response.reason_phrase}",
                status_code=token_response.status_code,
            )
        token = token_response.text.strip() or None
        session = self._sessions.get(origin)
        if session is None:
            raise SessionNotFoundError(origin)
        session.last_csrf_token = token
        await self._sessions.set(origin, session)
        if not token:
            raise CsrfTokenNotFoundError()

        request_headers = httpx.Headers(headers or {})
        request_headers[self.config.csrf_header] = token
        response = await self.fetch(
            target,
            method=method,
            headers=request_headers,
            content=content,
            data=data,
            json=json,
            params=params,
        )
        rotated = self._csrf_token_from(response.headers)
        if not rotated:
            raise CsrfTokenNotFoundError()
        session = self._sessions.get(origin)
        if session is not None:
            session.last_csrf_token = rotated
            await self._sessions.set(origin, session)
        return response

    @staticmethod
    def _is_retry_candidate(exc: Exception) -> bool:
        if isinstance(exc, SessionConsistencyError):
            return False
        return isinstance(exc, (SessionError, httpx.HTTPError))

    @staticmethod
    def _describe_error(exc: Exception) -> str:
        return f"{type(exc).__name__}: {exc}"
