from __future__ import annotations

import logging
import os
import tempfile

import httpx
import pytest


# Keep default-config test runs from reading or writing a developer's state file.
os.environ.setdefault("B6P_STATE_PATH", os.path.join(tempfile.mkdtemp(prefix="b6p-tests-"), "state.json"))

LOGIN_PATH = "/shared/home.jsp"
HELPER_PATH = "/b/vscode_extension_helper"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeB6PServer:
    """In-process stand-in for a fleet of B6P hosts plus the BlueHQ helper.

    Requests to a path with scripted responses consume them in order; everything
    else gets the default behaviour of a healthy server.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.org_ids: dict[str, str] = {}
        self.helper_org_url = "https://acme.example.com"
        self.scripted: dict[str, list[httpx.Response | Exception]] = {}
        self.logins = 0
        self.csrf_tokens = 0

    def script(self, path: str, *responses: httpx.Response | Exception) -> None:
        self.scripted.setdefault(path, []).extend(responses)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        queue = self.scripted.get(path)
        if queue:
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if request.method == "POST" and path == LOGIN_PATH:
            self.logins += 1
            return httpx.Response(
                200,
                headers=[
                    ("set-cookie", f"JSESSIONID=sess-{self.logins}; Path=/; Secure; HttpOnly"),
                    ("set-cookie", f"INGRESSCOOKIE=ing-{self.logins}; Path=/"),
                ],
                text="welcome",
            )
        if path == "/csrf-token":
            self.csrf_tokens += 1
            return httpx.Response(200, text=f"csrf-{self.csrf_tokens}")
        if path == "/appinfo/u":
            u = self.org_ids.get(request.url.host)
            if u is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, text=f"{u}\n")
        if path == HELPER_PATH:
            return httpx.Response(200, json={"orgUrl": self.helper_org_url})
        return httpx.Response(200, text="ok", headers={"b6p-csrf-token": f"rotated-{len(self.requests)}"})


@pytest.fixture
def fake_server() -> FakeB6PServer:
    return FakeB6PServer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logger = logging.getLogger("b6p_session")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    if hasattr(logger, "_b6p_configured"):
        delattr(logger, "_b6p_configured")
