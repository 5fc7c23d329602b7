import asyncio

import httpx
import pytest

from b6p_session.core.credentials import BasicCredentialProvider, BasicCredentials
from b6p_session.core.errors import OrgLookupError
from b6p_session.core.http import HttpClient
from b6p_session.core.session import SessionManager
from b6p_session.core.store import MemoryKeyValueStore
from b6p_session.org.worker import OrgWorker


def _manager(server, clock) -> SessionManager:
    return SessionManager(
        MemoryKeyValueStore(),
        BasicCredentialProvider({"default": BasicCredentials(username="alice", password="s3cret")}),
        HttpClient(transport=server.transport),
        clock=clock,
    )


def _run(server, clock, scenario):
    async def wrapper():
        manager = _manager(server, clock)
        await manager.start(schedule_sweep=False)
        try:
            return await scenario(manager)
        finally:
            await manager.shutdown()

    return asyncio.run(wrapper())


def test_lookup_url_drops_path_and_query() -> None:
    worker = OrgWorker("https://a.example.com/shared/page.jsp?id=3#frag", session_manager=None)
    assert str(worker.lookup_url) == "https://a.example.com/appinfo/u"
    assert worker.host == "a.example.com"


def test_lookup_url_keeps_non_default_port() -> None:
    worker = OrgWorker("http://localhost:8080/x", session_manager=None)
    assert str(worker.lookup_url) == "http://localhost:8080/appinfo/u"


def test_get_u_trims_and_memoises(fake_server, clock) -> None:
    fake_server.org_ids["a.example.com"] = "U123"

    async def scenario(manager):
        worker = OrgWorker("https://a.example.com/some/page", manager)
        first = await worker.get_u()
        second = await worker.get_u()
        return first, second

    assert _run(fake_server, clock, scenario) == ("U123", "U123")
    assert len(fake_server.requests_to("/appinfo/u")) == 1
    (request,) = fake_server.requests_to("/appinfo/u")
    assert request.headers["cookie"].startswith("JSESSIONID=sess-1")


def test_get_u_non_success_raises(fake_server, clock) -> None:
    async def scenario(manager):
        await OrgWorker("https://unknown.example.com", manager).get_u()

    with pytest.raises(OrgLookupError):
        _run(fake_server, clock, scenario)


def test_get_u_wraps_transport_errors(fake_server, clock) -> None:
    fake_server.script("/appinfo/u", httpx.ConnectError("unreachable"))

    async def scenario(manager):
        await OrgWorker("https://a.example.com", manager).get_u()

    with pytest.raises(OrgLookupError) as exc_info:
        _run(fake_server, clock, scenario)
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


def test_get_u_rejects_empty_body(fake_server, clock) -> None:
    fake_server.script("/appinfo/u", httpx.Response(200, text="  \n"))

    async def scenario(manager):
        await OrgWorker("https://a.example.com", manager).get_u()

    with pytest.raises(OrgLookupError):
        _run(fake_server, clock, scenario)


def test_verify_u_is_exact_match(fake_server, clock) -> None:
    fake_server.org_ids["a.example.com"] = "U123"

    async def scenario(manager):
        worker = OrgWorker.from_host("a.example.com", manager)
        return await worker.verify_u("U123"), await worker.verify_u("u123"), await worker.verify_u("U12")

    assert _run(fake_server, clock, scenario) == (True, False, False)


@pytest.mark.parametrize("host", ["", "bad host", "-a.example.com", "a..example.com", "a.example.com/x", "a_b.com"])
def test_from_host_rejects_invalid_hosts_without_network(fake_server, clock, host) -> None:
    with pytest.raises(OrgLookupError):
        OrgWorker.from_host(host, _manager(fake_server, clock))
    assert fake_server.requests == []


def test_from_host_builds_https_url() -> None:
    worker = OrgWorker.from_host("sub-1.example.com", session_manager=None)
    assert worker.url.scheme == "https"
    assert worker.url.host == "sub-1.example.com"


def test_constructor_rejects_non_http_urls() -> None:
    with pytest.raises(OrgLookupError):
        OrgWorker("ftp://a.example.com", session_manager=None)
    with pytest.raises(OrgLookupError):
        OrgWorker("not a url", session_manager=None)
