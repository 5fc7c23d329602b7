import functools
import json
from pathlib import Path

import httpx
import pytest

from b6p_session import cli
from b6p_session.cli import main
from b6p_session.core.runtime import Runtime


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "b6p.yml"
    path.write_text(
        "\n".join(
            [
                "logging:",
                "  sink: file",
                f"  file_path: {tmp_path / 'b6p.log'}",
                "store:",
                "  backend: file",
                f"  path: {tmp_path / 'state.json'}",
                "credentials:",
                "  accounts:",
                "    default:",
                "      username: alice",
                "      password: s3cret",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def served(monkeypatch: pytest.MonkeyPatch, fake_server):
    monkeypatch.setattr(cli, "Runtime", functools.partial(Runtime, transport=fake_server.transport))
    return fake_server


def _output(capsys: pytest.CaptureFixture[str]) -> dict:
    return json.loads(capsys.readouterr().out)


def test_init_command_writes_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = tmp_path / "b6p.yml"
    assert main(["init", "--config", str(config_path)]) == 0
    assert config_path.exists()
    assert main(["init", "--config", str(config_path)]) == 1
    assert "error: config already exists" in capsys.readouterr().out
    assert main(["init", "--config", str(config_path), "--force"]) == 0


def test_find_u_then_cache_only(config_path: Path, served, capsys: pytest.CaptureFixture[str]) -> None:
    served.org_ids["a.example.com"] = "U1"

    assert main(["find-u", "--config", str(config_path), "https://a.example.com/page"]) == 0
    assert _output(capsys) == {"u": "U1", "hosts": ["a.example.com"]}

    assert main(["find-u", "--config", str(config_path), "a.example.com", "--cache-only"]) == 0
    assert _output(capsys)["u"] == "U1"
    assert len(served.requests_to("/appinfo/u")) == 1


def test_find_u_cache_only_miss_is_an_error(config_path: Path, served, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["find-u", "--config", str(config_path), "b.example.com", "--cache-only"]) == 1
    assert capsys.readouterr().out.startswith("error: no cached org for host: b.example.com")
    assert served.requests == []


def test_cache_show_and_clean(config_path: Path, served, capsys: pytest.CaptureFixture[str]) -> None:
    served.org_ids["a.example.com"] = "U1"
    assert main(["find-u", "--config", str(config_path), "https://a.example.com"]) == 0
    capsys.readouterr()

    assert main(["cache-show", "--config", str(config_path)]) == 0
    snapshot = _output(capsys)
    assert [item["host"] for item in snapshot["U1"]] == ["a.example.com"]

    assert main(["cache-clean", "--config", str(config_path)]) == 0
    assert _output(capsys) == {"evicted": 0}

    assert main(["cache-clean", "--config", str(config_path), "--all"]) == 0
    assert _output(capsys) == {"cleared": True}
    assert main(["cache-show", "--config", str(config_path)]) == 0
    assert _output(capsys) == {}


def test_cache_validate(config_path: Path, served, capsys: pytest.CaptureFixture[str]) -> None:
    served.org_ids["a.example.com"] = "U1"
    assert main(["find-u", "--config", str(config_path), "a.example.com"]) == 0
    capsys.readouterr()
    served.org_ids["a.example.com"] = "U2"

    assert main(["cache-validate", "--config", str(config_path), "--u", "U1", "--check-duplicates"]) == 0
    assert _output(capsys) == {"duplicates_dropped": [], "removed": {"U1": ["a.example.com"]}}


def test_any_url_uses_helper(config_path: Path, served, capsys: pytest.CaptureFixture[str]) -> None:
    served.helper_org_url = "https://acme.example.com"
    assert main(["any-url", "--config", str(config_path), "U7"]) == 0
    payload = _output(capsys)
    assert payload["u"] == "U7"
    assert "acme.example.com" in payload["url"]


def test_csrf_fetch_and_sessions(config_path: Path, served, capsys: pytest.CaptureFixture[str]) -> None:
    assert (
        main(
            [
                "csrf-fetch",
                "--config",
                str(config_path),
                "https://a.example.com/api/save",
                "--method",
                "POST",
                "--data",
                "a=1",
            ]
        )
        == 0
    )
    payload = _output(capsys)
    assert payload["status"] == 200
    assert payload["body"] == "ok"
    (request,) = served.requests_to("/api/save")
    assert request.headers["b6p-csrf-token"] == "csrf-1"

    assert main(["sessions", "--config", str(config_path)]) == 0
    sessions = _output(capsys)["sessions"]
    assert [entry["origin"] for entry in sessions] == ["https://a.example.com"]
    assert "sess-1" not in json.dumps(sessions)

    assert main(["sessions", "--config", str(config_path), "--clear", "https://a.example.com"]) == 0
    assert _output(capsys) == {"sessions": []}


def test_fetch_reports_library_errors(config_path: Path, served, capsys: pytest.CaptureFixture[str]) -> None:
    served.script("/api/one", httpx.Response(403))
    assert main(["fetch", "--config", str(config_path), "https://a.example.com/api/one"]) == 1
    assert capsys.readouterr().out.startswith("error: HTTP Error: 403")


def test_fetch_rejects_relative_urls(config_path: Path, served, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["fetch", "--config", str(config_path), "/api/one"]) == 1
    assert capsys.readouterr().out.startswith("error: not an absolute http(s) URL")


def test_missing_config_file_is_reported(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["cache-show", "--config", str(tmp_path / "absent.yml")]) == 1
    assert capsys.readouterr().out.startswith("error: config file does not exist")
