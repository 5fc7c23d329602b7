"""CLI entry point for b6p-session."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

import httpx

from b6p_session.config.loader import initialize_config, load_config
from b6p_session.core.errors import B6PError
from b6p_session.core.runtime import Runtime


DEFAULT_INIT_PATH = Path("./b6p.yml")
SAFE_RESPONSE_HEADERS = ("content-type", "content-length", "b6p-csrf-token")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="b6p-session")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create starter config")
    init_parser.add_argument("--config", type=Path, default=DEFAULT_INIT_PATH)
    init_parser.add_argument("--force", action="store_true")

    fetch_parser = subparsers.add_parser("fetch", help="Authenticated GET without CSRF handling")
    fetch_parser.add_argument("--config", type=Path, default=None)
    fetch_parser.add_argument("url")

    csrf_parser = subparsers.add_parser("csrf-fetch", help="CSRF-protected request with bounded retry")
    csrf_parser.add_argument("--config", type=Path, default=None)
    csrf_parser.add_argument("url")
    csrf_parser.add_argument("--method", type=str, default="GET")
    csrf_parser.add_argument("--data", type=str, default=None, help="Raw request body")
    csrf_parser.add_argument("--retries", type=int, default=None)

    find_parser = subparsers.add_parser("find-u", help="Resolve the org id (U) served by a URL or host")
    find_parser.add_argument("--config", type=Path, default=None)
    find_parser.add_argument("url")
    find_parser.add_argument(
        "--cache-only",
        action="store_true",
        help="Fail instead of asking the server when the host is not cached",
    )

    any_parser = subparsers.add_parser("any-url", help="Print a base URL that serves the given U")
    any_parser.add_argument("--config", type=Path, default=None)
    any_parser.add_argument("u")

    show_parser = subparsers.add_parser("cache-show", help="Dump the org cache")
    show_parser.add_argument("--config", type=Path, default=None)

    clean_parser = subparsers.add_parser("cache-clean", help="Evict stale org cache entries")
    clean_parser.add_argument("--config", type=Path, default=None)
    clean_parser.add_argument("--all", action="store_true", help="Drop every entry instead")

    validate_parser = subparsers.add_parser("cache-validate", help="Re-check cached hosts against the servers")
    validate_parser.add_argument("--config", type=Path, default=None)
    validate_parser.add_argument("--u", type=str, default=None)
    validate_parser.add_argument("--check-duplicates", action="store_true")

    sessions_parser = subparsers.add_parser("sessions", help="Show stored sessions (secrets redacted)")
    sessions_parser.add_argument("--config", type=Path, default=None)
    sessions_parser.add_argument("--clear", type=str, default=None, metavar="ORIGIN")

    return parser


def _run(config_path: Path | None, action: Callable[[Runtime], Awaitable[Any]]) -> int:
    async def _drive() -> Any:
        async with Runtime(load_config(config_path), schedule_background=False) as runtime:
            return await action(runtime)

    try:
        payload = asyncio.run(_drive())
    except (B6PError, httpx.HTTPError, FileNotFoundError, ValueError) as exc:
        print(f"error: {exc}")
        return 1
    print(json.dumps(payload, indent=2))
    return 0


def _describe_response(response: httpx.Response) -> dict[str, Any]:
    return {
        "status": response.status_code,
        "url": str(response.url),
        "headers": {name: response.headers[name] for name in SAFE_RESPONSE_HEADERS if name in response.headers},
        "body": response.text,
    }


def cmd_init(config_path: Path, force: bool) -> int:
    try:
        initialize_config(config_path, force=force)
    except FileExistsError as exc:
        print(f"error: {exc}")
        return 1
    print(f"wrote config: {config_path}")
    return 0


def cmd_fetch(config_path: Path | None, url: str) -> int:
    async def action(runtime: Runtime) -> dict[str, Any]:
        return _describe_response(await runtime.session_manager.fetch(url))

    return _run(config_path, action)


def cmd_csrf_fetch(
    config_path: Path | None,
    url: str,
    *,
    method: str,
    data: str | None,
    retries: int | None,
) -> int:
    async def action(runtime: Runtime) -> dict[str, Any]:
        response = await runtime.session_manager.csrf_fetch(url, retries=retries, method=method, content=data)
        return _describe_response(response)

    return _run(config_path, action)


def cmd_find_u(config_path: Path | None, url: str, *, cache_only: bool) -> int:
    async def action(runtime: Runtime) -> dict[str, Any]:
        u = await runtime.org_cache.find_u(url, cache_only=cache_only)
        return {"u": u, "hosts": runtime.org_cache.hosts_for(u)}

    return _run(config_path, action)


def cmd_any_url(config_path: Path | None, u: str) -> int:
    async def action(runtime: Runtime) -> dict[str, Any]:
        return {"u": u, "url": str(await runtime.org_cache.get_any_base_url(u))}

    return _run(config_path, action)


def cmd_cache_show(config_path: Path | None) -> int:
    async def action(runtime: Runtime) -> dict[str, Any]:
        return runtime.org_cache.snapshot()

    return _run(config_path, action)


def cmd_cache_clean(config_path: Path | None, *, clear_all: bool) -> int:
    async def action(runtime: Runtime) -> dict[str, Any]:
        if clear_all:
            await runtime.org_cache.clear_cache()
            return {"cleared": True}
        return {"evicted": await runtime.org_cache.cleanup_old_entries()}

    return _run(config_path, action)


def cmd_cache_validate(config_path: Path | None, *, u: str | None, check_duplicates: bool) -> int:
    async def action(runtime: Runtime) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if check_duplicates:
            payload["duplicates_dropped"] = await runtime.org_cache.clean_duplicates(False)
        if u is not None:
            payload["removed"] = {u: await runtime.org_cache.hard_validate_u(u)}
        else:
            payload["removed"] = await runtime.org_cache.hard_validate_all()
        return payload

    return _run(config_path, action)


def cmd_sessions(config_path: Path | None, *, clear: str | None) -> int:
    async def action(runtime: Runtime) -> dict[str, Any]:
        if clear is not None:
            await runtime.session_manager.clear_session(clear)
        return {"sessions": runtime.session_manager.describe_sessions()}

    return _run(config_path, action)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args.config, args.force)
    if args.command == "fetch":
        return cmd_fetch(args.config, args.url)
    if args.command == "csrf-fetch":
        return cmd_csrf_fetch(
            args.config,
            args.url,
            method=args.method,
            data=args.data,
            retries=args.retries,
        )
    if args.command == "find-u":
        return cmd_find_u(args.config, args.url, cache_only=args.cache_only)
    if args.command == "any-url":
        return cmd_any_url(args.config, args.u)
    if args.command == "cache-show":
        return cmd_cache_show(args.config)
    if args.command == "cache-clean":
        return cmd_cache_clean(args.config, clear_all=args.all)
    if args.command == "cache-validate":
        return cmd_cache_validate(args.config, u=args.u, check_duplicates=args.check_duplicates)
    if args.command == "sessions":
        return cmd_sessions(args.config, clear=args.clear)
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
