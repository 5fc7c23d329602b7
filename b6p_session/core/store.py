"""Durable key-value stores and the write-through map built on them."""

from __future__ import annotations

import asyncio
import copy
import json
import os
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Iterator, Mapping, Protocol, TypeVar
from urllib.parse import urlparse, urlunparse

from b6p_session.config.schema import StoreConfig
from b6p_session.core.logging import get_logger


class KeyValueStore(Protocol):
    backend: str

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...

    async def items(self) -> list[tuple[str, Any]]: ...

    async def close(self) -> None: ...


def _detached(value: Any) -> Any:
    # Stored values must survive serialization; reject anything json cannot carry.
    return json.loads(json.dumps(value))


class MemoryKeyValueStore:
    backend = "memory"

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = {key: _detached(value) for key, value in (initial or {}).items()}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = _detached(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    async def items(self) -> list[tuple[str, Any]]:
        return [(key, copy.deepcopy(value)) for key, value in self._data.items()]

    async def close(self) -> None:
        return None


class JsonFileKeyValueStore:
    """All keys in one JSON document, rewritten atomically on each mutation."""

    backend = "file"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.logger = get_logger("b6p_session.store")
        self._data: dict[str, Any] | None = None
        self._write_lock = asyncio.Lock()

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data
        data: dict[str, Any] = {}
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            except (json.JSONDecodeError, OSError) as exc:
                self.logger.warning(
                    "state file unreadable, starting empty",
                    extra={"service": "store", "payload": {"path": str(self.path), "error": str(exc)}},
                )
                raw = {}
            if isinstance(raw, dict):
                data = raw
        self._data = data
        return data

    async def _flush(self) -> None:
        snapshot = json.dumps(self._load(), separators=(",", ":"), sort_keys=True)
        async with self._write_lock:
            await asyncio.to_thread(self._write_atomic, snapshot)

    def _write_atomic(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, self.path)

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._load().get(key))

    async def set(self, key: str, value: Any) -> None:
        self._load()[key] = _detached(value)
        await self._flush()

    async def delete(self, key: str) -> None:
        data = self._load()
        if key not in data:
            return
        del data[key]
        await self._flush()

    async def clear(self) -> None:
        self._load().clear()
        await self._flush()

    async def items(self) -> list[tuple[str, Any]]:
        return [(key, copy.deepcopy(value)) for key, value in self._load().items()]

    async def close(self) -> None:
        return None


class RedisKeyValueStore:
    """Redis-backed store that degrades to memory when Redis goes away."""

    def __init__(self, config: StoreConfig, client: Any | None = None) -> None:
        self.config = config
        self.logger = get_logger("b6p_session.store")
        self._client = client
        self._fallback = MemoryKeyValueStore()
        self.backend = "redis" if client is not None else "memory"

    async def connect(self) -> None:
        if self._client is not None:
            return
        safe_redis_url = self._redact_redis_url(self.config.redis_url)
        try:
            import redis.asyncio as redis_asyncio  # type: ignore[import-not-found]

            client = redis_asyncio.Redis.from_url(
                self.config.redis_url,
                socket_connect_timeout=self.config.connect_timeout_seconds,
                socket_timeout=self.config.connect_timeout_seconds,
                decode_responses=True,
            )
            await client.ping()
            self._client = client
            self.backend = "redis"
            if not self._redis_url_has_credentials(self.config.redis_url):
                self.logger.warning(
                    "redis store configured without AUTH credentials",
                    extra={"service": "store", "payload": {"redis_url": safe_redis_url}},
                )
            self.logger.info(
                "store backend initialized",
                extra={"service": "store", "payload": {"backend": "redis", "redis_url": safe_redis_url}},
            )
        except Exception as exc:
            if self.config.required:
                raise RuntimeError(f"failed to initialize required redis store: {exc}") from exc
            self._client = None
            self.backend = "memory"
            self.logger.warning(
                "redis store unavailable, falling back to memory",
                extra={"service": "store", "payload": {"backend": "memory", "error": str(exc)}},
            )

    def _key(self, key: str) -> str:
        return f"{self.config.key_prefix}:{key}"

    async def _degrade_to_memory(self, exc: Exception) -> None:
        if self.backend == "memory":
            return
        if self.config.required:
            raise RuntimeError(f"required redis store failed: {exc}") from exc
        self.backend = "memory"
        self._client = None
        self.logger.error(
            "redis store failed, switched to memory",
            extra={"service": "store", "payload": {"error": str(exc), "fallback": "memory"}},
        )

    async def get(self, key: str) -> Any | None:
        if self._client is not None:
            try:
                raw = await self._client.get(self._key(key))
                return None if raw is None else json.loads(raw)
            except Exception as exc:
                await self._degrade_to_memory(exc)
        return await self._fallback.get(key)

    async def set(self, key: str, value: Any) -> None:
        await self._fallback.set(key, value)
        if self._client is not None:
            try:
                await self._client.set(self._key(key), json.dumps(value, separators=(",", ":")))
            except Exception as exc:
                await self._degrade_to_memory(exc)

    async def delete(self, key: str) -> None:
        await self._fallback.delete(key)
        if self._client is not None:
            try:
                await self._client.delete(self._key(key))
            except Exception as exc:
                await self._degrade_to_memory(exc)

    async def clear(self) -> None:
        await self._fallback.clear()
        if self._client is not None:
            try:
                keys = [key async for key in self._client.scan_iter(match=self._key("*"))]
                if keys:
                    await self._client.delete(*keys)
            except Exception as exc:
                await self._degrade_to_memory(exc)

    async def items(self) -> list[tuple[str, Any]]:
        if self._client is not None:
            try:
                prefix = self._key("")
                result: list[tuple[str, Any]] = []
                async for full_key in self._client.scan_iter(match=self._key("*")):
                    raw = await self._client.get(full_key)
                    if raw is not None:
                        result.append((full_key[len(prefix):], json.loads(raw)))
                return result
            except Exception as exc:
                await self._degrade_to_memory(exc)
        return await self._fallback.items()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _redis_url_has_credentials(redis_url: str) -> bool:
        parsed = urlparse(str(redis_url).strip())
        return bool((parsed.password or "").strip())

    @staticmethod
    def _redact_redis_url(redis_url: str) -> str:
        raw = str(redis_url).strip()
        parsed = urlparse(raw)
        if not parsed.password or not parsed.hostname:
            return raw
        hostname = parsed.hostname
        if ":" in hostname and not hostname.startswith("["):
            hostname = f"[{hostname}]"
        userinfo = f"{parsed.username}:***@" if parsed.username else ":***@"
        netloc = f"{userinfo}{hostname}"
        if parsed.port is not None:
            netloc = f"{netloc}:{parsed.port}"
        return urlunparse((parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment))


async def open_store(config: StoreConfig) -> KeyValueStore:
    if config.backend == "file":
        return JsonFileKeyValueStore(Path(config.path))
    if config.backend == "redis":
        store = RedisKeyValueStore(config)
        await store.connect()
        return store
    return MemoryKeyValueStore()


T = TypeVar("T")


class PersistentMap(Generic[T]):
    """In-memory map mirrored under a single key of a :class:`KeyValueStore`.

    Reads are served from memory. Every mutation awaits the store before
    returning, so there are no deferred writes.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        *,
        encode: Callable[[T], Any] = lambda value: value,
        decode: Callable[[Any], T] = lambda raw: raw,
    ) -> None:
        self.store = store
        self.key = key
        self._encode = encode
        self._decode = decode
        self._entries: dict[str, T] = {}

    async def load(self) -> None:
        raw = await self.store.get(self.key)
        entries: dict[str, T] = {}
        if isinstance(raw, dict):
            for name, item in raw.items():
                entries[str(name)] = self._decode(item)
        self._entries = entries

    async def persist(self) -> None:
        await self.store.set(self.key, {name: self._encode(item) for name, item in self._entries.items()})

    def get(self, name: str) -> T | None:
        return self._entries.get(name)

    def has(self, name: str) -> bool:
        return name in self._entries

    def keys(self) -> list[str]:
        return list(self._entries)

    def items(self) -> list[tuple[str, T]]:
        return list(self._entries.items())

    async def set(self, name: str, value: T) -> None:
        self._entries[name] = value
        await self.persist()

    async def delete(self, name: str) -> bool:
        if name not in self._entries:
            return False
        del self._entries[name]
        await self.persist()
        return True

    async def delete_many(self, names: Iterable[str]) -> list[str]:
        removed = [name for name in names if self._entries.pop(name, None) is not None]
        if removed:
            await self.persist()
        return removed

    async def apply(self, updates: Mapping[str, T], removals: Iterable[str] = ()) -> None:
        """Set and delete several entries with a single write."""
        self._entries.update(updates)
        for name in removals:
            self._entries.pop(name, None)
        await self.persist()

    async def clear(self) -> None:
        self._entries.clear()
        await self.persist()

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[tuple[str, T]]:
        return iter(list(self._entries.items()))

    def __len__(self) -> int:
        return len(self._entries)
