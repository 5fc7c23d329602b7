"""Dataclasses for top-level application config."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse


DEFAULT_HELPER_URL = "https://bluehq.bluestep.net/b/vscode_extension_helper"
DEFAULT_CREDENTIAL_FLAG = "default"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    fmt: str = "ecs_json"
    sink: str = "stdout"
    file_path: str | None = None
    service_name: str = "b6p-session"


@dataclass(slots=True)
class StoreConfig:
    backend: str = "memory"
    path: str = ".b6p/state.json"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "b6p"
    connect_timeout_seconds: float = 1.0
    required: bool = False


@dataclass(slots=True)
class HttpConfig:
    timeout_seconds: float = 30.0
    user_agent: str = "B6P-VSCode-Extension"
    verify_tls: bool = True


@dataclass(slots=True)
class SessionConfig:
    ttl_seconds: float = 300.0
    max_retries: int = 2
    retry_delay_seconds: float = 1.0
    first_cleanup_delay_seconds: float = 5.0
    login_path: str = "/shared/home.jsp"
    csrf_token_path: str = "/csrf-token"
    csrf_header: str = "b6p-csrf-token"


@dataclass(slots=True)
class OrgCacheConfig:
    max_age_seconds: float = 3 * 86400.0
    cleanup_interval_seconds: float = 86400.0
    appinfo_path: str = "/appinfo/u"
    helper_url: str = DEFAULT_HELPER_URL


@dataclass(slots=True)
class AccountConfig:
    username: str = ""
    password: str = ""


@dataclass(slots=True)
class CredentialsConfig:
    default_flag: str = DEFAULT_CREDENTIAL_FLAG
    accounts: dict[str, AccountConfig] = field(default_factory=dict)


@dataclass(slots=True)
class AppConfig:
    environment: str = "development"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    org_cache: OrgCacheConfig = field(default_factory=OrgCacheConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)


VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
VALID_LOG_FORMATS = {"json", "ecs_json"}
VALID_LOG_SINKS = {"stdout", "file"}
VALID_STORE_BACKENDS = {"memory", "file", "redis"}


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name, {})
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{name}' must be an object")
    return raw


def _parse_bool_value(raw: Any, *, field_name: str, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        normalized = raw.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"'{field_name}' must be a boolean")


def _parse_positive_float(raw: Any, *, field_name: str, default: float) -> float:
    value = float(default if raw is None else raw)
    if value <= 0:
        raise ValueError(f"{field_name} must be greater than zero")
    return value


def _parse_path(raw: Any, *, field_name: str, default: str) -> str:
    value = str(default if raw is None else raw).strip()
    if not value.startswith("/"):
        raise ValueError(f"{field_name} must start with '/'")
    if " " in value:
        raise ValueError(f"{field_name} must not include spaces")
    return value


def _parse_logging(raw: dict[str, Any]) -> LoggingConfig:
    level = str(raw.get("level", "INFO")).upper()
    if level not in VALID_LOG_LEVELS:
        raise ValueError(f"invalid log level '{level}'")
    log_format = str(raw.get("fmt", "ecs_json"))
    if log_format not in VALID_LOG_FORMATS:
        raise ValueError(f"invalid log format '{log_format}'")
    sink = str(raw.get("sink", "stdout"))
    if sink not in VALID_LOG_SINKS:
        raise ValueError(f"invalid log sink '{sink}'")
    file_path = raw.get("file_path")
    return LoggingConfig(
        level=level,
        fmt=log_format,
        sink=sink,
        file_path=str(file_path) if file_path else None,
        service_name=str(raw.get("service_name", "b6p-session")).strip() or "b6p-session",
    )


def _parse_store(raw: dict[str, Any]) -> StoreConfig:
    backend = str(raw.get("backend", "memory")).lower()
    if backend not in VALID_STORE_BACKENDS:
        raise ValueError(f"invalid store backend '{backend}'")
    path = str(raw.get("path", ".b6p/state.json")).strip()
    if backend == "file" and not path:
        raise ValueError("store.path is required for the file backend")
    redis_url = str(raw.get("redis_url", "redis://localhost:6379/0")).strip()
    if backend == "redis" and urlparse(redis_url).scheme not in {"redis", "rediss", "unix"}:
        raise ValueError(f"invalid store.redis_url '{redis_url}'")
    return StoreConfig(
        backend=backend,
        path=path,
        redis_url=redis_url,
        key_prefix=str(raw.get("key_prefix", "b6p")).strip() or "b6p",
        connect_timeout_seconds=_parse_positive_float(
            raw.get("connect_timeout_seconds"),
            field_name="store connect_timeout_seconds",
            default=1.0,
        ),
        required=_parse_bool_value(raw.get("required"), field_name="store.required", default=False),
    )


def _parse_http(raw: dict[str, Any]) -> HttpConfig:
    return HttpConfig(
        timeout_seconds=_parse_positive_float(
            raw.get("timeout_seconds"),
            field_name="http timeout_seconds",
            default=30.0,
        ),
        user_agent=str(raw.get("user_agent", "B6P-VSCode-Extension")).strip() or "B6P-VSCode-Extension",
        verify_tls=_parse_bool_value(raw.get("verify_tls"), field_name="http.verify_tls", default=True),
    )


def _parse_session(raw: dict[str, Any]) -> SessionConfig:
    max_retries = int(raw.get("max_retries", 2))
    if max_retries < 0:
        raise ValueError("session max_retries must be greater than or equal to zero")
    retry_delay = float(raw.get("retry_delay_seconds", 1.0))
    if retry_delay < 0:
        raise ValueError("session retry_delay_seconds must be greater than or equal to zero")
    csrf_header = str(raw.get("csrf_header", "b6p-csrf-token")).strip().lower()
    if not csrf_header or " " in csrf_header:
        raise ValueError("session csrf_header must be a non-empty header name")
    return SessionConfig(
        ttl_seconds=_parse_positive_float(raw.get("ttl_seconds"), field_name="session ttl_seconds", default=300.0),
        max_retries=max_retries,
        retry_delay_seconds=retry_delay,
        first_cleanup_delay_seconds=_parse_positive_float(
            raw.get("first_cleanup_delay_seconds"),
            field_name="session first_cleanup_delay_seconds",
            default=5.0,
        ),
        login_path=_parse_path(raw.get("login_path"), field_name="session login_path", default="/shared/home.jsp"),
        csrf_token_path=_parse_path(
            raw.get("csrf_token_path"),
            field_name="session csrf_token_path",
            default="/csrf-token",
        ),
        csrf_header=csrf_header,
    )


def _parse_org_cache(raw: dict[str, Any]) -> OrgCacheConfig:
    helper_url = str(raw.get("helper_url", DEFAULT_HELPER_URL)).strip()
    parsed = urlparse(helper_url)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ValueError(f"invalid org_cache.helper_url '{helper_url}'")
    return OrgCacheConfig(
        max_age_seconds=_parse_positive_float(
            raw.get("max_age_seconds"),
            field_name="org_cache max_age_seconds",
            default=3 * 86400.0,
        ),
        cleanup_interval_seconds=_parse_positive_float(
            raw.get("cleanup_interval_seconds"),
            field_name="org_cache cleanup_interval_seconds",
            default=86400.0,
        ),
        appinfo_path=_parse_path(raw.get("appinfo_path"), field_name="org_cache appinfo_path", default="/appinfo/u"),
        helper_url=helper_url,
    )


def _parse_credentials(raw: dict[str, Any]) -> CredentialsConfig:
    default_flag = str(raw.get("default_flag", DEFAULT_CREDENTIAL_FLAG)).strip() or DEFAULT_CREDENTIAL_FLAG
    accounts_raw = raw.get("accounts", {}) or {}
    if not isinstance(accounts_raw, dict):
        raise ValueError("'credentials.accounts' must be an object")
    accounts: dict[str, AccountConfig] = {}
    for flag, item in accounts_raw.items():
        if not isinstance(item, dict):
            raise ValueError(f"credentials account '{flag}' must be an object")
        accounts[str(flag)] = AccountConfig(
            username=str(item.get("username", "") or ""),
            password=str(item.get("password", "") or ""),
        )
    return CredentialsConfig(default_flag=default_flag, accounts=accounts)


def parse_config(data: dict[str, Any]) -> AppConfig:
    if not isinstance(data, dict):
        raise ValueError("config root must be an object")
    return AppConfig(
        environment=str(data.get("environment", "development")),
        logging=_parse_logging(_section(data, "logging")),
        store=_parse_store(_section(data, "store")),
        http=_parse_http(_section(data, "http")),
        session=_parse_session(_section(data, "session")),
        org_cache=_parse_org_cache(_section(data, "org_cache")),
        credentials=_parse_credentials(_section(data, "credentials")),
    )
