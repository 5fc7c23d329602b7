"""Config discovery, loading and initialization."""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path
from typing import Any

import yaml

from b6p_session.config.schema import AppConfig, parse_config


DEFAULT_CONFIG_PATH = Path(__file__).with_name("defaults.yml")
CONFIG_ENV_VAR = "B6P_CONFIG"
LOCAL_CONFIG_NAMES = ("b6p.yml", "b6p.yaml", ".b6p/config.yml")
_ENV_TOKEN_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")


def resolve_config_path(explicit: Path | None = None, *, cwd: Path | None = None) -> Path:
    """Pick the config file to use.

    Order: explicit path, ``$B6P_CONFIG``, a ``b6p.yml`` style file in the
    working directory, then the packaged defaults.
    """
    if explicit is not None:
        return explicit
    from_env = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if from_env:
        return Path(from_env)
    base = cwd or Path.cwd()
    for name in LOCAL_CONFIG_NAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return DEFAULT_CONFIG_PATH


def load_config(path: Path | None = None) -> AppConfig:
    resolved = resolve_config_path(path)
    if not resolved.exists():
        raise FileNotFoundError(f"config file does not exist: {resolved}")
    with resolved.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"config file must contain a mapping: {resolved}")
    return parse_config(_interpolate_env(raw))


def initialize_config(path: Path, force: bool = False) -> Path:
    if path.exists() and not force:
        raise FileExistsError(f"config already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(DEFAULT_CONFIG_PATH, path)
    return path


def _interpolate_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _interpolate_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    if isinstance(value, str) and "${" in value:
        return _ENV_TOKEN_RE.sub(_env_value, value)
    return value


def _env_value(match: re.Match[str]) -> str:
    name, default = match.group(1), match.group(2)
    resolved = os.environ.get(name)
    if resolved is not None:
        return resolved
    if default is not None:
        return default
    raise ValueError(f"missing required environment variable '{name}' referenced by '{match.group(0)}'")
