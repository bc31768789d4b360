from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path

from .errors import ConfigError
from .refs import DEFAULT_REGISTRY, RefResolver

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_TARGET_AGENTS = ("claude-code",)
DEFAULT_INSTALL_MODE = "symlink"


@dataclass(frozen=True)
class Config:
    default_registry: str = DEFAULT_REGISTRY
    registries: dict[str, str] = field(default_factory=dict)  # name -> base URL
    target_agents: tuple[str, ...] = DEFAULT_TARGET_AGENTS
    install_mode: str = DEFAULT_INSTALL_MODE
    cache_dir: str | None = None  # defaults to the platform cache dir
    timeout_s: float = DEFAULT_TIMEOUT_S

    @property
    def cache_path(self) -> Path:
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return user_cache_path("skillpm")

    def resolver(self) -> RefResolver:
        return RefResolver(default_registry=self.default_registry, registries=self.registries)


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLPM_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillpm") / "config.json"


def _coerce(raw: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if isinstance(raw.get("default_registry"), str) and raw["default_registry"].strip():
        out["default_registry"] = raw["default_registry"].strip()
    registries = raw.get("registries")
    if isinstance(registries, dict):
        out["registries"] = {str(k): str(v) for k, v in registries.items() if isinstance(v, str) and v.strip()}
    agents = raw.get("target_agents")
    if isinstance(agents, list):
        out["target_agents"] = tuple(a for a in agents if isinstance(a, str) and a.strip())
    mode = raw.get("install_mode")
    if mode is not None:
        if mode not in ("symlink", "copy"):
            raise ConfigError(f"Invalid install_mode {mode!r}; expected 'symlink' or 'copy'.")
        out["install_mode"] = mode
    if isinstance(raw.get("cache_dir"), str) and raw["cache_dir"].strip():
        out["cache_dir"] = raw["cache_dir"]
    timeout = raw.get("timeout_s")
    if isinstance(timeout, (int, float)) and not isinstance(timeout, bool):
        out["timeout_s"] = float(timeout)
    return out


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file is not valid JSON: {path}: {e}") from e
    if not isinstance(raw, dict):
        return Config()
    return Config(**_coerce(raw))


def apply_env(cfg: Config) -> Config:
    updates: dict[str, Any] = {}
    if registry := os.getenv("SKILLPM_DEFAULT_REGISTRY"):
        updates["default_registry"] = registry
    if cache_dir := os.getenv("SKILLPM_CACHE_DIR"):
        updates["cache_dir"] = cache_dir
    return replace(cfg, **updates) if updates else cfg


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = asdict(cfg)
    payload["target_agents"] = list(cfg.target_agents)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path
