# rformula/config.py
# -*- coding: utf-8 -*-
"""
rformula central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize/coerce types (paths, human sizes, numbers)
- Validate structure and types, warn or raise ConfigError (fatal optional)
- Typed access via Config dataclass (get_config(), dotted get(), section helpers)
- Thread-safe load/reload; reload notifies registered callbacks (logging re-applies itself)
"""

from __future__ import annotations

import os
import json
import logging
import threading
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml

from rformula.errors import ConfigError

logger = logging.getLogger("rformula.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "file_level": "DEBUG",
        "color": True,
        "max_size": "10M",  # human readable
        "backups": 5,
        "format": None,
        "datefmt": "%H:%M:%S",
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.rformula/logs/transparency.jsonl", "level": "INFO"},
    },
    "prefix": {
        "root": "~/.rformula/prefix",
    },
    "recipes": {
        "paths": ["./recipes", "~/.rformula/recipes"],
    },
    "fetcher": {
        "cache_dir": "~/.rformula/fetch-cache",
        "timeout": 300,
        "chunk_size": 65536,
        "reject_unverified": False,
        "user_agent": "rformula/0.1",
    },
    "build": {
        "root": "~/.rformula/build",
        "timeout": 3600,
        "jobs": os.cpu_count() or 1,
        "keep_build_dirs": False,
        "env": {},
    },
    "installer": {
        "link": True,
        "lock_timeout": 60,
    },
    "verify": {
        "timeout": 120,
    },
    "toolchain": {
        "aliases": {},
    },
}

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def section(self, name: str) -> Dict[str, Any]:
        val = self.merged.get(name)
        return deepcopy(val) if isinstance(val, dict) else {}

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()
_WATCH_CALLBACKS: List[Callable[[Config], None]] = []

# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "K": 1024, "MB": 1024**2, "M": 1024**2, "GB": 1024**3, "G": 1024**3}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                num = float(s[: -len(suffix)].strip())
                return int(num * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None

def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("RFORMULA_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "rformula.yaml",
        Path.cwd() / "rformula.yml",
        Path.cwd() / "rformula.json",
        Path.home() / ".config" / "rformula" / "config.yaml",
        Path("/etc") / "rformula" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at top level")
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields, convert human sizes and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("prefix", "root"),
        ("fetcher", "cache_dir"),
        ("build", "root"),
        ("logging", "file"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str) and ref[key]:
            ref[key] = _expand_path(ref[key])

    jsonl = out.get("logging", {}).get("jsonl")
    if isinstance(jsonl, dict) and isinstance(jsonl.get("path"), str):
        jsonl["path"] = _expand_path(jsonl["path"])

    paths = out.get("recipes", {}).get("paths")
    if isinstance(paths, str):
        paths = [paths]
    if isinstance(paths, list):
        out["recipes"]["paths"] = [_expand_path(p) for p in paths if p]

    if isinstance(out.get("logging"), dict) and "max_size" in out["logging"]:
        ms = _human_size_to_bytes(out["logging"]["max_size"])
        if ms is not None:
            out["logging"]["max_size_bytes"] = ms

    # Coerce numbers
    for section, key in (("build", "jobs"), ("build", "timeout"), ("fetcher", "timeout"),
                         ("fetcher", "chunk_size"), ("verify", "timeout"), ("installer", "lock_timeout")):
        ref = out.get(section)
        if isinstance(ref, dict) and key in ref and ref[key] is not None:
            try:
                ref[key] = int(ref[key])
            except (TypeError, ValueError):
                logger.debug("config: cannot coerce %s.%s=%r", section, key, ref[key])
    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list)."""
    issues: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            issues.append(f"Unknown top-level config key: {k}")
    for k in DEFAULTS:
        if k in cfg and not isinstance(cfg[k], dict):
            issues.append(f"{k} must be a mapping")
    build = cfg.get("build") if isinstance(cfg.get("build"), dict) else {}
    bj = build.get("jobs")
    if not isinstance(bj, int) or bj < 1:
        issues.append("build.jobs must be integer >= 1")
    if not isinstance(build.get("env", {}), dict):
        issues.append("build.env must be a mapping")
    for section in ("fetcher", "build", "verify"):
        sec = cfg.get(section) if isinstance(cfg.get(section), dict) else {}
        t = sec.get("timeout")
        if t is not None and (not isinstance(t, int) or t <= 0):
            issues.append(f"{section}.timeout must be a positive integer")
    paths = cfg.get("recipes", {}).get("paths") if isinstance(cfg.get("recipes"), dict) else None
    if paths is not None and not isinstance(paths, list):
        issues.append("recipes.paths should be a list")
    aliases = cfg.get("toolchain", {}).get("aliases") if isinstance(cfg.get("toolchain"), dict) else None
    if aliases is not None and not isinstance(aliases, dict):
        issues.append("toolchain.aliases should be a mapping")
    return (len(issues) == 0, issues)

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None

def from_dict(raw: Dict[str, Any], fatal: bool = False, path: Optional[Path] = None) -> Config:
    """Build a Config from an override mapping (merged over DEFAULTS)."""
    merged = _deep_merge(DEFAULTS, raw or {})
    normalized = _normalize_and_coerce(merged)
    ok, issues = _validate_structure(normalized)
    if not ok:
        msg = f"config: validation issues: {issues}"
        if fatal:
            raise ConfigError(msg)
        logger.warning(msg)
    return Config(raw=deepcopy(raw or {}), merged=normalized, path=path)

def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    Returns Config object and installs it as the process-wide config.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = _load_file(cfg_path) if cfg_path else {}
        cfg_obj = from_dict(raw, fatal=fatal, path=cfg_path)
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
    _notify_watchers(cfg_obj)
    return cfg_obj

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def set_config(cfg: Config) -> Config:
    """Install an already-built Config (tests, embedding)."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = cfg
    _notify_watchers(cfg)
    return cfg

def reset() -> None:
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = None

# ----------------------------
# Watcher API
# ----------------------------
def register_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb not in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.append(cb)

def unregister_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.remove(cb)

def _notify_watchers(cfg: Config) -> None:
    with _CONFIG_LOCK:
        cbs = list(_WATCH_CALLBACKS)
    for cb in cbs:
        try:
            cb(cfg)
        except Exception:
            logger.exception("config: watcher callback error")

# ----------------------------
# Convenience helpers for modules
# ----------------------------
def get_prefix_root() -> Path:
    return Path(get_config().get("prefix.root"))

def get_fetcher_config() -> Dict[str, Any]:
    return get_config().section("fetcher")

def get_build_config() -> Dict[str, Any]:
    return get_config().section("build")

def get_recipe_paths() -> List[Path]:
    return [Path(p) for p in get_config().get("recipes.paths", [])]

def apply_overrides(overrides: Dict[str, Any]) -> Config:
    """Re-merge the current config with `overrides` (e.g. CLI flags) and install the result."""
    current = get_config()
    cfg_obj = from_dict(_deep_merge(current.raw, overrides), path=current.path)
    return set_config(cfg_obj)
