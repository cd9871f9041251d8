# rformula/recipe.py
# -*- coding: utf-8 -*-
"""
recipe.py - loader and validator for recipe files

Features:
- Parse recipes in YAML, JSON or TOML (chosen by file extension)
- Immutable Recipe descriptor (frozen dataclass) with normalized fields
- Checksum handling: hex SHA-256 digest or an "unverified" sentinel (auto/no_check/unverified)
- Version derived from the source URL when not declared
- Dependencies as {name, stage} pairs, stage in {build, run}
- Commands as strings (POSIX shell quoting, never run through a shell) or argv lists
- Template expansion for ${VAR} references, list variables splice into several arguments
- Recipe lookup by identifier (path or name searched in recipes.paths)
"""

from __future__ import annotations

import os
import re
import json
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import toml
import yaml

from rformula.config import get_recipe_paths
from rformula.errors import ConfigError
from rformula.logging import get_logger

logger = get_logger("recipe")

RECIPE_EXTENSIONS = (".yaml", ".yml", ".json", ".toml")
CHECKSUM_SENTINELS = ("auto", "no_check", "unverified")
DEPENDENCY_STAGES = ("build", "run")

_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9@._+-]*$")
# v1.0.0.tar.gz, deletor-1.2.tar.xz, tool_2.0.1.zip
_VERSION_RE = re.compile(r"(?:^|[-_/v])v?(\d+(?:\.\d+)+(?:[-.]?(?:alpha|beta|rc)\.?\d*)?)(?=\.(?:tar|tgz|tbz|txz|zip)|$)")

# Basic safe template substitution for ${VAR}
TEMPLATE_RE = re.compile(r"\$\{([A-Za-z0-9_]+)\}")

Command = Tuple[str, ...]

# -----------------------
# Utilities
# -----------------------
def is_sentinel(checksum: str) -> bool:
    return str(checksum).strip().lower().lstrip(":") in CHECKSUM_SENTINELS

def version_from_url(url: str) -> Optional[str]:
    """Guess a version from the last path component of a source URL."""
    path = urlparse(url).path or url
    base = os.path.basename(path.rstrip("/"))
    m = _VERSION_RE.search(base)
    return m.group(1) if m else None

def expand_template(s: str, ctx: Mapping[str, Any]) -> str:
    """Replace ${VAR} with scalar values from ctx; unknown names are left as-is."""
    def repl(m):
        val = ctx.get(m.group(1))
        if val is None:
            return m.group(0)
        if isinstance(val, (list, tuple)):
            return " ".join(str(v) for v in val)
        return str(val)
    return TEMPLATE_RE.sub(repl, s)

def expand_command(command: Sequence[str], ctx: Mapping[str, Any]) -> List[str]:
    """
    Expand one argv. An argument that is exactly a list variable (e.g. ${STD_GO_ARGS})
    is spliced into several arguments; everything else goes through expand_template.
    """
    out: List[str] = []
    for arg in command:
        m = TEMPLATE_RE.fullmatch(arg)
        if m and isinstance(ctx.get(m.group(1)), (list, tuple)):
            out.extend(str(v) for v in ctx[m.group(1)])
        else:
            out.append(expand_template(arg, ctx))
    return out

def format_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in command)

# -----------------------
# Data models
# -----------------------
@dataclass(frozen=True)
class Dependency:
    name: str
    stage: str = "build"

    def __str__(self) -> str:
        return f"{self.name} ({self.stage})"

@dataclass(frozen=True)
class Recipe:
    """Immutable recipe descriptor."""
    name: str
    source_url: str
    checksum: str
    install_procedure: Tuple[Command, ...]
    test_procedure: Tuple[Command, ...]
    version: str = "unversioned"
    description: str = ""
    homepage: str = ""
    license: str = ""
    build_dependencies: frozenset = field(default_factory=frozenset)
    source_path: Optional[str] = None

    @property
    def unverified(self) -> bool:
        return is_sentinel(self.checksum)

    def dependencies(self, stage: Optional[str] = None) -> List[Dependency]:
        deps = sorted(self.build_dependencies, key=lambda d: (d.stage, d.name))
        if stage:
            deps = [d for d in deps if d.stage == stage]
        return deps

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "desc": self.description,
            "homepage": self.homepage,
            "url": self.source_url,
            "sha256": self.checksum,
            "license": self.license,
            "depends_on": [{"name": d.name, "stage": d.stage} for d in self.dependencies()],
            "install": [list(c) for c in self.install_procedure],
            "test": [list(c) for c in self.test_procedure],
            "source_path": self.source_path,
        }

    def as_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

# -----------------------
# Field normalization
# -----------------------
def _parse_dependencies(raw: Any) -> frozenset:
    """
    Accepted shapes:
      depends_on: [go]                       -> build-time
      depends_on: [{name: go, stage: build}]
      depends_on: {go: build, git: run}
    """
    if raw is None:
        return frozenset()
    items: List[Tuple[str, str]] = []
    if isinstance(raw, dict):
        items = [(str(k), str(v)) for k, v in raw.items()]
    elif isinstance(raw, (list, tuple)):
        for entry in raw:
            if isinstance(entry, str):
                items.append((entry, "build"))
            elif isinstance(entry, dict) and "name" in entry:
                items.append((str(entry["name"]), str(entry.get("stage", "build"))))
            elif isinstance(entry, dict) and len(entry) == 1:
                k, v = next(iter(entry.items()))
                items.append((str(k), str(v)))
            else:
                raise ConfigError(f"invalid depends_on entry: {entry!r}")
    else:
        raise ConfigError("depends_on must be a list or a mapping")
    deps = set()
    for name, stage in items:
        stage = stage.strip().lower().lstrip(":")
        if stage not in DEPENDENCY_STAGES:
            raise ConfigError(f"dependency {name!r} has unknown stage {stage!r} (expected build or run)")
        if not name.strip():
            raise ConfigError("dependency name must not be empty")
        deps.add(Dependency(name=name.strip(), stage=stage))
    return frozenset(deps)

def _parse_commands(raw: Any, field_name: str) -> Tuple[Command, ...]:
    if raw is None:
        raise ConfigError(f"recipe field '{field_name}' is required")
    if isinstance(raw, (str, dict)):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise ConfigError(f"recipe field '{field_name}' must be a list of commands")
    commands: List[Command] = []
    for entry in raw:
        if isinstance(entry, dict):
            # {system: [...]} mirrors the `system "cmd", args...` form
            entry = entry.get("system") or entry.get("run")
        if isinstance(entry, str):
            try:
                argv = shlex.split(entry)
            except ValueError as e:
                raise ConfigError(f"cannot parse command in '{field_name}': {entry!r}: {e}") from e
        elif isinstance(entry, (list, tuple)) and all(isinstance(a, (str, int, float)) for a in entry):
            argv = [str(a) for a in entry]
        else:
            raise ConfigError(f"invalid command in '{field_name}': {entry!r}")
        if not argv:
            raise ConfigError(f"empty command in '{field_name}'")
        if any("\0" in a for a in argv):
            raise ConfigError(f"NUL byte in command in '{field_name}': {entry!r}")
        commands.append(tuple(argv))
    if not commands:
        raise ConfigError(f"recipe field '{field_name}' must contain at least one command")
    return tuple(commands)

def recipe_from_dict(data: Dict[str, Any], source_path: Optional[str] = None) -> Recipe:
    """Validate a parsed recipe mapping and build the descriptor. Raises ConfigError."""
    if not isinstance(data, dict):
        raise ConfigError("recipe must be a mapping")
    where = f" ({source_path})" if source_path else ""
    name = str(data.get("name") or "").strip()
    if not name:
        raise ConfigError(f"recipe field 'name' is required{where}")
    if not _NAME_RE.match(name):
        raise ConfigError(f"invalid recipe name {name!r}{where}")
    url = str(data.get("url") or "").strip()
    if not url:
        raise ConfigError(f"recipe field 'url' is required{where}")
    if "sha256" not in data or data.get("sha256") in (None, ""):
        raise ConfigError(f"recipe field 'sha256' is required{where}")
    checksum = str(data["sha256"]).strip()
    if is_sentinel(checksum):
        checksum = checksum.lower().lstrip(":")
    elif not _SHA256_RE.match(checksum):
        raise ConfigError(f"sha256 must be a 64 character hex digest or one of {CHECKSUM_SENTINELS}{where}")
    else:
        checksum = checksum.lower()
    version = str(data.get("version") or version_from_url(url) or "unversioned")
    return Recipe(
        name=name,
        source_url=url,
        checksum=checksum,
        install_procedure=_parse_commands(data.get("install"), "install"),
        test_procedure=_parse_commands(data.get("test"), "test"),
        version=version,
        description=str(data.get("desc") or data.get("description") or ""),
        homepage=str(data.get("homepage") or ""),
        license=str(data.get("license") or ""),
        build_dependencies=_parse_dependencies(data.get("depends_on")),
        source_path=source_path,
    )

# -----------------------
# Loading
# -----------------------
def _parse_file(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read recipe file {path}: {e}") from e
    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            data = json.loads(text)
        elif suffix == ".toml":
            data = toml.loads(text)
        else:
            data = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
        raise ConfigError(f"cannot parse recipe file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"recipe file {path} must contain a mapping")
    return data

def load_recipe(path: Union[str, Path]) -> Recipe:
    p = Path(path).expanduser().resolve()
    if not p.is_file():
        raise ConfigError(f"recipe file not found: {path}")
    recipe = recipe_from_dict(_parse_file(p), source_path=str(p))
    logger.debug("loaded recipe %s %s from %s", recipe.name, recipe.version, p)
    return recipe

def iter_recipe_files(paths: Optional[Iterable[Path]] = None) -> List[Path]:
    """All recipe files in the search paths; first occurrence of a name wins."""
    seen: Dict[str, Path] = {}
    for d in (paths if paths is not None else get_recipe_paths()):
        d = Path(d)
        if not d.is_dir():
            continue
        for f in sorted(d.iterdir()):
            if f.suffix.lower() in RECIPE_EXTENSIONS and f.is_file() and f.stem not in seen:
                seen[f.stem] = f
    return [seen[k] for k in sorted(seen)]

def find_recipe(identifier: str, paths: Optional[Iterable[Path]] = None) -> Recipe:
    """Resolve a recipe identifier (file path or recipe name) to a loaded Recipe."""
    candidate = Path(identifier).expanduser()
    if candidate.suffix.lower() in RECIPE_EXTENSIONS or os.sep in identifier:
        return load_recipe(candidate)
    search = list(paths) if paths is not None else get_recipe_paths()
    for d in search:
        for ext in RECIPE_EXTENSIONS:
            f = Path(d) / f"{identifier}{ext}"
            if f.is_file():
                return load_recipe(f)
    raise ConfigError(f"no recipe named {identifier!r} in {', '.join(str(d) for d in search) or '<no search paths>'}")
