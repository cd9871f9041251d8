# rformula/toolchain.py
# -*- coding: utf-8 -*-
"""
toolchain.py - dependency resolution for recipe builds

A dependency resolves, in order, to:
  1. a keg installed in the Install Prefix (<prefix>/Cellar/<name>/<version>, newest receipt wins)
  2. an executable of that name (or its configured alias) on PATH
Resolution never installs anything; unresolved dependencies are reported all at once.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from rformula.config import get_config
from rformula.errors import DependencyError
from rformula.logging import get_logger
from rformula.recipe import Dependency

logger = get_logger("toolchain")

RECEIPT_NAME = "INSTALL_RECEIPT.json"

@dataclass(frozen=True)
class ResolvedDependency:
    dependency: Dependency
    path: Path          # directory holding the executables
    origin: str         # "keg" or "system"
    executable: Optional[Path] = None

def _version_key(v: str):
    parts = []
    for p in v.replace("-", ".").split("."):
        parts.append((0, int(p), "") if p.isdigit() else (1, 0, p))
    return parts

def installed_kegs(prefix_root: Path, name: str) -> List[Path]:
    """Kegs of `name` carrying an install receipt, newest version first."""
    rack = Path(prefix_root) / "Cellar" / name
    if not rack.is_dir():
        return []
    kegs = [k for k in rack.iterdir() if k.is_dir() and not k.name.startswith(".") and (k / RECEIPT_NAME).is_file()]
    return sorted(kegs, key=lambda k: _version_key(k.name), reverse=True)

class DependencyResolver:
    def __init__(self, prefix_root: Optional[Path] = None, aliases: Optional[Dict[str, str]] = None,
                 search_path: Optional[str] = None):
        cfg = get_config()
        self.prefix_root = Path(prefix_root) if prefix_root else Path(cfg.get("prefix.root"))
        self.aliases = dict(aliases if aliases is not None else (cfg.get("toolchain.aliases") or {}))
        self.search_path = search_path if search_path is not None else os.environ.get("PATH", os.defpath)

    def resolve_one(self, dep: Dependency) -> Optional[ResolvedDependency]:
        for keg in installed_kegs(self.prefix_root, dep.name):
            bindir = keg / "bin"
            logger.debug("dependency %s resolved to keg %s", dep.name, keg)
            return ResolvedDependency(dep, bindir if bindir.is_dir() else keg, "keg")
        for candidate in (dep.name, self.aliases.get(dep.name)):
            if not candidate:
                continue
            found = shutil.which(candidate, path=self.search_path)
            if found:
                exe = Path(found)
                logger.debug("dependency %s resolved to %s", dep.name, exe)
                return ResolvedDependency(dep, exe.parent, "system", exe)
        return None

    def resolve(self, deps: Iterable[Dependency]) -> List[ResolvedDependency]:
        """Resolve every dependency or raise DependencyError naming all the missing ones."""
        resolved: List[ResolvedDependency] = []
        missing: List[Dependency] = []
        for dep in deps:
            r = self.resolve_one(dep)
            if r is None:
                missing.append(dep)
            else:
                resolved.append(r)
        if missing:
            names = ", ".join(str(d) for d in missing)
            raise DependencyError(f"unresolved dependencies: {names}", missing=missing)
        return resolved

    def search_dirs(self, resolved: Iterable[ResolvedDependency]) -> List[str]:
        """PATH entries contributed by resolved dependencies, keg dirs first, no duplicates."""
        out: List[str] = []
        for r in sorted(resolved, key=lambda r: r.origin != "keg"):
            p = str(r.path)
            if p not in out:
                out.append(p)
        return out
