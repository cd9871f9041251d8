# rformula/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - build engine

API:
  ctx = BuildContext.create(recipe)
  fetched = Fetcher().fetch(recipe, ctx.root)
  ctx.source_dir = fetched.source_dir
  out = Builder().build(recipe, ctx, timeout=3600)
  ...
  ctx.cleanup()

Behaviour:
  - every declared dependency is resolved before the first command; DependencyError otherwise
  - install commands run in declared order, cwd = unpacked source root, never through a shell
  - ${PREFIX}/${BIN}/... point at the context's staging directory; the Installer moves it later
  - the first non-zero exit aborts the build with BuildError(command, output)
  - the stage as a whole is bounded by a deadline; exceeding it is a BuildError
"""

from __future__ import annotations

import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from rformula.config import get_build_config
from rformula.errors import BuildError
from rformula.logging import get_logger, stream_command_output
from rformula.recipe import Recipe, expand_command, format_command
from rformula.sandbox import CommandResult, deadline_for, remaining, run_command
from rformula.toolchain import DependencyResolver, ResolvedDependency

logger = get_logger("buildsystem")

# --- template context ---
def template_context(recipe: Recipe, prefix: Path, jobs: int = 1, buildpath: Optional[Path] = None) -> Dict[str, Any]:
    """Variables available to ${VAR} references in install and test commands."""
    prefix = Path(prefix)
    bindir = prefix / "bin"
    ctx: Dict[str, Any] = {
        "NAME": recipe.name,
        "VERSION": recipe.version,
        "PREFIX": str(prefix),
        "BIN": str(bindir),
        "LIB": str(prefix / "lib"),
        "SHARE": str(prefix / "share"),
        "ETC": str(prefix / "etc"),
        "INCLUDE": str(prefix / "include"),
        "JOBS": str(jobs),
        "STD_GO_ARGS": ["-trimpath", f"-o={bindir / recipe.name}", "-ldflags=-s -w"],
        "STD_CARGO_ARGS": ["--locked", f"--root={prefix}", "--path=."],
        "STD_CMAKE_ARGS": [f"-DCMAKE_INSTALL_PREFIX={prefix}", "-DCMAKE_BUILD_TYPE=Release",
                           "-DCMAKE_FIND_FRAMEWORK=LAST", "-DCMAKE_VERBOSE_MAKEFILE=ON", "-Wno-dev"],
        "STD_CONFIGURE_ARGS": [f"--prefix={prefix}", f"--libdir={prefix / 'lib'}", "--disable-debug",
                               "--disable-dependency-tracking"],
    }
    if buildpath is not None:
        ctx["BUILDPATH"] = str(buildpath)
    return ctx

def command_env(search_dirs: List[str], extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ)
    if search_dirs:
        env["PATH"] = os.pathsep.join(search_dirs + [env.get("PATH", os.defpath)])
    for k, v in (extra or {}).items():
        env[str(k)] = str(v)
    return env

# --- build context ---
@dataclass
class BuildContext:
    """Ephemeral working area owned by one build."""
    root: Path
    source_dir: Optional[Path] = None
    resolved: List[ResolvedDependency] = field(default_factory=list)

    @classmethod
    def create(cls, recipe: Recipe, build_root: Optional[Path] = None) -> "BuildContext":
        base = Path(build_root or get_build_config().get("root") or tempfile.gettempdir())
        base.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=f"{recipe.name}-{recipe.version}-", dir=str(base)))
        logger.debug("build context %s created", root)
        return cls(root=root)

    @property
    def stage_dir(self) -> Path:
        return self.root / "stage"

    def exists(self) -> bool:
        return self.root.exists()

    def cleanup(self, keep: bool = False):
        if keep:
            logger.info("keeping build dir %s", self.root)
            return
        shutil.rmtree(str(self.root), ignore_errors=True)
        logger.debug("build context %s removed", self.root)

# --- build output ---
@dataclass
class BuildOutput:
    stage_dir: Path
    artifacts: List[str]
    commands: List[CommandResult] = field(default_factory=list)
    dependencies: List[ResolvedDependency] = field(default_factory=list)

def list_artifacts(stage_dir: Path) -> List[str]:
    """Relative paths of every file and symlink under stage_dir."""
    out: List[str] = []
    for dirpath, dirnames, filenames in os.walk(stage_dir):
        for name in filenames + [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]:
            out.append(os.path.relpath(os.path.join(dirpath, name), stage_dir))
    return sorted(out)

# --- main Builder class ---
class Builder:
    def __init__(self, resolver: Optional[DependencyResolver] = None, cfg: Optional[Dict[str, Any]] = None):
        build_cfg = cfg if cfg is not None else get_build_config()
        self.resolver = resolver or DependencyResolver()
        self.jobs = int(build_cfg.get("jobs") or os.cpu_count() or 1)
        self.timeout = build_cfg.get("timeout")
        self.extra_env = dict(build_cfg.get("env") or {})

    def build(self, recipe: Recipe, context: BuildContext, timeout: Optional[float] = None,
              cancel: Optional[threading.Event] = None,
              on_command: Optional[Callable[[CommandResult], None]] = None) -> BuildOutput:
        """
        Resolve dependencies then run the install procedure into the context's staging dir.
        Raises DependencyError, BuildError or PipelineCancelled.
        """
        if context.source_dir is None:
            raise BuildError(f"{recipe.name}: build context has no source tree")
        # fail fast: nothing runs unless every dependency resolves
        context.resolved = self.resolver.resolve(recipe.dependencies())

        stage = context.stage_dir
        (stage / "bin").mkdir(parents=True, exist_ok=True)
        ctx = template_context(recipe, stage, jobs=self.jobs, buildpath=context.source_dir)
        env = command_env(self.resolver.search_dirs(context.resolved),
                          {**self.extra_env, "PREFIX": str(stage), "JOBS": str(self.jobs),
                           "MAKEFLAGS": f"-j{self.jobs}"})
        deadline = deadline_for(timeout if timeout is not None else self.timeout)

        results: List[CommandResult] = []
        total = len(recipe.install_procedure)
        for idx, command in enumerate(recipe.install_procedure, 1):
            argv = expand_command(command, ctx)
            left = remaining(deadline)
            if left is not None and left <= 0:
                raise BuildError(f"{recipe.name}: build timed out before step {idx}/{total}", command=format_command(argv))
            logger.info("build step %d/%d: %s", idx, total, format_command(argv))
            res = run_command(argv, cwd=str(context.source_dir), env=env, timeout=left, cancel=cancel)
            stream_command_output("buildsystem", res.output)
            results.append(res)
            if on_command:
                on_command(res)
            if res.timed_out:
                raise BuildError(f"{recipe.name}: build timed out running step {idx}/{total}",
                                 command=res.command, exit_status=res.exit_status, output=res.output)
            if res.exit_status != 0:
                raise BuildError(f"{recipe.name}: step {idx}/{total} exited with status {res.exit_status}",
                                 command=res.command, exit_status=res.exit_status, output=res.output)

        artifacts = list_artifacts(stage)
        if not artifacts:
            raise BuildError(f"{recipe.name}: build produced no artifacts under {stage}")
        logger.info("built %s %s: %d artifact(s)", recipe.name, recipe.version, len(artifacts))
        return BuildOutput(stage_dir=stage, artifacts=artifacts, commands=results, dependencies=list(context.resolved))
