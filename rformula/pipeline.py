# rformula/pipeline.py
# -*- coding: utf-8 -*-
"""
pipeline.py - state machine driving one recipe through fetch -> build -> install -> verify

States:
  PENDING -> FETCHING -> BUILDING -> INSTALLING -> VERIFYING -> SUCCEEDED
  any non-terminal state -> FAILED (stage + error recorded)
Moving backwards, skipping a stage or leaving a terminal state raises RuntimeError.

Hook events:
  state_change  {"recipe", "previous", "state", "stage", "error"}
  command       {"recipe", "stage", "command", "exit_status"}
"""

from __future__ import annotations

import time
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from rformula.buildsystem import BuildContext, Builder
from rformula.config import get_build_config
from rformula.errors import FetchError, PipelineCancelled, RformulaError, VerificationError
from rformula.fetcher import Fetcher
from rformula.hooks import HookManager
from rformula.installer import Installer
from rformula.logging import get_logger
from rformula.recipe import Recipe
from rformula.sandbox import CommandResult
from rformula.verifier import VerificationResult, Verifier

logger = get_logger("pipeline")

class PipelineState(Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    BUILDING = "building"
    INSTALLING = "installing"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.SUCCEEDED, PipelineState.FAILED)

    @property
    def label(self) -> str:
        return self.value.capitalize()

_SEQUENCE = (
    PipelineState.PENDING,
    PipelineState.FETCHING,
    PipelineState.BUILDING,
    PipelineState.INSTALLING,
    PipelineState.VERIFYING,
    PipelineState.SUCCEEDED,
)

def can_transition(current: PipelineState, new: PipelineState) -> bool:
    if current.terminal:
        return False
    if new is PipelineState.FAILED:
        return True
    return _SEQUENCE.index(new) == _SEQUENCE.index(current) + 1

@dataclass
class PipelineResult:
    recipe: Recipe
    state: PipelineState = PipelineState.PENDING
    failed_stage: Optional[PipelineState] = None
    error: Optional[RformulaError] = None
    reduced_integrity: bool = False
    keg: Optional[Path] = None
    verification: Optional[VerificationResult] = None
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.SUCCEEDED

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, PipelineCancelled)

    @property
    def exit_code(self) -> int:
        if self.succeeded:
            return 0
        return 130 if self.cancelled else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipe": self.recipe.name,
            "version": self.recipe.version,
            "state": self.state.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error.describe() if self.error else None,
            "reduced_integrity": self.reduced_integrity,
            "keg": str(self.keg) if self.keg else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "timings": dict(self.timings),
        }

class Pipeline:
    def __init__(self, recipe: Recipe, *, fetcher: Optional[Fetcher] = None, builder: Optional[Builder] = None,
                 installer: Optional[Installer] = None, verifier: Optional[Verifier] = None,
                 hooks: Optional[HookManager] = None, cancel: Optional[threading.Event] = None,
                 overwrite: bool = False, keep_build: Optional[bool] = None, build_root: Optional[Path] = None,
                 fetch_timeout: Optional[float] = None, build_timeout: Optional[float] = None,
                 verify_timeout: Optional[float] = None):
        self.recipe = recipe
        self.fetcher = fetcher or Fetcher()
        self.builder = builder or Builder()
        self.installer = installer or Installer()
        self.verifier = verifier or Verifier()
        self.hooks = hooks or HookManager()
        self.cancel = cancel or threading.Event()
        self.overwrite = overwrite
        self.keep_build = bool(get_build_config().get("keep_build_dirs")) if keep_build is None else keep_build
        self.build_root = build_root
        self.fetch_timeout = fetch_timeout
        self.build_timeout = build_timeout
        self.verify_timeout = verify_timeout
        self._state = PipelineState.PENDING
        self._stage_started: Optional[float] = None
        self._result: Optional[PipelineResult] = None

    @property
    def state(self) -> PipelineState:
        return self._state

    # -----------------------------
    # State handling
    # -----------------------------
    def transition(self, new: PipelineState, error: Optional[RformulaError] = None):
        current = self._state
        if not can_transition(current, new):
            raise RuntimeError(f"illegal pipeline transition {current.label} -> {new.label}")
        now = time.monotonic()
        if self._stage_started is not None and self._result is not None and not current.terminal:
            self._result.timings[current.value] = round(now - self._stage_started, 3)
        self._stage_started = now
        self._state = new
        logger.debug("%s: %s -> %s", self.recipe.name, current.label, new.label)
        self.hooks.run("state_change", {
            "recipe": self.recipe.name,
            "previous": current.value,
            "state": new.value,
            "stage": current.value if new is PipelineState.FAILED else new.value,
            "error": error.describe() if error else None,
        })

    def _on_command(self, res: CommandResult):
        self.hooks.run("command", {
            "recipe": self.recipe.name,
            "stage": self._state.value,
            "command": res.command,
            "exit_status": res.exit_status,
        })

    def _enter(self, state: PipelineState):
        if self.cancel.is_set():
            raise PipelineCancelled(f"{self.recipe.name}: cancelled before {state.value}")
        self.transition(state)

    # -----------------------------
    # Run
    # -----------------------------
    def run(self) -> PipelineResult:
        """Drive the recipe through every stage; stage errors end in FAILED, never propagate."""
        recipe = self.recipe
        self._state = PipelineState.PENDING
        self._stage_started = None
        result = self._result = PipelineResult(recipe=recipe)
        context: Optional[BuildContext] = None
        logger.info("==> %s %s", recipe.name, recipe.version)
        try:
            self._enter(PipelineState.FETCHING)
            try:
                context = BuildContext.create(recipe, self.build_root)
            except OSError as e:
                raise FetchError(f"{recipe.name}: cannot create build directory: {e}") from e
            fetched = self.fetcher.fetch(recipe, context.root, timeout=self.fetch_timeout, cancel=self.cancel)
            context.source_dir = fetched.source_dir
            result.reduced_integrity = fetched.reduced_integrity

            self._enter(PipelineState.BUILDING)
            output = self.builder.build(recipe, context, timeout=self.build_timeout, cancel=self.cancel,
                                        on_command=self._on_command)

            self._enter(PipelineState.INSTALLING)
            installed = self.installer.install(recipe, output, reduced_integrity=result.reduced_integrity,
                                               overwrite=self.overwrite, cancel=self.cancel)
            result.keg = installed.keg

            self._enter(PipelineState.VERIFYING)
            result.verification = self.verifier.verify(recipe, installed, timeout=self.verify_timeout,
                                                       cancel=self.cancel, on_command=self._on_command)
            self.transition(PipelineState.SUCCEEDED)
        except RformulaError as e:
            if isinstance(e, VerificationError):
                result.verification = e.result
            result.failed_stage = self._state
            result.error = e
            logger.error("%s failed during %s: %s", recipe.name, self._state.value, e.describe())
            self.transition(PipelineState.FAILED, e)
        finally:
            if context is not None:
                context.cleanup(keep=self.keep_build)
        result.state = self._state
        if result.succeeded:
            logger.info("%s %s installed and verified%s", recipe.name, recipe.version,
                        " (reduced integrity)" if result.reduced_integrity else "")
        return result
