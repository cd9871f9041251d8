# rformula/verifier.py
# -*- coding: utf-8 -*-
"""
verifier.py - post-install test procedure

Runs each test command against the installed keg:
  - keg bin/ is first on PATH, ${PREFIX}/${BIN}/... point at the keg
  - cwd is a throwaway directory (${TESTPATH})
  - all commands must exit zero; output of every command run is captured
Failures raise VerificationError carrying the VerificationResult. The keg is left in place.
"""

from __future__ import annotations

import tempfile
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from rformula.buildsystem import command_env, template_context
from rformula.config import get_config
from rformula.errors import VerificationError
from rformula.installer import InstallResult
from rformula.logging import get_logger, stream_command_output
from rformula.recipe import Recipe, expand_command, format_command
from rformula.sandbox import CommandResult, deadline_for, remaining, run_command

logger = get_logger("verifier")

@dataclass(frozen=True)
class VerificationResult:
    passed: bool
    exit_status: int
    captured_output: bytes
    command: str

    def text(self) -> str:
        return self.captured_output.decode("utf-8", errors="replace")

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "exit_status": self.exit_status,
                "command": self.command, "output": self.text()}

class Verifier:
    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else get_config().get("verify.timeout")

    def verify(self, recipe: Recipe, install_result: InstallResult, timeout: Optional[float] = None,
               cancel: Optional[threading.Event] = None,
               on_command: Optional[Callable[[CommandResult], None]] = None) -> VerificationResult:
        keg = install_result.keg
        env = command_env([str(keg / "bin")])
        deadline = deadline_for(timeout if timeout is not None else self.timeout)
        output: List[bytes] = []
        last: Optional[CommandResult] = None

        with tempfile.TemporaryDirectory(prefix=f"{recipe.name}-test-") as testpath:
            ctx = template_context(recipe, keg)
            ctx["TESTPATH"] = testpath
            env["HOME"] = env.get("HOME") or testpath
            for idx, command in enumerate(recipe.test_procedure, 1):
                argv = expand_command(command, ctx)
                left = remaining(deadline)
                if left is not None and left <= 0:
                    result = VerificationResult(False, -1, b"".join(output), format_command(argv))
                    raise VerificationError(f"{recipe.name}: test timed out before step {idx}", result=result,
                                            command=result.command)
                logger.info("test step %d/%d: %s", idx, len(recipe.test_procedure), format_command(argv))
                last = run_command(argv, cwd=testpath, env=env, timeout=left, cancel=cancel)
                stream_command_output("verifier", last.output)
                output.append(last.output)
                if on_command:
                    on_command(last)
                if not last.ok:
                    result = VerificationResult(False, last.exit_status, b"".join(output), last.command)
                    reason = "timed out" if last.timed_out else f"exited with status {last.exit_status}"
                    raise VerificationError(f"{recipe.name}: test `{last.command}` {reason}", result=result,
                                            command=last.command, exit_status=last.exit_status, output=last.output)

        result = VerificationResult(True, 0, b"".join(output), last.command if last else "")
        logger.info("verified %s %s", recipe.name, recipe.version)
        return result
