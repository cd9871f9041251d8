# rformula/sandbox.py
# -*- coding: utf-8 -*-
"""
sandbox.py - command execution for build and test procedures

Features:
- run_command: run one argv (never through a shell) with cwd/env
- stdout+stderr captured together to a spool file, returned as bytes
- deadline enforcement: the whole process group is killed on timeout
- cancellation: a threading.Event is polled while the process runs
- missing / non-executable programs reported like a shell would (127 / 126)
"""

from __future__ import annotations

import os
import time
import signal
import tempfile
import threading
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from rformula.errors import PipelineCancelled
from rformula.logging import get_logger
from rformula.recipe import format_command

logger = get_logger("sandbox")

POLL_INTERVAL = 0.05

# ----------------------------
# Result model
# ----------------------------
@dataclass
class CommandResult:
    argv: List[str]
    exit_status: int
    output: bytes = b""
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.timed_out

    @property
    def command(self) -> str:
        return format_command(self.argv)

# ----------------------------
# Helpers
# ----------------------------
def _kill_group(proc: subprocess.Popen):
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()
    proc.wait()

def remaining(deadline: Optional[float]) -> Optional[float]:
    """Seconds left until a monotonic deadline (None means unbounded)."""
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())

def deadline_for(timeout: Optional[float]) -> Optional[float]:
    if timeout is None or timeout <= 0:
        return None
    return time.monotonic() + timeout

# ----------------------------
# Public API
# ----------------------------
def run_command(argv: Sequence[str], *, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None,
                timeout: Optional[float] = None, cancel: Optional[threading.Event] = None) -> CommandResult:
    """
    Run argv and capture combined output.
    Raises PipelineCancelled if `cancel` is set before or while the command runs.
    """
    argv = [str(a) for a in argv]
    if cancel is not None and cancel.is_set():
        raise PipelineCancelled(f"cancelled before running {format_command(argv)}", command=format_command(argv))
    deadline = deadline_for(timeout)
    start = time.monotonic()
    logger.debug("RUN: %s (cwd=%s)", format_command(argv), cwd)
    with tempfile.TemporaryFile() as spool:
        try:
            proc = subprocess.Popen(argv, cwd=cwd, env=env, stdin=subprocess.DEVNULL, stdout=spool,
                                    stderr=subprocess.STDOUT, start_new_session=True)
        except FileNotFoundError:
            return CommandResult(argv, 127, f"{argv[0]}: command not found\n".encode(), duration=time.monotonic() - start)
        except PermissionError:
            return CommandResult(argv, 126, f"{argv[0]}: permission denied\n".encode(), duration=time.monotonic() - start)
        except (ValueError, OSError) as e:
            logger.error("cannot start %s: %s", format_command(argv), e)
            return CommandResult(argv, 127, f"{argv[0]}: cannot execute: {e}\n".encode(), duration=time.monotonic() - start)
        timed_out = False
        while True:
            try:
                proc.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set():
                _kill_group(proc)
                logger.warning("cancelled: %s", format_command(argv))
                raise PipelineCancelled(f"cancelled while running {format_command(argv)}", command=format_command(argv))
            if deadline is not None and time.monotonic() >= deadline:
                _kill_group(proc)
                timed_out = True
                break
        spool.seek(0)
        output = spool.read()
    result = CommandResult(argv, proc.returncode, output, timed_out=timed_out, duration=time.monotonic() - start)
    if timed_out:
        logger.warning("timed out after %.1fs: %s", result.duration, result.command)
    else:
        logger.debug("exit %s after %.2fs: %s", result.exit_status, result.duration, result.command)
    return result
