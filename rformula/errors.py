# rformula/errors.py
# -*- coding: utf-8 -*-
"""
Error taxonomy shared by every pipeline stage.

Each stage raises exactly one family of errors; the pipeline records the
error verbatim together with the stage in which it happened.
"""

from __future__ import annotations

from typing import Optional


class RformulaError(Exception):
    """Base class for every error surfaced by a pipeline run."""

    kind = "error"

    def __init__(self, message: str, *, command: Optional[str] = None,
                 exit_status: Optional[int] = None, output: bytes = b""):
        super().__init__(message)
        self.message = message
        self.command = command
        self.exit_status = exit_status
        self.output = output or b""

    def describe(self) -> str:
        parts = [f"{self.kind}: {self.message}"]
        if self.command:
            parts.append(f"command: {self.command}")
        if self.exit_status is not None:
            parts.append(f"exit status: {self.exit_status}")
        return "\n".join(parts)


class ConfigError(RformulaError):
    kind = "ConfigError"


class FetchError(RformulaError):
    kind = "FetchError"


class IntegrityError(RformulaError):
    kind = "IntegrityError"

    def __init__(self, message: str, *, expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class DependencyError(RformulaError):
    kind = "DependencyError"

    def __init__(self, message: str, *, missing: Optional[list] = None):
        super().__init__(message)
        self.missing = list(missing or [])


class BuildError(RformulaError):
    kind = "BuildError"


class InstallError(RformulaError):
    kind = "InstallError"


class VerificationError(RformulaError):
    kind = "VerificationError"

    def __init__(self, message: str, *, result=None, **kwargs):
        super().__init__(message, **kwargs)
        self.result = result


class PipelineCancelled(RformulaError):
    kind = "PipelineCancelled"
