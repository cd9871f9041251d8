# rformula/logging.py
# -*- coding: utf-8 -*-
"""
rformula logging

Features:
 - Integration with rformula.config (re-applied whenever the config is reloaded)
 - Console color formatter
 - Rotating file handler
 - JSONL transparency log (one JSON object per record)
 - Module-level configurable log levels (module_levels)
 - Build/test command output streaming at DEBUG level
"""

from __future__ import annotations

import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from rformula.config import Config, get_config, register_watch_callback

_logger = logging.getLogger("rformula.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m", # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        if not hasattr(record, "rformula_module"):
            record.rformula_module = record.name
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg

# ----------------------
# JSONL formatter for transparency log
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "rformula_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Optional[Dict[str, str]] = None):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "rformula_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

# ----------------------
# RformulaLogger (singleton)
# ----------------------
class RformulaLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("rformula")
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._configured = False
        register_watch_callback(self._on_config_reload)
        self._inited = True

    def _on_config_reload(self, cfg: Config):
        # only follow config changes once the CLI asked for handlers
        if self._configured:
            self.apply_config(cfg.section("logging"))

    # ----------------------
    # Configuration
    # ----------------------
    def apply_config(self, cfg: Dict[str, Any], level_override: Optional[str] = None):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            # handler-level so records from child loggers are filtered too
            self._module_filter = ModuleLevelFilter(cfg.get("module_levels") or {})

            level_name = level_override or cfg.get("level", "INFO")
            level = getattr(logging, str(level_name).upper(), logging.INFO)
            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(rformula_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            ch = logging.StreamHandler(sys.stderr)
            ch.setLevel(level)
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True))))
            self._root.addHandler(ch)
            self._handlers.append(ch)

            root_level = level
            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = cfg.get("max_size_bytes") or 10 * 1024 * 1024
                fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                file_level = getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG)
                fh.setLevel(file_level)
                fh.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=False))
                self._root.addHandler(fh)
                self._handlers.append(fh)
                root_level = min(root_level, file_level)

            jsonl_cfg = cfg.get("jsonl") or {}
            if jsonl_cfg.get("enabled"):
                path = Path(jsonl_cfg.get("path")).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                jh = logging.FileHandler(str(path), encoding="utf-8")
                jsonl_level = getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO)
                jh.setLevel(jsonl_level)
                jh.setFormatter(JSONLineFormatter())
                self._root.addHandler(jh)
                self._handlers.append(jh)
                root_level = min(root_level, jsonl_level)

            for h in self._handlers:
                h.addFilter(self._module_filter)
            self._root.setLevel(root_level)
            self._root.propagate = False
            self._configured = True
            _logger.debug("logging: configuration applied")

    def shutdown(self):
        """Remove installed handlers and hand records back to the root logger."""
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            self._root.propagate = True
            self._root.setLevel(logging.NOTSET)
            self._configured = False

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'rformula_module' into records."""
        return logging.LoggerAdapter(logging.getLogger(f"rformula.{module_name}"), {"rformula_module": module_name})

    def stream_command_output(self, module: str, output: bytes):
        """Log captured command output line by line at DEBUG level."""
        if not output:
            return
        adapter = self.get_logger(module)
        for line in output.decode("utf-8", errors="replace").splitlines():
            adapter.debug("| %s", line)

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = RformulaLogger()

def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)

def configure(level: Optional[str] = None):
    """Install handlers from the current config; level overrides logging.level."""
    return _GLOBAL_LOGGER.apply_config(get_config().section("logging"), level_override=level)

def stream_command_output(module: str, output: bytes):
    return _GLOBAL_LOGGER.stream_command_output(module, output)

def shutdown():
    return _GLOBAL_LOGGER.shutdown()
