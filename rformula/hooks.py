# rformula/hooks.py
"""
Event hooks for pipeline observers.

Events fired by the pipeline:
  state_change  {"recipe", "previous", "state", "stage", "error"}
  command       {"recipe", "stage", "command", "exit_status"}
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from rformula.logging import get_logger

logger = get_logger("hooks")

HookCallable = Callable[[str, Dict[str, Any]], Any]


class HookManager:
    def __init__(self):
        self.hooks: Dict[str, List[Dict[str, Any]]] = {}

    # -----------------------------
    # Registration
    # -----------------------------
    def register(self, event: str, callback: HookCallable, name: Optional[str] = None,
                 priority: int = 10, origin: str = "runtime"):
        entries = self.hooks.setdefault(event, [])
        entries.append({
            "name": name or getattr(callback, "__name__", repr(callback)),
            "callback": callback,
            "priority": priority,
            "origin": origin,
            "enabled": True,
        })
        entries.sort(key=lambda h: h["priority"])

    def unregister(self, event: str, name: str):
        if event in self.hooks:
            self.hooks[event] = [h for h in self.hooks[event] if h["name"] != name]

    def list(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        if event:
            return list(self.hooks.get(event, []))
        all_hooks = []
        for entries in self.hooks.values():
            all_hooks.extend(entries)
        return all_hooks

    def enable(self, event: str, name: str):
        for hook in self.hooks.get(event, []):
            if hook["name"] == name:
                hook["enabled"] = True

    def disable(self, event: str, name: str):
        for hook in self.hooks.get(event, []):
            if hook["name"] == name:
                hook["enabled"] = False

    # -----------------------------
    # Execution
    # -----------------------------
    def run(self, event: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Call every enabled hook for event in priority order.
        Hooks observe the pipeline; a failing hook is logged and does not change the run's outcome.
        Returns False if any hook raised.
        """
        ok = True
        for hook in self.hooks.get(event, []):
            if not hook["enabled"]:
                continue
            try:
                hook["callback"](event, dict(context or {}))
            except Exception:
                ok = False
                logger.exception("hook %s failed for event %s", hook["name"], event)
        return ok
