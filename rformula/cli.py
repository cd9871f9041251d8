#!/usr/bin/env python3
# rformula/cli.py
"""
rformula CLI - drives recipes through the fetch -> build -> install -> verify pipeline

Commands:
- install <recipe>   full pipeline into the Install Prefix
- fetch <recipe>     download, verify and unpack only
- info <recipe>      show the recipe descriptor
- list               recipes found in recipes.paths

Exit codes: 0 success, 1 stage failure, 2 configuration error, 130 cancelled.
SIGINT/SIGTERM cancel the running stage; the prefix is left untouched or rolled back.
"""

from __future__ import annotations

import sys
import signal
import argparse
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rformula import config as config_mod
from rformula.errors import ConfigError, PipelineCancelled, RformulaError
from rformula.fetcher import Fetcher
from rformula.hooks import HookManager
from rformula.installer import Installer
from rformula.logging import configure, get_logger
from rformula.pipeline import Pipeline, PipelineResult
from rformula.recipe import Recipe, find_recipe, iter_recipe_files, load_recipe

logger = get_logger("cli")

console = Console(highlight=False)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

OUTPUT_TAIL_LINES = 40

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {escape(msg)}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {escape(msg)}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {escape(msg)}")

def print_info(msg: str):
    console.print(f"[cyan]{escape(msg)}[/cyan]")

def print_output_tail(output: bytes, lines: int = OUTPUT_TAIL_LINES):
    text = output.decode("utf-8", errors="replace").rstrip()
    if not text:
        return
    tail = text.splitlines()[-lines:]
    console.print("[dim]--- command output (last %d lines) ---[/dim]" % len(tail))
    console.print(escape("\n".join(tail)))

# -----------------------
# Cancellation
# -----------------------
@contextmanager
def cancel_on_signals(cancel: threading.Event) -> Iterator[threading.Event]:
    """Set `cancel` on SIGINT/SIGTERM while the block runs (main thread only)."""
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def handler(signum, frame):
        logger.warning("received signal %d, cancelling", signum)
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, h in previous.items():
            signal.signal(sig, h)

# -----------------------
# CLI Implementation
# -----------------------
class RformulaCLI:
    def __init__(self, cancel: Optional[threading.Event] = None):
        self.cancel = cancel or threading.Event()

    def load(self, identifier: str) -> Recipe:
        return find_recipe(identifier)

    # --------------
    # install
    # --------------
    def install(self, identifier: str, overwrite: bool = False, keep_build: Optional[bool] = None,
                fetch_timeout: Optional[float] = None, build_timeout: Optional[float] = None) -> int:
        recipe = self.load(identifier)
        print_info(f"==> Installing {recipe.name} {recipe.version}")
        if recipe.unverified:
            print_warn(f"{recipe.name}: sha256 is '{recipe.checksum}', the download will not be verified")

        hooks = HookManager()
        with console.status(f"{recipe.name}: pending") as status:
            def on_state(event: str, ctx: Dict[str, Any]):
                if ctx["state"] in ("succeeded", "failed"):
                    return
                status.update(f"{recipe.name}: {ctx['state']}")
                print_info(f"==> {ctx['state'].capitalize()} {ctx['recipe']}")

            def on_command(event: str, ctx: Dict[str, Any]):
                status.update(f"{recipe.name}: {ctx['stage']}: {ctx['command']}")

            hooks.register("state_change", on_state, name="cli-status")
            hooks.register("command", on_command, name="cli-command")
            pipeline = Pipeline(recipe, hooks=hooks, cancel=self.cancel, overwrite=overwrite,
                                keep_build=keep_build, fetch_timeout=fetch_timeout, build_timeout=build_timeout)
            result = pipeline.run()
        self.report(result)
        return result.exit_code

    def report(self, result: PipelineResult):
        recipe = result.recipe
        if result.succeeded:
            if result.reduced_integrity:
                print_warn(f"{recipe.name} was installed from an unverified download")
            print_ok(f"{recipe.name} {recipe.version} installed in {result.keg}")
            if result.verification is not None:
                print_ok(f"test passed: {result.verification.command}")
            return
        stage = result.failed_stage.label if result.failed_stage else "?"
        if result.cancelled:
            print_warn(f"{recipe.name}: cancelled during {stage}")
            return
        print_err(f"{recipe.name}: failed during {stage}")
        err = result.error
        if err is not None:
            console.print(escape(err.describe()))
            print_output_tail(err.output)
        if result.keg is not None:
            print_info(f"the keg was left at {result.keg}")

    # --------------
    # fetch
    # --------------
    def fetch(self, identifier: str, dest: Optional[str] = None, timeout: Optional[float] = None) -> int:
        recipe = self.load(identifier)
        dest_dir = Path(dest) if dest else Path.cwd() / f"{recipe.name}-{recipe.version}"
        print_info(f"==> Fetching {recipe.source_url}")
        try:
            with console.status(f"fetching {recipe.name}"):
                fetched = Fetcher().fetch(recipe, dest_dir, timeout=timeout, cancel=self.cancel)
        except PipelineCancelled as e:
            print_warn(str(e))
            return EXIT_CANCELLED
        except RformulaError as e:
            print_err(e.describe())
            return EXIT_FAILED
        if fetched.reduced_integrity:
            print_warn("checksum not verified (reduced integrity)")
        else:
            print_ok(f"sha256 {fetched.sha256}")
        print_ok(f"source unpacked in {fetched.source_dir}")
        return EXIT_OK

    # --------------
    # info / list
    # --------------
    def info(self, identifier: str, as_json: bool = False) -> int:
        recipe = self.load(identifier)
        if as_json:
            print(recipe.as_json())
            return EXIT_OK
        table = Table(title=f"{recipe.name} {recipe.version}", show_header=False)
        table.add_column("field", style="bold")
        table.add_column("value")
        rows = [
            ("desc", recipe.description),
            ("homepage", recipe.homepage),
            ("url", recipe.source_url),
            ("sha256", recipe.checksum + (" (unverified)" if recipe.unverified else "")),
            ("license", recipe.license),
            ("depends_on", ", ".join(str(d) for d in recipe.dependencies()) or "-"),
            ("install", "\n".join(" ".join(c) for c in recipe.install_procedure)),
            ("test", "\n".join(" ".join(c) for c in recipe.test_procedure)),
            ("file", recipe.source_path or "-"),
        ]
        receipt = Installer().receipt_for(recipe)
        rows.append(("installed", "yes" if receipt else "no"))
        for k, v in rows:
            table.add_row(k, escape(v or "-"))
        console.print(table)
        return EXIT_OK

    def list_recipes(self) -> int:
        files = iter_recipe_files()
        if not files:
            print_warn("no recipes found in " + ", ".join(str(p) for p in config_mod.get_recipe_paths()))
            return EXIT_OK
        installer = Installer()
        table = Table(title="Recipes")
        table.add_column("name")
        table.add_column("version")
        table.add_column("installed")
        table.add_column("desc")
        for f in files:
            try:
                r = load_recipe(f)
            except ConfigError as e:
                table.add_row(escape(f.stem), "-", "-", f"[red]{escape(e.message)}[/red]")
                continue
            installed = "yes" if installer.receipt_for(r) else ""
            table.add_row(escape(r.name), escape(r.version), installed, escape(r.description))
        console.print(table)
        return EXIT_OK

# -----------------------
# Argparse wiring
# -----------------------
def make_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="rformula", description="Build and install software from recipes")
    ap.add_argument("--config", help="config file (default: $RFORMULA_CONFIG, ./rformula.yaml, ...)")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging, including command output")
    sub = ap.add_subparsers(dest="cmd")

    # install
    p_install = sub.add_parser("install", help="fetch, build, install and test a recipe")
    p_install.add_argument("recipe", help="recipe name or path to a recipe file")
    p_install.add_argument("--prefix", help="Install Prefix (default: prefix.root)")
    p_install.add_argument("--overwrite", action="store_true", help="reinstall over an existing keg")
    p_install.add_argument("--keep-build", action="store_true", default=None, help="keep the build directory")
    p_install.add_argument("--fetch-timeout", type=float, help="seconds allowed for the fetch stage")
    p_install.add_argument("--build-timeout", type=float, help="seconds allowed for the build stage")

    # fetch
    p_fetch = sub.add_parser("fetch", help="download, verify and unpack the source only")
    p_fetch.add_argument("recipe")
    p_fetch.add_argument("--dest", help="destination directory")

    # info / list
    p_info = sub.add_parser("info", help="show a recipe")
    p_info.add_argument("recipe")
    p_info.add_argument("--json", action="store_true", help="print the recipe as JSON")
    sub.add_parser("list", help="list known recipes")

    return ap

def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return EXIT_CONFIG

    try:
        config_mod.load(args.config, fatal=bool(args.config))
        if getattr(args, "prefix", None):
            config_mod.apply_overrides({"prefix": {"root": args.prefix}})
        configure("DEBUG" if args.verbose else None)
    except ConfigError as e:
        print_err(f"configuration error: {e}")
        return EXIT_CONFIG

    cli = RformulaCLI()
    try:
        with cancel_on_signals(cli.cancel):
            if args.cmd == "install":
                return cli.install(args.recipe, overwrite=args.overwrite, keep_build=args.keep_build,
                                   fetch_timeout=args.fetch_timeout, build_timeout=args.build_timeout)
            if args.cmd == "fetch":
                return cli.fetch(args.recipe, dest=args.dest)
            if args.cmd == "info":
                return cli.info(args.recipe, as_json=args.json)
            if args.cmd == "list":
                return cli.list_recipes()
    except ConfigError as e:
        print_err(str(e))
        return EXIT_CONFIG
    parser.print_help()
    return EXIT_CONFIG

if __name__ == "__main__":
    sys.exit(main())
