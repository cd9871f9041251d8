# rformula/installer.py
# -*- coding: utf-8 -*-
"""
installer.py - transactional placement of staged builds into the Install Prefix

Layout:
  <prefix>/Cellar/<name>/<version>/          keg (copied from the build stage)
  <prefix>/Cellar/<name>/<version>/INSTALL_RECEIPT.json
  <prefix>/bin/<exe> -> ../Cellar/<name>/<version>/bin/<exe>
  <prefix>/var/locks/<name>.lock             advisory lock (fcntl.flock), kept only after a successful install

Transaction:
  1. lock, check collisions (existing keg, foreign files in <prefix>/bin)
  2. copy stage -> hidden temp sibling, write receipt into it
  3. move an existing keg aside (overwrite only), rename temp -> keg
  4. link bin/ entries
  Any error or cancellation undoes steps 2-4 in reverse order and discards a lock file it created.
"""

from __future__ import annotations

import os
import json
import time
import fcntl
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from rformula.buildsystem import BuildOutput
from rformula.config import get_config
from rformula.errors import InstallError, PipelineCancelled
from rformula.logging import get_logger
from rformula.recipe import Recipe
from rformula.toolchain import RECEIPT_NAME

logger = get_logger("installer")

# ------------------------
# Utilities
# ------------------------
def _uid() -> str:
    return uuid.uuid4().hex[:10]

def _write_json(path: Path, data: Dict[str, Any]):
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)

# ------------------------
# Locking
# ------------------------
class PrefixLock:
    """
    Exclusive advisory lock on <prefix>/var/locks/<name>.lock.

    The lock file and any directories created for it are removed again when
    the guarded block raises, so a failed install leaves no trace in the prefix.
    A successful block keeps them for the next install.
    """

    def __init__(self, path: Path, timeout: float = 60, poll: float = 0.1):
        self.path = Path(path)
        self.timeout = timeout
        self.poll = poll
        self._fd: Optional[int] = None
        self._created: List[Path] = []

    def _mkdirs(self):
        missing = []
        d = self.path.parent
        while not d.exists():
            missing.append(d)
            d = d.parent
        for m in reversed(missing):
            try:
                m.mkdir()
            except FileExistsError:
                continue
            self._created.append(m)

    def _open(self) -> int:
        self._mkdirs()
        try:
            fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o644)
            if self.path not in self._created:
                self._created.append(self.path)
            return fd
        except FileExistsError:
            return os.open(str(self.path), os.O_RDWR)

    def _is_current(self, fd: int) -> bool:
        # another holder may have discarded the file while we waited on it
        try:
            return os.fstat(fd).st_ino == os.stat(self.path).st_ino
        except FileNotFoundError:
            return False

    def acquire(self):
        deadline = time.monotonic() + max(self.timeout, 0)
        while True:
            try:
                fd = self._open()
            except FileNotFoundError:
                continue
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                if time.monotonic() >= deadline:
                    self._created = []
                    raise InstallError(f"could not lock {self.path} within {self.timeout}s (another install in progress?)")
                time.sleep(self.poll)
                continue
            if self._is_current(fd):
                break
            os.close(fd)
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug("locked %s", self.path)

    def discard(self):
        """Remove the lock file and the directories this lock created."""
        for p in reversed(self._created):
            try:
                if p == self.path:
                    p.unlink()
                elif not any(p.iterdir()):
                    p.rmdir()
            except OSError as e:
                logger.debug("left %s in place: %s", p, e)
        self._created = []

    def release(self, discard: bool = False):
        if self._fd is None:
            return
        if discard:
            self.discard()
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.debug("unlocked %s", self.path)

    def __enter__(self) -> "PrefixLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release(discard=exc_type is not None)


# ------------------------
# Result model
# ------------------------
@dataclass
class InstallResult:
    keg: Path
    receipt: Dict[str, Any]
    links: List[Path] = field(default_factory=list)

    @property
    def bin_dir(self) -> Path:
        return self.keg / "bin"

    def to_dict(self) -> Dict[str, Any]:
        return {"keg": str(self.keg), "links": [str(l) for l in self.links], "receipt": self.receipt}

# ------------------------
# Transaction journal
# ------------------------
class _Journal:
    """Records every write of one install so it can be undone in reverse order."""

    def __init__(self):
        self.tmp: Optional[Path] = None
        self.backup: Optional[Tuple[Path, Path]] = None   # (keg, moved-aside copy)
        self.keg: Optional[Path] = None
        self.links: List[Path] = []
        self.replaced_links: List[Tuple[Path, str]] = []
        self.created_dirs: List[Path] = []

    def mkdirs(self, *dirs: Path):
        for d in dirs:
            missing = []
            while not d.exists():
                missing.append(d)
                d = d.parent
            for m in reversed(missing):
                m.mkdir()
                self.created_dirs.append(m)

    def rollback(self):
        for link in reversed(self.links):
            if link.is_symlink():
                link.unlink()
        for link, target in reversed(self.replaced_links):
            if not os.path.lexists(link):
                os.symlink(target, link)
        if self.keg is not None and self.keg.exists():
            shutil.rmtree(self.keg)
        if self.backup is not None:
            keg, aside = self.backup
            if aside.exists() and not keg.exists():
                os.rename(aside, keg)
        if self.tmp is not None and self.tmp.exists():
            shutil.rmtree(self.tmp)
        for d in reversed(self.created_dirs):
            if d.is_dir() and not any(d.iterdir()):
                d.rmdir()

    def commit(self):
        if self.backup is not None:
            shutil.rmtree(self.backup[1], ignore_errors=True)

# ------------------------
# Installer
# ------------------------
class Installer:
    def __init__(self, prefix_root: Optional[Path] = None, cfg: Optional[Dict[str, Any]] = None):
        section = cfg if cfg is not None else get_config().section("installer")
        self.prefix_root = Path(prefix_root) if prefix_root else Path(get_config().get("prefix.root"))
        self.link = bool(section.get("link", True))
        self.lock_timeout = float(section.get("lock_timeout") or 60)

    @property
    def cellar(self) -> Path:
        return self.prefix_root / "Cellar"

    @property
    def bin_dir(self) -> Path:
        return self.prefix_root / "bin"

    def keg_path(self, recipe: Recipe) -> Path:
        return self.cellar / recipe.name / recipe.version

    def lock_path(self, recipe: Recipe) -> Path:
        return self.prefix_root / "var" / "locks" / f"{recipe.name}.lock"

    def lock(self, recipe: Recipe) -> PrefixLock:
        return PrefixLock(self.lock_path(recipe), timeout=self.lock_timeout)

    def receipt_for(self, recipe: Recipe) -> Optional[Dict[str, Any]]:
        path = self.keg_path(recipe) / RECEIPT_NAME
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def _owned_link(self, link: Path, recipe: Recipe) -> bool:
        """True when link is a symlink into any keg of the same package."""
        if not link.is_symlink():
            return False
        target = Path(os.path.normpath(os.path.join(link.parent, os.readlink(link))))
        try:
            target.relative_to(self.cellar / recipe.name)
            return True
        except ValueError:
            return False

    def _check_collisions(self, recipe: Recipe, build_output: BuildOutput, overwrite: bool):
        keg = self.keg_path(recipe)
        if keg.exists() and not overwrite:
            raise InstallError(f"{recipe.name} {recipe.version} is already installed at {keg} (use overwrite to reinstall)")
        if not self.link:
            return
        stage_bin = build_output.stage_dir / "bin"
        if not stage_bin.is_dir():
            return
        for entry in sorted(stage_bin.iterdir()):
            link = self.bin_dir / entry.name
            if os.path.lexists(link) and not self._owned_link(link, recipe):
                raise InstallError(f"{link} already exists and is not managed by {recipe.name}")

    def _receipt(self, recipe: Recipe, build_output: BuildOutput, reduced_integrity: bool) -> Dict[str, Any]:
        return {
            "name": recipe.name,
            "version": recipe.version,
            "source_url": recipe.source_url,
            "checksum": recipe.checksum,
            "reduced_integrity": reduced_integrity,
            "installed_at": int(time.time()),
            "dependencies": [{"name": r.dependency.name, "stage": r.dependency.stage, "origin": r.origin, "path": str(r.path)}
                             for r in build_output.dependencies],
            "files": list(build_output.artifacts),
        }

    def _link_bin(self, keg: Path, recipe: Recipe, journal: _Journal) -> List[Path]:
        keg_bin = keg / "bin"
        if not self.link or not keg_bin.is_dir():
            return []
        journal.mkdirs(self.bin_dir)
        for entry in sorted(keg_bin.iterdir()):
            link = self.bin_dir / entry.name
            if link.is_symlink():
                journal.replaced_links.append((link, os.readlink(link)))
                link.unlink()
            os.symlink(os.path.relpath(entry, self.bin_dir), link)
            journal.links.append(link)
            logger.debug("linked %s -> %s", link, entry)
        return list(journal.links)

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event], recipe: Recipe):
        if cancel is not None and cancel.is_set():
            raise PipelineCancelled(f"install of {recipe.name} cancelled")

    def install(self, recipe: Recipe, build_output: BuildOutput, reduced_integrity: bool = False,
                overwrite: bool = False, cancel: Optional[threading.Event] = None) -> InstallResult:
        """
        Place build_output into the prefix. Raises InstallError or PipelineCancelled;
        in both cases the prefix is left exactly as it was before the call.
        """
        self._check_cancel(cancel, recipe)
        keg = self.keg_path(recipe)
        with self.lock(recipe):
            self._check_collisions(recipe, build_output, overwrite)
            journal = _Journal()
            try:
                journal.mkdirs(keg.parent)
                journal.tmp = keg.parent / f".{recipe.version}.tmp-{_uid()}"
                shutil.copytree(build_output.stage_dir, journal.tmp, symlinks=True)
                receipt = self._receipt(recipe, build_output, reduced_integrity)
                _write_json(journal.tmp / RECEIPT_NAME, receipt)
                self._check_cancel(cancel, recipe)

                if keg.exists():
                    aside = keg.parent / f".{recipe.version}.old-{_uid()}"
                    os.rename(keg, aside)
                    journal.backup = (keg, aside)
                os.rename(journal.tmp, keg)
                journal.tmp = None
                journal.keg = keg

                links = self._link_bin(keg, recipe, journal)
                self._check_cancel(cancel, recipe)
            except PipelineCancelled:
                logger.warning("install of %s cancelled; rolling back", recipe.name)
                self._rollback(journal)
                raise
            except (OSError, shutil.Error) as e:
                logger.error("install of %s failed: %s; rolling back", recipe.name, e)
                self._rollback(journal)
                raise InstallError(f"{recipe.name}: cannot install into {keg}: {e}") from e
            journal.commit()
        logger.info("installed %s %s into %s", recipe.name, recipe.version, keg)
        return InstallResult(keg=keg, receipt=receipt, links=links)

    def _rollback(self, journal: _Journal):
        try:
            journal.rollback()
        except OSError:
            logger.exception("rollback incomplete; inspect %s", self.prefix_root)
