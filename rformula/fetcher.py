# rformula/fetcher.py
# -*- coding: utf-8 -*-
"""
fetcher.py - source download, integrity gate and unpacking

Features:
- Protocol support: http(s) (urllib, streamed), file:// and bare local paths (files or directories)
- Integrity gate: SHA-256 of the archive bytes against the recipe checksum (hard stop on mismatch)
- Sentinel checksums (auto/no_check/unverified) skip the gate and flag reduced-integrity mode;
  fetcher.reject_unverified turns them into IntegrityError
- Download cache keyed by name/version; only verified archives are cached and a hit is re-hashed
- Unpacking of tar (gz/bz2/xz) and zip archives with path-traversal checks; plain files are copied
- Deadline and cancellation checks between download chunks
"""

from __future__ import annotations

import os
import shutil
import socket
import tarfile
import zipfile
import hashlib
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse

from rformula.config import get_fetcher_config
from rformula.errors import FetchError, IntegrityError, PipelineCancelled
from rformula.logging import get_logger
from rformula.recipe import Recipe
from rformula.sandbox import deadline_for, remaining

logger = get_logger("fetcher")

# -----------------------------------------------------------------------
# Utility helpers
# -----------------------------------------------------------------------
def sha256_of_file(path: Path, chunk_size: int = 65536) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()

def _archive_name(recipe: Recipe) -> str:
    parsed = urlparse(recipe.source_url)
    base = os.path.basename(unquote(parsed.path or recipe.source_url).rstrip("/"))
    return base or f"{recipe.name}-{recipe.version}.download"

def _is_within(base: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(base.resolve())
        return True
    except ValueError:
        return False

def _single_root(dest: Path) -> Path:
    entries = list(dest.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    return dest

# -----------------------------------------------------------------------
# Result model
# -----------------------------------------------------------------------
@dataclass
class FetchResult:
    archive: Path
    source_dir: Path
    sha256: str
    reduced_integrity: bool = False
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archive": str(self.archive),
            "source_dir": str(self.source_dir),
            "sha256": self.sha256,
            "reduced_integrity": self.reduced_integrity,
            "cached": self.cached,
        }

# -----------------------------------------------------------------------
# Unpacking
# -----------------------------------------------------------------------
def _check_tar_members(tf: tarfile.TarFile, dest: Path):
    for m in tf.getmembers():
        target = dest / m.name
        if os.path.isabs(m.name) or not _is_within(dest, target):
            raise FetchError(f"archive member escapes destination: {m.name}")
        if m.issym() or m.islnk():
            link_base = target.parent if m.issym() else dest
            if os.path.isabs(m.linkname) or not _is_within(dest, link_base / m.linkname):
                raise FetchError(f"archive link escapes destination: {m.name} -> {m.linkname}")
        if m.isdev():
            raise FetchError(f"archive contains a device file: {m.name}")

def _unpack_zip(archive: Path, dest: Path):
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            if os.path.isabs(info.filename) or not _is_within(dest, dest / info.filename):
                raise FetchError(f"archive member escapes destination: {info.filename}")
        for info in zf.infolist():
            extracted = Path(zf.extract(info, dest))
            mode = (info.external_attr >> 16) & 0o777
            if mode and not info.is_dir():
                extracted.chmod(mode)

def unpack(archive: Path, dest: Path) -> Path:
    """Unpack archive into dest and return the source root."""
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if archive.is_dir():
            shutil.copytree(archive, dest / archive.name, symlinks=True)
        elif tarfile.is_tarfile(archive):
            with tarfile.open(archive, "r:*") as tf:
                _check_tar_members(tf, dest)
                if hasattr(tarfile, "data_filter"):
                    tf.extractall(dest, filter="data")
                else:
                    tf.extractall(dest)
        elif zipfile.is_zipfile(archive):
            _unpack_zip(archive, dest)
        else:
            target = dest / archive.name
            shutil.copy2(archive, target)
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
        raise FetchError(f"cannot unpack {archive.name}: {e}") from e
    root = _single_root(dest)
    logger.debug("unpacked %s into %s", archive.name, root)
    return root

# -----------------------------------------------------------------------
# Fetcher
# -----------------------------------------------------------------------
class Fetcher:
    def __init__(self, cfg: Optional[Dict[str, Any]] = None):
        fetch_cfg = cfg if cfg is not None else get_fetcher_config()
        self.cache_dir = Path(fetch_cfg.get("cache_dir") or Path.cwd() / ".rformula-fetch-cache")
        self.timeout = fetch_cfg.get("timeout") or 300
        self.chunk_size = int(fetch_cfg.get("chunk_size") or 65536)
        self.reject_unverified = bool(fetch_cfg.get("reject_unverified", False))
        self.user_agent = fetch_cfg.get("user_agent") or "rformula"

    # -------------------------
    # cache helpers
    # -------------------------
    def _cache_path_for(self, recipe: Recipe) -> Path:
        return self.cache_dir / recipe.name.replace("/", "_") / recipe.version / _archive_name(recipe)

    def _cache_lookup(self, recipe: Recipe) -> Optional[Path]:
        if recipe.unverified:
            return None
        cached = self._cache_path_for(recipe)
        if not cached.is_file():
            return None
        digest = sha256_of_file(cached, self.chunk_size)
        if digest != recipe.checksum:
            logger.warning("cache entry for %s %s does not match its checksum; discarding", recipe.name, recipe.version)
            cached.unlink()
            return None
        logger.info("cache hit for %s %s", recipe.name, recipe.version)
        return cached

    def _cache_store(self, recipe: Recipe, archive: Path):
        if recipe.unverified or archive.is_dir():
            return
        target = self._cache_path_for(recipe)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".part")
            shutil.copy2(archive, tmp)
            os.replace(tmp, target)
        except OSError:
            # non-fatal: the downloaded archive is already verified
            logger.warning("could not store %s in fetch cache", archive.name, exc_info=True)

    def clear_cache(self, name: Optional[str] = None):
        target = self.cache_dir / name.replace("/", "_") if name else self.cache_dir
        shutil.rmtree(target, ignore_errors=True)
        logger.info("cleared fetch cache %s", target)

    # -------------------------
    # download
    # -------------------------
    def _download_http(self, url: str, out_path: Path, deadline: Optional[float], cancel: Optional[threading.Event]):
        req = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        left = remaining(deadline)
        sock_timeout = min(self.timeout, left) if left is not None else self.timeout
        try:
            with urllib.request.urlopen(req, timeout=max(sock_timeout, 0.1)) as resp, open(out_path, "wb") as f:
                while True:
                    self._check_progress(url, deadline, cancel)
                    chunk = resp.read(self.chunk_size)
                    if not chunk:
                        break
                    f.write(chunk)
        except urllib.error.HTTPError as e:
            raise FetchError(f"HTTP {e.code} fetching {url}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise FetchError(f"cannot reach {url}: {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            raise FetchError(f"timed out downloading {url}") from e
        except OSError as e:
            raise FetchError(f"error downloading {url}: {e}") from e

    @staticmethod
    def _check_progress(source: str, deadline: Optional[float], cancel: Optional[threading.Event]):
        if cancel is not None and cancel.is_set():
            raise PipelineCancelled(f"fetch of {source} cancelled")
        if deadline is not None and remaining(deadline) <= 0:
            raise FetchError(f"timed out fetching {source}")

    def _copy_local(self, path: Path, out_path: Path, deadline: Optional[float] = None,
                    cancel: Optional[threading.Event] = None):
        if not path.exists():
            raise FetchError(f"source not found: {path}")

        def copy_file(src, dst):
            with open(src, "rb") as fin, open(dst, "wb") as fout:
                self._check_progress(str(path), deadline, cancel)
                for chunk in iter(lambda: fin.read(self.chunk_size), b""):
                    fout.write(chunk)
                    self._check_progress(str(path), deadline, cancel)
            shutil.copystat(src, dst)
            return dst

        try:
            if path.is_dir():
                shutil.copytree(path, out_path, symlinks=True, copy_function=copy_file)
            else:
                copy_file(path, out_path)
        except OSError as e:
            raise FetchError(f"cannot copy {path}: {e}") from e

    def download(self, recipe: Recipe, work_dir: Path, deadline: Optional[float] = None,
                 cancel: Optional[threading.Event] = None) -> Path:
        url = recipe.source_url
        work_dir.mkdir(parents=True, exist_ok=True)
        out_path = work_dir / _archive_name(recipe)
        parsed = urlparse(url)
        logger.info("fetching %s", url)
        if parsed.scheme in ("http", "https"):
            self._download_http(url, out_path, deadline, cancel)
        elif parsed.scheme == "file":
            self._copy_local(Path(unquote(parsed.path)), out_path, deadline, cancel)
        elif parsed.scheme == "":
            self._copy_local(Path(url).expanduser(), out_path, deadline, cancel)
        else:
            raise FetchError(f"unsupported URL scheme {parsed.scheme!r} in {url}")
        return out_path

    # -------------------------
    # verification
    # -------------------------
    def verify(self, recipe: Recipe, archive: Path) -> str:
        """Return the archive digest; raise IntegrityError when it does not match the recipe."""
        if archive.is_dir():
            if not recipe.unverified:
                raise IntegrityError(f"{recipe.name}: a directory source cannot be checked against sha256 {recipe.checksum}",
                                     expected=recipe.checksum)
            return ""
        digest = sha256_of_file(archive, self.chunk_size)
        if recipe.unverified:
            return digest
        if digest != recipe.checksum:
            raise IntegrityError(f"{recipe.name}: checksum mismatch for {archive.name} (expected {recipe.checksum}, got {digest})",
                                 expected=recipe.checksum, actual=digest)
        return digest

    # -------------------------
    # core fetch flow
    # -------------------------
    def fetch(self, recipe: Recipe, dest_dir: Path, timeout: Optional[float] = None,
              cancel: Optional[threading.Event] = None) -> FetchResult:
        """
        Download (or reuse a cached copy of) the recipe source, verify it and unpack it
        into dest_dir/src. Raises FetchError or IntegrityError.
        """
        dest_dir = Path(dest_dir)
        if recipe.unverified:
            if self.reject_unverified:
                raise IntegrityError(f"{recipe.name}: checksum {recipe.checksum!r} is not a digest and unverified sources are rejected")
            logger.warning("%s: checksum is %r, integrity is NOT verified (reduced-integrity mode)", recipe.name, recipe.checksum)

        deadline = deadline_for(timeout if timeout is not None else self.timeout)
        archive = self._cache_lookup(recipe)
        cached = archive is not None
        if archive is None:
            archive = self.download(recipe, dest_dir / "download", deadline=deadline, cancel=cancel)
            try:
                digest = self.verify(recipe, archive)
            except IntegrityError:
                if archive.is_dir():
                    shutil.rmtree(archive, ignore_errors=True)
                else:
                    archive.unlink()
                raise
            self._cache_store(recipe, archive)
        else:
            digest = recipe.checksum

        if cancel is not None and cancel.is_set():
            raise PipelineCancelled(f"fetch of {recipe.name} cancelled")
        source_dir = unpack(archive, dest_dir / "src")
        logger.info("fetched %s %s (%s)", recipe.name, recipe.version,
                    "unverified" if recipe.unverified else f"sha256 {digest[:12]} ok")
        return FetchResult(archive=archive, source_dir=source_dir, sha256=digest,
                           reduced_integrity=recipe.unverified, cached=cached)
