"""
Shared test fixtures and configuration.

Every test runs against a config whose directories (prefix, build root,
fetch cache, recipe path) live under tmp_path, and recipes point at local
file:// archives, so no network access is needed.
"""

import io
import os
import tarfile
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict

import pytest
import yaml

from rformula import config as config_mod
from rformula import logging as rf_logging
from rformula.fetcher import sha256_of_file
from rformula.recipe import Recipe, load_recipe

TOOL_SCRIPT = textwrap.dedent("""\
    #!/bin/sh
    if [ "$1" = "--version" ]; then
      echo "tool 1.0.0"
      exit 0
    fi
    echo "usage: tool --version" >&2
    exit 1
""")


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def prefix_dir(tmp_path: Path) -> Path:
    """Return the Install Prefix used by the test config."""
    return tmp_path / "prefix"


@pytest.fixture
def build_root(tmp_path: Path) -> Path:
    """Return the build root used by the test config."""
    return tmp_path / "build"


@pytest.fixture
def recipes_dir(tmp_path: Path) -> Path:
    """Return the recipe search directory used by the test config."""
    d = tmp_path / "recipes"
    d.mkdir()
    return d


@pytest.fixture
def config_overrides(tmp_path: Path, prefix_dir: Path, build_root: Path, recipes_dir: Path) -> Dict[str, Any]:
    """Config mapping that keeps every directory inside tmp_path."""
    return {
        "prefix": {"root": str(prefix_dir)},
        "recipes": {"paths": [str(recipes_dir)]},
        "fetcher": {"cache_dir": str(tmp_path / "cache"), "timeout": 30},
        "build": {"root": str(build_root), "timeout": 60, "jobs": 2},
        "installer": {"lock_timeout": 2},
        "verify": {"timeout": 30},
    }


@pytest.fixture(autouse=True)
def rf_config(config_overrides: Dict[str, Any]):
    """Install the tmp_path config for the duration of a test."""
    cfg = config_mod.set_config(config_mod.from_dict(config_overrides))
    yield cfg
    rf_logging.shutdown()
    config_mod.reset()


@pytest.fixture
def config_file(tmp_path: Path, config_overrides: Dict[str, Any]) -> Path:
    """Write the tmp_path config to a YAML file (for --config)."""
    path = tmp_path / "rformula.yaml"
    path.write_text(yaml.safe_dump(config_overrides))
    return path


def _make_tarball(dest: Path, top: str, files: Dict[str, str]) -> Path:
    with tarfile.open(dest, "w:gz") as tf:
        info = tarfile.TarInfo(top)
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        tf.addfile(info)
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(data)
            info.mode = 0o755 if name.endswith(".sh") else 0o644
            tf.addfile(info, io.BytesIO(data))
    return dest


@pytest.fixture
def source_archive(tmp_path: Path) -> Path:
    """A tool-1.0.0.tar.gz holding a single top-level directory with tool.sh."""
    src = tmp_path / "sources"
    src.mkdir()
    return _make_tarball(src / "tool-1.0.0.tar.gz", "tool-1.0.0",
                         {"tool.sh": TOOL_SCRIPT, "README": "tool\n"})


@pytest.fixture
def make_tarball(tmp_path: Path) -> Callable[..., Path]:
    """Factory building a tarball from a {name: content} mapping."""
    def factory(name: str, files: Dict[str, str], top: str = "pkg-1.0") -> Path:
        d = tmp_path / "sources"
        d.mkdir(exist_ok=True)
        return _make_tarball(d / name, top, files)
    return factory


@pytest.fixture
def recipe_data(source_archive: Path) -> Dict[str, Any]:
    """A recipe mapping that builds and tests successfully."""
    return {
        "name": "tool",
        "desc": "test tool",
        "homepage": "https://example.invalid/tool",
        "url": source_archive.as_uri(),
        "sha256": sha256_of_file(source_archive),
        "license": "MIT",
        "install": ["cp tool.sh ${BIN}/tool"],
        "test": ["${BIN}/tool --version"],
    }


@pytest.fixture
def write_recipe(recipes_dir: Path, recipe_data: Dict[str, Any]) -> Callable[..., Path]:
    """Factory writing recipe_data (plus overrides) as <recipes_dir>/<name>.yaml."""
    def factory(**overrides: Any) -> Path:
        data = dict(recipe_data)
        data.update(overrides)
        data = {k: v for k, v in data.items() if v is not None}
        path = recipes_dir / f"{data.get('name', 'unnamed')}.yaml"
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path
    return factory


@pytest.fixture
def make_recipe(write_recipe: Callable[..., Path]) -> Callable[..., Recipe]:
    """Factory returning a loaded Recipe built from recipe_data plus overrides."""
    def factory(**overrides: Any) -> Recipe:
        return load_recipe(write_recipe(**overrides))
    return factory


@pytest.fixture
def fake_keg(prefix_dir: Path) -> Callable[..., Path]:
    """Factory creating an installed keg (with receipt) holding one executable script."""
    def factory(name: str, version: str = "1.0", script: str = "#!/bin/sh\nexit 0\n") -> Path:
        keg = prefix_dir / "Cellar" / name / version
        (keg / "bin").mkdir(parents=True)
        exe = keg / "bin" / name
        exe.write_text(script)
        exe.chmod(0o755)
        (keg / "INSTALL_RECEIPT.json").write_text('{"name": "%s", "version": "%s"}' % (name, version))
        return keg
    return factory


@pytest.fixture
def bin_dir_with(tmp_path: Path) -> Callable[..., str]:
    """Factory creating a directory of executables, returned as a PATH string."""
    def factory(*names: str) -> str:
        d = tmp_path / "fakebin"
        d.mkdir(exist_ok=True)
        for n in names:
            exe = d / n
            exe.write_text("#!/bin/sh\nexit 0\n")
            exe.chmod(0o755)
        return str(d) + os.pathsep + "/usr/bin" + os.pathsep + "/bin"
    return factory
