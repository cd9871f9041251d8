"""
Tests for configuration loading, merging and validation.
"""

import os
import textwrap
from pathlib import Path

import pytest

from rformula import config as config_mod
from rformula.errors import ConfigError


class TestFromDict:
    """Tests for from_dict()."""

    def test_defaults_are_merged(self):
        cfg = config_mod.from_dict({"build": {"jobs": 3}})
        assert cfg.get("build.jobs") == 3
        assert cfg.get("build.timeout") == 3600
        assert cfg.get("fetcher.reject_unverified") is False
        assert cfg.get("installer.link") is True

    def test_paths_are_expanded(self):
        cfg = config_mod.from_dict({"prefix": {"root": "~/somewhere"}, "recipes": {"paths": "~/r"}})
        assert cfg.get("prefix.root") == os.path.join(str(Path.home()), "somewhere")
        assert cfg.get("recipes.paths") == [os.path.join(str(Path.home()), "r")]

    def test_numbers_are_coerced(self):
        cfg = config_mod.from_dict({"fetcher": {"timeout": "12"}, "verify": {"timeout": 5.0}})
        assert cfg.get("fetcher.timeout") == 12
        assert cfg.get("verify.timeout") == 5

    def test_human_sizes(self):
        cfg = config_mod.from_dict({"logging": {"max_size": "2M"}})
        assert cfg.get("logging.max_size_bytes") == 2 * 1024 * 1024

    def test_validation_warns_by_default(self):
        cfg = config_mod.from_dict({"bogus": {}})
        assert cfg.get("bogus") == {}

    def test_validation_fatal(self):
        with pytest.raises(ConfigError, match="bogus"):
            config_mod.from_dict({"bogus": {}}, fatal=True)

    def test_bad_timeout_fatal(self):
        with pytest.raises(ConfigError, match="build.timeout"):
            config_mod.from_dict({"build": {"timeout": -1}}, fatal=True)

    def test_dotted_get_default(self):
        cfg = config_mod.from_dict({})
        assert cfg.get("no.such.key", "dflt") == "dflt"

    def test_section_is_a_copy(self):
        cfg = config_mod.from_dict({})
        section = cfg.section("build")
        section["jobs"] = 99
        assert cfg.get("build.jobs") != 99


class TestLoad:
    """Tests for load() and the process-wide config."""

    def test_load_explicit_file(self, tmp_path: Path):
        path = tmp_path / "cfg.yaml"
        path.write_text(textwrap.dedent("""\
            build:
              jobs: 7
            toolchain:
              aliases:
                go: go1.22
        """))
        cfg = config_mod.load(str(path))
        assert cfg.path == path
        assert config_mod.get_config() is cfg
        assert cfg.get("build.jobs") == 7
        assert cfg.get("toolchain.aliases") == {"go": "go1.22"}

    def test_load_from_env(self, tmp_path: Path, monkeypatch):
        path = tmp_path / "env.json"
        path.write_text('{"verify": {"timeout": 9}}')
        monkeypatch.setenv("RFORMULA_CONFIG", str(path))
        monkeypatch.chdir(tmp_path)
        assert config_mod.load().get("verify.timeout") == 9

    def test_missing_explicit_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            config_mod.load(str(tmp_path / "missing.yaml"))

    def test_unparseable_file(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("build: [oops\n")
        with pytest.raises(ConfigError, match="cannot parse"):
            config_mod.load(str(path))

    def test_non_mapping_file(self, tmp_path: Path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            config_mod.load(str(path))

    def test_apply_overrides(self, prefix_dir: Path, tmp_path: Path):
        config_mod.apply_overrides({"prefix": {"root": str(tmp_path / "other")}})
        assert config_mod.get_prefix_root() == tmp_path / "other"
        # other sections from the installed config survive
        assert config_mod.get_build_config()["timeout"] == 60

    def test_watchers_are_notified(self):
        seen = []
        cb = seen.append
        config_mod.register_watch_callback(cb)
        try:
            cfg = config_mod.set_config(config_mod.from_dict({}))
        finally:
            config_mod.unregister_watch_callback(cb)
        assert seen == [cfg]
