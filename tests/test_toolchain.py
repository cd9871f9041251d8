"""
Tests for dependency resolution.
"""

from pathlib import Path

import pytest

from rformula.errors import DependencyError
from rformula.recipe import Dependency
from rformula.toolchain import DependencyResolver, installed_kegs


class TestInstalledKegs:
    def test_newest_first(self, fake_keg, prefix_dir: Path):
        fake_keg("go", "1.9")
        fake_keg("go", "1.21.3")
        fake_keg("go", "1.10")
        assert [k.name for k in installed_kegs(prefix_dir, "go")] == ["1.21.3", "1.10", "1.9"]

    def test_keg_without_receipt_is_ignored(self, prefix_dir: Path):
        (prefix_dir / "Cellar" / "go" / "1.0" / "bin").mkdir(parents=True)
        assert installed_kegs(prefix_dir, "go") == []

    def test_missing_rack(self, prefix_dir: Path):
        assert installed_kegs(prefix_dir, "nothing") == []


class TestDependencyResolver:
    """Tests for DependencyResolver."""

    def test_keg_wins_over_path(self, fake_keg, bin_dir_with):
        keg = fake_keg("go")
        resolver = DependencyResolver(search_path=bin_dir_with("go"))
        r = resolver.resolve_one(Dependency("go"))
        assert r.origin == "keg"
        assert r.path == keg / "bin"

    def test_system_executable(self, bin_dir_with, tmp_path: Path):
        resolver = DependencyResolver(search_path=bin_dir_with("go"))
        r = resolver.resolve_one(Dependency("go"))
        assert r.origin == "system"
        assert r.executable == tmp_path / "fakebin" / "go"
        assert r.path == tmp_path / "fakebin"

    def test_alias(self, bin_dir_with, tmp_path: Path):
        resolver = DependencyResolver(aliases={"go": "go1.22"}, search_path=bin_dir_with("go1.22"))
        r = resolver.resolve_one(Dependency("go"))
        assert r.executable == tmp_path / "fakebin" / "go1.22"

    def test_alias_from_config(self, bin_dir_with):
        from rformula import config as config_mod
        config_mod.apply_overrides({"toolchain": {"aliases": {"cc": "fakecc"}}})
        resolver = DependencyResolver(search_path=bin_dir_with("fakecc"))
        assert resolver.resolve_one(Dependency("cc")) is not None

    def test_all_missing_are_reported(self, bin_dir_with):
        resolver = DependencyResolver(search_path=bin_dir_with("go"))
        deps = [Dependency("go"), Dependency("nope-a"), Dependency("nope-b", "run")]
        with pytest.raises(DependencyError) as exc:
            resolver.resolve(deps)
        assert [d.name for d in exc.value.missing] == ["nope-a", "nope-b"]
        assert "nope-a (build)" in str(exc.value)
        assert "nope-b (run)" in str(exc.value)

    def test_search_dirs_keg_first(self, fake_keg, bin_dir_with, tmp_path: Path):
        keg = fake_keg("dep")
        resolver = DependencyResolver(search_path=bin_dir_with("go", "git"))
        resolved = resolver.resolve([Dependency("go"), Dependency("git"), Dependency("dep")])
        assert resolver.search_dirs(resolved) == [str(keg / "bin"), str(tmp_path / "fakebin")]
