"""
Tests for the Verifier.
"""

from pathlib import Path

import pytest

from rformula.errors import VerificationError
from rformula.installer import InstallResult
from rformula.verifier import Verifier


@pytest.fixture
def keg(prefix_dir: Path) -> InstallResult:
    """An installed keg whose bin/tool prints its version."""
    keg = prefix_dir / "Cellar" / "tool" / "1.0.0"
    (keg / "bin").mkdir(parents=True)
    exe = keg / "bin" / "tool"
    exe.write_text('#!/bin/sh\n[ "$1" = "--version" ] && echo "tool 1.0.0" && exit 0\necho "bad flag" >&2\nexit 1\n')
    exe.chmod(0o755)
    return InstallResult(keg=keg, receipt={})


class TestVerifier:
    def test_pass(self, make_recipe, keg):
        result = Verifier().verify(make_recipe(), keg)
        assert result.passed
        assert result.exit_status == 0
        assert result.captured_output == b"tool 1.0.0\n"
        assert result.command == f"{keg.keg}/bin/tool --version"

    def test_keg_bin_first_on_path(self, make_recipe, keg):
        r = make_recipe(test=["tool --version"])
        assert Verifier().verify(r, keg).passed

    def test_output_of_every_command_is_captured(self, make_recipe, keg):
        r = make_recipe(test=["echo first", "${BIN}/tool --version"])
        assert Verifier().verify(r, keg).captured_output == b"first\ntool 1.0.0\n"

    def test_non_zero_exit(self, make_recipe, keg):
        r = make_recipe(test=["${BIN}/tool --bogus"])
        with pytest.raises(VerificationError) as exc:
            Verifier().verify(r, keg)
        result = exc.value.result
        assert not result.passed
        assert result.exit_status == 1
        assert b"bad flag" in result.captured_output
        assert exc.value.exit_status == 1
        assert exc.value.command == result.command
        # the keg is left alone
        assert (keg.keg / "bin" / "tool").is_file()

    def test_stops_at_first_failure(self, make_recipe, keg, tmp_path: Path):
        marker = tmp_path / "marker"
        r = make_recipe(test=["false", ["touch", str(marker)]])
        with pytest.raises(VerificationError):
            Verifier().verify(r, keg)
        assert not marker.exists()

    def test_missing_executable(self, make_recipe, keg):
        r = make_recipe(test=["${BIN}/missing"])
        with pytest.raises(VerificationError) as exc:
            Verifier().verify(r, keg)
        assert exc.value.result.exit_status == 127

    def test_timeout(self, make_recipe, keg):
        r = make_recipe(test=["sleep 10"])
        with pytest.raises(VerificationError, match="timed out"):
            Verifier(timeout=0.5).verify(r, keg)

    def test_runs_in_scratch_directory(self, make_recipe, keg):
        r = make_recipe(test=["sh -c 'test \"$(pwd)\" = \"$0\"' ${TESTPATH}"])
        assert Verifier().verify(r, keg).passed
