"""
Tests for CLI commands and exit codes.
"""

import json
from pathlib import Path

from rformula.cli import EXIT_CONFIG, EXIT_FAILED, EXIT_OK, main, make_parser


class TestParser:
    def test_install_options(self):
        args = make_parser().parse_args(["install", "tool", "--overwrite", "--build-timeout", "5"])
        assert args.cmd == "install"
        assert args.overwrite
        assert args.build_timeout == 5.0
        assert args.keep_build is None

    def test_no_command(self, capsys):
        assert main([]) == EXIT_CONFIG


class TestInstallCommand:
    """Tests for `rformula install`."""

    def test_install_by_name(self, config_file: Path, write_recipe, prefix_dir: Path, capsys):
        write_recipe()
        code = main(["--config", str(config_file), "install", "tool"])
        out = capsys.readouterr().out
        assert code == EXIT_OK
        assert "installed" in out
        assert (prefix_dir / "Cellar" / "tool" / "1.0.0").is_dir()

    def test_prefix_override(self, config_file: Path, write_recipe, tmp_path: Path):
        write_recipe()
        other = tmp_path / "elsewhere"
        assert main(["--config", str(config_file), "install", "tool", "--prefix", str(other)]) == EXIT_OK
        assert (other / "Cellar" / "tool" / "1.0.0" / "INSTALL_RECEIPT.json").is_file()

    def test_failure_reports_stage_and_output(self, config_file: Path, write_recipe, capsys):
        write_recipe(install=["sh -c 'echo compiler exploded; exit 1'"])
        code = main(["--config", str(config_file), "install", "tool"])
        out = capsys.readouterr().out
        assert code == EXIT_FAILED
        assert "failed during Building" in out
        assert "compiler exploded" in out

    def test_integrity_failure(self, config_file: Path, write_recipe, capsys):
        write_recipe(sha256="1" * 64)
        assert main(["--config", str(config_file), "install", "tool"]) == EXIT_FAILED
        assert "IntegrityError" in capsys.readouterr().out

    def test_unknown_recipe(self, config_file: Path):
        assert main(["--config", str(config_file), "install", "nothing-here"]) == EXIT_CONFIG

    def test_missing_config(self, tmp_path: Path):
        assert main(["--config", str(tmp_path / "nope.yaml"), "list"]) == EXIT_CONFIG

    def test_invalid_recipe(self, config_file: Path, recipes_dir: Path):
        (recipes_dir / "broken.yaml").write_text("name: broken\nurl: x\nsha256: short\ninstall: [true]\ntest: [true]\n")
        assert main(["--config", str(config_file), "install", "broken"]) == EXIT_CONFIG


class TestOtherCommands:
    def test_fetch(self, config_file: Path, write_recipe, tmp_path: Path, capsys):
        write_recipe()
        dest = tmp_path / "fetched"
        assert main(["--config", str(config_file), "fetch", "tool", "--dest", str(dest)]) == EXIT_OK
        assert (dest / "src" / "tool-1.0.0" / "tool.sh").is_file()
        assert "sha256" in capsys.readouterr().out

    def test_fetch_mismatch(self, config_file: Path, write_recipe, tmp_path: Path):
        write_recipe(sha256="2" * 64)
        assert main(["--config", str(config_file), "fetch", "tool", "--dest", str(tmp_path / "f")]) == EXIT_FAILED

    def test_info(self, config_file: Path, write_recipe, capsys):
        write_recipe()
        assert main(["--config", str(config_file), "info", "tool"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "tool 1.0.0" in out
        assert "MIT" in out

    def test_info_json(self, config_file: Path, write_recipe, capsys):
        write_recipe()
        assert main(["--config", str(config_file), "info", "tool", "--json"]) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["name"] == "tool"
        assert data["version"] == "1.0.0"
        assert data["test"][0][-1] == "--version"

    def test_list(self, config_file: Path, write_recipe, recipes_dir: Path, capsys):
        write_recipe()
        (recipes_dir / "broken.yaml").write_text("name: broken\n")
        assert main(["--config", str(config_file), "list"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "tool" in out
        assert "broken" in out

    def test_list_empty(self, config_file: Path, capsys):
        assert main(["--config", str(config_file), "list"]) == EXIT_OK
        assert "no recipes" in capsys.readouterr().out


def test_info_on_shipped_recipe(config_file: Path, project_root: Path, capsys):
    recipe = str(project_root / "recipes" / "deletor.yaml")
    assert main(["--config", str(config_file), "info", recipe]) == EXIT_OK
    out = capsys.readouterr().out
    assert "deletor 1.0.0" in out
    assert "unverified" in out
