"""
Tests for the command runner.
"""

import threading
import time

import pytest

from rformula.errors import PipelineCancelled
from rformula.sandbox import deadline_for, remaining, run_command


class TestRunCommand:
    def test_combined_output(self, tmp_path):
        res = run_command(["sh", "-c", "echo out; echo err >&2"], cwd=str(tmp_path))
        assert res.ok
        assert res.output == b"out\nerr\n"
        assert res.command == "sh -c 'echo out; echo err >&2'"

    def test_no_shell_interpretation(self, tmp_path):
        res = run_command(["echo", "$HOME", "a;b"], cwd=str(tmp_path))
        assert res.output == b"$HOME a;b\n"

    def test_exit_status(self):
        assert run_command(["sh", "-c", "exit 4"]).exit_status == 4

    def test_command_not_found(self):
        res = run_command(["definitely-not-a-command-xyz"])
        assert res.exit_status == 127
        assert b"command not found" in res.output

    def test_unstartable_argv(self):
        res = run_command(["sh", "-c", "a\x00b"])
        assert res.exit_status == 127
        assert not res.ok
        assert b"cannot execute" in res.output

    def test_timeout_kills_process_group(self):
        start = time.monotonic()
        res = run_command(["sh", "-c", "sleep 10 & sleep 10"], timeout=0.3)
        assert res.timed_out
        assert not res.ok
        assert time.monotonic() - start < 5

    def test_cancel(self):
        cancel = threading.Event()
        threading.Timer(0.2, cancel.set).start()
        with pytest.raises(PipelineCancelled):
            run_command(["sleep", "10"], cancel=cancel)

    def test_deadlines(self):
        assert deadline_for(None) is None
        assert remaining(None) is None
        assert 0 < remaining(deadline_for(10)) <= 10
