import json
import sys
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from local_agent.context_log import HistoryLog
from local_agent.executor import (
    DirectStrategy,
    ExecutionEnvironment,
    IsolatedStrategy,
    SessionExecutor,
    SessionState,
    is_directory_change,
)

WAIT = 10
DIRECT = ExecutionEnvironment.DIRECT
ISOLATED = ExecutionEnvironment.ISOLATED


class LocalIsolated(IsolatedStrategy):
    """Same cd/pwd emulation as the chroot strategy, but on the host shell."""

    def wrap(self, command, state):
        return ["sh", "-c", self.inner_command(command, state.isolated_working_directory)]


def commands(log):
    return [e.command for e in log.snapshot()]


def booted_executor(tmp_path, **kwargs):
    """ISOLATED executor whose boot runs `true` via sh instead of su."""
    ex = SessionExecutor(
        HistoryLog(),
        environment=ISOLATED,
        chroot_dir=str(tmp_path),
        boot_script="true",
        su_binary="sh",
        isolated_strategy=LocalIsolated(),
        **kwargs,
    )
    ex.boot_isolated_environment().result(WAIT)
    ex.history.clear()
    return ex


class TestDirect:
    def test_output_entry_sequence(self):
        ex = SessionExecutor(environment=DIRECT)
        res = ex.execute("echo hello").result(WAIT)
        assert res.exit_code == 0
        assert res.stdout == "hello"
        assert commands(ex.history) == ["> echo hello", "Output:", "___"]
        assert ex.history.snapshot()[1].output == "hello"

    def test_error_entry_is_flagged(self):
        ex = SessionExecutor(environment=DIRECT)
        ex.execute("echo oops 1>&2").result(WAIT)
        snap = ex.history.snapshot()
        assert commands(ex.history) == ["> echo oops 1>&2", "Error:", "___"]
        assert snap[1].is_error and snap[1].output == "oops"

    def test_output_before_error(self):
        ex = SessionExecutor(environment=DIRECT)
        res = ex.execute("echo err 1>&2; echo out; exit 3").result(WAIT)
        assert res.exit_code == 3
        assert commands(ex.history) == ["> echo err 1>&2; echo out; exit 3", "Output:", "Error:", "___"]

    def test_no_output_marker(self):
        ex = SessionExecutor(environment=DIRECT)
        ex.execute("true").result(WAIT)
        assert commands(ex.history) == ["> true", "(No output)", "___"]

    def test_large_output_on_both_pipes(self):
        ex = SessionExecutor(environment=DIRECT)
        res = ex.execute("i=0; while [ $i -lt 20000 ]; do echo out$i; echo err$i 1>&2; i=$((i+1)); done").result(WAIT * 3)
        assert res.exit_code == 0
        assert len(res.stdout.splitlines()) == 20000
        assert len(res.stderr.splitlines()) == 20000

    def test_privileged_direct_uses_su_binary(self):
        strategy = DirectStrategy(privileged=True, su_binary="su")
        assert strategy.wrap("id", SessionState()) == ["su", "-c", "id"]
        assert DirectStrategy().wrap("id", SessionState()) == ["sh", "-c", "id"]

    def test_spawn_failure_becomes_history_entry(self):
        ex = SessionExecutor(environment=DIRECT, su_binary="/nonexistent/su")
        res = ex.execute("id", privileged=True).result(WAIT)
        snap = ex.history.snapshot()
        assert res.exit_code is None
        assert [e.command for e in snap] == ["> id", "> id", "___"]
        assert snap[1].is_error and snap[1].output.startswith("Exception:")

    def test_timeout_kills_command(self):
        ex = SessionExecutor(environment=DIRECT, command_timeout=0.5)
        t0 = time.monotonic()
        res = ex.execute("sleep 30").result(WAIT)
        assert time.monotonic() - t0 < WAIT
        assert res.timed_out
        assert "timed out" in ex.history.snapshot()[1].output

    def test_timeout_applies_after_pipes_close(self):
        ex = SessionExecutor(environment=DIRECT, command_timeout=0.5)
        t0 = time.monotonic()
        res = ex.execute("exec >/dev/null 2>&1; sleep 6").result(WAIT)
        assert time.monotonic() - t0 < 4
        assert res.timed_out
        assert "timed out" in res.stderr

    def test_audit_log_written(self, command_log):
        ex = SessionExecutor(environment=DIRECT)
        ex.execute("echo logged").result(WAIT)
        record = json.loads(command_log.read_text(encoding="utf-8").splitlines()[-1])
        assert record["rc"] == 0
        assert record["env"] == "direct"
        assert record["stdout"] == "logged"


class TestClearAndEnvironment:
    def test_clear_is_intercepted(self):
        ex = SessionExecutor(environment=DIRECT)
        ex.execute("echo hi").result(WAIT)
        assert ex.execute("  clear ").result(WAIT) is None
        assert len(ex.history) == 0

    def test_set_environment_twice_adds_one_marker(self):
        ex = SessionExecutor(environment=ISOLATED)
        assert ex.set_environment(DIRECT) is True
        assert ex.set_environment(DIRECT) is False
        assert commands(ex.history) == ["--- Switched to DIRECT environment ---"]
        assert ex.environment is DIRECT

    def test_strategy_is_fixed_at_submit_time(self):
        ex = SessionExecutor(environment=DIRECT)
        fut = ex.execute("sleep 0.2; echo done")
        ex.set_environment(ISOLATED)
        res = fut.result(WAIT)
        assert res.environment is DIRECT
        assert res.stdout == "done"


class TestIsolated:
    def test_refuses_before_boot(self):
        ex = SessionExecutor(environment=ISOLATED, isolated_strategy=LocalIsolated())
        res = ex.execute("ls").result(WAIT)
        snap = ex.history.snapshot()
        assert res.exit_code is None
        assert [e.command for e in snap] == ["> ls", "> ls", "___"]
        assert snap[1].is_error and "not booted" in snap[1].output

    def test_boot_is_idempotent(self, tmp_path):
        ex = SessionExecutor(
            environment=ISOLATED, chroot_dir=str(tmp_path), boot_script="true", su_binary="sh"
        )
        fut = ex.boot_isolated_environment()
        assert fut is not None
        fut.result(WAIT)
        assert ex.boot_isolated_environment() is None
        assert ex.boot_initiated
        assert ex.environment is ISOLATED
        assert commands(ex.history).count("--- Isolated boot initiated ---") == 1

    def test_cd_updates_tracked_directory(self, tmp_path):
        (tmp_path / "a" / "b").mkdir(parents=True)
        ex = booted_executor(tmp_path)
        assert ex.working_directory == "/"

        ex.execute(f"cd {tmp_path}").result(WAIT)
        assert ex.working_directory == str(tmp_path)
        res = ex.execute("cd a").result(WAIT)
        assert res.exit_code == 0
        assert ex.working_directory == str(tmp_path / "a")

        res = ex.execute("cd missing").result(WAIT)
        assert res.exit_code != 0
        assert ex.working_directory == str(tmp_path / "a")
        assert "staying in" in ex.history.snapshot()[-2].output

    def test_commands_run_in_tracked_directory(self, tmp_path):
        ex = booted_executor(tmp_path)
        ex.execute(f"cd {tmp_path}").result(WAIT)
        (tmp_path / "marker.txt").write_text("x")
        res = ex.execute("ls").result(WAIT)
        assert "marker.txt" in res.stdout
        assert res.working_directory == str(tmp_path)

    def test_overlapping_cd_chain_runs_in_submit_order(self, tmp_path):
        names = [f"d{i}" for i in range(12)]
        tmp_path.joinpath(*names).mkdir(parents=True)
        ex = booted_executor(tmp_path)
        futures = [ex.execute(f"cd {tmp_path}")] + [ex.execute(f"cd {n}") for n in names]
        results = [f.result(WAIT) for f in futures]
        assert all(r.exit_code == 0 for r in results)
        assert ex.working_directory == str(tmp_path.joinpath(*names))
        ran = [e.command for e in ex.history.snapshot() if e.command.startswith("> ")]
        assert ran == [f"> cd {tmp_path}"] + [f"> cd {n}" for n in names]

    def test_stuck_isolated_command_times_out(self, tmp_path):
        ex = booted_executor(tmp_path, command_timeout=0.5)
        stuck = ex.execute("exec >/dev/null 2>&1; sleep 6")
        after = ex.execute("echo next")
        assert stuck.result(WAIT).timed_out
        assert after.result(WAIT).stdout == "next"


class TestIsolatedWrapping:
    def test_chroot_command_line(self):
        strategy = IsolatedStrategy("/data/local/debian")
        argv = strategy.wrap("ls -la", SessionState(isolated_working_directory="/home"))
        assert argv[:2] == ["su", "-c"]
        assert argv[2].startswith("chroot /data/local/debian /bin/bash --login -c ")
        assert "cd /home && ls -la" in argv[2]
        assert "pwd" not in argv[2]

    def test_cd_appends_pwd(self):
        strategy = IsolatedStrategy()
        assert strategy.inner_command("cd /tmp", "/") == "cd / && cd /tmp && pwd"
        assert strategy.inner_command("ls", "/my dir") == "cd '/my dir' && ls"

    @pytest.mark.parametrize("cmd,expected", [
        ("cd", True),
        ("cd /var", True),
        ("  cd  logs", True),
        ("cdrom", False),
        ("echo cd", False),
    ])
    def test_is_directory_change(self, cmd, expected):
        assert is_directory_change(cmd) is expected
