"""
Session executor: runs shell commands either directly on the host or inside the
isolated (chroot) environment, and records everything in the HistoryLog.

Each chroot invocation is a fresh shell, so the working directory inside the
isolated environment is emulated: every command is prefixed with a ``cd`` into
the tracked directory, and ``cd`` commands report the new directory via ``pwd``.
"""
from __future__ import annotations

import contextlib
import logging
import re
import shlex
import subprocess
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import IO, List, Optional

import psutil

from local_agent.context_log import (
    ERROR_PREFIX,
    NO_OUTPUT,
    OUTPUT_PREFIX,
    SEPARATOR,
    HistoryLog,
)
from utils import runner

logger = logging.getLogger(__name__)

DEFAULT_CHROOT_DIR = "/data/local/debian"
DEFAULT_BOOT_SCRIPT = "./boot-debian.sh"
KILL_GRACE_SECONDS = 5.0

_CD_RE = re.compile(r"^cd(\s|$)")


class ExecutionEnvironment(Enum):
    DIRECT = "direct"
    ISOLATED = "isolated"


@dataclass
class SessionState:
    environment: ExecutionEnvironment = ExecutionEnvironment.ISOLATED
    isolated_working_directory: str = "/"
    isolated_boot_initiated: bool = False


@dataclass(frozen=True)
class CommandResult:
    command: str
    environment: ExecutionEnvironment
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    working_directory: Optional[str] = None
    timed_out: bool = False


def is_directory_change(command: str) -> bool:
    return bool(_CD_RE.match(command.strip()))


# ---------- strategies ----------
class ExecutionStrategy:
    environment: ExecutionEnvironment

    def wrap(self, command: str, state: SessionState) -> List[str]:
        raise NotImplementedError


class DirectStrategy(ExecutionStrategy):
    environment = ExecutionEnvironment.DIRECT

    def __init__(self, privileged: bool = False, su_binary: str = "su", shell: str = "sh"):
        self.privileged = privileged
        self.su_binary = su_binary
        self.shell = shell

    def wrap(self, command: str, state: SessionState) -> List[str]:
        if self.privileged:
            return [self.su_binary, "-c", command]
        return [self.shell, "-c", command]


class IsolatedStrategy(ExecutionStrategy):
    environment = ExecutionEnvironment.ISOLATED

    def __init__(self, root: str = DEFAULT_CHROOT_DIR, su_binary: str = "su", shell: str = "/bin/bash"):
        self.root = root
        self.su_binary = su_binary
        self.shell = shell

    def inner_command(self, command: str, working_directory: str) -> str:
        inner = f"cd {shlex.quote(working_directory)} && {command}"
        if is_directory_change(command):
            inner += " && pwd"
        return inner

    def wrap(self, command: str, state: SessionState) -> List[str]:
        inner = self.inner_command(command, state.isolated_working_directory)
        # chroot itself needs root, so this always goes through su
        chroot = f"chroot {shlex.quote(self.root)} {self.shell} --login -c {shlex.quote(inner)}"
        return [self.su_binary, "-c", chroot]


# ---------- I/O helpers ----------
def _pump(stream: IO[str], sink: List[str], errors: Optional[List[str]], label: str) -> None:
    try:
        for line in stream:
            sink.append(line.rstrip("\n"))
    except (OSError, ValueError) as e:
        logger.error("Error reading %s: %s", label, e)
        if errors is not None:
            errors.append(f"Error reading {label}: {e}")
    finally:
        with contextlib.suppress(OSError):
            stream.close()


def _kill_tree(pid: int) -> None:
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    procs = parent.children(recursive=True) + [parent]
    for p in procs:
        try:
            p.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.warning("Not allowed to kill pid %s", p.pid)


def _completed(result=None) -> Future:
    fut: Future = Future()
    fut.set_result(result)
    return fut


class SessionExecutor:
    def __init__(
        self,
        history: Optional[HistoryLog] = None,
        *,
        environment: ExecutionEnvironment = ExecutionEnvironment.ISOLATED,
        chroot_dir: str = DEFAULT_CHROOT_DIR,
        boot_script: str = DEFAULT_BOOT_SCRIPT,
        su_binary: str = "su",
        command_timeout: Optional[float] = None,
        max_workers: int = 8,
        isolated_strategy: Optional[IsolatedStrategy] = None,
    ):
        self.history = history if history is not None else HistoryLog()
        self.chroot_dir = chroot_dir
        self.boot_script = boot_script
        self.su_binary = su_binary
        self.command_timeout = command_timeout or None
        self.isolated_strategy = isolated_strategy or IsolatedStrategy(chroot_dir, su_binary=su_binary)
        self._state = SessionState(environment=environment)
        self._state_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="exec")
        # ISOLATED commands run one at a time, in submit order, so cd chains stay ordered
        self._isolated_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="exec-isolated")

    # ---------- session state ----------
    @property
    def environment(self) -> ExecutionEnvironment:
        with self._state_lock:
            return self._state.environment

    @property
    def working_directory(self) -> str:
        with self._state_lock:
            return self._state.isolated_working_directory

    @property
    def boot_initiated(self) -> bool:
        with self._state_lock:
            return self._state.isolated_boot_initiated

    def state(self) -> SessionState:
        with self._state_lock:
            return replace(self._state)

    def set_environment(self, environment: ExecutionEnvironment) -> bool:
        """Switch the target for later commands. Returns False if nothing changed."""
        with self._state_lock:
            if self._state.environment == environment:
                return False
            self._state.environment = environment
        logger.info("Switching environment to %s", environment.name)
        self.history.append(f"--- Switched to {environment.name} environment ---")
        return True

    def strategy_for(self, privileged: bool = False) -> ExecutionStrategy:
        if self.environment is ExecutionEnvironment.ISOLATED:
            return self.isolated_strategy
        return DirectStrategy(privileged=privileged, su_binary=self.su_binary)

    # ---------- execution ----------
    def execute(self, command: str, privileged: bool = False) -> "Future[Optional[CommandResult]]":
        """Queue *command* and return at once; the future resolves to a CommandResult."""
        if command.strip() == "clear":
            self.history.clear()
            return _completed(None)
        strategy = self.strategy_for(privileged)
        if strategy.environment is ExecutionEnvironment.ISOLATED:
            return self._isolated_pool.submit(self._run, command, strategy)
        return self._pool.submit(self._run, command, strategy)

    def boot_isolated_environment(self) -> "Optional[Future[Optional[CommandResult]]]":
        """Launch the chroot boot script once. Completion is not awaited."""
        with self._state_lock:
            if self._state.isolated_boot_initiated:
                logger.warning("Isolated boot already initiated.")
                return None
            self._state.isolated_boot_initiated = True
        logger.info("Initiating isolated boot sequence...")
        previous = self.environment
        self.set_environment(ExecutionEnvironment.DIRECT)
        future = self.execute(f"cd {shlex.quote(self.chroot_dir)} && {self.boot_script}", privileged=True)
        self.set_environment(previous)
        self.history.append("--- Isolated boot initiated ---")
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._isolated_pool.shutdown(wait=wait)
        self._pool.shutdown(wait=wait)

    def _run(self, command: str, strategy: ExecutionStrategy) -> CommandResult:
        entry = f"> {command}"
        env = strategy.environment
        self.history.append(entry)
        logger.debug("Executing in %s: %s", env.name, command)

        isolated = env is ExecutionEnvironment.ISOLATED
        if isolated and not self.boot_initiated:
            msg = "Isolated environment not booted. Cannot run command."
            logger.error(msg)
            self.history.append(entry, msg, True)
            self.history.append(SEPARATOR)
            return CommandResult(command, env, None, stderr=msg)

        state = self.state()
        argv = strategy.wrap(command, state)
        logger.debug("Effective %s command: %s", env.name, " ".join(argv))
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            logger.error("Exception running command '%s': %s", command, e)
            self.history.append(entry, f"Exception: {e}", True)
            self.history.append(SEPARATOR)
            runner.write_log({"cmd": argv, "env": env.value, "rc": None, "stderr": str(e)})
            return CommandResult(command, env, None, stderr=str(e))

        stdout, stderr, exit_code, timed_out = self._drain(proc)
        logger.debug("Command finished with exit code: %s", exit_code)

        cwd = state.isolated_working_directory if isolated else None
        if isolated and is_directory_change(command):
            lines = [ln.strip() for ln in stdout.splitlines() if ln.strip()]
            if exit_code == 0 and lines:
                cwd = lines[-1]
                with self._state_lock:
                    self._state.isolated_working_directory = cwd
            else:
                note = f"cd failed; staying in {cwd}"
                stderr = f"{stderr}\n{note}".strip()

        if stdout:
            self.history.append(OUTPUT_PREFIX, stdout)
        if stderr:
            self.history.append(ERROR_PREFIX, stderr, True)
        if not stdout and not stderr:
            self.history.append(NO_OUTPUT)
        self.history.append(SEPARATOR)

        runner.write_log({
            "cmd": argv,
            "env": env.value,
            "rc": exit_code,
            "cwd": cwd,
            "stdout": stdout,
            "stderr": stderr,
        })
        return CommandResult(command, env, exit_code, stdout, stderr, cwd, timed_out)

    def _drain(self, proc: subprocess.Popen):
        """Read both pipes on their own threads, then reap. Returns (out, err, rc, timed_out)."""
        out: List[str] = []
        err: List[str] = []
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, out, err, "stdout"), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, err, None, "stderr"), daemon=True),
        ]
        for t in readers:
            t.start()

        deadline = None if self.command_timeout is None else time.monotonic() + self.command_timeout

        def remaining() -> Optional[float]:
            return None if deadline is None else max(0.0, deadline - time.monotonic())

        timed_out = False
        exit_code: Optional[int] = None
        for t in readers:
            t.join(remaining())
            if t.is_alive():
                timed_out = True
                break
        if not timed_out:
            # pipes can close while the process keeps running
            try:
                exit_code = proc.wait(remaining())
            except subprocess.TimeoutExpired:
                timed_out = True

        if timed_out:
            logger.warning("Command timed out after %ss; killing pid %s", self.command_timeout, proc.pid)
            _kill_tree(proc.pid)
            for t in readers:
                t.join(KILL_GRACE_SECONDS)
            try:
                exit_code = proc.wait(KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                exit_code = None
            err.append(f"Command timed out after {self.command_timeout}s")

        return "\n".join(out).strip(), "\n".join(err).strip(), exit_code, timed_out
