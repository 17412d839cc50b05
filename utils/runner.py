#!/usr/bin/env python3
from __future__ import annotations

import json
import logging
import os
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

logger = logging.getLogger(__name__)

# Audit log for every command the session runs; overridden from config.paths.command_log
LOG_FILE = Path(os.path.expanduser("~/.config/termpilot/command_log.jsonl"))

MAX_CAPTURE = 8192  # chars per stream to keep in log


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _ensure_list(cmd: Sequence[str] | str) -> list[str]:
    if isinstance(cmd, str):
        return ["/bin/sh", "-c", cmd]
    return list(cmd)


def _truncate(s: str | bytes | None, limit: int = MAX_CAPTURE) -> str:
    if s is None:
        return ""
    if isinstance(s, bytes):
        s = s.decode("utf-8", errors="replace")
    s = str(s)
    if len(s) <= limit:
        return s
    return s[:limit] + f"\n… [truncated {len(s) - limit} chars]"


def set_log_file(path: str | Path) -> None:
    global LOG_FILE
    LOG_FILE = Path(os.path.expanduser(str(path)))


def write_log(entry: dict[str, Any]) -> None:
    """Append one JSON line to the audit log. Never raises."""
    record = {"ts": _now_iso(), **entry}
    for key in ("stdout", "stderr"):
        if key in record:
            record[key] = _truncate(record[key])
    try:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with LOG_FILE.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")
    except Exception as e:
        # Best-effort logging
        logger.debug("Could not write command log %s: %s", LOG_FILE, e)


def run_cmd(
    cmd: Sequence[str] | str,
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    stdin_text: str | None = None,
    timeout: float | None = None,
    log_output: bool = True,
) -> dict[str, Any]:
    """
    Execute a command to completion, capture stdout/stderr, log JSONL, and return:
    { 'rc': int, 'stdout': str, 'stderr': str, 'cmd': [...] }

    With log_output=False the audit record keeps only the size of stdout.
    """
    argv = _ensure_list(cmd)
    try:
        p = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd else None,
            env={**os.environ, **(env or {})},
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
        try:
            out, err = p.communicate(input=stdin_text, timeout=timeout)
        except subprocess.TimeoutExpired:
            p.kill()
            out, err = p.communicate()
            rc = 124
        else:
            rc = p.returncode
    except FileNotFoundError as e:
        out, err, rc = "", str(e), 127
    except Exception as e:
        out, err, rc = "", str(e), 1

    record: dict[str, Any] = {"cmd": argv, "env": "runner", "rc": rc, "stderr": err}
    if log_output:
        record["stdout"] = out
    else:
        record["stdout_chars"] = len(out or "")
    write_log(record)
    return {"rc": rc, "stdout": out or "", "stderr": err or "", "cmd": argv}
