from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Optional

from utils.runner import run_cmd

logger = logging.getLogger(__name__)


class RootFileAccessor:
    """Read and write files that may only be reachable with root rights.

    With ``use_root`` the work is delegated to ``su -c cat``; otherwise plain
    file I/O is used (desktop hosts, tests). Failures are logged, never raised:
    ``read`` returns ``""`` and ``write`` returns ``False``.
    """

    def __init__(self, use_root: bool = True, su_binary: str = "su", timeout: Optional[float] = 30.0):
        self.use_root = use_root
        self.su_binary = su_binary
        self.timeout = timeout

    def read(self, path: str) -> str:
        if not self.use_root:
            try:
                return Path(path).read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.error("Exception reading file %s: %s", path, e)
                return ""
        res = run_cmd(
            [self.su_binary, "-c", f"cat {shlex.quote(path)}"], timeout=self.timeout, log_output=False
        )
        if res["stderr"]:
            logger.error("Error reading file %s: %s", path, res["stderr"].strip())
        return res["stdout"]

    def write(self, path: str, content: str) -> bool:
        if not self.use_root:
            try:
                Path(path).write_text(content, encoding="utf-8")
                return True
            except OSError as e:
                logger.error("Exception writing file %s: %s", path, e)
                return False
        res = run_cmd(
            [self.su_binary, "-c", f"cat > {shlex.quote(path)}"],
            stdin_text=content,
            timeout=self.timeout,
            log_output=False,
        )
        if res["rc"] != 0 or res["stderr"]:
            logger.error("Error writing file %s: %s", path, res["stderr"].strip())
            return False
        return True
