import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from utils import runner


@pytest.fixture(autouse=True)
def command_log(tmp_path, monkeypatch):
    """Keep the JSONL audit log inside the test's tmp dir."""
    path = tmp_path / "command_log.jsonl"
    monkeypatch.setattr(runner, "LOG_FILE", path)
    return path
