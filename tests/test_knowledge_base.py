import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from local_agent.knowledge_base import DocumentationResolver
from utils.root_files import RootFileAccessor


@pytest.fixture
def kb(tmp_path):
    root = tmp_path / "kb"
    root.mkdir()
    (root / "ls.md").write_text("ls lists directory contents", encoding="utf-8")
    (root / "Find.md").write_text("find searches", encoding="utf-8")
    (root / "empty.md").write_text("", encoding="utf-8")
    return root


def resolver(root):
    return DocumentationResolver(str(root), RootFileAccessor(use_root=False))


class TestDocumentationResolver:
    def test_resolves_exact_name(self, kb):
        assert resolver(kb).resolve("ls") == "ls lists directory contents"

    def test_tag_is_lower_cased(self, kb):
        assert resolver(kb).resolve("  LS ") == "ls lists directory contents"

    def test_missing_file(self, kb):
        assert resolver(kb).resolve("grep") is None

    def test_case_mismatch_is_rejected(self, kb, caplog):
        assert resolver(kb).resolve("find") is None
        assert "mismatch" in caplog.text

    def test_empty_file_counts_as_absent(self, kb):
        assert resolver(kb).resolve("empty") is None

    @pytest.mark.parametrize("tag", ["", "   ", "..", ".", "../secret", "a/b"])
    def test_unusable_tags(self, kb, tag):
        (kb.parent / "secret.md").write_text("nope", encoding="utf-8")
        assert resolver(kb).resolve(tag) is None

    def test_missing_root(self, tmp_path):
        assert resolver(tmp_path / "nowhere").resolve("ls") is None


class TestRootFileAccessor:
    def test_plain_read_write(self, tmp_path):
        files = RootFileAccessor(use_root=False)
        path = str(tmp_path / "a.txt")
        assert files.write(path, "hello\n")
        assert files.read(path) == "hello\n"

    def test_plain_read_missing_returns_empty(self, tmp_path):
        assert RootFileAccessor(use_root=False).read(str(tmp_path / "none")) == ""

    def test_plain_write_failure(self, tmp_path):
        assert RootFileAccessor(use_root=False).write(str(tmp_path / "no" / "dir" / "f"), "x") is False

    def test_privileged_round_trip_through_shell(self, tmp_path):
        # sh stands in for su: both take "-c CMD"
        files = RootFileAccessor(use_root=True, su_binary="sh")
        path = str(tmp_path / "it's here.txt")
        assert files.write(path, "line one\nline two\n")
        assert files.read(path) == "line one\nline two\n"

    def test_privileged_read_missing_returns_empty(self, tmp_path, command_log):
        files = RootFileAccessor(use_root=True, su_binary="sh")
        assert files.read(str(tmp_path / "none")) == ""
        assert command_log.exists()

    def test_file_contents_stay_out_of_audit_log(self, tmp_path, command_log):
        files = RootFileAccessor(use_root=True, su_binary="sh")
        path = tmp_path / "models.md"
        path.write_text("## QueryStepper\nAPIKey: sk-SECRET123\n", encoding="utf-8")
        assert "sk-SECRET123" in files.read(str(path))
        assert files.write(str(tmp_path / "copy.md"), "APIKey: sk-SECRET456\n")
        log = command_log.read_text(encoding="utf-8")
        assert "sk-SECRET" not in log
        assert '"stdout_chars"' in log

    def test_missing_su_binary(self, tmp_path):
        files = RootFileAccessor(use_root=True, su_binary="/nonexistent/su")
        assert files.read(str(tmp_path / "x")) == ""
        assert files.write(str(tmp_path / "x"), "data") is False
