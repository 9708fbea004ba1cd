"""Tests for the injection payload (tar archive) builder."""

from __future__ import annotations

import io
import tarfile

from polyexec import constants
from polyexec.archive import build_payload, normalize_stdin, prepare_source
from polyexec.registry import LanguageRegistry

# ============================================================================
# Helpers
# ============================================================================


def _members(payload: bytes) -> dict[str, tuple[tarfile.TarInfo, bytes]]:
    result: dict[str, tuple[tarfile.TarInfo, bytes]] = {}
    with tarfile.open(fileobj=io.BytesIO(payload)) as tar:
        for member in tar.getmembers():
            data = b""
            if member.isfile():
                extracted = tar.extractfile(member)
                assert extracted is not None
                data = extracted.read()
            result[member.name] = (member, data)
    return result


# ============================================================================
# Payload layout
# ============================================================================


class TestBuildPayload:
    def test_layout(self, registry: LanguageRegistry) -> None:
        members = _members(build_payload(registry.resolve("python"), "print(1)", "5"))
        assert set(members) == {"sandbox", "sandbox/main.py", "sandbox/.stdin"}
        assert members["sandbox"][0].isdir()
        assert members["sandbox/main.py"][1] == b"print(1)"
        assert members["sandbox/.stdin"][1] == b"5\n"

    def test_permissions(self, registry: LanguageRegistry) -> None:
        members = _members(build_payload(registry.resolve("python"), "print(1)"))
        assert members["sandbox"][0].mode == 0o755
        assert members["sandbox/main.py"][0].mode == 0o644
        assert members["sandbox/.stdin"][0].mode == 0o644

    def test_owned_by_sandbox_user(self, registry: LanguageRegistry) -> None:
        members = _members(build_payload(registry.resolve("python"), "print(1)", "x"))
        for member, _ in members.values():
            assert (member.uid, member.gid) == (constants.SANDBOX_UID, constants.SANDBOX_UID)
        assert constants.SANDBOX_USER == f"{constants.SANDBOX_UID}:{constants.SANDBOX_UID}"

    def test_empty_stdin_still_written(self, registry: LanguageRegistry) -> None:
        members = _members(build_payload(registry.resolve("ruby"), "puts 1", None))
        assert members["sandbox/.stdin"][1] == b""

    def test_source_bytes_exact(self, registry: LanguageRegistry) -> None:
        """Shell metacharacters, quotes and unicode survive untouched."""
        source = "echo \"$(id)\" '`whoami`'; printf '%s\\n' \"héllo 🌍\" \\\n"
        members = _members(build_payload(registry.resolve("shell"), source))
        assert members["sandbox/main.sh"][1] == source.encode("utf-8")

    def test_java_public_class_renamed(self, registry: LanguageRegistry) -> None:
        source = "public class Solution { public static void main(String[] a) {} }"
        members = _members(build_payload(registry.resolve("java"), source))
        assert members["sandbox/Main.java"][1].startswith(b"public class Main {")


# ============================================================================
# Helpers under test
# ============================================================================


class TestPrepareSource:
    def test_non_jvm_untouched(self, registry: LanguageRegistry) -> None:
        source = "public class Foo"
        assert prepare_source(registry.resolve("python"), source) == source

    def test_whitespace_between_keywords(self, registry: LanguageRegistry) -> None:
        out = prepare_source(registry.resolve("java"), "public   class\tApp {}")
        assert out == "public class Main {}"


class TestNormalizeStdin:
    def test_none_and_empty(self) -> None:
        assert normalize_stdin(None) == ""
        assert normalize_stdin("") == ""

    def test_trailing_newline_added(self) -> None:
        assert normalize_stdin("21") == "21\n"

    def test_existing_newline_kept(self) -> None:
        assert normalize_stdin("a\nb\n") == "a\nb\n"

    def test_crlf_converted(self) -> None:
        assert normalize_stdin("1\r\n2\r\n") == "1\n2\n"
