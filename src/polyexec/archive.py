"""In-memory tar payloads for injecting untrusted source into a sandbox.

Source and stdin travel as tar member data through the daemon's archive
upload endpoint. Their bytes never appear in any command line.
"""

from __future__ import annotations

import io
import re
import tarfile
import time

from polyexec.constants import SANDBOX_UID, SANDBOX_WORKDIR, STDIN_FILENAME
from polyexec.models import LanguageConfig

_PUBLIC_CLASS_RE = re.compile(r"public\s+class\s+\w+")


def prepare_source(language: LanguageConfig, source_code: str) -> str:
    """Rewrite source where the toolchain dictates file/class naming.

    JVM languages need the public class to match the file name, so every
    ``public class X`` becomes ``public class <main_class>``.
    """
    if language.main_class:
        return _PUBLIC_CLASS_RE.sub(f"public class {language.main_class}", source_code)
    return source_code


def normalize_stdin(stdin: str | None) -> str:
    """Convert CRLF to LF and terminate non-empty input with a newline."""
    if not stdin:
        return ""
    text = stdin.replace("\r\n", "\n")
    return text if text.endswith("\n") else text + "\n"


def _member(name: str, mode: int, mtime: float) -> tarfile.TarInfo:
    # Extracted as-is by the daemon, so the sandbox user owns its workdir
    info = tarfile.TarInfo(name=name)
    info.mode = mode
    info.mtime = int(mtime)
    info.uid = info.gid = SANDBOX_UID
    return info


def _add_file(tar: tarfile.TarFile, name: str, data: bytes, mtime: float) -> None:
    info = _member(name, 0o644, mtime)
    info.size = len(data)
    tar.addfile(info, io.BytesIO(data))


def build_payload(language: LanguageConfig, source_code: str, stdin: str | None = None) -> bytes:
    """Build the tar archive extracted at ``/`` inside the sandbox.

    Layout:
        sandbox/                 (0755, owned by the sandbox user)
        sandbox/<source_filename> (0644)
        sandbox/.stdin           (0644, possibly empty)
    """
    workdir = SANDBOX_WORKDIR.strip("/")
    now = time.time()
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        dir_info = _member(workdir, 0o755, now)
        dir_info.type = tarfile.DIRTYPE
        tar.addfile(dir_info)

        source = prepare_source(language, source_code).encode("utf-8")
        _add_file(tar, f"{workdir}/{language.source_filename}", source, now)
        _add_file(tar, f"{workdir}/{STDIN_FILENAME}", normalize_stdin(stdin).encode("utf-8"), now)
    return buffer.getvalue()
