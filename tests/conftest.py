import ast
import io
import json
import sys
import tarfile
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, Set

import pytest

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "upgrader").absolute()

_EXECUTED_LINES: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATE_LINES: Dict[Path, Set[int]] = {}
_PREVIOUS_TRACE = None
_PREVIOUS_THREAD_TRACE = None
_TRACE_ACTIVE = False


def _iter_python_files(directory: Path) -> Iterable[Path]:
    for path in directory.rglob("*.py"):
        if path.is_file():
            yield path.absolute()


def _candidate_lines_for(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()

    potential_lines: Set[int] = set()
    for node in ast.walk(tree):
        lineno = getattr(node, "lineno", None)
        end_lineno = getattr(node, "end_lineno", None)
        if lineno is None:
            continue
        if end_lineno is None:
            end_lineno = lineno
        potential_lines.update(range(lineno, end_lineno + 1))

    lines = set()
    source_lines = source.splitlines()
    for lineno in potential_lines:
        if lineno > len(source_lines):
            continue
        text = source_lines[lineno - 1].strip()
        if not text or text.startswith("#"):
            continue
        lines.add(lineno)
    return lines


for file_path in _iter_python_files(_PACKAGE_DIR):
    _CANDIDATE_LINES[file_path] = _candidate_lines_for(file_path)


def _trace(frame, event, arg):
    if event != "line":
        return _trace
    filename = Path(frame.f_code.co_filename)
    try:
        resolved = filename.absolute()
    except OSError:
        return _trace
    if resolved in _CANDIDATE_LINES:
        _EXECUTED_LINES[resolved].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE, _PREVIOUS_THREAD_TRACE, _TRACE_ACTIVE
    if _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = True
    _EXECUTED_LINES.clear()
    _PREVIOUS_TRACE = sys.gettrace()
    _PREVIOUS_THREAD_TRACE = threading.gettrace()
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    global _TRACE_ACTIVE
    if not _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = False

    if _PREVIOUS_TRACE is not None:
        sys.settrace(_PREVIOUS_TRACE)
    else:
        sys.settrace(None)

    threading.settrace(_PREVIOUS_THREAD_TRACE)

    _report_coverage(session)


def _report_coverage(session) -> None:
    if not _CANDIDATE_LINES:
        return

    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print

    rows = []
    total_statements = 0
    total_covered = 0

    for path in sorted(_CANDIDATE_LINES):
        candidates = _CANDIDATE_LINES[path]
        if not candidates:
            continue
        executed = _EXECUTED_LINES.get(path, set()) & candidates
        covered = len(executed)
        statements = len(candidates)
        missing = sorted(candidates - executed)
        coverage_pct = (covered / statements * 100.0) if statements else 100.0

        total_statements += statements
        total_covered += covered

        rows.append(
            (
                path.relative_to(_ROOT_DIR),
                statements,
                len(missing),
                coverage_pct,
                missing,
            )
        )

    if not rows:
        return

    write_line("")
    write_line("Coverage summary for 'upgrader':")
    header = f"{'Name':<60} {'Stmts':>6} {'Miss':>6} {'Cover':>7}"
    write_line(header)
    write_line("-" * len(header))

    for name, statements, missing_count, coverage_pct, missing in rows:
        write_line(
            f"{str(name):<60} {statements:>6} {missing_count:>6} {coverage_pct:>6.1f}%"
        )
        if missing_count:
            preview = ", ".join(map(str, missing[:10]))
            suffix = "..." if missing_count > 10 else ""
            write_line(f"    Missing: {preview}{suffix}")

    if total_statements:
        total_pct = total_covered / total_statements * 100.0
        write_line("-" * len(header))
        write_line(
            f"{'TOTAL':<60} {total_statements:>6} {total_statements - total_covered:>6} {total_pct:>6.1f}%"
        )


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    from upgrader import executil

    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None, raising=False)


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = 0o644
    tar.addfile(info, io.BytesIO(data))


class FakeVerifier:
    """Signature files list the keyring types that "signed" them, comma separated."""

    def __init__(self):
        self.calls = []

    def verify(self, keyring, path, signature, on_progress=None):
        ktype = Path(keyring).parent.name
        self.calls.append((ktype, str(path)))
        signers = Path(signature).read_text(encoding="utf-8").strip().split(",")
        return ktype in signers


@pytest.fixture
def fake_verifier():
    return FakeVerifier()


@pytest.fixture
def make_keyring(tmp_path):
    def _make(ktype, signed_by=(), expiry=None, name=None, descriptor=True, material=b"KEYDATA"):
        src = tmp_path / "keyrings-src"
        src.mkdir(exist_ok=True)
        archive = src / f"{name or ktype}.tar.xz"
        with tarfile.open(archive, "w:xz") as tar:
            if descriptor:
                desc = {"type": ktype}
                if expiry is not None:
                    desc["expiry"] = expiry
                _add_bytes(tar, "keyring.json", json.dumps(desc).encode("utf-8"))
            if material is not None:
                _add_bytes(tar, "keyring.gpg", material)
        sig = Path(str(archive) + ".asc")
        sig.write_text(",".join(signed_by), encoding="utf-8")
        return str(archive), str(sig)

    return _make


@pytest.fixture
def make_payload(tmp_path):
    def _make(files, removed=None, name="update", signed_by=("device-signing",)):
        src = tmp_path / "payloads"
        src.mkdir(exist_ok=True)
        payload = src / f"{name}.tar.gz"
        with tarfile.open(payload, "w:gz") as tar:
            if removed is not None:
                _add_bytes(tar, "removed", ("\n".join(removed) + "\n").encode("utf-8"))
            for member, data in files.items():
                _add_bytes(tar, member, data)
        sig = Path(str(payload) + ".asc")
        sig.write_text(",".join(signed_by), encoding="utf-8")
        return str(payload), str(sig)

    return _make


@pytest.fixture
def layout(tmp_path):
    from upgrader.paths import Layout

    root = tmp_path / "cache"
    data = tmp_path / "data"
    for path in (root, data, root / "recovery"):
        path.mkdir(parents=True, exist_ok=True)
    return Layout(
        root=root,
        data_root=data,
        cache_dir=root / "recovery",
        trust_dir=tmp_path / "trust",
        keyring_dir=tmp_path / "etc-system-image",
        fstab=tmp_path / "recovery.fstab",
        cmdline=tmp_path / "cmdline",
        persistent_list=tmp_path / "persistent-files",
        skip_verify_marker=tmp_path / "skip-gpg-verification",
        swap_mb=0,
        system_image_mb=1,
    )
