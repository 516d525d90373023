import json
import threading
from types import SimpleNamespace

import pytest

from upgrader import executil


def test_log_event_creates_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path)])
    monkeypatch.setattr(executil, "LOG_PATH", None, raising=False)
    executil._log_event("exec", ["echo", "hi"], rc=0, out="ok", err=None, dur=0.1)
    log_file = tmp_path / "upgrader.jsonl"
    assert log_file.exists()
    data = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines() if line]
    assert data and data[0]["kind"] == "exec"


def test_log_respects_level(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path)])
    monkeypatch.setattr(executil, "LOG_PATH", None, raising=False)
    monkeypatch.setattr(executil, "LOG_LEVEL", "WARN")
    executil.trace("quiet.event")
    executil.warn("loud.event", detail=1)
    lines = (tmp_path / "upgrader.jsonl").read_text(encoding="utf-8").splitlines()
    events = [json.loads(line)["event"] for line in lines]
    assert events == ["loud.event"]


def test_run_handles_dry_run_and_timeout(monkeypatch):
    monkeypatch.setattr(executil, "_log_event", lambda *args, **kwargs: None)
    monkeypatch.setattr(executil, "trace", lambda *args, **kwargs: None)

    dry = executil.run(["echo", "hi"], dry_run=True)
    assert dry.out.startswith("DRY-RUN:")

    calls = {"count": 0}

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None, input=None):
        if calls["count"] == 0:
            calls["count"] += 1
            raise executil.subprocess.TimeoutExpired(cmd, timeout)
        return SimpleNamespace(returncode=0, stdout="done", stderr="", args=cmd)

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    result = executil.run(["true"], check=True, timeout=1.0)
    assert result.out == "done"
    assert result.rc == 0


def test_run_passes_input(monkeypatch):
    monkeypatch.setattr(executil, "_log_event", lambda *args, **kwargs: None)
    seen = {}

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None, input=None):
        seen["input"] = input
        seen["timeout"] = timeout
        return SimpleNamespace(returncode=0, stdout="hashed\n", stderr="")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    result = executil.run(["openssl", "passwd", "-6", "-stdin"], input="secret\n")
    assert seen == {"input": "secret\n", "timeout": None}
    assert result.out == "hashed\n"


def test_run_raises_on_failure(monkeypatch):
    monkeypatch.setattr(executil, "_log_event", lambda *args, **kwargs: None)
    monkeypatch.setattr(executil, "trace", lambda *args, **kwargs: None)

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None, input=None):
        return SimpleNamespace(returncode=1, stdout="bad", stderr="oops")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    with pytest.raises(executil.subprocess.CalledProcessError):
        executil.run(["false"], check=True)


def test_run_streaming_feeds_lines(monkeypatch):
    monkeypatch.setattr(executil, "_log_event", lambda *args, **kwargs: None)

    class FakePopen:
        def __init__(self, cmd, stdout=None, stderr=None, text=True, env=None):
            self.stdout = iter(["one\n", "two\n"])
            stderr.write(b"warn")

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def wait(self):
            return 2

    monkeypatch.setattr(executil.subprocess, "Popen", FakePopen)
    seen = []
    result = executil.run_streaming(["gpg", "--verify"], seen.append)
    assert seen == ["one", "two"]
    assert result.rc == 2
    assert result.out == "one\ntwo"
    assert result.err == "warn"


def test_run_streaming_survives_stderr_flood():
    seen = []
    done = threading.Event()
    box = {}

    def target():
        box["result"] = executil.run_streaming(
            ["sh", "-c", "head -c 200000 /dev/zero | tr '\\0' x >&2; echo done"],
            seen.append,
        )
        done.set()

    worker = threading.Thread(target=target, daemon=True)
    worker.start()
    assert done.wait(10), "stream reader blocked on stderr"
    assert seen == ["done"]
    assert box["result"].rc == 0
    assert len(box["result"].err) == 200000


def test_append_jsonl(tmp_path):
    path = tmp_path / "data" / "log.jsonl"
    executil.append_jsonl(str(path), {"foo": "bar"})
    text = path.read_text(encoding="utf-8").strip()
    assert json.loads(text) == {"foo": "bar"}
