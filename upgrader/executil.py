"""Subprocess wrapper and JSON-lines trace log."""

from __future__ import annotations

import datetime as _dt
import json
import os
import shlex
import subprocess
import tempfile
import time
from typing import Callable, Sequence

from .paths import siu_logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "upgrader.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        siu_logs_dir(),
        "/cache/recovery/log",
        "/tmp/siu-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def _now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    try:
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def _log_event(kind: str, cmd: list[str], rc: int = None, out: str = None, err: str = None, dur: float = None):
    _write_jsonl({"ts": _now(), "kind": kind, "cmd": cmd, "rc": rc, "dur": dur, "out": out, "err": err})


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("SIU_LOG_LEVEL", "TRACE").upper()


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    rec = {"ts": _now(), "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def info(event: str, **fields):
    log("INFO", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def error(event: str, **fields):
    log("ERROR", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float | None = None,
    env: dict | None = None,
    input: str | None = None,
) -> Result:
    trace("exec.start", cmd=list(cmd))
    _log_event("exec", list(cmd))
    started = time.time()
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in cmd)
        return Result(0, text, "", 0.0)
    env2 = (env or os.environ).copy()
    env2.setdefault("SIU_LOG_LEVEL", LOG_LEVEL)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2, input=input)
    except subprocess.TimeoutExpired:
        # one retry, slow eMMC parts occasionally stall on the first sync
        trace("exec.timeout_retry", cmd=list(cmd), timeout=timeout)
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2, input=input)
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur)
    _log_event("done", list(cmd), rc=proc.returncode, out=proc.stdout, err=proc.stderr, dur=dur)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def run_streaming(
    cmd: Sequence[str],
    on_line: Callable[[str], None],
    env: dict | None = None,
) -> Result:
    """Run ``cmd`` and feed each stdout line to ``on_line`` as it arrives.

    Consumption is synchronous: the callback runs on the calling thread
    between reads, so a slow consumer simply slows the producer down.  Stderr
    is spooled to a temporary file, never a pipe, and returned with the
    result.
    """

    trace("exec.stream.start", cmd=list(cmd))
    _log_event("exec", list(cmd))
    started = time.time()
    env2 = (env or os.environ).copy()
    lines: list[str] = []
    with tempfile.TemporaryFile() as errfile:
        with subprocess.Popen(
            list(cmd),
            stdout=subprocess.PIPE,
            stderr=errfile,
            text=True,
            env=env2,
        ) as proc:
            for raw in proc.stdout:
                line = raw.rstrip("\n")
                lines.append(line)
                on_line(line)
            rc = proc.wait()
        errfile.seek(0)
        err = errfile.read().decode("utf-8", errors="replace")
    dur = time.time() - started
    out = "\n".join(lines)
    trace("exec.stream.done", cmd=list(cmd), rc=rc, dur=dur)
    _log_event("done", list(cmd), rc=rc, out=out, err=err, dur=dur)
    return Result(rc, out, err, dur)


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
