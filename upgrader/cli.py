"""CLI entrypoint for the system image upgrader."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Dict, Optional

from . import errors
from .commands import Upgrader, read_command_file
from .executil import append_jsonl, error, resolve_log_path, trace
from .paths import Layout, siu_logs_dir
from .progress import ProgressEmitter

RESULT_CODES: Dict[str, int] = {
    "UPGRADE_OK": 0,
    "FAIL_MISSING_COMMAND_FILE": 1,
    "FAIL_FILESYSTEM": 1,
    "FAIL_SIGNATURE": 1,
    "FAIL_PARTITION": 1,
    "FAIL_UNHANDLED": 1,
}

RESULT_LOG_PATH: Optional[str] = None
CLI_START_MONO = time.perf_counter()
JSON_OUTPUT_ENABLED = True


def _result_log_path() -> str:
    global RESULT_LOG_PATH
    if RESULT_LOG_PATH:
        return RESULT_LOG_PATH
    path = resolve_log_path()
    if not path:
        path = os.path.join(siu_logs_dir(), "upgrader.jsonl")
    RESULT_LOG_PATH = path
    return path


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    payload.setdefault("log_path", _result_log_path())
    append_jsonl(_result_log_path(), payload)
    if JSON_OUTPUT_ENABLED:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str), file=sys.stderr)
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="system-image-upgrader", add_help=True)
    parser.add_argument("command_file")
    parser.add_argument("--progress-file", default="-", help="where progress lines go ('-' for stdout)")
    parser.add_argument("--no-swap", dest="swap", action="store_false")
    parser.add_argument("--json", dest="json", action="store_true", default=True)
    parser.add_argument("--no-json", dest="json", action="store_false")
    return parser


def _open_progress(target: str):
    if target == "-":
        return sys.stdout
    return open(target, "a", encoding="utf-8")


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    global JSON_OUTPUT_ENABLED
    JSON_OUTPUT_ENABLED = bool(args.json)

    trace("cli.args", command_file=args.command_file, progress_file=args.progress_file, swap=args.swap)

    if not os.path.isfile(args.command_file):
        _emit_result("FAIL_MISSING_COMMAND_FILE", extra={"command_file": args.command_file})

    layout = Layout.from_env()
    commands = read_command_file(args.command_file)
    stream = _open_progress(args.progress_file)
    try:
        upgrader = Upgrader(layout, emitter=ProgressEmitter(stream), swap=args.swap)
        try:
            state = upgrader.run(commands)
        except errors.UpgraderError as exc:
            error("upgrader.fatal", kind=type(exc).__name__, error=str(exc), state=exc.state)
            _emit_result(
                exc.result,
                extra={
                    "why": str(exc),
                    "error": type(exc).__name__,
                    "state": exc.state,
                    "command_file": args.command_file,
                },
            )
    finally:
        if stream is not sys.stdout:
            stream.close()

    _emit_result(
        "UPGRADE_OK",
        extra={
            "command_file": args.command_file,
            "commands": len(commands),
            "full_image": state.full_image,
            "data_formatted": state.data_formatted,
            "update_applied": state.update_applied,
            "progress": upgrader.emitter.current,
            "progress_total": upgrader.emitter.total,
        },
    )
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc), "kind": type(exc).__name__})
    return 1


if __name__ == "__main__":
    sys.exit(main())
