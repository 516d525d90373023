"""Signature verification oracle backed by the ``gpg`` binary."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Optional

from .executil import run_streaming, trace

_STATUS_PREFIX = "[GNUPG:] "

ProgressCallback = Callable[[int, int], None]


def parse_progress(line: str) -> Optional[tuple[int, int]]:
    """Return ``(cur, total)`` for a ``[GNUPG:] PROGRESS`` status line."""

    if not line.startswith(_STATUS_PREFIX):
        return None
    parts = line[len(_STATUS_PREFIX):].split()
    # PROGRESS <what> <char> <cur> <total> [<units>]
    if len(parts) < 5 or parts[0] != "PROGRESS":
        return None
    try:
        return int(parts[3]), int(parts[4])
    except ValueError:
        return None


class GpgVerifier:
    def __init__(self, skip_marker: Path | str | None = None, binary: str = "gpg") -> None:
        self.skip_marker = Path(skip_marker) if skip_marker else None
        self.binary = binary

    def skip_all(self) -> bool:
        return bool(self.skip_marker and self.skip_marker.exists())

    def command(self, keyring: Path, path: str, signature: str) -> list[str]:
        return [
            self.binary,
            "--batch",
            "--no-default-keyring",
            "--no-auto-key-locate",
            "--keyring",
            str(keyring),
            "--status-fd",
            "1",
            "--verify",
            str(signature),
            str(path),
        ]

    def verify(
        self,
        keyring: Path,
        path: str,
        signature: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> bool:
        if self.skip_all():
            trace("gpg.verify.skipped", path=str(path), marker=str(self.skip_marker))
            return True

        def _on_line(line: str) -> None:
            event = parse_progress(line)
            if event and on_progress:
                on_progress(*event)

        # private homedir so no user trustdb or agent state leaks in
        env = dict(os.environ)
        env["GNUPGHOME"] = str(Path(keyring).parent)
        result = run_streaming(self.command(keyring, path, signature), _on_line, env=env)
        ok = result.rc == 0
        trace("gpg.verify", keyring=str(keyring), path=str(path), ok=ok, rc=result.rc)
        return ok
