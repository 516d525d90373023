"""Update payload access: removal manifest and streaming extraction."""

from __future__ import annotations

import tarfile
from typing import Callable, Optional

from .executil import trace
from .progress import WINDOW_SIZE

REMOVED = "removed"


def _member_name(member: tarfile.TarInfo) -> str:
    return member.name.removeprefix("./")


class _CountingReader:
    """File wrapper reporting how many raw payload bytes were consumed."""

    def __init__(self, fh, on_bytes: Optional[Callable[[int], None]]) -> None:
        self._fh = fh
        self._on_bytes = on_bytes

    def read(self, size: int = -1) -> bytes:
        data = self._fh.read(size)
        if data and self._on_bytes:
            self._on_bytes(len(data))
        return data


class TarExtractor:
    def removal_manifest(self, payload: str) -> list[str]:
        """Paths listed in the payload's ``removed`` member, in order."""

        with tarfile.open(payload, "r|*") as tar:
            for member in tar:
                if _member_name(member) != REMOVED or not member.isfile():
                    continue
                fh = tar.extractfile(member)
                if fh is None:
                    return []
                text = fh.read().decode("utf-8", errors="replace")
                return [line.strip() for line in text.splitlines() if line.strip()]
        return []

    def extract(
        self,
        payload: str,
        dest: str,
        on_bytes: Optional[Callable[[int], None]] = None,
    ) -> list[str]:
        """Extract everything but the removal manifest onto ``dest``."""

        names: list[str] = []
        with open(payload, "rb") as raw:
            reader = _CountingReader(raw, on_bytes)
            with tarfile.open(fileobj=reader, mode="r|*", bufsize=WINDOW_SIZE) as tar:
                for member in tar:
                    if _member_name(member) == REMOVED:
                        continue
                    tar.extract(member, dest, numeric_owner=True, filter="tar")
                    names.append(_member_name(member))
            # account for trailing padding the tar reader never asked for
            while reader.read(WINDOW_SIZE):
                pass
        trace("archive.extract", payload=payload, dest=dest, members=len(names))
        return names
