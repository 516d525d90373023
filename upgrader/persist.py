"""Keep whitelisted user data across a destructive data wipe."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import List

from . import errors
from .executil import trace
from .model import SystemLayout
from .mounts import reformat_mounted

# loop-mounted disk images that live on the data partition and survive a wipe
PRESERVED_IMAGES = ("system.img", "ubuntu.img")


def read_persistent_list(path: Path | str) -> List[str]:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        trace("persist.list_missing", path=str(path))
        return []
    entries: List[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        entries.append(line.lstrip("/"))
    return entries


def _copy(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir() and not src.is_symlink():
        shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dst, follow_symlinks=False)


def backup(data_root: Path, entries: List[str], staging: Path) -> List[str]:
    saved: List[str] = []
    for rel in entries:
        src = data_root / rel
        if not os.path.lexists(src):
            continue
        _copy(src, staging / rel)
        saved.append(rel)
    trace("persist.backup", saved=saved, skipped=len(entries) - len(saved))
    return saved


def restore(staging: Path, data_root: Path, saved: List[str]) -> None:
    for rel in saved:
        _copy(staging / rel, data_root / rel)
    trace("persist.restore", restored=saved)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def wipe_data(data_root: Path, system: SystemLayout) -> None:
    if system.is_partition:
        if not system.data_device:
            raise errors.UndeterminedPartition(
                "unable to determine the userdata partition",
                fatal=True,
                state={"data_root": str(data_root)},
            )
        reformat_mounted(system.data_device, str(data_root))
        return
    removed = []
    for entry in sorted(data_root.iterdir()):
        if entry.name in PRESERVED_IMAGES:
            continue
        _remove(entry)
        removed.append(entry.name)
    trace("persist.wipe", data_root=str(data_root), removed=removed)


def format_data(
    data_root: Path | str,
    persistent_list: Path | str,
    system: SystemLayout,
    staging_parent: Path | str | None = None,
) -> List[str]:
    """Back up whitelisted files, wipe the data partition, put them back."""

    data_root = Path(data_root)
    entries = read_persistent_list(persistent_list)
    if staging_parent is not None:
        os.makedirs(staging_parent, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="persist-", dir=staging_parent) as tmp:
        staging = Path(tmp)
        saved = backup(data_root, entries, staging)
        os.sync()
        wipe_data(data_root, system)
        restore(staging, data_root, saved)
        os.sync()
    return saved
