"""Static filesystem table and boot parameter probing."""

from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Dict, List, Optional

from .executil import trace
from .model import MODE_IMAGE, MODE_PARTITION, FsEntry, SystemLayout


def read_fstab(path: Path | str) -> List[FsEntry]:
    """Parse a recovery fstab (``<src> <mnt> <type> <flags> <fs_mgr_flags>``)."""

    entries: List[FsEntry] = []
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        trace("fstab.missing", path=str(path))
        return entries
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 3:
            trace("fstab.skip_line", line=line)
            continue
        options = parts[3].split(",") if len(parts) > 3 else []
        entries.append(FsEntry(device=parts[0], mountpoint=parts[1], fstype=parts[2], options=options))
    return entries


def find_entry(entries: List[FsEntry], mountpoint: str) -> Optional[FsEntry]:
    for entry in entries:
        if entry.mountpoint.rstrip("/") == mountpoint.rstrip("/"):
            return entry
    return None


def boot_params(path: Path | str) -> Dict[str, str]:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    params: Dict[str, str] = {}
    for token in text.split():
        key, sep, value = token.partition("=")
        params[key] = value if sep else ""
    return params


def _is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        trace("fstab.stat_error", path=path, error=str(exc))
        return False
    return stat.S_ISBLK(st.st_mode)


def resolve_system_layout(
    entries: List[FsEntry],
    params: Dict[str, str],
    system_image: Path,
) -> SystemLayout:
    """Decide once whether the system lives on a partition or a loop image."""

    data_device = params.get("datapart") or None
    if not data_device:
        data_entry = find_entry(entries, "/data")
        data_device = data_entry.device if data_entry else None

    system_part = params.get("systempart")
    if system_part:
        layout = SystemLayout(mode=MODE_PARTITION, system_source=system_part, data_device=data_device)
    else:
        system_entry = find_entry(entries, "/system")
        if system_entry and _is_block_device(system_entry.device):
            layout = SystemLayout(mode=MODE_PARTITION, system_source=system_entry.device, data_device=data_device)
        else:
            layout = SystemLayout(mode=MODE_IMAGE, system_source=str(system_image), data_device=data_device)
    trace(
        "fstab.system_layout",
        mode=layout.mode,
        system=layout.system_source,
        data=layout.data_device,
    )
    return layout


def partition_targets(entries: List[FsEntry]) -> Dict[str, str]:
    """Map partition image names (``boot``, ``recovery``...) to block devices.

    Only raw (``emmc``) entries are flash targets; mounted filesystems are
    written through extraction instead.
    """

    targets: Dict[str, str] = {}
    for entry in entries:
        if entry.fstype not in ("emmc", "raw"):
            continue
        name = entry.mountpoint.strip("/").rsplit("/", 1)[-1]
        if name:
            targets[name] = entry.device
    return targets
