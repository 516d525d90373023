"""``enable``/``disable`` feature toggles."""

from __future__ import annotations

import os
import shutil
import time
from pathlib import Path
from typing import List, Optional

from . import errors
from .executil import run, trace
from .model import ApplyState
from .paths import Layout

USB_FUNCTIONS = ("mtp", "adb")
DEFAULT_USB_MODE = ("mtp",)


def _write_file(path: Path, content: str, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp_path, path)
    os.chmod(path, mode)


def read_usb_functions(layout: Layout) -> List[str]:
    try:
        text = layout.usb_config.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return []
    return [f for f in text.split(",") if f in USB_FUNCTIONS]


def set_usb_functions(layout: Layout, functions) -> str:
    wanted = set(functions)
    value = ",".join(f for f in USB_FUNCTIONS if f in wanted) or "none"
    _write_file(layout.usb_config, value + "\n", 0o644)
    trace("features.usb", value=value)
    return value


def _toggle_usb(layout: Layout, function: str, enable: bool) -> str:
    current = set(read_usb_functions(layout))
    if enable:
        current.add(function)
    else:
        current.discard(function)
    return set_usb_functions(layout, current)


def hash_password(password: str) -> str:
    r = run(["openssl", "passwd", "-6", "-stdin"], check=True, input=password + "\n")
    return r.out.strip()


def set_default_password(layout: Layout, password: str, system_root: Optional[Path] = None) -> None:
    hashed = hash_password(password)
    shadow = layout.shadow
    if not shadow.exists() and system_root is not None:
        seed = Path(system_root) / "etc" / "shadow"
        if seed.is_file():
            shadow.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(seed, shadow)
    lines: List[str] = []
    if shadow.exists():
        lines = shadow.read_text(encoding="utf-8").splitlines()
    user = layout.default_user
    days = str(int(time.time() // 86400))
    found = False
    for idx, line in enumerate(lines):
        fields = line.split(":")
        if fields[0] != user:
            continue
        fields += [""] * (9 - len(fields))
        fields[1] = hashed
        fields[2] = days
        lines[idx] = ":".join(fields)
        found = True
    if not found:
        lines.append(f"{user}:{hashed}:{days}:0:99999:7:::")
    _write_file(shadow, "\n".join(lines) + "\n", 0o640)
    trace("features.default_password", user=user, shadow=str(shadow), new_entry=not found)


def set_adb_keys(layout: Layout, keyfile: Optional[str]) -> None:
    if not keyfile or not os.path.isfile(keyfile):
        raise errors.MissingFile(f"adb keys file missing: {keyfile}")
    target = layout.adb_keys
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(keyfile, target)
    os.chmod(target, 0o600)
    trace("features.adb_keys.installed", source=keyfile, target=str(target))


def remove_adb_keys(layout: Layout) -> None:
    try:
        layout.adb_keys.unlink()
    except FileNotFoundError:
        pass
    trace("features.adb_keys.removed", target=str(layout.adb_keys))


def set_factory_wipe(layout: Layout, enable: bool) -> None:
    marker = layout.factory_wipe_marker
    if enable:
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()
    else:
        try:
            marker.unlink()
        except FileNotFoundError:
            pass
    trace("features.factory_wipe", enabled=enable, marker=str(marker))


def _blocked(feature: str, enable: bool, state: ApplyState) -> bool:
    if state.data_formatted:
        return False
    trace("features.gated", feature=feature, enable=enable)
    return True


def toggle(
    layout: Layout,
    state: ApplyState,
    feature: str,
    enable: bool,
    arg: Optional[str] = None,
    system_root: Optional[Path] = None,
) -> bool:
    """Apply one feature toggle; returns False when it was gated off."""

    if feature == "developer_mode":
        _toggle_usb(layout, "adb", enable)
    elif feature == "mtp":
        _toggle_usb(layout, "mtp", enable)
    elif feature == "default_password" and enable:
        if _blocked(feature, enable, state):
            return False
        if not arg:
            raise errors.UnknownTarget("enable default_password needs a password argument")
        set_default_password(layout, arg, system_root=system_root)
    elif feature == "adb_keys":
        if _blocked(feature, enable, state):
            return False
        if enable:
            set_adb_keys(layout, arg)
        else:
            remove_adb_keys(layout)
    elif feature == "factory_wipe":
        if enable and _blocked(feature, enable, state):
            return False
        set_factory_wipe(layout, enable)
    else:
        verb = "enable" if enable else "disable"
        raise errors.UnknownTarget(f"unknown feature for {verb}: {feature}")
    return True
