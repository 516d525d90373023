from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_DEFAULTS = {
    "SIU_ROOT": "/cache",
    "SIU_DATA_ROOT": "/data",
    "SIU_CACHE_DIR": "/cache/recovery",
    "SIU_TRUST_DIR": "/tmp/system-image/keyrings",
    "SIU_KEYRING_DIR": "/etc/system-image",
    "SIU_FSTAB": "/etc/recovery.fstab",
    "SIU_CMDLINE": "/proc/cmdline",
    "SIU_PERSISTENT_LIST": "/etc/system-image/persistent-files",
    "SIU_SKIP_VERIFY_MARKER": "/etc/system-image/skip-gpg-verification",
    "SIU_DEFAULT_USER": "phablet",
    "SIU_SWAP_MB": "512",
    "SIU_SYSTEM_IMAGE_MB": "2000",
    "SIU_LOG_DIR": "/cache/recovery/log",
}


def _expand(path: str) -> Path:
    candidate = Path(path).expanduser()
    try:
        return candidate.resolve()
    except (FileNotFoundError, RuntimeError):
        return candidate


def setting(name: str) -> str:
    """Return the configured value for ``name``.

    Every location the upgrader touches can be overridden through an
    ``SIU_*`` environment variable.  When unset we fall back to the layout of
    the recovery image so the command files written by the device side keep
    working unchanged.
    """

    override = os.environ.get(name)
    if override:
        return override
    return _DEFAULTS[name]


def siu_logs_dir() -> str:
    return str(_expand(setting("SIU_LOG_DIR")))


@dataclass
class Layout:
    root: Path
    data_root: Path
    cache_dir: Path
    trust_dir: Path
    keyring_dir: Path
    fstab: Path
    cmdline: Path
    persistent_list: Path
    skip_verify_marker: Path
    default_user: str = "phablet"
    swap_mb: int = 512
    system_image_mb: int = 2000

    @classmethod
    def from_env(cls) -> "Layout":
        try:
            swap_mb = int(setting("SIU_SWAP_MB"))
        except ValueError:
            swap_mb = int(_DEFAULTS["SIU_SWAP_MB"])
        try:
            system_image_mb = int(setting("SIU_SYSTEM_IMAGE_MB"))
        except ValueError:
            system_image_mb = int(_DEFAULTS["SIU_SYSTEM_IMAGE_MB"])
        return cls(
            root=_expand(setting("SIU_ROOT")),
            data_root=_expand(setting("SIU_DATA_ROOT")),
            cache_dir=_expand(setting("SIU_CACHE_DIR")),
            trust_dir=_expand(setting("SIU_TRUST_DIR")),
            keyring_dir=_expand(setting("SIU_KEYRING_DIR")),
            fstab=_expand(setting("SIU_FSTAB")),
            cmdline=Path(setting("SIU_CMDLINE")),
            persistent_list=_expand(setting("SIU_PERSISTENT_LIST")),
            skip_verify_marker=_expand(setting("SIU_SKIP_VERIFY_MARKER")),
            default_user=setting("SIU_DEFAULT_USER"),
            swap_mb=max(0, swap_mb),
            system_image_mb=max(1, system_image_mb),
        )

    @property
    def system_mountpoint(self) -> Path:
        return self.root / "system"

    @property
    def system_image(self) -> Path:
        return self.data_root / "system.img"

    @property
    def swap_path(self) -> Path:
        return self.cache_dir / "SWAP.img"

    @property
    def usb_config(self) -> Path:
        return self.data_root / "android-data" / "property" / "persist.sys.usb.config"

    @property
    def adb_keys(self) -> Path:
        return self.data_root / "user-data" / self.default_user / ".android" / "adb_keys"

    @property
    def shadow(self) -> Path:
        return self.data_root / "system-data" / "etc" / "shadow"

    @property
    def factory_wipe_marker(self) -> Path:
        return self.data_root / ".factory_wipe"

    @property
    def last_update_marker(self) -> Path:
        return self.data_root / ".last_update"
