from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

ARCHIVE_MASTER = "archive-master"
IMAGE_MASTER = "image-master"
IMAGE_SIGNING = "image-signing"
DEVICE_SIGNING = "device-signing"
BLACKLIST = "blacklist"

KEYRING_TYPES = (ARCHIVE_MASTER, IMAGE_MASTER, IMAGE_SIGNING, DEVICE_SIGNING, BLACKLIST)

# keyring type -> type that must have signed it; None marks the trust anchor
REQUIRED_SIGNER = {
    ARCHIVE_MASTER: None,
    IMAGE_MASTER: ARCHIVE_MASTER,
    IMAGE_SIGNING: IMAGE_MASTER,
    BLACKLIST: IMAGE_MASTER,
    DEVICE_SIGNING: IMAGE_SIGNING,
}

MODE_PARTITION = "partition"
MODE_IMAGE = "image"


@dataclass(frozen=True)
class Command:
    verb: str
    args: tuple = ()
    lineno: int = 0
    raw: str = ""

    def arg(self, idx: int, default: Optional[str] = None) -> Optional[str]:
        return self.args[idx] if idx < len(self.args) else default


@dataclass
class ApplyState:
    full_image: bool = False
    data_formatted: bool = False
    update_applied: bool = False


@dataclass
class Keyring:
    type: str
    path: Path
    expiry: Optional[int] = None


@dataclass
class UpdateEstimate:
    removal: int = 0
    untar: int = 0
    verify: int = 0

    @property
    def total(self) -> int:
        return self.removal + self.untar + self.verify


@dataclass
class FsEntry:
    device: str
    mountpoint: str
    fstype: str
    options: list[str] = field(default_factory=list)


@dataclass
class SystemLayout:
    mode: str
    system_source: str
    data_device: Optional[str] = None

    @property
    def is_partition(self) -> bool:
        return self.mode == MODE_PARTITION
