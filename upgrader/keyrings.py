"""Process-scoped trust store and keyring chain verification."""

from __future__ import annotations

import json
import os
import shutil
import stat
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from . import errors
from .executil import trace
from .model import (
    ARCHIVE_MASTER,
    BLACKLIST,
    IMAGE_MASTER,
    KEYRING_TYPES,
    REQUIRED_SIGNER,
    Keyring,
)

DESCRIPTOR = "keyring.json"
KEY_MATERIAL = "keyring.gpg"
PUBRING = "pubring.gpg"


def _ensure_dir_secure(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)
    if stat.S_IMODE(path.stat().st_mode) != 0o700:
        raise PermissionError(f"directory {path} must have mode 0700")


def _read_member(tar: tarfile.TarFile, name: str) -> Optional[bytes]:
    for member in tar.getmembers():
        if member.isfile() and member.name.removeprefix("./") == name:
            fh = tar.extractfile(member)
            if fh is None:
                return None
            with fh:
                return fh.read()
    return None


class TrustStore:
    def __init__(self, trust_dir: Path | str, verifier, clock: Callable[[], float] = time.time) -> None:
        self.trust_dir = Path(trust_dir)
        self.verifier = verifier
        self.clock = clock
        self.loaded: Dict[str, Keyring] = {}

    def reset(self) -> None:
        """Drop every keyring; nothing survives from a previous run."""

        if self.trust_dir.exists():
            shutil.rmtree(self.trust_dir)
        _ensure_dir_secure(self.trust_dir)
        self.loaded = {}
        trace("keyring.reset", trust_dir=str(self.trust_dir))

    def is_loaded(self, ktype: str) -> bool:
        return ktype in self.loaded

    def verify(
        self,
        ktype: str,
        path: str,
        signature: str,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> bool:
        keyring = self.loaded.get(ktype)
        if keyring is None:
            trace("keyring.verify.not_loaded", type=ktype, path=str(path))
            return False
        return self.verifier.verify(keyring.path, path, signature, on_progress=on_progress)

    def install(self, archive: str, signature: str) -> str:
        """Validate ``archive`` against the chain and load it.

        Returns the keyring type on success; every rejection raises one of the
        :mod:`upgrader.errors` keyring errors.
        """

        for path in (archive, signature):
            if not os.path.isfile(path):
                raise errors.MissingFile(f"keyring file missing: {path}", state={"path": str(path)})

        with tempfile.TemporaryDirectory(prefix="keyring-") as staging:
            try:
                with tarfile.open(archive, "r:*") as tar:
                    raw = _read_member(tar, DESCRIPTOR)
                    material = _read_member(tar, KEY_MATERIAL)
            except (tarfile.TarError, OSError) as exc:
                raise errors.MalformedKeyring(f"unreadable keyring archive {archive}: {exc}") from exc
            if raw is None:
                raise errors.MalformedKeyring(f"{archive} has no {DESCRIPTOR}")
            try:
                descriptor = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise errors.MalformedKeyring(f"{archive}: invalid {DESCRIPTOR}: {exc}") from exc
            if not isinstance(descriptor, dict):
                raise errors.MalformedKeyring(f"{archive}: {DESCRIPTOR} is not an object")

            expiry = descriptor.get("expiry")
            if expiry is not None:
                try:
                    expiry = int(expiry)
                except (TypeError, ValueError) as exc:
                    raise errors.MalformedKeyring(f"{archive}: invalid expiry {expiry!r}") from exc
                if expiry < self.clock():
                    raise errors.KeyringExpired(
                        f"{archive} expired at {expiry}",
                        state={"expiry": expiry},
                    )

            ktype = descriptor.get("type")
            if ktype not in KEYRING_TYPES:
                raise errors.MalformedKeyring(f"{archive}: unknown keyring type {ktype!r}")

            if ktype in self.loaded:
                raise errors.KeyringAlreadyLoaded(f"{ktype} keyring already loaded", state={"type": ktype})

            signer = REQUIRED_SIGNER[ktype]
            if signer is not None:
                if BLACKLIST in self.loaded and self.verify(BLACKLIST, archive, signature):
                    raise errors.KeyRevoked(f"{archive} is signed by a blacklisted key", state={"type": ktype})
                if signer not in self.loaded:
                    raise errors.SignerNotLoaded(
                        f"{ktype} requires {signer}, which is not loaded",
                        state={"type": ktype, "signer": signer},
                    )
                if not self.verify(signer, archive, signature):
                    raise errors.InvalidSignature(
                        f"{archive} is not signed by {signer}",
                        state={"type": ktype, "signer": signer},
                    )

            if material is None:
                raise errors.MalformedKeyring(f"{archive} has no {KEY_MATERIAL}")
            staged = Path(staging) / KEY_MATERIAL
            staged.write_bytes(material)

            target_dir = self.trust_dir / ktype
            _ensure_dir_secure(self.trust_dir)
            _ensure_dir_secure(target_dir)
            target = target_dir / PUBRING
            shutil.move(str(staged), target)
            os.chmod(target, 0o600)

        self.loaded[ktype] = Keyring(type=ktype, path=target, expiry=expiry)
        trace("keyring.install", type=ktype, archive=str(archive), expiry=expiry)
        return ktype

    def install_provisioned(self, keyring_dir: Path | str) -> Optional[str]:
        """Load the archive-master shipped with the recovery image."""

        base = Path(keyring_dir) / f"{ARCHIVE_MASTER}.tar.xz"
        try:
            return self.install(str(base), str(base) + ".asc")
        except errors.UpgraderError as exc:
            trace("keyring.provisioned.failed", archive=str(base), error=str(exc), kind=type(exc).__name__)
            return None

    def install_pending_blacklist(self, cache_dir: Path | str) -> Optional[str]:
        if BLACKLIST in self.loaded or IMAGE_MASTER not in self.loaded:
            return None
        staged = Path(cache_dir) / "blacklist.tar.xz"
        if not staged.is_file():
            return None
        try:
            return self.install(str(staged), str(staged) + ".asc")
        except errors.UpgraderError as exc:
            trace("keyring.blacklist.rejected", archive=str(staged), error=str(exc), kind=type(exc).__name__)
            return None
