"""Mount, fsck, mkfs, raw copy and swap helpers."""
from subprocess import CalledProcessError
import contextlib
import os
import shutil
import time

from . import errors
from .executil import run, trace
from .model import SystemLayout


class MkfsError(errors.UpgraderError):
    """Raised when destructive formatting fails."""

    fatal = True
    result = "FAIL_PARTITION"


class FilesystemChecker:
    """``e2fsck -y``: exit codes 0-3 mean clean or repaired, 4 and up mean it gave up."""

    def check(self, path: str) -> bool:
        r = run(["e2fsck", "-y", path], check=False)
        if r.rc >= 4:
            raise errors.UnrepairableFilesystem(
                f"e2fsck could not repair {path} (rc={r.rc})",
                state={"path": path, "rc": r.rc, "stderr": (r.err or "").strip()},
            )
        repaired = r.rc != 0
        trace("mounts.fsck", path=path, rc=r.rc, repaired=repaired)
        return repaired


class BlockCopier:
    def copy(self, image: str, device: str) -> None:
        run(["dd", f"if={image}", f"of={device}", "bs=4096", "conv=fsync"], check=True)
        trace("mounts.flash", image=image, device=device)


def _mount(dev: str, target: str, fstype: str | None = None, opts: list[str] | None = None):
    os.makedirs(target, exist_ok=True)
    cmd = ["mount"]
    if fstype: cmd += ["-t", fstype]
    if opts: cmd += ["-o", ",".join(opts)]
    cmd += [dev, target]
    run(cmd, check=True)


def _umount(path: str) -> bool:
    r = run(["umount", path], check=False)
    return r.rc == 0


def _clear_dir(path: str) -> None:
    if not os.path.isdir(path):
        return
    for name in os.listdir(path):
        entry = os.path.join(path, name)
        if os.path.isdir(entry) and not os.path.islink(entry):
            shutil.rmtree(entry)
        else:
            os.remove(entry)


def format_partition(dev: str, label: str | None = None) -> None:
    args = ["mkfs.ext4", "-F"]
    if label:
        args += ["-L", label]

    attempts: list[dict[str, str | int]] = []
    delay = 0.5
    for attempt in range(3):
        try:
            run(args + [dev], check=True)
            trace("mounts.mkfs_success", device=dev, attempts=attempt + 1)
            return
        except CalledProcessError as exc:
            msg = (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"
            attempts.append({"rc": exc.returncode, "message": msg})
            trace("mounts.mkfs_retry", device=dev, attempt=attempt + 1, rc=exc.returncode, stderr=msg)
            if attempt == 2:
                break
            time.sleep(delay)
            delay = min(4.0, delay * 2)

    raise MkfsError(
        f"mkfs.ext4 failed on {dev}: {attempts[-1]['message'] if attempts else 'unknown error'}",
        state={"device": dev, "mkfs_attempts": attempts},
    )


def reformat_mounted(dev: str, mountpoint: str, label: str | None = None) -> None:
    """Unmount ``mountpoint``, put a fresh ext4 on ``dev`` and mount it back."""

    was_mounted = os.path.ismount(mountpoint)
    if was_mounted:
        _umount(mountpoint)
    format_partition(dev, label)
    _mount(dev, mountpoint, fstype="ext4")
    trace("mounts.reformat", device=dev, mountpoint=mountpoint, was_mounted=was_mounted)


class Mounter:
    """Mounts the system tree and remembers what it mounted."""

    def __init__(self, layout: SystemLayout, mountpoint: str, checker: FilesystemChecker) -> None:
        self.layout = layout
        self.mountpoint = str(mountpoint)
        self.checker = checker
        self.mounted: list[str] = []

    def mount_system(self) -> bool:
        if os.path.ismount(self.mountpoint):
            trace("mounts.system.already_mounted", mountpoint=self.mountpoint)
            return False
        source = self.layout.system_source
        if not self.layout.is_partition and not os.path.exists(source):
            raise errors.UnknownTarget(f"system image {source} does not exist")
        self.checker.check(source)
        opts = None if self.layout.is_partition else ["loop"]
        _mount(source, self.mountpoint, fstype="ext4", opts=opts)
        self.mounted.append(self.mountpoint)
        trace("mounts.system.mounted", source=source, mountpoint=self.mountpoint, mode=self.layout.mode)
        return True

    def unmount_system(self) -> bool:
        if not os.path.ismount(self.mountpoint):
            trace("mounts.system.not_mounted", mountpoint=self.mountpoint)
            return False
        ok = _umount(self.mountpoint)
        if self.mountpoint in self.mounted:
            self.mounted.remove(self.mountpoint)
        return ok

    def unmount_all(self) -> None:
        for path in reversed(self.mounted):
            _umount(path)
        self.mounted = []

    def format_system(self, image_mb: int) -> None:
        """Give the system target a fresh, empty ext4 before a full image lands on it."""

        was_mounted = os.path.ismount(self.mountpoint)
        if was_mounted:
            self.unmount_system()
        source = self.layout.system_source
        if self.layout.is_partition:
            format_partition(source, label="system")
        else:
            with contextlib.suppress(FileNotFoundError):
                os.remove(source)
            os.makedirs(os.path.dirname(source) or ".", exist_ok=True)
            with open(source, "wb") as fh:
                fh.truncate(image_mb * 1024 * 1024)
            format_partition(source, label="system")
        # leftovers on the bare mountpoint directory
        _clear_dir(self.mountpoint)
        trace("mounts.system.formatted", source=source, mode=self.layout.mode, image_mb=image_mb)
        if was_mounted:
            self.mount_system()


@contextlib.contextmanager
def swap_file(path: str, size_mb: int):
    """Provide a swap file for the duration of the block; always torn down."""

    active = False
    if size_mb > 0:
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            run(["dd", "if=/dev/zero", f"of={path}", "bs=1M", f"count={size_mb}"], check=True)
            os.chmod(path, 0o600)
            run(["mkswap", path], check=True)
            run(["swapon", path], check=True)
            active = True
            trace("mounts.swap.on", path=path, size_mb=size_mb)
        except (CalledProcessError, OSError) as exc:
            trace("mounts.swap.failed", path=path, error=str(exc))
    try:
        yield path if active else None
    finally:
        if active:
            run(["swapoff", path], check=False)
        if size_mb > 0:
            with contextlib.suppress(FileNotFoundError):
                os.remove(path)
            trace("mounts.swap.off", path=path)
