"""Command file parsing and the two-pass interpreter."""

from __future__ import annotations

import contextlib
import os
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import errors, features
from .apply import UpdateApplier
from .archive import TarExtractor
from .executil import info, trace, warn
from .fstab import boot_params, partition_targets, read_fstab, resolve_system_layout
from .gpg import GpgVerifier
from .keyrings import TrustStore
from .model import ApplyState, Command, SystemLayout, UpdateEstimate
from .mounts import BlockCopier, FilesystemChecker, Mounter, swap_file
from .paths import Layout
from .persist import format_data
from .progress import ProgressEmitter, estimate_commands


def parse_line(line: str, lineno: int = 0) -> Optional[Command]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    tokens = stripped.split()
    return Command(verb=tokens[0], args=tuple(tokens[1:]), lineno=lineno, raw=stripped)


def read_command_file(path: Path | str) -> List[Command]:
    text = Path(path).read_text(encoding="utf-8")
    commands = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        command = parse_line(line, lineno)
        if command is not None:
            commands.append(command)
    return commands


class Upgrader:
    """Runs a command list: estimate pass first, then the apply pass."""

    def __init__(
        self,
        layout: Layout,
        *,
        emitter: Optional[ProgressEmitter] = None,
        trust: Optional[TrustStore] = None,
        extractor=None,
        checker=None,
        copier=None,
        system: Optional[SystemLayout] = None,
        swap: bool = True,
    ) -> None:
        self.layout = layout
        self.emitter = emitter or ProgressEmitter()
        self.trust = trust or TrustStore(layout.trust_dir, GpgVerifier(layout.skip_verify_marker))
        self.extractor = extractor or TarExtractor()
        self.checker = checker or FilesystemChecker()
        self.copier = copier or BlockCopier()
        self.fstab = read_fstab(layout.fstab)
        self.system = system or resolve_system_layout(
            self.fstab, boot_params(layout.cmdline), layout.system_image
        )
        self.mounter = Mounter(self.system, str(layout.system_mountpoint), self.checker)
        self.applier = UpdateApplier(
            layout.root,
            self.trust,
            self.extractor,
            self.copier,
            self.emitter,
            partition_targets=partition_targets(self.fstab),
        )
        self.swap = swap
        self.state = ApplyState()
        self.estimates: Dict[Command, UpdateEstimate] = {}
        self._handlers: Dict[str, Callable[[Command], None]] = {
            "format": self._cmd_format,
            "update": self._cmd_update,
            "enable": self._cmd_enable,
            "disable": self._cmd_disable,
            "load_keyring": self._cmd_load_keyring,
            "mount": self._cmd_mount,
            "unmount": self._cmd_unmount,
        }

    # -- passes -------------------------------------------------------------

    def estimate(self, commands: List[Command]) -> int:
        self.estimates = estimate_commands(commands, self.extractor)
        total = sum(e.total for e in self.estimates.values())
        self.emitter.announce(total)
        return total

    def apply(self, commands: List[Command]) -> ApplyState:
        for command in commands:
            self.dispatch(command)
        return self.state

    def dispatch(self, command: Command) -> None:
        handler = self._handlers.get(command.verb)
        try:
            if handler is None:
                raise errors.UnknownCommand(f"unknown command: {command.verb}")
            trace("command.start", lineno=command.lineno, verb=command.verb, args=list(command.args))
            handler(command)
        except errors.UpgraderError as exc:
            if exc.fatal:
                trace("command.fatal", lineno=command.lineno, raw=command.raw, error=str(exc), kind=type(exc).__name__)
                raise
            warn(
                "command.skipped",
                lineno=command.lineno,
                raw=command.raw,
                error=str(exc),
                kind=type(exc).__name__,
            )

    def run(self, commands: List[Command]) -> ApplyState:
        self.trust.reset()
        self.trust.install_provisioned(self.layout.keyring_dir)
        swap_mb = self.layout.swap_mb if self.swap else 0
        try:
            with swap_file(str(self.layout.swap_path), swap_mb):
                self.estimate(commands)
                self.apply(commands)
        finally:
            self.mounter.unmount_all()
        self._touch_last_update()
        info("upgrader.done", **vars(self.state))
        return self.state

    def _touch_last_update(self) -> None:
        marker = self.layout.last_update_marker
        if marker.exists() and not self.state.update_applied:
            return
        with contextlib.suppress(OSError):
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.touch()
            now = time.time()
            os.utime(marker, (now, now))
            trace("upgrader.last_update", marker=str(marker))

    # -- handlers -----------------------------------------------------------

    def _cmd_format(self, command: Command) -> None:
        target = command.arg(0)
        if target == "system":
            self.mounter.format_system(self.layout.system_image_mb)
            self.state.full_image = True
            info("command.format.system", source=self.system.system_source, mode=self.system.mode)
        elif target == "data":
            saved = format_data(
                self.layout.data_root,
                self.layout.persistent_list,
                self.system,
                staging_parent=self.layout.cache_dir,
            )
            self.state.data_formatted = True
            features.set_usb_functions(self.layout, features.DEFAULT_USB_MODE)
            info("command.format.data", preserved=saved)
        else:
            raise errors.UnknownTarget(f"unknown format target: {target}")

    def _cmd_update(self, command: Command) -> None:
        payload, signature = command.arg(0), command.arg(1)
        if not payload or not signature:
            raise errors.UnknownTarget(f"update needs a payload and a signature: {command.raw}")
        missing = [p for p in (payload, signature) if not os.path.isfile(p)]
        if missing:
            # already applied and cleaned up by an earlier run
            warn("command.update.missing", missing=missing)
            return
        self.applier.apply(payload, signature, self.state, self.estimates.get(command))
        for path in (payload, signature):
            with contextlib.suppress(FileNotFoundError):
                os.remove(path)

    def _toggle(self, command: Command, enable: bool) -> None:
        feature = command.arg(0)
        if not feature:
            raise errors.UnknownTarget(f"{command.verb} needs a feature name")
        applied = features.toggle(
            self.layout,
            self.state,
            feature,
            enable,
            arg=command.arg(1),
            system_root=self.layout.system_mountpoint,
        )
        trace("command.toggle", feature=feature, enable=enable, applied=applied)

    def _cmd_enable(self, command: Command) -> None:
        self._toggle(command, True)

    def _cmd_disable(self, command: Command) -> None:
        self._toggle(command, False)

    def _cmd_load_keyring(self, command: Command) -> None:
        archive, signature = command.arg(0), command.arg(1)
        if not archive or not signature:
            raise errors.UnknownTarget(f"load_keyring needs an archive and a signature: {command.raw}")
        try:
            ktype = self.trust.install(archive, signature)
        except errors.KeyringAlreadyLoaded as exc:
            info("command.load_keyring.already_loaded", archive=archive, type=exc.state.get("type"))
            return
        info("command.load_keyring", archive=archive, type=ktype)
        self.trust.install_pending_blacklist(self.layout.cache_dir)

    def _cmd_mount(self, command: Command) -> None:
        if command.arg(0) != "system":
            raise errors.UnknownTarget(f"unknown mount target: {command.arg(0)}")
        self.mounter.mount_system()

    def _cmd_unmount(self, command: Command) -> None:
        if command.arg(0) != "system":
            raise errors.UnknownTarget(f"unknown unmount target: {command.arg(0)}")
        self.mounter.unmount_system()
