"""Apply one verified update payload onto the live system."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from . import errors
from .executil import trace
from .model import DEVICE_SIGNING, IMAGE_SIGNING, ApplyState, UpdateEstimate
from .progress import (
    ExtractionProgress,
    ProgressEmitter,
    RemovalProgress,
    VerifyProgress,
)


def resolve_removal(root: Path, entry: str) -> Optional[Path]:
    """Map a manifest entry onto ``root``; entries escaping it are refused."""

    rel = entry.strip().lstrip("/")
    if not rel:
        return None
    candidate = Path(os.path.normpath(root / rel))
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    if candidate == root:
        return None
    return candidate


def _remove_path(path: Path) -> bool:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
        return True
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


class UpdateApplier:
    def __init__(
        self,
        root: Path | str,
        trust,
        extractor,
        copier,
        emitter: ProgressEmitter,
        partition_targets: Optional[Dict[str, str]] = None,
    ) -> None:
        self.root = Path(root)
        self.trust = trust
        self.extractor = extractor
        self.copier = copier
        self.emitter = emitter
        self.partition_targets = partition_targets or {}

    def verify(self, payload: str, signature: str, budget: int) -> str:
        """Check the payload against device-signing, then image-signing."""

        progress = VerifyProgress(self.emitter, budget)
        try:
            for signer in (DEVICE_SIGNING, IMAGE_SIGNING):
                ok = progress.run_check(
                    lambda on_progress, signer=signer: self.trust.verify(
                        signer, payload, signature, on_progress=on_progress
                    )
                )
                if ok:
                    trace("apply.verified", payload=payload, signer=signer)
                    return signer
        finally:
            progress.finish()
        raise errors.InvalidSignature(
            f"{payload} is signed by neither {DEVICE_SIGNING} nor {IMAGE_SIGNING}",
            fatal=True,
            state={"payload": payload, "signature": signature},
        )

    def remove_listed(self, payload: str) -> List[str]:
        progress = RemovalProgress(self.emitter)
        removed: List[str] = []
        for entry in self.extractor.removal_manifest(payload):
            target = resolve_removal(self.root, entry)
            if target is None:
                trace("apply.remove.refused", entry=entry)
            elif _remove_path(target):
                removed.append(str(target))
            progress.removed()
        progress.finish()
        trace("apply.remove", payload=payload, removed=len(removed))
        return removed

    def extract(self, payload: str) -> List[str]:
        progress = ExtractionProgress(self.emitter)
        try:
            return self.extractor.extract(payload, str(self.root), on_bytes=progress.consume)
        finally:
            progress.finish()

    def flash_partitions(self) -> List[str]:
        images_dir = self.root / "partitions"
        flashed: List[str] = []
        if not images_dir.is_dir():
            return flashed
        for image in sorted(images_dir.glob("*.img")):
            device = self.partition_targets.get(image.stem)
            if device:
                self.copier.copy(str(image), device)
                flashed.append(image.stem)
            else:
                trace("apply.partition.no_target", image=str(image))
            image.unlink()
        return flashed

    def apply(
        self,
        payload: str,
        signature: str,
        state: ApplyState,
        estimate: Optional[UpdateEstimate] = None,
    ) -> Dict[str, object]:
        budget = estimate.verify if estimate else 0
        signer = self.verify(payload, signature, budget)
        removed: List[str] = []
        if not state.full_image:
            removed = self.remove_listed(payload)
        members = self.extract(payload)
        flashed = self.flash_partitions()
        state.update_applied = True
        summary = {
            "payload": payload,
            "signer": signer,
            "removed": len(removed),
            "extracted": len(members),
            "flashed": flashed,
        }
        trace("apply.done", **summary)
        return summary
