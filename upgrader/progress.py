"""Progress estimation and emission.

The caller driving the UI gets a single ``progress total: N`` line before
anything is applied, followed by ``progress: <counter>`` lines whose counter
only ever grows.  The total is computed in a read-only pre-pass over the
command file; during the apply pass three producers (removal, verification,
extraction) convert their own measure of work into whole units against the
budget that was reserved for them.
"""

from __future__ import annotations

import math
import os
import sys
import tarfile
from fractions import Fraction
from typing import Callable, Dict, Iterable, Optional, TextIO

from .executil import trace
from .model import Command, UpdateEstimate

# one unit per BLOCK_SIZE bytes of payload, roughly one unit per second of extraction
BLOCK_SIZE = 150_000
# tar record size; extraction reads the payload in windows of this size
WINDOW_SIZE = 10_240
WINDOWS_PER_REPORT = 15
# removed files are reported in batches of this many
UNITS_PER_UPDATE = 10


def untar_units(size: int) -> int:
    if size <= 0:
        return 0
    return -(-size // BLOCK_SIZE)


def verify_units(untar: int) -> int:
    units = -(-untar // 5)
    return units + (units % 2)


class ProgressEmitter:
    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self.total = 0
        self.current = 0

    def announce(self, total: int) -> None:
        self.total = total
        self._write(f"progress total: {total}")

    def emit(self, delta: int) -> None:
        if delta <= 0:
            return
        self.current += delta
        self._write(f"progress: {self.current}")

    def _write(self, line: str) -> None:
        self.stream.write(line + "\n")
        self.stream.flush()


class UnitScaler:
    """Turn amounts of work into whole units, carrying the fractional part."""

    def __init__(self, scale: Fraction) -> None:
        self._scale = Fraction(scale)
        self._carry = Fraction(0)

    def advance(self, amount) -> int:
        if amount <= 0:
            return 0
        value = self._carry + Fraction(amount) * self._scale
        whole = math.floor(value)
        self._carry = value - whole
        return whole

    def finish(self) -> int:
        if self._carry > 0:
            self._carry = Fraction(0)
            return 1
        return 0


class VerifyProgress:
    """Spread one file's verify budget over its two signature checks.

    Each check owns half of the budget.  Oracle events move the running
    check towards its half; when a check returns, whatever it did not report
    is credited so the half is always fully accounted for.  A file whose first
    check passed never runs the second one, :meth:`finish` credits it.
    """

    CHECKS = 2

    def __init__(self, emitter: ProgressEmitter, budget: int) -> None:
        self.emitter = emitter
        self.budget = max(0, budget)
        self._scaler = UnitScaler(Fraction(self.budget, self.CHECKS))
        self._done = Fraction(0)
        self._checks = 0

    def on_event(self, cur: int, total: int) -> None:
        if total <= 0 or self._checks >= self.CHECKS:
            return
        frac = Fraction(min(max(cur, 0), total), total)
        if frac <= self._done:
            return
        step = frac - self._done
        self._done = frac
        self.emitter.emit(self._scaler.advance(step))

    def run_check(self, check: Callable[[Callable[[int, int], None]], bool]) -> bool:
        self._done = Fraction(0)
        try:
            return check(self.on_event)
        finally:
            self._complete_check()

    def _complete_check(self) -> None:
        if self._checks >= self.CHECKS:
            return
        self.emitter.emit(self._scaler.advance(1 - self._done))
        self._done = Fraction(1)
        self._checks += 1

    def finish(self) -> None:
        while self._checks < self.CHECKS:
            self._done = Fraction(0)
            self._complete_check()
        self.emitter.emit(self._scaler.finish())


class ExtractionProgress:
    def __init__(
        self,
        emitter: ProgressEmitter,
        window: int = WINDOW_SIZE,
        windows_per_report: Optional[int] = None,
    ) -> None:
        self.emitter = emitter
        per_report = WINDOWS_PER_REPORT if windows_per_report is None else windows_per_report
        self._threshold = max(1, window * per_report)
        self._scaler = UnitScaler(Fraction(1, BLOCK_SIZE))
        self._pending = 0
        self.consumed = 0

    def consume(self, nbytes: int) -> None:
        if nbytes <= 0:
            return
        self.consumed += nbytes
        self._pending += nbytes
        if self._pending >= self._threshold:
            self._report()

    def _report(self) -> None:
        self.emitter.emit(self._scaler.advance(self._pending))
        self._pending = 0

    def finish(self) -> None:
        self._report()
        self.emitter.emit(self._scaler.finish())


class RemovalProgress:
    def __init__(self, emitter: ProgressEmitter, batch: Optional[int] = None) -> None:
        self.emitter = emitter
        self.batch = max(1, UNITS_PER_UPDATE if batch is None else batch)
        self._pending = 0

    def removed(self, count: int = 1) -> None:
        self._pending += count
        while self._pending >= self.batch:
            self.emitter.emit(self.batch)
            self._pending -= self.batch

    def finish(self) -> None:
        self.emitter.emit(self._pending)
        self._pending = 0


def estimate_update(payload: str, full_image: bool, extractor) -> UpdateEstimate:
    untar = untar_units(os.path.getsize(payload))
    removal = 0
    if not full_image:
        # payload is not verified yet; a damaged one only loses its removal estimate
        try:
            removal = len(extractor.removal_manifest(payload))
        except (OSError, EOFError, ValueError, tarfile.TarError) as exc:
            trace("progress.estimate.manifest_error", payload=payload, error=str(exc))
    return UpdateEstimate(removal=removal, untar=untar, verify=verify_units(untar))


def estimate_commands(commands: Iterable[Command], extractor) -> Dict[Command, UpdateEstimate]:
    """Read-only pre-pass: reserve units for every ``update`` command."""

    estimates: Dict[Command, UpdateEstimate] = {}
    full_image = False
    for command in commands:
        if command.verb == "format" and command.arg(0) == "system":
            full_image = True
            continue
        if command.verb != "update":
            continue
        payload, signature = command.arg(0), command.arg(1)
        if not payload or not signature:
            continue
        if not (os.path.isfile(payload) and os.path.isfile(signature)):
            continue
        estimates[command] = estimate_update(payload, full_image, extractor)
    trace(
        "progress.estimate",
        updates=len(estimates),
        total=sum(e.total for e in estimates.values()),
    )
    return estimates
