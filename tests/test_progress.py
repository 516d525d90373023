import io
import os

import pytest

from upgrader import progress
from upgrader.archive import TarExtractor
from upgrader.model import Command


def _lines(stream):
    return stream.getvalue().splitlines()


def _emitted(stream):
    return [int(line.split(":")[1]) for line in _lines(stream) if line.startswith("progress: ")]


@pytest.mark.parametrize(
    "size, expected",
    [(0, 0), (1, 1), (150_000, 1), (150_001, 2), (450_000, 3)],
)
def test_untar_units(size, expected):
    assert progress.untar_units(size) == expected


@pytest.mark.parametrize(
    "untar, expected",
    [(0, 0), (1, 2), (5, 2), (10, 2), (11, 4), (20, 4), (21, 6)],
)
def test_verify_units_round_up_to_even(untar, expected):
    assert progress.verify_units(untar) == expected


def test_emitter_is_monotonic_and_ignores_non_positive():
    stream = io.StringIO()
    emitter = progress.ProgressEmitter(stream)
    emitter.announce(12)
    emitter.emit(3)
    emitter.emit(0)
    emitter.emit(-4)
    emitter.emit(2)
    assert _lines(stream) == ["progress total: 12", "progress: 3", "progress: 5"]
    assert emitter.current == 5


def test_unit_scaler_carries_remainder():
    scaler = progress.UnitScaler(progress.Fraction(1, 10))
    assert scaler.advance(7) == 0
    assert scaler.advance(7) == 1
    assert scaler.advance(0) == 0
    assert scaler.finish() == 1
    assert scaler.finish() == 0


def test_removal_batches(monkeypatch):
    monkeypatch.setattr(progress, "UNITS_PER_UPDATE", 7)
    stream = io.StringIO()
    removal = progress.RemovalProgress(progress.ProgressEmitter(stream))
    for _ in range(14):
        removal.removed()
    removal.finish()
    assert _emitted(stream) == [7, 14]


def test_removal_flushes_partial_batch(monkeypatch):
    monkeypatch.setattr(progress, "UNITS_PER_UPDATE", 7)
    stream = io.StringIO()
    removal = progress.RemovalProgress(progress.ProgressEmitter(stream))
    for _ in range(9):
        removal.removed()
    removal.finish()
    assert _emitted(stream) == [7, 9]


@pytest.mark.parametrize("size", [1, 149_999, 150_000, 1_000_003, 2_250_000])
def test_extraction_progress_matches_estimate(size):
    stream = io.StringIO()
    emitter = progress.ProgressEmitter(stream)
    extraction = progress.ExtractionProgress(emitter)
    remaining = size
    while remaining:
        chunk = min(remaining, progress.WINDOW_SIZE)
        extraction.consume(chunk)
        remaining -= chunk
    extraction.finish()
    assert emitter.current == progress.untar_units(size)
    values = _emitted(stream)
    assert values == sorted(values)


def test_extraction_reports_every_n_windows():
    stream = io.StringIO()
    emitter = progress.ProgressEmitter(stream)
    extraction = progress.ExtractionProgress(emitter, window=100, windows_per_report=3)
    for _ in range(5):
        extraction.consume(100)
    # threshold of 300 bytes reached once; far below one unit, nothing emitted yet
    assert emitter.current == 0
    extraction.finish()
    assert emitter.current == 1


def test_verify_progress_first_check_passes():
    stream = io.StringIO()
    emitter = progress.ProgressEmitter(stream)
    vp = progress.VerifyProgress(emitter, 4)

    def check(on_progress):
        on_progress(50, 100)
        on_progress(100, 100)
        return True

    assert vp.run_check(check) is True
    assert emitter.current == 2
    vp.finish()
    assert emitter.current == 4


def test_verify_progress_fallback_check():
    emitter = progress.ProgressEmitter(io.StringIO())
    vp = progress.VerifyProgress(emitter, 6)

    def failing(on_progress):
        on_progress(10, 100)
        return False

    def passing(on_progress):
        on_progress(5, 10)
        return True

    assert vp.run_check(failing) is False
    assert emitter.current == 3
    assert vp.run_check(passing) is True
    vp.finish()
    assert emitter.current == 6


def test_verify_progress_odd_budget_and_no_events():
    emitter = progress.ProgressEmitter(io.StringIO())
    vp = progress.VerifyProgress(emitter, 3)
    vp.run_check(lambda on_progress: True)
    vp.finish()
    assert emitter.current == 3


def test_estimate_commands(make_payload, tmp_path):
    delta, delta_sig = make_payload({"system/a": b"a" * 10}, removed=["/system/x", "/system/y"], name="delta")
    full, full_sig = make_payload({"system/b": b"b"}, removed=["/system/z"], name="full")
    commands = [
        Command("update", (delta, delta_sig), 1),
        Command("format", ("system",), 2),
        Command("update", (full, full_sig), 3),
        Command("update", (str(tmp_path / "gone.tar.xz"), str(tmp_path / "gone.asc")), 4),
        Command("enable", ("mtp",), 5),
    ]
    estimates = progress.estimate_commands(commands, TarExtractor())
    assert set(estimates) == {commands[0], commands[2]}

    first = estimates[commands[0]]
    assert first.removal == 2
    assert first.untar == progress.untar_units(os.path.getsize(delta))
    assert first.verify == progress.verify_units(first.untar)

    assert estimates[commands[2]].removal == 0


def test_estimate_tolerates_damaged_payload(make_payload, tmp_path):
    payload, _ = make_payload({"system/a": b"a" * 4096}, removed=["/system/x"])
    damaged = tmp_path / "damaged.tar.gz"
    damaged.write_bytes(open(payload, "rb").read()[:30])

    estimate = progress.estimate_update(str(damaged), False, TarExtractor())

    assert estimate.removal == 0
    assert estimate.untar == 1
    assert estimate.verify == 2
