"""PODMIX Loudness Tests — EBU R128 measurement and normalization."""

import math

import numpy as np
import pytest

from audio_fixtures import SR, lufs, noise, read_audio, tone, wav_bytes


# ── Test 1: Measurement pass ─────────────────────────────

def test_measurement_matches_meter(engine):
    from podmix.pipeline.loudness import measure_loudness

    x = tone(5.0, amp=0.1, freq=1000)
    engine.write_file("t.wav", wav_bytes(x))
    m = measure_loudness(engine, "t.wav", -16, -1.5, 11)
    assert m.integrated == pytest.approx(lufs(x, SR), abs=0.05)
    assert m.true_peak == pytest.approx(-20.0, abs=0.2)
    assert m.threshold == pytest.approx(m.integrated - 10, abs=0.02)
    assert m.is_finite
    # Measurement only; no buffer written
    assert engine.list_files() == ["t.wav"]


def test_silence_measures_negative_infinity(engine):
    from podmix.pipeline.loudness import measure_loudness

    engine.write_file("s.wav", wav_bytes(np.zeros(3 * SR)))
    m = measure_loudness(engine, "s.wav", -16, -1.5, 11)
    assert math.isinf(m.integrated) and m.integrated < 0


# ── Test 2: Two-pass normalization ───────────────────────

@pytest.mark.parametrize("amp", [0.02, 0.1, 0.3])
def test_two_pass_hits_target(engine, amp):
    from podmix.pipeline.loudness import normalize_loudness

    x = tone(6.0, amp=amp, freq=500) + noise(6.0, amp=amp / 20)
    engine.write_file("in.wav", wav_bytes(x))
    measured = normalize_loudness(engine, "in.wav", "out.wav", target_i=-16, target_tp=-1.5, target_lra=11)
    assert measured.integrated == pytest.approx(lufs(x, SR), abs=0.1)

    out, sr = read_audio(engine.read_file("out.wav"))
    assert sr == 48000 and out.shape[1] == 1
    assert lufs(out, sr) == pytest.approx(-16.0, abs=0.5)


def test_true_peak_ceiling_respected(engine):
    """A crest-heavy signal gains up to target but peaks stay under the ceiling."""
    from podmix.pipeline.loudness import normalize_loudness

    x = noise(6.0, amp=0.01)
    x[::4410] = 0.25
    engine.write_file("in.wav", wav_bytes(x))
    normalize_loudness(engine, "in.wav", "out.wav", target_i=-16, target_tp=-1.5)
    out, _ = read_audio(engine.read_file("out.wav"))
    # Unlimited, the spikes would land near 3.0
    assert np.max(np.abs(out)) < 0.95


def test_single_pass(engine):
    from podmix.pipeline.loudness import normalize_loudness_single_pass

    x = tone(6.0, amp=0.05, freq=500)
    engine.write_file("in.wav", wav_bytes(x))
    normalize_loudness_single_pass(engine, "in.wav", "out.wav", target_i=-18)
    out, sr = read_audio(engine.read_file("out.wav"))
    assert lufs(out, sr) == pytest.approx(-18.0, abs=0.5)


def test_missing_record_raises(engine):
    """An engine that prints no measurement JSON fails the stage."""
    from podmix.engine.native import NativeEngine
    from podmix.errors import MeasurementParseError
    from podmix.pipeline.loudness import measure_loudness

    class QuietEngine(NativeEngine):
        def emit(self, line):
            if line.strip().startswith(("{", "}", '"')):
                return
            super().emit(line)

    eng = QuietEngine()
    eng.start()
    try:
        eng.write_file("t.wav", wav_bytes(tone(3.0)))
        with pytest.raises(MeasurementParseError):
            measure_loudness(eng, "t.wav", -16, -1.5, 11)
    finally:
        eng.dispose()
