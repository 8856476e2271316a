"""PODMIX Trim Tests — clap onset detection and cut points."""

import numpy as np
import pytest

from audio_fixtures import SR, noise, read_audio, speaker_track, tone, wav_bytes, with_clap


# ── Test 1: Envelope and onset ───────────────────────────

def test_rms_envelope_window():
    from podmix.pipeline.trim import rms_envelope

    x = np.ones(1000)
    env = rms_envelope(x, 44100)
    assert len(env) == 1000 - 220 + 1
    np.testing.assert_allclose(env, 1.0)


def test_onset_at_clap():
    from podmix.pipeline.trim import detect_onset

    x = with_clap(noise(3.0, amp=1e-3), onset=1.0)
    onset = detect_onset(x, SR, -10.0)
    # The window reaches threshold a little before the clap's first sample
    assert 0.995 <= onset <= 1.0


def test_onset_ignores_quiet_speech_before_clap():
    from podmix.pipeline.trim import detect_onset

    x = np.concatenate([tone(1.0, amp=0.05), np.zeros(SR)])
    x = with_clap(x, onset=1.5)
    assert detect_onset(x, SR, -10.0) == pytest.approx(1.5, abs=0.006)


def test_silent_track_raises():
    from podmix.errors import OnsetNotDetected
    from podmix.pipeline.trim import detect_onset

    with pytest.raises(OnsetNotDetected):
        detect_onset(np.zeros(SR), SR, -10.0)


def test_impossible_threshold_raises():
    """A threshold above the peak can never be crossed."""
    from podmix.errors import OnsetNotDetected
    from podmix.pipeline.trim import detect_onset

    with pytest.raises(OnsetNotDetected):
        detect_onset(tone(1.0), SR, 3.0)


def test_stereo_is_folded():
    from podmix.pipeline.trim import detect_onset

    mono = with_clap(np.zeros(2 * SR), onset=0.5)
    onset = detect_onset(np.column_stack([mono, mono]), SR, -10.0)
    assert onset == pytest.approx(detect_onset(mono, SR, -10.0))


# ── Test 2: Cut point ────────────────────────────────────

def test_cut_after_clap():
    from podmix.pipeline.trim import cut_point

    assert cut_point(2.0, 0.5, 1.0) == pytest.approx(3.0)


def test_margin_before_clap_when_no_post_cut():
    from podmix.pipeline.trim import cut_point

    assert cut_point(2.0, 0.5, 0.0) == pytest.approx(1.5)
    assert cut_point(0.2, 0.5, 0.0) == 0.0


# ── Test 3: Engine-backed sync ───────────────────────────

def test_sync_and_trim_cuts_each_track(engine):
    from podmix.pipeline.trim import sync_and_trim

    a = speaker_track(10.0, onset=1.0, turns=[(3, 10)], freq=220)
    b = speaker_track(10.0, onset=2.0, turns=[(4, 10)], freq=330)
    engine.write_file("in_a", wav_bytes(a))
    engine.write_file("in_b", wav_bytes(b))

    result = sync_and_trim(engine, "in_a", "in_b", "trim_a.wav", "trim_b.wav",
                           threshold_db=-10.0, pre_margin=0.5, post_cut=1.0)

    assert result.onset_a == pytest.approx(1.0, abs=0.006)
    assert result.onset_b == pytest.approx(2.0, abs=0.006)
    assert result.cut_a == pytest.approx(result.onset_a + 1.0)

    out_a, sr = read_audio(engine.read_file("trim_a.wav"))
    out_b, _ = read_audio(engine.read_file("trim_b.wav"))
    assert sr == 44100 and out_a.shape[1] == 1
    assert len(out_a) / sr == pytest.approx(10.0 - result.cut_a, abs=1e-3)
    assert len(out_b) / sr == pytest.approx(10.0 - result.cut_b, abs=1e-3)
    # Clap is gone from both
    assert np.max(np.abs(out_a)) < 0.2
    assert np.max(np.abs(out_b)) < 0.2
    # Detection probes are cleaned up
    assert sorted(engine.list_files()) == ["in_a", "in_b", "trim_a.wav", "trim_b.wav"]


def test_sync_names_the_failing_speaker(engine):
    from podmix.errors import OnsetNotDetected
    from podmix.pipeline.trim import sync_and_trim

    engine.write_file("in_a", wav_bytes(with_clap(np.zeros(2 * SR), 0.5)))
    engine.write_file("in_b", wav_bytes(np.zeros(2 * SR)))
    with pytest.raises(OnsetNotDetected, match="Speaker B"):
        sync_and_trim(engine, "in_a", "in_b", "ta", "tb")
    # Neither track is cut when either clap is missing
    assert sorted(engine.list_files()) == ["in_a", "in_b"]


def test_detect_window_limits_search(engine):
    """A clap past the detection window is not found."""
    from podmix.errors import OnsetNotDetected
    from podmix.pipeline.trim import sync_and_trim

    late = with_clap(np.zeros(5 * SR), 4.0)
    engine.write_file("in_a", wav_bytes(late))
    engine.write_file("in_b", wav_bytes(late))
    with pytest.raises(OnsetNotDetected):
        sync_and_trim(engine, "in_a", "in_b", "ta", "tb", detect_window=2.0)


def test_preview_clip(engine):
    from podmix.pipeline.trim import clip_preview

    engine.write_file("t.wav", wav_bytes(tone(5.0)))
    clip_preview(engine, "t.wav", "p.wav", 2.0)
    data, sr = read_audio(engine.read_file("p.wav"))
    assert len(data) == 2 * sr
