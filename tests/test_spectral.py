"""PODMIX Spectral Subtraction Tests."""

import numpy as np
import pytest

from audio_fixtures import SR, noise, read_audio, rms_db, tone, wav_bytes


# ── Test 1: Threshold → sensitivity ──────────────────────

def test_sensitivity_mapping():
    from podmix.pipeline.spectral import sensitivity_from_threshold

    assert sensitivity_from_threshold(-60) == pytest.approx(1.5)
    assert sensitivity_from_threshold(-45) == pytest.approx(2.25)
    assert sensitivity_from_threshold(-30) == pytest.approx(3.0)
    # Clamped outside the range
    assert sensitivity_from_threshold(-90) == pytest.approx(1.5)
    assert sensitivity_from_threshold(0) == pytest.approx(3.0)


# ── Test 2: Reconstruction ───────────────────────────────

def test_zero_sensitivity_is_identity():
    """With nothing subtracted, analysis/synthesis reconstructs the input."""
    from podmix.pipeline.spectral import spectral_subtract

    x = tone(1.0, amp=0.3) + noise(1.0, amp=0.01)
    y = spectral_subtract(x, SR, 0.0)
    assert len(y) == len(x)
    np.testing.assert_allclose(y, x, atol=1e-9)


def test_length_preserved_for_odd_sizes():
    from podmix.pipeline.spectral import spectral_subtract

    for n in (1, 777, 2048, 2049, 12345):
        assert len(spectral_subtract(noise(n / SR), SR, 2.0)) == n


def test_empty_input():
    from podmix.pipeline.spectral import spectral_subtract

    assert len(spectral_subtract(np.zeros(0), SR, 2.0)) == 0


# ── Test 3: Noise reduction behavior ─────────────────────

def test_noise_floor_reduced_signal_kept():
    from podmix.pipeline.spectral import spectral_subtract

    hiss = noise(6.0, amp=0.01, seed=3)
    speech = np.zeros_like(hiss)
    speech[2 * SR:4 * SR] = tone(2.0, amp=0.3, freq=300)
    y = spectral_subtract(speech + hiss, SR, 2.0)

    quiet_before = rms_db(hiss[SR // 2:int(1.5 * SR)])
    quiet_after = rms_db(y[SR // 2:int(1.5 * SR)])
    assert quiet_after < quiet_before - 6

    loud_before = rms_db((speech + hiss)[int(2.5 * SR):int(3.5 * SR)])
    loud_after = rms_db(y[int(2.5 * SR):int(3.5 * SR)])
    assert abs(loud_after - loud_before) < 1.0


def test_silence_is_never_amplified():
    from podmix.pipeline.spectral import spectral_subtract

    x = np.zeros(3 * SR)
    x[SR:2 * SR] = noise(1.0, amp=0.05)
    y = spectral_subtract(x, SR, 3.0)
    assert np.all(np.isfinite(y))
    assert np.max(np.abs(y[: SR // 2])) < 1e-9


def test_speech_kept_when_track_has_digital_silence():
    """A trimmed take that starts on speech and ends in exact zeros."""
    from podmix.pipeline.spectral import spectral_subtract

    x = np.zeros(10 * SR)
    x[:SR] = tone(1.0, amp=0.1, freq=300)
    y = spectral_subtract(x, SR, 3.0)
    assert rms_db(y[SR // 10:int(0.9 * SR)]) > rms_db(x[SR // 10:int(0.9 * SR)]) - 3


def test_noise_profile_takes_quietest_frames():
    from podmix.pipeline.spectral import FRAME_SIZE, MIN_NOISE_FRAMES, _frame_starts, _noise_frames

    n = 3 * SR
    starts, _ = _frame_starts(n)
    interior = np.flatnonzero((starts >= FRAME_SIZE) & (starts + FRAME_SIZE <= FRAME_SIZE + n))

    # Ties at zero still give the full frame count
    idx = _noise_frames(np.zeros(len(starts)), starts, n, SR)
    assert len(idx) == max(int(len(interior) * 0.1), MIN_NOISE_FRAMES)
    assert set(idx) <= set(interior)

    energy = np.ones(len(starts))
    quiet = interior[-15:]
    energy[quiet] = 0.0
    idx = _noise_frames(energy, starts, n, SR)
    assert set(quiet) <= set(idx)


def test_noise_profile_falls_back_for_sub_frame_tracks():
    from podmix.pipeline.spectral import FRAME_SIZE, _frame_energy, _frame_starts, _noise_frames

    n = 1000
    starts, padded_len = _frame_starts(n)
    idx = _noise_frames(np.ones(len(starts)), starts, n, SR)
    assert len(idx) > 0
    assert np.all(starts[idx] < FRAME_SIZE + SR)
    assert _frame_energy(np.zeros(padded_len), starts).shape == starts.shape


# ── Test 4: Buffer wrapper ───────────────────────────────

def test_buffer_keeps_rate_and_channels():
    from podmix.pipeline.spectral import spectral_denoise_buffer

    stereo = np.column_stack([tone(1.0, amp=0.2), tone(1.0, amp=0.2, freq=660)]) + 0.005
    out, sr = read_audio(spectral_denoise_buffer(wav_bytes(stereo, sr=22050), -50.0))
    assert sr == 22050
    assert out.shape == stereo.shape


def test_audio_track_record():
    from podmix.models import AudioTrack

    stereo = np.column_stack([tone(0.5, amp=0.2), tone(0.5, amp=0.2)])
    track = AudioTrack.from_bytes(wav_bytes(stereo, sr=22050))
    assert track.channels == 2 and track.sample_rate == 22050
    assert track.duration == pytest.approx(len(stereo) / 22050)
    np.testing.assert_allclose(track.mono(), track.samples[:, 0], atol=1e-4)
    again, sr = read_audio(track.to_wav_bytes())
    assert sr == 22050 and again.shape == stereo.shape
