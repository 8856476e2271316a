"""PODMIX Engine Tests — native backend, health state machine, handle lifecycle."""

import numpy as np
import pytest

from audio_fixtures import SR, read_audio, tone, wav_bytes


# ── Test 1: Buffer store ─────────────────────────────────

def test_native_buffer_store(engine):
    engine.write_file("a.wav", b"abc")
    assert engine.exists("a.wav")
    assert engine.read_file("a.wav") == b"abc"
    assert engine.list_files() == ["a.wav"]
    engine.delete_file("a.wav")
    assert engine.list_files() == []


def test_missing_buffer_is_workspace_error(engine):
    from podmix.errors import WorkspaceError

    with pytest.raises(WorkspaceError):
        engine.read_file("nope.wav")
    with pytest.raises(WorkspaceError):
        engine.delete_file("nope.wav")


def test_unstarted_engine_refuses_work():
    from podmix.engine.graph import FilterGraph
    from podmix.engine.native import NativeEngine
    from podmix.errors import EngineNotStartedError

    eng = NativeEngine()
    with pytest.raises(EngineNotStartedError):
        eng.write_file("x", b"1")
    with pytest.raises(EngineNotStartedError):
        eng.execute(FilterGraph.chain("x"))


def test_dispose_drops_buffers(engine):
    engine.write_file("a.wav", b"abc")
    engine.dispose()
    assert not engine.started
    assert engine.list_files() == []


# ── Test 2: Health state machine ─────────────────────────

def test_health_transitions_are_one_way():
    from podmix.engine.base import EngineHealth, HealthState

    h = HealthState()
    assert h.state is EngineHealth.HEALTHY
    assert h.transition(EngineHealth.DEGRADED)
    assert not h.transition(EngineHealth.HEALTHY)
    assert h.transition(EngineHealth.ABORTED)
    assert not h.transition(EngineHealth.DEGRADED)
    assert not h.transition(EngineHealth.HEALTHY)
    assert h.state is EngineHealth.ABORTED


def test_failed_command_degrades(engine):
    from podmix.engine.base import EngineHealth
    from podmix.engine.graph import FilterGraph
    from podmix.errors import EngineError

    with pytest.raises(EngineError):
        engine.execute(FilterGraph.chain("missing.wav"))
    assert engine.health is EngineHealth.DEGRADED

    # A degraded engine still accepts commands
    engine.write_file("t.wav", wav_bytes(tone(0.5)))
    engine.execute(FilterGraph.chain("t.wav"))
    assert engine.health is EngineHealth.DEGRADED


def test_abort_signature_in_log_aborts(engine):
    from podmix.engine.base import EngineHealth
    from podmix.engine.graph import FilterGraph
    from podmix.errors import EngineAbortedError

    engine.emit("RuntimeError: Aborted(). Build with -sASSERTIONS for more info.")
    assert engine.health is EngineHealth.ABORTED
    engine.write_file("t.wav", wav_bytes(tone(0.5)))
    with pytest.raises(EngineAbortedError):
        engine.execute(FilterGraph.chain("t.wav"))


def test_anlmdn_unavailable_natively(engine):
    from podmix.engine.base import EngineHealth
    from podmix.engine.graph import FilterGraph, NLMeansDenoise
    from podmix.errors import EngineAbortedError, EngineError

    engine.write_file("t.wav", wav_bytes(tone(0.5)))
    with engine.capture_log() as log:
        with pytest.raises(EngineError) as info:
            engine.execute(FilterGraph.chain("t.wav", (NLMeansDenoise(0.005),)))
    assert not isinstance(info.value, EngineAbortedError)
    assert any("No such filter" in line for line in log.lines)
    assert engine.health is EngineHealth.DEGRADED


# ── Test 3: Native graph execution ───────────────────────

def test_input_banner_reports_duration(engine):
    from podmix.engine.graph import FilterGraph
    from podmix.engine.telemetry import parse_duration

    engine.write_file("t.wav", wav_bytes(tone(2.5)))
    with engine.capture_log() as log:
        engine.execute(FilterGraph.chain("t.wav"))
    assert parse_duration(log.lines) == pytest.approx(2.5)


def test_seek_and_output_format(engine):
    from podmix.engine.graph import FilterGraph, InputSpec, OutputSpec

    stereo = np.column_stack([tone(3.0), tone(3.0)])
    engine.write_file("s.wav", wav_bytes(stereo))
    engine.execute(FilterGraph.chain(
        InputSpec("s.wav", seek=1.0), output=OutputSpec("o.wav", sample_rate=48000, channels=1),
    ))
    data, sr = read_audio(engine.read_file("o.wav"))
    assert sr == 48000
    assert data.shape[1] == 1
    assert len(data) / sr == pytest.approx(2.0, abs=1e-3)


def test_mix_follows_first_input(engine):
    from podmix.engine.graph import Branch, FilterGraph, InputSpec, Mix, OutputSpec

    engine.write_file("a.wav", wav_bytes(tone(1.0, amp=0.2, freq=220)))
    engine.write_file("b.wav", wav_bytes(tone(0.5, amp=0.2, freq=220)))
    engine.execute(FilterGraph(
        inputs=(InputSpec("a.wav"), InputSpec("b.wav")),
        branches=(Branch(0), Branch(1)),
        combine=Mix(),
        output=OutputSpec("m.wav"),
    ))
    data, sr = read_audio(engine.read_file("m.wav"))
    assert len(data) == SR
    # Unweighted sum: identical in-phase tones double
    assert np.max(np.abs(data[: SR // 2])) == pytest.approx(0.4, abs=1e-3)
    assert np.max(np.abs(data[SR // 2 + 10:])) == pytest.approx(0.2, abs=1e-3)


def test_concat_is_sample_accurate(engine):
    from podmix.engine.graph import Branch, Concat, FilterGraph, InputSpec, OutputSpec

    a, b = tone(0.7), tone(0.3, freq=880)
    engine.write_file("a.wav", wav_bytes(a))
    engine.write_file("b.wav", wav_bytes(b))
    engine.execute(FilterGraph(
        inputs=(InputSpec("a.wav"), InputSpec("b.wav")),
        branches=(Branch(0), Branch(1)),
        combine=Concat(),
        output=OutputSpec("c.wav"),
    ))
    data, _ = read_audio(engine.read_file("c.wav"))
    assert len(data) == len(a) + len(b)


def test_looped_input_fills_trim(engine):
    from podmix.engine.graph import FilterGraph, InputSpec, OutputSpec, Trim

    engine.write_file("short.wav", wav_bytes(tone(0.3)))
    engine.execute(FilterGraph.chain(
        InputSpec("short.wav", loop=True), (Trim(0.0, 1.0),), output=OutputSpec("l.wav"),
    ))
    data, sr = read_audio(engine.read_file("l.wav"))
    assert len(data) == sr


def test_wav_round_trip_is_lossless(engine):
    from podmix.engine.graph import FilterGraph, OutputSpec

    original = wav_bytes(tone(1.0, amp=0.5))
    engine.write_file("t.wav", original)
    engine.execute(FilterGraph.chain("t.wav", output=OutputSpec("copy.wav")))
    a, _ = read_audio(original)
    b, _ = read_audio(engine.read_file("copy.wav"))
    np.testing.assert_array_equal(a, b)


# ── Test 4: Handle lifecycle ─────────────────────────────

def test_handle_requires_start():
    from podmix.engine.handle import EngineHandle
    from podmix.engine.native import NativeEngine
    from podmix.errors import EngineNotStartedError

    handle = EngineHandle(NativeEngine)
    with pytest.raises(EngineNotStartedError):
        handle.engine
    assert not handle.started


def test_handle_reinitialize_replaces_instance():
    from podmix.engine.base import EngineHealth
    from podmix.engine.handle import EngineHandle
    from podmix.engine.native import NativeEngine

    with EngineHandle(NativeEngine) as handle:
        first = handle.engine
        first.emit("Aborted()")
        assert handle.health is EngineHealth.ABORTED

        second = handle.ensure_healthy()
        assert second is not first
        assert not first.started
        assert handle.health is EngineHealth.HEALTHY
        assert handle.generation == 2
    assert not handle.started


def test_ensure_healthy_keeps_good_instance():
    from podmix.engine.handle import EngineHandle
    from podmix.engine.native import NativeEngine

    with EngineHandle(NativeEngine) as handle:
        engine = handle.engine
        assert handle.ensure_healthy() is engine
        assert handle.generation == 1


def test_create_engine_backends():
    from podmix.config import Settings
    from podmix.engine import create_engine
    from podmix.engine.ffmpeg import FFmpegEngine
    from podmix.engine.native import NativeEngine

    assert isinstance(create_engine(Settings(engine_backend="native")), NativeEngine)
    eng = create_engine(Settings(engine_backend="ffmpeg", ffmpeg_binary="/opt/ffmpeg/bin/ffmpeg"))
    assert isinstance(eng, FFmpegEngine)
    assert eng.binary == "/opt/ffmpeg/bin/ffmpeg"
    with pytest.raises(ValueError):
        create_engine(Settings(engine_backend="gstreamer"))


def test_ffmpeg_missing_binary_fails_start():
    from podmix.engine.ffmpeg import FFmpegEngine
    from podmix.errors import EngineError

    with pytest.raises(EngineError):
        FFmpegEngine("definitely-not-ffmpeg-podmix").start()
