"""PODMIX Telemetry Tests — engine log scraping.

Loudness records, silence intervals, durations and the abort signature,
all fed with log text in ffmpeg's format.
"""

import math

import pytest

from podmix.engine.telemetry import (
    format_duration,
    is_abort_signature,
    parse_duration,
    parse_loudnorm_record,
    parse_silence_regions,
)
from podmix.errors import MeasurementParseError, TelemetryParseError

LOUDNORM_LOG = """\
Input #0, wav, from 'trim_a.wav':
  Duration: 00:00:58.00, bitrate: 705 kb/s
  Stream #0:0: Audio: pcm_s16le, 44100 Hz, mono, s16, 705 kb/s
[Parsed_loudnorm_0 @ 0x55d0c1a2b3c0]
{
	"input_i" : "-27.61",
	"input_tp" : "-4.47",
	"input_lra" : "18.06",
	"input_thresh" : "-39.20",
	"output_i" : "-16.58",
	"output_tp" : "-1.50",
	"output_lra" : "14.78",
	"output_thresh" : "-27.71",
	"normalization_type" : "dynamic",
	"target_offset" : "0.58"
}
size=N/A time=00:00:58.00 bitrate=N/A speed= 120x
"""


# ── Test 1: Loudness record extraction ───────────────────

def test_loudnorm_record_parsed():
    m = parse_loudnorm_record(LOUDNORM_LOG)
    assert m.integrated == pytest.approx(-27.61)
    assert m.true_peak == pytest.approx(-4.47)
    assert m.lra == pytest.approx(18.06)
    assert m.threshold == pytest.approx(-39.20)
    assert m.target_offset == pytest.approx(0.58)


def test_loudnorm_record_from_line_list():
    m = parse_loudnorm_record(LOUDNORM_LOG.splitlines())
    assert m.integrated == pytest.approx(-27.61)


def test_loudnorm_skips_malformed_brace_blocks():
    """Brace blocks before the record that are not JSON are ignored."""
    log = "[aist] {not json at all}\n" + '{"unrelated": 1}\n' + LOUDNORM_LOG
    assert parse_loudnorm_record(log).integrated == pytest.approx(-27.61)


def test_loudnorm_first_record_wins():
    second = LOUDNORM_LOG.replace("-27.61", "-20.00")
    assert parse_loudnorm_record(LOUDNORM_LOG + second).integrated == pytest.approx(-27.61)


def test_loudnorm_silence_reads_negative_infinity():
    log = LOUDNORM_LOG.replace('"-27.61"', '"-inf"')
    m = parse_loudnorm_record(log)
    assert math.isinf(m.integrated) and m.integrated < 0
    assert not m.is_finite


def test_loudnorm_missing_record_raises():
    with pytest.raises(MeasurementParseError):
        parse_loudnorm_record("Input #0, wav\nsize=N/A time=00:00:01.00\n")


def test_measurement_error_is_telemetry_error():
    with pytest.raises(TelemetryParseError):
        parse_loudnorm_record("")


# ── Test 2: Silence intervals ────────────────────────────

def test_silence_regions_paired():
    log = """\
[silencedetect @ 0x1] silence_start: 3.5
[silencedetect @ 0x1] silence_end: 7.5 | silence_duration: 4
[silencedetect @ 0x1] silence_start: 12.25
[silencedetect @ 0x1] silence_end: 15 | silence_duration: 2.75
"""
    regions = parse_silence_regions(log)
    assert [(r.start, r.end, r.duration) for r in regions] == [(3.5, 7.5, 4.0), (12.25, 15.0, 2.75)]


def test_silence_negative_start_clamped():
    log = "silence_start: -0.0213\nsilence_end: 2.5 | silence_duration: 2.5213\n"
    (region,) = parse_silence_regions(log)
    assert region.start == 0.0
    assert region.duration == pytest.approx(2.5)


def test_silence_unterminated_start_dropped():
    log = "silence_start: 1\nsilence_end: 4 | silence_duration: 3\nsilence_start: 9\n"
    assert len(parse_silence_regions(log)) == 1


def test_silence_none_found():
    assert parse_silence_regions("size=N/A time=00:00:10.00") == []


# ── Test 3: Durations ────────────────────────────────────

def test_duration_parsed():
    assert parse_duration("  Duration: 00:01:02.50, start: 0.000000") == pytest.approx(62.5)
    assert parse_duration("Duration: 01:00:00.00") == pytest.approx(3600.0)


def test_duration_first_occurrence_wins():
    log = "Duration: 00:00:10.00\nDuration: 00:00:20.00"
    assert parse_duration(log) == pytest.approx(10.0)


def test_duration_missing_raises():
    with pytest.raises(TelemetryParseError):
        parse_duration("Duration: N/A, bitrate: N/A")


def test_format_duration_matches_engine_banner():
    assert format_duration(62.5) == "00:01:02.50"
    assert format_duration(3723.456) == "01:02:03.46"
    assert parse_duration(f"Duration: {format_duration(58.0045)}") == pytest.approx(58.0)


# ── Test 4: Abort signature ──────────────────────────────

def test_abort_signature_detected():
    assert is_abort_signature("Aborted()")
    assert is_abort_signature("RuntimeError: Aborted(). Build with -sASSERTIONS for more info.")
    assert is_abort_signature("Assertion buf_size >= 0 failed at libavcodec/foo.c:12")


def test_ordinary_lines_are_not_aborts():
    assert not is_abort_signature("size=  1024kB time=00:00:05.00 bitrate=1411.2kbits/s")
    assert not is_abort_signature("[concat @ 0x1] abort not requested")


# ── Test 5: Log capture ──────────────────────────────────

def test_log_capture_collects_and_detaches(engine):
    with engine.capture_log() as log:
        engine.emit("first")
        engine.emit("second")
    engine.emit("after")
    assert log.lines == ["first", "second"]
    assert "second" in log.text
