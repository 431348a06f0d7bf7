"""Segment planning, marker validation and the stretch engine."""
from unittest.mock import MagicMock

import numpy as np
import pytest

from beatwarp.backend import PcmBackend
from beatwarp.errors import BackendUnavailable, InvalidMapping, RenderFailure
from beatwarp.models import Algorithm, PcmBuffer, StretchOptions
from beatwarp.warp import expected_duration, map_time, plan_segments, stretch, validate_markers

from conftest import SR, dominant_freq, marker, requires_rubberband, sine

OLA = StretchOptions(algorithm=Algorithm.OVERLAP_ADD)


class TestValidateMarkers:
    def test_sorts_by_source_time(self):
        ordered = validate_markers([marker(5, 6), marker(1, 1.5)])
        assert [m.source_time for m in ordered] == [1, 5]

    def test_decreasing_target_rejected(self):
        with pytest.raises(InvalidMapping) as exc:
            validate_markers([marker(1, 2), marker(2, 1.5)])
        assert exc.value.data["target_time"] == 1.5

    def test_zero_ratio_rejected(self):
        with pytest.raises(InvalidMapping):
            validate_markers([marker(1, 1), marker(2, 1)])

    def test_zero_ratio_against_origin_rejected(self):
        with pytest.raises(InvalidMapping):
            validate_markers([marker(1, 0)])

    def test_duplicate_ids_rejected(self):
        with pytest.raises(InvalidMapping):
            validate_markers([marker(1, 1, "a"), marker(2, 2, "a")])

    @pytest.mark.parametrize("source,target", [(-1.0, 1.0), (1.0, -0.5), (float("nan"), 1.0)])
    def test_invalid_times_rejected(self, source, target):
        with pytest.raises(InvalidMapping):
            validate_markers([marker(source, target, "bad")])

    def test_marker_past_end_rejected(self):
        with pytest.raises(InvalidMapping):
            validate_markers([marker(12, 12)], duration=10.0)

    def test_equal_source_times_allowed(self):
        ordered = validate_markers([marker(2, 2, "a"), marker(2, 2.5, "b"), marker(4, 5)])
        assert len(ordered) == 3


class TestPlanSegments:
    def test_implicit_origin_and_tail(self):
        segs = plan_segments(validate_markers([marker(2, 3)]), 10 * SR, SR)
        assert len(segs) == 2
        assert segs[0].start_frame == 0
        assert segs[0].ratio == pytest.approx(1.5)
        assert segs[1].is_tail
        assert segs[1].stop_frame == 10 * SR
        assert segs[1].target_frames == 8 * SR

    def test_segments_are_contiguous(self):
        ms = validate_markers([marker(1, 1.1), marker(2.5, 2.4), marker(7, 8)])
        segs = plan_segments(ms, 10 * SR, SR)
        for a, b in zip(segs, segs[1:]):
            assert a.stop_frame == b.start_frame
        assert sum(s.target_frames for s in segs) == round(8 * SR) + (10 * SR - round(7 * SR))

    def test_zero_length_segment_skipped(self):
        ms = validate_markers([marker(2, 2, "a"), marker(2, 2.5, "b")])
        segs = plan_segments(ms, 10 * SR, SR)
        assert all(s.source_frames > 0 for s in segs)

    def test_expected_duration(self):
        assert expected_duration([marker(5, 6)], 10.0) == pytest.approx(11.0)
        assert expected_duration([], 10.0) == 10.0

    def test_map_time_interpolates_between_markers(self):
        ms = validate_markers([marker(2, 3), marker(6, 6)])
        assert map_time(ms, 1.0) == pytest.approx(1.5)
        assert map_time(ms, 4.0) == pytest.approx(4.5)
        assert map_time(ms, 8.0) == pytest.approx(8.0)
        assert map_time([], 3.0) == 3.0


class TestStretch:
    def test_output_duration_matches_mapping(self, ramp_buffer):
        out = stretch(ramp_buffer, [marker(3, 4), marker(6, 6.5)], OLA)
        sr = ramp_buffer.sample_rate
        assert out.frames == round(6.5 * sr) + (ramp_buffer.frames - round(6 * sr))
        assert out.channels == 2

    def test_identity_mapping_is_bit_exact(self, ramp_buffer):
        out = stretch(ramp_buffer, [marker(2, 2), marker(5, 5)], OLA)
        np.testing.assert_array_equal(out.samples, ramp_buffer.samples)

    def test_unchanged_tail_after_stretched_head(self, ramp_buffer):
        sr = ramp_buffer.sample_rate
        out = stretch(ramp_buffer, [marker(0, 0), marker(5, 6), marker(10, 11)], OLA)
        assert out.duration == pytest.approx(11.0)
        np.testing.assert_array_equal(out.samples[6 * sr:11 * sr], ramp_buffer.samples[5 * sr:10 * sr])

    def test_unchanged_head_before_stretched_tail(self, ramp_buffer):
        sr = ramp_buffer.sample_rate
        out = stretch(ramp_buffer, [marker(0, 0), marker(5, 5), marker(10, 11)], OLA)
        assert out.duration == pytest.approx(11.0)
        np.testing.assert_array_equal(out.samples[:5 * sr], ramp_buffer.samples[:5 * sr])

    def test_empty_markers_copy_without_stretching(self, ramp_buffer):
        backend = MagicMock(wraps=PcmBackend())
        out = stretch(ramp_buffer, [], OLA, backend=backend)
        np.testing.assert_array_equal(out.samples, ramp_buffer.samples)
        backend.apply_time_stretch.assert_not_called()

    def test_empty_markers_with_pitch_keeps_length(self, ramp_buffer):
        backend = MagicMock(wraps=PcmBackend())
        out = stretch(ramp_buffer, [], OLA.with_pitch(3.0), backend=backend)
        assert out.frames == ramp_buffer.frames
        backend.apply_time_stretch.assert_called_once()

    def test_tiny_segment_length(self, ramp_buffer):
        out = stretch(ramp_buffer, [marker(0.01, 0.02)], OLA)
        assert out.frames == 20 + (ramp_buffer.frames - 10)

    def test_pitch_shift_reaches_tiny_head_segment(self):
        source = PcmBuffer(sine(440.0, duration=1.0), SR)
        opts = StretchOptions(algorithm=Algorithm.OVERLAP_ADD, pitch_shift=12.0)
        out = stretch(source, [marker(0.03, 0.03), marker(0.5, 0.5)], opts)
        head = int(round(0.03 * SR))
        assert out.frames == source.frames
        assert not np.allclose(out.samples[:head], source.samples[:head])
        assert dominant_freq(out.samples[:head, 0]) == pytest.approx(880.0, abs=50.0)
        body = out.samples[head:int(round(0.5 * SR)), 0]
        assert dominant_freq(body) == pytest.approx(880.0, abs=30.0)

    def test_parallel_render_matches_sequential(self, ramp_buffer):
        ms = [marker(2, 2.5), marker(4, 4.2), marker(7, 8)]
        seq = stretch(ramp_buffer, ms, OLA)
        par = stretch(ramp_buffer, ms, StretchOptions(algorithm=Algorithm.OVERLAP_ADD, workers=4))
        np.testing.assert_array_equal(seq.samples, par.samples)

    def test_headroom_limits_peak(self, ramp_buffer):
        opts = StretchOptions(algorithm=Algorithm.OVERLAP_ADD, headroom_db=6.0)
        out = stretch(ramp_buffer, [marker(5, 6)], opts)
        assert np.max(np.abs(out.samples)) <= 10 ** (-6.0 / 20.0) + 1e-6

    def test_invalid_mapping_raised_before_any_read(self):
        backend = MagicMock(wraps=PcmBackend())
        with pytest.raises(InvalidMapping):
            stretch("/does/not/exist.wav", [marker(1, 2), marker(2, 1)], OLA, backend=backend)
        backend.probe.assert_not_called()

    def test_marker_past_end_of_source(self, ramp_buffer):
        with pytest.raises(InvalidMapping):
            stretch(ramp_buffer, [marker(12, 13)], OLA)

    def test_segment_failure_reports_index(self, ramp_buffer):
        backend = MagicMock(wraps=PcmBackend())
        backend.apply_time_stretch.side_effect = RuntimeError("boom")
        with pytest.raises(RenderFailure) as exc:
            stretch(ramp_buffer, [marker(5, 6)], OLA, backend=backend)
        assert exc.value.segment_index == 0
        assert exc.value.algorithm == "overlap-add"

    def test_missing_rubberband_is_backend_unavailable(self, ramp_buffer):
        backend = PcmBackend(rubberband_exe="/nonexistent/rubberband")
        with pytest.raises(BackendUnavailable):
            stretch(ramp_buffer, [marker(5, 6)], StretchOptions(algorithm=Algorithm.HIGH_QUALITY), backend=backend)

    def test_missing_rubberband_fails_even_for_pure_copy(self, ramp_buffer):
        backend = PcmBackend(rubberband_exe="/nonexistent/rubberband")
        with pytest.raises(BackendUnavailable):
            stretch(ramp_buffer, [], StretchOptions(algorithm=Algorithm.HIGH_QUALITY), backend=backend)

    @pytest.mark.slow
    def test_phase_vocoder_on_stereo_file(self, stereo_wav, backend):
        meta = backend.probe(stereo_wav)
        out = stretch(stereo_wav, [marker(5, 6)], StretchOptions(algorithm=Algorithm.PHASE_VOCODER))
        assert out.channels == 2
        assert out.frames == round(6 * SR) + (meta.frames - round(5 * SR))
        assert np.all(np.isfinite(out.samples))

    @pytest.mark.slow
    @requires_rubberband
    def test_rubberband_with_pitch_and_formants(self, stereo_wav, backend):
        meta = backend.probe(stereo_wav)
        opts = StretchOptions(algorithm=Algorithm.HIGH_QUALITY, pitch_shift=-2.0, preserve_formants=True)
        out = stretch(stereo_wav, [marker(4, 5)], opts)
        assert out.frames == round(5 * SR) + (meta.frames - round(4 * SR))


def test_pcm_buffer_source_and_file_source_agree(tmp_path, ramp_buffer):
    import soundfile as sf
    path = tmp_path / "ramp.wav"
    sf.write(str(path), ramp_buffer.samples, ramp_buffer.sample_rate, subtype="FLOAT")
    from_file = stretch(path, [marker(2, 2.5)], OLA)
    from_buffer = stretch(ramp_buffer, [marker(2, 2.5)], OLA)
    assert isinstance(from_file, PcmBuffer)
    np.testing.assert_allclose(from_file.samples, from_buffer.samples, atol=1e-6)
