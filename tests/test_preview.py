"""Preview rendering of a window of the warped clip."""
from unittest.mock import MagicMock

import numpy as np
import pytest

from beatwarp.backend import PcmBackend
from beatwarp.errors import InvalidMapping, InvalidOptions
from beatwarp.models import Algorithm, StretchOptions
from beatwarp.preview import preview

from conftest import marker

OLA = StretchOptions(algorithm=Algorithm.OVERLAP_ADD)


class TestPreview:
    def test_only_window_is_read(self, ramp_buffer):
        backend = MagicMock(wraps=PcmBackend())
        preview(ramp_buffer, [marker(3, 3), marker(5, 5.5)], 2.0, 6.0, OLA, backend=backend)
        backend.extract_range.assert_called_once_with(ramp_buffer, 2.0, 4.0)
        full_reads = [c for c in backend.extract_frames.call_args_list if c.args[0] is ramp_buffer]
        assert full_reads == []

    def test_markers_rebased_to_window(self, ramp_buffer):
        out = preview(ramp_buffer, [marker(3, 3), marker(5, 5.5)], 2.0, 6.0, OLA)
        # window holds 4s of source; the 3..5 segment grows by 0.5s
        assert out.frames == 4500

    def test_markers_outside_window_ignored(self, ramp_buffer):
        out = preview(ramp_buffer, [marker(8, 9)], 1.0, 3.0, OLA)
        np.testing.assert_array_equal(out.samples, ramp_buffer.samples[1000:3000])

    def test_end_clamped_to_duration(self, ramp_buffer):
        out = preview(ramp_buffer, [], 8.0, 20.0, OLA)
        assert out.frames == 2000

    @pytest.mark.parametrize("start,end", [(-1.0, 2.0), (3.0, 3.0), (5.0, 2.0)])
    def test_invalid_window(self, ramp_buffer, start, end):
        with pytest.raises(InvalidOptions):
            preview(ramp_buffer, [], start, end, OLA)

    def test_window_past_end(self, ramp_buffer):
        with pytest.raises(InvalidOptions):
            preview(ramp_buffer, [], 12.0, 14.0, OLA)

    def test_marker_pulled_before_window_start(self, ramp_buffer):
        # 0..3 maps onto 0..1, so the window starts at target 2/3
        out = preview(ramp_buffer, [marker(3, 1)], 2.0, 5.0, OLA)
        assert abs(out.frames - 2333) <= 1

    def test_targets_rebased_to_mapped_window_start(self, ramp_buffer):
        # window start 4.0 maps to 4.5; the 4..6 stretch keeps its 0.75 ratio
        out = preview(ramp_buffer, [marker(2, 3), marker(6, 6)], 4.0, 8.0, OLA)
        assert out.frames == 1500 + 2000

    def test_invalid_mapping_outside_window_still_rejected(self, ramp_buffer):
        with pytest.raises(InvalidMapping):
            preview(ramp_buffer, [marker(1, 2), marker(8, 1.5)], 4.0, 6.0, OLA)
