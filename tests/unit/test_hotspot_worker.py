# SPDX-License-Identifier: GPL-3.0-or-later
#
# NerveIMC – Nerve hotspot analysis toolkit for IMC data
#
# Copyright (C) 2025 University of Southern California
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Unit tests for hotspot extraction and area filtering.
"""
import numpy as np
import pandas as pd
import pytest

from nerveimc.processing.hotspot_worker import (
    CANDIDATE_COLUMNS,
    area_cutoff,
    detect_hotspots,
    extract_hotspot_candidates,
    filter_hotspots,
    split_mask,
)


def _dumbbell_mask():
    """Large and small square joined by a one-pixel neck."""
    mask = np.zeros((40, 40), dtype=np.uint8)
    mask[10:25, 10:25] = 1   # 15 x 15, peak distance 8
    mask[17, 25] = 1         # neck
    mask[14:21, 26:33] = 1   # 7 x 7, peak distance 4
    return mask


@pytest.mark.unit
class TestSplitMask:
    """Tests for the distance-transform watershed."""

    def test_empty_mask_has_no_labels(self):
        labels = split_mask(np.zeros((20, 20)))
        assert labels.shape == (20, 20)
        assert labels.max() == 0

    def test_separate_components_get_separate_labels(self, three_component_mask):
        labels = split_mask(three_component_mask)
        assert labels.max() == 3
        assert (labels > 0).sum() == three_component_mask.sum()

    def test_low_tolerance_splits_touching_objects(self):
        labels = split_mask(_dumbbell_mask(), tolerance=0.0002)
        assert labels.max() == 2

    def test_high_tolerance_merges_touching_objects(self):
        labels = split_mask(_dumbbell_mask(), tolerance=5.0)
        assert labels.max() == 1

    def test_non_positive_tolerance_raises(self, three_component_mask):
        with pytest.raises(ValueError, match="tolerance"):
            split_mask(three_component_mask, tolerance=0)

    def test_3d_input_raises(self):
        with pytest.raises(ValueError, match="2D"):
            split_mask(np.zeros((5, 5, 2)))


@pytest.mark.unit
class TestExtractCandidates:
    """Tests for per-region feature extraction."""

    def test_empty_mask_returns_empty_table(self, reference_channel):
        result = extract_hotspot_candidates(np.zeros((60, 60)), reference_channel)
        assert isinstance(result, pd.DataFrame)
        assert len(result) == 0
        assert list(result.columns) == CANDIDATE_COLUMNS

    def test_one_row_per_component_in_label_order(self, three_component_mask, reference_channel):
        result = extract_hotspot_candidates(three_component_mask, reference_channel)
        assert list(result.columns) == CANDIDATE_COLUMNS
        assert list(result['hotspot_id']) == [1, 2, 3]
        assert sorted(result['area']) == [10.0, 50.0, 60.0]
        assert (result['area'] > 0).all()

    def test_constant_reference_gives_geometric_centroid(self):
        mask = np.zeros((30, 30), dtype=np.uint8)
        mask[10:15, 4:9] = 1
        reference = np.full((30, 30), 2.0)
        result = extract_hotspot_candidates(mask, reference)
        row = result.iloc[0]
        assert row['x'] == pytest.approx(6.0)
        assert row['y'] == pytest.approx(12.0)
        assert row['mean_intensity'] == pytest.approx(2.0)
        assert row['area'] == 25
        assert row['mean_radius'] > 0

    def test_zero_reference_falls_back_to_geometric_centroid(self):
        mask = np.zeros((30, 30), dtype=np.uint8)
        mask[10:15, 4:9] = 1
        result = extract_hotspot_candidates(mask, np.zeros((30, 30)))
        assert result.iloc[0]['x'] == pytest.approx(6.0)
        assert result.iloc[0]['y'] == pytest.approx(12.0)

    def test_weighted_centroid_moves_toward_signal(self):
        mask = np.zeros((30, 30), dtype=np.uint8)
        mask[10:15, 4:9] = 1
        reference = np.ones((30, 30))
        reference[:, 8] = 100.0
        result = extract_hotspot_candidates(mask, reference)
        assert result.iloc[0]['x'] > 6.0

    def test_single_pixel_has_zero_radius(self):
        mask = np.zeros((10, 10), dtype=np.uint8)
        mask[4, 4] = 1
        result = extract_hotspot_candidates(mask, np.ones((10, 10)))
        assert len(result) == 1
        assert result.iloc[0]['mean_radius'] == 0.0

    def test_filled_square_radius_uses_outer_ring(self):
        mask = np.zeros((30, 30), dtype=np.uint8)
        mask[10:15, 4:9] = 1
        result = extract_hotspot_candidates(mask, np.ones((30, 30)))
        # Outer ring of a 5 x 5 square, offsets from the centre pixel
        ring = [(r, c) for r in range(-2, 3) for c in range(-2, 3) if max(abs(r), abs(c)) == 2]
        expected = np.mean([np.hypot(r, c) for r, c in ring])
        assert result.iloc[0]['mean_radius'] == pytest.approx(expected)

    def test_one_pixel_line_radius(self):
        mask = np.zeros((20, 20), dtype=np.uint8)
        mask[5, 3:10] = 1
        result = extract_hotspot_candidates(mask, np.ones((20, 20)))
        assert len(result) == 1
        # Every pixel of the line is boundary: distances 3, 2, 1, 0, 1, 2, 3
        assert result.iloc[0]['mean_radius'] == pytest.approx(12.0 / 7.0)

    def test_rectangles_have_positive_radius(self, three_component_mask, reference_channel):
        result = extract_hotspot_candidates(three_component_mask, reference_channel)
        assert (result['mean_radius'] > 0).all()

    def test_shape_mismatch_raises(self, three_component_mask):
        with pytest.raises(ValueError, match="shapes differ"):
            extract_hotspot_candidates(three_component_mask, np.ones((10, 10)))


@pytest.mark.unit
class TestFilterHotspots:
    """Tests for the per-sample area cutoff."""

    def test_empty_candidates(self):
        candidates = extract_hotspot_candidates(np.zeros((10, 10)), np.ones((10, 10)))
        hotspots, cutoff = filter_hotspots(candidates)
        assert len(hotspots) == 0
        assert 'category' in hotspots.columns
        assert np.isnan(cutoff)

    def test_cutoff_is_fifth_percentile(self):
        candidates = pd.DataFrame({
            'hotspot_id': [1, 2, 3],
            'x': [0.0, 1.0, 2.0], 'y': [0.0, 1.0, 2.0],
            'area': [10.0, 50.0, 60.0],
            'mean_radius': [1.0, 2.0, 3.0],
            'mean_intensity': [1.0, 1.0, 1.0],
        })
        hotspots, cutoff = filter_hotspots(candidates)
        assert cutoff == pytest.approx(np.quantile([10, 50, 60], 0.05))
        assert 10 < cutoff < 50
        assert sorted(hotspots['area']) == [50.0, 60.0]
        assert set(hotspots['category']) == {'NerveHotspot'}

    def test_cutoff_is_not_shared_between_samples(self):
        small = pd.DataFrame({'area': [1.0, 2.0, 3.0, 4.0]})
        large = pd.DataFrame({'area': [100.0, 200.0, 300.0]})
        _, cutoff_small = filter_hotspots(small)
        _, cutoff_large = filter_hotspots(large)
        _, cutoff_small_again = filter_hotspots(small)
        assert cutoff_small == pytest.approx(area_cutoff([1, 2, 3, 4]))
        assert cutoff_large == pytest.approx(area_cutoff([100, 200, 300]))
        assert cutoff_small_again == cutoff_small

    def test_area_equal_to_cutoff_is_dropped(self):
        candidates = pd.DataFrame({'area': [5.0, 5.0, 5.0]})
        hotspots, cutoff = filter_hotspots(candidates)
        assert cutoff == 5.0
        assert len(hotspots) == 0

    def test_custom_label(self):
        candidates = pd.DataFrame({'area': [1.0, 10.0, 20.0]})
        hotspots, _ = filter_hotspots(candidates, label='Nerve')
        assert set(hotspots['category']) == {'Nerve'}

    def test_invalid_percentile(self):
        with pytest.raises(ValueError, match="percentile"):
            filter_hotspots(pd.DataFrame({'area': [1.0]}), percentile=1.5)


@pytest.mark.unit
class TestDetectHotspots:
    """End-to-end detection on a two-channel image."""

    def test_three_components_two_survive(self, mask_image):
        image = np.moveaxis(mask_image, 0, -1)
        candidates, hotspots, cutoff = detect_hotspots(image)
        assert len(candidates) == 3
        assert len(hotspots) == 2
        assert sorted(hotspots['area']) == [50.0, 60.0]

    def test_empty_mask(self, reference_channel):
        image = np.stack([np.zeros((60, 60)), reference_channel], axis=-1)
        candidates, hotspots, _ = detect_hotspots(image)
        assert len(candidates) == 0
        assert len(hotspots) == 0

    def test_channel_index_out_of_range(self, mask_image):
        image = np.moveaxis(mask_image, 0, -1)
        with pytest.raises(ValueError, match="out of range"):
            detect_hotspots(image, reference_channel=5)
