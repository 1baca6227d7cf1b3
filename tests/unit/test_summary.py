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
Unit tests for hotspot and cohort summaries.
"""
import math

import pandas as pd
import pytest

from nerveimc.processing.corpus import SampleCorpus
from nerveimc.processing.fusion import fuse_records
from nerveimc.processing.grid_worker import bin_points
from nerveimc.processing.summary import (
    HOTSPOT_SUMMARY_COLUMNS,
    RunReport,
    cohort_totals,
    grid_occupancy,
    grid_summary_table,
    hotspot_summary_table,
    summarize_hotspots,
)


@pytest.mark.unit
class TestHotspotSummary:

    def test_summary_values(self, sample_hotspots):
        row = summarize_hotspots('S1', sample_hotspots)
        assert row['pixel_count'] == 165.0
        assert row['n_hotspots'] == 3
        assert row['mean_area'] == pytest.approx(55.0)
        assert row['mean_radius'] == pytest.approx(4.0)
        assert row['mean_intensity'] == pytest.approx(3.5)

    def test_empty_sample(self, sample_hotspots):
        row = summarize_hotspots('S2', sample_hotspots.iloc[0:0])
        assert row['pixel_count'] == 0.0
        assert row['n_hotspots'] == 0
        assert math.isnan(row['mean_area'])

    def test_table_columns(self, sample_hotspots):
        table = hotspot_summary_table([
            summarize_hotspots('S1', sample_hotspots),
            summarize_hotspots('S2', sample_hotspots.iloc[:1]),
        ])
        assert list(table.columns) == HOTSPOT_SUMMARY_COLUMNS
        assert list(table['n_hotspots']) == [3, 1]


@pytest.mark.unit
class TestCohortSummaries:

    def test_cohort_totals(self, sample_hotspots, sample_cells):
        corpus = SampleCorpus().append('S1', fuse_records(sample_hotspots, sample_cells, 'S1'))
        totals = cohort_totals(corpus)
        assert totals['n_samples'] == 1
        assert totals['n_points'] == 7
        assert totals['category_counts']['NerveHotspot'] == 3

    def test_grid_occupancy(self, sample_hotspots, sample_cells):
        points = fuse_records(sample_hotspots, sample_cells, 'S1')
        grid = grid_summary_table([bin_points(points, extent=(250.0, 250.0), step=25.0)])
        occupancy = grid_occupancy(grid)
        assert occupancy.loc[0, 'n_cells'] == 100
        assert occupancy.loc[0, 'n_hotspot_cells'] == 2
        assert occupancy.loc[0, 'hotspot_cell_fraction'] == pytest.approx(0.02)

    def test_empty_grid(self):
        assert grid_summary_table([]).empty
        assert grid_occupancy(pd.DataFrame()).empty


@pytest.mark.unit
class TestRunReport:

    def test_report_frame_and_text(self):
        report = RunReport()
        report.succeeded.append('S1')
        report.warn('S1', 'no cell records')
        report.skip('S2', 'cell table has no records for this sample')
        report.unmatched_cells.append('S4')

        frame = report.to_frame()
        assert list(frame['status']) == ['succeeded', 'skipped']
        assert frame.loc[0, 'warnings'] == 'no cell records'

        text = report.format()
        assert '✓ S1' in text
        assert '✗ S2' in text
        assert 'S4' in text
