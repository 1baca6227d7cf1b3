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
Integration tests for CLI workflows on synthetic mask and cell files.

These tests write TIFF masks and a cell table to a temporary directory and run
the command-line entry point end to end.
"""
import json

import numpy as np
import pandas as pd
import pytest
import yaml

from nerveimc.cli import main


def _read_outputs(output_dir):
    return {
        'summary': pd.read_csv(output_dir / 'hotspot_summary.csv'),
        'points': pd.read_csv(output_dir / 'fused_points.csv'),
        'grid_all': pd.read_csv(output_dir / 'grid_all.csv'),
        'grid_hotspots': pd.read_csv(output_dir / 'grid_hotspots.csv'),
        'report': pd.read_csv(output_dir / 'run_report.csv'),
    }


@pytest.fixture
def cells_csv(tmp_path, cell_table):
    path = tmp_path / 'cells.csv'
    cell_table.to_csv(path, index=False)
    return path


@pytest.mark.integration
class TestRunCommand:
    """Full run from masks and a cell table to output tables."""

    def test_run_end_to_end(self, mask_directory, cells_csv, cell_table, temp_dir, methods_log):
        output_dir = temp_dir / 'results'
        main([
            'run',
            '--masks', str(mask_directory),
            '--mask-suffix', '_nerve_mask',
            '--cells', str(cells_csv),
            '--output', str(output_dir),
            '--step', '10',
            '--extent', '60', '60',
        ])

        out = _read_outputs(output_dir)
        assert list(out['summary']['sample_id']) == ['S1', 'S2', 'S3']
        assert (out['summary']['n_hotspots'] == 2).all()

        # Every hotspot and every matched cell appears exactly once
        n_cells = int(cell_table['sample_id'].isin(['S1', 'S2']).sum())
        assert len(out['points']) == 3 * 2 + n_cells
        assert (out['points']['source'] == 'hotspot').sum() == 6

        # Sample without cells is kept with its hotspots
        s3 = out['points'][out['points']['sample_id'] == 'S3']
        assert len(s3) == 2

        assert len(out['grid_all']) == 3 * 36
        assert out['grid_all']['n_points'].sum() == len(out['points'])
        assert out['grid_hotspots']['n_points'].sum() == 6
        assert list(out['report']['status']) == ['succeeded'] * 3

        summary_text = (output_dir / 'run_summary.txt').read_text(encoding='utf-8')
        assert 'S4' in summary_text

        entries = [json.loads(line) for line in methods_log.read_text().splitlines()]
        exports = [e for e in entries if e['type'] == 'export']
        assert len(exports) == 6

    def test_run_with_collapse_config(self, mask_directory, cells_csv, temp_dir):
        config_path = temp_dir / 'config.yaml'
        config_path.write_text(yaml.safe_dump({
            'collapse_rules': {'Cancer': ['Epithelial', 'Undefined']},
            'grid': {'step': 20, 'extent': [60, 60]},
        }))
        output_dir = temp_dir / 'results'
        main([
            'run', '--masks', str(mask_directory), '--mask-suffix', '_nerve_mask',
            '--cells', str(cells_csv), '--output', str(output_dir),
            '--config', str(config_path), '--on-mismatch', 'skip',
        ])

        out = _read_outputs(output_dir)
        categories = set(out['points']['category'])
        assert categories == {'NerveHotspot', 'Cancer', 'Tcell', 'Bcell'}
        assert list(out['report']['status']) == ['succeeded', 'succeeded', 'skipped']
        assert 'count_Cancer' in out['grid_all'].columns
        assert len(out['grid_all']) == 2 * 9

    def test_run_error_policy_exits(self, mask_directory, cells_csv, temp_dir):
        with pytest.raises(SystemExit) as excinfo:
            main([
                'run', '--masks', str(mask_directory), '--mask-suffix', '_nerve_mask',
                '--cells', str(cells_csv), '--output', str(temp_dir / 'results'),
                '--on-mismatch', 'error',
            ])
        assert excinfo.value.code == 1
        assert not (temp_dir / 'results' / 'fused_points.csv').exists()


@pytest.mark.integration
class TestWorkflowCommand:

    def test_workflow_from_yaml(self, mask_directory, cells_csv, temp_dir):
        output_dir = temp_dir / 'workflow_out'
        config_path = temp_dir / 'workflow.yaml'
        config_path.write_text(yaml.safe_dump({
            'masks': [str(mask_directory)],
            'cells': str(cells_csv),
            'output': str(output_dir),
            'mask_suffix': '_nerve_mask',
            'grid': {'step': 15, 'extent': [60, 60]},
            'n_workers': 2,
            'log_file': str(temp_dir / 'logs' / 'methods.jsonl'),
        }))

        main(['workflow', str(config_path)])

        out = _read_outputs(output_dir)
        assert list(out['summary']['sample_id']) == ['S1', 'S2', 'S3']
        assert len(out['grid_all']) == 3 * 16
        assert (temp_dir / 'logs' / 'methods.jsonl').exists()

    def test_workflow_missing_masks(self, temp_dir):
        config_path = temp_dir / 'workflow.yaml'
        config_path.write_text(yaml.safe_dump({'cells': 'cells.csv'}))
        with pytest.raises(SystemExit):
            main(['workflow', str(config_path)])

    def test_grid_from_run_output(self, mask_directory, cells_csv, temp_dir):
        output_dir = temp_dir / 'results'
        main([
            'run', '--masks', str(mask_directory), '--mask-suffix', '_nerve_mask',
            '--cells', str(cells_csv), '--output', str(output_dir), '--step', '10', '--extent', '60', '60',
        ])
        grid_path = output_dir / 'grid_rebinned.csv'
        main(['grid', str(output_dir / 'fused_points.csv'), str(grid_path),
              '--target', 'NerveHotspot', '--step', '10', '--extent', '60', '60'])

        rebinned = pd.read_csv(grid_path)
        original = pd.read_csv(output_dir / 'grid_hotspots.csv')
        np.testing.assert_array_equal(rebinned['n_points'].to_numpy(), original['n_points'].to_numpy())
