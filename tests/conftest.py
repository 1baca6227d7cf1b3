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
Pytest configuration and shared fixtures for NerveIMC tests.
"""
import numpy as np
import pandas as pd
import pytest
from pathlib import Path
import tempfile
import shutil


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast unit tests")
    config.addinivalue_line("markers", "integration: end-to-end tests on synthetic files")


@pytest.fixture(autouse=True)
def methods_log(tmp_path):
    """Send the methods log to a temporary file for every test."""
    from nerveimc.utils.logger import set_log_file

    log_path = tmp_path / "methods_log.jsonl"
    set_log_file(str(log_path))
    return log_path


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs.
    
    Returns an absolute, resolved Path that works cross-platform.
    The directory is automatically cleaned up after the test.
    """
    temp_path = tempfile.mkdtemp()
    temp_dir_path = Path(temp_path).resolve()
    yield temp_dir_path
    shutil.rmtree(str(temp_dir_path), ignore_errors=True)


@pytest.fixture
def three_component_mask():
    """Nerve mask with three separate rectangles of area 10, 50 and 60."""
    mask = np.zeros((60, 60), dtype=np.uint8)
    mask[5:7, 5:10] = 1       # 2 x 5 = 10
    mask[20:25, 20:30] = 1    # 5 x 10 = 50
    mask[40:46, 40:50] = 1    # 6 x 10 = 60
    return mask


@pytest.fixture
def reference_channel():
    """Reference intensity channel matching the three-component mask."""
    np.random.seed(42)
    return np.random.rand(60, 60).astype(np.float32) * 10 + 1


@pytest.fixture
def mask_image(three_component_mask, reference_channel):
    """Two-channel (C, H, W) mask image as written by the nerve segmentation step."""
    return np.stack([three_component_mask.astype(np.float32), reference_channel], axis=0)


@pytest.fixture
def sample_hotspots():
    """Filtered hotspot table for one sample."""
    return pd.DataFrame({
        'hotspot_id': [1, 2, 3],
        'x': [10.0, 12.0, 100.0],
        'y': [10.0, 14.0, 100.0],
        'area': [40.0, 55.0, 70.0],
        'mean_radius': [3.0, 4.0, 5.0],
        'mean_intensity': [2.5, 3.5, 4.5],
        'category': ['NerveHotspot'] * 3,
    })


@pytest.fixture
def sample_cells():
    """Canonical cell table for one sample."""
    return pd.DataFrame({
        'cell_id': [1, 2, 3, 4],
        'x': [5.0, 30.0, 60.0, 200.0],
        'y': [5.0, 30.0, 60.0, 200.0],
        'major_axis_length': [8.0, 10.0, 12.0, 9.0],
        'eccentricity': [0.5, 0.7, 0.2, 0.9],
        'area': [50.0, 80.0, 110.0, 60.0],
        'phenotype': ['Epithelial', 'Tcell', 'Undefined', 'Macrophage'],
    })


@pytest.fixture
def collapse_rules():
    return {'Cancer': ['Epithelial', 'Undefined']}


@pytest.fixture
def cell_table(tmp_path):
    """External cell table covering samples S1 and S2 (S3 has no cells)."""
    np.random.seed(0)
    rows = []
    for sample_id in ['S1', 'S2', 'S4']:
        for i in range(20):
            rows.append({
                'sample_id': sample_id,
                'cell_id': i + 1,
                'x': float(np.random.rand() * 60),
                'y': float(np.random.rand() * 60),
                'major_axis_length': float(np.random.rand() * 10 + 5),
                'eccentricity': float(np.random.rand()),
                'area': float(np.random.rand() * 100 + 20),
                'phenotype': ['Epithelial', 'Tcell', 'Undefined', 'Bcell'][i % 4],
            })
    return pd.DataFrame(rows)


@pytest.fixture
def mask_directory(tmp_path, mask_image):
    """Directory with mask TIFFs for samples S1, S2 and S3."""
    import tifffile

    mask_dir = tmp_path / "masks"
    mask_dir.mkdir()
    for sample_id in ['S1', 'S2', 'S3']:
        tifffile.imwrite(str(mask_dir / f"{sample_id}_nerve_mask.tiff"), mask_image)
    return mask_dir
