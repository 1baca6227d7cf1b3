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
Fusion of hotspot records with single-cell records.

Hotspots and cells are merged into one point table per sample that shares a
single schema: position, a size proxy, an elongation proxy and a category.
Fields a source does not measure are filled with the sentinels below.
"""
from typing import Dict, Iterable, List, Mapping, Optional

import numpy as np
import pandas as pd

from nerveimc.config import DEFAULT_CELL_COLUMNS, HOTSPOT_LABEL
from nerveimc.errors import SchemaMismatch

FUSED_COLUMNS = [
    "sample_id", "object_id", "source", "x", "y", "area", "size",
    "elongation", "orientation", "marker_intensity", "category",
]

# Sentinels for fields a source does not measure
NOT_APPLICABLE = -1.0       # hotspot elongation, cell marker intensity
NO_ORIENTATION = 0.0        # hotspot orientation, cells without an orientation column

HOTSPOT_REQUIRED = ["x", "y", "area", "mean_radius", "mean_intensity"]
CELL_REQUIRED = ["x", "y", "major_axis_length", "eccentricity", "area", "phenotype"]


def build_collapse_map(rules: Optional[Mapping[str, Iterable[str]]]) -> Dict[str, str]:
    """
    Invert collapse rules (coarse -> fine labels) into a fine -> coarse map.

    Raises ValueError when a fine label is claimed by two coarse labels, or when
    a coarse label is itself collapsed into a different label (chained rules
    would make collapsing order dependent).
    """
    fine_to_coarse: Dict[str, str] = {}
    for coarse, fine_labels in (rules or {}).items():
        if isinstance(fine_labels, str):
            fine_labels = [fine_labels]
        for fine in fine_labels:
            previous = fine_to_coarse.get(fine)
            if previous is not None and previous != coarse:
                raise ValueError(
                    f"Label '{fine}' is collapsed into both '{previous}' and '{coarse}'"
                )
            fine_to_coarse[fine] = coarse

    for coarse in set(fine_to_coarse.values()):
        target = fine_to_coarse.get(coarse)
        if target is not None and target != coarse:
            raise ValueError(
                f"Coarse label '{coarse}' is itself collapsed into '{target}'"
            )
    return fine_to_coarse


def collapse_categories(labels: pd.Series, rules: Optional[Mapping[str, Iterable[str]]]) -> pd.Series:
    """Replace fine-grained labels by their coarse label; unmapped labels pass through."""
    mapping = build_collapse_map(rules)
    if not mapping:
        return labels.copy()
    return labels.map(lambda value: mapping.get(value, value))


def _check_columns(df: pd.DataFrame, required: List[str], what: str):
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise SchemaMismatch(f"{what} records are missing required field(s): {missing}", missing)
    null_cols = [col for col in required if df[col].isna().any()]
    if null_cols:
        raise SchemaMismatch(f"{what} records have empty values in field(s): {null_cols}", null_cols)


def standardize_cells(
    cells: pd.DataFrame,
    columns: Optional[Mapping[str, str]] = None,
    orientation_column: Optional[str] = None
) -> pd.DataFrame:
    """
    Rename an external cell table to the canonical cell fields.

    Args:
        cells: External table with one row per cell
        columns: Canonical field -> source column mapping
        orientation_column: Optional source column holding cell orientation

    Returns:
        Copy of ``cells`` with canonical column names
    """
    columns = dict(DEFAULT_CELL_COLUMNS if columns is None else columns)
    rename = {src: dst for dst, src in columns.items() if src in cells.columns and src != dst}
    # Unmapped columns already carrying a canonical name would be duplicated
    colliding = [col for col in cells.columns if col in rename.values() and col not in rename]
    if colliding:
        print(f"[fusion] Dropping cell table column(s) replaced by the column mapping: {colliding}")
    out = cells.drop(columns=colliding).rename(columns=rename)
    if orientation_column and orientation_column in cells.columns:
        out["orientation"] = cells[orientation_column].to_numpy()
    return out


def fuse_records(
    hotspots: pd.DataFrame,
    cells: pd.DataFrame,
    sample_id: str,
    collapse_rules: Optional[Mapping[str, Iterable[str]]] = None,
    hotspot_label: str = HOTSPOT_LABEL,
    categories: Optional[Iterable[str]] = None
) -> pd.DataFrame:
    """
    Merge one sample's hotspots and cells into a single point table.

    Every hotspot and every cell appears exactly once (hotspots first). Cell
    phenotypes are collapsed with ``collapse_rules``; hotspots are labelled
    ``hotspot_label``. Positions are copied unchanged.

    Args:
        hotspots: Filtered hotspot table (x, y, area, mean_radius, mean_intensity)
        cells: Canonical cell table (x, y, major_axis_length, eccentricity, area, phenotype)
        sample_id: Identifier written to every output row
        collapse_rules: Coarse label -> fine labels mapping for this dataset/sample
        hotspot_label: Category given to hotspots
        categories: Optional closed vocabulary for cell categories

    Returns:
        DataFrame with FUSED_COLUMNS

    Raises:
        SchemaMismatch: A required field is missing or empty, or a collapsed
            cell label is outside ``categories``
    """
    _check_columns(hotspots, HOTSPOT_REQUIRED, "Hotspot")
    _check_columns(cells, CELL_REQUIRED, "Cell")

    n_hot = len(hotspots)
    hot_ids = hotspots["hotspot_id"] if "hotspot_id" in hotspots.columns else pd.Series(range(1, n_hot + 1))
    hot_points = pd.DataFrame({
        "sample_id": [sample_id] * n_hot,
        "object_id": hot_ids.to_numpy(),
        "source": ["hotspot"] * n_hot,
        "x": hotspots["x"].to_numpy(dtype=np.float64),
        "y": hotspots["y"].to_numpy(dtype=np.float64),
        "area": hotspots["area"].to_numpy(dtype=np.float64),
        "size": hotspots["mean_radius"].to_numpy(dtype=np.float64),
        "elongation": np.full(n_hot, NOT_APPLICABLE),
        "orientation": np.full(n_hot, NO_ORIENTATION),
        "marker_intensity": hotspots["mean_intensity"].to_numpy(dtype=np.float64),
        "category": [hotspot_label] * n_hot,
    })

    n_cells = len(cells)
    cell_labels = collapse_categories(cells["phenotype"].astype(str), collapse_rules)
    if categories is not None:
        allowed = set(categories) | {hotspot_label}
        unknown = sorted(set(cell_labels) - allowed)
        if unknown:
            raise SchemaMismatch(
                f"Cell categories outside the configured vocabulary: {unknown}", ["phenotype"]
            )
    cell_ids = cells["cell_id"] if "cell_id" in cells.columns else pd.Series(range(1, n_cells + 1))
    orientation = (
        cells["orientation"].fillna(NO_ORIENTATION).to_numpy(dtype=np.float64)
        if "orientation" in cells.columns else np.full(n_cells, NO_ORIENTATION)
    )
    cell_points = pd.DataFrame({
        "sample_id": [sample_id] * n_cells,
        "object_id": cell_ids.to_numpy(),
        "source": ["cell"] * n_cells,
        "x": cells["x"].to_numpy(dtype=np.float64),
        "y": cells["y"].to_numpy(dtype=np.float64),
        "area": cells["area"].to_numpy(dtype=np.float64),
        "size": cells["major_axis_length"].to_numpy(dtype=np.float64),
        "elongation": cells["eccentricity"].to_numpy(dtype=np.float64),
        "orientation": orientation,
        "marker_intensity": np.full(n_cells, NOT_APPLICABLE),
        "category": cell_labels.to_numpy(),
    })

    parts = [df for df in (hot_points, cell_points) if len(df)]
    if not parts:
        return pd.DataFrame({col: pd.Series(dtype=hot_points[col].dtype) for col in FUSED_COLUMNS})
    fused = pd.concat(parts, ignore_index=True)
    return fused[FUSED_COLUMNS]
