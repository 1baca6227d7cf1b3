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
Fixed-size spatial grid aggregation of fused point tables.

Each sample's coordinate space is tiled into ``step x step`` squares starting
at the origin. Squares that would cross the image extent are not created, so
the grid may stop short of the image edge. Points are bucketed into squares
once by integer division instead of testing every point against every square.
"""
from typing import Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist

from nerveimc.config import HOTSPOT_LABEL, validate_grid

# Reported for every statistic of a grid cell that has nothing to aggregate
EMPTY_SENTINEL = -1.0

STAT_COLUMNS = [
    "mean_size", "max_size", "mean_area", "max_area",
    "mean_elongation", "max_elongation",
]


def grid_axis(extent: float, step: float) -> np.ndarray:
    """Start positions of the grid cells along one axis: 0, step, ... <= extent - step."""
    n = int(np.floor((extent - step) / step + 1e-9)) + 1
    return np.arange(n, dtype=np.float64) * step


def grid_shape(extent: Tuple[float, float], step: float) -> Tuple[int, int]:
    validate_grid(extent, step)
    return len(grid_axis(extent[0], step)), len(grid_axis(extent[1], step))


def assign_cells(
    x: np.ndarray,
    y: np.ndarray,
    nx: int,
    ny: int,
    step: float
) -> np.ndarray:
    """
    Grid cell index of every point, -1 for points outside the grid.

    Cells are half-open ``[start, start + step)`` except the last column and
    row, which also take points lying exactly on the grid end. Every point
    inside ``[0, nx * step] x [0, ny * step]`` is therefore assigned to
    exactly one cell.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    x_end, y_end = nx * step, ny * step
    inside = (x >= 0) & (x <= x_end) & (y >= 0) & (y <= y_end)

    ix = np.minimum(np.floor(np.where(inside, x, 0) / step).astype(np.int64), nx - 1)
    iy = np.minimum(np.floor(np.where(inside, y, 0) / step).astype(np.int64), ny - 1)
    return np.where(inside, ix * ny + iy, -1)


def _mean_pairwise_distance(coords: np.ndarray) -> float:
    if len(coords) == 0:
        return EMPTY_SENTINEL
    if len(coords) == 1:
        return 0.0
    return float(np.mean(pdist(coords)))


def bin_points(
    points: pd.DataFrame,
    extent: Tuple[float, float] = (850.0, 850.0),
    step: float = 25.0,
    target_category: Optional[str] = None,
    hotspot_label: str = HOTSPOT_LABEL,
    categories: Optional[Iterable[str]] = None,
    sample_id: Optional[str] = None
) -> pd.DataFrame:
    """
    Aggregate one sample's points per grid cell.

    Args:
        points: FusedPoint table for a single sample
        extent: (x_max, y_max) of the image
        step: Grid cell edge length
        target_category: Only aggregate points of this category (e.g. the
            hotspot label for density maps); ``None`` aggregates all points
        hotspot_label: Category treated as nerve hotspot
        categories: Categories to report counts for; defaults to the
            categories present in ``points``
        sample_id: Written to the output; taken from ``points`` when omitted

    Returns:
        One row per grid cell (x-major order) with bounds, centre, point
        count, size/area/elongation statistics, mean pairwise hotspot
        distance, ``has_hotspot`` and ``count_<category>`` columns. Statistics
        of empty cells are EMPTY_SENTINEL; a cell with one hotspot has a mean
        hotspot distance of 0.

    Raises:
        InvalidStep: ``step`` is not positive or exceeds the extent
    """
    nx, ny = grid_shape(extent, step)
    n_cells = nx * ny

    if sample_id is None and "sample_id" in points.columns and len(points):
        sample_id = str(points["sample_id"].iloc[0])

    ix_grid, iy_grid = np.meshgrid(np.arange(nx), np.arange(ny), indexing="ij")
    x_start = ix_grid.ravel() * float(step)
    y_start = iy_grid.ravel() * float(step)

    table = pd.DataFrame({
        "sample_id": [sample_id] * n_cells,
        "x_start": x_start,
        "x_end": x_start + step,
        "y_start": y_start,
        "y_end": y_start + step,
        "x_center": x_start + step / 2.0,
        "y_center": y_start + step / 2.0,
    })

    cell_idx = assign_cells(points["x"].to_numpy(), points["y"].to_numpy(), nx, ny, step) \
        if len(points) else np.empty(0, dtype=np.int64)
    in_grid = points.assign(_cell=cell_idx)[cell_idx >= 0]

    selected = in_grid
    if target_category is not None:
        selected = in_grid[in_grid["category"] == target_category]

    table["n_points"] = np.bincount(selected["_cell"].to_numpy(dtype=np.int64), minlength=n_cells)

    stats = {col: np.full(n_cells, EMPTY_SENTINEL) for col in STAT_COLUMNS}
    if len(selected):
        grouped = selected.groupby("_cell")
        for name in ("size", "area"):
            agg = grouped[name].agg(["mean", "max"])
            stats[f"mean_{name}"][agg.index.to_numpy()] = agg["mean"].to_numpy()
            stats[f"max_{name}"][agg.index.to_numpy()] = agg["max"].to_numpy()
        # Negative elongation marks hotspots, which have none
        elongated = selected[selected["elongation"] >= 0]
        if len(elongated):
            agg = elongated.groupby("_cell")["elongation"].agg(["mean", "max"])
            stats["mean_elongation"][agg.index.to_numpy()] = agg["mean"].to_numpy()
            stats["max_elongation"][agg.index.to_numpy()] = agg["max"].to_numpy()
    for col in STAT_COLUMNS:
        table[col] = stats[col]

    hotspots = in_grid[in_grid["category"] == hotspot_label]
    distances = np.full(n_cells, EMPTY_SENTINEL)
    for idx, group in hotspots.groupby("_cell"):
        distances[idx] = _mean_pairwise_distance(group[["x", "y"]].to_numpy(dtype=np.float64))
    table["mean_hotspot_distance"] = distances
    table["has_hotspot"] = np.bincount(
        hotspots["_cell"].to_numpy(dtype=np.int64), minlength=n_cells
    ) > 0

    if target_category is not None:
        count_categories: List[str] = [target_category]
    elif categories is not None:
        count_categories = list(dict.fromkeys(list(categories) + [hotspot_label]))
    else:
        count_categories = sorted(points["category"].astype(str).unique()) if len(points) else []
    for category in count_categories:
        members = selected[selected["category"] == category]
        table[f"count_{category}"] = np.bincount(
            members["_cell"].to_numpy(dtype=np.int64), minlength=n_cells
        )

    return table


def bin_corpus(
    corpus,
    extent: Tuple[float, float] = (850.0, 850.0),
    step: float = 25.0,
    target_category: Optional[str] = None,
    hotspot_label: str = HOTSPOT_LABEL,
    categories: Optional[Iterable[str]] = None
) -> pd.DataFrame:
    """Bin every sample of a SampleCorpus and concatenate in corpus order."""
    validate_grid(extent, step)
    if categories is None and target_category is None:
        # Shared columns across samples
        categories = sorted(corpus.category_counts().index)
    tables = []
    for sample_id, points in corpus.items():
        print(f"[grid_worker] Binning sample {sample_id} ({len(points)} points, step={step})")
        tables.append(bin_points(
            points, extent=extent, step=step, target_category=target_category,
            hotspot_label=hotspot_label, categories=categories, sample_id=sample_id,
        ))
    if not tables:
        return pd.DataFrame()
    return pd.concat(tables, ignore_index=True)
