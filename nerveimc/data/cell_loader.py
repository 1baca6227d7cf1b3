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
Reading of the external single-cell table.

The table comes from an upstream segmentation and phenotyping pipeline and is
used read-only. CSV, TSV, parquet and AnnData (.h5ad) files are supported;
for AnnData the cell records are taken from ``obs`` and, when present, the
coordinates from ``obsm['spatial']``.
"""
from pathlib import Path
from typing import Mapping, Optional, Union

import pandas as pd

from nerveimc.config import DEFAULT_CELL_COLUMNS


def load_cell_table(path: Union[str, Path], columns: Optional[Mapping[str, str]] = None) -> pd.DataFrame:
    """
    Load the single-cell table.

    Args:
        path: CSV/TSV/parquet/h5ad file
        columns: Canonical field -> source column mapping (used to place
            AnnData coordinates under the configured x/y names)

    Returns:
        DataFrame with one row per cell, source column names unchanged
    """
    path = Path(path)
    if not path.exists():
        raise ValueError(f"Cell table does not exist: {path}")

    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path)
    if suffix in (".tsv", ".txt"):
        return pd.read_csv(path, sep="\t")
    if suffix == ".parquet":
        return pd.read_parquet(path)
    if suffix == ".h5ad":
        try:
            import anndata as ad
        except ImportError:
            raise ImportError("anndata is required to read .h5ad files. Install with: pip install anndata")
        adata = ad.read_h5ad(str(path))
        cells = adata.obs.copy()
        columns = dict(DEFAULT_CELL_COLUMNS if columns is None else columns)
        if "spatial" in adata.obsm:
            coords = adata.obsm["spatial"]
            cells[columns["x"]] = coords[:, 0]
            cells[columns["y"]] = coords[:, 1]
        return cells.reset_index(drop=True)
    raise ValueError(f"Unsupported cell table format: {path.suffix}")


def cells_by_sample(cells: pd.DataFrame, sample_column: str = "sample_id") -> dict:
    """Split the cell table by sample id (string keys, original row order kept)."""
    if sample_column not in cells.columns:
        raise ValueError(f"Cell table has no sample column '{sample_column}'")
    keys = cells[sample_column].astype(str)
    return {sample_id: group for sample_id, group in cells.groupby(keys, sort=False)}
