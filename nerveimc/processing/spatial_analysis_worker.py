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
Neighbourhood graph construction and interaction scoring for fused points.

Graph building and the permutation test are delegated to squidpy; this
module converts fused point tables to AnnData and collects the results.
Works on one sample at a time so hotspots and cells of different samples are
never connected.
"""
from typing import Dict, Optional

import numpy as np
import pandas as pd

GRAPH_METHODS = ("expansion", "knn", "delaunay")


def points_to_anndata(points: pd.DataFrame, sample_id: Optional[str] = None):
    """
    Convert one sample's FusedPoint table to AnnData.

    ``obsm['spatial']`` holds (x, y); ``obs['category']`` is categorical.
    Returns None when the table is empty.
    """
    try:
        import anndata as ad
    except ImportError:
        raise ImportError("anndata is required for interaction analysis. Install with: pip install anndata")

    if sample_id is not None and "sample_id" in points.columns:
        points = points[points["sample_id"] == sample_id]
    if points.empty:
        return None

    feature_cols = ["area", "size", "elongation", "marker_intensity"]
    X = points[feature_cols].to_numpy(dtype=np.float32)
    obs = points[["sample_id", "object_id", "source", "category"]].copy()
    obs.index = [f"{src}_{oid}" for src, oid in zip(points["source"], points["object_id"])]
    obs["category"] = obs["category"].astype("category")

    adata = ad.AnnData(
        X=X,
        obs=obs,
        var=pd.DataFrame(index=feature_cols),
        obsm={"spatial": points[["x", "y"]].to_numpy(dtype=np.float64)},
    )
    return adata


def _delaunay_graph(adata, max_distance: float):
    """Delaunay edges no longer than ``max_distance``, stored like squidpy's graphs."""
    from scipy import sparse as sp
    from scipy.spatial import Delaunay

    coords = adata.obsm["spatial"]
    n_points = len(coords)
    tri = Delaunay(coords)
    rows, cols = [], []
    for simplex in tri.simplices:
        for i in range(3):
            for j in range(i + 1, 3):
                rows.extend([simplex[i], simplex[j]])
                cols.extend([simplex[j], simplex[i]])
    # Neighbouring triangles share edges
    edges = np.unique(np.column_stack([rows, cols]), axis=0)
    rows, cols = edges[:, 0], edges[:, 1]
    lengths = np.linalg.norm(coords[rows] - coords[cols], axis=1)
    keep = lengths <= max_distance

    conn = sp.csr_matrix((np.ones(keep.sum()), (rows[keep], cols[keep])), shape=(n_points, n_points))
    dist = sp.csr_matrix((lengths[keep], (rows[keep], cols[keep])), shape=(n_points, n_points))
    adata.obsp["spatial_connectivities"] = conn
    adata.obsp["spatial_distances"] = dist


def build_neighbor_graph(
    adata,
    method: str = "expansion",
    expansion_threshold: float = 20.0,
    knn_k: int = 20,
    delaunay_max_distance: float = 20.0
):
    """
    Build a spatial neighbour graph in place.

    Args:
        adata: AnnData from points_to_anndata
        method: 'expansion' (all points within ``expansion_threshold``),
            'knn' (``knn_k`` nearest neighbours) or 'delaunay' (Delaunay
            edges up to ``delaunay_max_distance``)

    Returns:
        The same AnnData with ``obsp['spatial_connectivities']`` set
    """
    if method not in GRAPH_METHODS:
        raise ValueError(f"Unknown graph method: {method}. Must be one of {GRAPH_METHODS}")

    if method == "delaunay":
        _delaunay_graph(adata, delaunay_max_distance)
        return adata

    try:
        import squidpy as sq
    except ImportError:
        raise ImportError("squidpy is required for interaction analysis. Install with: pip install squidpy")

    if method == "expansion":
        sq.gr.spatial_neighbors(adata, coord_type="generic", radius=float(expansion_threshold))
    else:
        n_neighs = min(int(knn_k), adata.n_obs - 1)
        sq.gr.spatial_neighbors(adata, coord_type="generic", n_neighs=n_neighs)
    return adata


def neighborhood_enrichment(
    corpus,
    method: str = "expansion",
    expansion_threshold: float = 20.0,
    knn_k: int = 20,
    delaunay_max_distance: float = 20.0,
    n_perms: int = 1000,
    seed: int = 42
) -> pd.DataFrame:
    """
    Category-pair neighbourhood enrichment z-scores for every sample.

    Samples with fewer than three points or fewer than two categories are
    skipped with a message.

    Returns:
        Long table with sample_id, category_a, category_b, zscore, count
    """
    try:
        import squidpy as sq
    except ImportError:
        raise ImportError("squidpy is required for interaction analysis. Install with: pip install squidpy")

    rows = []
    for sample_id, points in corpus.items():
        if len(points) < 3 or points["category"].nunique() < 2:
            print(f"[spatial_analysis_worker] Skipping {sample_id}: not enough points or categories")
            continue
        adata = points_to_anndata(points)
        build_neighbor_graph(
            adata, method=method, expansion_threshold=expansion_threshold,
            knn_k=knn_k, delaunay_max_distance=delaunay_max_distance,
        )
        sq.gr.nhood_enrichment(
            adata, cluster_key="category", n_perms=n_perms, seed=seed, show_progress_bar=False
        )
        result = adata.uns["category_nhood_enrichment"]
        zscore = np.asarray(result["zscore"])
        count = np.asarray(result["count"])
        labels = list(adata.obs["category"].cat.categories)
        for i, cat_a in enumerate(labels):
            for j, cat_b in enumerate(labels):
                rows.append({
                    "sample_id": sample_id,
                    "category_a": cat_a,
                    "category_b": cat_b,
                    "zscore": float(zscore[i, j]),
                    "count": int(count[i, j]),
                })
        print(f"[spatial_analysis_worker] Neighbourhood enrichment done for {sample_id} ({method})")

    return pd.DataFrame(rows, columns=["sample_id", "category_a", "category_b", "zscore", "count"])


def graph_parameters(method: str, expansion_threshold: float, knn_k: int,
                     delaunay_max_distance: float) -> Dict[str, float]:
    """Parameters relevant to ``method``, for the methods log."""
    if method == "expansion":
        return {"method": method, "expansion_threshold": expansion_threshold}
    if method == "knn":
        return {"method": method, "knn_k": knn_k}
    return {"method": method, "delaunay_max_distance": delaunay_max_distance}
