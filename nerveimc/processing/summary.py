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
Per-sample and per-cohort summaries of hotspot and grid results.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

import pandas as pd

HOTSPOT_SUMMARY_COLUMNS = [
    "sample_id", "pixel_count", "n_hotspots", "mean_area", "mean_radius", "mean_intensity",
]


def summarize_hotspots(sample_id: str, hotspots: pd.DataFrame) -> Dict[str, float]:
    """Scalar summary of one sample's filtered hotspots (means are nan when empty)."""
    n = len(hotspots)
    if n == 0:
        return {
            "sample_id": sample_id,
            "pixel_count": 0.0,
            "n_hotspots": 0,
            "mean_area": float("nan"),
            "mean_radius": float("nan"),
            "mean_intensity": float("nan"),
        }
    return {
        "sample_id": sample_id,
        "pixel_count": float(hotspots["area"].sum()),
        "n_hotspots": int(n),
        "mean_area": float(hotspots["area"].mean()),
        "mean_radius": float(hotspots["mean_radius"].mean()),
        "mean_intensity": float(hotspots["mean_intensity"].mean()),
    }


def hotspot_summary_table(rows: Iterable[Dict[str, float]]) -> pd.DataFrame:
    return pd.DataFrame(list(rows), columns=HOTSPOT_SUMMARY_COLUMNS)


def grid_summary_table(tables: Iterable[pd.DataFrame]) -> pd.DataFrame:
    """Concatenate per-sample grid tables into one cohort table."""
    tables = [t for t in tables if t is not None and len(t)]
    if not tables:
        return pd.DataFrame()
    return pd.concat(tables, ignore_index=True)


def cohort_totals(corpus) -> Dict[str, object]:
    """Order-independent cohort totals: samples, points and per-category counts."""
    counts = corpus.category_counts()
    return {
        "n_samples": len(corpus),
        "n_points": corpus.total_points(),
        "category_counts": {str(k): int(v) for k, v in counts.items()},
    }


def grid_occupancy(grid: pd.DataFrame) -> pd.DataFrame:
    """Per-sample fraction of grid cells holding at least one hotspot."""
    if grid.empty:
        return pd.DataFrame(columns=["sample_id", "n_cells", "n_hotspot_cells", "hotspot_cell_fraction"])
    out = grid.groupby("sample_id", sort=False).agg(
        n_cells=("has_hotspot", "size"),
        n_hotspot_cells=("has_hotspot", "sum"),
    ).reset_index()
    out["hotspot_cell_fraction"] = out["n_hotspot_cells"] / out["n_cells"]
    return out


@dataclass
class RunReport:
    """Outcome of a cohort run: which samples succeeded, which were skipped and why."""
    succeeded: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    warnings: Dict[str, List[str]] = field(default_factory=dict)
    unmatched_cells: List[str] = field(default_factory=list)

    def warn(self, sample_id: str, message: str):
        self.warnings.setdefault(sample_id, []).append(message)

    def skip(self, sample_id: str, reason: str):
        self.skipped[sample_id] = reason

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for sample_id in self.succeeded:
            rows.append({
                "sample_id": sample_id,
                "status": "succeeded",
                "reason": "",
                "warnings": "; ".join(self.warnings.get(sample_id, [])),
            })
        for sample_id, reason in self.skipped.items():
            rows.append({
                "sample_id": sample_id,
                "status": "skipped",
                "reason": reason,
                "warnings": "; ".join(self.warnings.get(sample_id, [])),
            })
        return pd.DataFrame(rows, columns=["sample_id", "status", "reason", "warnings"])

    def format(self) -> str:
        lines = [f"Samples succeeded: {len(self.succeeded)}"]
        for sample_id in self.succeeded:
            lines.append(f"  ✓ {sample_id}")
            for message in self.warnings.get(sample_id, []):
                lines.append(f"      warning: {message}")
        lines.append(f"Samples skipped: {len(self.skipped)}")
        for sample_id, reason in self.skipped.items():
            lines.append(f"  ✗ {sample_id}: {reason}")
        if self.unmatched_cells:
            lines.append(
                f"Cell table samples without a mask ({len(self.unmatched_cells)}): "
                + ", ".join(self.unmatched_cells)
            )
        return "\n".join(lines)
