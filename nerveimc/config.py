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
Configuration for the nerve hotspot pipeline.

A run is configured by a YAML file whose sections map onto the dataclasses
below. Every section is optional; missing keys fall back to the defaults used
in the published analysis (watershed tolerance 0.0002, 5th percentile area
cutoff, 25 unit grid over an 850 x 850 image).
"""
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from nerveimc.errors import InvalidStep

HOTSPOT_LABEL = "NerveHotspot"
MISMATCH_POLICIES = ("warn", "skip", "error")

# Canonical cell table fields and the default source column for each
DEFAULT_CELL_COLUMNS = {
    "sample_id": "sample_id",
    "x": "x",
    "y": "y",
    "major_axis_length": "major_axis_length",
    "eccentricity": "eccentricity",
    "area": "area",
    "phenotype": "phenotype",
}


@dataclass
class HotspotConfig:
    """Watershed and area filter parameters."""
    tolerance: float = 0.0002
    extension_radius: int = 1
    area_percentile: float = 0.05
    label: str = HOTSPOT_LABEL
    mask_channel: int = 0
    reference_channel: int = 1
    channel_format: str = "CHW"


@dataclass
class GridConfig:
    """Spatial grid used for density and abundance tables."""
    step: float = 25.0
    extent: Tuple[float, float] = (850.0, 850.0)


@dataclass
class GraphConfig:
    """Neighbourhood graph parameters handed to squidpy."""
    expansion_threshold: float = 20.0
    knn_k: int = 20
    delaunay_max_distance: float = 20.0


@dataclass
class CellTableConfig:
    """Column mapping for the external single-cell table."""
    columns: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CELL_COLUMNS))
    orientation_column: Optional[str] = None


@dataclass
class PipelineConfig:
    """Top-level container aggregating all pipeline configuration sections."""
    hotspots: HotspotConfig = field(default_factory=HotspotConfig)
    grid: GridConfig = field(default_factory=GridConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    cells: CellTableConfig = field(default_factory=CellTableConfig)
    categories: Optional[List[str]] = None
    collapse_rules: Dict[str, List[str]] = field(default_factory=dict)
    sample_collapse_rules: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    mask_suffix: str = ""
    on_mismatch: str = "warn"
    n_workers: int = 1
    output: str = "nerveimc_output"
    log_file: Optional[str] = None

    def rules_for(self, sample_id: str) -> Dict[str, List[str]]:
        """Collapse rules for one sample (per-sample override or the dataset default)."""
        return self.sample_collapse_rules.get(sample_id, self.collapse_rules)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["grid"]["extent"] = list(self.grid.extent)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PipelineConfig":
        data = dict(data or {})
        known = {
            "hotspots", "grid", "graph", "cells", "categories", "collapse_rules",
            "sample_collapse_rules", "mask_suffix", "on_mismatch", "n_workers",
            "output", "log_file",
        }
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        hotspots = HotspotConfig(**(data.get("hotspots") or {}))

        grid_data = dict(data.get("grid") or {})
        if "extent" in grid_data:
            extent = grid_data["extent"]
            if isinstance(extent, (int, float)):
                extent = (extent, extent)
            grid_data["extent"] = tuple(float(v) for v in extent)
        if "step" in grid_data:
            grid_data["step"] = float(grid_data["step"])
        grid = GridConfig(**grid_data)

        graph = GraphConfig(**(data.get("graph") or {}))

        cells_data = dict(data.get("cells") or {})
        columns = dict(DEFAULT_CELL_COLUMNS)
        columns.update(cells_data.pop("columns", None) or {})
        cells = CellTableConfig(columns=columns, **cells_data)

        config = cls(
            hotspots=hotspots,
            grid=grid,
            graph=graph,
            cells=cells,
            categories=list(data["categories"]) if data.get("categories") else None,
            collapse_rules={k: list(v) for k, v in (data.get("collapse_rules") or {}).items()},
            sample_collapse_rules={
                str(sample): {k: list(v) for k, v in (rules or {}).items()}
                for sample, rules in (data.get("sample_collapse_rules") or {}).items()
            },
            mask_suffix=data.get("mask_suffix") or "",
            on_mismatch=data.get("on_mismatch", "warn"),
            n_workers=int(data.get("n_workers", 1)),
            output=data.get("output", "nerveimc_output"),
            log_file=data.get("log_file"),
        )
        config.validate()
        return config

    def validate(self):
        """Check every section; raises before any sample is touched."""
        hs = self.hotspots
        if hs.tolerance <= 0:
            raise ValueError(f"Watershed tolerance must be positive, got {hs.tolerance}")
        if hs.extension_radius < 1:
            raise ValueError(f"extension_radius must be >= 1, got {hs.extension_radius}")
        if not 0 < hs.area_percentile < 1:
            raise ValueError(f"area_percentile must be in (0, 1), got {hs.area_percentile}")
        if hs.channel_format not in ("CHW", "HWC"):
            raise ValueError(f"channel_format must be 'CHW' or 'HWC', got '{hs.channel_format}'")
        if self.on_mismatch not in MISMATCH_POLICIES:
            raise ValueError(
                f"on_mismatch must be one of {MISMATCH_POLICIES}, got '{self.on_mismatch}'"
            )
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")
        missing = set(DEFAULT_CELL_COLUMNS) - set(self.cells.columns)
        if missing:
            raise ValueError(f"Cell column mapping is missing fields: {sorted(missing)}")

        validate_grid(self.grid.extent, self.grid.step)

        # Imported here to keep config importable without the processing stack
        from nerveimc.processing.fusion import build_collapse_map
        build_collapse_map(self.collapse_rules)
        for rules in self.sample_collapse_rules.values():
            build_collapse_map(rules)


def validate_grid(extent: Tuple[float, float], step: float):
    """Raise InvalidStep unless 0 < step <= extent on both axes."""
    if len(extent) != 2:
        raise InvalidStep(f"Grid extent must have two values (x, y), got {extent}")
    if not step > 0:
        raise InvalidStep(f"Grid step must be positive, got {step}")
    x_max, y_max = extent
    if not (step <= x_max and step <= y_max):
        raise InvalidStep(f"Grid step {step} exceeds image extent ({x_max}, {y_max})")


def load_config(path: Union[str, Path, None]) -> PipelineConfig:
    """Load a PipelineConfig from YAML; ``None`` returns the defaults."""
    if path is None:
        return PipelineConfig()
    path = Path(path)
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    return PipelineConfig.from_dict(data)
