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
Core batch functions for NerveIMC.

This module drives a cohort run: mask -> hotspots -> fusion with the cell
table -> corpus -> grid tables -> summaries. It is shared by the CLI and by
library users. Per-sample failures are recorded and the batch continues;
configuration errors abort before any sample is read.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from nerveimc.config import PipelineConfig
from nerveimc.data.cell_loader import cells_by_sample
from nerveimc.data.mask_loader import read_mask_image, sample_id_from_path
from nerveimc.errors import DuplicateSample, InputMismatch, SchemaMismatch
from nerveimc.processing.corpus import SampleCorpus
from nerveimc.processing.fusion import CELL_REQUIRED, fuse_records, standardize_cells
from nerveimc.processing.grid_worker import bin_corpus
from nerveimc.processing.hotspot_worker import MIN_HOTSPOTS_FOR_DISPLAY, detect_hotspots
from nerveimc.processing.summary import (
    RunReport,
    cohort_totals,
    grid_summary_table,
    hotspot_summary_table,
    summarize_hotspots,
)
from nerveimc.utils.logger import MethodsLogger, get_logger, set_log_file


@dataclass
class SampleResult:
    """Outcome of processing one sample up to fusion."""
    sample_id: str
    points: pd.DataFrame
    summary: Dict[str, float]
    cutoff: float
    n_candidates: int
    visualizable: bool
    warnings: List[str] = field(default_factory=list)


@dataclass
class CohortResult:
    """Everything a cohort run produces."""
    corpus: SampleCorpus
    hotspot_summary: pd.DataFrame
    grid: pd.DataFrame
    hotspot_grid: pd.DataFrame
    report: RunReport
    cutoffs: Dict[str, float] = field(default_factory=dict)
    visualizable: Dict[str, bool] = field(default_factory=dict)


def _empty_cells() -> pd.DataFrame:
    return pd.DataFrame({col: pd.Series(dtype=object if col == "phenotype" else float)
                         for col in CELL_REQUIRED})


def match_samples(
    mask_ids: Iterable[str],
    cell_ids: Iterable[str]
) -> Tuple[List[str], List[str], List[str]]:
    """
    Compare sample ids of the mask list and the cell table.

    Returns:
        (matched, mask_only, cells_only); matched and mask_only keep mask
        order, cells_only is sorted
    """
    mask_ids = list(mask_ids)
    cell_set = set(cell_ids)
    mask_set = set(mask_ids)
    matched = [s for s in mask_ids if s in cell_set]
    mask_only = [s for s in mask_ids if s not in cell_set]
    cells_only = sorted(cell_set - mask_set)
    return matched, mask_only, cells_only


def process_sample(
    sample_id: str,
    mask_path: Union[str, Path],
    cells: Optional[pd.DataFrame],
    config: Optional[PipelineConfig] = None
) -> SampleResult:
    """
    Detect hotspots in one mask and fuse them with the sample's cells.

    Args:
        sample_id: Sample identifier
        mask_path: Two-channel mask TIFF
        cells: Canonical cell table for this sample (None for no cells)
        config: Pipeline configuration

    Raises:
        SchemaMismatch: Hotspot or cell records miss required fields
    """
    config = config or PipelineConfig()
    hs = config.hotspots
    warnings: List[str] = []

    image = read_mask_image(mask_path, channel_format=hs.channel_format)
    candidates, hotspots, cutoff = detect_hotspots(
        image,
        mask_channel=hs.mask_channel,
        reference_channel=hs.reference_channel,
        tolerance=hs.tolerance,
        extension_radius=hs.extension_radius,
        percentile=hs.area_percentile,
        label=hs.label,
    )
    if len(candidates) == 0:
        warnings.append("EmptySegmentation: mask has no components")
    visualizable = len(hotspots) >= MIN_HOTSPOTS_FOR_DISPLAY
    if not visualizable:
        warnings.append(
            f"InsufficientHotspots: {len(hotspots)} hotspot(s) after filtering; "
            f"excluded from hotspot-only displays"
        )

    if cells is None:
        cells = _empty_cells()
    points = fuse_records(
        hotspots,
        cells,
        sample_id,
        collapse_rules=config.rules_for(sample_id),
        hotspot_label=hs.label,
        categories=config.categories,
    )
    for message in warnings:
        print(f"[core] WARNING {sample_id}: {message}")

    return SampleResult(
        sample_id=sample_id,
        points=points,
        summary=summarize_hotspots(sample_id, hotspots),
        cutoff=cutoff,
        n_candidates=len(candidates),
        visualizable=visualizable,
        warnings=warnings,
    )


def _run_one(sample_id, mask_path, cells, config):
    """Process a sample, returning the exception instead of raising for per-sample errors."""
    try:
        return process_sample(sample_id, mask_path, cells, config)
    except (SchemaMismatch, InputMismatch, OSError, ValueError) as e:
        return e


def run_cohort(
    mask_paths: Iterable[Union[str, Path]],
    cells: Optional[pd.DataFrame],
    config: Optional[PipelineConfig] = None,
    logger: Optional[MethodsLogger] = None
) -> CohortResult:
    """
    Run the full pipeline over a list of masks.

    Samples are processed in mask-list order. Mask samples without cell
    records and cell samples without masks are reported; ``config.on_mismatch``
    decides whether mask-only samples are processed with hotspots only
    ('warn'), skipped ('skip') or abort the run ('error').

    Args:
        mask_paths: Mask TIFFs, one per sample
        cells: External single-cell table (source column names)
        config: Pipeline configuration
        logger: Methods logger (global logger when None)

    Returns:
        CohortResult

    Raises:
        InvalidStep: Grid configuration is invalid
        InputMismatch: Sample ids disagree and ``on_mismatch == 'error'``
        DuplicateSample: Two masks map to the same sample id
    """
    config = config or PipelineConfig()
    config.validate()
    if logger is None:
        if config.log_file:
            set_log_file(config.log_file)
        logger = get_logger()
    hs = config.hotspots

    mask_paths = [str(p) for p in mask_paths]
    sample_ids = [sample_id_from_path(p, config.mask_suffix) for p in mask_paths]
    seen = set()
    for sample_id in sample_ids:
        if sample_id in seen:
            raise DuplicateSample(sample_id)
        seen.add(sample_id)

    if cells is not None:
        canonical = standardize_cells(cells, config.cells.columns, config.cells.orientation_column)
        per_sample = cells_by_sample(canonical, "sample_id")
    else:
        per_sample = {}

    matched, mask_only, cells_only = match_samples(sample_ids, per_sample)
    report = RunReport(unmatched_cells=cells_only)
    if cells_only:
        print(f"[core] WARNING: {len(cells_only)} cell table sample(s) have no mask: {cells_only}")
    if mask_only:
        print(f"[core] WARNING: {len(mask_only)} mask sample(s) have no cell records: {mask_only}")
        if config.on_mismatch == "error":
            raise InputMismatch(
                f"Samples without cell records: {mask_only}", mask_only
            )
    if cells_only and config.on_mismatch == "error":
        raise InputMismatch(f"Cell table samples without a mask: {cells_only}", cells_only)

    jobs = []
    for sample_id, mask_path in zip(sample_ids, mask_paths):
        if sample_id in mask_only:
            reason = "InputMismatch: no cell records for this sample"
            if config.on_mismatch == "skip":
                report.skip(sample_id, reason)
                continue
            report.warn(sample_id, reason + "; processed with hotspots only")
        sample_cells = per_sample.get(sample_id)
        jobs.append((sample_id, mask_path, sample_cells))

    print(f"[core] Processing {len(jobs)} sample(s) with {config.n_workers} worker(s)")
    if config.n_workers > 1 and len(jobs) > 1:
        with ThreadPoolExecutor(max_workers=config.n_workers) as pool:
            futures = [pool.submit(_run_one, sid, path, sc, config) for sid, path, sc in jobs]
            outcomes = [f.result() for f in futures]
    else:
        outcomes = [_run_one(sid, path, sc, config) for sid, path, sc in jobs]

    corpus = SampleCorpus()
    summaries = []
    cutoffs: Dict[str, float] = {}
    visualizable: Dict[str, bool] = {}
    for (sample_id, _, _), outcome in zip(jobs, outcomes):
        if isinstance(outcome, Exception):
            reason = f"{type(outcome).__name__}: {outcome}"
            print(f"[core] ERROR {sample_id}: {reason}")
            report.skip(sample_id, reason)
            continue
        corpus.append(sample_id, outcome.points)
        summaries.append(outcome.summary)
        cutoffs[sample_id] = outcome.cutoff
        visualizable[sample_id] = outcome.visualizable
        for message in outcome.warnings:
            report.warn(sample_id, message)
        report.succeeded.append(sample_id)
    corpus.freeze()

    processed = corpus.sample_ids
    logger.log_hotspot_detection(
        {
            "tolerance": hs.tolerance,
            "extension_radius": hs.extension_radius,
            "area_percentile": hs.area_percentile,
            "area_cutoffs": cutoffs,
        },
        samples=processed,
    )
    logger.log_fusion(
        config.collapse_rules, samples=processed,
        hotspot_label=hs.label, categories=config.categories,
    )

    grid = bin_corpus(
        corpus, extent=config.grid.extent, step=config.grid.step,
        hotspot_label=hs.label, categories=config.categories,
    )
    hotspot_grid = bin_corpus(
        corpus, extent=config.grid.extent, step=config.grid.step,
        target_category=hs.label, hotspot_label=hs.label,
    )
    logger.log_grid_binning(
        {"step": config.grid.step, "extent": list(config.grid.extent), "target_category": hs.label},
        samples=processed,
    )

    totals = cohort_totals(corpus)
    print(f"[core] Corpus: {totals['n_samples']} sample(s), {totals['n_points']} point(s)")
    logger.log_run_summary(report.succeeded, report.skipped)
    print(report.format())

    return CohortResult(
        corpus=corpus,
        hotspot_summary=hotspot_summary_table(summaries),
        grid=grid_summary_table([grid]),
        hotspot_grid=grid_summary_table([hotspot_grid]),
        report=report,
        cutoffs=cutoffs,
        visualizable=visualizable,
    )


def _summarize_one(sample_id, mask_path, config):
    """Hotspot summary row for one mask, or the per-sample exception."""
    hs = config.hotspots
    try:
        image = read_mask_image(mask_path, channel_format=hs.channel_format)
        _, hotspots, _ = detect_hotspots(
            image,
            mask_channel=hs.mask_channel,
            reference_channel=hs.reference_channel,
            tolerance=hs.tolerance,
            extension_radius=hs.extension_radius,
            percentile=hs.area_percentile,
            label=hs.label,
        )
    except (OSError, ValueError) as e:
        return e
    return summarize_hotspots(sample_id, hotspots)


def hotspot_summaries(
    mask_paths: Iterable[Union[str, Path]],
    config: Optional[PipelineConfig] = None,
    logger: Optional[MethodsLogger] = None
) -> Tuple[pd.DataFrame, RunReport]:
    """
    Hotspot detection and per-sample summary without a cell table.

    Masks that cannot be read or segmented are skipped and listed in the
    returned report; the remaining masks are still summarised.

    Returns:
        (summary table, RunReport)
    """
    config = config or PipelineConfig()
    config.validate()
    logger = logger or get_logger()

    report = RunReport()
    rows = []
    for path in mask_paths:
        sample_id = sample_id_from_path(path, config.mask_suffix)
        outcome = _summarize_one(sample_id, path, config)
        if isinstance(outcome, Exception):
            reason = f"{type(outcome).__name__}: {outcome}"
            print(f"[core] ERROR {sample_id}: {reason}")
            report.skip(sample_id, reason)
            continue
        rows.append(outcome)
        report.succeeded.append(sample_id)

    logger.log_run_summary(report.succeeded, report.skipped, notes="hotspot summaries")
    print(report.format())
    return hotspot_summary_table(rows), report


def write_outputs(
    result: CohortResult,
    output_dir: Union[str, Path],
    logger: Optional[MethodsLogger] = None
) -> Dict[str, Path]:
    """
    Write the tables of a cohort run to ``output_dir``.

    Returns:
        Mapping of output name to written path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    logger = logger or get_logger()

    paths = {
        "hotspot_summary": output_dir / "hotspot_summary.csv",
        "fused_points": output_dir / "fused_points.csv",
        "grid_all": output_dir / "grid_all.csv",
        "grid_hotspots": output_dir / "grid_hotspots.csv",
        "run_report": output_dir / "run_report.csv",
        "run_summary": output_dir / "run_summary.txt",
    }
    result.hotspot_summary.to_csv(paths["hotspot_summary"], index=False)
    result.corpus.to_frame().to_csv(paths["fused_points"], index=False)
    result.grid.to_csv(paths["grid_all"], index=False)
    result.hotspot_grid.to_csv(paths["grid_hotspots"], index=False)
    result.report.to_frame().to_csv(paths["run_report"], index=False)
    with open(paths["run_summary"], "w", encoding="utf-8") as f:
        f.write(result.report.format() + "\n")

    for name, path in paths.items():
        logger.log_export(
            "csv" if path.suffix == ".csv" else "txt",
            {"table": name},
            output_path=str(path),
            samples=result.corpus.sample_ids,
        )
    return paths
