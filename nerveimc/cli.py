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
Command-line interface for NerveIMC batch processing.

This module provides CLI commands for running the hotspot pipeline on a
cohort of nerve masks and a single-cell table.
"""
import argparse
import sys
from pathlib import Path
from typing import Optional

import pandas as pd
import yaml

from nerveimc.config import PipelineConfig, load_config, validate_grid
from nerveimc.core import hotspot_summaries, run_cohort, write_outputs
from nerveimc.data.cell_loader import load_cell_table
from nerveimc.data.mask_loader import collect_mask_paths
from nerveimc.processing.corpus import SampleCorpus
from nerveimc.processing.grid_worker import bin_corpus
from nerveimc.processing.spatial_analysis_worker import graph_parameters, neighborhood_enrichment
from nerveimc.utils.logger import get_logger, set_log_file


def _config_from_args(args) -> PipelineConfig:
    """Load the YAML config (if any) and apply command-line overrides."""
    config = load_config(getattr(args, 'config', None))
    if getattr(args, 'mask_suffix', None):
        config.mask_suffix = args.mask_suffix
    if getattr(args, 'on_mismatch', None):
        config.on_mismatch = args.on_mismatch
    if getattr(args, 'step', None) is not None:
        config.grid.step = float(args.step)
    if getattr(args, 'extent', None) is not None:
        config.grid.extent = tuple(float(v) for v in args.extent)
    if getattr(args, 'tolerance', None) is not None:
        config.hotspots.tolerance = float(args.tolerance)
    if getattr(args, 'channel_format', None):
        config.hotspots.channel_format = args.channel_format
    if getattr(args, 'workers', None) is not None:
        config.n_workers = int(args.workers)
    if getattr(args, 'log_file', None):
        config.log_file = args.log_file
    config.validate()
    if config.log_file:
        set_log_file(config.log_file)
    return config


def _load_corpus(points_path: str) -> SampleCorpus:
    """Rebuild a corpus from a fused-points CSV written by ``run``."""
    points = pd.read_csv(points_path)
    if 'sample_id' not in points.columns:
        raise ValueError(f"Points table has no 'sample_id' column: {points_path}")
    corpus = SampleCorpus()
    for sample_id, group in points.groupby(points['sample_id'].astype(str), sort=False):
        corpus.append(sample_id, group)
    return corpus.freeze()


def run_command(args):
    """Run the full pipeline: hotspots, fusion, corpus, grid tables, summaries."""
    config = _config_from_args(args)
    mask_paths = collect_mask_paths(args.masks)
    print(f"Found {len(mask_paths)} mask file(s)")

    print(f"Loading cell table from: {args.cells}")
    cells = load_cell_table(args.cells, config.cells.columns)
    print(f"  {len(cells)} cell record(s)")

    result = run_cohort(mask_paths, cells, config)
    paths = write_outputs(result, args.output)
    print(f"\n✓ Run complete! {len(result.report.succeeded)} sample(s) processed, "
          f"{len(result.report.skipped)} skipped. Output saved to: {paths['hotspot_summary'].parent}")


def hotspots_command(args):
    """Detect hotspots and write the per-sample summary table."""
    config = _config_from_args(args)
    mask_paths = collect_mask_paths(args.masks)
    print(f"Found {len(mask_paths)} mask file(s)")

    summary, report = hotspot_summaries(mask_paths, config)
    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    summary.to_csv(output_path, index=False)
    get_logger().log_export("csv", {"table": "hotspot_summary"}, str(output_path),
                            samples=list(summary['sample_id']))
    print(f"✓ Hotspot summary saved to: {output_path} "
          f"({len(report.succeeded)} sample(s), {len(report.skipped)} skipped)")


def grid_command(args):
    """Bin an existing fused-points table into grid cells."""
    config = _config_from_args(args)
    validate_grid(config.grid.extent, config.grid.step)
    corpus = _load_corpus(args.points)

    grid = bin_corpus(
        corpus,
        extent=config.grid.extent,
        step=config.grid.step,
        target_category=args.target,
        hotspot_label=config.hotspots.label,
        categories=config.categories,
    )

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    grid.to_csv(output_path, index=False)
    get_logger().log_grid_binning(
        {"step": config.grid.step, "extent": list(config.grid.extent), "target_category": args.target},
        samples=corpus.sample_ids,
        output_path=str(output_path),
    )
    print(f"✓ Grid binning complete! {len(grid)} grid cell(s) over {len(corpus)} sample(s)")


def interactions_command(args):
    """Neighbourhood enrichment between categories (squidpy)."""
    config = _config_from_args(args)
    corpus = _load_corpus(args.points)
    graph = config.graph

    print(f"Building {args.method} neighbour graphs for {len(corpus)} sample(s)...")
    enrichment = neighborhood_enrichment(
        corpus,
        method=args.method,
        expansion_threshold=graph.expansion_threshold,
        knn_k=graph.knn_k,
        delaunay_max_distance=graph.delaunay_max_distance,
        n_perms=args.n_perms,
        seed=args.seed,
    )
    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    enrichment.to_csv(output_path, index=False)

    params = graph_parameters(args.method, graph.expansion_threshold, graph.knn_k,
                              graph.delaunay_max_distance)
    params.update({"n_perms": args.n_perms, "seed": args.seed})
    get_logger().log_spatial_analysis(
        "neighborhood_enrichment", params,
        samples=corpus.sample_ids, output_path=str(output_path),
    )
    print(f"✓ Neighbourhood enrichment complete! Results saved to: {output_path}")


def workflow_command(args):
    """Execute a complete run from a YAML configuration file.

    Besides the pipeline sections, the file names the inputs:
    - masks: list of mask files or directories
    - cells: path to the single-cell table
    - output: output directory (default: nerveimc_output)
    """
    config_path = Path(args.config)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    print(f"Loading workflow configuration from: {config_path}")
    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    masks = data.pop('masks', None)
    cells_path = data.pop('cells', None)
    if not masks:
        raise ValueError("Workflow config requires 'masks'")
    if isinstance(masks, str):
        masks = [masks]

    config = PipelineConfig.from_dict(data)
    if config.log_file:
        set_log_file(config.log_file)

    mask_paths = collect_mask_paths(masks)
    print(f"Found {len(mask_paths)} mask file(s)")
    cells = None
    if cells_path:
        print(f"Loading cell table from: {cells_path}")
        cells = load_cell_table(cells_path, config.cells.columns)

    result = run_cohort(mask_paths, cells, config)
    write_outputs(result, config.output)
    print(f"\n✓ Workflow complete! Output saved to: {config.output}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='NerveIMC CLI: nerve hotspot detection and spatial grid analysis',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full run: hotspots, fusion with the cell table, grid tables, summaries
  nerveimc run --masks masks/ --cells cells.csv --output results/ --config config.yaml

  # Hotspot summary only
  nerveimc hotspots --masks masks/ --output results/hotspot_summary.csv

  # Grid tables from an existing fused-points table
  nerveimc grid results/fused_points.csv results/grid_hotspots.csv --target NerveHotspot --step 25

  # Neighbourhood enrichment (squidpy)
  nerveimc interactions results/fused_points.csv results/enrichment.csv --method knn

  # Run complete workflow from config file
  nerveimc workflow config.yaml
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    def add_common(p):
        p.add_argument('--config', type=str, help='YAML configuration file')
        p.add_argument('--log-file', type=str, help='Methods log file (JSON Lines)')

    def add_mask_options(p):
        p.add_argument('--masks', nargs='+', required=True, help='Mask TIFF files or directories')
        p.add_argument('--mask-suffix', type=str, help='Suffix removed from mask file names to get sample ids')
        p.add_argument('--channel-format', choices=['CHW', 'HWC'], help='Channel layout of mask TIFFs')
        p.add_argument('--tolerance', type=float, help='Watershed merge tolerance (default: 0.0002)')

    def add_grid_options(p):
        p.add_argument('--step', type=float, help='Grid step (default: 25)')
        p.add_argument('--extent', type=float, nargs=2, metavar=('X_MAX', 'Y_MAX'),
                       help='Image extent (default: 850 850)')

    # Run command
    run_parser = subparsers.add_parser('run', help='Run the full pipeline')
    add_common(run_parser)
    add_mask_options(run_parser)
    add_grid_options(run_parser)
    run_parser.add_argument('--cells', required=True, help='Single-cell table (CSV, TSV, parquet or h5ad)')
    run_parser.add_argument('--output', required=True, help='Output directory')
    run_parser.add_argument('--on-mismatch', choices=['warn', 'skip', 'error'],
                            help='Handling of samples missing from the cell table (default: warn)')
    run_parser.add_argument('--workers', type=int, help='Number of samples processed in parallel (default: 1)')
    run_parser.set_defaults(func=run_command)

    # Hotspots command
    hotspots_parser = subparsers.add_parser('hotspots', help='Detect hotspots and write the per-sample summary')
    add_common(hotspots_parser)
    add_mask_options(hotspots_parser)
    hotspots_parser.add_argument('--output', required=True, help='Output CSV file')
    hotspots_parser.set_defaults(func=hotspots_command)

    # Grid command
    grid_parser = subparsers.add_parser('grid', help='Grid-bin a fused-points table')
    add_common(grid_parser)
    add_grid_options(grid_parser)
    grid_parser.add_argument('points', help='Fused-points CSV (from run)')
    grid_parser.add_argument('output', help='Output CSV file')
    grid_parser.add_argument('--target', type=str, help='Only aggregate points of this category')
    grid_parser.set_defaults(func=grid_command)

    # Interactions command
    inter_parser = subparsers.add_parser('interactions', help='Neighbourhood enrichment between categories')
    add_common(inter_parser)
    inter_parser.add_argument('points', help='Fused-points CSV (from run)')
    inter_parser.add_argument('output', help='Output CSV file')
    inter_parser.add_argument('--method', choices=['expansion', 'knn', 'delaunay'], default='expansion',
                              help='Neighbour graph (default: expansion)')
    inter_parser.add_argument('--n-perms', type=int, default=1000, help='Permutations (default: 1000)')
    inter_parser.add_argument('--seed', type=int, default=42, help='Random seed (default: 42)')
    inter_parser.set_defaults(func=interactions_command)

    # Workflow command
    workflow_parser = subparsers.add_parser('workflow', help='Execute a complete run from a YAML configuration file')
    workflow_parser.add_argument('config', help='Path to YAML configuration file')
    workflow_parser.set_defaults(func=workflow_command)

    return parser


def main(argv: Optional[list] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Run the command
    try:
        args.func(args)
    except Exception as e:
        print(f"\n✗ Error: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
