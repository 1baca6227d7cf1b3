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
Hotspot detection on nerve-marker masks.

A hotspot is one watershed region of the nerve mask. The mask channel is
binarised, split with a distance-transform watershed and every region is
measured against the reference intensity channel. Small regions are then
removed with a per-sample area cutoff.
"""
from typing import Tuple

import numpy as np
import pandas as pd
from scipy import ndimage as ndi
from skimage.measure import label, regionprops, regionprops_table
from skimage.morphology import h_maxima
from skimage.segmentation import find_boundaries, watershed

from nerveimc.config import HOTSPOT_LABEL

CANDIDATE_COLUMNS = ["hotspot_id", "x", "y", "area", "mean_radius", "mean_intensity"]

# Hotspot-only displays need at least this many hotspots in a sample
MIN_HOTSPOTS_FOR_DISPLAY = 2


def _empty_candidates() -> pd.DataFrame:
    return pd.DataFrame({
        "hotspot_id": pd.Series(dtype=np.int64),
        "x": pd.Series(dtype=np.float64),
        "y": pd.Series(dtype=np.float64),
        "area": pd.Series(dtype=np.float64),
        "mean_radius": pd.Series(dtype=np.float64),
        "mean_intensity": pd.Series(dtype=np.float64),
    })


def split_mask(
    mask_channel: np.ndarray,
    tolerance: float = 0.0002,
    extension_radius: int = 1
) -> np.ndarray:
    """
    Split a nerve mask into labelled regions with a distance-transform watershed.

    Seeds are the regional maxima of the distance map whose height above the
    surrounding saddle exceeds ``tolerance``; maxima closer than that are merged
    into one seed. ``extension_radius`` sets the neighbourhood used when
    searching for maxima (1 gives 8-connectivity).

    Args:
        mask_channel: 2D mask or intensity image; pixels > 0 are foreground
        tolerance: Minimum seed height; must be positive
        extension_radius: Radius of the square neighbourhood

    Returns:
        Labelled image (int32), 0 = background
    """
    if mask_channel.ndim != 2:
        raise ValueError(f"Mask channel must be 2D, got shape {mask_channel.shape}")
    if tolerance <= 0:
        raise ValueError(f"Watershed tolerance must be positive, got {tolerance}")

    binary = mask_channel > 0
    if not binary.any():
        return np.zeros(mask_channel.shape, dtype=np.int32)

    distance = ndi.distance_transform_edt(binary)
    footprint = np.ones((2 * extension_radius + 1,) * 2, dtype=bool)
    seeds = h_maxima(distance, tolerance, footprint=footprint)
    markers = label(seeds, connectivity=2)

    labels = watershed(-distance, markers, mask=binary, connectivity=2)
    return labels.astype(np.int32)


def _mean_radius(region) -> float:
    """Mean distance from the region centroid to its inner boundary pixels."""
    # Pad so pixels on the bounding box edge see background
    padded = np.pad(region.image, 1, mode="constant", constant_values=False)
    boundary = find_boundaries(padded, mode="inner")[1:-1, 1:-1]
    rows, cols = np.nonzero(boundary)
    if rows.size == 0:
        return 0.0
    min_row, min_col = region.bbox[0], region.bbox[1]
    cy, cx = region.centroid
    return float(np.mean(np.hypot(rows + min_row - cy, cols + min_col - cx)))


def extract_hotspot_candidates(
    mask_channel: np.ndarray,
    reference_channel: np.ndarray,
    tolerance: float = 0.0002,
    extension_radius: int = 1
) -> pd.DataFrame:
    """
    Segment a nerve mask into hotspot candidates and measure them.

    Centroids are weighted by the reference channel (geometric centroid when
    a region has no reference signal). Area is the pixel count, mean radius
    is measured from the geometric centroid and mean intensity is taken from
    the reference channel.

    Args:
        mask_channel: 2D array used for the distance transform
        reference_channel: 2D intensity image of the same shape
        tolerance: Watershed merge tolerance
        extension_radius: Neighbourhood radius for seed detection

    Returns:
        DataFrame with one row per region in label order
        (columns: hotspot_id, x, y, area, mean_radius, mean_intensity)
    """
    if mask_channel.shape != reference_channel.shape:
        raise ValueError(
            f"Mask and reference channel shapes differ: {mask_channel.shape} vs {reference_channel.shape}"
        )

    labels = split_mask(mask_channel, tolerance=tolerance, extension_radius=extension_radius)
    if labels.max() == 0:
        return _empty_candidates()

    reference = reference_channel.astype(np.float64)
    table = pd.DataFrame(regionprops_table(
        labels,
        intensity_image=reference,
        properties=("label", "centroid", "centroid_weighted", "area", "intensity_mean"),
    ))

    radii = {region.label: _mean_radius(region) for region in regionprops(labels)}

    # Weighted centroid is undefined where the reference sums to zero
    x = table["centroid_weighted-1"].where(np.isfinite(table["centroid_weighted-1"]), table["centroid-1"])
    y = table["centroid_weighted-0"].where(np.isfinite(table["centroid_weighted-0"]), table["centroid-0"])

    candidates = pd.DataFrame({
        "hotspot_id": table["label"].astype(np.int64),
        "x": x.astype(np.float64),
        "y": y.astype(np.float64),
        "area": table["area"].astype(np.float64),
        "mean_radius": table["label"].map(radii).astype(np.float64),
        "mean_intensity": table["intensity_mean"].astype(np.float64),
    })
    return candidates.sort_values("hotspot_id").reset_index(drop=True)


def area_cutoff(areas, percentile: float = 0.05) -> float:
    """Area quantile used as the per-sample noise cutoff (nan for no areas)."""
    areas = np.asarray(areas, dtype=np.float64)
    if areas.size == 0:
        return float("nan")
    return float(np.quantile(areas, percentile))


def filter_hotspots(
    candidates: pd.DataFrame,
    percentile: float = 0.05,
    label: str = HOTSPOT_LABEL
) -> Tuple[pd.DataFrame, float]:
    """
    Keep candidates whose area is strictly above the sample's area quantile.

    The cutoff is computed from ``candidates`` alone, so every sample gets its
    own threshold.

    Returns:
        (hotspots, cutoff) where hotspots carries an added ``category`` column
    """
    if not 0 < percentile < 1:
        raise ValueError(f"percentile must be in (0, 1), got {percentile}")

    cutoff = area_cutoff(candidates["area"] if len(candidates) else [], percentile)
    if len(candidates) == 0:
        hotspots = candidates.copy()
    else:
        hotspots = candidates[candidates["area"] > cutoff].copy()
    hotspots["category"] = pd.Series([label] * len(hotspots), index=hotspots.index, dtype=object)
    return hotspots.reset_index(drop=True), cutoff


def detect_hotspots(
    image: np.ndarray,
    mask_channel: int = 0,
    reference_channel: int = 1,
    tolerance: float = 0.0002,
    extension_radius: int = 1,
    percentile: float = 0.05,
    label: str = HOTSPOT_LABEL
) -> Tuple[pd.DataFrame, pd.DataFrame, float]:
    """
    Run extraction and filtering on a channel-last (H, W, C) mask image.

    Returns:
        (candidates, hotspots, cutoff)
    """
    if image.ndim != 3:
        raise ValueError(f"Mask image must be (H, W, C), got shape {image.shape}")
    n_channels = image.shape[-1]
    for idx in (mask_channel, reference_channel):
        if not 0 <= idx < n_channels:
            raise ValueError(f"Channel index {idx} out of range for image with {n_channels} channel(s)")

    print(f"[hotspot_worker] Segmenting mask of shape {image.shape[:2]} (tolerance={tolerance})")
    candidates = extract_hotspot_candidates(
        image[..., mask_channel],
        image[..., reference_channel],
        tolerance=tolerance,
        extension_radius=extension_radius,
    )
    hotspots, cutoff = filter_hotspots(candidates, percentile=percentile, label=label)
    print(
        f"[hotspot_worker] {len(candidates)} candidate(s), area cutoff={cutoff:.2f}, "
        f"{len(hotspots)} hotspot(s) kept"
    )
    return candidates, hotspots, cutoff
