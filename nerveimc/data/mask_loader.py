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
Reading of nerve segmentation masks.

Each sample has one TIFF with two channels: the nerve mask used for the
distance transform and the reference intensity channel used for feature
measurement. Files may store channels first (CHW) or last (HWC).
"""
import glob
import os
from pathlib import Path
from typing import Iterable, List, Union

import numpy as np

_HAVE_TIFFFILE = True
try:
    import tifffile
except Exception:
    _HAVE_TIFFFILE = False

MASK_PATTERNS = ("*.tif", "*.tiff", "*.TIF", "*.TIFF")


def read_mask_image(path: Union[str, Path], channel_format: str = "CHW") -> np.ndarray:
    """
    Read a mask TIFF as an (H, W, C) array.

    Args:
        path: Path to the TIFF file
        channel_format: 'CHW' (channels first) or 'HWC' (channels last)

    Returns:
        Channel-last image; a single-plane file yields C == 1
    """
    if not _HAVE_TIFFFILE:
        raise RuntimeError("tifffile is not installed. Run: pip install tifffile")
    if channel_format not in ("CHW", "HWC"):
        raise ValueError(f"channel_format must be 'CHW' or 'HWC', got '{channel_format}'")

    img = tifffile.imread(str(path))
    img = np.squeeze(img)
    if img.ndim == 2:
        return img[..., np.newaxis]
    if img.ndim != 3:
        raise ValueError(f"Mask image {path} must be 2D or 3D, got shape {img.shape}")
    if channel_format == "CHW":
        img = np.moveaxis(img, 0, -1)
    return img


def sample_id_from_path(path: Union[str, Path], suffix: str = "") -> str:
    """
    Sample id encoded in a mask file name.

    The extension (including a double ``.ome.tif``) is dropped, then ``suffix``
    is removed from the end of the stem if present.
    """
    name = os.path.basename(str(path))
    stem = os.path.splitext(name)[0]
    if stem.lower().endswith(".ome"):
        stem = stem[:-4]
    if suffix and stem.endswith(suffix):
        stem = stem[: -len(suffix)]
    return stem


def collect_mask_paths(paths: Iterable[Union[str, Path]]) -> List[str]:
    """
    Expand files and directories into a list of mask files.

    Files keep the given order; directories contribute their TIFF files in
    sorted order.
    """
    result: List[str] = []
    for path in paths:
        path = str(path)
        if os.path.isdir(path):
            found = set()
            for pattern in MASK_PATTERNS:
                found.update(glob.glob(os.path.join(path, pattern)))
            if not found:
                raise RuntimeError(f"No TIFF files found in directory: {path}")
            result.extend(sorted(found))
        elif os.path.isfile(path):
            result.append(path)
        else:
            raise ValueError(f"Mask path does not exist: {path}")
    return result
