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
Cohort corpus of fused point tables, keyed by sample id.
"""
import threading
from typing import Dict, Iterator, List, Optional, Tuple

import pandas as pd

from nerveimc.errors import DuplicateSample
from nerveimc.processing.fusion import FUSED_COLUMNS


class SampleCorpus:
    """
    Append-only collection of per-sample FusedPoint tables.

    Samples are independent: a sample's table is stored as given and never
    touched by later appends. Appends are serialised by a lock so per-sample
    work may run in parallel threads.
    """

    def __init__(self):
        self._samples: Dict[str, pd.DataFrame] = {}
        self._lock = threading.Lock()
        self._frozen = False

    def append(self, sample_id: str, points: pd.DataFrame) -> "SampleCorpus":
        """
        Add one sample's point table.

        Raises:
            DuplicateSample: ``sample_id`` is already in the corpus
            RuntimeError: The corpus has been frozen
        """
        sample_id = str(sample_id)
        with self._lock:
            if self._frozen:
                raise RuntimeError("Corpus is frozen; no further samples can be added")
            if sample_id in self._samples:
                raise DuplicateSample(sample_id)
            self._samples[sample_id] = points.reset_index(drop=True).copy()
        return self

    def freeze(self) -> "SampleCorpus":
        with self._lock:
            self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __getitem__(self, sample_id: str) -> pd.DataFrame:
        # Callers get a copy so the stored table stays read-only
        return self._samples[str(sample_id)].copy()

    def __contains__(self, sample_id) -> bool:
        return str(sample_id) in self._samples

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._samples))

    @property
    def sample_ids(self) -> List[str]:
        return list(self._samples)

    def items(self) -> Iterator[Tuple[str, pd.DataFrame]]:
        for sample_id in list(self._samples):
            yield sample_id, self[sample_id]

    def reorder(self, sample_ids: List[str]) -> "SampleCorpus":
        """New corpus with the same tables in the given order (used after parallel runs)."""
        if sorted(sample_ids) != sorted(self._samples):
            raise ValueError("reorder() needs exactly the corpus sample ids")
        ordered = SampleCorpus()
        for sample_id in sample_ids:
            ordered.append(sample_id, self._samples[sample_id])
        if self._frozen:
            ordered.freeze()
        return ordered

    def to_frame(self) -> pd.DataFrame:
        """All samples concatenated in insertion order."""
        tables = [df for df in self._samples.values() if len(df)]
        if not tables:
            return pd.DataFrame(columns=FUSED_COLUMNS)
        return pd.concat(tables, ignore_index=True)

    def total_points(self) -> int:
        return int(sum(len(df) for df in self._samples.values()))

    def category_counts(self) -> pd.Series:
        """Per-category point totals over the cohort, sorted by category."""
        counts: Dict[str, int] = {}
        for df in self._samples.values():
            for category, n in df["category"].value_counts().items():
                counts[category] = counts.get(category, 0) + int(n)
        return pd.Series(dict(sorted(counts.items())), dtype="int64", name="count")


def append_sample(corpus: Optional[SampleCorpus], sample_id: str, points: pd.DataFrame) -> SampleCorpus:
    """Append to ``corpus``, creating it on the first call."""
    if corpus is None:
        corpus = SampleCorpus()
    return corpus.append(sample_id, points)
