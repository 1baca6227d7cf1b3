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
Exception types raised by the NerveIMC pipeline.

Per-sample errors (InputMismatch, SchemaMismatch) are caught by the batch
driver and reported in the run summary. Configuration errors (InvalidStep)
and caller bugs (DuplicateSample) propagate.
"""
from typing import Iterable, Optional


class NerveIMCError(Exception):
    """Base class for all NerveIMC errors."""


class InputMismatch(NerveIMCError, ValueError):
    """A sample id is present in the mask list but not in the cell table, or vice versa."""

    def __init__(self, message: str, sample_ids: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.sample_ids = sorted(sample_ids) if sample_ids is not None else []


class SchemaMismatch(NerveIMCError, ValueError):
    """A record table is missing a field required for fusion."""

    def __init__(self, message: str, missing: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.missing = list(missing) if missing is not None else []


class DuplicateSample(NerveIMCError, KeyError):
    """A sample id was appended to the corpus twice."""

    def __init__(self, sample_id: str):
        super().__init__(sample_id)
        self.sample_id = sample_id

    def __str__(self):
        return f"Sample '{self.sample_id}' is already present in the corpus"


class InvalidStep(NerveIMCError, ValueError):
    """Grid step is not positive or exceeds the image extent."""
