"""
NerveIMC: nerve hotspot detection and spatial grid analysis for IMC data.
"""

__version__ = "0.1.0"

from .errors import (  # noqa: F401
    DuplicateSample,
    InputMismatch,
    InvalidStep,
    NerveIMCError,
    SchemaMismatch,
)
