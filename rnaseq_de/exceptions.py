"""
Error types raised by the differential expression pipeline.

Fatal problems abort the run and are raised as subclasses of
``DESeqError``. They also subclass ``ValueError`` because they all
describe inputs the pipeline cannot work with.

Per-gene fitting problems are not errors: they are recorded on the
per-gene records and reported once per stage through the
``GeneFitNonConvergence`` warning category.
"""


class DESeqError(Exception):
    """Base class for fatal pipeline errors."""

    def __init__(self, message, stage=None):
        self.stage = stage
        if stage is not None:
            message = f"[{stage}] {message}"
        super().__init__(message)


class AlignmentError(DESeqError, ValueError):
    """Sample identifiers of metadata and count matrix differ."""


class DegenerateInputError(DESeqError, ValueError):
    """Size factors cannot be computed from the count matrix."""


class DispersionFitError(DESeqError, ValueError):
    """No usable mean-dispersion trend could be fitted."""


class InvalidDesignError(DESeqError, ValueError):
    """Design factor does not have exactly the two requested levels."""


class GeneFitNonConvergence(RuntimeWarning):
    """Some genes did not converge during a per-gene fit."""
