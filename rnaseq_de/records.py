"""
Immutable per-stage outputs of the pipeline.

Each stage returns fresh records and never edits the ones it was given;
``dataclasses.replace`` is used to derive the next snapshot.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd


NAN = float("nan")


class SizeFactors(Mapping):
    """
    Read-only mapping from sample identifier to size factor.

    Parameters
    ----------
    sample_ids : sequence of str
        Sample identifiers, in count matrix column order.
    values : array-like
        Positive size factors, one per sample.
    """

    def __init__(self, sample_ids, values):
        values = np.array(values, dtype=float)
        sample_ids = tuple(sample_ids)
        if values.ndim != 1 or values.shape[0] != len(sample_ids):
            raise ValueError("need exactly one size factor per sample")
        if not np.all(np.isfinite(values) & (values > 0)):
            raise ValueError("size factors must be finite and positive")
        values.flags.writeable = False
        self._sample_ids = sample_ids
        self._values = values
        self._index = {s: i for i, s in enumerate(sample_ids)}

    @property
    def sample_ids(self):
        return self._sample_ids

    @property
    def values(self):
        return self._values

    def __getitem__(self, sample_id):
        return float(self._values[self._index[sample_id]])

    def __iter__(self):
        return iter(self._sample_ids)

    def __len__(self):
        return len(self._sample_ids)

    def reindex(self, sample_ids):
        """Size factors as an array ordered like ``sample_ids``."""
        return np.array([self[s] for s in sample_ids], dtype=float)

    def geometric_mean(self):
        return float(np.exp(np.mean(np.log(self._values))))

    def to_series(self):
        return pd.Series(self._values, index=list(self._sample_ids),
                         name="size_factor")

    def __repr__(self):
        pairs = ", ".join(f"{s}={v:.4g}" for s, v in zip(self._sample_ids,
                                                         self._values))
        return f"SizeFactors({pairs})"


@dataclass(frozen=True)
class DispersionEstimate:
    """Dispersion estimates of one gene.

    ``shrunk_dispersion`` is the value used by the GLM; for outlier
    genes it equals ``raw_dispersion``.
    """

    gene_id: str
    base_mean: float
    raw_dispersion: float
    fitted_trend_dispersion: float
    shrunk_dispersion: float
    outlier_flag: bool
    converged: bool = True


class FitStatus(Enum):
    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"
    ALL_ZERO = "all_zero"


class NotTestedReason(Enum):
    LOW_MEAN_COUNT = "low_mean_count"
    NOT_CONVERGED = "not_converged"
    ALL_ZERO_COUNTS = "all_zero_counts"
    COOKS_OUTLIER = "cooks_outlier"


@dataclass(frozen=True)
class Tested:
    """Gene took part in multiple testing correction."""

    value: float


@dataclass(frozen=True)
class NotTested:
    """Gene was excluded before multiple testing correction."""

    reason: NotTestedReason


@dataclass(frozen=True)
class GeneFitResult:
    """
    Model fit and test outcome for one gene.

    ``log2_fold_change`` is treatment vs base, as named by ``contrast``
    (treatment_level, base_level). ``adjustment`` is ``None`` until
    ``correct_multiple_testing`` has run.
    """

    gene_id: str
    base_mean: float
    log2_fold_change: float
    standard_error: float
    status: FitStatus
    contrast: tuple
    dispersion: float = NAN
    wald_statistic: float = NAN
    p_value: float = NAN
    adjustment: object = None
    max_cooks: float = NAN
    cooks_outlier: bool = False

    @property
    def converged(self):
        return self.status is FitStatus.CONVERGED

    @property
    def adjusted_p_value(self):
        if isinstance(self.adjustment, Tested):
            return self.adjustment.value
        return None

    @property
    def not_tested_reason(self):
        if isinstance(self.adjustment, NotTested):
            return self.adjustment.reason
        return None

    def is_significant(self, alpha):
        padj = self.adjusted_p_value
        return padj is not None and not math.isnan(padj) and padj <= alpha


@dataclass(frozen=True)
class ShrunkResult(GeneFitResult):
    """
    A ``GeneFitResult`` whose fold change and standard error are the
    posterior mean and posterior standard deviation. The maximum
    likelihood values are kept alongside.
    """

    log2_fold_change_mle: float = NAN
    standard_error_mle: float = NAN
    shrinkage_method: str = "none"
