"""
Run-wide settings for the differential expression pipeline.

Every stage function takes its settings as keyword arguments with
DESeq2's defaults; ``DESeqConfig`` groups them for ``run_pipeline`` and
``DESeqDataSet`` so a whole run can be described by one object.
"""

from dataclasses import dataclass, replace


ALT_HYPOTHESES = ("greaterAbs", "lessAbs", "greater", "less")
SIZE_FACTOR_TYPES = ("ratio", "poscounts")
TREND_FIT_TYPES = ("parametric", "local", "mean")
SHRINKAGE_TYPES = ("ashr", "normal", "apeglm", "none")


@dataclass(frozen=True)
class DESeqConfig:
    """
    Settings for a full pipeline run.

    Attributes
    ----------
    alpha : float
        Target false discovery rate and significance cutoff.
    lfc_threshold : float
        Log2 fold change boundary of the null hypothesis.
    alt_hypothesis : str
        One of 'greaterAbs', 'lessAbs', 'greater', 'less'.
    size_factor_type : str
        'ratio' (standard median-of-ratios) or 'poscounts'.
    min_disp, max_disp : float
        Bounds of the dispersion search. ``max_disp`` is raised to the
        number of samples when that is larger.
    trend_fit_type : str
        'parametric', 'local' or 'mean'.
    min_trend_genes : int
        Minimum number of usable genes needed to fit a trend.
    outlier_sd : float
        Number of prior standard deviations above the trend at which a
        gene-wise dispersion is kept instead of shrunk.
    min_prior_var : float
        Floor on the variance of the log-dispersion prior.
    disp_max_iter : int
        Iteration cap of the per-gene dispersion optimiser.
    glm_max_iter : int
        Iteration cap of IRLS.
    glm_tol : float
        IRLS deviance tolerance.
    cooks_filter : bool
        Exclude genes with Cook's distance outliers from testing.
    cooks_quantile : float
        Quantile of F(p, m - p) used as Cook's distance cutoff.
    min_replicates_cooks : int
        Samples in smaller groups are not used to flag outliers.
    independent_filtering : bool
        Filter low-mean genes before multiple testing correction.
    shrinkage : str
        'ashr', 'normal', 'apeglm' or 'none'.
    n_jobs : int
        joblib workers for the per-gene stages.
    """

    alpha: float = 0.05
    lfc_threshold: float = 0.0
    alt_hypothesis: str = "greaterAbs"
    size_factor_type: str = "ratio"
    min_disp: float = 1e-8
    max_disp: float = 10.0
    trend_fit_type: str = "parametric"
    min_trend_genes: int = 10
    outlier_sd: float = 2.0
    min_prior_var: float = 0.25
    disp_max_iter: int = 100
    glm_max_iter: int = 100
    glm_tol: float = 1e-8
    cooks_filter: bool = True
    cooks_quantile: float = 0.99
    min_replicates_cooks: int = 3
    independent_filtering: bool = True
    shrinkage: str = "ashr"
    n_jobs: int = 1

    def __post_init__(self):
        if not 0.0 < self.alpha < 1.0:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")
        if self.lfc_threshold < 0:
            raise ValueError("lfc_threshold must be non-negative")
        if self.alt_hypothesis not in ALT_HYPOTHESES:
            raise ValueError(f"Unknown alt_hypothesis: {self.alt_hypothesis}")
        if self.alt_hypothesis == "lessAbs" and self.lfc_threshold == 0:
            raise ValueError("alt_hypothesis='lessAbs' needs a positive "
                             "lfc_threshold")
        if self.size_factor_type not in SIZE_FACTOR_TYPES:
            raise ValueError(f"Unknown size_factor_type: {self.size_factor_type}")
        if self.trend_fit_type not in TREND_FIT_TYPES:
            raise ValueError(f"Unknown trend_fit_type: {self.trend_fit_type}")
        if self.shrinkage not in SHRINKAGE_TYPES:
            raise ValueError(f"Unknown shrinkage type: {self.shrinkage}")
        if not 0 < self.min_disp < self.max_disp:
            raise ValueError("need 0 < min_disp < max_disp")
        if self.min_trend_genes < 1:
            raise ValueError("min_trend_genes must be at least 1")
        if self.disp_max_iter < 1 or self.glm_max_iter < 1:
            raise ValueError("iteration caps must be positive")
        if not 0.0 < self.cooks_quantile < 1.0:
            raise ValueError("cooks_quantile must be in (0, 1)")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero")

    def with_overrides(self, **kwargs):
        """Return a copy with the non-None keyword values replaced."""
        changes = {k: v for k, v in kwargs.items() if v is not None}
        return replace(self, **changes) if changes else self
