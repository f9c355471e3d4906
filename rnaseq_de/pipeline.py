"""
Whole-run entry points.

``run_pipeline`` composes the stages in order for a single call;
``DESeqDataSet`` keeps the intermediate snapshots so a run can be done
step by step and results extracted several times (e.g. with different
thresholds) without refitting.

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

import logging

import pandas as pd

from .config import DESeqConfig
from .data import CountMatrix
from .dispersion import fit_dispersions
from .glm import fit_models
from .hypothesis import test_hypothesis
from .independent_filtering import correct_multiple_testing
from .lfc_shrinkage import shrink_fold_changes
from .results import ResultTable
from .size_factors import estimate_size_factors
from .utils import normalize_counts

logger = logging.getLogger(__name__)


class DESeqDataSet:
    """
    Container for a two-condition differential expression analysis.

    Stores the count matrix and design together with each stage's
    output. Stage methods return ``self`` for chaining and run any
    missing earlier stage first.

    Parameters
    ----------
    counts : CountMatrix or pd.DataFrame
        Raw counts, genes x samples.
    design : DesignMetadata
        Condition labels with explicit base and treatment levels.
    config : DESeqConfig, optional
        Run settings; defaults to ``DESeqConfig()``.

    Attributes
    ----------
    size_factors : SizeFactors or None
    dispersions : list of DispersionEstimate or None
    fits : list of GeneFitResult or None
        Untested model fits.

    Examples
    --------
    >>> dds = DESeqDataSet(counts_df, design)
    >>> dds.deseq2()
    >>> res = dds.results(alpha=0.05, lfc_threshold=1.0)
    >>> res.to_dataframe().head()

    Raises
    ------
    AlignmentError
        If count matrix and design name different samples.
    InvalidDesignError
        If a level has no samples or there are no replicates.
    """

    def __init__(self, counts, design, config=None):
        if isinstance(counts, pd.DataFrame):
            counts = CountMatrix.from_dataframe(counts)
        elif not isinstance(counts, CountMatrix):
            raise TypeError("counts must be a CountMatrix or pandas DataFrame")
        # fail before any numerical work
        design.validate_against(counts)

        self.matrix = counts
        self.design = design
        self.config = config if config is not None else DESeqConfig()

        self.size_factors = None
        self.dispersions = None
        self.fits = None

    def estimate_size_factors(self, control_genes=None, geo_means=None):
        """
        Estimate size factors.

        Parameters
        ----------
        control_genes : sequence, optional
            Genes used for the median of ratios.
        geo_means : np.ndarray, optional
            Reference geometric means (one per gene).

        Returns
        -------
        DESeqDataSet
            Self, for method chaining.
        """
        logger.info("Estimating size factors...")
        self.size_factors = estimate_size_factors(
            self.matrix, type=self.config.size_factor_type,
            control_genes=control_genes, geo_means=geo_means)
        self.dispersions = None
        self.fits = None
        return self

    def estimate_dispersions(self):
        """
        Gene-wise, trend and shrunken dispersions.

        Returns
        -------
        DESeqDataSet
            Self, for method chaining.
        """
        if self.size_factors is None:
            self.estimate_size_factors()
        cfg = self.config
        logger.info("Estimating dispersions...")
        self.dispersions = fit_dispersions(
            self.matrix, self.size_factors, self.design,
            fit_type=cfg.trend_fit_type, min_disp=cfg.min_disp,
            max_disp=cfg.max_disp, outlier_sd=cfg.outlier_sd,
            min_prior_var=cfg.min_prior_var,
            min_trend_genes=cfg.min_trend_genes, max_iter=cfg.disp_max_iter,
            n_jobs=cfg.n_jobs)
        self.fits = None
        return self

    def fit_models(self):
        """
        Per-gene negative binomial GLMs.

        Returns
        -------
        DESeqDataSet
            Self, for method chaining.
        """
        if self.dispersions is None:
            self.estimate_dispersions()
        cfg = self.config
        logger.info("Fitting models...")
        self.fits = fit_models(
            self.matrix, self.size_factors, self.dispersions, self.design,
            max_iter=cfg.glm_max_iter, tol=cfg.glm_tol,
            cooks_filter=cfg.cooks_filter, cooks_quantile=cfg.cooks_quantile,
            min_replicates_cooks=cfg.min_replicates_cooks, n_jobs=cfg.n_jobs)
        return self

    def deseq2(self):
        """
        Run every fitting stage: size factors, dispersions, GLMs.

        Returns
        -------
        DESeqDataSet
            Self, for method chaining.
        """
        self.estimate_size_factors()
        self.estimate_dispersions()
        self.fit_models()
        logger.info("Done.")
        return self

    def results(self, alpha=None, lfc_threshold=None, alt_hypothesis=None,
                shrinkage=None, base_level=None, treatment_level=None,
                filter_fun=None, theta=None):
        """
        Test, correct and (optionally) shrink the fitted models.

        Parameters
        ----------
        alpha : float, optional
            FDR target; defaults to the config value.
        lfc_threshold : float, optional
        alt_hypothesis : str, optional
        shrinkage : {'ashr', 'normal', 'apeglm', 'none'}, optional
        base_level, treatment_level : str, optional
            Contrast to report; defaults to the design's levels. The
            reversed contrast flips fold change signs.
        filter_fun : callable, optional
            Independent filtering policy, see ``independent_filtering``.
        theta : float, optional
            Fixed mean-count filter threshold.

        Returns
        -------
        ResultTable
        """
        cfg = self.config.with_overrides(
            alpha=alpha, lfc_threshold=lfc_threshold,
            alt_hypothesis=alt_hypothesis, shrinkage=shrinkage)
        if self.fits is None:
            self.fit_models()

        tested = test_hypothesis(
            self.fits, lfc_threshold=cfg.lfc_threshold,
            base_level=base_level or self.design.base_level,
            treatment_level=treatment_level or self.design.treatment_level,
            alt_hypothesis=cfg.alt_hypothesis)
        corrected = correct_multiple_testing(
            tested, alpha=cfg.alpha,
            independent_filtering=cfg.independent_filtering,
            filter_fun=filter_fun, theta=theta)
        if cfg.shrinkage != "none":
            kwargs = {"n_jobs": cfg.n_jobs} if cfg.shrinkage == "ashr" else {}
            corrected = shrink_fold_changes(corrected, method=cfg.shrinkage,
                                            **kwargs)

        return ResultTable(corrected, alpha=cfg.alpha,
                           size_factors=self.size_factors,
                           normalized_counts=self.counts(normalized=True))

    def counts(self, normalized=False):
        """
        Count matrix as a DataFrame.

        Parameters
        ----------
        normalized : bool, default False
            Divide by size factors (estimated if needed).
        """
        if not normalized:
            return self.matrix.to_dataframe()
        if self.size_factors is None:
            self.estimate_size_factors()
        return normalize_counts(self.matrix, self.size_factors)

    def __repr__(self):
        G, S = self.matrix.shape
        analyzed = "analyzed" if self.fits is not None else "not analyzed"
        return f"DESeqDataSet with {G} genes and {S} samples ({analyzed})"


def run_pipeline(matrix, design, alpha=None, lfc_threshold=None, config=None):
    """
    Run the full analysis: size factors, dispersions, GLMs, Wald tests,
    multiple testing correction and fold change shrinkage.

    Parameters
    ----------
    matrix : CountMatrix or pd.DataFrame
    design : DesignMetadata
        Fixes the contrast as treatment vs base.
    alpha : float, optional
        Overrides ``config.alpha``.
    lfc_threshold : float, optional
        Overrides ``config.lfc_threshold``.
    config : DESeqConfig, optional

    Returns
    -------
    ResultTable
        One row per input gene.

    Examples
    --------
    >>> design = DesignMetadata(conditions, base_level="control",
    ...                         treatment_level="treated")
    >>> table = run_pipeline(matrix, design, alpha=0.05, lfc_threshold=0.32)
    >>> table.summary()
    """
    config = (config if config is not None else DESeqConfig()).with_overrides(
        alpha=alpha, lfc_threshold=lfc_threshold)
    dds = DESeqDataSet(matrix, design, config=config)
    logger.info("Running pipeline on %d genes x %d samples (%s vs %s)",
                dds.matrix.n_genes, dds.matrix.n_samples,
                design.treatment_level, design.base_level)
    return dds.deseq2().results()
