"""
Two-condition differential expression analysis for RNA-seq count data.

Implements the DESeq2 methodology: median-of-ratios normalization,
empirical Bayes dispersion estimation, negative binomial GLMs, Wald tests
against a fold change threshold, independent filtering with
Benjamini-Hochberg correction and adaptive fold change shrinkage.

Main Classes:
    CountMatrix : Raw counts, genes x samples
    DesignMetadata : Two-level condition factor with explicit contrast
    DESeqDataSet : Stepwise analysis container
    ResultTable : Final per-gene results

Main Functions:
    run_pipeline : Run every stage and return a ResultTable
    estimate_size_factors, fit_dispersions, fit_models, test_hypothesis,
    correct_multiple_testing, shrink_fold_changes : the individual stages

References:
    Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
    and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

# Inputs and records
from .data import CountMatrix, DesignMetadata
from .records import (
    SizeFactors,
    DispersionEstimate,
    GeneFitResult,
    ShrunkResult,
    FitStatus,
    NotTestedReason,
    Tested,
    NotTested
)

# Stages
from .size_factors import estimate_size_factors
from .dispersion import fit_dispersions, fit_dispersion_trend
from .glm import fit_models
from .hypothesis import test_hypothesis, wald_test
from .independent_filtering import (
    correct_multiple_testing,
    benjamini_hochberg,
    independent_filtering
)
from .lfc_shrinkage import shrink_fold_changes, lfc_shrink

# Pipeline and results
from .pipeline import run_pipeline, DESeqDataSet
from .results import ResultTable
from .config import DESeqConfig
from .utils import normalize_counts, fpm, filter_low_counts

# Errors
from .exceptions import (
    DESeqError,
    AlignmentError,
    DegenerateInputError,
    DispersionFitError,
    InvalidDesignError,
    GeneFitNonConvergence
)

__version__ = "0.1.0"

__all__ = [
    # Inputs and records
    'CountMatrix',
    'DesignMetadata',
    'SizeFactors',
    'DispersionEstimate',
    'GeneFitResult',
    'ShrunkResult',
    'FitStatus',
    'NotTestedReason',
    'Tested',
    'NotTested',
    # Stages
    'estimate_size_factors',
    'fit_dispersions',
    'fit_dispersion_trend',
    'fit_models',
    'test_hypothesis',
    'wald_test',
    'correct_multiple_testing',
    'benjamini_hochberg',
    'independent_filtering',
    'shrink_fold_changes',
    'lfc_shrink',
    # Pipeline and results
    'run_pipeline',
    'DESeqDataSet',
    'ResultTable',
    'DESeqConfig',
    'normalize_counts',
    'fpm',
    'filter_low_counts',
    # Errors
    'DESeqError',
    'AlignmentError',
    'DegenerateInputError',
    'DispersionFitError',
    'InvalidDesignError',
    'GeneFitNonConvergence',
]
