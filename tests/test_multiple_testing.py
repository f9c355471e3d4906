"""Tests for Benjamini-Hochberg correction and independent filtering."""

import numpy as np
import pytest

from rnaseq_de import (
    FitStatus,
    GeneFitResult,
    NotTested,
    NotTestedReason,
    Tested,
    benjamini_hochberg,
    correct_multiple_testing,
    independent_filtering,
)


def make_result(gene_id, p, base_mean=100.0, status=FitStatus.CONVERGED,
                cooks_outlier=False):
    return GeneFitResult(gene_id=gene_id, base_mean=base_mean,
                         log2_fold_change=1.0, standard_error=0.5,
                         status=status, contrast=("treated", "control"),
                         p_value=p, cooks_outlier=cooks_outlier)


@pytest.fixture
def mixed_pvalues():
    rng = np.random.default_rng(7)
    null = rng.uniform(size=400)
    alt = rng.beta(0.1, 10, size=100)
    pvals = np.concatenate([alt, null])
    # signal concentrated in high-count genes
    base_means = np.concatenate([rng.uniform(200, 2000, 100),
                                 rng.uniform(1, 2000, 400)])
    return base_means, pvals


# --------------------------------------------------------------------------
# benjamini_hochberg
# --------------------------------------------------------------------------


def test_bh_known_values():
    p = np.array([0.01, 0.04, 0.03, 0.005])
    np.testing.assert_allclose(benjamini_hochberg(p),
                               [0.02, 0.04, 0.04, 0.02])


def test_bh_monotone_in_rank(mixed_pvalues):
    _, p = mixed_pvalues
    padj = benjamini_hochberg(p)
    order = np.argsort(p)
    assert np.all(np.diff(padj[order]) >= 0)
    assert np.all(padj >= p)
    assert np.all(padj <= 1)


def test_bh_empty():
    assert benjamini_hochberg(np.array([])).size == 0


# --------------------------------------------------------------------------
# independent_filtering
# --------------------------------------------------------------------------


def test_filtering_does_not_lose_rejections(mixed_pvalues):
    base_means, p = mixed_pvalues
    filt = independent_filtering(base_means, p, alpha=0.1)
    n_plain = np.sum(benjamini_hochberg(p) <= 0.1)
    assert filt["n_significant"] >= n_plain
    assert np.all(np.isnan(filt["padj"][~filt["filter"]]))


def test_fixed_theta(mixed_pvalues):
    base_means, p = mixed_pvalues
    filt = independent_filtering(base_means, p, theta=500.0)
    assert filt["threshold"] == 500.0
    np.testing.assert_array_equal(filt["filter"], base_means >= 500.0)


def test_custom_filter_policy(mixed_pvalues):
    base_means, p = mixed_pvalues
    calls = []

    def median_policy(means, pvalues, alpha):
        calls.append(alpha)
        return np.median(means)

    filt = independent_filtering(base_means, p, alpha=0.05,
                                 filter_fun=median_policy)
    assert calls == [0.05]
    assert filt["threshold"] == pytest.approx(np.median(base_means))


# --------------------------------------------------------------------------
# correct_multiple_testing
# --------------------------------------------------------------------------


def test_every_null_has_a_reason(mixed_pvalues):
    base_means, p = mixed_pvalues
    results = [make_result(f"g{i}", p[i], base_means[i]) for i in range(len(p))]
    results.append(make_result("zero", np.nan, 0.0, status=FitStatus.ALL_ZERO))
    results.append(make_result("bad", np.nan, status=FitStatus.NOT_CONVERGED))
    results.append(make_result("outlier", 1e-10, cooks_outlier=True))

    out = correct_multiple_testing(results, alpha=0.1)
    assert len(out) == len(results)
    for r in out:
        assert isinstance(r.adjustment, (Tested, NotTested))
        if r.adjusted_p_value is None:
            assert r.not_tested_reason in NotTestedReason
    assert out[-3].not_tested_reason is NotTestedReason.ALL_ZERO_COUNTS
    assert out[-2].not_tested_reason is NotTestedReason.NOT_CONVERGED
    assert out[-1].not_tested_reason is NotTestedReason.COOKS_OUTLIER


def test_adjusted_monotone_in_raw_pvalue(mixed_pvalues):
    base_means, p = mixed_pvalues
    results = [make_result(f"g{i}", p[i], base_means[i]) for i in range(len(p))]
    out = correct_multiple_testing(results, alpha=0.1)
    tested = [r for r in out if r.adjusted_p_value is not None]
    tested.sort(key=lambda r: r.p_value)
    padj = np.array([r.adjusted_p_value for r in tested])
    assert np.all(np.diff(padj) >= 0)


def test_without_filtering_everything_is_tested(mixed_pvalues):
    base_means, p = mixed_pvalues
    results = [make_result(f"g{i}", p[i], base_means[i]) for i in range(len(p))]
    out = correct_multiple_testing(results, independent_filtering=False)
    assert all(isinstance(r.adjustment, Tested) for r in out)
    np.testing.assert_allclose([r.adjusted_p_value for r in out],
                               benjamini_hochberg(p))


def test_low_mean_genes_marked_as_filtered(mixed_pvalues):
    base_means, p = mixed_pvalues
    results = [make_result(f"g{i}", p[i], base_means[i]) for i in range(len(p))]
    out = correct_multiple_testing(results, theta=1000.0)
    for r in out:
        if r.base_mean < 1000.0:
            assert r.not_tested_reason is NotTestedReason.LOW_MEAN_COUNT
        else:
            assert isinstance(r.adjustment, Tested)


def test_requires_pvalues():
    results = [make_result("g0", np.nan)]
    with pytest.raises(ValueError, match="test_hypothesis"):
        correct_multiple_testing(results)
