"""Tests for median-of-ratios size factors."""

import numpy as np
import pytest

from rnaseq_de import CountMatrix, DegenerateInputError, estimate_size_factors
from rnaseq_de.size_factors import (
    _log_geometric_means,
    estimate_size_factors_for_matrix,
)


def test_geometric_mean_close_to_one(simulated):
    matrix, _, _ = simulated
    sf = estimate_size_factors(matrix)
    assert sf.geometric_mean() == pytest.approx(1.0, abs=0.05)


def test_recovers_depth_scaling():
    counts = np.array([[10, 20, 40], [5, 10, 20], [100, 200, 400]])
    sf = estimate_size_factors_for_matrix(counts)
    np.testing.assert_allclose(sf / sf[0], [1.0, 2.0, 4.0])


def test_robust_to_single_changed_gene():
    counts = np.array([
        [100, 100, 100, 100],
        [50, 50, 50, 50],
        [30, 30, 30, 30],
        [10, 10, 1000, 1000],
    ])
    sf = estimate_size_factors_for_matrix(counts)
    np.testing.assert_allclose(sf, 1.0)


def test_mapping_interface(simulated):
    matrix, _, _ = simulated
    sf = estimate_size_factors(matrix)
    assert list(sf) == list(matrix.sample_ids)
    assert sf["s0"] == pytest.approx(sf.values[0])
    assert sf.to_series().index.tolist() == list(matrix.sample_ids)


def test_every_gene_with_a_zero_is_degenerate():
    counts = CountMatrix([[0, 5, 3], [4, 0, 2], [1, 1, 0]])
    with pytest.raises(DegenerateInputError, match="size_factors"):
        estimate_size_factors(counts)


def test_poscounts_handles_zeros_and_recenters():
    counts = CountMatrix([[0, 5, 3], [4, 0, 2], [1, 1, 0], [8, 6, 7]])
    sf = estimate_size_factors(counts, type="poscounts")
    assert sf.geometric_mean() == pytest.approx(1.0)


def test_poscounts_geometric_mean_averages_over_all_samples():
    counts = np.array([[0.0, 4.0, 16.0], [2.0, 2.0, 2.0], [0.0, 0.0, 0.0]])
    log_geomeans = _log_geometric_means(counts, "poscounts")
    # zero samples stay in the denominator: (log 4 + log 16) / 3
    assert np.exp(log_geomeans[0]) == pytest.approx(4.0)
    assert np.exp(log_geomeans[1]) == pytest.approx(2.0)
    assert log_geomeans[2] == -np.inf


def test_control_genes_by_id():
    counts = CountMatrix([[10, 20], [10, 20], [10, 1000]],
                         gene_ids=["a", "b", "c"])
    sf = estimate_size_factors(counts, control_genes=["a", "b"])
    assert sf.values[1] / sf.values[0] == pytest.approx(2.0)


def test_unknown_control_gene():
    counts = CountMatrix([[10, 20], [10, 20]], gene_ids=["a", "b"])
    with pytest.raises(ValueError, match="not in count matrix"):
        estimate_size_factors(counts, control_genes=["z"])
