"""
Shared test fixtures: seeded negative binomial simulations.
"""

import numpy as np
import pytest

from rnaseq_de import CountMatrix, DesignMetadata


def simulate_nb_counts(rng, means, dispersions):
    """NB draws with variance mu + disp * mu^2 (genes x samples)."""
    means = np.asarray(means, dtype=float)
    dispersions = np.asarray(dispersions, dtype=float)
    n = 1.0 / dispersions
    p = 1.0 / (1.0 + means * dispersions)
    return rng.negative_binomial(n, p)


def simulate_experiment(seed=0, n_genes=300, n_per_group=3, de_fraction=0.1,
                        de_lfc=2.0, mean_range=(20.0, 300.0)):
    """
    Two-group experiment with a known set of differentially expressed genes.

    Dispersions follow the trend 0.05 + 1 / mean.
    """
    rng = np.random.default_rng(seed)
    base = np.exp(rng.uniform(np.log(mean_range[0]), np.log(mean_range[1]),
                              n_genes))
    true_lfc = np.zeros(n_genes)
    n_de = int(n_genes * de_fraction)
    true_lfc[:n_de] = rng.choice([-de_lfc, de_lfc], n_de)

    S = 2 * n_per_group
    group = np.repeat([0, 1], n_per_group)
    means = base[:, None] * np.where(group == 1, 2.0 ** true_lfc[:, None], 1.0)
    disp = np.broadcast_to((0.05 + 1.0 / base)[:, None], (n_genes, S))
    counts = simulate_nb_counts(rng, means, disp)

    gene_ids = [f"gene_{i}" for i in range(n_genes)]
    sample_ids = [f"s{j}" for j in range(S)]
    conditions = {s: ("control" if g == 0 else "treated")
                  for s, g in zip(sample_ids, group)}
    matrix = CountMatrix(counts, gene_ids, sample_ids)
    design = DesignMetadata(conditions, base_level="control",
                            treatment_level="treated")
    return matrix, design, true_lfc


@pytest.fixture
def simulated():
    """300 genes, 3 vs 3 samples, 10% with |LFC| = 2."""
    return simulate_experiment(seed=0)


@pytest.fixture
def scenario():
    """
    Background genes plus three hand-written genes:

    - ``flat``: 100 in every sample
    - ``changed``: 10 in control, 1000 in treated
    - ``zero_group``: no counts in any control sample
    """
    rng = np.random.default_rng(42)
    n_bg = 200
    base = np.exp(rng.uniform(np.log(20.0), np.log(300.0), n_bg))
    means = np.repeat(base[:, None], 6, axis=1)
    disp = np.broadcast_to((0.05 + 1.0 / base)[:, None], means.shape)
    background = simulate_nb_counts(rng, means, disp)

    special = np.array([
        [100, 100, 100, 100, 100, 100],
        [10, 10, 10, 1000, 1000, 1000],
        [0, 0, 0, 80, 95, 110],
    ])
    counts = np.vstack([background, special])
    gene_ids = [f"bg_{i}" for i in range(n_bg)] + ["flat", "changed",
                                                    "zero_group"]
    sample_ids = ["c1", "c2", "c3", "t1", "t2", "t3"]
    conditions = {s: ("control" if s.startswith("c") else "treated")
                  for s in sample_ids}
    matrix = CountMatrix(counts, gene_ids, sample_ids)
    design = DesignMetadata(conditions, base_level="control",
                            treatment_level="treated")
    return matrix, design


@pytest.fixture
def make_experiment():
    """Factory for simulated experiments with custom settings."""
    return simulate_experiment
