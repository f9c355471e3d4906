"""End-to-end tests of run_pipeline, DESeqDataSet and ResultTable."""

import warnings

import numpy as np
import pandas as pd
import pytest

from rnaseq_de import (
    AlignmentError,
    CountMatrix,
    DESeqConfig,
    DESeqDataSet,
    DesignMetadata,
    InvalidDesignError,
    NotTestedReason,
    ResultTable,
    ShrunkResult,
    run_pipeline,
)
from rnaseq_de.results import COLUMNS


def quiet(func, *args, **kwargs):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return func(*args, **kwargs)


@pytest.fixture
def scenario_table(scenario):
    matrix, design = scenario
    return quiet(run_pipeline, matrix, design, alpha=0.05)


# --------------------------------------------------------------------------
# Scenarios
# --------------------------------------------------------------------------


def test_changed_gene_is_significant(scenario_table):
    changed = scenario_table["changed"]
    assert changed.log2_fold_change_mle == pytest.approx(np.log2(100.0), abs=0.2)
    assert changed.adjusted_p_value < 0.05
    assert changed.is_significant(0.05)


def test_flat_gene_is_not_significant(scenario_table):
    flat = scenario_table["flat"]
    assert flat.p_value > 0.1
    assert not flat.is_significant(0.05)


def test_zero_group_gene_does_not_break_the_run(scenario_table):
    gene = scenario_table["zero_group"]
    assert gene.gene_id == "zero_group"
    if gene.converged:
        assert gene.standard_error_mle > 1
    else:
        assert gene.not_tested_reason is NotTestedReason.NOT_CONVERGED


def test_every_gene_is_reported(scenario, scenario_table):
    matrix, _ = scenario
    assert [r.gene_id for r in scenario_table] == list(matrix.gene_ids)
    for r in scenario_table:
        if r.adjusted_p_value is None:
            assert r.not_tested_reason is not None


def test_unconverged_dispersion_is_not_tested(simulated):
    matrix, design, _ = simulated
    spiky = pd.DataFrame([[0, 0, 5000, 0, 0, 5000], [0, 3000, 0, 0, 4000, 0]],
                         index=["spiky_a", "spiky_b"],
                         columns=matrix.sample_ids)
    counts = pd.concat([matrix.to_dataframe(), spiky])
    dds = quiet(DESeqDataSet(CountMatrix.from_dataframe(counts), design).deseq2)
    table = quiet(dds.results)

    dispersions = {d.gene_id: d for d in dds.dispersions}
    for gene in ("spiky_a", "spiky_b"):
        assert not dispersions[gene].converged
        assert not table[gene].converged
        assert table[gene].adjusted_p_value is None
        assert table[gene].not_tested_reason is NotTestedReason.NOT_CONVERGED
    row = table.to_dataframe().loc["spiky_a"]
    assert not row["converged"]
    assert row["not_tested_reason"] == "not_converged"


def test_raising_threshold_never_adds_significant_genes(simulated):
    matrix, design, _ = simulated
    dds = quiet(DESeqDataSet(matrix, design).deseq2)
    n_sig = [len(quiet(dds.results, lfc_threshold=tau).significant_genes())
             for tau in (0.0, 0.5, 1.0)]
    assert n_sig[0] >= n_sig[1] >= n_sig[2]
    assert n_sig[0] > 0


def test_detects_simulated_changes(simulated):
    matrix, design, true_lfc = simulated
    table = quiet(run_pipeline, matrix, design, alpha=0.1)
    called = set(table.significant_genes())
    truly_changed = {g for g, t in zip(matrix.gene_ids, true_lfc) if t != 0}
    assert called
    # observed false discovery proportion stays moderate
    assert len(called - truly_changed) / len(called) < 0.3


# --------------------------------------------------------------------------
# Inputs and configuration
# --------------------------------------------------------------------------


def test_alignment_checked_before_fitting(scenario):
    matrix, _ = scenario
    design = DesignMetadata({"c1": "control", "c2": "control", "t1": "treated"},
                            base_level="control", treatment_level="treated")
    with pytest.raises(AlignmentError):
        run_pipeline(matrix, design)


def test_unreplicated_design_is_rejected(scenario):
    matrix, _ = scenario
    sub = CountMatrix.from_dataframe(matrix.to_dataframe()[["c1", "t1"]])
    design = DesignMetadata({"c1": "control", "t1": "treated"},
                            base_level="control", treatment_level="treated")
    with pytest.raises(InvalidDesignError, match="degrees of freedom"):
        run_pipeline(sub, design)


def test_dataframe_input_and_config(simulated):
    matrix, design, _ = simulated
    config = DESeqConfig(shrinkage="none", independent_filtering=False)
    table = quiet(run_pipeline, matrix.to_dataframe(), design, config=config)
    df = table.to_dataframe()
    assert not isinstance(table.records[0], ShrunkResult)
    assert df["adjusted_p_value"].notna().sum() > 0.9 * len(df)


def test_explicit_arguments_override_config(simulated):
    matrix, design, _ = simulated
    config = DESeqConfig(alpha=0.01)
    table = quiet(run_pipeline, matrix, design, alpha=0.2, config=config)
    assert table.alpha == 0.2


def test_config_validation():
    with pytest.raises(ValueError, match="alpha"):
        DESeqConfig(alpha=1.5)
    with pytest.raises(ValueError, match="shrinkage"):
        DESeqConfig(shrinkage="magic")
    with pytest.raises(ValueError, match="lessAbs"):
        DESeqConfig(alt_hypothesis="lessAbs")
    assert DESeqConfig(alt_hypothesis="lessAbs", lfc_threshold=0.5)


def test_less_abs_without_threshold_fails_before_fitting(simulated):
    matrix, design, _ = simulated
    dds = DESeqDataSet(matrix, design)
    with pytest.raises(ValueError, match="lessAbs"):
        dds.results(alt_hypothesis="lessAbs")
    assert dds.size_factors is None
    assert dds.fits is None


# --------------------------------------------------------------------------
# DESeqDataSet and ResultTable
# --------------------------------------------------------------------------


def test_dataset_stages_chain(simulated):
    matrix, design, _ = simulated
    dds = DESeqDataSet(matrix, design)
    assert "not analyzed" in repr(dds)
    quiet(dds.fit_models)
    assert dds.size_factors is not None
    assert len(dds.dispersions) == matrix.n_genes
    assert "(analyzed)" in repr(dds)

    normalized = dds.counts(normalized=True)
    expected = matrix.values / dds.size_factors.reindex(matrix.sample_ids)
    np.testing.assert_allclose(normalized.values, expected)


def test_reversed_contrast_from_dataset(simulated):
    matrix, design, _ = simulated
    dds = quiet(DESeqDataSet(matrix, design).deseq2)
    forward = quiet(dds.results, shrinkage="none")
    reverse = quiet(dds.results, shrinkage="none", base_level="treated",
                    treatment_level="control")
    for f, r in zip(forward, reverse):
        if f.converged:
            assert r.log2_fold_change == pytest.approx(-f.log2_fold_change)
            assert r.p_value == pytest.approx(f.p_value)


def test_result_dataframe(scenario_table):
    df = scenario_table.to_dataframe()
    assert list(df.columns) == COLUMNS
    assert df.loc["changed", "significant"]
    assert df["significant"].sum() == len(scenario_table.significant_genes())
    untested = df["adjusted_p_value"].isna()
    assert df.loc[untested, "not_tested_reason"].notna().all()
    assert isinstance(scenario_table.normalized_counts, pd.DataFrame)


def test_summary_counts(scenario_table):
    summary = scenario_table.summary()
    assert summary["total_genes"] == len(scenario_table)
    assert summary["significant"] == (summary["upregulated"]
                                      + summary["downregulated"])
    assert summary["upregulated"] >= 1


def test_result_table_lookup(scenario_table):
    with pytest.raises(KeyError):
        ResultTable([], alpha=0.05)["missing"]
    for r in scenario_table:
        assert scenario_table[r.gene_id] is r
    assert "changed" in scenario_table
    assert "missing" not in scenario_table
