"""
Final result table of a differential expression run.

One row per input gene. Genes that were not tested keep their row with
an empty adjusted p-value and the reason they were left out, so nothing
is dropped silently.

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


COLUMNS = [
    "gene_id",
    "base_mean",
    "log2_fold_change",
    "lfc_standard_error",
    "wald_statistic",
    "p_value",
    "adjusted_p_value",
    "significant",
    "converged",
    "not_tested_reason",
    "log2_fold_change_mle",
    "dispersion",
]


class ResultTable:
    """
    Per-gene results with the normalization they were computed from.

    Parameters
    ----------
    records : list of GeneFitResult or ShrunkResult
        One record per gene, in count matrix order.
    alpha : float
        Significance cutoff applied to adjusted p-values.
    size_factors : SizeFactors, optional
    normalized_counts : pd.DataFrame, optional

    Examples
    --------
    >>> table = run_pipeline(matrix, design, alpha=0.05)
    >>> df = table.to_dataframe()
    >>> table.significant_genes()
    ['gene_17', 'gene_42']
    """

    def __init__(self, records, alpha=0.05, size_factors=None,
                 normalized_counts=None):
        self.records = tuple(records)
        self._index = {r.gene_id: i for i, r in enumerate(self.records)}
        self.alpha = alpha
        self.size_factors = size_factors
        self.normalized_counts = normalized_counts

    def __len__(self):
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def __getitem__(self, gene_id):
        return self.records[self._index[gene_id]]

    def __contains__(self, gene_id):
        return gene_id in self._index

    def to_dataframe(self):
        """
        Results as a DataFrame indexed by gene.

        ``adjusted_p_value`` is NaN for untested genes and
        ``not_tested_reason`` names why; ``log2_fold_change_mle`` equals
        ``log2_fold_change`` when no shrinkage was applied.
        """
        rows = []
        for r in self.records:
            padj = r.adjusted_p_value
            reason = r.not_tested_reason
            rows.append({
                "gene_id": r.gene_id,
                "base_mean": r.base_mean,
                "log2_fold_change": r.log2_fold_change,
                "lfc_standard_error": r.standard_error,
                "wald_statistic": r.wald_statistic,
                "p_value": r.p_value,
                "adjusted_p_value": np.nan if padj is None else padj,
                "significant": r.is_significant(self.alpha),
                "converged": r.converged,
                "not_tested_reason": None if reason is None else reason.value,
                "log2_fold_change_mle": getattr(r, "log2_fold_change_mle",
                                                r.log2_fold_change),
                "dispersion": r.dispersion,
            })
        df = pd.DataFrame(rows, columns=COLUMNS)
        df.index = df["gene_id"].values
        return df

    def significant_genes(self):
        """Identifiers of genes with adjusted p-value <= alpha."""
        return [r.gene_id for r in self.records if r.is_significant(self.alpha)]

    def summary(self, lfc_cutoff=0.0):
        """
        Log a summary of the results.

        Parameters
        ----------
        lfc_cutoff : float, default 0.0
            Fold change cutoff for counting up/down regulated genes.

        Returns
        -------
        dict
            Summary statistics.
        """
        sig = [r for r in self.records if r.is_significant(self.alpha)]
        reasons = {}
        for r in self.records:
            if r.not_tested_reason is not None:
                key = r.not_tested_reason.value
                reasons[key] = reasons.get(key, 0) + 1

        summary_dict = {
            "total_genes": len(self.records),
            "genes_tested": sum(r.adjusted_p_value is not None
                                for r in self.records),
            "significant": len(sig),
            "upregulated": sum(r.log2_fold_change > lfc_cutoff for r in sig),
            "downregulated": sum(r.log2_fold_change < -lfc_cutoff for r in sig),
            "not_tested": reasons,
            "alpha": self.alpha,
            "lfc_cutoff": lfc_cutoff,
        }

        logger.info("Total genes: %d, tested: %d", summary_dict["total_genes"],
                    summary_dict["genes_tested"])
        logger.info("Significant (padj <= %g): %d (up %d, down %d)", self.alpha,
                    summary_dict["significant"], summary_dict["upregulated"],
                    summary_dict["downregulated"])
        for reason, n in sorted(reasons.items()):
            logger.info("  not tested (%s): %d", reason, n)
        return summary_dict

    def __repr__(self):
        return (f"ResultTable with {len(self.records)} genes "
                f"({len(self.significant_genes())} significant at alpha="
                f"{self.alpha})")
