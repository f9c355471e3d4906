"""
Input containers: raw count matrix and per-sample design metadata.

Both are read-only after construction. ``DesignMetadata`` always names
its base (reference) and treatment levels explicitly; the direction of
the tested contrast is never taken from the order in which levels
happen to appear.
"""

import numpy as np
import pandas as pd
from patsy import dmatrix

from .exceptions import AlignmentError, InvalidDesignError


class CountMatrix:
    """
    Raw read counts, genes x samples.

    Parameters
    ----------
    counts : array-like
        2D non-negative integer counts (genes x samples).
    gene_ids : sequence of str, optional
        Unique gene identifiers. Defaults to ``gene_0, gene_1, ...``.
    sample_ids : sequence of str, optional
        Unique sample identifiers. Defaults to ``sample_0, ...``.

    Examples
    --------
    >>> m = CountMatrix([[10, 12], [0, 3]], ["g1", "g2"], ["s1", "s2"])
    >>> m.shape
    (2, 2)
    """

    def __init__(self, counts, gene_ids=None, sample_ids=None):
        values = np.array(counts, dtype=float)
        if values.ndim != 2:
            raise ValueError("counts must be a 2D genes x samples matrix")
        G, S = values.shape
        if G == 0 or S == 0:
            raise ValueError("counts matrix is empty")
        if not np.all(np.isfinite(values)):
            raise ValueError("counts contain NaN or infinite values")
        if np.any(values < 0):
            raise ValueError("counts must be non-negative")
        if np.any(values != np.round(values)):
            raise ValueError("counts must be integers")

        if gene_ids is None:
            gene_ids = [f"gene_{i}" for i in range(G)]
        if sample_ids is None:
            sample_ids = [f"sample_{i}" for i in range(S)]
        gene_ids = tuple(str(g) for g in gene_ids)
        sample_ids = tuple(str(s) for s in sample_ids)

        if len(gene_ids) != G:
            raise ValueError(f"got {len(gene_ids)} gene ids for {G} rows")
        if len(sample_ids) != S:
            raise ValueError(f"got {len(sample_ids)} sample ids for {S} columns")
        if len(set(gene_ids)) != G:
            raise ValueError("gene identifiers must be unique")
        if len(set(sample_ids)) != S:
            raise ValueError("sample identifiers must be unique")

        values.flags.writeable = False
        self._values = values
        self._gene_ids = gene_ids
        self._sample_ids = sample_ids

    @classmethod
    def from_dataframe(cls, df):
        """Build from a DataFrame with genes as index, samples as columns."""
        if not isinstance(df, pd.DataFrame):
            raise TypeError("expected a pandas DataFrame")
        return cls(df.values, gene_ids=df.index, sample_ids=df.columns)

    @property
    def values(self):
        return self._values

    @property
    def gene_ids(self):
        return self._gene_ids

    @property
    def sample_ids(self):
        return self._sample_ids

    @property
    def shape(self):
        return self._values.shape

    @property
    def n_genes(self):
        return self._values.shape[0]

    @property
    def n_samples(self):
        return self._values.shape[1]

    def to_dataframe(self):
        return pd.DataFrame(self._values.astype(np.int64),
                            index=list(self._gene_ids),
                            columns=list(self._sample_ids))

    def __repr__(self):
        G, S = self.shape
        return f"CountMatrix with {G} genes and {S} samples"


class DesignMetadata:
    """
    Single two-level condition factor per sample.

    Parameters
    ----------
    conditions : mapping or pd.Series
        Sample identifier -> condition label.
    base_level : str
        Reference level (denominator of the fold change).
    treatment_level : str
        Treatment level (numerator of the fold change).
    factor : str, default "condition"
        Name of the factor, used for design-matrix column names.

    Raises
    ------
    InvalidDesignError
        If the factor has other than two levels, or the named levels are
        missing or identical.
    """

    def __init__(self, conditions, base_level, treatment_level,
                 factor="condition"):
        if isinstance(conditions, pd.Series):
            conditions = conditions.to_dict()
        labels = {str(s): str(c) for s, c in dict(conditions).items()}
        base_level = str(base_level)
        treatment_level = str(treatment_level)

        levels = sorted(set(labels.values()))
        if len(levels) != 2:
            raise InvalidDesignError(
                f"factor '{factor}' must have exactly 2 levels, found "
                f"{len(levels)}: {levels}", stage="design")
        if base_level == treatment_level:
            raise InvalidDesignError(
                "base and treatment levels must differ", stage="design")
        for role, level in (("base", base_level), ("treatment", treatment_level)):
            if level not in levels:
                raise InvalidDesignError(
                    f"{role} level '{level}' not found in factor '{factor}' "
                    f"(levels: {levels})", stage="design")

        self._labels = labels
        self.base_level = base_level
        self.treatment_level = treatment_level
        self.factor = factor

    @classmethod
    def from_dataframe(cls, coldata, base_level, treatment_level,
                       factor="condition"):
        """Build from a sample table indexed by sample identifier."""
        if not isinstance(coldata, pd.DataFrame):
            raise TypeError("coldata must be a pandas DataFrame")
        if factor not in coldata.columns:
            raise InvalidDesignError(
                f"column '{factor}' not in metadata", stage="design")
        return cls(coldata[factor], base_level, treatment_level, factor=factor)

    @property
    def sample_ids(self):
        return tuple(self._labels)

    @property
    def contrast(self):
        """(treatment_level, base_level)"""
        return (self.treatment_level, self.base_level)

    def __getitem__(self, sample_id):
        return self._labels[sample_id]

    def __len__(self):
        return len(self._labels)

    def labels_for(self, sample_ids):
        """
        Condition labels ordered like ``sample_ids``.

        Raises
        ------
        AlignmentError
            If the metadata and ``sample_ids`` differ as sets.
        """
        wanted = set(sample_ids)
        have = set(self._labels)
        if wanted != have:
            missing = sorted(wanted - have)
            extra = sorted(have - wanted)
            raise AlignmentError(
                f"sample identifiers differ between count matrix and "
                f"metadata (missing from metadata: {missing}; "
                f"not in count matrix: {extra})", stage="alignment")
        return np.array([self._labels[s] for s in sample_ids], dtype=object)

    def validate_against(self, matrix):
        """Check alignment and that both levels occur among the matrix samples."""
        labels = self.labels_for(matrix.sample_ids)
        for level in (self.base_level, self.treatment_level):
            if not np.any(labels == level):
                raise InvalidDesignError(
                    f"level '{level}' has no samples", stage="design")
        if len(labels) <= 2:
            raise InvalidDesignError(
                f"{len(labels)} samples leave no residual degrees of freedom; "
                f"replicates are required", stage="design")
        return labels

    def design_matrix(self, sample_ids):
        """
        Intercept + treatment indicator design, rows ordered like ``sample_ids``.

        Returns
        -------
        np.ndarray
            Design matrix (samples x 2).
        list
            Column names, e.g. ``['Intercept', 'condition[T.treated]']``.
        """
        labels = self.labels_for(sample_ids)
        coldata = pd.DataFrame({
            self.factor: pd.Categorical(
                labels, categories=[self.base_level, self.treatment_level])
        })
        design = dmatrix(f"~ {self.factor}", data=coldata,
                         return_type="dataframe")
        return design.values, list(design.columns)

    def group_sizes(self, sample_ids):
        """Number of samples in each sample's own group."""
        labels = self.labels_for(sample_ids)
        counts = pd.Series(labels).value_counts()
        return np.array([counts[lab] for lab in labels], dtype=int)

    def __repr__(self):
        return (f"DesignMetadata({self.factor}: {self.treatment_level} vs "
                f"{self.base_level}, {len(self)} samples)")
