"""
Cross-Tool Rank Correlation
===========================

Per-sample Spearman rank correlation between quantification sources:
1. Align samples across sources by exact sample ID (never by position)
2. Restrict each sample to the features present in every source
3. Spearman coefficient (average ranks for ties) for every unordered pair

Alignment problems are raised, not repaired: a sample missing from one
source, an empty feature intersection or a constant vector all abort the
comparison instead of yielding NaN.
"""

from functools import reduce
from itertools import combinations
from typing import Dict, List, Mapping, Optional, Sequence
import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import stats

from common.exceptions import (
    ConstantInputError,
    EmptyIntersectionError,
    FeatureLevelMismatchError,
    SampleMismatchError,
)
from preprocessing.quant_table import QuantificationTable

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ['sample', 'source_a', 'source_b', 'comparison', 'spearman', 'n_features']


def comparison_label(source_a: str, source_b: str) -> str:
    return f"{source_a} vs {source_b}"


def spearman(a: pd.Series, b: pd.Series, sample: Optional[str] = None) -> float:
    """
    Spearman rank correlation of two aligned vectors.

    Ties get the average (mid) rank. A constant vector has no defined rank
    correlation and raises ConstantInputError.
    """
    if len(a) != len(b):
        raise ValueError(f"Vectors differ in length: {len(a)} vs {len(b)}")
    if len(a) < 2:
        raise ConstantInputError(
            f"Need at least two shared features, got {len(a)}", sample=sample
        )
    for name, vector in (('first', a), ('second', b)):
        if np.unique(np.asarray(vector)).size < 2:
            raise ConstantInputError(
                f"The {name} vector is constant; rank correlation is undefined",
                sample=sample
            )

    rho, _ = stats.spearmanr(np.asarray(a, dtype=float), np.asarray(b, dtype=float))
    return float(np.clip(rho, -1.0, 1.0))


def correlate_sample(sample: str, vectors: Dict[str, pd.Series]) -> List[dict]:
    """
    All pairwise coefficients for one sample.

    ``vectors`` maps source name -> values over the shared features, in the
    same feature order. Pure function; safe to run in a worker process.
    """
    records = []
    for source_a, source_b in combinations(vectors, 2):
        rho = spearman(vectors[source_a], vectors[source_b], sample=sample)
        records.append({
            'sample': sample,
            'source_a': source_a,
            'source_b': source_b,
            'comparison': comparison_label(source_a, source_b),
            'spearman': rho,
            'n_features': len(vectors[source_a]),
        })
    return records


class SpearmanComparator:
    """Pairwise per-sample rank correlation between named tables."""

    def __init__(
        self,
        tables: Mapping[str, QuantificationTable],
        value: str = 'abundance',
        sample_aliases: Optional[Mapping[str, Mapping[str, str]]] = None,
        n_jobs: int = 1
    ):
        """
        Parameters
        ----------
        tables : Mapping[str, QuantificationTable]
            Source name -> table; at least two
        value : str
            Which matrix to correlate ('abundance' or 'counts')
        sample_aliases : Mapping[str, Mapping[str, str]]
            Optional per-source renaming of sample IDs onto shared IDs
        n_jobs : int
            Workers for the per-sample loop (joblib); 1 runs sequentially
        """
        if len(tables) < 2:
            raise ValueError("Need at least two tables to compare")
        if value not in ('abundance', 'counts'):
            raise ValueError(f"Unknown value column: {value}")

        sample_aliases = sample_aliases or {}
        self.tables = {
            name: table.rename_samples(dict(sample_aliases.get(name, {})))
            for name, table in tables.items()
        }
        self.value = value
        self.n_jobs = n_jobs

        levels = {name: table.level.value for name, table in self.tables.items()}
        if len(set(levels.values())) > 1:
            raise FeatureLevelMismatchError(
                f"Tables mix gene and transcript features: {levels}"
            )

    def aligned_samples(self, samples: Optional[Sequence[str]] = None) -> List[str]:
        """
        Samples to compare, verified present in every table.

        Without an explicit list every table must hold the same sample set.
        """
        if samples is None:
            requested = sorted(set().union(*(table.samples for table in self.tables.values())))
        else:
            requested = list(samples)

        for sample in requested:
            missing_from = [name for name, table in self.tables.items() if sample not in table.samples]
            if missing_from:
                raise SampleMismatchError(
                    f"Sample absent from sources {missing_from}",
                    sample=sample
                )
        return requested

    def shared_features(self, sample: str) -> pd.Index:
        """Features quantified for ``sample`` in every table."""
        shared = reduce(
            lambda left, right: left.intersection(right),
            (getattr(table, f"{self.value}_df")[sample].dropna().index
             for table in self.tables.values())
        )
        if len(shared) == 0:
            raise EmptyIntersectionError(
                f"No features shared by sources {list(self.tables)}",
                sample=sample
            )
        return shared.sort_values()

    def sample_vectors(self, sample: str) -> Dict[str, pd.Series]:
        """Aligned value vectors of one sample, keyed by source."""
        shared = self.shared_features(sample)
        return {
            name: getattr(table, f"{self.value}_df").loc[shared, sample]
            for name, table in self.tables.items()
        }

    def compare(self, samples: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """
        Run the comparison.

        Returns
        -------
        pd.DataFrame
            One row per (sample, source pair): sample, source_a, source_b,
            comparison, spearman, n_features
        """
        samples = self.aligned_samples(samples)
        logger.info(f"Comparing {list(self.tables)} over {len(samples)} samples ({self.value})")

        inputs = [(sample, self.sample_vectors(sample)) for sample in samples]

        if self.n_jobs == 1:
            per_sample = [correlate_sample(sample, vectors) for sample, vectors in inputs]
        else:
            per_sample = Parallel(n_jobs=self.n_jobs)(
                delayed(correlate_sample)(sample, vectors) for sample, vectors in inputs
            )

        records = [record for sample_records in per_sample for record in sample_records]
        results = pd.DataFrame(records, columns=RESULT_COLUMNS)

        for comparison, group in results.groupby('comparison', sort=False):
            logger.info(f"  {comparison}: median rho = {group['spearman'].median():.4f} "
                        f"(n={len(group)})")
        return results


def compare_variants(
    table_a: QuantificationTable,
    table_b: QuantificationTable,
    name_a: str,
    name_b: str,
    value: str = 'abundance',
    samples: Optional[Sequence[str]] = None,
    n_jobs: int = 1
) -> pd.DataFrame:
    """Per-sample rank correlation between two pipeline variants."""
    if name_a == name_b:
        raise ValueError("Variant names must differ")
    comparator = SpearmanComparator({name_a: table_a, name_b: table_b}, value=value, n_jobs=n_jobs)
    return comparator.compare(samples)


def paired_values(
    table_a: QuantificationTable,
    table_b: QuantificationTable,
    sample: str,
    name_a: str = 'a',
    name_b: str = 'b',
    value: str = 'abundance'
) -> pd.DataFrame:
    """
    Shared-feature values of one sample in two tables, side by side.

    Input for variant scatter plots.
    """
    comparator = SpearmanComparator({name_a: table_a, name_b: table_b}, value=value)
    comparator.aligned_samples([sample])
    return pd.DataFrame(comparator.sample_vectors(sample))
