"""
Uniform in-memory representation of one tool's quantification results.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List
import logging

import pandas as pd

from common.config import FeatureLevel, Tool
from common.exceptions import InconsistentFeatureSetError

logger = logging.getLogger(__name__)

VALUE_COLUMNS = ('counts', 'abundance', 'length')


@dataclass(frozen=True, eq=False)
class QuantificationTable:
    """
    Features x samples matrices of counts, abundance (TPM) and length.

    All three matrices share one feature index and one sample column set
    (a dense, fully observed table). Accessors return copies, so a table is
    not modified once built.
    """
    tool: Tool
    level: FeatureLevel
    counts_df: pd.DataFrame
    abundance_df: pd.DataFrame
    length_df: pd.DataFrame
    sources: Dict[str, Path] = field(default_factory=dict)

    def __post_init__(self):
        reference = self.counts_df
        if reference.index.has_duplicates:
            dupes = reference.index[reference.index.duplicated()].unique()
            raise InconsistentFeatureSetError(
                f"Duplicate feature IDs in {self.tool.value} table: {list(dupes[:5])}"
            )
        if reference.columns.has_duplicates:
            raise InconsistentFeatureSetError(
                f"Duplicate sample IDs in {self.tool.value} table"
            )
        for name, df in (('abundance', self.abundance_df), ('length', self.length_df)):
            if not (df.index.equals(reference.index) and df.columns.equals(reference.columns)):
                raise InconsistentFeatureSetError(
                    f"{name} matrix labels differ from counts matrix in {self.tool.value} table"
                )
        if reference.isna().values.any() or self.abundance_df.isna().values.any():
            raise InconsistentFeatureSetError(
                f"{self.tool.value} table is not fully observed (missing values present)"
            )

    @property
    def samples(self) -> List[str]:
        return list(self.counts_df.columns)

    @property
    def features(self) -> pd.Index:
        return self.counts_df.index.copy()

    @property
    def counts(self) -> pd.DataFrame:
        return self.counts_df.copy()

    @property
    def abundance(self) -> pd.DataFrame:
        return self.abundance_df.copy()

    @property
    def length(self) -> pd.DataFrame:
        return self.length_df.copy()

    def rename_samples(self, aliases: Dict[str, str]) -> "QuantificationTable":
        """Return a copy with sample IDs renamed through ``aliases``."""
        if not aliases:
            return self
        return QuantificationTable(
            tool=self.tool,
            level=self.level,
            counts_df=self.counts_df.rename(columns=aliases),
            abundance_df=self.abundance_df.rename(columns=aliases),
            length_df=self.length_df.rename(columns=aliases),
            sources={aliases.get(k, k): v for k, v in self.sources.items()}
        )

    def __repr__(self) -> str:
        return (f"QuantificationTable(tool={self.tool.value}, level={self.level.value}, "
                f"features={self.counts_df.shape[0]}, samples={self.counts_df.shape[1]})")


def check_feature_sets(
    per_sample: Dict[str, pd.DataFrame],
    sources: Dict[str, Path]
) -> pd.Index:
    """
    Verify that every per-sample frame covers the same features.

    Returns
    -------
    pd.Index
        The shared feature index, sorted

    Raises
    ------
    InconsistentFeatureSetError
        If a frame repeats a feature ID or two samples disagree
    """
    reference_sample = None
    reference_index = None
    for sample_id, frame in per_sample.items():
        if frame.index.has_duplicates:
            dupes = frame.index[frame.index.duplicated()].unique()
            raise InconsistentFeatureSetError(
                f"Duplicate feature IDs: {list(dupes[:5])}",
                sample=sample_id,
                path=sources.get(sample_id)
            )
        if reference_index is None:
            reference_sample, reference_index = sample_id, frame.index
            continue
        if set(frame.index) != set(reference_index):
            missing = reference_index.difference(frame.index)
            extra = frame.index.difference(reference_index)
            raise InconsistentFeatureSetError(
                f"Feature set differs from sample '{reference_sample}' "
                f"({len(missing)} missing, {len(extra)} extra); "
                f"annotation versions may not match",
                sample=sample_id,
                path=sources.get(sample_id)
            )

    return reference_index.sort_values()


def stack_samples(per_sample: Dict[str, pd.DataFrame], column: str, index: pd.Index) -> pd.DataFrame:
    """Collect one value column of every per-sample frame into a matrix."""
    matrix = pd.DataFrame(
        {sample_id: frame.loc[index, column].astype(float).values
         for sample_id, frame in per_sample.items()},
        index=index
    )
    matrix.index.name = 'feature_id'
    return matrix


def build_table(
    tool: Tool,
    level: FeatureLevel,
    per_sample: Dict[str, pd.DataFrame],
    sources: Dict[str, Path]
) -> QuantificationTable:
    """
    Assemble per-sample frames (index: feature ID; columns: counts,
    abundance, length) into a dense table.

    Raises
    ------
    InconsistentFeatureSetError
        If two samples disagree on the feature set
    """
    if not per_sample:
        raise ValueError(f"No samples given for {tool.value} table")

    index = check_feature_sets(per_sample, sources)
    matrices = {name: stack_samples(per_sample, name, index) for name in VALUE_COLUMNS}

    table = QuantificationTable(
        tool=tool,
        level=level,
        counts_df=matrices['counts'],
        abundance_df=matrices['abundance'],
        length_df=matrices['length'],
        sources=dict(sources)
    )
    logger.info(f"Built {table!r}")
    return table


def qc_summary(table: QuantificationTable) -> pd.DataFrame:
    """Per-sample QC metrics for a quantification table."""
    counts = table.counts_df
    abundance = table.abundance_df

    return pd.DataFrame({
        'tool': table.tool.value,
        'level': table.level.value,
        'sample_id': counts.columns,
        'n_features': counts.shape[0],
        'detected_features': (counts > 0).sum(axis=0).values,
        'total_counts': counts.sum(axis=0).values,
        'tpm_sum': abundance.sum(axis=0).values,
    })
