"""
TPM Normalization
=================

This module implements TPM (Transcripts Per Million) normalization for
quantifiers that do not report it natively:

1. RPK = counts / (length / 1000)
2. scaling factor = sum(RPK) / 1e6, per sample
3. TPM = RPK / scaling factor, per sample

Each sample (column) is normalized with its own scaling factor. Lengths
must be strictly positive and every sample must carry some signal; both
conditions are data-integrity errors rather than silent NaN/Inf.
"""

import pandas as pd
import numpy as np
from typing import Union
import logging

from common.exceptions import (
    DegenerateSampleError,
    InconsistentFeatureSetError,
    InvalidCountsError,
    InvalidFeatureLengthError,
)

logger = logging.getLogger(__name__)

TPM_TOTAL = 1e6


def _preview(labels, limit: int = 5) -> str:
    labels = [str(x) for x in labels]
    shown = ", ".join(labels[:limit])
    if len(labels) > limit:
        shown += f", ... ({len(labels)} total)"
    return shown


class TPMNormalizer:
    """Compute TPM from raw counts and feature lengths."""

    def __init__(
        self,
        counts_df: pd.DataFrame,
        lengths: Union[pd.Series, pd.DataFrame]
    ):
        """
        Initialize normalizer.

        Parameters
        ----------
        counts_df : pd.DataFrame
            Raw counts matrix (features x samples)
        lengths : pd.Series or pd.DataFrame
            Feature length in bases, either one value per feature or a
            matrix with the same labels as ``counts_df``
        """
        self.counts_df = counts_df.astype(float)
        self.lengths = self._align_lengths(lengths)

        self._validate_lengths()
        self._validate_counts()

    def _align_lengths(self, lengths) -> pd.DataFrame:
        if isinstance(lengths, pd.Series):
            if set(lengths.index) != set(self.counts_df.index):
                raise InconsistentFeatureSetError(
                    "Length vector and counts matrix cover different features",
                    stage="normalization"
                )
            column = lengths.loc[self.counts_df.index].astype(float)
            return pd.DataFrame(
                {sample: column.values for sample in self.counts_df.columns},
                index=self.counts_df.index
            )

        if not (lengths.index.equals(self.counts_df.index)
                and lengths.columns.equals(self.counts_df.columns)):
            raise InconsistentFeatureSetError(
                "Length matrix labels do not match the counts matrix",
                stage="normalization"
            )
        return lengths.astype(float)

    def _validate_lengths(self):
        bad = self.lengths.isna() | (self.lengths <= 0)
        if bad.values.any():
            bad_samples = bad.columns[bad.any(axis=0)]
            bad_features = bad.index[bad.any(axis=1)]
            raise InvalidFeatureLengthError(
                f"Zero, negative or missing length for features: {_preview(bad_features)}",
                sample=str(bad_samples[0])
            )

    def _validate_counts(self):
        bad = self.counts_df.isna() | (self.counts_df < 0)
        if bad.values.any():
            bad_samples = bad.columns[bad.any(axis=0)]
            bad_features = bad.index[bad.any(axis=1)]
            raise InvalidCountsError(
                f"Missing or negative counts for features: {_preview(bad_features)}",
                sample=str(bad_samples[0])
            )

    def rpk(self) -> pd.DataFrame:
        """Reads per kilobase of feature length."""
        return self.counts_df / (self.lengths / 1000)

    def scaling_factors(self) -> pd.Series:
        """
        Per-sample scaling factor: sum of RPK divided by one million.

        Raises
        ------
        DegenerateSampleError
            If a sample has no signal (all counts zero)
        """
        factors = self.rpk().sum(axis=0) / TPM_TOTAL
        degenerate = factors.index[factors <= 0]
        if len(degenerate) > 0:
            raise DegenerateSampleError(
                f"All-zero counts give a zero TPM scaling factor "
                f"(degenerate samples: {_preview(degenerate)})",
                sample=str(degenerate[0])
            )
        return factors

    def tpm(self) -> pd.DataFrame:
        """
        Calculate Transcripts Per Million.

        Returns
        -------
        pd.DataFrame
            TPM matrix (features x samples), each column summing to 1e6
        """
        rpk = self.rpk()
        factors = self.scaling_factors()
        tpm_df = rpk.div(factors, axis=1)

        logger.info(f"TPM normalization complete for {tpm_df.shape[1]} samples")
        return tpm_df


def counts_from_coverage(
    coverage: pd.Series,
    lengths: pd.Series,
    read_length: int
) -> pd.Series:
    """
    Derive read counts from per-base coverage: cov * length / read_length.

    ``read_length`` is the sequencing read length; it is not recoverable
    from coverage tables and must be supplied.
    """
    if isinstance(read_length, bool) or not isinstance(read_length, (int, np.integer)) or read_length <= 0:
        raise ValueError(f"read_length must be a positive integer, got {read_length!r}")
    return coverage.astype(float) * lengths.astype(float) / read_length


def fpkm_to_tpm(fpkm_df: pd.DataFrame) -> pd.DataFrame:
    """
    Convert FPKM to TPM: fpkm / sum(fpkm) * 1e6, per sample.

    Used to cross-check coverage-derived TPM for StringTie.
    """
    col_sums = fpkm_df.sum(axis=0)
    degenerate = col_sums.index[col_sums <= 0]
    if len(degenerate) > 0:
        raise DegenerateSampleError(
            f"All-zero FPKM column (degenerate samples: {_preview(degenerate)})",
            sample=str(degenerate[0])
        )
    return fpkm_df.div(col_sums, axis=1) * TPM_TOTAL


def check_tpm_sums(tpm_df: pd.DataFrame, rtol: float = 1e-3) -> pd.DataFrame:
    """
    Check that every sample's TPM sums to one million.

    Returns
    -------
    pd.DataFrame
        Per-sample TPM sum, relative deviation and pass flag
    """
    sums = tpm_df.sum(axis=0)
    deviation = (sums - TPM_TOTAL).abs() / TPM_TOTAL

    return pd.DataFrame({
        'sample_id': sums.index,
        'tpm_sum': sums.values,
        'relative_deviation': deviation.values,
        'within_tolerance': (deviation <= rtol).values
    })
