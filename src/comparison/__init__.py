"""
Comparison module: per-sample rank correlation between quantification sources.
"""

from .correlation import (
    SpearmanComparator,
    compare_variants,
    paired_values,
    spearman,
)

__all__ = ['SpearmanComparator', 'compare_variants', 'paired_values', 'spearman']
