"""
Reporting module: correlation tables, plots and run summary.
"""

from .report_generator import (
    ComparisonReportGenerator,
    pivot_correlations,
    summarize_correlations,
)

__all__ = ['ComparisonReportGenerator', 'pivot_correlations', 'summarize_correlations']
