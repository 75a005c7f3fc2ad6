#!/usr/bin/env python3
"""
Comparison Report Generator
===========================

Turns correlation results into:
1. Long and pivoted (sample x comparison) coefficient tables
2. Per-comparison summary statistics
3. Boxplot of coefficients across comparisons
4. log1p scatter plots between pipeline variants, per sample
5. JSON run summary
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
import logging

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns

logger = logging.getLogger(__name__)


def pivot_correlations(results: pd.DataFrame) -> pd.DataFrame:
    """Sample x comparison table of Spearman coefficients."""
    pivot = results.pivot(index='sample', columns='comparison', values='spearman')
    pivot.columns.name = None
    return pivot


def summarize_correlations(results: pd.DataFrame) -> pd.DataFrame:
    """Distribution of coefficients per comparison."""
    summary = results.groupby('comparison')['spearman'].agg(
        n_samples='count', mean='mean', median='median', min='min', max='max', std='std'
    )
    return summary.reset_index()


class ComparisonReportGenerator:
    """Write correlation tables, plots and a run summary"""

    def __init__(self, output_dir: str = "results", plot_format: str = "png", dpi: int = 150):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.plot_format = plot_format
        self.dpi = dpi

    def save_tables(self, results: pd.DataFrame, name: str) -> Dict[str, Path]:
        """Save long, pivoted and summary tables as CSV"""
        paths = {
            'long': self.output_dir / f"{name}_spearman_long.csv",
            'pivot': self.output_dir / f"{name}_spearman_pivot.csv",
            'summary': self.output_dir / f"{name}_spearman_summary.csv",
        }
        results.to_csv(paths['long'], index=False)
        pivot_correlations(results).to_csv(paths['pivot'])
        summarize_correlations(results).to_csv(paths['summary'], index=False)

        logger.info(f"Saved {name} correlation tables to {self.output_dir}")
        return paths

    def plot_correlation_boxplot(self, results: pd.DataFrame, name: str,
                                 title: Optional[str] = None) -> Path:
        """Boxplot of per-sample Spearman coefficients for each comparison"""
        order = sorted(results['comparison'].unique())

        fig, ax = plt.subplots(figsize=(max(6, 1.8 * len(order)), 5))
        sns.boxplot(data=results, x='comparison', y='spearman', order=order,
                    color='lightsteelblue', ax=ax)
        sns.stripplot(data=results, x='comparison', y='spearman', order=order,
                      color='black', size=4, alpha=0.6, ax=ax)
        ax.set_xlabel('')
        ax.set_ylabel('Spearman rank correlation')
        ax.set_title(title or f"Rank correlation per sample: {name}")
        ax.tick_params(axis='x', rotation=30)

        plt.tight_layout()
        path = self.output_dir / f"{name}_spearman_boxplot.{self.plot_format}"
        fig.savefig(path, dpi=self.dpi)
        plt.close(fig)

        logger.info(f"Boxplot saved to {path}")
        return path

    def plot_variant_scatter(self, values: pd.DataFrame, sample: str, name: str,
                             rho: Optional[float] = None) -> Path:
        """
        Scatter of log1p abundance between two variants for one sample.

        ``values`` has exactly two columns (one per variant) over the
        shared features.
        """
        if values.shape[1] != 2:
            raise ValueError(f"Expected two value columns, got {list(values.columns)}")
        col_a, col_b = values.columns
        logged = np.log1p(values)

        fig, ax = plt.subplots(figsize=(6, 6))
        ax.scatter(logged[col_a], logged[col_b], s=4, alpha=0.3, color='steelblue',
                   rasterized=True)
        upper = float(logged.max().max()) if len(logged) else 1.0
        ax.plot([0, upper], [0, upper], color='grey', linestyle='--', linewidth=1)
        ax.set_xlabel(f"log1p({col_a})")
        ax.set_ylabel(f"log1p({col_b})")
        title = f"{sample}: {col_a} vs {col_b}"
        if rho is not None:
            title += f" (rho = {rho:.3f})"
        ax.set_title(title)

        plt.tight_layout()
        path = self.output_dir / f"{name}_{sample}_scatter.{self.plot_format}"
        fig.savefig(path, dpi=self.dpi)
        plt.close(fig)

        logger.info(f"Scatter plot saved to {path}")
        return path

    def save_summary(self, project: str, qc: Optional[pd.DataFrame],
                     comparisons: Dict[str, pd.DataFrame],
                     outputs: Optional[List[Path]] = None) -> Path:
        """Save JSON summary of the run"""
        summary = {
            'project': project,
            'date': datetime.now().isoformat(),
            'qc': qc.to_dict('records') if qc is not None else None,
            'comparisons': {
                name: summarize_correlations(results).to_dict('records')
                for name, results in comparisons.items()
            },
            'outputs': [str(p) for p in (outputs or [])],
        }

        path = self.output_dir / "pipeline_summary.json"
        with open(path, 'w') as f:
            json.dump(summary, f, indent=2, default=str)

        logger.info(f"Summary saved to {path}")
        return path
