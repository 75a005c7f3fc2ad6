"""
RNA-seq Quantification Comparison Pipeline
==========================================

Main pipeline script that orchestrates:
1. Loading RSEM / StringTie / Kallisto results
2. TPM normalization checks and QC
3. Cross-tool rank correlation per sample
4. Pipeline-variant rank correlation per sample
5. Tables, plots and run summary

Usage:
    python pipeline.py --config configs/config.yaml
"""

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Optional
import logging

import pandas as pd
import yaml
from pydantic import ValidationError

from common.config import AnalysisConfig, FeatureLevel, Tool, get_settings
from common.exceptions import ConstantInputError, QuantComparisonError
from comparison.correlation import SpearmanComparator, compare_variants, paired_values, spearman
from preprocessing.data_loader import (
    QuantLoader,
    StringTieLoader,
    get_loader,
    load_transcript_gene_map,
)
from preprocessing.normalization import check_tpm_sums
from preprocessing.quant_table import QuantificationTable, qc_summary
from reporting.report_generator import ComparisonReportGenerator

logger = logging.getLogger(__name__)

STEPS = ['all', 'load', 'normalize', 'tools', 'variants', 'report']

# Below this, coverage-derived and FPKM-derived StringTie TPM are flagged
FPKM_TPM_MIN_SPEARMAN = 0.9


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))


class QuantComparisonPipeline:
    """Load, normalize and compare quantifications from several tools."""

    def __init__(self, config: AnalysisConfig, results_dir: Optional[Path] = None):
        """
        Initialize pipeline with configuration.

        Parameters
        ----------
        config : AnalysisConfig
            Validated run configuration
        results_dir : Path, optional
            Overrides the config and environment results directory
        """
        settings = get_settings()
        self.config = config
        self.results_dir = Path(results_dir or config.results_dir or settings.RESULTS_DIR)
        self.results_dir.mkdir(parents=True, exist_ok=True)
        self.n_jobs = config.n_jobs if config.n_jobs is not None else settings.N_JOBS

        # Initialize containers
        self.transcript_gene_map: Optional[pd.Series] = None
        self.tables: Dict[str, QuantificationTable] = {}
        self.loaders: Dict[str, QuantLoader] = {}
        self.qc: Optional[pd.DataFrame] = None
        self.tool_results: Optional[pd.DataFrame] = None
        self.variant_results: Dict[str, pd.DataFrame] = {}
        self.outputs: List[Path] = []

        self.reporter = ComparisonReportGenerator(
            str(self.results_dir), plot_format=settings.PLOT_FORMAT, dpi=settings.PLOT_DPI
        )

        logger.info(f"Initialized pipeline for: {config.project}")

    @classmethod
    def from_yaml(cls, config_path: str) -> "QuantComparisonPipeline":
        return cls(AnalysisConfig.from_yaml(config_path))

    def step1_load_data(self) -> Dict[str, QuantificationTable]:
        """Load every configured source."""
        logger.info("=== Step 1: Loading Quantifications ===")

        needs_map = any(
            source.tool == Tool.KALLISTO and source.level == FeatureLevel.GENE
            for source in self.config.sources.values()
        )
        if self.config.transcript_gene_map is not None:
            self.transcript_gene_map = load_transcript_gene_map(self.config.transcript_gene_map)
        elif needs_map:
            raise ValueError("Gene-level Kallisto sources require transcript_gene_map in the config")

        for name, source in self.config.sources.items():
            loader = get_loader(source, self.transcript_gene_map)
            table = loader.load()
            if source.sample_aliases:
                table = table.rename_samples(source.sample_aliases)
            self.tables[name] = table
            self.loaders[name] = loader
            logger.info(f"{name}: {table!r}")

        return self.tables

    def step2_normalize(self) -> pd.DataFrame:
        """QC per table and check the TPM invariant."""
        logger.info("=== Step 2: Normalization Checks and QC ===")

        if not self.tables:
            self.step1_load_data()

        qc_frames = []
        for name, table in self.tables.items():
            qc = qc_summary(table)
            qc.insert(0, 'source', name)

            sums = check_tpm_sums(table.abundance_df)
            qc['tpm_within_tolerance'] = sums['within_tolerance'].values
            for row in sums[~sums['within_tolerance']].itertuples():
                logger.warning(f"{name}/{row.sample_id}: TPM sums to {row.tpm_sum:.1f} "
                               f"(deviation {row.relative_deviation:.2e})")
            qc['fpkm_tpm_spearman'] = self._fpkm_cross_check(name, table)
            qc_frames.append(qc)

        self.qc = pd.concat(qc_frames, ignore_index=True)
        path = self.results_dir / "qc_summary.csv"
        self.qc.to_csv(path, index=False)
        self.outputs.append(path)

        logger.info(f"\nQC Summary:\n{self.qc}")
        return self.qc

    def _fpkm_cross_check(self, name: str, table: QuantificationTable) -> List[float]:
        """
        Spearman between coverage-derived TPM and FPKM-derived TPM, per sample.

        Only StringTie tables carry FPKM; other sources get NaN. A low
        coefficient points at broken coverage or length columns.
        """
        loader = self.loaders.get(name)
        if not isinstance(loader, StringTieLoader):
            return [float('nan')] * len(table.samples)

        aliases = self.config.sources[name].sample_aliases
        fpkm_tpm = loader.fpkm_tpm().rename(columns=aliases)

        rhos = []
        for sample in table.samples:
            try:
                rho = spearman(
                    table.abundance_df[sample], fpkm_tpm.loc[table.features, sample], sample
                )
            except ConstantInputError as e:
                logger.warning(f"{name}: FPKM cross-check skipped: {e}")
                rho = float('nan')
            else:
                if rho < FPKM_TPM_MIN_SPEARMAN:
                    logger.warning(f"{name}/{sample}: coverage TPM and FPKM TPM disagree "
                                   f"(rho = {rho:.3f})")
            rhos.append(rho)
        return rhos

    def step3_compare_tools(self) -> Optional[pd.DataFrame]:
        """Rank correlation between tools, per sample."""
        logger.info("=== Step 3: Cross-Tool Comparison ===")

        if not self.config.tool_comparison:
            logger.info("No tool comparison configured")
            return None
        if not self.tables:
            self.step1_load_data()

        comparator = SpearmanComparator(
            {name: self.tables[name] for name in self.config.tool_comparison},
            value=self.config.value,
            n_jobs=self.n_jobs
        )
        self.tool_results = comparator.compare()
        return self.tool_results

    def step4_compare_variants(self) -> Dict[str, pd.DataFrame]:
        """Rank correlation between pipeline variants, per sample."""
        logger.info("=== Step 4: Pipeline Variant Comparison ===")

        if not self.tables:
            self.step1_load_data()

        for variant in self.config.variant_comparisons:
            logger.info(f"Variant comparison '{variant.name}': {variant.source_a} vs {variant.source_b}")
            self.variant_results[variant.name] = compare_variants(
                self.tables[variant.source_a],
                self.tables[variant.source_b],
                variant.source_a,
                variant.source_b,
                value=self.config.value,
                n_jobs=self.n_jobs
            )

        return self.variant_results

    def step5_report(self) -> List[Path]:
        """Write tables, plots and the run summary."""
        logger.info("=== Step 5: Report ===")

        comparisons = {}
        if self.tool_results is not None:
            comparisons['tools'] = self.tool_results
        comparisons.update(self.variant_results)

        for name, results in comparisons.items():
            self.outputs.extend(self.reporter.save_tables(results, name).values())
            self.outputs.append(self.reporter.plot_correlation_boxplot(results, name))

        for variant in self.config.variant_comparisons:
            results = self.variant_results.get(variant.name)
            if results is None:
                continue
            rho_by_sample = results.set_index('sample')['spearman']
            for sample in variant.scatter_samples or list(rho_by_sample.index):
                values = paired_values(
                    self.tables[variant.source_a], self.tables[variant.source_b], sample,
                    variant.source_a, variant.source_b, value=self.config.value
                )
                self.outputs.append(self.reporter.plot_variant_scatter(
                    values, sample, variant.name, rho=rho_by_sample.get(sample)
                ))

        self.outputs.append(
            self.reporter.save_summary(self.config.project, self.qc, comparisons, self.outputs)
        )
        return self.outputs

    def run_full_pipeline(self) -> Optional[pd.DataFrame]:
        """Run the complete analysis pipeline."""
        logger.info("=" * 60)
        logger.info("Starting Quantification Comparison Pipeline")
        logger.info("=" * 60)

        self.step1_load_data()
        self.step2_normalize()
        self.step3_compare_tools()
        self.step4_compare_variants()
        self.step5_report()

        logger.info("=" * 60)
        logger.info(f"Results saved to: {self.results_dir}")
        logger.info("=" * 60)

        return self.tool_results


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description='RNA-seq quantification comparison pipeline')
    parser.add_argument(
        '--config',
        type=str,
        default='configs/config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--step',
        type=str,
        choices=STEPS,
        default='all',
        help='Pipeline step to run'
    )
    parser.add_argument(
        '--results-dir',
        type=str,
        default=None,
        help='Override results directory'
    )

    args = parser.parse_args(argv)
    setup_logging(get_settings().LOG_LEVEL)

    try:
        config = AnalysisConfig.from_yaml(args.config)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        logger.error(f"Invalid configuration {args.config}: {e}")
        return 1

    pipeline = QuantComparisonPipeline(
        config,
        results_dir=Path(args.results_dir) if args.results_dir else None
    )

    try:
        if args.step == 'all':
            pipeline.run_full_pipeline()
        elif args.step == 'load':
            pipeline.step1_load_data()
        elif args.step == 'normalize':
            pipeline.step2_normalize()
        elif args.step == 'tools':
            pipeline.step3_compare_tools()
            pipeline.step5_report()
        elif args.step == 'variants':
            pipeline.step4_compare_variants()
            pipeline.step5_report()
        elif args.step == 'report':
            pipeline.step3_compare_tools()
            pipeline.step4_compare_variants()
            pipeline.step5_report()
    except QuantComparisonError as e:
        logger.error(f"Pipeline aborted at stage '{e.stage}': {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
