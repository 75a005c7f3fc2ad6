"""
Quantification Result Loaders
=============================

Parses the per-sample outputs of three quantifiers into a uniform
QuantificationTable (features x samples; counts, abundance as TPM, length):

1. RSEM      - *.genes.results / *.isoforms.results, TPM reported directly
2. StringTie - t_data.ctab, counts derived from coverage and read length,
               TPM computed by the normalizer
3. Kallisto  - abundance.tsv, est_counts and tpm reported directly

Gene-level tables are built by summing transcript counts, lengths and
(where the tool reports it) TPM over each gene.
"""

import pandas as pd
from pathlib import Path
from typing import Dict, Iterable, Optional, Union
import logging

from common.config import FeatureLevel, SourceConfig, Tool
from common.exceptions import (
    InconsistentFeatureSetError,
    InvalidFeatureLengthError,
    MalformedQuantFileError,
    UnmappedFeatureError,
)
from preprocessing.file_discovery import (
    SampleIdFn,
    discover_samples,
    get_sample_id_fn,
    parent_directory_name,
    prefix_before_underscore,
)
from preprocessing.normalization import TPMNormalizer, counts_from_coverage, fpkm_to_tpm
from preprocessing.quant_table import (
    QuantificationTable,
    build_table,
    check_feature_sets,
    stack_samples,
)

logger = logging.getLogger(__name__)


def read_tsv(path: Path, required: Iterable[str], sample_id: Optional[str] = None) -> pd.DataFrame:
    """Read a tab-delimited result file and check its columns."""
    try:
        df = pd.read_csv(path, sep='\t')
    except pd.errors.EmptyDataError as e:
        raise MalformedQuantFileError("File is empty", sample=sample_id, path=path) from e

    missing = [col for col in required if col not in df.columns]
    if missing:
        raise MalformedQuantFileError(
            f"Missing required columns: {missing}", sample=sample_id, path=path
        )
    return df


def aggregate_to_genes(
    frame: pd.DataFrame,
    gene_ids: pd.Series,
    sample_id: Optional[str] = None,
    path: Optional[Path] = None
) -> pd.DataFrame:
    """
    Sum transcript-level values per gene.

    Parameters
    ----------
    frame : pd.DataFrame
        Transcript-indexed values (counts, abundance, length, ...)
    gene_ids : pd.Series
        Gene ID per transcript, in the row order of ``frame``
    """
    if frame.index.has_duplicates:
        dupes = frame.index[frame.index.duplicated()].unique()
        raise InconsistentFeatureSetError(
            f"Duplicate transcript IDs: {list(dupes[:5])}", sample=sample_id, path=path
        )

    grouped = frame.groupby(gene_ids.values, sort=True).sum()
    grouped.index.name = 'feature_id'
    return grouped


def load_transcript_gene_map(path: Union[str, Path]) -> pd.Series:
    """
    Read a transcript -> gene mapping.

    Accepts either a StringTie t_data.ctab (columns t_name, gene_id) or a
    two-column table previously written by ``write_transcript_gene_map``.
    """
    path = Path(path)
    df = pd.read_csv(path, sep='\t')

    if {'t_name', 'gene_id'}.issubset(df.columns):
        mapping = df[['t_name', 'gene_id']].rename(columns={'t_name': 'transcript_id'})
    elif {'transcript_id', 'gene_id'}.issubset(df.columns):
        mapping = df[['transcript_id', 'gene_id']]
    else:
        raise MalformedQuantFileError(
            "Expected columns (t_name, gene_id) or (transcript_id, gene_id)", path=path
        )

    mapping = mapping.drop_duplicates()
    conflicting = mapping['transcript_id'][mapping['transcript_id'].duplicated()]
    if len(conflicting) > 0:
        raise MalformedQuantFileError(
            f"Transcripts mapped to more than one gene: {list(conflicting.unique()[:5])}",
            path=path
        )

    series = mapping.set_index('transcript_id')['gene_id']
    logger.info(f"Loaded transcript-to-gene map: {len(series)} transcripts, "
                f"{series.nunique()} genes from {path}")
    return series


def write_transcript_gene_map(mapping: pd.Series, path: Union[str, Path]) -> Path:
    """Write the transcript -> gene map as a two-column TSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    mapping.rename('gene_id').rename_axis('transcript_id').to_csv(path, sep='\t', header=True)
    logger.info(f"Transcript-to-gene map written to {path}")
    return path


class QuantLoader:
    """Base loader: discovery, per-sample parsing, table assembly."""

    tool: Tool = None
    default_patterns: Dict[FeatureLevel, str] = {}
    default_sample_id_fn: SampleIdFn = staticmethod(prefix_before_underscore)

    def __init__(
        self,
        root: Union[str, Path],
        pattern: Optional[str] = None,
        level: Union[FeatureLevel, str] = FeatureLevel.GENE,
        sample_id_fn: Optional[SampleIdFn] = None
    ):
        self.root = Path(root)
        self.level = FeatureLevel(level)
        self.pattern = pattern or self.default_patterns[self.level]
        self.sample_id_fn = sample_id_fn or self.default_sample_id_fn
        self.files: Dict[str, Path] = {}

    def discover(self) -> Dict[str, Path]:
        """Find result files and assign sample IDs."""
        self.files = discover_samples(self.root, self.pattern, self.sample_id_fn)
        logger.info(f"{self.tool.value}: {len(self.files)} samples: {list(self.files)}")
        return self.files

    def read_sample(self, sample_id: str, path: Path) -> pd.DataFrame:
        """Parse one file into a feature-indexed frame (counts, abundance, length)."""
        raise NotImplementedError

    def load(self) -> QuantificationTable:
        """Load all samples into a dense table."""
        logger.info(f"Loading {self.tool.value} results ({self.level.value} level) from {self.root}")
        files = self.discover()

        per_sample = {
            sample_id: self.read_sample(sample_id, path)
            for sample_id, path in files.items()
        }
        return build_table(self.tool, self.level, per_sample, files)


class RSEMLoader(QuantLoader):
    """RSEM *.genes.results / *.isoforms.results."""

    tool = Tool.RSEM
    default_patterns = {
        FeatureLevel.GENE: '*.genes.results',
        FeatureLevel.TRANSCRIPT: '*.isoforms.results',
    }

    def read_sample(self, sample_id: str, path: Path) -> pd.DataFrame:
        df = read_tsv(path, ['gene_id', 'length', 'expected_count', 'TPM'], sample_id)
        is_isoform_file = 'transcript_id' in df.columns

        frame = pd.DataFrame({
            'counts': df['expected_count'].astype(float).values,
            'abundance': df['TPM'].astype(float).values,
            'length': df['length'].astype(float).values,
        })

        if self.level == FeatureLevel.TRANSCRIPT:
            if not is_isoform_file:
                raise MalformedQuantFileError(
                    "Transcript level requested but file has no transcript_id column "
                    "(gene-level results?)",
                    sample=sample_id, path=path
                )
            frame.index = pd.Index(df['transcript_id'].astype(str), name='feature_id')
            return frame

        if is_isoform_file:
            frame.index = pd.Index(df['transcript_id'].astype(str), name='feature_id')
            return aggregate_to_genes(frame, df['gene_id'].astype(str), sample_id, path)

        frame.index = pd.Index(df['gene_id'].astype(str), name='feature_id')
        return frame


class StringTieLoader(QuantLoader):
    """
    StringTie t_data.ctab (Ballgown) tables.

    The table carries per-base coverage but no read counts, so counts are
    derived as cov * length / read_length and TPM is computed from them.
    """

    tool = Tool.STRINGTIE
    default_patterns = {
        FeatureLevel.GENE: 't_data.ctab',
        FeatureLevel.TRANSCRIPT: 't_data.ctab',
    }
    default_sample_id_fn = staticmethod(parent_directory_name)
    required_columns = ['t_name', 'length', 'gene_id', 'cov', 'FPKM']

    def __init__(
        self,
        root: Union[str, Path],
        read_length: int,
        pattern: Optional[str] = None,
        level: Union[FeatureLevel, str] = FeatureLevel.GENE,
        sample_id_fn: Optional[SampleIdFn] = None,
        transcript_gene_map: Optional[pd.Series] = None
    ):
        super().__init__(root, pattern, level, sample_id_fn)
        if isinstance(read_length, bool) or not isinstance(read_length, int) or read_length <= 0:
            raise ValueError(f"read_length must be a positive integer, got {read_length!r}")
        self.read_length = read_length
        self.transcript_gene_map = transcript_gene_map
        self.fpkm_df: Optional[pd.DataFrame] = None

    def read_sample(self, sample_id: str, path: Path) -> pd.DataFrame:
        df = read_tsv(path, self.required_columns, sample_id)

        # Checked per transcript; a gene sum would hide a zero-length member
        lengths = df['length'].astype(float)
        bad = df.loc[lengths.isna() | (lengths <= 0), 't_name'].astype(str).tolist()
        if bad:
            raise InvalidFeatureLengthError(
                f"Zero, negative or missing length for transcripts: {bad[:5]}",
                sample=sample_id,
                path=path
            )

        frame = pd.DataFrame({
            'counts': counts_from_coverage(df['cov'], df['length'], self.read_length).values,
            'length': lengths.values,
            'fpkm': df['FPKM'].astype(float).values,
        }, index=pd.Index(df['t_name'].astype(str), name='feature_id'))

        if self.level == FeatureLevel.TRANSCRIPT:
            return frame

        if self.transcript_gene_map is not None:
            gene_ids = _map_transcripts(frame, self.transcript_gene_map, 'raise', sample_id, path)
            frame = frame.loc[gene_ids.index]
        else:
            gene_ids = pd.Series(df['gene_id'].astype(str).values, index=frame.index)
        return aggregate_to_genes(frame, gene_ids, sample_id, path)

    def load(self) -> QuantificationTable:
        logger.info(f"Loading stringtie results ({self.level.value} level) from {self.root} "
                    f"with read_length={self.read_length}")
        files = self.discover()
        per_sample = {
            sample_id: self.read_sample(sample_id, path)
            for sample_id, path in files.items()
        }

        index = check_feature_sets(per_sample, files)
        counts_df = stack_samples(per_sample, 'counts', index)
        length_df = stack_samples(per_sample, 'length', index)
        self.fpkm_df = stack_samples(per_sample, 'fpkm', index)

        tpm_df = TPMNormalizer(counts_df, length_df).tpm()
        for sample_id in per_sample:
            per_sample[sample_id] = pd.DataFrame({
                'counts': counts_df[sample_id],
                'abundance': tpm_df[sample_id],
                'length': length_df[sample_id],
            })

        return build_table(self.tool, self.level, per_sample, files)

    def fpkm_tpm(self) -> pd.DataFrame:
        """TPM derived from the reported FPKM, for cross-checking."""
        if self.fpkm_df is None:
            raise ValueError("No StringTie data loaded. Call load() first.")
        return fpkm_to_tpm(self.fpkm_df)


class KallistoLoader(QuantLoader):
    """Kallisto abundance.tsv."""

    tool = Tool.KALLISTO
    default_patterns = {
        FeatureLevel.GENE: 'abundance.tsv',
        FeatureLevel.TRANSCRIPT: 'abundance.tsv',
    }
    default_sample_id_fn = staticmethod(parent_directory_name)

    def __init__(
        self,
        root: Union[str, Path],
        pattern: Optional[str] = None,
        level: Union[FeatureLevel, str] = FeatureLevel.GENE,
        sample_id_fn: Optional[SampleIdFn] = None,
        transcript_gene_map: Optional[pd.Series] = None,
        on_unmapped: str = 'drop'
    ):
        super().__init__(root, pattern, level, sample_id_fn)
        if self.level == FeatureLevel.GENE and transcript_gene_map is None:
            raise ValueError("Gene-level Kallisto tables require a transcript-to-gene map")
        if on_unmapped not in ('drop', 'raise'):
            raise ValueError(f"Unknown on_unmapped policy: {on_unmapped}")
        self.transcript_gene_map = transcript_gene_map
        self.on_unmapped = on_unmapped

    def read_sample(self, sample_id: str, path: Path) -> pd.DataFrame:
        df = read_tsv(path, ['target_id', 'length', 'est_counts', 'tpm'], sample_id)

        # GENCODE-style headers: ENST...|ENSG...|...
        target_ids = df['target_id'].astype(str).str.split('|', n=1).str[0]

        frame = pd.DataFrame({
            'counts': df['est_counts'].astype(float).values,
            'abundance': df['tpm'].astype(float).values,
            'length': df['length'].astype(float).values,
        }, index=pd.Index(target_ids.values, name='feature_id'))

        if self.level == FeatureLevel.TRANSCRIPT:
            return frame

        gene_ids = _map_transcripts(frame, self.transcript_gene_map, self.on_unmapped, sample_id, path)
        kept = frame.loc[gene_ids.index]
        dropped_tpm = frame['abundance'].sum() - kept['abundance'].sum()
        if dropped_tpm > 0:
            logger.warning(f"{sample_id}: unmapped transcripts carried {dropped_tpm:.1f} TPM; "
                           f"gene-level TPM will not sum to one million")
        return aggregate_to_genes(kept, gene_ids, sample_id, path)


def _map_transcripts(
    frame: pd.DataFrame,
    transcript_gene_map: pd.Series,
    on_unmapped: str,
    sample_id: str,
    path: Path
) -> pd.Series:
    """Gene ID per transcript of ``frame``, restricted to mapped transcripts."""
    mapped = frame.index.isin(transcript_gene_map.index)
    n_unmapped = int((~mapped).sum())

    if n_unmapped:
        unmapped = list(frame.index[~mapped][:5])
        if on_unmapped == 'raise':
            raise UnmappedFeatureError(
                f"{n_unmapped} transcripts missing from transcript-to-gene map: {unmapped}",
                sample=sample_id, path=path
            )
        logger.warning(f"{sample_id}: dropping {n_unmapped} transcripts absent from "
                       f"transcript-to-gene map (e.g. {unmapped})")

    index = frame.index[mapped]
    return pd.Series(transcript_gene_map.loc[index].astype(str).values, index=index)


def get_loader(
    source: SourceConfig,
    transcript_gene_map: Optional[pd.Series] = None
) -> QuantLoader:
    """Build the loader for a configured source."""
    default_fn = (parent_directory_name if source.tool in (Tool.STRINGTIE, Tool.KALLISTO)
                  else prefix_before_underscore)
    sample_id_fn = get_sample_id_fn(source.sample_id, source.sample_regex, default=default_fn)

    if source.tool == Tool.RSEM:
        return RSEMLoader(source.root, source.pattern, source.level, sample_id_fn)
    if source.tool == Tool.STRINGTIE:
        return StringTieLoader(
            source.root, source.read_length, source.pattern, source.level, sample_id_fn,
            transcript_gene_map=transcript_gene_map
        )
    if source.tool == Tool.KALLISTO:
        return KallistoLoader(
            source.root, source.pattern, source.level, sample_id_fn,
            transcript_gene_map=transcript_gene_map,
            on_unmapped=source.on_unmapped
        )
    raise ValueError(f"Unknown tool: {source.tool}")
