"""
Test configuration and synthetic quantification fixtures.

Two samples (S1, S2), five genes (G1..G5), six transcripts; G1 has two
transcripts (T1, T2), every other gene one. Values are chosen so that the
gene-level rank orders are known in advance:

          G1 G2 G3 G4 G5
RSEM  S1   1  3  5  2  4
RSEM  S2   1  3  5  2  4
KAL   S1   1  5  4  2  3
KAL   S2   1  2  3  4  5
ST    S*   1  2  3  4  5
"""
import sys
from pathlib import Path

import pandas as pd
import pytest

# Add source directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common.config import FeatureLevel, Tool  # noqa: E402
from preprocessing.quant_table import build_table  # noqa: E402

GENES = ['G1', 'G2', 'G3', 'G4', 'G5']
TRANSCRIPTS = ['T1', 'T2', 'T3', 'T4', 'T5', 'T6']
TX_TO_GENE = {'T1': 'G1', 'T2': 'G1', 'T3': 'G2', 'T4': 'G3', 'T5': 'G4', 'T6': 'G5'}
TX_LENGTH = {'T1': 1000, 'T2': 500, 'T3': 2000, 'T4': 1500, 'T5': 800, 'T6': 1200}
READ_LENGTH = 100

RSEM_TPM = {
    'S1': [100000.0, 200000.0, 300000.0, 150000.0, 250000.0],
    'S2': [50000.0, 150000.0, 400000.0, 100000.0, 300000.0],
}
KALLISTO_TPM = {
    'S1': [50000.0, 10000.0, 400000.0, 340000.0, 90000.0, 110000.0],
    'S2': [20000.0, 20000.0, 100000.0, 200000.0, 290000.0, 370000.0],
}
STRINGTIE_COV = {
    'S1': [10.0, 10.0, 20.0, 30.0, 40.0, 50.0],
    'S2': [20.0, 20.0, 40.0, 60.0, 80.0, 100.0],
}

# Gene-level TPM implied by STRINGTIE_COV, READ_LENGTH and TX_LENGTH
STRINGTIE_GENE_TPM = [100 / 1500 * 1e6, 200 / 1500 * 1e6, 300 / 1500 * 1e6,
                      400 / 1500 * 1e6, 500 / 1500 * 1e6]


def write_rsem_genes(directory: Path, sample: str, tpm=None) -> Path:
    tpm = tpm or RSEM_TPM[sample]
    lengths = [1500.0, 2000.0, 1500.0, 800.0, 1200.0]
    df = pd.DataFrame({
        'gene_id': GENES,
        'transcript_id(s)': ['T1,T2', 'T3', 'T4', 'T5', 'T6'],
        'length': lengths,
        'effective_length': [x - 100 for x in lengths],
        'expected_count': [t / 1000 for t in tpm],
        'TPM': tpm,
        'FPKM': [t / 2 for t in tpm],
    })
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{sample}_rsem.genes.results"
    df.to_csv(path, sep='\t', index=False)
    return path


def write_rsem_isoforms(directory: Path, sample: str) -> Path:
    tpm = KALLISTO_TPM[sample]
    df = pd.DataFrame({
        'transcript_id': TRANSCRIPTS,
        'gene_id': [TX_TO_GENE[t] for t in TRANSCRIPTS],
        'length': [float(TX_LENGTH[t]) for t in TRANSCRIPTS],
        'effective_length': [TX_LENGTH[t] - 100.0 for t in TRANSCRIPTS],
        'expected_count': [t / 1000 for t in tpm],
        'TPM': tpm,
        'FPKM': [t / 2 for t in tpm],
        'IsoPct': [100.0] * len(TRANSCRIPTS),
    })
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{sample}_rsem.isoforms.results"
    df.to_csv(path, sep='\t', index=False)
    return path


def write_stringtie_ctab(directory: Path, sample: str, cov=None, lengths=None) -> Path:
    cov = cov or STRINGTIE_COV[sample]
    lengths = lengths or [TX_LENGTH[t] for t in TRANSCRIPTS]
    df = pd.DataFrame({
        't_id': range(1, len(TRANSCRIPTS) + 1),
        'chr': ['chr1'] * len(TRANSCRIPTS),
        'strand': ['+'] * len(TRANSCRIPTS),
        'start': [1000 * i for i in range(1, len(TRANSCRIPTS) + 1)],
        'end': [1000 * i + 999 for i in range(1, len(TRANSCRIPTS) + 1)],
        't_name': TRANSCRIPTS,
        'num_exons': [2] * len(TRANSCRIPTS),
        'length': lengths,
        'gene_id': [TX_TO_GENE[t] for t in TRANSCRIPTS],
        'gene_name': [f"NAME_{TX_TO_GENE[t]}" for t in TRANSCRIPTS],
        'cov': cov,
        'FPKM': [c * 10 for c in cov],
    })
    path = directory / sample / "t_data.ctab"
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep='\t', index=False)
    return path


def write_kallisto_abundance(directory: Path, sample: str, targets=None) -> Path:
    targets = targets or TRANSCRIPTS
    tpm = KALLISTO_TPM[sample][:len(targets)]
    df = pd.DataFrame({
        'target_id': targets,
        'length': [TX_LENGTH.get(t, 1000) for t in TRANSCRIPTS][:len(targets)],
        'eff_length': [TX_LENGTH.get(t, 1000) - 150.0 for t in TRANSCRIPTS][:len(targets)],
        'est_counts': [t / 500 for t in tpm],
        'tpm': tpm,
    })
    path = directory / sample / "abundance.tsv"
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep='\t', index=False)
    return path


@pytest.fixture
def quant_dirs(tmp_path):
    """Directory trees for all three tools, two samples each."""
    dirs = {
        'rsem': tmp_path / "rsem",
        'rsem_isoforms': tmp_path / "rsem_isoforms",
        'stringtie': tmp_path / "stringtie",
        'kallisto': tmp_path / "kallisto",
    }
    for sample in ('S1', 'S2'):
        write_rsem_genes(dirs['rsem'], sample)
        write_rsem_isoforms(dirs['rsem_isoforms'], sample)
        write_stringtie_ctab(dirs['stringtie'], sample)
        write_kallisto_abundance(dirs['kallisto'], sample)
    return dirs


@pytest.fixture
def transcript_gene_map():
    return pd.Series(TX_TO_GENE, name='gene_id').rename_axis('transcript_id')


@pytest.fixture
def make_table():
    """Build a gene-level table from {sample: abundance list} over given features."""
    def _make(abundance, features=None, tool=Tool.RSEM, level=FeatureLevel.GENE):
        features = features or GENES
        per_sample = {
            sample: pd.DataFrame({
                'counts': values,
                'abundance': values,
                'length': [1000.0] * len(values),
            }, index=pd.Index(features, name='feature_id'))
            for sample, values in abundance.items()
        }
        return build_table(tool, level, per_sample, {})
    return _make
