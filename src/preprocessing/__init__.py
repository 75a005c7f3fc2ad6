"""
Preprocessing module: result file discovery, loading and TPM normalization.
"""

from .data_loader import (
    KallistoLoader,
    RSEMLoader,
    StringTieLoader,
    get_loader,
    load_transcript_gene_map,
    write_transcript_gene_map,
)
from .normalization import TPMNormalizer, check_tpm_sums, fpkm_to_tpm
from .quant_table import QuantificationTable, qc_summary

__all__ = [
    'KallistoLoader', 'RSEMLoader', 'StringTieLoader', 'get_loader',
    'load_transcript_gene_map', 'write_transcript_gene_map',
    'TPMNormalizer', 'check_tpm_sums', 'fpkm_to_tpm',
    'QuantificationTable', 'qc_summary',
]
