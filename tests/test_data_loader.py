"""
File discovery and loader tests
"""
import numpy as np
import pandas as pd
import pytest

from common.config import FeatureLevel, SourceConfig, Tool
from common.exceptions import (
    AmbiguousSampleIdError,
    InconsistentFeatureSetError,
    InvalidFeatureLengthError,
    MalformedQuantFileError,
    NoFilesFoundError,
    UnmappedFeatureError,
)
from preprocessing.data_loader import (
    KallistoLoader,
    RSEMLoader,
    StringTieLoader,
    get_loader,
    load_transcript_gene_map,
    write_transcript_gene_map,
)
from preprocessing.file_discovery import (
    assign_sample_ids,
    discover_samples,
    parent_directory_name,
    prefix_before_underscore,
    regex_sample_id,
    run_accession,
)
from preprocessing.quant_table import qc_summary

from conftest import (
    GENES,
    KALLISTO_TPM,
    READ_LENGTH,
    RSEM_TPM,
    STRINGTIE_GENE_TPM,
    TRANSCRIPTS,
    write_kallisto_abundance,
    write_rsem_genes,
    write_stringtie_ctab,
)


class TestSampleIdStrategies:

    def test_prefix_before_underscore(self, tmp_path):
        assert prefix_before_underscore(tmp_path / "SRR001_sorted.genes.results") == "SRR001"
        assert prefix_before_underscore(tmp_path / "S7.genes.results") == "S7"

    def test_parent_directory_name(self, tmp_path):
        assert parent_directory_name(tmp_path / "S1" / "t_data.ctab") == "S1"

    def test_run_accession(self, tmp_path):
        path = tmp_path / "batch2" / "lib_ERR123456_trimmed" / "abundance.tsv"
        assert run_accession(path) == "ERR123456"

    def test_regex_with_group(self, tmp_path):
        extract = regex_sample_id(r'sample-(\w+?)\.')
        assert extract(tmp_path / "sample-A12.genes.results") == "A12"

    def test_regex_without_match(self, tmp_path):
        with pytest.raises(AmbiguousSampleIdError):
            run_accession(tmp_path / "no_accession_here.tsv")

    def test_duplicate_sample_ids_rejected(self, tmp_path):
        files = [tmp_path / "S1_a.genes.results", tmp_path / "S1_b.genes.results"]

        with pytest.raises(AmbiguousSampleIdError) as excinfo:
            assign_sample_ids(files, prefix_before_underscore)

        assert excinfo.value.sample == "S1"

    def test_no_files_found(self, tmp_path):
        with pytest.raises(NoFilesFoundError):
            discover_samples(tmp_path, "*.genes.results")

    def test_missing_root(self, tmp_path):
        with pytest.raises(NoFilesFoundError):
            discover_samples(tmp_path / "absent", "*.genes.results")

    def test_discovery_is_recursive_and_sorted(self, quant_dirs):
        found = discover_samples(quant_dirs['stringtie'], "t_data.ctab", parent_directory_name)
        assert list(found) == ["S1", "S2"]


class TestRSEMLoader:

    def test_gene_level(self, quant_dirs):
        table = RSEMLoader(quant_dirs['rsem']).load()

        assert table.tool == Tool.RSEM
        assert table.level == FeatureLevel.GENE
        assert table.samples == ['S1', 'S2']
        assert list(table.features) == GENES
        assert table.abundance['S1'].tolist() == RSEM_TPM['S1']
        assert table.length.loc['G1', 'S1'] == 1500.0

    def test_transcript_level(self, quant_dirs):
        table = RSEMLoader(quant_dirs['rsem_isoforms'], level='transcript').load()

        assert list(table.features) == TRANSCRIPTS
        assert table.abundance['S1'].tolist() == KALLISTO_TPM['S1']

    def test_gene_level_from_isoforms(self, quant_dirs):
        table = RSEMLoader(quant_dirs['rsem_isoforms'], pattern='*.isoforms.results').load()

        assert list(table.features) == GENES
        assert table.abundance.loc['G1', 'S1'] == pytest.approx(60000.0)
        assert table.length.loc['G1', 'S1'] == pytest.approx(1500.0)
        assert table.abundance['S1'].sum() == pytest.approx(1e6)

    def test_transcript_level_needs_isoform_file(self, quant_dirs):
        loader = RSEMLoader(quant_dirs['rsem'], pattern='*.genes.results', level='transcript')
        with pytest.raises(MalformedQuantFileError):
            loader.load()

    def test_inconsistent_feature_sets(self, tmp_path):
        write_rsem_genes(tmp_path, 'S1')
        path = write_rsem_genes(tmp_path, 'S2')
        df = pd.read_csv(path, sep='\t')
        df.iloc[:4].to_csv(path, sep='\t', index=False)

        with pytest.raises(InconsistentFeatureSetError) as excinfo:
            RSEMLoader(tmp_path).load()

        assert excinfo.value.sample == 'S2'
        assert excinfo.value.path == path

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "S1_x.genes.results"
        pd.DataFrame({'gene_id': ['G1'], 'length': [100]}).to_csv(path, sep='\t', index=False)

        with pytest.raises(MalformedQuantFileError) as excinfo:
            RSEMLoader(tmp_path).load()

        assert 'TPM' in str(excinfo.value)

    def test_table_is_not_mutable_through_accessors(self, quant_dirs):
        table = RSEMLoader(quant_dirs['rsem']).load()
        abundance = table.abundance
        abundance.loc['G1', 'S1'] = -1.0

        assert table.abundance.loc['G1', 'S1'] == RSEM_TPM['S1'][0]


class TestStringTieLoader:

    def test_gene_level_tpm(self, quant_dirs):
        table = StringTieLoader(quant_dirs['stringtie'], read_length=READ_LENGTH).load()

        assert table.samples == ['S1', 'S2']
        assert list(table.features) == GENES
        assert table.abundance['S1'].tolist() == pytest.approx(STRINGTIE_GENE_TPM)
        assert table.counts.loc['G1', 'S1'] == pytest.approx(150.0)
        assert table.length.loc['G1', 'S1'] == pytest.approx(1500.0)

    def test_tpm_sums_to_one_million(self, quant_dirs):
        table = StringTieLoader(quant_dirs['stringtie'], read_length=READ_LENGTH,
                                level='transcript').load()

        assert np.allclose(table.abundance.sum(axis=0), 1e6, rtol=1e-3)

    def test_transcript_level_counts(self, quant_dirs):
        table = StringTieLoader(quant_dirs['stringtie'], read_length=READ_LENGTH,
                                level='transcript').load()

        # cov * length / read_length
        assert table.counts.loc['T1', 'S1'] == pytest.approx(100.0)
        assert table.counts.loc['T6', 'S2'] == pytest.approx(1200.0)

    def test_fpkm_cross_check_agrees_on_ranks(self, quant_dirs):
        loader = StringTieLoader(quant_dirs['stringtie'], read_length=READ_LENGTH,
                                 level='transcript')
        table = loader.load()
        fpkm_tpm = loader.fpkm_tpm()

        assert (table.abundance.rank() == fpkm_tpm.rank()).all().all()

    @pytest.mark.parametrize("read_length", [0, -1, None, 100.0])
    def test_read_length_is_required(self, quant_dirs, read_length):
        with pytest.raises(ValueError):
            StringTieLoader(quant_dirs['stringtie'], read_length=read_length)

    def test_zero_length_feature_is_fatal(self, tmp_path):
        lengths = [1000, 0, 2000, 1500, 800, 1200]
        write_stringtie_ctab(tmp_path, 'S1', lengths=lengths)

        with pytest.raises(InvalidFeatureLengthError):
            StringTieLoader(tmp_path, read_length=READ_LENGTH, level='transcript').load()

    def test_zero_length_transcript_fatal_at_gene_level(self, tmp_path):
        # T2 shares G1 with T1, so the summed gene length stays positive
        lengths = [1000, 0, 2000, 1500, 800, 1200]
        path = write_stringtie_ctab(tmp_path, 'S1', lengths=lengths)

        with pytest.raises(InvalidFeatureLengthError) as exc_info:
            StringTieLoader(tmp_path, read_length=READ_LENGTH, level='gene').load()

        assert exc_info.value.sample == 'S1'
        assert exc_info.value.path == path
        assert 'T2' in str(exc_info.value)

    def test_external_map(self, quant_dirs, transcript_gene_map):
        table = StringTieLoader(quant_dirs['stringtie'], read_length=READ_LENGTH,
                                transcript_gene_map=transcript_gene_map).load()

        assert list(table.features) == GENES


class TestKallistoLoader:

    def test_transcript_level(self, quant_dirs):
        table = KallistoLoader(quant_dirs['kallisto'], level='transcript').load()

        assert list(table.features) == TRANSCRIPTS
        assert table.abundance['S2'].tolist() == KALLISTO_TPM['S2']

    def test_gene_level_requires_map(self, quant_dirs):
        with pytest.raises(ValueError):
            KallistoLoader(quant_dirs['kallisto'])

    def test_gene_level_sums_tpm(self, quant_dirs, transcript_gene_map):
        table = KallistoLoader(quant_dirs['kallisto'],
                               transcript_gene_map=transcript_gene_map).load()

        assert list(table.features) == GENES
        assert table.abundance.loc['G1', 'S1'] == pytest.approx(60000.0)
        assert table.length.loc['G1', 'S1'] == pytest.approx(1500.0)
        assert table.abundance.sum(axis=0).tolist() == pytest.approx([1e6, 1e6])

    def test_unmapped_dropped_by_default(self, tmp_path, transcript_gene_map):
        targets = ['T1', 'T2', 'T3', 'T4', 'T5', 'TX']
        for sample in ('S1', 'S2'):
            write_kallisto_abundance(tmp_path, sample, targets=targets)

        table = KallistoLoader(tmp_path, transcript_gene_map=transcript_gene_map).load()

        assert list(table.features) == ['G1', 'G2', 'G3', 'G4']

    def test_unmapped_raise(self, tmp_path, transcript_gene_map):
        write_kallisto_abundance(tmp_path, 'S1', targets=['T1', 'T2', 'T3', 'T4', 'T5', 'TX'])

        loader = KallistoLoader(tmp_path, transcript_gene_map=transcript_gene_map,
                                on_unmapped='raise')
        with pytest.raises(UnmappedFeatureError) as excinfo:
            loader.load()

        assert excinfo.value.sample == 'S1'

    def test_gencode_style_target_ids(self, tmp_path, transcript_gene_map):
        targets = [f"{t}|{g}|OTT|NAME" for t, g in transcript_gene_map.items()]
        write_kallisto_abundance(tmp_path, 'S1', targets=targets)

        table = KallistoLoader(tmp_path, level='transcript').load()

        assert list(table.features) == TRANSCRIPTS


class TestTranscriptGeneMap:

    def test_from_ctab(self, quant_dirs, transcript_gene_map):
        mapping = load_transcript_gene_map(quant_dirs['stringtie'] / "S1" / "t_data.ctab")

        assert mapping.sort_index().to_dict() == transcript_gene_map.to_dict()

    def test_write_and_reload(self, tmp_path, transcript_gene_map):
        path = write_transcript_gene_map(transcript_gene_map, tmp_path / "maps" / "tx2gene.tsv")

        reloaded = load_transcript_gene_map(path)

        assert reloaded.to_dict() == transcript_gene_map.to_dict()

    def test_conflicting_mapping(self, tmp_path):
        path = tmp_path / "tx2gene.tsv"
        pd.DataFrame({'transcript_id': ['T1', 'T1'], 'gene_id': ['G1', 'G2']}).to_csv(
            path, sep='\t', index=False)

        with pytest.raises(MalformedQuantFileError):
            load_transcript_gene_map(path)


class TestGetLoader:

    def test_builds_configured_loader(self, quant_dirs):
        source = SourceConfig(tool='stringtie', root=quant_dirs['stringtie'], read_length=75)

        loader = get_loader(source)

        assert isinstance(loader, StringTieLoader)
        assert loader.read_length == 75
        assert loader.sample_id_fn(quant_dirs['stringtie'] / "S9" / "t_data.ctab") == "S9"

    def test_qc_summary(self, quant_dirs):
        table = get_loader(SourceConfig(tool='rsem', root=quant_dirs['rsem'])).load()

        qc = qc_summary(table)

        assert qc['sample_id'].tolist() == ['S1', 'S2']
        assert (qc['detected_features'] == 5).all()
        assert qc['tpm_sum'].tolist() == pytest.approx([1e6, 1e6])
