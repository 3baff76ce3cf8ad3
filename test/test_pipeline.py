#!/usr/bin/env python3
"""
dc_rnaseq - Test Suite

Pytest test suite for sample discovery, count assembly, DESeq2 modelling,
result extraction, plotting, configuration and the CLI.
"""

from pathlib import Path
from unittest.mock import patch

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest
from typer.testing import CliRunner

# Add the project root to the Python path
import sys
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dc_rnaseq import cli, utils, samples, counts, results, viz, config, pipeline
from dc_rnaseq.deseq import fit_model
from generate_test_data import (
    HTSeqCountGenerator, create_sample_data, create_samplesheet, CONDITIONS
)


@pytest.fixture(scope="module")
def htseq_dir(tmp_path_factory):
    """Six synthetic samples, three per condition."""
    data_dir = tmp_path_factory.mktemp("htseq")
    create_sample_data(data_dir, n_replicates=3, n_genes=300, n_de_genes=30, seed=7)
    return data_dir


@pytest.fixture(scope="module")
def count_data(htseq_dir):
    return counts.build_count_matrix(samples.discover_samples(htseq_dir))


@pytest.fixture(scope="module")
def fitted_model(count_data):
    return fit_model(count_data.counts, count_data.metadata)


def _model_frame(genes, fold_changes, padj):
    return pd.DataFrame(
        {'log2FoldChange': fold_changes, 'padj': padj},
        index=pd.Index(genes, name='gene_id'),
    )


def _normalized_frame(genes, n_samples=2, seed=0):
    rng = np.random.default_rng(seed)
    data = rng.uniform(1, 1000, size=(len(genes), n_samples))
    return pd.DataFrame(
        data, index=pd.Index(genes, name='gene_id'),
        columns=[f"s{i + 1}" for i in range(n_samples)],
    )


def _random_table(n_genes=120, seed=3):
    """Result table with a mix of significant, non-significant and untested genes."""
    rng = np.random.default_rng(seed)
    genes = [f"gene{i:03d}" for i in range(n_genes)]
    padj = rng.uniform(0, 1, n_genes) ** 4
    padj[::10] = np.nan
    model = _model_frame(genes, rng.normal(0, 2, n_genes), padj)
    normalized = _normalized_frame(genes, n_samples=4, seed=seed)
    return results.extract_results(model, normalized, 'Activated', 'Control', padj_cutoff=0.05)


class TestUtils:
    """Test utility functions."""

    def test_validate_file_exists(self, tmp_path):
        """Test file validation function."""
        test_file = tmp_path / "test.txt"
        test_file.write_text("test content")

        assert utils.validate_file_exists(test_file) == test_file

        with pytest.raises(FileNotFoundError):
            utils.validate_file_exists(tmp_path / "nonexistent.txt")

    def test_validate_directory_exists(self, tmp_path):
        """Test directory validation and creation."""
        new_dir = tmp_path / "a" / "b"

        with pytest.raises(FileNotFoundError):
            utils.validate_directory_exists(new_dir)

        assert utils.validate_directory_exists(new_dir, create=True) == new_dir
        assert new_dir.is_dir()

    def test_save_metrics_json_handles_nan(self, tmp_path):
        """NaN values are written as null."""
        output_file = tmp_path / "metrics.json"
        utils.save_metrics_json({'a': 1, 'b': float('nan'), 'c': [1.5, float('inf')]}, output_file)

        loaded = utils.load_metrics_json(output_file)
        assert loaded == {'a': 1, 'b': None, 'c': [1.5, None]}

    def test_format_number(self):
        assert utils.format_number(1500) == "1.50K"
        assert utils.format_number(2_500_000, precision=1) == "2.5M"
        assert utils.format_number(12) == "12.00"


class TestSamples:
    """Test sample discovery."""

    def test_parse_sample_name(self):
        parsed = samples.parse_sample_name("Activated_rep2")

        assert parsed['condition'] == 'Activated'
        assert parsed['replicate'] == '2'

    @pytest.mark.parametrize("sample_id,condition,replicate", [
        ("Ctrl1", "Ctrl", "1"),
        ("Act12", "Act", "12"),
        ("IFN2b_3", "IFN2b", "3"),
        ("Control", "Control", None),
    ])
    def test_parse_sample_name_trailing_replicate(self, sample_id, condition, replicate):
        parsed = samples.parse_sample_name(sample_id)

        assert parsed['condition'] == condition
        assert parsed['replicate'] == replicate

    def test_discover_samples_without_separator(self, tmp_path):
        generator = HTSeqCountGenerator(n_genes=5, n_de_genes=0)
        for sample_id in ("Act1", "Act2", "Ctrl1", "Ctrl2"):
            generator.write_htseq([1, 2, 3, 4, 5], tmp_path / f"{sample_id}_htseq.out")

        found = samples.discover_samples(tmp_path)

        assert [s.condition for s in found] == ['Act', 'Act', 'Ctrl', 'Ctrl']
        assert [s.replicate for s in found] == ['1', '2', '1', '2']

    def test_parse_sample_name_with_condition_map(self):
        parsed = samples.parse_sample_name(
            "act_DC_2", condition_map={'act': 'Activated', 'unact': 'Control'}
        )

        assert parsed['condition'] == 'Activated'
        assert parsed['replicate'] == '2'

    def test_parse_sample_name_unknown_token(self):
        with pytest.raises(samples.ConditionError, match="Unknown condition 'lps'"):
            samples.parse_sample_name("lps_1", condition_map={'act': 'Activated'})

    def test_parse_sample_name_requires_condition_group(self):
        with pytest.raises(samples.SampleDiscoveryError):
            samples.parse_sample_name("Activated_1", pattern=r"^(?P<group>\w+)$")

    def test_parse_sample_name_no_match(self):
        with pytest.raises(samples.SampleDiscoveryError, match="_bad"):
            samples.parse_sample_name("_bad")

    def test_discover_samples(self, htseq_dir):
        found = samples.discover_samples(htseq_dir)

        assert [s.sample_id for s in found] == [
            'Activated_rep1', 'Activated_rep2', 'Activated_rep3',
            'Control_rep1', 'Control_rep2', 'Control_rep3',
        ]
        assert {s.condition for s in found} == set(CONDITIONS)
        assert found[0].count_file.name == 'Activated_rep1_htseq.out'
        assert found[0].replicate == '1'

    def test_discover_samples_condition_whitelist(self, htseq_dir):
        with pytest.raises(samples.ConditionError, match="Control"):
            samples.discover_samples(htseq_dir, conditions=['Activated', 'Unactivated'])

    def test_discover_samples_empty_directory(self, tmp_path):
        (tmp_path / "notes.txt").write_text("not a count file")

        with pytest.raises(samples.SampleDiscoveryError, match="_htseq.out"):
            samples.discover_samples(tmp_path)

    def test_discover_samples_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            samples.discover_samples(tmp_path / "missing")

    def test_load_samplesheet(self, tmp_path):
        sample_map = create_sample_data(tmp_path, n_replicates=2, n_genes=20, n_de_genes=4)
        samplesheet = create_samplesheet(tmp_path, sample_map)

        loaded = samples.load_samplesheet(samplesheet)

        assert [s.sample_id for s in loaded] == list(sample_map)
        assert all(s.count_file.exists() for s in loaded)
        assert loaded[0].condition == 'Activated'

    def test_validate_samplesheet_missing_columns(self, tmp_path):
        samplesheet = tmp_path / "samplesheet.tsv"
        samplesheet.write_text("sample_id\tcondition\nA1\tActivated\n")

        with pytest.raises(ValueError, match="count_file"):
            samples.validate_samplesheet(samplesheet)

    def test_validate_samplesheet_missing_count_file(self, tmp_path):
        samplesheet = tmp_path / "samplesheet.tsv"
        samplesheet.write_text("sample_id\tcondition\tcount_file\nA1\tActivated\tA1_htseq.out\n")

        with pytest.raises(FileNotFoundError, match="A1"):
            samples.validate_samplesheet(samplesheet)


class TestCounts:
    """Test HTSeq parsing and count matrix assembly."""

    def test_read_htseq_counts(self, tmp_path):
        count_file = tmp_path / "S1_htseq.out"
        count_file.write_text("geneA\t10\ngeneB\t0\n__no_feature\t5\n")

        series = counts.read_htseq_counts(count_file)

        assert list(series.index) == ['geneA', 'geneB', '__no_feature']
        assert series['geneA'] == 10

        parts = counts.split_htseq_counters(series)
        assert list(parts['genes'].index) == ['geneA', 'geneB']
        assert list(parts['counters'].index) == ['__no_feature']

    @pytest.mark.parametrize("content,message", [
        ("geneA\t10\tx\n", "expected 2 tab-separated fields"),
        ("geneA\t1\ngeneB\n", "expected 2 tab-separated fields"),
        ("geneA\tten\n", "not an integer"),
        ("geneA\t-1\n", "negative count"),
        ("geneA\t1\ngeneA\t2\n", "Duplicate gene ids"),
        ("", "empty"),
    ])
    def test_read_htseq_counts_malformed(self, tmp_path, content, message):
        count_file = tmp_path / "bad_htseq.out"
        count_file.write_text(content)

        with pytest.raises(counts.CountFileError, match=message):
            counts.read_htseq_counts(count_file)

    def test_malformed_row_names_file_and_line(self, tmp_path):
        count_file = tmp_path / "bad_htseq.out"
        count_file.write_text("geneA\t1\ngeneB\t2.5\n")

        with pytest.raises(counts.CountFileError) as excinfo:
            counts.read_htseq_counts(count_file)

        assert f"{count_file}:2" in str(excinfo.value)

    def test_line_numbers_count_blank_lines(self, tmp_path):
        count_file = tmp_path / "bad_htseq.out"
        count_file.write_text("geneA\t1\n\ngeneB\tx\n")

        with pytest.raises(counts.CountFileError, match="not an integer") as excinfo:
            counts.read_htseq_counts(count_file)

        assert f"{count_file}:3" in str(excinfo.value)

    def test_blank_lines_are_skipped(self, tmp_path):
        count_file = tmp_path / "S1_htseq.out"
        count_file.write_text("geneA\t1\n\ngeneB\t2\n")

        series = counts.read_htseq_counts(count_file)

        assert list(series.index) == ['geneA', 'geneB']
        assert series.dtype == np.int64

    def test_build_count_matrix(self, count_data):
        assert count_data.counts.shape == (300, 6)
        assert count_data.n_genes == 300
        assert not count_data.counts.index.str.startswith('__').any()
        assert list(count_data.metadata['condition']) == ['Activated'] * 3 + ['Control'] * 3
        assert count_data.counts.dtypes.map(lambda d: d.kind == 'i').all()

    def test_counting_summary(self, count_data):
        summary = count_data.counting_summary

        assert list(summary.index) == list(count_data.counts.columns)
        assert (summary['assigned'] == count_data.counts.sum()).all()
        assert (summary['no_feature'] == 5000).all()
        assert (summary['assigned_percent'] < 100).all()

    def test_gene_order_follows_first_sample(self, tmp_path):
        generator = HTSeqCountGenerator(n_genes=4, n_de_genes=0)
        generator.write_htseq([1, 2, 3, 4], tmp_path / "Control_rep1_htseq.out")
        generator.write_htseq([4, 3, 2, 1], tmp_path / "Control_rep2_htseq.out",
                              gene_ids=list(reversed(generator.gene_ids)))

        data = counts.build_count_matrix(samples.discover_samples(tmp_path))

        assert list(data.counts.index) == generator.gene_ids
        assert list(data.counts['Control_rep2']) == [1, 2, 3, 4]

    def test_gene_set_mismatch(self, tmp_path):
        generator = HTSeqCountGenerator(n_genes=5, n_de_genes=0)
        generator.write_htseq([1, 2, 3, 4, 5], tmp_path / "Activated_rep1_htseq.out")
        generator.write_htseq([1, 2, 3, 4], tmp_path / "Control_rep1_htseq.out",
                              gene_ids=generator.gene_ids[:4])

        with pytest.raises(counts.GeneSetMismatchError, match="Control_rep1"):
            counts.build_count_matrix(samples.discover_samples(tmp_path))

    def test_write_count_matrix(self, count_data, tmp_path):
        paths = counts.write_count_matrix(count_data, tmp_path / "counts")

        for path in paths.values():
            assert path.exists()

        reloaded = pd.read_csv(paths['count_matrix'], sep='\t', index_col=0)
        assert reloaded.shape == (300, 6)
        assert reloaded.index.name == 'gene_id'


class TestResults:
    """Test result extraction and annotation."""

    def test_example_comparison(self, tmp_path):
        genes = ['geneC', 'geneA', 'geneB']
        model = _model_frame(genes, [-1.2, 2.5, 1.0], [0.0005, 0.0001, 0.5])
        normalized = _normalized_frame(genes)

        result = results.extract_results(model, normalized, 'Activated', 'Control',
                                         padj_cutoff=0.001, output_dir=tmp_path)

        assert list(result.all_genes['Gene.name']) == ['geneA', 'geneB', 'geneC']
        assert list(result.filtered['Gene.name']) == ['geneA', 'geneC']
        assert result.name == 'Activated_vs_Control'
        assert "3 genes total" in result.summary
        assert "2 with padj < 0.001" in result.summary

    def test_output_files(self, tmp_path):
        genes = ['geneA', 'geneB']
        model = _model_frame(genes, [1.0, -1.0], [0.0001, 0.2])
        result = results.extract_results(model, _normalized_frame(genes), 'Activated', 'Control',
                                         output_dir=tmp_path)

        assert result.all_genes_path == tmp_path / 'Activated_vs_Control_allgenes.csv'
        assert result.filtered_path == tmp_path / 'Activated_vs_Control_padj_cutoff.csv'

        for path in (result.all_genes_path, result.filtered_path):
            header = path.read_text().splitlines()[0]
            assert header == 'Gene.name,log2FoldChange,padj,s1,s2'

        assert len(pd.read_csv(result.filtered_path)) == 1

    def test_no_files_without_output_dir(self, tmp_path):
        genes = ['geneA']
        result = results.extract_results(_model_frame(genes, [1.0], [0.1]),
                                         _normalized_frame(genes), 'A', 'B')

        assert result.all_genes_path is None
        assert list(tmp_path.iterdir()) == []

    def test_undefined_padj_kept_in_full_table_only(self):
        genes = ['geneA', 'geneB', 'geneC']
        model = _model_frame(genes, [1.0, 0.5, -0.5], [np.nan, 0.0001, np.nan])

        result = results.extract_results(model, _normalized_frame(genes), 'A', 'B', padj_cutoff=1.0)

        assert len(result.all_genes) == 3
        assert list(result.filtered['Gene.name']) == ['geneB']
        assert result.stats['n_untested'] == 2

    def test_cutoff_boundary_is_strict(self):
        genes = ['geneA', 'geneB']
        model = _model_frame(genes, [1.0, 2.0], [0.001, 0.0009999])

        result = results.extract_results(model, _normalized_frame(genes), 'A', 'B', padj_cutoff=0.001)

        assert list(result.filtered['Gene.name']) == ['geneB']

    def test_sort_is_stable_with_undefined_fold_change_last(self):
        genes = ['g1', 'g2', 'g3', 'g4', 'g5']
        model = _model_frame(genes, [1.0, 2.0, 1.0, np.nan, 1.0], [0.5] * 5)

        result = results.extract_results(model, _normalized_frame(genes), 'A', 'B')

        assert list(result.all_genes['Gene.name']) == ['g2', 'g1', 'g3', 'g5', 'g4']

    def test_genes_missing_from_model_are_kept(self):
        genes = ['geneA', 'geneB', 'geneC']
        model = _model_frame(['geneB'], [1.0], [0.0001])

        result = results.extract_results(model, _normalized_frame(genes), 'A', 'B')

        assert len(result.all_genes) == 3
        assert result.all_genes['Gene.name'].iloc[0] == 'geneB'
        assert result.all_genes['log2FoldChange'].isna().sum() == 2

    def test_unknown_genes_in_model_rejected(self):
        model = _model_frame(['geneA', 'geneZ'], [1.0, 1.0], [0.1, 0.1])

        with pytest.raises(ValueError, match="geneZ"):
            results.extract_results(model, _normalized_frame(['geneA']), 'A', 'B')

    def test_missing_model_column_rejected(self):
        model = pd.DataFrame({'log2FoldChange': [1.0]}, index=['geneA'])

        with pytest.raises(ValueError, match="padj"):
            results.extract_results(model, _normalized_frame(['geneA']), 'A', 'B')

    @pytest.mark.parametrize("cutoff", [0, -0.1, 1.5])
    def test_invalid_cutoff(self, cutoff):
        genes = ['geneA']
        with pytest.raises(ValueError, match="cutoff"):
            results.extract_results(_model_frame(genes, [1.0], [0.1]),
                                    _normalized_frame(genes), 'A', 'B', padj_cutoff=cutoff)

    def test_table_properties(self):
        result = _random_table()
        full = result.all_genes
        fold_changes = full['log2FoldChange'].to_numpy()

        assert len(full) == 120
        assert (fold_changes[:-1] >= fold_changes[1:]).all()

        expected = full[full['padj'] < 0.05].reset_index(drop=True)
        pd.testing.assert_frame_equal(result.filtered, expected)
        assert (result.filtered['padj'] < 0.05).all()
        assert result.filtered['padj'].notna().all()

    def test_idempotent_output(self, tmp_path):
        genes = [f"gene{i}" for i in range(50)]
        rng = np.random.default_rng(11)
        model = _model_frame(genes, rng.normal(size=50), rng.uniform(size=50) ** 3)
        normalized = _normalized_frame(genes, n_samples=3)

        first = results.extract_results(model, normalized, 'A', 'B', output_dir=tmp_path / 'run1')
        second = results.extract_results(model, normalized, 'A', 'B', output_dir=tmp_path / 'run2')

        assert first.all_genes_path.read_bytes() == second.all_genes_path.read_bytes()
        assert first.filtered_path.read_bytes() == second.filtered_path.read_bytes()

    def test_load_result_table(self, tmp_path):
        result = _random_table()
        results.write_result_tables(result, tmp_path)

        table = results.load_result_table(result.all_genes_path)
        assert list(table.columns[:3]) == ['Gene.name', 'log2FoldChange', 'padj']
        assert len(table) == 120

        bad = tmp_path / "bad.csv"
        bad.write_text("gene,fc\nA,1\n")
        with pytest.raises(ValueError, match="result table"):
            results.load_result_table(bad)


class TestModel:
    """Test DESeq2 modelling through PyDESeq2."""

    def test_conditions(self, fitted_model):
        assert fitted_model.conditions == ['Activated', 'Control']
        assert len(fitted_model.size_factors()) == 6

    def test_normalized_counts(self, fitted_model, count_data):
        normalized = fitted_model.normalized_counts()

        assert normalized.shape == (300, 6)
        assert list(normalized.index) == list(count_data.counts.index)
        assert (normalized.to_numpy() >= 0).all()

    def test_results(self, fitted_model):
        model_results = fitted_model.results('Activated', 'Control')

        assert list(model_results.columns) == [
            'baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj'
        ]
        assert len(model_results) == 300

        # first 15 genes were simulated up, the next 15 down
        assert model_results['log2FoldChange'].iloc[:15].median() > 1
        assert model_results['log2FoldChange'].iloc[15:30].median() < -1

    def test_unknown_condition(self, fitted_model):
        with pytest.raises(samples.ConditionError, match="Stimulated"):
            fitted_model.results('Stimulated', 'Control')

    def test_same_condition(self, fitted_model):
        with pytest.raises(samples.ConditionError):
            fitted_model.results('Control', 'Control')

    def test_single_condition_rejected(self, count_data):
        metadata = count_data.metadata.copy()
        metadata['condition'] = 'Control'

        with pytest.raises(samples.ConditionError, match="at least 2 conditions"):
            fit_model(count_data.counts, metadata)


class TestViz:
    """Test plotting helpers."""

    def test_top_genes(self):
        table = _random_table().all_genes

        by_padj = viz.top_genes(table, 10, rank_by='padj')
        assert len(by_padj) == 10
        assert by_padj['padj'].is_monotonic_increasing

        by_fc = viz.top_genes(table, 5, rank_by='log2FoldChange')
        assert by_fc['log2FoldChange'].abs().is_monotonic_decreasing

        with pytest.raises(ValueError):
            viz.top_genes(table, 5, rank_by='pvalue')

    def test_plot_volcano(self, tmp_path):
        output_file = tmp_path / "volcano.png"
        fig = viz.plot_volcano(_random_table().all_genes, padj_cutoff=0.05, n_labels=5,
                               output_file=output_file)

        assert isinstance(fig, plt.Figure)
        assert output_file.exists()

    def test_plot_heatmap(self, tmp_path):
        result = _random_table()
        metadata = pd.DataFrame({'condition': ['Activated', 'Control', 'Activated', 'Control']},
                                index=result.sample_columns)

        output_file = tmp_path / "heatmap.png"
        viz.plot_heatmap(result.all_genes, n_genes=20, metadata=metadata, output_file=output_file)

        assert output_file.exists()

    def test_compute_pca(self, count_data):
        coords, variance = viz.compute_pca(count_data.counts, count_data.metadata, n_genes=100)

        assert list(coords.columns) == ['PC1', 'PC2', 'condition']
        assert list(coords.index) == list(count_data.counts.columns)
        assert len(variance) == 2
        assert variance[0] >= variance[1]

    def test_compute_pca_needs_two_samples(self, count_data):
        with pytest.raises(ValueError, match="2 samples"):
            viz.compute_pca(count_data.counts.iloc[:, :1])

    def test_create_visualizations(self, tmp_path):
        result = _random_table()
        metadata = pd.DataFrame({'condition': ['Activated', 'Activated', 'Control', 'Control']},
                                index=result.sample_columns)

        plots = viz.create_visualizations(result, tmp_path, metadata=metadata,
                                          heatmap_genes=10, volcano_labels=3)

        assert set(plots) == {'volcano', 'heatmap'}
        for path in plots.values():
            assert Path(path).exists()

    def test_heatmap_skipped_without_tested_genes(self, tmp_path):
        genes = ['geneA', 'geneB', 'geneC']
        model = _model_frame(genes, [1.0, np.nan, -1.0], [np.nan, np.nan, np.nan])
        result = results.extract_results(model, _normalized_frame(genes), 'A', 'B')

        plots = viz.create_visualizations(result, tmp_path)

        assert set(plots) == {'volcano'}
        assert not (tmp_path / "A_vs_B_heatmap.png").exists()

    def test_create_sample_plots(self, count_data, tmp_path):
        plots = viz.create_sample_plots(count_data.counts, tmp_path,
                                        metadata=count_data.metadata, pca_genes=50)

        assert plots == {
            'pca': str(tmp_path / "pca.png"),
            'correlation': str(tmp_path / "sample_correlation.png"),
        }
        for path in plots.values():
            assert Path(path).exists()


class TestConfig:
    """Test configuration loading."""

    def test_load_config(self, tmp_path):
        config_file = tmp_path / "analysis.yml"
        config_file.write_text(
            "count_dir: htseq\n"
            "output_dir: out\n"
            "padj_cutoff: 0.01\n"
            "condition_map:\n"
            "  act: Activated\n"
            "  unact: Control\n"
            "comparisons:\n"
            "  - Activated_vs_Control\n"
            "  - [Control, Activated]\n"
        )

        loaded = config.load_config(config_file)

        assert loaded.count_dir == tmp_path / "htseq"
        assert loaded.output_dir == tmp_path / "out"
        assert loaded.padj_cutoff == 0.01
        assert loaded.condition_map == {'act': 'Activated', 'unact': 'Control'}
        assert loaded.comparisons == [('Activated', 'Control'), ('Control', 'Activated')]

    def test_empty_comparisons(self, tmp_path):
        config_file = tmp_path / "analysis.yml"
        config_file.write_text("count_dir: htseq\ncomparisons:\n")

        assert config.load_config(config_file).comparisons == []

    def test_comparisons_must_be_a_list(self, tmp_path):
        config_file = tmp_path / "analysis.yml"
        config_file.write_text("count_dir: htseq\ncomparisons: 3\n")

        with pytest.raises(ValueError, match="comparisons must be a list"):
            config.load_config(config_file)

    def test_unknown_key(self, tmp_path):
        config_file = tmp_path / "analysis.yml"
        config_file.write_text("count_dir: htseq\nfdr: 0.1\n")

        with pytest.raises(ValueError, match="fdr"):
            config.load_config(config_file)

    def test_not_a_mapping(self, tmp_path):
        config_file = tmp_path / "analysis.yml"
        config_file.write_text("- a\n- b\n")

        with pytest.raises(ValueError, match="mapping"):
            config.load_config(config_file)

    @pytest.mark.parametrize("value", ["Activated", "A_vs_B_vs_C", ["A"], "A_vs_A"])
    def test_parse_comparison_invalid(self, value):
        with pytest.raises(ValueError):
            config.parse_comparison(value)

    def test_validate(self):
        with pytest.raises(ValueError, match="count_dir or samplesheet"):
            config.AnalysisConfig().validate()

        with pytest.raises(ValueError, match="padj_cutoff"):
            config.AnalysisConfig(count_dir=Path("."), padj_cutoff=2).validate()

    def test_override(self):
        base = config.AnalysisConfig(count_dir=Path("a"), padj_cutoff=0.01)
        updated = base.override(padj_cutoff=None, output_dir=Path("b"))

        assert updated.padj_cutoff == 0.01
        assert updated.output_dir == Path("b")
        assert base.output_dir != Path("b")


class TestPipeline:
    """Integration tests for the full analysis."""

    def test_resolve_comparisons_control_is_reference(self):
        cfg = config.AnalysisConfig(count_dir=Path("."))
        assert pipeline.resolve_comparisons(cfg, ['Activated', 'Control']) == [('Activated', 'Control')]

    def test_resolve_comparisons_all_pairs(self):
        cfg = config.AnalysisConfig(count_dir=Path("."))
        assert pipeline.resolve_comparisons(cfg, ['IFN', 'LPS', 'Poly']) == [
            ('LPS', 'IFN'), ('Poly', 'IFN'), ('Poly', 'LPS')
        ]

    def test_resolve_comparisons_reference_from_conditions(self):
        cfg = config.AnalysisConfig(count_dir=Path("."), conditions=['Control', 'Activated'])
        assert pipeline.resolve_comparisons(cfg, ['Activated', 'Control']) == [('Activated', 'Control')]

    def test_resolve_comparisons_unknown_label(self):
        cfg = config.AnalysisConfig(count_dir=Path("."), comparisons=['LPS_vs_Control'])
        with pytest.raises(samples.ConditionError, match="LPS"):
            pipeline.resolve_comparisons(cfg, ['Activated', 'Control'])

    def test_run_analysis(self, htseq_dir, tmp_path):
        cfg = config.AnalysisConfig(
            count_dir=htseq_dir,
            output_dir=tmp_path / "results",
            comparisons=[('Activated', 'Control')],
            padj_cutoff=0.01,
            heatmap_genes=20,
            pca_genes=100,
        )

        summary = pipeline.run_analysis(cfg)

        out = tmp_path / "results"
        all_genes = out / "results" / "Activated_vs_Control_allgenes.csv"
        filtered = out / "results" / "Activated_vs_Control_padj_cutoff.csv"
        assert all_genes.exists() and filtered.exists()
        assert (out / "counts" / "count_matrix.tsv").exists()
        assert (out / "counts" / "normalized_counts.tsv").exists()
        assert (out / "report.html").exists()
        assert "Activated vs Control" in (out / "report.html").read_text()

        full = pd.read_csv(all_genes)
        assert len(full) == summary['n_genes'] == 300
        assert list(full.columns[:3]) == ['Gene.name', 'log2FoldChange', 'padj']
        assert (pd.read_csv(filtered)['padj'] < 0.01).all()

        stats = summary['comparisons']['Activated_vs_Control']['stats']
        assert stats['n_significant'] > 0
        for plot_file in summary['comparisons']['Activated_vs_Control']['plots'].values():
            assert Path(plot_file).exists()

        assert sorted(p.name for p in (out / "plots").glob("*pca.png")) == ['pca.png']
        for plot_file in summary['sample_plots'].values():
            assert Path(plot_file).exists()

        saved = utils.load_metrics_json(out / "analysis_summary.json")
        assert saved['n_samples'] == 6
        assert saved['samples']['Control_rep1'] == 'Control'


class TestCLI:
    """Test command-line interface."""

    runner = CliRunner()

    def test_cli_help(self):
        result = self.runner.invoke(cli.app, ["--help"])

        assert result.exit_code == 0
        assert "dc_rnaseq" in result.output

    def test_version(self):
        result = self.runner.invoke(cli.app, ["--version"])

        assert result.exit_code == 0
        assert "dc_rnaseq v" in result.output

    def test_samples_command(self, htseq_dir):
        result = self.runner.invoke(cli.app, ["samples", str(htseq_dir)])

        assert result.exit_code == 0
        assert "Activated_rep1" in result.output
        assert "Control" in result.output

    def test_count_matrix_command(self, htseq_dir, tmp_path):
        result = self.runner.invoke(cli.app, [
            "count-matrix", str(htseq_dir), "--output-dir", str(tmp_path / "counts")
        ])

        assert result.exit_code == 0
        assert (tmp_path / "counts" / "count_matrix.tsv").exists()

    def test_analyze_command(self, htseq_dir, tmp_path):
        with patch('dc_rnaseq.cli.run_analysis', return_value={'comparisons': {}}) as mock_run:
            result = self.runner.invoke(cli.app, [
                "analyze",
                "--count-dir", str(htseq_dir),
                "--output-dir", str(tmp_path / "out"),
                "--comparison", "Activated_vs_Control",
                "--padj-cutoff", "0.05",
                "--no-plots",
            ])

        assert result.exit_code == 0
        cfg = mock_run.call_args[0][0]
        assert cfg.count_dir == htseq_dir
        assert cfg.comparisons == [('Activated', 'Control')]
        assert cfg.padj_cutoff == 0.05
        assert cfg.make_plots is False
        assert cfg.make_report is True

    def test_analyze_command_fails_on_missing_input(self, tmp_path):
        result = self.runner.invoke(cli.app, [
            "analyze", "--count-dir", str(tmp_path / "missing"), "--output-dir", str(tmp_path / "out")
        ])

        assert result.exit_code == 1
        assert "Error in analysis" in result.output

    def test_plot_command(self, tmp_path):
        result_tables = _random_table()
        results.write_result_tables(result_tables, tmp_path)

        result = self.runner.invoke(cli.app, [
            "plot", str(result_tables.all_genes_path), "--output-dir", str(tmp_path / "plots"),
            "--heatmap-genes", "10", "--pca-genes", "50",
        ])

        assert result.exit_code == 0
        assert (tmp_path / "plots" / "Activated_vs_Control_volcano.png").exists()
        assert (tmp_path / "plots" / "Activated_vs_Control_heatmap.png").exists()

    def test_validate_samplesheet_command(self, tmp_path):
        sample_map = create_sample_data(tmp_path, n_replicates=1, n_genes=10, n_de_genes=2)
        samplesheet = create_samplesheet(tmp_path, sample_map)

        result = self.runner.invoke(cli.app, ["validate-samplesheet", str(samplesheet)])

        assert result.exit_code == 0
        assert "Found 2 valid samples" in result.output