"""
End-to-end differential expression analysis.

Runs sample discovery, count matrix assembly, DESeq2 fitting, result
extraction, plotting and reporting in sequence.
"""

import logging
from itertools import combinations
from typing import Dict, Any, List, Tuple

from .config import AnalysisConfig
from .counts import build_count_matrix, write_count_matrix
from .deseq import fit_model
from .report import generate_final_report
from .results import extract_results
from .samples import discover_samples, load_samplesheet, Sample, ConditionError
from .utils import validate_directory_exists, create_output_dirs, save_metrics_json
from .viz import create_visualizations, create_sample_plots

logger = logging.getLogger(__name__)

CONTROL_NAMES = {
    'control', 'ctrl', 'ctl', 'con', 'unactivated', 'unact', 'unstimulated',
    'untreated', 'naive', 'resting', 'vehicle', 'wt',
}


def collect_samples(config: AnalysisConfig) -> List[Sample]:
    """Samples from the samplesheet if one is configured, else from count_dir."""
    if config.samplesheet is not None:
        return load_samplesheet(config.samplesheet, conditions=config.conditions)
    return discover_samples(
        config.count_dir,
        suffix=config.file_suffix,
        pattern=config.sample_pattern,
        condition_map=config.condition_map,
        conditions=config.conditions,
    )


def resolve_comparisons(config: AnalysisConfig, conditions: List[str]) -> List[Tuple[str, str]]:
    """
    Comparisons to run.

    Configured pairs are checked against the observed conditions. Without
    any, the first entry of ``conditions`` is the reference; failing that a
    single control-like condition (control, unactivated, ...) is; otherwise
    every pair is compared, alphabetically later condition as treatment.
    """
    if config.comparisons:
        for treatment, reference in config.comparisons:
            for label in (treatment, reference):
                if label not in conditions:
                    raise ConditionError(
                        f"Comparison {treatment}_vs_{reference} uses unknown condition "
                        f"'{label}'; samples have {conditions}"
                    )
        return list(config.comparisons)

    if config.conditions:
        reference = config.conditions[0]
        if reference not in conditions:
            raise ConditionError(f"Reference condition '{reference}' has no samples")
        return [(c, reference) for c in conditions if c != reference]

    controls = [c for c in conditions if c.lower() in CONTROL_NAMES]
    if len(controls) == 1:
        return [(c, controls[0]) for c in conditions if c != controls[0]]

    return [(b, a) for a, b in combinations(sorted(conditions), 2)]


def run_analysis(config: AnalysisConfig) -> Dict[str, Any]:
    """
    Run the whole analysis described by ``config``.

    Args:
        config: Analysis settings

    Returns:
        Dictionary summarising samples, comparisons and output files
    """
    config.validate()
    logger.info("Starting differential expression analysis")

    output_dir = validate_directory_exists(config.output_dir, create=True)
    dirs = create_output_dirs(output_dir, ['counts', 'results'])

    samples = collect_samples(config)
    count_data = build_count_matrix(samples)
    count_files = write_count_matrix(count_data, dirs['counts'])

    model = fit_model(count_data.counts, count_data.metadata, design_factor=config.design_factor)
    normalized = model.normalized_counts()
    normalized_file = dirs['counts'] / 'normalized_counts.tsv'
    normalized.to_csv(normalized_file, sep='\t')

    comparisons = resolve_comparisons(config, model.conditions)
    logger.info(f"Running {len(comparisons)} comparison(s)")

    plots_dir = output_dir / 'plots'
    comparison_results = {}
    extracted = []
    for treatment, reference in comparisons:
        model_results = model.results(treatment, reference, alpha=config.alpha)
        result = extract_results(
            model_results,
            normalized,
            treatment,
            reference,
            padj_cutoff=config.padj_cutoff,
            output_dir=dirs['results'],
        )
        extracted.append(result)

        entry = {
            'summary': result.summary,
            'stats': result.stats,
            'all_genes': str(result.all_genes_path),
            'filtered': str(result.filtered_path),
        }
        if config.make_plots:
            entry['plots'] = create_visualizations(
                result,
                plots_dir,
                metadata=count_data.metadata,
                heatmap_genes=config.heatmap_genes,
                volcano_labels=config.volcano_labels,
            )
        comparison_results[result.name] = entry

    sample_plots = {}
    if config.make_plots:
        sample_plots = create_sample_plots(
            normalized, plots_dir, metadata=count_data.metadata, pca_genes=config.pca_genes
        )

    summary = {
        'n_samples': count_data.n_samples,
        'n_genes': count_data.n_genes,
        'conditions': model.conditions,
        'samples': {
            sample_id: row['condition']
            for sample_id, row in count_data.metadata.iterrows()
        },
        'size_factors': model.size_factors().round(4).to_dict(),
        'padj_cutoff': config.padj_cutoff,
        'comparisons': comparison_results,
        'sample_plots': sample_plots,
        'output_files': {
            **{k: str(v) for k, v in count_files.items()},
            'normalized_counts': str(normalized_file),
        },
    }

    if config.make_report:
        report_file = generate_final_report(
            results=extracted,
            count_data=count_data,
            output_file=output_dir / 'report.html',
            title=config.title,
            plots={name: entry.get('plots', {}) for name, entry in comparison_results.items()},
            sample_plots=sample_plots,
        )
        summary['output_files']['report'] = str(report_file)

    save_metrics_json(summary, output_dir / 'analysis_summary.json')
    logger.info("Analysis completed successfully")
    return summary
