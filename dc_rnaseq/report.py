"""
Reporting module.

Renders the consolidated HTML report with Jinja2.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Optional, Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from . import __version__
from .counts import CountData
from .results import ComparisonResult, GENE_COLUMN, FC_COLUMN, PADJ_COLUMN
from .utils import format_number

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / 'templates'
REPORT_TEMPLATE = 'report.html'
TOP_GENES = 10


def _round_filter(value: Any, digits: int = 2) -> Any:
    """Round numbers, pass anything else through."""
    try:
        return round(float(value), digits)
    except (ValueError, TypeError):
        return value


def _sci_filter(value: Any) -> str:
    try:
        value = float(value)
    except (ValueError, TypeError):
        return str(value)
    if value != value:
        return 'NA'
    return f"{value:.2e}"


def _make_environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(['html', 'xml'])
    )
    env.filters['round'] = _round_filter
    env.filters['sci'] = _sci_filter
    env.filters['human'] = format_number
    return env


def _comparison_context(result: ComparisonResult, plots: Dict[str, str], report_dir: Path) -> Dict[str, Any]:
    top = result.filtered.sort_values(PADJ_COLUMN, kind='mergesort').head(TOP_GENES)
    return {
        'name': result.name,
        'treatment': result.treatment,
        'reference': result.reference,
        'summary': result.summary,
        'stats': result.stats,
        'top_genes': [
            {'gene': row[GENE_COLUMN], 'log2fc': row[FC_COLUMN], 'padj': row[PADJ_COLUMN]}
            for _, row in top.iterrows()
        ],
        'tables': {
            kind: os.path.relpath(path, report_dir)
            for kind, path in (('all_genes', result.all_genes_path), ('filtered', result.filtered_path))
            if path is not None
        },
        'plots': {kind: os.path.relpath(path, report_dir) for kind, path in plots.items()},
    }


def generate_final_report(
    results: List[ComparisonResult],
    count_data: CountData,
    output_file: Path,
    title: str = "Dendritic Cell Differential Expression",
    plots: Optional[Dict[str, Dict[str, str]]] = None,
    sample_plots: Optional[Dict[str, str]] = None,
) -> Path:
    """
    Generate final HTML report.

    Args:
        results: Extracted comparisons
        count_data: Assembled counts, for the sample and library tables
        output_file: Output HTML file
        title: Report title
        plots: Plot files per comparison name
        sample_plots: PCA and sample correlation plot files

    Returns:
        Path of the written report
    """
    logger.info("Generating final report")

    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    report_dir = output_file.parent
    plots = plots or {}
    sample_plots = sample_plots or {}

    samples = []
    for sample_id, row in count_data.metadata.iterrows():
        library = count_data.counting_summary.loc[sample_id]
        samples.append({
            'sample_id': sample_id,
            'condition': row['condition'],
            'assigned': int(library['assigned']),
            'assigned_percent': float(library['assigned_percent']),
        })

    template = _make_environment().get_template(REPORT_TEMPLATE)
    html_content = template.render(
        title=title,
        version=__version__,
        generated=datetime.now().strftime('%Y-%m-%d %H:%M'),
        n_genes=count_data.n_genes,
        n_samples=count_data.n_samples,
        samples=samples,
        sample_plots={kind: os.path.relpath(path, report_dir) for kind, path in sample_plots.items()},
        comparisons=[_comparison_context(r, plots.get(r.name, {}), report_dir) for r in results],
    )

    with open(output_file, 'w', encoding='utf-8') as f:
        f.write(html_content)

    logger.info(f"Report saved to: {output_file}")
    return output_file
