"""
Visualization module for dc_rnaseq.

Heatmap, PCA, volcano and sample correlation plots drawn from the result
tables. Each plot function returns the matplotlib Figure and, when an
output file is given, saves and closes it.
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple, Union

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy.stats import zscore
from sklearn.decomposition import PCA

from .results import ComparisonResult, GENE_COLUMN, FC_COLUMN, PADJ_COLUMN
from .utils import validate_directory_exists

logger = logging.getLogger(__name__)

DEFAULT_HEATMAP_GENES = 50
DEFAULT_PCA_GENES = 500
DEFAULT_VOLCANO_LABELS = 20

CONDITION_PALETTE = 'Set1'


def _finish(fig: plt.Figure, output_file: Optional[Union[str, Path]]) -> plt.Figure:
    fig.tight_layout()
    if output_file is not None:
        fig.savefig(output_file, dpi=300, bbox_inches='tight')
        plt.close(fig)
        logger.debug(f"Saved plot to {output_file}")
    return fig


def sample_columns(table: pd.DataFrame) -> List[str]:
    """Normalized-count columns of a result table."""
    return [c for c in table.columns if c not in (GENE_COLUMN, FC_COLUMN, PADJ_COLUMN)]


def counts_from_table(table: pd.DataFrame) -> pd.DataFrame:
    """Genes x samples normalized counts held in a result table."""
    return table.set_index(GENE_COLUMN)[sample_columns(table)]


def top_genes(table: pd.DataFrame, n_genes: int, rank_by: str = 'padj') -> pd.DataFrame:
    """
    Select the top genes of a result table.

    Args:
        table: Result table
        n_genes: Number of genes to keep
        rank_by: 'padj' (smallest first) or 'log2FoldChange' (largest
            absolute change first)

    Returns:
        Subset of the table, ranked
    """
    if n_genes < 1:
        raise ValueError(f"n_genes must be positive, got {n_genes}")

    if rank_by == PADJ_COLUMN:
        ranked = table[table[PADJ_COLUMN].notna()].sort_values(PADJ_COLUMN, kind='mergesort')
    elif rank_by == FC_COLUMN:
        tested = table[table[FC_COLUMN].notna()]
        order = tested[FC_COLUMN].abs().sort_values(ascending=False, kind='mergesort').index
        ranked = tested.loc[order]
    else:
        raise ValueError(f"rank_by must be '{PADJ_COLUMN}' or '{FC_COLUMN}', got '{rank_by}'")

    return ranked.head(n_genes)


def plot_heatmap(
    table: pd.DataFrame,
    n_genes: int = DEFAULT_HEATMAP_GENES,
    rank_by: str = 'padj',
    metadata: Optional[pd.DataFrame] = None,
    title: Optional[str] = None,
    output_file: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Heatmap of row z-scored log2 normalized counts for the top genes.

    Args:
        table: Result table (Gene.name, log2FoldChange, padj, samples...)
        n_genes: Number of genes to show
        rank_by: Ranking used to pick genes, see top_genes
        metadata: Optional sample metadata; columns are grouped by condition
        title: Plot title
        output_file: Save location

    Returns:
        The Figure
    """
    selected = top_genes(table, n_genes, rank_by)
    if selected.empty:
        raise ValueError("No tested genes available for the heatmap")

    samples = sample_columns(table)
    if metadata is not None:
        samples = sorted(samples, key=lambda s: (str(metadata.loc[s, 'condition']), samples.index(s)))

    values = np.log2(selected[samples].astype(float) + 1)
    scaled = np.nan_to_num(zscore(values.to_numpy(), axis=1))
    matrix = pd.DataFrame(scaled, index=selected[GENE_COLUMN], columns=samples)

    height = max(4, 0.25 * len(matrix) + 2)
    fig, ax = plt.subplots(figsize=(max(6, 0.6 * len(samples) + 3), height))
    sns.heatmap(matrix, cmap='RdBu_r', center=0, ax=ax,
                yticklabels=len(matrix) <= 100,
                cbar_kws={'label': 'Row z-score (log2 normalized counts)'})
    ax.set_xlabel('Sample')
    ax.set_ylabel('Gene')
    ax.set_title(title or f'Top {len(matrix)} genes by {rank_by}')
    plt.setp(ax.get_xticklabels(), rotation=45, ha='right')

    return _finish(fig, output_file)


def compute_pca(
    counts: pd.DataFrame,
    metadata: Optional[pd.DataFrame] = None,
    n_genes: int = DEFAULT_PCA_GENES,
) -> Tuple[pd.DataFrame, np.ndarray]:
    """
    PCA of samples on the most variable genes.

    Args:
        counts: Normalized counts, genes x samples
        metadata: Optional sample metadata with a 'condition' column
        n_genes: Number of most variable genes (log2 scale) to use

    Returns:
        Tuple of (coordinates with PC1/PC2[/condition], explained variance ratio)
    """
    if n_genes < 2:
        raise ValueError(f"n_genes must be at least 2, got {n_genes}")
    if counts.shape[1] < 2:
        raise ValueError("PCA needs at least 2 samples")

    log_counts = np.log2(counts.astype(float) + 1)
    variances = log_counts.var(axis=1)
    variable = variances[variances > 0].sort_values(ascending=False, kind='mergesort').index[:n_genes]
    if len(variable) < 2:
        raise ValueError("PCA needs at least 2 genes with non-zero variance")

    data = log_counts.loc[variable].T.to_numpy()
    pca = PCA(n_components=2)
    coords = pca.fit_transform(data)

    frame = pd.DataFrame(coords, index=counts.columns, columns=['PC1', 'PC2'])
    frame.index.name = 'sample_id'
    if metadata is not None:
        frame['condition'] = metadata.loc[counts.columns, 'condition'].astype(str).values

    return frame, pca.explained_variance_ratio_


def plot_pca(
    counts: pd.DataFrame,
    metadata: Optional[pd.DataFrame] = None,
    n_genes: int = DEFAULT_PCA_GENES,
    title: str = 'PCA of samples',
    output_file: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """Scatter of the first two principal components, coloured by condition."""
    coords, variance = compute_pca(counts, metadata, n_genes)

    fig, ax = plt.subplots(figsize=(8, 6))
    hue = 'condition' if 'condition' in coords.columns else None
    sns.scatterplot(data=coords, x='PC1', y='PC2', hue=hue, palette=CONDITION_PALETTE if hue else None,
                    s=100, ax=ax)
    for sample_id, row in coords.iterrows():
        ax.annotate(sample_id, (row['PC1'], row['PC2']), fontsize=8,
                    xytext=(4, 4), textcoords='offset points')

    ax.set_xlabel(f'PC1 ({variance[0] * 100:.1f}% variance)')
    ax.set_ylabel(f'PC2 ({variance[1] * 100:.1f}% variance)')
    ax.set_title(title)
    ax.grid(True, alpha=0.3)

    return _finish(fig, output_file)


def plot_volcano(
    table: pd.DataFrame,
    padj_cutoff: float = 0.001,
    n_labels: int = DEFAULT_VOLCANO_LABELS,
    title: Optional[str] = None,
    output_file: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Volcano plot of -log10 adjusted p-value against log2 fold change.

    Genes without padj are not drawn. Genes below the cutoff are coloured
    by direction and the ``n_labels`` most significant are labelled.
    """
    data = table[table[PADJ_COLUMN].notna() & table[FC_COLUMN].notna()].copy()
    data['neg_log10_padj'] = -np.log10(data[PADJ_COLUMN].clip(lower=1e-300))

    significant = data[PADJ_COLUMN] < padj_cutoff
    data['status'] = 'Not significant'
    data.loc[significant & (data[FC_COLUMN] > 0), 'status'] = 'Up'
    data.loc[significant & (data[FC_COLUMN] < 0), 'status'] = 'Down'

    colors = {'Not significant': '#B4B4B4', 'Up': '#E74C3C', 'Down': '#3498DB'}

    fig, ax = plt.subplots(figsize=(10, 8))
    for status, color in colors.items():
        subset = data[data['status'] == status]
        ax.scatter(subset[FC_COLUMN], subset['neg_log10_padj'], c=color, s=12,
                   alpha=0.7, label=f'{status} ({len(subset)})', edgecolors='none')

    ax.axhline(-np.log10(padj_cutoff), color='black', linestyle='--', linewidth=0.8)
    ax.axvline(0, color='grey', linewidth=0.5)

    if n_labels > 0:
        to_label = data[significant].sort_values(PADJ_COLUMN, kind='mergesort').head(n_labels)
        for _, row in to_label.iterrows():
            ax.annotate(row[GENE_COLUMN], (row[FC_COLUMN], row['neg_log10_padj']),
                        fontsize=7, xytext=(3, 3), textcoords='offset points')

    ax.set_xlabel('log2 fold change')
    ax.set_ylabel('-log10 adjusted p-value')
    ax.set_title(title or 'Volcano plot')
    ax.legend(loc='upper left', frameon=True)
    ax.grid(True, alpha=0.3)

    return _finish(fig, output_file)


def plot_sample_correlation(
    counts: pd.DataFrame,
    metadata: Optional[pd.DataFrame] = None,
    title: str = 'Sample correlation',
    output_file: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """Pearson correlation heatmap of log2 normalized counts."""
    corr = np.log2(counts.astype(float) + 1).corr(method='pearson')
    if metadata is not None:
        labels = [f"{s} ({metadata.loc[s, 'condition']})" for s in corr.index]
        corr.index = labels
        corr.columns = labels

    fig, ax = plt.subplots(figsize=(max(6, 0.7 * len(corr) + 3), max(5, 0.7 * len(corr) + 2)))
    sns.heatmap(corr, annot=len(corr) <= 12, fmt='.2f', cmap='viridis', square=True, ax=ax,
                cbar_kws={'label': 'Pearson r'})
    ax.set_title(title)

    return _finish(fig, output_file)


def create_visualizations(
    result: ComparisonResult,
    output_dir: Union[str, Path],
    metadata: Optional[pd.DataFrame] = None,
    heatmap_genes: int = DEFAULT_HEATMAP_GENES,
    volcano_labels: int = DEFAULT_VOLCANO_LABELS,
) -> Dict[str, Any]:
    """
    Render the volcano plot and heatmap for one comparison.

    The heatmap is skipped with a warning when the comparison has no
    tested genes.

    Args:
        result: Extracted comparison
        output_dir: Directory for the PNG files
        metadata: Optional sample metadata
        heatmap_genes: Genes in the heatmap
        volcano_labels: Genes labelled on the volcano plot

    Returns:
        Dictionary mapping plot kind to file path
    """
    output_dir = validate_directory_exists(output_dir, create=True)
    logger.info(f"Creating visualizations for {result.name}")

    table = result.all_genes
    plots = {}

    plots['volcano'] = output_dir / f"{result.name}_volcano.png"
    plot_volcano(table, padj_cutoff=result.padj_cutoff, n_labels=volcano_labels,
                 title=f'{result.treatment} vs {result.reference}',
                 output_file=plots['volcano'])

    if table[PADJ_COLUMN].notna().any():
        plots['heatmap'] = output_dir / f"{result.name}_heatmap.png"
        plot_heatmap(table, n_genes=heatmap_genes, metadata=metadata,
                     title=f'{result.treatment} vs {result.reference}: top {heatmap_genes} genes',
                     output_file=plots['heatmap'])
    else:
        logger.warning(f"No tested genes in {result.name}, skipping heatmap")

    return {k: str(v) for k, v in plots.items()}


def create_sample_plots(
    counts: pd.DataFrame,
    output_dir: Union[str, Path],
    metadata: Optional[pd.DataFrame] = None,
    pca_genes: int = DEFAULT_PCA_GENES,
) -> Dict[str, Any]:
    """
    Render the PCA and sample correlation plots, once per run.

    Args:
        counts: Normalized counts, genes x samples
        output_dir: Directory for the PNG files
        metadata: Optional sample metadata
        pca_genes: Most variable genes used for PCA

    Returns:
        Dictionary mapping plot kind to file path
    """
    output_dir = validate_directory_exists(output_dir, create=True)
    logger.info("Creating sample-level visualizations")

    plots = {
        'pca': output_dir / "pca.png",
        'correlation': output_dir / "sample_correlation.png",
    }
    plot_pca(counts, metadata, n_genes=pca_genes, output_file=plots['pca'])
    plot_sample_correlation(counts, metadata, output_file=plots['correlation'])

    return {k: str(v) for k, v in plots.items()}
