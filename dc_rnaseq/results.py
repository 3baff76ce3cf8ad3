"""
Result extraction and annotation module for dc_rnaseq.

This module joins DESeq2 statistics with normalized counts for one
treatment/reference comparison, orders genes by fold change, applies the
adjusted p-value cutoff and writes the two result tables.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, Union

import pandas as pd

from .utils import validate_directory_exists

logger = logging.getLogger(__name__)

DEFAULT_PADJ_CUTOFF = 0.001

GENE_COLUMN = 'Gene.name'
FC_COLUMN = 'log2FoldChange'
PADJ_COLUMN = 'padj'


@dataclass
class ComparisonResult:
    """Annotated result tables for one treatment vs reference comparison."""

    treatment: str
    reference: str
    padj_cutoff: float
    all_genes: pd.DataFrame
    filtered: pd.DataFrame
    summary: str
    all_genes_path: Optional[Path] = None
    filtered_path: Optional[Path] = None
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return comparison_name(self.treatment, self.reference)

    @property
    def sample_columns(self):
        return [c for c in self.all_genes.columns if c not in (GENE_COLUMN, FC_COLUMN, PADJ_COLUMN)]


def comparison_name(treatment: str, reference: str) -> str:
    return f"{treatment}_vs_{reference}"


def result_paths(output_dir: Union[str, Path], treatment: str, reference: str) -> Dict[str, Path]:
    """File paths of the two result tables for a comparison."""
    name = comparison_name(treatment, reference)
    output_dir = Path(output_dir)
    return {
        'filtered': output_dir / f"{name}_padj_cutoff.csv",
        'all_genes': output_dir / f"{name}_allgenes.csv",
    }


def _validate_cutoff(padj_cutoff: float) -> float:
    padj_cutoff = float(padj_cutoff)
    if not 0 < padj_cutoff <= 1:
        raise ValueError(f"padj cutoff must be in (0, 1], got {padj_cutoff}")
    return padj_cutoff


def sort_by_fold_change(table: pd.DataFrame) -> pd.DataFrame:
    """
    Order rows by log2 fold change, largest first.

    The sort is stable: equal fold changes keep their input order and
    genes without a fold change go last.
    """
    return table.sort_values(
        FC_COLUMN, ascending=False, kind='mergesort', na_position='last'
    ).reset_index(drop=True)


def filter_by_padj(table: pd.DataFrame, padj_cutoff: float) -> pd.DataFrame:
    """Rows with padj strictly below the cutoff; NaN padj never passes."""
    mask = table[PADJ_COLUMN].notna() & (table[PADJ_COLUMN] < padj_cutoff)
    return table[mask].reset_index(drop=True)


def summarize(
    treatment: str,
    reference: str,
    all_genes: pd.DataFrame,
    filtered: pd.DataFrame,
    padj_cutoff: float,
) -> str:
    """Human-readable summary of a comparison."""
    n_up = int((filtered[FC_COLUMN] > 0).sum())
    n_down = int((filtered[FC_COLUMN] < 0).sum())
    return (
        f"{comparison_name(treatment, reference)}: {len(all_genes)} genes total, "
        f"{len(filtered)} with padj < {padj_cutoff:g} "
        f"({n_up} up, {n_down} down)"
    )


def build_result_table(model_results: pd.DataFrame, normalized_counts: pd.DataFrame) -> pd.DataFrame:
    """
    Join model statistics with normalized counts by gene id.

    Args:
        model_results: DESeq2 results indexed by gene id
        normalized_counts: Normalized counts, genes x samples

    Returns:
        Unsorted table with Gene.name, log2FoldChange, padj and one column
        per sample, in normalized-count gene order

    Raises:
        ValueError: On missing columns or genes absent from the count matrix
    """
    missing = [col for col in (FC_COLUMN, PADJ_COLUMN) if col not in model_results.columns]
    if missing:
        raise ValueError(f"Model results are missing columns: {missing}")

    if model_results.index.has_duplicates:
        raise ValueError("Model results contain duplicate gene ids")

    unknown = model_results.index.difference(normalized_counts.index)
    if len(unknown) > 0:
        raise ValueError(
            f"{len(unknown)} genes in model results are not in the count matrix "
            f"(e.g. {list(unknown[:5])})"
        )

    stats = model_results[[FC_COLUMN, PADJ_COLUMN]].reindex(normalized_counts.index)
    table = pd.concat([stats, normalized_counts], axis=1)
    table.index.name = GENE_COLUMN
    table = table.reset_index()
    table[FC_COLUMN] = table[FC_COLUMN].astype(float)
    table[PADJ_COLUMN] = table[PADJ_COLUMN].astype(float)
    return table


def write_result_tables(result: ComparisonResult, output_dir: Union[str, Path]) -> Dict[str, Path]:
    """
    Write the full and filtered tables of a comparison as CSV.

    Args:
        result: Comparison to persist
        output_dir: Output directory (created if missing)

    Returns:
        Dictionary with 'all_genes' and 'filtered' paths
    """
    output_dir = validate_directory_exists(output_dir, create=True)
    paths = result_paths(output_dir, result.treatment, result.reference)

    result.all_genes.to_csv(paths['all_genes'], index=False)
    result.filtered.to_csv(paths['filtered'], index=False)

    result.all_genes_path = paths['all_genes']
    result.filtered_path = paths['filtered']
    logger.info(f"Results saved to: {paths['all_genes']}, {paths['filtered']}")
    return paths


def extract_results(
    model_results: pd.DataFrame,
    normalized_counts: pd.DataFrame,
    treatment: str,
    reference: str,
    padj_cutoff: float = DEFAULT_PADJ_CUTOFF,
    output_dir: Optional[Union[str, Path]] = None,
) -> ComparisonResult:
    """
    Build, sort, filter and optionally persist the tables for a comparison.

    Args:
        model_results: DESeq2 results for treatment vs reference, by gene
        normalized_counts: Normalized counts, genes x samples
        treatment: Treatment condition label
        reference: Reference condition label
        padj_cutoff: Adjusted p-value threshold (strict)
        output_dir: Where to write the CSV tables; nothing is written if None

    Returns:
        ComparisonResult with both tables and a summary
    """
    padj_cutoff = _validate_cutoff(padj_cutoff)

    table = build_result_table(model_results, normalized_counts)
    all_genes = sort_by_fold_change(table)
    filtered = filter_by_padj(all_genes, padj_cutoff)

    summary = summarize(treatment, reference, all_genes, filtered, padj_cutoff)
    logger.info(summary)

    result = ComparisonResult(
        treatment=treatment,
        reference=reference,
        padj_cutoff=padj_cutoff,
        all_genes=all_genes,
        filtered=filtered,
        summary=summary,
        stats={
            'n_genes': len(all_genes),
            'n_significant': len(filtered),
            'n_up': int((filtered[FC_COLUMN] > 0).sum()),
            'n_down': int((filtered[FC_COLUMN] < 0).sum()),
            'n_untested': int(all_genes[PADJ_COLUMN].isna().sum()),
            'padj_cutoff': padj_cutoff,
        },
    )

    if output_dir is not None:
        write_result_tables(result, output_dir)

    return result


def load_result_table(table_file: Union[str, Path]) -> pd.DataFrame:
    """Read a persisted result table back, checking its leading columns."""
    table = pd.read_csv(table_file, dtype={GENE_COLUMN: str})
    expected = [GENE_COLUMN, FC_COLUMN, PADJ_COLUMN]
    if list(table.columns[:3]) != expected:
        raise ValueError(
            f"{table_file} does not look like a result table; "
            f"expected leading columns {expected}, got {list(table.columns[:3])}"
        )
    return table
