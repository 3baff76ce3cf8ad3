"""
Count matrix assembly module for dc_rnaseq.

This module parses per-sample HTSeq-count output files and joins them into
a single gene x sample matrix with matching sample metadata.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Union

import numpy as np
import pandas as pd

from .samples import Sample, samples_to_frame
from .utils import validate_file_exists, validate_directory_exists, format_number

logger = logging.getLogger(__name__)

# htseq-count appends these summary rows after the gene counts
HTSEQ_COUNTERS = [
    '__no_feature',
    '__ambiguous',
    '__too_low_aQual',
    '__not_aligned',
    '__alignment_not_unique',
]


class CountFileError(ValueError):
    """Raised when a count file is missing data or malformed."""


class GeneSetMismatchError(ValueError):
    """Raised when samples do not report the same set of genes."""


@dataclass
class CountData:
    """Raw counts (genes x samples), sample metadata and HTSeq counters."""

    counts: pd.DataFrame
    metadata: pd.DataFrame
    counting_summary: pd.DataFrame

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]


def read_htseq_counts(count_file: Union[str, Path]) -> pd.Series:
    """
    Read a two-column HTSeq-count file.

    Args:
        count_file: Path to the tab-separated gene id / count file

    Returns:
        Integer Series indexed by gene id, including the ``__`` counter rows

    Raises:
        FileNotFoundError: If the file doesn't exist
        CountFileError: If the file is empty or a row is malformed
    """
    count_file = validate_file_exists(count_file)

    try:
        table = pd.read_csv(
            count_file,
            sep='\t',
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=False,
        )
    except pd.errors.EmptyDataError:
        raise CountFileError(f"Count file is empty: {count_file}")
    except pd.errors.ParserError as e:
        raise CountFileError(f"{count_file}: expected 2 tab-separated fields ({e})")

    # Blank lines are kept as rows so index + 1 is the file line
    blank = table.fillna('').apply(lambda col: col.str.strip() == '').all(axis=1)
    table = table[~blank].copy()
    if table.empty:
        raise CountFileError(f"Count file is empty: {count_file}")

    n_fields = table.notna().sum(axis=1)
    if (n_fields != 2).any():
        row = (n_fields != 2).idxmax()
        raise CountFileError(
            f"{count_file}:{row + 1}: expected 2 tab-separated fields, got {n_fields[row]}"
        )

    table.columns = ['gene_id', 'count']
    table['gene_id'] = table['gene_id'].str.strip()
    table['count'] = table['count'].str.strip()

    empty_ids = table['gene_id'] == ''
    if empty_ids.any():
        raise CountFileError(f"{count_file}:{empty_ids.idxmax() + 1}: empty gene id")

    values = pd.to_numeric(table['count'], errors='coerce')
    not_integer = ~np.isfinite(values) | (values != values.round())
    if not_integer.any():
        row = not_integer.idxmax()
        raise CountFileError(
            f"{count_file}:{row + 1}: count '{table.at[row, 'count']}' for "
            f"{table.at[row, 'gene_id']} is not an integer"
        )

    negative = values < 0
    if negative.any():
        row = negative.idxmax()
        raise CountFileError(
            f"{count_file}:{row + 1}: negative count {int(values[row])} for "
            f"{table.at[row, 'gene_id']}"
        )

    series = pd.Series(
        values.astype(np.int64).values,
        index=pd.Index(table['gene_id'].values, name='gene_id'),
        dtype=np.int64,
    )

    duplicated = series.index[series.index.duplicated()].unique()
    if len(duplicated) > 0:
        raise CountFileError(
            f"Duplicate gene ids in {count_file}: {list(duplicated[:5])}"
        )

    return series


def split_htseq_counters(series: pd.Series) -> Dict[str, pd.Series]:
    """Separate gene rows from the ``__``-prefixed HTSeq summary counters."""
    is_counter = series.index.str.startswith('__')
    return {
        'genes': series[~is_counter],
        'counters': series[is_counter],
    }


def _check_gene_sets(reference: Sample, reference_genes: pd.Index,
                     sample: Sample, genes: pd.Index) -> None:
    if len(genes) == len(reference_genes) and genes.isin(reference_genes).all():
        return

    missing = reference_genes.difference(genes, sort=False)
    extra = genes.difference(reference_genes, sort=False)
    raise GeneSetMismatchError(
        f"Sample '{sample.sample_id}' ({sample.count_file}) does not report the same genes "
        f"as '{reference.sample_id}': {len(missing)} missing (e.g. {list(missing[:5])}), "
        f"{len(extra)} extra (e.g. {list(extra[:5])})"
    )


def build_count_matrix(samples: List[Sample]) -> CountData:
    """
    Load every sample's counts into one gene x sample matrix.

    Gene order follows the first sample; the other samples are aligned to it.

    Args:
        samples: Samples to load, in the column order of the result

    Returns:
        CountData with counts, metadata and counting summary

    Raises:
        ValueError: If no samples are given or sample ids repeat
        GeneSetMismatchError: If samples report different gene sets
    """
    if not samples:
        raise ValueError("No samples to build a count matrix from")

    sample_ids = [s.sample_id for s in samples]
    if len(set(sample_ids)) != len(sample_ids):
        raise ValueError(f"Duplicate sample ids: {sorted({i for i in sample_ids if sample_ids.count(i) > 1})}")

    logger.info(f"Building count matrix from {len(samples)} samples")

    columns = {}
    counters = {}
    reference_genes = None
    for sample in samples:
        parts = split_htseq_counters(read_htseq_counts(sample.count_file))
        genes = parts['genes']
        if genes.empty:
            raise CountFileError(f"No gene rows in {sample.count_file}")

        if reference_genes is None:
            reference_genes = genes.index
        else:
            _check_gene_sets(samples[0], reference_genes, sample, genes.index)

        columns[sample.sample_id] = genes.reindex(reference_genes)
        counters[sample.sample_id] = parts['counters']
        logger.debug(f"Loaded {len(genes)} genes for {sample.sample_id}")

    counts = pd.DataFrame(columns, index=reference_genes).astype(np.int64)
    counts.index.name = 'gene_id'
    counts.columns.name = None

    summary = build_counting_summary(counts, counters)

    logger.info(f"Count matrix: {counts.shape[0]} genes x {counts.shape[1]} samples")
    return CountData(
        counts=counts,
        metadata=samples_to_frame(samples),
        counting_summary=summary,
    )


def build_counting_summary(counts: pd.DataFrame, counters: Dict[str, pd.Series]) -> pd.DataFrame:
    """
    Tabulate assigned reads and HTSeq counters per sample.

    Args:
        counts: Gene x sample count matrix
        counters: Per-sample Series of ``__`` counter rows

    Returns:
        DataFrame indexed by sample with one column per counter
    """
    rows = []
    for sample_id in counts.columns:
        row = {'sample_id': sample_id, 'assigned': int(counts[sample_id].sum())}
        sample_counters = counters.get(sample_id, pd.Series(dtype=np.int64))
        for counter in HTSEQ_COUNTERS:
            row[counter.lstrip('_')] = int(sample_counters.get(counter, 0))
        total = row['assigned'] + sum(row[c.lstrip('_')] for c in HTSEQ_COUNTERS)
        row['total'] = total
        row['assigned_percent'] = round(row['assigned'] / total * 100, 2) if total else 0.0
        rows.append(row)

    summary = pd.DataFrame(rows).set_index('sample_id')
    for sample_id, row in summary.iterrows():
        logger.debug(
            f"{sample_id}: {format_number(row['assigned'])} assigned reads "
            f"({row['assigned_percent']:.1f}%)"
        )
    return summary


def write_count_matrix(count_data: CountData, output_dir: Union[str, Path]) -> Dict[str, Path]:
    """
    Save the count matrix, sample metadata and counting summary as TSV.

    Args:
        count_data: Assembled counts
        output_dir: Output directory (created if missing)

    Returns:
        Dictionary mapping output kind to file path
    """
    output_dir = validate_directory_exists(output_dir, create=True)

    paths = {
        'count_matrix': output_dir / 'count_matrix.tsv',
        'sample_metadata': output_dir / 'sample_metadata.tsv',
        'counting_summary': output_dir / 'counting_summary.tsv',
    }
    count_data.counts.to_csv(paths['count_matrix'], sep='\t')
    count_data.metadata.to_csv(paths['sample_metadata'], sep='\t')
    count_data.counting_summary.to_csv(paths['counting_summary'], sep='\t')

    logger.info(f"Count matrix saved to: {paths['count_matrix']}")
    return paths
