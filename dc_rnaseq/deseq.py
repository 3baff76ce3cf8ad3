"""
DESeq2 modelling via PyDESeq2.

The statistics are delegated to PyDESeq2; this module only shapes the
inputs it expects and exposes the fitted dataset through named columns.
"""

import logging
import warnings
from typing import List

import numpy as np
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from .samples import ConditionError

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj']


class DEModel:
    """A fitted DESeq2 dataset for one design factor."""

    def __init__(self, dds: DeseqDataSet, design_factor: str, gene_order: pd.Index):
        self.dds = dds
        self.design_factor = design_factor
        self.gene_order = gene_order

    @property
    def conditions(self) -> List[str]:
        return sorted(self.dds.obs[self.design_factor].astype(str).unique())

    def _check_contrast(self, treatment: str, reference: str) -> None:
        known = self.conditions
        for label in (treatment, reference):
            if label not in known:
                raise ConditionError(
                    f"Unknown condition '{label}'; fitted conditions are {known}"
                )
        if treatment == reference:
            raise ConditionError(f"Cannot compare condition '{treatment}' with itself")

    def normalized_counts(self) -> pd.DataFrame:
        """Median-of-ratios normalized counts, genes x samples."""
        normed = pd.DataFrame(
            np.asarray(self.dds.layers['normed_counts']),
            index=self.dds.obs_names,
            columns=self.dds.var_names,
        ).T
        normed = normed.reindex(self.gene_order)
        normed.index.name = 'gene_id'
        return normed

    def size_factors(self) -> pd.Series:
        return pd.Series(
            np.asarray(self.dds.obs['size_factors']),
            index=self.dds.obs_names,
            name='size_factor',
        )

    def results(self, treatment: str, reference: str, alpha: float = 0.05) -> pd.DataFrame:
        """
        Run the Wald test for ``treatment`` versus ``reference``.

        Args:
            treatment: Numerator condition
            reference: Denominator (baseline) condition
            alpha: Significance level used by independent filtering

        Returns:
            DataFrame indexed by gene id with RESULT_COLUMNS

        Raises:
            ConditionError: If either label is unknown or both are equal
        """
        self._check_contrast(treatment, reference)
        logger.info(f"Testing {treatment} vs {reference}")

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            stat_res = DeseqStats(
                self.dds,
                contrast=[self.design_factor, treatment, reference],
                alpha=alpha,
                quiet=True,
            )
            stat_res.summary()

        results = stat_res.results_df
        missing = [col for col in RESULT_COLUMNS if col not in results.columns]
        if missing:
            raise ValueError(f"PyDESeq2 results are missing columns: {missing}")

        results = results[RESULT_COLUMNS].reindex(self.gene_order)
        results.index.name = 'gene_id'
        return results


def fit_model(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    design_factor: str = "condition",
    quiet: bool = True,
) -> DEModel:
    """
    Fit a DESeq2 model on a gene x sample count matrix.

    Args:
        counts: Raw integer counts, genes x samples
        metadata: Sample metadata indexed by sample id
        design_factor: Metadata column holding the condition labels
        quiet: Silence PyDESeq2 progress output

    Returns:
        Fitted DEModel

    Raises:
        ValueError: If samples don't line up or fewer than two conditions exist
    """
    if design_factor not in metadata.columns:
        raise ValueError(f"Design factor '{design_factor}' not in sample metadata")

    missing = [s for s in counts.columns if s not in metadata.index]
    if missing:
        raise ValueError(f"Samples without metadata: {missing}")

    conditions = metadata.loc[counts.columns, design_factor].astype(str)
    if conditions.nunique() < 2:
        raise ConditionError(
            f"Need at least 2 conditions to fit a model, found {sorted(conditions.unique())}"
        )

    # PyDESeq2 wants samples as rows
    sample_counts = counts.T.astype(int)
    sample_metadata = pd.DataFrame({design_factor: conditions.values}, index=counts.columns)

    logger.info(
        f"Fitting DESeq2 model (~{design_factor}) on {counts.shape[0]} genes, "
        f"{counts.shape[1]} samples"
    )

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        dds = DeseqDataSet(
            counts=sample_counts,
            metadata=sample_metadata,
            design=f"~{design_factor}",
            quiet=quiet,
        )
        dds.deseq2()

    return DEModel(dds, design_factor, counts.index)
