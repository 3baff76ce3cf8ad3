"""
dc_rnaseq - differential expression analysis of dendritic cell RNA-seq.

Turns per-sample HTSeq-count files into annotated DESeq2 result tables,
plots and an HTML report.
"""

__version__ = "1.0.0"
