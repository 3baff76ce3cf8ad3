#!/usr/bin/env python3
"""
dc_rnaseq CLI

Command-line interface for the dendritic cell differential expression
analysis. Discovers HTSeq-count samples, assembles the count matrix, runs
DESeq2 comparisons and renders plots and reports.
"""

import typer
import sys
from pathlib import Path
from typing import Optional, List
from rich.console import Console
from rich.table import Table
import logging

from . import __version__
from .utils import setup_logging
from .samples import discover_samples, validate_samplesheet as check_samplesheet, HTSEQ_SUFFIX
from .counts import build_count_matrix, write_count_matrix
from .config import AnalysisConfig, load_config, parse_comparison
from .pipeline import run_analysis
from .results import load_result_table
from .viz import (
    plot_heatmap, plot_volcano, plot_pca, counts_from_table,
    DEFAULT_HEATMAP_GENES, DEFAULT_PCA_GENES, DEFAULT_VOLCANO_LABELS,
)

app = typer.Typer(
    name="dc_rnaseq",
    help="dc_rnaseq - Differential expression of activated vs unactivated dendritic cells",
    add_completion=False,
)

console = Console()

# Global options
def version_callback(value: bool):
    if value:
        console.print(f"dc_rnaseq v{__version__}")
        raise typer.Exit()

def verbose_callback(value: bool):
    if value:
        setup_logging(level=logging.DEBUG)
    else:
        setup_logging(level=logging.INFO)

def _parse_condition_map(values: Optional[List[str]]) -> Optional[dict]:
    if not values:
        return None
    mapping = {}
    for value in values:
        token, sep, label = value.partition('=')
        if not sep or not token or not label:
            raise typer.BadParameter(f"Expected TOKEN=CONDITION, got '{value}'")
        mapping[token] = label
    return mapping

@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose",
        callback=verbose_callback,
        help="Enable verbose logging"
    ),
):
    """dc_rnaseq CLI"""
    pass

@app.command()
def samples(
    count_dir: Path = typer.Argument(..., help="Directory with HTSeq-count files"),
    suffix: str = typer.Option(HTSEQ_SUFFIX, help="Count file suffix"),
    pattern: Optional[str] = typer.Option(None, help="Regex with a named 'condition' group"),
    condition_map: Optional[List[str]] = typer.Option(None, "--map", help="TOKEN=CONDITION mapping"),
):
    """List samples and conditions derived from file names."""
    try:
        kwargs = {'suffix': suffix, 'condition_map': _parse_condition_map(condition_map)}
        if pattern:
            kwargs['pattern'] = pattern
        found = discover_samples(count_dir, **kwargs)

        table = Table(title=f"Samples in {count_dir}")
        table.add_column("Sample")
        table.add_column("Condition")
        table.add_column("Replicate")
        table.add_column("File")
        for sample in found:
            table.add_row(sample.sample_id, sample.condition, sample.replicate or "-", sample.count_file.name)
        console.print(table)

    except Exception as e:
        console.print(f"[bold red]Sample discovery failed: {e}[/bold red]")
        sys.exit(1)

@app.command()
def count_matrix(
    count_dir: Path = typer.Argument(..., help="Directory with HTSeq-count files"),
    output_dir: Path = typer.Option("./counts", help="Output directory"),
    suffix: str = typer.Option(HTSEQ_SUFFIX, help="Count file suffix"),
    pattern: Optional[str] = typer.Option(None, help="Regex with a named 'condition' group"),
    condition_map: Optional[List[str]] = typer.Option(None, "--map", help="TOKEN=CONDITION mapping"),
):
    """Assemble per-sample count files into a gene x sample matrix."""
    console.print("[bold blue]Building count matrix[/bold blue]")

    try:
        kwargs = {'suffix': suffix, 'condition_map': _parse_condition_map(condition_map)}
        if pattern:
            kwargs['pattern'] = pattern
        count_data = build_count_matrix(discover_samples(count_dir, **kwargs))
        paths = write_count_matrix(count_data, output_dir)

        console.print(f"[bold green]Count matrix: {count_data.n_genes} genes x {count_data.n_samples} samples[/bold green]")
        console.print(f"Results saved to: {paths['count_matrix']}")

    except Exception as e:
        console.print(f"[bold red]Error building count matrix: {e}[/bold red]")
        sys.exit(1)

@app.command()
def analyze(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    count_dir: Optional[Path] = typer.Option(None, help="Directory with HTSeq-count files"),
    samplesheet: Optional[Path] = typer.Option(None, help="Samplesheet TSV (sample_id, condition, count_file)"),
    output_dir: Optional[Path] = typer.Option(None, help="Output directory"),
    comparison: Optional[List[str]] = typer.Option(None, help="Comparison as TREATMENT_vs_REFERENCE"),
    padj_cutoff: Optional[float] = typer.Option(None, help="Adjusted p-value cutoff (default 0.001)"),
    condition_map: Optional[List[str]] = typer.Option(None, "--map", help="TOKEN=CONDITION mapping"),
    no_plots: bool = typer.Option(False, "--no-plots", help="Skip plots"),
    no_report: bool = typer.Option(False, "--no-report", help="Skip the HTML report"),
):
    """Run the full differential expression analysis."""
    console.print("[bold blue]Running differential expression analysis[/bold blue]")

    try:
        config = load_config(config_file) if config_file else AnalysisConfig()
        config = config.override(
            count_dir=count_dir,
            samplesheet=samplesheet,
            output_dir=output_dir,
            comparisons=[parse_comparison(c) for c in comparison] if comparison else None,
            padj_cutoff=padj_cutoff,
            condition_map=_parse_condition_map(condition_map),
            make_plots=False if no_plots else None,
            make_report=False if no_report else None,
        )

        summary = run_analysis(config)

        for name, entry in summary['comparisons'].items():
            console.print(entry['summary'])
        console.print("[bold green]Analysis completed successfully![/bold green]")
        console.print(f"Results saved to: {config.output_dir}")

    except Exception as e:
        console.print(f"[bold red]Error in analysis: {e}[/bold red]")
        sys.exit(1)

@app.command()
def plot(
    table_file: Path = typer.Argument(..., help="An *_allgenes.csv result table"),
    output_dir: Path = typer.Option("./plots", help="Output directory"),
    padj_cutoff: float = typer.Option(0.001, help="Adjusted p-value cutoff"),
    heatmap_genes: int = typer.Option(DEFAULT_HEATMAP_GENES, help="Genes in the heatmap"),
    pca_genes: int = typer.Option(DEFAULT_PCA_GENES, help="Most variable genes used for PCA"),
    volcano_labels: int = typer.Option(DEFAULT_VOLCANO_LABELS, help="Genes labelled on the volcano plot"),
):
    """Re-render heatmap, volcano and PCA plots from a saved result table."""
    console.print("[bold blue]Creating visualizations[/bold blue]")

    try:
        table = load_result_table(table_file)
        output_dir.mkdir(parents=True, exist_ok=True)
        stem = table_file.stem.replace('_allgenes', '')

        plot_volcano(table, padj_cutoff=padj_cutoff, n_labels=volcano_labels,
                     title=stem, output_file=output_dir / f"{stem}_volcano.png")
        plot_heatmap(table, n_genes=heatmap_genes,
                     output_file=output_dir / f"{stem}_heatmap.png")
        plot_pca(counts_from_table(table), n_genes=pca_genes,
                 output_file=output_dir / f"{stem}_pca.png")

        console.print("[bold green]Visualizations created successfully![/bold green]")
        console.print(f"Results saved to: {output_dir}")

    except Exception as e:
        console.print(f"[bold red]Error creating visualizations: {e}[/bold red]")
        sys.exit(1)

@app.command()
def validate_samplesheet(
    samplesheet: Path = typer.Argument(..., help="Samplesheet file to validate"),
    output_file: Optional[Path] = typer.Option(None, help="Output validated samplesheet"),
):
    """Validate and optionally reformat samplesheet."""
    console.print("[bold blue]Validating samplesheet[/bold blue]")

    try:
        valid_samples = check_samplesheet(samplesheet)
        console.print(f"[bold green]Samplesheet is valid![/bold green]")
        console.print(f"Found {len(valid_samples)} valid samples")

        if output_file:
            valid_samples.to_csv(output_file, sep='\t', index=False)
            console.print(f"Validated samplesheet saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Samplesheet validation failed: {e}[/bold red]")
        sys.exit(1)

if __name__ == "__main__":
    app()
