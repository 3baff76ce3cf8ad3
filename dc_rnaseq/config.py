"""
Analysis configuration for dc_rnaseq.

Settings are read from a YAML file into an AnalysisConfig; command-line
options override individual values.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Union

import yaml

from .results import DEFAULT_PADJ_CUTOFF
from .samples import HTSEQ_SUFFIX, DEFAULT_SAMPLE_PATTERN
from .utils import validate_file_exists
from .viz import DEFAULT_HEATMAP_GENES, DEFAULT_PCA_GENES, DEFAULT_VOLCANO_LABELS

logger = logging.getLogger(__name__)


@dataclass
class AnalysisConfig:
    """Everything needed to run the analysis end to end."""

    count_dir: Optional[Path] = None
    output_dir: Path = Path('./dc_rnaseq_results')
    samplesheet: Optional[Path] = None
    file_suffix: str = HTSEQ_SUFFIX
    sample_pattern: str = DEFAULT_SAMPLE_PATTERN
    condition_map: Optional[Dict[str, str]] = None
    conditions: Optional[List[str]] = None
    design_factor: str = 'condition'
    comparisons: List[Tuple[str, str]] = field(default_factory=list)
    padj_cutoff: float = DEFAULT_PADJ_CUTOFF
    alpha: float = 0.05
    heatmap_genes: int = DEFAULT_HEATMAP_GENES
    pca_genes: int = DEFAULT_PCA_GENES
    volcano_labels: int = DEFAULT_VOLCANO_LABELS
    make_plots: bool = True
    make_report: bool = True
    title: str = 'Dendritic Cell Differential Expression'

    def __post_init__(self):
        if self.count_dir is not None:
            self.count_dir = Path(self.count_dir)
        if self.samplesheet is not None:
            self.samplesheet = Path(self.samplesheet)
        self.output_dir = Path(self.output_dir)
        if self.comparisons is None:
            self.comparisons = []
        if not isinstance(self.comparisons, (list, tuple)):
            raise ValueError(
                f"comparisons must be a list, got {type(self.comparisons).__name__}"
            )
        self.comparisons = [parse_comparison(c) for c in self.comparisons]

    def validate(self) -> 'AnalysisConfig':
        """
        Check value ranges and that an input source is set.

        Raises:
            ValueError: On the first invalid setting
        """
        if self.count_dir is None and self.samplesheet is None:
            raise ValueError("Either count_dir or samplesheet must be set")
        if not 0 < float(self.padj_cutoff) <= 1:
            raise ValueError(f"padj_cutoff must be in (0, 1], got {self.padj_cutoff}")
        if not 0 < float(self.alpha) < 1:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")
        for name in ('heatmap_genes', 'pca_genes'):
            if int(getattr(self, name)) < 2:
                raise ValueError(f"{name} must be at least 2, got {getattr(self, name)}")
        if int(self.volcano_labels) < 0:
            raise ValueError(f"volcano_labels must be >= 0, got {self.volcano_labels}")
        if self.condition_map is not None and not isinstance(self.condition_map, dict):
            raise ValueError("condition_map must be a mapping of file token to condition")
        return self

    def override(self, **values: Any) -> 'AnalysisConfig':
        """Copy of the config with every non-None value replaced."""
        changes = {k: v for k, v in values.items() if v is not None}
        return replace(self, **changes)


def parse_comparison(value: Union[str, List[str], Tuple[str, str]]) -> Tuple[str, str]:
    """
    Turn 'Activated_vs_Control' or ['Activated', 'Control'] into a pair.

    Raises:
        ValueError: If the value doesn't name exactly two conditions
    """
    if isinstance(value, str):
        parts = value.split('_vs_')
    else:
        parts = list(value)

    if len(parts) != 2 or not all(isinstance(p, str) and p for p in parts):
        raise ValueError(
            f"Comparison must be 'TREATMENT_vs_REFERENCE' or [treatment, reference], got {value!r}"
        )
    treatment, reference = parts
    if treatment == reference:
        raise ValueError(f"Comparison compares '{treatment}' with itself")
    return treatment, reference


def load_config(config_file: Union[str, Path]) -> AnalysisConfig:
    """
    Load an AnalysisConfig from YAML.

    Relative paths in the file are resolved against the file's directory.

    Args:
        config_file: Path to YAML file

    Returns:
        AnalysisConfig

    Raises:
        ValueError: On unreadable YAML, a non-mapping document or unknown keys
    """
    config_file = validate_file_exists(config_file)

    try:
        with open(config_file, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Could not parse config {config_file}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Config {config_file} must be a mapping, got {type(data).__name__}")

    known = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in {config_file}: {unknown}")

    base_dir = config_file.parent
    for key in ('count_dir', 'output_dir', 'samplesheet'):
        if data.get(key) is not None:
            path = Path(data[key])
            data[key] = path if path.is_absolute() else base_dir / path

    logger.debug(f"Loaded config from {config_file}: {data}")
    return AnalysisConfig(**data)
