"""
Sample discovery module for dc_rnaseq.

This module maps HTSeq-count output files to logical samples and
experimental conditions, either from the file naming convention or from
a tab-separated samplesheet.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Optional, Union, Iterable

import pandas as pd

from .utils import validate_file_exists, validate_directory_exists

logger = logging.getLogger(__name__)

HTSEQ_SUFFIX = "_htseq.out"

# Leading token is the condition, an optional trailing number the replicate,
# e.g. "act_DC_2" -> condition "act", replicate "2". The condition ends in a
# letter so "Ctrl1" splits into "Ctrl" and "1".
DEFAULT_SAMPLE_PATTERN = r"^(?P<condition>[A-Za-z0-9]*?[A-Za-z])(?:[_.-].*?)?(?:[_.-]?(?:rep)?(?P<replicate>\d+))?$"

SAMPLESHEET_COLUMNS = ['sample_id', 'condition', 'count_file']


class SampleDiscoveryError(ValueError):
    """Raised when samples cannot be derived from the inputs."""


class ConditionError(ValueError):
    """Raised for unknown or mismatched condition labels."""


@dataclass(frozen=True)
class Sample:
    """A sequenced library and the condition it belongs to."""

    sample_id: str
    condition: str
    count_file: Path
    replicate: Optional[str] = None


def parse_sample_name(
    sample_id: str,
    pattern: str = DEFAULT_SAMPLE_PATTERN,
    condition_map: Optional[Dict[str, str]] = None,
) -> Dict[str, Optional[str]]:
    """
    Extract condition (and replicate) from a sample identifier.

    Args:
        sample_id: Sample identifier, usually the file name minus suffix
        pattern: Regular expression with a named ``condition`` group
        condition_map: Optional mapping from raw token to condition label

    Returns:
        Dictionary with ``condition`` and ``replicate`` keys

    Raises:
        SampleDiscoveryError: If the pattern does not match
        ConditionError: If the token is missing from ``condition_map``
    """
    regex = re.compile(pattern)
    if 'condition' not in regex.groupindex:
        raise SampleDiscoveryError(
            f"Sample pattern must define a named 'condition' group: {pattern}"
        )

    match = regex.match(sample_id)
    if match is None or not match.group('condition'):
        raise SampleDiscoveryError(
            f"Sample name '{sample_id}' does not match pattern {pattern}"
        )

    token = match.group('condition')
    if condition_map is not None:
        if token not in condition_map:
            raise ConditionError(
                f"Unknown condition '{token}' in sample '{sample_id}'; "
                f"expected one of {sorted(condition_map)}"
            )
        condition = condition_map[token]
    else:
        condition = token

    replicate = match.groupdict().get('replicate')
    return {'condition': condition, 'replicate': replicate}


def _check_conditions(samples: List[Sample], conditions: Optional[Iterable[str]]) -> None:
    if conditions is None:
        return
    allowed = set(conditions)
    for sample in samples:
        if sample.condition not in allowed:
            raise ConditionError(
                f"Sample '{sample.sample_id}' has condition '{sample.condition}', "
                f"expected one of {sorted(allowed)}"
            )


def discover_samples(
    count_dir: Union[str, Path],
    suffix: str = HTSEQ_SUFFIX,
    pattern: str = DEFAULT_SAMPLE_PATTERN,
    condition_map: Optional[Dict[str, str]] = None,
    conditions: Optional[Iterable[str]] = None,
) -> List[Sample]:
    """
    Enumerate count files in a directory and assign samples to conditions.

    Files are processed in name order so that repeated runs see the same
    sample order.

    Args:
        count_dir: Directory holding the per-sample count files
        suffix: File name suffix identifying count files
        pattern: Regular expression applied to the sample id
        condition_map: Optional mapping from raw token to condition label
        conditions: Optional whitelist of condition labels

    Returns:
        List of Sample objects

    Raises:
        FileNotFoundError: If the directory doesn't exist
        SampleDiscoveryError: If no count files are found
    """
    count_dir = validate_directory_exists(count_dir)
    logger.info(f"Discovering samples in {count_dir}")

    count_files = sorted(
        p for p in count_dir.iterdir()
        if p.is_file() and p.name.endswith(suffix)
    )
    if not count_files:
        raise SampleDiscoveryError(f"No '*{suffix}' files found in {count_dir}")

    samples = []
    for count_file in count_files:
        sample_id = count_file.name[:-len(suffix)]
        parsed = parse_sample_name(sample_id, pattern, condition_map)
        samples.append(Sample(
            sample_id=sample_id,
            condition=parsed['condition'],
            count_file=count_file,
            replicate=parsed['replicate'],
        ))
        logger.debug(f"{count_file.name} -> {sample_id} ({parsed['condition']})")

    _check_conditions(samples, conditions)

    logger.info(
        f"Found {len(samples)} samples in "
        f"{len({s.condition for s in samples})} conditions"
    )
    return samples


def validate_samplesheet(samplesheet_path: Union[str, Path]) -> pd.DataFrame:
    """
    Validate samplesheet format and content.

    Args:
        samplesheet_path: Path to samplesheet TSV file

    Returns:
        Validated DataFrame with ``count_file`` resolved to absolute paths

    Raises:
        ValueError: If samplesheet format is invalid
        FileNotFoundError: If a referenced count file is missing
    """
    samplesheet_path = validate_file_exists(samplesheet_path)

    try:
        df = pd.read_csv(samplesheet_path, sep='\t', dtype=str)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ValueError(f"Could not read samplesheet {samplesheet_path}: {e}") from e

    missing_cols = [col for col in SAMPLESHEET_COLUMNS if col not in df.columns]
    if missing_cols:
        raise ValueError(f"Missing required columns in {samplesheet_path}: {missing_cols}")

    if df.empty:
        raise ValueError(f"Samplesheet {samplesheet_path} has no samples")

    for col in SAMPLESHEET_COLUMNS:
        blank = df[df[col].isna() | (df[col].str.strip() == '')]
        if len(blank) > 0:
            raise ValueError(
                f"Empty '{col}' in samplesheet rows: {[i + 2 for i in blank.index]}"
            )

    duplicated = df[df['sample_id'].duplicated()]['sample_id'].unique()
    if len(duplicated) > 0:
        raise ValueError(f"Duplicate sample ids in samplesheet: {list(duplicated)}")

    base_dir = samplesheet_path.parent
    resolved = []
    for _, row in df.iterrows():
        count_file = Path(row['count_file'])
        if not count_file.is_absolute():
            count_file = base_dir / count_file
        try:
            validate_file_exists(count_file)
        except FileNotFoundError:
            raise FileNotFoundError(
                f"Count file not found for sample {row['sample_id']}: {count_file}"
            )
        resolved.append(str(count_file))
    df['count_file'] = resolved

    return df


def load_samplesheet(
    samplesheet_path: Union[str, Path],
    conditions: Optional[Iterable[str]] = None,
) -> List[Sample]:
    """Build samples from a validated samplesheet, keeping its row order."""
    df = validate_samplesheet(samplesheet_path)
    samples = [
        Sample(
            sample_id=row['sample_id'],
            condition=row['condition'],
            count_file=Path(row['count_file']),
            replicate=row['replicate'] if 'replicate' in df.columns and pd.notna(row['replicate']) else None,
        )
        for _, row in df.iterrows()
    ]
    _check_conditions(samples, conditions)
    logger.info(f"Loaded {len(samples)} samples from {samplesheet_path}")
    return samples


def samples_to_frame(samples: List[Sample]) -> pd.DataFrame:
    """Sample metadata table indexed by sample id."""
    frame = pd.DataFrame(
        {
            'condition': [s.condition for s in samples],
            'replicate': [s.replicate for s in samples],
            'count_file': [str(s.count_file) for s in samples],
        },
        index=pd.Index([s.sample_id for s in samples], name='sample_id'),
    )
    return frame
