"""Measurement records and sample metadata as consumed by the engines."""

import logging
from dataclasses import asdict, dataclass, fields
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SAMPLE_COL = 'sample'
CONDITION_COL = 'condition'

# Key selectors accepted by the peptide engine, with their aliases
SEQUENCE_KEYS = {
    'sequence': 'sequence',
    'modified_sequence': 'modified_sequence',
    'modified': 'modified_sequence',
}
PROTEIN_KEYS = {
    'leading_protein': 'leading_protein',
    'razor': 'leading_protein',
    'protein_group': 'protein_group',
    'group': 'protein_group',
}


@dataclass(frozen=True)
class MeasurementRecord:
    """One filtered evidence row."""

    sequence: str
    modified_sequence: str
    leading_protein: Optional[str]
    protein_group: Optional[str]
    sample: str
    intensity: Optional[float]


EVIDENCE_COLUMNS = [f.name for f in fields(MeasurementRecord)]


def records_to_frame(records: Iterable[MeasurementRecord]) -> pd.DataFrame:
    """Convert an ordered iterable of records to an evidence DataFrame."""
    rows = [asdict(r) for r in records]
    frame = pd.DataFrame(rows, columns=EVIDENCE_COLUMNS)
    frame['intensity'] = pd.to_numeric(frame['intensity'], errors='coerce').astype('Float64')
    return frame


def resolve_key(value: str, choices: dict, kind: str) -> str:
    """Map a user-facing key choice to its canonical column name."""
    try:
        return choices[value]
    except (KeyError, TypeError):
        raise ConfigurationError(
            f"Unknown {kind} '{value}'. Must be one of: {sorted(choices)}"
        ) from None


def validate_evidence(evidence: pd.DataFrame, required: List[str]) -> None:
    """Check that the evidence table carries the columns an engine needs.

    Raises:
        ConfigurationError: If any required column is absent

    """
    missing = [col for col in required if col not in evidence.columns]
    if missing:
        raise ConfigurationError(f"Missing required evidence columns: {missing}")

    intensity = evidence['intensity'] if 'intensity' in evidence.columns else None
    if intensity is not None:
        values = pd.to_numeric(intensity, errors='coerce')
        if (values < 0).any():
            raise ConfigurationError("Evidence intensities must be non-negative")


def validate_sample_metadata(metadata: pd.DataFrame) -> pd.DataFrame:
    """Validate the sample table and return a clean copy.

    The table needs a unique ``sample`` column and a ``condition`` column.
    Any other columns (replicate, batch, ...) are carried along unchanged.

    Raises:
        ConfigurationError: If a required column is missing, a sample id is
            duplicated, or a sample has no condition

    """
    missing = [col for col in (SAMPLE_COL, CONDITION_COL) if col not in metadata.columns]
    if missing:
        raise ConfigurationError(f"Missing required metadata columns: {missing}")

    meta = metadata.copy()
    meta[SAMPLE_COL] = meta[SAMPLE_COL].astype(str)

    duplicates = meta[meta[SAMPLE_COL].duplicated()][SAMPLE_COL].tolist()
    if duplicates:
        raise ConfigurationError(f"Duplicate sample entries: {duplicates}")

    if meta[CONDITION_COL].isna().any():
        unlabeled = meta.loc[meta[CONDITION_COL].isna(), SAMPLE_COL].tolist()
        raise ConfigurationError(f"Samples without a condition: {unlabeled}")
    meta[CONDITION_COL] = meta[CONDITION_COL].astype(str)

    return meta.reset_index(drop=True)


def sample_conditions(metadata: pd.DataFrame) -> pd.Series:
    """Condition label per sample id, in metadata order."""
    return metadata.set_index(SAMPLE_COL)[CONDITION_COL]


def condition_levels(metadata: pd.DataFrame) -> List[str]:
    """Distinct condition labels in first-seen order."""
    return list(pd.unique(metadata[CONDITION_COL]))


def to_nullable(values: pd.DataFrame) -> pd.DataFrame:
    """Cast a numeric frame to the nullable Float64 dtype (NaN -> NA)."""
    values = values.apply(pd.to_numeric, errors='coerce') if len(values.columns) else values
    return values.astype('Float64')


def to_float(values: pd.DataFrame) -> np.ndarray:
    """Writable float ndarray copy of a frame with missing cells as NaN."""
    return values.to_numpy(dtype=float, na_value=np.nan, copy=True)
