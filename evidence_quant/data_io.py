"""Data I/O module for loading evidence, sample metadata and annotations."""

import logging
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd
import pyarrow.parquet as pq

from .exceptions import ConfigurationError
from .mapping import PeptideProteinMap
from .matrix import IntensityMatrix
from .records import EVIDENCE_COLUMNS, validate_evidence, validate_sample_metadata

logger = logging.getLogger(__name__)

# Common vendor spellings mapped to canonical evidence columns
EVIDENCE_COLUMN_MAP = {
    # MaxQuant evidence.txt
    'Sequence': 'sequence',
    'Modified sequence': 'modified_sequence',
    'Leading razor protein': 'leading_protein',
    'Leading Razor Protein': 'leading_protein',
    'Proteins': 'protein_group',
    'Protein group IDs': 'protein_group',
    'Experiment': 'sample',
    'Raw file': 'sample',
    'Intensity': 'intensity',

    # Alternative naming conventions
    'PeptideSequence': 'sequence',
    'ModifiedSequence': 'modified_sequence',
    'LeadingProtein': 'leading_protein',
    'ProteinGroup': 'protein_group',
    'Sample': 'sample',
}

# Flag columns whose '+' rows are dropped on load
FLAG_COLUMNS = ['Potential contaminant', 'Reverse', 'Only identified by site']

METADATA_COLUMN_MAP = {
    'Sample': 'sample',
    'Condition': 'condition',
    'Replicate': 'replicate',
    'Batch': 'batch',
}


def _read_table(filepath: Path) -> pd.DataFrame:
    """Read CSV/TSV/parquet based on the file suffix."""
    suffix = filepath.suffix.lower()
    if suffix == '.parquet':
        return pq.read_table(filepath).to_pandas()
    sep = '\t' if suffix in ['.tsv', '.txt'] else ','
    return pd.read_csv(filepath, sep=sep, low_memory=False)


def _standardize_columns(df: pd.DataFrame, column_map: dict) -> pd.DataFrame:
    """Rename columns to canonical names using the mapping.

    Canonical names already present win over vendor spellings, and only the
    first vendor spelling found for a canonical name is used.
    """
    rename_map = {}
    taken = set(df.columns)
    for orig, standard in column_map.items():
        if orig in df.columns and standard not in taken:
            rename_map[orig] = standard
            taken.add(standard)
    return df.rename(columns=rename_map)


def load_evidence(filepath: Path, drop_flagged: bool = True) -> pd.DataFrame:
    """Load an evidence table and bring it to canonical columns.

    Args:
        filepath: CSV, TSV/TXT or parquet file
        drop_flagged: Drop rows marked '+' in contaminant/reverse columns

    Returns:
        DataFrame with the canonical evidence columns first

    Raises:
        ConfigurationError: If required columns are missing

    """
    filepath = Path(filepath)
    raw = _read_table(filepath)
    df = _standardize_columns(raw, EVIDENCE_COLUMN_MAP)

    if drop_flagged:
        flagged = pd.Series(False, index=df.index)
        for col in FLAG_COLUMNS:
            if col in df.columns:
                flagged |= df[col].astype(str).str.strip() == '+'
        if flagged.any():
            logger.info(f"Dropped {int(flagged.sum())} contaminant/reverse rows")
            df = df.loc[~flagged].copy()

    if 'modified_sequence' not in df.columns and 'sequence' in df.columns:
        df['modified_sequence'] = df['sequence']
    for optional in ('leading_protein', 'protein_group'):
        if optional not in df.columns:
            df[optional] = pd.NA

    validate_evidence(df, ['sequence', 'sample', 'intensity'])
    df['intensity'] = pd.to_numeric(df['intensity'], errors='coerce').astype('Float64')

    extra = [c for c in df.columns if c not in EVIDENCE_COLUMNS]
    df = df[EVIDENCE_COLUMNS + extra].reset_index(drop=True)

    logger.info(f"Loaded {len(df)} evidence records from {filepath.name} "
                f"({df['sample'].nunique()} samples)")
    return df


def load_sample_metadata(filepath: Path) -> pd.DataFrame:
    """Load and validate a sample metadata file.

    Args:
        filepath: Path to metadata TSV/CSV

    Returns:
        Validated metadata DataFrame

    Raises:
        ConfigurationError: If validation fails

    """
    filepath = Path(filepath)
    meta = _standardize_columns(_read_table(filepath), METADATA_COLUMN_MAP)
    meta = validate_sample_metadata(meta)
    logger.info(f"Loaded metadata for {len(meta)} samples, "
                f"{meta['condition'].nunique()} conditions")
    return meta


def load_annotation(filepath: Path, key: str = 'protein') -> pd.DataFrame:
    """Load an annotation table keyed by protein identifier."""
    filepath = Path(filepath)
    annotation = _read_table(filepath)
    if key not in annotation.columns:
        raise ConfigurationError(f"Annotation file {filepath.name} has no '{key}' column")
    return annotation


def write_table(df: pd.DataFrame, path: Path, output_format: Optional[str] = None,
                index: bool = True) -> Path:
    """Write a table as parquet, csv or tsv."""
    path = Path(path)
    output_format = output_format or path.suffix.lstrip('.') or 'parquet'
    if output_format == 'parquet':
        # pyarrow wants string column labels
        df = df.rename(columns=str)
        df.to_parquet(path, index=index)
    elif output_format == 'csv':
        df.to_csv(path, index=index)
    elif output_format == 'tsv':
        df.to_csv(path, sep='\t', index=index)
    else:
        raise ConfigurationError(f"Unknown output format: {output_format}")
    return path


def read_matrix(path: Path, level: str = 'protein',
                samples: Optional[Sequence[str]] = None) -> IntensityMatrix:
    """Read a wide matrix written by ``write_table`` (entity keys as index).

    Pass ``samples`` when the file may carry numeric annotation columns;
    otherwise every numeric column that is not row bookkeeping is a sample.
    """
    path = Path(path)
    if path.suffix.lower() == '.parquet':
        values = pq.read_table(path).to_pandas()
        if level in values.columns:
            values = values.set_index(level)
    else:
        sep = '\t' if path.suffix.lower() in ['.tsv', '.txt'] else ','
        values = pd.read_csv(path, sep=sep, index_col=0)
    values.index = values.index.astype(str)
    return IntensityMatrix.from_frame(values, level=level, samples=samples)


def read_mapping(path: Path, id_column: Optional[str] = None) -> PeptideProteinMap:
    """Read a (peptide, protein) table written from ``PeptideProteinMap.to_frame``.

    The identifier column comes from ``id_column``, else from the table's
    own ``id_column`` column, else defaults to 'leading_protein'.
    """
    table = _read_table(Path(path))
    missing = [c for c in ('peptide', 'protein') if c not in table.columns]
    if missing:
        raise ConfigurationError(f"Mapping file is missing columns: {missing}")
    table = table.dropna(subset=['peptide', 'protein']).astype({'peptide': str, 'protein': str})
    if id_column is None:
        recorded = table['id_column'].dropna() if 'id_column' in table.columns else ()
        id_column = str(recorded.iloc[0]) if len(recorded) else 'leading_protein'
    return PeptideProteinMap.from_pairs(zip(table['peptide'], table['protein']),
                                        id_column=id_column)
