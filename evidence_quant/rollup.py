"""
Evidence → peptide and peptide → protein rollup.

Supports:
- Evidence → Peptide rollup keyed by plain or modified sequence
- Peptide → Protein rollup keyed by razor/leading protein or protein group
- Pluggable aggregation per level: sum, median, mean, max, top-K mean,
  median polish, or a user function
- Minimum peptide support per protein
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
import pandas as pd

from .aggregation import AggregatorLike, apply_aggregator, get_aggregator
from .exceptions import EmptyResultError
from .mapping import PeptideProteinMap, build_peptide_protein_map
from .matrix import IntensityMatrix
from .records import (
    PROTEIN_KEYS,
    SAMPLE_COL,
    SEQUENCE_KEYS,
    resolve_key,
    validate_evidence,
    validate_sample_metadata,
)

logger = logging.getLogger(__name__)


@dataclass
class PeptideRollupResult:
    """Peptide matrix together with the mapping built alongside it."""
    matrix: IntensityMatrix
    mapping: PeptideProteinMap
    dropped_samples: List[str]


def _entries_block(
    codes: np.ndarray,
    intensities: np.ndarray,
    samples: List[str],
) -> pd.DataFrame:
    """One row per contributing record, its intensity placed in its sample column."""
    block = np.full((len(codes), len(samples)), np.nan)
    block[np.arange(len(codes)), codes] = intensities
    return pd.DataFrame(block, columns=samples)


def _as_row(aggregated: pd.Series) -> np.ndarray:
    return aggregated.to_numpy(dtype=float, na_value=np.nan)


def rollup_to_peptides(
    evidence: pd.DataFrame,
    metadata: pd.DataFrame,
    sequence_key: str = 'sequence',
    protein_key: str = 'leading_protein',
    method: AggregatorLike = 'sum',
    top_k: int = 3,
    strict: bool = False,
) -> PeptideRollupResult:
    """
    Aggregate evidence records into a peptide × sample matrix.

    Records are partitioned by sequence key; within a key every record
    becomes one row of an entries × samples block (its intensity in its own
    sample column) and the aggregator collapses the block to one row.
    Records for samples absent from the metadata are dropped.

    Args:
        evidence: Evidence rows with canonical column names
        metadata: Sample table with 'sample' and 'condition'
        sequence_key: 'sequence' or 'modified_sequence'
        protein_key: 'leading_protein' ('razor') or 'protein_group' ('group')
        method: Aggregation strategy (name, Aggregator or callable)
        top_k: K for the 'topk' method
        strict: Raise on conflicting protein identifiers instead of keeping
            the first-seen one

    Returns:
        PeptideRollupResult with the matrix and peptide → protein map

    Raises:
        ConfigurationError: Unknown key choice, method or missing column
        EmptyResultError: No record intersects the sample set

    """
    peptide_col = resolve_key(sequence_key, SEQUENCE_KEYS, 'sequence key')
    protein_col = resolve_key(protein_key, PROTEIN_KEYS, 'protein key')
    aggregator = get_aggregator(method, top_k=top_k)
    meta = validate_sample_metadata(metadata)
    validate_evidence(evidence, [peptide_col, protein_col, SAMPLE_COL, 'intensity'])

    samples = meta[SAMPLE_COL].tolist()
    logger.info(f"Rolling up {len(evidence)} evidence records to peptides "
                f"by {peptide_col} using {aggregator.name}")

    data = evidence[[peptide_col, protein_col, SAMPLE_COL, 'intensity']].copy()
    data[SAMPLE_COL] = data[SAMPLE_COL].astype(str)

    in_metadata = data[SAMPLE_COL].isin(samples)
    dropped_samples = list(pd.unique(data.loc[~in_metadata, SAMPLE_COL]))
    if dropped_samples:
        logger.info(f"Dropped {int((~in_metadata).sum())} records from "
                    f"{len(dropped_samples)} samples not in metadata")
        logger.debug(f"  samples: {dropped_samples[:5]}")
    data = data.loc[in_metadata]

    no_key = data[peptide_col].isna()
    if no_key.any():
        logger.warning(f"Dropped {int(no_key.sum())} records without a {peptide_col}")
        data = data.loc[~no_key]

    if data.empty:
        raise EmptyResultError("No evidence records match the samples in the metadata")

    data[peptide_col] = data[peptide_col].astype(str)
    codes = pd.Categorical(data[SAMPLE_COL], categories=samples).codes
    intensities = pd.to_numeric(data['intensity'], errors='coerce').to_numpy(
        dtype=float, na_value=np.nan
    )

    groups = data.groupby(peptide_col, sort=False).indices
    keys = list(pd.unique(data[peptide_col]))
    rows = []
    n_records = {}
    for peptide in keys:
        positions = groups[peptide]
        block = _entries_block(codes[positions], intensities[positions], samples)
        rows.append(_as_row(apply_aggregator(aggregator, block)))
        n_records[peptide] = len(positions)

    values = pd.DataFrame(np.vstack(rows), index=keys, columns=samples)
    matrix = IntensityMatrix(values, level='peptide', samples=samples)
    if len(matrix) == 0:
        raise EmptyResultError("Peptide rollup produced no peptides with observations")

    kept = data[data[peptide_col].isin(matrix.entities)]
    mapping = build_peptide_protein_map(
        kept, peptide_col=peptide_col, protein_col=protein_col, strict=strict
    )

    row_info = pd.DataFrame({
        'protein': [mapping.protein_for(p) for p in matrix.entities],
        'n_records': [n_records[p] for p in matrix.entities],
    }, index=matrix.entities)

    unmapped = row_info['protein'].isna()
    if unmapped.any():
        logger.warning(f"{int(unmapped.sum())} peptides have no {protein_col} "
                       "and will not be rolled up to proteins")

    matrix = IntensityMatrix(
        matrix.values, level='peptide', row_info=row_info,
        transform=f'{aggregator.name} of evidence by {peptide_col}',
    )

    logger.info(f"Rolled up to {len(matrix)} peptides across {len(samples)} samples")

    return PeptideRollupResult(matrix=matrix, mapping=mapping, dropped_samples=dropped_samples)


def rollup_to_proteins(
    peptides: IntensityMatrix,
    mapping: PeptideProteinMap,
    method: AggregatorLike = 'topk',
    top_k: int = 3,
    min_peptides: int = 1,
) -> IntensityMatrix:
    """
    Aggregate a peptide matrix to protein (or protein group) level.

    Peptide rows are partitioned by their mapped protein key and each
    protein's peptides × samples block is collapsed per sample column, so a
    peptide missing in one sample still contributes to the others.

    Args:
        peptides: Peptide IntensityMatrix
        mapping: Map built with the peptide matrix
        method: Aggregation strategy; default is the mean of the 3 most
            intense peptides ("high-flyer")
        top_k: K for the 'topk' method
        min_peptides: Minimum peptide rows required per protein

    Returns:
        Protein IntensityMatrix; row_info holds 'n_peptides'

    Raises:
        EmptyResultError: No protein passes the filters

    """
    aggregator = get_aggregator(method, top_k=top_k)
    logger.info(f"Rolling up {len(peptides)} peptides to proteins using {aggregator.name}")

    values = peptides.values
    samples = peptides.samples
    present = set(values.index)

    keys = []
    rows = []
    n_peptides = {}
    skipped: List[Tuple[str, int]] = []
    n_unmapped = sum(1 for p in values.index if p not in mapping)

    for protein in mapping.proteins:
        members = [p for p in mapping.peptides_for(protein) if p in present]
        if len(members) < min_peptides:
            skipped.append((protein, len(members)))
            continue
        block = values.loc[members]
        keys.append(protein)
        rows.append(_as_row(apply_aggregator(aggregator, block)))
        n_peptides[protein] = len(members)

    if n_unmapped:
        logger.info(f"Skipped {n_unmapped} peptides without a protein assignment")

    if skipped:
        logger.info(f"Skipped {len(skipped)} proteins with < {min_peptides} peptides")
        for pid, n in skipped[:5]:
            logger.debug(f"  {pid}: {n} peptides")
        if len(skipped) > 5:
            logger.debug(f"  ... and {len(skipped) - 5} more")

    if not rows:
        raise EmptyResultError("Protein rollup produced no proteins")

    protein_values = pd.DataFrame(np.vstack(rows), index=keys, columns=samples)
    row_info = pd.DataFrame({'n_peptides': pd.Series(n_peptides, dtype=int)})

    matrix = IntensityMatrix(
        protein_values,
        level='protein',
        samples=samples,
        row_info=row_info,
        source=peptides,
        transform=f'{aggregator.name} of peptides by {mapping.id_column}',
    )
    if len(matrix) == 0:
        raise EmptyResultError("Protein rollup produced no proteins with observations")

    logger.info(f"Rolled up to {len(matrix)} proteins")

    return matrix
