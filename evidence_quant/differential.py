"""
Two-condition differential expression adapter.

The adapter prepares what a per-entity statistics engine needs (transformed
values and a two-group design), calls the engine, and post-processes its
output: Benjamini-Hochberg correction and significance flags.

The default engine is a Welch t-test from SciPy. Any callable with the same
signature can be supplied::

    engine(values: np.ndarray, in_b: np.ndarray) -> pd.DataFrame
        values: entities × samples, NaN for missing
        in_b:   boolean per sample, True for the second condition
        returns one row per entity with 'fold_change' and 'p_value'
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .exceptions import AmbiguousConditionsError, ConfigurationError
from .matrix import IntensityMatrix
from .records import (
    CONDITION_COL,
    SAMPLE_COL,
    condition_levels,
    to_float,
    validate_sample_metadata,
)

logger = logging.getLogger(__name__)

TRANSFORMS = {
    'log10': np.log10,
    'log2': np.log2,
    'ln': np.log,
    'none': None,
}


@dataclass
class Design:
    """Two-group design over the columns of a matrix."""
    conditions: Tuple[str, str]
    samples_a: List[str]
    samples_b: List[str]

    @property
    def samples(self) -> List[str]:
        return self.samples_a + self.samples_b

    def group_vector(self) -> np.ndarray:
        """Boolean per design sample, True for the second condition."""
        return np.array([False] * len(self.samples_a) + [True] * len(self.samples_b))


@dataclass
class DifferentialResult:
    """Per-entity differential expression table and its settings."""
    table: pd.DataFrame
    design: Design
    transform: str
    alpha: float
    fold_change_threshold: float = 0.0
    method_log: List[str] = field(default_factory=list)

    @property
    def n_significant(self) -> int:
        return int(self.table['significant'].sum())

    def significant(self) -> pd.DataFrame:
        """Rows flagged significant."""
        return self.table[self.table['significant']]


def resolve_conditions(
    metadata: pd.DataFrame,
    conditions: Optional[Sequence[str]] = None,
) -> Tuple[str, str]:
    """
    Pick the two conditions to compare.

    Explicit conditions are checked against the metadata. Without them the
    metadata must contain exactly two distinct conditions, taken in
    first-seen order.

    Raises:
        ConfigurationError: Wrong number of explicit conditions, an unknown
            label, or fewer than two conditions in the metadata
        AmbiguousConditionsError: More than two conditions and none given

    """
    meta = validate_sample_metadata(metadata)
    levels = condition_levels(meta)

    if conditions is not None:
        conditions = [str(c) for c in conditions]
        if len(conditions) != 2:
            raise ConfigurationError(
                f"Differential expression needs exactly two conditions, got {conditions}"
            )
        if conditions[0] == conditions[1]:
            raise ConfigurationError(f"Cannot compare condition '{conditions[0]}' with itself")
        unknown = [c for c in conditions if c not in levels]
        if unknown:
            raise ConfigurationError(f"Unknown conditions: {unknown}. Available: {levels}")
        return conditions[0], conditions[1]

    if len(levels) > 2:
        raise AmbiguousConditionsError(
            f"Ambiguous conditions: metadata has {len(levels)} conditions {levels}; "
            "specify the two to compare"
        )
    if len(levels) < 2:
        raise ConfigurationError(f"Need two conditions to compare, found {levels}")
    return levels[0], levels[1]


def build_design(
    matrix: IntensityMatrix,
    metadata: pd.DataFrame,
    conditions: Optional[Sequence[str]] = None,
) -> Design:
    """Two-group design restricted to the matrix's samples."""
    a, b = resolve_conditions(metadata, conditions)
    meta = validate_sample_metadata(metadata)
    by_sample = meta.set_index(SAMPLE_COL)[CONDITION_COL]

    samples_a = [s for s in matrix.samples if by_sample.get(s) == a]
    samples_b = [s for s in matrix.samples if by_sample.get(s) == b]
    if not samples_a or not samples_b:
        raise ConfigurationError(
            f"Matrix has no samples for condition '{a if not samples_a else b}'"
        )
    return Design(conditions=(a, b), samples_a=samples_a, samples_b=samples_b)


def transform_matrix(
    values: pd.DataFrame,
    transform: Union[str, Callable, None] = 'log10',
) -> pd.DataFrame:
    """
    Apply an elementwise transform, keeping missing cells missing.

    Cells whose transformed value is not finite (log of 0, for example)
    become missing as well.
    """
    if isinstance(transform, str):
        if transform not in TRANSFORMS:
            raise ConfigurationError(
                f"Unknown transform: {transform}. Must be one of: {sorted(TRANSFORMS)} "
                "or a callable"
            )
        transform = TRANSFORMS[transform]

    arr = to_float(values)
    if transform is not None:
        missing = np.isnan(arr)
        with np.errstate(divide='ignore', invalid='ignore'):
            arr = np.array(transform(arr), dtype=float)
        arr[missing] = np.nan
        non_finite = ~np.isfinite(arr) & ~missing
        if non_finite.any():
            logger.info(f"{int(non_finite.sum())} cells became missing after transform")
        arr[non_finite] = np.nan

    return pd.DataFrame(arr, index=values.index, columns=values.columns).astype('Float64')


def welch_t_test(values: np.ndarray, in_b: np.ndarray, min_observations: int = 2) -> pd.DataFrame:
    """
    Per-row Welch t-test of the second group against the first.

    Fold change is mean(b) - mean(a) and needs one observation per group;
    the p-value needs ``min_observations`` per group.
    """
    fold_change = np.full(len(values), np.nan)
    p_value = np.full(len(values), np.nan)

    for i, row in enumerate(values):
        a = row[~in_b]
        b = row[in_b]
        a = a[~np.isnan(a)]
        b = b[~np.isnan(b)]
        if len(a) == 0 or len(b) == 0:
            continue
        fold_change[i] = b.mean() - a.mean()
        if len(a) >= min_observations and len(b) >= min_observations:
            with np.errstate(divide='ignore', invalid='ignore'):
                _, p_value[i] = stats.ttest_ind(b, a, equal_var=False)

    return pd.DataFrame({'fold_change': fold_change, 'p_value': p_value})


def benjamini_hochberg(p_values: np.ndarray) -> np.ndarray:
    """BH-adjusted p-values; missing inputs stay missing and are not counted."""
    p_values = np.asarray(p_values, dtype=float)
    adjusted = np.full(len(p_values), np.nan)
    mask = ~np.isnan(p_values)
    if mask.any():
        _, adj_p, _, _ = multipletests(p_values[mask], method='fdr_bh')
        adjusted[mask] = adj_p
    return adjusted


def differential_expression(
    matrix: IntensityMatrix,
    metadata: pd.DataFrame,
    conditions: Optional[Sequence[str]] = None,
    transform: Union[str, Callable, None] = 'log10',
    alpha: float = 0.05,
    fold_change_threshold: float = 0.0,
    engine: Optional[Callable] = None,
) -> DifferentialResult:
    """
    Compare two conditions entity by entity.

    Args:
        matrix: Normalized peptide or protein IntensityMatrix
        metadata: Sample table with 'sample' and 'condition'
        conditions: The two labels (a, b); auto-detected when the metadata
            has exactly two conditions. Fold change is b - a.
        transform: 'log10' (default), 'log2', 'ln', 'none' or a callable
        alpha: Significance level for BH-adjusted p-values
        fold_change_threshold: Minimum absolute fold change to be flagged
        engine: Statistics engine; defaults to ``welch_t_test``

    Returns:
        DifferentialResult

    """
    if not 0 < alpha < 1:
        raise ConfigurationError(f"alpha must be in (0, 1), got {alpha}")

    design = build_design(matrix, metadata, conditions)
    a, b = design.conditions
    transform_name = transform if isinstance(transform, str) or transform is None \
        else getattr(transform, '__name__', 'custom')
    logger.info(f"Differential expression: {b} vs {a} "
                f"({len(design.samples_b)} vs {len(design.samples_a)} samples), "
                f"transform={transform_name}")

    values = transform_matrix(matrix.values[design.samples], transform)
    arr = to_float(values)
    in_b = design.group_vector()

    engine = engine or welch_t_test
    tested = engine(arr, in_b)
    if len(tested) != len(arr) or not {'fold_change', 'p_value'} <= set(tested.columns):
        raise ConfigurationError(
            "Statistics engine must return one row per entity with "
            "'fold_change' and 'p_value'"
        )

    fold_change = np.array(tested['fold_change'], dtype=float)
    p_value = np.array(tested['p_value'], dtype=float)

    n_a = (~np.isnan(arr[:, ~in_b])).sum(axis=1)
    n_b = (~np.isnan(arr[:, in_b])).sum(axis=1)
    absent = (n_a == 0) | (n_b == 0)
    fold_change[absent] = np.nan
    p_value[absent] = np.nan

    adjusted = benjamini_hochberg(p_value)
    significant = ~np.isnan(adjusted) & (adjusted < alpha)
    if fold_change_threshold > 0:
        significant &= np.abs(np.nan_to_num(fold_change)) >= fold_change_threshold

    mean_a = _row_means(arr[:, ~in_b])
    mean_b = _row_means(arr[:, in_b])

    table = pd.DataFrame({
        'fold_change': pd.array(fold_change, dtype='Float64'),
        f'mean_{a}': pd.array(mean_a, dtype='Float64'),
        f'mean_{b}': pd.array(mean_b, dtype='Float64'),
        f'n_{a}': n_a,
        f'n_{b}': n_b,
        'p_value': pd.array(p_value, dtype='Float64'),
        'adj_p_value': pd.array(adjusted, dtype='Float64'),
        'significant': significant,
    }, index=matrix.entities)

    method_log = [
        f"Transform: {transform_name}",
        f"Design: {b} ({len(design.samples_b)}) vs {a} ({len(design.samples_a)})",
        f"Engine: {getattr(engine, '__name__', 'custom')}",
        f"Correction: Benjamini-Hochberg, alpha={alpha}",
    ]
    logger.info(f"{int(significant.sum())}/{len(table)} {matrix.level}s significant "
                f"at adjusted p < {alpha}; {int(absent.sum())} not testable")

    return DifferentialResult(
        table=table,
        design=design,
        transform=str(transform_name),
        alpha=alpha,
        fold_change_threshold=fold_change_threshold,
        method_log=method_log,
    )


def _row_means(block: np.ndarray) -> np.ndarray:
    n = (~np.isnan(block)).sum(axis=1)
    total = np.where(np.isnan(block), 0.0, block).sum(axis=1)
    return np.divide(total, n, out=np.full(len(n), np.nan), where=n > 0)
