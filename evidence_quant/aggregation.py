"""
Aggregator strategies: collapse an entries × samples block to one value per sample.

Every strategy follows the same missing-data contract:
- missing cells are ignored
- a sample column without any observed cell yields ``pd.NA``, never 0

Built-ins:
- sum: sum of observed values
- median: median of observed values
- mean / max
- topk: mean of the K most intense observed values ("high-flyer", K=3)
- median_polish: Tukey median polish on log2 values (robust to outliers)

User functions are wrapped with CallableAggregator and checked against the
contract by ``apply_aggregator``.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Union

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError
from .records import to_float

logger = logging.getLogger(__name__)


class Aggregator(ABC):
    """Abstract base for aggregation strategies."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used in logs and provenance."""

    @abstractmethod
    def aggregate(self, entries: pd.DataFrame) -> pd.Series:
        """
        Collapse contributing rows to one value per sample column.

        Args:
            entries: Rows are contributing records/peptides, columns are samples

        Returns:
            Series indexed by the columns of ``entries``

        """

    def __call__(self, entries: pd.DataFrame) -> pd.Series:
        return self.aggregate(entries)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class SumAggregator(Aggregator):
    """Sum of observed values per sample."""

    @property
    def name(self) -> str:
        return 'sum'

    def aggregate(self, entries: pd.DataFrame) -> pd.Series:
        return entries.astype(float).sum(axis=0, skipna=True, min_count=1)


class MedianAggregator(Aggregator):
    """Median of observed values per sample."""

    @property
    def name(self) -> str:
        return 'median'

    def aggregate(self, entries: pd.DataFrame) -> pd.Series:
        return entries.astype(float).median(axis=0, skipna=True)


class MeanAggregator(Aggregator):
    """Mean of observed values per sample."""

    @property
    def name(self) -> str:
        return 'mean'

    def aggregate(self, entries: pd.DataFrame) -> pd.Series:
        return entries.astype(float).mean(axis=0, skipna=True)


class MaxAggregator(Aggregator):
    """Largest observed value per sample."""

    @property
    def name(self) -> str:
        return 'max'

    def aggregate(self, entries: pd.DataFrame) -> pd.Series:
        return entries.astype(float).max(axis=0, skipna=True)


class TopKMeanAggregator(Aggregator):
    """Mean of the K most intense observed values per sample.

    Columns with fewer than K observations use however many exist.
    """

    def __init__(self, k: int = 3):
        if int(k) < 1:
            raise ConfigurationError(f"Top-K aggregation needs k >= 1, got {k}")
        self.k = int(k)

    @property
    def name(self) -> str:
        return f'top{self.k}'

    def aggregate(self, entries: pd.DataFrame) -> pd.Series:
        def top_k_mean(col):
            valid = col.dropna()
            if len(valid) == 0:
                return np.nan
            # stable sort keeps tie order deterministic
            top = valid.sort_values(ascending=False, kind='mergesort').iloc[:self.k]
            return top.mean()

        return entries.astype(float).apply(top_k_mean, axis=0)

    def __repr__(self) -> str:
        return f"TopKMeanAggregator(k={self.k})"


@dataclass
class MedianPolishResult:
    """
    Result of Tukey median polish.

    Model: y_ij = μ + α_i + β_j + ε_ij
    """
    overall: float                    # Grand effect (μ)
    row_effects: pd.Series            # Entry effects (α)
    col_effects: pd.Series            # Sample effects (β)
    residuals: pd.DataFrame           # Residual matrix (rows × samples)
    n_iterations: int
    converged: bool


def tukey_median_polish(
    matrix: pd.DataFrame,
    max_iter: int = 10,
    tol: float = 1e-4,
) -> MedianPolishResult:
    """
    Apply Tukey's median polish to an entries × sample matrix.

    Sweeps ignore missing cells. Columns without observations keep a
    missing effect.

    Args:
        matrix: Rows are entries, columns are samples (log scale)
        max_iter: Maximum number of iterations
        tol: Convergence tolerance (max absolute change in residuals)

    Returns:
        MedianPolishResult with effects and residuals

    """
    row_idx = matrix.index
    col_idx = matrix.columns

    residuals = to_float(matrix)
    observed = ~np.isnan(residuals)
    overall = 0.0
    row_effects = np.zeros(len(row_idx))
    col_effects = np.zeros(len(col_idx))

    converged = False
    iteration = 0

    for iteration in range(max_iter):
        old_residuals = residuals.copy()

        row_medians = _nanmedian(residuals, axis=1)
        residuals = residuals - row_medians[:, np.newaxis]
        center = _nanmedian(row_medians, axis=0)
        row_effects += row_medians - center
        overall += center

        col_medians = _nanmedian(residuals, axis=0)
        residuals = residuals - col_medians[np.newaxis, :]
        center = _nanmedian(col_medians, axis=0)
        col_effects += col_medians - center
        overall += center

        change = np.abs(residuals - old_residuals)
        max_change = change[observed].max() if observed.any() else 0.0
        if max_change < tol:
            converged = True
            break

    col_effects = np.where(observed.any(axis=0), col_effects, np.nan)

    if not converged:
        logger.debug(f"Median polish did not converge after {max_iter} iterations")

    return MedianPolishResult(
        overall=overall,
        row_effects=pd.Series(row_effects, index=row_idx, name='entry_effect'),
        col_effects=pd.Series(col_effects, index=col_idx, name='sample_effect'),
        residuals=pd.DataFrame(residuals, index=row_idx, columns=col_idx),
        n_iterations=iteration + 1,
        converged=converged,
    )


def _nanmedian(values: np.ndarray, axis: int) -> np.ndarray:
    """nanmedian that returns 0 for all-missing slices instead of warning."""
    values = np.atleast_1d(values)
    if values.ndim == 1:
        valid = values[~np.isnan(values)]
        return np.median(valid) if len(valid) else 0.0
    out = np.zeros(values.shape[1 - axis])
    has_data = (~np.isnan(values)).any(axis=axis)
    if has_data.any():
        taken = values[:, has_data] if axis == 0 else values[has_data, :]
        out[has_data] = np.nanmedian(taken, axis=axis)
    return out


class MedianPolishAggregator(Aggregator):
    """Tukey median polish summary on log2 intensities.

    Returns 2 ** (overall + sample effect), so the output stays on the
    linear intensity scale of the input. Zero intensities cannot be
    log-transformed and are left out of the polish; a sample observed only
    at zero summarises to 0.
    """

    def __init__(self, max_iter: int = 10, tol: float = 1e-4):
        self.max_iter = max_iter
        self.tol = tol

    @property
    def name(self) -> str:
        return 'median_polish'

    def aggregate(self, entries: pd.DataFrame) -> pd.Series:
        linear = entries.astype(float)
        log2 = np.log2(linear.where(linear > 0))
        result = tukey_median_polish(log2, max_iter=self.max_iter, tol=self.tol)
        summary = np.power(2.0, result.overall + result.col_effects)
        only_zero = linear.notna().any() & ~(linear > 0).any()
        return summary.mask(only_zero, 0.0)


class CallableAggregator(Aggregator):
    """Wrap a user-supplied function ``f(entries) -> per-sample values``."""

    def __init__(self, func: Callable, name: str = None):
        self.func = func
        self._name = name or getattr(func, '__name__', 'custom')

    @property
    def name(self) -> str:
        return self._name

    def aggregate(self, entries: pd.DataFrame) -> pd.Series:
        return self.func(entries)

    def __repr__(self) -> str:
        return f"CallableAggregator({self._name!r})"


AGGREGATORS = {
    'sum': SumAggregator,
    'median': MedianAggregator,
    'mean': MeanAggregator,
    'max': MaxAggregator,
    'topk': TopKMeanAggregator,
    'median_polish': MedianPolishAggregator,
}

_TOP_K_PATTERN = re.compile(r'^top(\d+)$')

AggregatorLike = Union[str, Aggregator, Callable]


def get_aggregator(method: AggregatorLike, top_k: int = 3) -> Aggregator:
    """
    Select an aggregation strategy by value.

    Args:
        method: Strategy name ('sum', 'median', 'mean', 'max', 'topk',
            'top<K>', 'median_polish'), an Aggregator, or a callable
        top_k: K used when method is 'topk'

    Returns:
        Aggregator instance

    """
    if isinstance(method, Aggregator):
        return method
    if isinstance(method, str):
        key = method.lower()
        match = _TOP_K_PATTERN.match(key)
        if match:
            return TopKMeanAggregator(int(match.group(1)))
        if key == 'topk':
            return TopKMeanAggregator(top_k)
        if key in AGGREGATORS:
            return AGGREGATORS[key]()
        raise ConfigurationError(
            f"Unknown aggregation method: {method}. "
            f"Must be one of: {sorted(AGGREGATORS)} or 'top<K>'"
        )
    if callable(method):
        return CallableAggregator(method)
    raise ConfigurationError(f"Cannot use {method!r} as an aggregator")


def apply_aggregator(aggregator: Aggregator, entries: pd.DataFrame) -> pd.Series:
    """
    Run a strategy on one block and enforce the missing-data contract.

    Raises:
        ConfigurationError: If the output does not cover exactly the block's
            sample columns, or reports a value for a column with no observed
            input

    """
    result = aggregator.aggregate(entries)

    if not isinstance(result, pd.Series):
        values = np.asarray(result, dtype=float).ravel()
        if len(values) != entries.shape[1]:
            raise ConfigurationError(
                f"Aggregator '{aggregator.name}' returned {len(values)} values "
                f"for {entries.shape[1]} samples"
            )
        result = pd.Series(values, index=entries.columns)
    elif not result.index.equals(entries.columns):
        if set(result.index) != set(entries.columns):
            raise ConfigurationError(
                f"Aggregator '{aggregator.name}' returned values for unexpected samples"
            )
        result = result.reindex(entries.columns)

    result = pd.to_numeric(result, errors='coerce').astype('Float64')

    no_input = ~entries.notna().any(axis=0)
    fabricated = no_input & result.notna()
    if fabricated.any():
        raise ConfigurationError(
            f"Aggregator '{aggregator.name}' reported values for samples without "
            f"observations: {list(result.index[fabricated])}"
        )

    return result
