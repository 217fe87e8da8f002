"""
Sample-wise normalization of intensity matrices.

A normalizer rescales (linear data) or shifts (log data) each sample column
so that a central statistic of its observed values becomes equal across
samples. Normalization never adds or removes detections: the result must
keep the exact missing pattern of its input, and the input matrix is kept
as the ``source`` of the result for before/after comparisons.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Union

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError
from .matrix import IntensityMatrix
from .records import to_float

logger = logging.getLogger(__name__)

CENTERS = ('median', 'mean', 'sum')
TARGETS = ('mean', 'median')
MODES = ('scale', 'shift')


class Normalizer(ABC):
    """Abstract base for normalization strategies."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used in logs and provenance."""

    @abstractmethod
    def normalize(self, values: pd.DataFrame) -> pd.DataFrame:
        """Return a same-shaped frame with normalized values."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


def _column_centers(arr: np.ndarray, center: str) -> np.ndarray:
    """Per-column central value over observed cells; NaN for empty columns."""
    has_data = (~np.isnan(arr)).any(axis=0)
    centers = np.full(arr.shape[1], np.nan)
    if not has_data.any():
        return centers
    observed = arr[:, has_data]
    if center == 'median':
        centers[has_data] = np.nanmedian(observed, axis=0)
    elif center == 'mean':
        centers[has_data] = np.nanmean(observed, axis=0)
    else:
        centers[has_data] = np.nansum(observed, axis=0)
    return centers


class MedianNormalizer(Normalizer):
    """
    Equalize per-sample central values.

    Args:
        center: Per-sample statistic ('median', 'mean' or 'sum')
        target: How the common target is derived from the per-sample
            statistics ('mean' or 'median')
        mode: 'scale' multiplies each column (linear intensities);
            'shift' adds an offset (log intensities)

    """

    def __init__(self, center: str = 'median', target: str = 'mean', mode: str = 'scale'):
        for value, allowed, label in ((center, CENTERS, 'center'),
                                      (target, TARGETS, 'target'),
                                      (mode, MODES, 'mode')):
            if value not in allowed:
                raise ConfigurationError(
                    f"Unknown normalization {label}: {value}. Must be one of: {allowed}"
                )
        self.center = center
        self.target = target
        self.mode = mode

    @property
    def name(self) -> str:
        if self.center == 'sum':
            return 'total intensity'
        return self.center if self.mode == 'scale' else f'{self.center} shift'

    def normalize(self, values: pd.DataFrame) -> pd.DataFrame:
        arr = to_float(values)
        centers = _column_centers(arr, self.center)

        usable = np.isfinite(centers)
        if self.mode == 'scale':
            usable &= centers != 0
        skipped = [s for s, ok in zip(values.columns, usable) if not ok]
        if skipped:
            logger.warning(f"Leaving {len(skipped)} samples unnormalized "
                           f"(no usable {self.center}): {skipped[:5]}")
        if not usable.any():
            return values.copy()

        if self.target == 'mean':
            target = np.mean(centers[usable])
        else:
            target = np.median(centers[usable])

        if self.mode == 'scale':
            factors = np.where(usable, target / np.where(usable, centers, 1.0), 1.0)
            result = arr * factors[np.newaxis, :]
        else:
            offsets = np.where(usable, target - np.where(usable, centers, 0.0), 0.0)
            result = arr + offsets[np.newaxis, :]

        logger.debug(f"{self.name} normalization target: {target:.4g}")

        return pd.DataFrame(result, index=values.index, columns=values.columns).astype('Float64')

    def __repr__(self) -> str:
        return (f"MedianNormalizer(center={self.center!r}, target={self.target!r}, "
                f"mode={self.mode!r})")


class TotalIntensityNormalizer(MedianNormalizer):
    """Scale every sample to the same total observed intensity."""

    def __init__(self, target: str = 'mean'):
        super().__init__(center='sum', target=target, mode='scale')

    def __repr__(self) -> str:
        return f"TotalIntensityNormalizer(target={self.target!r})"


class IdentityNormalizer(Normalizer):
    """Leave values unchanged (normalization switched off)."""

    @property
    def name(self) -> str:
        return 'none'

    def normalize(self, values: pd.DataFrame) -> pd.DataFrame:
        return values.copy()


class CallableNormalizer(Normalizer):
    """Wrap a user function ``f(values) -> values`` of the same shape."""

    def __init__(self, func: Callable, name: str = None):
        self.func = func
        self._name = name or getattr(func, '__name__', 'custom')

    @property
    def name(self) -> str:
        return self._name

    def normalize(self, values: pd.DataFrame) -> pd.DataFrame:
        return self.func(values)

    def __repr__(self) -> str:
        return f"CallableNormalizer({self._name!r})"


NORMALIZERS = {
    'median': dict(center='median', mode='scale'),
    'median_shift': dict(center='median', mode='shift'),
    'mean': dict(center='mean', mode='scale'),
    'mean_shift': dict(center='mean', mode='shift'),
}

NormalizerLike = Union[str, Normalizer, Callable]


def get_normalizer(method: NormalizerLike, target: str = 'mean') -> Normalizer:
    """
    Select a normalization strategy by value.

    Args:
        method: 'median', 'median_shift', 'mean', 'mean_shift', 'total', 'none',
            a Normalizer instance, or a callable
        target: Target rule for the built-in normalizers

    """
    if isinstance(method, Normalizer):
        return method
    if isinstance(method, str):
        if method == 'none':
            return IdentityNormalizer()
        if method == 'total':
            return TotalIntensityNormalizer(target=target)
        if method in NORMALIZERS:
            return MedianNormalizer(target=target, **NORMALIZERS[method])
        raise ConfigurationError(
            f"Unknown normalization method: {method}. "
            f"Must be one of: {sorted(NORMALIZERS) + ['none', 'total']}"
        )
    if callable(method):
        return CallableNormalizer(method)
    raise ConfigurationError(f"Cannot use {method!r} as a normalizer")


def normalize_matrix(
    matrix: IntensityMatrix,
    method: NormalizerLike = 'median',
    target: str = 'mean',
) -> IntensityMatrix:
    """
    Normalize a matrix, returning a new matrix derived from it.

    Args:
        matrix: Peptide or protein IntensityMatrix
        method: Normalization strategy (name, Normalizer or callable)
        target: Target rule for the built-in normalizers

    Returns:
        New IntensityMatrix with ``source`` set to ``matrix``

    Raises:
        ConfigurationError: If the strategy changes the shape, keys or
            missing pattern of the matrix

    """
    normalizer = get_normalizer(method, target=target)
    logger.info(f"Applying {normalizer.name} normalization to "
                f"{len(matrix)} {matrix.level}s × {len(matrix.samples)} samples")

    values = matrix.values
    result = normalizer.normalize(values)

    if not isinstance(result, pd.DataFrame):
        arr = np.asarray(result, dtype=float)
        if arr.shape != values.shape:
            raise ConfigurationError(
                f"Normalizer '{normalizer.name}' returned shape {arr.shape}, "
                f"expected {values.shape}"
            )
        result = pd.DataFrame(arr, index=values.index, columns=values.columns)

    if result.shape != values.shape or not result.index.equals(values.index) \
            or list(result.columns) != list(values.columns):
        raise ConfigurationError(
            f"Normalizer '{normalizer.name}' changed the matrix keyspace"
        )

    result = result.apply(pd.to_numeric, errors='coerce').astype('Float64')
    changed = result.notna().to_numpy() != values.notna().to_numpy()
    if changed.any():
        raise ConfigurationError(
            f"Normalizer '{normalizer.name}' changed the missing-value pattern "
            f"in {int(changed.sum())} cells"
        )

    return matrix.with_values(result, transform=f'{normalizer.name} normalization')
