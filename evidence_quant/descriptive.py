"""
Descriptive statistics for intensity matrices.

Covers what the quality-control views and clustering need:
- detection per condition and per sample
- per-condition mean and variance of each entity
- pairwise Jaccard similarity of sample detection sets
- pairwise-complete Pearson correlation and correlation distance
- average-linkage hierarchical clustering of samples or entities
- PCA sample coordinates
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd
import scipy.cluster.hierarchy as sch
from scipy.spatial.distance import squareform
from sklearn.decomposition import PCA

from .exceptions import ConfigurationError
from .matrix import IntensityMatrix
from .records import CONDITION_COL, SAMPLE_COL, condition_levels, validate_sample_metadata

logger = logging.getLogger(__name__)


@dataclass
class Dendrogram:
    """Hierarchical clustering result for a rendering collaborator."""
    linkage: np.ndarray               # SciPy linkage matrix ((n-1) × 4)
    order: np.ndarray                 # Leaf positions in dendrogram order
    labels: List[str]                 # Labels in original order
    method: str

    @property
    def ordered_labels(self) -> List[str]:
        return [self.labels[i] for i in self.order]


@dataclass
class PCAResult:
    """Sample coordinates in principal component space."""
    scores: pd.DataFrame              # samples × PCs
    explained_variance_ratio: pd.Series
    n_entities_used: int


def _conditions_for(matrix: IntensityMatrix, metadata: pd.DataFrame) -> pd.Series:
    """Condition per matrix column, checking the sample sets agree."""
    meta = validate_sample_metadata(metadata)
    conditions = meta.set_index(SAMPLE_COL)[CONDITION_COL]
    unknown = [s for s in matrix.samples if s not in conditions.index]
    if unknown:
        raise ConfigurationError(f"Matrix samples missing from metadata: {unknown}")
    return conditions.reindex(matrix.samples)


def detection_table(matrix: IntensityMatrix, metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Boolean entity × condition table.

    True iff at least one sample of the condition has an observed value for
    the entity. Columns follow the first-seen order of conditions.
    """
    conditions = _conditions_for(matrix, metadata)
    levels = [c for c in condition_levels(metadata) if c in set(conditions)]

    detected = matrix.detected()
    table = detected.T.groupby(conditions.to_numpy(), sort=False).any().T
    table = table.reindex(columns=levels).astype(bool)
    table.columns.name = CONDITION_COL
    return table


def sample_detection_counts(matrix: IntensityMatrix, metadata: pd.DataFrame) -> pd.DataFrame:
    """Number of detected entities per sample, with its condition."""
    conditions = _conditions_for(matrix, metadata)
    return pd.DataFrame({
        SAMPLE_COL: matrix.samples,
        CONDITION_COL: conditions.to_numpy(),
        'n_detected': matrix.n_detected().to_numpy(),
    })


def condition_summary(matrix: IntensityMatrix, metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Per-entity, per-condition count, mean and variance of observed values.

    Mean and variance are missing when the condition has no observation;
    variance is 0 with exactly one observation and the sample variance
    (ddof=1) otherwise.

    Returns:
        Tidy DataFrame with columns [<level>, condition, n, mean, variance]

    """
    conditions = _conditions_for(matrix, metadata)
    levels = [c for c in condition_levels(metadata) if c in set(conditions)]
    arr = matrix.to_numpy()

    frames = []
    for condition in levels:
        block = arr[:, (conditions == condition).to_numpy()]
        observed = ~np.isnan(block)
        n = observed.sum(axis=1)
        filled = np.where(observed, block, 0.0)
        mean = np.divide(filled.sum(axis=1), n, out=np.full(len(n), np.nan), where=n > 0)
        sq_dev = np.where(observed, (block - mean[:, np.newaxis]) ** 2, 0.0).sum(axis=1)
        variance = np.divide(sq_dev, n - 1, out=np.full(len(n), np.nan), where=n > 1)
        variance[n == 1] = 0.0

        frames.append(pd.DataFrame({
            matrix.level: matrix.entities,
            CONDITION_COL: condition,
            'n': n,
            'mean': pd.array(mean, dtype='Float64'),
            'variance': pd.array(variance, dtype='Float64'),
        }))

    summary = pd.concat(frames, ignore_index=True)
    order = {key: i for i, key in enumerate(matrix.entities)}
    summary['_row'] = summary[matrix.level].map(order)
    summary = summary.sort_values('_row', kind='mergesort').drop(columns='_row')
    return summary.reset_index(drop=True)


def jaccard_matrix(matrix: IntensityMatrix) -> pd.DataFrame:
    """
    Pairwise Jaccard similarity of sample detection sets.

    |A ∩ B| / |A ∪ B| over the entities observed in each sample. Pairs with
    an empty union are undefined (``pd.NA``).
    """
    det = matrix.detected().to_numpy().astype(np.int64)
    intersection = det.T @ det
    sizes = det.sum(axis=0)
    union = sizes[:, np.newaxis] + sizes[np.newaxis, :] - intersection
    similarity = np.divide(
        intersection, union, out=np.full(union.shape, np.nan), where=union > 0
    )
    samples = matrix.samples
    return pd.DataFrame(similarity, index=samples, columns=samples).astype('Float64')


def jaccard_distribution(
    matrix: IntensityMatrix,
    metadata: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Jaccard similarity for every unordered sample pair.

    Undefined pairs (empty union) are excluded. With metadata, a
    ``same_condition`` column tells within- from between-condition pairs.
    """
    sim = jaccard_matrix(matrix)
    samples = matrix.samples
    rows = []
    for i in range(len(samples)):
        for j in range(i + 1, len(samples)):
            value = sim.iat[i, j]
            if pd.isna(value):
                continue
            rows.append((samples[i], samples[j], float(value)))

    pairs = pd.DataFrame(rows, columns=['sample_a', 'sample_b', 'jaccard'])
    n_undefined = len(samples) * (len(samples) - 1) // 2 - len(pairs)
    if n_undefined:
        logger.info(f"Excluded {n_undefined} sample pairs with no detections")

    if metadata is not None:
        conditions = _conditions_for(matrix, metadata)
        pairs['same_condition'] = (
            pairs['sample_a'].map(conditions).to_numpy()
            == pairs['sample_b'].map(conditions).to_numpy()
        )
    return pairs


def jaccard_histogram(distribution: pd.DataFrame, bin_width: float = 0.05) -> pd.DataFrame:
    """
    Histogram of a Jaccard distribution over [0, 1].

    Args:
        distribution: Output of ``jaccard_distribution``
        bin_width: Width of each bin, in (0, 1]

    Returns:
        DataFrame with bin_start, bin_end and count

    """
    if not 0 < bin_width <= 1:
        raise ConfigurationError(f"bin_width must be in (0, 1], got {bin_width}")
    n_bins = int(math.ceil(round(1.0 / bin_width, 9)))
    edges = np.minimum(np.arange(n_bins + 1) * bin_width, 1.0)
    counts, edges = np.histogram(distribution['jaccard'].to_numpy(dtype=float), bins=edges)
    return pd.DataFrame({'bin_start': edges[:-1], 'bin_end': edges[1:], 'count': counts})


def _log_values(matrix: IntensityMatrix, log_transform: bool) -> np.ndarray:
    arr = matrix.to_numpy()
    if log_transform:
        with np.errstate(divide='ignore', invalid='ignore'):
            arr = np.log2(arr)
        arr[~np.isfinite(arr)] = np.nan
    return arr


def correlation_matrix(
    matrix: IntensityMatrix,
    min_periods: int = 2,
    log_transform: bool = False,
) -> pd.DataFrame:
    """
    Pairwise-complete Pearson correlation between samples.

    Each pair uses only entities observed in both samples. The result is
    symmetric with a diagonal of exactly 1; pairs with fewer than
    ``min_periods`` shared observations are ``pd.NA``.

    Args:
        matrix: IntensityMatrix
        min_periods: Minimum shared observations per pair
        log_transform: Correlate log2 intensities (non-positive -> missing)

    """
    arr = _log_values(matrix, log_transform)
    samples = matrix.samples
    corr = pd.DataFrame(arr, columns=samples).corr(method='pearson', min_periods=min_periods)
    values = corr.to_numpy(copy=True)
    values = np.where(np.isnan(values), np.nan, (values + values.T) / 2.0)
    np.fill_diagonal(values, 1.0)
    return pd.DataFrame(values, index=samples, columns=samples).astype('Float64')


def correlation_distance(correlation: pd.DataFrame) -> pd.DataFrame:
    """1 - r, the clustering distance derived from a correlation matrix."""
    return 1 - correlation


def _cluster(distance: np.ndarray, labels: List[str], method: str) -> Dendrogram:
    if len(labels) < 2:
        return Dendrogram(np.empty((0, 4)), np.arange(len(labels)), list(labels), method)
    distance = np.clip(distance, 0.0, 2.0)
    np.fill_diagonal(distance, 0.0)
    condensed = squareform(distance, checks=False)
    link = sch.linkage(condensed, method=method)
    return Dendrogram(link, sch.leaves_list(link), list(labels), method)


def cluster_samples(correlation: pd.DataFrame, method: str = 'average') -> Dendrogram:
    """
    Hierarchical clustering of samples on correlation distance.

    Undefined correlations are taken as 0, i.e. a distance of 1.
    """
    corr = correlation.to_numpy(dtype=float, na_value=np.nan)
    n_undefined = int(np.isnan(corr).sum() // 2)
    if n_undefined:
        logger.info(f"{n_undefined} sample pairs without a correlation treated as distance 1")
    distance = 1.0 - np.nan_to_num(corr, nan=0.0)
    return _cluster(distance, [str(c) for c in correlation.columns], method)


def cluster_entities(
    matrix: IntensityMatrix,
    method: str = 'average',
    min_periods: int = 2,
    max_entities: Optional[int] = 2000,
    log_transform: bool = False,
) -> Dendrogram:
    """
    Hierarchical clustering of entities (rows) on correlation distance.

    With more than ``max_entities`` rows only the most variable ones are
    clustered; the Dendrogram labels list the entities actually used.
    """
    arr = _log_values(matrix, log_transform)
    labels = [str(e) for e in matrix.entities]

    if max_entities is not None and len(labels) > max_entities:
        observed = (~np.isnan(arr)).sum(axis=1)
        var = np.full(len(labels), -np.inf)
        enough = observed >= 2
        var[enough] = np.nanvar(arr[enough], axis=1)
        idx = np.sort(np.argsort(-var, kind='mergesort')[:max_entities])
        logger.info(f"Clustering the {max_entities} most variable of {len(labels)} {matrix.level}s")
        arr = arr[idx]
        labels = [labels[i] for i in idx]

    corr = pd.DataFrame(arr.T, columns=range(len(labels))).corr(min_periods=min_periods)
    distance = 1.0 - np.nan_to_num(corr.to_numpy(), nan=0.0)
    return _cluster(distance, labels, method)


def pca_scores(
    matrix: IntensityMatrix,
    n_components: int = 2,
    log_transform: bool = True,
    max_missing_fraction: float = 0.5,
) -> Optional[PCAResult]:
    """
    Project samples onto their leading principal components.

    Entities missing in more than ``max_missing_fraction`` of samples are
    dropped and remaining gaps are filled with the entity median.

    Returns:
        PCAResult, or None when too few entities remain

    """
    arr = _log_values(matrix, log_transform)
    frame = pd.DataFrame(arr.T, index=matrix.samples)
    frame = frame.dropna(axis=1, thresh=int(math.ceil(len(frame) * (1 - max_missing_fraction))))
    frame = frame.fillna(frame.median())

    n_components = min(n_components, len(frame))
    if frame.shape[1] < n_components or n_components < 1:
        logger.warning(f"Too few {matrix.level}s for PCA: {frame.shape[1]}")
        return None

    pca = PCA(n_components=n_components, svd_solver='full')
    scores = pca.fit_transform(frame.to_numpy())
    names = [f'PC{i+1}' for i in range(n_components)]

    return PCAResult(
        scores=pd.DataFrame(scores, index=frame.index, columns=names),
        explained_variance_ratio=pd.Series(pca.explained_variance_ratio_, index=names),
        n_entities_used=frame.shape[1],
    )
