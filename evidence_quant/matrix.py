"""Immutable entity-by-sample intensity matrix."""

import logging
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError
from .records import to_float, to_nullable

logger = logging.getLogger(__name__)

LEVELS = ('peptide', 'protein')

# Bookkeeping columns written next to the samples by ``to_frame``
ROW_INFO_COLUMNS = ('protein', 'n_records', 'n_peptides')


class IntensityMatrix:
    """
    Entity × sample intensities with explicit missing values.

    Rows are keyed by peptide or protein keys (unique, insertion order kept),
    columns by sample ids. Cells hold a real number or ``pd.NA``; zero is an
    observed value, never a stand-in for "not detected". Rows with no
    observation in any sample are dropped on construction.

    Matrices are never modified in place. Transformations such as
    normalization build a new matrix whose ``source`` points back to the
    matrix it was derived from, so before/after comparisons stay possible.

    Attributes exposed as properties return copies.
    """

    def __init__(
        self,
        values: pd.DataFrame,
        level: str = 'peptide',
        samples: Optional[Sequence[str]] = None,
        row_info: Optional[pd.DataFrame] = None,
        annotation: Optional[pd.DataFrame] = None,
        source: Optional['IntensityMatrix'] = None,
        transform: Optional[str] = None,
    ):
        if level not in LEVELS:
            raise ConfigurationError(f"Unknown matrix level '{level}'. Must be one of: {LEVELS}")

        if values.index.has_duplicates:
            dupes = values.index[values.index.duplicated()].unique().tolist()
            raise ConfigurationError(f"Duplicate {level} keys: {dupes[:5]}")

        if samples is not None:
            samples = [str(s) for s in samples]
            unknown = [c for c in values.columns if str(c) not in set(samples)]
            if unknown:
                raise ConfigurationError(f"Columns not in the sample set: {unknown}")
            values = values.rename(columns=str).reindex(columns=samples)

        data = to_nullable(values)
        empty_rows = ~data.notna().any(axis=1)
        if empty_rows.any():
            logger.debug(f"Dropping {int(empty_rows.sum())} {level} rows with no observations")
            data = data.loc[~empty_rows]
        data.index.name = level
        data.columns.name = 'sample'

        if row_info is not None:
            row_info = row_info.reindex(data.index)
            row_info.index.name = level

        self._values = data
        self._level = level
        self._row_info = row_info
        self._annotation = annotation
        self._source = source
        self._transform = transform

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        level: str = 'peptide',
        samples: Optional[Sequence[str]] = None,
    ) -> 'IntensityMatrix':
        """Build a matrix from a wide frame (index = keys, columns = samples).

        Without ``samples``, every numeric column other than the row
        bookkeeping columns is taken as a sample.
        """
        if samples is None:
            numeric = [c for c in frame.columns
                       if pd.api.types.is_numeric_dtype(frame[c]) and c not in ROW_INFO_COLUMNS]
            frame = frame[numeric]
        else:
            frame = frame[[c for c in frame.columns if str(c) in set(map(str, samples))]]
        return cls(frame, level=level, samples=samples)

    @property
    def values(self) -> pd.DataFrame:
        return self._values.copy()

    @property
    def level(self) -> str:
        return self._level

    @property
    def entities(self) -> pd.Index:
        return self._values.index.copy()

    @property
    def samples(self) -> List[str]:
        return list(self._values.columns)

    @property
    def row_info(self) -> Optional[pd.DataFrame]:
        return None if self._row_info is None else self._row_info.copy()

    @property
    def annotation(self) -> Optional[pd.DataFrame]:
        return None if self._annotation is None else self._annotation.copy()

    @property
    def source(self) -> Optional['IntensityMatrix']:
        return self._source

    @property
    def transform(self) -> Optional[str]:
        return self._transform

    @property
    def shape(self):
        return self._values.shape

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        derived = f", transform={self._transform!r}" if self._transform else ''
        return (f"IntensityMatrix(level={self._level!r}, "
                f"n_rows={len(self)}, n_samples={len(self.samples)}{derived})")

    def to_numpy(self) -> np.ndarray:
        """Float array with missing cells as NaN, for numeric kernels."""
        return to_float(self._values)

    def detected(self) -> pd.DataFrame:
        """Boolean mask, True where a value was observed."""
        return self._values.notna()

    def n_detected(self) -> pd.Series:
        """Number of detected entities per sample."""
        counts = self.detected().sum(axis=0)
        counts.name = 'n_detected'
        return counts

    def with_values(self, values: pd.DataFrame, transform: str) -> 'IntensityMatrix':
        """Derive a new matrix over the same keyspace from transformed values."""
        if not values.index.equals(self._values.index) or list(values.columns) != self.samples:
            raise ConfigurationError(
                f"Transformed values for '{transform}' do not share the source keyspace"
            )
        return IntensityMatrix(
            values,
            level=self._level,
            row_info=self._row_info,
            annotation=self._annotation,
            source=self,
            transform=transform,
        )

    def with_annotation(self, annotation: pd.DataFrame, key: Optional[str] = None) -> 'IntensityMatrix':
        """Attach an annotation table by left-merging on the entity key.

        Matrix rows and keys are not altered. Entities without a match get
        empty annotation fields; duplicate annotation keys keep the first row.

        Args:
            annotation: Table with one column holding entity keys
            key: Join column in ``annotation`` (defaults to the matrix level)

        """
        key = key or self._level
        if key not in annotation.columns:
            raise ConfigurationError(f"Annotation table has no '{key}' column")

        keys = pd.DataFrame({key: self._values.index.astype(str)})
        deduped = annotation.assign(**{key: annotation[key].astype(str)})
        n_dupes = int(deduped[key].duplicated().sum())
        if n_dupes:
            logger.info(f"Annotation has {n_dupes} duplicate keys; keeping first occurrence")
            deduped = deduped.drop_duplicates(subset=key, keep='first')

        merged = keys.merge(deduped, on=key, how='left').set_index(key)
        merged.index = self._values.index

        n_matched = int(merged.notna().any(axis=1).sum())
        logger.info(f"Annotated {n_matched}/{len(self)} {self._level} rows")

        return IntensityMatrix(
            self._values,
            level=self._level,
            row_info=self._row_info,
            annotation=merged,
            source=self._source,
            transform=self._transform,
        )

    def to_long(self) -> pd.DataFrame:
        """Tidy (entity, sample, intensity) table of observed cells."""
        long = self._values.reset_index().melt(
            id_vars=self._level, var_name='sample', value_name='intensity'
        )
        return long.dropna(subset=['intensity']).reset_index(drop=True)

    def to_frame(self) -> pd.DataFrame:
        """Wide table with row bookkeeping and annotation columns appended."""
        frame = self.values
        for extra in (self._row_info, self._annotation):
            if extra is not None:
                frame = frame.join(extra, rsuffix='_info')
        return frame
