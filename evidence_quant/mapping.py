"""
Peptide to protein mapping.

The map is built once, while aggregating evidence to peptides, from
whichever identifier column was selected (razor/leading protein or protein
group). It is then handed unchanged to the protein rollup and to any later
peptide-level lookups.

Protein-group keys such as ``P1;P2`` are atomic: aggregation never splits
them. Only ``proteins_containing`` looks inside a group key.
"""

import logging
from collections import OrderedDict
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from .exceptions import DataIntegrityError

logger = logging.getLogger(__name__)

GROUP_SEPARATOR = ';'


class PeptideProteinMap:
    """
    Immutable relation from peptide key to exactly one protein key.

    Protein keys are stored once, in first-seen order; each peptide points at
    its protein by position.
    """

    def __init__(
        self,
        proteins: Iterable[str],
        peptide_index: Mapping[str, int],
        id_column: str = 'leading_protein',
        conflicts: Iterable[str] = (),
    ):
        self._proteins: Tuple[str, ...] = tuple(proteins)
        self._index = MappingProxyType(dict(peptide_index))
        self._id_column = id_column
        self._conflicts: Tuple[str, ...] = tuple(conflicts)

        members: Dict[str, List[str]] = OrderedDict((p, []) for p in self._proteins)
        for peptide, idx in self._index.items():
            members[self._proteins[idx]].append(peptide)
        self._members = MappingProxyType({p: tuple(peps) for p, peps in members.items()})

    @classmethod
    def from_pairs(
        cls,
        pairs: Iterable[Tuple[str, str]],
        id_column: str = 'leading_protein',
        conflicts: Iterable[str] = (),
    ) -> 'PeptideProteinMap':
        """Build a map from (peptide, protein) pairs; repeated peptides keep the first."""
        proteins: Dict[str, int] = OrderedDict()
        index: Dict[str, int] = OrderedDict()
        for peptide, protein in pairs:
            if peptide in index:
                continue
            if protein not in proteins:
                proteins[protein] = len(proteins)
            index[peptide] = proteins[protein]
        return cls(proteins.keys(), index, id_column=id_column, conflicts=conflicts)

    @property
    def proteins(self) -> Tuple[str, ...]:
        return self._proteins

    @property
    def peptides(self) -> Tuple[str, ...]:
        return tuple(self._index)

    @property
    def id_column(self) -> str:
        return self._id_column

    @property
    def conflicts(self) -> Tuple[str, ...]:
        """Peptides whose records named more than one protein."""
        return self._conflicts

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, peptide) -> bool:
        return peptide in self._index

    def __repr__(self) -> str:
        return (f"PeptideProteinMap(n_peptides={len(self)}, "
                f"n_proteins={len(self._proteins)}, id_column={self._id_column!r})")

    def protein_for(self, peptide: str) -> Optional[str]:
        """Protein key a peptide is assigned to, or None if unmapped."""
        idx = self._index.get(peptide)
        return None if idx is None else self._proteins[idx]

    def peptides_for(self, protein: str) -> Tuple[str, ...]:
        """Peptides assigned to a protein key, in first-seen order."""
        return self._members.get(protein, ())

    def proteins_containing(self, peptide: str) -> List[str]:
        """Individual protein ids behind a peptide's key.

        For razor mapping this is the single protein; for group mapping the
        group key is split into its members.
        """
        protein = self.protein_for(peptide)
        if protein is None:
            return []
        return [p for p in protein.split(GROUP_SEPARATOR) if p]

    def group_sizes(self) -> pd.Series:
        """Number of peptides per protein key."""
        sizes = pd.Series(
            {p: len(self._members[p]) for p in self._proteins}, dtype=int, name='n_peptides'
        )
        sizes.index.name = 'protein'
        return sizes

    def to_frame(self) -> pd.DataFrame:
        """(peptide, protein) table; ``id_column`` records which identifier was used."""
        return pd.DataFrame({
            'peptide': list(self._index),
            'protein': [self._proteins[i] for i in self._index.values()],
            'id_column': self._id_column,
        })


def build_peptide_protein_map(
    evidence: pd.DataFrame,
    peptide_col: str = 'sequence',
    protein_col: str = 'leading_protein',
    strict: bool = False,
) -> PeptideProteinMap:
    """
    Build the peptide → protein relation from evidence rows.

    Every peptide takes the protein identifier of its first record that has
    one. Later records naming a different identifier are a data-quality
    condition: logged, remembered in ``conflicts``, and ignored.

    Args:
        evidence: Evidence rows in their original order
        peptide_col: Column with peptide keys
        protein_col: Column with protein keys
        strict: Raise DataIntegrityError on the first conflict instead of
            falling back to the first-seen identifier

    Returns:
        PeptideProteinMap

    """
    pairs = evidence[[peptide_col, protein_col]].dropna()
    pairs = pairs.astype(str)

    first = pairs.drop_duplicates(subset=peptide_col, keep='first')
    distinct = pairs.drop_duplicates()
    n_ids = distinct.groupby(peptide_col, sort=False)[protein_col].size()
    conflicting = n_ids[n_ids > 1].index.tolist()

    if conflicting:
        if strict:
            raise DataIntegrityError(
                f"{len(conflicting)} peptides map to more than one {protein_col}: "
                f"{conflicting[:5]}"
            )
        logger.warning(
            f"{len(conflicting)} peptides map to more than one {protein_col}; "
            f"keeping the first-seen identifier"
        )
        for peptide in conflicting[:5]:
            ids = distinct.loc[distinct[peptide_col] == peptide, protein_col].tolist()
            logger.debug(f"  {peptide}: {ids}")
        if len(conflicting) > 5:
            logger.debug(f"  ... and {len(conflicting) - 5} more")

    mapping = PeptideProteinMap.from_pairs(
        zip(first[peptide_col], first[protein_col]),
        id_column=protein_col,
        conflicts=conflicting,
    )

    logger.info(f"Mapped {len(mapping)} peptides to {len(mapping.proteins)} "
                f"{'protein groups' if protein_col == 'protein_group' else 'proteins'}")

    return mapping
