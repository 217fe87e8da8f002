"""Tests for the peptide to protein map."""

import logging

import pandas as pd
import pytest

from evidence_quant.exceptions import DataIntegrityError
from evidence_quant.mapping import PeptideProteinMap, build_peptide_protein_map


@pytest.fixture
def evidence():
    return pd.DataFrame({
        'sequence': ['AAA', 'AAA', 'BBB', 'CCC', 'DDD', 'AAA'],
        'leading_protein': ['P1', 'P1', 'P1', 'P2', None, 'P3'],
        'protein_group': ['P1', 'P1', 'P1;P4', 'P2', None, 'P1'],
    })


class TestBuildPeptideProteinMap:
    """Tests for building the map from evidence rows."""

    def test_first_seen_wins(self, evidence):
        """Test conflicting identifiers resolve to the first-seen one."""
        mapping = build_peptide_protein_map(evidence)

        assert mapping.protein_for('AAA') == 'P1'
        assert mapping.conflicts == ('AAA',)
        assert mapping.proteins == ('P1', 'P2')

    def test_conflict_is_logged(self, evidence, caplog):
        with caplog.at_level(logging.WARNING, logger='evidence_quant.mapping'):
            build_peptide_protein_map(evidence)
        assert 'more than one leading_protein' in caplog.text

    def test_strict_raises(self, evidence):
        """Test strict mode turns a conflict into DataIntegrityError."""
        with pytest.raises(DataIntegrityError, match="1 peptides map to more than one"):
            build_peptide_protein_map(evidence, strict=True)

    def test_peptide_without_protein_unmapped(self, evidence):
        mapping = build_peptide_protein_map(evidence)
        assert 'DDD' not in mapping
        assert mapping.protein_for('DDD') is None

    def test_group_keys_are_atomic(self, evidence):
        """Test group keys stay whole; only lookups split them."""
        mapping = build_peptide_protein_map(evidence, protein_col='protein_group')

        assert mapping.protein_for('BBB') == 'P1;P4'
        assert mapping.peptides_for('P1;P4') == ('BBB',)
        assert mapping.peptides_for('P1') == ('AAA',)
        assert mapping.proteins_containing('BBB') == ['P1', 'P4']
        assert mapping.conflicts == ()
        assert mapping.id_column == 'protein_group'

    def test_deterministic(self, evidence):
        """Test repeated builds give identical maps."""
        first = build_peptide_protein_map(evidence).to_frame()
        second = build_peptide_protein_map(evidence).to_frame()
        pd.testing.assert_frame_equal(first, second)


class TestPeptideProteinMap:
    """Tests for PeptideProteinMap accessors."""

    def test_from_pairs(self):
        mapping = PeptideProteinMap.from_pairs([
            ('AAA', 'P1'), ('BBB', 'P2'), ('CCC', 'P1'), ('AAA', 'P2'),
        ])

        assert len(mapping) == 3
        assert mapping.proteins == ('P1', 'P2')
        assert mapping.peptides_for('P1') == ('AAA', 'CCC')
        assert mapping.protein_for('AAA') == 'P1'

    def test_group_sizes(self):
        """Test peptide counts per protein sum to the number of peptides."""
        mapping = PeptideProteinMap.from_pairs([('AAA', 'P1'), ('BBB', 'P1'), ('CCC', 'P2')])
        sizes = mapping.group_sizes()

        assert sizes.to_dict() == {'P1': 2, 'P2': 1}
        assert sizes.sum() == len(mapping)

    def test_to_frame(self):
        mapping = PeptideProteinMap.from_pairs([('AAA', 'P1'), ('BBB', 'P2')])
        frame = mapping.to_frame()

        assert list(frame.columns) == ['peptide', 'protein', 'id_column']
        assert frame['protein'].tolist() == ['P1', 'P2']

    def test_read_only(self):
        mapping = PeptideProteinMap.from_pairs([('AAA', 'P1')])
        with pytest.raises(TypeError):
            mapping._index['BBB'] = 0
