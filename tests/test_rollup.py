"""Tests for evidence to peptide and peptide to protein rollup."""

import numpy as np
import pandas as pd
import pytest

from evidence_quant.exceptions import ConfigurationError, EmptyResultError
from evidence_quant.mapping import PeptideProteinMap
from evidence_quant.matrix import IntensityMatrix
from evidence_quant.rollup import rollup_to_peptides, rollup_to_proteins


@pytest.fixture
def metadata():
    return pd.DataFrame({
        'sample': ['S1', 'S2', 'S3'],
        'condition': ['A', 'A', 'B'],
    })


@pytest.fixture
def evidence():
    return pd.DataFrame({
        'sequence': ['AAA', 'AAA', 'AAA', 'BBB', 'BBB', 'CCC', 'DDD', 'EEE'],
        'modified_sequence': ['_AAA_', '_AAA_', '_A(ox)AA_', 'BBB', 'BBB', 'CCC', 'DDD', 'EEE'],
        'leading_protein': ['P1', 'P1', 'P1', 'P1', 'P1', 'P2', None, 'P3'],
        'protein_group': ['P1', 'P1', 'P1', 'P1', 'P1', 'P2;P5', None, 'P3'],
        'sample': ['S1', 'S1', 'S2', 'S1', 'S2', 'S3', 'S1', 'S9'],
        'intensity': [100.0, 50.0, 200.0, 10.0, np.nan, 30.0, 5.0, 40.0],
    })


class TestRollupToPeptides:
    """Tests for the peptide aggregation engine."""

    def test_sum_per_sample(self, evidence, metadata):
        """Test records of one peptide in one sample are summed."""
        result = rollup_to_peptides(evidence, metadata)
        values = result.matrix.values

        assert values.loc['AAA', 'S1'] == 150.0
        assert values.loc['AAA', 'S2'] == 200.0
        assert values.loc['AAA', 'S3'] is pd.NA
        assert values.loc['BBB', 'S2'] is pd.NA

    def test_columns_equal_sample_set(self, evidence, metadata):
        """Test the column set is exactly the sample set, in order."""
        result = rollup_to_peptides(evidence, metadata)

        assert result.matrix.samples == ['S1', 'S2', 'S3']
        assert result.matrix.values.notna().any(axis=1).all()
        assert not result.matrix.entities.has_duplicates

    def test_samples_outside_metadata_dropped(self, evidence, metadata):
        """Test records for unknown samples are dropped, not fatal."""
        result = rollup_to_peptides(evidence, metadata)

        assert result.dropped_samples == ['S9']
        assert 'EEE' not in result.matrix.entities

    def test_modified_sequence_key(self, evidence, metadata):
        """Test modified forms become separate peptides."""
        result = rollup_to_peptides(evidence, metadata, sequence_key='modified')
        entities = list(result.matrix.entities)

        assert '_AAA_' in entities
        assert '_A(ox)AA_' in entities
        assert result.matrix.values.loc['_AAA_', 'S1'] == 150.0

    def test_protein_group_key(self, evidence, metadata):
        result = rollup_to_peptides(evidence, metadata, protein_key='group')
        assert result.mapping.protein_for('CCC') == 'P2;P5'

    def test_row_info(self, evidence, metadata):
        """Test row bookkeeping records the mapped protein and record count."""
        result = rollup_to_peptides(evidence, metadata)
        info = result.matrix.row_info

        assert info.loc['AAA', 'protein'] == 'P1'
        assert info.loc['AAA', 'n_records'] == 3
        assert pd.isna(info.loc['DDD', 'protein'])

    def test_median_method(self, evidence, metadata):
        result = rollup_to_peptides(evidence, metadata, method='median')
        assert result.matrix.values.loc['AAA', 'S1'] == 75.0
        assert result.matrix.transform == 'median of evidence by sequence'

    def test_no_shared_samples_raises(self, evidence):
        metadata = pd.DataFrame({'sample': ['X1'], 'condition': ['A']})
        with pytest.raises(EmptyResultError):
            rollup_to_peptides(evidence, metadata)

    def test_unknown_key_raises(self, evidence, metadata):
        with pytest.raises(ConfigurationError, match="Unknown sequence key"):
            rollup_to_peptides(evidence, metadata, sequence_key='charge')

    def test_missing_column_raises(self, evidence, metadata):
        with pytest.raises(ConfigurationError, match="protein_group"):
            rollup_to_peptides(evidence.drop(columns='protein_group'), metadata,
                               protein_key='protein_group')

    def test_all_missing_peptides_raise(self, metadata):
        """Test that only-missing intensities yield no peptides."""
        evidence = pd.DataFrame({
            'sequence': ['AAA'],
            'leading_protein': ['P1'],
            'sample': ['S1'],
            'intensity': [np.nan],
        })
        with pytest.raises(EmptyResultError):
            rollup_to_peptides(evidence, metadata)


class TestRollupToProteins:
    """Tests for the protein aggregation engine."""

    @pytest.fixture
    def peptides(self):
        values = pd.DataFrame({
            'S1': [10.0, 20.0, 30.0, 40.0, 5.0],
            'S2': [np.nan, 2.0, 4.0, np.nan, 7.0],
        }, index=['p1', 'p2', 'p3', 'p4', 'p5'])
        return IntensityMatrix(values, level='peptide')

    @pytest.fixture
    def mapping(self):
        return PeptideProteinMap.from_pairs([
            ('p1', 'P1'), ('p2', 'P1'), ('p3', 'P1'), ('p4', 'P1'), ('p5', 'P2;P3'),
        ])

    def test_top3_default(self, peptides, mapping):
        """Test the default is the mean of the 3 most intense peptides per sample."""
        proteins = rollup_to_proteins(peptides, mapping)
        values = proteins.values

        assert values.loc['P1', 'S1'] == pytest.approx(30.0)
        assert values.loc['P1', 'S2'] == pytest.approx(3.0)

    def test_group_key_atomic(self, peptides, mapping):
        proteins = rollup_to_proteins(peptides, mapping, method='sum')
        assert 'P2;P3' in proteins.entities
        assert proteins.values.loc['P2;P3', 'S2'] == 7.0

    def test_rows_are_map_targets(self, peptides, mapping):
        """Test every output row is a map target and peptide counts add up."""
        proteins = rollup_to_proteins(peptides, mapping)

        assert set(proteins.entities) <= set(mapping.proteins)
        assert proteins.row_info['n_peptides'].sum() == len(peptides)

    def test_min_peptides(self, peptides, mapping):
        proteins = rollup_to_proteins(peptides, mapping, min_peptides=2)
        assert list(proteins.entities) == ['P1']

    def test_unmapped_peptides_skipped(self, peptides):
        mapping = PeptideProteinMap.from_pairs([('p1', 'P1')])
        proteins = rollup_to_proteins(peptides, mapping, method='sum')

        assert list(proteins.entities) == ['P1']
        assert proteins.values.loc['P1', 'S2'] is pd.NA

    def test_provenance(self, peptides, mapping):
        proteins = rollup_to_proteins(peptides, mapping, method='median')

        assert proteins.level == 'protein'
        assert proteins.source is peptides
        assert proteins.samples == peptides.samples
        assert proteins.transform == 'median of peptides by leading_protein'

    def test_no_proteins_raises(self, peptides, mapping):
        with pytest.raises(EmptyResultError):
            rollup_to_proteins(peptides, mapping, min_peptides=10)

    def test_callable_method(self, peptides, mapping):
        """Test a user function honoring the missing-data contract."""
        def lowest(entries):
            return entries.astype(float).min(axis=0)

        proteins = rollup_to_proteins(peptides, mapping, method=lowest)
        assert proteins.values.loc['P1', 'S1'] == 10.0
