"""
End-to-end quantification pipeline.

Stages:
1. Evidence → peptide matrix (+ peptide → protein map)
2. Peptide → protein matrix
3. Normalization of the protein matrix
4. Descriptive statistics (detection, Jaccard, correlation, clustering, PCA)
5. Two-condition differential expression (when enabled)

Each stage consumes only the artifacts of the previous stage plus the
sample metadata.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import pandas as pd

from .config import _deep_merge, default_config
from .descriptive import (
    Dendrogram,
    PCAResult,
    cluster_samples,
    condition_summary,
    correlation_matrix,
    detection_table,
    jaccard_distribution,
    jaccard_histogram,
    pca_scores,
)
from .differential import DifferentialResult, differential_expression
from .mapping import PeptideProteinMap
from .matrix import IntensityMatrix
from .normalization import normalize_matrix
from .records import validate_sample_metadata
from .rollup import rollup_to_peptides, rollup_to_proteins

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Artifacts of a full pipeline run."""

    peptides: IntensityMatrix
    mapping: PeptideProteinMap
    proteins: IntensityMatrix
    normalized: IntensityMatrix
    detection: pd.DataFrame
    condition_summary: pd.DataFrame
    correlation: pd.DataFrame
    dendrogram: Dendrogram
    jaccard: pd.DataFrame
    jaccard_histogram: pd.DataFrame
    pca: Optional[PCAResult] = None
    differential: Optional[DifferentialResult] = None
    method_log: List[str] = field(default_factory=list)


def run_pipeline(
    evidence: pd.DataFrame,
    metadata: pd.DataFrame,
    config: Optional[dict] = None,
    annotation: Optional[pd.DataFrame] = None,
) -> PipelineResult:
    """
    Run all stages on one experiment.

    Args:
        evidence: Filtered evidence records with canonical columns
        metadata: Sample table with 'sample' and 'condition'
        config: Overrides for ``DEFAULT_CONFIG`` (deep-merged)
        annotation: Optional protein annotation table keyed by 'protein'

    Returns:
        PipelineResult

    """
    config = _deep_merge(default_config(), config or {})
    metadata = validate_sample_metadata(metadata)
    method_log = []

    data_cfg = config['data']
    pep_cfg = config['peptide_rollup']
    prot_cfg = config['protein_rollup']
    norm_cfg = config['normalization']
    stats_cfg = config['statistics']
    de_cfg = config['differential']

    # Stage 1: evidence → peptides
    peptide_result = rollup_to_peptides(
        evidence,
        metadata,
        sequence_key=data_cfg['sequence_key'],
        protein_key=data_cfg['protein_key'],
        method=pep_cfg['method'],
        top_k=pep_cfg.get('top_k', 3),
        strict=data_cfg.get('strict', False),
    )
    peptides = peptide_result.matrix
    mapping = peptide_result.mapping
    method_log.append(f"Peptide rollup: {peptides.transform} -> {len(peptides)} peptides")
    if peptide_result.dropped_samples:
        method_log.append(
            f"Dropped evidence from {len(peptide_result.dropped_samples)} samples not in metadata"
        )
    if mapping.conflicts:
        method_log.append(
            f"Warning: {len(mapping.conflicts)} peptides with conflicting protein ids "
            "(first-seen kept)"
        )

    # Stage 2: peptides → proteins
    proteins = rollup_to_proteins(
        peptides,
        mapping,
        method=prot_cfg['method'],
        top_k=prot_cfg.get('top_k', 3),
        min_peptides=prot_cfg.get('min_peptides', 1),
    )
    if annotation is not None:
        proteins = proteins.with_annotation(annotation, key='protein')
    method_log.append(f"Protein rollup: {proteins.transform} -> {len(proteins)} proteins")

    # Stage 3: normalization
    if norm_cfg.get('enabled', True):
        normalized = normalize_matrix(
            proteins, method=norm_cfg['method'], target=norm_cfg.get('target', 'mean')
        )
        method_log.append(f"Normalization: {normalized.transform}")
    else:
        normalized = proteins
        method_log.append("Normalization: skipped")

    # Stage 4: descriptive statistics
    detection = detection_table(normalized, metadata)
    summary = condition_summary(normalized, metadata)
    correlation = correlation_matrix(
        normalized,
        min_periods=stats_cfg.get('min_periods', 2),
        log_transform=stats_cfg.get('log_transform', True),
    )
    dendrogram = cluster_samples(correlation, method=stats_cfg.get('linkage', 'average'))
    jaccard = jaccard_distribution(normalized, metadata)
    histogram = jaccard_histogram(jaccard, bin_width=stats_cfg.get('jaccard_bin_width', 0.05))
    pca = pca_scores(normalized, n_components=stats_cfg.get('pca_components', 2),
                     log_transform=stats_cfg.get('log_transform', True))
    method_log.append(
        f"Statistics: detection over {detection.shape[1]} conditions, "
        f"{len(jaccard)} Jaccard pairs, {stats_cfg.get('linkage', 'average')} linkage"
    )

    # Stage 5: differential expression
    differential = None
    if de_cfg.get('enabled', True):
        differential = differential_expression(
            normalized,
            metadata,
            conditions=de_cfg.get('conditions'),
            transform=de_cfg.get('transform', 'log10'),
            alpha=de_cfg.get('alpha', 0.05),
            fold_change_threshold=de_cfg.get('fold_change_threshold', 0.0),
        )
        method_log.extend(f"Differential expression: {line}"
                          for line in differential.method_log)
        method_log.append(f"Differential expression: {differential.n_significant} significant")

    logger.info("Pipeline complete")
    for step in method_log:
        logger.info(f"  {step}")

    return PipelineResult(
        peptides=peptides,
        mapping=mapping,
        proteins=proteins,
        normalized=normalized,
        detection=detection,
        condition_summary=summary,
        correlation=correlation,
        dendrogram=dendrogram,
        jaccard=jaccard,
        jaccard_histogram=histogram,
        pca=pca,
        differential=differential,
        method_log=method_log,
    )


def generate_pipeline_metadata(
    config: dict,
    result: PipelineResult,
    metadata: pd.DataFrame,
    input_files: List[str],
) -> dict:
    """Build the provenance dictionary written as metadata.json.

    Contains the package version, processing timestamp, input files, a
    sample summary, matrix sizes, the processing parameters and the method
    log of the run.
    """
    try:
        from importlib.metadata import version
        pipeline_version = version('evidence-quant')
    except Exception:
        pipeline_version = 'development'

    sample_metadata = {
        'n_samples': len(metadata),
        'samples': metadata['sample'].tolist(),
        'conditions': metadata['condition'].value_counts(sort=False).to_dict(),
    }

    processing_parameters = {
        section: config.get(section, {})
        for section in ('data', 'peptide_rollup', 'protein_rollup', 'normalization',
                        'statistics', 'differential', 'output')
    }

    return {
        'pipeline_version': pipeline_version,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'sample_metadata': sample_metadata,
        'matrices': {
            'n_peptides': len(result.peptides),
            'n_proteins': len(result.proteins),
            'n_mapping_conflicts': len(result.mapping.conflicts),
            'protein_key': result.mapping.id_column,
        },
        'processing_parameters': processing_parameters,
        'method_log': result.method_log,
        'n_significant': None if result.differential is None else result.differential.n_significant,
    }
