"""
evidence-quant: multi-level quantification of label-free proteomics evidence

Aggregates per-record intensities (e.g. MaxQuant evidence.txt) into peptide
and protein intensity matrices, normalizes them across samples, and derives
descriptive statistics and two-condition differential expression.
"""

__version__ = "0.1.0"

from .exceptions import (
    EvidenceQuantError,
    ConfigurationError,
    AmbiguousConditionsError,
    DataIntegrityError,
    EmptyResultError,
)
from .records import (
    MeasurementRecord,
    records_to_frame,
)
from .matrix import IntensityMatrix
from .aggregation import (
    Aggregator,
    SumAggregator,
    MedianAggregator,
    MeanAggregator,
    MaxAggregator,
    TopKMeanAggregator,
    MedianPolishAggregator,
    CallableAggregator,
    get_aggregator,
    apply_aggregator,
    tukey_median_polish,
    MedianPolishResult,
)
from .mapping import (
    PeptideProteinMap,
    build_peptide_protein_map,
)
from .rollup import (
    PeptideRollupResult,
    rollup_to_peptides,
    rollup_to_proteins,
)
from .normalization import (
    Normalizer,
    MedianNormalizer,
    CallableNormalizer,
    get_normalizer,
    normalize_matrix,
)
from .descriptive import (
    Dendrogram,
    PCAResult,
    detection_table,
    sample_detection_counts,
    condition_summary,
    jaccard_matrix,
    jaccard_distribution,
    jaccard_histogram,
    correlation_matrix,
    correlation_distance,
    cluster_samples,
    cluster_entities,
    pca_scores,
)
from .differential import (
    Design,
    DifferentialResult,
    resolve_conditions,
    build_design,
    transform_matrix,
    welch_t_test,
    benjamini_hochberg,
    differential_expression,
)
from .data_io import (
    load_evidence,
    load_sample_metadata,
    load_annotation,
    read_matrix,
    read_mapping,
    write_table,
)
from .config import load_config
from .pipeline import (
    PipelineResult,
    run_pipeline,
    generate_pipeline_metadata,
)
