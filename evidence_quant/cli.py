"""Command-line interface for evidence-quant.

Aggregates evidence records to peptide and protein intensity matrices,
normalizes them, and derives descriptive and differential statistics.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import _deep_merge, load_config, load_config_from_provenance
from .data_io import (
    load_annotation,
    load_evidence,
    load_sample_metadata,
    read_mapping,
    read_matrix,
    write_table,
)
from .descriptive import (
    cluster_samples,
    condition_summary,
    correlation_matrix,
    detection_table,
    jaccard_distribution,
    jaccard_histogram,
)
from .differential import differential_expression
from .exceptions import EvidenceQuantError
from .normalization import normalize_matrix
from .pipeline import generate_pipeline_metadata, run_pipeline
from .rollup import rollup_to_peptides, rollup_to_proteins

logger = logging.getLogger(__name__)

__all__ = [
    '_deep_merge',
    'load_config',
    'load_config_from_provenance',
    'main',
    'setup_logging',
]


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def _config_for(args: argparse.Namespace) -> dict:
    if getattr(args, 'from_provenance', None):
        config, _ = load_config_from_provenance(Path(args.from_provenance))
        return config
    return load_config(Path(args.config) if getattr(args, 'config', None) else None)


def cmd_peptides(args: argparse.Namespace) -> int:
    """Aggregate evidence to a peptide matrix."""
    config = _config_for(args)
    evidence = load_evidence(Path(args.input), drop_flagged=config['data'].get('drop_flagged', True))
    metadata = load_sample_metadata(Path(args.metadata))

    result = rollup_to_peptides(
        evidence,
        metadata,
        sequence_key=config['data']['sequence_key'],
        protein_key=config['data']['protein_key'],
        method=config['peptide_rollup']['method'],
        top_k=config['peptide_rollup'].get('top_k', 3),
        strict=config['data'].get('strict', False),
    )

    output_path = write_table(result.matrix.values, Path(args.output))
    logger.info(f"Saved {len(result.matrix)} peptides to {output_path}")

    mapping_output = Path(args.mapping_output) if args.mapping_output \
        else output_path.with_name('peptide_protein_map.tsv')
    write_table(result.mapping.to_frame(), mapping_output, 'tsv', index=False)
    logger.info(f"Saved peptide-protein map to {mapping_output}")

    return 0


def cmd_proteins(args: argparse.Namespace) -> int:
    """Roll up a peptide matrix to proteins."""
    config = _config_for(args)
    peptides = read_matrix(Path(args.input), level='peptide')
    mapping = read_mapping(Path(args.mapping))

    proteins = rollup_to_proteins(
        peptides,
        mapping,
        method=config['protein_rollup']['method'],
        top_k=config['protein_rollup'].get('top_k', 3),
        min_peptides=config['protein_rollup'].get('min_peptides', 1),
    )
    if args.annotation:
        proteins = proteins.with_annotation(load_annotation(Path(args.annotation)))

    output_path = write_table(proteins.to_frame(), Path(args.output))
    logger.info(f"Saved {len(proteins)} proteins to {output_path}")

    return 0


def cmd_normalize(args: argparse.Namespace) -> int:
    """Normalize a matrix."""
    config = _config_for(args)
    samples = None
    if args.metadata:
        samples = list(load_sample_metadata(Path(args.metadata))['sample'])
    matrix = read_matrix(Path(args.input), level=args.level, samples=samples)

    normalized = normalize_matrix(
        matrix,
        method=config['normalization']['method'],
        target=config['normalization'].get('target', 'mean'),
    )

    output_path = write_table(normalized.values, Path(args.output))
    logger.info(f"Saved {normalized.transform} matrix to {output_path}")

    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Write descriptive statistics for a matrix."""
    config = _config_for(args)
    stats_cfg = config['statistics']
    metadata = load_sample_metadata(Path(args.metadata))
    matrix = read_matrix(Path(args.input), level=args.level, samples=list(metadata['sample']))

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    correlation = correlation_matrix(
        matrix,
        min_periods=stats_cfg.get('min_periods', 2),
        log_transform=stats_cfg.get('log_transform', True),
    )
    dendrogram = cluster_samples(correlation, method=stats_cfg.get('linkage', 'average'))
    jaccard = jaccard_distribution(matrix, metadata)

    write_table(detection_table(matrix, metadata), output_dir / 'detection.tsv', 'tsv')
    write_table(condition_summary(matrix, metadata), output_dir / 'condition_summary.tsv',
                'tsv', index=False)
    write_table(correlation, output_dir / 'correlation.tsv', 'tsv')
    write_table(jaccard, output_dir / 'jaccard_pairs.tsv', 'tsv', index=False)
    write_table(
        jaccard_histogram(jaccard, bin_width=stats_cfg.get('jaccard_bin_width', 0.05)),
        output_dir / 'jaccard_histogram.tsv', 'tsv', index=False,
    )
    with open(output_dir / 'sample_order.json', 'w') as f:
        json.dump({'method': dendrogram.method, 'order': dendrogram.ordered_labels}, f, indent=2)

    logger.info(f"Saved statistics to {output_dir}")
    return 0


def cmd_de(args: argparse.Namespace) -> int:
    """Run two-condition differential expression on a matrix."""
    config = _config_for(args)
    de_cfg = config['differential']
    metadata = load_sample_metadata(Path(args.metadata))
    matrix = read_matrix(Path(args.input), level=args.level, samples=list(metadata['sample']))

    conditions = args.conditions or de_cfg.get('conditions')
    result = differential_expression(
        matrix,
        metadata,
        conditions=conditions,
        transform=de_cfg.get('transform', 'log10'),
        alpha=args.alpha if args.alpha is not None else de_cfg.get('alpha', 0.05),
        fold_change_threshold=de_cfg.get('fold_change_threshold', 0.0),
    )

    output_path = write_table(result.table, Path(args.output))
    logger.info(f"Saved {result.n_significant} significant of {len(result.table)} "
                f"{matrix.level}s to {output_path}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full pipeline.

    Pipeline stages:
    1. Evidence → peptide rollup (+ peptide → protein map)
    2. Peptide → protein rollup
    3. Normalization
    4. Descriptive statistics
    5. Differential expression
    """
    config = _config_for(args)
    if args.conditions:
        config = _deep_merge(config, {'differential': {'conditions': args.conditions}})

    evidence = load_evidence(Path(args.input), drop_flagged=config['data'].get('drop_flagged', True))
    metadata = load_sample_metadata(Path(args.metadata))
    annotation = load_annotation(Path(args.annotation)) if args.annotation else None

    result = run_pipeline(evidence, metadata, config=config, annotation=annotation)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_format = config['output'].get('format', 'parquet')

    outputs = {
        f'peptides.{output_format}': result.peptides.to_frame(),
        f'proteins.{output_format}': result.proteins.to_frame(),
        f'proteins_normalized.{output_format}': result.normalized.to_frame(),
    }
    if result.differential is not None:
        outputs[f'differential.{output_format}'] = result.differential.table
    for name, table in outputs.items():
        write_table(table, output_dir / name, output_format)
        logger.info(f"Saved {name}")

    write_table(result.mapping.to_frame(), output_dir / 'peptide_protein_map.tsv', 'tsv',
                index=False)
    write_table(result.detection, output_dir / 'detection.tsv', 'tsv')
    write_table(result.correlation, output_dir / 'correlation.tsv', 'tsv')
    write_table(result.jaccard, output_dir / 'jaccard_pairs.tsv', 'tsv', index=False)
    write_table(result.jaccard_histogram, output_dir / 'jaccard_histogram.tsv', 'tsv',
                index=False)

    input_files = [str(args.input), str(args.metadata)]
    if args.annotation:
        input_files.append(str(args.annotation))

    metadata_output = output_dir / 'metadata.json'
    provenance = generate_pipeline_metadata(config, result, metadata, input_files)
    provenance['sample_order'] = result.dendrogram.ordered_labels
    with open(metadata_output, 'w') as f:
        json.dump(provenance, f, indent=2, default=str)
    logger.info(f"Saved pipeline metadata to {metadata_output}")

    logger.info(f"Output directory: {output_dir}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='equant',
        description='evidence-quant: peptide and protein intensity matrices from '
                    'evidence records\n\n'
                    'Primary usage:\n'
                    '  equant run -i evidence.txt -m samples.tsv -o output_dir/ -c config.yaml',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    def add_config_args(sub):
        sub.add_argument('-c', '--config', help='Configuration YAML file')
        sub.add_argument('--from-provenance',
                         help='Reuse the parameters recorded in a metadata.json')

    run_parser = subparsers.add_parser(
        'run',
        help='Run the full pipeline (recommended)',
        description='Evidence → peptides → proteins → normalization → statistics → '
                    'differential expression.',
    )
    run_parser.add_argument('-i', '--input', required=True, help='Evidence file (TSV/CSV/parquet)')
    run_parser.add_argument('-m', '--metadata', required=True, help='Sample metadata TSV/CSV')
    run_parser.add_argument('-o', '--output-dir', required=True, help='Output directory')
    run_parser.add_argument('-a', '--annotation', help='Protein annotation table')
    run_parser.add_argument('--conditions', nargs=2, metavar=('A', 'B'),
                            help='Conditions to compare (fold change is B - A)')
    add_config_args(run_parser)

    pep_parser = subparsers.add_parser('peptides', help='Aggregate evidence to peptides')
    pep_parser.add_argument('-i', '--input', required=True, help='Evidence file')
    pep_parser.add_argument('-m', '--metadata', required=True, help='Sample metadata TSV/CSV')
    pep_parser.add_argument('-o', '--output', required=True, help='Output peptide matrix')
    pep_parser.add_argument('--mapping-output', help='Output peptide-protein map TSV')
    add_config_args(pep_parser)

    prot_parser = subparsers.add_parser('proteins', help='Roll up peptides to proteins')
    prot_parser.add_argument('-i', '--input', required=True, help='Peptide matrix')
    prot_parser.add_argument('-p', '--mapping', required=True, help='Peptide-protein map TSV')
    prot_parser.add_argument('-o', '--output', required=True, help='Output protein matrix')
    prot_parser.add_argument('-a', '--annotation', help='Protein annotation table')
    add_config_args(prot_parser)

    norm_parser = subparsers.add_parser('normalize', help='Normalize a matrix')
    norm_parser.add_argument('-i', '--input', required=True, help='Input matrix')
    norm_parser.add_argument('-o', '--output', required=True, help='Output matrix')
    norm_parser.add_argument('-m', '--metadata',
                             help='Sample metadata TSV/CSV (selects the sample columns)')
    norm_parser.add_argument('--level', choices=['peptide', 'protein'], default='protein')
    add_config_args(norm_parser)

    stats_parser = subparsers.add_parser('stats', help='Descriptive statistics for a matrix')
    stats_parser.add_argument('-i', '--input', required=True, help='Input matrix')
    stats_parser.add_argument('-m', '--metadata', required=True, help='Sample metadata TSV/CSV')
    stats_parser.add_argument('-o', '--output-dir', required=True, help='Output directory')
    stats_parser.add_argument('--level', choices=['peptide', 'protein'], default='protein')
    add_config_args(stats_parser)

    de_parser = subparsers.add_parser('de', help='Two-condition differential expression')
    de_parser.add_argument('-i', '--input', required=True, help='Normalized matrix')
    de_parser.add_argument('-m', '--metadata', required=True, help='Sample metadata TSV/CSV')
    de_parser.add_argument('-o', '--output', required=True, help='Output result table')
    de_parser.add_argument('--conditions', nargs=2, metavar=('A', 'B'),
                           help='Conditions to compare (fold change is B - A)')
    de_parser.add_argument('--alpha', type=float, help='Significance level (default 0.05)')
    de_parser.add_argument('--level', choices=['peptide', 'protein'], default='protein')
    add_config_args(de_parser)

    return parser


COMMANDS = {
    'run': cmd_run,
    'peptides': cmd_peptides,
    'proteins': cmd_proteins,
    'normalize': cmd_normalize,
    'stats': cmd_stats,
    'de': cmd_de,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    try:
        return command(args)
    except EvidenceQuantError as e:
        logger.error(str(e))
        return 1


if __name__ == '__main__':
    sys.exit(main())
