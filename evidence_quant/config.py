"""Pipeline configuration: built-in defaults overlaid with YAML or provenance JSON."""

import copy
import json
import logging
from pathlib import Path
from typing import Optional, Tuple

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'data': {
        'sequence_key': 'sequence',          # or 'modified_sequence'
        'protein_key': 'leading_protein',    # or 'protein_group'
        'drop_flagged': True,
        'strict': False,
    },
    'peptide_rollup': {
        'method': 'sum',
        'top_k': 3,
    },
    'protein_rollup': {
        'method': 'topk',
        'top_k': 3,
        'min_peptides': 1,
    },
    'normalization': {
        'enabled': True,
        'method': 'median',
        'target': 'mean',
    },
    'statistics': {
        'jaccard_bin_width': 0.05,
        'min_periods': 2,
        'log_transform': True,
        'linkage': 'average',
        'pca_components': 2,
    },
    'differential': {
        'enabled': True,
        'conditions': None,
        'transform': 'log10',
        'alpha': 0.05,
        'fold_change_threshold': 0.0,
    },
    'output': {
        'format': 'parquet',
    },
}


def default_config() -> dict:
    return copy.deepcopy(DEFAULT_CONFIG)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: Optional[Path]) -> dict:
    """Load configuration from YAML file or return defaults."""
    config = default_config()

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        if not isinstance(user_config, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        config = _deep_merge(config, user_config)
        logger.debug(f"Loaded configuration from {config_path}")

    return config


def load_config_from_provenance(provenance_path: Path) -> Tuple[dict, dict]:
    """Rebuild a configuration from a previous run's metadata.json.

    Returns:
        Tuple of (config, provenance dict)

    Raises:
        ConfigurationError: If the file has no 'processing_parameters'

    """
    with open(provenance_path) as f:
        provenance = json.load(f)

    params = provenance.get('processing_parameters')
    if params is None:
        raise ConfigurationError(
            f"{provenance_path} has no 'processing_parameters' section"
        )
    return _deep_merge(default_config(), params), provenance
