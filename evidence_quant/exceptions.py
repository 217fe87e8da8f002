"""Error types raised by the aggregation and statistics engine."""


class EvidenceQuantError(Exception):
    """Base class for all errors raised by evidence_quant."""


class ConfigurationError(EvidenceQuantError, ValueError):
    """An unknown column, key choice or strategy was referenced.

    Also raised when a user-supplied aggregator or normalizer breaks the
    missing-value contract.
    """


class AmbiguousConditionsError(ConfigurationError):
    """More than two conditions are present and none were selected."""


class DataIntegrityError(EvidenceQuantError):
    """Input records disagree with each other.

    The engines recover from this locally (first-seen wins) and only raise it
    when called with ``strict=True``.
    """


class EmptyResultError(EvidenceQuantError):
    """An aggregation step produced no rows."""
