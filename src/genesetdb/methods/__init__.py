"""Enrichment methods and the registry used to dispatch them."""

from .registry import EnrichmentInputs, EnrichmentMethod, MethodRegistry, default_registry
from .results import (
    MethodFailure,
    NormalizedResult,
    RawResult,
    adjust_pvalues,
    align_result,
    default_normalize,
)

__all__ = [
    "EnrichmentInputs",
    "EnrichmentMethod",
    "MethodRegistry",
    "default_registry",
    "MethodFailure",
    "NormalizedResult",
    "RawResult",
    "adjust_pvalues",
    "align_result",
    "default_normalize",
]
