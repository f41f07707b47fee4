"""
genesetdb: an indexed gene set database with a conform engine for gene set
enrichment analysis.
"""

__version__ = "0.1.0"

from .db import GeneSetDb
from .errors import (
    ConstructionError,
    GeneSetDbError,
    GeneSetDbWarning,
    LowMatchFractionWarning,
    MalformedKeyError,
    MethodFailedWarning,
    NotConformedError,
    ResultAlignmentError,
    SchemaError,
    SetNotFoundError,
)
from .keys import DEFAULT_SEP, decode_gskey, encode_gskey, split_gskey
from .io import read_gene_set_table, read_gmt, write_gene_set_table, write_gmt
from .rename import rename_rows
from .config import EnrichmentConfig
from .methods import EnrichmentInputs, EnrichmentMethod, MethodRegistry, default_registry
from .pipeline import EnrichmentPipeline, EnrichmentResult
from .scoring import ScoringRegistry, default_scoring_registry, score_single_samples
from .utils import setup_logging

__all__ = [
    "GeneSetDb",
    "ConstructionError",
    "GeneSetDbError",
    "GeneSetDbWarning",
    "LowMatchFractionWarning",
    "MalformedKeyError",
    "MethodFailedWarning",
    "NotConformedError",
    "ResultAlignmentError",
    "SchemaError",
    "SetNotFoundError",
    "DEFAULT_SEP",
    "decode_gskey",
    "encode_gskey",
    "split_gskey",
    "read_gene_set_table",
    "read_gmt",
    "write_gene_set_table",
    "write_gmt",
    "rename_rows",
    "EnrichmentConfig",
    "EnrichmentInputs",
    "EnrichmentMethod",
    "MethodRegistry",
    "default_registry",
    "EnrichmentPipeline",
    "EnrichmentResult",
    "ScoringRegistry",
    "default_scoring_registry",
    "score_single_samples",
    "setup_logging",
]
