"""
Explicit registry of enrichment methods.

Each method is an ``EnrichmentMethod`` value bundling three callables:

* ``validate_inputs(inputs) -> list of problems`` (empty when usable)
* ``run(gdb, inputs, index_lists, sep=..., **params) -> RawResult``
* ``normalize_result(raw, gdb, padj_method, sep) -> NormalizedResult``

Registries are plain objects built per call, so tests and concurrent runs can
use different method sets side by side.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

import polars as pl

from .results import default_normalize


@dataclass(frozen=True, eq=False)
class EnrichmentInputs:
    """Per-feature statistics shared by every method in a run.

    Args:
        stats: DataFrame with a ``feature_id`` column plus whatever the
            methods need, ie. a numeric ranking column or a boolean
            selection column
        rank_by: Numeric column used by rank based methods
        selected: Boolean column flagging features of interest for
            over-representation methods
    """

    stats: pl.DataFrame
    rank_by: Optional[str] = None
    selected: str = "significant"


def _no_validation(inputs: EnrichmentInputs) -> List[str]:
    return []


@dataclass(frozen=True)
class EnrichmentMethod:
    name: str
    run: Callable
    validate_inputs: Callable[[EnrichmentInputs], List[str]] = _no_validation
    normalize_result: Callable = default_normalize
    description: str = ""


@dataclass
class MethodRegistry:
    """Mapping of method name to EnrichmentMethod."""

    methods: Dict[str, EnrichmentMethod] = field(default_factory=dict)

    def register(self, method: EnrichmentMethod, replace: bool = False) -> "MethodRegistry":
        if not isinstance(method, EnrichmentMethod):
            raise TypeError(f"Expected an EnrichmentMethod, got {type(method).__name__}")
        if method.name in self.methods and not replace:
            raise ValueError(f"Enrichment method '{method.name}' is already registered")
        self.methods[method.name] = method
        return self

    def get(self, name: str) -> EnrichmentMethod:
        try:
            return self.methods[name]
        except KeyError:
            raise ValueError(
                f"Unknown enrichment method '{name}'. Available: {', '.join(self.names())}"
            ) from None

    def names(self) -> List[str]:
        return list(self.methods)

    def __contains__(self, name) -> bool:
        return name in self.methods

    def __iter__(self) -> Iterator[str]:
        return iter(self.methods)

    def __len__(self) -> int:
        return len(self.methods)


def default_registry() -> MethodRegistry:
    """Build a new registry holding the built-in methods."""
    from .geneset_test import GENESET_TEST
    from .ora import ORA

    registry = MethodRegistry()
    registry.register(ORA)
    registry.register(GENESET_TEST)
    return registry
