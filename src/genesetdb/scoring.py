"""
Single-sample gene set scoring.

Each scoring method summarises, per sample, the expression values of the
members of every active gene set. Methods live in a ``ScoringRegistry`` that
is built per call rather than held in module state.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import numba as nb
import numpy as np
import polars as pl

from .db import GeneSetDb
from .errors import GeneSetDbWarning
from .keys import decode_gskey
from .query import flatten_index_lists

logger = logging.getLogger(__name__)

_MEAN = 0
_SQRT_SUM = 1


@nb.njit(parallel=True)
def _score_sets(y, flat, offsets, mode):
    """Summarise the member rows of each set, per column of ``y``."""
    n_sets = offsets.shape[0] - 1
    n_samples = y.shape[1]
    out = np.full((n_sets, n_samples), np.nan)
    for i in nb.prange(n_sets):
        start = offsets[i]
        size = offsets[i + 1] - start
        if size == 0:
            continue
        for s in range(n_samples):
            total = 0.0
            for j in range(start, start + size):
                total += y[flat[j], s]
            if mode == _MEAN:
                out[i, s] = total / size
            else:
                out[i, s] = total / np.sqrt(size)
    return out


def _standardise(sub: np.ndarray):
    """Row-standardise a matrix, returning it with the row means and sds."""
    means = sub.mean(axis=1, keepdims=True)
    if sub.shape[1] > 1:
        sds = sub.std(axis=1, ddof=1, keepdims=True)
    else:
        sds = np.ones((sub.shape[0], 1))
    sds[sds == 0] = 1.0
    return (sub - means) / sds, means[:, 0], sds[:, 0]


def _row_zscores(y: np.ndarray) -> np.ndarray:
    return _standardise(y)[0]


def score_mean(y, flat, offsets):
    """Mean expression of the set members."""
    return _score_sets(y, flat, offsets, _MEAN)


def score_zscore(y, flat, offsets):
    """Mean of the row-standardised expression of the set members."""
    return _score_sets(_row_zscores(y), flat, offsets, _MEAN)


def score_sqrt_zscore(y, flat, offsets):
    """Sum of the row-standardised member expression over the square root of the set size."""
    return _score_sets(_row_zscores(y), flat, offsets, _SQRT_SUM)


def _first_component(z: np.ndarray):
    """Loadings, singular value and sample scores of the first principal component."""
    u, d, vt = np.linalg.svd(z, full_matrices=False)
    loadings, scores = u[:, 0], vt[0]
    # orient the component along the members' shared direction
    if loadings.sum() < 0:
        loadings, scores = -loadings, -scores
    return loadings, d[0], scores


def _per_set(y, flat, offsets, fn):
    out = np.full((offsets.shape[0] - 1, y.shape[1]), np.nan)
    for i in range(out.shape[0]):
        idx = flat[offsets[i]:offsets[i + 1]]
        if idx.shape[0]:
            out[i] = fn(y[idx])
    return out


def score_svd(y, flat, offsets):
    """Eigengene score: the first principal component of the standardised members."""

    def eigengene(sub):
        z, _, _ = _standardise(sub)
        _, d, scores = _first_component(z)
        return d * scores

    return _per_set(y, flat, offsets, eigengene)


def _eigen_weighted_mean(y, flat, offsets, restore: bool):
    def weighted(sub):
        z, means, sds = _standardise(sub)
        loadings, _, _ = _first_component(z)
        # squared loadings are each member's share of the component
        weights = loadings ** 2
        score = weights @ z
        if restore:
            score = score * (weights @ sds) + weights @ means
        return score

    return _per_set(y, flat, offsets, weighted)


def score_ewm(y, flat, offsets):
    """Mean of the members weighted by their contribution to the first principal component.

    Scores are put back on the expression scale of the set members.
    """
    return _eigen_weighted_mean(y, flat, offsets, restore=True)


def score_ewz(y, flat, offsets):
    """Eigen-weighted mean of the standardised members, ie. an eigen-weighted zscore."""
    return _eigen_weighted_mean(y, flat, offsets, restore=False)


@dataclass
class ScoringRegistry:
    """Mapping of scoring method name to ``fn(y, flat, offsets) -> (sets x samples)``."""

    methods: Dict[str, Callable] = field(default_factory=dict)

    def register(self, name: str, fn: Callable, replace: bool = False) -> "ScoringRegistry":
        if name in self.methods and not replace:
            raise ValueError(f"Scoring method '{name}' is already registered")
        self.methods[name] = fn
        return self

    def get(self, name: str) -> Callable:
        if name not in self.methods:
            raise ValueError(
                f"Unknown scoring method '{name}'. Available: {', '.join(self.methods)}"
            )
        return self.methods[name]

    def names(self) -> List[str]:
        return list(self.methods)

    def __contains__(self, name) -> bool:
        return name in self.methods


def default_scoring_registry() -> ScoringRegistry:
    """Build a new registry with the built-in scoring methods.

    ``gsd`` is an alias of ``svd``.
    """
    registry = ScoringRegistry()
    registry.register("mean", score_mean)
    registry.register("zscore", score_zscore)
    registry.register("sqrt_zscore", score_sqrt_zscore)
    registry.register("svd", score_svd)
    registry.register("gsd", score_svd)
    registry.register("ewm", score_ewm)
    registry.register("ewz", score_ewz)
    return registry


def score_single_samples(
    gdb: GeneSetDb,
    y,
    features: Sequence[str],
    samples: Optional[Sequence[str]] = None,
    methods: Sequence[str] = ("mean",),
    registry: Optional[ScoringRegistry] = None,
    drop_sd: float = 1e-4,
    **conform_params,
) -> pl.DataFrame:
    """
    Score every active gene set in every sample.

    Args:
        gdb: GeneSetDb to score. It is conformed to the retained features
        y: (features x samples) expression matrix
        features: Row identifiers of ``y``
        samples: Column identifiers of ``y``. Defaults to sample_1, sample_2, ...
        methods: Names of scoring methods in ``registry``
        registry: Scoring methods to use. Defaults to the built-in methods
        drop_sd: Rows with a standard deviation below this are dropped
        **conform_params: Passed to ``GeneSetDb.conform``

    Returns:
        Long DataFrame with collection, name, n, sample_id, score and method
    """
    y = np.asarray(y, dtype=np.float64)
    if y.ndim != 2:
        raise ValueError(f"Expression matrix must be 2-dimensional, got {y.ndim} dimensions")
    features = [str(f) for f in features]
    if len(features) != y.shape[0]:
        raise ValueError(f"{len(features)} feature ids given for {y.shape[0]} rows")
    if samples is None:
        samples = [f"sample_{i + 1}" for i in range(y.shape[1])]
    samples = [str(s) for s in samples]
    if len(samples) != y.shape[1]:
        raise ValueError(f"{len(samples)} sample ids given for {y.shape[1]} columns")

    if not methods:
        raise ValueError("At least one scoring method is required")
    registry = registry if registry is not None else default_scoring_registry()
    scorers = {m: registry.get(m) for m in methods}

    if y.shape[1] > 1:
        keep = np.nan_to_num(y.std(axis=1, ddof=1), nan=0.0) >= drop_sd
        n_drop = int((~keep).sum())
        if n_drop:
            msg = f"Removing {n_drop} rows with a standard deviation below {drop_sd}"
            logger.warning(msg)
            warnings.warn(msg, GeneSetDbWarning, stacklevel=2)
            y = y[keep]
            features = [f for f, k in zip(features, keep) if k]

    if not gdb.is_conformed(features):
        gdb = gdb.conform(features, **conform_params)
    index_lists = gdb.as_index_lists()
    flat, offsets = flatten_index_lists(index_lists)
    catalog = gdb.gene_sets(active_only=True)
    keys = decode_gskey(list(index_lists.keys()))

    frames = []
    for name, scorer in scorers.items():
        scores = np.asarray(scorer(y, flat, offsets))
        if scores.shape != (len(index_lists), y.shape[1]):
            raise ValueError(f"Scoring method '{name}' returned an array of shape {scores.shape}")
        wide = pl.DataFrame(scores, schema=samples, orient="row") if scores.size else pl.DataFrame(
            schema={s: pl.Float64 for s in samples}
        )
        frames.append(
            pl.concat([keys, wide], how="horizontal")
            .join(catalog.select(["collection", "name", "n"]), on=["collection", "name"], how="left")
            .unpivot(index=["collection", "name", "n"], on=samples, variable_name="sample_id", value_name="score")
            .with_columns(pl.lit(name).alias("method"))
        )

    logger.info(f"Scored {len(index_lists)} gene sets across {len(samples)} samples with {len(scorers)} method(s)")
    return pl.concat(frames).select(["collection", "name", "n", "sample_id", "score", "method"])
