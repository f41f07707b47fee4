"""
Over-representation analysis with the hypergeometric test.

Selected features can additionally be split by a ``groups`` column (ie. up
and down regulated) to test each group's selection on its own, and a numeric
``feature_bias`` column (ie. gene length) switches the test to Wallenius'
noncentral hypergeometric distribution to correct for selection bias.
"""

import logging
from typing import Dict, Optional

import numba as nb
import numpy as np
import polars as pl
from scipy import stats

from ..keys import DEFAULT_SEP
from ..query import flatten_index_lists
from .registry import EnrichmentMethod
from .results import NormalizedResult, RawResult, adjust_pvalues, default_normalize

logger = logging.getLogger(__name__)


@nb.njit(parallel=True)
def _count_selected(selected, flat, offsets):
    n_sets = offsets.shape[0] - 1
    counts = np.zeros(n_sets, dtype=np.int64)
    for i in nb.prange(n_sets):
        k = 0
        for j in range(offsets[i], offsets[i + 1]):
            if selected[flat[j]]:
                k += 1
        counts[i] = k
    return counts


@nb.njit(parallel=True)
def _set_weight_sums(weights, flat, offsets):
    n_sets = offsets.shape[0] - 1
    sums = np.zeros(n_sets, dtype=np.float64)
    for i in nb.prange(n_sets):
        total = 0.0
        for j in range(offsets[i], offsets[i + 1]):
            total += weights[flat[j]]
        sums[i] = total
    return sums


def validate_inputs(inputs):
    problems = []
    if "feature_id" not in inputs.stats.columns:
        problems.append("stats must have a feature_id column")
    if inputs.selected not in inputs.stats.columns:
        problems.append(f"stats is missing the selection column '{inputs.selected}'")
    elif inputs.stats.schema[inputs.selected] != pl.Boolean:
        problems.append(f"selection column '{inputs.selected}' must be boolean")
    return problems


def selection_weights(selected: np.ndarray, bias: np.ndarray) -> np.ndarray:
    """
    Probability of selection as a function of a bias covariate.

    Features are ordered by ``bias`` and the selection indicator is smoothed
    with a tricube moving average. The span shrinks from the whole universe
    at 20 selected features to half of it at 200. Features with the same
    covariate value get the same probability.

    Args:
        selected: Boolean selection indicator per feature
        bias: Numeric covariate per feature

    Returns:
        Selection probability per feature, in input order
    """
    total = selected.shape[0]
    span = float(np.interp(selected.sum(), [20, 200], [1.0, 0.5]))
    half = min(max(1, int(span * total) // 2), max(total - 1, 0) // 2)
    offsets = np.arange(-half, half + 1) / (half + 1)
    kernel = (1 - np.abs(offsets) ** 3) ** 3

    order = np.argsort(bias, kind="stable")
    smoothed = np.convolve(selected[order].astype(np.float64), kernel, mode="same")
    smoothed /= np.convolve(np.ones(total), kernel, mode="same")

    weights = np.empty(total)
    weights[order] = smoothed
    # tied covariate values share one probability
    _, tie = np.unique(bias, return_inverse=True)
    return (np.bincount(tie, weights=weights) / np.bincount(tie))[tie]


def _test_selection(selected, flat, offsets, sizes, odds, min_selected):
    counts = _count_selected(selected, flat, offsets)
    total = selected.shape[0]
    drawn = int(selected.sum())
    if odds is None:
        pvals = stats.hypergeom.sf(counts - 1, total, drawn, sizes)
    else:
        pvals = np.ones(counts.shape, dtype=np.float64)
        testable = (sizes > 0) & (sizes < total) & (counts > 0)
        pvals[testable] = stats.nchypergeom_wallenius.sf(
            counts[testable] - 1, total, sizes[testable], drawn, odds[testable]
        )
    pvals = np.where(counts < min_selected, 1.0, pvals)
    expected = sizes * (drawn / total) if total else np.zeros(sizes.shape)
    return counts, expected.astype(np.float64), np.asarray(pvals, dtype=np.float64)


def _group_selections(inputs, selected: np.ndarray, groups: str) -> Dict[str, np.ndarray]:
    """Split the selection by the values of a string column, skipping empty groups."""
    if groups not in inputs.stats.columns:
        raise ValueError(f"stats is missing the groups column '{groups}'")
    labels = inputs.stats[groups].cast(pl.Utf8)
    out = {}
    for group in labels.drop_nulls().unique().sort().to_list():
        mask = selected & (labels == group).fill_null(False).to_numpy()
        if not mask.any():
            continue
        out["all2" if group == "all" else group] = mask
    return out


def _bias_odds(inputs, selected, flat, offsets, sizes, feature_bias: str) -> np.ndarray:
    """Odds of selecting a member of each set relative to a non-member."""
    if feature_bias not in inputs.stats.columns or not inputs.stats.schema[feature_bias].is_numeric():
        raise ValueError(f"feature_bias must name a numeric column of stats, got '{feature_bias}'")
    bias = inputs.stats[feature_bias].cast(pl.Float64).to_numpy()
    if np.isnan(bias).any():
        raise ValueError(f"feature_bias column '{feature_bias}' has missing values")

    weights = selection_weights(selected, bias)
    inside = _set_weight_sums(weights, flat, offsets)
    outside = weights.sum() - inside
    n_out = weights.shape[0] - sizes
    with np.errstate(divide="ignore", invalid="ignore"):
        odds = (inside / sizes) / (outside / n_out)
    odds = np.where(np.isfinite(odds) & (odds > 0), odds, 1.0)
    return odds


def run(gdb, inputs, index_lists, sep: str = DEFAULT_SEP, min_selected: int = 0,
        groups: Optional[str] = None, feature_bias: Optional[str] = None):
    """
    Test each gene set for over-representation of selected features.

    The background is the conformed universe, so ``index_lists`` must address
    rows of ``inputs.stats``.

    Args:
        gdb: Conformed GeneSetDb
        inputs: EnrichmentInputs with a boolean selection column
        index_lists: Encoded key -> universe positions
        sep: Key separator
        min_selected: Sets with fewer selected members than this get a
            p-value of 1
        groups: String column of ``inputs.stats`` splitting the selection.
            Each group with selected features adds ``n_selected_<group>``,
            ``expected_<group>`` and ``pval_<group>`` columns
        feature_bias: Numeric column of ``inputs.stats`` that biases
            selection, ie. gene length

    Returns:
        RawResult with key, n_selected, expected and pval columns for the
        whole selection, followed by the per-group columns
    """
    selected = inputs.stats[inputs.selected].fill_null(False).to_numpy().astype(np.bool_)
    flat, offsets = flatten_index_lists(index_lists)
    sizes = np.diff(offsets)

    odds = None
    if feature_bias is not None:
        odds = _bias_odds(inputs, selected, flat, offsets, sizes, feature_bias)

    selections = {"": selected}
    if groups is not None:
        for group, mask in _group_selections(inputs, selected, groups).items():
            selections[f"_{group}"] = mask
        logger.debug(f"Testing {len(selections) - 1} selection groups from column '{groups}'")

    columns = {"key": list(index_lists.keys())}
    schema = {"key": pl.Utf8}
    for suffix, mask in selections.items():
        counts, expected, pvals = _test_selection(mask, flat, offsets, sizes, odds, min_selected)
        columns[f"n_selected{suffix}"] = counts
        columns[f"expected{suffix}"] = expected
        columns[f"pval{suffix}"] = pvals
        schema.update({
            f"n_selected{suffix}": pl.Int64,
            f"expected{suffix}": pl.Float64,
            f"pval{suffix}": pl.Float64,
        })

    return RawResult(method="ora", payload=pl.DataFrame(columns, schema=schema))


def normalize_result(raw: RawResult, gdb, padj_method: str = "fdr_bh",
                     sep: str = DEFAULT_SEP) -> NormalizedResult:
    """Align the result and adjust the overall and per-group p-values."""
    table = default_normalize(raw, gdb, padj_method, sep).table
    group_cols = [c for c in table.columns if c.startswith("pval_")]
    if group_cols:
        table = table.with_columns([
            pl.Series(
                "padj_" + c[len("pval_"):],
                adjust_pvalues(table[c].fill_null(np.nan).to_numpy(), padj_method),
            )
            for c in group_cols
        ])
    return NormalizedResult(method=raw.method, table=table)


ORA = EnrichmentMethod(
    name="ora",
    run=run,
    validate_inputs=validate_inputs,
    normalize_result=normalize_result,
    description="Hypergeometric over-representation of selected features",
)
