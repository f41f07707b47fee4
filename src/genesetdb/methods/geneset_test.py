"""Rank based gene set test (Wilcoxon rank-sum of members against the rest)."""

import numpy as np
import polars as pl
from scipy import stats

from ..keys import DEFAULT_SEP
from .registry import EnrichmentMethod
from .results import RawResult

ALTERNATIVES = ("two-sided", "greater", "less")


def validate_inputs(inputs):
    problems = []
    if "feature_id" not in inputs.stats.columns:
        problems.append("stats must have a feature_id column")
    if inputs.rank_by is None:
        problems.append("rank_by must name the statistic to rank features by")
    elif inputs.rank_by not in inputs.stats.columns:
        problems.append(f"stats is missing the ranking column '{inputs.rank_by}'")
    elif not inputs.stats.schema[inputs.rank_by].is_numeric():
        problems.append(f"ranking column '{inputs.rank_by}' must be numeric")
    return problems


def run(gdb, inputs, index_lists, sep: str = DEFAULT_SEP, alternative: str = "two-sided"):
    """
    Compare the ranking statistic of each set's members to all other features.

    Sets that cover none or all of the universe get a missing p-value.

    Returns:
        RawResult with key, mean_stat and pval columns
    """
    if alternative not in ALTERNATIVES:
        raise ValueError(f"alternative must be one of {', '.join(ALTERNATIVES)}")

    values = inputs.stats[inputs.rank_by].cast(pl.Float64).fill_null(np.nan).to_numpy()
    keys, means, pvals = [], [], []
    for key, idx in index_lists.items():
        inside = np.zeros(values.shape[0], dtype=np.bool_)
        inside[idx] = True
        member_vals = values[inside]
        other_vals = values[~inside]
        member_vals = member_vals[~np.isnan(member_vals)]
        other_vals = other_vals[~np.isnan(other_vals)]

        keys.append(key)
        means.append(float(member_vals.mean()) if member_vals.size else np.nan)
        if member_vals.size == 0 or other_vals.size == 0:
            pvals.append(np.nan)
        else:
            pvals.append(float(stats.mannwhitneyu(member_vals, other_vals, alternative=alternative).pvalue))

    payload = pl.DataFrame(
        {"key": keys, "mean_stat": means, "pval": pvals},
        schema={"key": pl.Utf8, "mean_stat": pl.Float64, "pval": pl.Float64},
    )
    return RawResult(method="geneset_test", payload=payload)


GENESET_TEST = EnrichmentMethod(
    name="geneset_test",
    run=run,
    validate_inputs=validate_inputs,
    description="Wilcoxon rank-sum test of set members against the remaining features",
)
