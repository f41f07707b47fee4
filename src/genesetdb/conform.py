"""
Conform a GeneSetDb to the feature universe of a dataset.

Conforming resolves every gene set feature to its identifier in the universe
(``x_id``) and its 0-based row position there (``x_idx``), then counts the
members present in each set (``n``) and flags the sets whose count lies within
the requested size bounds as ``active``. Sets outside the bounds are kept,
just marked inactive.
"""

import logging
import warnings
from typing import TYPE_CHECKING, List, Optional

import polars as pl

from .errors import GeneSetDbWarning, LowMatchFractionWarning
from .rename import as_xref_frame

if TYPE_CHECKING:
    from .db import GeneSetDb

logger = logging.getLogger(__name__)


def as_universe(universe) -> List[str]:
    """
    Normalise a universe of feature identifiers into a list of strings.

    Args:
        universe: A sequence or Series of identifiers, or a DataFrame with a
            ``feature_id`` column

    Returns:
        The identifiers as a list, in their original order
    """
    if isinstance(universe, pl.DataFrame):
        if "feature_id" not in universe.columns:
            raise ValueError("Universe DataFrame must have a `feature_id` column")
        universe = universe["feature_id"]
    if isinstance(universe, (str, bytes)):
        raise ValueError("Universe must be a collection of identifiers, not a single string")
    if isinstance(universe, pl.Series):
        ids = universe.cast(pl.Utf8).to_list()
    else:
        ids = [None if u is None else str(u) for u in universe]
    if any(u is None for u in ids):
        raise ValueError("Universe identifiers cannot be missing")
    return ids


def _check_bounds(min_set_size: int, max_set_size: Optional[int], min_match_fraction: float):
    if min_set_size < 0:
        raise ValueError(f"min_set_size must be non-negative, got {min_set_size}")
    if max_set_size is not None and max_set_size < min_set_size:
        raise ValueError(
            f"max_set_size ({max_set_size}) must not be smaller than min_set_size ({min_set_size})"
        )
    if not 0.0 <= min_match_fraction <= 1.0:
        raise ValueError(f"min_match_fraction must be within [0, 1], got {min_match_fraction}")


def conform_db(
    gdb: "GeneSetDb",
    universe,
    remap=None,
    min_set_size: int = 1,
    max_set_size: Optional[int] = None,
    min_match_fraction: float = 0.05,
) -> "GeneSetDb":
    """
    Conform ``gdb`` to ``universe``. See ``GeneSetDb.conform``.

    Matching is positional on first occurrence: if the universe repeats an
    identifier, its first position is used and a warning is raised.
    """
    from .db import KEY_COLS

    _check_bounds(min_set_size, max_set_size, min_match_fraction)
    ids = as_universe(universe)

    fmap = gdb.feature_id_map().drop("x_idx")
    if remap is not None:
        xref = as_xref_frame(remap).rename({"from": "feature_id", "to": "x_id"})
        fmap = fmap.drop("x_id").join(xref, on="feature_id", how="left")

    positions = pl.DataFrame({"x_id": ids}, schema={"x_id": pl.Utf8}).with_row_index("x_idx")
    positions = positions.with_columns(pl.col("x_idx").cast(pl.Int64))
    n_dups = positions.height - positions["x_id"].n_unique()
    if n_dups:
        msg = f"Universe contains {n_dups} duplicated identifier(s); first occurrence is used"
        logger.warning(msg)
        warnings.warn(msg, GeneSetDbWarning, stacklevel=3)
        positions = positions.unique(subset="x_id", keep="first", maintain_order=True)

    fmap = (
        fmap.join(positions, on="x_id", how="left")
        .select(["feature_id", "x_id", "x_idx"])
        .sort("feature_id")
    )

    db_features = gdb.db.select("feature_id").unique()
    matched = db_features.join(
        fmap.filter(pl.col("x_idx").is_not_null()), on="feature_id", how="semi"
    ).height
    fraction = matched / db_features.height if db_features.height else 0.0
    if fraction < min_match_fraction:
        msg = (
            f"Fraction of gene set features found in the universe is low: "
            f"{matched}/{db_features.height} ({fraction:.1%})"
        )
        logger.warning(msg)
        warnings.warn(msg, LowMatchFractionWarning, stacklevel=3)

    counts = (
        gdb.db.select(KEY_COLS + ["feature_id"])
        .join(fmap.select(["feature_id", "x_idx"]), on="feature_id", how="left")
        .group_by(KEY_COLS)
        .agg(pl.col("x_idx").drop_nulls().n_unique().cast(pl.Int64).alias("n"))
    )

    table = gdb.table
    active = pl.col("n") >= min_set_size
    if max_set_size is not None:
        active = active & (pl.col("n") <= max_set_size)
    table = (
        table.drop("n")
        .join(counts, on=KEY_COLS, how="left")
        .with_columns(pl.col("n").fill_null(0))
        .with_columns(active.alias("active"))
        .select(table.columns)
        .sort(KEY_COLS, maintain_order=True)
    )

    conform_args = {
        "min_set_size": min_set_size,
        "max_set_size": max_set_size,
        "min_match_fraction": min_match_fraction,
    }
    out = gdb._replace(
        table=table, feature_id_map=fmap, universe=tuple(ids), conform_args=conform_args
    )
    logger.info(
        f"Conformed {table.height} gene sets to a universe of {len(ids)} features: "
        f"{int(table['active'].sum())} active, {matched}/{db_features.height} features matched"
    )
    return out


def unconform_db(gdb: "GeneSetDb") -> "GeneSetDb":
    """Reset ``n``, ``active`` and ``x_idx`` to their unconformed state."""
    table = gdb.table.with_columns(
        pl.lit(False).alias("active"),
        pl.lit(None, dtype=pl.Int64).alias("n"),
    )
    fmap = gdb.feature_id_map().with_columns(pl.lit(None, dtype=pl.Int64).alias("x_idx"))
    return gdb._replace(table=table, feature_id_map=fmap, universe=None, conform_args=None)
