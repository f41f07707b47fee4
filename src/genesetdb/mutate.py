"""
Value-returning transformations of a GeneSetDb.

Every function here returns a new GeneSetDb whose relations have been
re-validated; the input is never modified.
"""

import logging
from typing import Mapping, Optional, Sequence

import numpy as np
import polars as pl

from .db import (
    DB_KEY_COLS,
    KEY_COLS,
    TABLE_CORE_COLS,
    GeneSetDb,
    init_feature_id_map,
    init_table,
)
from .errors import SchemaError, SetNotFoundError

logger = logging.getLogger(__name__)


def _as_mask(mask, n: int) -> np.ndarray:
    if isinstance(mask, pl.Series):
        mask = mask.fill_null(False).to_numpy()
    mask = np.asarray(mask)
    if mask.dtype != np.bool_:
        raise ValueError(f"Subset mask must be boolean, got {mask.dtype}")
    if mask.shape != (n,):
        raise ValueError(f"Subset mask has {mask.size} entries for {n} gene sets")
    return mask


def subset(gdb: GeneSetDb, mask) -> GeneSetDb:
    """
    Keep the gene sets selected by a boolean mask over ``gdb.table`` rows.

    The membership rows of the kept sets are untouched. The feature id map is
    not pruned, so a later ``combine`` does not need to rebuild it.
    """
    mask = _as_mask(mask, gdb.table.height)
    table = gdb.table.filter(pl.Series(mask))
    db = gdb.db.join(table.select(KEY_COLS), on=KEY_COLS, how="semi")
    keep = set(table["collection"].to_list())
    metadata = {c: m for c, m in gdb._collection_metadata.items() if c in keep}
    logger.debug(f"Subset GeneSetDb to {table.height}/{gdb.table.height} gene sets")
    return gdb._replace(db=db, table=table, collection_metadata=metadata)


def filter_sets(gdb: GeneSetDb, *predicates: pl.Expr) -> GeneSetDb:
    """Subset to the gene sets for which every predicate over the catalog holds."""
    if not predicates:
        return gdb
    keep = gdb.table.select(pl.all_horizontal(*predicates).fill_null(False).alias("_keep"))["_keep"]
    return subset(gdb, keep)


def subset_by_features(gdb: GeneSetDb, features: Sequence, value: str = "feature_id") -> GeneSetDb:
    """Keep the gene sets that contain at least one of ``features``."""
    if value not in ("feature_id", "x_id", "x_idx"):
        raise ValueError(f"Unknown feature id column: {value}")
    members = gdb.db.select(DB_KEY_COLS).join(gdb.feature_id_map(), on="feature_id", how="left")
    hits = members.filter(pl.col(value).is_in(list(features))).select(KEY_COLS).unique()
    keep = gdb.table.select(KEY_COLS).join(
        hits.with_columns(pl.lit(True).alias("_keep")), on=KEY_COLS, how="left"
    ).sort(KEY_COLS, maintain_order=True)
    return subset(gdb, keep["_keep"].fill_null(False))


def _set_annotations(gdb: GeneSetDb) -> pl.DataFrame:
    return gdb.table.drop([c for c in TABLE_CORE_COLS if c not in KEY_COLS])


def _spread_to_members(gdb: GeneSetDb, member_cols: Sequence[str]) -> pl.DataFrame:
    """Membership rows with any of ``member_cols`` held at set level copied onto them."""
    spread = [c for c in member_cols if c in gdb.table.columns]
    if not spread:
        return gdb.db
    return gdb.db.join(gdb.table.select(KEY_COLS + spread), on=KEY_COLS, how="left")


def combine(a: GeneSetDb, b) -> GeneSetDb:
    """
    Union two GeneSetDbs.

    Members of sets defined in both are unioned. Where both define a value for
    the same set-level column or collection metadata key, ``a`` wins. Columns
    defined on only one side are kept, missing for the other side's sets. A
    column that is set-level on one side and member-level on the other
    becomes member-level, with the set-level values copied onto each member.
    When both inputs were conformed to the same universe the result is
    conformed to it too; otherwise it is unconformed.
    """
    if not isinstance(b, GeneSetDb):
        b = GeneSetDb(b)

    # a column that is member-level on either side is member-level in the union
    member_cols = []
    for gdb in (a, b):
        member_cols.extend(c for c in gdb.db.columns if c not in DB_KEY_COLS and c not in member_cols)

    db = (
        pl.concat([_spread_to_members(a, member_cols), _spread_to_members(b, member_cols)],
                  how="diagonal_relaxed")
        .unique(subset=DB_KEY_COLS, keep="first", maintain_order=True)
        .sort(DB_KEY_COLS, maintain_order=True)
    )

    table = init_table(db)
    anno = pl.concat(
        [_set_annotations(a).drop(member_cols, strict=False),
         _set_annotations(b).drop(member_cols, strict=False)],
        how="diagonal_relaxed",
    )
    extra = [c for c in anno.columns if c not in KEY_COLS]
    if extra:
        anno = anno.group_by(KEY_COLS, maintain_order=True).agg(
            [pl.col(c).drop_nulls().first().alias(c) for c in extra]
        )
        table = table.join(anno, on=KEY_COLS, how="left").sort(KEY_COLS, maintain_order=True)

    fmap = (
        pl.concat([a.feature_id_map(), b.feature_id_map()])
        .unique(subset="feature_id", keep="first", maintain_order=True)
        .with_columns(pl.lit(None, dtype=pl.Int64).alias("x_idx"))
        .sort("feature_id")
    )

    metadata = {}
    for collection in sorted(set(a._collection_metadata) | set(b._collection_metadata)):
        merged = dict(b._collection_metadata.get(collection, {}))
        merged.update(a._collection_metadata.get(collection, {}))
        metadata[collection] = merged

    out = a._replace(
        db=db, table=table, feature_id_map=fmap, collection_metadata=metadata,
        universe=None, conform_args=None,
    )
    if a.universe is not None and a.universe == b.universe:
        out = out.conform(list(a.universe), **a._conform_args)
    logger.info(f"Combined GeneSetDbs into {out.table.height} gene sets")
    return out


def add_set_metadata(gdb: GeneSetDb, metadata: pl.DataFrame) -> GeneSetDb:
    """
    Left join set-level annotation columns onto the catalog.

    Args:
        gdb: GeneSetDb to annotate
        metadata: DataFrame with ``collection`` and ``name`` columns, unique
            per (collection, name), plus the annotation columns. Existing
            columns of the same name are updated where the new value is not
            missing

    Returns:
        Annotated GeneSetDb
    """
    missing = [c for c in KEY_COLS if c not in metadata.columns]
    if missing:
        raise SchemaError(f"Set metadata is missing key columns: {', '.join(missing)}")
    protected = [c for c in ("active", "N", "n") if c in metadata.columns]
    if protected:
        raise SchemaError(f"Set metadata cannot overwrite: {', '.join(protected)}")
    member_level = [c for c in metadata.columns if c not in KEY_COLS and c in gdb.db.columns]
    if member_level:
        raise SchemaError(
            f"Set metadata columns are already member-level annotations: {', '.join(member_level)}"
        )
    metadata = metadata.with_columns([pl.col(c).cast(pl.Utf8) for c in KEY_COLS])
    if metadata.select(KEY_COLS).is_duplicated().any():
        raise SchemaError("Set metadata must have one row per (collection, name)")

    new_cols = [c for c in metadata.columns if c not in KEY_COLS]
    if not new_cols:
        return gdb
    overlap = [c for c in new_cols if c in gdb.table.columns]
    table = gdb.table.join(metadata, on=KEY_COLS, how="left", suffix="_new")
    if overlap:
        table = table.with_columns(
            [pl.coalesce(f"{c}_new", c).alias(c) for c in overlap]
        ).drop([f"{c}_new" for c in overlap])
    table = table.sort(KEY_COLS, maintain_order=True)
    return gdb._replace(table=table)


def rename_collections(gdb: GeneSetDb, mapping: Mapping[str, str]) -> GeneSetDb:
    """Relabel collections in every relation at once."""
    mapping = {str(k): str(v) for k, v in mapping.items()}
    unknown = sorted(set(mapping) - set(gdb._collection_metadata))
    if unknown:
        raise SetNotFoundError(f"Unknown collection(s): {', '.join(unknown)}")
    renamed = [mapping.get(c, c) for c in gdb._collection_metadata]
    if len(set(renamed)) != len(renamed):
        raise SchemaError("Renaming would merge collections; use combine() instead")

    relabel = pl.col("collection").replace(mapping)
    db = gdb.db.with_columns(relabel).sort(DB_KEY_COLS, maintain_order=True)
    table = gdb.table.with_columns(relabel).sort(KEY_COLS, maintain_order=True)
    metadata = {mapping.get(c, c): m for c, m in gdb._collection_metadata.items()}
    return gdb._replace(db=db, table=table, collection_metadata=metadata)


def with_collection_metadata(gdb: GeneSetDb, collection: str, key: str, value) -> GeneSetDb:
    if collection not in gdb._collection_metadata:
        raise SetNotFoundError(f"Collection '{collection}' is not defined in this GeneSetDb")
    metadata = {c: dict(m) for c, m in gdb._collection_metadata.items()}
    metadata[collection][key] = value
    return gdb._replace(collection_metadata=metadata)


def with_feature_id_map(gdb: GeneSetDb, feature_id_map: Optional[pl.DataFrame]) -> GeneSetDb:
    """Replace the feature_id -> x_id translation. The result is unconformed."""
    fmap = init_feature_id_map(gdb.db["feature_id"], feature_id_map)
    out = gdb.unconform()
    return out._replace(feature_id_map=fmap)
