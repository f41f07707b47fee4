"""
Read-only accessors over a GeneSetDb.

Lookups of a collection or gene set that is not defined raise
``SetNotFoundError``; a set that exists but has no members in the conformed
universe returns an empty result instead.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

import numba as nb
import numpy as np
import polars as pl

from .errors import NotConformedError, SetNotFoundError
from .keys import DEFAULT_SEP, encode_gskey

if TYPE_CHECKING:
    from .db import GeneSetDb

logger = logging.getLogger(__name__)

KEY_COLS = ["collection", "name"]
VALUE_COLS = ("feature_id", "x_id", "x_idx")


def _check_value(gdb: "GeneSetDb", value: str) -> None:
    if value not in VALUE_COLS:
        raise ValueError(f"value must be one of {', '.join(VALUE_COLS)}, got '{value}'")
    if value == "x_idx" and not gdb.is_conformed():
        raise NotConformedError("x_idx positions are only defined for a conformed GeneSetDb")


def _key_filter(collection: str, name: Optional[str] = None) -> pl.Expr:
    expr = pl.col("collection") == collection
    if name is not None:
        expr = expr & (pl.col("name") == name)
    return expr


def _require_collection(gdb: "GeneSetDb", collection: str) -> None:
    if collection not in gdb._collection_metadata:
        raise SetNotFoundError(f"Collection '{collection}' is not defined in this GeneSetDb")


def _require_set(gdb: "GeneSetDb", collection: str, name: str) -> pl.DataFrame:
    row = gdb.table.filter(_key_filter(collection, name))
    if row.height == 0:
        raise SetNotFoundError(f"Gene set ({collection}, {name}) is not defined in this GeneSetDb")
    return row


def _catalog(gdb: "GeneSetDb", active_only: Optional[bool]) -> pl.DataFrame:
    if active_only is None:
        active_only = gdb.is_conformed()
    table = gdb.table
    # nothing has been deactivated before conform
    if active_only and gdb.is_conformed():
        table = table.filter(pl.col("active"))
    return table


def _members(gdb: "GeneSetDb", sets: pl.DataFrame, fetch_all: bool) -> pl.DataFrame:
    members = (
        gdb.db.join(sets.select(KEY_COLS), on=KEY_COLS, how="semi")
        .join(gdb.feature_id_map(), on="feature_id", how="left")
        .sort(["collection", "name", "feature_id"], maintain_order=True)
    )
    if gdb.is_conformed() and not fetch_all:
        members = members.filter(pl.col("x_idx").is_not_null())
    return members


def gene_sets(gdb: "GeneSetDb", active_only: Optional[bool] = None) -> pl.DataFrame:
    """
    The gene set catalog, in canonical order.

    Args:
        gdb: GeneSetDb to query
        active_only: Only list active sets. Defaults to True for a conformed
            GeneSetDb; has no effect on an unconformed one

    Returns:
        DataFrame with collection, name, active, N, n and any set-level columns
    """
    return _catalog(gdb, active_only)


def gene_set(gdb: "GeneSetDb", collection: str, name: str, fetch_all: bool = False) -> pl.DataFrame:
    """Member table of one gene set, with its x_id/x_idx mapping."""
    row = _require_set(gdb, collection, name)
    return _members(gdb, row, fetch_all).drop(KEY_COLS)


def is_active(gdb: "GeneSetDb", collection: str, name: str) -> bool:
    return bool(_require_set(gdb, collection, name)["active"][0])


def feature_ids(
    gdb: "GeneSetDb",
    collection: Optional[str] = None,
    name: Optional[str] = None,
    value: str = "feature_id",
    active_only: Optional[bool] = None,
    fetch_all: bool = False,
) -> List:
    """
    Member identifiers of a gene set, a collection, or the whole GeneSetDb.

    Args:
        gdb: GeneSetDb to query
        collection: Restrict to this collection
        name: Restrict to this gene set (requires ``collection``)
        value: Identifier space to return: "feature_id", "x_id" or "x_idx"
        active_only: Only include members of active sets. Defaults to True for
            a conformed GeneSetDb and is ignored when a single set is requested
        fetch_all: Include members that are absent from the conformed universe

    Returns:
        Unique identifiers in canonical member order
    """
    _check_value(gdb, value)
    if name is not None and collection is None:
        raise ValueError("`collection` is required when `name` is given")

    if name is not None:
        sets = _require_set(gdb, collection, name)
    else:
        sets = _catalog(gdb, active_only)
        if collection is not None:
            _require_collection(gdb, collection)
            sets = sets.filter(_key_filter(collection))

    members = _members(gdb, sets, fetch_all)
    return members[value].drop_nulls().unique(maintain_order=True).to_list()


def _member_lists(
    gdb: "GeneSetDb", value: str, active_only: Optional[bool], fetch_all: bool = False
) -> List[Tuple[Tuple[str, str], List]]:
    """Pair each catalog set, in catalog order, with its member identifiers."""
    catalog = _catalog(gdb, active_only).select(KEY_COLS).with_row_index("_row")
    grouped = (
        _members(gdb, catalog, fetch_all)
        .filter(pl.col(value).is_not_null())
        .group_by(KEY_COLS)
        .agg(pl.col(value).unique().sort().alias("_values"))
    )
    ordered = catalog.join(grouped, on=KEY_COLS, how="left").sort("_row")
    out = []
    for collection, name, values in ordered.select(KEY_COLS + ["_values"]).iter_rows():
        out.append(((collection, name), values if values is not None else []))
    return out


def as_index_lists(
    gdb: "GeneSetDb", value: str = "x_idx", active_only: bool = True, sep: str = DEFAULT_SEP
) -> Dict[str, Any]:
    """
    Map encoded gene set keys to their members in the conformed universe.

    The key order equals the row order of ``gene_sets(gdb, active_only)``;
    enrichment results are joined back on that correspondence.

    Args:
        gdb: A GeneSetDb (must be conformed when ``value`` is "x_idx")
        value: "x_idx" (default) for sorted int64 arrays of row positions,
            or "feature_id"/"x_id" for lists of identifiers
        active_only: Only include active sets
        sep: Key separator

    Returns:
        Dict of encoded key to member positions/identifiers
    """
    _check_value(gdb, value)
    lists = {}
    for (collection, name), values in _member_lists(gdb, value, active_only):
        key = encode_gskey(collection, name, sep=sep)
        if value == "x_idx":
            lists[key] = np.asarray(values, dtype=np.int64)
        else:
            lists[key] = list(values)
    logger.debug(f"Built {len(lists)} index lists over {value}")
    return lists


def flatten_index_lists(index_lists: Mapping[str, np.ndarray]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Pack index lists into one array plus offsets for numba kernels.

    Set ``i`` owns ``flat[offsets[i]:offsets[i + 1]]``.
    """
    sizes = np.array([len(v) for v in index_lists.values()], dtype=np.int64)
    offsets = np.zeros(len(sizes) + 1, dtype=np.int64)
    np.cumsum(sizes, out=offsets[1:])
    if len(sizes):
        flat = np.concatenate([np.asarray(v, dtype=np.int64) for v in index_lists.values()])
    else:
        flat = np.zeros(0, dtype=np.int64)
    return flat, offsets


def as_dict(
    gdb: "GeneSetDb",
    value: str = "feature_id",
    active_only: Optional[bool] = None,
    nested: bool = False,
    sep: str = DEFAULT_SEP,
) -> Dict:
    """Export gene set members as ``{key: [ids]}`` or ``{collection: {name: [ids]}}``."""
    _check_value(gdb, value)
    out: Dict = {}
    for (collection, name), values in _member_lists(gdb, value, active_only):
        if nested:
            out.setdefault(collection, {})[name] = list(values)
        else:
            out[encode_gskey(collection, name, sep=sep)] = list(values)
    return out


def as_frame(gdb: "GeneSetDb", value: Optional[str] = None, active_only: Optional[bool] = None) -> pl.DataFrame:
    """
    Long-form export of all memberships, including absent members.

    With ``value`` only the collection, name and that identifier column are
    returned.
    """
    members = _members(gdb, _catalog(gdb, active_only), fetch_all=True)
    cols = ["collection", "name", "feature_id", "x_id", "x_idx"]
    members = members.select(cols + [c for c in members.columns if c not in cols])
    if value is not None:
        _check_value(gdb, value)
        members = members.select(KEY_COLS + [value])
    return members


@nb.njit
def _fill_incidence(set_idx, col_idx, n_sets, n_cols):
    out = np.zeros((n_sets, n_cols), dtype=np.bool_)
    for i in range(set_idx.shape[0]):
        out[set_idx[i], col_idx[i]] = True
    return out


@dataclass(frozen=True, eq=False)
class IncidenceMatrix:
    """Boolean set-by-feature membership matrix."""

    matrix: np.ndarray
    sets: pl.DataFrame
    features: List[str]

    def keys(self, sep: str = DEFAULT_SEP) -> List[str]:
        return encode_gskey(self.sets, sep=sep)


def incidence_matrix(
    gdb: "GeneSetDb", value: Optional[str] = None, active_only: Optional[bool] = None
) -> IncidenceMatrix:
    """
    Build the set membership indicator matrix.

    For a conformed GeneSetDb addressed by "x_id" (the default) or "x_idx" the
    columns are the full universe, in universe order. Otherwise the columns
    are the sorted distinct member identifiers.

    Returns:
        IncidenceMatrix with one row per catalog set
    """
    conformed = gdb.is_conformed()
    if value is None:
        value = "x_id" if conformed else "feature_id"
    _check_value(gdb, value)

    catalog = _catalog(gdb, active_only).select(KEY_COLS).with_row_index("_row")
    members = _members(gdb, catalog, fetch_all=not conformed).join(
        catalog, on=KEY_COLS, how="left"
    )

    if conformed and value != "feature_id":
        features = list(gdb.universe)
        members = members.filter(pl.col("x_idx").is_not_null())
        col_idx = members["x_idx"].to_numpy().astype(np.int64)
    else:
        members = members.filter(pl.col(value).is_not_null())
        features = members[value].unique().sort().to_list()
        lookup = pl.DataFrame({value: features}, schema={value: members.schema[value]})
        members = members.join(lookup.with_row_index("_col"), on=value, how="left")
        col_idx = members["_col"].to_numpy().astype(np.int64)

    set_idx = members["_row"].to_numpy().astype(np.int64)
    matrix = _fill_incidence(set_idx, col_idx, catalog.height, len(features))
    return IncidenceMatrix(matrix=matrix, sets=catalog.select(KEY_COLS), features=[str(f) for f in features])


def collection_metadata(gdb: "GeneSetDb", collection: Optional[str] = None, key: Optional[str] = None):
    """
    Collection level metadata.

    Args:
        gdb: GeneSetDb to query
        collection: Collection to look up. When omitted all metadata is
            returned as a (collection, key, value) DataFrame
        key: Metadata key within ``collection``

    Returns:
        The DataFrame, the collection's metadata dict, or a single value
    """
    meta = gdb._collection_metadata
    if collection is None:
        if key is not None:
            raise ValueError("`collection` is required when `key` is given")
        rows = [(c, k, v) for c in sorted(meta) for k, v in sorted(meta[c].items())]
        return pl.DataFrame(
            {
                "collection": [r[0] for r in rows],
                "key": [r[1] for r in rows],
                "value": pl.Series("value", [r[2] for r in rows], dtype=pl.Object),
            }
        )
    _require_collection(gdb, collection)
    if key is None:
        return dict(meta[collection])
    if key not in meta[collection]:
        raise KeyError(f"No metadata '{key}' for collection '{collection}'")
    return meta[collection][key]


def gene_set_url(gdb: "GeneSetDb", collection: str, name: str) -> Optional[str]:
    _require_set(gdb, collection, name)
    fn = gdb._collection_metadata[collection]["url_function"]
    return fn(collection, name, gdb)


def feature_id_type(gdb: "GeneSetDb", collection: str) -> Optional[str]:
    _require_collection(gdb, collection)
    return gdb._collection_metadata[collection].get("id_type")
