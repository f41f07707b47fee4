"""
The GeneSetDb container.

A GeneSetDb holds gene set definitions in four relations that are always
built, validated and replaced together:

* ``db``: one row per (collection, name, feature_id) membership, plus any
  member-level annotation columns
* ``table``: one row per (collection, name) gene set with ``active``, ``N``
  (number of defined members), ``n`` (members found in the conformed
  universe) and any set-level annotation columns
* ``feature_id_map``: (feature_id, x_id, x_idx) translating feature ids into
  the identifier space and 0-based row positions of a conformed universe
* collection metadata: arbitrary key/value annotation per collection, which
  always includes a ``url_function``

Every operation returns a new GeneSetDb; nothing is modified in place.
"""

import logging
import warnings
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import polars as pl

from .errors import ConstructionError, GeneSetDbWarning, SchemaError
from .keys import DEFAULT_SEP
from .rename import as_xref_frame

logger = logging.getLogger(__name__)

KEY_COLS = ["collection", "name"]
DB_KEY_COLS = ["collection", "name", "feature_id"]
TABLE_CORE_COLS = ["collection", "name", "active", "N", "n"]
FMAP_COLS = ["feature_id", "x_id", "x_idx"]
RESERVED_COLS = {"active", "N", "n", "x_id", "x_idx"}


def no_url(collection: str, name: str, gdb=None) -> Optional[str]:
    """Default url function for collections that have no gene set urls."""
    return None


def _is_feature_vector(value) -> bool:
    return isinstance(value, Iterable) and not isinstance(value, (str, bytes, Mapping))


def _frame_from_nested(x: Mapping[str, Mapping[str, Iterable]]) -> pl.DataFrame:
    """Melt a {collection: {name: [feature_id, ...]}} mapping into long form."""
    collections, names, features = [], [], []
    for collection, sets in x.items():
        if not isinstance(sets, Mapping):
            raise ConstructionError(
                f"Collection '{collection}' must map gene set names to feature ids"
            )
        for name, ids in sets.items():
            if not _is_feature_vector(ids):
                raise ConstructionError(
                    f"Gene set '{name}' in collection '{collection}' is not a "
                    f"collection of feature ids"
                )
            for fid in ids:
                collections.append(str(collection))
                names.append(str(name))
                features.append(None if fid is None else str(fid))
    return pl.DataFrame(
        {"collection": collections, "name": names, "feature_id": features},
        schema={"collection": pl.Utf8, "name": pl.Utf8, "feature_id": pl.Utf8},
    )


def _name_collections(x: Mapping, collection_name) -> Dict[str, Any]:
    if collection_name is None:
        return dict(x)
    if isinstance(collection_name, str):
        collection_name = [collection_name]
    collection_name = list(collection_name)
    if len(collection_name) != len(x):
        raise ConstructionError(
            f"collection_name has {len(collection_name)} entries for {len(x)} collections"
        )
    if len(set(collection_name)) != len(collection_name):
        raise ConstructionError("collection_name entries must be unique")
    return dict(zip(collection_name, x.values()))


def as_long_frame(x, collection_name=None) -> pl.DataFrame:
    """
    Collapse any supported gene set input into a long-form DataFrame.

    Supported inputs are a long-form DataFrame, a mapping of gene set name to
    feature ids (a single collection), and a mapping of collection to such a
    mapping.
    """
    if isinstance(x, pl.DataFrame):
        frame = x
        if "collection" not in frame.columns:
            if isinstance(collection_name, str):
                frame = frame.with_columns(pl.lit(collection_name, dtype=pl.Utf8).alias("collection"))
            elif (
                collection_name is not None
                and _is_feature_vector(collection_name)
                and len(list(collection_name)) == frame.height
            ):
                frame = frame.with_columns(
                    pl.Series("collection", [str(c) for c in collection_name], dtype=pl.Utf8)
                )
            else:
                raise ConstructionError(
                    "If no `collection` column is provided, collection_name must be "
                    "a single name or one name per row"
                )
        return frame

    if isinstance(x, Mapping):
        if len(x) == 0:
            raise ConstructionError("A non-empty mapping of gene sets is required")
        values = list(x.values())
        if all(_is_feature_vector(v) for v in values):
            # a single collection of gene sets
            if collection_name is None:
                collection_name = "anon_collection_1"
            if isinstance(collection_name, str):
                return _frame_from_nested({collection_name: x})
            return _frame_from_nested(_name_collections({None: x}, collection_name))
        if all(isinstance(v, Mapping) for v in values):
            if collection_name is None and any(not isinstance(k, str) for k in x.keys()):
                x = {f"anon_collection_{i + 1}": v for i, v in enumerate(values)}
            return _frame_from_nested(_name_collections(x, collection_name))
        raise ConstructionError(
            "Gene set mappings must hold either feature id vectors or one mapping per collection"
        )

    raise ConstructionError(f"No GeneSetDb constructor defined for: {type(x).__name__}")


def _classify_columns(frame: pl.DataFrame, columns: List[str]) -> Tuple[List[str], List[str]]:
    """
    Split extra columns into set-level and member-level annotations.

    A column is set-level when it holds a single value (missing values count
    as equal to each other) within every (collection, name) group.
    """
    if not columns:
        return [], []
    constant = frame.group_by(KEY_COLS).agg(
        [(pl.col(c).n_unique() == 1).alias(c) for c in columns]
    )
    flags = constant.select([pl.col(c).all() for c in columns]).row(0)
    set_level = [c for c, flag in zip(columns, flags) if flag]
    member_level = [c for c, flag in zip(columns, flags) if not flag]
    return set_level, member_level


def init_table(db: pl.DataFrame) -> pl.DataFrame:
    """Build the unconformed per-set table from a membership relation."""
    return (
        db.group_by(KEY_COLS)
        .agg(pl.len().cast(pl.Int64).alias("N"))
        .with_columns(
            pl.lit(False).alias("active"),
            pl.lit(None, dtype=pl.Int64).alias("n"),
        )
        .select(TABLE_CORE_COLS)
        .sort(KEY_COLS, maintain_order=True)
    )


def init_feature_id_map(feature_ids: pl.Series, feature_id_map=None) -> pl.DataFrame:
    """
    Build an unconformed feature id map over the given feature ids.

    Without ``feature_id_map`` every feature maps onto itself. With one, the
    first column's ids are mapped to the second column's; ids it does not
    cover keep the identity mapping.
    """
    fmap = pl.DataFrame({"feature_id": feature_ids.unique()}, schema={"feature_id": pl.Utf8})
    if feature_id_map is None:
        fmap = fmap.with_columns(pl.col("feature_id").alias("x_id"))
    else:
        xref = as_xref_frame(feature_id_map).rename({"from": "feature_id", "to": "x_id"})
        fmap = fmap.join(xref, on="feature_id", how="left").with_columns(
            pl.coalesce("x_id", "feature_id").alias("x_id")
        )
    return fmap.with_columns(pl.lit(None, dtype=pl.Int64).alias("x_idx")).select(FMAP_COLS).sort("feature_id")


def build_relations(frame: pl.DataFrame, feature_id_map=None):
    """Create the db, table, feature id map and collection metadata from a long frame."""
    missing = [c for c in DB_KEY_COLS if c not in frame.columns]
    if missing:
        raise ConstructionError(f"The following columns are missing from the input: {', '.join(missing)}")
    reserved = sorted(RESERVED_COLS & set(frame.columns))
    if reserved:
        raise ConstructionError(f"Input uses reserved column names: {', '.join(reserved)}")
    if frame.height == 0:
        raise ConstructionError("Cannot build a GeneSetDb from an empty table")

    frame = frame.with_columns([pl.col(c).cast(pl.Utf8) for c in DB_KEY_COLS])

    n_missing = frame["feature_id"].null_count()
    if n_missing:
        msg = f"Removing {n_missing} row(s) with a missing feature_id from input"
        logger.warning(msg)
        warnings.warn(msg, GeneSetDbWarning, stacklevel=3)
        frame = frame.filter(pl.col("feature_id").is_not_null())
        if frame.height == 0:
            raise ConstructionError("No rows with a feature_id remain in the input")

    if frame["collection"].null_count() or frame["name"].null_count():
        raise ConstructionError("collection and name cannot contain missing values")

    # first-seen row wins for duplicated memberships
    frame = frame.unique(subset=DB_KEY_COLS, keep="first", maintain_order=True)

    extra = [c for c in frame.columns if c not in DB_KEY_COLS]
    set_level, member_level = _classify_columns(frame, extra)

    db = frame.select(DB_KEY_COLS + member_level).sort(DB_KEY_COLS, maintain_order=True)
    table = init_table(db)
    if set_level:
        anno = frame.select(KEY_COLS + set_level).unique(subset=KEY_COLS, keep="first", maintain_order=True)
        table = table.join(anno, on=KEY_COLS, how="left").sort(KEY_COLS, maintain_order=True)

    fmap = init_feature_id_map(db["feature_id"], feature_id_map)
    metadata = {c: {"url_function": no_url} for c in table["collection"].unique().sort().to_list()}
    return db, table, fmap, metadata


def validate_relations(
    db: pl.DataFrame,
    table: pl.DataFrame,
    feature_id_map: pl.DataFrame,
    collection_metadata: Mapping[str, Mapping[str, Any]],
) -> None:
    """Raise SchemaError if the relations violate any GeneSetDb invariant."""
    for label, frame, required in (
        ("db", db, DB_KEY_COLS),
        ("table", table, TABLE_CORE_COLS),
        ("feature_id_map", feature_id_map, FMAP_COLS),
    ):
        missing = [c for c in required if c not in frame.columns]
        if missing:
            raise SchemaError(f"{label} is missing required columns: {', '.join(missing)}")

    shared = sorted(
        (set(db.columns) - set(DB_KEY_COLS)) & (set(table.columns) - set(TABLE_CORE_COLS))
    )
    if shared:
        raise SchemaError(
            f"Columns cannot be both set-level and member-level: {', '.join(shared)}"
        )

    if db["feature_id"].null_count():
        raise SchemaError("Missing values are not permitted in db.feature_id")
    if db.select(DB_KEY_COLS).is_duplicated().any():
        raise SchemaError("Duplicated (collection, name, feature_id) entries in db")
    if table.select(KEY_COLS).is_duplicated().any():
        raise SchemaError("Duplicated (collection, name) entries in table")

    db_keys = db.select(KEY_COLS).unique()
    table_keys = table.select(KEY_COLS)
    if db_keys.join(table_keys, on=KEY_COLS, how="anti").height:
        raise SchemaError("db defines gene sets that are missing from table")
    if table_keys.join(db_keys, on=KEY_COLS, how="anti").height:
        raise SchemaError("table lists gene sets that have no members in db")

    if feature_id_map["feature_id"].null_count() or feature_id_map["feature_id"].is_duplicated().any():
        raise SchemaError("feature_id_map must have exactly one row per feature_id")
    if db.select("feature_id").unique().join(feature_id_map, on="feature_id", how="anti").height:
        raise SchemaError("Some db feature_ids are not in the feature_id_map")

    bad_n = table.filter(pl.col("n").is_not_null() & (pl.col("n") > pl.col("N")))
    if bad_n.height:
        raise SchemaError("Gene sets found with more conformed members (n) than defined members (N)")

    collections = set(table["collection"].to_list())
    if set(collection_metadata.keys()) != collections:
        raise SchemaError("Collections in collection metadata do not match the defined gene sets")
    bad_fns = [
        c for c in sorted(collections)
        if not callable(collection_metadata[c].get("url_function"))
    ]
    if bad_fns:
        raise SchemaError(f"Collections without a callable url_function: {', '.join(bad_fns)}")


class GeneSetDb:
    """
    Indexed collection of gene sets keyed by (collection, name).

    Args:
        x: A long-form DataFrame with ``collection``, ``name`` and
            ``feature_id`` columns (extra columns are kept as set-level or
            member-level annotations), a mapping of gene set name to feature
            ids, a mapping of collection to such a mapping, or a GeneSetDb
        feature_id_map: Optional two column DataFrame (or mapping) translating
            the feature ids used in the gene sets into the ids of the data
            the sets will be conformed to
        collection_name: Collection name(s) to use when ``x`` does not define
            them itself
    """

    def __init__(self, x, feature_id_map=None, collection_name=None):
        if isinstance(x, GeneSetDb):
            self._set_state(
                x._db, x._table, x._feature_id_map, x._collection_metadata,
                x._universe, x._conform_args,
            )
            return

        frame = as_long_frame(x, collection_name)
        db, table, fmap, metadata = build_relations(frame, feature_id_map)
        validate_relations(db, table, fmap, metadata)
        self._set_state(db, table, fmap, metadata, None, None)
        logger.info(
            f"Built GeneSetDb with {table.height} gene sets across "
            f"{len(metadata)} collection(s) over {fmap.height} features"
        )

    def _set_state(self, db, table, feature_id_map, collection_metadata, universe, conform_args):
        self._db = db
        self._table = table
        self._feature_id_map = feature_id_map
        self._collection_metadata = {c: dict(m) for c, m in collection_metadata.items()}
        self._universe = universe
        self._conform_args = dict(conform_args) if conform_args else None

    def _replace(self, **changes) -> "GeneSetDb":
        """Return a validated copy of this GeneSetDb with some relations swapped out."""
        state = {
            "db": self._db,
            "table": self._table,
            "feature_id_map": self._feature_id_map,
            "collection_metadata": self._collection_metadata,
            "universe": self._universe,
            "conform_args": self._conform_args,
        }
        unknown = set(changes) - set(state)
        if unknown:
            raise TypeError(f"Unknown GeneSetDb state: {', '.join(sorted(unknown))}")
        state.update(changes)
        validate_relations(
            state["db"], state["table"], state["feature_id_map"], state["collection_metadata"]
        )
        out = object.__new__(type(self))
        out._set_state(
            state["db"], state["table"], state["feature_id_map"],
            state["collection_metadata"], state["universe"], state["conform_args"],
        )
        return out

    # Relations ---------------------------------------------------------------

    @property
    def db(self) -> pl.DataFrame:
        """The membership relation."""
        return self._db

    @property
    def table(self) -> pl.DataFrame:
        """The per gene set relation, in canonical order."""
        return self._table

    @property
    def universe(self) -> Optional[Tuple[str, ...]]:
        """The identifiers this GeneSetDb was conformed to, if any."""
        return self._universe

    @property
    def collections(self) -> List[str]:
        return self._table["collection"].unique(maintain_order=True).to_list()

    def feature_id_map(self) -> pl.DataFrame:
        """Return the (feature_id, x_id, x_idx) relation."""
        return self._feature_id_map

    def __len__(self) -> int:
        return self._table.height

    def __contains__(self, key) -> bool:
        collection, name = key
        return (
            self._table.filter((pl.col("collection") == collection) & (pl.col("name") == name)).height
            > 0
        )

    def equals(self, other: "GeneSetDb") -> bool:
        """True if both GeneSetDbs hold identical relations and conform state."""
        if not isinstance(other, GeneSetDb):
            return False
        return (
            self._db.equals(other._db)
            and self._table.equals(other._table)
            and self._feature_id_map.equals(other._feature_id_map)
            and self._collection_metadata == other._collection_metadata
            and self._universe == other._universe
        )

    def __eq__(self, other):
        if not isinstance(other, GeneSetDb):
            return NotImplemented
        return self.equals(other)

    __hash__ = None

    def summary(self) -> str:
        n_active = int(self._table["active"].sum())
        return (
            f"GeneSetDb with {self._table.height} gene sets across "
            f"{len(self._collection_metadata)} collections ({n_active} active); "
            f"conformed: {'yes' if self.is_conformed() else 'no'}"
        )

    def __repr__(self):
        return self.summary()

    # Conform -----------------------------------------------------------------

    def is_conformed(self, universe=None) -> bool:
        """
        Check whether this GeneSetDb has been conformed.

        Args:
            universe: If given, only return True when the GeneSetDb was
                conformed to exactly these identifiers, in this order

        Returns:
            True if conformed (to ``universe`` when provided)
        """
        if self._universe is None:
            return False
        if universe is None:
            return True
        return self._universe == tuple(as_universe(universe))

    def conform(
        self,
        universe,
        remap=None,
        min_set_size: int = 1,
        max_set_size: Optional[int] = None,
        min_match_fraction: float = 0.05,
    ) -> "GeneSetDb":
        """
        Conform the gene sets to a universe of feature identifiers.

        Args:
            universe: Ordered identifiers (ie. expression matrix row names)
            remap: Optional DataFrame or mapping translating db feature ids
                into universe ids. Features it does not cover are treated as
                absent from the universe
            min_set_size: Smallest number of conformed members for a gene set
                to be active
            max_set_size: Largest number of conformed members for a gene set
                to be active (None for no limit)
            min_match_fraction: Warn when fewer than this fraction of the
                gene set features are found in the universe

        Returns:
            A new, conformed GeneSetDb
        """
        return conform_db(
            self, universe, remap=remap, min_set_size=min_set_size,
            max_set_size=max_set_size, min_match_fraction=min_match_fraction,
        )

    def unconform(self) -> "GeneSetDb":
        """Drop all conform state, returning an unconformed GeneSetDb."""
        return unconform_db(self)

    # Queries -----------------------------------------------------------------

    def gene_sets(self, active_only: Optional[bool] = None) -> pl.DataFrame:
        return query.gene_sets(self, active_only=active_only)

    def gene_set(self, collection: str, name: str, fetch_all: bool = False) -> pl.DataFrame:
        return query.gene_set(self, collection, name, fetch_all=fetch_all)

    def is_active(self, collection: str, name: str) -> bool:
        return query.is_active(self, collection, name)

    def feature_ids(
        self,
        collection: Optional[str] = None,
        name: Optional[str] = None,
        value: str = "feature_id",
        active_only: Optional[bool] = None,
        fetch_all: bool = False,
    ) -> List:
        return query.feature_ids(
            self, collection, name, value=value, active_only=active_only, fetch_all=fetch_all
        )

    def incidence_matrix(self, value: Optional[str] = None, active_only: Optional[bool] = None):
        return query.incidence_matrix(self, value=value, active_only=active_only)

    def as_index_lists(self, value: str = "x_idx", active_only: bool = True, sep: str = DEFAULT_SEP):
        return query.as_index_lists(self, value=value, active_only=active_only, sep=sep)

    def as_frame(self, value: Optional[str] = None, active_only: Optional[bool] = None) -> pl.DataFrame:
        return query.as_frame(self, value=value, active_only=active_only)

    def as_dict(
        self,
        value: str = "feature_id",
        active_only: Optional[bool] = None,
        nested: bool = False,
        sep: str = DEFAULT_SEP,
    ) -> Dict:
        return query.as_dict(self, value=value, active_only=active_only, nested=nested, sep=sep)

    def collection_metadata(self, collection: Optional[str] = None, key: Optional[str] = None):
        return query.collection_metadata(self, collection, key)

    def gene_set_url(self, collection: str, name: str) -> Optional[str]:
        return query.gene_set_url(self, collection, name)

    def feature_id_type(self, collection: str) -> Optional[str]:
        return query.feature_id_type(self, collection)

    # Mutations ---------------------------------------------------------------

    def subset(self, mask) -> "GeneSetDb":
        return mutate.subset(self, mask)

    def filter(self, *predicates) -> "GeneSetDb":
        return mutate.filter_sets(self, *predicates)

    def subset_by_features(self, features: Sequence[str], value: str = "feature_id") -> "GeneSetDb":
        return mutate.subset_by_features(self, features, value=value)

    def combine(self, other) -> "GeneSetDb":
        return mutate.combine(self, other)

    def append(self, x, collection_name=None) -> "GeneSetDb":
        return mutate.combine(self, GeneSetDb(x, collection_name=collection_name))

    def add_set_metadata(self, metadata: pl.DataFrame) -> "GeneSetDb":
        return mutate.add_set_metadata(self, metadata)

    def rename_collections(self, mapping: Mapping[str, str]) -> "GeneSetDb":
        return mutate.rename_collections(self, mapping)

    def with_collection_metadata(self, collection: str, key: str, value) -> "GeneSetDb":
        return mutate.with_collection_metadata(self, collection, key, value)

    def with_url_function(self, collection: str, fn) -> "GeneSetDb":
        return mutate.with_collection_metadata(self, collection, "url_function", fn)

    def with_feature_id_type(self, collection: str, id_type: str) -> "GeneSetDb":
        return mutate.with_collection_metadata(self, collection, "id_type", id_type)

    def with_feature_id_map(self, feature_id_map) -> "GeneSetDb":
        return mutate.with_feature_id_map(self, feature_id_map)


# imported last: these modules operate on GeneSetDb instances
from . import mutate, query  # noqa: E402
from .conform import as_universe, conform_db, unconform_db  # noqa: E402
