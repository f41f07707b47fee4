"""
Encoding of (collection, name) gene set keys into single string tokens.

Encoded keys are used as row labels for everything handed to, or returned
from, the enrichment methods. Decoding splits on the **first** occurrence of
the separator: the collection is everything before it and the name is
everything after it. Names may therefore contain the separator, collections
may not, and ``encode_gskey`` refuses collections that do.
"""

from typing import Iterable, List, Optional, Sequence, Tuple, Union

import polars as pl

from .errors import MalformedKeyError

DEFAULT_SEP = ";;"


def _as_list(x) -> List[str]:
    if isinstance(x, str):
        return [x]
    if isinstance(x, pl.Series):
        return x.cast(pl.Utf8).to_list()
    return [str(v) if v is not None else None for v in x]


def encode_gskey(
    collection: Union[str, Sequence[str], pl.Series, pl.DataFrame],
    name: Optional[Union[str, Sequence[str], pl.Series]] = None,
    sep: str = DEFAULT_SEP,
) -> Union[str, List[str]]:
    """
    Encode collection/name pairs into gene set keys.

    Args:
        collection: A collection name, a sequence of them, or a DataFrame with
            ``collection`` and ``name`` columns
        name: Gene set name(s) parallel to ``collection``. Must be omitted
            when ``collection`` is a DataFrame
        sep: Separator placed between collection and name

    Returns:
        A single key when scalars were given, otherwise a list of keys
    """
    if not sep:
        raise ValueError("Key separator cannot be empty")

    if isinstance(collection, pl.DataFrame):
        missing = {"collection", "name"} - set(collection.columns)
        if missing:
            raise ValueError(f"DataFrame is missing key columns: {', '.join(sorted(missing))}")
        if name is not None:
            raise ValueError("`name` must be omitted when encoding from a DataFrame")
        return encode_gskey(collection["collection"], collection["name"], sep=sep)

    if name is None:
        raise ValueError("`name` is required when `collection` is not a DataFrame")

    scalar = isinstance(collection, str) and isinstance(name, str)
    collections = _as_list(collection)
    names = _as_list(name)
    if len(collections) != len(names):
        raise ValueError(
            f"collection and name lengths differ ({len(collections)} != {len(names)})"
        )

    keys = []
    for coll, nm in zip(collections, names):
        if coll is None or nm is None:
            raise MalformedKeyError("Cannot encode a key with a missing collection or name")
        if sep in coll:
            raise MalformedKeyError(
                f"Collection '{coll}' contains the key separator '{sep}'"
            )
        keys.append(f"{coll}{sep}{nm}")

    return keys[0] if scalar else keys


def split_gskey(key: str, sep: str = DEFAULT_SEP) -> Tuple[str, str]:
    """Split one encoded key into its (collection, name) pair."""
    if not isinstance(key, str):
        raise MalformedKeyError(f"Gene set keys must be strings, got {type(key).__name__}")
    collection, found, name = key.partition(sep)
    if not found:
        raise MalformedKeyError(f"Separator '{sep}' not found in key '{key}'")
    return collection, name


def decode_gskey(keys: Iterable[str], sep: str = DEFAULT_SEP) -> pl.DataFrame:
    """
    Decode encoded keys into a DataFrame of collection and name columns.

    Args:
        keys: Encoded gene set keys
        sep: Separator used during encoding

    Returns:
        DataFrame with ``collection`` and ``name`` columns, one row per key
    """
    pairs = [split_gskey(key, sep) for key in _as_list(keys)]
    return pl.DataFrame(
        {
            "collection": [p[0] for p in pairs],
            "name": [p[1] for p in pairs],
        },
        schema={"collection": pl.Utf8, "name": pl.Utf8},
    )
