"""
Identifier remapping helpers.

These build the ``from -> to`` lookups used to translate gene set feature ids
into the identifier space of an expression universe, and to rename the rows
of the universe itself (ie. probe ids to gene symbols).
"""

import logging
from typing import Dict, List, Mapping, Sequence, Union

import polars as pl

logger = logging.getLogger(__name__)

XrefLike = Union[pl.DataFrame, Mapping[str, str]]


def as_xref_frame(xref: XrefLike) -> pl.DataFrame:
    """
    Normalise an identifier cross reference into a two column DataFrame.

    Args:
        xref: A DataFrame whose first column holds source ids and second column
            holds target ids, or a mapping of source id to target id

    Returns:
        DataFrame with Utf8 ``from`` and ``to`` columns. Rows with a missing
        source id are dropped and the first mapping of a duplicated source wins.
    """
    if isinstance(xref, pl.DataFrame):
        if xref.width < 2:
            raise ValueError("Cross reference DataFrame needs at least two columns")
        src, dst = xref.columns[:2]
        frame = xref.select(
            pl.col(src).cast(pl.Utf8).alias("from"),
            pl.col(dst).cast(pl.Utf8).alias("to"),
        )
    elif isinstance(xref, Mapping):
        frame = pl.DataFrame(
            {
                "from": [None if k is None else str(k) for k in xref.keys()],
                "to": [None if v is None else str(v) for v in xref.values()],
            },
            schema={"from": pl.Utf8, "to": pl.Utf8},
        )
    else:
        raise ValueError(
            f"Cross reference must be a DataFrame or mapping, got {type(xref).__name__}"
        )

    return (
        frame.filter(pl.col("from").is_not_null())
        .unique(subset="from", keep="first", maintain_order=True)
    )


def _make_unique(values: List[str]) -> List[str]:
    """Append .1, .2, ... to repeated values, leaving first occurrences alone."""
    taken = set(values)
    counts: Dict[str, int] = {}
    seen = set()
    out = []
    for value in values:
        if value not in seen:
            seen.add(value)
            out.append(value)
            continue
        k = counts.get(value, 0)
        while True:
            k += 1
            candidate = f"{value}.{k}"
            if candidate not in taken:
                break
        counts[value] = k
        taken.add(candidate)
        out.append(candidate)
    return out


def rename_rows(
    ids: Sequence[str],
    xref: Union[XrefLike, Sequence[str]],
    duplicate_policy: str = "original",
) -> List[str]:
    """
    Rename a sequence of row identifiers through a cross reference.

    Identifiers without an entry in ``xref`` keep their name, as do entries
    whose target is missing. When several identifiers would be renamed to the
    same target, ``duplicate_policy`` decides what happens to all but the
    first of them: ``"original"`` keeps their original identifier and
    ``"make_unique"`` suffixes the target with ``.1``, ``.2``, ...

    Args:
        ids: Identifiers to rename
        xref: Cross reference (see ``as_xref_frame``), or a sequence of new
            names parallel to ``ids``
        duplicate_policy: Either "original" or "make_unique"

    Returns:
        List of renamed identifiers, parallel to ``ids``
    """
    if duplicate_policy not in ("original", "make_unique"):
        raise ValueError(f"Unknown duplicate_policy: {duplicate_policy}")

    ids = [str(i) for i in ids]
    if not isinstance(xref, (pl.DataFrame, Mapping)):
        targets = list(xref)
        if len(targets) != len(ids):
            raise ValueError(
                f"Renaming vector has {len(targets)} entries, expected {len(ids)}"
            )
        xref = pl.DataFrame(
            {"from": ids, "to": [None if t is None else str(t) for t in targets]},
            schema={"from": pl.Utf8, "to": pl.Utf8},
        )

    lookup = as_xref_frame(xref).with_columns(pl.coalesce("to", "from").alias("to"))

    # ids missing from the cross reference map onto themselves
    known = set(lookup["from"].to_list())
    missed = [i for i in dict.fromkeys(ids) if i not in known]
    if missed:
        lookup = pl.concat(
            [lookup, pl.DataFrame({"from": missed, "to": missed}, schema=lookup.schema)]
        )

    sources = lookup["from"].to_list()
    targets = lookup["to"].to_list()
    if duplicate_policy == "original":
        claimed = set()
        for i, target in enumerate(targets):
            if target in claimed:
                targets[i] = sources[i]
            else:
                claimed.add(target)
    else:
        targets = _make_unique(targets)

    mapping = dict(zip(sources, targets))
    renamed = [mapping[i] for i in ids]
    n_changed = sum(a != b for a, b in zip(ids, renamed))
    logger.debug(f"Renamed {n_changed}/{len(ids)} identifiers")
    return renamed
