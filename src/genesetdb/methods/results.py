"""
Result wrappers for enrichment methods and their re-attachment to a GeneSetDb.

A method's ``run`` returns a ``RawResult`` holding whatever frame it produced,
with rows labelled by encoded gene set keys (or in index list order).
``normalize_result`` turns it into a ``NormalizedResult`` whose rows are the
GeneSetDb's active gene sets in catalog order.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import numpy as np
import polars as pl
from statsmodels.stats.multitest import multipletests

from ..errors import MalformedKeyError, ResultAlignmentError
from ..keys import DEFAULT_SEP, decode_gskey

if TYPE_CHECKING:
    from ..db import GeneSetDb

logger = logging.getLogger(__name__)

KEY_COLS = ["collection", "name"]


@dataclass(frozen=True, eq=False)
class RawResult:
    """Unaligned output of an enrichment method."""

    method: str
    payload: pl.DataFrame


@dataclass(frozen=True, eq=False)
class NormalizedResult:
    """Enrichment statistics keyed by (collection, name) in catalog order."""

    method: str
    table: pl.DataFrame


@dataclass(frozen=True)
class MethodFailure:
    """Record of an enrichment method that raised during dispatch."""

    method: str
    error: BaseException

    @property
    def message(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


def align_result(
    gdb: "GeneSetDb",
    frame: pl.DataFrame,
    key_col: Optional[str] = "key",
    sep: str = DEFAULT_SEP,
    active_only: bool = True,
) -> pl.DataFrame:
    """
    Re-key a method result onto the gene set catalog.

    Args:
        gdb: The GeneSetDb the method was run against
        frame: Method output. Rows are labelled by encoded keys in
            ``key_col``, or are in catalog order when ``key_col`` is None or
            absent from the frame
        key_col: Column holding encoded gene set keys
        sep: Key separator
        active_only: Align against the active catalog

    Returns:
        DataFrame with collection, name, N and n followed by the result columns,
        one row per catalog set in catalog order

    Raises:
        ResultAlignmentError: If a key cannot be decoded, names a set that is
            not in the catalog, is duplicated, or a catalog set has no row
    """
    catalog = gdb.gene_sets(active_only=active_only).select(KEY_COLS + ["N", "n"])

    if key_col is None or key_col not in frame.columns:
        if frame.height != catalog.height:
            raise ResultAlignmentError(
                f"Positional result has {frame.height} rows for {catalog.height} gene sets"
            )
        clash = [c for c in frame.columns if c in catalog.columns]
        return pl.concat([catalog, frame.drop(clash)], how="horizontal")

    try:
        decoded = decode_gskey(frame[key_col].cast(pl.Utf8), sep=sep)
    except MalformedKeyError as e:
        raise ResultAlignmentError(f"Result keys could not be decoded: {e}") from e

    values = frame.drop([key_col] + [c for c in frame.columns if c in catalog.columns])
    keyed = pl.concat([decoded, values], how="horizontal")

    if keyed.select(KEY_COLS).is_duplicated().any():
        raise ResultAlignmentError("Result contains duplicated gene set keys")

    unknown = keyed.join(catalog, on=KEY_COLS, how="anti")
    if unknown.height:
        first = unknown.row(0, named=True)
        raise ResultAlignmentError(
            f"{unknown.height} result row(s) do not match a gene set, "
            f"ie. ({first['collection']}, {first['name']})"
        )
    missing = catalog.join(keyed, on=KEY_COLS, how="anti")
    if missing.height:
        raise ResultAlignmentError(f"Result is missing {missing.height} gene set(s)")

    return (
        catalog.with_row_index("_row")
        .join(keyed, on=KEY_COLS, how="left")
        .sort("_row")
        .drop("_row")
    )


def adjust_pvalues(pvals, method: str = "fdr_bh") -> np.ndarray:
    """
    Multiple testing correction that passes missing p-values through.

    Args:
        pvals: P-values, NaN for untested sets
        method: Any ``statsmodels`` ``multipletests`` method

    Returns:
        Adjusted p-values, NaN where the input was NaN
    """
    pvals = np.asarray(pvals, dtype=np.float64)
    padj = np.full(pvals.shape, np.nan)
    ok = ~np.isnan(pvals)
    if ok.any():
        _, corrected, _, _ = multipletests(pvals[ok], method=method)
        padj[ok] = corrected
    return padj


def default_normalize(raw: RawResult, gdb: "GeneSetDb", padj_method: str = "fdr_bh",
                      sep: str = DEFAULT_SEP) -> NormalizedResult:
    """Align a keyed result and add a ``padj`` column when it reports ``pval``."""
    table = align_result(gdb, raw.payload, sep=sep)
    if "pval" in table.columns:
        padj = adjust_pvalues(table["pval"].cast(pl.Float64).fill_null(np.nan).to_numpy(), padj_method)
        table = table.with_columns(pl.Series("padj", padj))
    return NormalizedResult(method=raw.method, table=table)
