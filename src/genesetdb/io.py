"""
Readers and writers for gene set files.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import polars as pl

from .db import DB_KEY_COLS, KEY_COLS, TABLE_CORE_COLS, GeneSetDb
from .errors import ConstructionError
from .keys import DEFAULT_SEP, encode_gskey

logger = logging.getLogger(__name__)


def read_gmt(file_path: Union[str, Path], collection: str, feature_id_map=None) -> GeneSetDb:
    """
    Load gene sets from a GMT file.

    Each line holds a set name, a description and then the member feature ids,
    all tab separated. Lines without any members are skipped.

    Args:
        file_path: Path to the GMT file
        collection: Collection name to file the gene sets under
        feature_id_map: Optional feature id map passed to GeneSetDb

    Returns:
        GeneSetDb with a set-level ``description`` column
    """
    file_path = Path(file_path)
    rows = {"name": [], "description": [], "feature_id": []}
    with open(file_path, "r") as handle:
        for lineno, line in enumerate(handle, start=1):
            line = line.rstrip("\r\n")
            if not line.strip():
                continue
            fields = line.split("\t")
            genes = [g for g in fields[2:] if g]
            if len(fields) < 3 or not genes:
                logger.warning(f"Skipping line {lineno} of {file_path.name}: no gene set members")
                continue
            for gene in genes:
                rows["name"].append(fields[0])
                rows["description"].append(fields[1])
                rows["feature_id"].append(gene)

    if not rows["name"]:
        raise ConstructionError(f"No gene sets found in {file_path}")

    frame = pl.DataFrame(rows, schema={c: pl.Utf8 for c in rows}).with_columns(
        pl.lit(collection, dtype=pl.Utf8).alias("collection")
    )
    logger.info(f"Read {frame['name'].n_unique()} gene sets from {file_path}")
    return GeneSetDb(frame, feature_id_map=feature_id_map)


def write_gmt(gdb: GeneSetDb, file_path: Union[str, Path], collection: Optional[str] = None,
              sep: str = DEFAULT_SEP) -> Path:
    """
    Write gene sets to a GMT file.

    Args:
        gdb: GeneSetDb to export
        file_path: Output path
        collection: Only write this collection. When omitted and the GeneSetDb
            holds several collections, set names are written as encoded keys
        sep: Key separator used for encoded set names

    Returns:
        The path written to
    """
    file_path = Path(file_path)
    catalog = gdb.gene_sets(active_only=False)
    if collection is not None:
        if collection not in gdb.collections:
            raise ValueError(f"Collection '{collection}' is not defined in this GeneSetDb")
        catalog = catalog.filter(pl.col("collection") == collection)
    use_keys = catalog["collection"].n_unique() > 1

    members = {
        (c, n): ids
        for c, n, ids in gdb.db.group_by(KEY_COLS, maintain_order=True)
        .agg(pl.col("feature_id"))
        .iter_rows()
    }
    has_description = "description" in catalog.columns
    with open(file_path, "w") as handle:
        for row in catalog.iter_rows(named=True):
            name = encode_gskey(row["collection"], row["name"], sep=sep) if use_keys else row["name"]
            description = row["description"] if has_description and row["description"] is not None else ""
            genes = members[(row["collection"], row["name"])]
            handle.write("\t".join([name, str(description)] + genes) + "\n")
    logger.info(f"Wrote {catalog.height} gene sets to {file_path}")
    return file_path


def read_gene_set_table(file_path: Union[str, Path], separator: str = "\t", feature_id_map=None) -> GeneSetDb:
    """
    Load a long-form gene set table with collection, name and feature_id columns.

    Args:
        file_path: Path to a delimited text file with a header row
        separator: Column separator
        feature_id_map: Optional feature id map passed to GeneSetDb

    Returns:
        GeneSetDb built from the table
    """
    df = pl.read_csv(
        file_path,
        separator=separator,
        has_header=True,
        infer_schema_length=10000,
    )
    return GeneSetDb(df, feature_id_map=feature_id_map)


def write_gene_set_table(gdb: GeneSetDb, file_path: Union[str, Path], separator: str = "\t") -> Path:
    """Write all memberships with their member- and set-level annotations."""
    file_path = Path(file_path)
    set_cols = [c for c in gdb.table.columns if c not in TABLE_CORE_COLS]
    frame = gdb.db
    if set_cols:
        frame = frame.join(gdb.table.select(KEY_COLS + set_cols), on=KEY_COLS, how="left")
    frame = frame.sort(DB_KEY_COLS, maintain_order=True)
    frame.write_csv(file_path, separator=separator)
    logger.info(f"Wrote {frame.height} gene set memberships to {file_path}")
    return file_path
