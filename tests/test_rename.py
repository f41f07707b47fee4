"""Tests for identifier remapping."""

import pytest
import polars as pl

from genesetdb.rename import as_xref_frame, rename_rows


def test_as_xref_frame_from_mapping():
    """Test building a cross reference from a dict."""
    xref = as_xref_frame({"p1": "TP53", "p2": "MYC"})
    assert xref.columns == ["from", "to"]
    assert xref.height == 2


def test_as_xref_frame_first_mapping_wins():
    """Test that the first mapping of a duplicated source is kept."""
    df = pl.DataFrame({"probe": ["p1", "p1", None], "symbol": ["A", "B", "C"]})
    xref = as_xref_frame(df)
    assert xref.rows() == [("p1", "A")]


def test_as_xref_frame_requires_two_columns():
    """Test that a one column DataFrame is rejected."""
    with pytest.raises(ValueError, match="two columns"):
        as_xref_frame(pl.DataFrame({"probe": ["p1"]}))


def test_rename_rows_basic():
    """Test renaming with unmapped ids and missing targets."""
    ids = ["p1", "p2", "p3"]
    xref = pl.DataFrame({"from": ["p1", "p2"], "to": ["TP53", None]})
    assert rename_rows(ids, xref) == ["TP53", "p2", "p3"]


def test_rename_rows_duplicate_original():
    """Test that later claimants of a taken name keep their original id."""
    ids = ["p1", "p2", "p3"]
    xref = {"p1": "TP53", "p2": "TP53", "p3": "MYC"}
    assert rename_rows(ids, xref, duplicate_policy="original") == ["TP53", "p2", "MYC"]


def test_rename_rows_duplicate_make_unique():
    """Test that later claimants of a taken name get a numeric suffix."""
    ids = ["p1", "p2", "p3"]
    xref = {"p1": "TP53", "p2": "TP53", "p3": "TP53"}
    assert rename_rows(ids, xref, duplicate_policy="make_unique") == ["TP53", "TP53.1", "TP53.2"]


def test_rename_rows_parallel_vector():
    """Test renaming with a vector of new names."""
    assert rename_rows(["a", "b"], ["x", None]) == ["x", "b"]
    with pytest.raises(ValueError, match="entries"):
        rename_rows(["a", "b"], ["x"])


def test_rename_rows_invalid_policy():
    """Test that unknown duplicate policies are rejected."""
    with pytest.raises(ValueError, match="duplicate_policy"):
        rename_rows(["a"], {"a": "b"}, duplicate_policy="drop")
