"""Tests for GeneSetDb construction and validation."""

import pytest
import polars as pl

from genesetdb import GeneSetDb
from genesetdb.db import validate_relations
from genesetdb.errors import ConstructionError, GeneSetDbWarning, SchemaError


@pytest.fixture
def long_frame():
    """Create a long-form gene set table with set- and member-level annotations."""
    return pl.DataFrame({
        "collection": ["c1", "c1", "c1", "c1", "c1", "c2"],
        "name": ["A", "A", "A", "B", "B", "C"],
        "feature_id": ["g1", "g2", "g3", "g2", "g4", "g1"],
        "source": ["x", "x", "x", "y", "y", None],
        "weight": [0.1, 0.2, 0.3, 0.4, 0.4, 0.5],
    })


def test_build_from_frame(long_frame):
    """Test building the four relations from a long-form table."""
    gdb = GeneSetDb(long_frame)
    assert len(gdb) == 3
    assert gdb.table.select(["collection", "name"]).rows() == [("c1", "A"), ("c1", "B"), ("c2", "C")]
    assert gdb.table["N"].to_list() == [3, 2, 1]
    assert gdb.table["active"].to_list() == [False, False, False]
    assert gdb.table["n"].null_count() == 3
    assert gdb.db.height == 6
    assert not gdb.is_conformed()


def test_column_classification(long_frame):
    """Test that constant columns go to the table and varying ones stay in db."""
    gdb = GeneSetDb(long_frame)
    # weight is constant within B and C but not within A
    assert "source" in gdb.table.columns
    assert "source" not in gdb.db.columns
    assert "weight" in gdb.db.columns
    assert "weight" not in gdb.table.columns
    assert gdb.table.filter(pl.col("name") == "C")["source"][0] is None


def test_identity_feature_id_map(long_frame):
    """Test that the default feature id map is the identity with no positions."""
    fmap = GeneSetDb(long_frame).feature_id_map()
    assert fmap.columns == ["feature_id", "x_id", "x_idx"]
    assert fmap["feature_id"].to_list() == ["g1", "g2", "g3", "g4"]
    assert fmap["x_id"].to_list() == fmap["feature_id"].to_list()
    assert fmap["x_idx"].null_count() == 4


def test_custom_feature_id_map(long_frame):
    """Test that a feature id map translates only the ids it covers."""
    xref = pl.DataFrame({"entrez": ["g1", "g2"], "symbol": ["TP53", "MYC"]})
    fmap = GeneSetDb(long_frame, feature_id_map=xref).feature_id_map()
    assert dict(zip(fmap["feature_id"], fmap["x_id"])) == {
        "g1": "TP53", "g2": "MYC", "g3": "g3", "g4": "g4",
    }


def test_collection_metadata_defaults(long_frame):
    """Test that every collection gets a no-op url function."""
    gdb = GeneSetDb(long_frame)
    assert set(gdb.collections) == {"c1", "c2"}
    assert gdb.gene_set_url("c1", "A") is None
    assert callable(gdb.collection_metadata("c1", "url_function"))


def test_build_from_mapping():
    """Test building a single collection from a mapping of feature vectors."""
    gdb = GeneSetDb({"A": ["g1", "g2", "g3"], "B": ["g2", "g4"]}, collection_name="c1")
    assert gdb.table.select(["collection", "name", "N"]).rows() == [("c1", "A", 3), ("c1", "B", 2)]


def test_build_from_mapping_default_collection():
    """Test that an unnamed single collection gets a placeholder name."""
    gdb = GeneSetDb({"A": ["g1"]})
    assert gdb.collections == ["anon_collection_1"]


def test_build_from_nested_mapping():
    """Test building several collections from a nested mapping."""
    gdb = GeneSetDb({"c1": {"A": ["g1", "g2"]}, "c2": {"A": ["g3"], "B": ["g1"]}})
    assert gdb.table.select(["collection", "name"]).rows() == [("c1", "A"), ("c2", "A"), ("c2", "B")]


def test_build_from_nested_mapping_renamed():
    """Test renaming nested collections by position."""
    gdb = GeneSetDb({"x": {"A": ["g1"]}, "y": {"B": ["g2"]}}, collection_name=["c1", "c2"])
    assert gdb.collections == ["c1", "c2"]


def test_build_from_gene_set_db(long_frame):
    """Test that passing a GeneSetDb copies it."""
    gdb = GeneSetDb(long_frame)
    assert GeneSetDb(gdb) == gdb


def test_frame_without_collection():
    """Test that a frame lacking a collection column needs collection_name."""
    df = pl.DataFrame({"name": ["A", "A"], "feature_id": ["g1", "g2"]})
    assert GeneSetDb(df, collection_name="c1").collections == ["c1"]
    with pytest.raises(ConstructionError, match="collection_name"):
        GeneSetDb(df)
    with pytest.raises(ConstructionError, match="collection_name"):
        GeneSetDb(df, collection_name=["c1", "c2", "c3"])


def test_missing_required_columns():
    """Test that construction fails without the required columns."""
    df = pl.DataFrame({"collection": ["c1"], "name": ["A"]})
    with pytest.raises(ConstructionError, match="feature_id"):
        GeneSetDb(df)


def test_reserved_columns():
    """Test that columns clashing with computed ones are rejected."""
    df = pl.DataFrame({"collection": ["c1"], "name": ["A"], "feature_id": ["g1"], "active": [True]})
    with pytest.raises(ConstructionError, match="reserved"):
        GeneSetDb(df)


def test_empty_input():
    """Test that an empty table cannot be built into a GeneSetDb."""
    df = pl.DataFrame(schema={"collection": pl.Utf8, "name": pl.Utf8, "feature_id": pl.Utf8})
    with pytest.raises(ConstructionError):
        GeneSetDb(df)


def test_unsupported_input():
    """Test that unsupported input types are rejected."""
    with pytest.raises(ConstructionError, match="No GeneSetDb constructor"):
        GeneSetDb(42)


def test_null_feature_ids_dropped_with_warning():
    """Test that missing feature ids are dropped with a warning."""
    df = pl.DataFrame({
        "collection": ["c1", "c1", "c1"],
        "name": ["A", "A", "A"],
        "feature_id": ["g1", None, "g2"],
    })
    with pytest.warns(GeneSetDbWarning, match="missing feature_id"):
        gdb = GeneSetDb(df)
    assert gdb.db["feature_id"].to_list() == ["g1", "g2"]
    assert gdb.table["N"].to_list() == [2]


def test_duplicate_memberships_first_wins():
    """Test that duplicated memberships are collapsed keeping the first row."""
    df = pl.DataFrame({
        "collection": ["c1", "c1", "c1"],
        "name": ["A", "A", "A"],
        "feature_id": ["g1", "g1", "g2"],
        "score": [1.0, 9.0, 2.0],
    })
    gdb = GeneSetDb(df)
    assert gdb.db.height == 2
    assert gdb.table["N"].to_list() == [2]
    assert gdb.db.filter(pl.col("feature_id") == "g1")["score"][0] == 1.0


def test_numeric_feature_ids_cast_to_strings():
    """Test that integer feature ids (ie. Entrez ids) are stored as strings."""
    df = pl.DataFrame({"collection": ["c1", "c1"], "name": ["A", "A"], "feature_id": [7157, 4609]})
    gdb = GeneSetDb(df)
    assert gdb.db["feature_id"].dtype == pl.Utf8
    assert gdb.db["feature_id"].to_list() == ["4609", "7157"]


def test_validate_relations_detects_violations(long_frame):
    """Test that each invariant violation is reported as a SchemaError."""
    gdb = GeneSetDb(long_frame)
    meta = gdb._collection_metadata

    with pytest.raises(SchemaError, match="Duplicated"):
        validate_relations(pl.concat([gdb.db, gdb.db.head(1)]), gdb.table, gdb.feature_id_map(), meta)
    with pytest.raises(SchemaError, match="missing from table"):
        validate_relations(gdb.db, gdb.table.tail(2), gdb.feature_id_map(), meta)
    with pytest.raises(SchemaError, match="feature_id_map"):
        validate_relations(gdb.db, gdb.table, gdb.feature_id_map().head(2), meta)
    with pytest.raises(SchemaError, match="collection metadata"):
        validate_relations(gdb.db, gdb.table, gdb.feature_id_map(), {"c1": meta["c1"]})
    bad_n = gdb.table.with_columns(pl.lit(10, dtype=pl.Int64).alias("n"))
    with pytest.raises(SchemaError, match="more conformed members"):
        validate_relations(gdb.db, bad_n, gdb.feature_id_map(), meta)
    both = gdb.table.with_columns(pl.lit(1.0).alias("weight"))
    with pytest.raises(SchemaError, match="both set-level and member-level: weight"):
        validate_relations(gdb.db, both, gdb.feature_id_map(), meta)


def test_summary(long_frame):
    """Test the text summary."""
    text = repr(GeneSetDb(long_frame))
    assert "3 gene sets across 2 collections" in text
    assert "conformed: no" in text
