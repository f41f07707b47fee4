"""Tests for the enrichment pipeline."""

import json

import numpy as np
import pytest
import polars as pl
from tomli_w import dump as tomli_w_dump

from genesetdb import EnrichmentConfig, EnrichmentPipeline, GeneSetDb
from genesetdb.errors import MethodFailedWarning
from genesetdb.methods import EnrichmentMethod, RawResult, default_registry


@pytest.fixture
def gdb():
    """Create an unconformed GeneSetDb."""
    return GeneSetDb({
        "c1": {"A": ["g0", "g1", "g2", "g3"], "B": ["g4", "g5", "g6"]},
        "c2": {"C": ["g7", "g8", "g9", "g0"], "small": ["g1"]},
    })


@pytest.fixture
def stats():
    """Create per-feature statistics."""
    return pl.DataFrame({
        "feature_id": [f"g{i}" for i in range(10)],
        "t": [5.0, 4.0, 3.5, 3.0, -1.0, -0.5, 0.2, -2.0, -3.0, -4.0],
        "significant": [True, True, True, False, False, False, False, False, False, False],
    })


def _config(methods, num_threads=1, **conform):
    return EnrichmentConfig.from_dict({
        "analysis": {"methods": methods, "num_threads": num_threads},
        "conform": {"min_set_size": 2, **conform},
    })


def _failing_method(name="broken"):
    def run(gdb, inputs, index_lists, sep=";;"):
        raise RuntimeError("boom")
    return EnrichmentMethod(name=name, run=run)


def test_run_conforms_and_aligns(gdb, stats):
    """Test a sequential run over both built-in methods."""
    pipeline = EnrichmentPipeline(_config(["ora", "geneset_test"]))
    result = pipeline.run(gdb, stats, rank_by="t")
    assert result.methods == ["ora", "geneset_test"]
    assert result.gdb.is_conformed(stats["feature_id"].to_list())
    # "small" has one member and is below min_set_size
    for method in result.methods:
        assert result.result(method)["name"].to_list() == ["A", "B", "C"]
    assert result.failures == []


def test_run_parallel_matches_sequential(gdb, stats):
    """Test that the threaded dispatch gives the same results."""
    sequential = EnrichmentPipeline(_config(["ora", "geneset_test"])).run(gdb, stats, rank_by="t")
    parallel = EnrichmentPipeline(_config(["ora", "geneset_test"], num_threads=2)).run(gdb, stats, rank_by="t")
    assert parallel.methods == sequential.methods
    for method in sequential.methods:
        assert parallel.result(method).equals(sequential.result(method))


def test_index_lists_are_read_only(gdb, stats):
    """Test that methods receive immutable index lists."""
    seen = {}

    def run(gdb, inputs, index_lists, sep=";;"):
        seen["lists"] = index_lists
        return RawResult(method="peek", payload=pl.DataFrame({"key": list(index_lists), "score": [0.0] * len(index_lists)}))

    registry = default_registry()
    registry.register(EnrichmentMethod(name="peek", run=run))
    EnrichmentPipeline(_config(["peek"]), registry=registry).run(gdb, stats)
    lists = seen["lists"]
    with pytest.raises(TypeError):
        lists["c1;;A"] = np.array([0])
    with pytest.raises(ValueError):
        lists["c1;;A"][0] = 9


def test_failed_method_is_isolated(gdb, stats):
    """Test that one failing method is dropped with a warning."""
    registry = default_registry()
    registry.register(_failing_method())
    pipeline = EnrichmentPipeline(_config(["broken", "ora"]), registry=registry)
    with pytest.warns(MethodFailedWarning, match="broken"):
        result = pipeline.run(gdb, stats)
    assert result.methods == ["ora"]
    assert [f.method for f in result.failures] == ["broken"]
    with pytest.raises(ValueError, match="boom"):
        result.result("broken")


def test_all_methods_failing_raises(gdb, stats):
    """Test that a run with no successful method raises."""
    registry = default_registry()
    registry.register(_failing_method("broken1"))
    registry.register(_failing_method("broken2"))
    pipeline = EnrichmentPipeline(_config(["broken1", "broken2"], num_threads=2), registry=registry)
    with pytest.warns(MethodFailedWarning):
        with pytest.raises(RuntimeError, match="All enrichment methods failed"):
            pipeline.run(gdb, stats)


def test_inputs_validated_up_front(gdb, stats):
    """Test that every method's input problems are reported together."""
    pipeline = EnrichmentPipeline(_config(["ora", "geneset_test"]))
    with pytest.raises(ValueError, match="geneset_test: rank_by"):
        pipeline.run(gdb, stats.drop("significant"))


def test_unknown_method_in_config():
    """Test that configs naming unregistered methods are rejected."""
    with pytest.raises(ValueError, match="unknown enrichment methods"):
        EnrichmentPipeline(_config(["camera"]))


def test_method_params_from_config(gdb, stats, tmp_path):
    """Test that per-method parameters reach the method."""
    config = {
        "analysis": {"methods": ["geneset_test"]},
        "methods": {"geneset_test": {"alternative": "bogus"}},
    }
    path = tmp_path / "config.toml"
    with open(path, "wb") as f:
        tomli_w_dump(config, f)
    pipeline = EnrichmentPipeline(str(path))
    with pytest.warns(MethodFailedWarning):
        with pytest.raises(RuntimeError):
            pipeline.run(gdb, stats, rank_by="t")


def test_tabulate_and_save(gdb, stats, tmp_path):
    """Test the wide summary and result files."""
    result = EnrichmentPipeline(_config(["ora", "geneset_test"])).run(gdb, stats, rank_by="t")
    wide = result.tabulate()
    assert wide.columns == [
        "collection", "name", "N", "n", "pval_ora", "padj_ora", "pval_geneset_test", "padj_geneset_test",
    ]
    assert wide.height == 3

    out = result.save_results(tmp_path / "results")
    assert (out / "ora.tsv").exists()
    assert (out / "geneset_test.tsv").exists()
    with open(out / "enrichment_summary.json") as f:
        summary = json.load(f)
    assert summary["methods"] == ["ora", "geneset_test"]
    assert summary["active_gene_sets"] == 3
    assert summary["universe_size"] == 10


def test_run_reconforms_with_configured_bounds(gdb, stats):
    """Test that a db conformed with other set size bounds follows the configuration."""
    universe = stats["feature_id"].to_list()
    loose = gdb.conform(universe)
    assert loose.is_active("c2", "small")

    result = EnrichmentPipeline(_config(["ora"])).run(loose, stats)
    assert not result.gdb.is_active("c2", "small")
    assert result.result("ora")["name"].to_list() == ["A", "B", "C"]

    strict = gdb.conform(universe, min_set_size=2)
    assert EnrichmentPipeline(_config(["ora"])).run(strict, stats).gdb is strict
