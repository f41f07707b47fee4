"""Enrichment dispatch: conform once, fan the methods out, collect aligned results."""

import json
import logging
import platform
import time
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import polars as pl
from tqdm.auto import tqdm

from .config import EnrichmentConfig
from .db import GeneSetDb
from .errors import MethodFailedWarning
from .methods import (
    EnrichmentInputs,
    MethodFailure,
    MethodRegistry,
    NormalizedResult,
    RawResult,
    default_registry,
)
from .utils import ensure_dir

is_mac = platform.system() == "Darwin"
tqdm_kwargs = {
    "position": 0,
    "leave": True,
    "ncols": 100,
    "dynamic_ncols": True,
    "ascii": is_mac,
}

KEY_COLS = ["collection", "name"]


@dataclass(eq=False)
class EnrichmentResult:
    """Results of one enrichment run over a conformed GeneSetDb."""

    gdb: GeneSetDb
    stats: pl.DataFrame
    results: Dict[str, NormalizedResult]
    failures: List[MethodFailure] = field(default_factory=list)

    @property
    def methods(self) -> List[str]:
        return list(self.results)

    def result(self, method: str) -> pl.DataFrame:
        """Get the aligned result table of one method.

        Args:
            method: Name of a method that completed successfully

        Returns:
            DataFrame with one row per active gene set
        """
        if method not in self.results:
            failed = {f.method: f for f in self.failures}
            if method in failed:
                raise ValueError(f"Method '{method}' failed: {failed[method].message}")
            raise ValueError(f"No results for method '{method}'. Available: {', '.join(self.methods)}")
        return self.results[method].table

    def tabulate(self, columns: Sequence[str] = ("pval", "padj")) -> pl.DataFrame:
        """Join the requested columns of every method side by side.

        Columns are named ``<column>_<method>``; methods that do not report a
        column are skipped for it.
        """
        out = self.gdb.gene_sets(active_only=True).select(KEY_COLS + ["N", "n"])
        for method, res in self.results.items():
            cols = [c for c in columns if c in res.table.columns]
            if not cols:
                continue
            out = out.join(
                res.table.select(KEY_COLS + [pl.col(c).alias(f"{c}_{method}") for c in cols]),
                on=KEY_COLS,
                how="left",
            )
        return out.sort(KEY_COLS, maintain_order=True)

    def save_results(self, output_dir: Union[str, Path]) -> Path:
        """Write one TSV per method plus a JSON run summary.

        Args:
            output_dir: Output directory, created if needed

        Returns:
            Path of the output directory
        """
        output_path = ensure_dir(Path(output_dir))
        for method, res in self.results.items():
            res.table.write_csv(output_path / f"{method}.tsv", separator="\t")

        summary = {
            "methods": self.methods,
            "failures": {f.method: f.message for f in self.failures},
            "gene_sets": int(self.gdb.table.height),
            "active_gene_sets": int(self.gdb.table["active"].sum()),
            "universe_size": len(self.gdb.universe or ()),
        }
        with open(output_path / "enrichment_summary.json", "w") as f:
            json.dump(summary, f, indent=2)
        logging.getLogger(__name__).info(f"Saved enrichment results to {output_path}")
        return output_path


def _run_method(method, gdb, inputs, index_lists, params, padj_method, sep) -> NormalizedResult:
    raw = method.run(gdb, inputs, index_lists, sep=sep, **params)
    if not isinstance(raw, RawResult):
        raise TypeError(f"Method '{method.name}' returned {type(raw).__name__}, expected RawResult")
    normalized = method.normalize_result(raw, gdb, padj_method, sep)
    if not isinstance(normalized, NormalizedResult):
        raise TypeError(f"Method '{method.name}' did not normalize its result")
    return normalized


def _freeze(index_lists: Dict[str, np.ndarray]) -> MappingProxyType:
    for idx in index_lists.values():
        idx.setflags(write=False)
    return MappingProxyType(index_lists)


class EnrichmentPipeline:
    """Run several enrichment methods against one GeneSetDb."""

    def __init__(self, config: Optional[Union[EnrichmentConfig, str, Path]] = None,
                 registry: Optional[MethodRegistry] = None):
        """Initialise the pipeline.

        Args:
            config: An EnrichmentConfig, a path to a TOML configuration file,
                or None for the defaults
            registry: Methods available to the run. Defaults to a fresh
                registry of the built-in methods
        """
        self.registry = registry if registry is not None else default_registry()
        if not isinstance(config, EnrichmentConfig):
            config = EnrichmentConfig(config, registry=self.registry)
        else:
            config.validate(self.registry)
        self.config = config
        self.logger = logging.getLogger(__name__)

    def run(self, gdb: GeneSetDb, stats: pl.DataFrame, rank_by: Optional[str] = None,
            selected: str = "significant") -> EnrichmentResult:
        """Run every configured method.

        Args:
            gdb: GeneSetDb to test. It is conformed to ``stats["feature_id"]``
                unless it already is
            stats: Per-feature statistics, one row per universe feature
            rank_by: Numeric column for rank based methods
            selected: Boolean column for over-representation methods

        Returns:
            EnrichmentResult with the methods that succeeded and the failures
        """
        self.logger.info(f"Starting enrichment run with methods: {', '.join(self.config.methods)}")
        start_time = time.time()

        if "feature_id" not in stats.columns:
            raise ValueError("stats must have a feature_id column")
        inputs = EnrichmentInputs(stats=stats, rank_by=rank_by, selected=selected)
        methods = [self.registry.get(name) for name in self.config.methods]

        problems = []
        for method in methods:
            problems.extend(f"{method.name}: {p}" for p in method.validate_inputs(inputs))
        if problems:
            raise ValueError("Invalid inputs for enrichment methods:\n  " + "\n  ".join(problems))

        universe = stats["feature_id"].cast(pl.Utf8).to_list()
        conform_params = self.config.conform_params
        if not gdb.is_conformed(universe):
            gdb = gdb.conform(universe, **conform_params)
        elif gdb._conform_args != conform_params:
            self.logger.info(
                f"GeneSetDb was conformed with {gdb._conform_args}; "
                f"re-conforming with the configured {conform_params}"
            )
            gdb = gdb.conform(universe, **conform_params)
        index_lists = _freeze(gdb.as_index_lists(sep=self.config.sep))
        self.logger.info(f"Testing {len(index_lists)} active gene sets over {len(universe)} features")

        results: Dict[str, NormalizedResult] = {}
        failures: List[MethodFailure] = []

        def record_failure(name, error):
            msg = f"Method '{name}' failed and was dropped: {error}"
            self.logger.error(msg)
            warnings.warn(msg, MethodFailedWarning, stacklevel=3)
            failures.append(MethodFailure(method=name, error=error))

        num_threads = max(1, min(len(methods), self.config.num_threads))
        with tqdm(total=len(methods), desc="Running methods", unit="method", **tqdm_kwargs) as pbar:
            if num_threads > 1:
                with ThreadPoolExecutor(max_workers=num_threads) as executor:
                    futures = {
                        executor.submit(
                            _run_method, method, gdb, inputs, index_lists,
                            self.config.get_method_params(method.name),
                            self.config.padj_method, self.config.sep,
                        ): method.name
                        for method in methods
                    }
                    for future in as_completed(futures):
                        name = futures[future]
                        try:
                            results[name] = future.result()
                            self.logger.debug(f"Completed method {name}")
                        except Exception as e:
                            record_failure(name, e)
                        finally:
                            pbar.update(1)
            else:
                for method in methods:
                    try:
                        results[method.name] = _run_method(
                            method, gdb, inputs, index_lists,
                            self.config.get_method_params(method.name),
                            self.config.padj_method, self.config.sep,
                        )
                        self.logger.debug(f"Completed method {method.name}")
                    except Exception as e:
                        record_failure(method.name, e)
                    finally:
                        pbar.update(1)

        if not results:
            raise RuntimeError("All enrichment methods failed. Check the logs for details.")

        # keep the configured method order regardless of completion order
        ordered = {m.name: results[m.name] for m in methods if m.name in results}
        self.logger.info(
            f"Completed {len(ordered)}/{len(methods)} methods in {time.time() - start_time:.2f}s"
        )
        return EnrichmentResult(gdb=gdb, stats=stats, results=ordered, failures=failures)
