import logging
import time
from pathlib import Path

import numpy as np
import polars as pl

from genesetdb import EnrichmentPipeline, GeneSetDb, score_single_samples, setup_logging
from genesetdb.config import EnrichmentConfig


def build_example_data(n_features: int = 500, seed: int = 42):
    """Simulate a differential expression table and a handful of gene sets."""
    rng = np.random.default_rng(seed)
    features = [f"gene{i}" for i in range(n_features)]
    t = rng.normal(size=n_features)
    # the first 30 genes are shifted up so that "hallmark;;UP" is enriched
    t[:30] += 3.0
    stats = pl.DataFrame({
        "feature_id": features,
        "t": t,
        "significant": t > 2.0,
    })

    sets = {
        "hallmark": {
            "UP": features[:40],
            "RANDOM": list(rng.choice(features, size=50, replace=False)),
        },
        "custom": {
            "TINY": features[100:102],
            "OFF_PLATFORM": [f"other{i}" for i in range(20)],
        },
    }
    return GeneSetDb(sets), stats, rng.normal(size=(n_features, 6))


def run_pipeline():
    output_dir = Path("results")
    setup_logging(output_dir / "logs", level=logging.INFO)
    logger = logging.getLogger("genesetdb")

    gdb, stats, expression = build_example_data()
    print(gdb)

    config = EnrichmentConfig.from_dict({
        "conform": {"min_set_size": 5},
        "analysis": {"methods": ["ora", "geneset_test"], "num_threads": 2},
        "methods": {"geneset_test": {"alternative": "greater"}},
    })
    start_time = time.time()
    result = EnrichmentPipeline(config).run(gdb, stats, rank_by="t")
    logger.info(f"Enrichment finished in {time.time() - start_time:.2f}s")

    print(result.tabulate())
    result.save_results(output_dir / "enrichment")

    scores = score_single_samples(
        gdb, expression, stats["feature_id"].to_list(), methods=("mean", "zscore"), min_set_size=5
    )
    print(scores.head(12))


if __name__ == "__main__":
    run_pipeline()
