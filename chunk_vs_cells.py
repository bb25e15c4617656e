"""
Tissue chunk vs. dissociated cells.

Bulk RNA-seq of intact adipose tissue chunks and of the cells obtained by
enzymatic dissociation of the same tissue. The test level is "cells", the
reference "chunk": a positive log2 fold change means higher in the
dissociated cells (e.g. immediate early stress genes), a negative one lower
(e.g. red-blood-cell transcripts washed out during dissociation).

Usage:
    python chunk_vs_cells.py --config config/pipeline.yaml
"""

import argparse
import logging
from typing import Dict, Optional

from comparison_report import write_report
from count_loader import deduplicate_genes, filter_low_counts, load_count_matrix, strip_gene_versions
from de_analysis import DEAnalysisEngine, variance_stabilize
from gene_annotation import load_annotation
from matrix_assembler import build_sample_metadata
from pipeline_config import PipelineConfig, configure_logging, load_config
from pipeline_errors import ConfigError
from result_store import save_model_data, save_results

logger = logging.getLogger(__name__)

COMPARISON = "chunk_vs_cells"
REFERENCE = "chunk"
TEST = "cells"


def run(config: PipelineConfig, engine: Optional[DEAnalysisEngine] = None) -> Dict:
    """
    Run the chunk vs. cells analysis end to end.

    Returns:
        Summary dict: comparison, n_genes, n_samples, n_significant per FDR, output_dir
    """
    samples = [s for s in config.samples if s.condition in (REFERENCE, TEST)]
    for level in (REFERENCE, TEST):
        if not any(s.condition == level for s in samples):
            raise ConfigError(f"No '{level}' samples configured for {COMPARISON}", {"condition": level})

    sample_ids = [s.id for s in samples]
    logger.info(f"{COMPARISON}: {len(sample_ids)} samples")

    raw_counts, mapping_stats = load_count_matrix(config.base_data_path, sample_ids, config.count_file_pattern)
    if config.strip_gene_versions:
        raw_counts.index = strip_gene_versions(raw_counts.index)
        raw_counts = deduplicate_genes(raw_counts, how="sum")

    annotation = None
    if config.annotation_gtf is not None:
        annotation = load_annotation(
            config.annotation_gtf,
            raw_counts.index,
            dataset=config.biomart_dataset,
            gc_cache_path=config.gc_cache_path,
            strip_versions=config.strip_gene_versions,
        )

    counts = filter_low_counts(raw_counts, min_total=config.min_total_count)
    metadata = build_sample_metadata(samples)

    engine = engine or DEAnalysisEngine()
    model, results = engine.run_thresholds(
        counts,
        metadata,
        test_condition=TEST,
        reference=REFERENCE,
        covariates=config.covariates,
        fdr_thresholds=config.fdr_thresholds,
    )
    del counts
    vst = variance_stabilize(model)

    settings = {"test": TEST, "reference": REFERENCE, "min_total_count": config.min_total_count}
    save_model_data(config.local_data_path, COMPARISON, model, metadata, vst, settings)
    save_results(config.local_data_path, COMPARISON, results, settings)

    write_report(
        config,
        COMPARISON,
        model,
        results,
        metadata,
        vst,
        annotation=annotation,
        raw_counts=raw_counts,
        mapping_stats=mapping_stats,
        settings=settings,
    )
    del raw_counts, vst

    summary = {
        "comparison": COMPARISON,
        "n_genes": int(model.counts.shape[0]),
        "n_samples": int(model.counts.shape[1]),
        "n_significant": {alpha: r.n_significant for alpha, r in results.items()},
        "output_dir": str(config.output_dir(COMPARISON)),
    }
    logger.info(f"{COMPARISON} finished: {summary['n_significant']}")
    return summary


def main():
    parser = argparse.ArgumentParser(description="Differential expression: tissue chunk vs. dissociated cells")
    parser.add_argument("--config", default="config/pipeline.yaml", help="Pipeline YAML config")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.output_dir(COMPARISON), name=COMPARISON)
    run(config)


if __name__ == "__main__":
    main()
