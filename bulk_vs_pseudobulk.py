"""
Real bulk vs. pseudobulk.

Bulk RNA-seq of dissociated cells against pseudobulk profiles summed from
single-cell data of the same material. The two library types differ in GC
content and gene length bias, so the model uses per-gene, per-sample
normalization factors from the GC/length normalization (cqn_normalization)
instead of per-sample size factors. Test level "pseudobulk", reference "bulk".

If the chunk vs. cells results are present in the working directory, the
fold changes of both comparisons are compared gene by gene.

Usage:
    python bulk_vs_pseudobulk.py --config config/pipeline.yaml
"""

import argparse
import logging
from typing import Dict, Optional

from comparison_report import write_report
from count_loader import deduplicate_genes, filter_low_counts, load_count_matrix, strip_gene_versions
from cqn_normalization import run_cqn, summarize_fits
from de_analysis import DEAnalysisEngine, variance_stabilize
from gene_annotation import align_annotation, load_annotation
from matrix_assembler import (
    build_sample_metadata,
    check_metadata_alignment,
    combine_counts,
    combine_metadata,
    read_pseudobulk,
    restrict_to_shared_genes,
)
from pipeline_config import PipelineConfig, SampleSpec, configure_logging, load_config
from pipeline_errors import ArtifactSchemaError, ConfigError
from qc_plots import create_mean_sd_plot
from reporting import compare_comparisons, save_figure, write_table
from result_store import load_results, save_model_data, save_results, save_table, comparison_data_dir
from visualizations import create_concordance_plot, create_cqn_fit_plot

logger = logging.getLogger(__name__)

COMPARISON = "bulk_vs_pseudobulk"
REFERENCE = "bulk"
TEST = "pseudobulk"
UPSTREAM_COMPARISON = "chunk_vs_cells"


def _pseudobulk_samples(config: PipelineConfig, columns) -> list:
    if config.pseudobulk_samples:
        return config.pseudobulk_samples
    return [SampleSpec(id=str(c), condition=TEST, pool="NA") for c in columns]


def run(config: PipelineConfig, engine: Optional[DEAnalysisEngine] = None) -> Dict:
    """
    Run the bulk vs. pseudobulk analysis end to end.

    Returns:
        Summary dict: comparison, n_genes, n_samples, n_significant per FDR,
        concordance (None when the chunk vs. cells results are absent), output_dir
    """
    if config.pseudobulk_path is None:
        raise ConfigError(f"'pseudobulk_path' is required for {COMPARISON}")
    if config.annotation_gtf is None:
        raise ConfigError(f"'annotation_gtf' is required for {COMPARISON} (gene length and GC content)")

    if config.bulk_condition is None:
        real_samples = list(config.samples)
    else:
        real_samples = config.samples_with_condition(config.bulk_condition)
    if not real_samples:
        raise ConfigError(
            f"No real samples with condition '{config.bulk_condition}'",
            {"bulk_condition": config.bulk_condition},
        )

    real, mapping_stats = load_count_matrix(
        config.base_data_path, [s.id for s in real_samples], config.count_file_pattern
    )
    pseudo = read_pseudobulk(config.pseudobulk_path)
    if config.strip_gene_versions:
        real.index = strip_gene_versions(real.index)
        pseudo.index = strip_gene_versions(pseudo.index)
    real = deduplicate_genes(real, how="sum")
    pseudo = deduplicate_genes(pseudo, how="sum")

    pb_samples = _pseudobulk_samples(config, pseudo.columns)
    missing = [s.id for s in pb_samples if s.id not in pseudo.columns]
    if missing:
        raise ConfigError(f"Pseudobulk samples not found in {config.pseudobulk_path}: {missing}")
    pseudo = pseudo[[s.id for s in pb_samples]]

    real, pseudo = restrict_to_shared_genes(real, pseudo)
    raw_counts = combine_counts(real, pseudo)
    metadata = combine_metadata(
        build_sample_metadata(real_samples, condition=REFERENCE),
        build_sample_metadata(pb_samples, condition=TEST),
    )
    check_metadata_alignment(raw_counts, metadata)
    del real, pseudo

    annotation = load_annotation(
        config.annotation_gtf,
        raw_counts.index,
        dataset=config.biomart_dataset,
        gc_cache_path=config.gc_cache_path,
        strip_versions=config.strip_gene_versions,
    )

    counts = filter_low_counts(raw_counts, min_total=config.min_total_count)
    counts, gene_covariates = align_annotation(counts, annotation)

    cqn = run_cqn(counts, gene_covariates)

    engine = engine or DEAnalysisEngine()
    model, results = engine.run_thresholds(
        counts,
        metadata,
        test_condition=TEST,
        reference=REFERENCE,
        covariates=config.covariates,
        fdr_thresholds=config.fdr_thresholds,
        normalization_factors=cqn.normalization_factors,
        shrink=False,
    )
    del counts
    vst = variance_stabilize(model)

    settings = {
        "test": TEST,
        "reference": REFERENCE,
        "bulk_condition": config.bulk_condition,
        "normalization": "cqn",
        "min_total_count": config.min_total_count,
    }
    save_model_data(config.local_data_path, COMPARISON, model, metadata, vst, settings)
    save_table(cqn.offset, comparison_data_dir(config.local_data_path, COMPARISON), "cqn_offset", "count_matrix")
    save_results(config.local_data_path, COMPARISON, results, settings)

    output_dir = config.output_dir(COMPARISON)
    write_report(
        config,
        COMPARISON,
        model,
        results,
        metadata,
        vst,
        annotation=gene_covariates,
        raw_counts=raw_counts,
        mapping_stats=None,
        settings=settings,
    )
    save_figure(create_cqn_fit_plot(summarize_fits(cqn, gene_covariates)), output_dir, "cqn_fits")
    save_figure(create_mean_sd_plot(cqn.normalized, title="Mean–SD: GC/length normalized log₂ RPM"), output_dir, "mean_sd_cqn")
    del raw_counts, vst, cqn

    concordance = None
    loosest = max(config.fdr_thresholds)
    try:
        upstream = load_results(config.local_data_path, UPSTREAM_COMPARISON, loosest)
    except ArtifactSchemaError as e:
        logger.warning(f"{UPSTREAM_COMPARISON} results not available, concordance skipped: {e}")
    else:
        concordance, merged = compare_comparisons(upstream, results[loosest].results_df)
        write_table(merged, output_dir, f"concordance_{UPSTREAM_COMPARISON}")
        if len(merged) >= 3:
            fig = create_concordance_plot(merged, ("cells vs chunk", "pseudobulk vs bulk"), concordance["pearson_r"])
            save_figure(fig, output_dir, f"concordance_{UPSTREAM_COMPARISON}")

    summary = {
        "comparison": COMPARISON,
        "n_genes": int(model.counts.shape[0]),
        "n_samples": int(model.counts.shape[1]),
        "n_significant": {alpha: r.n_significant for alpha, r in results.items()},
        "concordance": concordance,
        "output_dir": str(output_dir),
    }
    logger.info(f"{COMPARISON} finished: {summary['n_significant']}")
    return summary


def main():
    parser = argparse.ArgumentParser(description="Differential expression: real bulk vs. pseudobulk")
    parser.add_argument("--config", default="config/pipeline.yaml", help="Pipeline YAML config")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.output_dir(COMPARISON), name=COMPARISON)
    run(config)


if __name__ == "__main__":
    main()
