"""
Report generation shared by both pipelines: QC and result figures, top/bottom
tables, GSEA per FDR threshold, marker panels and the Excel workbook.
"""

from pathlib import Path
from typing import Dict, Optional
import logging
import numpy as np
import pandas as pd

from advanced_qc import AdvancedQC, compute_pca
from de_analysis import DEResult, FittedModel
from export_engine import ComparisonReport, ExportEngine
from gene_annotation import map_to_symbols
from gene_panels import GenePanelAnalyzer
from matrix_assembler import sample_conditions
from pathway_enrichment import EnrichmentResult, PathwayEnrichment, top_bottom_by_nes
from pipeline_config import PipelineConfig
from qc_plots import (
    create_count_distribution_boxplot,
    create_library_size_barplot,
    create_mapping_stats_plot,
    create_mean_sd_plot,
)
from reporting import save_figure, top_bottom_tables, write_table
from visualizations import (
    create_lfc_bin_boxplots,
    create_nes_barplot,
    create_pca_plot,
    create_sample_distance_heatmap,
    create_volcano_plot,
)

logger = logging.getLogger(__name__)


def run_enrichment(
    config: PipelineConfig,
    results: Dict[float, DEResult],
    annotation: Optional[pd.DataFrame],
    output_dir: Path,
) -> Dict[str, EnrichmentResult]:
    """
    GSEA on the significant genes of every FDR threshold.

    Returns:
        "<database>_FDR_<alpha>" → EnrichmentResult
    """
    if not config.gene_set_databases and not config.gene_set_files:
        logger.info("No gene set databases configured; skipping GSEA")
        return {}

    enrichment = PathwayEnrichment(
        min_size=config.gsea_min_size,
        max_size=config.gsea_max_size,
        permutation_num=config.gsea_permutations,
        seed=config.seed,
    )
    out = {}
    for alpha, result in results.items():
        symbols = map_to_symbols(result.results_df.index, annotation)
        ranked = enrichment.build_ranked_list(result.results_df, padj_threshold=alpha, symbols=symbols)
        if ranked.empty:
            logger.warning(f"No significant genes at FDR {alpha:g}; skipping GSEA")
            continue

        per_db = enrichment.run_all_databases(ranked, config.gene_set_databases, config.gene_set_files)
        for database, res in per_db.items():
            key = f"{database}_FDR_{alpha:g}"
            out[key] = res
            if res.error is not None:
                continue
            write_table(res.table, output_dir, f"gsea_{key}", index=False)
            top, bottom = top_bottom_by_nes(res.table, n=config.top_n)
            write_table(pd.concat([top, bottom]), output_dir, f"gsea_{key}_top_bottom", index=False)
            save_figure(create_nes_barplot(top, bottom, title=f"GSEA {database} (FDR {alpha:g})"), output_dir, f"gsea_{key}")
    return out


def score_panels(
    panels: GenePanelAnalyzer,
    log_expression: pd.DataFrame,
    annotation: Optional[pd.DataFrame],
    conditions: Dict[str, str],
) -> pd.DataFrame:
    """
    Z-score panel scores per condition.

    Args:
        log_expression: genes × samples, log2 normalized counts

    Returns:
        panels × conditions; panels with fewer than 2 measured genes are left out
    """
    expression = log_expression.T
    expression.columns = map_to_symbols(log_expression.index, annotation).to_numpy()
    expression = expression.loc[:, ~expression.columns.duplicated()]

    scores = {}
    for panel_name in panels.panels:
        try:
            scores[panel_name] = panels.score_panel(expression, panel_name, conditions)
        except ValueError as e:
            logger.warning(f"{e}; score skipped")
    table = pd.DataFrame.from_dict(scores, orient="index")
    table.index.name = "panel"
    return table


def write_report(
    config: PipelineConfig,
    name: str,
    model: FittedModel,
    results: Dict[float, DEResult],
    metadata: pd.DataFrame,
    vst: pd.DataFrame,
    annotation: Optional[pd.DataFrame] = None,
    raw_counts: Optional[pd.DataFrame] = None,
    mapping_stats: Optional[pd.DataFrame] = None,
    settings: Optional[Dict] = None,
) -> ComparisonReport:
    """
    Write every human-facing output of one comparison to config.output_dir(name).

    Args:
        raw_counts: Unfiltered genes × samples counts (library size QC)
        mapping_stats: samples × N_* rows from the count files (mapping QC)

    Returns:
        The ComparisonReport written to Excel
    """
    output_dir = config.output_dir(name)
    output_dir.mkdir(parents=True, exist_ok=True)
    conditions = sample_conditions(metadata)

    # QC
    counts_for_qc = raw_counts if raw_counts is not None else model.counts
    save_figure(create_library_size_barplot(counts_for_qc, conditions), output_dir, "library_size")
    if mapping_stats is not None:
        save_figure(create_mapping_stats_plot(mapping_stats, counts_for_qc), output_dir, "mapping_stats")
    log_normalized = np.log2(model.normalized_counts + 1)
    save_figure(
        create_count_distribution_boxplot(model.normalized_counts, title="Normalized counts per sample"),
        output_dir,
        "count_distribution",
    )
    save_figure(
        create_mean_sd_plot(log_normalized, title="Mean–SD: log₂(normalized + 1)"),
        output_dir,
        "mean_sd_log2",
    )
    save_figure(create_mean_sd_plot(vst, title="Mean–SD: VST"), output_dir, "mean_sd_vst")
    save_figure(create_pca_plot(vst, metadata), output_dir, "pca")
    save_figure(create_sample_distance_heatmap(vst, conditions), output_dir, "sample_distances")

    qc = AdvancedQC()
    coords, _ = compute_pca(vst, n_components=5)
    batch = qc.batch_effect_table(coords, metadata, ["pool", "condition"])
    if not batch.empty:
        write_table(batch, output_dir, "pc_variance_explained")
        save_figure(qc.create_batch_effect_plot(batch), output_dir, "pc_variance_explained")

    # DE results per threshold
    for alpha, result in results.items():
        tag = f"FDR_{alpha:g}"
        up, down = top_bottom_tables(result.results_df, annotation, n=config.top_n, padj_threshold=alpha)
        write_table(up, output_dir, f"top_{config.top_n}_up_{tag}")
        write_table(down, output_dir, f"top_{config.top_n}_down_{tag}")

        if annotation is not None and "gene_biotype" in annotation.columns:
            try:
                fig = create_volcano_plot(
                    result.results_df, annotation, padj_threshold=alpha, title=f"{name} ({tag})"
                )
                save_figure(fig, output_dir, f"volcano_{tag}")
            except ValueError as e:
                logger.warning(f"Volcano plot skipped for {tag}: {e}")

    loosest = results[max(results)]
    if annotation is not None and {"length", "gc_content"} <= set(annotation.columns):
        try:
            save_figure(create_lfc_bin_boxplots(loosest.results_df, annotation), output_dir, "lfc_bins_length_gc")
        except ValueError as e:
            logger.warning(f"Fold-change bin plot skipped: {e}")

    # Marker panels
    panel_summary = None
    panel_scores = None
    if config.gene_panels is not None:
        panels = GenePanelAnalyzer(config.gene_panels)
        symbols = map_to_symbols(loosest.results_df.index, annotation)
        panel_summary = panels.summarize(loosest.results_df, symbols, padj_threshold=min(results))
        write_table(panel_summary, output_dir, "gene_panels", index=False)
        panel_scores = score_panels(panels, log_normalized, annotation, conditions)
        if not panel_scores.empty:
            write_table(panel_scores, output_dir, "gene_panel_scores")
        for panel_name in panels.panels:
            try:
                save_figure(panels.plot_panel(loosest.results_df, panel_name, symbols), output_dir, f"panel_{panel_name.replace(' ', '_')}")
            except ValueError as e:
                logger.warning(f"{e}; plot skipped")

    enrichment = run_enrichment(config, results, annotation, output_dir)

    report = ComparisonReport(
        name=name,
        de_results=results,
        annotation=annotation,
        enrichment=enrichment,
        panel_summary=panel_summary,
        panel_scores=panel_scores,
        settings={
            "min_total_count": config.min_total_count,
            "fdr_thresholds": config.fdr_thresholds,
            "covariates": config.covariates,
            **(settings or {}),
        },
        sample_conditions=conditions,
        top_n=config.top_n,
    )
    ExportEngine().export_excel(output_dir / f"{name}.xlsx", report)
    return report
