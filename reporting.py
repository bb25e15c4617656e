"""
Report outputs shared by both pipelines: figures as standalone HTML,
TSV tables, annotated top/bottom gene tables and cross-comparison
fold-change concordance.
"""

from pathlib import Path
from typing import Dict, Optional, Tuple
import logging
import pandas as pd
import numpy as np
import plotly.graph_objects as go
from scipy import stats

logger = logging.getLogger(__name__)

ANNOTATION_COLUMNS = ["gene_name", "gene_biotype"]


def save_figure(fig: go.Figure, output_dir, name: str) -> Path:
    """Write a Plotly figure as a self-contained HTML file."""
    path = Path(output_dir) / f"{name}.html"
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.write_html(str(path), include_plotlyjs=True, full_html=True)
    logger.info(f"Saved figure {path}")
    return path


def write_table(df: pd.DataFrame, output_dir, name: str, index: bool = True) -> Path:
    path = Path(output_dir) / f"{name}.tsv"
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=index)
    return path


def annotate_results(results_df: pd.DataFrame, annotation: Optional[pd.DataFrame]) -> pd.DataFrame:
    """Prepend gene_name and gene_biotype columns (when available) to a gene-indexed table."""
    if annotation is None:
        return results_df.copy()
    ann = annotation[~annotation.index.duplicated(keep="first")]
    columns = [c for c in ANNOTATION_COLUMNS if c in ann.columns]
    return ann[columns].reindex(results_df.index).join(results_df)


def top_bottom_tables(
    results_df: pd.DataFrame,
    annotation: Optional[pd.DataFrame],
    n: int = 20,
    padj_threshold: Optional[float] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Top n up- and down-regulated genes by log2 fold change, annotated.

    Args:
        results_df: DE results indexed by gene id
        annotation: Gene annotation (gene_name, gene_biotype)
        n: Rows per table
        padj_threshold: Restrict to padj < threshold first (None: all genes)
    """
    df = results_df.dropna(subset=["log2FoldChange"])
    if padj_threshold is not None:
        df = df.dropna(subset=["padj"])
        df = df[df["padj"] < padj_threshold]
    up = df.nlargest(n, "log2FoldChange")
    down = df.nsmallest(n, "log2FoldChange")
    return annotate_results(up, annotation), annotate_results(down, annotation)


def compare_comparisons(
    results_a: pd.DataFrame,
    results_b: pd.DataFrame,
    column: str = "log2FoldChange",
) -> Tuple[Dict[str, float], pd.DataFrame]:
    """
    Concordance of fold changes between two comparisons on their shared genes.

    Args:
        results_a, results_b: DE results indexed by gene id
        column: Statistic to compare

    Returns:
        (summary, merged): summary has n_shared, pearson_r, pearson_p,
        spearman_r and sign_agreement; merged has lfc_a, lfc_b and gene
    """
    merged = pd.DataFrame(
        {"lfc_a": results_a[column], "lfc_b": results_b[column]}
    ).dropna()
    merged["gene"] = merged.index.astype(str)

    if len(merged) < 3:
        logger.warning(f"Only {len(merged)} shared genes with a fold change; concordance not computed")
        summary = {"n_shared": len(merged), "pearson_r": np.nan, "pearson_p": np.nan,
                   "spearman_r": np.nan, "sign_agreement": np.nan}
        return summary, merged

    pearson_r, pearson_p = stats.pearsonr(merged["lfc_a"], merged["lfc_b"])
    spearman_r, _ = stats.spearmanr(merged["lfc_a"], merged["lfc_b"])
    summary = {
        "n_shared": int(len(merged)),
        "pearson_r": float(pearson_r),
        "pearson_p": float(pearson_p),
        "spearman_r": float(spearman_r),
        "sign_agreement": float((np.sign(merged["lfc_a"]) == np.sign(merged["lfc_b"])).mean()),
    }
    logger.info(
        f"Fold change concordance on {summary['n_shared']} genes: "
        f"r = {summary['pearson_r']:.3f}, sign agreement {summary['sign_agreement']:.1%}"
    )
    return summary, merged
