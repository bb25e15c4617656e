"""
Interactive visualizations for the dissociation DE analyses using Plotly.

Provides volcano plots, PCA, sample-distance heatmaps, fold-change bin
box plots against gene length/GC content, NES bar charts and concordance
scatter plots between two comparisons.
"""

from typing import Dict, Optional, Tuple
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from plotly.subplots import make_subplots
from scipy.cluster.hierarchy import linkage, leaves_list
from scipy.spatial.distance import pdist, squareform

from advanced_qc import compute_pca

LFC_BIN_EDGES = [-np.inf, -2.0, -1.0, 0.0, 1.0, 2.0, np.inf]
LFC_BIN_LABELS = ["< -2", "-2 to -1", "-1 to 0", "0 to 1", "1 to 2", "> 2"]


def create_volcano_plot(
    results_df: pd.DataFrame,
    annotation: Optional[pd.DataFrame] = None,
    biotype: Optional[str] = "protein_coding",
    lfc_threshold: float = 1.0,
    padj_threshold: float = 0.05,
    top_n_labels: int = 10,
    title: str = "Volcano Plot",
) -> go.Figure:
    """
    Create interactive volcano plot from DE results.

    Args:
        results_df: DE results indexed by gene id (log2FoldChange, padj)
        annotation: Gene-indexed annotation with gene_name and gene_biotype
        biotype: Keep only genes of this biotype (None keeps all; needs annotation)
        lfc_threshold: Log2 fold change threshold for coloring (default: 1.0)
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        top_n_labels: Number of most significant genes to label

    Returns:
        Plotly Figure object
    """
    if results_df is None or results_df.empty:
        raise ValueError(
            "Cannot create volcano plot: results_df is empty or None. "
            "Ensure the differential expression analysis produced results."
        )

    missing = [col for col in ("log2FoldChange", "padj") if col not in results_df.columns]
    if missing:
        raise ValueError(f"Cannot create volcano plot: missing required columns {missing}")

    df = results_df.dropna(subset=["padj", "log2FoldChange"]).copy()
    df["gene"] = df.index.astype(str)

    if annotation is not None:
        ann = annotation[~annotation.index.duplicated(keep="first")]
        if "gene_name" in ann.columns:
            df["gene"] = ann["gene_name"].reindex(df.index).fillna(df["gene"]).values
        if biotype is not None:
            biotypes = ann["gene_biotype"].reindex(df.index)
            df = df[(biotypes == biotype).values]

    if df.empty:
        raise ValueError(
            "Cannot create volcano plot: no genes left after dropping missing padj"
            + (f" and keeping {biotype} genes." if annotation is not None and biotype else ".")
        )

    df["-log10_padj"] = -np.log10(df["padj"].clip(lower=1e-300))  # Clip to avoid inf

    significant = df["padj"] < padj_threshold
    df["significance"] = np.select(
        [significant & (df["log2FoldChange"] > lfc_threshold), significant & (df["log2FoldChange"] < -lfc_threshold)],
        ["Up", "Down"],
        default="NS",
    )

    fig = px.scatter(
        df,
        x="log2FoldChange",
        y="-log10_padj",
        color="significance",
        hover_name="gene",
        hover_data={"log2FoldChange": ":.2f", "padj": ":.2e", "-log10_padj": False, "significance": False},
        color_discrete_map={"Up": "red", "Down": "blue", "NS": "lightgray"},
        labels={"log2FoldChange": "log₂(Fold Change)", "-log10_padj": "-log₁₀(padj)"},
    )

    fig.add_hline(y=-np.log10(padj_threshold), line_dash="dash", line_color="gray")
    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top_genes = df[significant].nsmallest(top_n_labels, "padj")
        if not top_genes.empty:
            fig.add_trace(
                go.Scatter(
                    x=top_genes["log2FoldChange"],
                    y=top_genes["-log10_padj"],
                    mode="text",
                    text=top_genes["gene"],
                    textposition="top center",
                    textfont=dict(size=9),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    fig.update_layout(title=f"{title} ({len(df)} genes)", showlegend=True)
    return fig


def create_pca_plot(
    vst: pd.DataFrame,
    metadata: pd.DataFrame,
    color_by: str = "condition",
    symbol_by: Optional[str] = "pool",
    n_top_genes: int = 500,
) -> go.Figure:
    """
    PCA scatter of samples over the most variable genes of a VST matrix.

    Args:
        vst: genes × samples variance-stabilized expression
        metadata: samples × variables, indexed like vst columns
        color_by: Metadata column used for color
        symbol_by: Metadata column used for marker symbol (None to skip)
        n_top_genes: Number of most variable genes used

    Returns:
        Plotly Figure object
    """
    if vst is None or vst.empty:
        raise ValueError("Cannot create PCA plot: expression matrix is empty or None.")
    if vst.shape[1] < 2:
        raise ValueError(f"Cannot create PCA plot: requires at least 2 samples, but got {vst.shape[1]}.")

    coords, explained = compute_pca(vst, n_components=2, n_top_genes=n_top_genes)
    meta = metadata.reindex(coords.index)
    coords[color_by] = meta[color_by].astype(str).values
    if symbol_by is not None:
        coords[symbol_by] = meta[symbol_by].astype(str).values
    coords["sample"] = coords.index

    fig = px.scatter(
        coords,
        x="PC1",
        y="PC2",
        color=color_by,
        symbol=symbol_by,
        hover_name="sample",
        labels={
            "PC1": f"PC1 ({explained[0] * 100:.1f}%)",
            "PC2": f"PC2 ({explained[1] * 100:.1f}%)",
        },
    )
    fig.update_traces(marker=dict(size=11))
    fig.update_layout(title="PCA (variance-stabilized counts)", showlegend=True)
    return fig


def create_sample_distance_heatmap(vst: pd.DataFrame, sample_conditions: Dict[str, str]) -> go.Figure:
    """
    Euclidean distances between samples on a VST matrix, ordered by
    average-linkage hierarchical clustering.

    Args:
        vst: genes × samples variance-stabilized expression
        sample_conditions: Dict[sample_name, condition] used in the labels

    Returns:
        Plotly Figure object
    """
    if vst is None or vst.empty:
        raise ValueError("Cannot create sample distance heatmap: expression matrix is empty or None.")
    if vst.shape[1] < 2:
        raise ValueError("Cannot create sample distance heatmap: requires at least 2 samples.")

    condensed = pdist(vst.T.values, metric="euclidean")
    order = leaves_list(linkage(condensed, method="average"))
    distances = squareform(condensed)[np.ix_(order, order)]
    labels = [f"{s} ({sample_conditions.get(s, 'Unknown')})" for s in vst.columns[order]]

    fig = go.Figure(
        data=go.Heatmap(
            z=distances,
            x=labels,
            y=labels,
            colorscale="Blues_r",
            hovertemplate="%{x}<br>%{y}<br>Distance: %{z:.1f}<extra></extra>",
        )
    )
    fig.update_layout(
        title="Sample-to-Sample Distances",
        width=max(500, 40 * len(labels) + 200),
        height=max(500, 40 * len(labels) + 200),
    )
    return fig


def assign_lfc_bins(lfc: pd.Series) -> pd.Series:
    """Bin log2 fold changes into fixed, ordered categories."""
    return pd.cut(lfc, bins=LFC_BIN_EDGES, labels=LFC_BIN_LABELS)


def create_lfc_bin_boxplots(results_df: pd.DataFrame, annotation: pd.DataFrame) -> go.Figure:
    """
    Box plots of gene length (log10 bp) and GC content per log2 fold change bin.

    Shows whether the fold changes of a comparison track gene length or GC
    content, i.e. whether a technical covariate drives the contrast.

    Args:
        results_df: DE results indexed by gene id
        annotation: Gene-indexed annotation with length and gc_content

    Returns:
        Plotly Figure with two panels (length, GC)
    """
    df = results_df[["log2FoldChange"]].dropna()
    ann = annotation[~annotation.index.duplicated(keep="first")]
    df = df.join(ann[["length", "gc_content"]], how="inner").dropna()
    if df.empty:
        raise ValueError("Cannot create fold-change bin plot: no genes with both a fold change and annotation.")

    df["bin"] = assign_lfc_bins(df["log2FoldChange"])
    df["log10_length"] = np.log10(df["length"].astype(float))

    fig = make_subplots(rows=1, cols=2, subplot_titles=["Gene length", "GC content"])
    for col_idx, column in enumerate(["log10_length", "gc_content"], start=1):
        for label in LFC_BIN_LABELS:
            values = df.loc[df["bin"] == label, column]
            fig.add_trace(
                go.Box(y=values, name=f"{label} (n={len(values)})", marker_color="steelblue", showlegend=False),
                row=1,
                col=col_idx,
            )

    fig.update_yaxes(title_text="log₁₀(length, bp)", row=1, col=1)
    fig.update_yaxes(title_text="GC fraction", row=1, col=2)
    fig.update_xaxes(title_text="log₂ fold change bin")
    fig.update_layout(title="Fold change vs. gene length and GC content", height=500)
    return fig


def create_nes_barplot(top: pd.DataFrame, bottom: pd.DataFrame, title: str = "GSEA") -> go.Figure:
    """
    Horizontal bar chart of the most positively and negatively enriched gene sets.

    Args:
        top, bottom: Standardized GSEA tables (term, nes, fdr)
    """
    df = pd.concat([top, bottom]).drop_duplicates(subset="term")
    if df.empty:
        fig = go.Figure()
        fig.update_layout(
            title=title,
            annotations=[dict(
                text="No enrichment results to display",
                xref="paper", yref="paper",
                x=0.5, y=0.5, showarrow=False, font=dict(size=16),
            )],
        )
        return fig

    df = df.sort_values("nes")
    labels = df["term"].astype(str).apply(lambda x: x[:60] + "..." if len(x) > 60 else x)
    fig = go.Figure(
        go.Bar(
            x=df["nes"],
            y=labels,
            orientation="h",
            marker_color=np.where(df["nes"] > 0, "#d62728", "#1f77b4"),
            customdata=df["fdr"],
            hovertemplate="<b>%{y}</b><br>NES: %{x:.2f}<br>FDR: %{customdata:.3g}<extra></extra>",
        )
    )
    fig.update_layout(
        title=title,
        xaxis_title="Normalized enrichment score",
        height=max(400, len(df) * 22 + 100),
        margin=dict(l=350),
        showlegend=False,
    )
    return fig


def create_concordance_plot(
    merged: pd.DataFrame,
    labels: Tuple[str, str],
    pearson_r: float,
) -> go.Figure:
    """
    Scatter of log2 fold changes of two comparisons on their shared genes.

    Args:
        merged: Output of reporting.compare_comparisons (lfc_a, lfc_b, gene)
        labels: Axis labels for the two comparisons
        pearson_r: Correlation shown in the title
    """
    fig = px.scatter(
        merged,
        x="lfc_a",
        y="lfc_b",
        hover_name="gene",
        opacity=0.5,
        labels={"lfc_a": f"log₂FC {labels[0]}", "lfc_b": f"log₂FC {labels[1]}"},
    )
    lim = float(np.nanmax(np.abs(merged[["lfc_a", "lfc_b"]].to_numpy()))) if len(merged) else 1.0
    fig.add_trace(
        go.Scatter(x=[-lim, lim], y=[-lim, lim], mode="lines", line=dict(dash="dash", color="gray"), showlegend=False)
    )
    fig.update_layout(title=f"Fold change concordance (Pearson r = {pearson_r:.2f}, n = {len(merged)})")
    return fig


def create_cqn_fit_plot(fits: Dict[str, pd.DataFrame]) -> go.Figure:
    """
    Per-sample systematic effect of GC content and gene length estimated by
    the normalization model.

    Args:
        fits: Output of cqn_normalization.summarize_fits (bins × samples)
    """
    fig = make_subplots(rows=1, cols=2, subplot_titles=["GC content", "log₂ length (kb)"])
    colors = px.colors.qualitative.Plotly
    for col_idx, key in enumerate(["gc", "length"], start=1):
        table = fits[key]
        centers = [interval.mid for interval in table.index]
        for i, sample in enumerate(table.columns):
            fig.add_trace(
                go.Scatter(
                    x=centers,
                    y=table[sample],
                    mode="lines",
                    name=str(sample),
                    legendgroup=str(sample),
                    showlegend=col_idx == 1,
                    line=dict(color=colors[i % len(colors)]),
                ),
                row=1,
                col=col_idx,
            )
    fig.update_yaxes(title_text="Fitted log₂ RPM", row=1, col=1)
    fig.update_layout(title="GC / length effect per sample", height=500)
    return fig
