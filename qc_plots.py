"""Library-level QC visualizations: library sizes, mapping statistics, mean–SD plots."""

from typing import Dict, Optional
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px


def create_library_size_barplot(counts_df: pd.DataFrame, sample_conditions: Optional[Dict[str, str]] = None) -> go.Figure:
    """
    Bar plot of total counts (library size) per sample, sorted descending.

    Args:
        counts_df: genes × samples DataFrame of raw counts
        sample_conditions: Optional sample → condition mapping for coloring

    Returns:
        Plotly Figure object
    """
    lib_sizes = counts_df.sum(axis=0).sort_values(ascending=False)
    mean_size = lib_sizes.mean()
    conditions = [(sample_conditions or {}).get(s, "sample") for s in lib_sizes.index]

    fig = px.bar(
        x=lib_sizes.index.astype(str),
        y=lib_sizes.values,
        color=conditions,
        labels={"x": "Sample", "y": "Total Counts", "color": "Condition"},
    )
    fig.add_hline(
        y=mean_size,
        line_dash="dash",
        line_color="red",
        annotation_text=f"Mean: {mean_size:,.0f}",
        annotation_position="top right",
    )
    fig.update_layout(title="Library Size per Sample")
    return fig


def create_mapping_stats_plot(mapping_stats: pd.DataFrame, counts_df: pd.DataFrame) -> go.Figure:
    """
    Stacked bar plot of read fates per sample: counted on genes plus the
    four mapping-statistics rows of the count files.

    Args:
        mapping_stats: samples × N_* rows DataFrame (from count_loader.load_count_matrix)
        counts_df: genes × samples raw counts (before any gene filtering)

    Returns:
        Plotly Figure object
    """
    fates = mapping_stats.copy()
    fates.insert(0, "N_genes", counts_df.sum(axis=0).reindex(fates.index).values)
    fractions = fates.div(fates.sum(axis=1), axis=0) * 100

    fig = go.Figure()
    for fate in fractions.columns:
        fig.add_trace(
            go.Bar(
                x=fractions.index.astype(str),
                y=fractions[fate],
                name=fate.replace("N_", ""),
                customdata=fates[fate],
                hovertemplate="%{x}: %{y:.1f}% (%{customdata:,} reads)<extra>" + fate + "</extra>",
            )
        )
    fig.update_layout(
        title="Read Assignment per Sample",
        xaxis_title="Sample",
        yaxis_title="Reads (%)",
        barmode="stack",
    )
    return fig


def create_count_distribution_boxplot(
    counts_df: pd.DataFrame, log_transform: bool = True, title: str = "Expression Distribution per Sample"
) -> go.Figure:
    """
    Box plot of expression distribution per sample.

    Args:
        counts_df: genes × samples DataFrame
        log_transform: Apply log2(x+1) transformation (default: True)

    Returns:
        Plotly Figure object
    """
    data = np.log2(counts_df + 1) if log_transform else counts_df

    fig = go.Figure()
    for sample in data.columns:
        fig.add_trace(go.Box(y=data[sample].values, name=str(sample), showlegend=False))

    ylabel = "log₂(count + 1)" if log_transform else "Value"
    fig.update_layout(title=title, xaxis_title="Sample", yaxis_title=ylabel)
    return fig


def create_mean_sd_plot(expression: pd.DataFrame, title: str = "Mean–SD", window: int = 101) -> go.Figure:
    """
    Per-gene standard deviation against the rank of the per-gene mean,
    with a running median. A flat trend means the transform stabilized the
    variance.

    Args:
        expression: genes × samples, already transformed (log2 or VST)
        title: Plot title
        window: Running-median window, in genes

    Returns:
        Plotly Figure object
    """
    if expression is None or expression.empty:
        raise ValueError("Cannot create mean–SD plot: expression matrix is empty or None.")

    stats = pd.DataFrame({"mean": expression.mean(axis=1), "sd": expression.std(axis=1)})
    stats = stats.sort_values("mean", kind="mergesort").reset_index(drop=True)
    stats["rank"] = np.arange(len(stats))
    stats["trend"] = stats["sd"].rolling(window=min(window, len(stats)), center=True, min_periods=1).median()

    fig = go.Figure()
    fig.add_trace(
        go.Scattergl(
            x=stats["rank"],
            y=stats["sd"],
            mode="markers",
            marker=dict(size=3, color="steelblue", opacity=0.4),
            name="genes",
        )
    )
    fig.add_trace(go.Scatter(x=stats["rank"], y=stats["trend"], mode="lines", line=dict(color="red"), name="running median"))
    fig.update_layout(title=title, xaxis_title="Rank of mean", yaxis_title="Standard deviation")
    return fig
