"""Tests for library-level QC plot functions."""
import pytest
import pandas as pd
import numpy as np
from qc_plots import (
    create_library_size_barplot,
    create_count_distribution_boxplot,
    create_mapping_stats_plot,
    create_mean_sd_plot,
)


@pytest.fixture
def sample_counts():
    np.random.seed(42)
    return pd.DataFrame(
        np.random.poisson(100, (200, 6)),
        index=[f"Gene_{i}" for i in range(200)],
        columns=[f"Sample_{i}" for i in range(6)],
    )


def test_library_size_barplot(sample_counts):
    fig = create_library_size_barplot(sample_counts)
    assert fig is not None
    assert sum(len(t.x) for t in fig.data) == 6


def test_library_size_barplot_colored_by_condition(sample_counts):
    conditions = {s: ("chunk" if i < 3 else "cells") for i, s in enumerate(sample_counts.columns)}
    fig = create_library_size_barplot(sample_counts, conditions)
    assert {t.name for t in fig.data} == {"chunk", "cells"}


def test_count_distribution_boxplot(sample_counts):
    fig = create_count_distribution_boxplot(sample_counts)
    assert len(fig.data) == 6
    assert fig.layout.yaxis.title.text.startswith("log")


def test_count_distribution_boxplot_no_log(sample_counts):
    fig = create_count_distribution_boxplot(sample_counts, log_transform=False)
    assert max(fig.data[0].y) == sample_counts["Sample_0"].max()


def test_mapping_stats_plot(synthetic_study):
    fig = create_mapping_stats_plot(synthetic_study.mapping_stats, synthetic_study.counts)

    assert [t.name for t in fig.data] == ["genes", "unmapped", "multimapping", "noFeature", "ambiguous"]
    totals = np.sum([np.asarray(t.y) for t in fig.data], axis=0)
    assert np.allclose(totals, 100.0)


def test_mean_sd_plot(sample_counts):
    fig = create_mean_sd_plot(np.log2(sample_counts + 1), window=21)

    genes, trend = fig.data
    assert len(genes.x) == len(sample_counts)
    assert len(trend.y) == len(sample_counts)
    assert not np.isnan(np.asarray(trend.y, dtype=float)).any()


def test_mean_sd_plot_empty():
    with pytest.raises(ValueError, match="empty"):
        create_mean_sd_plot(pd.DataFrame())
