"""Tests for PCA-based batch effect assessment."""

import numpy as np
import pandas as pd
import pytest

from advanced_qc import AdvancedQC, compute_pca


@pytest.fixture
def expression():
    rng = np.random.default_rng(0)
    data = rng.normal(5, 0.2, size=(300, 6))
    data[:50, 3:] += 3.0  # strong condition effect on 50 genes
    return pd.DataFrame(
        data,
        index=[f"g{i}" for i in range(300)],
        columns=["chunk_A1", "chunk_B2", "chunk_C3", "cells_A1", "cells_B2", "cells_C3"],
    )


@pytest.fixture
def metadata(expression):
    return pd.DataFrame(
        {
            "condition": ["chunk"] * 3 + ["cells"] * 3,
            "pool": ["A", "B", "C"] * 2,
            "site": "same",
        },
        index=expression.columns,
    )


def test_compute_pca_shapes(expression):
    coords, explained = compute_pca(expression, n_components=10, n_top_genes=100)

    # capped at the number of samples
    assert coords.shape == (6, 6)
    assert list(coords.index) == list(expression.columns)
    assert explained[0] > 0.5
    assert np.all(np.diff(explained) <= 1e-12)


def test_condition_drives_pc1(expression, metadata):
    coords, _ = compute_pca(expression, n_components=3)
    qc = AdvancedQC()
    explained = qc.assess_batch_effects(coords, metadata["condition"])

    assert explained["PC1"] > 0.9
    assert all(0.0 <= v <= 1.0 for v in explained.values())


def test_batch_effect_table_skips_constant_variables(expression, metadata):
    coords, _ = compute_pca(expression, n_components=3)
    table = AdvancedQC().batch_effect_table(coords, metadata, ["condition", "pool", "site", "missing"])

    assert list(table.columns) == ["condition", "pool"]
    assert list(table.index) == ["PC1", "PC2", "PC3"]


def test_batch_effect_plot(expression, metadata):
    coords, _ = compute_pca(expression, n_components=3)
    qc = AdvancedQC()
    fig = qc.create_batch_effect_plot(qc.batch_effect_table(coords, metadata, ["condition", "pool"]))

    assert [t.name for t in fig.data] == ["condition", "pool"]
    assert fig.layout.barmode == "group"
