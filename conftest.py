"""
Pytest configuration and fixtures for the dissociation DE pipeline tests.
"""

from pathlib import Path
from unittest.mock import MagicMock
import pytest
import pandas as pd
import numpy as np

from demo_data import make_synthetic_study
from pipeline_config import SampleSpec


# ============================================================================
# Synthetic Study Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def synthetic_study():
    """Reproducible synthetic chunk/cells/pseudobulk study (genes × samples)."""
    return make_synthetic_study(n_background=150, seed=7)


@pytest.fixture
def sample_specs():
    return [
        SampleSpec("chunk_A1", "chunk", "A"),
        SampleSpec("chunk_B2", "chunk", "B"),
        SampleSpec("cells_A1", "cells", "A"),
        SampleSpec("cells_B2", "cells", "B"),
    ]


@pytest.fixture
def small_counts():
    """
    4 genes × 4 samples, two samples per condition; GENE_DE carries a
    ~20-fold increase in the second condition.
    """
    return pd.DataFrame(
        {
            "chunk_A1": [20, 200, 50, 1000],
            "chunk_B2": [22, 210, 55, 980],
            "cells_A1": [400, 190, 48, 1020],
            "cells_B2": [420, 205, 52, 1010],
        },
        index=pd.Index(["GENE_DE", "GENE_2", "GENE_3", "GENE_4"], name="gene_id"),
    )


@pytest.fixture
def small_metadata():
    samples = ["chunk_A1", "chunk_B2", "cells_A1", "cells_B2"]
    return pd.DataFrame(
        {
            "sample_id": samples,
            "condition": ["chunk", "chunk", "cells", "cells"],
            "pool": ["A", "B", "A", "B"],
        },
        index=pd.Index(samples, name="sample"),
    )


@pytest.fixture
def sample_de_results_df():
    """
    DE results table as produced by DEAnalysisEngine (gene-indexed, with
    some padj values missing as for independently filtered genes).
    """
    rng = np.random.default_rng(42)
    n_genes = 200
    pvalue = rng.uniform(0, 1, n_genes) ** 3
    padj = np.minimum(pvalue * 4, 1.0)
    padj[::17] = np.nan
    lfc = rng.normal(0, 2, n_genes)
    return pd.DataFrame(
        {
            "baseMean": rng.uniform(10, 1000, n_genes),
            "log2FoldChange": lfc,
            "lfcSE": rng.uniform(0.1, 0.5, n_genes),
            "stat": rng.normal(0, 3, n_genes),
            "pvalue": pvalue,
            "padj": padj,
            "log2FoldChange_shrunk": lfc * 0.8,
        },
        index=pd.Index([f"ENSG{i + 1:011d}" for i in range(n_genes)], name="gene_id"),
    )


@pytest.fixture
def sample_annotation(sample_de_results_df):
    rng = np.random.default_rng(3)
    n = len(sample_de_results_df)
    names = [f"GENE{i:04d}" for i in range(n)]
    names[:4] = ["HBB", "HBA1", "FOS", "JUN"]
    return pd.DataFrame(
        {
            "gene_name": names,
            "gene_biotype": np.where(np.arange(n) % 5 == 0, "lncRNA", "protein_coding"),
            "chrom": "1",
            "length": rng.integers(500, 20000, n),
            "gc_content": rng.uniform(0.35, 0.6, n),
        },
        index=sample_de_results_df.index.copy(),
    )


# ============================================================================
# Config Fixtures
# ============================================================================


@pytest.fixture
def gene_panels_path():
    return Path(__file__).parent / "config" / "gene_panels.yaml"


# ============================================================================
# Mocking Fixtures
# ============================================================================


@pytest.fixture
def mock_gseapy(monkeypatch):
    """Mock gseapy.prerank so enrichment runs offline and deterministically."""
    mock_gp = MagicMock()

    mock_gsea_result = MagicMock()
    mock_gsea_result.res2d = pd.DataFrame(
        {
            "Name": ["prerank"] * 3,
            "Term": ["DISSOCIATION_STRESS", "ERYTHROCYTE", "ADIPOCYTE"],
            "ES": [0.8, -0.7, -0.3],
            "NES": [2.1, -1.9, -0.9],
            "NOM p-val": [0.001, 0.002, 0.4],
            "FDR q-val": [0.01, 0.02, 0.5],
            "FWER p-val": [0.01, 0.03, 0.6],
            "Tag %": ["10/12", "7/8", "2/6"],
            "Gene %": ["5.0%", "4.1%", "20.0%"],
            "Lead_genes": ["FOS;JUN;EGR1", "HBB;HBA1", "PLIN1"],
        }
    )
    mock_gp.prerank = MagicMock(return_value=mock_gsea_result)

    monkeypatch.setattr("pathway_enrichment.gp", mock_gp)
    return mock_gp


@pytest.fixture
def mock_biomart(monkeypatch):
    """Mock gseapy.Biomart; returns a GC percentage for every requested id."""
    instance = MagicMock()

    def query(dataset, attributes, filters):
        ids = filters["ensembl_gene_id"]
        return pd.DataFrame(
            {
                "ensembl_gene_id": ids,
                "percentage_gene_gc_content": [40.0 + (i % 20) for i in range(len(ids))],
            }
        )

    instance.query = MagicMock(side_effect=query)
    monkeypatch.setattr("gene_annotation.Biomart", MagicMock(return_value=instance))
    return instance
