"""Tests for the synthetic dissociation study."""
import numpy as np
import pandas as pd
import pytest

from count_loader import load_count_matrix
from demo_data import (
    ADIPOCYTE_GENES,
    DISSOCIATION_GENES,
    RBC_GENES,
    make_synthetic_study,
    write_dry_run,
    write_gmt,
    write_gtf,
)
from gene_annotation import read_gtf
from pathway_enrichment import read_gmt
from pipeline_config import load_config


@pytest.fixture(scope="module")
def study():
    return make_synthetic_study(n_background=50, seed=5)


def test_shapes(study):
    n_genes = len(DISSOCIATION_GENES) + len(RBC_GENES) + len(ADIPOCYTE_GENES) + 50
    assert study.counts.shape == (n_genes, 6)
    assert study.pseudobulk.shape == (n_genes, 3)
    assert list(study.metadata.index) == list(study.counts.columns)
    assert study.annotation.index.equals(study.counts.index)
    assert list(study.mapping_stats.index) == list(study.counts.columns)


def test_conditions_and_pools(study):
    assert study.metadata["condition"].tolist() == ["chunk"] * 3 + ["cells"] * 3
    assert study.metadata["pool"].tolist() == ["A", "B", "C"] * 2
    assert (study.pseudobulk_metadata["condition"] == "pseudobulk").all()


def test_integer_counts(study):
    for frame in (study.counts, study.pseudobulk):
        assert all(pd.api.types.is_integer_dtype(frame[c]) for c in frame.columns)
        assert (frame >= 0).all(axis=None)


def test_reproducible():
    a = make_synthetic_study(n_background=20, seed=9)
    b = make_synthetic_study(n_background=20, seed=9)
    pd.testing.assert_frame_equal(a.counts, b.counts)
    pd.testing.assert_frame_equal(a.pseudobulk, b.pseudobulk)


def test_injected_effects(study):
    chunk = study.counts.filter(like="chunk").sum(axis=1)
    cells = study.counts.filter(like="cells").sum(axis=1)
    stress = study.gene_ids(["FOS", "JUN", "EGR1"])
    rbc = study.gene_ids(["HBB", "HBA1"])

    assert (cells[stress] > 3 * chunk[stress]).all()
    assert (cells[rbc] < 0.5 * chunk[rbc]).all()


def test_gene_ids_skips_unknown(study):
    assert len(study.gene_ids(["FOS", "NOT_A_GENE"])) == 1


def test_gtf_roundtrip(tmp_path, study):
    path = write_gtf(tmp_path / "genes.gtf", study.annotation)
    genes = read_gtf(path)
    pd.testing.assert_series_equal(
        genes["length"].reindex(study.annotation.index), study.annotation["length"], check_dtype=False, check_names=False
    )
    assert genes.loc[study.gene_ids(["FOS"])[0], "gene_name"] == "FOS"


def test_gmt(tmp_path, study):
    path = write_gmt(tmp_path / "sets.gmt", study.gene_sets, {"ERYTHROCYTE": "red cells"})
    sets, descriptions = read_gmt(path)
    assert sets["DISSOCIATION_STRESS"] == DISSOCIATION_GENES
    assert descriptions["ERYTHROCYTE"] == "red cells"
    assert descriptions["ADIPOCYTE"] == "adipocyte"


def test_dry_run_layout(tmp_path, study):
    config_path, _ = write_dry_run(tmp_path, study)
    config = load_config(config_path)

    assert config.bulk_condition == "cells"
    assert config.local_data_path.resolve() == (tmp_path / "work").resolve()
    assert config.gene_panels.exists()
    assert [s.id for s in config.pseudobulk_samples] == list(study.pseudobulk.columns)

    counts, mapping = load_count_matrix(config.base_data_path, config.sample_ids, config.count_file_pattern)
    pd.testing.assert_frame_equal(counts, study.counts, check_names=False)
    assert np.array_equal(mapping.to_numpy(), study.mapping_stats.to_numpy())
