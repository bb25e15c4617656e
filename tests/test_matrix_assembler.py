"""Tests for combining real and pseudobulk matrices with their metadata."""

import pandas as pd
import pytest

from matrix_assembler import (
    aggregate_pseudobulk,
    build_sample_metadata,
    check_metadata_alignment,
    combine_counts,
    combine_metadata,
    read_pseudobulk,
    restrict_to_shared_genes,
    sample_conditions,
)
from pipeline_config import SampleSpec
from pipeline_errors import GeneOrderMismatchError


@pytest.fixture
def real():
    return pd.DataFrame({"r1": [1, 2, 3], "r2": [4, 5, 6]}, index=["g1", "g2", "g3"])


@pytest.fixture
def pseudo():
    return pd.DataFrame({"p1": [7, 8, 9], "p2": [1, 1, 1], "p3": [0, 2, 4]}, index=["g1", "g2", "g3"])


class TestCombineCounts:
    def test_column_count_is_sum_and_metadata_aligned(self, real, pseudo):
        combined = combine_counts(real, pseudo)
        metadata = combine_metadata(
            build_sample_metadata([SampleSpec("r1", "cells", "A"), SampleSpec("r2", "cells", "B")], "bulk"),
            build_sample_metadata(
                [SampleSpec("p1", "pseudobulk", "A"), SampleSpec("p2", "pseudobulk", "B"), SampleSpec("p3", "pseudobulk", "C")]
            ),
        )

        assert combined.shape[1] == real.shape[1] + pseudo.shape[1]
        assert len(metadata) == combined.shape[1]
        assert list(metadata.index) == list(combined.columns)
        assert metadata["condition"].tolist() == ["bulk", "bulk", "pseudobulk", "pseudobulk", "pseudobulk"]
        check_metadata_alignment(combined, metadata)

    def test_gene_order_mismatch(self, real, pseudo):
        with pytest.raises(GeneOrderMismatchError):
            combine_counts(real, pseudo.iloc[[1, 0, 2]])

    def test_overlapping_sample_ids(self, real):
        with pytest.raises(ValueError, match="r1"):
            combine_counts(real, real[["r1"]])


def test_restrict_to_shared_genes_sorts_both():
    real = pd.DataFrame({"r1": [1, 2, 3]}, index=["g3", "g1", "gX"])
    pseudo = pd.DataFrame({"p1": [4, 5, 6]}, index=["g1", "g3", "gY"])
    r, p = restrict_to_shared_genes(real, pseudo)

    assert list(r.index) == ["g1", "g3"]
    assert list(p.index) == ["g1", "g3"]
    assert combine_counts(r, p).loc["g3"].tolist() == [1, 5]


def test_restrict_to_shared_genes_no_overlap():
    with pytest.raises(GeneOrderMismatchError):
        restrict_to_shared_genes(pd.DataFrame({"a": [1]}, index=["g1"]), pd.DataFrame({"b": [1]}, index=["g2"]))


def test_metadata_misalignment_detected(real):
    metadata = build_sample_metadata([SampleSpec("r2", "c", "A"), SampleSpec("r1", "c", "A")])
    with pytest.raises(ValueError, match="not aligned"):
        check_metadata_alignment(real, metadata)


def test_combine_metadata_duplicate_ids():
    part = build_sample_metadata([SampleSpec("s1", "c", "A")])
    with pytest.raises(ValueError, match="Duplicate"):
        combine_metadata(part, part)


def test_aggregate_pseudobulk():
    cells = pd.DataFrame(
        {"c1": [1, 0], "c2": [2, 1], "c3": [5, 5], "c4": [9, 9]},
        index=["g1", "g2"],
    )
    assignment = pd.Series({"c1": "p1", "c2": "p1", "c3": "p2"})
    summed = aggregate_pseudobulk(cells, assignment)

    assert list(summed.columns) == ["p1", "p2"]
    assert summed["p1"].tolist() == [3, 1]
    assert summed["p2"].tolist() == [5, 5]


def test_read_pseudobulk(tmp_path, pseudo):
    path = tmp_path / "pb.tsv"
    pseudo.to_csv(path, sep="\t", index_label="gene_id")
    loaded = read_pseudobulk(path)
    assert loaded.index.name == "gene_id"
    assert loaded.loc["g3", "p3"] == 4


def test_read_pseudobulk_rejects_fractions(tmp_path):
    path = tmp_path / "pb.tsv"
    pd.DataFrame({"p1": [1.5, 2.0]}, index=["g1", "g2"]).to_csv(path, sep="\t")
    with pytest.raises(ValueError, match="integer"):
        read_pseudobulk(path)


def test_sample_conditions():
    metadata = build_sample_metadata([SampleSpec("r1", "chunk", "A"), SampleSpec("r2", "cells", "B")])
    assert sample_conditions(metadata) == {"r1": "chunk", "r2": "cells"}
