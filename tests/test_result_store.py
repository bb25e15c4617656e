"""Tests for the versioned on-disk hand-off between pipelines."""

import json
import numpy as np
import pandas as pd
import pytest

from de_analysis import DEResult, FittedModel
from pipeline_errors import ArtifactSchemaError
from result_store import (
    MANIFEST_NAME,
    comparison_data_dir,
    load_model_data,
    load_results,
    load_settings,
    load_table,
    save_model_data,
    save_results,
    save_table,
    threshold_dir,
)


@pytest.fixture
def de_results(sample_de_results_df):
    return {
        0.1: DEResult(sample_de_results_df, ("cells", "chunk"), 0.1, 12, True),
        0.05: DEResult(sample_de_results_df, ("cells", "chunk"), 0.05, 7, True),
    }


@pytest.fixture
def fitted(small_counts):
    size_factors = pd.Series([0.9, 1.1, 1.05, 0.97], index=small_counts.columns, name="size_factor")
    return FittedModel(
        dds=None,
        design_factor="condition",
        reference="chunk",
        counts=small_counts,
        normalized_counts=small_counts / size_factors,
        size_factors=size_factors,
        dispersions=pd.Series([0.01, 0.2, 0.05, 0.003], index=small_counts.index, name="dispersion"),
    )


def test_directory_naming(tmp_path):
    assert comparison_data_dir(tmp_path, "chunk_vs_cells").name == "chunk_vs_cells_data"
    assert threshold_dir(tmp_path, "chunk_vs_cells", 0.05).name == "chunk_vs_cells_FDR_0.05"
    assert threshold_dir(tmp_path, "chunk_vs_cells", 0.1).name == "chunk_vs_cells_FDR_0.1"


class TestResults:
    def test_roundtrip_is_exact(self, tmp_path, de_results, sample_de_results_df):
        save_results(tmp_path, "chunk_vs_cells", de_results)
        loaded = load_results(tmp_path, "chunk_vs_cells", 0.05)
        pd.testing.assert_frame_equal(loaded, sample_de_results_df)

    def test_settings_recorded(self, tmp_path, de_results):
        save_results(tmp_path, "chunk_vs_cells", de_results, settings={"design": "~condition"})
        settings = load_settings(threshold_dir(tmp_path, "chunk_vs_cells", 0.1))
        assert settings["alpha"] == 0.1
        assert settings["n_significant"] == 12
        assert settings["reference"] == "chunk"
        assert settings["design"] == "~condition"

    def test_missing_artifact(self, tmp_path):
        with pytest.raises(ArtifactSchemaError, match="No artifact"):
            load_results(tmp_path, "chunk_vs_cells", 0.1)

    def test_wrong_kind_rejected(self, tmp_path, sample_de_results_df):
        directory = threshold_dir(tmp_path, "chunk_vs_cells", 0.1)
        save_table(sample_de_results_df, directory, "results", "gene_table")
        with pytest.raises(ArtifactSchemaError, match="expected de_results"):
            load_results(tmp_path, "chunk_vs_cells", 0.1)

    def test_missing_result_columns(self, tmp_path, sample_de_results_df):
        directory = threshold_dir(tmp_path, "chunk_vs_cells", 0.1)
        save_table(sample_de_results_df.drop(columns=["padj"]), directory, "results", "de_results")
        with pytest.raises(ArtifactSchemaError, match="padj"):
            load_results(tmp_path, "chunk_vs_cells", 0.1)


class TestSchemaValidation:
    @pytest.fixture
    def saved(self, tmp_path, sample_de_results_df):
        save_table(sample_de_results_df, tmp_path, "results", "de_results")
        return tmp_path

    def test_renamed_column(self, saved):
        path = saved / "results.tsv"
        text = path.read_text()
        path.write_text(text.replace("lfcSE", "lfc_se", 1))
        with pytest.raises(ArtifactSchemaError, match="Columns"):
            load_table(saved, "results")

    def test_truncated_table(self, saved):
        path = saved / "results.tsv"
        lines = path.read_text().splitlines(keepends=True)
        path.write_text("".join(lines[:-3]))
        with pytest.raises(ArtifactSchemaError, match="rows"):
            load_table(saved, "results")

    def test_bad_dtype(self, saved):
        path = saved / "results.tsv"
        lines = path.read_text().splitlines(keepends=True)
        fields = lines[1].split("\t")
        fields[1] = "not-a-number"
        lines[1] = "\t".join(fields)
        path.write_text("".join(lines))
        with pytest.raises(ArtifactSchemaError, match="dtypes"):
            load_table(saved, "results")

    def test_unsupported_schema_version(self, saved):
        manifest_path = saved / MANIFEST_NAME
        manifest = json.loads(manifest_path.read_text())
        manifest["_meta"]["schema_version"] = "0.1"
        manifest_path.write_text(json.dumps(manifest))
        with pytest.raises(ArtifactSchemaError, match="schema version"):
            load_table(saved, "results")

    def test_deleted_file(self, saved):
        (saved / "results.tsv").unlink()
        with pytest.raises(ArtifactSchemaError, match="missing"):
            load_table(saved, "results")


class TestModelData:
    def test_roundtrip(self, tmp_path, fitted, small_metadata):
        vst = np.log2(fitted.normalized_counts + 1)
        save_model_data(tmp_path, "chunk_vs_cells", fitted, small_metadata, vst=vst)
        tables = load_model_data(tmp_path, "chunk_vs_cells")

        assert set(tables) == {
            "raw_counts", "normalized_counts", "size_factors", "dispersions", "sample_metadata", "vst",
        }
        pd.testing.assert_frame_equal(tables["raw_counts"], fitted.counts)
        pd.testing.assert_frame_equal(tables["normalized_counts"], fitted.normalized_counts)
        pd.testing.assert_frame_equal(tables["vst"], vst)
        pd.testing.assert_series_equal(tables["size_factors"]["size_factor"], fitted.size_factors)
        pd.testing.assert_frame_equal(tables["sample_metadata"], small_metadata)

    def test_categorical_metadata_stored_as_strings(self, tmp_path, fitted, small_metadata):
        meta = small_metadata.assign(condition=pd.Categorical(small_metadata["condition"], ["chunk", "cells"]))
        save_model_data(tmp_path, "chunk_vs_cells", fitted, meta)
        loaded = load_model_data(tmp_path, "chunk_vs_cells")["sample_metadata"]
        assert loaded["condition"].tolist() == small_metadata["condition"].tolist()

    def test_normalization_factors_persisted(self, tmp_path, fitted, small_metadata):
        fitted.normalization_factors = pd.DataFrame(1.0, index=fitted.counts.index, columns=fitted.counts.columns)
        save_model_data(tmp_path, "bulk_vs_pseudobulk", fitted, small_metadata)
        tables = load_model_data(tmp_path, "bulk_vs_pseudobulk")
        pd.testing.assert_frame_equal(tables["normalization_factors"], fitted.normalization_factors)

    def test_settings(self, tmp_path, fitted, small_metadata):
        save_model_data(tmp_path, "chunk_vs_cells", fitted, small_metadata, settings={"min_total_count": 20})
        settings = load_settings(comparison_data_dir(tmp_path, "chunk_vs_cells"))
        assert settings["reference"] == "chunk"
        assert settings["min_total_count"] == 20

    def test_no_model_data(self, tmp_path):
        with pytest.raises(ArtifactSchemaError, match="No model data"):
            load_model_data(tmp_path, "chunk_vs_cells")


class TestTextColumns:
    def test_numeric_like_ids_stay_strings(self, tmp_path):
        table = pd.DataFrame(
            {
                "pool": ["1", "2"],
                "gene_name": ["TP53", "NA"],
                "baseMean": [12.5, np.nan],
            },
            index=pd.Index(["7157", "672"], name="gene_id"),
        )
        save_table(table, tmp_path, "genes", "gene_table")
        loaded = load_table(tmp_path, "genes", "gene_table")

        pd.testing.assert_frame_equal(loaded, table)
        assert loaded.index.tolist() == ["7157", "672"]
        assert loaded["pool"].tolist() == ["1", "2"]
        assert loaded.loc["672", "gene_name"] == "NA"

    def test_missing_text_values_come_back_missing(self, tmp_path):
        table = pd.DataFrame({"pool": ["1", None]}, index=pd.Index(["s1", "s2"], name="sample"))
        save_table(table, tmp_path, "samples", "sample_table")
        loaded = load_table(tmp_path, "samples")
        assert loaded.loc["s1", "pool"] == "1"
        assert pd.isna(loaded.loc["s2", "pool"])
