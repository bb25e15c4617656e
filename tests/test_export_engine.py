"""Tests for the per-comparison Excel workbook."""

import pandas as pd
import pytest
from openpyxl import load_workbook

from de_analysis import DEResult
from export_engine import ComparisonReport, ExportEngine
from pathway_enrichment import GSEA_COLUMNS, EnrichmentResult


@pytest.fixture
def engine():
    return ExportEngine()


@pytest.fixture
def report(sample_de_results_df, sample_annotation):
    gsea = pd.DataFrame(
        [["DISSOCIATION_STRESS", "IEGs", 2.1, 0.8, 0.001, 0.01, 12, "FOS;JUN"]],
        columns=GSEA_COLUMNS,
    )
    return ComparisonReport(
        name="chunk_vs_cells",
        de_results={
            0.1: DEResult(sample_de_results_df, ("cells", "chunk"), 0.1, 30, True),
            0.05: DEResult(sample_de_results_df, ("cells", "chunk"), 0.05, 20, True),
        },
        annotation=sample_annotation,
        enrichment={
            "GO_Biological_Process_2023_FDR_0.1": EnrichmentResult("GO_Biological_Process_2023", gsea),
            "GO_Biological_Process_2023_FDR_0.05": EnrichmentResult("GO_Biological_Process_2023", gsea),
            "KEGG_2021_Human_FDR_0.1": EnrichmentResult(
                "KEGG_2021_Human", pd.DataFrame(columns=GSEA_COLUMNS), "download failed"
            ),
        },
        panel_summary=pd.DataFrame({"panel": ["Red blood cell"], "n_found": [2]}),
        panel_scores=pd.DataFrame(
            {"cells": [-0.8], "chunk": [0.8]}, index=pd.Index(["Red blood cell"], name="panel")
        ),
        settings={"min_total_count": 20},
        sample_conditions={"chunk_A1": "chunk", "cells_A1": "cells"},
        top_n=5,
    )


class TestSheetNames:
    def test_sanitize(self, engine):
        assert engine.sanitize_sheet_name("GSEA/KEGG:[x]?") == "GSEA_KEGG__x__"
        assert len(engine.sanitize_sheet_name("x" * 40)) == 31
        assert engine.sanitize_sheet_name("'quoted'") == "quoted"

    def test_unique_after_truncation(self, engine):
        used = set()
        a = engine.unique_sheet_name("GSEA_GO_Biological_Process_2023_FDR_0.1", used)
        b = engine.unique_sheet_name("GSEA_GO_Biological_Process_2023_FDR_0.05", used)
        assert a != b
        assert len(a) <= 31 and len(b) <= 31


class TestExportExcel:
    def test_sheets(self, tmp_path, engine, report):
        path = tmp_path / "report.xlsx"
        engine.export_excel(path, report)

        sheets = load_workbook(path).sheetnames
        assert sheets[:4] == ["DE_FDR_0.1", "Sig_FDR_0.1", "DE_FDR_0.05", "Sig_FDR_0.05"]
        assert {"Top_up", "Top_down", "Panels", "Panel_Scores", "Settings"} <= set(sheets)
        gsea_sheets = [s for s in sheets if s.startswith("GSEA_")]
        # failed database has no sheet; truncated names stay distinct
        assert len(gsea_sheets) == 2
        assert not any("KEGG" in s for s in sheets)

    def test_tables_are_annotated_and_filtered(self, tmp_path, engine, report, sample_de_results_df):
        path = tmp_path / "report.xlsx"
        engine.export_excel(path, report)

        de = pd.read_excel(path, sheet_name="DE_FDR_0.05", index_col=0)
        assert list(de.columns[:2]) == ["gene_name", "gene_biotype"]
        assert len(de) == len(sample_de_results_df)

        sig = pd.read_excel(path, sheet_name="Sig_FDR_0.05", index_col=0)
        expected = (sample_de_results_df["padj"] < 0.05).sum()
        assert len(sig) == expected
        assert sig["padj"].is_monotonic_increasing

        up = pd.read_excel(path, sheet_name="Top_up", index_col=0)
        assert len(up) == 5
        assert up["log2FoldChange"].is_monotonic_decreasing

    def test_settings_sheet(self, tmp_path, engine, report):
        path = tmp_path / "report.xlsx"
        engine.export_excel(path, report)

        settings = pd.read_excel(path, sheet_name="Settings", header=None, dtype=str)
        values = dict(zip(settings[0], settings[1]))
        assert values["Comparison"] == "chunk_vs_cells"
        assert values["min_total_count"] == "20"
        assert values["FDR 0.05"].startswith("20 significant genes (cells vs chunk)")
        assert values["KEGG_2021_Human_FDR_0.1"].startswith("FAILED")
        assert values["cells_A1"] == "cells"

    def test_panel_scores_sheet(self, tmp_path, engine, report):
        path = tmp_path / "report.xlsx"
        engine.export_excel(path, report)

        scores = pd.read_excel(path, sheet_name="Panel_Scores", index_col="panel")
        assert scores.loc["Red blood cell", "cells"] == pytest.approx(-0.8)

    def test_empty_panel_scores_have_no_sheet(self, tmp_path, engine, report):
        report.panel_scores = pd.DataFrame()
        path = tmp_path / "report.xlsx"
        engine.export_excel(path, report)
        assert "Panel_Scores" not in load_workbook(path).sheetnames
