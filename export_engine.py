"""
Excel export module for the dissociation DE analyses.

Exports one multi-sheet workbook per comparison: DE results at every FDR
threshold, significant genes, top/bottom genes, GSEA results per gene set
database, marker panel summary and a Settings sheet.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Any
from datetime import datetime
import logging
import re
import sys
import pandas as pd
import pydeseq2

from de_analysis import DEResult, filter_significant, top_bottom
from pathway_enrichment import EnrichmentResult
from reporting import annotate_results

logger = logging.getLogger(__name__)


@dataclass
class ComparisonReport:
    """Everything exported for one comparison."""

    name: str  # e.g. "chunk_vs_cells"
    de_results: Dict[float, DEResult]  # FDR threshold → result
    annotation: Optional[pd.DataFrame] = None  # gene_name / gene_biotype for the tables
    enrichment: Dict[str, EnrichmentResult] = field(default_factory=dict)
    panel_summary: Optional[pd.DataFrame] = None
    panel_scores: Optional[pd.DataFrame] = None  # panels × conditions
    settings: Dict[str, Any] = field(default_factory=dict)
    sample_conditions: Dict[str, str] = field(default_factory=dict)
    top_n: int = 20


class ExportEngine:
    """Excel export engine for comparison reports."""

    def sanitize_sheet_name(self, name: str, max_length: int = 31) -> str:
        """
        Sanitize sheet name for Excel compatibility.

        Excel sheet name rules:
        - Max 31 characters
        - Cannot contain: [ ] : * ? / \\
        - Cannot start or end with '
        """
        name = re.sub(r"[\[\]:*?/\\]", "_", name)
        name = name.strip("'")
        return name[:max_length]

    def unique_sheet_name(self, name: str, used: set, max_length: int = 31) -> str:
        """Sanitized sheet name not yet in used; truncation collisions get a numeric suffix."""
        candidate = self.sanitize_sheet_name(name, max_length)
        n = 2
        while candidate in used:
            suffix = f"~{n}"
            candidate = self.sanitize_sheet_name(name, max_length - len(suffix)) + suffix
            n += 1
        used.add(candidate)
        return candidate

    def export_excel(self, filepath, report: ComparisonReport) -> None:
        """
        Export one comparison to a multi-sheet Excel workbook.

        Sheets: DE_FDR_<t> and Sig_FDR_<t> per threshold, Top_up / Top_down
        (from the loosest threshold), GSEA_<database> per database without
        error, Panels and Panel_Scores (if given), Settings.

        Args:
            filepath: Output Excel file path (.xlsx)
            report: Complete export bundle
        """
        with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
            for alpha, result in sorted(report.de_results.items(), reverse=True):
                table = annotate_results(result.results_df, report.annotation)
                table.to_excel(writer, sheet_name=self.sanitize_sheet_name(f"DE_FDR_{alpha:g}"))

                sig = filter_significant(table, padj_threshold=alpha).sort_values("padj")
                sig.to_excel(writer, sheet_name=self.sanitize_sheet_name(f"Sig_FDR_{alpha:g}"))

            if report.de_results:
                loosest = report.de_results[max(report.de_results)]
                table = annotate_results(loosest.results_df, report.annotation)
                up, down = top_bottom(table, n=report.top_n)
                up.to_excel(writer, sheet_name="Top_up")
                down.to_excel(writer, sheet_name="Top_down")

            used = set(writer.sheets)
            for database, enrichment in report.enrichment.items():
                if enrichment.error is None:
                    enrichment.table.to_excel(
                        writer, sheet_name=self.unique_sheet_name(f"GSEA_{database}", used), index=False
                    )

            if report.panel_summary is not None:
                report.panel_summary.to_excel(writer, sheet_name="Panels", index=False)
            if report.panel_scores is not None and not report.panel_scores.empty:
                report.panel_scores.to_excel(writer, sheet_name="Panel_Scores")

            self._write_settings_sheet(writer, report)
        logger.info(f"Wrote Excel report for {report.name} to {filepath}")

    def _write_settings_sheet(self, writer: pd.ExcelWriter, report: ComparisonReport) -> None:
        """
        Write Settings sheet with analysis metadata.

        Sections: run info, settings, per-threshold DE status, enrichment
        status per database, sample conditions.
        """
        settings_data = [
            ["Parameter", "Value"],
            ["Comparison", report.name],
            ["Analysis Date", datetime.now().strftime("%Y-%m-%d %H:%M:%S")],
            ["Python Version", f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"],
            ["PyDESeq2 Version", getattr(pydeseq2, "__version__", "N/A")],
        ]

        if report.settings:
            settings_data.append(["---", "---"])
            settings_data.append(["Settings", ""])
            for key, value in report.settings.items():
                settings_data.append([key, str(value)])

        if report.de_results:
            settings_data.append(["---", "---"])
            settings_data.append(["DE Results", ""])
            for alpha, result in sorted(report.de_results.items(), reverse=True):
                test, ref = result.comparison
                status = f"{result.n_significant} significant genes ({test} vs {ref})"
                if result.warnings:
                    status += f"; {result.warnings[0]}"
                settings_data.append([f"FDR {alpha:g}", status])

        if report.enrichment:
            settings_data.append(["---", "---"])
            settings_data.append(["Enrichment Status", ""])
            for database, enrichment in report.enrichment.items():
                if enrichment.error:
                    status = f"FAILED ({enrichment.error})"
                else:
                    status = f"SUCCESS ({len(enrichment.table)} gene sets)"
                settings_data.append([database, status])

        if report.sample_conditions:
            settings_data.append(["---", "---"])
            settings_data.append(["Sample Conditions", ""])
            for sample, condition in report.sample_conditions.items():
                settings_data.append([sample, condition])

        settings_df = pd.DataFrame(settings_data)
        settings_df.to_excel(writer, sheet_name="Settings", index=False, header=False)
