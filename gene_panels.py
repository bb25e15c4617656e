"""
Marker gene panels for dissociation artifacts (red-blood-cell loss,
immediate early stress response, adipocyte loss).

Panels are read from config/gene_panels.yaml and evaluated against DE
results (per-gene log2 fold changes) and against expression matrices.
"""

from typing import Dict, List, Optional
from pathlib import Path
import logging
import yaml
import pandas as pd
import numpy as np
import plotly.graph_objects as go

logger = logging.getLogger(__name__)

PANEL_SUMMARY_COLUMNS = ["panel", "n_genes", "n_found", "n_significant", "mean_log2FoldChange", "median_log2FoldChange"]


class GenePanelAnalyzer:
    """
    Evaluate curated marker panels on a comparison.

    Panels include:
    - Red blood cell: hemoglobins and erythroid enzymes
    - Dissociation stress: FOS/JUN family, EGR1, heat shock proteins
    - Adipocyte and stromal vascular markers
    """

    def __init__(self, config_path="config/gene_panels.yaml"):
        self.config_path = config_path
        self.panels, self.descriptions = self.load_panels(config_path)

    def load_panels(self, config_path):
        """
        Load gene panels from YAML configuration file.

        Returns:
            (panels, descriptions): panel name → gene symbols, panel name → description
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Gene panel config not found: {config_path}")

        with open(config_file, "r") as f:
            config = yaml.safe_load(f)

        panels = {}
        descriptions = {}
        for panel_name, panel_info in config["panels"].items():
            panels[panel_name] = [str(g) for g in panel_info["genes"]]
            descriptions[panel_name] = panel_info.get("description", "")
        return panels, descriptions

    def _panel_genes(self, panel_name: str) -> List[str]:
        if panel_name not in self.panels:
            available = ", ".join(self.panels.keys())
            raise ValueError(f"Panel '{panel_name}' not found. Available: {available}")
        return self.panels[panel_name]

    def panel_fold_changes(
        self,
        de_results: pd.DataFrame,
        panel_name: str,
        symbols: Optional[pd.Series] = None,
    ) -> pd.DataFrame:
        """
        DE statistics of the panel genes found in a results table.

        Args:
            de_results: DE results indexed by gene id
            panel_name: Name of panel from config
            symbols: Optional gene id → symbol Series (panels are symbol based)

        Returns:
            DataFrame indexed by symbol with log2FoldChange, padj and the
            shrunken estimate when present, in panel order
        """
        panel_genes = self._panel_genes(panel_name)

        table = de_results.copy()
        if symbols is not None:
            table.index = pd.Index(symbols.reindex(table.index).fillna(pd.Series(table.index, index=table.index)).values)
        table = table[~table.index.duplicated(keep="first")]

        found = [g for g in panel_genes if g in table.index]
        missing = [g for g in panel_genes if g not in table.index]
        if missing:
            logger.warning(f"Panel '{panel_name}': {len(missing)}/{len(panel_genes)} genes not in results: {missing}")

        columns = [c for c in ("baseMean", "log2FoldChange", "log2FoldChange_shrunk", "padj") if c in table.columns]
        out = table.loc[found, columns]
        out.index.name = "gene"
        return out

    def summarize(
        self,
        de_results: pd.DataFrame,
        symbols: Optional[pd.Series] = None,
        padj_threshold: float = 0.05,
    ) -> pd.DataFrame:
        """
        One row per panel: genes found, genes significant, mean and median log2FC.
        """
        rows = []
        for panel_name, genes in self.panels.items():
            fc = self.panel_fold_changes(de_results, panel_name, symbols)
            lfc = fc["log2FoldChange"].dropna()
            rows.append(
                {
                    "panel": panel_name,
                    "n_genes": len(genes),
                    "n_found": len(fc),
                    "n_significant": int((fc["padj"].dropna() < padj_threshold).sum()),
                    "mean_log2FoldChange": lfc.mean() if len(lfc) else np.nan,
                    "median_log2FoldChange": lfc.median() if len(lfc) else np.nan,
                }
            )
        return pd.DataFrame(rows, columns=PANEL_SUMMARY_COLUMNS)

    def score_panel(
        self,
        expression_df: pd.DataFrame,
        panel_name: str,
        sample_conditions: Dict[str, str],
    ) -> Dict[str, float]:
        """
        Calculate panel score per condition using z-score normalization.

        1. z-score each panel gene across all samples
        2. average the z-scores per sample
        3. average the sample scores per condition

        Args:
            expression_df: samples × genes (log2 normalized counts, symbol columns)
            panel_name: Name of panel from config
            sample_conditions: Dict[sample_name → condition_name]

        Returns:
            Dict[condition_name → float score]

        Raises:
            ValueError: If expression_df is None/empty, the panel is unknown,
                or fewer than 2 panel genes are available
        """
        if expression_df is None or expression_df.empty:
            raise ValueError("expression_df cannot be None or empty")

        panel_genes = self._panel_genes(panel_name)
        available_genes = [g for g in panel_genes if g in expression_df.columns]
        if len(available_genes) < 2:
            raise ValueError(
                f"Panel '{panel_name}' has < 2 available genes ({len(available_genes)}/{len(panel_genes)}). "
                f"Cannot compute panel score."
            )

        panel_data = expression_df[available_genes]
        z_scores = (panel_data - panel_data.mean()) / panel_data.std()
        sample_scores = z_scores.mean(axis=1)

        condition_scores = {}
        for condition in sorted(set(sample_conditions.values())):
            samples_in_cond = [s for s, c in sample_conditions.items() if c == condition]
            condition_scores[condition] = float(sample_scores.loc[samples_in_cond].mean())
        return condition_scores

    def plot_panel(self, de_results: pd.DataFrame, panel_name: str, symbols: Optional[pd.Series] = None) -> go.Figure:
        """
        Bar plot of log2 fold change per panel gene, significant genes highlighted.

        Raises:
            ValueError: If none of the panel genes are in the results
        """
        fc = self.panel_fold_changes(de_results, panel_name, symbols)
        if fc.empty:
            raise ValueError(f"Panel '{panel_name}' has no genes available in DE results")

        significant = fc["padj"].fillna(1.0) < 0.05
        fig = go.Figure(
            go.Bar(
                x=fc.index,
                y=fc["log2FoldChange"],
                marker_color=np.where(significant, "#d62728", "#7f7f7f"),
                text=fc["log2FoldChange"].round(2),
                textposition="auto",
                customdata=fc["padj"],
                hovertemplate="%{x}<br>log2FC: %{y:.2f}<br>padj: %{customdata:.2e}<extra></extra>",
            )
        )
        fig.add_hline(y=0, line_color="black", line_width=1)
        fig.update_layout(
            title=f"Gene Panel: {panel_name}",
            xaxis_title="Gene",
            yaxis_title="log2 fold change",
            template="plotly_white",
            height=500,
        )
        return fig
