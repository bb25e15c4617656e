"""
Sample-level QC in PCA space: principal components of a variance-stabilized
matrix and the share of each PC explained by pool / condition.
All plots use Plotly.
"""

from typing import Dict, List, Tuple
import pandas as pd
import numpy as np
import plotly.graph_objects as go
from sklearn.decomposition import PCA


def compute_pca(
    expression: pd.DataFrame,
    n_components: int = 5,
    n_top_genes: int = 500,
) -> Tuple[pd.DataFrame, np.ndarray]:
    """
    PCA of samples over the most variable genes.

    Parameters
    ----------
    expression : pd.DataFrame
        genes × samples (e.g. VST values)
    n_components : int
        Number of components, capped at the number of samples
    n_top_genes : int
        Number of highest-variance genes used

    Returns
    -------
    Tuple[pd.DataFrame, np.ndarray]
        (samples × PC coordinates, explained variance ratio per PC)
    """
    top = expression.var(axis=1).nlargest(min(n_top_genes, len(expression))).index
    data = expression.loc[top].T
    n = min(n_components, data.shape[0], data.shape[1])
    pca = PCA(n_components=n)
    coords = pca.fit_transform(data.values)
    columns = [f"PC{i + 1}" for i in range(n)]
    return pd.DataFrame(coords, index=data.index, columns=columns), pca.explained_variance_ratio_


class AdvancedQC:
    """
    Batch effect assessment: fraction of each PC's variance explained by a
    sample grouping (sequencing pool, condition).
    """

    def assess_batch_effects(self, pca_coords: pd.DataFrame, batch_labels: pd.Series) -> Dict[str, float]:
        """
        Between-group over total sum of squares per PC (one-way ANOVA R²).

        Parameters
        ----------
        pca_coords : pd.DataFrame
            PC columns (PC1, PC2, ...), sample names as index
        batch_labels : pd.Series
            Group of each sample (index must overlap pca_coords)

        Returns
        -------
        Dict[str, float]
            PC name → fraction of variance explained (0-1)
        """
        common = pca_coords.index.intersection(batch_labels.index)
        groups = batch_labels.loc[common].astype(str)
        results = {}
        for pc in [c for c in pca_coords.columns if c.startswith("PC")]:
            values = pca_coords.loc[common, pc]
            centered = values - values.mean()
            ss_total = float((centered ** 2).sum())
            group_means = values.groupby(groups).transform("mean")
            ss_between = float(((group_means - values.mean()) ** 2).sum())
            results[pc] = ss_between / ss_total if ss_total > 0 else 0.0
        return results

    def batch_effect_table(self, pca_coords: pd.DataFrame, metadata: pd.DataFrame, variables: List[str]) -> pd.DataFrame:
        """PCs × variables table of explained variance fractions."""
        table = {
            var: self.assess_batch_effects(pca_coords, metadata[var])
            for var in variables
            if var in metadata.columns and metadata[var].nunique() > 1
        }
        return pd.DataFrame(table)

    def create_batch_effect_plot(self, table: pd.DataFrame) -> go.Figure:
        """
        Grouped bar chart of variance explained per PC, one bar group per variable.

        Parameters
        ----------
        table : pd.DataFrame
            Output of batch_effect_table

        Returns
        -------
        go.Figure
        """
        fig = go.Figure()
        for var in table.columns:
            values = table[var] * 100
            fig.add_trace(
                go.Bar(
                    x=table.index,
                    y=values,
                    name=var,
                    text=[f"{v:.1f}%" for v in values],
                    textposition="auto",
                    hovertemplate="%{x}: %{y:.1f}% explained by " + var + "<extra></extra>",
                )
            )

        fig.add_hline(
            y=30, line_dash="dash", line_color="red",
            annotation_text="Concerning threshold (30%)",
            annotation_position="top right",
        )
        fig.update_layout(
            title="Variance Explained per PC",
            xaxis_title="Principal Component",
            yaxis_title="Variance Explained (%)",
            yaxis=dict(range=[0, 100]),
            barmode="group",
        )
        return fig
