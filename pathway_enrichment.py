"""
Gene Set Enrichment Analysis Module

Runs preranked GSEA (GSEApy prerank) on log2 fold changes of significant
genes, against named Enrichr libraries and local GMT files.

Classes:
    PathwayEnrichment: Ranked-list preparation, GSEA and result standardization
    EnrichmentResult: One database's standardized table plus an error message
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union
import logging
import gseapy as gp
import pandas as pd
import numpy as np

logger = logging.getLogger(__name__)

GSEA_COLUMNS = ["term", "description", "nes", "es", "pvalue", "fdr", "set_size", "lead_genes"]


@dataclass
class EnrichmentResult:
    """Standardized GSEA output of one gene set database."""

    database: str
    table: pd.DataFrame  # GSEA_COLUMNS, sorted by NES descending
    error: Optional[str] = None


def read_gmt(path) -> Tuple[Dict[str, List[str]], Dict[str, str]]:
    """
    Read a GMT gene set file.

    Each line: set name, description, then member genes, tab separated.
    gseapy.read_gmt returns only name → genes and drops the description
    field, which the GSEA tables report next to each term.

    Returns:
        (gene_sets, descriptions): name → genes and name → description
    """
    gene_sets: Dict[str, List[str]] = {}
    descriptions: Dict[str, str] = {}
    with open(path, "r") as f:
        for line_no, line in enumerate(f, start=1):
            fields = line.rstrip("\n").split("\t")
            if len(fields) < 3:
                if line.strip():
                    logger.warning(f"{path}:{line_no}: skipping gene set line with fewer than 3 fields")
                continue
            name = fields[0]
            gene_sets[name] = [g for g in fields[2:] if g]
            descriptions[name] = fields[1]
    logger.info(f"Read {len(gene_sets)} gene sets from {path}")
    return gene_sets, descriptions


def top_bottom_by_nes(table: pd.DataFrame, n: int = 20) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """(n most positively enriched sets, n most negatively enriched sets)."""
    df = table.dropna(subset=["nes"])
    return df.nlargest(n, "nes"), df.nsmallest(n, "nes")


def _set_size(tag_percent: pd.Series) -> pd.Series:
    # "12/45" → 45 (genes of the set present in the ranking)
    return pd.to_numeric(tag_percent.astype(str).str.split("/").str[-1], errors="coerce")


class PathwayEnrichment:
    """
    Preranked GSEA over one or more gene set databases.

    Supports:
    - Ranked list preparation from DE results (significance filtered, deduplicated)
    - Named Enrichr libraries and local GMT files
    - Graceful handling of databases that cannot be downloaded
    """

    def __init__(
        self,
        min_size: int = 15,
        max_size: int = 500,
        permutation_num: int = 1000,
        seed: int = 42,
        threads: int = 1,
    ):
        self.min_size = min_size
        self.max_size = max_size
        self.permutation_num = permutation_num
        self.seed = seed
        self.threads = threads

    def build_ranked_list(
        self,
        de_results: pd.DataFrame,
        padj_threshold: float = 0.05,
        symbols: Optional[pd.Series] = None,
    ) -> pd.DataFrame:
        """
        Prepare the two-column ranking input for GSEA.

        Rules:
        1. Drop genes with a missing padj or log2FoldChange
        2. Keep padj < padj_threshold
        3. Map gene ids to symbols (when a mapping is given)
        4. Deduplicate symbols, keeping the largest |log2FoldChange|
        5. Sort by log2FoldChange descending

        Args:
            de_results: DE results indexed by gene id
            padj_threshold: Adjusted p-value threshold
            symbols: Optional gene id → symbol Series

        Returns:
            DataFrame with columns gene, log2FoldChange
        """
        df = de_results.dropna(subset=["padj", "log2FoldChange"])
        df = df[df["padj"] < padj_threshold]

        genes = df.index.to_series()
        if symbols is not None:
            genes = genes.map(symbols).fillna(genes)

        ranked = pd.DataFrame(
            {"gene": genes.astype(str).values, "log2FoldChange": df["log2FoldChange"].values}
        )
        ranked["_abs"] = ranked["log2FoldChange"].abs()
        ranked = (
            ranked.sort_values("_abs", ascending=False, kind="mergesort")
            .drop_duplicates(subset="gene", keep="first")
            .drop(columns="_abs")
            .sort_values("log2FoldChange", ascending=False, kind="mergesort")
            .reset_index(drop=True)
        )
        logger.info(f"Ranked list: {len(ranked)} genes (padj < {padj_threshold})")
        return ranked

    def run_gsea(
        self,
        ranked: pd.DataFrame,
        gene_sets: Union[str, Dict[str, List[str]]],
        descriptions: Optional[Dict[str, str]] = None,
    ) -> pd.DataFrame:
        """
        Run GSEApy prerank and standardize its result table.

        Args:
            ranked: Output of build_ranked_list
            gene_sets: Enrichr library name or a name → genes dict
            descriptions: Optional set name → description

        Returns:
            DataFrame with columns GSEA_COLUMNS, sorted by NES descending
        """
        if ranked.empty:
            raise ValueError("Ranked gene list is empty")

        pre_res = gp.prerank(
            rnk=ranked[["gene", "log2FoldChange"]],
            gene_sets=gene_sets,
            threads=self.threads,
            min_size=self.min_size,
            max_size=self.max_size,
            permutation_num=self.permutation_num,
            seed=self.seed,
            outdir=None,  # Don't save to disk
            verbose=False,
        )
        return self.format_results(pre_res.res2d, descriptions)

    def format_results(self, res2d: pd.DataFrame, descriptions: Optional[Dict[str, str]] = None) -> pd.DataFrame:
        """
        Standardize a GSEApy prerank res2d table.

        Args:
            res2d: GSEApy result table (Term, ES, NES, NOM p-val, FDR q-val, Tag %, Lead_genes)
            descriptions: Optional set name → description

        Returns:
            DataFrame with columns GSEA_COLUMNS, sorted by NES descending
        """
        if res2d is None or len(res2d) == 0:
            return pd.DataFrame(columns=GSEA_COLUMNS)

        terms = res2d["Term"].astype(str)
        descriptions = descriptions or {}

        if "matched_size" in res2d.columns:
            set_size = pd.to_numeric(res2d["matched_size"], errors="coerce")
        elif "geneset_size" in res2d.columns:
            set_size = pd.to_numeric(res2d["geneset_size"], errors="coerce")
        else:
            set_size = _set_size(res2d["Tag %"])

        table = pd.DataFrame(
            {
                "term": terms.values,
                "description": [descriptions.get(t, t) for t in terms],
                "nes": pd.to_numeric(res2d["NES"], errors="coerce").values,
                "es": pd.to_numeric(res2d["ES"], errors="coerce").values,
                "pvalue": pd.to_numeric(res2d["NOM p-val"], errors="coerce").values,
                "fdr": pd.to_numeric(res2d["FDR q-val"], errors="coerce").values,
                "set_size": set_size.values,
                "lead_genes": res2d["Lead_genes"].astype(str).values,
            }
        )
        return table.sort_values("nes", ascending=False, kind="mergesort").reset_index(drop=True)

    def run_all_databases(
        self,
        ranked: pd.DataFrame,
        databases: List[str] = (),
        gmt_files: List[Path] = (),
    ) -> Dict[str, EnrichmentResult]:
        """
        Run GSEA against every configured database.

        A database that fails (download error, no set within the size limits)
        yields an empty table and an error message instead of aborting.

        Returns:
            database name (library name or GMT file stem) → EnrichmentResult
        """
        jobs = [(name, name, None) for name in databases]
        for path in gmt_files:
            sets, descriptions = read_gmt(path)
            jobs.append((Path(path).stem, sets, descriptions))

        results = {}
        for name, gene_sets, descriptions in jobs:
            try:
                table = self.run_gsea(ranked, gene_sets, descriptions)
                results[name] = EnrichmentResult(name, table)
                logger.info(f"GSEA {name}: {len(table)} gene sets scored")
            except Exception as e:
                error_msg = f"GSEA against {name} failed (possibly offline): {str(e)}"
                logger.warning(error_msg)
                results[name] = EnrichmentResult(name, pd.DataFrame(columns=GSEA_COLUMNS), error_msg)
        return results
