"""
Differential expression analysis using PyDESeq2.

Implements "fit once, contrast many": one fitted DeseqDataSet serves every
FDR threshold (and every contrast) of a comparison.

Counts enter this module as genes × samples (the orientation used across
the pipelines) and are transposed to the samples × genes layout PyDESeq2
expects.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import pandas as pd
import numpy as np
import statsmodels.api as sm
from scipy import stats
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import PerfectSeparationError
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats
from pydeseq2.default_inference import DefaultInference

from count_loader import check_gene_order
from matrix_assembler import check_metadata_alignment

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "baseMean",
    "log2FoldChange",
    "lfcSE",
    "stat",
    "pvalue",
    "padj",
    "log2FoldChange_shrunk",
]
LN2 = np.log(2.0)


@dataclass
class FittedModel:
    """A fitted DESeq2 model plus what downstream steps need from it."""

    dds: DeseqDataSet
    design_factor: str
    reference: str
    counts: pd.DataFrame  # genes × samples, as fitted
    normalized_counts: pd.DataFrame  # genes × samples
    size_factors: pd.Series
    dispersions: pd.Series
    normalization_factors: Optional[pd.DataFrame] = None  # genes × samples, fixed


@dataclass
class DEResult:
    """Result of one contrast at one FDR threshold."""

    results_df: pd.DataFrame  # indexed by gene id, columns RESULT_COLUMNS
    comparison: Tuple[str, str]  # (test_condition, reference_condition)
    alpha: float  # FDR threshold the test was run at
    n_significant: int  # padj < alpha
    shrunk: bool  # log2FoldChange_shrunk populated
    warnings: List[str] = field(default_factory=list)


def design_formula(design_factor: str, covariates: Sequence[str] = ()) -> str:
    """Wilkinson formula with the comparison of interest as the last term."""
    terms = [c for c in covariates if c != design_factor] + [design_factor]
    return "~" + " + ".join(terms)


def prepare_metadata(
    metadata: pd.DataFrame,
    design_factor: str,
    reference: str,
    covariates: Sequence[str] = (),
) -> pd.DataFrame:
    """
    Relevel the design factor so that reference is the first (base) level.

    Raises:
        ValueError: If a design column is missing, has missing values, or
            the reference level is absent
    """
    for column in [design_factor, *covariates]:
        if column not in metadata.columns:
            raise ValueError(f"Design variable '{column}' not in metadata")
        if metadata[column].isna().any():
            raise ValueError(f"Design variable '{column}' has missing values")

    levels = sorted(metadata[design_factor].astype(str).unique())
    if reference not in levels:
        raise ValueError(f"Reference level '{reference}' not found in '{design_factor}' (levels: {levels})")
    if len(levels) < 2:
        raise ValueError(f"'{design_factor}' needs at least 2 levels, got {levels}")

    meta = metadata.copy()
    ordered = [reference] + [lvl for lvl in levels if lvl != reference]
    meta[design_factor] = pd.Categorical(meta[design_factor].astype(str), categories=ordered)
    for column in covariates:
        if column != design_factor:
            meta[column] = meta[column].astype(str)
    return meta


def _level_column(columns: Sequence[str], factor: str, level: str) -> Optional[str]:
    """Design-matrix column coding factor == level (formulaic or legacy naming)."""
    for col in columns:
        if col == f"{factor}[T.{level}]" or col.startswith(f"{factor}_{level}_vs_"):
            return col
    return None


def contrast_vector(columns: Sequence[str], factor: str, test: str, reference: str) -> np.ndarray:
    """Vector c such that c·beta is the log fold change of test over reference."""
    test_col = _level_column(columns, factor, test)
    ref_col = _level_column(columns, factor, reference)
    if test_col is None and ref_col is None:
        raise ValueError(
            f"Cannot locate '{factor}' levels '{test}'/'{reference}' in design columns {list(columns)}"
        )
    c = np.zeros(len(columns))
    if test_col is not None:
        c[list(columns).index(test_col)] += 1.0
    if ref_col is not None:
        c[list(columns).index(ref_col)] -= 1.0
    return c


def _shrinkage_coefficient(
    columns: Sequence[str], factor: str, test: str, reference: str
) -> Tuple[Optional[str], float]:
    """LFC column to shrink for test vs reference, and the sign to apply."""
    col = _level_column(columns, factor, test)
    if col is not None:
        return col, 1.0
    col = _level_column(columns, factor, reference)
    if col is not None:
        # two-level factor coded the other way round; the prior is symmetric
        return col, -1.0
    return None, 1.0


class DEAnalysisEngine:
    """Differential expression analysis using PyDESeq2."""

    def __init__(self, n_cpus: Optional[int] = None):
        self.inference = DefaultInference(n_cpus=n_cpus)

    def fit_model(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        design_factor: str = "condition",
        reference: str = "chunk",
        covariates: Sequence[str] = (),
        normalization_factors: Optional[pd.DataFrame] = None,
    ) -> FittedModel:
        """
        Fit the DESeq2 model ONCE.

        Args:
            counts: genes × samples integer counts (already low-count filtered)
            metadata: samples × variables, rows in the same order as counts columns
            design_factor: Column with the comparison of interest
            reference: Level of design_factor used as the statistical reference
            covariates: Additional design terms (e.g. ["pool"])
            normalization_factors: Optional genes × samples fixed factors
                (geometric mean 1 per gene); when given, Wald tests are
                refit with these as a per-observation offset

        Returns:
            FittedModel

        Raises:
            ValueError: On misaligned inputs; PyDESeq2 errors propagate
        """
        check_metadata_alignment(counts, metadata)
        meta = prepare_metadata(metadata, design_factor, reference, covariates)

        if normalization_factors is not None:
            check_gene_order(counts.index, normalization_factors.index, "counts and normalization factors")
            if list(normalization_factors.columns) != list(counts.columns):
                raise ValueError("Normalization factor columns must match count matrix columns")
            if not np.isfinite(normalization_factors.to_numpy()).all() or (normalization_factors <= 0).any(axis=None):
                raise ValueError("Normalization factors must be finite and positive")

        formula = design_formula(design_factor, covariates)
        logger.info(
            f"Fitting DESeq2 model {formula} on {counts.shape[0]} genes × {counts.shape[1]} samples "
            f"(reference: {reference})"
        )

        dds = DeseqDataSet(
            counts=counts.T.astype(np.int64),  # samples × genes
            metadata=meta,
            design=formula,
            refit_cooks=True,
            inference=self.inference,
            quiet=True,
        )
        dds.deseq2()

        genes = pd.Index(dds.var_names, name=counts.index.name)
        samples = pd.Index(dds.obs_names)
        size_factors = pd.Series(np.asarray(dds.obs["size_factors"]), index=samples, name="size_factor")
        dispersions = pd.Series(np.asarray(dds.var["dispersions"]).copy(), index=genes, name="dispersion")

        if normalization_factors is None:
            normalized = pd.DataFrame(np.asarray(dds.layers["normed_counts"]), index=samples, columns=genes).T
        else:
            normalized = counts / normalization_factors

        return FittedModel(
            dds=dds,
            design_factor=design_factor,
            reference=reference,
            counts=counts,
            normalized_counts=normalized,
            size_factors=size_factors,
            dispersions=dispersions,
            normalization_factors=normalization_factors,
        )

    def get_comparison(
        self,
        model: FittedModel,
        test_condition: str,
        alpha: float = 0.1,
        shrink: bool = True,
    ) -> DEResult:
        """
        Compute one contrast (test vs the model's reference) at one FDR threshold.

        Args:
            model: Output of fit_model
            test_condition: Level compared against model.reference
            alpha: FDR threshold (also drives PyDESeq2 independent filtering)
            shrink: Add apeGLM-shrunk log2 fold changes (size-factor models only)

        Returns:
            DEResult
        """
        comparison = (test_condition, model.reference)
        notes: List[str] = []

        if model.normalization_factors is None:
            results, shrunk = self._wald_deseq2(model, test_condition, alpha, shrink, notes)
        else:
            results = self._wald_with_offsets(model, test_condition)
            shrunk = False
            if shrink:
                note = "LFC shrinkage is not available with normalization factors; log2FoldChange_shrunk left empty"
                logger.warning(note)
                notes.append(note)

        results = results.reindex(columns=RESULT_COLUMNS)
        results.index.name = model.counts.index.name or "gene_id"
        n_sig = int((results["padj"] < alpha).sum())
        logger.info(
            f"{test_condition} vs {model.reference} (FDR {alpha}): {n_sig} significant of {len(results)} genes"
        )

        return DEResult(
            results_df=results,
            comparison=comparison,
            alpha=alpha,
            n_significant=n_sig,
            shrunk=shrunk,
            warnings=notes,
        )

    def _wald_deseq2(
        self, model: FittedModel, test: str, alpha: float, shrink: bool, notes: List[str]
    ) -> Tuple[pd.DataFrame, bool]:
        factor, ref = model.design_factor, model.reference
        stat_res = DeseqStats(
            model.dds,
            contrast=[factor, test, ref],
            alpha=alpha,
            inference=self.inference,
            quiet=True,
        )
        stat_res.summary()
        results = stat_res.results_df.copy()

        if not shrink:
            return results, False

        columns = list(model.dds.varm["LFC"].columns)
        coeff, sign = _shrinkage_coefficient(columns, factor, test, ref)
        if coeff is None:
            note = f"No LFC coefficient for {factor} {test} vs {ref} among {columns}; shrinkage skipped"
            logger.warning(note)
            notes.append(note)
            return results, False

        stat_res.lfc_shrink(coeff=coeff)
        results["log2FoldChange_shrunk"] = sign * stat_res.results_df["log2FoldChange"]
        return results, True

    def _wald_with_offsets(self, model: FittedModel, test: str) -> pd.DataFrame:
        """
        Per-gene negative binomial GLM with log(normalization factor) as a
        fixed offset, using the PyDESeq2 MAP dispersions.
        """
        design = model.dds.obsm["design_matrix"]
        design = design if isinstance(design, pd.DataFrame) else pd.DataFrame(design)
        columns = [str(c) for c in design.columns]
        c = contrast_vector(columns, model.design_factor, test, model.reference)
        X = design.to_numpy(dtype=float)

        counts = model.counts
        log_nf = np.log(model.normalization_factors.to_numpy(dtype=float))
        values = counts.to_numpy(dtype=float)

        n_genes = counts.shape[0]
        lfc = np.full(n_genes, np.nan)
        se = np.full(n_genes, np.nan)
        for i, gene in enumerate(counts.index):
            family = sm.families.NegativeBinomial(alpha=max(float(model.dispersions[gene]), 1e-8))
            try:
                fit = sm.GLM(values[i], X, family=family, offset=log_nf[i]).fit()
            except (ValueError, RuntimeError, np.linalg.LinAlgError, PerfectSeparationError) as e:
                logger.warning(f"Offset GLM failed for {gene}: {e}")
                continue
            beta = np.asarray(fit.params)
            cov = np.asarray(fit.cov_params())
            lfc[i] = c @ beta
            se[i] = np.sqrt(c @ cov @ c)

        stat = lfc / se
        pvalue = 2 * stats.norm.sf(np.abs(stat))
        padj = np.full(n_genes, np.nan)
        tested = ~np.isnan(pvalue)
        if tested.any():
            padj[tested] = multipletests(pvalue[tested], method="fdr_bh")[1]

        return pd.DataFrame(
            {
                "baseMean": model.normalized_counts.mean(axis=1).to_numpy(),
                "log2FoldChange": lfc / LN2,
                "lfcSE": se / LN2,
                "stat": stat,
                "pvalue": pvalue,
                "padj": padj,
            },
            index=counts.index,
        )

    def run_thresholds(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        test_condition: str,
        reference: str,
        design_factor: str = "condition",
        covariates: Sequence[str] = (),
        fdr_thresholds: Sequence[float] = (0.1, 0.05),
        normalization_factors: Optional[pd.DataFrame] = None,
        shrink: bool = True,
    ) -> Tuple[FittedModel, Dict[float, DEResult]]:
        """
        Main entry point: fit once, test the contrast at every FDR threshold.

        Returns:
            (model, {alpha: DEResult})
        """
        try:
            model = self.fit_model(
                counts,
                metadata,
                design_factor=design_factor,
                reference=reference,
                covariates=covariates,
                normalization_factors=normalization_factors,
            )
        except (ValueError, RuntimeError, TypeError) as e:
            logger.error(f"DE analysis model fit failed: {str(e)}", exc_info=True)
            raise

        results = {}
        for alpha in fdr_thresholds:
            results[alpha] = self.get_comparison(model, test_condition, alpha=alpha, shrink=shrink)
        return model, results


def variance_stabilize(model: FittedModel) -> pd.DataFrame:
    """
    Variance-stabilizing transform of the fitted counts (blind to the design).

    Call after all contrasts have been computed.

    Returns:
        genes × samples DataFrame
    """
    dds = model.dds
    dds.vst(use_design=False)
    return pd.DataFrame(
        np.asarray(dds.layers["vst_counts"]),
        index=dds.obs_names,
        columns=model.counts.index,
    ).T


def filter_significant(
    results_df: pd.DataFrame,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 0.0,
) -> pd.DataFrame:
    """
    Filter DE results to significant genes.

    Genes with a missing padj (independently filtered or untestable) are
    excluded. Stricter thresholds always return a subset of looser ones.

    Args:
        results_df: DE results DataFrame
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        lfc_threshold: Absolute log2 fold change threshold (default: 0, off)

    Returns:
        Filtered DataFrame with significant genes only
    """
    df = results_df.dropna(subset=["padj", "log2FoldChange"])
    mask = df["padj"] < padj_threshold
    if lfc_threshold > 0:
        mask &= df["log2FoldChange"].abs() > lfc_threshold
    return df[mask].copy()


def top_bottom(
    results_df: pd.DataFrame, n: int = 20, column: str = "log2FoldChange"
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """(top n by column descending, bottom n by column ascending), NaN excluded."""
    df = results_df.dropna(subset=[column])
    return df.nlargest(n, column), df.nsmallest(n, column)
