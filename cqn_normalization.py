"""
GC-content and length aware normalization (conditional quantile normalization).

Offsets are estimated from the count matrix and the per-gene covariates
only; the experimental condition never enters the fit. The resulting
per-gene, per-sample normalization factors are passed to the
differential-expression model as fixed values.

Steps:
1. y = log2(count + 0.5) - log2(library_size / 1e6)
2. per sample, median quantile regression of y on B-spline bases of GC
   content and log2 gene length (kb)
3. quantile-normalize the residuals across samples
4. offset = y_normalized - y (log2), glm_offset on the natural log scale
5. normalization factors = exp(glm_offset), scaled to geometric mean 1 per gene
"""

from dataclasses import dataclass
from typing import Dict
import logging
import warnings
import pandas as pd
import numpy as np
import statsmodels.formula.api as smf

from count_loader import check_gene_order

logger = logging.getLogger(__name__)

PSEUDOCOUNT = 0.5
SPLINE_DF = 5
CQN_FORMULA = f"y ~ bs(gc, df={SPLINE_DF}) + bs(log_length, df={SPLINE_DF})"


@dataclass
class CQNResult:
    """Output of run_cqn. All frames are genes × samples."""

    y: pd.DataFrame  # log2 reads per million (with pseudocount)
    offset: pd.DataFrame  # log2 correction; y + offset is the normalized value
    glm_offset: pd.DataFrame  # natural-log offset for a count GLM
    normalization_factors: pd.DataFrame  # exp(glm_offset), geometric mean 1 per gene
    fitted: pd.DataFrame  # per-sample systematic GC/length effect
    library_size: pd.Series

    @property
    def normalized(self) -> pd.DataFrame:
        return self.y + self.offset


def quantile_normalize(values: np.ndarray) -> np.ndarray:
    """Give every column the same distribution (mean of the sorted columns)."""
    order = np.argsort(values, axis=0, kind="mergesort")
    ranks = np.empty_like(order)
    rows = np.arange(values.shape[0])
    for j in range(values.shape[1]):
        ranks[order[:, j], j] = rows
    reference = np.sort(values, axis=0).mean(axis=1)
    return reference[ranks]


def _prepare_covariates(annotation: pd.DataFrame) -> pd.DataFrame:
    gc = annotation["gc_content"].astype(float)
    if gc.max() > 1.0:
        logger.warning("GC content looks like a percentage; converting to a fraction")
        gc = gc / 100.0
    length = annotation["length"].astype(float)
    if (length <= 0).any():
        raise ValueError("Gene lengths must be positive")
    return pd.DataFrame(
        {"gc": gc.values, "log_length": np.log2(length.values / 1000.0)},
        index=annotation.index,
    )


def _fit_sample(y: np.ndarray, covariates: pd.DataFrame) -> np.ndarray:
    data = covariates.assign(y=y)
    with warnings.catch_warnings():
        # QuantReg warns on slow convergence; the fit is still usable
        warnings.simplefilter("ignore")
        fit = smf.quantreg(CQN_FORMULA, data).fit(q=0.5, max_iter=5000)
    return np.asarray(fit.fittedvalues)


def run_cqn(counts: pd.DataFrame, annotation: pd.DataFrame) -> CQNResult:
    """
    Fit GC/length offsets and derive per-gene-per-sample normalization factors.

    Args:
        counts: genes × samples count matrix (already low-count filtered)
        annotation: Gene-indexed table with gc_content and length, in the
            same gene order as counts (see gene_annotation.align_annotation)

    Returns:
        CQNResult

    Raises:
        GeneOrderMismatchError: If counts and annotation are not aligned
    """
    check_gene_order(counts.index, annotation.index, "count matrix and annotation")
    if counts.shape[0] < 2 * SPLINE_DF + 1:
        raise ValueError(
            f"Need at least {2 * SPLINE_DF + 1} genes to fit the GC/length model, got {counts.shape[0]}"
        )

    covariates = _prepare_covariates(annotation)
    values = counts.to_numpy(dtype=float)

    library_size = values.sum(axis=0)
    if (library_size <= 0).any():
        raise ValueError("Every sample needs a positive library size")
    log_lib = np.log2(library_size / 1e6)

    y = np.log2(values + PSEUDOCOUNT) - log_lib[np.newaxis, :]

    fitted = np.empty_like(y)
    for j, sample in enumerate(counts.columns):
        fitted[:, j] = _fit_sample(y[:, j], covariates)
        logger.info(f"CQN: fitted GC/length effect for sample {sample}")

    residuals = y - fitted
    residuals_qn = quantile_normalize(residuals)
    y_norm = residuals_qn + fitted.mean(axis=1, keepdims=True)

    offset = y_norm - y
    glm_offset = np.log(2.0) * (log_lib[np.newaxis, :] - offset)
    # exp(x - rowmean(x)) has geometric mean exactly 1 across samples
    norm_factors = np.exp(glm_offset - glm_offset.mean(axis=1, keepdims=True))

    def frame(a: np.ndarray) -> pd.DataFrame:
        return pd.DataFrame(a, index=counts.index, columns=counts.columns)

    logger.info(f"CQN: normalization factors for {counts.shape[0]} genes × {counts.shape[1]} samples")
    return CQNResult(
        y=frame(y),
        offset=frame(offset),
        glm_offset=frame(glm_offset),
        normalization_factors=frame(norm_factors),
        fitted=frame(fitted),
        library_size=pd.Series(library_size, index=counts.columns, name="library_size"),
    )


def summarize_fits(result: CQNResult, annotation: pd.DataFrame, n_bins: int = 20) -> Dict[str, pd.DataFrame]:
    """
    Binned systematic effects per sample, for plotting the fitted GC and
    length curves.

    Returns:
        {"gc": bins × samples, "length": bins × samples} mean fitted values
    """
    out = {}
    for key, column in (("gc", "gc_content"), ("length", "length")):
        values = annotation[column].astype(float)
        if key == "length":
            values = np.log2(values / 1000.0)
        bins = pd.qcut(values, q=n_bins, duplicates="drop")
        out[key] = result.fitted.groupby(bins.values, observed=True).mean()
    return out
