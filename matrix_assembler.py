"""Combining real-sample and pseudobulk count matrices, with matched sample metadata."""

from typing import Dict, Optional, Sequence, Tuple
import logging
import pandas as pd
import numpy as np

from count_loader import check_gene_order
from pipeline_config import SampleSpec
from pipeline_errors import GeneOrderMismatchError

logger = logging.getLogger(__name__)

METADATA_COLUMNS = ["sample_id", "condition", "pool"]


def read_pseudobulk(path) -> pd.DataFrame:
    """
    Read a pseudobulk count matrix (genes × samples, tab separated, gene ids in
    the first column).

    Returns:
        genes × samples int64 DataFrame
    """
    matrix = pd.read_csv(path, sep="\t", index_col=0)
    matrix.index = matrix.index.astype(str)
    matrix.index.name = "gene_id"

    non_integer = (matrix.round() != matrix).any(axis=None)
    if matrix.isna().any(axis=None) or non_integer:
        raise ValueError(f"Pseudobulk matrix {path} must contain non-missing integer counts")
    return matrix.astype(np.int64)


def aggregate_pseudobulk(cell_counts: pd.DataFrame, cell_to_sample: pd.Series) -> pd.DataFrame:
    """
    Sum single-cell counts into one profile per sample.

    Args:
        cell_counts: genes × cells DataFrame of raw counts
        cell_to_sample: Series mapping cell barcode → sample id

    Returns:
        genes × samples int64 DataFrame (samples in order of first appearance)
    """
    unassigned = cell_counts.columns.difference(cell_to_sample.index)
    if len(unassigned) > 0:
        logger.warning(f"{len(unassigned)} cells have no sample assignment and are ignored")

    assigned = cell_counts.columns.intersection(cell_to_sample.index, sort=False)
    labels = cell_to_sample.loc[assigned]
    summed = cell_counts[assigned].T.groupby(labels.values, sort=False).sum().T
    summed.index.name = cell_counts.index.name
    logger.info(f"Aggregated {len(assigned)} cells into {summed.shape[1]} pseudobulk samples")
    return summed.astype(np.int64)


def restrict_to_shared_genes(
    real: pd.DataFrame, pseudo: pd.DataFrame
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Keep only genes present in both matrices, both sorted by gene id.

    This is the caller-side pre-filter that combine_counts expects.
    """
    shared = real.index.intersection(pseudo.index)
    if len(shared) == 0:
        raise GeneOrderMismatchError("No shared genes between real and pseudobulk matrices. Cannot combine.")

    shared_sorted = shared.sort_values()
    dropped_real = len(real) - len(shared)
    dropped_pseudo = len(pseudo) - len(shared)
    if dropped_real or dropped_pseudo:
        logger.warning(
            f"Kept {len(shared)} shared genes; dropped {dropped_real} real-only "
            f"and {dropped_pseudo} pseudobulk-only genes"
        )
    return real.loc[shared_sorted], pseudo.loc[shared_sorted]


def combine_counts(real: pd.DataFrame, pseudo: pd.DataFrame) -> pd.DataFrame:
    """
    Concatenate two genes × samples matrices along the sample axis.

    Both inputs must already list identical genes in identical order (use
    restrict_to_shared_genes first) and must not share sample ids.

    Raises:
        GeneOrderMismatchError: If gene orders differ
        ValueError: If sample ids overlap
    """
    check_gene_order(real.index, pseudo.index, "real and pseudobulk matrices")

    overlap = real.columns.intersection(pseudo.columns)
    if len(overlap) > 0:
        raise ValueError(f"Sample ids present in both matrices: {list(overlap)}")

    combined = pd.concat([real, pseudo], axis=1)
    logger.info(
        f"Combined matrix: {combined.shape[0]} genes × {combined.shape[1]} samples "
        f"({real.shape[1]} real + {pseudo.shape[1]} pseudobulk)"
    )
    return combined.astype(np.int64)


def build_sample_metadata(
    samples: Sequence[SampleSpec], condition: Optional[str] = None
) -> pd.DataFrame:
    """
    One metadata row per sample, indexed by sample id.

    Args:
        samples: Sample descriptors, in count-matrix column order
        condition: If given, stamped on every row instead of each sample's own condition
    """
    rows = [
        {
            "sample_id": s.id,
            "condition": condition if condition is not None else s.condition,
            "pool": s.pool,
        }
        for s in samples
    ]
    metadata = pd.DataFrame(rows, columns=METADATA_COLUMNS)
    metadata.index = pd.Index(metadata["sample_id"].values, name="sample")
    return metadata


def combine_metadata(*parts: pd.DataFrame) -> pd.DataFrame:
    """Concatenate per-source metadata tables (order preserved)."""
    combined = pd.concat(parts, axis=0)
    if not combined.index.is_unique:
        dup = combined.index[combined.index.duplicated()].tolist()
        raise ValueError(f"Duplicate sample ids in metadata: {dup}")
    return combined


def check_metadata_alignment(counts: pd.DataFrame, metadata: pd.DataFrame) -> None:
    """
    Enforce that count-matrix columns and metadata rows are the same samples
    in the same order.

    Raises:
        ValueError: On any mismatch
    """
    if list(counts.columns) != list(metadata.index):
        raise ValueError(
            "Count matrix columns and metadata rows are not aligned. "
            f"Columns: {list(counts.columns)[:5]}... Metadata: {list(metadata.index)[:5]}..."
        )


def sample_conditions(metadata: pd.DataFrame) -> Dict[str, str]:
    """sample id → condition mapping used by the plotting functions."""
    return metadata["condition"].astype(str).to_dict()
