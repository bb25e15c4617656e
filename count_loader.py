"""
Loading of per-sample gene count files into a single count matrix.

Count files are STAR ReadsPerGene tables: tab separated, no header, columns
gene id, unstranded count, strand-1 count, strand-2 count. The first four
rows are mapping statistics (N_unmapped, N_multimapping, N_noFeature,
N_ambiguous) and are split off from the gene counts.

Canonical output of this module: genes × samples integer DataFrame.
"""

from pathlib import Path
from typing import Dict, List, Tuple
import logging
import re
import pandas as pd
import numpy as np

from pipeline_errors import CountFileMismatchError, GeneOrderMismatchError

logger = logging.getLogger(__name__)

COUNT_FILE_COLUMNS = ["gene_id", "unstranded", "strand_1", "strand_2"]
PREAMBLE_ROWS = 4
PREAMBLE_PREFIX = "N_"
GENE_VERSION_PATTERN = re.compile(r"\.\d+$")


def read_count_file(path, column: str = "unstranded") -> Tuple[pd.Series, pd.Series]:
    """
    Read one per-sample count file.

    Args:
        path: Path to a ReadsPerGene-style file
        column: Which count column to keep (default: unstranded)

    Returns:
        (counts, preamble): gene-indexed int64 Series and the four mapping
        statistics rows as an int64 Series

    Raises:
        CountFileMismatchError: If the file does not have the expected layout
    """
    path = Path(path)
    try:
        table = pd.read_csv(
            path,
            sep="\t",
            header=None,
            names=COUNT_FILE_COLUMNS,
            dtype={"gene_id": str},
        )
    except pd.errors.EmptyDataError as e:
        raise CountFileMismatchError(f"Count file {path} is empty", {"path": str(path)}) from e

    if len(table) < PREAMBLE_ROWS:
        raise CountFileMismatchError(
            f"Count file {path} has {len(table)} rows, expected a {PREAMBLE_ROWS}-row preamble plus genes",
            {"path": str(path)},
        )

    preamble = table.iloc[:PREAMBLE_ROWS]
    bad_rows = [g for g in preamble["gene_id"] if not str(g).startswith(PREAMBLE_PREFIX)]
    if bad_rows:
        raise CountFileMismatchError(
            f"Count file {path} does not start with the {PREAMBLE_ROWS} mapping statistics rows. "
            f"Unexpected rows: {bad_rows}",
            {"path": str(path), "rows": bad_rows},
        )

    genes = table.iloc[PREAMBLE_ROWS:]
    if genes[column].isna().any():
        raise CountFileMismatchError(
            f"Count file {path} has missing values in column '{column}'",
            {"path": str(path), "column": column},
        )

    counts = pd.Series(
        genes[column].astype(np.int64).values,
        index=pd.Index(genes["gene_id"].values, name="gene_id"),
        name=column,
    )
    stats = pd.Series(
        preamble[column].astype(np.int64).values,
        index=preamble["gene_id"].values,
        name=column,
    )
    return counts, stats


def count_file_path(base_path, sample_id: str, pattern: str) -> Path:
    return Path(base_path) / pattern.format(sample=sample_id)


def _first_divergence(reference: pd.Index, other: pd.Index) -> int:
    n = min(len(reference), len(other))
    diff = np.flatnonzero(reference[:n].values != other[:n].values)
    return int(diff[0]) if len(diff) else n


def check_gene_order(left: pd.Index, right: pd.Index, what: str = "tables") -> None:
    """Raise GeneOrderMismatchError unless both indexes list the same genes in the same order."""
    if left.equals(right):
        return
    position = _first_divergence(left, right)
    raise GeneOrderMismatchError(
        f"Gene order mismatch between {what} at position {position} "
        f"({len(left)} vs {len(right)} genes)",
        {"position": position, "n_left": len(left), "n_right": len(right)},
    )


def load_count_matrix(
    base_path,
    sample_ids: List[str],
    pattern: str = "{sample}/ReadsPerGene.out.tab",
    column: str = "unstranded",
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Load per-sample count files into one genes × samples matrix.

    Every file must list genes in exactly the same order as the first file
    loaded. Any divergence aborts the load.

    Args:
        base_path: Root directory of the count files
        sample_ids: Sample ids, in the column order of the output matrix
        pattern: Path template relative to base_path, formatted with {sample}
        column: Count column to keep

    Returns:
        (counts, mapping_stats):
        - counts: genes × samples int64 DataFrame
        - mapping_stats: samples × preamble-rows int64 DataFrame

    Raises:
        CountFileMismatchError: On gene-order mismatch between files
        FileNotFoundError: If a sample's count file is missing
    """
    if not sample_ids:
        raise ValueError("sample_ids cannot be empty")

    columns: Dict[str, pd.Series] = {}
    stats: Dict[str, pd.Series] = {}
    reference_index = None
    reference_sample = None

    for sample_id in sample_ids:
        path = count_file_path(base_path, sample_id, pattern)
        if not path.exists():
            raise FileNotFoundError(f"Count file for sample '{sample_id}' not found: {path}")

        counts, preamble = read_count_file(path, column=column)

        if reference_index is None:
            reference_index = counts.index
            reference_sample = sample_id
        elif not counts.index.equals(reference_index):
            position = _first_divergence(reference_index, counts.index)
            raise CountFileMismatchError(
                f"Gene order of sample '{sample_id}' differs from '{reference_sample}' "
                f"at position {position} ({len(counts)} vs {len(reference_index)} genes)",
                {
                    "sample": sample_id,
                    "reference_sample": reference_sample,
                    "position": position,
                },
            )

        columns[sample_id] = counts.values
        stats[sample_id] = preamble

    matrix = pd.DataFrame(columns, index=reference_index, columns=list(sample_ids))
    mapping_stats = pd.DataFrame(stats).T.loc[list(sample_ids)]
    logger.info(f"Loaded count matrix: {matrix.shape[0]} genes × {matrix.shape[1]} samples")
    return matrix, mapping_stats


def strip_gene_versions(ids) -> pd.Index:
    """Drop trailing Ensembl version suffixes (ENSG00000141510.17 → ENSG00000141510)."""
    return pd.Index([GENE_VERSION_PATTERN.sub("", str(g)) for g in ids], name=getattr(ids, "name", None))


def deduplicate_genes(counts: pd.DataFrame, how: str = "sum") -> pd.DataFrame:
    """
    Guarantee unique gene identifiers.

    Args:
        counts: genes × samples DataFrame, possibly with repeated row ids
        how: "sum" to add duplicate rows together, "first" to keep the first

    Returns:
        DataFrame with unique index, in order of first appearance
    """
    if counts.index.is_unique:
        return counts

    n_dup = int(counts.index.duplicated().sum())
    if how == "sum":
        deduped = counts.groupby(level=0, sort=False).sum()
    elif how == "first":
        deduped = counts[~counts.index.duplicated(keep="first")]
    else:
        raise ValueError(f"Unknown deduplication method '{how}' (expected 'sum' or 'first')")

    logger.warning(f"{n_dup} duplicate gene ids collapsed ({how})")
    return deduped


def filter_low_counts(counts: pd.DataFrame, min_total: int = 20) -> pd.DataFrame:
    """
    Drop genes whose summed count across all samples is below min_total.

    Args:
        counts: genes × samples DataFrame
        min_total: Minimum total reads per gene (default: 20)

    Returns:
        Filtered DataFrame (row order preserved)
    """
    totals = counts.sum(axis=1)
    keep = totals >= min_total
    filtered = counts.loc[keep]
    logger.info(
        f"Low-count filter (total >= {min_total}): kept {len(filtered)} of {len(counts)} genes"
    )
    return filtered
