"""
Per-gene annotation: biotype and length from a GTF file, GC content from
Ensembl BioMart.

The annotation table is indexed by gene id and carries the columns
gene_name, gene_biotype, chrom, length and gc_content (fraction 0-1).
"""

from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple
import logging
import pandas as pd
import numpy as np
from gseapy import Biomart

from count_loader import check_gene_order, strip_gene_versions

logger = logging.getLogger(__name__)

GTF_COLUMNS = [
    "chrom", "source", "feature", "start", "end", "score", "strand", "frame", "attribute",
]
GC_ATTRIBUTES = ["ensembl_gene_id", "percentage_gene_gc_content"]
BIOMART_BATCH_SIZE = 500


def _gtf_attribute(attributes: pd.Series, key: str) -> pd.Series:
    return attributes.str.extract(rf'{key} "([^"]*)"', expand=False)


def read_gtf(path, strip_versions: bool = True) -> pd.DataFrame:
    """
    Parse a GTF file into one row per gene.

    Gene length is the size of the union of the gene's exons; genes without
    exon records fall back to the span of their gene record.

    Args:
        path: GTF file (optionally gzipped)
        strip_versions: Drop Ensembl version suffixes from gene ids

    Returns:
        DataFrame indexed by gene_id with gene_name, gene_biotype, chrom, length
    """
    gtf = pd.read_csv(
        path,
        sep="\t",
        comment="#",
        header=None,
        names=GTF_COLUMNS,
        dtype={"chrom": str, "feature": str, "attribute": str},
        low_memory=False,
    )
    gtf = gtf[gtf["feature"].isin(["gene", "exon"])].copy()
    if gtf.empty:
        raise ValueError(f"No gene or exon records found in GTF: {path}")

    gtf["gene_id"] = _gtf_attribute(gtf["attribute"], "gene_id")
    gtf["gene_name"] = _gtf_attribute(gtf["attribute"], "gene_name")
    biotype = _gtf_attribute(gtf["attribute"], "gene_biotype")
    gtf["gene_biotype"] = biotype.fillna(_gtf_attribute(gtf["attribute"], "gene_type"))
    gtf = gtf.dropna(subset=["gene_id"])
    if strip_versions:
        gtf["gene_id"] = strip_gene_versions(gtf["gene_id"])

    genes = gtf.groupby("gene_id", sort=False).agg(
        gene_name=("gene_name", "first"),
        gene_biotype=("gene_biotype", "first"),
        chrom=("chrom", "first"),
        start=("start", "min"),
        end=("end", "max"),
    )
    genes["length"] = genes["end"] - genes["start"] + 1

    exon_length = _exon_union_length(gtf[gtf["feature"] == "exon"])
    genes.loc[exon_length.index, "length"] = exon_length
    genes["length"] = genes["length"].astype(np.int64)
    genes["gene_name"] = genes["gene_name"].fillna(pd.Series(genes.index, index=genes.index))

    logger.info(f"Parsed GTF {path}: {len(genes)} genes ({len(exon_length)} with exon records)")
    return genes.drop(columns=["start", "end"])


def _exon_union_length(exons: pd.DataFrame) -> pd.Series:
    """Total length of the merged exon intervals of each gene (GTF intervals are closed)."""
    if exons.empty:
        return pd.Series(dtype=np.int64)

    exons = exons[["gene_id", "start", "end"]].sort_values(["gene_id", "start"])
    running_end = exons.groupby("gene_id")["end"].cummax()
    previous_end = running_end.groupby(exons["gene_id"]).shift()
    new_block = previous_end.isna() | (exons["start"] > previous_end)
    exons = exons.assign(block=new_block.cumsum())

    blocks = exons.groupby(["gene_id", "block"]).agg(start=("start", "min"), end=("end", "max"))
    return (blocks["end"] - blocks["start"] + 1).groupby(level="gene_id").sum()


def _batches(items: Sequence[str], size: int) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def query_gc_content(
    gene_ids: Sequence[str],
    dataset: str = "hsapiens_gene_ensembl",
    cache_path: Optional[Path] = None,
    batch_size: int = BIOMART_BATCH_SIZE,
) -> pd.DataFrame:
    """
    Fetch per-gene GC content from Ensembl BioMart.

    Args:
        gene_ids: Ensembl gene ids (without version suffix)
        dataset: BioMart dataset name
        cache_path: Optional TSV cache; read if present, written after a query
        batch_size: Number of ids per BioMart request

    Returns:
        DataFrame indexed by gene_id with a gc_content column (fraction 0-1)
    """
    if cache_path is not None and Path(cache_path).exists():
        cached = pd.read_csv(cache_path, sep="\t", index_col="gene_id")
        logger.info(f"Loaded GC content for {len(cached)} genes from cache {cache_path}")
        return cached

    ids = list(dict.fromkeys(str(g) for g in gene_ids))
    bm = Biomart()
    frames = []
    for batch in _batches(ids, batch_size):
        frames.append(
            bm.query(
                dataset=dataset,
                attributes=GC_ATTRIBUTES,
                filters={"ensembl_gene_id": batch},
            )
        )

    if frames:
        raw = pd.concat(frames, ignore_index=True)
    else:
        raw = pd.DataFrame(columns=GC_ATTRIBUTES)

    gc = pd.DataFrame(
        {
            "gene_id": raw["ensembl_gene_id"].astype(str),
            "gc_content": pd.to_numeric(raw["percentage_gene_gc_content"], errors="coerce") / 100.0,
        }
    )
    gc = gc.dropna(subset=["gc_content"]).drop_duplicates(subset="gene_id").set_index("gene_id")
    logger.info(f"BioMart returned GC content for {len(gc)} of {len(ids)} genes")

    if cache_path is not None:
        Path(cache_path).parent.mkdir(parents=True, exist_ok=True)
        gc.to_csv(cache_path, sep="\t")
    return gc


def build_annotation(gtf_table: pd.DataFrame, gc_table: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """
    Merge GTF-derived attributes with GC content into one deduplicated table.

    Args:
        gtf_table: Output of read_gtf
        gc_table: Output of query_gc_content (optional)

    Returns:
        DataFrame indexed by gene_id with gene_name, gene_biotype, chrom, length, gc_content
    """
    annotation = gtf_table[~gtf_table.index.duplicated(keep="first")].copy()
    if gc_table is not None:
        gc = gc_table[~gc_table.index.duplicated(keep="first")]["gc_content"]
        annotation["gc_content"] = gc.reindex(annotation.index)
    else:
        annotation["gc_content"] = np.nan
    annotation.index.name = "gene_id"
    return annotation


def align_annotation(
    counts: pd.DataFrame,
    annotation: pd.DataFrame,
    require: Tuple[str, ...] = ("length", "gc_content"),
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Restrict counts to annotated genes and order the annotation like counts.

    Genes without an annotation row, or with a missing value in any of the
    required columns, are dropped from both outputs (logged, not fatal).

    Args:
        counts: genes × samples DataFrame
        annotation: Gene-indexed annotation table
        require: Annotation columns that must be present for a gene to be kept

    Returns:
        (counts_subset, annotation_aligned) with identical gene order

    Raises:
        GeneOrderMismatchError: If the aligned orders disagree (duplicate ids)
    """
    missing_cols = [c for c in require if c not in annotation.columns]
    if missing_cols:
        raise ValueError(f"Annotation is missing required columns: {missing_cols}")

    annotation = annotation[~annotation.index.duplicated(keep="first")]
    usable = annotation.dropna(subset=list(require))

    keep = counts.index.isin(usable.index)
    dropped = counts.index[~keep]
    if len(dropped) > 0:
        logger.warning(
            f"{len(dropped)} of {len(counts)} genes have no usable annotation "
            f"({', '.join(require)}) and are excluded; first: {list(dropped[:5])}"
        )

    counts_subset = counts.loc[keep]
    aligned = usable.loc[counts_subset.index]
    check_gene_order(counts_subset.index, aligned.index, "count matrix and annotation")
    return counts_subset, aligned


def map_to_symbols(gene_ids: Iterable[str], annotation: Optional[pd.DataFrame]) -> pd.Series:
    """Map gene ids to gene names; ids without a name map to themselves."""
    ids = pd.Index(list(gene_ids))
    if annotation is None or "gene_name" not in annotation.columns:
        return pd.Series(ids, index=ids)
    names = annotation["gene_name"][~annotation.index.duplicated(keep="first")].reindex(ids)
    return names.fillna(pd.Series(ids, index=ids))


def load_annotation(
    gtf_path,
    gene_ids: Sequence[str],
    dataset: str = "hsapiens_gene_ensembl",
    gc_cache_path: Optional[Path] = None,
    strip_versions: bool = True,
    with_gc: bool = True,
) -> pd.DataFrame:
    """
    GTF attributes plus (optionally) BioMart GC content for the given genes.

    Returns:
        Output of build_annotation
    """
    gtf_table = read_gtf(gtf_path, strip_versions=strip_versions)
    gc_table = None
    if with_gc:
        gc_table = query_gc_content(gene_ids, dataset=dataset, cache_path=gc_cache_path)
    return build_annotation(gtf_table, gc_table)
