"""
Synthetic adipose dissociation study for tests and dry runs.

Generates negative binomial counts for tissue-chunk and dissociated-cell
bulk samples plus matching pseudobulk profiles, with built-in artifacts:
  * dissociation stress genes (FOS, JUN, EGR1, ...) up in cells
  * red-blood-cell genes (HBB, HBA1, ...) down in cells
  * a GC-content bias in the pseudobulk libraries

write_dry_run() lays the study out on disk exactly like real upstream data
(STAR count files, GTF, pseudobulk TSV, GMT, GC cache, pipeline YAML).
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import pandas as pd
import numpy as np
import yaml

from count_loader import PREAMBLE_ROWS

DISSOCIATION_GENES = [
    "FOS", "FOSB", "JUN", "JUNB", "EGR1", "ATF3", "IER2", "DUSP1", "HSPA1A", "HSPA1B", "NR4A1", "ZFP36",
]
RBC_GENES = ["HBA1", "HBA2", "HBB", "HBD", "ALAS2", "CA1", "SLC4A1", "GYPA"]
ADIPOCYTE_GENES = ["ADIPOQ", "PLIN1", "LEP", "FABP4", "CIDEA", "LIPE"]
PREAMBLE_NAMES = ["N_unmapped", "N_multimapping", "N_noFeature", "N_ambiguous"]
POOLS = ["A", "B", "C"]


@dataclass
class SyntheticStudy:
    """A complete synthetic dataset. Count matrices are genes × samples."""

    counts: pd.DataFrame  # real chunk + cells samples
    metadata: pd.DataFrame  # sample_id, condition, pool
    pseudobulk: pd.DataFrame
    pseudobulk_metadata: pd.DataFrame
    annotation: pd.DataFrame  # gene_name, gene_biotype, chrom, length, gc_content
    mapping_stats: pd.DataFrame  # samples × N_* rows
    gene_sets: Dict[str, List[str]] = field(default_factory=dict)

    def gene_ids(self, symbols: List[str]) -> List[str]:
        lookup = pd.Series(self.annotation.index, index=self.annotation["gene_name"])
        return [lookup[s] for s in symbols if s in lookup.index]


def _nb(rng: np.random.Generator, mu: np.ndarray, dispersion: float) -> np.ndarray:
    n = 1.0 / dispersion
    return rng.negative_binomial(n, n / (n + mu)).astype(np.int64)


def make_synthetic_study(
    n_background: int = 300,
    replicates: int = 3,
    n_pseudobulk: int = 3,
    dispersion: float = 0.05,
    seed: int = 42,
) -> SyntheticStudy:
    """
    Generate a reproducible synthetic study.

    Args:
        n_background: Number of genes without an injected effect
        replicates: Samples per condition (chunk, cells); one pool each
        n_pseudobulk: Number of pseudobulk samples
        dispersion: Negative binomial dispersion of every gene
        seed: Random seed

    Returns:
        SyntheticStudy
    """
    rng = np.random.default_rng(seed)

    symbols = DISSOCIATION_GENES + RBC_GENES + ADIPOCYTE_GENES + [f"GENE{i:04d}" for i in range(n_background)]
    gene_ids = [f"ENSG{i + 1:011d}" for i in range(len(symbols))]
    n_genes = len(symbols)

    biotype = np.where(rng.random(n_genes) < 0.1, "lncRNA", "protein_coding")
    biotype[: len(DISSOCIATION_GENES) + len(RBC_GENES) + len(ADIPOCYTE_GENES)] = "protein_coding"
    annotation = pd.DataFrame(
        {
            "gene_name": symbols,
            "gene_biotype": biotype,
            "chrom": "1",
            "length": rng.lognormal(mean=7.8, sigma=0.6, size=n_genes).astype(np.int64) + 200,
            "gc_content": np.round(rng.uniform(0.35, 0.62, size=n_genes), 4),
        },
        index=pd.Index(gene_ids, name="gene_id"),
    )

    base = rng.lognormal(mean=5.5, sigma=1.0, size=n_genes)
    effect = pd.Series(1.0, index=symbols)
    effect[DISSOCIATION_GENES] = 8.0
    effect[RBC_GENES] = 0.1
    effect[ADIPOCYTE_GENES] = 0.5

    samples, conditions, pools, columns = [], [], [], []
    for condition in ("chunk", "cells"):
        for r in range(replicates):
            pool = POOLS[r % len(POOLS)]
            sample_id = f"{condition}_{pool}{r + 1}"
            library = rng.uniform(0.8, 1.25)
            mu = base * library * (effect.values if condition == "cells" else 1.0)
            columns.append(_nb(rng, mu, dispersion))
            samples.append(sample_id)
            conditions.append(condition)
            pools.append(pool)

    counts = pd.DataFrame(np.column_stack(columns), index=annotation.index, columns=samples)
    metadata = pd.DataFrame(
        {"sample_id": samples, "condition": conditions, "pool": pools},
        index=pd.Index(samples, name="sample"),
    )

    # pseudobulk libraries: cell-state profile with a GC-dependent capture bias
    gc_bias = np.exp(4.0 * (annotation["gc_content"].values - 0.48))
    pb_columns, pb_samples = [], []
    for i in range(n_pseudobulk):
        pool = POOLS[i % len(POOLS)]
        mu = base * effect.values * gc_bias * rng.uniform(0.6, 0.9)
        pb_columns.append(_nb(rng, mu, dispersion))
        pb_samples.append(f"pseudobulk_{pool}{i + 1}")
    pseudobulk = pd.DataFrame(np.column_stack(pb_columns), index=annotation.index, columns=pb_samples)
    pseudobulk_metadata = pd.DataFrame(
        {
            "sample_id": pb_samples,
            "condition": "pseudobulk",
            "pool": [POOLS[i % len(POOLS)] for i in range(n_pseudobulk)],
        },
        index=pd.Index(pb_samples, name="sample"),
    )

    mapping_stats = pd.DataFrame(
        rng.integers(10_000, 200_000, size=(len(samples), PREAMBLE_ROWS)),
        index=samples,
        columns=PREAMBLE_NAMES,
    )

    gene_sets = {
        "DISSOCIATION_STRESS": DISSOCIATION_GENES,
        "ERYTHROCYTE": RBC_GENES,
        "ADIPOCYTE": ADIPOCYTE_GENES,
        "BACKGROUND_SET": [f"GENE{i:04d}" for i in range(0, min(n_background, 40))],
    }

    return SyntheticStudy(
        counts=counts,
        metadata=metadata,
        pseudobulk=pseudobulk,
        pseudobulk_metadata=pseudobulk_metadata,
        annotation=annotation,
        mapping_stats=mapping_stats,
        gene_sets=gene_sets,
    )


def make_count_files(
    directory,
    counts: pd.DataFrame,
    mapping_stats: Optional[pd.DataFrame] = None,
    pattern: str = "{sample}/ReadsPerGene.out.tab",
    seed: int = 0,
) -> List[Path]:
    """
    Write one STAR ReadsPerGene-style file per sample column.

    Each file holds the 4 mapping-statistics rows followed by one row per
    gene: id, unstranded count, strand-1 count, strand-2 count.
    """
    rng = np.random.default_rng(seed)
    paths = []
    for sample in counts.columns:
        path = Path(directory) / pattern.format(sample=sample)
        path.parent.mkdir(parents=True, exist_ok=True)

        unstranded = counts[sample].to_numpy()
        strand_1 = rng.binomial(unstranded, 0.05)
        table = pd.DataFrame(
            {
                "gene_id": counts.index,
                "unstranded": unstranded,
                "strand_1": strand_1,
                "strand_2": unstranded - strand_1,
            }
        )
        if mapping_stats is not None:
            stats = mapping_stats.loc[sample].to_numpy()
        else:
            stats = np.zeros(PREAMBLE_ROWS, dtype=np.int64)
        preamble = pd.DataFrame(
            {"gene_id": PREAMBLE_NAMES, "unstranded": stats, "strand_1": stats, "strand_2": stats}
        )
        pd.concat([preamble, table]).to_csv(path, sep="\t", header=False, index=False)
        paths.append(path)
    return paths


def write_gtf(path, annotation: pd.DataFrame) -> Path:
    """
    Write a minimal GTF with one gene record and two exons per gene, whose
    exon union equals the annotated length.
    """
    lines = []
    cursor = 1000
    for gene_id, row in annotation.iterrows():
        length = int(row["length"])
        first = max(1, length // 2)
        attrs = f'gene_id "{gene_id}"; gene_name "{row["gene_name"]}"; gene_biotype "{row["gene_biotype"]}";'
        exon1 = (cursor, cursor + first - 1)
        exon2 = (exon1[1] + 500, exon1[1] + 500 + (length - first) - 1)
        lines.append(f"{row['chrom']}\tsynthetic\tgene\t{exon1[0]}\t{exon2[1]}\t.\t+\t.\t{attrs}")
        for start, end in (exon1, exon2):
            if end >= start:
                lines.append(f"{row['chrom']}\tsynthetic\texon\t{start}\t{end}\t.\t+\t.\t{attrs}")
        cursor = exon2[1] + 5000

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!genome-build synthetic\n" + "\n".join(lines) + "\n")
    return path


def write_gmt(path, gene_sets: Dict[str, List[str]], descriptions: Optional[Dict[str, str]] = None) -> Path:
    descriptions = descriptions or {}
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for name, genes in gene_sets.items():
            f.write("\t".join([name, descriptions.get(name, name.replace("_", " ").lower()), *genes]) + "\n")
    return path


def write_dry_run(directory, study: Optional[SyntheticStudy] = None) -> Tuple[Path, SyntheticStudy]:
    """
    Lay out a synthetic study as upstream data plus a pipeline config.

    Returns:
        (config_path, study)
    """
    root = Path(directory)
    study = study or make_synthetic_study()

    make_count_files(root / "counts", study.counts, study.mapping_stats)
    write_gtf(root / "annotation.gtf", study.annotation)
    study.pseudobulk.to_csv(root / "pseudobulk.tsv", sep="\t", index_label="gene_id")
    write_gmt(root / "gene_sets.gmt", study.gene_sets)
    study.annotation[["gc_content"]].to_csv(root / "gc_content.tsv", sep="\t")

    panels_src = Path(__file__).resolve().parent / "config" / "gene_panels.yaml"

    config = {
        "base_data_path": "counts",
        "local_data_path": "work",
        "samples": [
            {"id": s, "condition": c, "pool": p}
            for s, c, p in study.metadata[["sample_id", "condition", "pool"]].itertuples(index=False)
        ],
        "pseudobulk_path": "pseudobulk.tsv",
        "pseudobulk_samples": [
            {"id": s, "pool": p}
            for s, p in study.pseudobulk_metadata[["sample_id", "pool"]].itertuples(index=False)
        ],
        "bulk_condition": "cells",
        "annotation_gtf": "annotation.gtf",
        "gc_cache_path": "gc_content.tsv",
        "min_total_count": 20,
        "fdr_thresholds": [0.1, 0.05],
        "top_n": 10,
        "gene_set_files": ["gene_sets.gmt"],
        "gsea_permutations": 100,
        "gsea_min_size": 3,
        "gsea_max_size": 500,
        "seed": 42,
        "gene_panels": str(panels_src),
    }
    config_path = root / "pipeline.yaml"
    with open(config_path, "w") as f:
        yaml.safe_dump(config, f, sort_keys=False)
    return config_path, study
