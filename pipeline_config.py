"""
Shared configuration for the chunk-vs-cells and bulk-vs-pseudobulk analyses.

Both pipelines read the same YAML file (config/pipeline.yaml). Relative
paths are resolved against the directory that holds the config file.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import yaml

from pipeline_errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_COUNT_FILE_PATTERN = "{sample}/ReadsPerGene.out.tab"
DEFAULT_FDR_THRESHOLDS = [0.1, 0.05]
DEFAULT_MIN_TOTAL_COUNT = 20


@dataclass
class SampleSpec:
    """One sequenced sample: its id, experimental condition and pool."""

    id: str
    condition: str
    pool: str


@dataclass
class PipelineConfig:
    """Parsed contents of the shared pipeline config file."""

    base_data_path: Path
    local_data_path: Path
    samples: List[SampleSpec]
    count_file_pattern: str = DEFAULT_COUNT_FILE_PATTERN
    pseudobulk_path: Optional[Path] = None
    pseudobulk_samples: List[SampleSpec] = field(default_factory=list)
    bulk_condition: Optional[str] = None  # real samples paired with pseudobulk (None = all)
    annotation_gtf: Optional[Path] = None
    biomart_dataset: str = "hsapiens_gene_ensembl"
    gc_cache_path: Optional[Path] = None
    strip_gene_versions: bool = True
    min_total_count: int = DEFAULT_MIN_TOTAL_COUNT
    fdr_thresholds: List[float] = field(default_factory=lambda: list(DEFAULT_FDR_THRESHOLDS))
    top_n: int = 20
    covariates: List[str] = field(default_factory=list)
    gene_set_databases: List[str] = field(default_factory=list)
    gene_set_files: List[Path] = field(default_factory=list)
    gsea_permutations: int = 1000
    gsea_min_size: int = 15
    gsea_max_size: int = 500
    seed: int = 42
    gene_panels: Optional[Path] = None

    @property
    def sample_ids(self) -> List[str]:
        return [s.id for s in self.samples]

    def samples_with_condition(self, condition: str) -> List[SampleSpec]:
        return [s for s in self.samples if s.condition == condition]

    def output_dir(self, comparison: str) -> Path:
        """Directory for human-facing reports of one comparison."""
        return self.local_data_path / f"{comparison}_report"


def _resolve(base: Path, value: Optional[str]) -> Optional[Path]:
    if value is None:
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else (base / path)


def _parse_samples(raw: Any, key: str, default_condition: Optional[str] = None) -> List[SampleSpec]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"'{key}' must be a list of samples", {"key": key})

    samples = []
    for i, entry in enumerate(raw):
        if isinstance(entry, str):
            entry = {"id": entry}
        if not isinstance(entry, dict) or "id" not in entry:
            raise ConfigError(
                f"Entry {i} of '{key}' must be a mapping with an 'id'",
                {"key": key, "index": i, "entry": entry},
            )
        condition = entry.get("condition", default_condition)
        if condition is None:
            raise ConfigError(
                f"Sample '{entry['id']}' in '{key}' has no condition",
                {"key": key, "sample": entry["id"]},
            )
        samples.append(
            SampleSpec(
                id=str(entry["id"]),
                condition=str(condition),
                pool=str(entry.get("pool", "NA")),
            )
        )

    ids = [s.id for s in samples]
    duplicated = sorted({s for s in ids if ids.count(s) > 1})
    if duplicated:
        raise ConfigError(f"Duplicate sample ids in '{key}': {duplicated}", {"key": key})
    return samples


def load_config(config_path) -> PipelineConfig:
    """
    Load and validate the pipeline YAML config.

    Args:
        config_path: Path to the YAML file

    Returns:
        PipelineConfig with all paths resolved

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigError: If required keys are missing or values are malformed
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Pipeline config not found: {config_path}")

    with open(config_file, "r") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping", {"path": str(config_file)})

    missing = [k for k in ("base_data_path", "local_data_path", "samples") if k not in raw]
    if missing:
        raise ConfigError(f"Missing required config keys: {missing}", {"missing": missing})

    base = config_file.resolve().parent
    samples = _parse_samples(raw["samples"], "samples")
    if not samples:
        raise ConfigError("'samples' must list at least one sample")

    fdr_thresholds = [float(t) for t in raw.get("fdr_thresholds", DEFAULT_FDR_THRESHOLDS)]
    bad = [t for t in fdr_thresholds if not 0 < t < 1]
    if bad:
        raise ConfigError(f"FDR thresholds must be in (0, 1): {bad}", {"fdr_thresholds": fdr_thresholds})

    min_total = int(raw.get("min_total_count", DEFAULT_MIN_TOTAL_COUNT))
    if min_total < 0:
        raise ConfigError("'min_total_count' must be non-negative", {"min_total_count": min_total})

    return PipelineConfig(
        base_data_path=_resolve(base, raw["base_data_path"]),
        local_data_path=_resolve(base, raw["local_data_path"]),
        samples=samples,
        count_file_pattern=raw.get("count_file_pattern", DEFAULT_COUNT_FILE_PATTERN),
        pseudobulk_path=_resolve(base, raw.get("pseudobulk_path")),
        pseudobulk_samples=_parse_samples(
            raw.get("pseudobulk_samples"), "pseudobulk_samples", default_condition="pseudobulk"
        ),
        bulk_condition=raw.get("bulk_condition"),
        annotation_gtf=_resolve(base, raw.get("annotation_gtf")),
        biomart_dataset=raw.get("biomart_dataset", "hsapiens_gene_ensembl"),
        gc_cache_path=_resolve(base, raw.get("gc_cache_path")),
        strip_gene_versions=bool(raw.get("strip_gene_versions", True)),
        min_total_count=min_total,
        fdr_thresholds=fdr_thresholds,
        top_n=int(raw.get("top_n", 20)),
        covariates=list(raw.get("covariates", [])),
        gene_set_databases=list(raw.get("gene_set_databases", [])),
        gene_set_files=[_resolve(base, p) for p in raw.get("gene_set_files", [])],
        gsea_permutations=int(raw.get("gsea_permutations", 1000)),
        gsea_min_size=int(raw.get("gsea_min_size", 15)),
        gsea_max_size=int(raw.get("gsea_max_size", 500)),
        seed=int(raw.get("seed", 42)),
        gene_panels=_resolve(base, raw.get("gene_panels")),
    )


def configure_logging(output_dir, name: str = "analysis", level: int = logging.INFO) -> Path:
    """Log to a timestamped file in output_dir and to the console."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_filename = output_dir / f"{name}_{timestamp}.log"

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_filename),
            logging.StreamHandler(),
        ],
        force=True,
    )
    return log_filename
