"""
Versioned on-disk hand-off between the two pipelines.

Every artifact is a TSV table described by an entry in the directory's
manifest.json (schema version, kind, ordered columns and dtypes, row count,
index name). Loading validates the table against its manifest entry and
casts it back to the declared dtypes, so write → read reproduces the table.

Layout under the local working-data path:
    <comparison>_data/            model-level tables
    <comparison>_FDR_<alpha>/     results.tsv for one FDR threshold
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import pandas as pd

from de_analysis import DEResult, FittedModel, RESULT_COLUMNS
from pipeline_errors import ArtifactSchemaError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"
MANIFEST_NAME = "manifest.json"


def comparison_data_dir(root, comparison: str) -> Path:
    return Path(root) / f"{comparison}_data"


def threshold_dir(root, comparison: str, alpha: float) -> Path:
    return Path(root) / f"{comparison}_FDR_{alpha:g}"


def _read_manifest(directory: Path) -> Dict[str, Any]:
    path = directory / MANIFEST_NAME
    if not path.exists():
        return {"_meta": {"schema_version": SCHEMA_VERSION}, "settings": {}, "artifacts": {}}
    with open(path, "r") as f:
        return json.load(f)


def _write_manifest(directory: Path, manifest: Dict[str, Any]) -> None:
    manifest["_meta"] = {
        "schema_version": SCHEMA_VERSION,
        "saved_at": datetime.now().isoformat(),
    }
    with open(directory / MANIFEST_NAME, "w") as f:
        json.dump(manifest, f, indent=2, default=str)


def _is_text_dtype(dtype: str) -> bool:
    return dtype in ("object", "str", "string")


def save_table(
    df: pd.DataFrame,
    directory,
    name: str,
    kind: str,
    settings: Optional[Dict[str, Any]] = None,
) -> Path:
    """
    Write one table and register it in the directory manifest.

    Categorical columns are stored as plain strings.

    Args:
        df: Table to persist (index is written as the first column)
        directory: Target directory (created if needed)
        name: Artifact name; the file is <name>.tsv
        kind: Artifact kind recorded in the manifest and checked on load
        settings: Extra key/value pairs merged into the manifest settings

    Returns:
        Path of the written TSV
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    table = df.copy()
    for col in table.columns:
        if isinstance(table[col].dtype, pd.CategoricalDtype):
            table[col] = table[col].astype(str)

    path = directory / f"{name}.tsv"
    table.to_csv(path, sep="\t", index_label=table.index.name or "index")

    manifest = _read_manifest(directory)
    manifest["artifacts"][name] = {
        "kind": kind,
        "file": path.name,
        "columns": [str(c) for c in table.columns],
        "dtypes": {str(c): str(t) for c, t in table.dtypes.items()},
        "n_rows": int(len(table)),
        "index_name": table.index.name,
        "index_dtype": str(table.index.dtype),
        "columns_name": table.columns.name,
        "created_at": datetime.now().isoformat(),
    }
    manifest["settings"].update(settings or {})
    _write_manifest(directory, manifest)

    logger.info(f"Saved {kind} '{name}' ({len(table)} rows) to {path}")
    return path


def load_table(directory, name: str, kind: Optional[str] = None) -> pd.DataFrame:
    """
    Load one table and validate it against its manifest entry.

    Raises:
        ArtifactSchemaError: If the manifest entry is missing, the kind
            differs, or columns, row count or dtypes do not match
    """
    directory = Path(directory)
    manifest = _read_manifest(directory)

    version = manifest.get("_meta", {}).get("schema_version")
    if version != SCHEMA_VERSION:
        raise ArtifactSchemaError(
            f"Unsupported artifact schema version {version} in {directory}",
            {"directory": str(directory), "schema_version": version},
        )

    entry = manifest["artifacts"].get(name)
    if entry is None:
        raise ArtifactSchemaError(
            f"No artifact '{name}' registered in {directory / MANIFEST_NAME}",
            {"directory": str(directory), "artifact": name},
        )
    if kind is not None and entry["kind"] != kind:
        raise ArtifactSchemaError(
            f"Artifact '{name}' is a {entry['kind']}, expected {kind}",
            {"artifact": name, "kind": entry["kind"], "expected": kind},
        )

    path = directory / entry["file"]
    if not path.exists():
        raise ArtifactSchemaError(f"Artifact file missing: {path}", {"path": str(path)})

    # text columns (and a text index) stay strings: ids like "7157" or pools like "1"
    index_label = pd.read_csv(path, sep="\t", nrows=0).columns[0]
    text_dtypes = {c: str for c, t in entry["dtypes"].items() if _is_text_dtype(t)}
    if _is_text_dtype(entry["index_dtype"]):
        text_dtypes[index_label] = str
    table = pd.read_csv(
        path,
        sep="\t",
        index_col=0,
        dtype=text_dtypes,
        keep_default_na=False,
        na_values=[""],
        float_precision="round_trip",
    )

    columns = [str(c) for c in table.columns]
    if columns != entry["columns"]:
        raise ArtifactSchemaError(
            f"Columns of {path} do not match manifest",
            {"path": str(path), "found": columns, "expected": entry["columns"]},
        )
    if len(table) != entry["n_rows"]:
        raise ArtifactSchemaError(
            f"{path} has {len(table)} rows, manifest declares {entry['n_rows']}",
            {"path": str(path), "found": len(table), "expected": entry["n_rows"]},
        )

    try:
        table = table.astype(entry["dtypes"])
        table.index = table.index.astype(entry["index_dtype"])
    except (ValueError, TypeError) as e:
        raise ArtifactSchemaError(
            f"{path} does not match declared dtypes: {e}",
            {"path": str(path), "dtypes": entry["dtypes"]},
        ) from e

    table.index.name = entry["index_name"]
    table.columns.name = entry.get("columns_name")
    return table


def load_settings(directory) -> Dict[str, Any]:
    return dict(_read_manifest(Path(directory)).get("settings", {}))


def save_model_data(
    root,
    comparison: str,
    model: FittedModel,
    metadata: pd.DataFrame,
    vst: Optional[pd.DataFrame] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Path:
    """Persist the model-level tables of one comparison to <comparison>_data/."""
    directory = comparison_data_dir(root, comparison)
    settings = {
        "comparison": comparison,
        "design_factor": model.design_factor,
        "reference": model.reference,
        **(settings or {}),
    }
    save_table(model.counts, directory, "raw_counts", "count_matrix", settings)
    save_table(model.normalized_counts, directory, "normalized_counts", "count_matrix")
    save_table(model.size_factors.to_frame(), directory, "size_factors", "sample_table")
    save_table(model.dispersions.to_frame(), directory, "dispersions", "gene_table")
    save_table(metadata, directory, "sample_metadata", "sample_table")
    if vst is not None:
        save_table(vst, directory, "vst", "count_matrix")
    if model.normalization_factors is not None:
        save_table(model.normalization_factors, directory, "normalization_factors", "count_matrix")
    return directory


def load_model_data(root, comparison: str) -> Dict[str, pd.DataFrame]:
    """Every table registered in <comparison>_data/, keyed by artifact name."""
    directory = comparison_data_dir(root, comparison)
    manifest = _read_manifest(directory)
    if not manifest["artifacts"]:
        raise ArtifactSchemaError(
            f"No model data found for '{comparison}' in {directory}",
            {"directory": str(directory)},
        )
    return {name: load_table(directory, name) for name in manifest["artifacts"]}


def save_results(
    root,
    comparison: str,
    results: Dict[float, DEResult],
    settings: Optional[Dict[str, Any]] = None,
) -> List[Path]:
    """Persist one results table per FDR threshold to <comparison>_FDR_<alpha>/."""
    paths = []
    for alpha, result in results.items():
        run_settings = {
            "comparison": comparison,
            "test_condition": result.comparison[0],
            "reference": result.comparison[1],
            "alpha": alpha,
            "n_significant": result.n_significant,
            "shrunk": result.shrunk,
            **(settings or {}),
        }
        paths.append(
            save_table(result.results_df, threshold_dir(root, comparison, alpha), "results", "de_results", run_settings)
        )
    return paths


def load_results(root, comparison: str, alpha: float) -> pd.DataFrame:
    """
    Reload the DE results of one comparison at one FDR threshold.

    Raises:
        ArtifactSchemaError: If the table is missing or not a DE results table
    """
    table = load_table(threshold_dir(root, comparison, alpha), "results", kind="de_results")
    missing = [c for c in RESULT_COLUMNS if c not in table.columns]
    if missing:
        raise ArtifactSchemaError(
            f"DE results for '{comparison}' at FDR {alpha:g} lack columns {missing}",
            {"comparison": comparison, "missing": missing},
        )
    return table
