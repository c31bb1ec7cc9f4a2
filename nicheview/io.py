import json
import os
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError, DataError, PersistenceError
from .results import IMPORTANCE_COLUMNS, PERFORMANCE_COLUMNS, RunResult

PERFORMANCE_FILE = "performance.parquet"
IMPORTANCE_FILE = "importance.parquet"
METADATA_FILE = "metadata.json"


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def run_dir(run_label: str, root: str = "results") -> str:
    if not isinstance(run_label, str) or not run_label.strip():
        raise ConfigurationError(f"Run label must be a non-empty string, got {run_label!r}")
    if os.sep in run_label or (os.altsep and os.altsep in run_label) or run_label in (".", ".."):
        raise ConfigurationError(f"Run label must not contain path separators: {run_label!r}")
    return os.path.join(root, run_label)


def exists(run_label: str, root: str = "results") -> bool:
    d = run_dir(run_label, root)
    return all(os.path.isfile(os.path.join(d, f)) for f in (PERFORMANCE_FILE, IMPORTANCE_FILE, METADATA_FILE))


def _json_default(obj: Any):
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating,)):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    return str(obj)


def save(run_result: RunResult, run_label: str, root: str = "results", write_csv_copy: bool = True) -> str:
    """Write the run tables under `root/run_label/` and return that directory."""
    d = run_dir(run_label, root)
    try:
        ensure_dir(d)
        run_result.performance.to_parquet(os.path.join(d, PERFORMANCE_FILE), index=False)
        run_result.importance.to_parquet(os.path.join(d, IMPORTANCE_FILE), index=False)
        if write_csv_copy:
            # CSV copies are for humans; load() reads parquet only
            run_result.performance.to_csv(os.path.join(d, "performance.csv"), index=False)
            run_result.importance.to_csv(os.path.join(d, "importance.csv"), index=False)
        else:
            for stale in ("performance.csv", "importance.csv"):
                if os.path.isfile(os.path.join(d, stale)):
                    os.remove(os.path.join(d, stale))
        meta = dict(run_result.metadata)
        meta["run_label"] = run_label
        with open(os.path.join(d, METADATA_FILE), "w", encoding="utf-8") as f:
            json.dump(meta, f, ensure_ascii=False, indent=2, sort_keys=True, default=_json_default)
    except (OSError, ValueError, ImportError) as e:
        raise PersistenceError(f"Failed to write results for run '{run_label}' under {d}: {e}") from e
    return d


def _read_table(path: str, required) -> pd.DataFrame:
    if not os.path.isfile(path):
        raise PersistenceError(f"Missing results table: {path}")
    try:
        df = pd.read_parquet(path)
    except (OSError, ValueError, ImportError) as e:
        raise PersistenceError(f"Cannot read results table {path}: {e}") from e
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise PersistenceError(f"Results table {path} is missing columns {missing}")
    return df.loc[:, list(required)]


def load(run_label: str, root: str = "results") -> RunResult:
    d = run_dir(run_label, root)
    performance = _read_table(os.path.join(d, PERFORMANCE_FILE), PERFORMANCE_COLUMNS)
    importance = _read_table(os.path.join(d, IMPORTANCE_FILE), IMPORTANCE_COLUMNS)
    meta_path = os.path.join(d, METADATA_FILE)
    metadata: Dict[str, Any] = {}
    if os.path.isfile(meta_path):
        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                metadata = json.load(f) or {}
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read {meta_path}: {e}") from e
    performance["failed"] = performance["failed"].astype(bool)
    return RunResult(performance=performance, importance=importance, metadata=metadata)


def read_feature_matrix(path: str, index_col: Optional[str] = None) -> pd.DataFrame:
    """Read cells × features from CSV, Parquet or h5ad (AnnData X / obs_names / var_names)."""
    lower = path.lower()
    if lower.endswith(".h5ad"):
        import anndata as ad
        adata = ad.read_h5ad(path)
        X = adata.X.toarray() if hasattr(adata.X, "toarray") else np.asarray(adata.X)
        return pd.DataFrame(X, index=adata.obs_names.copy(), columns=adata.var_names.copy())
    if lower.endswith(".parquet"):
        df = pd.read_parquet(path)
        if index_col is not None:
            df = df.set_index(index_col)
        return df
    df = pd.read_csv(path)
    if df.shape[1] < 2:
        raise DataError(f"Feature file {path} needs a cell id column and at least one feature")
    return df.set_index(index_col or df.columns[0])


def read_coordinates(path: str, columns: Tuple[str, str] = ("row", "col"), spatial_key: str = "spatial") -> pd.DataFrame:
    """Read a coordinates table indexed by cell id with columns `columns`.

    For h5ad input the coordinates come from `adata.obsm[spatial_key]`.
    """
    if path.lower().endswith(".h5ad"):
        import anndata as ad
        adata = ad.read_h5ad(path)
        if spatial_key not in adata.obsm:
            raise DataError(f"{path} has no obsm['{spatial_key}']")
        xy = np.asarray(adata.obsm[spatial_key])[:, :2]
        return pd.DataFrame(xy, index=adata.obs_names.copy(), columns=list(columns))
    df = pd.read_parquet(path) if path.lower().endswith(".parquet") else pd.read_csv(path)
    required = {"cell_id", *columns}
    missing = required - set(df.columns)
    if missing:
        raise DataError(f"Missing columns in coordinates file {path}: {sorted(missing)}")
    return df.set_index("cell_id").loc[:, list(columns)]
