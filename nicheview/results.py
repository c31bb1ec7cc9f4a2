"""Reduction of fold-level results into run tables, and pivots over them.

Table contracts
---------------
performance: one row per (target, view)
    target, view, kind        keys
    view_r2, view_rmse        mean held-out metrics of the per-view model
    coefficient, p_value      multi-view combiner coefficient of the view
    contribution              share of the view in the combiner, percent
    failed                    the (target, view) model could not be fit
    intra_r2, multi_r2, gain_r2, intra_rmse, multi_rmse, gain_rmse
                              target-level metrics, repeated on each row
importance: one row per (target, view, predictor)
    importance                mean over successful folds

Undefined values are NaN. Both tables are sorted by their key columns so a
result does not depend on the order fold units were completed in.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import stats

from .errors import ConfigurationError
from .training import FoldResult

PERFORMANCE_KEYS: Tuple[str, ...] = ("target", "view")
TARGET_METRICS: Tuple[str, ...] = ("intra_r2", "multi_r2", "gain_r2", "intra_rmse", "multi_rmse", "gain_rmse")
PERFORMANCE_COLUMNS: Tuple[str, ...] = PERFORMANCE_KEYS + (
    "kind", "view_r2", "view_rmse", "coefficient", "p_value", "contribution", "failed",
) + TARGET_METRICS
IMPORTANCE_KEYS: Tuple[str, ...] = ("target", "view", "predictor")
IMPORTANCE_COLUMNS: Tuple[str, ...] = IMPORTANCE_KEYS + ("importance",)

logger = logging.getLogger("nicheview")


@dataclass
class ViewFit:
    """All folds of one (target, view) model reduced to one record."""
    target: str
    view: str
    kind: str
    oof: np.ndarray
    r2: float
    rmse: float
    importances: Dict[str, float]
    failed: bool
    n_failed_folds: int = 0


@dataclass
class ViewEntry:
    view: str
    kind: str
    r2: float
    rmse: float
    failed: bool
    coefficient: float = float("nan")
    p_value: float = float("nan")
    contribution: float = float("nan")


@dataclass
class TargetEntry:
    target: str
    intra_r2: float
    multi_r2: float
    gain_r2: float
    intra_rmse: float
    multi_rmse: float
    gain_rmse: float
    views: List[ViewEntry]
    combiner_inputs: Tuple[str, ...]
    importances: List[Tuple[str, str, float]] = field(default_factory=list)


@dataclass
class RunResult:
    performance: pd.DataFrame
    importance: pd.DataFrame
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def targets(self) -> List[str]:
        return sorted(self.performance["target"].unique().tolist())

    @property
    def views(self) -> List[str]:
        return sorted(self.performance["view"].unique().tolist())

    def target_summary(self) -> pd.DataFrame:
        """One row per target with the target-level metrics."""
        return performance_matrix(self)


def _nan(v: Optional[float]) -> float:
    return float("nan") if v is None else float(v)


def summarize_folds(
    fold_results: Iterable[FoldResult],
    n_cells: int,
    kinds: Mapping[str, Any],
) -> Dict[Tuple[str, str], ViewFit]:
    """Reduce fold units to one ViewFit per (target, view).

    Units are sorted by (target, view, fold) first, so the reduction gives the
    same numbers for any completion order. The held-out partitions of one
    (target, view) must cover every cell exactly once.
    """
    ordered = sorted(fold_results, key=lambda r: r.key)
    groups: Dict[Tuple[str, str], List[FoldResult]] = {}
    for r in ordered:
        groups.setdefault((r.target, r.view), []).append(r)

    out: Dict[Tuple[str, str], ViewFit] = {}
    for (target, view), folds in groups.items():
        fold_ids = [f.fold for f in folds]
        if len(set(fold_ids)) != len(fold_ids):
            raise ConfigurationError(f"Duplicate fold results for target '{target}' view '{view}'")
        oof = np.full(n_cells, np.nan, dtype=np.float64)
        covered = np.zeros(n_cells, dtype=np.int64)
        for f in folds:
            oof[f.test_positions] = f.predictions
            covered[f.test_positions] += 1
        if not (covered == 1).all():
            raise ConfigurationError(
                f"Fold results for target '{target}' view '{view}' do not partition the {n_cells} cells"
            )

        ok = [f for f in folds if not f.failed]
        r2s = [f.r2 for f in ok if f.r2 is not None]
        rmses = [f.rmse for f in ok if f.rmse is not None]
        predictors: List[str] = []
        for f in ok:
            for p in f.importances:
                if p not in predictors:
                    predictors.append(p)
        imp = {p: float(np.mean([f.importances.get(p, 0.0) for f in ok])) for p in predictors}

        kind = kinds[view]
        out[(target, view)] = ViewFit(
            target=target,
            view=view,
            kind=getattr(kind, "value", str(kind)),
            oof=oof,
            r2=float(np.mean(r2s)) if r2s else float("nan"),
            rmse=float(np.mean(rmses)) if rmses else float("nan"),
            importances=imp,
            failed=not ok,
            n_failed_folds=len(folds) - len(ok),
        )
        if not ok:
            logger.warning("All folds failed for target=%s view=%s; excluded from the combiner", target, view)
    return out


def aggregate_run(target_entries: Iterable[TargetEntry], metadata: Optional[Dict[str, Any]] = None) -> RunResult:
    perf_rows: List[Dict[str, Any]] = []
    imp_rows: List[Tuple[str, str, str, float]] = []
    for e in target_entries:
        target_metrics = {m: _nan(getattr(e, m)) for m in TARGET_METRICS}
        for v in e.views:
            row = {
                "target": e.target,
                "view": v.view,
                "kind": v.kind,
                "view_r2": _nan(v.r2),
                "view_rmse": _nan(v.rmse),
                "coefficient": _nan(v.coefficient),
                "p_value": _nan(v.p_value),
                "contribution": _nan(v.contribution),
                "failed": bool(v.failed),
            }
            row.update(target_metrics)
            perf_rows.append(row)
        for view, predictor, score in e.importances:
            imp_rows.append((e.target, view, predictor, float(score)))

    performance = pd.DataFrame(perf_rows, columns=list(PERFORMANCE_COLUMNS))
    if performance.duplicated(subset=list(PERFORMANCE_KEYS)).any():
        raise ConfigurationError("Duplicate (target, view) rows in target entries")
    performance = performance.sort_values(list(PERFORMANCE_KEYS), kind="mergesort").reset_index(drop=True)
    performance["failed"] = performance["failed"].astype(bool)

    importance = pd.DataFrame(imp_rows, columns=list(IMPORTANCE_COLUMNS))
    importance = importance.sort_values(list(IMPORTANCE_KEYS), kind="mergesort").reset_index(drop=True)
    importance["importance"] = importance["importance"].astype(np.float64)
    return RunResult(performance=performance, importance=importance, metadata=dict(metadata or {}))


def performance_matrix(result: RunResult, metrics: Sequence[str] = TARGET_METRICS) -> pd.DataFrame:
    """Target × metric table (index: target; columns: `metrics`)."""
    unknown = [m for m in metrics if m not in TARGET_METRICS]
    if unknown:
        raise ConfigurationError(f"Unknown target metric(s): {unknown}")
    perf = result.performance
    out = perf.groupby("target", sort=True)[list(metrics)].first()
    return out


def contribution_matrix(result: RunResult, value: str = "contribution") -> pd.DataFrame:
    """Target × view table of a per-view column (`contribution`, `coefficient`, `p_value`, `view_r2`)."""
    allowed = ("contribution", "coefficient", "p_value", "view_r2", "view_rmse")
    if value not in allowed:
        raise ConfigurationError(f"value must be one of {allowed}, got {value!r}")
    return result.performance.pivot(index="target", columns="view", values=value)


def importance_matrix(result: RunResult, view: str) -> pd.DataFrame:
    """Predictor × target importance table for one view; missing pairs are NaN."""
    imp = result.importance
    sub = imp[imp["view"] == view]
    if sub.empty and view not in set(result.performance["view"]):
        raise ConfigurationError(f"No view named '{view}' in this result")
    return sub.pivot(index="predictor", columns="target", values="importance")


@dataclass
class RunSummary:
    """Aggregate over repeated runs or samples."""
    performance: pd.DataFrame
    improvements: pd.DataFrame
    contributions: pd.DataFrame
    importance: pd.DataFrame
    n_runs: int


def _one_sided_p(values: np.ndarray) -> float:
    vals = values[np.isfinite(values)]
    if len(vals) < 2 or np.allclose(vals, vals[0]):
        return float("nan")
    res = stats.ttest_1samp(vals, 0.0, alternative="greater")
    return float(res.pvalue)


def collect_runs(results: Sequence[RunResult]) -> RunSummary:
    """Summarize several RunResults (repeated seeds or samples).

    performance:   target × (metric mean, metric sd)
    improvements:  per target: gain_r2 mean/sd and one-sided t-test p-value of gain > 0
    contributions: mean contribution per (target, view)
    importance:    mean importance per (target, view, predictor) over the runs that report it
    """
    if not results:
        raise ConfigurationError("collect_runs() needs at least one result")
    per_target = pd.concat(
        [performance_matrix(r).reset_index().assign(run=i) for i, r in enumerate(results)],
        ignore_index=True,
    )
    performance = per_target.groupby("target", sort=True)[list(TARGET_METRICS)].agg(["mean", "std"])
    performance.columns = [f"{m}_{s}" for m, s in performance.columns]

    imp_rows = []
    for target, grp in per_target.groupby("target", sort=True):
        gains = grp["gain_r2"].to_numpy(dtype=np.float64)
        finite = gains[np.isfinite(gains)]
        imp_rows.append({
            "target": target,
            "gain_r2_mean": float(finite.mean()) if len(finite) else float("nan"),
            "gain_r2_sd": float(finite.std(ddof=1)) if len(finite) > 1 else float("nan"),
            "p_value": _one_sided_p(gains),
            "n": int(len(finite)),
        })
    improvements = pd.DataFrame(imp_rows, columns=["target", "gain_r2_mean", "gain_r2_sd", "p_value", "n"])

    contrib = pd.concat([r.performance[["target", "view", "contribution"]] for r in results], ignore_index=True)
    contributions = contrib.groupby(["target", "view"], sort=True)["contribution"].mean().reset_index()

    imps = pd.concat([r.importance for r in results], ignore_index=True)
    importance = imps.groupby(list(IMPORTANCE_KEYS), sort=True)["importance"].mean().reset_index()
    return RunSummary(
        performance=performance,
        improvements=improvements,
        contributions=contributions,
        importance=importance,
        n_runs=len(results),
    )
