from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import hashlib
import logging

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestRegressor
from sklearn.linear_model import LinearRegression
from sklearn.model_selection import KFold

from .errors import ConfigurationError, ModelFitError

MODEL_KINDS: Tuple[str, ...] = ("ensemble", "linear")
# spread relative to magnitude below which values count as constant
_REL_EPS = 1e-12

logger = logging.getLogger("nicheview")


@dataclass
class FoldResult:
    """Outcome of one (target, view, fold) unit."""
    target: str
    view: str
    fold: int
    test_positions: np.ndarray
    predictions: np.ndarray
    truth: np.ndarray
    importances: Dict[str, float] = field(default_factory=dict)
    r2: Optional[float] = None
    rmse: Optional[float] = None
    n_train: int = 0
    failed: bool = False
    reason: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.target, self.view, self.fold)


def check_model_kind(model_kind: str) -> str:
    kind = str(model_kind).lower()
    if kind not in MODEL_KINDS:
        raise ConfigurationError(f"Unknown model kind {model_kind!r}; supported: {', '.join(MODEL_KINDS)}")
    return kind


def check_k_folds(k_folds, n_cells: int) -> int:
    if isinstance(k_folds, bool) or not isinstance(k_folds, (int, np.integer)):
        raise ConfigurationError(f"k_folds must be an integer, got {k_folds!r}")
    k = int(k_folds)
    if k < 2:
        raise ConfigurationError(f"k_folds must be at least 2, got {k}")
    if k > n_cells:
        raise ConfigurationError(f"k_folds={k} exceeds the number of cells ({n_cells})")
    return k


def derive_seed(base_seed: int, *keys) -> int:
    """Stable 32-bit seed from a base seed and unit keys (same in every process)."""
    payload = "|".join([str(int(base_seed))] + [str(k) for k in keys])
    return int.from_bytes(hashlib.sha256(payload.encode("utf-8")).digest()[:4], "little")


def fold_partitions(n_cells: int, k_folds: int, seed: int) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Shuffled k-fold row partition as a list of (train_positions, test_positions)."""
    k = check_k_folds(k_folds, n_cells)
    kf = KFold(n_splits=k, shuffle=True, random_state=derive_seed(seed, "folds"))
    return [(tr.astype(np.int64), te.astype(np.int64)) for tr, te in kf.split(np.arange(n_cells))]


def _near_constant(a: np.ndarray) -> np.ndarray:
    """True where the spread along axis 0 is negligible next to the magnitude; scale-free."""
    spread = np.ptp(a, axis=0)
    scale = np.max(np.abs(a), axis=0)
    return spread <= _REL_EPS * scale


def held_out_r2(truth: np.ndarray, pred: np.ndarray) -> Optional[float]:
    """1 - SS_res/SS_tot, or None when the truth is constant."""
    y = np.asarray(truth, dtype=np.float64)
    if y.size == 0:
        return None
    if _near_constant(y):
        return None
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    ss_res = float(np.sum((y - np.asarray(pred, dtype=np.float64)) ** 2))
    return 1.0 - ss_res / ss_tot


def rmse(truth: np.ndarray, pred: np.ndarray) -> Optional[float]:
    y = np.asarray(truth, dtype=np.float64)
    if y.size == 0:
        return None
    return float(np.sqrt(np.mean((y - np.asarray(pred, dtype=np.float64)) ** 2)))


def _make_model(model_kind: str, seed: int, n_trees: int):
    if model_kind == "ensemble":
        return RandomForestRegressor(n_estimators=int(n_trees), random_state=seed, n_jobs=1)
    return LinearRegression()


def _importances(model, model_kind: str, X: np.ndarray, y: np.ndarray) -> np.ndarray:
    if model_kind == "ensemble":
        return np.asarray(model.feature_importances_, dtype=np.float64)
    sd_y = float(np.std(y))
    if sd_y <= 0:
        return np.zeros(X.shape[1])
    return np.abs(np.asarray(model.coef_, dtype=np.float64) * X.std(axis=0) / sd_y)


def _fit_predict(
    X_train: np.ndarray,
    y_train: np.ndarray,
    X_test: np.ndarray,
    predictors: Sequence[str],
    model_kind: str,
    seed: int,
    n_trees: int,
) -> Tuple[np.ndarray, Dict[str, float], int]:
    """Fit on usable rows/columns and predict; raises ModelFitError when nothing is usable."""
    rows_ok = np.isfinite(X_train).all(axis=1)
    if rows_ok.sum() < 2:
        raise ModelFitError(f"only {int(rows_ok.sum())} training row(s) with defined predictors")
    Xt, yt = X_train[rows_ok], y_train[rows_ok]
    cols_ok = ~_near_constant(Xt)
    if not cols_ok.any():
        raise ModelFitError("all predictors are constant on the training rows")

    model = _make_model(model_kind, seed, n_trees)
    model.fit(Xt[:, cols_ok], yt)

    fallback = float(yt.mean())
    pred = np.full(X_test.shape[0], fallback, dtype=np.float64)
    test_ok = np.isfinite(X_test).all(axis=1)
    if test_ok.any():
        pred[test_ok] = model.predict(X_test[test_ok][:, cols_ok])

    imp = np.zeros(len(predictors), dtype=np.float64)
    imp[cols_ok] = _importances(model, model_kind, Xt[:, cols_ok], yt)
    return pred, dict(zip(predictors, imp.tolist())), int(rows_ok.sum())


def fit_fold(
    X: np.ndarray,
    y: np.ndarray,
    predictors: Sequence[str],
    train: np.ndarray,
    test: np.ndarray,
    target: str,
    view: str,
    fold: int,
    model_kind: str = "ensemble",
    seed: int = 42,
    n_trees: int = 100,
) -> FoldResult:
    """Train on `train` rows, predict `test` rows. One independent unit of work.

    A unit whose predictors are all degenerate is returned as failed with its
    held-out rows predicted by the training mean; it never raises.
    """
    kind = check_model_kind(model_kind)
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    y_test = y[test]
    unit_seed = derive_seed(seed, target, view, fold)
    try:
        if X.shape[1] == 0:
            raise ModelFitError("view has no predictors for this target")
        pred, imp, n_train = _fit_predict(X[train], y[train], X[test], predictors, kind, unit_seed, n_trees)
    except ModelFitError as e:
        logger.debug("Fit failed target=%s view=%s fold=%d: %s", target, view, fold, e)
        return FoldResult(
            target=target,
            view=view,
            fold=fold,
            test_positions=np.asarray(test, dtype=np.int64),
            predictions=np.full(len(test), float(y[train].mean()) if len(train) else 0.0),
            truth=y_test,
            n_train=0,
            failed=True,
            reason=str(e),
        )
    return FoldResult(
        target=target,
        view=view,
        fold=fold,
        test_positions=np.asarray(test, dtype=np.int64),
        predictions=pred,
        truth=y_test,
        importances=imp,
        r2=held_out_r2(y_test, pred),
        rmse=rmse(y_test, pred),
        n_train=n_train,
    )


def fit_view(
    view_data: pd.DataFrame,
    target_values: pd.Series,
    k_folds: int = 10,
    model_kind: str = "ensemble",
    seed: int = 42,
    n_trees: int = 100,
    view_name: str = "view",
    partitions: Optional[List[Tuple[np.ndarray, np.ndarray]]] = None,
) -> List[FoldResult]:
    """Cross-validate one model of `target_values` on `view_data`, fold by fold."""
    if not view_data.index.equals(target_values.index):
        raise ConfigurationError("View data and target values must share the same cell index")
    if partitions is None:
        partitions = fold_partitions(len(view_data), k_folds, seed)
    X = view_data.to_numpy(dtype=np.float64)
    y = target_values.to_numpy(dtype=np.float64)
    predictors = [str(c) for c in view_data.columns]
    target = str(target_values.name)
    return [
        fit_fold(X, y, predictors, tr, te, target, view_name, i, model_kind=model_kind, seed=seed, n_trees=n_trees)
        for i, (tr, te) in enumerate(partitions)
    ]
