"""Second-stage combination of per-view out-of-fold predictions.

For one target, each view's out-of-fold prediction becomes one predictor of
a linear combiner. Two combiners are compared: intrinsic views only, and all
views. Their performance is itself cross-validated over the same fold
partition, so both R² values are held-out estimates.
"""
from typing import List, Mapping, Optional, Sequence, Tuple
import logging
import warnings

import numpy as np
import statsmodels.api as sm
from sklearn.linear_model import LinearRegression

from .results import TargetEntry, ViewEntry, ViewFit
from .training import held_out_r2, rmse

INTRINSIC = "intrinsic"

logger = logging.getLogger("nicheview")


def _cv_combiner(
    fits: Sequence[ViewFit],
    truth: np.ndarray,
    partitions: Sequence[Tuple[np.ndarray, np.ndarray]],
) -> Tuple[float, float]:
    X = np.column_stack([f.oof for f in fits])
    pred = np.empty_like(truth, dtype=np.float64)
    for train, test in partitions:
        model = LinearRegression()
        model.fit(X[train], truth[train])
        pred[test] = model.predict(X[test])
    r2 = held_out_r2(truth, pred)
    err = rmse(truth, pred)
    return (float("nan") if r2 is None else r2), (float("nan") if err is None else err)


def _ols_contributions(fits: Sequence[ViewFit], truth: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Full-data OLS of the truth on view predictions.

    Returns (coefficients, p-values, contributions in percent).
    """
    X = np.column_stack([f.oof for f in fits])
    design = sm.add_constant(X, has_constant="add")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        model = sm.OLS(truth, design).fit()
    coef = np.asarray(model.params, dtype=np.float64)[1:]
    pvals = np.asarray(model.pvalues, dtype=np.float64)[1:]

    sd_y = float(np.std(truth, ddof=1)) if len(truth) > 1 else 0.0
    nan = np.full(len(fits), np.nan)
    if sd_y <= 0:
        return coef, pvals, nan
    standardized = np.abs(coef * X.std(axis=0, ddof=1) / sd_y)
    total = float(standardized.sum())
    if not np.isfinite(total) or total <= 0:
        return coef, pvals, nan
    return coef, pvals, 100.0 * standardized / total


def combine_views(
    view_fits: Mapping[str, ViewFit],
    truth: np.ndarray,
    partitions: Sequence[Tuple[np.ndarray, np.ndarray]],
    bypass_intra: bool = False,
    target: Optional[str] = None,
) -> TargetEntry:
    """Build the target entry from the per-view fits of one target.

    Failed views are left out of both combiners. With `bypass_intra` no
    intrinsic view enters the combiner, the intrinsic-only R² is undefined
    and the gain is zero.
    """
    truth = np.asarray(truth, dtype=np.float64)
    fits = list(view_fits.values())
    if target is None:
        targets = {f.target for f in fits}
        if len(targets) != 1:
            raise ValueError(f"View fits span several targets: {sorted(targets)}")
        target = targets.pop()

    usable = [f for f in fits if not f.failed and not (bypass_intra and f.kind == INTRINSIC)]
    intrinsic = [f for f in usable if f.kind == INTRINSIC]

    nan = float("nan")
    if usable:
        multi_r2, multi_rmse = _cv_combiner(usable, truth, partitions)
        coef, pvals, contrib = _ols_contributions(usable, truth)
    else:
        multi_r2 = multi_rmse = nan
        coef = pvals = contrib = np.zeros(0)
        logger.warning("No usable view for target=%s; multi-view performance undefined", target)

    if bypass_intra:
        intra_r2 = intra_rmse = nan
        gain_r2 = gain_rmse = 0.0
    else:
        if intrinsic:
            intra_r2, intra_rmse = _cv_combiner(intrinsic, truth, partitions)
        else:
            intra_r2 = intra_rmse = nan
        gain_r2 = multi_r2 - intra_r2
        gain_rmse = intra_rmse - multi_rmse

    by_view = {f.view: i for i, f in enumerate(usable)}
    entries: List[ViewEntry] = []
    for f in fits:
        entry = ViewEntry(view=f.view, kind=f.kind, r2=f.r2, rmse=f.rmse, failed=f.failed)
        i = by_view.get(f.view)
        if i is not None:
            entry.coefficient = float(coef[i])
            entry.p_value = float(pvals[i])
            entry.contribution = float(contrib[i])
        entries.append(entry)

    importances = [
        (f.view, predictor, score)
        for f in fits if not f.failed
        for predictor, score in f.importances.items()
    ]
    return TargetEntry(
        target=target,
        intra_r2=intra_r2,
        multi_r2=multi_r2,
        gain_r2=gain_r2,
        intra_rmse=intra_rmse,
        multi_rmse=multi_rmse,
        gain_rmse=gain_rmse,
        views=entries,
        combiner_inputs=tuple(f.view for f in usable),
        importances=importances,
    )
