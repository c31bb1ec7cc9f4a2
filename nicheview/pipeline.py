from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import datetime as _dt
import hashlib
import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from . import __version__
from . import io as nv_io
from .config import WorkerPool, fingerprint_run
from .errors import ConfigurationError
from .meta import combine_views
from .results import RunResult, RunSummary, TargetEntry, aggregate_run, collect_runs, summarize_folds
from .training import FoldResult, check_k_folds, check_model_kind, fit_fold, fold_partitions
from .views import (
    DEFAULT_INTRINSIC_NAME,
    JuxtaParams,
    ParaParams,
    ViewCollection,
    ViewKind,
    add_juxta,
    add_para,
    combine,
    initial_view,
    kind_map,
)
from .neighbors import build_juxta, build_para

logger = logging.getLogger("nicheview")


def _progress_iter(iterator, desc: str = "", total: Optional[int] = None, show: bool = False):
    """Rich single-line progress bar on a TTY; pass-through otherwise."""
    if not show:
        return iterator
    from rich.console import Console
    from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn, TimeRemainingColumn

    con = Console(stderr=True)
    if not con.is_terminal:
        return iterator
    prog = Progress(
        TextColumn("{task.description}: "),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn("  elapsed:"), TimeElapsedColumn(),
        TextColumn("  ETA:"), TimeRemainingColumn(),
        transient=True,
        console=con,
    )

    def _gen():
        task = prog.add_task(desc or "Working", total=total)
        with prog:
            for item in iterator:
                prog.advance(task, 1)
                yield item
    return _gen()


def _data_digest(df: pd.DataFrame) -> str:
    h = hashlib.sha256()
    h.update(pd.util.hash_pandas_object(df, index=True).to_numpy().tobytes())
    h.update("|".join(map(str, df.columns)).encode("utf-8"))
    return h.hexdigest()[:16]


def design_signature(views: ViewCollection) -> List[Dict[str, Any]]:
    """JSON-friendly description of a collection, including a content digest per view."""
    out = []
    for v in views:
        p = v.params
        params: Dict[str, Any] = {}
        if isinstance(p, JuxtaParams):
            params = {"threshold": p.threshold, "source": p.source, "empty_policy": p.empty_policy}
        elif isinstance(p, ParaParams):
            params = {
                "bandwidth": p.bandwidth, "family": p.family, "source": p.source,
                "zoi": p.zoi, "cutoff": p.cutoff, "empty_policy": p.empty_policy,
            }
        out.append({
            "name": v.name,
            "kind": v.kind.value,
            "shape": list(v.data.shape),
            "params": params,
            "digest": _data_digest(v.data),
        })
    return out


def _resolve_targets(views: ViewCollection, targets: Optional[Sequence[str]]) -> List[str]:
    available = views.targets()
    if targets is None:
        return available
    targets = [targets] if isinstance(targets, str) else list(targets)
    unknown = [t for t in targets if t not in available]
    if unknown:
        raise ConfigurationError(f"Target(s) {unknown} are not features of an intrinsic view")
    if len(set(targets)) != len(targets):
        raise ConfigurationError("Targets must be unique")
    return targets


def _unit_inputs(views: ViewCollection, target: str, view_name: str) -> Tuple[np.ndarray, List[str]]:
    """Predictor matrix of one view for one target; the target is dropped from its own intrinsic view."""
    view = views[view_name]
    data = view.data
    if view.kind is ViewKind.INTRINSIC and target in data.columns:
        data = data.drop(columns=[target])
    return data.to_numpy(dtype=np.float64), [str(c) for c in data.columns]


def plan_units(
    views: ViewCollection,
    targets: Sequence[str],
    partitions: Sequence[Tuple[np.ndarray, np.ndarray]],
    bypass_intra: bool,
    model_kind: str,
    seed: int,
    n_trees: int,
) -> Iterable:
    """Yield one delayed fit_fold call per (target, view, fold)."""
    for target in targets:
        y = views.origin_of(target).data[target].to_numpy(dtype=np.float64)
        for view in views:
            if bypass_intra and view.kind is ViewKind.INTRINSIC:
                continue
            X, predictors = _unit_inputs(views, target, view.name)
            for fold, (train, test) in enumerate(partitions):
                yield delayed(fit_fold)(
                    X, y, predictors, train, test, target, view.name, fold,
                    model_kind=model_kind, seed=seed, n_trees=n_trees,
                )


def reduce_run(
    views: ViewCollection,
    targets: Sequence[str],
    fold_results: Iterable[FoldResult],
    partitions: Sequence[Tuple[np.ndarray, np.ndarray]],
    bypass_intra: bool,
    metadata: Optional[Dict[str, Any]] = None,
) -> RunResult:
    """Fold units (in any order) → RunResult."""
    fits = summarize_folds(fold_results, len(views.index), kind_map(views))
    entries: List[TargetEntry] = []
    for target in targets:
        truth = views.origin_of(target).data[target].to_numpy(dtype=np.float64)
        per_view = {v.name: fits[(target, v.name)] for v in views if (target, v.name) in fits}
        entries.append(combine_views(per_view, truth, partitions, bypass_intra=bypass_intra, target=target))
    return aggregate_run(entries, metadata)


def run_analysis(
    views: ViewCollection,
    run_label: str,
    out_dir: str = "results",
    k_folds: int = 10,
    model_kind: str = "ensemble",
    bypass_intra: bool = False,
    seed: int = 42,
    targets: Optional[Sequence[str]] = None,
    workers: Optional[WorkerPool] = None,
    n_trees: int = 100,
    cached: bool = False,
    persist: bool = True,
    write_csv_copy: bool = True,
    show_progress: bool = False,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> RunResult:
    """Fit every (target, view, fold) unit, combine per target and persist the tables.

    All configuration and data checks run before any model is trained.
    """
    if not isinstance(views, ViewCollection):
        raise ConfigurationError(f"views must be a ViewCollection, got {type(views).__name__}")
    nv_io.run_dir(run_label, out_dir)
    kind = check_model_kind(model_kind)
    n_cells = len(views.index)
    k = check_k_folds(k_folds, n_cells)
    if isinstance(n_trees, bool) or not isinstance(n_trees, (int, np.integer)) or n_trees < 1:
        raise ConfigurationError(f"n_trees must be a positive integer, got {n_trees!r}")
    if isinstance(seed, bool) or not isinstance(seed, (int, np.integer)):
        raise ConfigurationError(f"seed must be an integer, got {seed!r}")
    tgts = _resolve_targets(views, targets)
    if bypass_intra and all(v.kind is ViewKind.INTRINSIC for v in views):
        raise ConfigurationError("bypass_intra needs at least one juxta or para view")
    workers = workers or WorkerPool()

    design = design_signature(views)
    fingerprint = fingerprint_run({
        "model": {"kind": kind, "k_folds": k, "n_trees": int(n_trees), "seed": int(seed), "bypass_intra": bool(bypass_intra)},
        "targets": tgts,
        "design": design,
    })

    def _cb(desc: str) -> None:
        if progress_callback is not None:
            progress_callback(desc)

    if cached and nv_io.exists(run_label, out_dir):
        previous = nv_io.load(run_label, out_dir)
        if previous.metadata.get("fingerprint") == fingerprint:
            logger.info("Reusing cached results for run '%s'", run_label)
            _cb("Loaded cached results")
            return previous
        logger.info("Cached results for run '%s' were produced with a different configuration; recomputing", run_label)

    partitions = fold_partitions(n_cells, k, seed)
    n_views = sum(1 for v in views if not (bypass_intra and v.kind is ViewKind.INTRINSIC))
    total = len(tgts) * n_views * k
    logger.info(
        "Run '%s': %d cells, %d target(s), %d view(s), %d folds, model=%s, bypass_intra=%s, n_jobs=%d",
        run_label, n_cells, len(tgts), n_views, k, kind, bypass_intra, workers.n_jobs,
    )
    _cb(f"Fitting {total} units")

    units = plan_units(views, tgts, partitions, bypass_intra, kind, int(seed), int(n_trees))
    n_jobs = 1 if workers.backend == "sequential" else workers.n_jobs
    # multiprocessing cannot stream results out of order
    return_as = "generator" if workers.backend == "multiprocessing" else "generator_unordered"
    stream = Parallel(
        n_jobs=n_jobs,
        backend=workers.backend,
        batch_size=workers.batch_size,
        return_as=return_as,
        verbose=0,
    )(units)
    fold_results = list(_progress_iter(stream, desc="Fitting view models", total=total, show=show_progress))
    n_failed = sum(1 for r in fold_results if r.failed)
    if n_failed:
        logger.warning("%d of %d fold unit(s) failed and were excluded", n_failed, len(fold_results))

    _cb("Combining views")
    metadata = {
        "fingerprint": fingerprint,
        "version": __version__,
        "created": _dt.datetime.now().isoformat(timespec="seconds"),
        "n_cells": n_cells,
        "k_folds": k,
        "model_kind": kind,
        "n_trees": int(n_trees),
        "seed": int(seed),
        "bypass_intra": bool(bypass_intra),
        "targets": tgts,
        "views": design,
        "failed_units": n_failed,
    }
    result = reduce_run(views, tgts, fold_results, partitions, bypass_intra, metadata)

    if persist:
        _cb("Writing results")
        path = nv_io.save(result, run_label, out_dir, write_csv_copy=write_csv_copy)
        logger.info("Results for run '%s' written to %s", run_label, path)
    _cb("Finished")
    return result


def run_repeated(
    views: ViewCollection,
    run_label: str,
    seeds: Sequence[int],
    **kwargs,
) -> Tuple[List[RunResult], RunSummary]:
    """Run the analysis once per seed (labels `<run_label>.seed<seed>`) and summarize."""
    if not seeds:
        raise ConfigurationError("run_repeated() needs at least one seed")
    results = [run_analysis(views, f"{run_label}.seed{s}", seed=int(s), **kwargs) for s in seeds]
    return results, collect_runs(results)


def build_views_from_params(
    features: Union[pd.DataFrame, Mapping[str, pd.DataFrame]],
    coordinates: pd.DataFrame,
    cfg: Dict[str, Any],
) -> ViewCollection:
    """Build intrinsic, juxta and para views for each feature matrix from the `views` config section.

    Neighbour structures are built once per parameter and shared by every
    feature matrix. All matrices must cover the same cells in the same order.
    """
    if isinstance(features, pd.DataFrame):
        features = {DEFAULT_INTRINSIC_NAME: features}
    if not features:
        raise ConfigurationError("At least one feature matrix is needed")
    vcfg = cfg.get("views", {}) or {}
    juxta_cfg = vcfg.get("juxta", {}) or {}
    para_cfg = vcfg.get("para", {}) or {}
    policy = str(vcfg.get("empty_policy", "nan"))
    family = str(para_cfg.get("family", "gaussian"))
    try:
        thresholds = [float(t) for t in (juxta_cfg.get("thresholds") or [])]
        bandwidths = [float(b) for b in (para_cfg.get("bandwidths") or [])]
        zoi = float(para_cfg.get("zoi", 0.0) or 0.0)
        cutoff = float(para_cfg.get("cutoff", 0.0) or 0.0)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid numeric value in the views config: {e}") from e

    collections = [initial_view(df, name=name) for name, df in features.items()]
    index = collections[0].index
    juxta = {t: build_juxta(coordinates, t, index=index) for t in thresholds}
    para = {b: build_para(coordinates, b, family, index=index, zoi=zoi, cutoff=cutoff) for b in bandwidths}

    built = []
    for coll in collections:
        if not coll.index.equals(index):
            raise ConfigurationError(
                f"Feature matrix '{coll.names[0]}' does not share the cell index of '{collections[0].names[0]}'"
            )
        for t, nb in juxta.items():
            coll = add_juxta(coll, None, t, empty_policy=policy, neighbors=nb)
        for b, w in para.items():
            coll = add_para(coll, None, b, family, empty_policy=policy, weights=w)
        built.append(coll)
    return combine(*built)
