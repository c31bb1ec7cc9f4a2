import os
import sys
import warnings as _warnings

_warnings.filterwarnings("ignore", category=FutureWarning)
_warnings.filterwarnings("ignore", category=FutureWarning, module=r"anndata.*")
_warnings.filterwarnings("ignore", category=FutureWarning, module=r"sklearn.utils.deprecation")

import click
import pandas as pd
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from . import __version__
from .config import WorkerPool, load_params_yaml
from .errors import ConfigurationError, NicheViewError
from .io import load, read_coordinates, read_feature_matrix
from .logging_utils import setup_logger
from .pipeline import build_views_from_params, run_analysis
from .results import performance_matrix
from .views import DEFAULT_INTRINSIC_NAME, describe


console = Console()


def _show_table(df: pd.DataFrame, title: str, float_fmt: str = "{:.3f}") -> None:
    table = Table(title=title, show_lines=False)
    cols = [str(df.index.name or "")] + [str(c) for c in df.columns]
    for col in cols:
        table.add_column(col)
    for idx, row in df.iterrows():
        cells = [str(idx)]
        for v in row.tolist():
            cells.append(float_fmt.format(v) if isinstance(v, float) else str(v))
        table.add_row(*cells)
    console.print(table)


def _feature_name(path: str, n_paths: int) -> str:
    if n_paths == 1:
        return DEFAULT_INTRINSIC_NAME
    stem = os.path.basename(path)
    return stem.split(".", 1)[0]


def _config_value(section: dict, key: str, cast, default):
    value = section.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Config value {key}={value!r} is not a valid {cast.__name__}") from e


def _read_features(paths) -> dict:
    mats = {}
    for p in paths:
        name = _feature_name(p, len(paths))
        if name in mats:
            raise ConfigurationError(
                f"Feature files '{mats[name][0]}' and '{p}' would both become view '{name}'; rename one of them"
            )
        mats[name] = (p, read_feature_matrix(p))
    return {name: df for name, (_, df) in mats.items()}


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="nicheview", message="%(prog)s %(version)s")
def main():
    """NicheView: multi-view spatial relationship modeling."""


@main.command("run")
@click.option("--features", "features", required=True, multiple=True, type=click.Path(exists=True), help="Cells x features table (CSV/Parquet/h5ad). Repeat for several intrinsic views.")
@click.option("--coordinates", required=True, type=click.Path(exists=True), help="Coordinates table with cell_id,row,col (or h5ad with obsm['spatial']).")
@click.option("--out-dir", type=click.Path(), help="Results root directory (default: io.out_dir from the config).")
@click.option("--run-label", required=True, help="Name of the results directory under --out-dir.")
@click.option("--config", type=click.Path(exists=True), help="YAML params file merged over the defaults.")
@click.option("--k-folds", type=int, help="Number of cross-validation folds.")
@click.option("--model", "model_kind", type=click.Choice(["ensemble", "linear"], case_sensitive=False), help="Per-view model family.")
@click.option("--bypass-intra", is_flag=True, default=None, help="Leave the intrinsic views out of the combiner.")
@click.option("--seed", type=int, help="Base random seed.")
@click.option("--n-jobs", type=int, help="Parallel workers for fold units.")
@click.option("--cached", is_flag=True, default=None, help="Reuse persisted results when the configuration is unchanged.")
@click.option("--no-show-sample", is_flag=True, help="Do not show the view summary before fitting.")
def run_cmd(features, coordinates, out_dir, run_label, config, k_folds, model_kind, bypass_intra, seed, n_jobs, cached, no_show_sample):
    """Build views, fit all models and write performance/importance tables."""
    try:
        cfg = load_params_yaml(config)
        model_cfg = cfg.get("model", {})
        io_cfg = cfg.get("io", {})
        if k_folds is not None:
            model_cfg["k_folds"] = k_folds
        if model_kind is not None:
            model_cfg["kind"] = model_kind.lower()
        if bypass_intra:
            model_cfg["bypass_intra"] = True
        if seed is not None:
            model_cfg["seed"] = seed
        if n_jobs is not None:
            cfg.setdefault("workers", {})["n_jobs"] = n_jobs
        if cached:
            io_cfg["cached"] = True
        run_kwargs = dict(
            k_folds=_config_value(model_cfg, "k_folds", int, 10),
            model_kind=str(model_cfg.get("kind", "ensemble")),
            bypass_intra=bool(model_cfg.get("bypass_intra", False)),
            seed=_config_value(model_cfg, "seed", int, 42),
            n_trees=_config_value(model_cfg, "n_trees", int, 100),
            workers=WorkerPool.from_params(cfg),
            cached=bool(io_cfg.get("cached", False)),
            write_csv_copy=bool(io_cfg.get("write_csv_copy", True)),
        )
    except NicheViewError as e:
        console.print(f"[red]Error: {escape(str(e))}")
        sys.exit(1)
    out_dir = out_dir or io_cfg.get("out_dir", "results")
    os.makedirs(out_dir, exist_ok=True)
    setup_logger(os.path.join(out_dir, run_label), level=str(cfg.get("logging", {}).get("level", "INFO")), console=False)

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        t = progress.add_task("Reading inputs", total=None)
        try:
            mats = _read_features(features)
            coords = read_coordinates(coordinates)
            progress.update(t, description="Building views")
            views = build_views_from_params(mats, coords, cfg)
            if not no_show_sample:
                _show_table(describe(views).set_index("view"), "Views")

            def _cb(desc: str):
                progress.update(t, description=desc)

            result = run_analysis(
                views,
                run_label,
                out_dir=out_dir,
                progress_callback=_cb,
                **run_kwargs,
            )
            progress.update(t, description="Finished")
        except NicheViewError as e:
            progress.update(t, description="Error")
            console.print(f"[red]Error: {escape(str(e))}")
            sys.exit(1)

    console.print("[green]Done.")
    _show_table(performance_matrix(result, ("intra_r2", "multi_r2", "gain_r2")), f"Performance ({run_label})")
    console.print(f"- results: {os.path.join(out_dir, run_label)}")


@main.command("show")
@click.option("--out-dir", default="results", show_default=True, type=click.Path(exists=True), help="Results root directory.")
@click.option("--run-label", required=True, help="Run to display.")
@click.option("--contributions", is_flag=True, help="Also show per-view contributions.")
def show_cmd(out_dir, run_label, contributions):
    """Print the persisted performance tables of a run."""
    try:
        result = load(run_label, out_dir)
    except NicheViewError as e:
        console.print(f"[red]Error: {escape(str(e))}")
        sys.exit(1)
    _show_table(performance_matrix(result), f"Performance ({run_label})")
    if contributions:
        contrib = result.performance.pivot(index="target", columns="view", values="contribution")
        _show_table(contrib, "Contributions (%)", float_fmt="{:.1f}")


if __name__ == "__main__":
    main()
