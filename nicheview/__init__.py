__version__ = "0.3.0"

from .errors import ConfigurationError, DataError, ModelFitError, NicheViewError, PersistenceError
from .neighbors import JuxtaNeighbors, ParaWeights, build_juxta, build_para, kernel_weights
from .aggregate import aggregate
from .views import (
    View,
    ViewCollection,
    ViewKind,
    add_juxta,
    add_para,
    combine,
    initial_view,
    remove_views,
    select_features,
    transfer_view,
)
from .training import FoldResult, fit_fold, fit_view, fold_partitions
from .meta import combine_views
from .results import (
    RunResult,
    aggregate_run,
    collect_runs,
    contribution_matrix,
    importance_matrix,
    performance_matrix,
)
from .io import load, save
from .config import WorkerPool, load_params_yaml
from .pipeline import build_views_from_params, run_analysis, run_repeated
