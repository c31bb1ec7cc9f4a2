import copy
import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml

from .errors import ConfigurationError

JOBLIB_BACKENDS: Tuple[str, ...] = ("loky", "threading", "multiprocessing", "sequential")

DEFAULT_PARAMS: Dict[str, Any] = {
    'views': {
        'juxta': {'thresholds': [15.0]},
        'para': {'bandwidths': [50.0], 'family': 'gaussian', 'zoi': 0.0, 'cutoff': 0.0},
        'empty_policy': 'nan',
    },
    'model': {
        'kind': 'ensemble',
        'k_folds': 10,
        'n_trees': 100,
        'seed': 42,
        'bypass_intra': False,
    },
    'workers': {
        'n_jobs': 1,
        'backend': 'loky',
        'batch_size': 'auto',
    },
    'io': {
        'out_dir': 'results',
        'write_csv_copy': True,
        'cached': False,
    },
    'logging': {
        'level': 'INFO',
    },
}

# Keys whose values change the numbers of a run; used to decide whether a
# persisted result can be reused.
RUN_PARAM_KEYS: Tuple[str, ...] = (
    'model.kind', 'model.k_folds', 'model.n_trees', 'model.seed', 'model.bypass_intra',
    'views.juxta.thresholds',
    'views.para.bandwidths', 'views.para.family', 'views.para.zoi', 'views.para.cutoff',
    'views.empty_policy',
    'targets', 'design',
)


def _workspace_root() -> str:
    return os.path.dirname(os.path.dirname(__file__))


def _params_path() -> str:
    root = _workspace_root()
    return os.path.join(root, 'config', 'params.yaml')


def _deep_update(base: Dict[str, Any], upd: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in upd.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_update(base[k], v)
        else:
            base[k] = v
    return base


def load_params_yaml(path: Optional[str] = None) -> Dict[str, Any]:
    """Load params YAML merged over DEFAULT_PARAMS.

    Without `path`, `config/params.yaml` is used when present.
    """
    cfg = copy.deepcopy(DEFAULT_PARAMS)
    p = path or _params_path()
    if not os.path.isfile(p):
        if path is not None:
            raise ConfigurationError(f"Config file not found: {path}")
        return cfg
    try:
        with open(p, 'r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {p}: {e}") from e
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Top level of {p} must be a mapping")
    return _deep_update(cfg, loaded)


def _get_by_path(cfg: Dict[str, Any], dotted: str) -> Any:
    cur: Any = cfg
    for part in dotted.split('.'):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


def run_config_subset(cfg: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _get_by_path(cfg, k) for k in RUN_PARAM_KEYS}


def fingerprint_run(cfg: Dict[str, Any]) -> str:
    sub = run_config_subset(cfg)
    payload = json.dumps(sub, ensure_ascii=False, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class WorkerPool:
    """Execution settings for fold units, passed explicitly into a run."""
    n_jobs: int = 1
    backend: str = 'loky'
    batch_size: Any = 'auto'

    def __post_init__(self):
        if self.backend not in JOBLIB_BACKENDS:
            raise ConfigurationError(f"Unknown worker backend {self.backend!r}; supported: {', '.join(JOBLIB_BACKENDS)}")
        if not isinstance(self.n_jobs, int) or self.n_jobs == 0 or self.n_jobs < -1:
            raise ConfigurationError(f"n_jobs must be a positive integer or -1, got {self.n_jobs!r}")

    @classmethod
    def from_params(cls, cfg: Dict[str, Any]) -> "WorkerPool":
        w = cfg.get('workers', {}) or {}
        try:
            n_jobs = int(w.get('n_jobs', 1))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"workers.n_jobs must be an integer, got {w.get('n_jobs')!r}") from e
        return cls(
            n_jobs=n_jobs,
            backend=str(w.get('backend', 'loky')),
            batch_size=w.get('batch_size', 'auto'),
        )
