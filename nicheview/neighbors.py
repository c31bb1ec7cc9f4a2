from dataclasses import dataclass
from typing import Optional, Tuple, Union
import logging

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.spatial.distance import cdist
from sklearn.neighbors import KDTree

from .errors import ConfigurationError, DataError

KERNEL_FAMILIES: Tuple[str, ...] = ("gaussian", "exponential", "linear")
COORD_COLUMNS: Tuple[str, str] = ("row", "col")

logger = logging.getLogger("nicheview")


@dataclass(frozen=True)
class JuxtaNeighbors:
    """Binary adjacency: cell j is a neighbour of cell i iff d(i, j) <= threshold, i != j."""
    index: pd.Index
    adjacency: sp.csr_matrix
    threshold: float

    def neighbors_of(self, cell) -> pd.Index:
        i = self.index.get_loc(cell)
        row = self.adjacency.getrow(i)
        return self.index[row.indices]

    def degree(self) -> np.ndarray:
        return np.asarray(self.adjacency.sum(axis=1)).ravel()


@dataclass(frozen=True)
class ParaWeights:
    """Dense kernel weights over all cell pairs, diagonal fixed at zero."""
    index: pd.Index
    weights: np.ndarray
    bandwidth: float
    family: str
    zoi: float = 0.0
    cutoff: float = 0.0

    def weight_sum(self) -> np.ndarray:
        return self.weights.sum(axis=1)


NeighborStructure = Union[JuxtaNeighbors, ParaWeights]


def _check_positive(value, what: str) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{what} must be a positive number, got {value!r}")
    if not np.isfinite(v) or v <= 0:
        raise ConfigurationError(f"{what} must be a positive number, got {value!r}")
    return v


def _check_family(family: str) -> str:
    fam = str(family).lower()
    if fam not in KERNEL_FAMILIES:
        raise ConfigurationError(
            f"Unknown kernel family {family!r}; supported: {', '.join(KERNEL_FAMILIES)}"
        )
    return fam


def coordinate_array(coordinates: pd.DataFrame, index: Optional[pd.Index] = None) -> Tuple[pd.Index, np.ndarray]:
    """Return (index, points) for the cells in `index` (default: all coordinate rows).

    Points are float64 of shape (n, 2), ordered like `index`. Any cell of
    `index` without a coordinate row raises DataError before any work is done.
    """
    if coordinates.index.has_duplicates:
        dup = coordinates.index[coordinates.index.duplicated()].unique().tolist()[:5]
        raise DataError(f"Duplicate cell identifiers in coordinates: {dup}")
    cols = [c for c in COORD_COLUMNS if c in coordinates.columns]
    if len(cols) != 2:
        if coordinates.shape[1] != 2:
            raise DataError(
                f"Coordinates need columns {list(COORD_COLUMNS)} or exactly two columns; got {list(coordinates.columns)}"
            )
        cols = list(coordinates.columns)
    if index is None:
        index = coordinates.index
    index = pd.Index(index)
    missing = index.difference(coordinates.index)
    if len(missing) > 0:
        raise DataError(
            f"{len(missing)} cell(s) have no coordinates, e.g. {missing[:5].tolist()}"
        )
    try:
        points = coordinates.loc[index, cols].to_numpy(dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise DataError(f"Coordinates must be numeric: {e}")
    if not np.isfinite(points).all():
        raise DataError("Coordinates contain NaN or infinite values")
    return index, points


def kernel_weights(distances: np.ndarray, bandwidth: float, family: str = "gaussian") -> np.ndarray:
    """Evaluate a distance kernel elementwise.

    gaussian:    exp(-d^2 / (2 l^2))
    exponential: exp(-d / l)
    linear:      max(0, 1 - d / l)
    """
    fam = _check_family(family)
    l = _check_positive(bandwidth, "bandwidth")
    d = np.asarray(distances, dtype=np.float64)
    if fam == "gaussian":
        return np.exp(-(d * d) / (2.0 * l * l))
    if fam == "exponential":
        return np.exp(-d / l)
    return np.maximum(0.0, 1.0 - d / l)


def build_juxta(coordinates: pd.DataFrame, threshold: float, index: Optional[pd.Index] = None) -> JuxtaNeighbors:
    """Neighbour relation of cells within Euclidean distance <= threshold (self excluded)."""
    thr = _check_positive(threshold, "threshold")
    index, points = coordinate_array(coordinates, index)
    n = points.shape[0]
    if n == 0:
        return JuxtaNeighbors(index=index, adjacency=sp.csr_matrix((0, 0), dtype=np.float64), threshold=thr)
    leaf = max(20, min(64, n // 10 if n >= 100 else 20))
    tree = KDTree(points, leaf_size=leaf)
    ind = tree.query_radius(points, r=thr, return_distance=False)
    rows = np.repeat(np.arange(n), [len(a) for a in ind])
    cols = np.concatenate(ind).astype(np.int64) if n else np.zeros(0, np.int64)
    keep = rows != cols
    rows, cols = rows[keep], cols[keep]
    adj = sp.csr_matrix((np.ones(len(rows), dtype=np.float64), (rows, cols)), shape=(n, n))
    adj.sum_duplicates()
    adj.sort_indices()
    isolated = int((np.diff(adj.indptr) == 0).sum())
    logger.debug("Juxta neighbours: n=%d threshold=%g edges=%d isolated=%d", n, thr, adj.nnz, isolated)
    return JuxtaNeighbors(index=index, adjacency=adj, threshold=thr)


def build_para(
    coordinates: pd.DataFrame,
    bandwidth: float,
    family: str = "gaussian",
    index: Optional[pd.Index] = None,
    zoi: float = 0.0,
    cutoff: float = 0.0,
) -> ParaWeights:
    """Dense kernel weight matrix over all cell pairs, self excluded.

    Pairs closer than `zoi` (zone of indifference) and weights below `cutoff`
    are set to zero.
    """
    fam = _check_family(family)
    l = _check_positive(bandwidth, "bandwidth")
    if zoi is None or not np.isfinite(float(zoi)) or float(zoi) < 0:
        raise ConfigurationError(f"zoi must be a non-negative number, got {zoi!r}")
    if cutoff is None or not np.isfinite(float(cutoff)) or float(cutoff) < 0:
        raise ConfigurationError(f"cutoff must be a non-negative number, got {cutoff!r}")
    index, points = coordinate_array(coordinates, index)
    dist = cdist(points, points)
    w = kernel_weights(dist, l, fam)
    if zoi > 0:
        w[dist < zoi] = 0.0
    if cutoff > 0:
        w[w < cutoff] = 0.0
    np.fill_diagonal(w, 0.0)
    logger.debug("Para weights: n=%d family=%s bandwidth=%g", len(index), fam, l)
    return ParaWeights(index=index, weights=w, bandwidth=l, family=fam, zoi=float(zoi), cutoff=float(cutoff))
