from typing import Tuple
import logging

import numpy as np
import pandas as pd

from .errors import ConfigurationError
from .neighbors import JuxtaNeighbors, NeighborStructure, ParaWeights

EMPTY_POLICIES: Tuple[str, ...] = ("nan", "zero")
DEFAULT_MIN_WEIGHT = 1e-12

logger = logging.getLogger("nicheview")


def _check_policy(empty_policy: str) -> str:
    pol = str(empty_policy).lower()
    if pol not in EMPTY_POLICIES:
        raise ConfigurationError(
            f"Unknown empty_policy {empty_policy!r}; supported: {', '.join(EMPTY_POLICIES)}"
        )
    return pol


def _row_totals(structure: NeighborStructure) -> np.ndarray:
    if isinstance(structure, JuxtaNeighbors):
        return structure.degree()
    if isinstance(structure, ParaWeights):
        return structure.weight_sum()
    raise ConfigurationError(f"Unsupported neighbour structure: {type(structure).__name__}")


def isolated_cells(structure: NeighborStructure, min_weight: float = DEFAULT_MIN_WEIGHT) -> pd.Index:
    """Cells that receive the sentinel row: no neighbours, or total kernel weight below `min_weight`."""
    totals = _row_totals(structure)
    if isinstance(structure, JuxtaNeighbors):
        empty = totals == 0
    else:
        empty = totals < min_weight
    return structure.index[empty]


def aggregate(
    feature_matrix: pd.DataFrame,
    structure: NeighborStructure,
    empty_policy: str = "nan",
    min_weight: float = DEFAULT_MIN_WEIGHT,
) -> pd.DataFrame:
    """Spatially aggregate `feature_matrix` over a neighbour structure.

    Juxta: unweighted mean of neighbour rows. Para: weighted mean of all
    other rows, weights normalized per row. Rows without neighbours (or with
    negligible total weight) become NaN or zero depending on `empty_policy`.
    The result keeps the input index and columns in the same order.
    """
    pol = _check_policy(empty_policy)
    if not feature_matrix.index.equals(structure.index):
        raise ConfigurationError(
            "Neighbour structure was built for a different cell index than the feature matrix"
        )
    X = feature_matrix.to_numpy(dtype=np.float64)
    totals = _row_totals(structure)

    if isinstance(structure, JuxtaNeighbors):
        empty = totals == 0
        sums = np.asarray(structure.adjacency @ X)
    else:
        empty = totals < min_weight
        sums = structure.weights @ X

    denom = np.where(empty, 1.0, totals)
    out = sums / denom[:, None]
    out[empty] = np.nan if pol == "nan" else 0.0

    n_empty = int(empty.sum())
    if n_empty:
        logger.info(
            "%d of %d cell(s) have no neighbours; filled with %s",
            n_empty, len(empty), "NaN" if pol == "nan" else "zeros",
        )
    return pd.DataFrame(out, index=feature_matrix.index.copy(), columns=feature_matrix.columns.copy())
