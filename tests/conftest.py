"""
Pytest fixtures for nicheview tests.

Provides small synthetic spatial datasets: a three-cell line used for exact
neighbour arithmetic, and a regular grid with spatially smooth features.
"""

import numpy as np
import pandas as pd
import pytest

from nicheview.logging_utils import close_logger


@pytest.fixture
def line_coords():
    """Cells at (0,0), (1,0), (5,0)."""
    return pd.DataFrame(
        {"row": [0.0, 1.0, 5.0], "col": [0.0, 0.0, 0.0]},
        index=pd.Index(["c1", "c2", "c3"], name="cell_id"),
    )


@pytest.fixture
def line_features(line_coords):
    return pd.DataFrame({"x": [10.0, 12.0, 100.0]}, index=line_coords.index)


@pytest.fixture
def grid_coords():
    """12 x 12 unit grid (144 cells)."""
    rr, cc = np.meshgrid(np.arange(12), np.arange(12), indexing="ij")
    idx = pd.Index([f"cell{i:03d}" for i in range(rr.size)], name="cell_id")
    return pd.DataFrame({"row": rr.ravel().astype(float), "col": cc.ravel().astype(float)}, index=idx)


@pytest.fixture
def grid_features(grid_coords):
    """
    Three features on the grid:
    - a: smooth function of position plus small noise
    - b: noisy linear function of a
    - c: pure noise
    """
    rng = np.random.default_rng(0)
    n = len(grid_coords)
    r = grid_coords["row"].to_numpy()
    c = grid_coords["col"].to_numpy()
    a = np.sin(r / 3.0) + np.cos(c / 4.0) + 0.1 * rng.normal(size=n)
    b = 0.5 * a + 0.3 * rng.normal(size=n)
    noise = rng.normal(size=n)
    return pd.DataFrame({"a": a, "b": b, "c": noise}, index=grid_coords.index)


@pytest.fixture
def noise_dataset():
    """200 cells at random positions whose features are independent noise."""
    rng = np.random.default_rng(7)
    n = 200
    idx = pd.Index([f"n{i:03d}" for i in range(n)], name="cell_id")
    coords = pd.DataFrame(rng.uniform(0, 20, size=(n, 2)), index=idx, columns=["row", "col"])
    feats = pd.DataFrame(rng.normal(size=(n, 3)), index=idx, columns=["f1", "f2", "f3"])
    return feats, coords


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    close_logger()
