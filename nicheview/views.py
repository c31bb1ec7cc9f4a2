"""Views and view collections.

A view is one feature matrix aligned to the cell index of the analysis:
the intrinsic view holds the cells' own features, juxta and para views hold
spatial aggregates of an intrinsic view. Collections are immutable; every
operation that adds, removes or merges views returns a new collection.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union
import logging

import numpy as np
import pandas as pd

from .aggregate import aggregate
from .errors import ConfigurationError, DataError
from .neighbors import JuxtaNeighbors, ParaWeights, build_juxta, build_para

DEFAULT_INTRINSIC_NAME = "intraview"

logger = logging.getLogger("nicheview")


class ViewKind(str, Enum):
    INTRINSIC = "intrinsic"
    JUXTA = "juxta"
    PARA = "para"


@dataclass(frozen=True)
class IntrinsicParams:
    pass


@dataclass(frozen=True)
class JuxtaParams:
    threshold: float
    source: str
    empty_policy: str = "nan"


@dataclass(frozen=True)
class ParaParams:
    bandwidth: float
    family: str
    source: str
    zoi: float = 0.0
    cutoff: float = 0.0
    empty_policy: str = "nan"


ViewParams = Union[IntrinsicParams, JuxtaParams, ParaParams]

_PARAMS_FOR_KIND = {
    ViewKind.INTRINSIC: IntrinsicParams,
    ViewKind.JUXTA: JuxtaParams,
    ViewKind.PARA: ParaParams,
}


def validate_feature_matrix(df: pd.DataFrame, what: str = "feature matrix") -> pd.DataFrame:
    """Check a feature matrix on entry and return a float64 copy."""
    if not isinstance(df, pd.DataFrame):
        raise DataError(f"{what} must be a pandas DataFrame, got {type(df).__name__}")
    if df.shape[0] == 0 or df.shape[1] == 0:
        raise DataError(f"{what} is empty (shape={df.shape})")
    if df.index.has_duplicates:
        dup = df.index[df.index.duplicated()].unique().tolist()[:5]
        raise DataError(f"{what} has duplicate cell identifiers: {dup}")
    if df.columns.has_duplicates:
        dup = df.columns[df.columns.duplicated()].unique().tolist()[:5]
        raise DataError(f"{what} has duplicate feature names: {dup}")
    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise DataError(f"{what} has non-numeric features: {non_numeric[:5]}")
    out = df.astype(np.float64)
    if not np.isfinite(out.to_numpy()).all():
        raise DataError(f"{what} contains NaN or infinite values")
    return out


@dataclass(frozen=True, eq=False)
class View:
    name: str
    kind: ViewKind
    data: pd.DataFrame
    params: ViewParams = field(default_factory=IntrinsicParams)

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise ConfigurationError(f"View name must be a non-empty string, got {self.name!r}")
        try:
            kind = ViewKind(self.kind)
        except ValueError:
            raise ConfigurationError(f"Unknown view kind {self.kind!r} for view '{self.name}'")
        object.__setattr__(self, "kind", kind)
        expected = _PARAMS_FOR_KIND[kind]
        if not isinstance(self.params, expected):
            raise ConfigurationError(
                f"View '{self.name}' of kind {kind.value} needs {expected.__name__}, got {type(self.params).__name__}"
            )
        if self.data.columns.has_duplicates:
            raise DataError(f"View '{self.name}' has duplicate feature names")
        values = self.data.to_numpy(dtype=np.float64)
        if kind is ViewKind.INTRINSIC:
            if not np.isfinite(values).all():
                raise DataError(f"Intrinsic view '{self.name}' contains NaN or infinite values")
        elif np.isinf(values).any():
            raise DataError(f"View '{self.name}' contains infinite values")

    @property
    def source(self) -> str:
        """Name of the intrinsic view this view was computed from."""
        if isinstance(self.params, (JuxtaParams, ParaParams)):
            return self.params.source
        return self.name

    @property
    def features(self) -> List[str]:
        return [str(c) for c in self.data.columns]

    def renamed(self, name: str) -> "View":
        return replace(self, name=name)

    def __repr__(self) -> str:
        return f"View(name={self.name!r}, kind={self.kind.value}, shape={self.data.shape})"


class ViewCollection:
    """Ordered, immutable set of views sharing one exact cell index."""

    __slots__ = ("_views", "_index")

    def __init__(self, views: Iterable[View]):
        views = tuple(views)
        if not views:
            raise ConfigurationError("A view collection needs at least one view")
        for v in views:
            if not isinstance(v, View):
                raise ConfigurationError(f"Expected View, got {type(v).__name__}")
        index = views[0].data.index
        seen: Dict[str, View] = {}
        for v in views:
            if v.name in seen:
                raise ConfigurationError(f"Duplicate view name '{v.name}'")
            if not v.data.index.equals(index):
                raise ConfigurationError(
                    f"View '{v.name}' has a different cell index than view '{views[0].name}'"
                )
            seen[v.name] = v
        owners: Dict[str, str] = {}
        for v in views:
            if v.kind is not ViewKind.INTRINSIC:
                continue
            for col in v.features:
                if col in owners:
                    raise DataError(
                        f"Feature '{col}' appears in intrinsic views '{owners[col]}' and '{v.name}'"
                    )
                owners[col] = v.name
        self._views = views
        self._index = index

    @property
    def index(self) -> pd.Index:
        return self._index

    @property
    def names(self) -> List[str]:
        return [v.name for v in self._views]

    def __getitem__(self, name: str) -> View:
        for v in self._views:
            if v.name == name:
                return v
        raise KeyError(f"No view named '{name}'; available: {self.names}")

    def __contains__(self, name) -> bool:
        return any(v.name == name for v in self._views)

    def __iter__(self) -> Iterator[View]:
        return iter(self._views)

    def __len__(self) -> int:
        return len(self._views)

    def __repr__(self) -> str:
        inner = ", ".join(f"{v.name}:{v.kind.value}{tuple(v.data.shape)}" for v in self._views)
        return f"ViewCollection([{inner}])"

    def intrinsic_views(self) -> List[View]:
        return [v for v in self._views if v.kind is ViewKind.INTRINSIC]

    def targets(self) -> List[str]:
        """Every intrinsic feature, in view then column order."""
        return [c for v in self.intrinsic_views() for c in v.features]

    def origin_of(self, target: str) -> View:
        """The intrinsic view a target feature belongs to."""
        for v in self.intrinsic_views():
            if target in v.data.columns:
                return v
        raise ConfigurationError(f"'{target}' is not a feature of any intrinsic view")

    def with_view(self, view: View) -> "ViewCollection":
        return ViewCollection(self._views + (view,))


def _fmt(value: float) -> str:
    return f"{float(value):g}"


def _derived_name(source: str, stem: str) -> str:
    if source == DEFAULT_INTRINSIC_NAME:
        return stem
    return f"{source}.{stem}"


def _resolve_source(collection: ViewCollection, source: Optional[str]) -> View:
    intr = collection.intrinsic_views()
    if source is None:
        if len(intr) != 1:
            raise ConfigurationError(
                f"Collection has {len(intr)} intrinsic views ({[v.name for v in intr]}); pass `source` explicitly"
            )
        return intr[0]
    if source not in collection:
        raise ConfigurationError(f"No view named '{source}'")
    view = collection[source]
    if view.kind is not ViewKind.INTRINSIC:
        raise ConfigurationError(f"Derived views are computed from intrinsic views; '{source}' is {view.kind.value}")
    return view


def initial_view(feature_matrix: pd.DataFrame, name: str = DEFAULT_INTRINSIC_NAME) -> ViewCollection:
    """Start a collection with a single intrinsic view equal to `feature_matrix`."""
    data = validate_feature_matrix(feature_matrix, what=f"feature matrix for '{name}'")
    logger.info("Intrinsic view '%s': %d cells x %d features", name, data.shape[0], data.shape[1])
    return ViewCollection([View(name=name, kind=ViewKind.INTRINSIC, data=data, params=IntrinsicParams())])


def add_juxta(
    collection: ViewCollection,
    coordinates: Optional[pd.DataFrame],
    threshold: float,
    source: Optional[str] = None,
    empty_policy: str = "nan",
    name: Optional[str] = None,
    neighbors: Optional[JuxtaNeighbors] = None,
) -> ViewCollection:
    """Return a new collection with a juxta view of the intrinsic view `source`.

    A prebuilt `neighbors` structure can be passed to avoid rebuilding the
    relation for the same coordinates; `coordinates` is then ignored.
    """
    src = _resolve_source(collection, source)
    if neighbors is None:
        if coordinates is None:
            raise ConfigurationError("add_juxta needs coordinates or a prebuilt neighbour structure")
        neighbors = build_juxta(coordinates, threshold, index=collection.index)
    threshold = neighbors.threshold
    data = aggregate(src.data, neighbors, empty_policy=empty_policy)
    view_name = name or _derived_name(src.name, f"juxtaview.{_fmt(threshold)}")
    params = JuxtaParams(threshold=float(threshold), source=src.name, empty_policy=str(empty_policy).lower())
    logger.info("Juxta view '%s' from '%s' (threshold=%s)", view_name, src.name, _fmt(threshold))
    return collection.with_view(View(name=view_name, kind=ViewKind.JUXTA, data=data, params=params))


def add_para(
    collection: ViewCollection,
    coordinates: Optional[pd.DataFrame],
    bandwidth: float,
    family: str = "gaussian",
    source: Optional[str] = None,
    zoi: float = 0.0,
    cutoff: float = 0.0,
    empty_policy: str = "nan",
    name: Optional[str] = None,
    weights: Optional[ParaWeights] = None,
) -> ViewCollection:
    """Return a new collection with a para view of the intrinsic view `source`."""
    src = _resolve_source(collection, source)
    if weights is None:
        if coordinates is None:
            raise ConfigurationError("add_para needs coordinates or prebuilt weights")
        weights = build_para(coordinates, bandwidth, family, index=collection.index, zoi=zoi, cutoff=cutoff)
    data = aggregate(src.data, weights, empty_policy=empty_policy)
    view_name = name or _derived_name(src.name, f"paraview.{weights.family}.{_fmt(weights.bandwidth)}")
    params = ParaParams(
        bandwidth=weights.bandwidth,
        family=weights.family,
        source=src.name,
        zoi=weights.zoi,
        cutoff=weights.cutoff,
        empty_policy=str(empty_policy).lower(),
    )
    logger.info("Para view '%s' from '%s' (%s, bandwidth=%s)", view_name, src.name, weights.family, _fmt(weights.bandwidth))
    return collection.with_view(View(name=view_name, kind=ViewKind.PARA, data=data, params=params))


def combine(*collections: ViewCollection) -> ViewCollection:
    """Merge collections built on the same cell index into one.

    Indices must match in membership and order; nothing is realigned.
    """
    if not collections:
        raise ConfigurationError("combine() needs at least one collection")
    ref = collections[0].index
    for i, c in enumerate(collections):
        if not isinstance(c, ViewCollection):
            raise ConfigurationError(f"Argument #{i} is not a ViewCollection")
        if not c.index.equals(ref):
            raise ConfigurationError(
                f"Collection #{i} (views {c.names}) has a different cell index than collection #0 (views {collections[0].names})"
            )
    merged: List[View] = [v for c in collections for v in c]
    return ViewCollection(merged)


def transfer_view(
    source: ViewCollection,
    view_name: str,
    destination: ViewCollection,
    new_name: Optional[str] = None,
) -> ViewCollection:
    """Copy one view from `source` into `destination`, optionally renamed."""
    if view_name not in source:
        raise ConfigurationError(f"No view named '{view_name}' in source collection {source.names}")
    if not source.index.equals(destination.index):
        raise ConfigurationError(
            f"Cannot move view '{view_name}': source and destination have different cell indices"
        )
    view = source[view_name]
    if new_name:
        view = view.renamed(new_name)
    return destination.with_view(view)


def remove_views(collection: ViewCollection, names: Sequence[str]) -> ViewCollection:
    names = [names] if isinstance(names, str) else list(names)
    unknown = [n for n in names if n not in collection]
    if unknown:
        raise ConfigurationError(f"Unknown view(s): {unknown}")
    return ViewCollection(v for v in collection if v.name not in set(names))


def select_features(collection: ViewCollection, view_name: str, columns: Sequence[str]) -> ViewCollection:
    """Restrict one view to a subset of its features, keeping the view order."""
    if view_name not in collection:
        raise ConfigurationError(f"No view named '{view_name}'")
    view = collection[view_name]
    columns = list(columns)
    missing = [c for c in columns if c not in view.data.columns]
    if missing:
        raise ConfigurationError(f"View '{view_name}' has no feature(s) {missing}")
    if not columns:
        raise ConfigurationError(f"Selecting no features would leave view '{view_name}' empty")
    narrowed = replace(view, data=view.data.loc[:, columns].copy())
    return ViewCollection(narrowed if v.name == view_name else v for v in collection)


def kind_map(collection: ViewCollection) -> Dict[str, ViewKind]:
    return {v.name: v.kind for v in collection}


def describe(collection: ViewCollection) -> pd.DataFrame:
    """One row per view: name, kind, source, n_features, params."""
    rows: List[Tuple] = []
    for v in collection:
        p = v.params
        if isinstance(p, JuxtaParams):
            desc = f"threshold={_fmt(p.threshold)}"
        elif isinstance(p, ParaParams):
            desc = f"{p.family} bandwidth={_fmt(p.bandwidth)} zoi={_fmt(p.zoi)}"
        else:
            desc = ""
        rows.append((v.name, v.kind.value, v.source, v.data.shape[1], desc))
    return pd.DataFrame(rows, columns=["view", "kind", "source", "n_features", "params"])
