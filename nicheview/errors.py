class NicheViewError(Exception):
    """Base class for all errors raised by nicheview."""


class ConfigurationError(NicheViewError, ValueError):
    """Invalid run configuration: kernel family, fold count, mismatched view indices."""


class DataError(NicheViewError, ValueError):
    """Invalid input data: duplicate names, missing coordinates, non-finite values."""


class ModelFitError(NicheViewError, RuntimeError):
    """A single (target, view, fold) unit could not be fit.

    Raised inside one unit of work and captured into its FoldResult; it never
    aborts sibling units.
    """


class PersistenceError(NicheViewError, OSError):
    """Reading or writing a run-label directory failed."""
