"""
Exceptions raised while turning PMDI output into posterior similarity matrices
and consensus maps.
"""


class PMDIError(Exception):
    """Base class for errors raised by the PMDI post-processing modules."""


class ShapeError(PMDIError, ValueError):
    """The trace does not split into datasets with a common observation count."""


class InvalidClusterCountError(PMDIError, ValueError):
    """Requested number of clusters is outside [1, n_obs]."""


class InvalidIndexError(PMDIError, IndexError):
    """Requested reference matrix does not exist."""
