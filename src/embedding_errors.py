"""
Exceptions raised by the eigen-decomposition embedding layer.

Each error also derives from the builtin exception callers would normally
catch for that kind of problem, so ``except ValueError`` around a call with a
bad ``target_dimension`` keeps working.
"""

import numpy as np


class EmbeddingError(Exception):
    """Base class for all embedding failures."""


class InvalidDimensionError(EmbeddingError, ValueError):
    """Requested dimensions are negative or exceed the matrix size."""


class UnsupportedStrategyError(EmbeddingError, ValueError):
    """Method tag is unknown or the strategy is disabled."""


class NonConvergenceError(EmbeddingError, RuntimeError):
    """Iterative eigensolver did not converge within its limits."""


class RankDeficiencyError(EmbeddingError, RuntimeError):
    """
    Orthonormalized probe subspace collapsed below the requested rank.

    Parameters
    ----------
    n_valid : int
        Rank of the probe subspace, i.e. valid eigenpairs in the window.
    n_requested : int
        Size of the requested window, target_dimension + skip.
    """

    def __init__(self, n_valid: int, n_requested: int):
        self.n_valid = n_valid
        self.n_requested = n_requested
        super().__init__(
            f"Only {n_valid} of {n_requested} eigenpairs are valid; "
            f"the probe subspace is rank deficient"
        )


class IllConditionedSolveError(EmbeddingError, np.linalg.LinAlgError):
    """Linear or least-squares system is singular or ill-conditioned."""
