"""
Matrix operations consumed by the eigen-decomposition embedding layer.

An operation wraps a symmetric weight matrix (or something standing in for
one) and exposes exactly one of two capabilities:

    apply(X) = W @ X          used to find the largest eigenvalues of W
    solve(X) = W^{-1} @ X     used to find the smallest eigenvalues of W

Calling an operation dispatches to whichever capability its ``mode`` names, so
eigensolvers can treat both kinds uniformly as "the operator".
"""

from abc import ABC, abstractmethod
from typing import Callable

import numpy as np
import scipy.linalg
from scipy import sparse
from scipy.sparse.linalg import LinearOperator, splu

from embedding_errors import IllConditionedSolveError

APPLY = 'apply'
SOLVE = 'solve'
MODES = (APPLY, SOLVE)


def _check_square(matrix, name: str = 'matrix') -> None:
    if len(matrix.shape) != 2 or matrix.shape[0] != matrix.shape[1]:
        raise ValueError(
            f"{name} must be square, got shape {matrix.shape}"
        )


def _to_ndarray(matrix) -> np.ndarray:
    if sparse.issparse(matrix):
        return matrix.toarray()
    return np.asarray(matrix, dtype=np.float64)


class MatrixOperation(ABC):
    """
    Base class for operators over an n x n symmetric matrix.

    Subclasses set ``mode`` and implement the matching method. The other
    method raises ``NotImplementedError``.
    """

    mode = APPLY

    @property
    @abstractmethod
    def n(self) -> int:
        """Return dimension of the underlying square matrix."""

    def apply(self, probe: np.ndarray) -> np.ndarray:
        raise NotImplementedError(
            f"{type(self).__name__} does not support apply"
        )

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        raise NotImplementedError(
            f"{type(self).__name__} does not support solve"
        )

    def __call__(self, rhs: np.ndarray) -> np.ndarray:
        if self.mode == APPLY:
            return self.apply(rhs)
        return self.solve(rhs)

    def to_dense(self) -> np.ndarray:
        """
        Materialize the weight matrix as a dense array.

        The default rebuilds it column by column from the operator, inverting
        the result for solve-mode operations. Subclasses holding the matrix
        return it directly.
        """
        identity = np.eye(self.n)
        if self.mode == APPLY:
            return np.asarray(self.apply(identity), dtype=np.float64)
        try:
            return scipy.linalg.inv(self.solve(identity))
        except np.linalg.LinAlgError as exc:
            raise IllConditionedSolveError(
                "Cannot materialize weight matrix from a singular solve"
            ) from exc

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n={self.n}, mode='{self.mode}')"


class ProductOperation(MatrixOperation):
    """
    Right product with a dense or sparse symmetric matrix.

    Parameters
    ----------
    matrix : ndarray or scipy.sparse matrix
        Symmetric weight matrix, shape (n, n).
    """

    mode = APPLY

    def __init__(self, matrix):
        _check_square(matrix)
        self.matrix = matrix if sparse.issparse(matrix) else np.asarray(matrix, dtype=np.float64)

    @property
    def n(self) -> int:
        return self.matrix.shape[0]

    def apply(self, probe: np.ndarray) -> np.ndarray:
        return np.asarray(self.matrix @ probe)

    def to_dense(self) -> np.ndarray:
        return _to_ndarray(self.matrix)


class ImplicitSquareOperation(MatrixOperation):
    """
    Product with M^T M without forming it.

    Parameters
    ----------
    matrix : ndarray or scipy.sparse matrix
        Matrix M of shape (p, n). The implied weight matrix is n x n.
    """

    mode = APPLY

    def __init__(self, matrix):
        if len(matrix.shape) != 2:
            raise ValueError(f"matrix must be 2D, got shape {matrix.shape}")
        self.matrix = matrix if sparse.issparse(matrix) else np.asarray(matrix, dtype=np.float64)

    @property
    def n(self) -> int:
        return self.matrix.shape[1]

    def apply(self, probe: np.ndarray) -> np.ndarray:
        return np.asarray(self.matrix.T @ (self.matrix @ probe))

    def to_dense(self) -> np.ndarray:
        dense = _to_ndarray(self.matrix)
        return dense.T @ dense


class ImplicitSymmetricSquareOperation(MatrixOperation):
    """
    Product with M M for symmetric M, applied as two products.

    Parameters
    ----------
    matrix : ndarray or scipy.sparse matrix
        Symmetric matrix M, shape (n, n).
    """

    mode = APPLY

    def __init__(self, matrix):
        _check_square(matrix)
        self.matrix = matrix if sparse.issparse(matrix) else np.asarray(matrix, dtype=np.float64)

    @property
    def n(self) -> int:
        return self.matrix.shape[0]

    def apply(self, probe: np.ndarray) -> np.ndarray:
        return np.asarray(self.matrix @ (self.matrix @ probe))

    def to_dense(self) -> np.ndarray:
        dense = _to_ndarray(self.matrix)
        return dense @ dense


class DenseInverseOperation(MatrixOperation):
    """
    Linear solve against a dense matrix, LU-factorized once at construction.

    Parameters
    ----------
    matrix : ndarray
        Symmetric nonsingular weight matrix, shape (n, n).

    Raises
    ------
    IllConditionedSolveError
        If the LU factorization has an exactly zero pivot.
    """

    mode = SOLVE

    def __init__(self, matrix):
        _check_square(matrix)
        self.matrix = _to_ndarray(matrix)
        lu, piv = scipy.linalg.lu_factor(self.matrix, check_finite=True)
        if np.any(np.diag(lu) == 0):
            raise IllConditionedSolveError(
                "Weight matrix is singular; cannot build an inverse operation"
            )
        self._lu_piv = (lu, piv)

    @property
    def n(self) -> int:
        return self.matrix.shape[0]

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        return scipy.linalg.lu_solve(self._lu_piv, rhs)

    def to_dense(self) -> np.ndarray:
        return self.matrix


class SparseInverseOperation(MatrixOperation):
    """
    Linear solve against a sparse matrix using a sparse LU factorization.

    Parameters
    ----------
    matrix : scipy.sparse matrix
        Symmetric nonsingular weight matrix, shape (n, n).

    Raises
    ------
    IllConditionedSolveError
        If SuperLU reports the matrix as exactly singular.
    """

    mode = SOLVE

    def __init__(self, matrix):
        _check_square(matrix)
        self.matrix = sparse.csc_matrix(matrix, dtype=np.float64)
        try:
            self._lu = splu(self.matrix)
        except RuntimeError as exc:
            raise IllConditionedSolveError(
                f"Sparse LU factorization failed: {exc}"
            ) from exc

    @property
    def n(self) -> int:
        return self.matrix.shape[0]

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        return self._lu.solve(np.asarray(rhs, dtype=np.float64))

    def to_dense(self) -> np.ndarray:
        return self.matrix.toarray()


class CallableOperation(MatrixOperation):
    """
    Matrix-free operation defined by a function.

    Parameters
    ----------
    fn : callable
        Maps an (n, k) array to an (n, k) array: the product with the weight
        matrix in apply mode, the solution of the linear system in solve mode.
    matrix_size : int
        Dimension n of the implied square matrix.
    mode : str, optional
        'apply' (default) or 'solve'.

    Examples
    --------
    >>> op = CallableOperation(lambda X: A @ X, matrix_size=A.shape[0])
    """

    def __init__(
        self,
        fn: Callable[[np.ndarray], np.ndarray],
        matrix_size: int,
        mode: str = APPLY
    ):
        if mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got '{mode}'")
        if matrix_size < 1:
            raise ValueError(f"matrix_size must be positive, got {matrix_size}")
        self.fn = fn
        self.matrix_size = int(matrix_size)
        self.mode = mode

    @property
    def n(self) -> int:
        return self.matrix_size

    def apply(self, probe: np.ndarray) -> np.ndarray:
        if self.mode != APPLY:
            return super().apply(probe)
        return np.asarray(self.fn(probe))

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        if self.mode != SOLVE:
            return super().solve(rhs)
        return np.asarray(self.fn(rhs))


def as_operation(obj) -> MatrixOperation:
    """
    Wrap a matrix or linear operator in a MatrixOperation.

    Operations pass through unchanged. A scipy ``LinearOperator`` becomes an
    apply-mode CallableOperation over its ``matmat``. Dense and sparse
    matrices become a ProductOperation.
    """
    if isinstance(obj, MatrixOperation):
        return obj
    if isinstance(obj, LinearOperator):
        _check_square(obj, 'operator')
        return CallableOperation(obj.matmat, obj.shape[0])
    if sparse.issparse(obj):
        return ProductOperation(obj)
    return ProductOperation(np.asarray(obj, dtype=np.float64))
