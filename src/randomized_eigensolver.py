"""
Randomized eigensolver for matrix-free eigenvalue computation.

Approximates the extremal eigenpairs of a symmetric matrix seen only through a
MatrixOperation, using two operator applications and one small dense
eigendecomposition:

    1. Draw a Gaussian probe matrix O (n x m) with the Box-Muller transform
    2. Project: Y = op(O)
    3. Orthonormalize Y with modified Gram-Schmidt
    4. Rayleigh-Ritz: solve Y @ B = op(Y) for B (m x m) through a QR factorization
    5. Eigendecompose B and lift its eigenvectors back with Y

where m = n_components + n_oversamples.
"""

import numpy as np
import scipy.linalg
from typing import Tuple, Union

from embedding_errors import IllConditionedSolveError, InvalidDimensionError
from matrix_operations import MatrixOperation, SOLVE

RANK_TOLERANCE = 1e-4

# Uniform variates are (k + 1) / (UNIFORM_MAX + 2) for k in [0, UNIFORM_MAX],
# which stays strictly inside (0, 1).
UNIFORM_MAX = 2 ** 31 - 1

# Relative size of the smallest R diagonal entry below which the
# Rayleigh-Ritz least-squares system is treated as singular.
CONDITION_TOLERANCE = 1e-10

RandomState = Union[None, int, np.random.Generator]


def _open_uniform(rng: np.random.Generator, size) -> np.ndarray:
    k = rng.integers(0, UNIFORM_MAX, size=size, endpoint=True)
    return (k + 1.0) / (UNIFORM_MAX + 2.0)


def box_muller_normal(
    n_rows: int,
    n_cols: int,
    random_state: RandomState = None
) -> np.ndarray:
    """
    Draw a standard normal matrix using the Box-Muller transform.

    Columns are filled in pairs: for uniforms u1, u2 in (0, 1),
        len = sqrt(-2 ln u1)
        O[:, j]   = len * cos(2 pi u2)
        O[:, j+1] = len * sin(2 pi u2)
    An odd trailing column takes only the cosine term.

    Parameters
    ----------
    n_rows, n_cols : int
        Shape of the probe matrix.
    random_state : int or numpy.random.Generator, optional
        Seed or generator. A Generator is used as is, so consecutive calls
        sharing one generator draw independent matrices.

    Returns
    -------
    O : ndarray, shape (n_rows, n_cols)
    """
    rng = np.random.default_rng(random_state)
    O = np.empty((n_rows, n_cols))

    n_pairs = n_cols // 2
    if n_pairs > 0:
        u1 = _open_uniform(rng, (n_rows, n_pairs))
        u2 = _open_uniform(rng, (n_rows, n_pairs))
        length = np.sqrt(-2.0 * np.log(u1))
        O[:, 0:2 * n_pairs:2] = length * np.cos(2.0 * np.pi * u2)
        O[:, 1:2 * n_pairs:2] = length * np.sin(2.0 * np.pi * u2)

    if n_cols % 2 == 1:
        u1 = _open_uniform(rng, n_rows)
        u2 = _open_uniform(rng, n_rows)
        O[:, -1] = np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)

    return O


def orthonormalize_columns(Y: np.ndarray, tol: float = RANK_TOLERANCE) -> int:
    """
    Orthonormalize the columns of Y in place by modified Gram-Schmidt.

    Columns are processed left to right. When a residual norm drops below
    ``tol`` that column and every column after it are zeroed and processing
    stops, so the returned rank is the index of the first deficient column.

    Parameters
    ----------
    Y : ndarray, shape (n, m)
        Matrix to orthonormalize. Overwritten.
    tol : float, optional
        Absolute residual norm below which a column counts as dependent.

    Returns
    -------
    rank : int
        Number of leading orthonormal columns.
    """
    n_cols = Y.shape[1]
    for i in range(n_cols):
        for j in range(i):
            r = np.dot(Y[:, i], Y[:, j])
            Y[:, i] -= r * Y[:, j]
        norm = np.linalg.norm(Y[:, i])
        if norm < tol:
            Y[:, i:] = 0.0
            return i
        Y[:, i] /= norm
    return n_cols


def rayleigh_ritz_matrix(Q: np.ndarray, AQ: np.ndarray) -> np.ndarray:
    """
    Solve Q @ B = AQ in the least-squares sense via QR.

    The R factor check only matters for a general basis. A Q coming out of
    orthonormalize_columns has |R_ii| = 1, so on the solver path only the
    non-finite check on AQ can fail.

    Parameters
    ----------
    Q : ndarray, shape (n, r)
        Orthonormal basis.
    AQ : ndarray, shape (n, r)
        Operator applied to the basis.

    Returns
    -------
    B : ndarray, shape (r, r)
        Symmetrized Rayleigh quotient matrix.

    Raises
    ------
    IllConditionedSolveError
        If the system is singular or its right-hand side is not finite.
    """
    if not np.all(np.isfinite(AQ)):
        raise IllConditionedSolveError(
            "Operator returned non-finite values during Rayleigh-Ritz refinement"
        )

    q, R = scipy.linalg.qr(Q, mode='economic')
    diag = np.abs(np.diag(R))
    if diag.size > 0 and diag.min() <= CONDITION_TOLERANCE * diag.max():
        raise IllConditionedSolveError(
            f"Rayleigh-Ritz system is ill-conditioned "
            f"(min |R_ii| = {diag.min():.3e}, max |R_ii| = {diag.max():.3e})"
        )

    B = scipy.linalg.solve_triangular(R, q.T @ AQ)

    # Force exact symmetry
    return (B + B.T) / 2


class RandomizedEigensolver:
    """
    Matrix-free randomized eigenvalue decomposition for symmetric matrices.

    Parameters
    ----------
    operation : MatrixOperation
        Operator over the weight matrix. Apply-mode operations yield the
        largest eigenvalues, solve-mode operations the smallest.
    n_components : int
        Number of eigenpairs to return.
    n_oversamples : int, optional
        Extra probe directions, dropped from the head of the ascending
        spectrum before returning. Default 0.
    random_state : int or numpy.random.Generator, optional
        Seed or generator for the probe matrix.
    rank_tol : float, optional
        Gram-Schmidt residual norm below which the subspace is truncated.

    Examples
    --------
    >>> solver = RandomizedEigensolver(ProductOperation(A), n_components=10,
    ...                                n_oversamples=5, random_state=0)
    >>> eigenvalues, eigenvectors, valid = solver.compute()
    """

    def __init__(
        self,
        operation: MatrixOperation,
        n_components: int,
        n_oversamples: int = 0,
        random_state: RandomState = None,
        rank_tol: float = RANK_TOLERANCE
    ):
        if n_components < 0:
            raise InvalidDimensionError(
                f"n_components must be non-negative, got {n_components}"
            )
        if n_oversamples < 0:
            raise InvalidDimensionError(
                f"n_oversamples must be non-negative, got {n_oversamples}"
            )
        if n_components + n_oversamples > operation.n:
            raise InvalidDimensionError(
                f"n_components + n_oversamples ({n_components + n_oversamples}) "
                f"exceeds matrix size {operation.n}"
            )

        self.operation = operation
        self.n_components = n_components
        self.n_oversamples = n_oversamples
        self.rank_tol = rank_tol
        self.rng = np.random.default_rng(random_state)
        self.rank = None

    @property
    def n_probes(self) -> int:
        """Return number of probe directions m."""
        return self.n_components + self.n_oversamples

    def compute(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Compute approximate eigenpairs.

        Returns
        -------
        eigenvalues : ndarray, shape (n_components,)
            Eigenvalues of the weight matrix in ascending order. NaN where the
            slot is degenerate.
        eigenvectors : ndarray, shape (n, n_components)
            Corresponding eigenvectors as columns. Zero where degenerate.
        valid : ndarray of bool, shape (n_components,)
            False for slots lost to rank deficiency.
        """
        n = self.operation.n
        m = self.n_probes

        eigenvalues = np.full(m, np.nan)
        eigenvectors = np.zeros((n, m))
        valid = np.zeros(m, dtype=bool)

        if m == 0:
            self.rank = 0
            return eigenvalues, eigenvectors, valid

        # Stage 1: Random projection onto the dominant subspace
        O = box_muller_normal(n, m, self.rng)
        Y = np.array(self.operation(O), dtype=np.float64)
        if Y.shape != (n, m):
            raise ValueError(
                f"Operation returned shape {Y.shape}, expected {(n, m)}"
            )

        rank = orthonormalize_columns(Y, self.rank_tol)
        self.rank = rank

        # Stage 2: Rayleigh-Ritz on the valid leading columns
        if rank > 0:
            Q = Y[:, :rank]
            B = rayleigh_ritz_matrix(Q, np.asarray(self.operation(Q), dtype=np.float64))
            mu, W = scipy.linalg.eigh(B)

            # Stage 3: Lift back; degenerate slots stay at the least dominant end
            lifted = Q @ W
            if self.operation.mode == SOLVE:
                # Dominant eigenvalues mu of W^{-1} are the smallest of W
                with np.errstate(divide='ignore'):
                    lam = 1.0 / mu
                order = np.argsort(lam, kind='stable')
                eigenvalues[:rank] = lam[order]
                eigenvectors[:, :rank] = lifted[:, order]
                valid[:rank] = True
            else:
                eigenvalues[m - rank:] = mu
                eigenvectors[:, m - rank:] = lifted
                valid[m - rank:] = True

        keep = slice(self.n_oversamples, m)
        return eigenvalues[keep], eigenvectors[:, keep], valid[keep]
