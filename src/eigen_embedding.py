"""
Eigen-decomposition based embedding.

Computes ``target_dimension`` extremal eigenpairs of a symmetric weight matrix
after skipping ``skip`` of them, using one of three interchangeable strategies:

    SPARSE_ITERATIVE  ARPACK through scipy.sparse.linalg.eigsh
    RANDOMIZED        random projection + Rayleigh-Ritz (RandomizedEigensolver)
    DENSE_DIRECT      full dense decomposition with scipy.linalg.eigh

The matrix is seen through a MatrixOperation. Apply-mode operations select
the largest eigenvalues, solve-mode operations the smallest. Every strategy
builds the window of the m = target_dimension + skip most extreme eigenpairs,
sorts it ascending by eigenvalue and returns entries [skip, skip + target_dimension).
"""

import numbers
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple, Type

import numpy as np
import scipy.linalg
from scipy.sparse.linalg import ArpackNoConvergence, LinearOperator, eigsh

from embedding_errors import (
    InvalidDimensionError,
    NonConvergenceError,
    RankDeficiencyError,
    UnsupportedStrategyError,
)
from matrix_operations import MatrixOperation, SOLVE, as_operation
from randomized_eigensolver import RANK_TOLERANCE, RandomizedEigensolver, RandomState


class EigenMethod(Enum):
    """Eigendecomposition strategies."""

    SPARSE_ITERATIVE = 'sparse_iterative'
    RANDOMIZED = 'randomized'
    DENSE_DIRECT = 'dense_direct'

    @classmethod
    def parse(cls, method) -> 'EigenMethod':
        """
        Resolve a method tag given as a member, value or name.

        Raises
        ------
        UnsupportedStrategyError
            If the tag matches no method.
        """
        if isinstance(method, cls):
            return method
        if isinstance(method, str):
            key = method.strip().lower().replace('-', '_')
            if key in _METHOD_ALIASES:
                return _METHOD_ALIASES[key]
        raise UnsupportedStrategyError(
            f"Unknown eigendecomposition method {method!r}; expected one of "
            f"{[m.value for m in cls]}"
        )


_METHOD_ALIASES = {
    'sparse_iterative': EigenMethod.SPARSE_ITERATIVE,
    'arpack': EigenMethod.SPARSE_ITERATIVE,
    'randomized': EigenMethod.RANDOMIZED,
    'dense_direct': EigenMethod.DENSE_DIRECT,
    'eigen_dense_selfadjoint_solver': EigenMethod.DENSE_DIRECT,
}


def _readonly(array: np.ndarray) -> np.ndarray:
    array = np.array(array, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class EmbeddingResult:
    """
    Eigenvectors and eigenvalues returned by an embedding.

    Parameters
    ----------
    eigenvectors : ndarray, shape (n, target_dimension)
        Eigenvectors as columns.
    eigenvalues : ndarray, shape (target_dimension,)
        Eigenvalues in ascending order, aligned with the columns.
    method : EigenMethod, optional
        Strategy that produced the result.
    valid_mask : ndarray of bool, shape (target_dimension,), optional
        False for columns lost to rank deficiency. All True by default.
    n_requested : int, optional
        Size of the eigenpair window, target_dimension + skip. Defaults to
        target_dimension.
    subspace_rank : int, optional
        Number of valid eigenpairs in the whole window, skipped ones
        included. Defaults to n_requested minus the invalid columns.

    Attributes
    ----------
    n_valid : int
        Number of valid columns.
    is_partial : bool
        True if any eigenpair of the window is degenerate, even when
        ``skip`` dropped it.
    """

    eigenvectors: np.ndarray
    eigenvalues: np.ndarray
    method: Optional[EigenMethod] = None
    valid_mask: Optional[np.ndarray] = field(default=None)
    n_requested: Optional[int] = None
    subspace_rank: Optional[int] = None

    def __post_init__(self):
        eigenvectors = np.asarray(self.eigenvectors, dtype=np.float64)
        eigenvalues = np.asarray(self.eigenvalues, dtype=np.float64)
        if eigenvectors.ndim != 2:
            raise ValueError(
                f"eigenvectors must be 2D, got shape {eigenvectors.shape}"
            )
        if eigenvalues.shape != (eigenvectors.shape[1],):
            raise ValueError(
                f"eigenvalues shape {eigenvalues.shape} does not match "
                f"{eigenvectors.shape[1]} eigenvector columns"
            )
        if self.valid_mask is None:
            valid_mask = np.ones(eigenvalues.shape, dtype=bool)
        else:
            valid_mask = np.asarray(self.valid_mask, dtype=bool)
            if valid_mask.shape != eigenvalues.shape:
                raise ValueError(
                    f"valid_mask shape {valid_mask.shape} does not match "
                    f"eigenvalues shape {eigenvalues.shape}"
                )

        n_invalid = int(np.count_nonzero(~valid_mask))
        n_requested = len(eigenvalues) if self.n_requested is None else int(self.n_requested)
        if n_requested < len(eigenvalues):
            raise ValueError(
                f"n_requested ({n_requested}) is smaller than the "
                f"{len(eigenvalues)} returned eigenpairs"
            )
        if self.subspace_rank is None:
            subspace_rank = n_requested - n_invalid
        else:
            subspace_rank = int(self.subspace_rank)
            if not 0 <= subspace_rank <= n_requested - n_invalid:
                raise ValueError(
                    f"subspace_rank {subspace_rank} is inconsistent with "
                    f"{n_invalid} invalid of {n_requested} requested eigenpairs"
                )

        object.__setattr__(self, 'eigenvectors', _readonly(eigenvectors))
        object.__setattr__(self, 'eigenvalues', _readonly(eigenvalues))
        object.__setattr__(self, 'valid_mask', _readonly(valid_mask))
        object.__setattr__(self, 'n_requested', n_requested)
        object.__setattr__(self, 'subspace_rank', subspace_rank)

    @classmethod
    def empty(cls, n: int, method: Optional[EigenMethod] = None) -> 'EmbeddingResult':
        """Return a result with zero columns for an n-dimensional space."""
        return cls(np.zeros((n, 0)), np.zeros(0), method)

    @property
    def target_dimension(self) -> int:
        """Return number of eigenpairs."""
        return len(self.eigenvalues)

    @property
    def n_valid(self) -> int:
        """Return number of valid eigenpairs."""
        return int(np.count_nonzero(self.valid_mask))

    @property
    def is_partial(self) -> bool:
        """Return True if some eigenpairs of the window are degenerate."""
        return self.subspace_rank < self.n_requested

    def check_rank(self) -> 'EmbeddingResult':
        """
        Return self, or raise if the result is partial.

        Raises
        ------
        RankDeficiencyError
            If some eigenpairs were lost to rank deficiency.
        """
        if self.is_partial:
            raise RankDeficiencyError(self.subspace_rank, self.n_requested)
        return self

    def __iter__(self):
        # Allows ``eigenvectors, eigenvalues = result``
        return iter((self.eigenvectors, self.eigenvalues))


def _check_dimensions(n: int, target_dimension: int, skip: int) -> None:
    for name, value in (('target_dimension', target_dimension), ('skip', skip)):
        if isinstance(value, bool) or not isinstance(value, numbers.Integral):
            raise InvalidDimensionError(
                f"{name} must be an integer, got {value!r}"
            )
        if value < 0:
            raise InvalidDimensionError(
                f"{name} must be non-negative, got {value}"
            )
    if target_dimension + skip > n:
        raise InvalidDimensionError(
            f"target_dimension + skip ({target_dimension + skip}) exceeds "
            f"matrix size {n}"
        )


def _extremal_window(
    eigenvalues: np.ndarray,
    eigenvectors: np.ndarray,
    mode: str,
    n_pairs: int
) -> Tuple[np.ndarray, np.ndarray]:
    """Select the n_pairs most extreme entries of an ascending full spectrum."""
    if mode == SOLVE:
        keep = slice(0, n_pairs)
    else:
        keep = slice(len(eigenvalues) - n_pairs, len(eigenvalues))
    return eigenvalues[keep], eigenvectors[:, keep]


class EigenEmbeddingStrategy(ABC):
    """
    Common contract of the eigendecomposition strategies.

    Subclasses implement ``_embed`` for validated, non-empty requests.
    """

    method: EigenMethod = None

    def embed(
        self,
        operation,
        target_dimension: int,
        skip: int = 0
    ) -> EmbeddingResult:
        """
        Compute ``target_dimension`` eigenpairs after skipping ``skip``.

        Parameters
        ----------
        operation : MatrixOperation, matrix or LinearOperator
            Weight matrix or operator over it.
        target_dimension : int
            Number of eigenpairs to return.
        skip : int, optional
            Number of eigenpairs to drop from the head of the window.

        Returns
        -------
        EmbeddingResult
        """
        operation = as_operation(operation)
        _check_dimensions(operation.n, target_dimension, skip)
        if target_dimension == 0:
            return EmbeddingResult.empty(operation.n, self.method)
        return self._embed(operation, target_dimension, skip)

    @abstractmethod
    def _embed(
        self,
        operation: MatrixOperation,
        target_dimension: int,
        skip: int
    ) -> EmbeddingResult:
        ...


class DenseDirectEmbedding(EigenEmbeddingStrategy):
    """Full dense eigendecomposition of the materialized weight matrix."""

    method = EigenMethod.DENSE_DIRECT

    def _embed(self, operation, target_dimension, skip):
        dense = operation.to_dense()
        eigenvalues, eigenvectors = scipy.linalg.eigh(dense)
        eigenvalues, eigenvectors = _extremal_window(
            eigenvalues, eigenvectors, operation.mode, target_dimension + skip
        )
        keep = slice(skip, skip + target_dimension)
        return EmbeddingResult(eigenvectors[:, keep], eigenvalues[keep], self.method,
                               n_requested=target_dimension + skip)


class SparseIterativeEmbedding(EigenEmbeddingStrategy):
    """
    Implicitly restarted Lanczos (ARPACK) through scipy.sparse.linalg.eigsh.

    Parameters
    ----------
    tol : float, optional
        Relative accuracy for eigenvalues, 0 means machine precision.
    maxiter : int, optional
        Maximum number of Arnoldi update iterations.
    random_state : int or numpy.random.Generator, optional
        Seed for the ARPACK starting vector. ARPACK picks its own if None.
    """

    method = EigenMethod.SPARSE_ITERATIVE

    def __init__(
        self,
        tol: float = 0,
        maxiter: Optional[int] = None,
        random_state: RandomState = None
    ):
        self.tol = tol
        self.maxiter = maxiter
        self.random_state = random_state

    def _embed(self, operation, target_dimension, skip):
        n = operation.n
        n_pairs = target_dimension + skip

        if n_pairs >= n:
            # ARPACK needs k < n; the whole spectrum is wanted anyway
            eigenvalues, eigenvectors = scipy.linalg.eigh(operation.to_dense())
            eigenvalues, eigenvectors = _extremal_window(
                eigenvalues, eigenvectors, operation.mode, n_pairs
            )
        else:
            eigenvalues, eigenvectors = self._arpack(operation, n_pairs)

        keep = slice(skip, skip + target_dimension)
        return EmbeddingResult(eigenvectors[:, keep], eigenvalues[keep], self.method,
                               n_requested=target_dimension + skip)

    def _arpack(self, operation: MatrixOperation, n_pairs: int) -> Tuple[np.ndarray, np.ndarray]:
        n = operation.n

        def matvec(x):
            return np.asarray(operation(np.reshape(x, (n, 1)))).ravel()

        linear_operator = LinearOperator(
            (n, n), matvec=matvec, matmat=operation, dtype=np.float64
        )

        v0 = None
        if self.random_state is not None:
            v0 = np.random.default_rng(self.random_state).standard_normal(n)

        # Largest algebraic for W itself; the smallest of W are the largest
        # magnitude of W^{-1}
        which = 'LM' if operation.mode == SOLVE else 'LA'

        try:
            mu, vectors = eigsh(
                linear_operator, k=n_pairs, which=which,
                tol=self.tol, maxiter=self.maxiter, v0=v0
            )
        except ArpackNoConvergence as exc:
            raise NonConvergenceError(
                f"ARPACK converged {len(exc.eigenvalues)} of {n_pairs} "
                f"requested eigenpairs"
            ) from exc

        if operation.mode == SOLVE:
            with np.errstate(divide='ignore'):
                eigenvalues = 1.0 / mu
        else:
            eigenvalues = mu

        order = np.argsort(eigenvalues, kind='stable')
        return eigenvalues[order], vectors[:, order]


class RandomizedEmbedding(EigenEmbeddingStrategy):
    """
    Randomized projection with Rayleigh-Ritz refinement.

    ``skip`` doubles as the oversampling count of the probe matrix.

    Parameters
    ----------
    random_state : int or numpy.random.Generator, optional
        Seed or generator for the probe matrix.
    rank_tol : float, optional
        Gram-Schmidt residual norm below which the subspace is truncated.
    """

    method = EigenMethod.RANDOMIZED

    def __init__(
        self,
        random_state: RandomState = None,
        rank_tol: float = RANK_TOLERANCE
    ):
        self.random_state = random_state
        self.rank_tol = rank_tol

    def _embed(self, operation, target_dimension, skip):
        solver = RandomizedEigensolver(
            operation,
            n_components=target_dimension,
            n_oversamples=skip,
            random_state=self.random_state,
            rank_tol=self.rank_tol
        )
        eigenvalues, eigenvectors, valid = solver.compute()
        return EmbeddingResult(
            eigenvectors, eigenvalues, self.method, valid,
            n_requested=solver.n_probes, subspace_rank=solver.rank
        )


STRATEGIES: Dict[EigenMethod, Type[EigenEmbeddingStrategy]] = {
    EigenMethod.SPARSE_ITERATIVE: SparseIterativeEmbedding,
    EigenMethod.RANDOMIZED: RandomizedEmbedding,
    EigenMethod.DENSE_DIRECT: DenseDirectEmbedding,
}


def available_methods(disabled_methods: Iterable = ()) -> Tuple[EigenMethod, ...]:
    """Return the methods that can be used, minus the disabled ones."""
    disabled = {EigenMethod.parse(m) for m in disabled_methods}
    return tuple(m for m in EigenMethod if m in STRATEGIES and m not in disabled)


def get_strategy(
    method,
    disabled_methods: Iterable = (),
    **options
) -> EigenEmbeddingStrategy:
    """
    Instantiate the strategy for a method tag.

    Parameters
    ----------
    method : EigenMethod or str
        Method tag.
    disabled_methods : iterable, optional
        Method tags to treat as unavailable.
    **options
        Keyword arguments for the strategy constructor.

    Raises
    ------
    UnsupportedStrategyError
        If the method is unknown or not available.
    """
    method = EigenMethod.parse(method)
    if method not in available_methods(disabled_methods):
        raise UnsupportedStrategyError(
            f"Eigendecomposition method '{method.value}' is not available"
        )
    return STRATEGIES[method](**options)


def embed(
    method,
    operation,
    target_dimension: int,
    skip: int = 0,
    disabled_methods: Iterable = (),
    **options
) -> EmbeddingResult:
    """
    Compute an eigen-decomposition based embedding.

    Parameters
    ----------
    method : EigenMethod or str
        One of SPARSE_ITERATIVE, RANDOMIZED, DENSE_DIRECT.
    operation : MatrixOperation, matrix or LinearOperator
        Weight matrix or operator over it. Raw matrices are multiplied, so
        they select the largest eigenvalues. Pass a solve-mode operation
        (e.g. DenseInverseOperation) for the smallest.
    target_dimension : int
        Number of eigenpairs to return.
    skip : int, optional
        Number of eigenpairs to drop from the head of the ascending window of
        target_dimension + skip extreme eigenpairs. Default 0.
    disabled_methods : iterable, optional
        Method tags to treat as unavailable.
    **options
        Strategy options: ``random_state`` (randomized, sparse),
        ``rank_tol`` (randomized), ``tol`` and ``maxiter`` (sparse).

    Returns
    -------
    EmbeddingResult

    Raises
    ------
    InvalidDimensionError
        If target_dimension or skip is negative or their sum exceeds n.
    UnsupportedStrategyError
        If the method is unknown or disabled.
    NonConvergenceError
        If ARPACK fails to converge.
    IllConditionedSolveError
        If the randomized Rayleigh-Ritz system is singular.

    Examples
    --------
    >>> result = embed('randomized', W, target_dimension=2, skip=5, random_state=0)
    >>> result.eigenvalues.shape
    (2,)
    """
    strategy = get_strategy(method, disabled_methods, **options)
    return strategy.embed(operation, target_dimension, skip)
