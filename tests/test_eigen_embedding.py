"""
Unit tests for the eigen-decomposition embedding dispatch layer.

Tests verify:
1. Identity matrix eigenvalues and orthonormality for every strategy
2. Diagonal matrix windows in apply and solve modes
3. Agreement between strategies
4. Dimension boundaries and validation
5. Rank deficiency, non-convergence and unsupported strategy errors
6. Reproducibility with injected seeds
"""

import dataclasses

import numpy as np
import pytest
import sys
from pathlib import Path
from scipy import sparse
from scipy.sparse.linalg import ArpackNoConvergence, aslinearoperator

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import eigen_embedding
from eigen_embedding import (
    DenseDirectEmbedding,
    EigenMethod,
    EmbeddingResult,
    RandomizedEmbedding,
    SparseIterativeEmbedding,
    available_methods,
    embed,
    get_strategy,
)
from embedding_errors import (
    IllConditionedSolveError,
    InvalidDimensionError,
    NonConvergenceError,
    RankDeficiencyError,
    UnsupportedStrategyError,
)
from matrix_operations import CallableOperation, DenseInverseOperation, SparseInverseOperation

ALL_METHODS = list(EigenMethod)


def create_low_rank_psd(n=40, rank=6, seed=42):
    """Create a PSD matrix G @ G.T of the given rank."""
    rng = np.random.default_rng(seed)
    G = rng.standard_normal((n, rank))
    return G @ G.T


def create_spd_matrix(n=8, seed=0):
    """Create a well conditioned symmetric positive definite matrix."""
    rng = np.random.default_rng(seed)
    G = rng.standard_normal((n, n))
    return G @ G.T + n * np.eye(n)


def assert_orthonormal(vectors, atol=1e-4):
    k = vectors.shape[1]
    np.testing.assert_allclose(vectors.T @ vectors, np.eye(k), atol=atol)


class TestEigenMethod:
    """Tests for method tag parsing."""

    def test_members_and_values(self):
        assert EigenMethod.parse(EigenMethod.RANDOMIZED) is EigenMethod.RANDOMIZED
        assert EigenMethod.parse('dense_direct') is EigenMethod.DENSE_DIRECT
        assert EigenMethod.parse('Sparse-Iterative') is EigenMethod.SPARSE_ITERATIVE

    def test_legacy_names(self):
        assert EigenMethod.parse('ARPACK') is EigenMethod.SPARSE_ITERATIVE
        assert EigenMethod.parse('EIGEN_DENSE_SELFADJOINT_SOLVER') is EigenMethod.DENSE_DIRECT

    def test_unknown_tag_raises(self):
        with pytest.raises(UnsupportedStrategyError, match="Unknown"):
            EigenMethod.parse('lobpcg')
        with pytest.raises(UnsupportedStrategyError):
            EigenMethod.parse(3)


class TestIdentityMatrix:
    """Every strategy returns unit eigenvalues for the identity."""

    @pytest.mark.parametrize('method', [EigenMethod.DENSE_DIRECT, EigenMethod.SPARSE_ITERATIVE])
    def test_exact_strategies(self, method):
        result = embed(method, np.eye(30), target_dimension=3, skip=2)

        np.testing.assert_allclose(result.eigenvalues, np.ones(3), atol=1e-6)
        assert_orthonormal(result.eigenvectors, atol=1e-6)
        assert result.method is method

    def test_randomized(self):
        result = embed(EigenMethod.RANDOMIZED, np.eye(30), target_dimension=3, skip=5,
                       random_state=0)

        np.testing.assert_allclose(result.eigenvalues, np.ones(3), atol=1e-3)
        assert_orthonormal(result.eigenvectors)
        assert result.n_valid == 3

    def test_four_by_four_scenario(self):
        """n=4 identity, two eigenpairs after skipping one."""
        result = embed('dense_direct', np.eye(4), target_dimension=2, skip=1)

        np.testing.assert_allclose(result.eigenvalues, [1.0, 1.0])
        V = result.eigenvectors
        assert V.shape == (4, 2)
        assert_orthonormal(V, atol=1e-12)
        # Any rotation inside the eigenspace is acceptable; check the projector
        P = V @ V.T
        np.testing.assert_allclose(P @ P, P, atol=1e-12)
        np.testing.assert_allclose(np.trace(P), 2.0)


class TestDiagonalMatrix:
    """Strictly increasing diagonal entries give known windows."""

    d = np.arange(1.0, 31.0)

    @pytest.mark.parametrize('method', [EigenMethod.DENSE_DIRECT, EigenMethod.SPARSE_ITERATIVE])
    def test_largest_window(self, method):
        result = embed(method, np.diag(self.d), target_dimension=3, skip=2)

        # Five largest are d[25:30]; the first two of that window are skipped.
        # skip drops from the head of the ascending window (see DESIGN.md, skip semantics)
        np.testing.assert_allclose(result.eigenvalues, self.d[27:30], rtol=1e-8)
        np.testing.assert_allclose(
            np.abs(result.eigenvectors), np.eye(30)[:, 27:30], atol=1e-6
        )

    @pytest.mark.parametrize('method', [EigenMethod.DENSE_DIRECT, EigenMethod.SPARSE_ITERATIVE])
    def test_smallest_window(self, method):
        operation = DenseInverseOperation(np.diag(self.d))
        result = embed(method, operation, target_dimension=3, skip=1)

        # Smallest eigenpair skipped, next three kept
        np.testing.assert_allclose(result.eigenvalues, self.d[1:4], rtol=1e-8)
        np.testing.assert_allclose(
            np.abs(result.eigenvectors), np.eye(30)[:, 1:4], atol=1e-6
        )

    def test_sparse_inverse_operation(self):
        operation = SparseInverseOperation(sparse.diags(self.d))
        result = embed('sparse_iterative', operation, target_dimension=2, skip=0)
        np.testing.assert_allclose(result.eigenvalues, self.d[:2], rtol=1e-8)


class TestStrategyAgreement:
    """The three strategies are substitutable."""

    def test_low_rank_psd_top_eigenpairs(self):
        A = create_low_rank_psd(n=40, rank=6)
        results = [
            embed(method, A, target_dimension=2, skip=4, random_state=3)
            if method != EigenMethod.DENSE_DIRECT
            else embed(method, A, target_dimension=2, skip=4)
            for method in ALL_METHODS
        ]

        exact = np.linalg.eigvalsh(A)[-2:]
        for result in results:
            assert result.eigenvectors.shape == (40, 2)
            np.testing.assert_allclose(result.eigenvalues, exact, rtol=1e-6)
            assert_orthonormal(result.eigenvectors)

        # Eigenvectors agree up to sign
        reference = results[0].eigenvectors
        for result in results[1:]:
            overlap = np.abs(np.sum(result.eigenvectors * reference, axis=0))
            np.testing.assert_allclose(overlap, np.ones(2), atol=1e-5)

    @pytest.mark.parametrize('skip', [0, 1])
    def test_indefinite_matrix_largest_algebraic(self, skip):
        A = np.diag([-10.0, 1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0])
        dense = embed('dense_direct', A, target_dimension=2, skip=skip)
        iterative = embed('sparse_iterative', A, target_dimension=2, skip=skip,
                          random_state=0)

        np.testing.assert_allclose(dense.eigenvalues, [6.0, 7.0])
        np.testing.assert_allclose(iterative.eigenvalues, dense.eigenvalues, rtol=1e-8)

    def test_linear_operator_input(self):
        A = create_spd_matrix(n=20, seed=5)
        dense = embed('dense_direct', A, target_dimension=3)
        iterative = embed('sparse_iterative', aslinearoperator(A), target_dimension=3)
        np.testing.assert_allclose(iterative.eigenvalues, dense.eigenvalues, rtol=1e-8)


class TestDimensions:
    """Boundary handling of target_dimension and skip."""

    @pytest.mark.parametrize('method', ALL_METHODS)
    def test_zero_target_dimension(self, method):
        result = embed(method, np.eye(6), target_dimension=0, skip=2)

        assert result.eigenvectors.shape == (6, 0)
        assert result.eigenvalues.shape == (0,)
        assert result.n_valid == 0
        assert not result.is_partial

    @pytest.mark.parametrize('method', ALL_METHODS)
    def test_full_spectrum_is_legal(self, method):
        A = create_spd_matrix(n=8)
        result = embed(method, A, target_dimension=3, skip=5)

        assert result.eigenvectors.shape == (8, 3)
        np.testing.assert_allclose(result.eigenvalues, np.linalg.eigvalsh(A)[5:], rtol=1e-6)

    @pytest.mark.parametrize('method', ALL_METHODS)
    def test_exceeding_size_raises(self, method):
        with pytest.raises(InvalidDimensionError, match="exceeds"):
            embed(method, np.eye(8), target_dimension=4, skip=5)

    @pytest.mark.parametrize('target_dimension, skip', [(-1, 0), (2, -1), (2.5, 0), (True, 0)])
    def test_invalid_values_raise(self, target_dimension, skip):
        with pytest.raises(InvalidDimensionError):
            embed('dense_direct', np.eye(5), target_dimension, skip)

    def test_invalid_dimension_is_value_error(self):
        with pytest.raises(ValueError):
            embed('randomized', np.eye(3), target_dimension=4)


class TestFailures:
    """Errors surface to the caller instead of empty results."""

    def test_rank_one_matrix_is_partial(self):
        A = np.ones((10, 10))
        result = embed('randomized', A, target_dimension=2, skip=1, random_state=0)

        assert result.n_valid == 1
        assert result.n_valid < result.target_dimension
        assert result.is_partial
        np.testing.assert_array_equal(result.valid_mask, [False, True])
        np.testing.assert_allclose(result.eigenvalues[1], 10.0, rtol=1e-10)
        with pytest.raises(RankDeficiencyError) as excinfo:
            result.check_rank()
        assert excinfo.value.n_valid == 1
        assert excinfo.value.n_requested == 3

    @pytest.mark.parametrize('target_dimension, skip, mask', [
        (1, 2, [True]),
        (3, 0, [False, False, True]),
    ])
    def test_rank_deficiency_survives_skip(self, target_dimension, skip, mask):
        result = embed('randomized', np.ones((10, 10)), target_dimension=target_dimension,
                       skip=skip, random_state=0)

        np.testing.assert_array_equal(result.valid_mask, mask)
        np.testing.assert_allclose(result.eigenvalues[-1], 10.0, rtol=1e-10)
        assert result.subspace_rank == 1
        assert result.n_requested == 3
        assert result.is_partial
        with pytest.raises(RankDeficiencyError, match="Only 1 of 3"):
            result.check_rank()

    def test_full_rank_check_passes(self):
        result = embed('dense_direct', np.eye(4), target_dimension=2, skip=1)
        assert result.subspace_rank == result.n_requested == 3
        assert result.check_rank() is result

    def test_unknown_method(self):
        with pytest.raises(UnsupportedStrategyError):
            embed('power_iteration', np.eye(4), target_dimension=2)

    def test_disabled_method(self):
        with pytest.raises(UnsupportedStrategyError, match="not available"):
            embed('arpack', np.eye(4), target_dimension=2, disabled_methods=['sparse_iterative'])
        assert EigenMethod.SPARSE_ITERATIVE not in available_methods(['arpack'])

    def test_unregistered_method(self, monkeypatch):
        monkeypatch.delitem(eigen_embedding.STRATEGIES, EigenMethod.SPARSE_ITERATIVE)
        with pytest.raises(UnsupportedStrategyError):
            get_strategy(EigenMethod.SPARSE_ITERATIVE)

    def test_non_convergence(self, monkeypatch):
        def failing_eigsh(*args, **kwargs):
            raise ArpackNoConvergence("no convergence", np.zeros(1), np.zeros((20, 1)))

        monkeypatch.setattr(eigen_embedding, 'eigsh', failing_eigsh)
        with pytest.raises(NonConvergenceError, match="1 of 3") as excinfo:
            embed('sparse_iterative', np.eye(20), target_dimension=3)
        assert isinstance(excinfo.value.__cause__, ArpackNoConvergence)

    def test_ill_conditioned_refinement(self):
        calls = []

        def fn(X):
            calls.append(X.shape)
            if len(calls) == 1:
                return X
            return np.full(X.shape, np.nan)

        operation = CallableOperation(fn, matrix_size=10)
        with pytest.raises(IllConditionedSolveError):
            embed('randomized', operation, target_dimension=2, skip=2, random_state=0)


class TestReproducibility:
    """Identical inputs and seeds give identical results."""

    def test_randomized_seed(self):
        A = create_spd_matrix(n=30, seed=9)
        first = embed('randomized', A, target_dimension=3, skip=5, random_state=17)
        second = embed('randomized', A, target_dimension=3, skip=5, random_state=17)

        np.testing.assert_array_equal(first.eigenvalues, second.eigenvalues)
        np.testing.assert_array_equal(first.eigenvectors, second.eigenvectors)

    def test_sparse_seed(self):
        A = create_spd_matrix(n=30, seed=9)
        first = embed('sparse_iterative', A, target_dimension=3, random_state=17)
        second = embed('sparse_iterative', A, target_dimension=3, random_state=17)

        np.testing.assert_array_equal(first.eigenvalues, second.eigenvalues)
        np.testing.assert_array_equal(first.eigenvectors, second.eigenvectors)

    def test_strategy_objects(self):
        assert isinstance(get_strategy('randomized', random_state=1), RandomizedEmbedding)
        assert isinstance(get_strategy('arpack', tol=1e-8), SparseIterativeEmbedding)
        assert isinstance(get_strategy('dense_direct'), DenseDirectEmbedding)


class TestEmbeddingResult:
    """Tests for the result container."""

    def test_immutable(self):
        result = embed('dense_direct', np.eye(5), target_dimension=2)

        with pytest.raises(dataclasses.FrozenInstanceError):
            result.eigenvalues = np.zeros(2)
        with pytest.raises(ValueError):
            result.eigenvalues[0] = 5.0
        assert not result.eigenvectors.flags.writeable

    def test_unpacking(self):
        result = embed('dense_direct', np.diag([1.0, 2.0, 3.0]), target_dimension=2)
        eigenvectors, eigenvalues = result
        np.testing.assert_allclose(eigenvalues, [2.0, 3.0])
        assert eigenvectors.shape == (3, 2)

    def test_shape_validation(self):
        with pytest.raises(ValueError, match="does not match"):
            EmbeddingResult(np.zeros((4, 2)), np.zeros(3))
        with pytest.raises(ValueError, match="valid_mask"):
            EmbeddingResult(np.zeros((4, 2)), np.zeros(2), valid_mask=[True])
        with pytest.raises(ValueError, match="2D"):
            EmbeddingResult(np.zeros(4), np.zeros(4))
        with pytest.raises(ValueError, match="n_requested"):
            EmbeddingResult(np.zeros((4, 2)), np.zeros(2), n_requested=1)
        with pytest.raises(ValueError, match="inconsistent"):
            EmbeddingResult(np.zeros((4, 2)), np.zeros(2), valid_mask=[False, True],
                            n_requested=3, subspace_rank=3)

    def test_empty(self):
        result = EmbeddingResult.empty(7, EigenMethod.RANDOMIZED)
        assert result.eigenvectors.shape == (7, 0)
        assert result.method is EigenMethod.RANDOMIZED
        assert result.n_requested == 0
        assert not result.is_partial
