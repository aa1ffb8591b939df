"""Shared test fixtures for mvsumstats."""

import numpy as np
import polars as pl
import pytest
from scipy.sparse import csc_matrix

from mvsumstats import LDBlockList


def ar1_correlation(n: int, rho: float) -> np.ndarray:
    """Correlation matrix with entries rho ** |i - j|."""
    idx = np.arange(n)
    return rho ** np.abs(idx[:, None] - idx[None, :])


@pytest.fixture
def rng():
    """Seeded random number generator."""
    return np.random.default_rng(2024)


@pytest.fixture
def dense_block():
    """5 x 5 AR(1) correlation matrix."""
    return ar1_correlation(5, 0.8)


@pytest.fixture
def sparse_block():
    """4 x 4 tridiagonal correlation matrix in sparse format."""
    matrix = np.eye(4) + 0.4 * (np.eye(4, k=1) + np.eye(4, k=-1))
    return csc_matrix(matrix)


@pytest.fixture
def eigen_block():
    """Eigen-decomposition of a 3 x 3 AR(1) correlation matrix."""
    return np.linalg.eigh(ar1_correlation(3, 0.5))


@pytest.fixture
def mixed_ld(dense_block, sparse_block, eigen_block):
    """LD pattern with one block of each representation, 12 variants in total."""
    return LDBlockList.build([dense_block, sparse_block, eigen_block])


@pytest.fixture
def mixed_ld_dense(dense_block, sparse_block, eigen_block):
    """Dense 12 x 12 version of mixed_ld."""
    dense = np.zeros((12, 12))
    dense[:5, :5] = dense_block
    dense[5:9, 5:9] = sparse_block.toarray()
    values, vectors = eigen_block
    dense[9:, 9:] = (vectors * values) @ vectors.T
    return dense


@pytest.fixture
def annotations():
    """Annotation table for 12 variants with one binary annotation."""
    return pl.DataFrame({
        'coding': [1, 0, 0, 1, 0, 0, 0, 1, 0, 0, 1, 0],
        'score': np.linspace(-1, 1, 12),
    })
