"""
Block-diagonal LD correlation matrices.

Each LD block implements the scipy LinearOperator interface, so downstream
code only ever multiplies by a block or extracts a sub-matrix from it,
regardless of whether the block is stored densely, sparsely, or as a
truncated eigen-decomposition.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import cached_property
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl
from scipy.sparse import csc_matrix, issparse
from scipy.sparse.linalg import LinearOperator
from sksparse.cholmod import CholmodNotPositiveDefiniteError, cholesky

# Ridge added to sparse blocks before Cholesky factorization, so that
# singular (but PSD) correlation matrices can be factored
CHOLESKY_RIDGE = 1e-8


class LDBlock(LinearOperator, ABC):
    """Symmetric PSD correlation matrix over one contiguous run of variants."""

    @property
    @abstractmethod
    def size(self) -> int:
        """Number of variants in the block."""

    @property
    def shape(self):
        return (self.size, self.size)

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(np.float64)

    def _matvec(self, x: np.ndarray) -> np.ndarray:
        return self._matmat(x.reshape(-1, 1)).reshape(x.shape)

    def _rmatvec(self, x: np.ndarray) -> np.ndarray:
        return self._matvec(x)

    @abstractmethod
    def _matmat(self, X: np.ndarray) -> np.ndarray:
        """Multiply the block by a matrix with one row per variant."""

    @abstractmethod
    def submatrix(self, indices: np.ndarray) -> np.ndarray:
        """Dense correlation sub-matrix for block-local indices."""

    @abstractmethod
    def truncate(self, num_variants: int) -> "LDBlock":
        """Block restricted to its first num_variants variants."""

    @abstractmethod
    def sample_noise(self, rng: np.random.Generator, num_columns: int) -> np.ndarray:
        """Draw num_columns independent MVN(0, block) vectors, returned column-wise."""

    def correlations(self, index: int) -> np.ndarray:
        """Correlation of one variant with every variant in the block."""
        indicator = np.zeros(self.size)
        indicator[index] = 1
        return self @ indicator

    def diagonal(self) -> np.ndarray:
        return np.array([self.submatrix(np.array([i]))[0, 0] for i in range(self.size)])


@dataclass(eq=False)
class DenseLDBlock(LDBlock):
    """LD block stored as a dense numpy array."""
    matrix: np.ndarray

    def __post_init__(self):
        self.matrix = np.asarray(self.matrix, dtype=float)
        if self.matrix.ndim != 2 or self.matrix.shape[0] != self.matrix.shape[1]:
            raise ValueError(f"LD block must be square, got shape {self.matrix.shape}")
        if not np.allclose(self.matrix, self.matrix.T):
            raise ValueError("LD block must be symmetric")

    @property
    def size(self) -> int:
        return self.matrix.shape[0]

    def _matmat(self, X: np.ndarray) -> np.ndarray:
        return self.matrix @ X

    def submatrix(self, indices: np.ndarray) -> np.ndarray:
        return self.matrix[np.ix_(indices, indices)]

    def correlations(self, index: int) -> np.ndarray:
        return self.matrix[:, index].copy()

    def diagonal(self) -> np.ndarray:
        return np.diag(self.matrix).copy()

    def truncate(self, num_variants: int) -> "DenseLDBlock":
        return DenseLDBlock(self.matrix[:num_variants, :num_variants])

    @cached_property
    def _factor(self) -> np.ndarray:
        """F such that F F' equals the block, from its eigen-decomposition."""
        eigenvalues, eigenvectors = np.linalg.eigh(self.matrix)
        return eigenvectors * np.sqrt(np.clip(eigenvalues, 0, None))

    def sample_noise(self, rng: np.random.Generator, num_columns: int) -> np.ndarray:
        white_noise = rng.standard_normal((self._factor.shape[1], num_columns))
        return self._factor @ white_noise


@dataclass(eq=False)
class SparseLDBlock(LDBlock):
    """LD block stored as a scipy sparse matrix."""
    matrix: csc_matrix

    def __post_init__(self):
        self.matrix = csc_matrix(self.matrix, dtype=float)
        if self.matrix.shape[0] != self.matrix.shape[1]:
            raise ValueError(f"LD block must be square, got shape {self.matrix.shape}")

    @property
    def size(self) -> int:
        return self.matrix.shape[0]

    def _matmat(self, X: np.ndarray) -> np.ndarray:
        return np.asarray(self.matrix @ X)

    def submatrix(self, indices: np.ndarray) -> np.ndarray:
        return self.matrix[indices][:, indices].toarray()

    def correlations(self, index: int) -> np.ndarray:
        return self.matrix[:, [index]].toarray().reshape(-1)

    def diagonal(self) -> np.ndarray:
        return self.matrix.diagonal()

    def truncate(self, num_variants: int) -> "SparseLDBlock":
        return SparseLDBlock(self.matrix[:num_variants, :num_variants])

    @cached_property
    def _factor(self):
        """Sparse Cholesky factorization of the (ridged) block, or a dense factor."""
        try:
            return cholesky(self.matrix, beta=CHOLESKY_RIDGE)
        except CholmodNotPositiveDefiniteError:
            logging.warning(
                f"Sparse LD block of size {self.size} is not positive definite; "
                "using its eigen-decomposition to draw noise"
            )
            return DenseLDBlock(self.matrix.toarray())._factor

    def sample_noise(self, rng: np.random.Generator, num_columns: int) -> np.ndarray:
        factor = self._factor
        if isinstance(factor, np.ndarray):
            return factor @ rng.standard_normal((factor.shape[1], num_columns))
        # P A P' = L L', so P' L z has covariance A
        white_noise = rng.standard_normal((self.size, num_columns))
        return factor.apply_Pt(factor.L() @ white_noise)


@dataclass(eq=False)
class EigenLDBlock(LDBlock):
    """LD block stored as a (possibly truncated) eigen-decomposition U diag(w) U'.

    Attributes:
        eigenvalues: Length-k vector of eigenvalues
        eigenvectors: n x k matrix of eigenvectors; after truncation its rows
            are no longer orthonormal, but U diag(w) U' is still the
            corresponding principal sub-matrix
    """
    eigenvalues: np.ndarray
    eigenvectors: np.ndarray

    def __post_init__(self):
        self.eigenvalues = np.clip(np.asarray(self.eigenvalues, dtype=float).reshape(-1), 0, None)
        self.eigenvectors = np.asarray(self.eigenvectors, dtype=float)
        if self.eigenvectors.ndim != 2 or self.eigenvectors.shape[1] != len(self.eigenvalues):
            raise ValueError(
                f"Eigenvector matrix has shape {self.eigenvectors.shape} but there are "
                f"{len(self.eigenvalues)} eigenvalues"
            )

    @property
    def size(self) -> int:
        return self.eigenvectors.shape[0]

    def _matmat(self, X: np.ndarray) -> np.ndarray:
        return self.eigenvectors @ (self.eigenvalues[:, None] * (self.eigenvectors.T @ X))

    def submatrix(self, indices: np.ndarray) -> np.ndarray:
        rows = self.eigenvectors[indices]
        return (rows * self.eigenvalues) @ rows.T

    def correlations(self, index: int) -> np.ndarray:
        return self.eigenvectors @ (self.eigenvalues * self.eigenvectors[index])

    def diagonal(self) -> np.ndarray:
        return np.sum(self.eigenvectors ** 2 * self.eigenvalues, axis=1)

    def truncate(self, num_variants: int) -> "EigenLDBlock":
        return EigenLDBlock(self.eigenvalues, self.eigenvectors[:num_variants])

    def sample_noise(self, rng: np.random.Generator, num_columns: int) -> np.ndarray:
        white_noise = rng.standard_normal((len(self.eigenvalues), num_columns))
        return (self.eigenvectors * np.sqrt(self.eigenvalues)) @ white_noise


def _is_eigen_pair(block) -> bool:
    """True for an (eigenvalues, eigenvectors) tuple as returned by np.linalg.eigh."""
    return isinstance(block, tuple) and len(block) == 2 and np.ndim(block[0]) == 1


def as_ld_block(block) -> LDBlock:
    """Wrap a dense array, sparse matrix, or (eigenvalues, eigenvectors) pair as an LDBlock."""
    if isinstance(block, LDBlock):
        return block
    if issparse(block):
        return SparseLDBlock(block)
    if isinstance(block, dict):
        return EigenLDBlock(block['values'], block['vectors'])
    if _is_eigen_pair(block):
        return EigenLDBlock(*block)
    if isinstance(block, np.ndarray) or isinstance(block, list):
        return DenseLDBlock(block)
    raise TypeError(f"Cannot interpret object of type {type(block).__name__} as an LD block")


@dataclass
class LDBlockList:
    """Ordered list of LD blocks forming a block-diagonal correlation matrix.

    Attributes:
        blocks: The LD blocks, in variant order
        pattern_size: Number of variants in the LD pattern before tiling
    """
    blocks: List[LDBlock]
    pattern_size: Optional[int] = None
    _bounds: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        self.blocks = [as_ld_block(block) for block in self.blocks]
        if len(self.blocks) == 0:
            raise ValueError("LD pattern must contain at least one block")
        sizes = np.array([block.size for block in self.blocks])
        self._bounds = np.concatenate([[0], np.cumsum(sizes)])
        if self.pattern_size is None:
            self.pattern_size = self.size

    @classmethod
    def build(cls, blocks, target_J: Optional[int] = None) -> "LDBlockList":
        """Normalize LD input and tile it to exactly target_J variants.

        Blocks are repeated in their original order, and the last block is
        truncated to its leading variants so the total is target_J.

        Args:
            blocks: An LDBlockList, a single block, or a sequence of blocks in
                any supported representation
            target_J: Requested total number of variants

        Returns:
            LDBlockList covering target_J variants
        """
        if isinstance(blocks, LDBlockList):
            pattern = blocks.blocks
            pattern_size = blocks.pattern_size
        else:
            if isinstance(blocks, (np.ndarray, LDBlock, dict)) or issparse(blocks) or _is_eigen_pair(blocks):
                blocks = [blocks]
            pattern = [as_ld_block(block) for block in blocks]
            pattern_size = None

        native_size = sum(block.size for block in pattern)
        if target_J is None or target_J == native_size:
            return cls(list(pattern), pattern_size)
        if target_J <= 0:
            raise ValueError(f"target_J must be positive, got {target_J}")

        tiled = []
        remaining = target_J
        while remaining > 0:
            for block in pattern:
                if remaining == 0:
                    break
                if block.size <= remaining:
                    tiled.append(block)
                    remaining -= block.size
                else:
                    tiled.append(block.truncate(remaining))
                    remaining = 0

        logging.info(
            f"Tiled LD pattern of {native_size} variants in {len(pattern)} blocks "
            f"to {target_J} variants in {len(tiled)} blocks"
        )
        return cls(tiled, pattern_size=native_size)

    @property
    def size(self) -> int:
        """Total number of variants."""
        return int(self._bounds[-1])

    @property
    def block_bounds(self) -> np.ndarray:
        """Start index of each block, followed by the total size."""
        return self._bounds.copy()

    @property
    def block_sizes(self) -> np.ndarray:
        return np.diff(self._bounds)

    def __len__(self) -> int:
        return len(self.blocks)

    def __iter__(self) -> Iterator[Tuple[slice, LDBlock]]:
        for start, stop, block in zip(self._bounds[:-1], self._bounds[1:], self.blocks):
            yield slice(int(start), int(stop)), block

    def block_of(self, indices: Union[int, np.ndarray]) -> Union[int, np.ndarray]:
        """Block number containing each variant index."""
        indices = np.asarray(indices)
        if np.any(indices < 0) or np.any(indices >= self.size):
            raise IndexError(f"Variant index out of range for {self.size} variants")
        which = np.searchsorted(self._bounds, indices, side='right') - 1
        return int(which) if which.ndim == 0 else which

    def apply(self, x: np.ndarray) -> np.ndarray:
        """Multiply the block-diagonal LD matrix by a vector or matrix."""
        x = np.asarray(x, dtype=float)
        if x.shape[0] != self.size:
            raise ValueError(f"Input has {x.shape[0]} rows but LD covers {self.size} variants")
        result = np.empty_like(x)
        for block_slice, block in self:
            result[block_slice] = block @ x[block_slice]
        return result

    def extract(self, indices: Sequence[int]) -> np.ndarray:
        """Dense correlation matrix for arbitrary variants; cross-block entries are zero."""
        indices = np.asarray(indices, dtype=int).reshape(-1)
        result = np.zeros((len(indices), len(indices)))
        if len(indices) == 0:
            return result
        which_block = np.atleast_1d(self.block_of(indices))
        for b in np.unique(which_block):
            positions = np.flatnonzero(which_block == b)
            local = indices[positions] - self._bounds[b]
            result[np.ix_(positions, positions)] = self.blocks[b].submatrix(local)
        return result

    def correlations(self, index: int) -> Tuple[np.ndarray, np.ndarray]:
        """Global indices of the variants sharing a block with index, and their correlations."""
        b = self.block_of(int(index))
        start = int(self._bounds[b])
        r = self.blocks[b].correlations(int(index) - start)
        return np.arange(start, start + len(r)), r

    def tile_values(self, values, target_J: Optional[int] = None):
        """Tile a per-variant array or DataFrame aligned to the LD pattern.

        Values of length pattern_size are repeated in the same order as the
        blocks; values already of the target length are returned unchanged.
        """
        target_J = self.size if target_J is None else target_J
        if len(values) == target_J:
            return values
        if len(values) != self.pattern_size:
            raise ValueError(
                f"Expected {target_J} or {self.pattern_size} rows aligned to the LD pattern, "
                f"got {len(values)}"
            )
        rows = np.resize(np.arange(len(values)), target_J)
        if isinstance(values, pl.DataFrame):
            return values.select(pl.all().gather(pl.Series(rows)))
        return np.asarray(values)[rows]
