"""Sample sizes, sample overlap, and the cross-trait correlation of GWAS noise."""

import logging
from typing import Union

import numpy as np
import polars as pl

from .errors import InfeasibleCorrelationError
from .graph import is_psd

SampleSizeSpec = Union[float, int, np.ndarray, list, pl.DataFrame]


def _overlap_from_table(table: pl.DataFrame, num_traits: int) -> np.ndarray:
    """Convert a table of sample groups into an overlap matrix.

    Each row is a disjoint group of 'N' samples; the other columns, in trait
    order, flag which traits were measured in that group.
    """
    if 'N' not in table.columns:
        raise ValueError("Sample size table must contain an 'N' column")
    trait_columns = [col for col in table.columns if col != 'N']
    if len(trait_columns) != num_traits:
        raise ValueError(
            f"Sample size table has {len(trait_columns)} trait columns, expected {num_traits}"
        )
    membership = table.select(trait_columns).cast(pl.Float64).to_numpy()
    if not np.all(np.isin(membership, [0, 1])):
        raise ValueError("Trait columns of the sample size table must be boolean or 0/1")
    counts = table['N'].cast(pl.Float64).to_numpy()
    if np.any(counts < 0):
        raise ValueError("Sample group sizes must be non-negative")
    return membership.T @ (counts[:, None] * membership)


def resolve_overlap(N: SampleSizeSpec, num_traits: int) -> np.ndarray:
    """Normalize a sample size specification to an M x M overlap matrix.

    Args:
        N: One of
            - scalar: every trait measured in a separate sample of this size
            - length-M vector: per-trait sample sizes, no overlap
            - M x M matrix: diagonal holds sample sizes, off-diagonal entries
              the number of shared samples
            - polars DataFrame: one row per disjoint sample group, with an 'N'
              column and one boolean column per trait
        num_traits: Number of traits M

    Returns:
        Overlap matrix with sample sizes on the diagonal
    """
    if isinstance(N, pl.DataFrame):
        overlap = _overlap_from_table(N, num_traits)
    else:
        N = np.asarray(N, dtype=float)
        if N.ndim == 0:
            overlap = np.diag(np.full(num_traits, float(N)))
        elif N.ndim == 1:
            if len(N) != num_traits:
                raise ValueError(f"Sample size vector has length {len(N)}, expected {num_traits}")
            overlap = np.diag(N)
        elif N.shape == (num_traits, num_traits):
            overlap = N.copy()
        else:
            raise ValueError(f"Sample size matrix has shape {N.shape}, expected ({num_traits}, {num_traits})")

    sizes = np.diag(overlap)
    if np.any(sizes <= 0):
        raise ValueError("Every trait must have a positive sample size")
    if not np.allclose(overlap, overlap.T):
        raise ValueError("Sample overlap matrix must be symmetric")
    if np.any(overlap > np.minimum.outer(sizes, sizes) + 1e-8):
        raise ValueError("Sample overlap between two traits cannot exceed either sample size")
    if np.any(overlap < 0):
        raise ValueError("Sample overlap must be non-negative")
    return overlap


def compute_R(trait_corr: np.ndarray, overlap: np.ndarray) -> np.ndarray:
    """Correlation of the sampling noise in effect estimates across traits.

    R[i, j] = TraitCorr[i, j] * N_ij / sqrt(N_i N_j), with unit diagonal.

    Raises:
        InfeasibleCorrelationError: If R is not PSD, which happens when the
            overlap matrix does not correspond to any real sample layout
    """
    sizes = np.diag(overlap)
    R = trait_corr * overlap / np.sqrt(np.outer(sizes, sizes))
    np.fill_diagonal(R, 1.0)
    if not is_psd(R):
        raise InfeasibleCorrelationError(
            "Sample overlap and trait correlation give a noise correlation that is not PSD", R
        )
    if np.any(overlap[~np.eye(len(sizes), dtype=bool)] > 0):
        logging.debug(f"Sample overlap induces noise correlation:\n{R}")
    return R
