"""
Joint-to-marginal propagation and simulated GWAS estimates.

All computations happen on the standardized scale (unit-variance genotypes);
effects and standard errors are converted to the per-allele scale at the end
when allele frequencies are supplied.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .ld import LDBlock, LDBlockList


@dataclass(frozen=True)
class EstimateDraw:
    """Simulated GWAS estimates for one set of joint effects.

    Attributes:
        beta_marg: Expected marginal effects, J x M, on the standardized scale
        beta_hat: Simulated effect estimates, J x M
        se_beta_hat: True standard errors, J x M
        s_estimate: Simulated estimates of the standard errors, or None
    """
    beta_marg: np.ndarray
    beta_hat: np.ndarray
    se_beta_hat: np.ndarray
    s_estimate: Optional[np.ndarray] = None


def genotype_sd(af: np.ndarray) -> np.ndarray:
    """Standard deviation of a biallelic genotype, sqrt(2 f (1 - f))."""
    af = np.asarray(af, dtype=float)
    if np.any(af <= 0) or np.any(af >= 1):
        raise ValueError("Allele frequencies must lie strictly between 0 and 1")
    return np.sqrt(2 * af * (1 - af))


def _psd_factor(matrix: np.ndarray) -> np.ndarray:
    """F with F F' = matrix, for a symmetric PSD matrix."""
    eigenvalues, eigenvectors = np.linalg.eigh(matrix)
    return eigenvectors * np.sqrt(np.clip(eigenvalues, 0, None))


def propagate(causal_effects: np.ndarray,
              ld: Optional[LDBlockList] = None
              ) -> Tuple[np.ndarray, Optional[List[Tuple[slice, LDBlock]]]]:
    """Map joint (causal) effects to expected marginal effects.

    Within each LD block, marginal = R_block @ joint. Without LD the
    marginal effects equal the joint effects.

    Args:
        causal_effects: J x M standardized joint effects
        ld: Optional block-diagonal LD

    Returns:
        Tuple of (marginal effects, list of (variant slice, LD block) pairs
        giving the within-trait noise correlation of each block, or None
        when variants are independent)
    """
    causal_effects = np.asarray(causal_effects, dtype=float)
    if ld is None:
        return causal_effects.copy(), None
    return ld.apply(causal_effects), list(ld)


def standard_errors(sample_sizes: np.ndarray, num_variants: int,
                    af: Optional[np.ndarray] = None) -> np.ndarray:
    """Standard errors of marginal effect estimates, J x M.

    se = 1 / sqrt(N) on the standardized scale, divided by sqrt(2 f (1 - f))
    on the per-allele scale.
    """
    sample_sizes = np.asarray(sample_sizes, dtype=float).reshape(-1)
    se = np.tile(1 / np.sqrt(sample_sizes), (num_variants, 1))
    if af is not None:
        se = se / genotype_sd(af)[:, None]
    return se


def draw_noise(R: np.ndarray, sample_sizes: np.ndarray, num_variants: int,
               ld: Optional[LDBlockList] = None,
               rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Draw standardized-scale sampling noise for effect estimates.

    The covariance between the noise of (variant a, trait i) and
    (variant b, trait j) is LD[a, b] * R[i, j] / sqrt(N_i N_j).

    Returns:
        J x M noise matrix
    """
    rng = np.random.default_rng() if rng is None else rng
    sample_sizes = np.asarray(sample_sizes, dtype=float).reshape(-1)
    num_traits = len(sample_sizes)
    scale = 1 / np.sqrt(sample_sizes)
    trait_factor = _psd_factor(R * np.outer(scale, scale))

    if ld is None:
        return rng.standard_normal((num_variants, num_traits)) @ trait_factor.T

    if ld.size != num_variants:
        raise ValueError(f"LD covers {ld.size} variants, expected {num_variants}")
    noise = np.empty((num_variants, num_traits))
    for block_slice, block in ld:
        noise[block_slice] = block.sample_noise(rng, num_traits) @ trait_factor.T
    return noise


def draw_estimates(
    beta_joint: np.ndarray,
    R: np.ndarray,
    overlap: np.ndarray,
    ld: Optional[LDBlockList] = None,
    af: Optional[np.ndarray] = None,
    est_s: bool = False,
    rng: Optional[np.random.Generator] = None,
) -> EstimateDraw:
    """Simulate GWAS effect estimates from standardized joint effects.

    Args:
        beta_joint: J x M standardized joint effects
        R: M x M correlation of sampling noise across traits
        overlap: M x M sample overlap matrix; its diagonal holds sample sizes
        ld: Optional block-diagonal LD
        af: Optional allele frequencies; if given, estimates and standard
            errors are returned on the per-allele scale
        est_s: If True, also simulate estimated standard errors, drawn as
            se * sqrt(chi2(N - 1) / (N - 1))
        rng: Random number generator

    Returns:
        EstimateDraw
    """
    rng = np.random.default_rng() if rng is None else rng
    beta_joint = np.asarray(beta_joint, dtype=float)
    num_variants = beta_joint.shape[0]
    sample_sizes = np.diag(overlap)

    beta_marg, _ = propagate(beta_joint, ld)
    beta_hat = beta_marg + draw_noise(R, sample_sizes, num_variants, ld, rng)
    se = standard_errors(sample_sizes, num_variants, af)
    if af is not None:
        beta_hat = beta_hat / genotype_sd(af)[:, None]

    s_estimate = None
    if est_s:
        df = sample_sizes - 1
        s_estimate = se * np.sqrt(rng.chisquare(df, size=se.shape) / df)

    return EstimateDraw(beta_marg=beta_marg, beta_hat=beta_hat, se_beta_hat=se, s_estimate=s_estimate)
