"""
Simulate multi-trait GWAS summary statistics.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Union

import numpy as np
import polars as pl

from .config import SimulationSpecification
from .effects import EffectFn, sample_causal_effects
from .graph import direct_h2_from_total, resolve, resolve_environment
from .ld import LDBlockList
from .overlap import SampleSizeSpec, compute_R, resolve_overlap
from .propagate import draw_estimates, genotype_sd, propagate


@dataclass(frozen=True)
class SimulationResult:
    """
    Output of one simulation. Effect matrices are J x M and are on the
    per-allele scale when allele frequencies were supplied, otherwise on the
    standardized scale.

    Attributes:
        beta_hat: Simulated effect estimates
        se_beta_hat: Standard errors of beta_hat
        s_estimate: Simulated estimates of se_beta_hat, if requested
        beta_joint: Total joint (causal) variant effects on each trait,
            including effects mediated by other traits
        beta_marg: Expected marginal effects, beta_joint propagated through LD
        direct_snp_effects_joint: Direct joint variant effects, not mediated by traits
        direct_snp_effects_marg: Direct effects propagated through LD
        sigma_g: Realized genetic covariance of the traits
        sigma_e: Environmental covariance of the traits
        trait_corr: Expected trait correlation, expected Sigma_G plus Sigma_E
        R: Correlation of sampling noise across traits
        total_trait_effects: Total trait-to-trait effects
        direct_trait_effects: Direct trait-to-trait effects
        h2: Realized heritability of each trait
        N: Sample overlap matrix; its diagonal holds per-trait sample sizes
        snp_info: Variant table
        trait_names: Trait names
        ld: LD the simulation used, or None if variants were independent
    """
    beta_hat: np.ndarray
    se_beta_hat: np.ndarray
    s_estimate: Optional[np.ndarray]
    beta_joint: np.ndarray
    beta_marg: np.ndarray
    direct_snp_effects_joint: np.ndarray
    direct_snp_effects_marg: np.ndarray
    sigma_g: np.ndarray
    sigma_e: np.ndarray
    trait_corr: np.ndarray
    R: np.ndarray
    total_trait_effects: np.ndarray
    direct_trait_effects: np.ndarray
    h2: np.ndarray
    N: np.ndarray
    snp_info: pl.DataFrame
    trait_names: List[str]
    ld: Optional[LDBlockList] = field(default=None, repr=False)

    @property
    def num_variants(self) -> int:
        return self.beta_hat.shape[0]

    @property
    def num_traits(self) -> int:
        return self.beta_hat.shape[1]

    def to_sumstats(self) -> pl.DataFrame:
        """Summary statistics in long format, one row per variant and trait."""
        sample_sizes = np.diag(self.N)
        per_trait = []
        for m, name in enumerate(self.trait_names):
            columns = [
                self.snp_info.select('SNP', *(['AF'] if 'AF' in self.snp_info.columns else [])),
                pl.DataFrame({
                    'trait': [name] * self.num_variants,
                    'beta_hat': self.beta_hat[:, m],
                    'se': self.se_beta_hat[:, m],
                    'Z': self.beta_hat[:, m] / self.se_beta_hat[:, m],
                    'beta_joint': self.beta_joint[:, m],
                    'beta_marg': self.beta_marg[:, m],
                    'N': np.full(self.num_variants, sample_sizes[m]),
                }),
            ]
            if self.s_estimate is not None:
                columns.append(pl.DataFrame({'s_estimate': self.s_estimate[:, m]}))
            per_trait.append(pl.concat(columns, how='horizontal'))
        return pl.concat(per_trait)


class Simulate(SimulationSpecification):
    """Simulator for multi-trait GWAS summary statistics."""

    def simulate(self,
                 rng: Optional[np.random.Generator] = None,
                 verbose: bool = False,
                 ) -> SimulationResult:
        """Run one simulation.

        Args:
            rng: Random number generator; defaults to one seeded with random_seed
            verbose: Whether to print the number of variants and causal variants

        Returns:
            SimulationResult
        """
        rng = np.random.default_rng(self.random_seed) if rng is None else rng
        M = self.num_traits

        h2_direct = self.h2 if self.h2_type == 'direct' else direct_h2_from_total(self.G, self.h2)
        total_effects, sigma_g_expected = resolve(self.G, h2_direct)
        sigma_e = resolve_environment(sigma_g_expected, R_obs=self.R_obs, R_E=self.R_E)
        trait_corr = sigma_g_expected + sigma_e
        R = compute_R(trait_corr, self.overlap)

        direct_effects = sample_causal_effects(
            self.J, M, self.pi_argument, h2_direct,
            effect_fn=self.effect_fns,
            sporadic_pleiotropy=self.sporadic_pleiotropy,
            pi_exact=self.pi_exact,
            h2_exact=self.h2_exact,
            snp_info=self.snp_info,
            ld=self.ld,
            rng=rng,
        )
        beta_joint = direct_effects @ (np.eye(M) + total_effects)

        draw = draw_estimates(beta_joint, R, self.overlap, ld=self.ld, af=self.af,
                              est_s=self.est_s, rng=rng)
        direct_marg, _ = propagate(direct_effects, self.ld)

        sigma_g = beta_joint.T @ draw.beta_marg
        sigma_g = (sigma_g + sigma_g.T) / 2

        beta_marg = draw.beta_marg
        if self.af is not None:
            scale = genotype_sd(self.af)[:, None]
            beta_joint, beta_marg = beta_joint / scale, beta_marg / scale
            direct_effects, direct_marg = direct_effects / scale, direct_marg / scale

        logging.info(f"Simulated {self.J} variants for {M} traits; realized h2 {np.diag(sigma_g)}")
        if verbose:
            print(f"Number of variants in summary statistics: {self.J}")
            nonzero_count = np.sum(direct_effects != 0, axis=0)
            print(f"Number of variants with nonzero direct effect per trait: {nonzero_count}")

        return SimulationResult(
            beta_hat=draw.beta_hat,
            se_beta_hat=draw.se_beta_hat,
            s_estimate=draw.s_estimate,
            beta_joint=beta_joint,
            beta_marg=beta_marg,
            direct_snp_effects_joint=direct_effects,
            direct_snp_effects_marg=direct_marg,
            sigma_g=sigma_g,
            sigma_e=sigma_e,
            trait_corr=trait_corr,
            R=R,
            total_trait_effects=total_effects,
            direct_trait_effects=self.G.copy(),
            h2=np.diag(sigma_g).copy(),
            N=self.overlap.copy(),
            snp_info=self.snp_info,
            trait_names=list(self.trait_names),
            ld=self.ld,
        )


def run_simulate(
    N: SampleSizeSpec,
    J: int,
    h2: Union[float, Sequence[float], np.ndarray],
    pi: Any = 1.0,
    G: Optional[np.ndarray] = None,
    R_E: Optional[np.ndarray] = None,
    R_obs: Optional[np.ndarray] = None,
    ld: Any = None,
    af: Optional[Union[float, np.ndarray, Callable[[int], np.ndarray]]] = None,
    snp_info: Optional[pl.DataFrame] = None,
    sporadic_pleiotropy: bool = True,
    pi_exact: bool = False,
    h2_exact: bool = False,
    est_s: bool = False,
    effect_fn: Union[str, EffectFn, Sequence, None] = 'normal',
    h2_type: str = 'direct',
    trait_names: Optional[List[str]] = None,
    random_seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
    verbose: bool = False,
) -> SimulationResult:
    """Run a multi-trait GWAS summary statistics simulation.

    See SimulationSpecification for the meaning of each parameter; rng and
    verbose are passed to Simulate.simulate.

    Returns:
        SimulationResult
    """
    sim = Simulate(
        N=N,
        J=J,
        h2=h2,
        pi=pi,
        G=G,
        R_E=R_E,
        R_obs=R_obs,
        ld=ld,
        af=af,
        snp_info=snp_info,
        sporadic_pleiotropy=sporadic_pleiotropy,
        pi_exact=pi_exact,
        h2_exact=h2_exact,
        est_s=est_s,
        effect_fn=effect_fn,
        h2_type=h2_type,
        trait_names=trait_names,
        random_seed=random_seed,
    )
    return sim.simulate(rng=rng, verbose=verbose)


def resample_sumstats(
    result: SimulationResult,
    N: SampleSizeSpec,
    ld: Any = None,
    est_s: bool = False,
    rng: Optional[np.random.Generator] = None,
) -> SimulationResult:
    """Draw new GWAS estimates for the causal effects of an earlier simulation.

    The joint effects, covariance matrices and variant table are kept; only
    the sample size (and so the noise) changes. The LD stored on the result
    is reused unless ld is given, in which case marginal effects are
    recomputed under the new LD.

    Args:
        result: Output of an earlier simulation
        N: New sample size specification (see resolve_overlap)
        ld: Optional LD, tiled to the number of variants; defaults to result.ld
        est_s: Whether to simulate estimated standard errors
        rng: Random number generator

    Returns:
        New SimulationResult with redrawn beta_hat, se_beta_hat, s_estimate,
        beta_marg, R, N and ld
    """
    rng = np.random.default_rng() if rng is None else rng
    overlap = resolve_overlap(N, result.num_traits)
    R = compute_R(result.trait_corr, overlap)
    ld = result.ld if ld is None else LDBlockList.build(ld, result.num_variants)

    af = result.snp_info['AF'].to_numpy() if 'AF' in result.snp_info.columns else None
    beta_joint = result.beta_joint if af is None else result.beta_joint * genotype_sd(af)[:, None]

    draw = draw_estimates(beta_joint, R, overlap, ld=ld, af=af, est_s=est_s, rng=rng)
    beta_marg = draw.beta_marg if af is None else draw.beta_marg / genotype_sd(af)[:, None]

    return dataclasses.replace(
        result,
        beta_hat=draw.beta_hat,
        se_beta_hat=draw.se_beta_hat,
        s_estimate=draw.s_estimate,
        beta_marg=beta_marg,
        R=R,
        N=overlap,
        ld=ld,
    )
