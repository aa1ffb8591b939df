"""
Sampling of direct (causal) variant effects.

An effect function draws the standardized effect sizes of the causal
variants of one trait. Every effect function has the signature

    effect_fn(n, sd, snp_info, rng) -> np.ndarray of length n

where snp_info holds the rows of the variant table for the n causal variants
(or is None) and rng is a numpy Generator. Callers promise that the average
expected squared effect equals sd ** 2; this is not checked at runtime.
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl

from .errors import InsufficientVariantsError, InvalidConfigurationError
from .ld import LDBlockList

EffectFn = Callable[[int, float, Optional[pl.DataFrame], np.random.Generator], np.ndarray]
PiFn = Callable[[Optional[pl.DataFrame]], np.ndarray]


def softplus_robust(x: np.ndarray) -> np.ndarray:
    """Numerically stable log(1 + exp(x))."""
    x = np.asarray(x, dtype=float)
    y = x + np.log1p(np.exp(-np.abs(x)))
    mask = x < 0
    y[mask] = np.log1p(np.exp(x[mask]))
    return y


def normal_effects(n: int, sd: float, snp_info: Optional[pl.DataFrame],
                   rng: np.random.Generator) -> np.ndarray:
    """Default effect function: i.i.d. N(0, sd^2)."""
    return rng.normal(0, sd, size=n)


def fixed_effects(n: int, sd: float, snp_info: Optional[pl.DataFrame],
                  rng: np.random.Generator) -> np.ndarray:
    """Every causal variant has magnitude exactly sd, with a random sign."""
    return sd * rng.choice([-1.0, 1.0], size=n)


def mixture_normal_effects(sigma: Sequence[float], weights: Sequence[float]) -> EffectFn:
    """Effect function drawing from a scale mixture of normals.

    Args:
        sigma: Relative standard deviation of each mixture component
        weights: Mixture weight of each component (must sum to 1)

    Returns:
        Effect function whose components are rescaled so that the mixture
        has variance sd^2
    """
    sigma = np.asarray(sigma, dtype=float)
    weights = np.asarray(weights, dtype=float)
    if sigma.shape != weights.shape:
        raise ValueError("sigma and weights must have the same length")
    if np.any(sigma < 0):
        raise ValueError("Component standard deviations must be non-negative")
    if np.any(weights < 0):
        raise ValueError("Component weights must be non-negative")
    if not np.isclose(np.sum(weights), 1):
        raise ValueError(f"Component weights sum to {np.sum(weights)}, not 1")
    relative_sd = sigma / np.sqrt(np.sum(weights * sigma ** 2))

    def effect_fn(n, sd, snp_info, rng):
        component = rng.choice(len(weights), size=n, p=weights)
        return rng.normal(0, 1, size=n) * sd * relative_sd[component]

    return effect_fn


def af_dependent_effects(alpha: float = -1, af_column: str = 'AF') -> EffectFn:
    """Effect function with allele-frequency-dependent architecture.

    The variance of a standardized effect is proportional to
    (2 f (1 - f)) ** (1 + alpha), normalized over the causal variants so that
    the average variance is sd^2. alpha = -1 gives equal variance for all
    variants; more negative values give rare variants larger effects.
    """
    def effect_fn(n, sd, snp_info, rng):
        if snp_info is None or af_column not in snp_info.columns:
            raise ValueError(f"Frequency-dependent effects need a '{af_column}' column in snp_info")
        af = snp_info[af_column].to_numpy()
        af_term = (2 * af * (1 - af)) ** (1 + alpha)
        af_term = af_term / np.mean(af_term) if n > 0 else af_term
        return rng.normal(0, 1, size=n) * sd * np.sqrt(af_term)

    return effect_fn


def annotation_pi(columns: Sequence[str], pi: float,
                  link_fn: Callable[[np.ndarray], np.ndarray] = softplus_robust) -> PiFn:
    """Causal probability that depends on variant annotations.

    Args:
        columns: Annotation columns of snp_info to sum
        pi: Average causal probability across variants
        link_fn: Maps the summed annotation to a relative probability.
            Defaults to x -> log(1 + exp(x))

    Returns:
        Function mapping snp_info to a length-J vector of causal probabilities
    """
    def pi_fn(snp_info):
        if snp_info is None:
            raise ValueError("Annotation-dependent sparsity needs snp_info")
        annotations = snp_info.select(list(columns)).to_numpy().astype(float)
        relative = link_fn(np.sum(annotations, axis=1))
        probability = pi * relative / np.mean(relative)
        if np.any(probability > 1):
            logging.warning(
                f"{np.sum(probability > 1)} variants have causal probability above one; clipping"
            )
        return np.clip(probability, 0, 1)

    return pi_fn


def resolve_effect_fns(effect_fn: Union[str, EffectFn, Sequence, None],
                       num_traits: int) -> List[EffectFn]:
    """Normalize the effect function setting to one function per trait.

    The string 'normal' (or None) selects normal_effects.
    """
    def _resolve(fn):
        if fn is None or (isinstance(fn, str) and fn == 'normal'):
            return normal_effects
        if callable(fn):
            return fn
        raise InvalidConfigurationError(f"Unknown effect function {fn!r}; use 'normal' or a callable")

    if effect_fn is None or isinstance(effect_fn, str) or callable(effect_fn):
        return [_resolve(effect_fn)] * num_traits
    effect_fn = list(effect_fn)
    if len(effect_fn) != num_traits:
        raise InvalidConfigurationError(
            f"Got {len(effect_fn)} effect functions for {num_traits} traits"
        )
    return [_resolve(fn) for fn in effect_fn]


def normalize_pi(pi, num_variants: int, num_traits: int,
                 snp_info: Optional[pl.DataFrame] = None) -> Tuple[np.ndarray, bool]:
    """Broadcast pi to a J x M matrix of causal probabilities.

    Returns:
        Tuple of (probability matrix, whether pi varies across variants)
    """
    per_variant = False
    if callable(pi):
        pi = np.asarray(pi(snp_info), dtype=float)
        if pi.ndim == 1:
            pi = np.repeat(pi.reshape(-1, 1), num_traits, axis=1)
        per_variant = True
    else:
        pi = np.asarray(pi, dtype=float)
        if pi.ndim == 0:
            pi = np.full((num_variants, num_traits), float(pi))
        elif pi.ndim == 1:
            if len(pi) != num_traits:
                raise ValueError(f"pi has length {len(pi)}, expected one value per trait ({num_traits})")
            pi = np.tile(pi, (num_variants, 1))
        else:
            per_variant = True

    if pi.shape != (num_variants, num_traits):
        raise ValueError(f"pi has shape {pi.shape}, expected ({num_variants}, {num_traits})")
    if np.any(pi < 0) or np.any(pi > 1):
        raise ValueError("Causal probabilities must lie in [0, 1]")
    return pi, per_variant


def _draw_causal_sets(pi: np.ndarray, h2: np.ndarray, sporadic_pleiotropy: bool,
                      pi_exact: bool, rng: np.random.Generator) -> Tuple[List[np.ndarray], np.ndarray]:
    """Draw the causal variant indices of each trait.

    Returns:
        Tuple of (causal indices per trait, expected number of causal variants per trait)
    """
    num_variants, num_traits = pi.shape
    causal_sets = []
    expected_counts = np.zeros(num_traits)
    pool = np.arange(num_variants)

    for m in range(num_traits):
        if h2[m] == 0:
            causal_sets.append(np.array([], dtype=int))
            continue

        if pi_exact:
            needed = int(np.round(pi[0, m] * num_variants))
            expected_counts[m] = needed
        else:
            expected_counts[m] = np.sum(pi[:, m])
            if sporadic_pleiotropy:
                causal_sets.append(np.flatnonzero(rng.random(num_variants) < pi[:, m]))
                continue
            needed = int(rng.binomial(num_variants, pi[0, m]))

        if sporadic_pleiotropy:
            chosen = rng.choice(num_variants, size=needed, replace=False)
        else:
            if needed > len(pool):
                raise InsufficientVariantsError(m, needed, len(pool))
            chosen = rng.choice(pool, size=needed, replace=False)
            pool = np.setdiff1d(pool, chosen, assume_unique=True)
        causal_sets.append(np.sort(chosen))

    return causal_sets, expected_counts


def realized_variance(effects: np.ndarray, ld: Optional[LDBlockList] = None) -> np.ndarray:
    """Genetic variance explained by each column of standardized effects: diag(B' R B)."""
    effects = np.asarray(effects, dtype=float)
    correlated = effects if ld is None else ld.apply(effects)
    return np.sum(effects * correlated, axis=0)


def sample_causal_effects(
    J: int,
    M: int,
    pi,
    h2,
    effect_fn: Union[str, EffectFn, Sequence, None] = 'normal',
    sporadic_pleiotropy: bool = True,
    pi_exact: bool = False,
    h2_exact: bool = False,
    snp_info: Optional[pl.DataFrame] = None,
    ld: Optional[LDBlockList] = None,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Sample a J x M matrix of standardized direct variant effects.

    Args:
        J: Number of variants
        M: Number of traits
        pi: Causal probability: scalar, length-M vector, J x M matrix, or a
            function of snp_info returning a length-J vector or J x M matrix
        h2: Length-M vector of direct heritabilities
        effect_fn: 'normal', an effect function, or a length-M sequence of those
        sporadic_pleiotropy: If False, causal variant sets of different traits are
            disjoint. Without pi_exact each trait draws its count as
            Binomial(J, pi_m) and samples it from the unassigned variants, so
            whether the pool runs out depends on the random draw
        pi_exact: If True, trait m has exactly round(pi_m * J) causal variants
        h2_exact: If True, each column is rescaled to explain exactly h2[m].
            Variance shared between traits through overlapping causal
            variants is not corrected for
        snp_info: Optional variant table passed to effect functions
        ld: Optional LD, used to compute realized variance when h2_exact
        rng: Random number generator

    Returns:
        J x M matrix; entries are zero exactly for non-causal variants

    Raises:
        InvalidConfigurationError: If per-variant pi is combined with pi_exact
            or with sporadic_pleiotropy=False
        InsufficientVariantsError: If disjoint causal sets cannot be drawn. With
            pi_exact this is determined by pi and J alone; with Bernoulli
            draws it depends on the sampled counts
    """
    rng = np.random.default_rng() if rng is None else rng
    h2 = np.broadcast_to(np.asarray(h2, dtype=float), (M,)).copy()
    pi, per_variant = normalize_pi(pi, J, M, snp_info)
    if per_variant and pi_exact:
        raise InvalidConfigurationError("pi_exact=True requires a scalar or per-trait pi")
    if per_variant and not sporadic_pleiotropy:
        raise InvalidConfigurationError("sporadic_pleiotropy=False requires a scalar or per-trait pi")
    effect_fns = resolve_effect_fns(effect_fn, M)

    causal_sets, expected_counts = _draw_causal_sets(pi, h2, sporadic_pleiotropy, pi_exact, rng)

    effects = np.zeros((J, M))
    for m, causal in enumerate(causal_sets):
        if h2[m] == 0:
            continue
        if expected_counts[m] == 0:
            raise InvalidConfigurationError(f"Trait {m} has h2 = {h2[m]} but no variant can be causal")
        sd = np.sqrt(h2[m] / expected_counts[m])
        causal_info = None if snp_info is None else snp_info.select(pl.all().gather(pl.Series(causal)))
        values = np.asarray(effect_fns[m](len(causal), sd, causal_info, rng), dtype=float).reshape(-1)
        if len(values) != len(causal):
            raise ValueError(
                f"Effect function for trait {m} returned {len(values)} values for {len(causal)} variants"
            )
        effects[causal, m] = values

    if h2_exact:
        variance = realized_variance(effects, ld)
        for m in range(M):
            if h2[m] == 0:
                continue
            if variance[m] <= 0:
                raise InvalidConfigurationError(
                    f"No causal variants were drawn for trait {m}, so h2_exact cannot be satisfied"
                )
            effects[:, m] *= np.sqrt(h2[m] / variance[m])

    logging.info(f"Number of causal variants per trait: {[len(c) for c in causal_sets]}")
    return effects
