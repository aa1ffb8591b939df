"""Tests for causal effect sampling."""

import numpy as np
import polars as pl
import pytest

from mvsumstats import (
    InsufficientVariantsError,
    InvalidConfigurationError,
    LDBlockList,
    af_dependent_effects,
    annotation_pi,
    fixed_effects,
    mixture_normal_effects,
    sample_causal_effects,
)
from mvsumstats.effects import normalize_pi, realized_variance, resolve_effect_fns, softplus_robust, normal_effects

from conftest import ar1_correlation


def test_exact_causal_counts(rng):
    """With pi_exact, each column has exactly round(pi * J) non-zero entries."""
    effects = sample_causal_effects(1000, 3, [0.01, 0.05, 0.0234], [0.2, 0.3, 0.4],
                                    pi_exact=True, rng=rng)
    assert effects.shape == (1000, 3)
    np.testing.assert_array_equal(np.sum(effects != 0, axis=0), [10, 50, 23])


def test_bernoulli_causal_counts(rng):
    """Without pi_exact, the number of causal variants is roughly pi * J."""
    effects = sample_causal_effects(20_000, 2, 0.05, 0.5, rng=rng)
    counts = np.sum(effects != 0, axis=0)
    assert np.all(np.abs(counts - 1000) < 150)


def test_disjoint_causal_sets(rng):
    """Without sporadic pleiotropy, no variant is causal for two traits."""
    for pi_exact in [True, False]:
        effects = sample_causal_effects(500, 4, 0.1, [0.1, 0.2, 0.3, 0.4],
                                        sporadic_pleiotropy=False, pi_exact=pi_exact, rng=rng)
        assert np.all(np.sum(effects != 0, axis=1) <= 1)
        if pi_exact:
            np.testing.assert_array_equal(np.sum(effects != 0, axis=0), [50] * 4)


def test_insufficient_variants(rng):
    """Too many exclusive causal variants raises, naming the trait and shortfall."""
    with pytest.raises(InsufficientVariantsError) as exc_info:
        sample_causal_effects(100, 3, 0.4, 0.3, sporadic_pleiotropy=False, pi_exact=True, rng=rng)
    assert exc_info.value.trait == 2
    assert exc_info.value.shortfall == 20


def test_matrix_pi_incompatible_options(rng):
    """Per-variant pi cannot be combined with pi_exact or disjoint causal sets."""
    pi = np.full((100, 2), 0.1)
    with pytest.raises(InvalidConfigurationError):
        sample_causal_effects(100, 2, pi, 0.3, pi_exact=True, rng=rng)
    with pytest.raises(InvalidConfigurationError):
        sample_causal_effects(100, 2, pi, 0.3, sporadic_pleiotropy=False, rng=rng)


def test_matrix_pi(rng):
    """Variants with zero probability are never causal."""
    pi = np.zeros((200, 2))
    pi[:50, 0] = 0.5
    pi[150:, 1] = 1.0
    effects = sample_causal_effects(200, 2, pi, [0.3, 0.3], rng=rng)
    assert np.all(effects[50:, 0] == 0)
    assert np.all(effects[:150, 1] == 0)
    assert np.all(effects[150:, 1] != 0)


def test_exact_heritability(rng):
    """With h2_exact, each column explains exactly h2."""
    h2 = np.array([0.1, 0.45])
    effects = sample_causal_effects(2000, 2, 0.02, h2, h2_exact=True, rng=rng)
    np.testing.assert_allclose(np.sum(effects ** 2, axis=0), h2)


def test_exact_heritability_with_ld(rng):
    """With LD, the realized variance b' R b is matched."""
    ld = LDBlockList.build([ar1_correlation(10, 0.9)], target_J=500)
    effects = sample_causal_effects(500, 1, 0.1, 0.25, h2_exact=True, ld=ld, rng=rng)
    np.testing.assert_allclose(effects[:, 0] @ ld.apply(effects[:, 0]), 0.25)
    np.testing.assert_allclose(realized_variance(effects, ld), [0.25])


def test_expected_heritability(rng):
    """The expected squared effect sums to h2."""
    totals = [np.sum(sample_causal_effects(1000, 1, 0.1, 0.4, rng=rng) ** 2) for _ in range(200)]
    assert np.mean(totals) == pytest.approx(0.4, rel=0.05)


def test_zero_heritability(rng):
    """A trait with h2 = 0 has no causal variants and leaves the pool untouched."""
    effects = sample_causal_effects(100, 2, 0.5, [0.0, 0.3], sporadic_pleiotropy=False,
                                    pi_exact=True, rng=rng)
    assert np.all(effects[:, 0] == 0)
    assert np.sum(effects[:, 1] != 0) == 50


def test_per_trait_effect_functions(rng):
    """Each trait can use its own effect function; 'normal' selects the default."""
    effects = sample_causal_effects(1000, 2, 0.05, [0.2, 0.2], effect_fn=[fixed_effects, 'normal'],
                                    pi_exact=True, rng=rng)
    fixed = effects[effects[:, 0] != 0, 0]
    np.testing.assert_allclose(np.abs(fixed), np.sqrt(0.2 / 50))
    assert len(np.unique(np.abs(effects[effects[:, 1] != 0, 1]))) == 50


def test_custom_effect_function_receives_snp_info(rng):
    """Effect functions see the variant table rows of the causal variants."""
    snp_info = pl.DataFrame({'weight': np.arange(100, dtype=float)})
    seen = {}

    def record_effects(n, sd, info, generator):
        seen['rows'] = info['weight'].to_numpy()
        return np.full(n, sd)

    effects = sample_causal_effects(100, 1, 0.1, 0.3, effect_fn=record_effects, pi_exact=True,
                                    snp_info=snp_info, rng=rng)
    np.testing.assert_array_equal(seen['rows'], np.flatnonzero(effects[:, 0]))


def test_effect_function_wrong_length(rng):
    def too_short(n, sd, info, generator):
        return np.ones(max(n - 1, 0))

    with pytest.raises(ValueError):
        sample_causal_effects(100, 1, 0.1, 0.3, effect_fn=too_short, pi_exact=True, rng=rng)


def test_resolve_effect_fns():
    fns = resolve_effect_fns(None, 3)
    assert fns == [normal_effects] * 3
    with pytest.raises(InvalidConfigurationError):
        resolve_effect_fns('laplace', 2)
    with pytest.raises(InvalidConfigurationError):
        resolve_effect_fns(['normal'], 2)


def test_mixture_normal_variance():
    """A mixture of normals has the requested variance."""
    effect_fn = mixture_normal_effects([1.0, 0.1], [0.2, 0.8])
    values = effect_fn(200_000, 0.5, None, np.random.default_rng(0))
    assert np.var(values) == pytest.approx(0.25, rel=0.03)
    with pytest.raises(ValueError):
        mixture_normal_effects([1.0, 0.1], [0.5, 0.6])


def test_af_dependent_effects():
    """Rare variants get larger standardized effects when alpha < -1."""
    af = np.concatenate([np.full(50_000, 0.01), np.full(50_000, 0.5)])
    info = pl.DataFrame({'AF': af})
    values = af_dependent_effects(alpha=-1.5)(len(af), 1.0, info, np.random.default_rng(0))
    assert np.mean(values ** 2) == pytest.approx(1.0, rel=0.05)
    assert np.var(values[:50_000]) > np.var(values[50_000:])
    with pytest.raises(ValueError):
        af_dependent_effects()(10, 1.0, pl.DataFrame({'x': np.ones(10)}), np.random.default_rng(0))


def test_annotation_pi(annotations):
    """Annotated variants are more likely to be causal; the mean is pi."""
    pi_fn = annotation_pi(['coding'], 0.2)
    probability = pi_fn(annotations)
    assert np.mean(probability) == pytest.approx(0.2)
    coding = annotations['coding'].to_numpy() == 1
    assert np.all(probability[coding] > probability[~coding])

    pi, per_variant = normalize_pi(pi_fn, 12, 2, annotations)
    assert per_variant
    assert pi.shape == (12, 2)
    np.testing.assert_array_equal(pi[:, 0], pi[:, 1])


def test_normalize_pi_shapes():
    pi, per_variant = normalize_pi(0.1, 5, 2)
    assert pi.shape == (5, 2) and not per_variant
    pi, per_variant = normalize_pi([0.1, 0.2], 5, 2)
    np.testing.assert_array_equal(pi[3], [0.1, 0.2])
    assert not per_variant
    with pytest.raises(ValueError):
        normalize_pi(1.5, 5, 2)
    with pytest.raises(ValueError):
        normalize_pi(np.zeros((4, 2)), 5, 2)


def test_softplus_robust():
    x = np.array([-800.0, -1.0, 0.0, 1.0, 800.0])
    y = softplus_robust(x)
    assert np.all(np.isfinite(y))
    np.testing.assert_allclose(y[1:4], np.log1p(np.exp(x[1:4])))
    assert y[-1] == pytest.approx(800.0)


def test_reproducible_with_seed():
    """The same generator seed gives the same effects."""
    a = sample_causal_effects(300, 2, 0.1, 0.3, rng=np.random.default_rng(7))
    b = sample_causal_effects(300, 2, 0.1, 0.3, rng=np.random.default_rng(7))
    np.testing.assert_array_equal(a, b)


def test_mixture_normal_rejects_negative_parameters():
    with pytest.raises(ValueError):
        mixture_normal_effects([1.0, -0.1], [0.5, 0.5])
    with pytest.raises(ValueError):
        mixture_normal_effects([1.0, 0.1], [1.2, -0.2])


def test_bernoulli_disjoint_sets_exhaust_pool(rng):
    """Without pi_exact, running out of unassigned variants also raises."""
    with pytest.raises(InsufficientVariantsError) as exc_info:
        sample_causal_effects(100, 3, 0.9, 0.3, sporadic_pleiotropy=False, rng=rng)
    assert exc_info.value.trait == 1
