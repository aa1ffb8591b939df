"""Tests for trait graph resolution."""

import numpy as np
import pytest

from mvsumstats import (
    CyclicGraphError,
    InfeasibleCorrelationError,
    InvalidConfigurationError,
    direct_to_total,
    resolve,
    resolve_environment,
    total_to_direct,
    validate_graph,
)
from mvsumstats.graph import direct_h2_from_total, is_psd, longest_path_length


@pytest.fixture
def chain_graph():
    """Trait 0 -> 1 -> 2, plus a shortcut 0 -> 2, and an isolated trait 3."""
    G = np.zeros((4, 4))
    G[0, 1] = 0.5
    G[1, 2] = -0.3
    G[0, 2] = 0.2
    return G


def test_topological_order(chain_graph):
    """Every edge points forward in the returned order."""
    order = validate_graph(chain_graph)
    assert sorted(order) == [0, 1, 2, 3]
    position = {trait: k for k, trait in enumerate(order)}
    for i, j in zip(*np.nonzero(chain_graph)):
        assert position[i] < position[j]


def test_cycle_detected():
    """A cycle raises CyclicGraphError."""
    G = np.zeros((3, 3))
    G[0, 1] = 0.1
    G[1, 2] = 0.1
    G[2, 0] = 0.1
    with pytest.raises(CyclicGraphError):
        validate_graph(G)
    with pytest.raises(CyclicGraphError):
        direct_to_total(G)


def test_self_loop_detected():
    """A non-zero diagonal raises CyclicGraphError."""
    G = np.diag([0.0, 0.5])
    with pytest.raises(CyclicGraphError):
        validate_graph(G)


def test_non_square_graph():
    with pytest.raises(ValueError):
        validate_graph(np.zeros((2, 3)))


def test_total_effect_fixed_point(chain_graph):
    """TotalEffect = G + G @ TotalEffect and equals (I - G)^-1 - I."""
    total = direct_to_total(chain_graph)
    np.testing.assert_allclose(total, chain_graph + chain_graph @ total)
    expected = np.linalg.inv(np.eye(4) - chain_graph) - np.eye(4)
    np.testing.assert_allclose(total, expected, atol=1e-12)
    assert total[0, 2] == pytest.approx(0.2 + 0.5 * -0.3)


def test_graph_powers_vanish(chain_graph):
    """G raised to one more than the longest path length is exactly zero."""
    length = longest_path_length(chain_graph)
    assert length == 2
    assert np.any(np.linalg.matrix_power(chain_graph, length))
    assert not np.any(np.linalg.matrix_power(chain_graph, length + 1))


def test_total_to_direct_round_trip(chain_graph):
    """total_to_direct inverts direct_to_total."""
    recovered = total_to_direct(direct_to_total(chain_graph))
    np.testing.assert_allclose(recovered, chain_graph, atol=1e-10)


def test_two_trait_resolution():
    """Trait 1 -> trait 2 with effect sqrt(0.2)."""
    G = np.array([[0, np.sqrt(0.2)], [0, 0]])
    total, sigma_g = resolve(G, [0.3, 0.4])
    assert total[0, 1] == pytest.approx(np.sqrt(0.2))
    assert total[1, 0] == 0
    np.testing.assert_allclose(np.diag(sigma_g), [0.3, 0.4 + 0.2 * 0.3])
    assert sigma_g[0, 1] == pytest.approx(np.sqrt(0.2) * 0.3)


def test_sigma_g_psd(chain_graph):
    """Genetic covariance is symmetric PSD with non-negative diagonal."""
    rng = np.random.default_rng(0)
    for _ in range(20):
        h2 = rng.uniform(0, 0.5, size=4)
        _, sigma_g = resolve(chain_graph * rng.normal(size=(4, 4)), h2)
        np.testing.assert_allclose(sigma_g, sigma_g.T)
        assert is_psd(sigma_g)
        assert np.all(np.diag(sigma_g) >= 0)


def test_total_heritability(chain_graph):
    """With h2_type='total' the diagonal of Sigma_G matches the target."""
    h2_total = np.array([0.3, 0.4, 0.2, 0.1])
    _, sigma_g = resolve(chain_graph, h2_total, h2_type='total')
    np.testing.assert_allclose(np.diag(sigma_g), h2_total)

    h2_direct = direct_h2_from_total(chain_graph, h2_total)
    assert h2_direct[0] == pytest.approx(0.3)
    assert h2_direct[1] == pytest.approx(0.4 - 0.25 * 0.3)


def test_total_heritability_too_small():
    """Upstream traits explaining more than the total heritability is an error."""
    G = np.array([[0, 0.9], [0, 0]])
    with pytest.raises(InvalidConfigurationError):
        resolve(G, [0.5, 0.1], h2_type='total')


def test_default_environment():
    """Without a correlation, traits are environmentally independent."""
    _, sigma_g = resolve(np.zeros((2, 2)), [0.3, 0.6])
    sigma_e = resolve_environment(sigma_g)
    np.testing.assert_allclose(sigma_e, np.diag([0.7, 0.4]))


def test_environmental_correlation():
    """R_E sets environmental correlation; traits keep unit variance."""
    G = np.array([[0, 0.3], [0, 0]])
    _, sigma_g = resolve(G, [0.3, 0.4])
    R_E = np.array([[1, 0.5], [0.5, 1]])
    sigma_e = resolve_environment(sigma_g, R_E=R_E)
    trait_corr = sigma_g + sigma_e
    np.testing.assert_allclose(np.diag(trait_corr), 1)
    env_sd = np.sqrt(np.diag(sigma_e))
    assert sigma_e[0, 1] / (env_sd[0] * env_sd[1]) == pytest.approx(0.5)


def test_observed_correlation():
    """R_obs is reproduced exactly as Sigma_G + Sigma_E."""
    _, sigma_g = resolve(np.zeros((2, 2)), [0.3, 0.3])
    R_obs = np.array([[1, 0.2], [0.2, 1]])
    sigma_e = resolve_environment(sigma_g, R_obs=R_obs)
    np.testing.assert_allclose(sigma_g + sigma_e, R_obs)


def test_infeasible_observed_correlation():
    """R_obs minus Sigma_G that is not PSD is rejected with the offending matrix."""
    sigma_g = np.array([[0.5, 0.4], [0.4, 0.5]])
    R_obs = np.array([[1, -0.5], [-0.5, 1]])
    with pytest.raises(InfeasibleCorrelationError) as exc_info:
        resolve_environment(sigma_g, R_obs=R_obs)
    np.testing.assert_allclose(exc_info.value.matrix, R_obs - sigma_g)
    assert exc_info.value.min_eigenvalue < 0


def test_both_environment_specs_rejected():
    sigma_g = np.diag([0.2, 0.2])
    with pytest.raises(InvalidConfigurationError):
        resolve_environment(sigma_g, R_obs=np.eye(2), R_E=np.eye(2))


def test_genetic_variance_above_one():
    """A trait whose genetic variance exceeds one cannot have unit variance."""
    G = np.array([[0, 1.0], [0, 0]])
    _, sigma_g = resolve(G, [0.8, 0.5])
    with pytest.raises(InfeasibleCorrelationError):
        resolve_environment(sigma_g)
