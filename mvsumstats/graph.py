"""
Trait graph resolution.

Turns a matrix of direct trait-to-trait effects into total effects and the
genetic and environmental covariance matrices implied by the model. All
traits are on a standardized scale, so a direct effect G[i, j] = a means
that a unit-variance change in trait i shifts trait j by a.
"""

import logging
from collections import deque
from typing import List, Optional, Tuple

import numpy as np

from .errors import CyclicGraphError, InfeasibleCorrelationError, InvalidConfigurationError

# Relative eigenvalue tolerance for positive semi-definiteness checks
PSD_TOL = 1e-8


def is_psd(matrix: np.ndarray, tol: float = PSD_TOL) -> bool:
    """Check whether a symmetric matrix is positive semi-definite.

    The smallest eigenvalue may be negative by at most tol times the largest
    eigenvalue magnitude (or tol, whichever is larger).
    """
    eigenvalues = np.linalg.eigvalsh(matrix)
    scale = max(1.0, float(np.max(np.abs(eigenvalues)))) if len(eigenvalues) else 1.0
    return bool(np.all(eigenvalues >= -tol * scale))


def _check_square(matrix: np.ndarray, name: str) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise ValueError(f"{name} must be a square matrix, got shape {matrix.shape}")
    if not np.all(np.isfinite(matrix)):
        raise ValueError(f"{name} contains non-finite entries")
    return matrix


def validate_graph(G: np.ndarray) -> List[int]:
    """Validate a direct-effect matrix and return a topological order of the traits.

    Args:
        G: M x M matrix, G[i, j] is the direct effect of trait i on trait j

    Returns:
        List of trait indices such that every edge points forward

    Raises:
        CyclicGraphError: If the diagonal is non-zero or the graph has a cycle
    """
    G = _check_square(G, "G")
    num_traits = G.shape[0]
    if np.any(np.diag(G) != 0):
        self_loops = np.flatnonzero(np.diag(G)).tolist()
        raise CyclicGraphError(f"G must have a zero diagonal; traits {self_loops} affect themselves")

    adjacency = G != 0
    in_degree = adjacency.sum(axis=0)
    queue = deque(np.flatnonzero(in_degree == 0).tolist())
    order = []
    while queue:
        i = queue.popleft()
        order.append(i)
        for j in np.flatnonzero(adjacency[i]):
            in_degree[j] -= 1
            if in_degree[j] == 0:
                queue.append(int(j))

    if len(order) < num_traits:
        on_cycle = sorted(set(range(num_traits)) - set(order))
        raise CyclicGraphError(f"G is not acyclic; traits {on_cycle} lie on or downstream of a cycle")
    return order


def longest_path_length(G: np.ndarray) -> int:
    """Number of edges on the longest directed path in the graph."""
    order = validate_graph(G)
    adjacency = np.asarray(G) != 0
    depth = np.zeros(len(order), dtype=int)
    for i in order:
        for j in np.flatnonzero(adjacency[i]):
            depth[j] = max(depth[j], depth[i] + 1)
    return int(depth.max()) if len(depth) else 0


def direct_to_total(G: np.ndarray) -> np.ndarray:
    """Compute total trait-to-trait effects from direct effects.

    TotalEffect = G + G^2 + ... which equals (I - G)^{-1} - I. Since G is
    nilpotent the series is finite and is evaluated exactly.
    """
    validate_graph(G)
    G = np.asarray(G, dtype=float)
    total = np.zeros_like(G)
    power = G.copy()
    for _ in range(G.shape[0]):
        if not np.any(power):
            break
        total += power
        power = power @ G
    return total


def total_to_direct(total: np.ndarray) -> np.ndarray:
    """Recover direct effects from total effects: G = I - (I + TotalEffect)^{-1}.

    Raises:
        CyclicGraphError: If the implied direct effects are not acyclic
    """
    total = _check_square(total, "total effect matrix")
    identity = np.eye(total.shape[0])
    G = identity - np.linalg.inv(identity + total)
    # Entries that should be structural zeros come back as round-off
    G[np.abs(G) < 1e-12] = 0.0
    np.fill_diagonal(G, 0.0)
    validate_graph(G)
    return G


def direct_h2_from_total(G: np.ndarray, h2_total: np.ndarray) -> np.ndarray:
    """Solve for the direct heritability of each trait given its total heritability.

    Raises:
        InvalidConfigurationError: If a trait's upstream traits already explain
            more genetic variance than its total heritability
    """
    order = validate_graph(G)
    path = np.eye(len(order)) + direct_to_total(G)
    h2_total = np.asarray(h2_total, dtype=float)
    h2_direct = np.zeros_like(h2_total)
    for i in order:
        inherited = np.sum(np.delete(path[:, i], i) ** 2 * np.delete(h2_direct, i))
        h2_direct[i] = h2_total[i] - inherited
        if h2_direct[i] < -PSD_TOL:
            raise InvalidConfigurationError(
                f"Trait {i} inherits genetic variance {inherited:.4g} from upstream traits, "
                f"which exceeds its total heritability {h2_total[i]:.4g}"
            )
        h2_direct[i] = max(h2_direct[i], 0.0)
    return h2_direct


def genetic_covariance(total: np.ndarray, h2_direct: np.ndarray) -> np.ndarray:
    """Sigma_G = (I + T)^T diag(h2) (I + T)."""
    path = np.eye(total.shape[0]) + total
    sigma_g = path.T @ np.diag(h2_direct) @ path
    return (sigma_g + sigma_g.T) / 2


def resolve(G: np.ndarray, h2: np.ndarray, h2_type: str = "direct") -> Tuple[np.ndarray, np.ndarray]:
    """Resolve a trait graph into total effects and genetic covariance.

    Args:
        G: M x M direct effect matrix
        h2: Length-M heritability vector
        h2_type: "direct" if h2 holds each trait's own genetic variance
            component, "total" if it holds the target diagonal of Sigma_G

    Returns:
        Tuple of (total effect matrix, Sigma_G)
    """
    G = _check_square(G, "G")
    h2 = np.asarray(h2, dtype=float).reshape(-1)
    if len(h2) != G.shape[0]:
        raise ValueError(f"h2 has length {len(h2)} but G has {G.shape[0]} traits")
    if np.any(h2 < 0):
        raise ValueError("Heritabilities must be non-negative")

    if h2_type == "total":
        h2 = direct_h2_from_total(G, h2)
    elif h2_type != "direct":
        raise ValueError(f"h2_type must be 'direct' or 'total', got {h2_type}")

    total = direct_to_total(G)
    sigma_g = genetic_covariance(total, h2)
    assert is_psd(sigma_g), "Genetic covariance should be PSD by construction"
    return total, sigma_g


def resolve_environment(
    sigma_g: np.ndarray,
    R_obs: Optional[np.ndarray] = None,
    R_E: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Compute the environmental covariance Sigma_E.

    Args:
        sigma_g: Genetic covariance matrix
        R_obs: Optional observed trait correlation matrix; Sigma_E = R_obs - Sigma_G
        R_E: Optional environmental correlation matrix, rescaled so that each
            trait has total variance one

    Returns:
        Sigma_E

    Raises:
        InvalidConfigurationError: If both R_obs and R_E are given
        InfeasibleCorrelationError: If the result is not PSD or a trait's
            genetic variance exceeds one
    """
    num_traits = sigma_g.shape[0]
    if R_obs is not None and R_E is not None:
        raise InvalidConfigurationError("Supply at most one of R_obs and R_E")

    env_var = 1 - np.diag(sigma_g)
    if np.any(env_var < -PSD_TOL):
        raise InfeasibleCorrelationError(
            "Genetic variance exceeds one for traits "
            f"{np.flatnonzero(env_var < -PSD_TOL).tolist()}", sigma_g
        )
    env_var = np.clip(env_var, 0, None)

    if R_obs is not None:
        R_obs = _check_square(R_obs, "R_obs")
        if R_obs.shape[0] != num_traits:
            raise ValueError(f"R_obs must be {num_traits} x {num_traits}")
        if not np.allclose(np.diag(R_obs), 1):
            raise ValueError("R_obs must be a correlation matrix with unit diagonal")
        sigma_e = R_obs - sigma_g
        if not is_psd(sigma_e):
            raise InfeasibleCorrelationError(
                "Observed trait correlation minus genetic covariance is not PSD", sigma_e
            )
        return sigma_e

    if R_E is not None:
        R_E = _check_square(R_E, "R_E")
        if R_E.shape[0] != num_traits:
            raise ValueError(f"R_E must be {num_traits} x {num_traits}")
        if not np.allclose(np.diag(R_E), 1):
            raise ValueError("R_E must be a correlation matrix with unit diagonal")
        scale = np.sqrt(env_var)
        sigma_e = R_E * np.outer(scale, scale)
        if not is_psd(sigma_e):
            raise InfeasibleCorrelationError("Environmental covariance is not PSD", sigma_e)
        return sigma_e

    logging.debug("No environmental correlation supplied; traits are environmentally independent")
    return np.diag(env_var)
