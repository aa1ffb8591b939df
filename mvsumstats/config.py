"""Normalization and validation of simulation parameters."""

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Union

import numpy as np
import polars as pl

from .effects import EffectFn, normalize_pi, resolve_effect_fns
from .errors import InvalidConfigurationError
from .graph import validate_graph
from .ld import LDBlockList
from .overlap import SampleSizeSpec, resolve_overlap


@dataclass
class SimulationSpecification:
    """
    Holds the parameters of a multi-trait summary statistics simulation.

    Polymorphic inputs are normalized once, in __post_init__, and every
    incompatible combination of options is rejected there, before any
    random numbers are drawn.

    Attributes:
        N: Sample size: scalar, per-trait vector, M x M overlap matrix, or a
            polars DataFrame of sample groups (see resolve_overlap)
        J: Number of variants
        h2: Heritability of each trait (scalar or length-M)
        pi: Causal probability: scalar, length-M vector, J x M matrix, or a
            function of snp_info
        G: M x M direct trait-to-trait effects; defaults to no effects
        R_E: Optional environmental correlation matrix
        R_obs: Optional observed trait correlation matrix
        ld: Optional LD: an LDBlockList, one block, or a list of blocks; tiled
            to J variants
        af: Optional allele frequencies: scalar, array aligned to J variants
            or to the LD pattern, or a function of J returning an array
        snp_info: Optional annotation table aligned to J variants or to the LD pattern
        sporadic_pleiotropy: Whether a variant may be causal for several traits
        pi_exact: Draw exactly round(pi * J) causal variants per trait
        h2_exact: Rescale effects so that direct heritability is met exactly
        est_s: Also simulate estimated standard errors
        effect_fn: 'normal', an effect function, or one per trait
        h2_type: 'direct' if h2 holds each trait's own genetic variance
            component, 'total' if it holds the total heritability
        trait_names: Optional trait names
        random_seed: Seed used when no generator is passed to simulate()
    """
    N: SampleSizeSpec
    J: int
    h2: Union[float, Sequence[float], np.ndarray]
    pi: Any = 1.0
    G: Optional[np.ndarray] = None
    R_E: Optional[np.ndarray] = None
    R_obs: Optional[np.ndarray] = None
    ld: Any = None
    af: Optional[Union[float, np.ndarray, Callable[[int], np.ndarray]]] = None
    snp_info: Optional[pl.DataFrame] = None
    sporadic_pleiotropy: bool = True
    pi_exact: bool = False
    h2_exact: bool = False
    est_s: bool = False
    effect_fn: Union[str, EffectFn, Sequence, None] = 'normal'
    h2_type: str = 'direct'
    trait_names: Optional[List[str]] = None
    random_seed: Optional[int] = None

    num_traits: int = field(init=False)
    overlap: np.ndarray = field(init=False, repr=False)
    pi_matrix: np.ndarray = field(init=False, repr=False)
    pi_per_variant: bool = field(init=False)
    effect_fns: List[EffectFn] = field(init=False, repr=False)

    def __post_init__(self):
        """Normalize inputs to canonical shapes and validate them."""
        if int(self.J) != self.J or self.J <= 0:
            raise ValueError(f"J must be a positive integer, got {self.J}")
        self.J = int(self.J)
        self.num_traits = self._infer_num_traits()
        M = self.num_traits

        if self.G is None:
            self.G = np.zeros((M, M))
        self.G = np.asarray(self.G, dtype=float)
        if self.G.shape != (M, M):
            raise ValueError(f"G has shape {self.G.shape}, expected ({M}, {M})")
        validate_graph(self.G)

        self.h2 = np.broadcast_to(np.asarray(self.h2, dtype=float), (M,)).copy()
        if np.any(self.h2 < 0) or np.any(self.h2 > 1):
            raise ValueError("Heritabilities must lie in [0, 1]")
        if self.h2_type not in ('direct', 'total'):
            raise InvalidConfigurationError(f"h2_type must be 'direct' or 'total', got {self.h2_type}")
        if self.R_E is not None and self.R_obs is not None:
            raise InvalidConfigurationError("Supply at most one of R_obs and R_E")

        self.overlap = resolve_overlap(self.N, M)

        if self.ld is not None:
            self.ld = LDBlockList.build(self.ld, self.J)

        self.snp_info = self._build_snp_info()
        if 'AF' in self.snp_info.columns:
            self.af = self.snp_info['AF'].cast(pl.Float64).to_numpy()
            if np.any(self.af <= 0) or np.any(self.af >= 1):
                raise ValueError("Allele frequencies must lie strictly between 0 and 1")

        self.pi_matrix, self.pi_per_variant = normalize_pi(self.pi, self.J, M, self.snp_info)
        if self.pi_per_variant and self.pi_exact:
            raise InvalidConfigurationError("pi_exact=True requires a scalar or per-trait pi")
        if self.pi_per_variant and not self.sporadic_pleiotropy:
            raise InvalidConfigurationError("sporadic_pleiotropy=False requires a scalar or per-trait pi")

        self.effect_fns = resolve_effect_fns(self.effect_fn, M)

        if self.trait_names is None:
            self.trait_names = [f"trait_{i + 1}" for i in range(M)]
        if len(self.trait_names) != M:
            raise ValueError(f"Got {len(self.trait_names)} trait names for {M} traits")

    def _infer_num_traits(self) -> int:
        if self.G is not None:
            return np.asarray(self.G).shape[0]
        if np.ndim(self.h2) > 0:
            return len(self.h2)
        if isinstance(self.N, pl.DataFrame):
            return len(self.N.columns) - 1
        if np.ndim(self.N) > 0:
            return np.shape(self.N)[0]
        return 1

    def _tile(self, values):
        """Align a per-variant array or table to J variants, tiling it like the LD pattern."""
        if len(values) == self.J:
            return values
        if self.ld is None:
            raise ValueError(f"Expected {self.J} per-variant values, got {len(values)}")
        return self.ld.tile_values(values, self.J)

    def _build_snp_info(self) -> pl.DataFrame:
        """Variant table with a 1-based SNP id, AF if known, and user annotations."""
        snp_info = pl.DataFrame() if self.snp_info is None else self._tile(self.snp_info)
        columns = [pl.Series('SNP', np.arange(1, self.J + 1))]

        af = self.af
        if callable(af):
            af = af(self.J)
        if af is not None:
            af = np.asarray(af, dtype=float)
            af = np.full(self.J, float(af)) if af.ndim == 0 else self._tile(af)
            columns.append(pl.Series('AF', af))

        if snp_info.width == 0:
            return pl.DataFrame(columns)
        return snp_info.with_columns(columns).select(
            ['SNP'] + [c for c in snp_info.columns if c != 'SNP']
            + (['AF'] if af is not None and 'AF' not in snp_info.columns else [])
        )

    @property
    def pi_argument(self):
        """pi in the narrowest form accepted by sample_causal_effects."""
        return self.pi_matrix if self.pi_per_variant else self.pi_matrix[0]
