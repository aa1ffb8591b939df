"""mvsumstats package for simulating multi-trait GWAS summary statistics."""

from mvsumstats.config import SimulationSpecification
from mvsumstats.effects import (
    af_dependent_effects,
    annotation_pi,
    fixed_effects,
    mixture_normal_effects,
    normal_effects,
    sample_causal_effects,
)
from mvsumstats.errors import (
    CyclicGraphError,
    InfeasibleCorrelationError,
    InsufficientVariantsError,
    InvalidConfigurationError,
    MvSumstatsError,
)
from mvsumstats.graph import (
    direct_to_total,
    resolve,
    resolve_environment,
    total_to_direct,
    validate_graph,
)
from mvsumstats.ld import DenseLDBlock, EigenLDBlock, LDBlock, LDBlockList, SparseLDBlock
from mvsumstats.ld_utils import ProxyResult, extract_ld, ld_proxy, ld_prune
from mvsumstats.overlap import compute_R, resolve_overlap
from mvsumstats.propagate import draw_estimates, propagate
from mvsumstats.simulate import Simulate, SimulationResult, resample_sumstats, run_simulate

__all__ = [
    'run_simulate',
    'resample_sumstats',
    'Simulate',
    'SimulationResult',
    'SimulationSpecification',
    'sample_causal_effects',
    'normal_effects',
    'fixed_effects',
    'mixture_normal_effects',
    'af_dependent_effects',
    'annotation_pi',
    'validate_graph',
    'direct_to_total',
    'total_to_direct',
    'resolve',
    'resolve_environment',
    'resolve_overlap',
    'compute_R',
    'propagate',
    'draw_estimates',
    'LDBlock',
    'DenseLDBlock',
    'SparseLDBlock',
    'EigenLDBlock',
    'LDBlockList',
    'ld_prune',
    'ld_proxy',
    'extract_ld',
    'ProxyResult',
    'MvSumstatsError',
    'CyclicGraphError',
    'InfeasibleCorrelationError',
    'InvalidConfigurationError',
    'InsufficientVariantsError',
]
