"""Exceptions raised while configuring or running a simulation."""

from typing import Optional

import numpy as np


class MvSumstatsError(ValueError):
    """Base class for simulation configuration and input errors."""


class CyclicGraphError(MvSumstatsError):
    """The trait-to-trait effect matrix does not describe a DAG."""


class InvalidConfigurationError(MvSumstatsError):
    """Incompatible combination of simulation options."""


class InfeasibleCorrelationError(MvSumstatsError):
    """Requested correlation structure is not positive semi-definite.

    Attributes:
        matrix: The offending matrix
        min_eigenvalue: Its smallest eigenvalue
    """

    def __init__(self, message: str, matrix: Optional[np.ndarray] = None):
        self.matrix = matrix
        self.min_eigenvalue = None
        if matrix is not None:
            self.min_eigenvalue = float(np.min(np.linalg.eigvalsh(matrix)))
            message = f"{message} (smallest eigenvalue {self.min_eigenvalue:.3g})\n{matrix}"
        super().__init__(message)


class InsufficientVariantsError(MvSumstatsError):
    """Not enough variants left to assign non-overlapping causal sets.

    Attributes:
        trait: Index of the trait that could not be served
        shortfall: How many variants were missing
    """

    def __init__(self, trait: int, needed: int, available: int):
        self.trait = trait
        self.shortfall = needed - available
        super().__init__(
            f"Trait {trait} needs {needed} causal variants but only {available} "
            f"remain in the pool ({self.shortfall} short). Reduce pi, increase J, "
            f"or allow sporadic pleiotropy."
        )
