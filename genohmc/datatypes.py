"""
Description:
    Core data structures for GenoHMC.
    USE THE CORRECT ENVIRONMENT:  GenoHMC

Author: GenoHMC developers
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

All modules import from here to ensure type consistency and avoid indexing bugs.
Flat parameter layout (D = M + 2):
    theta[0]        = b1
    theta[1:M + 1]  = w1
    theta[M + 1]    = w2
"""
from typing import NamedTuple, Optional, Protocol, Any
import jax
import jax.numpy as jnp

B1_INDEX = 0
W1_OFFSET = 1


def float_dtype():
    """Canonical JAX float (float64 only when jax_enable_x64 is set)"""
    return jax.dtypes.canonicalize_dtype(jnp.float64)


def n_params(n_markers: int) -> int:
    """Dimension D of theta for a group of n_markers"""
    return n_markers + 2


def w2_index(n_markers: int) -> int:
    return n_markers + 1


class QP(NamedTuple):
    """Phase space state(q,p), q = theta"""
    q: jnp.ndarray # position
    p: jnp.ndarray # momentum

    @property
    def dim(self) -> int:
        """Dimension of configuration space"""
        return self.q.shape[0]
    def to_array(self) -> jnp.ndarray:
        """Convert to flat array [q,p]"""
        return jnp.concatenate([self.q, self.p])
    @classmethod
    def from_array(cls, arr: jnp.ndarray):
        """Convert from flat array[q,p]"""
        dim = arr.shape[0]//2
        return cls(q=arr[:dim], p=arr[dim:])


class Precisions(NamedTuple):
    """Precision hyperparameters of one marker group"""
    w1: float = 1.0
    b1: float = 1.0
    w2: float = 1.0
    e: float = 1.0


class GroupData(NamedTuple):
    """Everything the group energy needs besides theta. Passed through jit as a pytree."""
    residual: jnp.ndarray # r, length N
    precisions: Precisions
    genotypes: Any # GenotypeOperator


class SamplerState(NamedTuple):
    """Outcome of one sampling call"""
    theta: jnp.ndarray # accepted theta, or theta_0 if nothing was accepted
    accepted: bool
    log_accept_ratio: float # NegH(end) - NegH(start) of the last proposal
    n_proposals: int
    n_divergent: int # consecutive non-finite proposals at return
    diverged: bool # max_divergent was hit


class SamplerOutput(NamedTuple):
    samples: jnp.ndarray # (n_samples, D) - positions only
    log_accept_ratio: jnp.ndarray # per accepted sample
    accept_rate: float # accepted draws / proposals
    diverged: bool


class IntegratorConfig (NamedTuple):
    """Configuration for the leapfrog integrator"""
    τ: float # time-step size
    N: int # Number of integration steps


class SamplerConfig(NamedTuple):
    """Configuration for the accept loop"""
    max_divergent: Optional[int] = 100 # consecutive non-finite proposals before giving up; None = never
    single_try: bool = False # standard HMC: keep theta_0 on rejection instead of retrying


class GenotypeOperator(Protocol):
    """Linear operators over a genotype matrix X (N x M). Implementations must be JAX pytrees."""
    n_individuals: int
    n_markers: int

    def right_multiply(self, w: jnp.ndarray) -> jnp.ndarray: ...
    def left_multiply(self, v: jnp.ndarray) -> jnp.ndarray: ...


class MomentumSource(Protocol):
    dim: int

    def sample(self) -> jnp.ndarray: ...
    def log_density(self, p: jnp.ndarray) -> float: ...
