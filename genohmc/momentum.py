"""
Description:
    Momentum source: identity-covariance Gaussian.
    USE THE CORRECT ENVIRONMENT:  GenoHMC

Author: GenoHMC developers
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1
"""
import math
import jax
import jax.numpy as jnp
import jax.random as jr

from genohmc.datatypes import float_dtype

LOG_2PI = math.log(2.0 * math.pi)


@jax.jit
def standard_normal_log_density(p: jnp.ndarray) -> float:
    """log N(p; 0, I) = -0.5 p.p - (D/2) log(2π)"""
    return -0.5 * jnp.dot(p, p) - 0.5 * p.shape[0] * LOG_2PI


class StandardNormalMomentum:
    """
    p ~ N(0, I_D). Owns its PRNG key; do not share it with other stochastic
    components, so chains stay reproducible per seed.
    """

    def __init__(self, dim: int, key: jax.Array):
        if dim < 1:
            raise ValueError(f"dim must be positive, got {dim}")
        self._dim = int(dim)
        self._key = key

    @classmethod
    def from_seed(cls, dim: int, seed: int = 0):
        return cls(dim, jr.PRNGKey(seed))

    @property
    def dim(self) -> int:
        return self._dim

    def sample(self) -> jnp.ndarray:
        self._key, key = jr.split(self._key)
        return jr.normal(key, shape=(self._dim,), dtype=float_dtype())

    def log_density(self, p: jnp.ndarray) -> float:
        p = jnp.asarray(p)
        if p.shape != (self._dim,):
            raise ValueError(f"momentum must have shape ({self._dim},), got {p.shape}")
        return standard_normal_log_density(p)
