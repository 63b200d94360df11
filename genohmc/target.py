"""
Description:
    Target distributions for the sampler.
    USE THE CORRECT ENVIRONMENT:  GenoHMC

Author: GenoHMC developers
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

A Target is a pair of pure functions f(theta, data). They are passed to
jitted integrators as static arguments, so they must be module-level
functions (hashable), with everything that varies carried in `data`.
"""
from typing import NamedTuple, Callable, Any
import jax
import jax.numpy as jnp

from genohmc.datatypes import float_dtype


class Target(NamedTuple):
    """
    log π(θ) = -U(θ) and its gradient ∇(-U)(θ).
    """
    log_density: Callable[[jnp.ndarray, Any], float]
    gradient: Callable[[jnp.ndarray, Any], jnp.ndarray]


@jax.jit
def gaussian_log_density(q: jnp.ndarray, precision: jnp.ndarray) -> float:
    """Unnormalized diagonal Gaussian, data = precision vector"""
    return -0.5 * jnp.dot(q, precision * q)


@jax.jit
def gaussian_gradient(q: jnp.ndarray, precision: jnp.ndarray) -> jnp.ndarray:
    return -precision * q


GAUSSIAN_TARGET = Target(log_density=gaussian_log_density, gradient=gaussian_gradient)


def gen_gaussian(
        dim: int = 2,
        precision: jnp.ndarray = None,
        var: jnp.ndarray = None
) -> tuple[Target, jnp.ndarray]:
    """
    Diagonal Gaussian target. Returns (target, data) ready for the integrator.
    """
    if precision is not None and var is not None:
        raise ValueError(
            "Please supply either a precision or a var, not both"
        )

    if precision is None and var is not None:
        precision = 1.0 / jnp.asarray(var, dtype=float_dtype())

    if precision is None and var is None:
        precision = jnp.ones(dim, dtype=float_dtype())
    precision = jnp.asarray(precision, dtype=float_dtype())
    if jnp.any(precision <= 0):
        raise ValueError("precision must be positive")
    return GAUSSIAN_TARGET, precision
