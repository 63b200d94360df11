"""
Description:
    Leapfrog integration of Hamiltonian dynamics (identity mass).
    USE THE CORRECT ENVIRONMENT:  GenoHMC

Author: GenoHMC developers
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

`gradient` is ∇ log π = ∇(-U), so momentum kicks are additions.
It is a static argument of the jitted integrators: pass a module-level
function f(q, data) and keep everything that changes in `data`.
"""
import jax
import jax.numpy as jnp
from functools import partial
from typing import Callable, Any
from genohmc.datatypes import QP, IntegratorConfig


def lf_step(
        qp: QP,
        gradient: Callable[[jnp.ndarray, Any], jnp.ndarray],
        data: Any,
        τ: float
) -> QP:
    """
    Single lf integration step.

    Does p-first: half kick, drift, half kick.
    """
    # Half step momentum
    p_half = qp.p + 0.5 * τ * gradient(qp.q, data)

    # Full step position
    q_new = qp.q + τ * p_half

    # Half step momentum
    p_new = p_half + 0.5 * τ * gradient(q_new, data)

    return QP(q=q_new, p=p_new)


@partial(jax.jit, static_argnames=['gradient', 'N'])
def lf_integrate(
    qp: QP,
    gradient: Callable[[jnp.ndarray, Any], jnp.ndarray],
    data: Any,
    τ: float,
    N: int
) -> QP:
    """
    LF integration using scan.

    Args:
        qp: Initial state
        gradient: ∇ log π(q, data)
        data: Target data (pytree)
        τ: Step size
        N: Number of steps

    Returns:
        Final state after N steps
    """
    def body_fn(qp_state, _):
        qp_new = lf_step(qp_state, gradient, data, τ)
        return qp_new, None

    qp_final, _ = jax.lax.scan(body_fn, qp, None, length=N)
    return qp_final


@partial(jax.jit, static_argnames=['gradient', 'N'])
def lf_trajectory(
    qp: QP,
    gradient: Callable[[jnp.ndarray, Any], jnp.ndarray],
    data: Any,
    τ: float,
    N: int
) -> QP:
    """
    Like lf_integrate but keeps the path.

    Returns:
        QP with leading axis N + 1: the initial state followed by every step
    """
    def body_fn(qp_state, _):
        qp_new = lf_step(qp_state, gradient, data, τ)
        return qp_new, qp_new

    _, path = jax.lax.scan(body_fn, qp, None, length=N)
    return QP(
        q=jnp.concatenate([qp.q[None], path.q]),
        p=jnp.concatenate([qp.p[None], path.p]),
    )


def gen_leapfrog(
    gradient: Callable[[jnp.ndarray, Any], jnp.ndarray],
    config: IntegratorConfig
) -> Callable[[QP, Any], QP]:
    """
    Generate a leapfrog integrator with fixed (τ, N).
    """
    def leapfrog(qp: QP, data: Any) -> QP:
        return lf_integrate(qp, gradient, data, config.τ, config.N)

    return leapfrog
