"""
Description:
    Hamiltonian and phase-space operations.
    USE THE CORRECT ENVIRONMENT:  GenoHMC

Author: GenoHMC developers
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

Everything here works with the negative Hamiltonian
    -H(q,p) = log π(q) + log ρ(p) = -U(q) - K(p)
which is the quantity whose endpoint difference drives acceptance.
"""
from typing import Any
import jax.numpy as jnp

from genohmc.datatypes import QP, MomentumSource
from genohmc.target import Target


def neg_hamiltonian(target: Target, momentum: MomentumSource, qp: QP, data: Any) -> float:
    """-H = (-U) + (-K)"""
    return target.log_density(qp.q, data) + momentum.log_density(qp.p)


def neg_hamiltonian_path(target: Target, momentum: MomentumSource, path: QP, data: Any) -> jnp.ndarray:
    """-H at every state of a stacked trajectory (from lf_trajectory)"""
    return jnp.stack([
        neg_hamiltonian(target, momentum, QP(q=q, p=p), data)
        for q, p in zip(path.q, path.p)
    ])


def flip_momentum(qp: QP) -> QP:
    """Time reversal: (q, p) -> (q, -p)"""
    return QP(q=qp.q, p=-qp.p)


def is_finite(qp: QP) -> bool:
    return bool(jnp.all(jnp.isfinite(qp.q)) & jnp.all(jnp.isfinite(qp.p)))
