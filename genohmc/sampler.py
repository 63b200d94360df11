"""
Description:
    HMC proposal / accept kernel with momentum resampling.
    USE THE CORRECT ENVIRONMENT:  GenoHMC

Author: GenoHMC developers
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

Default policy is repeat-until-accept: every rejected proposal restarts from
theta_0 with fresh momentum, until one is accepted. This is not textbook HMC.
The chain targets π only as the acceptance probability goes to 1; otherwise
it favours trajectories with small energy error. SamplerConfig(single_try=True)
gives the standard kernel (one proposal, keep theta_0 on rejection).
"""
import logging
import math
from typing import Any, Tuple

import jax
import jax.numpy as jnp
import jax.random as jr

from genohmc.datatypes import QP, SamplerConfig, SamplerState, SamplerOutput, MomentumSource
from genohmc.hamiltonian import neg_hamiltonian, is_finite
from genohmc.integrator import lf_integrate
from genohmc.target import Target

logger = logging.getLogger(__name__)


class DivergenceError(RuntimeError):
    """Raised by MarkerGroup.sample_params when the divergence threshold is hit; `state` has the diagnostics"""

    def __init__(self, state: SamplerState):
        super().__init__(
            f"{state.n_divergent} consecutive divergent proposals; theta was not updated"
        )
        self.state = state


def draw_momentum(q: jnp.ndarray, momentum: MomentumSource) -> QP:
    """
    Keeps position q, resamples p from the momentum source.
    """
    return QP(q=q, p=momentum.sample())


def acceptance_probability(log_accept_ratio: float) -> float:
    """
    min(1, exp(log ratio)); a non-finite ratio is a numerical failure and gives 0.
    """
    if not math.isfinite(log_accept_ratio):
        return 0.0
    if log_accept_ratio >= 0.:
        return 1.0
    return math.exp(log_accept_ratio)


def accept_reject(acc_prob: float, key: jax.Array) -> bool:
    """
    Metropolis accept/reject step: u ~ U[0, 1), accept if u < acc_prob.
    """
    u = jr.uniform(key, shape=())
    return bool(u < acc_prob)


class HMCSampler:
    """
    Draws one posterior sample per call from `target` (identity mass, fixed τ and N).

    Holds the momentum source and a PRNG key for the uniform acceptance
    draws; nothing about the chain itself is kept between calls.
    """

    def __init__(self, target: Target, momentum: MomentumSource, key: jax.Array,
                 config: SamplerConfig = SamplerConfig()):
        if config.max_divergent is not None and config.max_divergent < 1:
            raise ValueError(f"max_divergent must be positive or None, got {config.max_divergent}")
        self.target = target
        self.momentum = momentum
        self.config = config
        self._key = key

    def propose(self, q0: jnp.ndarray, data: Any, τ: float, N: int) -> Tuple[QP, float]:
        """
        One trajectory from (q0, fresh p0).

        Returns:
            (end state, log acceptance ratio); the ratio is nan if the
            trajectory went non-finite
        """
        qp0 = draw_momentum(q0, self.momentum)
        qp_star = lf_integrate(qp0, self.target.gradient, data, τ, N)
        if not is_finite(qp_star):
            return qp_star, math.nan
        log_ratio = float(
            neg_hamiltonian(self.target, self.momentum, qp_star, data)
            - neg_hamiltonian(self.target, self.momentum, qp0, data)
        )
        return qp_star, log_ratio

    def accept(self, acc_prob: float) -> bool:
        self._key, key = jr.split(self._key)
        return accept_reject(acc_prob, key)

    def sample(self, q0: jnp.ndarray, data: Any, τ: float, N: int) -> SamplerState:
        if not τ > 0:
            raise ValueError(f"step size must be positive, got {τ}")
        if N < 1:
            raise ValueError(f"integration length must be at least 1, got {N}")

        n_proposals = 0
        n_divergent = 0
        while True:
            qp_star, log_ratio = self.propose(q0, data, τ, N)
            n_proposals += 1
            if self.accept(acceptance_probability(log_ratio)):
                return SamplerState(qp_star.q, True, log_ratio, n_proposals, 0, False)

            if math.isfinite(log_ratio):
                n_divergent = 0
                logger.debug("proposal %d rejected, log ratio %.4g", n_proposals, log_ratio)
            else:
                n_divergent += 1
                logger.debug("proposal %d diverged (%d in a row)", n_proposals, n_divergent)
                if self.config.max_divergent is not None and n_divergent >= self.config.max_divergent:
                    logger.warning(
                        "%d consecutive divergent proposals at step size %g, N=%d; returning theta_0",
                        n_divergent, τ, N,
                    )
                    return SamplerState(q0, False, log_ratio, n_proposals, n_divergent, True)

            if self.config.single_try:
                return SamplerState(q0, False, log_ratio, n_proposals, n_divergent, False)


def hmc_sampler(group, n_samples: int, τ: float, N: int) -> SamplerOutput:
    """
    Run `group.sample` n_samples times and stack the draws.

    Stops early if a call reports divergence.

    Args:
        group: Anything with sample(τ, N) -> SamplerState, e.g. MarkerGroup
        n_samples: Number of draws
        τ: Step size
        N: Number of integration steps

    Returns:
        SamplerOutput with samples of shape (n_drawn, D)
    """
    samples = []
    log_ratios = []
    n_proposals = 0
    n_accepted = 0
    diverged = False
    for _ in range(n_samples):
        state = group.sample(τ, N)
        n_proposals += state.n_proposals
        n_accepted += int(state.accepted)
        if state.diverged:
            diverged = True
            break
        samples.append(state.theta)
        log_ratios.append(state.log_accept_ratio)

    accept_rate = n_accepted / n_proposals if n_proposals else 0.0
    logger.info(
        "drew %d samples from %d proposals (accept rate %.3f)", len(samples), n_proposals, accept_rate
    )
    return SamplerOutput(
        samples=jnp.stack(samples) if samples else jnp.zeros((0, group.dim)),
        log_accept_ratio=jnp.asarray(log_ratios),
        accept_rate=accept_rate,
        diverged=diverged,
    )
