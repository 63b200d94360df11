"""
Description:
    Two-layer network over one group of markers: energy, gradient, and the
    per-group object that owns state and draws HMC samples.
    USE THE CORRECT ENVIRONMENT:  GenoHMC

Author: GenoHMC developers
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

Model for one group (b2 is not group specific and lives with the driver):
    z     = X w1 + b1
    y_hat = w2 * tanh(z)
    U     = λb1/2 b1² + λw1/2 |w1|² + λw2/2 w2² + λe/2 |r - y_hat|²
log_density returns -U, without Gaussian normalizing constants.
"""
import logging
import math
from typing import Callable, Optional, Union

import jax
import jax.numpy as jnp
import jax.random as jr

from genohmc.datatypes import (
    B1_INDEX, W1_OFFSET, GroupData, IntegratorConfig, Precisions, SamplerConfig,
    SamplerState, GenotypeOperator, float_dtype, n_params, w2_index,
)
from genohmc.momentum import StandardNormalMomentum
from genohmc.sampler import DivergenceError, HMCSampler
from genohmc.target import Target

logger = logging.getLogger(__name__)


def activation_fn(x: jnp.ndarray) -> jnp.ndarray:
    return jnp.tanh(x)


def activation_fn_derivative(x: jnp.ndarray) -> jnp.ndarray:
    return 1. - jnp.tanh(x) ** 2


def split_params(theta: jnp.ndarray):
    """theta -> (b1, w1, w2)"""
    n_markers = theta.shape[0] - 2
    return theta[B1_INDEX], theta[W1_OFFSET:W1_OFFSET + n_markers], theta[w2_index(n_markers)]


def join_params(b1, w1, w2) -> jnp.ndarray:
    """(b1, w1, w2) -> theta"""
    return jnp.concatenate([jnp.atleast_1d(b1), w1, jnp.atleast_1d(w2)])


def forward_feed(genotypes: GenotypeOperator, b1, w1: jnp.ndarray, w2) -> jnp.ndarray:
    """y_hat = w2 tanh(X w1 + b1)"""
    return activation_fn(genotypes.right_multiply(w1) + b1) * w2


@jax.jit
def rss(theta: jnp.ndarray, data: GroupData) -> float:
    b1, w1, w2 = split_params(theta)
    r = data.residual - forward_feed(data.genotypes, b1, w1, w2)
    return jnp.dot(r, r)


@jax.jit
def log_density(theta: jnp.ndarray, data: GroupData) -> float:
    """-U(theta)"""
    lam = data.precisions
    b1, w1, w2 = split_params(theta)
    b1_part = -lam.b1 / 2. * b1 * b1
    w1_part = -lam.w1 / 2. * jnp.dot(w1, w1)
    w2_part = -lam.w2 / 2. * w2 * w2
    rss_part = -lam.e / 2. * rss(theta, data)
    return b1_part + w1_part + w2_part + rss_part


@jax.jit
def log_density_gradient(theta: jnp.ndarray, data: GroupData) -> jnp.ndarray:
    """∇(-U)(theta), same layout as theta"""
    lam = data.precisions
    X = data.genotypes
    b1, w1, w2 = split_params(theta)
    z = X.right_multiply(w1) + b1
    a = activation_fn(z)
    y_hat = w2 * a
    h_prime_of_z = activation_fn_derivative(z)
    drss_dyhat = -lam.e * (y_hat - data.residual)

    grad_b1 = -lam.b1 * b1 + w2 * jnp.dot(drss_dyhat, h_prime_of_z)
    grad_w1 = -lam.w1 * w1 + w2 * X.left_multiply(drss_dyhat * h_prime_of_z)
    grad_w2 = -lam.w2 * w2 + jnp.dot(drss_dyhat, a)
    return join_params(grad_b1, grad_w1, grad_w2)


GROUP_TARGET = Target(log_density=log_density, gradient=log_density_gradient)

GenotypeView = Union[GenotypeOperator, Callable[[], GenotypeOperator]]


class MarkerGroup:
    """
    A group of markers with its own (b1, w1, w2), precisions and sampler.

    The genotype matrix is shared and never owned here: `genotypes` is either
    the matrix itself or a zero-argument loader that returns it. It has to be
    bound with load_marker_data before the energy can be evaluated.
    """

    def __init__(
        self,
        residual,
        w1,
        b1: float,
        w2: float,
        genotypes: GenotypeView,
        n_individuals: int,
        n_markers: int,
        seed: int = 0,
        config: SamplerConfig = SamplerConfig(),
    ):
        self._n_individuals = int(n_individuals)
        self._n_markers = int(n_markers)
        self._residual = self._as_vector(residual, self._n_individuals, "residual")
        w1 = self._as_vector(w1, self._n_markers, "w1")
        self._theta = join_params(jnp.asarray(b1, dtype=float_dtype()), w1, jnp.asarray(w2, dtype=float_dtype()))
        self._precisions = Precisions()
        self._genotype_source = genotypes
        self._genotypes: Optional[GenotypeOperator] = None

        momentum_key, accept_key = jr.split(jr.PRNGKey(seed))
        self._sampler = HMCSampler(
            GROUP_TARGET,
            StandardNormalMomentum(self.dim, momentum_key),
            accept_key,
            config,
        )

    @staticmethod
    def _as_vector(x, length: int, name: str) -> jnp.ndarray:
        x = jnp.asarray(x, dtype=float_dtype())
        if x.shape != (length,):
            raise ValueError(f"{name} must have shape ({length},), got {x.shape}")
        return x

    @property
    def n_individuals(self) -> int:
        return self._n_individuals

    @property
    def n_markers(self) -> int:
        return self._n_markers

    @property
    def dim(self) -> int:
        """D = M + 2"""
        return n_params(self._n_markers)

    @property
    def residual(self) -> jnp.ndarray:
        return self._residual

    @property
    def b1(self) -> float:
        return float(self._theta[B1_INDEX])

    @property
    def w1(self) -> jnp.ndarray:
        return self._theta[W1_OFFSET:W1_OFFSET + self._n_markers]

    @property
    def w2(self) -> float:
        return float(self._theta[w2_index(self._n_markers)])

    @property
    def precisions(self) -> Precisions:
        return self._precisions

    @property
    def marker_data_loaded(self) -> bool:
        return self._genotypes is not None

    def set_precisions(self, lambda_w1: float, lambda_b1: float, lambda_w2: float, lambda_e: float) -> None:
        values = dict(lambda_w1=lambda_w1, lambda_b1=lambda_b1, lambda_w2=lambda_w2, lambda_e=lambda_e)
        for name, value in values.items():
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be positive and finite, got {value}")
        self._precisions = Precisions(w1=float(lambda_w1), b1=float(lambda_b1), w2=float(lambda_w2), e=float(lambda_e))

    def set_residual(self, residual) -> None:
        """Replace r between samples (the driver moves other groups' contributions in and out)"""
        self._residual = self._as_vector(residual, self._n_individuals, "residual")

    def load_marker_data(self) -> None:
        if self._genotypes is not None:
            return
        source = self._genotype_source
        genotypes = source if hasattr(source, "right_multiply") else source()
        shape = (genotypes.n_individuals, genotypes.n_markers)
        if shape != (self._n_individuals, self._n_markers):
            raise ValueError(
                f"genotype matrix has shape {shape}, group expects ({self._n_individuals}, {self._n_markers})"
            )
        self._genotypes = genotypes
        logger.debug("loaded marker data %s", shape)

    def forget_marker_data(self) -> None:
        self._genotypes = None
        logger.debug("forgot marker data")

    def param_vec(self) -> jnp.ndarray:
        return self._theta

    def group_data(self) -> GroupData:
        """(r, precisions, X) for the pure energy functions; needs bound marker data"""
        if self._genotypes is None:
            raise RuntimeError("marker data not loaded; call load_marker_data() first")
        return GroupData(residual=self._residual, precisions=self._precisions, genotypes=self._genotypes)

    def _check_theta(self, theta) -> jnp.ndarray:
        return self._as_vector(theta, self.dim, "theta")

    def forward_feed(self, theta=None) -> jnp.ndarray:
        """y_hat for theta (default: current parameters); excludes b2"""
        theta = self._theta if theta is None else self._check_theta(theta)
        data = self.group_data()
        b1, w1, w2 = split_params(theta)
        return forward_feed(data.genotypes, b1, w1, w2)

    def rss(self, theta=None) -> float:
        theta = self._theta if theta is None else self._check_theta(theta)
        return float(rss(theta, self.group_data()))

    def log_density(self, theta) -> float:
        return float(log_density(self._check_theta(theta), self.group_data()))

    def log_density_gradient(self, theta) -> jnp.ndarray:
        return log_density_gradient(self._check_theta(theta), self.group_data())

    def sample(self, step_size: float, integration_length: int) -> SamplerState:
        """One HMC draw; theta is written back if a proposal was accepted"""
        state = self._sampler.sample(self._theta, self.group_data(), step_size, integration_length)
        if state.accepted:
            self._theta = state.theta
        return state

    def sample_with(self, config: IntegratorConfig) -> SamplerState:
        return self.sample(config.τ, config.N)

    def sample_params(self, step_size: float, integration_length: int) -> jnp.ndarray:
        """
        Accepted theta as a flat vector. A call that hits max_divergent raises
        DivergenceError instead of returning theta_0; use sample() to get the
        SamplerState without raising.
        """
        state = self.sample(step_size, integration_length)
        if state.diverged:
            raise DivergenceError(state)
        return state.theta
