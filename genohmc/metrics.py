"""
Description:
    MCMC diagnostics and metrics.
    USE THE CORRECT ENVIRONMENT:  GenoHMC

Author: GenoHMC developers
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

All functions take draws stacked as (n_samples, D).
"""
import jax.numpy as jnp
import numpy as np


def sample_covariance(draws):
    """(D, D) unbiased covariance of the draws"""
    centred = draws - jnp.mean(draws, axis=0)
    return centred.T @ centred / (draws.shape[0] - 1)


def sample_variance(draws):
    """Per-coordinate variance, the diagonal of sample_covariance"""
    return jnp.var(draws, axis=0, ddof=1)


def sample_correlation(draws):
    sigma = sample_covariance(draws)
    sd = jnp.sqrt(jnp.diag(sigma))
    return sigma / jnp.outer(sd, sd)


def max_off_diagonal(matrix):
    """Largest |m_ij| with i != j; 0 for a 1 x 1 matrix"""
    matrix = np.asarray(matrix)
    off = matrix[~np.eye(matrix.shape[0], dtype=bool)]
    return float(np.max(np.abs(off))) if off.size else 0.


def relative_error(estimate, reference):
    estimate = np.asarray(estimate)
    reference = np.asarray(reference)
    return np.abs(estimate - reference) / np.abs(reference)
