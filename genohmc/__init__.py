"""
GenoHMC: HMC sampling of per-group two-layer network parameters over
2-bit packed genotype matrices.
"""
from genohmc.datatypes import (
    QP, Precisions, GroupData, SamplerState, SamplerOutput, IntegratorConfig, SamplerConfig,
)
from genohmc.genotypes import GenotypeMatrix, pack_dosages
from genohmc.momentum import StandardNormalMomentum
from genohmc.network import MarkerGroup
from genohmc.sampler import DivergenceError, HMCSampler, hmc_sampler

__version__ = "0.1.0"
