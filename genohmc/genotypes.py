"""
Description:
    Memory-compact genotype matrix X (N individuals x M markers).
    USE THE CORRECT ENVIRONMENT:  GenoHMC

Author: GenoHMC developers
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.1

Storage is 2 bits per entry, column-major, four individuals per byte with
the first individual in the lowest bits. Codes follow PLINK .bed (SNP-major):
    0b00 -> 2 copies of the first allele
    0b01 -> missing
    0b10 -> heterozygous
    0b11 -> 0 copies of the first allele

Each column carries a lookup table code -> value, which is where centering,
scaling and mean imputation of missing entries live. Columns are decoded a
block at a time inside the jitted products, so the dense matrix never exists
in full.
"""
import logging
from functools import partial
from typing import Optional

import jax
import jax.numpy as jnp
import numpy as np

from genohmc.datatypes import float_dtype

logger = logging.getLogger(__name__)

MISSING_CODE = 0b01
# dosage -> code, indexed by dosage 0, 1, 2
DOSAGE_TO_CODE = np.array([0b11, 0b10, 0b00], dtype=np.uint8)
# code -> dosage, nan for missing
CODE_TO_DOSAGE = np.array([2.0, np.nan, 1.0, 0.0])

_SHIFTS = np.array([0, 2, 4, 6], dtype=np.uint8)
_BLOCK_ELEMENTS = 1 << 22 # decoded entries per block


def n_bytes(n_individuals: int) -> int:
    """Bytes per packed column"""
    return (n_individuals + 3) // 4


def pack_dosages(dosages) -> np.ndarray:
    """
    Pack an (N, M) dosage matrix into (M, ceil(N/4)) column bytes.

    Missing entries are NaN or negative. Anything else must be 0, 1 or 2.
    """
    dos = np.asarray(dosages, dtype=float)
    if dos.ndim != 2:
        raise ValueError(f"dosages must be 2-d (N, M), got shape {dos.shape}")
    n, m = dos.shape
    missing = ~np.isfinite(dos) | (dos < 0)
    observed = dos[~missing]
    if not np.all(np.isin(observed, (0.0, 1.0, 2.0))):
        raise ValueError("dosages must be 0, 1, 2 or missing (NaN / negative)")

    codes = np.full(dos.shape, MISSING_CODE, dtype=np.uint8)
    codes[~missing] = DOSAGE_TO_CODE[observed.astype(np.intp)]
    codes = np.pad(codes.T, ((0, 0), (0, 4 * n_bytes(n) - n)))
    codes = codes.reshape(m, n_bytes(n), 4)
    return np.bitwise_or.reduce(codes << _SHIFTS, axis=-1).astype(np.uint8)


def unpack_codes(packed: np.ndarray, n_individuals: int) -> np.ndarray:
    """Host-side inverse of the byte layout: (M, nbytes) -> (M, N) codes"""
    codes = (packed[:, :, None] >> _SHIFTS) & 0b11
    return codes.reshape(packed.shape[0], -1)[:, :n_individuals]


def _column_lookup(codes: np.ndarray, center: bool, scale: bool):
    """Per-column (M, 4) code -> value tables and observed column means"""
    counts = np.stack([(codes == c).sum(axis=1) for c in range(4)], axis=1).astype(float)
    n_obs = counts[:, 0] + counts[:, 2] + counts[:, 3]
    has_obs = n_obs > 0
    safe_n = np.where(has_obs, n_obs, 1.0)
    mean = (2.0 * counts[:, 0] + counts[:, 2]) / safe_n
    mean_sq = (4.0 * counts[:, 0] + counts[:, 2]) / safe_n
    var = np.maximum(mean_sq - mean**2, 0.0)
    mean = np.where(has_obs, mean, 0.0)

    lookup = np.tile(CODE_TO_DOSAGE, (codes.shape[0], 1))
    lookup[:, MISSING_CODE] = mean # mean imputation
    if center or scale:
        lookup -= mean[:, None]
    if scale:
        std = np.sqrt(var)
        lookup /= np.where(std > 0, std, 1.0)[:, None]
    lookup[~has_obs] = 0.0
    return lookup, mean


def _decode_block(packed_block, lookup_block, n_individuals):
    """(B, nbytes) bytes and (B, 4) tables -> (B, N) values"""
    shifts = jnp.asarray(_SHIFTS)
    codes = (packed_block[:, :, None] >> shifts) & 0b11
    codes = codes.reshape(packed_block.shape[0], -1)[:, :n_individuals]
    return jnp.take_along_axis(lookup_block, codes.astype(jnp.int32), axis=1)


@partial(jax.jit, static_argnames=['n_individuals'])
def _right_multiply(packed, lookup, w, n_individuals):
    """X w, accumulated over column blocks in ascending order"""
    n_blocks, block, _ = packed.shape
    w_blocks = jnp.pad(w, (0, n_blocks * block - w.shape[0])).reshape(n_blocks, block)

    def body_fn(acc, xs):
        packed_block, lookup_block, w_block = xs
        values = _decode_block(packed_block, lookup_block, n_individuals)
        return acc + w_block @ values, None

    acc0 = jnp.zeros(n_individuals, dtype=jnp.result_type(lookup, w))
    out, _ = jax.lax.scan(body_fn, acc0, (packed, lookup, w_blocks))
    return out


@partial(jax.jit, static_argnames=['n_individuals', 'n_markers'])
def _left_multiply(packed, lookup, v, n_individuals, n_markers):
    """X^T v, one dot product per column"""
    def body_fn(_, xs):
        packed_block, lookup_block = xs
        values = _decode_block(packed_block, lookup_block, n_individuals)
        return None, values @ v

    _, out = jax.lax.scan(body_fn, None, (packed, lookup))
    return out.reshape(-1)[:n_markers]


@jax.tree_util.register_pytree_node_class
class GenotypeMatrix:
    """
    Immutable 2-bit genotype matrix with X w and X^T v.

    Build with from_dosages or from_packed. The instance is a pytree so it
    can be handed to jitted functions; (N, M) travel as static data.
    """

    def __init__(self, packed: np.ndarray, lookup: np.ndarray, n_individuals: int,
                 column_means: Optional[np.ndarray] = None, block_size: Optional[int] = None):
        packed = np.asarray(packed, dtype=np.uint8)
        lookup = np.asarray(lookup, dtype=float)
        if packed.ndim != 2 or packed.shape[1] != n_bytes(n_individuals):
            raise ValueError(
                f"packed must have shape (M, {n_bytes(n_individuals)}) for N={n_individuals}, got {packed.shape}"
            )
        n_markers = packed.shape[0]
        if lookup.shape != (n_markers, 4):
            raise ValueError(f"lookup must have shape ({n_markers}, 4), got {lookup.shape}")
        if block_size is None:
            block_size = max(1, min(n_markers, _BLOCK_ELEMENTS // max(n_individuals, 1)))
        if block_size < 1:
            raise ValueError("block_size must be positive")

        n_blocks = max(1, -(-n_markers // block_size))
        pad = n_blocks * block_size - n_markers
        packed = np.pad(packed, ((0, pad), (0, 0)))
        lookup = np.pad(lookup, ((0, pad), (0, 0))) # zero tables: padding columns contribute nothing

        self._packed = jnp.asarray(packed.reshape(n_blocks, block_size, -1))
        self._lookup = jnp.asarray(lookup.reshape(n_blocks, block_size, 4), dtype=float_dtype())
        self._n_individuals = int(n_individuals)
        self._n_markers = int(n_markers)
        self._column_means = None if column_means is None else np.array(column_means)
        logger.debug(
            "GenotypeMatrix N=%d M=%d block_size=%d n_blocks=%d",
            self._n_individuals, self._n_markers, block_size, n_blocks,
        )

    @classmethod
    def from_packed(cls, packed, n_individuals: int, center: bool = False, scale: bool = False,
                    block_size: Optional[int] = None):
        """From (M, ceil(N/4)) column bytes, e.g. the SNP-major body of a .bed file"""
        packed = np.asarray(packed, dtype=np.uint8)
        if packed.ndim != 2 or packed.shape[1] != n_bytes(n_individuals):
            raise ValueError(
                f"packed must have shape (M, {n_bytes(n_individuals)}) for N={n_individuals}, got {packed.shape}"
            )
        lookup, means = _column_lookup(unpack_codes(packed, n_individuals), center, scale)
        logger.debug("standardisation center=%s scale=%s", center, scale)
        return cls(packed, lookup, n_individuals, column_means=means, block_size=block_size)

    @classmethod
    def from_dosages(cls, dosages, center: bool = False, scale: bool = False,
                     block_size: Optional[int] = None):
        """From an (N, M) dosage matrix; NaN or negative marks missing"""
        n_individuals = np.shape(dosages)[0]
        return cls.from_packed(pack_dosages(dosages), n_individuals, center, scale, block_size)

    # pytree protocol
    def tree_flatten(self):
        return (self._packed, self._lookup), (self._n_individuals, self._n_markers)

    @classmethod
    def tree_unflatten(cls, aux, children):
        obj = object.__new__(cls)
        obj._packed, obj._lookup = children
        obj._n_individuals, obj._n_markers = aux
        obj._column_means = None
        return obj

    @property
    def n_individuals(self) -> int:
        return self._n_individuals

    @property
    def n_markers(self) -> int:
        return self._n_markers

    @property
    def shape(self):
        return (self._n_individuals, self._n_markers)

    @property
    def block_size(self) -> int:
        return self._packed.shape[1]

    @property
    def nbytes(self) -> int:
        """Bytes of packed genotype storage (lookup tables excluded)"""
        return self._n_markers * n_bytes(self._n_individuals)

    @property
    def column_means(self) -> Optional[np.ndarray]:
        """Observed dosage mean per column (before standardisation)"""
        return None if self._column_means is None else self._column_means.copy()

    def right_multiply(self, w: jnp.ndarray) -> jnp.ndarray:
        """X w in R^N"""
        w = jnp.asarray(w)
        if w.shape != (self._n_markers,):
            raise ValueError(f"right_multiply expects shape ({self._n_markers},), got {w.shape}")
        return _right_multiply(self._packed, self._lookup, w, self._n_individuals)

    def left_multiply(self, v: jnp.ndarray) -> jnp.ndarray:
        """X^T v in R^M"""
        v = jnp.asarray(v)
        if v.shape != (self._n_individuals,):
            raise ValueError(f"left_multiply expects shape ({self._n_individuals},), got {v.shape}")
        return _left_multiply(self._packed, self._lookup, v, self._n_individuals, self._n_markers)

    def to_dense(self) -> np.ndarray:
        """Decoded (N, M) float matrix. For inspection; defeats the packing."""
        n_blocks, block, _ = self._packed.shape
        values = jax.vmap(lambda pb, lb: _decode_block(pb, lb, self._n_individuals))(self._packed, self._lookup)
        return np.asarray(values.reshape(n_blocks * block, -1)[:self._n_markers].T)

    def __repr__(self) -> str:
        return f"GenotypeMatrix(N={self._n_individuals}, M={self._n_markers}, block_size={self.block_size})"
