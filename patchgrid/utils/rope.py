# Copyright 2026 The JAX Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
import threading

import jax
import jax.numpy as jnp
from flax import nnx
from jaxtyping import Array

_GROW_LOCK = threading.Lock()


def default_rope_params(dim: int, rope_theta: float = 10_000.0) -> Array:
    fraction = jnp.arange(0, dim, 2, dtype=jnp.float32) / dim
    timescale = rope_theta**fraction
    return 1.0 / timescale


def rotary_cos_sin(angles: Array) -> tuple[Array, Array]:
    """Widen per-patch rotary angles to the full head dim and return (cos, sin)."""
    emb = jnp.concatenate([angles, angles], axis=-1)
    return jnp.cos(emb), jnp.sin(emb)


class VisionRotaryEmbedding(nnx.Module):
    """Frequency table for 2D vision RoPE.

    Row ``p`` of the table holds ``p * inv_freq``. The table is regenerated at twice
    the requested length whenever a caller asks for more rows than are cached, so it
    only ever grows and rows already handed out never change.
    """

    def __init__(self, dim: int, theta: float = 10_000.0):
        if dim <= 0 or dim % 2:
            raise ValueError(f"Expected a positive even rotary dim but got {dim}")
        self.dim = dim
        self.theta = theta
        self.inv_freq = nnx.Cache(default_rope_params(dim, theta))
        self.freqs = nnx.Cache(jnp.zeros((0, dim // 2), dtype=jnp.float32))

    @property
    def cached_len(self) -> int:
        return self.freqs.value.shape[0]

    def _grow(self, seqlen: int) -> Array:
        """Build a table of 2 * seqlen rows and install it unless a longer one is already cached.

        Returns whichever table is cached afterwards, which holds at least 2 * seqlen rows.
        """
        seqlen *= 2
        positions = jnp.arange(seqlen, dtype=jnp.float32)
        # Full precision keeps large positions exact (e.g. 257 vs 256 under bfloat16).
        table = jnp.einsum("s,k->sk", positions, self.inv_freq.value, precision=jax.lax.Precision.HIGHEST)
        with _GROW_LOCK:
            current = self.freqs.value
            if current.shape[0] >= seqlen:
                return current
            logging.debug(f"Growing vision rotary cache from {current.shape[0]} to {seqlen} rows")
            self.freqs.value = table
        return table

    def __call__(self, seqlen: int) -> Array:
        freqs = self.freqs.value
        if seqlen > freqs.shape[0]:
            freqs = self._grow(seqlen)
        return freqs[:seqlen]
