# Copyright 2025 The JAX Authors.
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

"""Qwen2.5-VL vision-side preprocessing in JAX/Flax NNX.

Grid bookkeeping, 2D rotary position ids, window partitioning, attention boundary
lists and the window-order reassembly that wrap the Qwen2.5-VL vision tower.
Index metadata is computed host-side with numpy since grid sizes are static per
request; gathers over patch features run on jax.numpy.
"""

import dataclasses
import logging
from typing import Callable, NamedTuple, Optional, Sequence, Tuple, TypeAlias

import jax.numpy as jnp
import numpy as np
from flax import nnx
from jaxtyping import Array, ArrayLike

from patchgrid.utils.rope import VisionRotaryEmbedding, rotary_cos_sin


# =============================================================================
# Errors
# =============================================================================


class ConfigurationError(ValueError):
    """Grid metadata, placeholders or config values that cannot describe a valid request."""


class DimensionMismatchError(ValueError):
    """An array length disagrees with the length implied by the grid metadata."""


# =============================================================================
# Configuration
# =============================================================================


def get_window_units(window_size: int, patch_size: int, spatial_merge_size: int) -> int:
    """Window edge length measured in merge units."""
    unit = patch_size * spatial_merge_size
    if unit <= 0 or window_size <= 0 or window_size % unit:
        raise ConfigurationError(
            f"window_size={window_size} must be a positive multiple of "
            f"patch_size * spatial_merge_size = {unit}"
        )
    return window_size // unit


@dataclasses.dataclass(frozen=True)
class VisionConfig:
    """Vision tower settings that shape the patch grid and its attention metadata."""

    depth: int = 32
    hidden_size: int = 1280
    num_heads: int = 16
    out_hidden_size: int = 3584
    patch_size: int = 14
    temporal_patch_size: int = 2
    spatial_merge_size: int = 2
    window_size: int = 112
    fullatt_block_indexes: Tuple[int, ...] = (7, 15, 23, 31)
    rope_theta: float = 10000.0

    def __post_init__(self):
        if self.num_heads <= 0 or self.hidden_size % self.num_heads:
            raise ConfigurationError(
                f"hidden_size={self.hidden_size} is not divisible by num_heads={self.num_heads}"
            )
        # Row and col angles each take a quarter of the head dim.
        if self.head_dim % 4:
            raise ConfigurationError(f"head_dim={self.head_dim} must be a multiple of 4 for 2D rotary embeddings")
        if self.spatial_merge_size <= 0:
            raise ConfigurationError(f"spatial_merge_size must be positive but got {self.spatial_merge_size}")
        get_window_units(self.window_size, self.patch_size, self.spatial_merge_size)
        bad = [i for i in self.fullatt_block_indexes if not 0 <= i < self.depth]
        if bad:
            raise ConfigurationError(f"fullatt_block_indexes {bad} out of range for depth={self.depth}")

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_heads

    @property
    def spatial_merge_unit(self) -> int:
        return self.spatial_merge_size**2

    @property
    def window_units(self) -> int:
        return get_window_units(self.window_size, self.patch_size, self.spatial_merge_size)

    @classmethod
    def qwen2_5_vl_3b(cls):
        return cls(out_hidden_size=2048)

    @classmethod
    def qwen2_5_vl_7b(cls):
        return cls(out_hidden_size=3584)

    @classmethod
    def qwen2_5_vl_72b(cls):
        return cls(out_hidden_size=8192)

    @classmethod
    def standard_test(cls):
        """Small configuration for unit testing."""
        return cls(
            depth=4,
            hidden_size=64,
            num_heads=4,
            out_hidden_size=32,
            patch_size=14,
            spatial_merge_size=2,
            window_size=56,
            fullatt_block_indexes=(1, 3),
        )


@dataclasses.dataclass(frozen=True)
class ModelConfig:
    """Vision config plus the token ids and strings the text side agrees on."""

    vision_config: VisionConfig
    image_token_id: int = 151655
    video_token_id: int = 151656
    vision_start_token_id: int = 151652
    vision_end_token_id: int = 151653
    image_token: str = "<|image_pad|>"
    video_token: str = "<|video_pad|>"

    @classmethod
    def qwen2_5_vl_3b(cls):
        return cls(vision_config=VisionConfig.qwen2_5_vl_3b())

    @classmethod
    def qwen2_5_vl_7b(cls):
        return cls(vision_config=VisionConfig.qwen2_5_vl_7b())

    @classmethod
    def qwen2_5_vl_72b(cls):
        return cls(vision_config=VisionConfig.qwen2_5_vl_72b())

    @classmethod
    def standard_test(cls):
        return cls(vision_config=VisionConfig.standard_test())


# =============================================================================
# Grid Descriptors
# =============================================================================


class GridTHW(NamedTuple):
    """Frames, patch rows and patch cols of one image or video, before merging."""

    t: int
    h: int
    w: int


GridLike: TypeAlias = Optional[ArrayLike | Sequence[Sequence[int]]]


def as_grid_thw(grid_thw: GridLike) -> np.ndarray:
    """Normalize grid metadata to an int64 array of shape (num_items, 3).

    Accepts None, an empty sequence, a single (t, h, w) triple, a sequence of
    triples or an array of shape (num_items, 3). Float input is accepted only when
    every entry is a whole number.
    """
    if grid_thw is None:
        return np.zeros((0, 3), dtype=np.int64)
    grid = np.asarray(grid_thw)
    if grid.shape == (0,):
        return np.zeros((0, 3), dtype=np.int64)
    if grid.shape == (3,):
        grid = grid[None, :]
    if grid.ndim != 2 or grid.shape[1] != 3:
        raise ConfigurationError(f"Expected grid_thw of shape (num_items, 3) but got {grid.shape}")
    if grid.dtype.kind == "f":
        if not (np.isfinite(grid).all() and (grid == np.floor(grid)).all()):
            raise ConfigurationError(f"Grid dimensions must be integers but got {grid.tolist()}")
    elif grid.dtype.kind not in "iu":
        raise ConfigurationError(f"Grid dimensions must be integers but got dtype {grid.dtype}")
    grid = grid.astype(np.int64)
    if (grid < 0).any():
        raise ConfigurationError(f"Grid dimensions must be non-negative but got {grid.tolist()}")
    return grid


def check_grid_divisible(grid: np.ndarray, spatial_merge_size: int):
    m = spatial_merge_size
    bad = (grid[:, 1] % m != 0) | (grid[:, 2] % m != 0)
    if bad.any():
        item = int(np.argmax(bad))
        raise ConfigurationError(
            f"Grid {tuple(grid[item].tolist())} of item {item} is not divisible by spatial_merge_size={m}"
        )


def merged_token_count(grid: Sequence[int], spatial_merge_size: int) -> int:
    """Number of merged visual tokens one item contributes: t * h * w / merge_size**2.

    The text-side placeholder expansion and the patch-side merger both rely on this
    count, so neither computes it on its own.
    """
    t, h, w = (int(x) for x in grid)
    m = spatial_merge_size
    if h % m or w % m:
        raise ConfigurationError(f"Grid {(t, h, w)} is not divisible by spatial_merge_size={m}")
    return t * h * w // (m * m)


def num_patches(grid_thw: GridLike) -> int:
    grid = as_grid_thw(grid_thw)
    return int(np.prod(grid, axis=1).sum())


# =============================================================================
# Rotary Position Ids
# =============================================================================


def _merge_order_coords(h: int, w: int, spatial_merge_size: int) -> Tuple[np.ndarray, np.ndarray]:
    """Map each position of a frame in merge-unit order to its patch (row, col).

    Position k belongs to merge unit k // m**2, counted row-major over the merged
    grid, and sits at offset k % m**2, row-major inside that unit.
    """
    m = spatial_merge_size
    k = np.arange(h * w)
    unit, offset = np.divmod(k, m * m)
    unit_row, unit_col = np.divmod(unit, max(w // m, 1))
    inner_row, inner_col = np.divmod(offset, m)
    return unit_row * m + inner_row, unit_col * m + inner_col


def get_rope_position_ids(grid_thw: GridLike, spatial_merge_size: int) -> np.ndarray:
    """(row, col) ids of every patch, merge units contiguous, shape (num_patches, 2)."""
    grid = as_grid_thw(grid_thw)
    check_grid_divisible(grid, spatial_merge_size)
    pos_ids = [np.zeros((0, 2), dtype=np.int64)]
    for t, h, w in grid.tolist():
        rows, cols = _merge_order_coords(h, w, spatial_merge_size)
        # Frames share the same 2D layout.
        pos_ids.append(np.tile(np.stack([rows, cols], axis=-1), (t, 1)))
    return np.concatenate(pos_ids, axis=0)


def rot_pos_emb(grid_thw: GridLike, rotary: VisionRotaryEmbedding, spatial_merge_size: int) -> Array:
    """Rotary angles per patch, shape (num_patches, head_dim // 2), pre-window order."""
    grid = as_grid_thw(grid_thw)
    pos_ids = get_rope_position_ids(grid, spatial_merge_size)
    max_grid_size = int(grid[:, 1:].max()) if grid.shape[0] else 0
    freqs = rotary(max_grid_size)
    return freqs[pos_ids].reshape(pos_ids.shape[0], 2 * freqs.shape[-1])


# =============================================================================
# Window Partitioning
# =============================================================================


class WindowPartition(NamedTuple):
    window_index: np.ndarray
    cu_window_seqlens: np.ndarray


def _window_order(llm_h: int, llm_w: int, window_units: int) -> Tuple[np.ndarray, np.ndarray]:
    """Window-major traversal of one frame's merged grid, padded to whole windows.

    Returns the merge-unit id of every cell in traversal order and a mask marking the
    cells inside the real grid. Ids of padding cells are meaningless; callers keep
    only the cells the mask marks valid.
    """
    u = window_units
    num_windows_h = -(-llm_h // u)
    num_windows_w = -(-llm_w // u)
    p = np.arange(num_windows_h * num_windows_w * u * u)
    window, offset = np.divmod(p, u * u)
    window_row, window_col = np.divmod(window, max(num_windows_w, 1))
    inner_row, inner_col = np.divmod(offset, u)
    rows = window_row * u + inner_row
    cols = window_col * u + inner_col
    valid = (rows < llm_h) & (cols < llm_w)
    return rows * llm_w + cols, valid


def _partition_item(
    grid: Sequence[int],
    window_units: int,
    spatial_merge_size: int,
    unit_offset: int,
    seqlen_offset: int,
) -> Tuple[np.ndarray, np.ndarray, int, int]:
    """Window-partition one image or video.

    Returns the item's window index segment, its boundaries shifted by seqlen_offset,
    and the merge-unit and patch offsets to carry into the next item.
    """
    t, h, w = grid
    m = spatial_merge_size
    llm_h, llm_w = h // m, w // m
    frame_units = llm_h * llm_w

    ids, valid = _window_order(llm_h, llm_w, window_units)
    frame_index = ids[valid]
    frame_seqlens = valid.reshape(-1, window_units * window_units).sum(axis=1)

    frame_starts = np.arange(t) * frame_units
    segment = (frame_starts[:, None] + frame_index[None, :]).reshape(-1) + unit_offset
    boundaries = np.cumsum(np.tile(frame_seqlens, t) * m * m) + seqlen_offset
    next_seqlen_offset = int(boundaries[-1]) if boundaries.size else seqlen_offset
    return segment, boundaries, unit_offset + t * frame_units, next_seqlen_offset


def get_window_index(
    grid_thw: GridLike,
    window_size: int,
    patch_size: int,
    spatial_merge_size: int,
) -> WindowPartition:
    """Permutation into window order plus the windowed attention boundaries.

    Args:
        grid_thw: (num_items, 3) grid metadata, before merging.
        window_size: Window edge in input pixels.
        patch_size: Patch edge in input pixels.
        spatial_merge_size: Patches per merge unit along each axis.

    Returns:
        window_index: int32 permutation of range(num_merge_units); entry i is the
            raster-order merge unit placed at windowed position i.
        cu_window_seqlens: int32 patch boundaries of the windows, starting at 0,
            strictly increasing (empty windows collapsed).
    """
    grid = as_grid_thw(grid_thw)
    check_grid_divisible(grid, spatial_merge_size)
    window_units = get_window_units(window_size, patch_size, spatial_merge_size)

    segments = [np.zeros(0, dtype=np.int64)]
    boundaries = [np.zeros(1, dtype=np.int64)]
    unit_offset, seqlen_offset = 0, 0
    for item in grid.tolist():
        segment, item_boundaries, unit_offset, seqlen_offset = _partition_item(
            item, window_units, spatial_merge_size, unit_offset, seqlen_offset
        )
        segments.append(segment)
        boundaries.append(item_boundaries)

    window_index = np.concatenate(segments)
    cu_window_seqlens = np.concatenate(boundaries)
    keep = np.concatenate([[True], cu_window_seqlens[1:] != cu_window_seqlens[:-1]])
    return WindowPartition(window_index.astype(np.int32), cu_window_seqlens[keep].astype(np.int32))


def get_cu_seqlens(grid_thw: GridLike) -> np.ndarray:
    """Per-frame patch boundaries for full-attention blocks, starting at 0."""
    grid = as_grid_thw(grid_thw)
    seqlens = np.repeat(grid[:, 1] * grid[:, 2], grid[:, 0])
    return np.concatenate([np.zeros(1, dtype=np.int64), np.cumsum(seqlens)]).astype(np.int32)


# =============================================================================
# Sequence Reassembly
# =============================================================================


def apply_window_index(x: Array, window_index: ArrayLike, spatial_merge_unit: int) -> Array:
    """Gather merge-unit groups of x into window order; x is (num_patches, ...)."""
    window_index = np.asarray(window_index)
    num_units = window_index.shape[0]
    if x.shape[0] != num_units * spatial_merge_unit:
        raise DimensionMismatchError(
            f"Sequence of length {x.shape[0]} does not hold {num_units} merge units of {spatial_merge_unit}"
        )
    grouped = x.reshape(num_units, spatial_merge_unit, *x.shape[1:])
    return grouped[window_index].reshape(x.shape)


def invert_window_index(window_index: ArrayLike) -> np.ndarray:
    return np.argsort(np.asarray(window_index), kind="stable").astype(np.int32)


def restore_window_order(
    merged: Array, window_index: ArrayLike, reverse_index: Optional[ArrayLike] = None
) -> Array:
    """Undo apply_window_index on the merged tokens, one row per merge unit."""
    window_index = np.asarray(window_index)
    if merged.shape[0] != window_index.shape[0]:
        raise DimensionMismatchError(
            f"Merged sequence has {merged.shape[0]} tokens but the window index covers {window_index.shape[0]}"
        )
    if reverse_index is None:
        reverse_index = invert_window_index(window_index)
    return merged[np.asarray(reverse_index)]


# =============================================================================
# Vision Encoder
# =============================================================================


VisionBlockFn: TypeAlias = Callable[[Array, ArrayLike, Tuple[Array, Array]], Array]
MergerFn: TypeAlias = Callable[[Array], Array]


@dataclasses.dataclass(frozen=True)
class VisionAttentionMetadata:
    """Everything the vision blocks need for one forward pass."""

    window_index: np.ndarray
    reverse_index: np.ndarray
    cu_seqlens: np.ndarray
    cu_window_seqlens: np.ndarray
    rotary_pos_emb: Array
    position_embeddings: Tuple[Array, Array]
    fullatt_block_indexes: frozenset

    @property
    def num_patches(self) -> int:
        return int(self.cu_seqlens[-1])

    def cu_seqlens_for(self, layer_idx: int) -> np.ndarray:
        if layer_idx in self.fullatt_block_indexes:
            return self.cu_seqlens
        return self.cu_window_seqlens


class Qwen2_5_VisionEncoder(nnx.Module):
    """Drives the vision blocks over a packed batch of images and videos.

    Owns the rotary frequency cache. Blocks and the patch merger are supplied by the
    caller: each block is called as block(hidden_states, cu_seqlens, (cos, sin)) and
    must preserve the sequence length; the merger fuses every spatial_merge_unit rows
    into one token.
    """

    def __init__(self, config: VisionConfig):
        self.config = config
        self.rotary_pos_emb = VisionRotaryEmbedding(config.head_dim // 2, config.rope_theta)

    def prepare(self, grid_thw: GridLike) -> VisionAttentionMetadata:
        cfg = self.config
        grid = as_grid_thw(grid_thw)
        check_grid_divisible(grid, cfg.spatial_merge_size)

        rotary = rot_pos_emb(grid, self.rotary_pos_emb, cfg.spatial_merge_size)
        window_index, cu_window_seqlens = get_window_index(
            grid, cfg.window_size, cfg.patch_size, cfg.spatial_merge_size
        )
        windowed_rotary = apply_window_index(rotary, window_index, cfg.spatial_merge_unit)
        return VisionAttentionMetadata(
            window_index=window_index,
            reverse_index=invert_window_index(window_index),
            cu_seqlens=get_cu_seqlens(grid),
            cu_window_seqlens=cu_window_seqlens,
            rotary_pos_emb=rotary,
            position_embeddings=rotary_cos_sin(windowed_rotary),
            fullatt_block_indexes=frozenset(cfg.fullatt_block_indexes),
        )

    def __call__(
        self,
        hidden_states: Array,
        grid_thw: GridLike,
        blocks: Sequence[VisionBlockFn],
        merger: MergerFn,
    ) -> Array:
        """
        Args:
            hidden_states: Patch embeddings (num_patches, hidden_size), raster order.
            grid_thw: (num_items, 3) grid metadata.
            blocks: Vision transformer blocks, in depth order.
            merger: Patch merger.

        Returns:
            Merged tokens (num_patches // spatial_merge_unit, out_hidden_size) in raster order.
        """
        grid = as_grid_thw(grid_thw)
        if grid.shape[0] == 0:
            logging.debug("No images or videos in batch, passing hidden states through")
            return hidden_states
        if len(blocks) != self.config.depth:
            logging.warning(f"Got {len(blocks)} vision blocks but config depth is {self.config.depth}")

        meta = self.prepare(grid)
        if hidden_states.shape[0] != meta.num_patches:
            raise DimensionMismatchError(
                f"Got {hidden_states.shape[0]} patch embeddings but grid_thw describes {meta.num_patches}"
            )

        hidden_states = apply_window_index(hidden_states, meta.window_index, self.config.spatial_merge_unit)
        cos, _ = meta.position_embeddings
        if cos.shape[0] != hidden_states.shape[0]:
            raise DimensionMismatchError(
                f"Rotary embeddings cover {cos.shape[0]} patches but the sequence has {hidden_states.shape[0]}"
            )

        for layer_idx, block in enumerate(blocks):
            hidden_states = block(hidden_states, meta.cu_seqlens_for(layer_idx), meta.position_embeddings)
            if hidden_states.shape[0] != meta.num_patches:
                raise DimensionMismatchError(
                    f"Block {layer_idx} returned {hidden_states.shape[0]} rows, expected {meta.num_patches}"
                )

        hidden_states = merger(hidden_states)
        return restore_window_order(hidden_states, meta.window_index, meta.reverse_index)


# =============================================================================
# Embedding Merge
# =============================================================================


def merge_multimodal_embeddings(
    input_ids: ArrayLike, inputs_embeds: Array, vision_embeds: Array, token_id: int
) -> Array:
    """Write vision_embeds, in order, into the rows of inputs_embeds holding token_id.

    Args:
        input_ids: Token ids of any shape S.
        inputs_embeds: Text embeddings of shape S + (hidden,).
        vision_embeds: (num_visual_tokens, hidden) in raster order.
        token_id: Placeholder token id.

    Returns:
        Embeddings with the same shape and dtype as inputs_embeds.
    """
    mask = jnp.asarray(input_ids) == token_id
    if inputs_embeds.shape[:-1] != mask.shape:
        raise DimensionMismatchError(
            f"inputs_embeds {inputs_embeds.shape} does not match input_ids {mask.shape}"
        )
    num_placeholders = int(mask.sum())
    if num_placeholders != vision_embeds.shape[0]:
        raise DimensionMismatchError(
            f"Prompt holds {num_placeholders} placeholder tokens but got {vision_embeds.shape[0]} visual tokens"
        )
    if num_placeholders == 0:
        return inputs_embeds
    if vision_embeds.shape[-1] != inputs_embeds.shape[-1]:
        raise DimensionMismatchError(
            f"Visual hidden size {vision_embeds.shape[-1]} does not match text hidden size {inputs_embeds.shape[-1]}"
        )

    flat_mask = mask.reshape(-1)
    flat_embeds = inputs_embeds.reshape(flat_mask.shape[0], -1)
    vis_indices = jnp.clip(jnp.cumsum(flat_mask) - 1, 0, num_placeholders - 1)
    aligned = vision_embeds[vis_indices].astype(flat_embeds.dtype)
    merged = jnp.where(flat_mask[:, None], aligned, flat_embeds)
    return merged.reshape(inputs_embeds.shape)
