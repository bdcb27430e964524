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

"""Prompt-side placeholder expansion for Qwen2.5-VL."""

import logging
import re
from enum import Enum

from patchgrid.models.qwen2_5_vl.modeling import (
    ConfigurationError,
    GridLike,
    ModelConfig,
    as_grid_thw,
    merged_token_count,
)


class Modality(Enum):
    IMAGE = "image"
    VIDEO = "video"


class InputProcessor:
    """Expands visual placeholder tokens to one token per merged patch.

    Each placeholder occurrence consumes the next grid of its modality. Occurrences
    are resolved in document order, so image and video placeholders may interleave
    freely in the prompt.
    """

    def __init__(self, merge_size: int, image_token: str = "<|image_pad|>", video_token: str = "<|video_pad|>"):
        if merge_size <= 0:
            raise ConfigurationError(f"Expected merge_size > 0 but got {merge_size}")
        if not image_token or not video_token or image_token == video_token:
            raise ConfigurationError(f"Expected two distinct placeholder tokens but got {image_token!r}, {video_token!r}")

        self.merge_size = merge_size
        self.tokens = {Modality.IMAGE: image_token, Modality.VIDEO: video_token}
        self._modality_of = {token: modality for modality, token in self.tokens.items()}
        # Longest first so a token that prefixes the other cannot shadow it.
        alternatives = sorted(self.tokens.values(), key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(token) for token in alternatives))

    @classmethod
    def from_config(cls, config: ModelConfig):
        return cls(config.vision_config.spatial_merge_size, config.image_token, config.video_token)

    def num_placeholder_tokens(self, grid_thw: GridLike) -> int:
        """Total sub-tokens the grids of one modality expand to."""
        return sum(merged_token_count(grid, self.merge_size) for grid in as_grid_thw(grid_thw).tolist())

    def process(self, prompt: str, image_grid_thw: GridLike = None, video_grid_thw: GridLike = None) -> str:
        """Return prompt with every placeholder repeated t * h * w / merge_size**2 times.

        Raises:
            ConfigurationError: a placeholder has no grid left, a grid is left over,
                or a grid is not divisible by merge_size.
        """
        grids = {Modality.IMAGE: as_grid_thw(image_grid_thw), Modality.VIDEO: as_grid_thw(video_grid_thw)}
        if all(grid.shape[0] == 0 for grid in grids.values()):
            logging.debug("No image or video grids, leaving prompt unchanged")
            return prompt

        remaining = {modality: iter(grid.tolist()) for modality, grid in grids.items()}
        consumed = dict.fromkeys(grids, 0)

        def expand(match: re.Match) -> str:
            token = match.group(0)
            modality = self._modality_of[token]
            grid = next(remaining[modality], None)
            if grid is None:
                raise ConfigurationError(
                    f"Prompt has more {modality.value} placeholders than the "
                    f"{grids[modality].shape[0]} {modality.value} grids supplied"
                )
            consumed[modality] += 1
            return token * merged_token_count(grid, self.merge_size)

        expanded = self._pattern.sub(expand, prompt)
        for modality, grid in grids.items():
            if consumed[modality] != grid.shape[0]:
                raise ConfigurationError(
                    f"Prompt has {consumed[modality]} {modality.value} placeholders but "
                    f"{grid.shape[0]} {modality.value} grids were supplied"
                )
        return expanded
