# Copyright 2025 The JAX Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import jax.numpy as jnp
from absl.testing import absltest, parameterized

from patchgrid.models.qwen2_5_vl import modeling as model_lib
from patchgrid.models.qwen2_5_vl import processing
from patchgrid.models.qwen2_5_vl.tests.run_model import build_prompt, concat_merger, identity_block, tokenize

IMG = "<|image_pad|>"
VID = "<|video_pad|>"


class TestInputProcessor(parameterized.TestCase):
    def setUp(self):
        super().setUp()
        self.processor = processing.InputProcessor.from_config(model_lib.ModelConfig.standard_test())

    def test_single_image(self):
        out = self.processor.process(f"<img>{IMG}<img>", [(1, 4, 4)])
        self.assertEqual(out, f"<img>{IMG * 4}<img>")

    def test_single_unit_grid_is_unchanged(self):
        prompt = f"<img>{IMG}<img>"
        self.assertEqual(self.processor.process(prompt, [(1, 2, 2)]), prompt)

    def test_interleaved_document_order(self):
        prompt = f"a{VID}b{IMG}c{VID}d{IMG}e"
        out = self.processor.process(prompt, image_grid_thw=[(1, 2, 4), (1, 4, 4)], video_grid_thw=[(2, 2, 2), (1, 6, 2)])
        self.assertEqual(out, f"a{VID * 2}b{IMG * 2}c{VID * 3}d{IMG * 4}e")

    @parameterized.parameters(
        (((1, 4, 4),), ()),
        (((2, 8, 6), (1, 2, 2)), ((4, 4, 4),)),
        ((), ((1, 28, 28), (3, 2, 10))),
    )
    def test_placeholder_counts(self, image_grids, video_grids):
        prompt = "x".join([IMG] * len(image_grids) + [VID] * len(video_grids))
        out = self.processor.process(prompt, list(image_grids), list(video_grids))
        self.assertEqual(out.count(IMG), self.processor.num_placeholder_tokens(list(image_grids)))
        self.assertEqual(out.count(VID), self.processor.num_placeholder_tokens(list(video_grids)))
        self.assertEqual(out.replace(IMG, "").replace(VID, ""), "x" * (len(image_grids) + len(video_grids) - 1))

    @parameterized.parameters(
        (((1, 4, 4),), ((2, 4, 8),)),
        (((1, 6, 10), (1, 2, 2)), ()),
        (((3, 8, 4),), ((1, 10, 14), (2, 2, 2))),
    )
    def test_text_and_patch_paths_agree(self, image_grids, video_grids):
        config = model_lib.ModelConfig.standard_test()
        vision_cfg = config.vision_config
        encoder = model_lib.Qwen2_5_VisionEncoder(vision_cfg)
        merger = concat_merger(vision_cfg.spatial_merge_unit)
        prompt = build_prompt(config, len(image_grids), len(video_grids))
        input_ids = tokenize(config, self.processor.process(prompt, list(image_grids), list(video_grids)))

        for grids, token_id in ((image_grids, config.image_token_id), (video_grids, config.video_token_id)):
            num_tokens = int((input_ids == token_id).sum())
            if not grids:
                self.assertEqual(num_tokens, 0)
                continue
            window_index, _ = model_lib.get_window_index(
                list(grids), vision_cfg.window_size, vision_cfg.patch_size, vision_cfg.spatial_merge_size
            )
            hidden_states = jnp.zeros((model_lib.num_patches(list(grids)), 2))
            merged = encoder(hidden_states, list(grids), [identity_block] * vision_cfg.depth, merger)
            self.assertEqual(num_tokens, window_index.shape[0])
            self.assertEqual(num_tokens, merged.shape[0])

    def test_tokenize_uses_config_ids(self):
        config = model_lib.ModelConfig.standard_test()
        input_ids = tokenize(config, f"a<|vision_start|>{IMG}{IMG}<|vision_end|>{VID}")
        expected = [
            0,
            config.vision_start_token_id,
            config.image_token_id,
            config.image_token_id,
            config.vision_end_token_id,
            config.video_token_id,
        ]
        self.assertEqual(input_ids.tolist(), expected)

    def test_no_grids_leaves_prompt_unchanged(self):
        prompt = f"hello {IMG} world"
        self.assertEqual(self.processor.process(prompt), prompt)
        self.assertEqual(self.processor.process("plain text", [], None), "plain text")

    def test_more_placeholders_than_grids(self):
        with self.assertRaises(model_lib.ConfigurationError):
            self.processor.process(f"{IMG}{IMG}", [(1, 2, 2)])

    def test_more_grids_than_placeholders(self):
        with self.assertRaises(model_lib.ConfigurationError):
            self.processor.process(f"{IMG}", [(1, 2, 2)], [(1, 2, 2)])

    def test_indivisible_grid(self):
        with self.assertRaises(model_lib.ConfigurationError):
            self.processor.process(f"{IMG}", [(1, 3, 4)])

    def test_custom_tokens(self):
        processor = processing.InputProcessor(merge_size=1, image_token="<i>", video_token="<iv>")
        self.assertEqual(processor.process("<iv><i>", [(1, 1, 2)], [(1, 3, 1)]), "<iv><iv><iv><i><i>")

    def test_invalid_arguments(self):
        self.assertRaises(model_lib.ConfigurationError, processing.InputProcessor, 0)
        self.assertRaises(model_lib.ConfigurationError, processing.InputProcessor, 2, "<t>", "<t>")


if __name__ == "__main__":
    absltest.main()
