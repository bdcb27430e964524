from patchgrid.models.qwen2_5_vl.modeling import Qwen2_5_VisionEncoder, ModelConfig as Qwen2_5_VLConfig
from patchgrid.models.qwen2_5_vl.processing import InputProcessor as Qwen2_5_VLInputProcessor


__all__ = [
    "Qwen2_5_VLConfig",
    "Qwen2_5_VLInputProcessor",
    "Qwen2_5_VisionEncoder",
]
