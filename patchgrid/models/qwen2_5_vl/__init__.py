from .modeling import (
    ConfigurationError,
    DimensionMismatchError,
    GridTHW,
    ModelConfig,
    Qwen2_5_VisionEncoder,
    VisionAttentionMetadata,
    VisionConfig,
    get_cu_seqlens,
    get_rope_position_ids,
    get_window_index,
    merge_multimodal_embeddings,
    merged_token_count,
)
from .processing import InputProcessor, Modality

__all__ = [
    "ConfigurationError",
    "DimensionMismatchError",
    "GridTHW",
    "InputProcessor",
    "Modality",
    "ModelConfig",
    "Qwen2_5_VisionEncoder",
    "VisionAttentionMetadata",
    "VisionConfig",
    "get_cu_seqlens",
    "get_rope_position_ids",
    "get_window_index",
    "merge_multimodal_embeddings",
    "merged_token_count",
]
