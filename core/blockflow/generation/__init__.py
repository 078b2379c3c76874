"""Generation backend abstraction."""

from blockflow.generation.adapter import (
    GenerationAdapter,
    GenerationConfig,
    GenerationRequest,
    ImageRequest,
    TextRequest,
    VideoRequest,
    build_request,
    dispatch,
)
from blockflow.generation.mock import MockGenerationAdapter

__all__ = [
    "GenerationAdapter",
    "GenerationConfig",
    "GenerationRequest",
    "ImageRequest",
    "TextRequest",
    "VideoRequest",
    "build_request",
    "dispatch",
    "MockGenerationAdapter",
]
