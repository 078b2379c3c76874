"""Generation adapter abstraction for pluggable text/image/video backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from blockflow.config import ModelConfig
from blockflow.graph.models import Block, BlockType

REFERENCE_CONTENT_HEADER = "Reference content:"


@dataclass
class GenerationConfig:
    """Backend settings for one call."""

    provider: str
    api_key: str
    base_url: str
    model_id: str

    @classmethod
    def for_block_type(cls, model: ModelConfig, block_type: BlockType) -> "GenerationConfig":
        return cls(
            provider=model.provider,
            api_key=model.api_key,
            base_url=model.base_url,
            model_id=model.model_for(block_type),
        )


@dataclass
class TextRequest:
    """Text generation input."""

    prompt: str
    attachment: str | None = None


@dataclass
class ImageRequest:
    """Image generation input."""

    prompt: str
    reference_image: str | None = None
    aspect_ratio: str | None = None


@dataclass
class VideoRequest:
    """Video generation input."""

    prompt: str
    reference_image: str | None = None
    reference_video: str | None = None
    aspect_ratio: str | None = None
    duration: int | None = None
    character_url: str | None = None
    character_timestamps: str | None = None


GenerationRequest = TextRequest | ImageRequest | VideoRequest


class GenerationAdapter(ABC):
    """
    Abstract generation backend - plug in any text/image/video service.

    Implementations should handle:
    - API authentication
    - Request formatting for the provider
    - Polling for long-running (video) jobs

    Any exception raised becomes a failed result for that one block; it
    never aborts the run.
    """

    @abstractmethod
    async def generate_text(self, request: TextRequest, config: GenerationConfig) -> str:
        """
        Generate text.

        Args:
            request: Prompt, with any attachment already appended
            config: Provider, credentials and model

        Returns:
            The generated text
        """

    @abstractmethod
    async def generate_image(self, request: ImageRequest, config: GenerationConfig) -> str:
        """Generate an image; returns a URL or data URL."""

    @abstractmethod
    async def generate_video(self, request: VideoRequest, config: GenerationConfig) -> str:
        """Generate a video; returns a URL."""


def build_request(block: Block, prompt: str) -> GenerationRequest:
    """
    Map a block and its resolved prompt to the request for its type.

    Text blocks carry their attachment inline as reference material. Video
    blocks route a data-URL attachment to the reference image or video slot
    by its media type.
    """
    if block.type == BlockType.TEXT:
        final_prompt = prompt
        if block.attachment:
            final_prompt = f"{prompt}\n\n{REFERENCE_CONTENT_HEADER}\n{block.attachment}"
        return TextRequest(prompt=final_prompt, attachment=block.attachment)

    if block.type == BlockType.IMAGE:
        return ImageRequest(
            prompt=prompt,
            reference_image=block.attachment or None,
            aspect_ratio=block.aspect_ratio,
        )

    if block.type == BlockType.VIDEO:
        request = VideoRequest(
            prompt=prompt,
            aspect_ratio=block.aspect_ratio,
            duration=block.duration,
        )
        if block.attachment:
            if block.attachment.startswith("data:image/"):
                request.reference_image = block.attachment
            elif block.attachment.startswith("data:video/"):
                request.reference_video = block.attachment
        if block.character_url:
            request.character_url = block.character_url
            request.character_timestamps = block.character_timestamps
        return request

    raise TypeError(f"Unsupported block type: {block.type!r}")


async def dispatch(
    adapter: GenerationAdapter, request: GenerationRequest, config: GenerationConfig
) -> str:
    """Send a request to the adapter method for its type."""
    if isinstance(request, TextRequest):
        return await adapter.generate_text(request, config)
    if isinstance(request, ImageRequest):
        return await adapter.generate_image(request, config)
    if isinstance(request, VideoRequest):
        return await adapter.generate_video(request, config)
    raise TypeError(f"Unsupported generation request: {type(request).__name__}")
