"""Offline adapter for dry runs: echoes prompts instead of calling a service."""

import asyncio

from blockflow.generation.adapter import (
    GenerationAdapter,
    GenerationConfig,
    ImageRequest,
    TextRequest,
    VideoRequest,
)


class MockGenerationAdapter(GenerationAdapter):
    """
    Deterministic adapter used by `blockflow run` when no --adapter is given, and by tests.

    Text blocks return their prompt; image and video blocks return a fake
    URL that encodes the model id.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def _wait(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    async def generate_text(self, request: TextRequest, config: GenerationConfig) -> str:
        await self._wait()
        self.calls.append(("text", request.prompt))
        return request.prompt

    async def generate_image(self, request: ImageRequest, config: GenerationConfig) -> str:
        await self._wait()
        self.calls.append(("image", request.prompt))
        return f"https://mock.invalid/{config.model_id}/image/{len(self.calls)}.png"

    async def generate_video(self, request: VideoRequest, config: GenerationConfig) -> str:
        await self._wait()
        self.calls.append(("video", request.prompt))
        return f"https://mock.invalid/{config.model_id}/video/{len(self.calls)}.mp4"
