"""Shared fixtures: in-memory images and a scripted image generator."""

from __future__ import annotations

import io
import asyncio
from typing import Dict, List, Optional

import pytest
from PIL import Image

from errors import GenerationError, TransportError
from generators import GenerationRequest, ImageGenerator
from imaging import ImageBuffer


def make_image(width: int, height: int, color="red", fmt: str = "PNG",
               mode: str = "RGB") -> ImageBuffer:
    buf = io.BytesIO()
    Image.new(mode, (width, height), color).save(buf, format=fmt)
    mime = {"PNG": "image/png", "JPEG": "image/jpeg"}[fmt]
    return ImageBuffer(mime_type=mime, data=buf.getvalue())


class FakeGenerator(ImageGenerator):
    """
    Returns a small PNG per request. Zero-based panel indexes listed in
    `fail` raise the mapped exception instead; `delays` holds per-index
    sleeps so tests can control completion order.
    """

    def __init__(self, fail: Optional[Dict[int, Exception]] = None,
                 delays: Optional[Dict[int, float]] = None,
                 size=(64, 96), mime_type: str = "image/png"):
        self.fail = fail or {}
        self.delays = delays or {}
        self.size = size
        self.mime_type = mime_type
        self.requests: List[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> ImageBuffer:
        self.requests.append(request)
        # Outcome is fixed when the call starts, like a real request
        failure = self.fail.get(request.panel_index)
        await asyncio.sleep(self.delays.get(request.panel_index, 0))
        if failure is not None:
            raise failure
        image = make_image(*self.size, color="blue")
        return image.model_copy(update={"mime_type": self.mime_type})


@pytest.fixture
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def failing_generator() -> FakeGenerator:
    # Panel 3 (index 2) fails at the transport, panel 5 (index 4) gets no image
    return FakeGenerator(fail={
        2: TransportError("503 Service Unavailable"),
        4: GenerationError("No image data found in response."),
    })
