import os
import base64
import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, List, Optional

import fal_client
import requests
from google import genai
from google.genai import types
from pydantic import BaseModel, Field

from config import (
    FAL_API_KEY,
    FAL_EDIT_MODEL,
    FAL_IMAGE_MODEL,
    FALLBACK_MIME,
    GEMINI_API_KEY,
    IMAGE_GEN_PROVIDER,
    NANO_IMAGE_MODEL,
    PRINT_PROMPTS,
    PROMPT_LOG_FILE,
)
from errors import GenerationError, TransportError
from imaging import ImageBuffer

PANEL_PROMPT_TPL = """Create a panel for a webtoon/comic strip.
Panel Number: {panel_number}.

Style/Atmosphere: {style}.

Scene Description: {scene}

Ensure the character consistency if reference images are provided.
The output must be a single high-quality image."""

# --- Simple prompt logger (stdout + file) ---


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None, echo: bool = PRINT_PROMPTS):
        self.out_file = out_file
        self.echo = echo
        self.lines: List[str] = []

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        if self.echo:
            print(block)

    def flush(self):
        if self.out_file is None:
            return
        self.out_file.write_text("".join(self.lines), encoding="utf-8")


def default_prompt_logger() -> PromptLogger:
    return PromptLogger(Path(PROMPT_LOG_FILE) if PROMPT_LOG_FILE else None)


# ------------------ REQUESTS ----------------------


class GenerationRequest(BaseModel):
    scene_text: str
    style_text: str = ""
    # zero-based position of the panel in the strip
    panel_index: int
    # raw base64 payloads, encoding-scheme header already stripped
    reference_images: List[str] = Field(default_factory=list)


def build_panel_prompt(request: GenerationRequest) -> str:
    return PANEL_PROMPT_TPL.format(
        panel_number=request.panel_index + 1,
        style=request.style_text or "Standard Webtoon Style",
        scene=request.scene_text,
    )


# ------------------ GENERATORS --------------------


class ImageGenerator(ABC):
    """Turns one panel request into one image."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> ImageBuffer:
        """
        Return the generated image. Raises TransportError when the call
        fails and GenerationError when the answer carries no image.
        """


def extract_inline_image(response: Any) -> ImageBuffer:
    """First inline image part of the first candidate."""
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        content = getattr(candidates[0], "content", None)
        for part in getattr(content, "parts", None) or []:
            inline_data = getattr(part, "inline_data", None)
            data = getattr(inline_data, "data", None) if inline_data is not None else None
            if not data:
                continue
            if isinstance(data, str):
                data = base64.b64decode(data)
            mime_type = getattr(inline_data, "mime_type", None) or FALLBACK_MIME
            return ImageBuffer(mime_type=mime_type, data=data)
    raise GenerationError("No image data found in response.")


class GeminiImageGenerator(ImageGenerator):
    def __init__(self, api_key: Optional[str] = GEMINI_API_KEY, model: str = NANO_IMAGE_MODEL,
                 client: Optional[Any] = None, logger: Optional[PromptLogger] = None):
        if client is None:
            if not api_key:
                raise RuntimeError("Missing GEMINI_API_KEY in .env")
            client = genai.Client(api_key=api_key)
        self.client = client
        self.model = model
        self.logger = logger or default_prompt_logger()

    def build_contents(self, request: GenerationRequest) -> List[types.Content]:
        parts = []
        # Reference images go first, in the order the user gave them
        for ref in request.reference_images:
            parts.append(types.Part.from_bytes(
                data=base64.b64decode(ref), mime_type="image/png"))
        prompt = build_panel_prompt(request)
        self.logger.log(f"PANEL_PROMPT [#{request.panel_index + 1}]", prompt)
        parts.append(types.Part.from_text(text=prompt))
        return [types.Content(role="user", parts=parts)]

    async def generate(self, request: GenerationRequest) -> ImageBuffer:
        contents = self.build_contents(request)
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(
                    response_modalities=["IMAGE"]),
            )
        except Exception as e:
            print(f"[ERROR] Gemini generation failed for panel {request.panel_index + 1}: {e}")
            raise TransportError(str(e) or "Failed to generate image") from e

        image = extract_inline_image(response)
        print(f"[DEBUG] Gemini image generated for panel {request.panel_index + 1}: "
              f"{image.mime_type}, {len(image.data)} bytes")
        return image


class FalImageGenerator(ImageGenerator):
    """
    Fal AI nano banana. Text-only requests use the generation endpoint;
    requests with reference images go through the edit endpoint with the
    references as data URIs.
    """

    def __init__(self, api_key: Optional[str] = FAL_API_KEY, model: str = FAL_IMAGE_MODEL,
                 edit_model: str = FAL_EDIT_MODEL, logger: Optional[PromptLogger] = None,
                 download_timeout: float = 60):
        if not api_key and not os.getenv("FAL_KEY"):
            raise RuntimeError("Missing FAL_API_KEY in .env")
        if api_key:
            os.environ["FAL_KEY"] = api_key
        self.model = model
        self.edit_model = edit_model
        self.logger = logger or default_prompt_logger()
        self.download_timeout = download_timeout

    async def generate(self, request: GenerationRequest) -> ImageBuffer:
        prompt = build_panel_prompt(request)
        self.logger.log(f"PANEL_PROMPT [#{request.panel_index + 1}]", prompt)
        arguments = {
            "prompt": prompt,
            "num_images": 1,
            "output_format": "png",
        }
        endpoint = self.model
        if request.reference_images:
            endpoint = self.edit_model
            arguments["image_urls"] = [
                f"data:image/png;base64,{ref}" for ref in request.reference_images]

        try:
            result = await fal_client.subscribe_async(
                endpoint, arguments=arguments, with_logs=True)
        except Exception as e:
            print(f"[ERROR] Fal API call failed: {e}")
            raise TransportError(f"Fal image generation failed: {e}") from e

        images = (result or {}).get("images") or []
        if not images or not images[0].get("url"):
            raise GenerationError("Fal API returned no images")

        image_url = images[0]["url"]
        try:
            response = await asyncio.to_thread(
                requests.get, image_url, timeout=self.download_timeout)
        except requests.RequestException as e:
            raise TransportError(f"Failed to download image from Fal: {e}") from e
        if response.status_code != 200:
            raise TransportError(
                f"Failed to download image from Fal: {response.status_code}")
        if not response.content:
            raise GenerationError("Fal image download was empty")

        mime_type = (images[0].get("content_type")
                     or response.headers.get("Content-Type", "").split(";")[0]
                     or FALLBACK_MIME)
        print(f"[DEBUG] Fal image generated for panel {request.panel_index + 1}: "
              f"{mime_type}, {len(response.content)} bytes")
        return ImageBuffer(mime_type=mime_type, data=response.content)


def get_image_generator(provider: str = IMAGE_GEN_PROVIDER) -> ImageGenerator:
    provider = provider.lower()
    if provider == "gemini":
        return GeminiImageGenerator()
    elif provider == "fal":
        return FalImageGenerator()
    raise ValueError(f"Provider {provider} not supported.")
