"""
OpenAI image adapter.

Wraps the OpenAI images endpoint behind the provider contract.
"""

import time
from typing import Optional

from openai import OpenAI, OpenAIError

from .base import (
    ConfigurationError,
    GenerationResult,
    ProviderAdapter,
    ProviderConfig,
    ProviderError,
    call_with_retries,
    parse_image_resolution,
)

DEFAULT_MODEL = "dall-e-3"


class OpenAIImageAdapter(ProviderAdapter):
    """OpenAI image generation behind the uniform adapter contract.

    Image only; video requests raise ConfigurationError.
    """

    def __init__(self, config: ProviderConfig, api_key: str):
        """Initialize the adapter.

        Args:
            config: Provider configuration (retries, timeout)
            api_key: OpenAI API key (required)

        Raises:
            ValueError: If api_key is missing/empty
        """
        super().__init__(config)
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")

        # Retries are driven by config.max_retries, not the SDK
        self.client = OpenAI(
            api_key=api_key,
            base_url=config.api_url,
            timeout=config.timeout_ms / 1000.0,
            max_retries=0,
        )

    def _create(self, model: str, prompt: str, size: str, quality: str, count: int):
        try:
            response = self.client.images.generate(
                model=model,
                prompt=prompt,
                size=size,
                quality=quality,
                n=count,
                response_format="url",
            )
        except OpenAIError as e:
            raise ProviderError(self.name, f"images API error: {e}", getattr(e, "status_code", None)) from e

        if not response.data or not all(image.url for image in response.data):
            raise ProviderError(self.name, "images API returned no URL")
        return response

    def generate_image(
        self,
        prompt: str,
        resolution: str = "1024x1024",
        quality: str = "standard",
        count: int = 1,
        seed: Optional[int] = None,
        model_identifier: Optional[str] = None,
    ) -> GenerationResult:
        """Generate an image with the OpenAI images API.

        The seed is ignored; the API does not accept one.
        """
        if not prompt:
            raise ValueError("prompt is required and cannot be empty")
        model = model_identifier or DEFAULT_MODEL
        width, height = parse_image_resolution(resolution)

        start = time.time()
        response = call_with_retries(
            self.name,
            self.config.max_retries,
            lambda: self._create(model, prompt, f"{width}x{height}", quality, count),
        )
        first = response.data[0]

        return GenerationResult(
            provider_name=self.name,
            model_identifier=model,
            durable_asset_url=first.url,
            asset_urls=[image.url for image in response.data],
            processing_time_ms=int((time.time() - start) * 1000),
            width=width,
            height=height,
            content_type="image/png",
            provider_metadata={
                "revised_prompt": getattr(first, "revised_prompt", None),
                "created": getattr(response, "created", None),
            },
        )

    def generate_video(self, prompt, keyframe_ref=None, duration_seconds=5, resolution="720p", fps=24,
                       model_identifier=None):
        raise ConfigurationError(f"{self.name} does not support video generation")

    def close(self) -> None:
        self.client.close()
