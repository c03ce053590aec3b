"""
Provider adapter contract.

Every generation backend implements one single-level interface. Adapters
hide provider payload shapes; callers only ever see GenerationResult or
one of the errors declared here.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Capability(Enum):
    """Category of generation request."""
    IMAGE = "image"
    VIDEO = "video"


class ConfigurationError(Exception):
    """No enabled provider or credential for the requested capability."""


class ProviderError(Exception):
    """Upstream failure or malformed provider payload."""

    def __init__(self, provider_name: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider_name}: {message}")
        self.provider_name = provider_name
        self.status_code = status_code


class ProviderTimeoutError(TimeoutError):
    """An asynchronous provider job did not finish before the adapter deadline."""

    def __init__(self, provider_name: str, job_id: str, waited_seconds: float):
        super().__init__(
            f"{provider_name}: job {job_id} not finished after {waited_seconds:.0f}s"
        )
        self.provider_name = provider_name
        self.job_id = job_id
        self.waited_seconds = waited_seconds


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for one (capability, provider) pair."""
    name: str
    capability: Capability
    enabled: bool = False
    priority: int = 100  # Lower number = tried first
    max_retries: int = 2
    timeout_ms: int = 60000
    credential_ref: Optional[str] = None
    api_url: Optional[str] = None
    poll_interval_seconds: float = 5.0
    max_wait_seconds: float = 300.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries for {self.name} must be >= 0")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms for {self.name} must be > 0")
        if self.poll_interval_seconds <= 0:
            raise ValueError(f"poll_interval_seconds for {self.name} must be > 0")
        if self.max_wait_seconds <= 0:
            raise ValueError(f"max_wait_seconds for {self.name} must be > 0")


@dataclass
class GenerationResult:
    """Outcome of one generation call.

    Adapters fill durable_asset_url with the provider's transient URL and
    asset_urls with every output the call produced (the first one included);
    the generation pipeline replaces both with owned URLs before returning.
    """
    provider_name: str
    model_identifier: str
    durable_asset_url: str
    actual_cost: float = 0.0
    processing_time_ms: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    duration_seconds: Optional[float] = None
    content_type: Optional[str] = None
    provider_metadata: Dict[str, Any] = field(default_factory=dict)
    asset_urls: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "durableAssetUrl": self.durable_asset_url,
            "assetUrls": list(self.asset_urls),
            "actualCost": self.actual_cost,
            "processingTimeMs": self.processing_time_ms,
            "providerName": self.provider_name,
            "modelIdentifier": self.model_identifier,
            "width": self.width,
            "height": self.height,
            "durationSeconds": self.duration_seconds,
            "providerMetadata": dict(self.provider_metadata),
        }


IMAGE_RESOLUTIONS = ("512x512", "768x768", "1024x1024", "1024x1792", "1792x1024")

VIDEO_RESOLUTIONS: Dict[str, Tuple[int, int]] = {
    "720p": (1280, 720),
    "1080p": (1920, 1080),
    "4k": (3840, 2160),
}


def parse_image_resolution(resolution: str) -> Tuple[int, int]:
    """Turn "WIDTHxHEIGHT" into integers."""
    try:
        width, height = (int(part) for part in resolution.lower().split("x"))
    except ValueError:
        raise ValueError(f"Invalid image resolution: {resolution}")
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image resolution: {resolution}")
    return width, height


def parse_video_resolution(resolution: str) -> Tuple[int, int]:
    if resolution not in VIDEO_RESOLUTIONS:
        raise ValueError(
            f"Invalid video resolution: {resolution}. Must be one of: {list(VIDEO_RESOLUTIONS)}"
        )
    return VIDEO_RESOLUTIONS[resolution]


def call_with_retries(
    provider_name: str,
    max_retries: int,
    operation: Callable[[], T],
) -> T:
    """Run an operation, retrying ProviderError up to max_retries extra times.

    Timeouts and configuration errors pass straight through.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except ProviderError as e:
            if attempt >= max_retries:
                logger.error("%s failed after %d attempt(s): %s", provider_name, attempt + 1, e)
                raise
            attempt += 1
            logger.warning(
                "%s attempt %d/%d failed, retrying: %s",
                provider_name, attempt, max_retries + 1, e,
            )


class ProviderAdapter(ABC):
    """Uniform generation backend."""

    def __init__(self, config: ProviderConfig):
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name

    @abstractmethod
    def generate_image(
        self,
        prompt: str,
        resolution: str = "1024x1024",
        quality: str = "standard",
        count: int = 1,
        seed: Optional[int] = None,
        model_identifier: Optional[str] = None,
    ) -> GenerationResult:
        """Generate an image and return its transient location.

        Raises:
            ProviderError: On transport failure or non-success response
        """

    @abstractmethod
    def generate_video(
        self,
        prompt: str,
        keyframe_ref: Optional[str] = None,
        duration_seconds: float = 5,
        resolution: str = "720p",
        fps: int = 24,
        model_identifier: Optional[str] = None,
    ) -> GenerationResult:
        """Generate a video, blocking until the provider job is terminal.

        Raises:
            ProviderError: On transport failure or non-success response
            ProviderTimeoutError: If the provider job outlives max_wait_seconds
        """

    def close(self) -> None:
        """Release network resources held by the adapter."""


class UnavailableAdapter(ProviderAdapter):
    """Explicit stand-in for a provider that cannot serve requests."""

    def __init__(self, config: ProviderConfig, reason: str = "provider is not configured"):
        super().__init__(config)
        self.reason = reason

    def _fail(self) -> ConfigurationError:
        return ConfigurationError(f"{self.name} unavailable for {self.config.capability.value}: {self.reason}")

    def generate_image(self, prompt, resolution="1024x1024", quality="standard", count=1, seed=None,
                       model_identifier=None):
        raise self._fail()

    def generate_video(self, prompt, keyframe_ref=None, duration_seconds=5, resolution="720p", fps=24,
                       model_identifier=None):
        raise self._fail()
