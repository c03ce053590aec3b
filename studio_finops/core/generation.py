"""
Generation pipeline.

Request flow:
1. Price the request (one lookup, reused for the gate and the ledger)
2. Gate the estimate (may raise RequiresApproval)
3. Select a provider (ConfigurationError if none is available)
4. Call the adapter (ProviderError / ProviderTimeoutError)
5. Secure the returned asset into owned storage (PersistenceError)
6. Record the spend (best-effort)
"""

import logging
import mimetypes
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional

from studio_finops.providers.base import (
    Capability,
    GenerationResult,
    ProviderError,
)
from studio_finops.providers.registry import ProviderRegistry
from studio_finops.storage.assets import AssetOwnershipPipeline, build_destination_path
from studio_finops.storage.models import ExportJob

from .approval import ApprovalGate
from .ledger import ACTION_IMAGE_GEN, ACTION_VIDEO_GEN, UsageLedger
from .pricing import CostEstimate, PricingRegistry

logger = logging.getLogger(__name__)

ACTION_TYPES = {
    Capability.IMAGE: ACTION_IMAGE_GEN,
    Capability.VIDEO: ACTION_VIDEO_GEN,
}

DEFAULT_EXTENSIONS = {
    Capability.IMAGE: ".png",
    Capability.VIDEO: ".mp4",
}


@dataclass(frozen=True)
class GenerationRequest:
    """A user's request for one generated asset."""
    project_id: str
    user_id: str
    model_identifier: str
    prompt: str
    capability: str = Capability.IMAGE.value
    resolution: str = "1024x1024"
    quality: str = "standard"
    duration_seconds: Optional[float] = None
    keyframe_ref: Optional[str] = None
    quantity: float = 1
    force_approved: bool = False
    preferred_provider: Optional[str] = None
    seed: Optional[int] = None
    fps: int = 24

    def __post_init__(self):
        if not self.prompt or not self.prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        if not self.model_identifier:
            raise ValueError("model_identifier is required and cannot be empty")
        capability = Capability(self.capability)
        if self.quantity <= 0 or float(self.quantity) != int(self.quantity):
            raise ValueError("quantity must be a positive whole number")
        if capability == Capability.VIDEO and self.quantity != 1:
            raise ValueError("video requests produce one clip; queue one job per clip")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationRequest":
        names = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in names})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class GenerationService:
    """Runs generation requests through estimate, approval, provider, custody and ledger."""

    def __init__(
        self,
        pricing: PricingRegistry,
        gate: ApprovalGate,
        registry: ProviderRegistry,
        assets: AssetOwnershipPipeline,
        ledger: UsageLedger,
        allow_fallback: bool = False,
    ):
        """Initialize the service.

        Args:
            pricing: Pricing registry
            gate: Approval gate
            registry: Provider registry
            assets: Asset ownership pipeline
            ledger: Usage ledger
            allow_fallback: Walk the provider fallback chain on ProviderError
        """
        self.pricing = pricing
        self.gate = gate
        self.registry = registry
        self.assets = assets
        self.ledger = ledger
        self.allow_fallback = allow_fallback

    def estimate(self, request: GenerationRequest) -> CostEstimate:
        return self.pricing.estimate_request(
            request.model_identifier,
            request.quantity,
            provider_name=request.preferred_provider or "",
            factors={
                "resolution": request.resolution,
                "quality": request.quality,
                "duration_seconds": request.duration_seconds,
            },
        )

    def _candidates(self, capability: Capability, preferred: Optional[str]) -> List[str]:
        selected = self.registry.require_provider(capability, preferred)
        if not self.allow_fallback:
            return [selected]
        return [selected] + [name for name in self.registry.fallback_chain(capability) if name != selected]

    def _call_adapter(self, capability: Capability, provider_name: str, request: GenerationRequest) -> GenerationResult:
        adapter = self.registry.get_adapter(capability, provider_name)
        if capability == Capability.IMAGE:
            return adapter.generate_image(
                prompt=request.prompt,
                resolution=request.resolution,
                quality=request.quality,
                count=int(request.quantity),
                seed=request.seed,
                model_identifier=request.model_identifier,
            )
        return adapter.generate_video(
            prompt=request.prompt,
            keyframe_ref=request.keyframe_ref,
            duration_seconds=request.duration_seconds or 5,
            resolution=request.resolution,
            fps=request.fps,
            model_identifier=request.model_identifier,
        )

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run one request end to end.

        Raises:
            RequiresApproval: Estimate above threshold without force_approved
            ConfigurationError: No provider available for the capability
            ProviderError: Provider failed after retries (and fallbacks, if enabled)
            ProviderTimeoutError: Asynchronous provider job exceeded its deadline
            PersistenceError: Asset could not be secured; the request failed
        """
        capability = Capability(request.capability)
        estimate = self.estimate(request)
        self.gate.authorize(estimate.estimated_amount, request.force_approved)

        result = None
        last_error: Optional[ProviderError] = None
        for provider_name in self._candidates(capability, request.preferred_provider):
            try:
                result = self._call_adapter(capability, provider_name, request)
                break
            except ProviderError as e:
                last_error = e
                if not self.allow_fallback:
                    raise
                logger.warning("Provider %s failed, trying next in chain: %s", provider_name, e)
        if result is None:
            raise last_error

        transient_urls = result.asset_urls or [result.durable_asset_url]
        if len(transient_urls) != request.quantity:
            logger.warning(
                "%s returned %d asset(s) for a request of %s; recording the estimate as priced",
                result.provider_name, len(transient_urls), request.quantity,
            )

        extension = DEFAULT_EXTENSIONS[capability]
        if result.content_type:
            extension = mimetypes.guess_extension(result.content_type) or extension
        # Every paid output is secured; one failure fails the whole request
        result.asset_urls = [
            self.assets.secure(url, build_destination_path(request.project_id, capability.value, extension))
            for url in transient_urls
        ]
        result.durable_asset_url = result.asset_urls[0]
        result.actual_cost = estimate.estimated_amount

        self.ledger.record(
            project_id=request.project_id,
            user_id=request.user_id,
            action_type=ACTION_TYPES[capability],
            model_identifier=request.model_identifier,
            amount=estimate.estimated_amount,
            quantity=request.quantity,
        )
        logger.info(
            "Generated %s for project %s via %s ($%.4f)",
            capability.value, request.project_id, result.provider_name, result.actual_cost,
        )
        return result


def make_generation_handler(service: GenerationService):
    """Queue handler running a batched generation job."""

    def handle(job: ExportJob, on_progress) -> str:
        request = GenerationRequest.from_dict(job.options)
        on_progress(1)
        return service.generate(request).durable_asset_url

    return handle
