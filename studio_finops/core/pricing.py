"""
Pricing registry and cost estimation.

Deterministic cost lookup for metered generation models. The same
lookup feeds both the approval gate and the usage ledger, so an
estimate is computed once per request and carried through.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

AMOUNT_PRECISION = Decimal("0.0001")


class UnitType(Enum):
    """How a model is billed."""
    PER_ITEM = "per-item"
    PER_DURATION = "per-duration"


@dataclass(frozen=True)
class PricingEntry:
    """Static price for one model identifier."""
    model_identifier: str
    unit_type: UnitType
    unit_price: Decimal
    average_duration_seconds: Optional[Decimal] = None

    def __post_init__(self):
        """Validate price values."""
        if self.unit_price < 0:
            raise ValueError(f"unit_price for {self.model_identifier} must be >= 0")
        if self.unit_type == UnitType.PER_DURATION and self.average_duration_seconds is None:
            raise ValueError(
                f"per-duration model {self.model_identifier} requires average_duration_seconds"
            )


@dataclass(frozen=True)
class CostEstimate:
    """Estimated spend for a single request."""
    provider_name: str
    model_identifier: str
    estimated_amount: float
    currency: str = "USD"
    unit: str = UnitType.PER_ITEM.value
    factors: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "providerName": self.provider_name,
            "modelIdentifier": self.model_identifier,
            "estimatedAmount": self.estimated_amount,
            "currency": self.currency,
            "unit": self.unit,
            "factors": dict(self.factors),
        }


class PricingRegistry:
    """Read-only pricing table with a default price for unknown models."""

    def __init__(self, entries: Iterable[PricingEntry], default_price: Decimal, currency: str = "USD"):
        """Build the registry.

        Args:
            entries: Pricing entries, one per model identifier
            default_price: Per-item price used for unpriced models
            currency: ISO currency code for all amounts
        """
        if default_price < 0:
            raise ValueError("default_price must be >= 0")
        self._entries: Dict[str, PricingEntry] = {}
        for entry in entries:
            if entry.model_identifier in self._entries:
                raise ValueError(f"Duplicate pricing entry: {entry.model_identifier}")
            self._entries[entry.model_identifier] = entry
        self.default_price = default_price
        self.currency = currency

    def __contains__(self, model_identifier: str) -> bool:
        return model_identifier in self._entries

    @property
    def model_identifiers(self) -> List[str]:
        return sorted(self._entries)

    def get_entry(self, model_identifier: str) -> PricingEntry:
        """Get pricing for a model, falling back to the default price.

        Unpriced models must not block generation, so this never raises;
        the fallback is logged instead.

        Args:
            model_identifier: Model identifier

        Returns:
            PricingEntry for the model, or a synthetic per-item default entry
        """
        entry = self._entries.get(model_identifier)
        if entry is None:
            logger.warning(
                "No pricing for model %s, using default price %s",
                model_identifier, self.default_price,
            )
            return PricingEntry(
                model_identifier=model_identifier,
                unit_type=UnitType.PER_ITEM,
                unit_price=self.default_price,
            )
        return entry

    def estimate(self, model_identifier: str, quantity: float = 1) -> float:
        """Estimate spend for a model.

        Args:
            model_identifier: Model identifier
            quantity: Number of items (or runs for per-duration models)

        Returns:
            Non-negative amount rounded to 4 decimal places
        """
        entry = self.get_entry(model_identifier)
        units = Decimal(str(quantity))

        if entry.unit_type == UnitType.PER_DURATION:
            total = entry.unit_price * entry.average_duration_seconds * units
        else:
            total = entry.unit_price * units

        if total < 0:
            total = Decimal("0")

        return float(total.quantize(AMOUNT_PRECISION, rounding=ROUND_HALF_UP))

    def estimate_request(
        self,
        model_identifier: str,
        quantity: float = 1,
        provider_name: str = "",
        factors: Optional[Dict[str, object]] = None,
    ) -> CostEstimate:
        """Estimate spend and wrap it with the context it was computed in."""
        entry = self.get_entry(model_identifier)
        return CostEstimate(
            provider_name=provider_name,
            model_identifier=model_identifier,
            estimated_amount=self.estimate(model_identifier, quantity),
            currency=self.currency,
            unit=entry.unit_type.value,
            factors=dict(factors or {}, quantity=quantity),
        )

    def compare(self, model_identifiers: Iterable[str], quantity: float = 1) -> List[CostEstimate]:
        """Estimate several models and order them cheapest first."""
        estimates = [self.estimate_request(m, quantity) for m in model_identifiers]
        return sorted(estimates, key=lambda e: (e.estimated_amount, e.model_identifier))

    def cheapest(self, model_identifiers: Iterable[str], quantity: float = 1) -> Optional[CostEstimate]:
        estimates = self.compare(model_identifiers, quantity)
        return estimates[0] if estimates else None


DEFAULT_PRICE = Decimal("0.05")

# Seed table; deployments override it from the pricing section of the config file
DEFAULT_PRICING_REGISTRY = PricingRegistry([
    PricingEntry("black-forest-labs/flux-pro", UnitType.PER_ITEM, Decimal("0.055")),
    PricingEntry("black-forest-labs/flux-schnell", UnitType.PER_ITEM, Decimal("0.003")),
    PricingEntry("stability-ai/sdxl", UnitType.PER_DURATION, Decimal("0.00057"), Decimal("3.5")),
    PricingEntry("stability-ai/sd-turbo", UnitType.PER_ITEM, Decimal("0.005")),
    PricingEntry("stability-ai/stable-video-diffusion", UnitType.PER_ITEM, Decimal("0.20")),
    PricingEntry("minimax/video-01", UnitType.PER_ITEM, Decimal("0.50")),
    PricingEntry("dall-e-3", UnitType.PER_ITEM, Decimal("0.04")),
    PricingEntry("elevenlabs/tts", UnitType.PER_ITEM, Decimal("0.010")),
    PricingEntry("haoheliu/audioldm-2", UnitType.PER_ITEM, Decimal("0.015")),
], default_price=DEFAULT_PRICE)
