"""
Offer Resolution

exit reason -> offer type -> offer parameters.

1. A per-reason mapping decides the offer type; without one, the account's
   default offer applies.
2. Percentage and durations come from the per-reason mapping first, else
   from the account-wide settings.
3. "other: <text>" reasons resolve through the "other" mapping.
"""
from dataclasses import dataclass
from typing import Optional

from ...models.db_models import OfferType
from .offer_config import OfferSettings, OTHER_REASON


@dataclass(frozen=True)
class Offer:
    type: OfferType
    duration_months: int
    percentage: Optional[int] = None

    def to_dict(self) -> dict:
        if self.type == OfferType.DISCOUNT:
            return {
                "type": self.type.value,
                "percentage": self.percentage,
                "duration_months": self.duration_months,
            }
        return {"type": self.type.value, "duration_months": self.duration_months}


def reason_key(exit_reason: str) -> str:
    """Mapping key for a stored exit reason ("other: too slow" -> "other")."""
    if exit_reason == OTHER_REASON or exit_reason.startswith(OTHER_REASON + ":"):
        return OTHER_REASON
    return exit_reason


def resolve_offer_type(settings: OfferSettings, exit_reason: str) -> OfferType:
    mapping = settings.reason_mappings.get(reason_key(exit_reason))
    if mapping is not None:
        return mapping.offer_type
    return settings.default_offer


def resolve_offer(settings: OfferSettings, exit_reason: str) -> Optional[Offer]:
    """Offer for a reason, or None when the resolved type is NONE."""
    return build_offer(settings, exit_reason, resolve_offer_type(settings, exit_reason))


def build_offer(settings: OfferSettings, exit_reason: str, offer_type: OfferType) -> Optional[Offer]:
    """Parameters for an already-chosen offer type (used when resuming a session)."""
    mapping = settings.reason_mappings.get(reason_key(exit_reason))

    def pick(field_name: str) -> int:
        value = getattr(mapping, field_name, None) if mapping is not None else None
        return value if value is not None else getattr(settings, field_name)

    if offer_type == OfferType.NONE:
        return None
    elif offer_type == OfferType.DISCOUNT:
        return Offer(
            type=OfferType.DISCOUNT,
            percentage=pick("discount_percentage"),
            duration_months=pick("discount_duration_months"),
        )
    elif offer_type == OfferType.PAUSE:
        return Offer(type=OfferType.PAUSE, duration_months=pick("pause_duration_months"))
    else:
        raise ValueError(f"Unhandled offer type: {offer_type}")
