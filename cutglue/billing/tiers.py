"""
Tier catalog: static quota limits, prices and capabilities per subscription tier.

The catalog is built once at startup and never mutated. Lookups are pure and
fail closed: an unknown tier is treated as free, an unknown feature gets a
zero limit, and an unknown Stripe price resolves to free.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from cutglue.models.billing import (
    BillingInterval,
    Capability,
    Feature,
    Subscription,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)

UNLIMITED = -1


@dataclass(frozen=True)
class QuotaLimit:
    """Daily and monthly caps for one feature. -1 means unlimited."""

    daily: int
    monthly: int

    @property
    def is_unlimited(self) -> bool:
        return self.daily == UNLIMITED and self.monthly == UNLIMITED


ZERO_LIMIT = QuotaLimit(0, 0)


@dataclass(frozen=True)
class TierDefinition:
    tier: SubscriptionTier
    display_name: str
    monthly_price_cents: int
    limits: Mapping[Feature, QuotaLimit]
    capabilities: frozenset[Capability] = frozenset()
    price_id_monthly: str | None = None
    price_id_yearly: str | None = None

    def price_id(self, interval: BillingInterval) -> str | None:
        if interval == BillingInterval.YEARLY:
            return self.price_id_yearly
        return self.price_id_monthly


def _limits(
    ai_generation: tuple[int, int],
    ai_analysis: tuple[int, int],
    template_download: tuple[int, int],
    export_operation: tuple[int, int],
    project_creation: tuple[int, int],
) -> Mapping[Feature, QuotaLimit]:
    return MappingProxyType(
        {
            Feature.AI_GENERATION: QuotaLimit(*ai_generation),
            Feature.AI_ANALYSIS: QuotaLimit(*ai_analysis),
            Feature.TEMPLATE_DOWNLOAD: QuotaLimit(*template_download),
            Feature.EXPORT_OPERATION: QuotaLimit(*export_operation),
            Feature.PROJECT_CREATION: QuotaLimit(*project_creation),
        }
    )


_U = (UNLIMITED, UNLIMITED)

DEFAULT_TIERS: tuple[TierDefinition, ...] = (
    TierDefinition(
        tier=SubscriptionTier.FREE,
        display_name="Free",
        monthly_price_cents=0,
        limits=_limits((2, 20), (2, 20), (5, 50), (5, 50), (1, 3)),
    ),
    TierDefinition(
        tier=SubscriptionTier.STARTER,
        display_name="Starter",
        monthly_price_cents=900,
        limits=_limits((5, 25), (5, 50), (20, 100), (10, 50), (5, 25)),
        capabilities=frozenset({Capability.COMMERCIAL_LICENSE}),
    ),
    TierDefinition(
        tier=SubscriptionTier.MAKER,
        display_name="Maker",
        monthly_price_cents=1900,
        limits=_limits((100, 3000), (100, 3000), _U, _U, (5, 25)),
        capabilities=frozenset(
            {
                Capability.COMMERCIAL_LICENSE,
                Capability.PREMIUM_TEMPLATES,
                Capability.GCODE_GENERATION,
            }
        ),
    ),
    TierDefinition(
        tier=SubscriptionTier.PRO,
        display_name="Pro",
        monthly_price_cents=4900,
        limits=_limits(_U, _U, _U, _U, _U),
        capabilities=frozenset(Capability),
    ),
)


class TierCatalog:
    """
    Immutable lookup over tier definitions.

    Price ids come from configuration (STRIPE_PRICE_*), everything else from
    the static table above.
    """

    def __init__(
        self,
        definitions: tuple[TierDefinition, ...] = DEFAULT_TIERS,
        price_ids: Mapping[str, tuple[str, str]] | None = None,
    ):
        price_ids = price_ids or {}
        tiers: dict[SubscriptionTier, TierDefinition] = {}
        for definition in definitions:
            monthly, yearly = price_ids.get(
                definition.tier.value,
                (definition.price_id_monthly, definition.price_id_yearly),
            )
            tiers[definition.tier] = TierDefinition(
                tier=definition.tier,
                display_name=definition.display_name,
                monthly_price_cents=definition.monthly_price_cents,
                limits=definition.limits,
                capabilities=definition.capabilities,
                price_id_monthly=monthly,
                price_id_yearly=yearly,
            )

        if SubscriptionTier.FREE not in tiers:
            raise ValueError("Tier catalog must define the free tier")

        self._tiers = MappingProxyType(tiers)
        self._price_index = MappingProxyType(
            {
                price_id: definition.tier
                for definition in tiers.values()
                for price_id in (definition.price_id_monthly, definition.price_id_yearly)
                if price_id
            }
        )

    def resolve_tier(self, value: "SubscriptionTier | str | None") -> SubscriptionTier:
        """Coerce a stored or user-supplied tier name; unknown values become free."""
        if isinstance(value, SubscriptionTier):
            return value if value in self._tiers else SubscriptionTier.FREE
        try:
            tier = SubscriptionTier(value)
        except ValueError:
            logger.warning("Unknown subscription tier, treating as free", extra={"tier": value})
            return SubscriptionTier.FREE
        return tier if tier in self._tiers else SubscriptionTier.FREE

    def definition(self, tier: "SubscriptionTier | str | None") -> TierDefinition:
        return self._tiers[self.resolve_tier(tier)]

    def limit_for(self, tier: "SubscriptionTier | str | None", feature: "Feature | str") -> QuotaLimit:
        """
        Limits for a tier and feature.

        Args:
            tier: Subscription tier (unknown -> free)
            feature: Metered feature (unknown -> zero limit)

        Returns:
            QuotaLimit: daily and monthly caps, -1 meaning unlimited
        """
        try:
            feature = Feature(feature)
        except ValueError:
            return ZERO_LIMIT
        return self.definition(tier).limits.get(feature, ZERO_LIMIT)

    def tier_for_price(self, price_id: str | None) -> SubscriptionTier:
        """Map a Stripe price id to a tier; unknown prices map to free."""
        if not price_id:
            return SubscriptionTier.FREE
        tier = self._price_index.get(price_id)
        if tier is None:
            logger.warning("Unknown Stripe price id, treating as free", extra={"price_id": price_id})
            return SubscriptionTier.FREE
        return tier

    def has_capability(self, tier: "SubscriptionTier | str | None", capability: Capability) -> bool:
        return capability in self.definition(tier).capabilities

    def effective_tier(self, subscription: Subscription | None) -> SubscriptionTier:
        """
        Tier whose limits apply to a user.

        Free unless the subscription is trialing or active.
        """
        if subscription is None or not subscription.is_entitled:
            return SubscriptionTier.FREE
        return self.resolve_tier(subscription.tier)

    def tiers(self) -> list[TierDefinition]:
        return list(self._tiers.values())


_catalog: TierCatalog | None = None


def get_tier_catalog() -> TierCatalog:
    """Global catalog built from configured Stripe price ids."""
    global _catalog
    if _catalog is None:
        from cutglue.config import get_settings

        _catalog = TierCatalog(price_ids=get_settings().stripe.price_map)
    return _catalog
