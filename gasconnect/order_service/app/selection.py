"""Supplier ranking.

Emergency orders go to the nearest supplier. Routine orders maximise

    rating * w_rating + (ceiling - distance) * w_distance + (ceiling - priceRank) * w_price

where ``priceRank`` is the 1-based position of the offer when all candidates
are sorted by price. The weights are tunable through ``SelectionWeights``.
Ties always go to the lowest supplier id.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from gasconnect.common.config import ServiceSettings

from .errors import NoSupplierAvailable


@dataclass(frozen=True)
class SupplierOffer:
    supplier_id: int
    inventory_id: int
    rating: float
    distance_km: float | None
    price_cents: int | None
    available_quantity: int


@dataclass(frozen=True)
class SelectionWeights:
    rating: float = 0.4
    distance: float = 0.3
    price: float = 0.3
    ceiling: float = 100.0

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> "SelectionWeights":
        return cls(
            rating=settings.selection_rating_weight,
            distance=settings.selection_distance_weight,
            price=settings.selection_price_weight,
            ceiling=settings.selection_score_ceiling,
        )


class SupplierSelector:
    def __init__(self, weights: SelectionWeights | None = None) -> None:
        self.weights = weights or SelectionWeights()

    @staticmethod
    def price_ranks(offers: Sequence[SupplierOffer]) -> dict[int, int]:
        """Map supplier id to its 1-based price position; unpriced offers rank last."""

        ordered = sorted(
            offers,
            key=lambda offer: (offer.price_cents is None, offer.price_cents or 0, offer.supplier_id),
        )
        return {offer.supplier_id: position for position, offer in enumerate(ordered, start=1)}

    def score(self, offer: SupplierOffer, price_rank: int) -> float:
        weights = self.weights
        distance = weights.ceiling if offer.distance_km is None else offer.distance_km
        return (
            offer.rating * weights.rating
            + (weights.ceiling - distance) * weights.distance
            + (weights.ceiling - price_rank) * weights.price
        )

    def rank(self, offers: Sequence[SupplierOffer], *, is_emergency: bool) -> list[SupplierOffer]:
        if is_emergency:
            return sorted(
                offers,
                key=lambda offer: (offer.distance_km is None, offer.distance_km or 0.0, offer.supplier_id),
            )
        ranks = self.price_ranks(offers)
        return sorted(offers, key=lambda offer: (-self.score(offer, ranks[offer.supplier_id]), offer.supplier_id))

    def select(self, offers: Sequence[SupplierOffer], *, is_emergency: bool) -> SupplierOffer:
        if not offers:
            raise NoSupplierAvailable("No supplier has the requested item in stock")
        return self.rank(offers, is_emergency=is_emergency)[0]
