"""
Resolution of the rate card applying to a transaction.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from .models import RateCard, canon_id, to_decimal
from .payout_calculator import PayoutCalculator

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Outcome of a lookup. Not finding a card is a normal result."""

    rate_card: Optional[RateCard]
    candidates: int = 0
    excluded_by_price: int = 0

    @property
    def found(self) -> bool:
        return self.rate_card is not None


def select_rate_card(cards: Iterable[RateCard], platform_id: str, category_id: str,
                     on_date: date, price: Optional[Decimal] = None) -> Resolution:
    """
    Pick the card for (platform, category) effective on a date and accepting a price.

    Cards match when effective_from <= on_date < effective_to (open end allowed).
    When several remain, the latest effective_from wins.
    """
    platform_id = canon_id(platform_id)
    category_id = canon_id(category_id)
    price = to_decimal(price)

    dated = [
        card for card in cards
        if not card.archived
        and canon_id(card.platform_id) == platform_id
        and canon_id(card.category_id) == category_id
        and card.is_effective_on(on_date)
    ]

    if price is None:
        eligible = dated
    else:
        eligible = [card for card in dated if PayoutCalculator.check_price_bounds(price, card) is None]

    excluded = len(dated) - len(eligible)
    if not eligible:
        return Resolution(rate_card=None, candidates=0, excluded_by_price=excluded)

    if len(eligible) > 1:
        logger.warning(
            f"{len(eligible)} rate cards match {platform_id}/{category_id} on {on_date.isoformat()}: "
            f"{', '.join(str(card.id) for card in eligible)}; using the latest effective_from"
        )

    best = max(eligible, key=lambda card: card.effective_from)
    return Resolution(rate_card=best, candidates=len(eligible), excluded_by_price=excluded)


class RateCardResolver:
    """Looks up the applicable rate card in a store."""

    def __init__(self, store):
        """
        Args:
            store: Object exposing list_rate_cards(platform_id, category_id, include_archived)
        """
        self.store = store

    def resolve(self, platform_id: str, category_id: str, on_date: date, price=None) -> Resolution:
        cards = self.store.list_rate_cards(
            platform_id=platform_id,
            category_id=category_id,
            include_archived=False
        )
        resolution = select_rate_card(cards, platform_id, category_id, on_date, price)
        if not resolution.found:
            logger.info(
                f"No rate card for {canon_id(platform_id)}/{canon_id(category_id)} on {on_date.isoformat()}"
                f" (excluded by price: {resolution.excluded_by_price})"
            )
        return resolution
