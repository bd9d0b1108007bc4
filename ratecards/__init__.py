"""
Marketplace rate card engine

Resolves the rate card applying to an order, computes expected payouts and
settlement dates, and bulk-imports rate cards from CSV:
1. Slab validation for tiered commission
2. Payout calculation (commission, fees, GST, optional TCS)
3. Settlement date scheduling
4. Rate card resolution by platform, category, date and price
5. CSV import with duplicate / overlap classification
"""

from .routes import bp as rate_cards_bp

__all__ = ['rate_cards_bp']
