"""Normalize upstream catalog records into the canonical product shape."""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from catalog_mirror.ingest.base import ExternalProduct, RawPrice

logger = logging.getLogger(__name__)

IN_STOCK = "in stock"
UNNAMED = "unnamed"

_CENTS = Decimal("0.01")
_ZERO = Decimal("0.00")
_NON_PRICE_CHARS = re.compile(r"[^0-9.]")


@dataclass
class CanonicalProduct:
    """Canonical product data, ready to be mirrored locally."""

    external_id: str
    retailer_id: Optional[str]
    name: str
    description: Optional[str]
    price: Decimal  # >= 0, two decimals
    image_urls: list[str] = field(default_factory=list)
    is_active: bool = False
    synced_at: datetime = None

    def mirrored_fields(self) -> dict:
        """Column values written to the local mirror (never stock or id)."""
        return {
            "retailer_id": self.retailer_id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "image_urls": list(self.image_urls),
            "is_active": self.is_active,
            "synced_at": self.synced_at,
        }


def parse_price(raw: RawPrice) -> Decimal:
    """
    Parse an upstream price into a non-negative two-decimal Decimal.

    Numbers are taken as-is. Strings keep only digits and dots
    ("$12,345.67 USD" -> 12345.67). Anything unparsable becomes 0.00.
    """
    if raw is None or isinstance(raw, bool):
        return _ZERO

    if isinstance(raw, (int, float, Decimal)):
        try:
            value = Decimal(str(raw))
        except InvalidOperation:
            return _ZERO
    elif isinstance(raw, str):
        cleaned = _NON_PRICE_CHARS.sub("", raw)
        if not cleaned:
            return _ZERO
        try:
            value = Decimal(cleaned)
        except InvalidOperation:
            return _ZERO
    else:
        return _ZERO

    if not value.is_finite() or value < 0:
        return _ZERO
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


class ProductNormalizer:
    """Map ExternalProduct records to CanonicalProduct."""

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self._clock = clock

    def normalize(self, raw: ExternalProduct) -> CanonicalProduct:
        """
        Normalize one upstream product.

        Args:
            raw: Product as parsed from the catalog response

        Returns:
            CanonicalProduct stamped with the normalization time
        """
        price = parse_price(raw.raw_price)
        if price == _ZERO and raw.raw_price not in (None, 0, "0", ""):
            logger.debug(f"Unparsable price {raw.raw_price!r} for {raw.external_id}, using 0.00")

        return CanonicalProduct(
            external_id=raw.external_id,
            retailer_id=raw.retailer_id or None,
            name=raw.name or UNNAMED,
            description=raw.description,
            price=price,
            image_urls=[raw.image_url] if raw.image_url else [],
            # Exact, case-sensitive match: "IN STOCK" is inactive
            is_active=raw.availability == IN_STOCK,
            synced_at=self._clock(),
        )


product_normalizer = ProductNormalizer()
