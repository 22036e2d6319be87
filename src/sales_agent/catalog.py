"""
Product catalog and pricing.

Holds the breakfast / food-service items the agent can sell, their case prices
and minimum order quantities, and lightweight matching of spoken product
mentions against the catalog so order lines can be priced without trusting the
LLM's arithmetic.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
import re
from typing import Dict, List, Optional, Tuple
import unicodedata

import structlog

logger = structlog.get_logger(__name__)

BULK_DISCOUNT_MIN_CASES = 5
BULK_DISCOUNT_CENTS = 200


@dataclass(frozen=True)
class Product:
    name: str
    category: str
    price_cents: int
    min_cases: int
    aliases: Tuple[str, ...] = ()

    @property
    def price(self) -> Decimal:
        return Decimal(self.price_cents) / 100

    @property
    def price_text(self) -> str:
        return f"${self.price:.2f}"


@dataclass(frozen=True)
class ProductCatalog:
    products: Tuple[Product, ...]

    @property
    def categories(self) -> Dict[str, Tuple[Product, ...]]:
        grouped: Dict[str, List[Product]] = {}
        for product in self.products:
            grouped.setdefault(product.category, []).append(product)
        return {name: tuple(items) for name, items in grouped.items()}

    def get(self, name: str) -> Optional[Product]:
        wanted = _normalize(name)
        for product in self.products:
            if _normalize(product.name) == wanted:
                return product
        matches = find_products(self, name)
        return matches[0] if matches else None

    def to_prompt_lines(self) -> List[str]:
        """
        Render a compact, deterministic representation for prompting.
        """
        lines: List[str] = []
        for category in sorted(self.categories.keys()):
            lines.append(f"[CATEGORY] {category}")
            for product in self.categories[category]:
                lines.append(
                    f"- {product.name}: {product.price_text} per case (minimum {product.min_cases} cases)"
                )
        lines.append(
            f"Bulk discount: {BULK_DISCOUNT_MIN_CASES}+ cases get "
            f"${BULK_DISCOUNT_CENTS // 100} off per case."
        )
        return lines


DEFAULT_PRODUCTS: Tuple[Product, ...] = (
    Product("Asiago Cheese Bagels", "Bagels/Pastries", 2500, 2, ("asiago cheese bagel", "asiago bagel", "asiago")),
    Product("Plain Bagels", "Bagels/Pastries", 2300, 2, ("plain bagel", "bagel")),
    Product("Butter Croissants", "Bagels/Pastries", 2700, 2, ("butter croissant", "croissant")),
    Product("Blueberry Muffins", "Bagels/Pastries", 2400, 2, ("blueberry muffin", "muffin")),
    Product("Bottled Water (16.9 fl oz)", "Beverages", 2000, 3, ("bottled water", "water")),
    Product("Orange Juice (10 fl oz)", "Beverages", 2200, 3, ("orange juice", "oj")),
    Product("Apple Juice (10 fl oz)", "Beverages", 2100, 3, ("apple juice",)),
    Product("House Blend Coffee", "Coffee", 2800, 2, ("house blend coffee", "house blend", "coffee")),
    Product("Decaf Coffee", "Coffee", 2600, 2, ("decaf coffee", "decaf")),
    Product("Whole Milk (1 gallon)", "Dairy", 2000, 2, ("whole milk", "milk")),
    Product("Cream Cheese Cups (1 oz)", "Dairy", 2300, 2, ("cream cheese",)),
    Product("Greek Yogurt Cups (5.3 oz)", "Dairy", 2500, 2, ("greek yogurt", "yogurt")),
    Product("Strawberry Jam Packets (0.5 oz)", "Condiments/Jams", 1600, 2, ("strawberry jam", "jam")),
    Product("Maple Syrup Cups (1.5 fl oz)", "Condiments/Jams", 1900, 2, ("maple syrup", "syrup")),
    Product("Peanut Butter Packets (0.75 oz)", "Condiments/Jams", 1800, 2, ("peanut butter",)),
)


def _normalize(text: str) -> str:
    """
    Normalize text for matching: casefold + strip accents + collapse whitespace.
    """
    text = unicodedata.normalize("NFKD", text or "")
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.replace("’", "'")
    text = " ".join(text.split())
    return text.casefold()


@lru_cache(maxsize=1)
def get_catalog() -> ProductCatalog:
    catalog = ProductCatalog(products=DEFAULT_PRODUCTS)
    logger.info(
        "Catalog loaded",
        num_categories=len(catalog.categories),
        num_products=len(catalog.products),
    )
    return catalog


def find_products(catalog: ProductCatalog, text: str) -> List[Product]:
    """
    Find catalog products mentioned in `text`, in order of appearance.

    Longer aliases win over shorter overlapping ones, so "asiago cheese bagels"
    resolves to the Asiago bagels and not to plain bagels.
    """
    t = _normalize(text)
    if not t:
        return []

    candidates: List[Tuple[int, int, Product]] = []
    for product in catalog.products:
        for alias in product.aliases:
            pattern = r"\b" + re.escape(alias) + r"(?:e?s)?\b"
            for match in re.finditer(pattern, t):
                candidates.append((match.start(), match.end(), product))

    # Longest span first, then earliest.
    candidates.sort(key=lambda c: (-(c[1] - c[0]), c[0]))

    taken: List[Tuple[int, int]] = []
    found: List[Tuple[int, Product]] = []
    for start, end, product in candidates:
        if any(start < t_end and end > t_start for t_start, t_end in taken):
            continue
        taken.append((start, end))
        if all(existing is not product for _, existing in found):
            found.append((start, product))

    found.sort(key=lambda f: f[0])
    return [product for _, product in found]


def unit_price_for(product: Product, quantity: int) -> Decimal:
    """Case price after the bulk discount."""
    cents = product.price_cents
    if quantity >= BULK_DISCOUNT_MIN_CASES:
        cents -= BULK_DISCOUNT_CENTS
    return Decimal(cents) / 100
