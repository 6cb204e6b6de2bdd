"""Product recommendations and upsell suggestions.

Recommendations run an ordered list of search strategies (synonym search, then
plain catalog search) and rerank the hits by the needs detected in the message.
Upsell suggestions pick products from categories that complement the cart.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .cart_store import Cart
from .catalog import Catalog, Product

logger = logging.getLogger("chatcart.reco")

UPSELL_DISCOUNT_PERCENT = 10
UPSELL_LIMIT = 4

RECO_HEADER = "Here are some recommendations to consider for your routine:"
NO_MATCH_HEADER = "I couldn't find an exact match, but here are some popular options:"
UPSELL_HEADER = "You may also like these to complete your routine:"
CLARIFY_REPLY = (
    "To recommend the best fit, could you share your skin concerns "
    "(e.g., oily, acne, brightening, anti-aging) and your budget range?"
)
CLARIFY_RE = re.compile(r"to recommend the best fit, could you share", re.IGNORECASE)
CLARIFY_WINDOW = 3

COMPLEMENTARY_CATEGORIES: List[Tuple[str, Tuple[str, ...]]] = [
    ("moisturizer", ("serum", "sunscreen")),
    ("serum", ("moisturizer", "sunscreen")),
    ("cleanser", ("toner", "moisturizer")),
    ("toner", ("serum", "moisturizer")),
    ("sunscreen", ("cleanser", "moisturizer")),
    ("mask", ("serum", "moisturizer")),
]

PRODUCT_TYPE_RE = re.compile(
    r"\b(moisturi[sz]er|serum|cleanser|face\s*wash|sunscreen|spf|toner|mask)\b", re.IGNORECASE
)
CONCERN_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("acne", ("acne", "breakout", "jerawat", "blemish")),
    ("oily", ("oily", "berminyak", "sebum")),
    ("dry", ("dry", "kering", "flaky")),
    ("sensitive", ("sensitive", "sensitif", "redness", "irritat", "soothing", "calming")),
    ("brightening", ("bright", "dull", "kusam", "dark spot", "hyperpig", "glow")),
    ("pores", ("pore", "pori", "blackhead", "whitehead")),
    ("barrier", ("barrier", "repair", "ceramide")),
    ("hydrating", ("hydrat", "moistur", "dehydrat", "lembab")),
    ("anti-aging", ("aging", "ageing", "wrinkle", "fine line", "firm", "kerut")),
]
TYPE_ALIASES = {"moisturiser": "moisturizer", "facewash": "cleanser", "spf": "sunscreen"}
BUDGET_TIERS = (("budget", 1000), ("mid", 2000))


@dataclass(frozen=True)
class Needs:
    product_type: Optional[str] = None
    concerns: Tuple[str, ...] = ()
    price_tier: Optional[str] = None


@dataclass
class Recommendation:
    products: List[Product] = field(default_factory=list)
    matched: bool = False
    header: str = NO_MATCH_HEADER


@dataclass(frozen=True)
class UpsellItem:
    product: Product
    price_cents: int
    original_price_cents: int
    discount_percent: int


def price_tier(price_cents: int) -> str:
    for tier, ceiling in BUDGET_TIERS:
        if price_cents < ceiling:
            return tier
    return "premium"


def extract_needs(message: str) -> Needs:
    """Purpose: Detect product type, skin concerns and budget hints in a message.
    Inputs/Outputs: Input is the raw message; output is a Needs record.
    Side Effects / State: None.
    Dependencies: PRODUCT_TYPE_RE, CONCERN_KEYWORDS, TYPE_ALIASES.
    Failure Modes: Unrecognized wording yields an empty Needs; reranking then
        leaves the search order untouched.
    If Removed: Recommendations ignore what the customer said about their skin.
    Testing Notes: "serum for oily acne skin" -> type serum, concerns (acne, oily).
    """
    text = (message or "").lower()
    product_type = None
    match = PRODUCT_TYPE_RE.search(text)
    if match:
        raw = re.sub(r"\s+", "", match.group(1).lower())
        product_type = TYPE_ALIASES.get(raw, raw)
    concerns = tuple(
        concern for concern, words in CONCERN_KEYWORDS if any(word in text for word in words)
    )
    tier = None
    if re.search(r"\b(cheap|murah|budget|affordable|hemat)\b", text):
        tier = "budget"
    elif re.search(r"\b(premium|luxury|mewah|best quality)\b", text):
        tier = "premium"
    return Needs(product_type=product_type, concerns=concerns, price_tier=tier)


def merge_needs(needs: Sequence[Needs]) -> Needs:
    """Combine needs from oldest to newest turn; later type and budget win, concerns accumulate."""
    product_type: Optional[str] = None
    tier: Optional[str] = None
    concerns: List[str] = []
    for item in needs:
        product_type = item.product_type or product_type
        tier = item.price_tier or tier
        concerns.extend(concern for concern in item.concerns if concern not in concerns)
    return Needs(product_type=product_type, concerns=tuple(concerns), price_tier=tier)


def needs_clarification(needs: Needs) -> bool:
    """A bare product type with no concern and no budget is too thin to recommend from."""
    return bool(needs.product_type) and not needs.concerns and not needs.price_tier


def recently_clarified(assistant_turns: Sequence[str], window: int = CLARIFY_WINDOW) -> bool:
    """True when one of the last `window` assistant turns already asked for details."""
    recent = list(assistant_turns)[-window:] if window > 0 else []
    return any(CLARIFY_RE.search(text or "") for text in recent)


def score_product(product: Product, needs: Needs) -> float:
    name = product.name.lower()
    tags = {tag.lower() for tag in product.tags}
    benefits = " ".join(product.benefits).lower()
    score = 0.0
    if needs.product_type:
        if needs.product_type in tags:
            score += 3.0
        elif needs.product_type in name:
            score += 2.0
    for concern in needs.concerns:
        if concern in tags:
            score += 1.5
        elif concern in name or concern in benefits:
            score += 0.5
    if needs.price_tier and price_tier(product.price_cents) == needs.price_tier:
        score += 1.0
    if product.description:
        score += 0.25
    return score


def rerank(products: Sequence[Product], needs: Needs) -> List[Product]:
    """Stable rerank by needs score; equal scores keep their search order."""
    return sorted(products, key=lambda product: -score_product(product, needs))


class Recommender:
    """Recommendation and upsell lookups over a Catalog."""

    def __init__(self, catalog: Catalog, limit: int = 6) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        self._catalog = catalog
        self._limit = limit

    def recommend(self, message: str, needs: Optional[Needs] = None) -> Recommendation:
        """Purpose: Find products for a free-text request.
        Inputs/Outputs: Inputs are the message and optional needs gathered from
            earlier turns (default: extracted from the message); output is a
            Recommendation with at most `limit` products and the reply header.
        Side Effects / State: None.
        Dependencies: Catalog.search_normalized, Catalog.search, extract_needs.
        Failure Modes: When no strategy matches, the first catalog products are
            returned as popular options with the no-match header.
        If Removed: product_reco requests get no products.
        Testing Notes: "any good cream?" matches; "vitamin c" falls back with the
            no-match header; "oily skin" with a remembered serum type finds serums.
        """
        if needs is None:
            needs = extract_needs(message)
        query = message
        # A product type named in an earlier turn narrows a follow-up like "oily skin".
        if needs.product_type and needs.product_type not in (message or "").lower():
            query = f"{needs.product_type} {message}"
        strategies: List[Callable[[str, int], List[Product]]] = [
            self._catalog.search_normalized,
            self._catalog.search,
        ]
        for strategy in strategies:
            results = strategy(query, self._limit)
            if results:
                ranked = rerank(results, needs)
                return Recommendation(products=ranked, matched=True, header=RECO_HEADER)
        logger.info("No catalog match for %r; returning popular products", message[:60])
        popular = list(self._catalog.products[: self._limit])
        return Recommendation(products=popular, matched=False, header=NO_MATCH_HEADER)

    def upsell(self, cart: Cart) -> List[UpsellItem]:
        """Purpose: Suggest complementary products for a non-empty cart.
        Inputs/Outputs: Input is the cart; output is at most UPSELL_LIMIT items priced
            at the upsell discount.
        Side Effects / State: None.
        Dependencies: complementary_categories, Catalog.products.
        Failure Modes: Empty cart returns []; products already in the cart are skipped.
        If Removed: add/edit replies carry no cross-sell suggestions.
        Testing Notes: A moisturizer-only cart suggests serums before sunscreens.
        """
        if not cart.items:
            return []
        in_cart = {line.product_id for line in cart.items if line.product_id}
        in_cart |= {line.variant_id for line in cart.items if line.variant_id}
        in_cart_names = {line.product_name.lower() for line in cart.items}
        picks: List[Product] = []
        seen = set()
        for category in complementary_categories(cart.tags()):
            for product in self._catalog.products:
                if category not in product.tags or product.id in seen:
                    continue
                if product.id in in_cart or (product.variant_id and product.variant_id in in_cart):
                    continue
                if product.name.lower() in in_cart_names:
                    continue
                seen.add(product.id)
                picks.append(product)
        return [discounted(product) for product in picks[:UPSELL_LIMIT]]


def complementary_categories(categories: Iterable[str]) -> List[str]:
    """Categories that complete a routine for the given cart categories, deduplicated."""
    present = {category.lower() for category in categories}
    wanted: List[str] = []
    for category, complements in COMPLEMENTARY_CATEGORIES:
        if category in present:
            wanted.extend(complements)
    if not present:
        wanted.append("sunscreen")
    if not wanted:
        wanted.extend(["serum", "moisturizer"])
    return list(dict.fromkeys(wanted))


def discounted(product: Product, percent: int = UPSELL_DISCOUNT_PERCENT) -> UpsellItem:
    # Half-up rounding to whole cents.
    price = max(0, (product.price_cents * (100 - percent) + 50) // 100)
    return UpsellItem(
        product=product,
        price_cents=price,
        original_price_cents=product.price_cents,
        discount_percent=percent,
    )
