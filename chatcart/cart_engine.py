"""Cart and voucher engine.

Role:
    Applies one cart intent to a copy of the session cart and returns the updated
    cart with the reply text. The engine never touches storage; the pipeline reads
    the cart from CartStore, calls apply(), and writes the result back under the
    session lock.

Product resolution order (first hit wins):
    explicit product/variant id -> explicit product name -> oracle product hint ->
    catalog product named inside the message -> catalog search over the message.
    Explicit names or ids missing from the catalog are accepted as-is when the caller
    also supplies a unit price.

Quantity order:
    explicit qty -> oracle qty -> first 1-2 digit number in the message (with the
    product name removed) -> 1.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .cart_store import Cart, CartLine, recompute_totals
from .catalog import Catalog, Product
from .intent_router import Intent
from .utils import format_cents
from .vouchers import DEFAULT_RULES, VoucherChoice, VoucherRule, best_voucher

logger = logging.getLogger("chatcart.engine")

QTY_RE = re.compile(r"\b(\d{1,2})\b")
VOUCHER_CODE_RE = re.compile(r"[A-Za-z0-9]{4,}")
CODE_STOPWORDS = {
    "apply", "please", "pakai", "gunakan", "code", "codes", "kode", "voucher", "vouchers",
    "discount", "discounts", "diskon", "promo", "promos", "coupon", "coupons", "kupon",
    "potongan", "deal", "deals", "eligible", "have", "there", "what", "with", "this", "that",
    "dong", "yang", "untuk", "best", "want", "using", "give", "could", "would", "your",
}

NOT_FOUND_REPLY = "I couldn't find that product. Could you specify the name?"
NOT_IN_CART_REPLY = "I couldn't find that item in your cart."
CART_INTENTS = {
    Intent.GET_CART_INFO,
    Intent.ADD_LINE,
    Intent.EDIT_LINE,
    Intent.DELETE_LINE,
    Intent.DELETE_CART,
    Intent.APPLY_VOUCHER,
}


@dataclass
class EngineParams:
    """Request parameters relevant to cart mutations; explicit fields beat hints."""
    message: str = ""
    product_name: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    qty: Optional[int] = None
    unit_price_cents: Optional[int] = None
    image_url: Optional[str] = None
    voucher_name: Optional[str] = None
    hinted_product: Optional[str] = None
    hinted_qty: Optional[int] = None
    hinted_voucher: Optional[str] = None


@dataclass
class EngineResult:
    cart: Cart
    output: str
    outcome: str
    mutated: bool = False
    product: Optional[Product] = None
    voucher: Optional[VoucherChoice] = None
    requested_code: Optional[str] = None


def extract_qty(message: str, product_name: Optional[str] = None) -> Optional[int]:
    """Purpose: Pull a quantity from free text.
    Inputs/Outputs: Inputs are the message and optionally the resolved product name;
        output is the first standalone 1-2 digit number (min 1) or None.
    Side Effects / State: None.
    Dependencies: QTY_RE.
    Failure Modes: Digits inside the product name ("10% Niacinamide") are ignored
        when the name is supplied; "5X" never matches because X is a word character.
    If Removed: "add ceramide serum 3" adds a single unit.
    Testing Notes: "add ceramide serum" -> None; "add ceramide serum 3" -> 3; "0" -> 1.
    """
    text = message or ""
    if product_name:
        text = re.sub(re.escape(product_name), " ", text, flags=re.IGNORECASE)
    match = QTY_RE.search(text)
    if not match:
        return None
    return max(1, int(match.group(1)))


def extract_voucher_code(text: Optional[str], known_codes: Sequence[str] = ()) -> Optional[str]:
    """Purpose: Find the voucher code a customer is asking for.
    Inputs/Outputs: Inputs are the hinted voucher or raw message and the known rule
        codes; output is an upper-cased alphanumeric code (>= 4 chars) or None.
    Side Effects / State: None.
    Dependencies: VOUCHER_CODE_RE, CODE_STOPWORDS.
    Failure Modes: Plain words are only treated as codes when they contain a digit or
        were typed in upper case, so "ada diskon?" yields None.
    If Removed: Every voucher request falls back to the best voucher.
    Testing Notes: "apply WELCOME10" -> WELCOME10; "use BADCODE123" -> BADCODE123.
    """
    if not text:
        return None
    tokens = VOUCHER_CODE_RE.findall(text)
    known = {code.upper() for code in known_codes}
    for token in tokens:
        if token.upper() in known:
            return token.upper()
    for token in tokens:
        if token.lower() in CODE_STOPWORDS:
            continue
        if any(ch.isdigit() for ch in token) or token.isupper():
            return token.upper()
    return None


class CartEngine:
    """Applies cart intents and keeps totals consistent with the voucher rules."""

    def __init__(self, catalog: Catalog, rules: Sequence[VoucherRule] = DEFAULT_RULES) -> None:
        self._catalog = catalog
        self._rules = tuple(rules)
        self._handlers: Dict[Intent, Callable[[Cart, EngineParams], EngineResult]] = {
            Intent.GET_CART_INFO: self._cart_info,
            Intent.ADD_LINE: self._add_line,
            Intent.EDIT_LINE: self._edit_line,
            Intent.DELETE_LINE: self._delete_line,
            Intent.DELETE_CART: self._delete_cart,
            Intent.APPLY_VOUCHER: self._apply_voucher,
        }

    @property
    def rules(self) -> Sequence[VoucherRule]:
        return self._rules

    def apply(self, cart: Cart, intent: Intent, params: EngineParams) -> EngineResult:
        """Purpose: Apply one cart intent and recompute totals.
        Inputs/Outputs: Inputs are the current cart, the intent and EngineParams;
            output is EngineResult with a new cart object and the reply text.
        Side Effects / State: None; the input cart is never mutated.
        Dependencies: Catalog for product resolution, voucher rules for discounts.
        Failure Modes: Raises ValueError for intents the engine does not own
            (product_reco, ticket, checkout). Unknown products and bad voucher codes
            are business outcomes returned in EngineResult.outcome.
        If Removed: No cart mutation or pricing is possible.
        Testing Notes: After any call, total == max(0, subtotal - discount) and
            subtotal == sum(unit_price * qty).
        """
        handler = self._handlers.get(intent)
        if handler is None:
            raise ValueError(f"{intent.value} is not a cart intent")
        working = copy.deepcopy(cart)
        recompute_totals(working, self._rules)
        result = handler(working, params)
        recompute_totals(result.cart, self._rules)
        logger.debug(
            "Engine %s for session %s -> %s (total=%d)",
            intent.value,
            cart.session_id,
            result.outcome,
            result.cart.total_cents,
        )
        return result

    def recompute(self, cart: Cart) -> Cart:
        return recompute_totals(cart, self._rules)

    def resolve_product(self, params: EngineParams) -> Optional[Product]:
        """Run the product resolution strategies in order; None when nothing matches."""
        strategies: List[Callable[[EngineParams], Optional[Product]]] = [
            self._by_reference,
            self._by_name,
            self._by_hint,
            self._by_name_in_message,
            self._by_tag_overlap,
            self._by_search,
        ]
        for strategy in strategies:
            product = strategy(params)
            if product is not None:
                return product
        return None

    def _by_reference(self, params: EngineParams) -> Optional[Product]:
        for ref in (params.variant_id, params.product_id):
            product = self._catalog.get(ref)
            if product is not None:
                return product
        if (params.product_id or params.variant_id) and params.product_name:
            return self._ad_hoc_product(params)
        return None

    def _by_name(self, params: EngineParams) -> Optional[Product]:
        if not params.product_name:
            return None
        product = self._catalog.resolve(params.product_name)
        if product is None:
            return self._ad_hoc_product(params)
        return product

    def _by_hint(self, params: EngineParams) -> Optional[Product]:
        return self._catalog.resolve(params.hinted_product)

    def _by_name_in_message(self, params: EngineParams) -> Optional[Product]:
        text = (params.message or "").lower()
        if not text:
            return None
        named = [product for product in self._catalog.products if product.name.lower() in text]
        if not named:
            return None
        return max(named, key=lambda product: len(product.name))

    def _by_tag_overlap(self, params: EngineParams) -> Optional[Product]:
        """Purpose: Pick the product sharing the most tags with a free-text message.
        Inputs/Outputs: Input is EngineParams.message; output is a catalog product
            or None.
        Side Effects / State: None.
        Dependencies: Catalog.products.
        Failure Modes: Returns None when a product name contains the message (left
            to _by_search) or when no tag appears in the message.
        If Removed: "add ceramide serum" resolves to the first ceramide product in
            catalog order, the moisture gel.
        Testing Notes: Ties keep catalog order.
        """
        text = (params.message or "").strip().lower()
        if not text:
            return None
        products = self._catalog.products
        if any(text in product.name.lower() for product in products):
            return None
        best: Optional[Product] = None
        best_score = 0
        for product in products:
            score = sum(1 for tag in product.tags if tag and tag.lower() in text)
            if score > best_score:
                best, best_score = product, score
        return best

    def _by_search(self, params: EngineParams) -> Optional[Product]:
        results = self._catalog.search(params.message or "", limit=5)
        return results[0] if results else None

    def _ad_hoc_product(self, params: EngineParams) -> Optional[Product]:
        # Products outside the catalog are accepted only with a caller-supplied price.
        if params.unit_price_cents is None or not params.product_name:
            return None
        return Product(
            id=params.product_id or params.product_name,
            name=params.product_name,
            price_cents=params.unit_price_cents,
            image_url=params.image_url,
            variant_id=params.variant_id,
        )

    def _resolve_qty(self, params: EngineParams, product: Optional[Product]) -> int:
        if params.qty is not None:
            return max(1, params.qty)
        if params.hinted_qty is not None:
            return max(1, params.hinted_qty)
        extracted = extract_qty(params.message, product.name if product else None)
        return extracted if extracted is not None else 1

    def _cart_info(self, cart: Cart, params: EngineParams) -> EngineResult:
        if not cart.items:
            return EngineResult(cart=cart, output="Your cart is empty.", outcome="empty")
        output = (
            f"Your cart summary: Subtotal {format_cents(cart.subtotal_cents)}, "
            f"Discount -{format_cents(cart.discount_cents)}, Total {format_cents(cart.total_cents)}."
        )
        return EngineResult(cart=cart, output=output, outcome="summary")

    def _add_line(self, cart: Cart, params: EngineParams) -> EngineResult:
        return self._upsert_line(cart, params, additive=True)

    def _edit_line(self, cart: Cart, params: EngineParams) -> EngineResult:
        return self._upsert_line(cart, params, additive=False)

    def _upsert_line(self, cart: Cart, params: EngineParams, additive: bool) -> EngineResult:
        product = self.resolve_product(params)
        if product is None:
            return EngineResult(cart=cart, output=NOT_FOUND_REPLY, outcome="not_found")
        qty = self._resolve_qty(params, product)
        index = cart.find_line(product_id=product.id, variant_id=product.variant_id, product_name=product.name)
        if index is None:
            # Edit on a missing line behaves like add.
            cart.items.append(
                CartLine(
                    product_name=product.name,
                    qty=qty,
                    unit_price_cents=product.price_cents,
                    product_id=product.id,
                    variant_id=product.variant_id,
                    image_url=product.image_url,
                    tags=sorted(product.tags),
                )
            )
        else:
            line = cart.items[index]
            line.qty = line.qty + qty if additive else qty
            if params.unit_price_cents is not None:
                line.unit_price_cents = params.unit_price_cents
        recompute_totals(cart, self._rules)
        if additive:
            output = f"Added {qty} x {product.name}. New total {format_cents(cart.total_cents)}."
        else:
            output = f"Updated {product.name} quantity to {qty}. New total {format_cents(cart.total_cents)}."
        return EngineResult(cart=cart, output=output, outcome="updated", mutated=True, product=product)

    def _delete_line(self, cart: Cart, params: EngineParams) -> EngineResult:
        index = self._locate_line(cart, params)
        if index is None:
            return EngineResult(cart=cart, output=NOT_IN_CART_REPLY, outcome="not_in_cart")
        removed = cart.items.pop(index)
        recompute_totals(cart, self._rules)
        output = f"Removed {removed.product_name}. New total {format_cents(cart.total_cents)}."
        return EngineResult(cart=cart, output=output, outcome="removed", mutated=True)

    def _locate_line(self, cart: Cart, params: EngineParams) -> Optional[int]:
        index = cart.find_line(
            product_id=params.product_id,
            variant_id=params.variant_id,
            product_name=params.product_name or params.hinted_product,
        )
        if index is not None:
            return index
        text = (params.message or "").lower()
        named = [i for i, line in enumerate(cart.items) if text and line.product_name.lower() in text]
        if named:
            return max(named, key=lambda i: len(cart.items[i].product_name))
        product = self.resolve_product(params)
        if product is None:
            return None
        return cart.find_line(product_id=product.id, variant_id=product.variant_id, product_name=product.name)

    def _delete_cart(self, cart: Cart, params: EngineParams) -> EngineResult:
        fresh = Cart(session_id=cart.session_id)
        return EngineResult(cart=fresh, output="Cart cleared.", outcome="cleared", mutated=True)

    def _apply_voucher(self, cart: Cart, params: EngineParams) -> EngineResult:
        """Purpose: Apply the requested voucher or the best eligible one.
        Inputs/Outputs: Inputs are the cart and params (voucher_name, hinted voucher,
            message); output is EngineResult with voucher details.
        Side Effects / State: Sets cart.voucher_code on the working copy.
        Dependencies: extract_voucher_code, best_voucher.
        Failure Modes: An unknown or ineligible code never errors; the best eligible
            voucher is applied instead and the substitution is reported. With no
            eligible voucher the cart's code is cleared.
        If Removed: Customers cannot redeem discounts.
        Testing Notes: BADCODE123 on a 1798-cent cart -> WELCOME10, total 1619.
        """
        known = [rule.code for rule in self._rules]
        source = params.voucher_name or params.hinted_voucher or params.message
        requested = extract_voucher_code(source, known)
        tags = cart.tags()

        if requested:
            choice = best_voucher(self._rules, cart.subtotal_cents, tags, preferred=requested)
            if choice.code is not None:
                return self._voucher_applied(cart, choice, requested)
            fallback = best_voucher(self._rules, cart.subtotal_cents, tags)
            cart.voucher_code = fallback.code
            recompute_totals(cart, self._rules)
            if fallback.code is None:
                output = f"{requested} isn't valid for this cart, and no other voucher applies right now."
                return EngineResult(
                    cart=cart, output=output, outcome="no_voucher", voucher=fallback, requested_code=requested
                )
            output = (
                f"{requested} isn't valid for this cart, so I applied {fallback.code} instead. "
                f"You saved {format_cents(cart.discount_cents)}. New total {format_cents(cart.total_cents)}."
            )
            return EngineResult(
                cart=cart,
                output=output,
                outcome="voucher_substituted",
                mutated=True,
                voucher=fallback,
                requested_code=requested,
            )

        choice = best_voucher(self._rules, cart.subtotal_cents, tags)
        if choice.code is None:
            cart.voucher_code = None
            recompute_totals(cart, self._rules)
            return EngineResult(
                cart=cart, output="No eligible vouchers for the current cart.", outcome="no_voucher", voucher=choice
            )
        return self._voucher_applied(cart, choice, None)

    def _voucher_applied(self, cart: Cart, choice: VoucherChoice, requested: Optional[str]) -> EngineResult:
        cart.voucher_code = choice.code
        recompute_totals(cart, self._rules)
        output = (
            f"Applied {choice.code}. You saved {format_cents(cart.discount_cents)}! "
            f"New total {format_cents(cart.total_cents)}."
        )
        return EngineResult(
            cart=cart,
            output=output,
            outcome="voucher_applied",
            mutated=True,
            voucher=choice,
            requested_code=requested,
        )
