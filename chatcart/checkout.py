from __future__ import annotations

from urllib.parse import urlencode

from .cart_store import Cart


def build_checkout_url(base_url: str, cart: Cart) -> str:
    """Purpose: Build the redirect URL handed to the external checkout page.
    Inputs/Outputs: Inputs are the checkout base URL and the cart; output is the URL
        with item{i}_name / item{i}_qty pairs (i from 0) and the voucher when
        it currently discounts the cart.
    Side Effects / State: None; the cart is not cleared.
    Dependencies: urllib.parse.urlencode for query escaping.
    Failure Modes: An empty cart yields the base URL with an empty query.
    If Removed: Customers cannot leave the chat to pay.
    Testing Notes: Two lines plus WELCOME10 produce five query parameters in order.
    """
    params = []
    for index, line in enumerate(cart.items):
        params.append((f"item{index}_name", line.product_name))
        params.append((f"item{index}_qty", str(line.qty)))
    # A code that no longer discounts anything is left off the link.
    if cart.voucher_code and cart.discount_cents > 0:
        params.append(("voucher", cart.voucher_code))
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode(params)}"
