"""Intent routing for chat messages.

Role:
    Maps one utterance to exactly one Intent. Deterministic keyword rules always run;
    the language-model oracle only contributes an advisory hint and an escalation
    verdict, both computed by the caller before routing.

Precedence (highest first):
    1. Explicit intent supplied by the caller (UI buttons).
    2. Voucher vocabulary -> apply_voucher, unless the message also talks about
       payment/billing/refund problems, which routes it to a human (ticket).
    3. Out-of-scope triggers (tracking, refunds, stock, defects...) -> ticket.
    4. Oracle hint.
    5. Ordered bilingual (English/Indonesian) patterns; first match wins.
    6. product_reco.
    Afterwards an escalation flag (regex or oracle) turns every intent except
    apply_voucher and get_cart_info into ticket.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple, Union

from .utils import normalize_text

logger = logging.getLogger("chatcart.intent")


class Intent(str, Enum):
    GET_CART_INFO = "get_cart_info"
    ADD_LINE = "add_line"
    EDIT_LINE = "edit_line"
    DELETE_LINE = "delete_line"
    DELETE_CART = "delete_cart"
    APPLY_VOUCHER = "apply_voucher"
    PRODUCT_RECO = "product_reco"
    TICKET = "ticket"
    CHECKOUT = "checkout"


ESCALATION_EXEMPT = {Intent.APPLY_VOUCHER, Intent.GET_CART_INFO}

VOUCHER_RE = re.compile(
    r"\b(vouchers?|discounts?|promos?|promotions?|coupons?|codes?|deals?|eligible|"
    r"diskon|kupon|kode|potongan)\b",
    re.IGNORECASE,
)
OUT_OF_SCOPE_RE = re.compile(
    r"\b(track\w*|where is my order|resi|awb|deliver(y|ed)?|courier|arrived|"
    r"refunds?|exchange|warranty|policy|defect\w*|broken|damaged|double charge|"
    r"stock|availability|change (my )?address|after checkout|"
    r"lacak|kurir|pengiriman|rusak|cacat|stok|ganti alamat)\b",
    re.IGNORECASE,
)
ESCALATION_RE = re.compile(
    r"\b(payment|paid|charge|charged|billing|invoice|receipt|no\s*email|email\s*confirm\w*|"
    r"confirmation|failed\s*payment|refunds?|chargeback|double\s*charge|"
    r"pembayaran|tagihan|struk)\b",
    re.IGNORECASE,
)

INTENT_PATTERNS: List[Tuple[Intent, Pattern[str]]] = [
    (
        Intent.DELETE_CART,
        re.compile(
            r"\b((clear|empty|delete|reset|hapus|kosongkan) (my |the |semua )?(cart|keranjang)|"
            r"kosongkan keranjang)\b",
            re.IGNORECASE,
        ),
    ),
    (
        Intent.CHECKOUT,
        re.compile(r"\b(checkout|check out|buy now|ready to buy|pay now|bayar)\b", re.IGNORECASE),
    ),
    (Intent.ADD_LINE, re.compile(r"\b(add|tambah\w*|buy|beli|masukkan|masukin)\b", re.IGNORECASE)),
    (Intent.EDIT_LINE, re.compile(r"\b(edit|update|ubah|change|ganti)\b", re.IGNORECASE)),
    (Intent.DELETE_LINE, re.compile(r"\b(remove|hapus|delete|buang)\b", re.IGNORECASE)),
    (Intent.GET_CART_INFO, re.compile(r"\b(cart|keranjang|basket|my bag)\b", re.IGNORECASE)),
    (
        Intent.TICKET,
        re.compile(r"(\b(ticket|tiket|human|live agent|customer service|cs|helpdesk)\b|^help$)", re.IGNORECASE),
    ),
]


@dataclass(frozen=True)
class RoutingDecision:
    """Resolved intent plus the rule that produced it, for logging."""
    intent: Intent
    source: str
    escalated: bool = False


def parse_intent(value: Union[str, Intent, None]) -> Optional[Intent]:
    """Return the Intent for value, or None for empty or unknown labels."""
    if value is None or value == "":
        return None
    if isinstance(value, Intent):
        return value
    try:
        return Intent(str(value).strip().lower())
    except ValueError:
        logger.debug("Ignoring unknown intent label %r", value)
        return None


def needs_human(message: str) -> bool:
    """True when the message mentions payment, billing, confirmation or refund problems."""
    return bool(ESCALATION_RE.search(normalize_text(message)))


def is_out_of_scope(message: str) -> bool:
    return bool(OUT_OF_SCOPE_RE.search(normalize_text(message)))


def has_voucher_vocabulary(message: str, known_codes: Iterable[str] = ()) -> bool:
    """True for voucher words or a message naming one of the known voucher codes."""
    text = normalize_text(message)
    if VOUCHER_RE.search(text):
        return True
    tokens = set(text.split())
    return any(code.lower() in tokens for code in known_codes)


def match_pattern(message: str) -> Optional[Intent]:
    """Return the first pattern intent matching the message, if any."""
    text = normalize_text(message)
    for intent, pattern in INTENT_PATTERNS:
        if pattern.search(text):
            return intent
    return None


def route(
    utterance: str,
    explicit_intent: Union[str, Intent, None] = None,
    oracle_hint: Union[str, Intent, None] = None,
    oracle_escalation: Optional[bool] = None,
    known_codes: Sequence[str] = (),
) -> RoutingDecision:
    """Purpose: Resolve the single intent governing a request.
    Inputs/Outputs: Inputs are the raw utterance, an optional caller intent, an
        optional oracle intent hint, an optional oracle escalation verdict and the
        voucher codes that count as voucher vocabulary; output is a RoutingDecision.
    Side Effects / State: None; the oracle is queried by the caller beforehand.
    Dependencies: Uses the module regex tables and parse_intent.
    Failure Modes: Unknown explicit/hint labels are ignored, never raised.
    If Removed: No request can be dispatched to the cart engine or responders.
    Testing Notes: "ada diskon?" -> apply_voucher even with a product_reco hint;
        "promo code but my payment failed" -> ticket; "show my cart, I was charged
        twice" stays get_cart_info.
    """
    # Deterministic rules first; the oracle hint only fills the gap before patterns.
    explicit = parse_intent(explicit_intent)
    hint = parse_intent(oracle_hint)
    regex_escalation = needs_human(utterance)
    escalate = regex_escalation or bool(oracle_escalation)

    if explicit is not None:
        decision = RoutingDecision(explicit, "explicit")
    elif has_voucher_vocabulary(utterance, known_codes):
        if regex_escalation:
            decision = RoutingDecision(Intent.TICKET, "voucher_escalation", escalated=True)
        else:
            decision = RoutingDecision(Intent.APPLY_VOUCHER, "voucher_keyword")
    elif is_out_of_scope(utterance):
        decision = RoutingDecision(Intent.TICKET, "out_of_scope")
    elif hint is not None:
        decision = RoutingDecision(hint, "oracle")
    else:
        matched = match_pattern(utterance)
        if matched is not None:
            decision = RoutingDecision(matched, "pattern")
        else:
            decision = RoutingDecision(Intent.PRODUCT_RECO, "default")

    if escalate and decision.intent not in ESCALATION_EXEMPT and decision.intent != Intent.TICKET:
        decision = RoutingDecision(Intent.TICKET, "escalation", escalated=True)
    return decision


def classify(
    utterance: str,
    explicit_intent: Union[str, Intent, None] = None,
    oracle_hint: Union[str, Intent, None] = None,
    oracle_escalation: Optional[bool] = None,
    known_codes: Sequence[str] = (),
) -> Intent:
    """Intent-only shorthand for route()."""
    return route(utterance, explicit_intent, oracle_hint, oracle_escalation, known_codes).intent
