from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from .utils import format_cents

PERCENT = "percent"
FIXED = "fixed"
ANY_TAG = "*"


@dataclass(frozen=True)
class VoucherRule:
    """Static discount rule; value is a percentage or a cent amount depending on kind."""
    code: str
    kind: str
    value: int
    min_subtotal_cents: int = 0
    eligible_tag: str = ANY_TAG

    def __post_init__(self) -> None:
        if self.kind not in (PERCENT, FIXED):
            raise ValueError(f"Unknown voucher kind {self.kind!r}")

    def describe(self) -> str:
        if self.kind == PERCENT:
            return f"{self.value}% off"
        return f"{format_cents(self.value)} off"


@dataclass(frozen=True)
class VoucherChoice:
    code: Optional[str]
    amount_cents: int


@dataclass(frozen=True)
class VoucherAssessment:
    """Outcome of checking one rule against a cart, used for voucher listings."""
    rule: VoucherRule
    usable: bool
    estimated_savings_cents: int
    reason: str = ""


DEFAULT_RULES: Tuple[VoucherRule, ...] = (
    VoucherRule(code="WELCOME10", kind=PERCENT, value=10, min_subtotal_cents=0, eligible_tag=ANY_TAG),
    VoucherRule(code="CERAMIDE15", kind=PERCENT, value=15, min_subtotal_cents=2000, eligible_tag="ceramide"),
)


def discount_amount(rule: VoucherRule, subtotal_cents: int) -> int:
    """Percent rules floor the product; fixed rules use the value as-is."""
    if rule.kind == PERCENT:
        return (subtotal_cents * rule.value) // 100
    return rule.value


def is_eligible(rule: VoucherRule, subtotal_cents: int, cart_tags: Iterable[str]) -> bool:
    """Purpose: Decide whether a rule applies to a cart.
    Inputs/Outputs: Inputs are the rule, cart subtotal, and the union of line tags;
        output is True when the minimum subtotal is met and the tag gate passes.
    Side Effects / State: None.
    Dependencies: Used by best_voucher and assess_vouchers.
    Failure Modes: None.
    If Removed: Tag-gated vouchers would apply to any cart.
    Testing Notes: CERAMIDE15 needs subtotal >= 2000 and a "ceramide" line.
    """
    if subtotal_cents < rule.min_subtotal_cents:
        return False
    if rule.eligible_tag == ANY_TAG:
        return True
    wanted = rule.eligible_tag.lower()
    return any(tag.lower() == wanted for tag in cart_tags)


def find_rule(rules: Sequence[VoucherRule], code: Optional[str]) -> Optional[VoucherRule]:
    if not code:
        return None
    wanted = code.strip().upper()
    for rule in rules:
        if rule.code.upper() == wanted:
            return rule
    return None


def best_voucher(
    rules: Sequence[VoucherRule],
    subtotal_cents: int,
    cart_tags: Iterable[str],
    preferred: Optional[str] = None,
) -> VoucherChoice:
    """Purpose: Pick the voucher yielding the largest discount for the cart.
    Inputs/Outputs: Inputs are the rule table, subtotal, cart tags and an optional
        preferred code; output is VoucherChoice(code, amount_cents).
    Side Effects / State: None; deterministic for a fixed input.
    Dependencies: Uses is_eligible and discount_amount.
    Failure Modes: With a preferred code only that rule is considered; an unknown or
        ineligible preferred code yields VoucherChoice(None, 0). Without a preferred
        code and no eligible rule the result is also VoucherChoice(None, 0).
    If Removed: Cart totals can no longer carry discounts.
    Testing Notes: Ties keep the first rule in table order and a zero discount never
        wins; a 1798-cent cart gets WELCOME10 for 179 cents.
    """
    tags = list(cart_tags)
    if preferred:
        wanted = find_rule(rules, preferred)
        pool: Sequence[VoucherRule] = [wanted] if wanted else []
    else:
        pool = rules
    best = VoucherChoice(code=None, amount_cents=0)
    for rule in pool:
        if not is_eligible(rule, subtotal_cents, tags):
            continue
        amount = discount_amount(rule, subtotal_cents)
        if amount > best.amount_cents:
            best = VoucherChoice(code=rule.code, amount_cents=amount)
    return best


def assess_vouchers(
    rules: Sequence[VoucherRule], subtotal_cents: int, cart_tags: Iterable[str]
) -> List[VoucherAssessment]:
    """Evaluate every rule against the cart, with a readable reason for unusable ones."""
    tags = list(cart_tags)
    assessments: List[VoucherAssessment] = []
    for rule in rules:
        usable = is_eligible(rule, subtotal_cents, tags)
        reason = ""
        if not usable:
            reasons = []
            if subtotal_cents < rule.min_subtotal_cents:
                reasons.append(f"requires a subtotal of {format_cents(rule.min_subtotal_cents)}")
            if rule.eligible_tag != ANY_TAG and rule.eligible_tag.lower() not in {t.lower() for t in tags}:
                reasons.append(f"only for {rule.eligible_tag} products")
            reason = "; ".join(reasons) or "not applicable to current cart"
        assessments.append(
            VoucherAssessment(
                rule=rule,
                usable=usable,
                estimated_savings_cents=discount_amount(rule, subtotal_cents),
                reason=reason,
            )
        )
    return assessments
