from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .cart_store import Cart, CartLine
from .catalog import Product
from .recommendation import UpsellItem
from .vouchers import VoucherAssessment


class ChatRequest(BaseModel):
    """Request payload for the chat API; only message is required by the handler."""
    message: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    intent: Optional[str] = None
    product_name: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    qty: Optional[int] = Field(default=None, ge=1, le=99)
    unit_price_cents: Optional[int] = Field(default=None, ge=0)
    image_url: Optional[str] = None
    voucher_name: Optional[str] = None


class CartLineView(BaseModel):
    product_name: str
    qty: int
    unit_price_cents: int
    line_total_cents: int
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    image_url: Optional[str] = None

    @classmethod
    def from_line(cls, line: CartLine) -> "CartLineView":
        return cls(
            product_name=line.product_name,
            qty=line.qty,
            unit_price_cents=line.unit_price_cents,
            line_total_cents=line.unit_price_cents * line.qty,
            product_id=line.product_id,
            variant_id=line.variant_id,
            image_url=line.image_url,
        )


class CartView(BaseModel):
    """Cart as rendered by the UI; totals are already recomputed."""
    session_id: str
    items: List[CartLineView]
    subtotal_cents: int
    discount_cents: int
    total_cents: int
    voucher_code: Optional[str] = None

    @classmethod
    def from_cart(cls, cart: Cart) -> "CartView":
        return cls(
            session_id=cart.session_id,
            items=[CartLineView.from_line(line) for line in cart.items],
            subtotal_cents=cart.subtotal_cents,
            discount_cents=cart.discount_cents,
            total_cents=cart.total_cents,
            voucher_code=cart.voucher_code,
        )


class ProductView(BaseModel):
    id: str
    name: str
    price_cents: int
    image_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    benefits: List[str] = Field(default_factory=list)
    description: str = ""

    @classmethod
    def from_product(cls, product: Product) -> "ProductView":
        description = product.description
        if not description:
            highlights = ", ".join(sorted(product.tags)[:2]) or "great results"
            description = f"Top pick: {product.name}. Loved for {highlights}."
        return cls(
            id=product.id,
            name=product.name,
            price_cents=product.price_cents,
            image_url=product.image_url,
            tags=sorted(product.tags),
            benefits=list(product.benefits),
            description=description,
        )


class UpsellView(ProductView):
    original_price_cents: int
    discount_percent: int
    upsell: bool = True

    @classmethod
    def from_item(cls, item: UpsellItem) -> "UpsellView":
        base = ProductView.from_product(item.product).model_dump()
        base["price_cents"] = item.price_cents
        return cls(**base, original_price_cents=item.original_price_cents, discount_percent=item.discount_percent)


class VoucherView(BaseModel):
    code: str
    description: str
    usable: bool
    estimated_savings_cents: int
    reason: str = ""

    @classmethod
    def from_assessment(cls, assessment: VoucherAssessment) -> "VoucherView":
        return cls(
            code=assessment.rule.code,
            description=assessment.rule.describe(),
            usable=assessment.usable,
            estimated_savings_cents=assessment.estimated_savings_cents if assessment.usable else 0,
            reason=assessment.reason,
        )


class ReplyBase(BaseModel):
    output: str
    intent: str
    session_id: str


class CartReply(ReplyBase):
    kind: Literal["cart"] = "cart"
    cart: CartView
    vouchers: List[VoucherView] = Field(default_factory=list)
    upsell: List[UpsellView] = Field(default_factory=list)
    upsell_output: Optional[str] = None


class ProductListReply(ReplyBase):
    kind: Literal["products"] = "products"
    products: List[ProductView]
    matched: bool = True


class TicketReply(ReplyBase):
    kind: Literal["ticket"] = "ticket"
    ticket_created: bool = True
    ticket_id: str
    subject: str
    category: str


class CheckoutReply(ReplyBase):
    kind: Literal["checkout"] = "checkout"
    cart: CartView
    checkout_url: str


class TextReply(ReplyBase):
    """Plain text outcome, e.g. a clarification question."""
    kind: Literal["text"] = "text"


ChatReply = Annotated[
    Union[CartReply, ProductListReply, TicketReply, CheckoutReply, TextReply],
    Field(discriminator="kind"),
]


class ErrorResponse(BaseModel):
    error: str


class StoredMessage(BaseModel):
    """Persisted message record."""
    role: str
    content: str
    timestamp: float
    meta: Optional[Dict[str, Any]] = None


class SessionSummary(BaseModel):
    """Lightweight session summary for sidebar listing."""
    session_id: str
    title: str
    updated_at: float


class SessionTranscript(BaseModel):
    session_id: str
    messages: List[StoredMessage]
