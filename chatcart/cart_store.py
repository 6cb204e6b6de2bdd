from __future__ import annotations

import copy
import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Set

from .errors import PersistenceError
from .vouchers import DEFAULT_RULES, VoucherRule, best_voucher

logger = logging.getLogger("chatcart.cart_store")

DEFAULT_MAX_CARTS = 1000


@dataclass
class CartLine:
    """One product line; unit price and image are snapshotted when the line is created."""
    product_name: str
    qty: int
    unit_price_cents: int
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    image_url: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def matches(
        self,
        product_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        product_name: Optional[str] = None,
    ) -> bool:
        # Same precedence as the line lookup in the cart: variant, product id, then name.
        if variant_id and self.variant_id and variant_id == self.variant_id:
            return True
        if product_id and self.product_id and product_id == self.product_id:
            return True
        if product_name and product_name.strip().lower() == self.product_name.lower():
            return True
        return False


@dataclass
class Cart:
    """Session-scoped cart. Totals are derived; call recompute_totals after mutating items."""
    session_id: str
    items: List[CartLine] = field(default_factory=list)
    subtotal_cents: int = 0
    discount_cents: int = 0
    total_cents: int = 0
    voucher_code: Optional[str] = None

    def find_line(
        self,
        product_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        product_name: Optional[str] = None,
    ) -> Optional[int]:
        for index, line in enumerate(self.items):
            if line.matches(product_id=product_id, variant_id=variant_id, product_name=product_name):
                return index
        return None

    def tags(self) -> Set[str]:
        return {tag for line in self.items for tag in line.tags}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cart":
        items = [CartLine(**line) for line in data.get("items", []) if isinstance(line, dict)]
        return cls(
            session_id=str(data["session_id"]),
            items=items,
            subtotal_cents=int(data.get("subtotal_cents", 0)),
            discount_cents=int(data.get("discount_cents", 0)),
            total_cents=int(data.get("total_cents", 0)),
            voucher_code=data.get("voucher_code"),
        )


def recompute_totals(cart: Cart, rules: Sequence[VoucherRule] = DEFAULT_RULES) -> Cart:
    """Purpose: Re-derive subtotal, discount, and total from the cart's lines.
    Inputs/Outputs: Inputs are the cart and voucher rule table; returns the same cart.
    Side Effects / State: Mutates the cart's total fields in place.
    Dependencies: Uses best_voucher with the cart's current voucher_code.
    Failure Modes: An ineligible or unknown voucher_code yields a zero discount but
        is kept on the cart, so it applies again once the cart qualifies.
    If Removed: Totals go stale after line changes.
    Testing Notes: total == max(0, subtotal - discount) after every call.
    """
    cart.subtotal_cents = sum(line.unit_price_cents * line.qty for line in cart.items)
    if cart.voucher_code:
        choice = best_voucher(rules, cart.subtotal_cents, cart.tags(), preferred=cart.voucher_code)
        cart.discount_cents = choice.amount_cents
    else:
        cart.discount_cents = 0
    cart.total_cents = max(0, cart.subtotal_cents - cart.discount_cents)
    return cart


class CartPersistence(Protocol):
    """Snapshot storage contract; SessionStore implements it."""

    def load_cart(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    def save_cart(self, session_id: str, snapshot: Dict[str, Any]) -> None:
        ...

    def delete_cart(self, session_id: str) -> None:
        ...


@dataclass
class _SessionLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class CartStore:
    """In-memory carts keyed by session id, optionally bridged to a persistent snapshot store."""

    def __init__(
        self,
        persistence: Optional[CartPersistence] = None,
        rules: Sequence[VoucherRule] = DEFAULT_RULES,
        max_sessions: Optional[int] = DEFAULT_MAX_CARTS,
    ) -> None:
        self._persistence = persistence
        self._rules = rules
        self._max_sessions = max_sessions
        # Least recently used first.
        self._carts: OrderedDict[str, Cart] = OrderedDict()
        # Only sessions whose lock is held or awaited have an entry.
        self._locks: Dict[str, _SessionLock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._carts)

    def __contains__(self, session_id: object) -> bool:
        with self._guard:
            return session_id in self._carts

    @property
    def lock_count(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """Purpose: Serialize cart read-modify-write cycles for one session.
        Inputs/Outputs: Input is session_id; yields while the session lock is held.
        Side Effects / State: Creates the per-session lock on first use and drops
            it once no thread holds or awaits it.
        Dependencies: threading.Lock; FastAPI runs sync endpoints in a thread pool.
        Failure Modes: Not reentrant; nesting lock() for the same session deadlocks.
        If Removed: Concurrent requests for one session can interleave mutations and
            persist totals computed from a stale line list.
        Testing Notes: Two threads adding to the same session must both be counted.
        """
        with self._guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = self._locks[session_id] = _SessionLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0 and self._locks.get(session_id) is entry:
                    del self._locks[session_id]

    def get(self, session_id: str) -> Cart:
        """Return a working copy of the session's cart, creating it lazily."""
        with self._guard:
            cart = self._carts.get(session_id)
            if cart is not None:
                self._carts.move_to_end(session_id)
                return copy.deepcopy(cart)
        cart = self._hydrate(session_id) or Cart(session_id=session_id)
        self._remember(cart)
        return copy.deepcopy(cart)

    def set(self, cart: Cart) -> bool:
        """Purpose: Store a cart and push its snapshot to persistence.
        Inputs/Outputs: Input is the updated cart; returns True if it was persisted.
        Side Effects / State: Replaces the in-memory cart; writes the snapshot.
        Dependencies: CartPersistence.save_cart when configured.
        Failure Modes: PersistenceError is logged and reported as False; the in-memory
            cart is still updated so the reply stays correct.
        If Removed: Cart mutations are lost between requests.
        Testing Notes: A failing persistence double must not raise out of set().
        """
        recompute_totals(cart, self._rules)
        self._remember(copy.deepcopy(cart))
        if self._persistence is None:
            return False
        try:
            self._persistence.save_cart(cart.session_id, cart.to_dict())
        except PersistenceError as exc:
            logger.warning("Cart snapshot for session %s not persisted: %s", cart.session_id, exc)
            return False
        return True

    def delete(self, session_id: str) -> bool:
        """Reset the session to an empty cart and drop its snapshot; True if persisted."""
        self._remember(Cart(session_id=session_id))
        if self._persistence is None:
            return False
        try:
            self._persistence.delete_cart(session_id)
        except PersistenceError as exc:
            logger.warning("Cart snapshot for session %s not deleted: %s", session_id, exc)
            return False
        return True

    def _remember(self, cart: Cart) -> None:
        with self._guard:
            self._carts[cart.session_id] = cart
            self._carts.move_to_end(cart.session_id)
            self._evict()

    def _evict(self) -> None:
        """Purpose: Drop least recently used carts beyond max_sessions.
        Inputs/Outputs: No inputs; no return value. Caller holds _guard.
        Side Effects / State: Removes in-memory carts only; persisted snapshots stay
            and are hydrated again on the next get().
        Dependencies: _carts ordering, _locks for sessions in use.
        Failure Modes: None; sessions whose lock is held or awaited are skipped, so
            the map can briefly exceed the cap under heavy concurrency.
        If Removed: Every anonymous request leaves a cart in memory for the life
            of the process.
        Testing Notes: With max_sessions=2, touching a third session evicts the
            least recently used one.
        """
        cap = self._max_sessions
        if not cap or cap <= 0:
            return
        excess = len(self._carts) - cap
        if excess <= 0:
            return
        for session_id in list(self._carts):
            if excess <= 0:
                break
            if session_id in self._locks:
                continue
            del self._carts[session_id]
            excess -= 1
            logger.debug("Evicted cart for session %s", session_id)

    def _hydrate(self, session_id: str) -> Optional[Cart]:
        if self._persistence is None:
            return None
        try:
            snapshot = self._persistence.load_cart(session_id)
        except PersistenceError as exc:
            logger.warning("Cart snapshot for session %s unavailable: %s", session_id, exc)
            return None
        if not snapshot:
            return None
        try:
            cart = Cart.from_dict(snapshot)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed cart snapshot for session %s: %s", session_id, exc)
            return None
        return recompute_totals(cart, self._rules)
