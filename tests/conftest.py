from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pytest

from chatcart.cart_engine import CartEngine
from chatcart.cart_store import Cart, CartStore
from chatcart.catalog import DEFAULT_PRODUCTS, Catalog
from chatcart.config import DEFAULT_CHECKOUT_BASE_URL, Settings
from chatcart.oracle import OracleHint, TicketSubject


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        gemini_api_key="",
        gemini_model="gemini-2.5-flash",
        oracle_timeout_sec=1.0,
        catalog_path=tmp_path / "missing-catalog.json",
        data_dir=tmp_path / "data",
        checkout_base_url=DEFAULT_CHECKOUT_BASE_URL,
        ticket_webhook_url=None,
        webhook_timeout_sec=1.0,
        rate_limit_interval_ms=600,
        reco_limit=6,
        max_sessions=None,
    )
    values.update(overrides)
    return Settings(**values)


class FakeOracle:
    """Scripted oracle; raise_with makes every call fail."""

    def __init__(
        self,
        hint: Optional[OracleHint] = None,
        escalate: Optional[bool] = None,
        subject: Optional[TicketSubject] = None,
        raise_with: Optional[Exception] = None,
    ) -> None:
        self.hint = hint
        self.escalate = escalate
        self.subject = subject
        self.raise_with = raise_with
        self.calls: List[str] = []

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.raise_with is not None:
            raise self.raise_with

    def suggest(self, message: str) -> Optional[OracleHint]:
        self._record("suggest")
        return self.hint

    def escalation(self, message: str) -> Optional[bool]:
        self._record("escalation")
        return self.escalate

    def ticket_subject(self, message: str) -> Optional[TicketSubject]:
        self._record("ticket_subject")
        return self.subject


class FakeNotifier:
    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.drafts: list = []

    def notify(self, draft) -> bool:
        self.drafts.append(draft)
        return True


class FakeClock:
    """Nanosecond clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = 0

    def __call__(self) -> int:
        return self.now

    def advance_ms(self, ms: int) -> None:
        self.now += ms * 1_000_000


@pytest.fixture
def catalog() -> Catalog:
    return Catalog(DEFAULT_PRODUCTS)


@pytest.fixture
def engine(catalog: Catalog) -> CartEngine:
    return CartEngine(catalog)


@pytest.fixture
def empty_cart() -> Cart:
    return Cart(session_id="s-1")


@pytest.fixture
def cart_store() -> CartStore:
    return CartStore()

