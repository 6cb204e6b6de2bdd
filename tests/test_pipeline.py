from unittest import mock
from urllib.parse import parse_qsl, urlsplit

import pytest

from chatcart.cart_engine import NOT_FOUND_REPLY
from chatcart.cart_store import CartStore
from chatcart.chat_pipeline import EMPTY_CHECKOUT_REPLY, ChatAssistant
from chatcart.intent_router import Intent
from chatcart.models import CartReply, CheckoutReply, ChatRequest, ProductListReply, TextReply, TicketReply
from chatcart.oracle import OracleHint, TicketSubject
from chatcart.recommendation import CLARIFY_REPLY, UPSELL_HEADER, Recommender
from chatcart.session_store import SessionStore

from .conftest import FakeNotifier, FakeOracle

CHECKOUT_URL = "https://shop.example.test/checkout"


@pytest.fixture
def session_store(tmp_path):
    return SessionStore(tmp_path / "sessions.json")


@pytest.fixture
def make_assistant(catalog, session_store):
    created = []

    def factory(**kwargs):
        kwargs.setdefault("session_store", session_store)
        store = kwargs.pop("session_store")
        assistant = ChatAssistant(
            catalog,
            CartStore(persistence=store),
            session_store=store,
            checkout_base_url=CHECKOUT_URL,
            oracle_timeout=2.0,
            **kwargs,
        )
        created.append(assistant)
        return assistant

    yield factory
    for assistant in created:
        assistant.close()


def say(assistant, message, session_id="s-1", **fields):
    return assistant.handle(ChatRequest(message=message, session_id=session_id, **fields))


def test_add_returns_cart_with_vouchers_and_upsell(make_assistant):
    reply = say(make_assistant(), "add 2 ceramide moisture gel")
    assert isinstance(reply, CartReply)
    assert reply.intent == "add_line"
    assert reply.cart.subtotal_cents == 1798
    assert reply.cart.items[0].line_total_cents == 1798
    vouchers = {voucher.code: voucher for voucher in reply.vouchers}
    assert vouchers["WELCOME10"].usable and vouchers["WELCOME10"].estimated_savings_cents == 179
    assert not vouchers["CERAMIDE15"].usable
    assert [(item.id, item.price_cents) for item in reply.upsell] == [
        ("niacinamide-serum", 989),
        ("ceramide-serum", 1169),
    ]
    assert reply.upsell_output == UPSELL_HEADER


def test_best_voucher_flow(make_assistant):
    assistant = make_assistant()
    say(assistant, "add 2 ceramide moisture gel")
    reply = say(assistant, "ada diskon?")
    assert reply.intent == "apply_voucher"
    assert (reply.cart.subtotal_cents, reply.cart.discount_cents, reply.cart.total_cents) == (1798, 179, 1619)
    assert reply.cart.voucher_code == "WELCOME10"
    assert reply.upsell == []
    assert reply.upsell_output is None
    assert assistant.cart_view("s-1").total_cents == 1619


def test_invalid_voucher_is_substituted(make_assistant):
    assistant = make_assistant()
    say(assistant, "add 2 ceramide moisture gel")
    reply = say(assistant, "apply voucher BADCODE123")
    assert reply.cart.voucher_code == "WELCOME10"
    assert reply.cart.total_cents == 1619
    assert reply.output.startswith("BADCODE123 isn't valid for this cart, so I applied WELCOME10 instead.")


def test_checkout_link_carries_items_and_voucher(make_assistant):
    assistant = make_assistant()
    say(assistant, "add 2 ceramide moisture gel")
    say(assistant, "ada diskon?")
    reply = say(assistant, "checkout")
    assert isinstance(reply, CheckoutReply)
    parts = urlsplit(reply.checkout_url)
    assert dict(parse_qsl(parts.query)) == {
        "item0_name": "5X Ceramide Barrier Repair Moisture Gel",
        "item0_qty": "2",
        "voucher": "WELCOME10",
    }
    assert reply.output == f"Here's your checkout link: {reply.checkout_url}"
    # Checkout does not clear the cart.
    assert assistant.cart_view("s-1").items


def test_checkout_with_empty_cart(make_assistant):
    reply = say(make_assistant(), "checkout")
    assert isinstance(reply, TextReply)
    assert reply.output == EMPTY_CHECKOUT_REPLY


def test_clear_cart(make_assistant, session_store):
    assistant = make_assistant()
    say(assistant, "add 2 ceramide moisture gel")
    reply = say(assistant, "clear my cart")
    assert reply.intent == "delete_cart"
    assert reply.cart.items == []
    assert assistant.cart_view("s-1").items == []
    assert session_store.load_cart("s-1") is None


def test_unknown_product_asks_for_name(make_assistant):
    reply = say(make_assistant(), "add unicorn dust")
    assert isinstance(reply, TextReply)
    assert reply.kind == "text"
    assert reply.output == NOT_FOUND_REPLY


def test_recommendation_reply(make_assistant):
    reply = say(make_assistant(), "any good cream?")
    assert isinstance(reply, ProductListReply)
    assert reply.matched
    assert reply.products[0].id == "ceramide-moisture-gel"
    assert reply.products[0].description.startswith("Top pick: 5X Ceramide Barrier Repair Moisture Gel.")


def test_bare_product_type_asks_for_details_once(make_assistant, session_store):
    assistant = make_assistant()
    first = say(assistant, "recommend a serum")
    assert isinstance(first, TextReply)
    assert first.intent == "product_reco"
    assert first.output == CLARIFY_REPLY
    again = say(assistant, "recommend a serum")
    assert isinstance(again, ProductListReply)
    assert {product.id for product in again.products} == {"niacinamide-serum", "ceramide-serum"}
    roles = [(message.role, message.content) for message in session_store.get_messages("s-1")]
    assert roles[1] == ("assistant", CLARIFY_REPLY)


def test_answer_to_clarifier_recommends_remembered_type(make_assistant):
    assistant = make_assistant()
    say(assistant, "recommend a serum")
    reply = say(assistant, "for oily skin please")
    assert isinstance(reply, ProductListReply)
    assert reply.matched
    assert {product.id for product in reply.products} == {"niacinamide-serum", "ceramide-serum"}


def test_clarifier_is_per_session(make_assistant):
    assistant = make_assistant()
    say(assistant, "recommend a serum", session_id="a")
    assert say(assistant, "recommend a serum", session_id="b").output == CLARIFY_REPLY


def test_ticket_is_stored_and_sent_in_background(make_assistant, session_store):
    notifier = FakeNotifier()
    oracle = FakeOracle(subject=TicketSubject(subject="Customer wants an agent", category="other"))
    assistant = make_assistant(oracle=oracle, notifier=notifier)
    reply = say(assistant, "I want to talk to a human", user_email="ana@example.com")
    assert isinstance(reply, TicketReply)
    assert reply.ticket_created
    assert reply.subject == "Customer wants an agent"
    assert reply.output == (
        "I've created a support ticket so a human can assist you shortly. Subject: Customer wants an agent."
    )
    assert session_store.get_ticket(reply.ticket_id)["user_email"] == "ana@example.com"
    assistant.close()
    assert [draft.subject for draft in notifier.drafts] == ["Customer wants an agent"]


def test_disabled_notifier_is_not_called(make_assistant):
    notifier = FakeNotifier(enabled=False)
    assistant = make_assistant(notifier=notifier)
    reply = say(assistant, "where is my order")
    assert reply.category == "general"
    assistant.close()
    assert notifier.drafts == []


def test_failing_oracle_still_routes(make_assistant):
    oracle = FakeOracle(raise_with=RuntimeError("quota exceeded"))
    assistant = make_assistant(oracle=oracle)
    reply = say(assistant, "add 2 ceramide moisture gel")
    assert isinstance(reply, CartReply)
    assert reply.cart.subtotal_cents == 1798
    ticket = say(assistant, "talk to a human please")
    assert isinstance(ticket, TicketReply)
    assert ticket.subject == "talk to a human please"


def test_oracle_escalation_turns_request_into_ticket(make_assistant):
    reply = say(make_assistant(oracle=FakeOracle(escalate=True)), "recommend a serum")
    assert isinstance(reply, TicketReply)
    assert reply.intent == "ticket"


def test_oracle_hint_fills_product_and_qty(make_assistant):
    hint = OracleHint(intent=Intent.ADD_LINE, product_name="niacinamide serum", qty=3)
    reply = say(make_assistant(oracle=FakeOracle(hint=hint)), "the usual please")
    assert [(item.product_id, item.qty) for item in reply.cart.items] == [("niacinamide-serum", 3)]


def test_oracle_calls_are_skipped_when_not_needed(make_assistant):
    oracle = FakeOracle()
    assistant = make_assistant(oracle=oracle)
    say(assistant, "whatever", intent="get_cart_info")
    assert oracle.calls == ["escalation"]
    oracle.calls.clear()
    say(assistant, "my payment failed")
    assert sorted(oracle.calls) == ["suggest", "ticket_subject"]


def test_explicit_intent_with_product_reference(make_assistant):
    reply = say(make_assistant(), "this one", intent="add_line", product_id="ceramide-serum", qty=2)
    assert reply.cart.subtotal_cents == 2598
    assert {voucher.code: voucher.usable for voucher in reply.vouchers} == {"WELCOME10": True, "CERAMIDE15": True}


def test_turns_are_logged(make_assistant, session_store):
    say(make_assistant(), "add 2 ceramide moisture gel")
    messages = session_store.get_messages("s-1")
    assert [message.role for message in messages] == ["user", "assistant"]
    assert messages[0].content == "add 2 ceramide moisture gel"
    assert messages[1].meta == {"intent": "add_line", "kind": "cart"}


def test_missing_session_id_gets_generated(make_assistant):
    reply = make_assistant().handle(ChatRequest(message="show my cart"))
    assert len(reply.session_id) == 32
    assert reply.output == "Your cart is empty."


def test_storage_failure_does_not_fail_the_reply(make_assistant, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    assistant = make_assistant(session_store=SessionStore(blocker / "sessions.json"))
    reply = say(assistant, "add 2 ceramide moisture gel")
    assert reply.cart.subtotal_cents == 1798
    ticket = say(assistant, "talk to a human")
    assert ticket.ticket_created and ticket.ticket_id


def test_upsell_failure_keeps_vouchers(make_assistant):
    assistant = make_assistant()
    with mock.patch.object(Recommender, "upsell", side_effect=RuntimeError("boom")):
        reply = say(assistant, "add 2 ceramide moisture gel")
    assert reply.cart.subtotal_cents == 1798
    assert len(reply.vouchers) == 2
    assert reply.upsell == []
    assert reply.upsell_output is None


def test_pipeline_without_reply_raises(make_assistant):
    assistant = make_assistant()
    with mock.patch.object(assistant._runner, "run"):
        with pytest.raises(RuntimeError):
            say(assistant, "hello")
