import json

import httpx
import pytest

from chatcart.oracle import TicketSubject
from chatcart.ticketing import (
    ANONYMOUS_EMAIL,
    DEFAULT_SUBJECT,
    TicketNotifier,
    draft_ticket,
    infer_category,
)

WEBHOOK = "https://hooks.example.test/ticket"


@pytest.mark.parametrize(
    "message, category",
    [
        ("is the toner in stock?", "product_info"),
        ("I want a refund", "return_refund"),
        ("where is my delivery", "shipping"),
        ("my payment was charged twice", "payment"),
        ("I need to talk to someone", "general"),
    ],
)
def test_infer_category(message, category):
    assert infer_category(message) == category


def test_draft_uses_message_when_oracle_is_silent():
    draft = draft_ticket("s", "  Courier lost my parcel  ")
    assert draft.subject == "Courier lost my parcel"
    assert draft.category == "shipping"
    assert draft.user_email == ANONYMOUS_EMAIL


def test_draft_truncates_long_subject_and_defaults_blank():
    assert len(draft_ticket("s", "x" * 300).subject) == 80
    assert draft_ticket("s", "   ").subject == DEFAULT_SUBJECT


def test_draft_prefers_oracle_subject():
    draft = draft_ticket("s", "help!!", TicketSubject(subject="Damaged item", category="return_refund"), user_id="u-7")
    assert (draft.subject, draft.category, draft.user_id) == ("Damaged item", "return_refund", "u-7")


def test_webhook_payload_shape():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    notifier = TicketNotifier(WEBHOOK, client=client)
    draft = draft_ticket("s-9", "refund please", user_email="ana@example.com")
    assert notifier.notify(draft) is True
    assert captured["url"] == WEBHOOK
    assert captured["body"] == [
        {
            "user_email": "ana@example.com",
            "message": "refund please",
            "category": "return_refund",
            "session_id": "s-9",
            "user_Id": "anonymous",
            "subject": "refund please",
        }
    ]


def test_webhook_error_status_returns_false():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")))
    assert TicketNotifier(WEBHOOK, client=client).notify(draft_ticket("s", "help")) is False


def test_webhook_transport_error_returns_false():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    assert TicketNotifier(WEBHOOK, client=client).notify(draft_ticket("s", "help")) is False


def test_notifier_without_url_is_disabled():
    notifier = TicketNotifier(None)
    assert not notifier.enabled
    assert notifier.notify(draft_ticket("s", "help")) is False
