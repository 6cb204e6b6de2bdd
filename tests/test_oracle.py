import json

import pytest

from chatcart.gemini_client import GeminiClient, _normalize_model_name
from chatcart.intent_router import Intent
from chatcart.oracle import GeminiOracle, NullOracle, OracleHint, TicketSubject
from chatcart.prompt_loader import PromptLibrary, load_prompt

from .conftest import make_settings


class StubClient:
    """Returns canned model text, or raises when given an exception."""

    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    def generate_json(self, prompt, **kwargs):
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


def oracle_for(reply):
    client = StubClient(reply if isinstance(reply, (str, Exception)) else json.dumps(reply))
    return GeminiOracle(client), client


def test_suggest_parses_intent_and_slots():
    oracle, client = oracle_for({"intent": "add_line", "product_name": " ceramide serum ", "qty": "2"})
    hint = oracle.suggest("add two ceramide serums")
    assert hint == OracleHint(intent=Intent.ADD_LINE, product_name="ceramide serum", qty=2)
    assert "add two ceramide serums" in client.prompts[0]


def test_suggest_drops_unknown_intent_and_bad_qty():
    oracle, _ = oracle_for({"intent": "refund", "qty": 0, "voucher_name": ""})
    assert oracle.suggest("hmm") == OracleHint()


def test_suggest_accepts_json_wrapped_in_prose():
    oracle, _ = oracle_for('Sure! ```json\n{"intent": "apply_voucher", "voucher_name": "WELCOME10"}\n```')
    hint = oracle.suggest("pakai welcome10")
    assert hint.intent == Intent.APPLY_VOUCHER
    assert hint.voucher_name == "WELCOME10"


@pytest.mark.parametrize("reply", ["not json at all", "[1, 2]", RuntimeError("deadline exceeded")])
def test_failures_degrade_to_none(reply):
    oracle, _ = oracle_for(reply)
    assert oracle.suggest("hi") is None
    assert oracle.escalation("hi") is None
    assert oracle.ticket_subject("hi") is None


def test_escalation_requires_boolean():
    assert oracle_for({"escalate": True})[0].escalation("payment failed") is True
    assert oracle_for({"escalate": False})[0].escalation("add serum") is False
    assert oracle_for({"escalate": "yes"})[0].escalation("add serum") is None


def test_ticket_subject_validates_category():
    oracle, _ = oracle_for({"subject": "Refund for damaged serum", "category": "Return_Refund"})
    assert oracle.ticket_subject("my serum arrived broken") == TicketSubject(
        subject="Refund for damaged serum", category="return_refund"
    )
    assert oracle_for({"subject": "x", "category": "gossip"})[0].ticket_subject("hi") is None
    assert oracle_for({"subject": "", "category": "other"})[0].ticket_subject("hi") is None


def test_ticket_subject_is_truncated():
    oracle, _ = oracle_for({"subject": "a" * 200, "category": "other"})
    assert len(oracle.ticket_subject("hi").subject) == 80


def test_null_oracle_has_no_opinion():
    oracle = NullOracle()
    assert oracle.suggest("add serum") is None
    assert oracle.escalation("help") is None
    assert oracle.ticket_subject("help") is None


def test_shipped_prompts_render_message():
    library = PromptLibrary()
    for name in ("intent_router", "escalation", "ticket_subject"):
        rendered = library.render(name, "MARKER-123")
        assert "MARKER-123" in rendered
        assert "{message}" not in rendered


def test_load_prompt_strips_bom(tmp_path):
    path = tmp_path / "prompt.txt"
    path.write_bytes("\ufeffHello {message}".encode("utf-8"))
    assert load_prompt(path) == "Hello {message}"


def test_gemini_client_requires_api_key(tmp_path):
    with pytest.raises(ValueError):
        GeminiClient(make_settings(tmp_path))


def test_normalize_model_name():
    assert _normalize_model_name("models/gemini-2.5-flash ") == "gemini-2.5-flash"
    assert _normalize_model_name(None) == ""
