"""Advisory language-model oracle.

The oracle is optional and may be wrong or unavailable. Every method returns None
when it has nothing usable to say, so callers fall back to keyword rules without
branching on exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .errors import OracleError
from .gemini_client import GeminiClient
from .intent_router import Intent, parse_intent
from .prompt_loader import PromptLibrary
from .utils import safe_json_loads

logger = logging.getLogger("chatcart.oracle")

TICKET_CATEGORIES = {"product_info", "order", "payment", "shipping", "return_refund", "account", "other", "general"}


@dataclass(frozen=True)
class OracleHint:
    """Intent suggestion and extracted slots; every field may be missing."""
    intent: Optional[Intent] = None
    product_name: Optional[str] = None
    qty: Optional[int] = None
    voucher_name: Optional[str] = None


@dataclass(frozen=True)
class TicketSubject:
    subject: str
    category: str


class IntentOracle(Protocol):
    def suggest(self, message: str) -> Optional[OracleHint]:
        ...

    def escalation(self, message: str) -> Optional[bool]:
        ...

    def ticket_subject(self, message: str) -> Optional[TicketSubject]:
        ...


class NullOracle:
    """Oracle used when no model is configured; never has an opinion."""

    def suggest(self, message: str) -> Optional[OracleHint]:
        return None

    def escalation(self, message: str) -> Optional[bool]:
        return None

    def ticket_subject(self, message: str) -> Optional[TicketSubject]:
        return None


class GeminiOracle:
    """Gemini-backed oracle; failures and timeouts degrade to None."""

    def __init__(self, client: GeminiClient, prompts: Optional[PromptLibrary] = None) -> None:
        self._client = client
        self._prompts = prompts or PromptLibrary()

    def suggest(self, message: str) -> Optional[OracleHint]:
        """Purpose: Ask the model for an intent hint plus product/qty/voucher slots.
        Inputs/Outputs: Input is the raw message; output is an OracleHint or None.
        Side Effects / State: One model call bounded by the configured timeout.
        Dependencies: intent_router prompt, GeminiClient.generate_json.
        Failure Modes: Errors, timeouts and unparseable output return None;
            an unknown intent label leaves OracleHint.intent empty.
        If Removed: Routing relies on keyword patterns only.
        Testing Notes: Feed a stub client returning JSON and malformed text.
        """
        data = self._ask("intent_router", message)
        if data is None:
            return None
        return OracleHint(
            intent=parse_intent(data.get("intent")),
            product_name=_clean_str(data.get("product_name")),
            qty=_clean_qty(data.get("qty")),
            voucher_name=_clean_str(data.get("voucher_name")),
        )

    def escalation(self, message: str) -> Optional[bool]:
        data = self._ask("escalation", message)
        if data is None or not isinstance(data.get("escalate"), bool):
            return None
        return data["escalate"]

    def ticket_subject(self, message: str) -> Optional[TicketSubject]:
        data = self._ask("ticket_subject", message)
        if data is None:
            return None
        subject = _clean_str(data.get("subject"))
        category = (_clean_str(data.get("category")) or "").lower()
        if not subject or category not in TICKET_CATEGORIES:
            return None
        return TicketSubject(subject=subject[:80], category=category)

    def _ask(self, prompt_name: str, message: str) -> Optional[Dict[str, Any]]:
        try:
            return self._ask_json(prompt_name, message)
        except OracleError as exc:
            logger.warning("Oracle %s unavailable: %s", prompt_name, exc)
            return None

    def _ask_json(self, prompt_name: str, message: str) -> Dict[str, Any]:
        prompt = self._prompts.render(prompt_name, message)
        try:
            raw = self._client.generate_json(prompt)
        except Exception as exc:  # SDK, transport and deadline errors share no base class
            raise OracleError(f"{type(exc).__name__}: {exc}") from exc
        data = safe_json_loads(raw)
        if data is None:
            raise OracleError(f"unparseable output {raw[:80]!r}")
        return data


def _clean_str(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _clean_qty(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        qty = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return qty if qty >= 1 else None
