"""Support ticket drafting and webhook delivery.

Tickets are drafted from the customer's message (oracle subject/category when
available, keyword table otherwise), stored by the session store, and announced to
an external webhook. Webhook delivery is best effort: failures are logged and the
customer is still told the ticket exists.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Pattern, Tuple

import httpx

from .oracle import TicketSubject

logger = logging.getLogger("chatcart.tickets")

DEFAULT_SUBJECT = "Customer support request"
DEFAULT_CATEGORY = "general"
ANONYMOUS_EMAIL = "anonymous@example.com"
ANONYMOUS_USER = "anonymous"
SUBJECT_MAX_CHARS = 80

# First matching rule wins.
CATEGORY_RULES: List[Tuple[str, Pattern[str]]] = [
    ("product_info", re.compile(r"stock|availability|ready", re.IGNORECASE)),
    ("return_refund", re.compile(r"refund|return", re.IGNORECASE)),
    ("shipping", re.compile(r"ship|delivery|courier", re.IGNORECASE)),
    ("payment", re.compile(r"pay|payment|charge", re.IGNORECASE)),
]


@dataclass(frozen=True)
class TicketDraft:
    session_id: str
    message: str
    subject: str
    category: str
    user_id: str = ANONYMOUS_USER
    user_email: str = ANONYMOUS_EMAIL

    def to_record(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "message": self.message,
            "subject": self.subject,
            "category": self.category,
            "user_id": self.user_id,
            "user_email": self.user_email,
        }

    def to_webhook_payload(self) -> List[Dict[str, Any]]:
        # The receiving workflow expects a one-element list and the "user_Id" key.
        return [
            {
                "user_email": self.user_email,
                "message": self.message,
                "category": self.category,
                "session_id": self.session_id,
                "user_Id": self.user_id,
                "subject": self.subject,
            }
        ]


def infer_category(message: str) -> str:
    for category, pattern in CATEGORY_RULES:
        if pattern.search(message or ""):
            return category
    return DEFAULT_CATEGORY


def draft_ticket(
    session_id: str,
    message: str,
    suggested: Optional[TicketSubject] = None,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
) -> TicketDraft:
    """Purpose: Build the ticket subject and category for a support request.
    Inputs/Outputs: Inputs are the session, message, an optional oracle suggestion and
        optional user identity; output is a TicketDraft.
    Side Effects / State: None.
    Dependencies: CATEGORY_RULES when the oracle has no suggestion.
    Failure Modes: Blank messages get the default subject and "general" category.
    If Removed: Escalated conversations cannot be handed to a human.
    Testing Notes: "where is my delivery" -> shipping; "refund please" -> return_refund.
    """
    if suggested is not None:
        subject, category = suggested.subject, suggested.category
    else:
        subject = (message or "").strip()[:SUBJECT_MAX_CHARS] or DEFAULT_SUBJECT
        category = infer_category(message)
    return TicketDraft(
        session_id=session_id,
        message=message,
        subject=subject,
        category=category,
        user_id=user_id or ANONYMOUS_USER,
        user_email=user_email or ANONYMOUS_EMAIL,
    )


class TicketNotifier:
    """Posts ticket payloads to the configured webhook with a bounded timeout."""

    def __init__(
        self,
        webhook_url: Optional[str],
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._url = webhook_url
        self._timeout = timeout
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def notify(self, draft: TicketDraft) -> bool:
        """Purpose: Deliver one ticket to the webhook.
        Inputs/Outputs: Input is the TicketDraft; returns True on a 2xx response.
        Side Effects / State: One HTTP POST, no retries.
        Dependencies: httpx.Client (injected client or a short-lived one).
        Failure Modes: Transport errors and non-2xx responses are logged and return
            False; nothing is raised to the request path.
        If Removed: Tickets are stored but the support team is never alerted.
        Testing Notes: Use httpx.MockTransport to assert payload shape and a 500 path.
        """
        if not self._url:
            logger.debug("No ticket webhook configured; skipping session %s", draft.session_id)
            return False
        payload = draft.to_webhook_payload()
        try:
            if self._client is not None:
                response = self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("Ticket webhook failed with %s: %s", exc.response.status_code, exc.response.text[:200])
            return False
        except httpx.HTTPError as exc:
            logger.error("Ticket webhook error: %s", exc)
            return False
        logger.info("Ticket for session %s delivered to webhook", draft.session_id)
        return True
