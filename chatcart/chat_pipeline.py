"""Request pipeline for the chat endpoint.

Steps, in order:
    oracle       optional model hint and escalation verdict, fetched in parallel
    route        deterministic intent routing (intent_router.route)
    cart         cart intents through CartEngine under the session lock
    suggestions  voucher listing and upsell, fetched in parallel
    recommend    product_reco responder
    ticket       ticket responder (store, then notify the webhook in the background)
    checkout     checkout link responder
    finalize     append the user/assistant turn to the message log (always runs)

Collaborator failures (oracle, persistence, webhook) are logged at the call site and
degrade the reply; they never fail the request.
"""

from __future__ import annotations

import concurrent.futures
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from .cart_engine import CART_INTENTS, CartEngine, EngineParams, EngineResult
from .cart_store import CartStore
from .catalog import Catalog
from .checkout import build_checkout_url
from .config import DEFAULT_CHECKOUT_BASE_URL
from .errors import PersistenceError
from .intent_router import Intent, RoutingDecision, needs_human, parse_intent, route
from .models import (
    CartReply,
    CartView,
    ChatRequest,
    CheckoutReply,
    ProductListReply,
    ProductView,
    ReplyBase,
    TextReply,
    TicketReply,
    UpsellView,
    VoucherView,
)
from .oracle import IntentOracle, NullOracle, OracleHint, TicketSubject
from .pipeline_runtime import PipelineStep, StepRunner
from .recommendation import (
    CLARIFY_REPLY,
    UPSELL_HEADER,
    Recommender,
    extract_needs,
    merge_needs,
    needs_clarification,
    recently_clarified,
)
from .session_store import SessionStore
from .ticketing import TicketDraft, TicketNotifier, draft_ticket
from .vouchers import DEFAULT_RULES, VoucherRule, assess_vouchers

logger = logging.getLogger("chatcart.assistant")

EMPTY_CHECKOUT_REPLY = "Your cart is empty. Add a product before checking out."
TICKET_REPLY = "I've created a support ticket so a human can assist you shortly. Subject: {subject}."
SUGGESTION_INTENTS = {Intent.ADD_LINE, Intent.EDIT_LINE, Intent.APPLY_VOUCHER}
UPSELL_INTENTS = {Intent.ADD_LINE, Intent.EDIT_LINE}
NEEDS_HISTORY_TURNS = 6


@dataclass
class PipelineContext:
    """Mutable context passed through each pipeline step."""
    session_id: str
    message: str
    request: ChatRequest
    hint: Optional[OracleHint] = None
    oracle_escalation: Optional[bool] = None
    decision: Optional[RoutingDecision] = None
    engine_result: Optional[EngineResult] = None
    reply: Optional[ReplyBase] = None
    cart_persisted: bool = False

    @property
    def intent(self) -> Optional[Intent]:
        return self.decision.intent if self.decision else None


class ChatAssistant:
    """Routes one chat message to the cart engine or a responder and builds the reply."""

    def __init__(
        self,
        catalog: Catalog,
        cart_store: CartStore,
        session_store: Optional[SessionStore] = None,
        oracle: Optional[IntentOracle] = None,
        notifier: Optional[TicketNotifier] = None,
        rules: Sequence[VoucherRule] = DEFAULT_RULES,
        checkout_base_url: str = DEFAULT_CHECKOUT_BASE_URL,
        reco_limit: int = 6,
        oracle_timeout: float = 4.0,
        max_workers: int = 4,
    ) -> None:
        """Purpose: Wire collaborators and build the ordered step runner.
        Inputs/Outputs: Inputs are the catalog, stores, optional oracle/notifier and
            limits; no return value.
        Side Effects / State: Starts a thread pool used for fan-outs and background
            webhook delivery; call close() on shutdown.
        Dependencies: CartEngine, Recommender, StepRunner.
        Failure Modes: reco_limit <= 0 raises ValueError (from Recommender).
        If Removed: The chat endpoint has nothing to dispatch to.
        Testing Notes: Inject a fake oracle and an in-memory SessionStore.
        """
        self._catalog = catalog
        self._carts = cart_store
        self._sessions = session_store
        self._oracle: IntentOracle = oracle or NullOracle()
        self._notifier = notifier
        self._rules = tuple(rules)
        self._engine = CartEngine(catalog, self._rules)
        self._recommender = Recommender(catalog, limit=reco_limit)
        self._checkout_base_url = checkout_base_url
        self._oracle_timeout = oracle_timeout
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="chatcart"
        )
        self._runner = StepRunner(
            steps=[
                PipelineStep("oracle", self._step_oracle),
                PipelineStep("route", self._step_route),
                PipelineStep("cart", self._step_cart, skip_if=lambda ctx: ctx.intent not in CART_INTENTS),
                PipelineStep("suggestions", self._step_suggestions, skip_if=self._skip_suggestions),
                PipelineStep("recommend", self._step_recommend, skip_if=_unless(Intent.PRODUCT_RECO)),
                PipelineStep("ticket", self._step_ticket, skip_if=_unless(Intent.TICKET)),
                PipelineStep("checkout", self._step_checkout, skip_if=_unless(Intent.CHECKOUT)),
                PipelineStep("finalize", self._step_finalize, always_run=True),
            ]
        )

    @property
    def engine(self) -> CartEngine:
        return self._engine

    @property
    def oracle(self) -> IntentOracle:
        return self._oracle

    def handle(self, request: ChatRequest, session_id: Optional[str] = None) -> ReplyBase:
        """Purpose: Run the pipeline for one chat request.
        Inputs/Outputs: Inputs are the validated request and the resolved session id;
            output is one of the reply models (CartReply, ProductListReply, ...).
        Side Effects / State: May mutate the session cart, store a ticket, append to
            the message log and schedule a webhook call.
        Dependencies: StepRunner and the step methods below.
        Failure Modes: Unexpected errors propagate to the HTTP layer (generic 500).
        If Removed: The chat endpoint cannot answer.
        Testing Notes: "add ceramide serum 2" returns a CartReply with two units.
        """
        context = PipelineContext(
            session_id=session_id or request.session_id or uuid.uuid4().hex,
            message=(request.message or "").strip(),
            request=request,
        )
        logger.info("session=%s message=%s", context.session_id, context.message[:120])
        self._runner.run(context)
        if context.reply is None:
            raise RuntimeError(f"pipeline produced no reply for intent {context.intent}")
        return context.reply

    def cart_view(self, session_id: str) -> CartView:
        with self._carts.lock(session_id):
            cart = self._carts.get(session_id)
        return CartView.from_cart(self._engine.recompute(cart))

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _step_oracle(self, context: PipelineContext) -> None:
        # Explicit intents skip the hint; a regex escalation makes the verdict moot.
        tasks: Dict[str, Callable[[], Any]] = {}
        if parse_intent(context.request.intent) is None:
            tasks["hint"] = lambda: self._oracle.suggest(context.message)
        if not needs_human(context.message):
            tasks["escalation"] = lambda: self._oracle.escalation(context.message)
        results = self._fan_out(tasks, default=None, timeout=self._oracle_timeout)
        context.hint = results.get("hint")
        context.oracle_escalation = results.get("escalation")

    def _step_route(self, context: PipelineContext) -> None:
        context.decision = route(
            context.message,
            explicit_intent=context.request.intent,
            oracle_hint=context.hint.intent if context.hint else None,
            oracle_escalation=context.oracle_escalation,
            known_codes=[rule.code for rule in self._rules],
        )
        logger.info(
            "session=%s intent=%s source=%s",
            context.session_id,
            context.decision.intent.value,
            context.decision.source,
        )

    def _step_cart(self, context: PipelineContext) -> None:
        intent = context.intent
        if intent is None:
            raise RuntimeError("cart step ran before routing")
        params = self._engine_params(context)
        with self._carts.lock(context.session_id):
            cart = self._carts.get(context.session_id)
            result = self._engine.apply(cart, intent, params)
            if intent == Intent.DELETE_CART:
                context.cart_persisted = self._carts.delete(context.session_id)
            else:
                context.cart_persisted = self._carts.set(result.cart)
        context.engine_result = result
        if result.outcome == "not_found":
            context.reply = TextReply(output=result.output, intent=intent.value, session_id=context.session_id)
            return
        context.reply = CartReply(
            output=result.output,
            intent=intent.value,
            session_id=context.session_id,
            cart=CartView.from_cart(result.cart),
        )

    def _skip_suggestions(self, context: PipelineContext) -> bool:
        return context.intent not in SUGGESTION_INTENTS or not isinstance(context.reply, CartReply)

    def _step_suggestions(self, context: PipelineContext) -> None:
        """Purpose: Attach voucher listing and upsell products to a cart reply.
        Inputs/Outputs: Input is the context holding a CartReply; mutates the reply.
        Side Effects / State: Runs the lookups on the shared thread pool.
        Dependencies: assess_vouchers, Recommender.upsell, _fan_out.
        Failure Modes: A failing branch contributes an empty list; the other branch
            and the cart reply are unaffected.
        If Removed: Replies lose voucher hints and cross-sell products.
        Testing Notes: Break upsell with a mock and assert vouchers still arrive.
        """
        reply = context.reply
        result = context.engine_result
        if not isinstance(reply, CartReply) or result is None:
            raise RuntimeError("suggestions need a cart reply and an engine result")
        cart = result.cart
        tasks: Dict[str, Callable[[], Any]] = {
            "vouchers": lambda: [
                VoucherView.from_assessment(item)
                for item in assess_vouchers(self._rules, cart.subtotal_cents, cart.tags())
            ],
        }
        if context.intent in UPSELL_INTENTS:
            tasks["upsell"] = lambda: [UpsellView.from_item(item) for item in self._recommender.upsell(cart)]
        results = self._fan_out(tasks, default=None)
        reply.vouchers = results.get("vouchers") or []
        reply.upsell = results.get("upsell") or []
        if reply.upsell:
            reply.upsell_output = UPSELL_HEADER

    def _step_recommend(self, context: PipelineContext) -> None:
        """Purpose: Answer a product request, asking for details first when it is too thin.
        Inputs/Outputs: Input is the context; sets a TextReply clarifier or a
            ProductListReply.
        Side Effects / State: Reads the session message log (prior turns only;
            finalize appends this turn afterwards).
        Dependencies: extract_needs, merge_needs, needs_clarification,
            recently_clarified, Recommender.recommend.
        Failure Modes: Without a session store every request is judged on its own.
        If Removed: product_reco requests get no reply.
        Testing Notes: "recommend a serum" asks once; repeating it returns
            products; answering "for oily skin" recommends serums.
        """
        history = self._sessions.get_messages(context.session_id) if self._sessions else []
        user_turns = [item.content for item in history if item.role == "user"][-NEEDS_HISTORY_TURNS:]
        assistant_turns = [item.content for item in history if item.role == "assistant"]
        needs = merge_needs([extract_needs(text) for text in user_turns + [context.message]])
        if needs_clarification(needs) and not recently_clarified(assistant_turns):
            logger.info("session=%s asking for recommendation details", context.session_id)
            context.reply = TextReply(
                output=CLARIFY_REPLY, intent=Intent.PRODUCT_RECO.value, session_id=context.session_id
            )
            return
        recommendation = self._recommender.recommend(context.message, needs=needs)
        context.reply = ProductListReply(
            output=recommendation.header,
            intent=Intent.PRODUCT_RECO.value,
            session_id=context.session_id,
            products=[ProductView.from_product(product) for product in recommendation.products],
            matched=recommendation.matched,
        )

    def _step_ticket(self, context: PipelineContext) -> None:
        """Purpose: Create a support ticket and tell the customer it exists.
        Inputs/Outputs: Input is the context; sets a TicketReply.
        Side Effects / State: Stores the ticket and schedules webhook delivery.
        Dependencies: oracle.ticket_subject, draft_ticket, SessionStore.create_ticket,
            TicketNotifier.notify.
        Failure Modes: Storage failure falls back to a locally generated id; webhook
            failure is only logged. The reply always reports success.
        If Removed: Escalated requests dead-end.
        Testing Notes: A failing store still yields ticket_created=True with an id.
        """
        suggested = self._call_oracle(self._oracle.ticket_subject, context.message)
        request = context.request
        draft = draft_ticket(
            context.session_id,
            context.message,
            suggested=suggested if isinstance(suggested, TicketSubject) else None,
            user_id=request.user_id,
            user_email=request.user_email,
        )
        ticket_id = self._store_ticket(draft)
        if self._notifier is not None and self._notifier.enabled:
            self._executor.submit(self._notifier.notify, draft)
        context.reply = TicketReply(
            output=TICKET_REPLY.format(subject=draft.subject),
            intent=Intent.TICKET.value,
            session_id=context.session_id,
            ticket_id=ticket_id,
            subject=draft.subject,
            category=draft.category,
        )

    def _step_checkout(self, context: PipelineContext) -> None:
        with self._carts.lock(context.session_id):
            cart = self._engine.recompute(self._carts.get(context.session_id))
        if not cart.items:
            context.reply = TextReply(
                output=EMPTY_CHECKOUT_REPLY, intent=Intent.CHECKOUT.value, session_id=context.session_id
            )
            return
        url = build_checkout_url(self._checkout_base_url, cart)
        context.reply = CheckoutReply(
            output=f"Here's your checkout link: {url}",
            intent=Intent.CHECKOUT.value,
            session_id=context.session_id,
            cart=CartView.from_cart(cart),
            checkout_url=url,
        )

    def _step_finalize(self, context: PipelineContext) -> None:
        if self._sessions is None or context.reply is None:
            return
        meta = {"intent": context.reply.intent, "kind": getattr(context.reply, "kind", None)}
        try:
            self._sessions.add_message(context.session_id, "user", context.message)
            self._sessions.add_message(context.session_id, "assistant", context.reply.output, meta=meta)
        except PersistenceError as exc:
            logger.warning("session=%s message log not persisted: %s", context.session_id, exc)

    def _engine_params(self, context: PipelineContext) -> EngineParams:
        request = context.request
        hint = context.hint
        return EngineParams(
            message=context.message,
            product_name=request.product_name,
            product_id=request.product_id,
            variant_id=request.variant_id,
            qty=request.qty,
            unit_price_cents=request.unit_price_cents,
            image_url=request.image_url,
            voucher_name=request.voucher_name,
            hinted_product=hint.product_name if hint else None,
            hinted_qty=hint.qty if hint else None,
            hinted_voucher=hint.voucher_name if hint else None,
        )

    def _store_ticket(self, draft: TicketDraft) -> str:
        if self._sessions is None:
            return str(uuid.uuid4())
        try:
            return self._sessions.create_ticket(draft.to_record())
        except PersistenceError as exc:
            logger.warning("session=%s ticket not persisted, using local id: %s", draft.session_id, exc)
            return str(uuid.uuid4())

    def _call_oracle(self, fn: Callable[[str], Any], message: str) -> Any:
        try:
            return fn(message)
        except Exception:  # third-party oracles may raise anything
            logger.warning("Oracle call %s failed", getattr(fn, "__name__", fn), exc_info=True)
            return None

    def _fan_out(
        self,
        tasks: Dict[str, Callable[[], Any]],
        default: Any,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Run independent lookups in parallel; a failed or late branch yields default."""
        if not tasks:
            return {}
        futures = {name: self._executor.submit(task) for name, task in tasks.items()}
        # One shared deadline for the whole batch.
        concurrent.futures.wait(futures.values(), timeout=timeout)
        results: Dict[str, Any] = {}
        for name, future in futures.items():
            if not future.done():
                logger.warning("Lookup %s timed out after %ss", name, timeout)
                future.cancel()
                results[name] = default
                continue
            try:
                results[name] = future.result()
            except Exception:  # one branch must not abort the others
                logger.warning("Lookup %s failed", name, exc_info=True)
                results[name] = default
        return results


def _unless(intent: Intent) -> Callable[[PipelineContext], bool]:
    return lambda ctx: ctx.reply is not None or ctx.intent != intent
