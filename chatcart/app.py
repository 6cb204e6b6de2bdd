from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .cart_store import DEFAULT_MAX_CARTS, CartStore
from .catalog import load_catalog
from .chat_pipeline import ChatAssistant
from .config import Settings, load_settings
from .gemini_client import GeminiClient
from .models import CartView, ChatReply, ChatRequest, ErrorResponse, SessionSummary, SessionTranscript
from .oracle import GeminiOracle, IntentOracle, NullOracle
from .rate_limiter import RateLimiter
from .session_store import SessionStore
from .ticketing import TicketNotifier

BASE_DIR = Path(__file__).resolve().parent

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logger = logging.getLogger("chatcart.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)

ANONYMOUS_SESSION = "anonymous"
RATE_LIMITED_ERROR = "Too many requests, please slow down."
MISSING_MESSAGE_ERROR = "Missing message"


def build_oracle(settings: Settings) -> IntentOracle:
    """Purpose: Pick the oracle implementation for the configured environment.
    Inputs/Outputs: Input is Settings; output is a GeminiOracle or a NullOracle.
    Side Effects / State: Configures the Gemini SDK when a key is present.
    Dependencies: GeminiClient, GeminiOracle, NullOracle.
    Failure Modes: A client that cannot be constructed is logged and replaced by
        NullOracle so the service still routes with keyword rules.
    If Removed: The app cannot use the model even when a key is configured.
    Testing Notes: With GEMINI_API_KEY unset the result is a NullOracle.
    """
    if not settings.oracle_enabled:
        logger.info("GEMINI_API_KEY not set; routing with keyword rules only")
        return NullOracle()
    try:
        client = GeminiClient(settings)
    except ValueError as exc:
        logger.warning("Gemini oracle disabled: %s", exc)
        return NullOracle()
    return GeminiOracle(client)


def create_app(
    settings: Optional[Settings] = None,
    oracle: Optional[IntentOracle] = None,
    notifier: Optional[TicketNotifier] = None,
    clock: Optional[Callable[[], int]] = None,
) -> FastAPI:
    """Purpose: Build the FastAPI application with its collaborators.
    Inputs/Outputs: Optional settings, oracle, ticket notifier and rate-limit clock
        (tests inject these); returns the FastAPI app.
    Side Effects / State: Sets the chatcart logger level, creates the data
        directory, loads the catalog and the session file, and starts the
        assistant's thread pool.
    Dependencies: load_catalog, SessionStore, CartStore, ChatAssistant, RateLimiter.
    Failure Modes: A malformed catalog file raises at startup.
    If Removed: Nothing serves HTTP.
    Testing Notes: create_app(settings=..., oracle=FakeOracle(), clock=fake_clock).
    """
    settings = settings or load_settings()
    logging.getLogger("chatcart").setLevel(getattr(logging, settings.log_level, logging.INFO))
    settings.data_dir.mkdir(parents=True, exist_ok=True)

    catalog, catalog_meta = load_catalog(settings.catalog_path)
    session_store = SessionStore(settings.data_dir / "sessions.json", max_sessions=settings.max_sessions)
    cart_store = CartStore(persistence=session_store, max_sessions=settings.max_sessions or DEFAULT_MAX_CARTS)
    assistant = ChatAssistant(
        catalog=catalog,
        cart_store=cart_store,
        session_store=session_store,
        oracle=oracle or build_oracle(settings),
        notifier=notifier or TicketNotifier(settings.ticket_webhook_url, timeout=settings.webhook_timeout_sec),
        checkout_base_url=settings.checkout_base_url,
        reco_limit=settings.reco_limit,
        oracle_timeout=settings.oracle_timeout_sec,
    )
    limiter = RateLimiter(settings.rate_limit_interval_ms, clock=clock or time.monotonic_ns)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        assistant.close()

    app = FastAPI(title="Chatcart Shopping Assistant", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.state.assistant = assistant
    app.state.session_store = session_store
    app.state.cart_store = cart_store

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', '')}"
            for error in exc.errors()
        ]
        logger.info("Rejected malformed request to %s: %s", request.url.path, details)
        return JSONResponse(status_code=400, content={"error": "Malformed request", "detail": details})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    @app.post(
        "/api/chat",
        response_model=ChatReply,
        responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    def chat(payload: ChatRequest):
        """Purpose: Handle one chat turn.
        Inputs/Outputs: Input is ChatRequest; output is a reply discriminated by kind,
            or an error body with 400/429.
        Side Effects / State: Updates the rate-limit record, the cart and the message log.
        Dependencies: RateLimiter, ChatAssistant.
        Failure Modes: Blank message -> 400; second request within the interval -> 429;
            unexpected errors -> 500 via the generic handler.
        If Removed: Core chat functionality is unavailable.
        Testing Notes: Two posts for one session with a frozen clock -> 200 then 429.
        """
        # Rate limiting runs before validation of the message itself.
        if not limiter.allow(payload.session_id or ANONYMOUS_SESSION):
            return JSONResponse(status_code=429, content={"error": RATE_LIMITED_ERROR})
        if not (payload.message or "").strip():
            return JSONResponse(status_code=400, content={"error": MISSING_MESSAGE_ERROR})
        return assistant.handle(payload)

    @app.get("/api/sessions", response_model=List[SessionSummary])
    def list_sessions() -> List[SessionSummary]:
        return session_store.list_sessions()

    @app.get("/api/sessions/{session_id}", response_model=SessionTranscript)
    def get_session(session_id: str) -> SessionTranscript:
        """Return the stored transcript; unknown sessions have no messages."""
        return SessionTranscript(session_id=session_id, messages=session_store.get_messages(session_id))

    @app.get("/api/carts/{session_id}", response_model=CartView)
    def get_cart(session_id: str) -> CartView:
        return assistant.cart_view(session_id)

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "products": len(catalog),
            "catalog_sha256": catalog_meta.sha256 if catalog_meta else None,
            "oracle": not isinstance(assistant.oracle, NullOracle),
        }

    return app


app = create_app()
