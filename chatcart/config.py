from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_CHECKOUT_BASE_URL = "https://example-checkout.local/checkout"


@dataclass(frozen=True)
class Settings:
    """Configuration container for the oracle, storage paths, and request limits."""
    gemini_api_key: str
    gemini_model: str
    oracle_timeout_sec: float
    catalog_path: Path
    data_dir: Path
    checkout_base_url: str
    ticket_webhook_url: Optional[str]
    webhook_timeout_sec: float
    rate_limit_interval_ms: int
    reco_limit: int
    max_sessions: Optional[int]
    log_level: str = "INFO"

    @property
    def oracle_enabled(self) -> bool:
        return bool(self.gemini_api_key)


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Non-numeric ORACLE_TIMEOUT_SEC, WEBHOOK_TIMEOUT_SEC,
        RATE_LIMIT_INTERVAL_MS, RECO_LIMIT or MAX_SESSIONS raise ValueError.
    If Removed: App cannot locate the catalog or data directory and fails at startup.
    Testing Notes: Verify defaults and overrides via monkeypatched environment variables.
    """
    # Resolve catalog and data paths, then build Settings.
    catalog_path = os.getenv("CATALOG_PATH")
    if catalog_path:
        catalog_file = Path(catalog_path)
    else:
        catalog_file = (BASE_DIR / ".." / "resources" / "catalog.json").resolve()

    data_dir = os.getenv("DATA_DIR")
    data_path = Path(data_dir) if data_dir else (BASE_DIR / "data").resolve()

    max_sessions_raw = os.getenv("MAX_SESSIONS", "").strip()

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        oracle_timeout_sec=float(os.getenv("ORACLE_TIMEOUT_SEC", "4")),
        catalog_path=catalog_file,
        data_dir=data_path,
        checkout_base_url=os.getenv("CHECKOUT_BASE_URL") or DEFAULT_CHECKOUT_BASE_URL,
        ticket_webhook_url=os.getenv("TICKET_WEBHOOK_URL") or None,
        webhook_timeout_sec=float(os.getenv("WEBHOOK_TIMEOUT_SEC", "5")),
        rate_limit_interval_ms=int(os.getenv("RATE_LIMIT_INTERVAL_MS", "600")),
        reco_limit=int(os.getenv("RECO_LIMIT", "6")),
        max_sessions=int(max_sessions_raw) if max_sessions_raw else None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
