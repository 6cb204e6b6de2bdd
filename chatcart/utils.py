import json
import re
import unicodedata
from typing import Any, Dict, List, Optional


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for stable keyword and catalog matching.
    Inputs/Outputs: Input is a raw string; output is a lowercase ASCII-only string with
        diacritics removed and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by the intent router and catalog.
    Failure Modes: Returns an empty string when input is falsy. Symbols such as "%" are
        replaced by spaces, so "10%" matches as "10".
    If Removed: Keyword rules miss accented or punctuated input and misroute messages.
    Testing Notes: "Ada DISKON?" should become "ada diskon".
    """
    if not text:
        return ""
    lowered = text.lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s\-_/.]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def tokenize(text: str) -> List[str]:
    """Split normalized text into alphanumeric tokens."""
    return [token for token in re.split(r"[^a-z0-9]+", normalize_text(text)) if token]


def format_cents(cents: int) -> str:
    """Purpose: Render an integer cent amount for user-facing text.
    Inputs/Outputs: Input is cents; output is a "$x.yy" string.
    Side Effects / State: None.
    Dependencies: Used by the cart engine and response builder.
    Failure Modes: Negative amounts render with a leading minus sign.
    If Removed: Replies would show raw cent integers.
    Testing Notes: 1619 -> "$16.19", 0 -> "$0.00".
    """
    sign = "-" if cents < 0 else ""
    cents = abs(int(cents))
    return f"{sign}${cents // 100}.{cents % 100:02d}"


_JSON_DECODER = json.JSONDecoder()


def safe_json_loads(text: str) -> Optional[Dict[str, Any]]:
    """Purpose: Parse the first JSON object embedded in model output.
    Inputs/Outputs: Input is raw model text; output is a dict or None.
    Side Effects / State: None; pure function.
    Dependencies: json.JSONDecoder.raw_decode; used by the oracle.
    Failure Modes: Returns None when no brace starts a decodable object; prose,
        code fences and trailing commentary around the object are ignored.
    If Removed: Oracle replies wrapped in markdown fences are discarded.
    Testing Notes: 'Sure! ```json {"intent": "add_line"} ```' parses; "[1, 2]" is None.
    """
    if not text:
        return None
    for match in re.finditer(r"\{", text):
        try:
            data, _ = _JSON_DECODER.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None
