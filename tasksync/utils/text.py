import json
import re
from typing import Any, Dict, Optional

from rapidfuzz import fuzz

from tasksync.models.schemas import NO_TICKET

TICKET_RE = re.compile(r"^([A-Z][A-Z0-9]*?)[\s_-]*(\d+)$")
FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def normalize_ticket_id(raw: Optional[str]) -> str:
    """Normalize a spoken or typed identifier to PREFIX-N (case, spaces, missing dash): 'sp 30', 'Sp30', 'SP_30' -> 'SP-30'. Returns NONE for empty or unrecognized input.
    Why available: Explicit-id matching, status detection and the allocator all compare identifiers in this one canonical form."""
    if raw is None:
        return NO_TICKET
    s = raw.strip().upper()
    if not s or s in (NO_TICKET, "N/A", "NULL"):
        return NO_TICKET
    m = TICKET_RE.match(s)
    if not m:
        return NO_TICKET
    return f"{m.group(1)}-{int(m.group(2))}"


def ticket_number(ticket_id: str) -> Optional[int]:
    """Return the integer part of a normalized identifier, or None."""
    m = TICKET_RE.match((ticket_id or "").strip().upper())
    return int(m.group(2)) if m else None


def string_similarity(a: str, b: str) -> float:
    """Case-insensitive rapidfuzz ratio scaled to 0..1; 1.0 for two empty strings."""
    return fuzz.ratio((a or "").lower(), (b or "").lower()) / 100.0


def collapse_ws(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def normalize_for_compare(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace. Used for duplicate and containment checks."""
    return collapse_ws(re.sub(r"[^\w\s]", " ", (text or "").lower()))


def safe_json_loads(raw: str) -> Optional[Dict[str, Any]]:
    """Parse LLM output as a JSON object. Strips markdown fences; if parsing still fails, tries the first {...} block. Returns None when nothing parses to a dict.
    Why available: Adjudication and RAG merge replies are often wrapped in prose or fences; callers decide the fallback when this returns None."""
    raw = (raw or "").strip()
    if not raw:
        return None
    raw = FENCE_RE.sub("", raw).strip()
    try:
        data = json.loads(raw)
        return data if isinstance(data, dict) else None
    except Exception:
        # fallback: try to extract the first {...} block
        start = raw.find("{")
        end = raw.rfind("}")
        if start != -1 and end != -1 and end > start:
            try:
                data = json.loads(raw[start : end + 1])
                return data if isinstance(data, dict) else None
            except Exception:
                pass
    return None
