"""
Participant name resolution: map the assignee text an LLM produced onto a known meeting participant.
"""
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from tasksync.core.config import settings
from tasksync.models.schemas import TBD_ASSIGNEE
from tasksync.utils.text import string_similarity

PAREN_RE = re.compile(r"\s*[\(\[][^\)\]]*[\)\]]\s*")
SELF_ASSIGN_RE = re.compile(
    r"\b(?:i'll|i will|i'm going to|i am going to|i can take|let me|assign (?:it|that|this) to me|for me|on me|i'll take)\b",
    re.IGNORECASE,
)
SELF_TOKENS = {"me", "i", "myself", "self", "speaker"}
UNASSIGNED_TOKENS = {"", "tbd", "none", "n/a", "unassigned", "nobody", "team", "everyone"}


@dataclass
class ParticipantMatch:
    name: str
    confidence: float
    rule: str


def find_best_participant_match(raw_name: str, participants: Iterable[str]) -> Optional[ParticipantMatch]:
    """Score raw_name against every participant and return the best match with its confidence. Tiers: exact 1.0, first+last name both present 0.9, exact first name 0.85, containment 0.8, first-name edit similarity above 0.8 0.75, last name 0.6, partial (3+ chars) 0.5, full-name similarity above 0.7 0.4.
    Why available: LLM replies spell names loosely ("Jon", "Smith", "Sarah J"); callers accept the match only above a threshold."""
    name = (raw_name or "").strip().lower()
    if not name:
        return None

    best: Optional[ParticipantMatch] = None

    def offer(p: str, conf: float, rule: str):
        nonlocal best
        if best is None or conf > best.confidence:
            best = ParticipantMatch(name=p, confidence=conf, rule=rule)

    name_parts = name.split()
    for p in participants:
        cand = (p or "").strip()
        if not cand or cand.upper() == TBD_ASSIGNEE:
            continue
        low = cand.lower()
        parts = low.split()
        first, last = parts[0], parts[-1] if len(parts) > 1 else ""

        if name == low:
            offer(cand, 1.0, "exact")
            continue
        if last and first in name_parts and last in name_parts:
            offer(cand, 0.9, "first_last")
            continue
        if name_parts and name_parts[0] == first and len(name_parts) == 1:
            offer(cand, 0.85, "first_name")
            continue
        if name in low or low in name:
            offer(cand, 0.8, "contains")
            continue
        if string_similarity(name_parts[0], first) > 0.8:
            offer(cand, 0.75, "first_name_fuzzy")
            continue
        if last and last in name_parts:
            offer(cand, 0.6, "last_name")
            continue
        if len(name) >= 3 and any(part.startswith(name) or name.startswith(part) for part in parts if len(part) >= 3):
            offer(cand, 0.5, "partial")
            continue
        if string_similarity(name, low) > 0.7:
            offer(cand, 0.4, "full_name_fuzzy")
    return best


def normalize_name(raw_name: str) -> str:
    """Strip parentheticals and title-case each word ("john smith (backend)" -> "John Smith")."""
    cleaned = PAREN_RE.sub(" ", raw_name or "").strip(" .,:;-")
    return " ".join(w[:1].upper() + w[1:] for w in cleaned.split())


def resolve_assignee(
    raw_name: str,
    participants: Iterable[str],
    *,
    speaker: str = "",
    threshold: Optional[float] = None,
) -> str:
    """Resolve an assignee token: unassigned tokens -> TBD; self references (me, I, myself) -> the speaker; otherwise the best participant match at or above threshold, else the normalized raw token.
    Why available: Single assignee policy for every candidate the decoder produces."""
    limit = settings.fuzzy_name_threshold if threshold is None else threshold
    cleaned = PAREN_RE.sub(" ", raw_name or "").strip(" .,:;-")
    if cleaned.lower() in UNASSIGNED_TOKENS:
        return TBD_ASSIGNEE
    if cleaned.lower() in SELF_TOKENS:
        return speaker or TBD_ASSIGNEE
    participants = list(participants)
    match = find_best_participant_match(cleaned, participants)
    if match and match.confidence >= limit:
        return match.name
    return normalize_name(cleaned)


def detect_self_assignment(text: str) -> bool:
    """True when the utterance reads as the speaker taking the work ("I'll handle it", "assign that to me")."""
    return bool(SELF_ASSIGN_RE.search(text or ""))


def merge_participants(*groups: Iterable[str]) -> List[str]:
    """Union of participant lists in order, de-duplicated case-insensitively, TBD and blanks removed."""
    seen = set()
    out: List[str] = []
    for group in groups:
        for name in group or []:
            n = (name or "").strip()
            if not n or n.upper() == TBD_ASSIGNEE or n.lower() in seen:
                continue
            seen.add(n.lower())
            out.append(n)
    return out
