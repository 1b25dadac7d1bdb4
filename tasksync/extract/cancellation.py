"""
Retraction detection: suppress a candidate when the meeting explicitly takes it back
("never mind", "scratch that") right after it was raised.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from tasksync.ingest.parser import Turn
from tasksync.models.schemas import Candidate
from tasksync.utils.text import normalize_for_compare

logger = logging.getLogger(__name__)

CANCELLATION_PATTERNS = [
    r"actually,?\s+let'?s\s+not",
    r"never\s*mind",
    r"scratch\s+that",
    r"forget\s+(?:about\s+)?(?:that|it)",
    r"we\s+decided\s+not\s+to",
    r"on\s+second\s+thought",
    r"let'?s\s+hold\s+off(?:\s+on\s+(?:that|it))?",
    r"maybe\s+later",
    r"not\s+right\s+now",
    r"let'?s\s+table\s+(?:that|it)",
    r"actually,?\s+don'?t",
    r"(?:i\s+)?changed\s+my\s+mind",
    r"let'?s\s+skip\s+(?:that|it)",
    r"cancel\s+(?:that|it)",
]
CANCELLATION_RE = re.compile(r"\b(?:" + "|".join(CANCELLATION_PATTERNS) + r")\b", re.IGNORECASE)
CREATION_RE = re.compile(r"\b(?:new\s+task|create\s+(?:a\s+)?task|add\s+(?:a\s+)?task|assign(?:ed)?\s+to)\b", re.IGNORECASE)

# a retraction counts for a candidate raised at most this many turns earlier
CANCELLATION_WINDOW = 2


@dataclass
class CancellationHit:
    line_index: int
    phrase: str
    speaker: str


def find_cancellations(turns: Sequence[Turn]) -> List[CancellationHit]:
    hits = []
    for i, t in enumerate(turns):
        m = CANCELLATION_RE.search(t.text)
        if m:
            hits.append(CancellationHit(line_index=i, phrase=m.group(0), speaker=t.speaker))
    return hits


def locate_candidate(candidate: Candidate, turns: Sequence[Turn]) -> Optional[int]:
    """Index of the turn that carries the candidate's evidence (or, failing that, its description). Matching is on normalized text containment, in either direction for short quotes."""
    if candidate.source_line is not None and 0 <= candidate.source_line < len(turns):
        return candidate.source_line
    for needle in (candidate.evidence, candidate.description):
        n = normalize_for_compare(needle)
        if len(n) < 8:
            continue
        for i, t in enumerate(turns):
            hay = normalize_for_compare(t.text)
            if n in hay or (len(hay) >= 12 and hay in n):
                return i
    return None


def _retracted_after(turns: Sequence[Turn], idx: int, hits: List[CancellationHit]) -> Optional[CancellationHit]:
    own = turns[idx].text
    m = CANCELLATION_RE.search(own)
    # "never mind that, create a task for ..." retracts something else
    if m and not CREATION_RE.search(own[m.end():]):
        return CancellationHit(line_index=idx, phrase=m.group(0), speaker=turns[idx].speaker)
    for h in hits:
        if idx < h.line_index <= idx + CANCELLATION_WINDOW:
            # a fresh creation request between the mention and the retraction re-targets it
            between = turns[idx + 1 : h.line_index]
            if any(CREATION_RE.search(t.text) for t in between):
                continue
            if CREATION_RE.search(turns[h.line_index].text[: turns[h.line_index].text.lower().find(h.phrase.lower())]):
                continue
            return h
    return None


def apply_cancellations(
    candidates: List[Candidate],
    turns: Sequence[Turn],
) -> Tuple[List[Candidate], List[Candidate]]:
    """Split candidates into (kept, cancelled). A candidate is cancelled when a retraction phrase follows its evidence on the same turn, or appears within the next CANCELLATION_WINDOW turns with no new creation request in between. Candidates that cannot be located in the transcript are kept.
    Why available: A retraction suppresses the specific candidate it refers to, and the run summary reports how many were dropped."""
    hits = find_cancellations(turns)
    if not hits:
        return list(candidates), []

    kept: List[Candidate] = []
    cancelled: List[Candidate] = []
    for c in candidates:
        idx = locate_candidate(c, turns)
        hit = _retracted_after(turns, idx, hits) if idx is not None else None
        if hit:
            logger.info(
                "candidate_cancelled",
                extra={"description": c.description[:80], "phrase": hit.phrase, "line_index": hit.line_index},
            )
            cancelled.append(c)
        else:
            kept.append(c)
    return kept, cancelled
