"""
Rule-based status-change detection: finds explicit "SP-12 is done" / "started SP-12" phrasing
in normalized transcript turns, independent of the LLM stage.
"""
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from tasksync.core.config import settings
from tasksync.ingest.parser import Turn
from tasksync.models.schemas import StatusChangeEvent, TaskStatus, STATUS_RANK
from tasksync.utils.text import normalize_ticket_id

logger = logging.getLogger(__name__)

_DONE = r"(?:completed|complete|done|finished|resolved|closed)"
_STARTED = r"(?:in[\s-]progress|started|begun|underway|under\s+way|ongoing)"


def _ticket_token(prefix: str) -> str:
    # the configured prefix matches in any case; other project keys only in caps ("JIRA-7", not "for 3")
    return rf"(?P<ticket>\b(?:{re.escape(prefix)}|(?-i:[A-Z]{{2,}}))[-\s]?\d+\b)"


@dataclass(frozen=True)
class StatusPattern:
    kind: str
    status: TaskStatus
    regex: Pattern[str]
    confidence: float


def build_patterns(prefix: Optional[str] = None) -> Tuple[List[StatusPattern], List[StatusPattern]]:
    """Build the completion and in-progress pattern families for a ticket prefix. Each entry is a (regex, confidence) pair anchored on an explicit identifier token.
    Why available: Both families are data, so tests and callers with a different prefix get the same rules."""
    t = _ticket_token(prefix or settings.ticket_prefix)
    flags = re.IGNORECASE
    completion = [
        (rf"{t}\s+(?:is|was|has\s+been|have\s+been|got)\s+(?:now\s+|definitely\s+|finally\s+|already\s+)?{_DONE}\b", 0.9),
        (rf"\b(?:completed|finished|done\s+with|wrapped\s+up|closed\s+out)\s+(?:working\s+on\s+|the\s+)?(?:ticket\s+)?{t}", 0.9),
        (rf"\b(?:i|we)\s+(?:have\s+|'ve\s+|just\s+)?(?:completed|finished|resolved)\s+(?:working\s+on\s+)?(?:ticket\s+)?{t}", 0.9),
        (rf"{t}\s*[-:]\s*{_DONE}\b(?!\s+(?:by|in|within|about))", 0.8),
    ]
    in_progress = [
        (rf"{t}\s+(?:is\s+|was\s+|has\s+)?(?:now\s+|currently\s+)?{_STARTED}\b", 0.9),
        (rf"\b(?:started|began|begun|kicked\s+off|picked\s+up)\s+(?:working\s+on\s+|on\s+)?(?:ticket\s+)?{t}", 0.9),
        (rf"\b(?:working\s+on|currently\s+on|still\s+on)\s+(?:ticket\s+)?{t}", 0.8),
        (rf"{t}\s*[-:]\s*{_STARTED}\b", 0.8),
    ]
    return (
        [StatusPattern("completion", TaskStatus.COMPLETED, re.compile(p, flags), c) for p, c in completion],
        [StatusPattern("in_progress", TaskStatus.IN_PROGRESS, re.compile(p, flags), c) for p, c in in_progress],
    )


COMPLETION_PATTERNS, IN_PROGRESS_PATTERNS = build_patterns()


def _scan(text: str, patterns: List[StatusPattern]) -> List[Tuple[str, StatusPattern, str]]:
    hits = []
    for p in patterns:
        for m in p.regex.finditer(text):
            tid = normalize_ticket_id(m.group("ticket"))
            if tid != "NONE":
                hits.append((tid, p, m.group(0)))
    return hits


def detect_status_changes(
    turns: Iterable[Turn],
    prefix: Optional[str] = None,
) -> List[StatusChangeEvent]:
    """Scan turns for explicit status language and return at most one event per ticket. Completion beats in-progress for the same ticket anywhere in the run; among events of the winning kind the highest confidence is kept (earliest on ties). Malformed input yields [].
    Why available: Explicit "SP-30 is done" is stronger evidence than anything the extractor infers, so the engine applies these events with precedence."""
    if prefix:
        completion, in_progress = build_patterns(prefix)
    else:
        completion, in_progress = COMPLETION_PATTERNS, IN_PROGRESS_PATTERNS

    best: Dict[str, StatusChangeEvent] = {}
    try:
        for turn in turns:
            text = getattr(turn, "text", None)
            if not isinstance(text, str) or not text.strip():
                continue
            done_hits = _scan(text, completion)
            done_ids = {tid for tid, _, _ in done_hits}
            # a completion on the same line masks the in-progress reading of it
            progress_hits = [h for h in _scan(text, in_progress) if h[0] not in done_ids]
            for tid, pattern, quote in done_hits + progress_hits:
                event = StatusChangeEvent(
                    ticket_id=tid,
                    new_status=pattern.status,
                    confidence=pattern.confidence,
                    evidence=quote.strip(),
                    speaker=getattr(turn, "speaker", "") or "",
                    pattern_kind=pattern.kind,
                )
                prev = best.get(tid)
                if prev is None or _outranks(event, prev):
                    best[tid] = event
    except (TypeError, AttributeError):
        logger.warning("status_detection_bad_input", exc_info=True)
        return []

    events = list(best.values())
    logger.info("status_changes_detected", extra={"count": len(events)})
    return events


def _outranks(new: StatusChangeEvent, old: StatusChangeEvent) -> bool:
    if STATUS_RANK[new.new_status] != STATUS_RANK[old.new_status]:
        return STATUS_RANK[new.new_status] > STATUS_RANK[old.new_status]
    return new.confidence > old.confidence


def detect_explicit_status(text: str, prefix: Optional[str] = None) -> Optional[TaskStatus]:
    """Return the status a single utterance states for any ticket, or None. Completion wins on the same line."""
    events = detect_status_changes([Turn(line_no=1, timestamp="", speaker="", text=text or "", raw=text or "")], prefix)
    if not events:
        return None
    return max((e.new_status for e in events), key=lambda s: STATUS_RANK[s])


def filter_by_confidence(
    events: Iterable[StatusChangeEvent],
    threshold: Optional[float] = None,
) -> List[StatusChangeEvent]:
    limit = settings.status_confidence_threshold if threshold is None else threshold
    return [e for e in events if e.confidence >= limit]


def status_change_summary(events: Iterable[StatusChangeEvent]) -> Dict[str, object]:
    """Counts per status plus the ticket ids, for run summaries and logs."""
    events = list(events)
    return {
        "total": len(events),
        "completed": sorted(e.ticket_id for e in events if e.new_status == TaskStatus.COMPLETED),
        "in_progress": sorted(e.ticket_id for e in events if e.new_status == TaskStatus.IN_PROGRESS),
        "average_confidence": round(sum(e.confidence for e in events) / len(events), 3) if events else 0.0,
    }
