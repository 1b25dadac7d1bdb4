"""
Adjudication: ask the completion service whether a candidate and existing task(s) are the same real-world work item.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from tasksync.core.services import CompletionService
from tasksync.guardrails.errors import MatchingDegraded
from tasksync.models.schemas import Candidate, Task
from tasksync.prompts.loader import load_prompt
from tasksync.utils.text import normalize_ticket_id, safe_json_loads

logger = logging.getLogger(__name__)

RECOMMENDATIONS = ("UPDATE_EXISTING", "CREATE_NEW", "NEEDS_CLARIFICATION")


@dataclass
class Judgment:
    is_match: bool
    confidence: float
    reasoning: str
    matched_ticket_id: Optional[str] = None
    recommendation: str = "CREATE_NEW"
    similarities: List[str] = field(default_factory=list)
    differences: List[str] = field(default_factory=list)


def _describe_candidate(c: Candidate) -> str:
    lines = [
        f"Description: {c.description}",
        f"Assignee: {c.assignee}",
        f"Type: {c.work_type.value}",
    ]
    if c.evidence:
        lines.append(f"Evidence: {c.evidence}")
    if c.context:
        lines.append(f"Context: {c.context}")
    return "\n".join(lines)


def _describe_task(t: Task) -> str:
    return (
        f"[{t.ticket_id}] {t.title}\n"
        f"Description: {t.description}\n"
        f"Assignee: {t.assignee} | Type: {t.work_type.value} | Status: {t.status.value}"
    )


def _clamp(value) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


def parse_judgment(raw: str, tasks: Sequence[Task]) -> Judgment:
    """Decode the adjudication JSON. With a single task the matched id defaults to it; with several, an id outside the given tasks makes the judgment a non-match. Raises MatchingDegraded when the reply is not JSON."""
    data = safe_json_loads(raw)
    if data is None:
        raise MatchingDegraded("adjudication", "reply is not JSON")

    is_match = data.get("isMatch")
    if isinstance(is_match, str):
        is_match = is_match.strip().lower() in ("true", "yes")
    is_match = bool(is_match)

    known = {t.ticket_id for t in tasks}
    matched = data.get("matchedTicketId")
    matched = normalize_ticket_id(matched) if isinstance(matched, str) else None
    if matched not in known:
        matched = tasks[0].ticket_id if len(tasks) == 1 else None
    if is_match and matched is None:
        is_match = False

    recommendation = str(data.get("recommendation") or "").upper()
    if recommendation not in RECOMMENDATIONS:
        recommendation = "UPDATE_EXISTING" if is_match else "CREATE_NEW"

    return Judgment(
        is_match=is_match,
        confidence=_clamp(data.get("confidence", 0.0)),
        reasoning=str(data.get("reasoning") or "").strip(),
        matched_ticket_id=matched if is_match else None,
        recommendation=recommendation,
        similarities=[str(s) for s in data.get("similarities") or [] if s],
        differences=[str(s) for s in data.get("differences") or [] if s],
    )


def adjudicate(candidate: Candidate, tasks: Sequence[Task], completion_service: CompletionService) -> Judgment:
    """Judge whether candidate is the same work as one of tasks (the provisional similarity match, or the assignee's open tasks).
    Raises MatchingDegraded when the call fails or the reply cannot be decoded; the reconciler then falls back to heuristics.
    Why available: Similarity alone confuses neighbouring work ("fix login bug" vs "add login audit log"); this is the semantic check before an UPDATE."""
    if not tasks:
        return Judgment(is_match=False, confidence=0.0, reasoning="no tasks to compare")
    system, user = load_prompt("task_adjudicate").render(
        candidate=_describe_candidate(candidate),
        existing_tasks="\n\n".join(_describe_task(t) for t in tasks),
    )
    try:
        raw = completion_service.complete(system, user)
    except Exception as e:
        logger.warning("adjudication_call_failed", exc_info=True, extra={"tasks": len(tasks)})
        raise MatchingDegraded("adjudication", str(e)) from e
    judgment = parse_judgment(raw, tasks)
    logger.info(
        "adjudicated",
        extra={
            "is_match": judgment.is_match,
            "confidence": judgment.confidence,
            "matched": judgment.matched_ticket_id,
            "recommendation": judgment.recommendation,
        },
    )
    return judgment
