"""
Candidate extraction: one task-finder prompt per transcript, decoded into typed candidates.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from tasksync.core.config import settings
from tasksync.core.services import CompletionService
from tasksync.extract.cancellation import apply_cancellations, locate_candidate
from tasksync.extract.decoder import DecodeError, decode_task_blocks
from tasksync.extract.participants import detect_self_assignment, merge_participants, resolve_assignee
from tasksync.guardrails.errors import ExtractionFailure
from tasksync.ingest.parser import Turn, participants_from_turns, render_turns
from tasksync.models.schemas import Candidate, TBD_ASSIGNEE
from tasksync.prompts.loader import load_prompt

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    candidates: List[Candidate] = field(default_factory=list)
    attendees: List[str] = field(default_factory=list)
    cancelled: List[Candidate] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


def build_task_finder_prompt(turns: Sequence[Turn], participants: Sequence[str], prefix: Optional[str] = None) -> tuple[str, str]:
    """Return (system, user) prompts for the task finder with participants and transcript filled in."""
    return load_prompt("task_finder").render(
        prefix=prefix or settings.ticket_prefix,
        participants=", ".join(participants) if participants else "(none listed)",
        transcript=render_turns(turns),
    )


def _resolve(candidate: Candidate, turns: Sequence[Turn], participants: List[str]) -> Candidate:
    if candidate.is_future_plan:
        return candidate
    idx = locate_candidate(candidate, turns)
    speaker = turns[idx].speaker if idx is not None else ""
    raw = candidate.assignee
    if speaker and raw.strip().upper() == TBD_ASSIGNEE and detect_self_assignment(candidate.evidence):
        raw = "me"
    assignee = resolve_assignee(raw, participants, speaker=speaker)
    return candidate.model_copy(update={"assignee": assignee, "source_line": idx})


def extract(
    transcript_lines: Sequence[Turn],
    known_participants: Iterable[str] = (),
    *,
    completion_service: CompletionService,
) -> ExtractionResult:
    """Run the task finder over normalized transcript turns. Attendees are the known participants plus every speaker. Candidates get fuzzy-resolved assignees, and candidates retracted by a nearby cancellation phrase are moved to `cancelled`.
    Raises ExtractionFailure when the completion call errors or its reply cannot be decoded; no partial candidates are returned in that case.
    Why available: First LLM stage of a run; everything the reconciler sees comes through here."""
    turns = list(transcript_lines)
    attendees = merge_participants(known_participants, participants_from_turns(turns))
    if not turns:
        return ExtractionResult(attendees=attendees)

    system, user = build_task_finder_prompt(turns, attendees)
    try:
        raw = completion_service.complete(system, user)
    except Exception as e:
        logger.warning("task_finder_call_failed", exc_info=True, extra={"turns": len(turns)})
        raise ExtractionFailure(f"completion call failed: {e}") from e

    if not (raw or "").strip():
        raise ExtractionFailure("completion returned an empty reply", raw_reply=raw)
    try:
        decoded, rejected = decode_task_blocks(raw)
    except DecodeError as e:
        logger.warning("task_finder_unparseable", extra={"reply_preview": raw[:200]})
        raise ExtractionFailure(str(e), raw_reply=raw) from e

    resolved = [_resolve(c, turns, attendees) for c in decoded]
    kept, cancelled = apply_cancellations(resolved, turns)
    logger.info(
        "candidates_extracted",
        extra={"kept": len(kept), "cancelled": len(cancelled), "rejected": len(rejected), "attendees": len(attendees)},
    )
    return ExtractionResult(candidates=kept, attendees=attendees, cancelled=cancelled, rejected=rejected)
