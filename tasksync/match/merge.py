"""
Description merging for UPDATE decisions.

Strategies, tried in order, each tagged on the result:
- rag:   completion service rewrites the update grounded in retrieved transcript passages
- basic: "(DD/MM/YYYY): <update>" paragraph appended
- raw:   "Update: <evidence>" appended verbatim

Every strategy keeps the existing description as a prefix; descriptions only grow.
"""
import logging
from datetime import date
from typing import List, Optional

from tasksync.core.services import CompletionService
from tasksync.models.schemas import Candidate, MergeResult, MergeStrategy, Task
from tasksync.prompts.loader import load_prompt
from tasksync.rag.retriever import ContextRetriever, ScopedChunkCache
from tasksync.utils.text import collapse_ws, normalize_for_compare, safe_json_loads

logger = logging.getLogger(__name__)

RAG_CONFIDENCE = {"high": 1.0, "medium": 0.8, "low": 0.6}
BASIC_CONFIDENCE = 0.7
RAW_CONFIDENCE = 0.5
UPDATE_TYPES = ("progress", "requirements", "technical", "clarification")


class MergeRejected(Exception):
    """A strategy could not produce an acceptable merge; the next one is tried."""


def format_date(d: Optional[date] = None) -> str:
    return (d or date.today()).strftime("%d/%m/%Y")


def update_text(candidate: Candidate) -> str:
    text = candidate.description.strip()
    if candidate.context and normalize_for_compare(candidate.context) not in normalize_for_compare(text):
        text += f" ({candidate.context.strip()})"
    return text


def already_merged(current: str, candidate: Candidate) -> bool:
    """True when the candidate adds nothing: its description, or its evidence quote, is already part of the description."""
    cur = normalize_for_compare(current)
    desc = normalize_for_compare(candidate.description)
    ev = normalize_for_compare(candidate.evidence)
    return bool(cur) and ((bool(desc) and desc in cur) or (len(ev) >= 12 and ev in cur))


def basic_merge(current: str, candidate: Candidate, today: Optional[date] = None) -> str:
    update = update_text(candidate)
    if not update:
        raise MergeRejected("nothing to append")
    if not current.strip():
        return update
    return f"{current}\n\n({format_date(today)}): {update}"


def raw_append(current: str, candidate: Candidate) -> str:
    text = (candidate.evidence or candidate.description).strip()
    if not current.strip():
        return text
    return f"{current}\n\nUpdate: {text}"


def _contains_original(updated: str, current: str) -> bool:
    return collapse_ws(current) in collapse_ws(updated)


def rag_merge(
    task: Task,
    candidate: Candidate,
    *,
    completion_service: CompletionService,
    retriever: ContextRetriever,
    transcript_id: Optional[str] = None,
    cache: Optional[ScopedChunkCache] = None,
    today: Optional[date] = None,
) -> MergeResult:
    """Ground the update in retrieved transcript passages and let the completion service write it. Raises MergeRejected when there is no context, the reply is not JSON, or the reply drops part of the original description; call errors propagate."""
    query = f"{task.title} {candidate.description} {candidate.evidence}".strip()
    retrieved = retriever.retrieve_context(query, scope_to_transcript_id=transcript_id, cache=cache)
    if not retrieved.context:
        raise MergeRejected("no transcript context")

    stamp = format_date(today)
    system, user = load_prompt("rag_update").render(
        ticket_id=task.ticket_id,
        current_description=task.description,
        date=stamp,
        update=update_text(candidate),
        context=retrieved.context,
    )
    raw = completion_service.complete(system, user)
    data = safe_json_loads(raw)
    if data is None:
        raise MergeRejected("reply is not JSON")
    updated = str(data.get("updatedDescription") or "").strip()
    if not updated or not _contains_original(updated, task.description):
        raise MergeRejected("reply does not preserve the original description")
    if collapse_ws(updated) == collapse_ws(task.description):
        raise MergeRejected("reply adds nothing")

    update_type = str(data.get("updateType") or "progress").lower()
    confidence = RAG_CONFIDENCE.get(str(data.get("confidence") or "").lower(), RAG_CONFIDENCE["low"])
    sources = [str(s) for s in data.get("sources_used") or [] if s] or retrieved.source_ids
    return MergeResult(
        strategy=MergeStrategy.RAG,
        description=updated,
        update_summary=str(data.get("updateSummary") or candidate.description).strip(),
        update_type=update_type if update_type in UPDATE_TYPES else "progress",
        confidence=confidence,
        sources_used=sources,
        reasoning=str(data.get("reasoning") or "").strip(),
    )


def merge_update(
    task: Task,
    candidate: Candidate,
    *,
    completion_service: Optional[CompletionService] = None,
    retriever: Optional[ContextRetriever] = None,
    transcript_id: Optional[str] = None,
    cache: Optional[ScopedChunkCache] = None,
    today: Optional[date] = None,
) -> MergeResult:
    """Merge candidate into task.description with the first strategy that works. A RAG reply that is unusable falls back to basic; a RAG call that errors falls back to raw. `attempts` records why earlier strategies were skipped.
    Why available: The reconciler's single merge entry point; the strategy tag on the result tells auditors which merges were confidence-reduced."""
    attempts: List[str] = []
    current = task.description or ""

    if completion_service is not None and retriever is not None:
        try:
            result = rag_merge(
                task,
                candidate,
                completion_service=completion_service,
                retriever=retriever,
                transcript_id=transcript_id,
                cache=cache,
                today=today,
            )
            return result
        except MergeRejected as e:
            attempts.append(f"rag: {e}")
        except Exception as e:
            logger.warning("rag_merge_failed", exc_info=True, extra={"ticket_id": task.ticket_id})
            attempts.append(f"rag: error {e}")
            return MergeResult(
                strategy=MergeStrategy.RAW,
                description=raw_append(current, candidate),
                update_summary=candidate.description,
                confidence=RAW_CONFIDENCE,
                reasoning="merge call failed; evidence appended verbatim",
                attempts=attempts,
            )
    else:
        attempts.append("rag: unavailable")

    try:
        return MergeResult(
            strategy=MergeStrategy.BASIC,
            description=basic_merge(current, candidate, today),
            update_summary=candidate.description,
            confidence=BASIC_CONFIDENCE,
            reasoning="update appended with date stamp",
            attempts=attempts,
        )
    except MergeRejected as e:
        attempts.append(f"basic: {e}")

    return MergeResult(
        strategy=MergeStrategy.RAW,
        description=raw_append(current, candidate),
        update_summary=candidate.description,
        confidence=RAW_CONFIDENCE,
        reasoning="evidence appended verbatim",
        attempts=attempts,
    )


def draft_new_task(
    candidate: Candidate,
    *,
    completion_service: Optional[CompletionService] = None,
    retriever: Optional[ContextRetriever] = None,
    transcript_id: Optional[str] = None,
    cache: Optional[ScopedChunkCache] = None,
) -> Candidate:
    """Title and description for a CREATE. With transcript context the completion service drafts them; the drafted description is kept only when it still contains the task statement, the title is kept when non-empty. Any failure returns the candidate unchanged."""
    if completion_service is None or retriever is None:
        return candidate
    try:
        retrieved = retriever.retrieve_context(
            f"{candidate.description} {candidate.evidence}".strip(),
            scope_to_transcript_id=transcript_id,
            cache=cache,
        )
        if not retrieved.context:
            return candidate
        system, user = load_prompt("rag_create").render(
            candidate=f"{candidate.description}\nAssignee: {candidate.assignee}\nEvidence: {candidate.evidence}",
            context=retrieved.context,
        )
        data = safe_json_loads(completion_service.complete(system, user))
    except Exception:
        logger.warning("draft_new_task_failed", exc_info=True, extra={"description": candidate.description[:80]})
        return candidate
    if data is None:
        return candidate

    update: dict = {}
    title = collapse_ws(str(data.get("title") or ""))[:60]
    if title:
        update["title"] = title
    description = str(data.get("description") or "").strip()
    if description and normalize_for_compare(candidate.description) in normalize_for_compare(description):
        update["description"] = description
    return candidate.model_copy(update=update) if update else candidate
