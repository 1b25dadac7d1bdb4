"""
Reconciler: decide CREATE or UPDATE for every candidate of a run.

Order of evidence per candidate:
1. explicit ticket id that exists in the store, open or closed
2. ledger mapping from an earlier run over the same transcript, open or closed
3. similarity index hit (cosine, scaled by work-type compatibility), confirmed by adjudication
4. adjudication over the assignee's open tasks when there is no usable hit
5. CREATE
"""
import logging
from collections import OrderedDict
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tasksync.core.config import settings
from tasksync.core.services import CompletionService
from tasksync.guardrails.errors import MatchingDegraded
from tasksync.ingest.duplicate_check import candidate_key
from tasksync.match.adjudicator import adjudicate
from tasksync.match.heuristics import adjusted_confidence_threshold, best_heuristic_match, type_compatibility
from tasksync.match.merge import already_merged, draft_new_task, merge_update
from tasksync.match.similarity_index import SimilarityIndex, candidate_embedding_text
from tasksync.models.schemas import (
    STATUS_RANK,
    TBD_ASSIGNEE,
    Candidate,
    MatchAction,
    MatchDecision,
    MatchPath,
    MergeResult,
    Task,
    TaskStatus,
    utcnow,
)
from tasksync.rag.retriever import ContextRetriever
from tasksync.utils.text import normalize_for_compare, normalize_ticket_id

logger = logging.getLogger(__name__)

DEFAULT_CREATE_CONFIDENCE = 1.0
REJECTED_NEIGHBOUR_CONFIDENCE = 0.7
DEGRADED_CREATE_CONFIDENCE = 0.5


def compute_patch(task: Task, candidate: Candidate, merge: Optional[MergeResult]) -> Dict[str, object]:
    """Field changes an UPDATE applies to task. time_spent accumulates; estimated_time is replaced only by a fresh non-zero value; status only moves forward; priority and story points are taken when supplied. Empty when nothing changes."""
    patch: Dict[str, object] = {}
    if merge is not None and merge.description != task.description:
        patch["description"] = merge.description
    if candidate.time_spent > 0:
        patch["time_spent"] = round(task.time_spent + candidate.time_spent, 2)
    if candidate.estimated_time > 0 and candidate.estimated_time != task.estimated_time:
        patch["estimated_time"] = candidate.estimated_time
    if (
        candidate.status is not None
        and candidate.status != TaskStatus.TODO
        and STATUS_RANK[candidate.status] > STATUS_RANK[task.status]
    ):
        patch["status"] = candidate.status
    if candidate.priority is not None and candidate.priority != task.priority:
        patch["priority"] = candidate.priority
    if candidate.story_points is not None and candidate.story_points != task.story_points:
        patch["story_points"] = candidate.story_points
    if task.assignee == TBD_ASSIGNEE and candidate.assignee != TBD_ASSIGNEE and not candidate.is_future_plan:
        patch["assignee"] = candidate.assignee
        patch["is_future_plan"] = False
    if not task.title and candidate.title:
        patch["title"] = candidate.title
    if patch:
        patch["last_modified"] = utcnow()
    return patch


def group_creates(decisions: Sequence[MatchDecision]) -> "OrderedDict[Tuple[str, str], List[MatchDecision]]":
    """CREATE decisions grouped by (assignee, work type) in first-seen order. Future plans all carry assignee TBD, so they share one bucket per type."""
    groups: "OrderedDict[Tuple[str, str], List[MatchDecision]]" = OrderedDict()
    for d in decisions:
        if d.action != MatchAction.CREATE:
            continue
        key = (d.candidate.assignee, d.candidate.work_type.value)
        groups.setdefault(key, []).append(d)
    return groups


class Reconciler:
    """Turns candidates into MatchDecisions against the current open tasks. UPDATE decisions carry the merged description and a field patch; CREATE decisions carry an optional drafted title/description in `patch`. A failure on one candidate is logged and that candidate is skipped.
    Why available: Central matching stage of a run; keeps duplicate tickets out of the store while never overwriting existing descriptions."""

    def __init__(
        self,
        index: SimilarityIndex,
        completion_service: Optional[CompletionService] = None,
        retriever: Optional[ContextRetriever] = None,
        *,
        similarity_threshold: Optional[float] = None,
        enrich_creates: bool = True,
        task_lookup: Optional[Callable[[str], Optional[Task]]] = None,
    ):
        self.index = index
        self.completion_service = completion_service
        self.retriever = retriever
        self.similarity_threshold = settings.similarity_threshold if similarity_threshold is None else similarity_threshold
        self.enrich_creates = enrich_creates
        self.task_lookup = task_lookup

    def reconcile(self, candidates: Sequence[Candidate], existing_tasks: Sequence[Task], run=None, today: Optional[date] = None) -> List[MatchDecision]:
        # working copies: a second candidate for the same ticket merges onto the first one's result
        tasks: Dict[str, Task] = {t.ticket_id: t for t in existing_tasks}
        decisions: List[MatchDecision] = []
        seen_creates = set()

        for candidate in candidates:
            try:
                decision = self._decide(candidate, tasks, run)
                if decision.action == MatchAction.UPDATE:
                    decision = self._with_merge(decision, tasks[decision.matched_ticket_id], run, today)
                    if decision.patch:
                        tasks[decision.matched_ticket_id] = tasks[decision.matched_ticket_id].model_copy(update=decision.patch)
                else:
                    dedupe_key = (normalize_for_compare(candidate.description), candidate.assignee.lower())
                    if dedupe_key in seen_creates:
                        logger.info("duplicate_create_skipped", extra={"description": candidate.description[:80]})
                        self._skip(run)
                        continue
                    seen_creates.add(dedupe_key)
                    decision = self._with_draft(decision, run)
            except Exception:
                logger.error("reconcile_candidate_failed", exc_info=True, extra={"description": candidate.description[:80]})
                self._skip(run)
                continue
            decisions.append(decision)

        logger.info(
            "reconciled",
            extra={
                "candidates": len(candidates),
                "create": sum(1 for d in decisions if d.action == MatchAction.CREATE),
                "update": sum(1 for d in decisions if d.action == MatchAction.UPDATE),
                "degraded": sum(1 for d in decisions if d.degraded),
            },
        )
        return decisions

    @staticmethod
    def _skip(run) -> None:
        if run is not None:
            run.skipped_candidates += 1

    # -------------------------
    # Matching
    # -------------------------

    def _decide(self, candidate: Candidate, tasks: Dict[str, Task], run) -> MatchDecision:
        hint = normalize_ticket_id(candidate.ticket_id_hint)
        if self._resolve(hint, tasks):
            return MatchDecision(
                candidate=candidate,
                action=MatchAction.UPDATE,
                matched_ticket_id=hint,
                confidence=1.0,
                reasoning=f"explicit ticket id {hint}",
                match_path=MatchPath.EXPLICIT_ID,
            )
        if candidate.ticket_id_hint.strip().upper() not in ("", "NONE"):
            logger.info("unknown_ticket_hint", extra={"hint": candidate.ticket_id_hint})

        if run is not None:
            prior = run.prior_ticket_for(candidate_key(candidate))
            if prior is not None and self._resolve(prior, tasks):
                return MatchDecision(
                    candidate=candidate,
                    action=MatchAction.UPDATE,
                    matched_ticket_id=prior,
                    confidence=1.0,
                    reasoning=f"created as {prior} when this transcript was first processed",
                    match_path=MatchPath.LEDGER,
                )

        open_tasks = [t for t in tasks.values() if t.is_open]
        provisional, similarity = self._similar(candidate, tasks)
        if run is not None and self.index.degraded:
            run.mark_degraded("similarity_index", self.index.last_error or "")

        if provisional is not None:
            pool = [provisional]
        else:
            pool = [t for t in open_tasks if t.assignee.lower() == candidate.assignee.lower()]
        if not pool:
            return self._create(candidate, "no comparable open task", similarity)

        assignee_open = sum(1 for t in open_tasks if t.assignee.lower() == candidate.assignee.lower())
        threshold = adjusted_confidence_threshold(candidate.description, assignee_open)
        if self.completion_service is None:
            return self._fallback(candidate, pool, provisional, similarity, threshold, "no completion service")
        try:
            judgment = adjudicate(candidate, pool, self.completion_service)
        except MatchingDegraded as e:
            if run is not None:
                run.mark_degraded("adjudication", str(e))
            return self._fallback(candidate, pool, provisional, similarity, threshold, str(e))

        if judgment.is_match and judgment.confidence >= threshold and judgment.matched_ticket_id in tasks:
            return MatchDecision(
                candidate=candidate,
                action=MatchAction.UPDATE,
                matched_ticket_id=judgment.matched_ticket_id,
                similarity=similarity,
                confidence=judgment.confidence,
                reasoning=judgment.reasoning or "adjudicated as the same work",
                match_path=MatchPath.SIMILARITY if provisional is not None else MatchPath.ADJUDICATION,
            )
        return MatchDecision(
            candidate=candidate,
            action=MatchAction.CREATE,
            similarity=similarity,
            confidence=REJECTED_NEIGHBOUR_CONFIDENCE,
            reasoning=judgment.reasoning or f"adjudication below threshold {threshold:.2f}",
        )

    def _resolve(self, ticket_id: str, tasks: Dict[str, Task]) -> bool:
        """True when ticket_id names a stored task. Closed tasks are outside the run's open snapshot, so they are fetched from the store and added to the working set."""
        if ticket_id in tasks:
            return True
        if self.task_lookup is None or ticket_id == "NONE":
            return False
        task = self.task_lookup(ticket_id)
        if task is None:
            return False
        tasks[ticket_id] = task
        return True

    def _similar(self, candidate: Candidate, tasks: Dict[str, Task]) -> Tuple[Optional[Task], Optional[float]]:
        """Top open hit scaled by type compatibility, if it still clears the similarity threshold."""
        query = candidate_embedding_text(candidate.description, candidate.assignee, candidate.work_type.value)
        hits = self.index.search(query, k=1, score_threshold=self.similarity_threshold)
        if not hits:
            return None, None
        hit = hits[0]
        task = tasks.get(hit.ticket_id)
        if task is None or not task.is_open:
            return None, None
        score = round(hit.similarity * type_compatibility(candidate.work_type, task.work_type), 4)
        if score < self.similarity_threshold:
            logger.info("similarity_inconclusive", extra={"ticket_id": task.ticket_id, "score": score})
            return None, score
        return task, score

    def _fallback(
        self,
        candidate: Candidate,
        pool: List[Task],
        provisional: Optional[Task],
        similarity: Optional[float],
        threshold: float,
        reason: str,
    ) -> MatchDecision:
        """Adjudication unavailable: keep a provisional similarity match, else try local heuristics against the same threshold adjudication would have used. Either way the decision is tagged degraded."""
        if provisional is not None:
            return MatchDecision(
                candidate=candidate,
                action=MatchAction.UPDATE,
                matched_ticket_id=provisional.ticket_id,
                similarity=similarity,
                confidence=min(similarity or 0.0, 0.7),
                reasoning=f"similarity match kept without adjudication ({reason})",
                match_path=MatchPath.SIMILARITY,
                degraded=True,
            )
        heuristic = best_heuristic_match(candidate, pool, threshold)
        if heuristic is not None:
            return MatchDecision(
                candidate=candidate,
                action=MatchAction.UPDATE,
                matched_ticket_id=heuristic.ticket_id,
                similarity=similarity,
                confidence=heuristic.confidence,
                reasoning=f"heuristic match: {heuristic.reasoning}",
                match_path=MatchPath.HEURISTIC,
                degraded=True,
            )
        decision = self._create(candidate, f"no heuristic match ({reason})", similarity)
        return decision.model_copy(update={"degraded": True, "confidence": DEGRADED_CREATE_CONFIDENCE})

    @staticmethod
    def _create(candidate: Candidate, reasoning: str, similarity: Optional[float] = None) -> MatchDecision:
        return MatchDecision(
            candidate=candidate,
            action=MatchAction.CREATE,
            similarity=similarity,
            confidence=DEFAULT_CREATE_CONFIDENCE,
            reasoning=reasoning,
        )

    # -------------------------
    # Merge / draft
    # -------------------------

    def _with_merge(self, decision: MatchDecision, task: Task, run, today: Optional[date]) -> MatchDecision:
        candidate = decision.candidate
        key = candidate_key(candidate)
        merge: Optional[MergeResult] = None
        replayed = decision.match_path == MatchPath.LEDGER or (run is not None and run.previously_merged(task.ticket_id, key))
        if replayed:
            # this transcript already produced this change; applying it again would double time_spent
            logger.info("merge_replayed", extra={"ticket_id": task.ticket_id})
            return decision.model_copy(update={"merge": None, "patch": {}})
        if already_merged(task.description, candidate):
            logger.info("merge_noop", extra={"ticket_id": task.ticket_id})
        else:
            # degraded decisions never spend another completion call
            rag_ok = not decision.degraded
            merge = merge_update(
                task,
                candidate,
                completion_service=self.completion_service if rag_ok else None,
                retriever=self.retriever if rag_ok else None,
                transcript_id=run.transcript_id if run is not None else None,
                cache=run.cache if run is not None else None,
                today=today,
            )
            logger.info("merged", extra={"ticket_id": task.ticket_id, "strategy": merge.strategy.value})
        return decision.model_copy(update={"merge": merge, "patch": compute_patch(task, candidate, merge)})

    def _with_draft(self, decision: MatchDecision, run) -> MatchDecision:
        if not self.enrich_creates or decision.degraded:
            return decision
        drafted = draft_new_task(
            decision.candidate,
            completion_service=self.completion_service,
            retriever=self.retriever,
            transcript_id=run.transcript_id if run is not None else None,
            cache=run.cache if run is not None else None,
        )
        patch = {}
        if drafted.title and drafted.title != decision.candidate.title:
            patch["title"] = drafted.title
        if drafted.description != decision.candidate.description:
            patch["description"] = drafted.description
        return decision.model_copy(update={"patch": patch}) if patch else decision
