"""
Run orchestration: one transcript in, one RunResult out.

normalize -> ledger lookup -> cache transcript chunks -> synchronize index
  -> {status detection, candidate extraction} (concurrent)
  -> reconcile -> allocate ids for CREATEs -> build mutations -> optionally apply
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Sequence, Union

from tasksync.core.config import settings
from tasksync.core.services import CompletionService, EmbeddingService
from tasksync.detect.status_detector import detect_status_changes, filter_by_confidence
from tasksync.extract.extractor import extract
from tasksync.extract.fields import generate_title
from tasksync.guardrails.errors import TranscriptFormatError
from tasksync.ingest.duplicate_check import candidate_key, content_hash, get_processed_run, register_processed
from tasksync.ingest.parser import Turn, has_valid_transcript_format, normalize_records, parse_transcript
from tasksync.match.reconciler import Reconciler, group_creates
from tasksync.match.similarity_index import SimilarityIndex, recently_modified
from tasksync.models.schemas import (
    STATUS_RANK,
    MatchAction,
    MatchDecision,
    RunResult,
    RunSummary,
    StatusChangeEvent,
    Task,
    TaskMutation,
    TaskStatus,
    utcnow,
)
from tasksync.pipeline.applier import apply_mutations
from tasksync.pipeline.run_context import RunContext
from tasksync.rag.retriever import ContextRetriever, TranscriptChunkStore
from tasksync.store.allocator import IdentifierAllocator

logger = logging.getLogger(__name__)

TranscriptInput = Union[str, Sequence[Turn], Sequence[dict], Sequence[tuple]]


def normalize_input(lines: TranscriptInput) -> List[Turn]:
    """Raw text, Turns, or (speaker, text) records -> Turns. Raises TranscriptFormatError when nothing usable is left."""
    if isinstance(lines, str):
        if not has_valid_transcript_format(lines):
            raise TranscriptFormatError("transcript is empty or has no speaker lines")
        turns = parse_transcript(lines)
    else:
        items = list(lines or [])
        turns = items if items and all(isinstance(x, Turn) for x in items) else normalize_records(items)
    if not turns:
        raise TranscriptFormatError("transcript is empty or has no speaker lines")
    return turns


class TaskSyncEngine:
    """Extraction-and-reconciliation engine over one task store. process() is the unit of work; each call gets its own RunContext, so calls share nothing but the stores and the index. Runs against the same task store should not overlap: the similarity index is single-writer.
    Why available: The one entry point the transport and scripts use."""

    def __init__(
        self,
        task_store,
        counter_store,
        *,
        completion_service: CompletionService,
        embedding_service: EmbeddingService,
        index: Optional[SimilarityIndex] = None,
        chunk_store: Optional[TranscriptChunkStore] = None,
        data_root: Optional[str] = None,
        prefix: Optional[str] = None,
        use_ledger: bool = True,
    ):
        self.task_store = task_store
        self.completion_service = completion_service
        self.embedding_service = embedding_service
        self.index = index or SimilarityIndex(embedding_service)
        self.chunk_store = chunk_store
        self.data_root = data_root or settings.data_root
        self.prefix = (prefix or settings.ticket_prefix).upper()
        self.use_ledger = use_ledger
        self.allocator = IdentifierAllocator(counter_store, task_store, prefix=self.prefix)
        self.retriever = ContextRetriever(embedding_service, chunk_store)
        self.reconciler = Reconciler(self.index, completion_service, self.retriever, task_lookup=task_store.get)
        self._initialized = False

    def initialize(self) -> None:
        if not self._initialized:
            self.allocator.initialize()
            self._initialized = True

    def process(
        self,
        lines: TranscriptInput,
        transcript_id: Optional[str] = None,
        *,
        participants: Iterable[str] = (),
        apply: bool = True,
    ) -> RunResult:
        """Process one transcript. Raises TranscriptFormatError for empty input and ExtractionFailure when the task finder fails; in both cases nothing is written. Degraded matching or retrieval is reported in summary.degraded_stages instead of raising."""
        turns = normalize_input(lines)
        self.initialize()
        self.index.reset_degraded()
        chash = content_hash(turns)
        prior = get_processed_run(chash, self.data_root) if self.use_ledger else None
        tid = transcript_id or (prior or {}).get("transcript_id")

        with RunContext.open(tid, self.embedding_service, content_hash=chash, prior_run=prior) as run:
            logger.info("run_started", extra={"transcript_id": run.transcript_id, "turns": len(turns), "replay": prior is not None})
            self._cache_transcript(run, turns)

            active = self.task_store.find_active_tasks()
            self.index.synchronize(recently_modified(active))

            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="tasksync") as pool:
                status_future = pool.submit(detect_status_changes, turns, self.prefix)
                extract_future = pool.submit(
                    extract, turns, list(participants), completion_service=self.completion_service
                )
                extraction = extract_future.result()
                events = filter_by_confidence(status_future.result())

            decisions = self.reconciler.reconcile(extraction.candidates, active, run)
            if self.index.degraded:
                run.mark_degraded("similarity_index", self.index.last_error or "")

            mutations = self._build_mutations(decisions, active, events, run)
            applied_events = [e for e in events if any(m.ticket_id == e.ticket_id and "status" in m.patch for m in mutations)]

            reports = []
            if apply:
                reports = apply_mutations(self.task_store, mutations, self.index)
                if self.use_ledger:
                    self._record(run, decisions, mutations, reports)

            failed = {r.ticket_id for r in reports if not r.ok}
            summary = RunSummary(
                transcript_id=run.transcript_id,
                participants=extraction.attendees,
                created=[m.ticket_id for m in mutations if m.kind == "insert" and m.ticket_id not in failed],
                updated=sorted({m.ticket_id for m in mutations if m.kind == "update" and m.ticket_id not in failed}),
                status_changes=[f"{e.ticket_id}:{e.new_status.value}" for e in applied_events],
                cancelled_candidates=len(extraction.cancelled),
                skipped_candidates=run.skipped_candidates,
                degraded_stages=list(run.degraded_stages),
                already_processed=prior is not None,
            )
            logger.info(
                "run_finished",
                extra={
                    "transcript_id": run.transcript_id,
                    "created_count": len(summary.created),
                    "updated_count": len(summary.updated),
                    "status_changes": len(summary.status_changes),
                    "degraded": summary.degraded_stages,
                },
            )
            return RunResult(summary=summary, decisions=decisions, status_events=events, mutations=mutations, reports=reports)

    # -------------------------
    # Stages
    # -------------------------

    def _cache_transcript(self, run: RunContext, turns: List[Turn]) -> None:
        try:
            if run.cache is not None:
                run.cache.store(run.transcript_id, turns)
            if self.chunk_store is not None:
                self.chunk_store.index_transcript(run.transcript_id, turns)
        except Exception as e:
            logger.warning("transcript_chunking_failed", exc_info=True, extra={"transcript_id": run.transcript_id})
            run.mark_degraded("context_retrieval", str(e))

    def _new_task(self, ticket_id: str, decision: MatchDecision, transcript_id: str) -> Task:
        c = decision.candidate
        description = str(decision.patch.get("description") or c.description)
        title = str(decision.patch.get("title") or c.title or generate_title(c.description))
        return Task(
            ticket_id=ticket_id,
            title=title,
            description=description,
            assignee=c.assignee,
            work_type=c.work_type,
            status=c.status or TaskStatus.TODO,
            estimated_time=c.estimated_time,
            time_spent=c.time_spent,
            priority=c.priority,
            story_points=c.story_points,
            is_future_plan=c.is_future_plan,
            transcript_id=transcript_id,
        )

    def _build_mutations(
        self,
        decisions: List[MatchDecision],
        active: List[Task],
        events: List[StatusChangeEvent],
        run: RunContext,
    ) -> List[TaskMutation]:
        mutations: List[TaskMutation] = []
        index_of = {id(d): i for i, d in enumerate(decisions)}
        event_for: Dict[str, StatusChangeEvent] = {e.ticket_id: e for e in events}
        by_id = {t.ticket_id: t for t in active}

        for (assignee, work_type), group in group_creates(decisions).items():
            for d in group:
                ticket_id = self.allocator.allocate_next()
                mutations.append(
                    TaskMutation(
                        kind="insert",
                        ticket_id=ticket_id,
                        task=self._new_task(ticket_id, d, run.transcript_id),
                        decision_index=index_of[id(d)],
                    )
                )

        for d in decisions:
            if d.action != MatchAction.UPDATE or not d.patch:
                continue
            patch = dict(d.patch)
            if d.matched_ticket_id in event_for:
                # explicit status language beats whatever the extractor inferred
                patch.pop("status", None)
                if set(patch) <= {"last_modified"}:
                    continue
            mutations.append(
                TaskMutation(kind="update", ticket_id=d.matched_ticket_id, patch=patch, decision_index=index_of[id(d)])
            )

        for ticket_id, event in event_for.items():
            task = by_id.get(ticket_id)
            if task is None:
                logger.info("status_event_unknown_ticket", extra={"ticket_id": ticket_id})
                continue
            if STATUS_RANK[event.new_status] <= STATUS_RANK[task.status]:
                continue
            mutations.append(
                TaskMutation(
                    kind="update",
                    ticket_id=ticket_id,
                    patch={"status": event.new_status, "last_modified": utcnow()},
                )
            )
        return mutations

    def _record(self, run: RunContext, decisions: List[MatchDecision], mutations: List[TaskMutation], reports) -> None:
        ok = {(r.ticket_id, r.kind) for r in reports if r.ok}
        created: Dict[str, str] = {}
        updated: Dict[str, List[str]] = {}
        for m in mutations:
            if m.decision_index is None or (m.ticket_id, m.kind) not in ok:
                continue
            key = candidate_key(decisions[m.decision_index].candidate)
            if m.kind == "insert":
                created[key] = m.ticket_id
            else:
                updated.setdefault(m.ticket_id, []).append(key)
        if created or updated:
            register_processed(
                run.content_hash,
                {"transcript_id": run.transcript_id, "created": created, "updated": updated},
                self.data_root,
            )
