import logging
from typing import List, Optional, Sequence

from tasksync.guardrails.errors import StoreWriteFailure
from tasksync.match.similarity_index import SimilarityIndex
from tasksync.models.schemas import MutationReport, TaskMutation

logger = logging.getLogger(__name__)


def _apply_one(task_store, mutation: TaskMutation):
    try:
        if mutation.kind == "insert":
            task_store.insert(mutation.task)
            return mutation.task
        return task_store.update_by_ticket_id(mutation.ticket_id, mutation.patch)
    except Exception as e:
        raise StoreWriteFailure(mutation.ticket_id, mutation.kind, str(e)) from e


def apply_mutations(task_store, mutations: Sequence[TaskMutation], index: Optional[SimilarityIndex] = None) -> List[MutationReport]:
    """Apply each mutation on its own; a failed write is reported and the rest still run (the batch is not transactional). Written tasks are re-added to the similarity index; an index failure does not fail the mutation.
    Why available: Reference persistence step for callers (the HTTP transport, tests) that let the engine write to the store."""
    reports: List[MutationReport] = []
    for m in mutations:
        try:
            written = _apply_one(task_store, m)
        except StoreWriteFailure as e:
            logger.error("store_write_failed", exc_info=True, extra={"ticket_id": e.ticket_id, "kind": e.kind})
            reports.append(MutationReport(ticket_id=m.ticket_id, kind=m.kind, ok=False, error=str(e)))
            continue
        if index is not None and written is not None:
            index.add_task(written)
        reports.append(MutationReport(ticket_id=m.ticket_id, kind=m.kind, ok=True))
    logger.info(
        "mutations_applied",
        extra={"total": len(reports), "failed": sum(1 for r in reports if not r.ok)},
    )
    return reports
