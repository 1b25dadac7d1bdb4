"""Unit tests for the task similarity index."""
from datetime import datetime, timedelta, timezone

from fakes import BrokenEmbedder

from tasksync.match.similarity_index import (
    SimilarityIndex,
    candidate_embedding_text,
    recently_modified,
    task_embedding_text,
)
from tasksync.models.schemas import Task, TaskStatus

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _task(ticket, title, assignee="Mike Chen", status=TaskStatus.TODO, last_modified=NOW):
    return Task(ticket_id=ticket, title=title, description=title, assignee=assignee, status=status, last_modified=last_modified)


def test_embedding_texts():
    t = _task("SP-1", "Fix login redirect")
    assert task_embedding_text(t).splitlines()[0] == "Fix login redirect. Fix login redirect"
    assert "Assignee: Mike Chen" in task_embedding_text(t)
    assert candidate_embedding_text("Fix it", "Mike") == "Fix it\nAssignee: Mike"


def test_add_and_search(index):
    index.add_task(_task("SP-1", "Fix login redirect"))
    index.add_task(_task("SP-2", "Write onboarding guide"))

    hits = index.search("Fix login redirect", k=2, score_threshold=0.5)
    assert [h.ticket_id for h in hits] == ["SP-1"]
    assert hits[0].similarity > 0.99
    assert hits[0].metadata["assignee"] == "Mike Chen"
    assert index.degraded is False


def test_completed_tasks_only_with_open_only_false(index):
    index.add_task(_task("SP-1", "Fix login redirect", status=TaskStatus.COMPLETED))
    assert index.search("Fix login redirect", score_threshold=0.5) == []
    assert [h.ticket_id for h in index.search("Fix login redirect", score_threshold=0.5, open_only=False)] == ["SP-1"]


def test_assignee_filter(index):
    index.add_task(_task("SP-1", "Fix login redirect", assignee="Sarah Johnson"))
    assert index.search("Fix login redirect", score_threshold=0.5, assignee="Mike Chen") == []
    assert len(index.search("Fix login redirect", score_threshold=0.5, assignee="Sarah Johnson")) == 1


def test_remove_and_empty_query(index):
    index.add_task(_task("SP-1", "Fix login redirect"))
    assert index.remove("SP-1") is True
    assert index.search("Fix login redirect", score_threshold=0.5) == []
    assert index.search("   ") == []


def test_search_without_collection_is_empty(index):
    assert index.search("anything", score_threshold=0.0) == []
    assert index.degraded is False


def test_rebuild_replaces_contents(index, embedder):
    index.add_task(_task("SP-9", "Stale entry"))
    tasks = [_task("SP-1", "Fix login redirect"), _task("SP-2", "Write onboarding guide")]
    tasks[0].embedding = embedder.embed(task_embedding_text(tasks[0]))
    calls_before = embedder.calls

    assert index.rebuild(tasks) == 2
    assert embedder.calls == calls_before + 1
    assert index.search("Stale entry", score_threshold=0.9) == []
    assert len(index.search("Write onboarding guide", score_threshold=0.9)) == 1


def test_synchronize_refreshes_stale_and_missing(index):
    old = _task("SP-1", "Fix login redirect")
    index.add_task(old)
    assert index.synchronize([old]) == 0

    edited = old.model_copy(update={"title": "Fix SSO redirect", "description": "Fix SSO redirect", "last_modified": NOW + timedelta(hours=1)})
    missing = _task("SP-2", "Write onboarding guide")
    assert index.synchronize([edited, missing]) == 2
    assert [h.ticket_id for h in index.search("Fix SSO redirect", score_threshold=0.9)] == ["SP-1"]


def test_write_failure_marks_degraded(qdrant):
    broken = SimilarityIndex(BrokenEmbedder(), client=qdrant, collection="broken", cache_ttl_seconds=0)
    assert broken.add_task(_task("SP-1", "Fix login redirect")) is False
    assert broken.degraded is True
    assert broken.last_error == "similarity_index_add_failed"


def test_search_failure_returns_empty_and_degrades(index):
    index.add_task(_task("SP-1", "Fix login redirect"))
    index.embedding_service = BrokenEmbedder()
    assert index.search("Fix login redirect", score_threshold=0.5) == []
    assert index.degraded is True


def test_recently_modified():
    fresh = _task("SP-1", "a", last_modified=NOW - timedelta(days=1))
    stale = _task("SP-2", "b", last_modified=NOW - timedelta(days=30))
    assert recently_modified([fresh, stale], days=7, now=NOW) == [fresh]
