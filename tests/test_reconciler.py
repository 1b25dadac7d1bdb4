"""Unit tests for match decisions and update patches."""
from datetime import date

import pytest
from fakes import ScriptedCompletion, json_reply

from tasksync.ingest.duplicate_check import candidate_key
from tasksync.match.reconciler import Reconciler, compute_patch, group_creates
from tasksync.models.schemas import (
    Candidate,
    MatchAction,
    MatchPath,
    MergeStrategy,
    Priority,
    Task,
    TaskStatus,
    TBD_ASSIGNEE,
    WorkType,
)
from tasksync.pipeline.run_context import RunContext

TODAY = date(2026, 10, 17)
LOGIN = Task(ticket_id="SP-1", title="Fix login redirect", description="Fix login redirect", assignee="Mike")
WEBHOOK = Task(ticket_id="SP-25", title="Payment webhook retries", description="Payment webhook retries", assignee="Mike", time_spent=2.0)

MATCH = json_reply({"isMatch": True, "confidence": 0.9, "reasoning": "same work"})
NO_MATCH = json_reply({"isMatch": False, "confidence": 0.9, "reasoning": "different feature"})


@pytest.fixture
def seeded(index):
    for t in (LOGIN, WEBHOOK):
        index.add_task(t)
    return index


def _reconciler(index, completion=None):
    return Reconciler(index, completion, None, similarity_threshold=0.6)


def test_explicit_ticket_id_updates_and_accumulates_time(seeded):
    c = Candidate(description="Handle duplicate deliveries", assignee="Mike", ticket_id_hint="sp-25", time_spent=3.0)
    [d] = _reconciler(seeded).reconcile([c], [LOGIN, WEBHOOK], today=TODAY)
    assert d.action == MatchAction.UPDATE
    assert d.match_path == MatchPath.EXPLICIT_ID
    assert d.matched_ticket_id == "SP-25"
    assert d.merge.strategy == MergeStrategy.BASIC
    assert d.patch["time_spent"] == 5.0
    assert d.patch["description"] == "Payment webhook retries\n\n(17/10/2026): Handle duplicate deliveries"


def test_explicit_ticket_id_of_closed_task_is_fetched_from_store(seeded):
    shipped = Task(ticket_id="SP-40", title="Export CSV", description="Export CSV", assignee="Mike", status=TaskStatus.COMPLETED)
    c = Candidate(description="Add the totals row to the CSV export", assignee="Mike", ticket_id_hint="SP-40")
    reconciler = Reconciler(seeded, None, None, similarity_threshold=0.6, task_lookup={"SP-40": shipped}.get)
    [d] = reconciler.reconcile([c], [LOGIN, WEBHOOK], today=TODAY)
    assert d.action == MatchAction.UPDATE
    assert d.match_path == MatchPath.EXPLICIT_ID
    assert d.matched_ticket_id == "SP-40"
    assert d.patch["description"].startswith("Export CSV\n\n")
    assert "status" not in d.patch


def test_unknown_ticket_id_without_store_hit_creates(seeded):
    c = Candidate(description="Add the totals row to the CSV export", assignee="Priya", ticket_id_hint="SP-99")
    reconciler = Reconciler(seeded, None, None, similarity_threshold=0.6, task_lookup={}.get)
    [d] = reconciler.reconcile([c], [LOGIN, WEBHOOK])
    assert d.action == MatchAction.CREATE

def test_similar_task_confirmed_by_adjudication(seeded):
    c = Candidate(description="Fix login redirect for SSO users", assignee="Mike")
    completion = ScriptedCompletion(task_adjudicate=MATCH)
    [d] = _reconciler(seeded, completion).reconcile([c], [LOGIN, WEBHOOK], today=TODAY)
    assert d.action == MatchAction.UPDATE
    assert d.match_path == MatchPath.SIMILARITY
    assert d.matched_ticket_id == "SP-1"
    assert 0.6 <= d.similarity < 1.0
    assert d.confidence == 0.9
    assert "[SP-1]" in completion.calls[0]["user"]


def test_rejected_neighbour_becomes_create(seeded):
    c = Candidate(description="Fix login redirect for SSO users", assignee="Mike")
    [d] = _reconciler(seeded, ScriptedCompletion(task_adjudicate=NO_MATCH)).reconcile([c], [LOGIN, WEBHOOK])
    assert d.action == MatchAction.CREATE
    assert d.confidence == 0.7
    assert d.reasoning == "different feature"


def test_assignee_open_tasks_adjudicated_without_similarity_hit(seeded):
    c = Candidate(description="Exponential backoff for the webhook sender", assignee="Mike")
    completion = ScriptedCompletion(task_adjudicate=json_reply({"isMatch": True, "confidence": 0.8, "matchedTicketId": "SP-25"}))
    [d] = _reconciler(seeded, completion).reconcile([c], [LOGIN, WEBHOOK], today=TODAY)
    assert d.match_path == MatchPath.ADJUDICATION
    assert d.matched_ticket_id == "SP-25"


def test_no_comparable_task_creates(seeded):
    c = Candidate(description="Write the onboarding guide", assignee="Priya", work_type=WorkType.NON_CODING)
    completion = ScriptedCompletion()
    [d] = _reconciler(seeded, completion).reconcile([c], [LOGIN, WEBHOOK])
    assert d.action == MatchAction.CREATE
    assert d.confidence == 1.0
    assert d.reasoning == "no comparable open task"
    assert completion.calls == []


def test_adjudication_outage_keeps_similarity_match(seeded):
    c = Candidate(description="Fix login redirect for SSO users", assignee="Mike")
    run = RunContext(transcript_id="m1")
    completion = ScriptedCompletion(task_adjudicate=RuntimeError("503"))
    [d] = _reconciler(seeded, completion).reconcile([c], [LOGIN, WEBHOOK], run=run, today=TODAY)
    assert d.action == MatchAction.UPDATE
    assert d.degraded is True
    assert d.confidence == min(d.similarity, 0.7)
    assert d.merge.strategy == MergeStrategy.BASIC
    assert run.degraded_stages == ["adjudication"]


def test_adjudication_outage_uses_heuristics(index):
    task = Task(ticket_id="SP-1", title="Fix login redirect", description="Fix login redirect after SSO", assignee="Mike")
    index.add_task(task)
    c = Candidate(description="Fix login redirect after SSO for mobile", assignee="Mike")
    completion = ScriptedCompletion(task_adjudicate="not json at all")
    [d] = Reconciler(index, completion, similarity_threshold=0.99).reconcile([c], [task])
    assert d.match_path == MatchPath.HEURISTIC
    assert d.matched_ticket_id == "SP-1"
    assert d.confidence == 0.66
    assert d.degraded is True


def test_adjudication_outage_without_heuristic_match_creates_degraded(seeded):
    c = Candidate(description="Migrate billing database", assignee="Mike", work_type=WorkType.NON_CODING)
    completion = ScriptedCompletion(task_adjudicate=RuntimeError("503"))
    [d] = _reconciler(seeded, completion).reconcile([c], [LOGIN, WEBHOOK])
    assert d.action == MatchAction.CREATE
    assert d.degraded is True
    assert d.confidence == 0.5


def test_adjudication_outage_does_not_merge_on_shared_verb(index):
    bug = Task(ticket_id="SP-3", title="Fix login bug", description="Fix login bug", assignee="Mike", work_type=WorkType.BUG)
    index.add_task(bug)
    c = Candidate(description="Fix payment crash", assignee="Mike", work_type=WorkType.BUG)
    run = RunContext(transcript_id="m1")
    completion = ScriptedCompletion(task_adjudicate=RuntimeError("503"))
    [d] = Reconciler(index, completion, similarity_threshold=0.99).reconcile([c], [bug], run=run)
    assert d.action == MatchAction.CREATE
    assert d.matched_ticket_id is None
    assert d.degraded is True
    assert d.reasoning.startswith("no heuristic match")
    assert run.degraded_stages == ["adjudication"]


def test_duplicate_creates_are_skipped(seeded):
    c = Candidate(description="Write the onboarding guide", assignee="Priya")
    run = RunContext(transcript_id="m1")
    decisions = _reconciler(seeded).reconcile([c, c.model_copy()], [LOGIN, WEBHOOK], run=run)
    assert len(decisions) == 1
    assert run.skipped_candidates == 1


def test_second_update_builds_on_first(seeded):
    a = Candidate(description="Handle duplicate deliveries", assignee="Mike", ticket_id_hint="SP-25", time_spent=1.0)
    b = Candidate(description="Log every retry attempt", assignee="Mike", ticket_id_hint="SP-25", time_spent=1.0)
    first, second = _reconciler(seeded).reconcile([a, b], [LOGIN, WEBHOOK], today=TODAY)
    assert second.patch["description"].startswith(first.patch["description"])
    assert second.patch["time_spent"] == 4.0


def test_ledger_replay_changes_nothing(seeded):
    c = Candidate(description="Write the onboarding guide", assignee="Priya")
    guide = Task(ticket_id="SP-40", title="Onboarding guide", description="Write the onboarding guide", assignee="Priya")
    run = RunContext(transcript_id="m1", prior_run={"created": {candidate_key(c): "SP-40"}, "updated": {}})
    [d] = _reconciler(seeded).reconcile([c], [LOGIN, WEBHOOK, guide], run=run)
    assert d.match_path == MatchPath.LEDGER
    assert d.matched_ticket_id == "SP-40"
    assert d.patch == {}


def test_previously_merged_update_is_not_reapplied(seeded):
    c = Candidate(description="Handle duplicate deliveries", assignee="Mike", ticket_id_hint="SP-25", time_spent=3.0)
    run = RunContext(transcript_id="m1", prior_run={"created": {}, "updated": {"SP-25": [candidate_key(c)]}})
    [d] = _reconciler(seeded).reconcile([c], [LOGIN, WEBHOOK], run=run)
    assert d.action == MatchAction.UPDATE
    assert d.patch == {}


def test_compute_patch_rules():
    task = Task(ticket_id="SP-7", description="Rewrite mobile app", assignee=TBD_ASSIGNEE, is_future_plan=True, status=TaskStatus.IN_PROGRESS)
    c = Candidate(
        description="Rewrite mobile app",
        assignee="Priya",
        status=TaskStatus.TODO,
        priority=Priority.HIGH,
        story_points=8,
        estimated_time=40.0,
        title="Mobile rewrite",
    )
    patch = compute_patch(task, c, None)
    assert patch["assignee"] == "Priya"
    assert patch["is_future_plan"] is False
    assert patch["priority"] == Priority.HIGH
    assert patch["story_points"] == 8
    assert patch["estimated_time"] == 40.0
    assert patch["title"] == "Mobile rewrite"
    assert "status" not in patch
    assert "last_modified" in patch


def test_compute_patch_empty_when_nothing_changes():
    task = Task(ticket_id="SP-7", title="Login", description="Fix login", assignee="Mike", status=TaskStatus.COMPLETED)
    c = Candidate(description="Fix login", assignee="Mike", status=TaskStatus.IN_PROGRESS)
    assert compute_patch(task, c, None) == {}


def test_group_creates(seeded):
    cs = [
        Candidate(description="Write the onboarding guide", assignee="Priya", work_type=WorkType.NON_CODING),
        Candidate(description="Set up staging database", assignee="Sarah"),
        Candidate(description="Record the onboarding video", assignee="Priya", work_type=WorkType.NON_CODING),
    ]
    decisions = _reconciler(seeded).reconcile(cs, [LOGIN, WEBHOOK])
    groups = group_creates(decisions)
    assert list(groups) == [("Priya", "Non-Coding"), ("Sarah", "Coding")]
    assert len(groups[("Priya", "Non-Coding")]) == 2
