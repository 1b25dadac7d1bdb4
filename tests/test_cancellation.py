"""Unit tests for retraction handling."""
from tasksync.extract.cancellation import apply_cancellations, find_cancellations, locate_candidate
from tasksync.ingest.parser import normalize_records
from tasksync.models.schemas import Candidate


def _turns(*texts):
    return normalize_records([("Sarah", t) for t in texts])


def _candidate(description, evidence=""):
    return Candidate(description=description, assignee="Mike", evidence=evidence)


def test_retraction_within_window_cancels():
    turns = _turns(
        "Mike, new task for you: add dark mode to settings.",
        "Sure.",
        "Actually, let's not do dark mode.",
    )
    c = _candidate("Add dark mode to settings", "Mike, new task for you: add dark mode to settings")
    kept, cancelled = apply_cancellations([c], turns)
    assert kept == []
    assert cancelled == [c]


def test_retraction_on_same_line_cancels():
    turns = _turns("New task for Mike: add dark mode to settings. Scratch that.")
    kept, cancelled = apply_cancellations([_candidate("add dark mode to settings")], turns)
    assert len(cancelled) == 1


def test_retraction_before_new_request_does_not_cancel_it():
    turns = _turns("Never mind that, create a task for Mike to add dark mode to settings")
    kept, cancelled = apply_cancellations([_candidate("add dark mode to settings")], turns)
    assert len(kept) == 1
    assert cancelled == []


def test_retraction_applies_to_latest_request_only():
    turns = _turns(
        "New task for Mike: add dark mode to settings",
        "Also create a task for Priya to update the API docs",
        "Never mind.",
    )
    dark = _candidate("add dark mode to settings")
    docs = _candidate("update the API docs")
    kept, cancelled = apply_cancellations([dark, docs], turns)
    assert kept == [dark]
    assert cancelled == [docs]


def test_retraction_outside_window_is_ignored():
    turns = _turns(
        "New task for Mike: add dark mode to settings",
        "Next topic.",
        "Budget review is on Friday.",
        "Hiring update.",
        "Never mind the budget.",
    )
    kept, _ = apply_cancellations([_candidate("add dark mode to settings")], turns)
    assert len(kept) == 1


def test_unlocatable_candidate_is_kept():
    turns = _turns("Never mind.")
    kept, cancelled = apply_cancellations([_candidate("Something nobody said aloud")], turns)
    assert len(kept) == 1 and cancelled == []


def test_find_and_locate():
    turns = _turns("hello", "on second thought, skip it")
    assert [h.line_index for h in find_cancellations(turns)] == [1]
    assert locate_candidate(_candidate("nothing here", evidence="on second thought"), turns) == 1
