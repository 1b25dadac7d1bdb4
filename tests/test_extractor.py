"""Unit tests for candidate extraction."""
import pytest
from fakes import ScriptedCompletion, finder_reply, task_block

from tasksync.extract.extractor import build_task_finder_prompt, extract
from tasksync.guardrails.errors import ExtractionFailure
from tasksync.ingest.parser import parse_transcript
from tasksync.models.schemas import TBD_ASSIGNEE

TRANSCRIPT = """[00:00:01] Sarah Johnson: Mike, new task for you: add rate limiting to the public API.
[00:00:10] Mike Chen: I'll take the flaky checkout test as well.
[00:00:20] Priya Patel: In the future we should rewrite the mobile app.
"""

REPLY = finder_reply(
    task_block(
        "Add rate limiting to the public API",
        "mike",
        evidence="Mike, new task for you: add rate limiting to the public API",
    ),
    task_block("Fix the flaky checkout test", "TBD", type_="Bug", evidence="I'll take the flaky checkout test as well"),
    task_block("Rewrite the mobile app", "Priya", context="[IS_FUTURE_PLAN: true]"),
)


def test_extract_resolves_assignees():
    completion = ScriptedCompletion(task_finder=REPLY)
    result = extract(parse_transcript(TRANSCRIPT), completion_service=completion)

    assert [c.assignee for c in result.candidates] == ["Mike Chen", "Mike Chen", TBD_ASSIGNEE]
    assert result.candidates[0].source_line == 0
    assert result.candidates[2].is_future_plan is True
    assert result.attendees == ["Sarah Johnson", "Mike Chen", "Priya Patel"]
    assert completion.count("task_finder") == 1


def test_prompt_contains_participants_and_transcript():
    turns = parse_transcript(TRANSCRIPT)
    system, user = build_task_finder_prompt(turns, ["Sarah Johnson", "Mike Chen"], prefix="SP")
    assert "task finder" in system.lower()
    assert "Sarah Johnson, Mike Chen" in user
    assert "Sarah Johnson: Mike, new task for you" in user
    assert "<<" not in user


def test_known_participants_are_merged():
    completion = ScriptedCompletion(task_finder="NO TASKS")
    result = extract(parse_transcript(TRANSCRIPT), ["Alex Kim", "mike chen"], completion_service=completion)
    assert result.candidates == []
    assert result.attendees == ["Alex Kim", "mike chen", "Sarah Johnson", "Priya Patel"]


def test_cancelled_candidates_are_split_out():
    transcript = (
        "[00:00:01] Sarah Johnson: Mike, new task for you: add rate limiting to the public API.\n"
        "[00:00:05] Sarah Johnson: Actually, let's not do rate limiting yet.\n"
    )
    completion = ScriptedCompletion(
        task_finder=task_block(
            "Add rate limiting to the public API",
            "Mike",
            evidence="Mike, new task for you: add rate limiting to the public API",
        )
    )
    result = extract(parse_transcript(transcript), completion_service=completion)
    assert [c.description for c in result.cancelled] == ["Add rate limiting to the public API"]
    assert result.candidates == []


@pytest.mark.parametrize(
    "reply",
    [RuntimeError("quota exceeded"), "", "Sorry, I cannot help with that."],
)
def test_extraction_fails_closed(reply):
    completion = ScriptedCompletion(task_finder=reply)
    with pytest.raises(ExtractionFailure):
        extract(parse_transcript(TRANSCRIPT), completion_service=completion)


def test_empty_transcript_makes_no_call():
    completion = ScriptedCompletion()
    result = extract([], completion_service=completion)
    assert result.candidates == []
    assert completion.calls == []
