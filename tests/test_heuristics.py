"""Unit tests for local matching heuristics."""
import pytest

from tasksync.match.heuristics import (
    adjusted_confidence_threshold,
    best_heuristic_match,
    heuristic_similarity,
    keywords,
    shared_vocabulary_score,
    type_compatibility,
)
from tasksync.models.schemas import Candidate, Task, WorkType

LOGIN = Task(ticket_id="SP-1", title="Fix login redirect", description="Fix login redirect after SSO", assignee="Mike")
DOCS = Task(ticket_id="SP-2", title="Onboarding guide", description="Write the onboarding guide", assignee="Priya", work_type=WorkType.NON_CODING)
LOGIN_BUG = Task(ticket_id="SP-3", title="Fix login bug", description="Fix login bug", assignee="Mike", work_type=WorkType.BUG)


def test_keywords_drop_stopwords_and_short_words():
    assert keywords("We need to fix the API in QA") == ["api"]
    assert keywords("Add retry-logic to the uploader") == ["retry", "logic", "uploader"]


def test_shared_vocabulary_score():
    assert shared_vocabulary_score("Build the auth API", "Refactor auth api client") == pytest.approx(0.2)
    assert shared_vocabulary_score("Fix login redirect", "fix login redirect for SSO") == pytest.approx(0.45)
    assert shared_vocabulary_score("", "anything") == 0.0


def test_type_compatibility():
    assert type_compatibility(WorkType.BUG, WorkType.BUG) == 1.0
    assert type_compatibility(WorkType.BUG, WorkType.CODING) == 0.8


@pytest.mark.parametrize(
    "description,open_tasks,expected",
    [
        ("x" * 100, 10, 0.6),
        ("x" * 100, 2, 0.5),
        ("x" * 300, 10, 0.65),
        ("x" * 300, 2, 0.65),
        ("x" * 20, 10, 0.55),
        ("x" * 20, 1, 0.55),
    ],
)
def test_adjusted_confidence_threshold(description, open_tasks, expected):
    assert adjusted_confidence_threshold(description, open_tasks, base=0.6) == expected


def test_heuristic_match_is_capped():
    c = Candidate(description="Fix login redirect after SSO", assignee="Mike")
    score = heuristic_similarity(c, LOGIN)
    assert score.word_overlap == 1.0
    assert score.confidence == 0.7
    assert score.reasoning == "100% word overlap, 45% shared vocabulary"


def test_partial_overlap_scores_below_cap():
    c = Candidate(description="Fix login redirect after SSO for mobile", assignee="Mike")
    score = heuristic_similarity(c, LOGIN)
    assert score.word_overlap == 0.8
    assert score.vocabulary == 0.45
    assert score.confidence == 0.66


def test_shared_verb_and_assignee_are_not_enough():
    c = Candidate(description="Fix payment crash", assignee="Mike", work_type=WorkType.BUG)
    score = heuristic_similarity(c, LOGIN_BUG)
    assert score.word_overlap == 0.0
    assert score.confidence == 0.02
    threshold = adjusted_confidence_threshold(c.description, 1)
    assert best_heuristic_match(c, [LOGIN_BUG], threshold) is None


def test_unrelated_work_does_not_match():
    c = Candidate(description="Migrate billing database", assignee="Sarah")
    assert heuristic_similarity(c, DOCS).confidence == 0.0
    assert best_heuristic_match(c, [LOGIN, DOCS], 0.5) is None


def test_best_heuristic_match_picks_highest():
    c = Candidate(description="Write the onboarding guide for new hires", assignee="Priya", work_type=WorkType.NON_CODING)
    best = best_heuristic_match(c, [LOGIN, DOCS], 0.5)
    assert best.ticket_id == "SP-2"
    assert best_heuristic_match(c, [LOGIN, DOCS], 0.6) is None
