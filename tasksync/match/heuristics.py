"""Local matching heuristics used when the similarity index or the adjudication call is unavailable."""
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from tasksync.core.config import settings
from tasksync.models.schemas import Candidate, Task, WorkType

# Filler plus verbs too common in task titles to say anything about the work itself.
STOPWORDS = {"the", "and", "for", "with", "from", "this", "that", "will", "need", "add", "fix", "use"}
TECH_TERMS = ("api", "database", "auth", "login", "dashboard", "ui", "frontend", "backend", "component", "feature")
ACTION_VERBS = ("implement", "create", "build", "develop", "design", "fix", "update", "refactor", "optimize")

FALLBACK_MAX_CONFIDENCE = 0.7


def keywords(text: str) -> List[str]:
    """Lowercased words longer than two characters, minus STOPWORDS, in order of appearance."""
    words = re.sub(r"[^a-z0-9\s]", " ", (text or "").lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOPWORDS]


def shared_vocabulary_score(a: str, b: str) -> float:
    """0.1 per technical term and 0.05 per action verb found in both texts, plus 0.3 when one text contains the other. Capped at 1.0."""
    a, b = (a or "").lower(), (b or "").lower()
    score = 0.1 * sum(1 for term in TECH_TERMS if term in a and term in b)
    score += 0.05 * sum(1 for verb in ACTION_VERBS if verb in a and verb in b)
    if a and b and (a in b or b in a):
        score += 0.3
    return min(score, 1.0)


def type_compatibility(candidate_type: WorkType, task_type: WorkType) -> float:
    """1.0 for the same work type, 0.8 otherwise (a bug fix can still be the same work as a coding task)."""
    return 1.0 if candidate_type == task_type else 0.8


def adjusted_confidence_threshold(description: str, open_task_count: int, base: Optional[float] = None) -> float:
    """Threshold a match confidence must reach. Starts at the configured base (0.6); 0.5 when the assignee has 3 or fewer open tasks; then 0.65 for long descriptions (> 200 chars) or 0.55 for short ones (< 50 chars), whichever applies last."""
    threshold = settings.adjudication_threshold if base is None else base
    if open_task_count <= 3:
        threshold = 0.5
    n = len(description or "")
    if n > 200:
        threshold = 0.65
    elif n < 50:
        threshold = 0.55
    return threshold


@dataclass
class HeuristicScore:
    ticket_id: str
    confidence: float
    word_overlap: float
    vocabulary: float
    reasoning: str


def heuristic_similarity(candidate: Candidate, task: Task) -> HeuristicScore:
    """Word overlap (shared keywords over the longer keyword list) weighted 0.6 plus shared_vocabulary_score weighted 0.4, capped at 0.7 because no semantic check was made."""
    existing = task.description or task.title
    a = keywords(candidate.description)
    b = keywords(existing)
    longest = max(len(a), len(b))
    overlap = sum(1 for w in a if w in b) / longest if longest else 0.0
    vocabulary = shared_vocabulary_score(candidate.description, existing)

    confidence = min(FALLBACK_MAX_CONFIDENCE, overlap * 0.6 + vocabulary * 0.4)
    return HeuristicScore(
        ticket_id=task.ticket_id,
        confidence=round(confidence, 3),
        word_overlap=round(overlap, 3),
        vocabulary=round(vocabulary, 3),
        reasoning=f"{round(overlap * 100)}% word overlap, {round(vocabulary * 100)}% shared vocabulary",
    )


def best_heuristic_match(candidate: Candidate, tasks: Sequence[Task], threshold: float) -> Optional[HeuristicScore]:
    """Highest-scoring heuristic match among tasks if it reaches threshold, else None."""
    scored = [s for s in (heuristic_similarity(candidate, t) for t in tasks) if s.confidence >= threshold]
    if not scored:
        return None
    return max(scored, key=lambda s: s.confidence)
