"""Parsers for the loosely-formatted scalar fields of an extracted task: time, priority, story points, status, title."""
import re
from typing import Optional

from tasksync.models.schemas import Priority, TaskStatus

HOURS_PER_DAY = 8
HOURS_PER_WEEK = 40

WORD_NUMBERS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "couple": 2, "a couple": 2,
    "couple of": 2, "a couple of": 2, "few": 3, "a few": 3, "several": 4,
}
_NUM = r"(\d+(?:\.\d+)?|a couple of|a couple|couple of|couple|a few|few|several|an|a|one|two|three|four|five|six|seven|eight|nine|ten)"
UNIT_RE = re.compile(r"\b" + _NUM + r"\s*(hours?|hrs?|h|minutes?|mins?|days?|d|weeks?|wks?|w)\b", re.IGNORECASE)
BARE_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)")
TIME_SPENT_RE = re.compile(
    r"\b(?:spent|took|worked(?:\s+on\s+it)?\s+for|completed\s+in|finished\s+in|it\s+took)\s+(?:about\s+|around\s+|roughly\s+)?"
    + _NUM + r"\s*(hours?|hrs?|h|minutes?|mins?|days?|weeks?)\b",
    re.IGNORECASE,
)

FUTURE_PLAN_RE = re.compile(
    r"\b(?:in the future|future plan|next quarter|down the road|eventually|someday|roadmap|later this year|long[- ]term)\b",
    re.IGNORECASE,
)
FUTURE_FLAG_RE = re.compile(r"\[IS_FUTURE_PLAN:\s*(true|yes)\s*\]", re.IGNORECASE)

PRIORITY_SYNONYMS = {
    "highest": Priority.HIGHEST, "critical": Priority.HIGHEST, "blocker": Priority.HIGHEST, "urgent": Priority.HIGHEST,
    "high": Priority.HIGH, "important": Priority.HIGH,
    "medium": Priority.MEDIUM, "normal": Priority.MEDIUM, "standard": Priority.MEDIUM, "moderate": Priority.MEDIUM,
    "low": Priority.LOW, "minor": Priority.LOW,
    "lowest": Priority.LOWEST, "minimal": Priority.LOWEST, "trivial": Priority.LOWEST,
}

STATUS_KEYWORDS = [
    (TaskStatus.COMPLETED, ("completed", "complete", "done", "finished", "resolved", "closed")),
    (TaskStatus.IN_PROGRESS, ("in progress", "in-progress", "started", "working on", "ongoing", "underway")),
    (TaskStatus.TODO, ("to-do", "todo", "to do", "not started", "pending", "open")),
]


def _to_number(token: str) -> Optional[float]:
    t = (token or "").strip().lower()
    if t in WORD_NUMBERS:
        return float(WORD_NUMBERS[t])
    try:
        return float(t)
    except ValueError:
        return None


def _unit_hours(value: float, unit: str) -> float:
    u = unit.lower()
    if u.startswith("m"):
        return value / 60.0
    if u.startswith("d"):
        return value * HOURS_PER_DAY
    if u.startswith("w"):
        return value * HOURS_PER_WEEK
    return value


def parse_time_to_hours(text: Optional[str]) -> float:
    """Convert a spoken duration into hours: '3 hours' -> 3, '2 days' -> 16, 'a couple of hours' -> 2, 'half a day' -> 4, 'full day' -> 8, '45 minutes' -> 0.75, bare '5' -> 5. Unparseable or empty input -> 0.
    Why available: Estimates and time spent arrive as free text; the task record stores hours."""
    t = (text or "").strip().lower()
    if not t or t in ("none", "n/a", "unknown", "0"):
        return 0.0
    if re.search(r"\bhalf\s+(?:a\s+)?day\b", t):
        return HOURS_PER_DAY / 2
    if re.search(r"\b(?:full|whole|entire)\s+day\b", t):
        return float(HOURS_PER_DAY)
    if re.search(r"\b(?:the\s+)?(?:morning|afternoon)\b", t):
        return HOURS_PER_DAY / 2
    if re.search(r"\bhalf\s+(?:an\s+)?hour\b", t):
        return 0.5
    total = 0.0
    found = False
    for m in UNIT_RE.finditer(t):
        value = _to_number(m.group(1))
        if value is None:
            continue
        total += _unit_hours(value, m.group(2))
        found = True
    if found:
        return round(total, 2)
    m = BARE_NUMBER_RE.search(t)
    return float(m.group(1)) if m else 0.0


def parse_time_spent(text: Optional[str]) -> float:
    """Hours reported as already spent ("spent 3 hours on it", "took two days"); 0 when the text reports none."""
    m = TIME_SPENT_RE.search(text or "")
    if not m:
        return 0.0
    value = _to_number(m.group(1))
    if value is None:
        return 0.0
    return round(_unit_hours(value, m.group(2)), 2)


def parse_priority(text: Optional[str]) -> Optional[Priority]:
    """Map free text to a Priority; 'high priority', 'P1'-style and unknown values are handled, unknown -> None."""
    t = (text or "").strip().lower()
    if not t or t in ("none", "n/a", "unknown"):
        return None
    t = t.replace("priority", "").strip()
    pm = re.fullmatch(r"p([0-4])", t)
    if pm:
        return [Priority.HIGHEST, Priority.HIGH, Priority.MEDIUM, Priority.LOW, Priority.LOWEST][int(pm.group(1))]
    if t in PRIORITY_SYNONYMS:
        return PRIORITY_SYNONYMS[t]
    for word in t.split():
        if word in PRIORITY_SYNONYMS:
            return PRIORITY_SYNONYMS[word]
    return None


def parse_story_points(text: Optional[str]) -> Optional[int]:
    m = BARE_NUMBER_RE.search(text or "")
    if not m:
        return None
    value = int(float(m.group(1)))
    return value if value > 0 else None


def parse_status(text: Optional[str]) -> Optional[TaskStatus]:
    """Keyword status reading of a STATUS field or update sentence; 'not started' reads as To-do, then completion keywords win over in-progress ones."""
    t = (text or "").strip().lower()
    if not t:
        return None
    if re.search(r"\bnot\s+(?:yet\s+)?started\b", t):
        return TaskStatus.TODO
    for status, words in STATUS_KEYWORDS:
        if any(re.search(r"\b" + re.escape(w) + r"\b", t) for w in words):
            return status
    return None


def is_future_plan_text(*texts: Optional[str]) -> bool:
    """True if any text carries the [IS_FUTURE_PLAN: true] marker or a future-plan phrase."""
    for text in texts:
        if text and (FUTURE_FLAG_RE.search(text) or FUTURE_PLAN_RE.search(text)):
            return True
    return False


def strip_future_flag(text: str) -> str:
    return FUTURE_FLAG_RE.sub("", text or "").strip()


def generate_title(description: Optional[str]) -> str:
    """Short task title: descriptions up to 50 chars are used as is; longer ones use the first sentence if it is short enough, else the first five words; capped at 60 chars with '...'. Empty -> 'Untitled Task'."""
    d = re.sub(r"\s+", " ", description or "").strip()
    if not d:
        return "Untitled Task"
    if len(d) <= 50:
        return d
    first_sentence = re.split(r"(?<=[.!?])\s", d, maxsplit=1)[0].rstrip(".!?")
    title = first_sentence if len(first_sentence) <= 60 else " ".join(d.split()[:5])
    if len(title) > 60:
        title = title[:57].rstrip() + "..."
    return title
