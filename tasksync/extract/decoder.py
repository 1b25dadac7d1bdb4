"""
Typed decoder for the task-finder reply.

The completion service answers with labeled blocks:

    TASK: Fix the login redirect
    ASSIGNEE: Sarah
    TYPE: Coding
    CATEGORY: NEW_TASK
    TICKET_ID: NONE
    EVIDENCE: "Sarah, new task for you: fix the login redirect"
    CONTEXT: Users land on a blank page after SSO
    URGENCY: this sprint
    ESTIMATE: 2 days
    TIME_SPENT: 0
    PRIORITY: High
    STORY_POINTS: 3
    STATUS: To-do

All parsing of that format lives here; everything downstream works on RawTaskBlock / Candidate.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from tasksync.models.schemas import Candidate, Category, WorkType, NO_TICKET, TBD_ASSIGNEE
from tasksync.extract.fields import (
    FUTURE_FLAG_RE,
    generate_title,
    is_future_plan_text,
    parse_priority,
    parse_status,
    parse_story_points,
    parse_time_spent,
    parse_time_to_hours,
    strip_future_flag,
)
from tasksync.utils.text import normalize_ticket_id

logger = logging.getLogger(__name__)

FIELD_NAMES = (
    "TASK",
    "ASSIGNEE",
    "TYPE",
    "CATEGORY",
    "TICKET_ID",
    "EVIDENCE",
    "CONTEXT",
    "URGENCY",
    "ESTIMATE",
    "TIME_SPENT",
    "PRIORITY",
    "STORY_POINTS",
    "STATUS",
)
FIELD_RE = re.compile(r"^\s*(?:[-*]\s*)?(?:\*\*)?(" + "|".join(FIELD_NAMES) + r")(?:\*\*)?\s*:\s*(?:\*\*)?\s*(.*)$", re.IGNORECASE)
NO_TASKS_RE = re.compile(r"^\s*(?:no\s+(?:new\s+)?tasks?(?:\s+found)?|none)\.?\s*$", re.IGNORECASE)

TYPE_VALUES = {
    "coding": WorkType.CODING,
    "code": WorkType.CODING,
    "development": WorkType.CODING,
    "non-coding": WorkType.NON_CODING,
    "non coding": WorkType.NON_CODING,
    "noncoding": WorkType.NON_CODING,
    "bug": WorkType.BUG,
    "bugfix": WorkType.BUG,
}
CATEGORY_VALUES = {
    "new_task": Category.NEW_TASK,
    "new task": Category.NEW_TASK,
    "new": Category.NEW_TASK,
    "update_task": Category.UPDATE_TASK,
    "update task": Category.UPDATE_TASK,
    "update": Category.UPDATE_TASK,
    "existing_task_update": Category.UPDATE_TASK,
}
MIN_DESCRIPTION_LEN = 6


class DecodeError(ValueError):
    """Reply is not in the block format at all."""


@dataclass
class RawTaskBlock:
    fields: Dict[str, str] = field(default_factory=dict)
    line_no: int = 0

    def get(self, name: str) -> str:
        return self.fields.get(name, "").strip().strip('"').strip()


def split_blocks(text: str) -> List[RawTaskBlock]:
    """Split a reply into blocks, one per TASK: marker. Lines before the first marker are ignored; unlabeled lines continue the previous field.
    Raises DecodeError when the reply is non-empty, has no TASK: marker and is not an explicit 'no tasks' answer."""
    blocks: List[RawTaskBlock] = []
    current: Optional[RawTaskBlock] = None
    last_field: Optional[str] = None
    saw_content = False

    for n, line in enumerate((text or "").splitlines(), start=1):
        if not line.strip():
            continue
        saw_content = True
        m = FIELD_RE.match(line)
        if m:
            name, value = m.group(1).upper(), m.group(2).strip()
            if name == "TASK":
                current = RawTaskBlock(line_no=n)
                blocks.append(current)
            if current is None:
                continue
            current.fields[name] = value
            last_field = name
        elif current is not None and last_field in ("EVIDENCE", "CONTEXT", "TASK"):
            current.fields[last_field] = (current.fields[last_field] + " " + line.strip()).strip()

    if not blocks and saw_content and not any(NO_TASKS_RE.match(ln) for ln in text.splitlines() if ln.strip()):
        raise DecodeError("reply contains no TASK blocks")
    return blocks


def validate_block(block: RawTaskBlock) -> Tuple[Optional[dict], Optional[str]]:
    """Check a block and convert it to Candidate keyword arguments. Returns (kwargs, None) or (None, reason). Unknown TYPE or CATEGORY values, missing TASK/ASSIGNEE, descriptions that are too short or still hold template brackets, and Unknown assignees are rejected; numeric fields fall back to 0/None."""
    description = block.get("TASK")
    if not description:
        return None, "missing TASK"
    if len(description) < MIN_DESCRIPTION_LEN:
        return None, "description too short"
    if "[" in description:
        return None, "template placeholder in description"

    assignee = block.get("ASSIGNEE")
    if not assignee:
        return None, "missing ASSIGNEE"
    if assignee.lower() == "unknown":
        return None, "unknown assignee"

    raw_type = block.get("TYPE").lower() or "coding"
    work_type = TYPE_VALUES.get(raw_type)
    if work_type is None:
        return None, f"unknown TYPE {raw_type!r}"

    raw_category = block.get("CATEGORY").lower() or "new_task"
    category = CATEGORY_VALUES.get(raw_category)
    if category is None:
        return None, f"unknown CATEGORY {raw_category!r}"

    ticket = normalize_ticket_id(block.get("TICKET_ID"))
    if category == Category.UPDATE_TASK and ticket == NO_TICKET:
        # an update without an id is matched by similarity like a new task
        category = Category.NEW_TASK

    context = block.get("CONTEXT")
    evidence = block.get("EVIDENCE")
    future = is_future_plan_text(context) or bool(FUTURE_FLAG_RE.search(block.get("URGENCY")))

    estimate_text = block.get("ESTIMATE")
    spent_text = block.get("TIME_SPENT")
    time_spent = parse_time_to_hours(spent_text) if spent_text else parse_time_spent(evidence)

    return {
        "description": description,
        "title": generate_title(description),
        "assignee": TBD_ASSIGNEE if future else assignee,
        "work_type": work_type,
        "category": category,
        "ticket_id_hint": ticket,
        "evidence": evidence,
        "context": strip_future_flag(context),
        "urgency": block.get("URGENCY"),
        "estimated_time": parse_time_to_hours(estimate_text),
        "time_spent": time_spent,
        "priority": parse_priority(block.get("PRIORITY")),
        "story_points": parse_story_points(block.get("STORY_POINTS")),
        "is_future_plan": future,
        "status": parse_status(block.get("STATUS")),
    }, None


def decode_task_blocks(text: str) -> Tuple[List[Candidate], List[str]]:
    """Decode a task-finder reply into Candidates plus the rejection reasons of dropped blocks. Assignees are kept raw here; name resolution happens in the extractor.
    Why available: The one place that knows the reply format, so format drift is caught by decoder tests rather than deep in matching."""
    candidates: List[Candidate] = []
    rejected: List[str] = []
    for block in split_blocks(text):
        kwargs, reason = validate_block(block)
        if kwargs is None:
            rejected.append(reason or "invalid")
            logger.info("task_block_rejected", extra={"reason": reason, "line_no": block.line_no})
            continue
        candidates.append(Candidate(**kwargs))
    return candidates, rejected
