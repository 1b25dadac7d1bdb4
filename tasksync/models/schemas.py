from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field, model_validator
from typing import List, Optional, Dict, Any

TBD_ASSIGNEE = "TBD"
NO_TICKET = "NONE"


class WorkType(str, Enum):
    CODING = "Coding"
    NON_CODING = "Non-Coding"
    BUG = "Bug"


class TaskStatus(str, Enum):
    TODO = "To-do"
    IN_PROGRESS = "In-progress"
    COMPLETED = "Completed"


STATUS_RANK = {TaskStatus.TODO: 0, TaskStatus.IN_PROGRESS: 1, TaskStatus.COMPLETED: 2}


class Priority(str, Enum):
    HIGHEST = "Highest"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    LOWEST = "Lowest"


class Category(str, Enum):
    NEW_TASK = "NEW_TASK"
    UPDATE_TASK = "UPDATE_TASK"


class MatchAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


class MatchPath(str, Enum):
    EXPLICIT_ID = "explicit_id"
    SIMILARITY = "similarity"
    ADJUDICATION = "adjudication"
    HEURISTIC = "heuristic"
    LEDGER = "ledger"
    DEFAULT = "default"


class MergeStrategy(str, Enum):
    RAG = "rag"
    BASIC = "basic"
    RAW = "raw"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Task(BaseModel):
    """A tracked work item. ticket_id is assigned once by the allocator and never changes; is_future_plan forces assignee TBD.
    Why available: Flat record stored by the task store and indexed by the similarity index."""

    ticket_id: str = Field(..., pattern=r"^[A-Z][A-Z0-9]*-\d+$")
    title: str = ""
    description: str = ""
    assignee: str = TBD_ASSIGNEE
    work_type: WorkType = WorkType.CODING
    status: TaskStatus = TaskStatus.TODO
    estimated_time: float = Field(0.0, ge=0)
    time_spent: float = Field(0.0, ge=0)
    priority: Optional[Priority] = None
    story_points: Optional[int] = Field(None, gt=0)
    is_future_plan: bool = False
    embedding: Optional[List[float]] = Field(None, exclude=True)
    last_modified: datetime = Field(default_factory=utcnow)
    transcript_id: Optional[str] = None

    @model_validator(mode="after")
    def future_plan_is_unassigned(self):
        if self.is_future_plan and self.assignee != TBD_ASSIGNEE:
            self.assignee = TBD_ASSIGNEE
        return self

    @property
    def is_open(self) -> bool:
        return self.status != TaskStatus.COMPLETED


class Candidate(BaseModel):
    """A work item extracted from one transcript pass, not yet persisted.
    Why available: Output of the extractor and input of the reconciler."""

    description: str = Field(..., min_length=1)
    title: str = ""
    assignee: str = TBD_ASSIGNEE
    work_type: WorkType = WorkType.CODING
    category: Category = Category.NEW_TASK
    ticket_id_hint: str = NO_TICKET
    evidence: str = ""
    context: str = ""
    urgency: str = ""
    estimated_time: float = Field(0.0, ge=0)
    time_spent: float = Field(0.0, ge=0)
    priority: Optional[Priority] = None
    story_points: Optional[int] = Field(None, gt=0)
    is_future_plan: bool = False
    status: Optional[TaskStatus] = None
    source_line: Optional[int] = None

    @model_validator(mode="after")
    def future_plan_is_unassigned(self):
        if self.is_future_plan and self.assignee != TBD_ASSIGNEE:
            self.assignee = TBD_ASSIGNEE
        return self


class StatusChangeEvent(BaseModel):
    ticket_id: str
    new_status: TaskStatus
    confidence: float = Field(..., ge=0.0, le=1.0)
    evidence: str = ""
    speaker: str = ""
    pattern_kind: str = "completion"
    old_status: Optional[TaskStatus] = None


class MergeResult(BaseModel):
    """Merged description plus provenance: which strategy produced it and how much to trust it.
    Why available: Makes the rag -> basic -> raw degradation path explicit and auditable on every UPDATE."""

    strategy: MergeStrategy
    description: str
    update_summary: str = ""
    update_type: str = "progress"
    confidence: float = Field(..., ge=0.0, le=1.0)
    sources_used: List[str] = Field(default_factory=list)
    reasoning: str = ""
    attempts: List[str] = Field(default_factory=list, description="Strategies tried before this one and why they failed")


class MatchDecision(BaseModel):
    candidate: Candidate
    action: MatchAction
    matched_ticket_id: Optional[str] = None
    similarity: Optional[float] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""
    match_path: MatchPath = MatchPath.DEFAULT
    merge: Optional[MergeResult] = None
    patch: Dict[str, Any] = Field(default_factory=dict)
    degraded: bool = False


class TaskMutation(BaseModel):
    kind: str = Field(..., pattern="^(insert|update)$")
    ticket_id: str
    task: Optional[Task] = None
    patch: Dict[str, Any] = Field(default_factory=dict)
    decision_index: Optional[int] = None


class MutationReport(BaseModel):
    ticket_id: str
    kind: str
    ok: bool
    error: Optional[str] = None


class RunSummary(BaseModel):
    """User-visible result of one run. Why available: Transport surfaces this so a partial success always says which stage degraded."""

    transcript_id: str
    participants: List[str] = Field(default_factory=list)
    created: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    status_changes: List[str] = Field(default_factory=list)
    cancelled_candidates: int = 0
    skipped_candidates: int = 0
    degraded_stages: List[str] = Field(default_factory=list)
    already_processed: bool = False


class ProcessRequest(BaseModel):
    """Request body for POST /process: raw transcript text or (speaker, text) records, plus optional known participants."""

    transcript: Optional[str] = Field(None, description="Raw transcript text ([HH:MM:SS] Speaker: text, WebVTT, or Speaker: text)")
    records: Optional[List[Dict[str, str]]] = Field(None, description="Pre-split records with 'speaker' and 'text' keys")
    transcript_id: Optional[str] = None
    participants: List[str] = Field(default_factory=list)
    apply: bool = Field(True, description="Apply mutations to the task store; False returns the plan only")


class RunResult(BaseModel):
    """Everything one run decided: the summary, every match decision, the status events, the mutations built from them and, when applied, one report per mutation."""

    summary: RunSummary
    decisions: List[MatchDecision] = Field(default_factory=list)
    status_events: List[StatusChangeEvent] = Field(default_factory=list)
    mutations: List[TaskMutation] = Field(default_factory=list)
    reports: List[MutationReport] = Field(default_factory=list)


class CounterResponse(BaseModel):
    key: str
    count: int
    next_ticket_id: str


class CounterResetRequest(BaseModel):
    value: int = Field(0, ge=0)
    force: bool = False


class IndexResponse(BaseModel):
    indexed: int = Field(..., ge=0)
    degraded: bool = False
