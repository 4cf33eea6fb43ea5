from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


SessionStatus = Literal[
    "draft",
    "thinking",
    "planning",
    "researching",
    "writing",
    "completed",
    "paused",
    "failed",
]
TaskStatus = Literal["pending", "searching", "processing", "completed", "failed", "skipped"]
ChangeType = Literal["auto", "manual", "restore", "branch", "user_action"]
LinkType = Literal["source", "context", "output", "reference"]
EventType = Literal["status", "plan", "task", "report", "knowledge_graph", "complete", "error"]

# Active phases in pipeline order.
ACTIVE_PHASES: tuple[str, ...] = ("thinking", "planning", "researching", "writing")
TERMINAL_STATUSES = frozenset({"completed", "failed"})
TERMINAL_TASK_STATUSES = frozenset({"completed", "failed", "skipped"})


class ThinkingSnapshot(BaseModel):
    kind: Literal["thinking"] = "thinking"
    step: str = "initialization"
    notes: str = ""


class PlanningSnapshot(BaseModel):
    kind: Literal["planning"] = "planning"
    step: str = "planning"
    partial_plan: str = ""


class ResearchingSnapshot(BaseModel):
    kind: Literal["researching"] = "researching"
    step: str = "searching"
    completed_queries: List[str] = Field(default_factory=list)
    pending_queries: List[str] = Field(default_factory=list)


class WritingSnapshot(BaseModel):
    kind: Literal["writing"] = "writing"
    step: str = "report_generation"
    draft_report: str = ""


class ContinuationSnapshot(BaseModel):
    kind: Literal["continuation"] = "continuation"
    original_session_id: str
    continuation_context: str
    additional_instructions: Optional[str] = None
    previous_report: Optional[str] = None
    previous_plan: Optional[str] = None


StateSnapshot = Annotated[
    Union[
        ThinkingSnapshot,
        PlanningSnapshot,
        ResearchingSnapshot,
        WritingSnapshot,
        ContinuationSnapshot,
    ],
    Field(discriminator="kind"),
]
PhaseSnapshot = Union[ThinkingSnapshot, PlanningSnapshot, ResearchingSnapshot, WritingSnapshot]

state_snapshot_adapter: TypeAdapter = TypeAdapter(StateSnapshot)


class AIConfig(BaseModel):
    provider: str = ""
    thinking_model: str = ""
    task_model: str = ""


class SearchConfig(BaseModel):
    search_provider: str = "model"
    max_results: int = Field(default=5, ge=1, le=20)
    language: str = "en"


class ResearchSession(BaseModel):
    id: str
    user_id: str
    workspace_id: str
    title: str
    description: Optional[str] = None
    question: str
    status: SessionStatus = "draft"
    revision: int = 1
    ai_config: AIConfig = Field(default_factory=AIConfig)
    search_config: SearchConfig = Field(default_factory=SearchConfig)
    current_step: Optional[str] = "initialization"
    state_snapshot: Optional[StateSnapshot] = None
    active_run_id: Optional[str] = None
    report_plan: Optional[str] = None
    final_report: Optional[str] = None
    knowledge_graph: Optional[str] = None
    error_message: Optional[str] = None
    total_tasks: int = 0
    completed_tasks: int = 0
    total_sources: int = 0
    estimated_duration: Optional[int] = None
    actual_duration: Optional[int] = None
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ResearchTask(BaseModel):
    id: str
    session_id: str
    query: str
    research_goal: Optional[str] = None
    task_type: str = "search"
    priority: int = 0
    status: TaskStatus = "pending"
    search_provider: Optional[str] = None
    max_results: int = 5
    search_results: Optional[List[Dict[str, Any]]] = None
    analysis: Optional[str] = None
    learnings: Optional[str] = None
    result_count: int = 0
    relevance_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    execution_time: Optional[int] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ResearchSource(BaseModel):
    id: str
    session_id: str
    task_id: Optional[str] = None
    url: str
    title: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None
    source_type: str = "web"
    domain: Optional[str] = None
    relevance_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    quality_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    credibility_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    cited_in_report: bool = False
    citation_count: int = 0
    language: str = "en"
    word_count: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class HistoryEntry(BaseModel):
    id: str
    session_id: str
    user_id: str
    version: int
    description: Optional[str] = None
    change_type: ChangeType
    full_state: Dict[str, Any] = Field(default_factory=dict)
    state_diff: Optional[Dict[str, Any]] = None
    parent_version_id: Optional[str] = None
    step_name: Optional[str] = None
    is_bookmarked: bool = False
    created_at: datetime


class KnowledgeLink(BaseModel):
    id: str
    session_id: str
    knowledge_base_id: str
    document_id: Optional[str] = None
    link_type: LinkType
    usage_context: Optional[str] = None
    relevance_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    access_count: int = 1
    last_accessed_at: datetime
    created_at: datetime
    updated_at: datetime


class SessionBundle(BaseModel):
    schema_version: int = 1
    session: ResearchSession
    tasks: List[ResearchTask] = Field(default_factory=list)
    sources: List[ResearchSource] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    knowledge_links: List[KnowledgeLink] = Field(default_factory=list)


class StreamEvent(BaseModel):
    type: EventType
    session_id: str
    seq: int
    timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


# Request / response bodies


class CreateSessionRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    question: str = Field(min_length=1, max_length=1000)
    description: Optional[str] = None
    ai_config: AIConfig = Field(default_factory=AIConfig)
    search_config: SearchConfig = Field(default_factory=SearchConfig)
    estimated_duration: Optional[int] = Field(default=None, ge=1)


class UpdateSessionRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    question: Optional[str] = Field(default=None, min_length=1, max_length=1000)


class PauseRequest(BaseModel):
    state_snapshot: Optional[Dict[str, Any]] = None


class ContinueRequest(BaseModel):
    additional_instructions: Optional[str] = None
    extend_duration: Optional[int] = Field(default=None, ge=1)


class CreateHistoryRequest(BaseModel):
    description: Optional[str] = None
    change_type: Literal["auto", "manual", "restore", "branch"]
    full_state: Dict[str, Any]
    step_name: Optional[str] = None
    parent_version_id: Optional[str] = None
    is_bookmarked: bool = False


class RestoreHistoryRequest(BaseModel):
    version_id: str = Field(min_length=1)
    create_branch: bool = False


class BookmarkRequest(BaseModel):
    is_bookmarked: bool


class LinkKnowledgeRequest(BaseModel):
    knowledge_base_id: str = Field(min_length=1)
    document_id: Optional[str] = None
    link_type: LinkType
    usage_context: Optional[str] = None
    relevance_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SessionDetailResponse(BaseModel):
    session: ResearchSession
    tasks: Optional[List[ResearchTask]] = None
    sources: Optional[List[ResearchSource]] = None
    history: Optional[List[HistoryEntry]] = None


class SessionListResponse(BaseModel):
    sessions: List[ResearchSession] = Field(default_factory=list)


class HistoryListResponse(BaseModel):
    history: List[HistoryEntry] = Field(default_factory=list)


class KnowledgeListResponse(BaseModel):
    links: List[KnowledgeLink] = Field(default_factory=list)
